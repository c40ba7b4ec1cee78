"""ClawGate - natural-language cron scheduling for agent messages."""

__version__ = "1.0.0"
