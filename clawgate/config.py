"""Configuration loaded from keyword arguments, environment and config.json."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

from pydantic import AliasChoices, Field
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.json"


def default_state_dir() -> Path:
    """State directory from CLAWGATE_STATE_DIR, falling back to ~/.clawgate."""
    env_dir = os.environ.get("CLAWGATE_STATE_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".clawgate"


class ConfigFileSettingsSource(PydanticBaseSettingsSource):
    """Reads <state_dir>/config.json as the lowest-priority settings source."""

    def __init__(self, settings_cls: Type[BaseSettings], state_dir: Optional[Any] = None):
        super().__init__(settings_cls)
        self.state_dir = Path(state_dir).expanduser() if state_dir else default_state_dir()

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> Dict[str, Any]:
        path = self.state_dir / CONFIG_FILENAME
        if not path.exists():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to parse config at %s: %s", path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring config at %s: expected a JSON object", path)
            return {}
        data.pop("state_dir", None)
        return data


class Settings(BaseSettings):
    """Runtime configuration for the scheduler."""

    model_config = SettingsConfigDict(env_prefix="CLAWGATE_", extra="ignore")

    state_dir: Path = Field(default_factory=default_state_dir)

    openclaw_bin: str = Field(
        "openclaw", validation_alias=AliasChoices("openclaw_bin", "OPENCLAW_BIN")
    )
    gateway_url: str = Field(
        "ws://127.0.0.1:18789",
        validation_alias=AliasChoices("gateway_url", "OPENCLAW_GATEWAY_URL"),
    )
    gateway_token: Optional[str] = Field(
        None, validation_alias=AliasChoices("gateway_token", "OPENCLAW_GATEWAY_TOKEN")
    )
    gateway_password: Optional[str] = Field(
        None, validation_alias=AliasChoices("gateway_password", "OPENCLAW_GATEWAY_PASSWORD")
    )

    timezone: str = "UTC"
    timeout_ms: int = Field(300000, ge=1000)
    max_retries: int = 3
    retry_delay_ms: int = 5000
    handoff_grace_ms: int = Field(30000, ge=0)
    kill_delay_ms: int = Field(5000, ge=0)
    dry_run: bool = False

    cli_command: str = "clawgate"
    crontab_file: Optional[Path] = None
    default_channel: str = "telegram"
    agents: Dict[str, str] = Field(default_factory=lambda: {"main": "default"})

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        init_kwargs = getattr(init_settings, "init_kwargs", {})
        return (
            init_settings,
            env_settings,
            ConfigFileSettingsSource(settings_cls, init_kwargs.get("state_dir")),
        )

    @property
    def jobs_dir(self) -> Path:
        return self.state_dir / "jobs"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / "locks"

    @property
    def templates_dir(self) -> Path:
        return self.state_dir / "templates"

    @property
    def config_path(self) -> Path:
        return self.state_dir / CONFIG_FILENAME

    def ensure_dirs(self) -> None:
        """Create the state directory layout."""
        for path in (self.jobs_dir, self.logs_dir, self.locks_dir, self.templates_dir):
            path.mkdir(parents=True, exist_ok=True)


def resolve_reply_account(agents: Dict[str, str], agent_id: Optional[str]) -> Optional[str]:
    """Map an agent id to the account its replies should be sent from."""
    if not agent_id:
        return None
    return agents.get(agent_id)
