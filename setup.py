"""Setup configuration for clawgate."""

from setuptools import setup, find_packages

setup(
    name="clawgate",
    version="1.0.0",
    description="Natural-language cron scheduling for agent messages",
    author="Your Name",
    packages=find_packages(include=["clawgate", "clawgate.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "croniter>=2.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "clawgate=clawgate.cli:cli",
        ],
    },
    python_requires=">=3.9",
)
