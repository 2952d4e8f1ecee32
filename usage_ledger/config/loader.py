"""
Configuration management and loading.

Loads workspace class rates and runtime settings from YAML.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

import yaml

from usage_ledger.core.errors import ConfigurationError
from usage_ledger.core.pricing import DEFAULT_CREDIT_RATES, WorkspacePricer
from usage_ledger.storage.db import DEFAULT_DB_PATH

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class UsageConfig:
    """Complete usage ledger configuration."""
    workspace_classes: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_CREDIT_RATES))
    database: str = DEFAULT_DB_PATH
    log_level: str = "info"

    def __post_init__(self):
        """Validate log level and database path."""
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(f"log_level must be one of: {list(LOG_LEVELS)}")
        if not self.database:
            raise ConfigurationError("database cannot be empty")

    def pricer(self) -> WorkspacePricer:
        """Build a pricer from the configured rates.

        Raises:
            ConfigurationError: If the rates are empty or negative
        """
        return WorkspacePricer(self.workspace_classes)

    @property
    def logging_level(self) -> int:
        return LOG_LEVELS[self.log_level]


def load_usage_config(path: str) -> UsageConfig:
    """Load and validate usage ledger configuration from a YAML file.

    Strict validation so a typo in a class name or rate never silently
    bills at the wrong price.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated UsageConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If YAML is invalid or the configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Usage config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration must be a dictionary")

    allowed_top_keys = {'workspace_classes', 'database', 'log_level'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ConfigurationError(f"Unknown configuration keys: {unknown_keys}")

    if 'workspace_classes' not in raw_config:
        raise ConfigurationError("Missing required 'workspace_classes' section")
    workspace_classes = _parse_workspace_classes(raw_config['workspace_classes'])

    database = raw_config.get('database', DEFAULT_DB_PATH)
    if not isinstance(database, str):
        raise ConfigurationError("'database' must be a string")

    log_level = raw_config.get('log_level', 'info')
    if not isinstance(log_level, str):
        raise ConfigurationError("'log_level' must be a string")

    config = UsageConfig(
        workspace_classes=workspace_classes,
        database=database,
        log_level=log_level.lower(),
    )
    # Fail on bad rates at load time rather than at first use
    config.pricer()
    return config


def _parse_workspace_classes(data) -> Dict[str, float]:
    """Parse and validate the class to credits-per-hour table.

    Raises:
        ConfigurationError: If the table is not a non-empty mapping of numbers
    """
    if not isinstance(data, dict):
        raise ConfigurationError("'workspace_classes' must be a dictionary")
    if not data:
        raise ConfigurationError("'workspace_classes' cannot be empty")

    rates = {}
    for workspace_class, rate in data.items():
        # bool is an int subclass; reject it explicitly
        if isinstance(rate, bool) or not isinstance(rate, (int, float)):
            raise ConfigurationError(f"Rate for workspace class '{workspace_class}' must be a number")
        rates[str(workspace_class)] = float(rate)
    return rates
