"""Configuration loading utilities."""

import json
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from nexustransfer.config.schema import Config


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".nexustransfer" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from a JSON file, falling back to defaults.

    A missing or unparsable file yields ``Config()``, which still picks up
    ``NEXUS_*`` environment variables.  An invalid environment raises
    ``ValidationError``.
    """
    path = Path(config_path or get_config_path())
    if not path.exists():
        logger.debug("[Config] no config file at {}, using defaults", path)
        return Config()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        config = Config.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.error("[Config] failed to parse {}: {}", path, exc)
        return Config()
    logger.info("[Config] loaded {}", path)
    return config
