"""Configuration loading utilities."""

import json
import os
import stat
from pathlib import Path

from loguru import logger

from nanojournal.config.schema import Config
from nanojournal.utils.helpers import get_data_path


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return get_data_path() / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            current_mode = stat.S_IMODE(os.stat(path).st_mode)
            if current_mode != 0o600:
                logger.warning(
                    f"Config file has insecure permissions: {oct(current_mode)}. "
                    f"Fixing to 0o600 (owner read/write only)..."
                )
                os.chmod(path, 0o600)
        except OSError as e:
            logger.warning(f"Could not verify config permissions: {e}")

        try:
            with open(path) as f:
                data = json.load(f)
            data = _migrate_config(data)
            return Config.model_validate(data)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to load config from {path}: {e}. Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """
    Save configuration to file with secure permissions.

    Args:
        config: Configuration to save.
        config_path: Optional path to save to. Uses default if not provided.
    """
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    # Owner-only directory
    os.chmod(path.parent, 0o700)

    data = config.model_dump(by_alias=True)

    with open(path, "w") as f:
        json.dump(data, f, indent=2)

    os.chmod(path, 0o600)
    logger.debug(f"Config saved with secure permissions: {path}")


def _migrate_config(data: dict) -> dict:
    """Migrate old config formats to current."""
    # memory.similarityThreshold → memory.dedup.mergeThreshold
    memory = data.get("memory", {})
    if "similarityThreshold" in memory:
        dedup = memory.setdefault("dedup", {})
        dedup.setdefault("mergeThreshold", memory.pop("similarityThreshold"))
    return data
