"""Log sinks for nanojournal.

Two loguru sinks: stderr for the operator, and a rotating file that keeps
the full memory-engine trail (compaction runs, dedup decisions, degraded
retrievals). Levels and file policy come from ``Config.logging``.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from nanojournal.config.schema import LoggingConfig
from nanojournal.utils.helpers import get_data_path

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


def resolve_log_file(config: LoggingConfig) -> Path:
    """Configured log file, or ``nanojournal.log`` in the data directory."""
    if config.log_file:
        return Path(config.log_file).expanduser()
    return get_data_path() / "nanojournal.log"


def configure_logging(
    config: Optional[LoggingConfig] = None,
    verbose: bool = False,
) -> Path:
    """
    Replace loguru's default sink with the configured console and file sinks.

    Args:
        config: Sink levels and file policy (defaults to LoggingConfig())
        verbose: Force the console sink to DEBUG

    Returns:
        Path of the log file in use
    """
    config = config or LoggingConfig()
    logger.remove()

    log_file = resolve_log_file(config)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    console_level = "DEBUG" if verbose else config.console_level.upper()
    logger.add(sys.stderr, level=console_level, format=CONSOLE_FORMAT)

    logger.add(
        str(log_file),
        level=config.file_level.upper(),
        format=FILE_FORMAT,
        rotation=config.rotation,
        retention=config.retention,
        compression="zip",
        enqueue=True,
    )

    logger.debug(f"Logging ready (console {console_level}, file {config.file_level.upper()} -> {log_file})")
    return log_file
