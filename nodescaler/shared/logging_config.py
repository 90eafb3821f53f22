"""
nodescaler/shared/logging_config.py
───────────────────────────────────
Process logging for the scaler.

Three sinks, same as the scaler has always written:
  console       → everything at the configured level
  combined.log  → everything at the configured level
  error.log     → ERROR and above only

Modules never configure logging themselves; they take
`logging.getLogger(__name__)` and the entry point calls configure_logging()
once.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import List, Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

COMBINED_LOG = "combined.log"
ERROR_LOG = "error.log"


def configure_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[Union[str, Path]] = None,
) -> List[logging.Handler]:
    """
    Install console + file handlers on the root logger.

    Args:
        level:   Root level, as an int or a name like "DEBUG".
        log_dir: Directory for combined.log / error.log. None → console only.

    Returns:
        The handlers that were installed (useful for tests that tear down).
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_dir is not None:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(directory / COMBINED_LOG))
        error_handler = logging.FileHandler(directory / ERROR_LOG)
        error_handler.setLevel(logging.ERROR)
        handlers.append(error_handler)

    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    # aiohttp's access/client loggers are noisy at DEBUG
    logging.getLogger("aiohttp").setLevel(max(level, logging.INFO))
    return handlers
