from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from .config import LoggingConfig

ROOT_LOGGER = "memory_engine"
MAX_LOG_FILE_SIZE = 10 * 1024 * 1024
LOG_FORMAT = "%(asctime)s %(levelname)s [memory] %(message)s"

_installed: Optional[logging.Handler] = None


def configure_logging(config: Optional[LoggingConfig], level: int | str = logging.INFO) -> logging.Logger:
    """Route the ``memory_engine`` logger tree according to the plugin config.

    Disabled logging installs a ``NullHandler`` so the host process never sees
    our records. Enabled logging writes to a size-rotated file.
    """
    global _installed
    root = logging.getLogger(ROOT_LOGGER)

    if _installed is not None:
        root.removeHandler(_installed)
        _installed.close()
        _installed = None

    handler: logging.Handler
    if config is None or not config.enabled or not config.file:
        handler = logging.NullHandler()
    else:
        path = Path(config.file).expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.handlers.RotatingFileHandler(
                path, maxBytes=MAX_LOG_FILE_SIZE, backupCount=1, encoding="utf-8"
            )
        except OSError:
            handler = logging.NullHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root.addHandler(handler)
    root.setLevel(level)
    # The host owns its own handlers; don't duplicate into them.
    root.propagate = False
    _installed = handler
    return root


def configure_process_logging(log_file: str, level: int | str = logging.INFO) -> None:
    """basicConfig for the detached server and worker processes."""
    path = Path(log_file).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        return
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.handlers.RotatingFileHandler(
                path, maxBytes=MAX_LOG_FILE_SIZE, backupCount=1, encoding="utf-8"
            )
        ],
    )
