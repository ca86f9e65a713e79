import json
import logging
from typing import Any

ROOT_LOGGER = "wellness"


def configure_logging(level_name: str = "INFO") -> logging.Logger:
    """Configure the service logger namespace.

    - honor the given level (default INFO)
    - attach a StreamHandler if none present
    - disable propagate to avoid duplicate logs with Uvicorn root handlers
    """
    root = logging.getLogger(ROOT_LOGGER)
    lvl = getattr(logging, (level_name or "INFO").strip().upper(), logging.INFO)
    if not isinstance(lvl, int):
        lvl = logging.INFO
    root.setLevel(lvl)
    if not root.handlers:
        h = logging.StreamHandler()
        h.setLevel(lvl)
        h.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(h)
    root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one JSON object per line: {"event": ..., **fields}."""
    if not logger.isEnabledFor(level):
        return
    logger.log(level, json.dumps({"event": event, **fields}, default=str))
