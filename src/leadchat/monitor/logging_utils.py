import logging
import os
import sys
from typing import Optional, Tuple

from .config import Config

LOG_FORMAT = "%(asctime)sZ %(levelname)s %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"

_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_CYAN = "\033[36m"
_MAGENTA = "\033[35m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_RED = "\033[31m"
_LEVEL_COLORS = {
    "DEBUG": _CYAN,
    "INFO": _GREEN,
    "WARNING": _YELLOW,
    "ERROR": _RED,
    "CRITICAL": _RED,
}

# (substring, tag, style); first match wins. A None tag dims the line instead.
_PHASES: Tuple[Tuple[str, Optional[str], str], ...] = (
    ("Policy request", "POLICY REQUEST", _CYAN),
    ("Policy response", "POLICY RESPONSE", _MAGENTA),
    ("New inbound", "NEW INBOUND", _CYAN),
    ("action=send attempt", "SEND ATTEMPT", _MAGENTA),
    ("Stage transition", "STAGE", _YELLOW),
    ("Pre-send re-check aborted", "SEND ABORTED", _YELLOW),
    ("Session problem", "SESSION", _RED),
    ("REPLY SENT", "SUCCESS", _GREEN),
    ("Sleeping seconds=", None, _DIM),
    ("Waiting contact=", None, _DIM),
)


def _stream_supports_color() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    if os.getenv("FORCE_COLOR", "").strip().lower() in {"1", "true", "yes"}:
        return True
    return bool(sys.stderr.isatty())


class ColorFormatter(logging.Formatter):
    """Paints conversation-loop phases so an operator can follow a contact on the console."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = _LEVEL_COLORS.get(record.levelname.upper())
        if not color:
            return message
        for needle, tag, style in _PHASES:
            if needle not in message:
                continue
            if tag is None:
                return f"{style}{color}{message}{_RESET}"
            return f"{_BOLD}{style}[{tag}] {message}{_RESET}"
        return f"{color}{message}{_RESET}"


def setup_logging(cfg: Config) -> logging.Logger:
    logger = logging.getLogger("leadchat.monitor")
    logger.setLevel(getattr(logging, cfg.log_level, logging.INFO))
    logger.handlers.clear()
    logger.propagate = False

    plain = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    console = logging.StreamHandler()
    console.setFormatter(ColorFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT) if _stream_supports_color() else plain)
    logger.addHandler(console)

    if cfg.log_path:
        cfg.log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(cfg.log_path, encoding="utf-8")
        file_handler.setFormatter(plain)
        logger.addHandler(file_handler)
    return logger
