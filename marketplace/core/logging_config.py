"""
Logging configuration for the marketplace service.

Everything goes to stdout and ``marketplace.log``. Credit movements and the
expiry sweep are additionally written to ``credits.log`` so balance disputes can
be traced without digging through request noise.
"""
import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

AUDIT_LOGGERS = (
    "marketplace.services.ledger_service",
    "marketplace.services.expiry_sweeper",
)

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _rotating(path: Path, level: int, fmt: str) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)  # 10MB
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=_DATEFMT))
    return handler


def setup_logging(log_level: str = "INFO", log_dir: str = "logs"):
    """
    Configure application logging.

    Args:
        log_level: Logging level name; unknown names fall back to INFO
        log_dir: Directory for the rotating log files, created if missing
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    root.addHandler(console_handler)
    root.addHandler(_rotating(
        log_path / "marketplace.log", level,
        "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s",
    ))

    audit_handler = _rotating(log_path / "credits.log", logging.INFO, _FORMAT)
    for name in AUDIT_LOGGERS:
        audit_logger = logging.getLogger(name)
        stale = [h for h in audit_logger.handlers if isinstance(h, RotatingFileHandler)]
        for handler in stale:
            handler.close()
        audit_logger.handlers = [h for h in audit_logger.handlers if h not in stale]
        audit_logger.addHandler(audit_handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
