import logging
import sys
from pathlib import Path

from app.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

logger = logging.getLogger("signflow")


def configure_logging(log_dir: str | None = None, level: str | None = None) -> logging.Logger:
    """Install stdout and file handlers on the root logger (idempotent)."""
    target_dir = Path(log_dir or settings.log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(target_dir / "server.log", encoding="utf-8"),
        ],
    )
    return logger


def mask_token(token: str | None) -> str:
    if not token:
        return ""
    return f"{token[:6]}..."
