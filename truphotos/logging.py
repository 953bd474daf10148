"""Logging initialization using loguru."""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from truphotos.config import LOG_DIR


def init_logging(log_dir: Optional[Path] = None, level: str = "INFO") -> None:
    """Send warnings to stderr and everything at `level` to a rotating file under `log_dir`."""
    log_path = Path(log_dir) if log_dir is not None else LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
    logger.add(
        str(log_path / "truphotos_{time:YYYYMMDD}.log"),
        rotation="10 MB",
        retention="10 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        level=level,
    )
