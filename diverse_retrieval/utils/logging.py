# diverse_retrieval/utils/logging.py
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from ..config import LOG_FORMAT, LOG_LEVEL


def setup_logger(
    level: str = LOG_LEVEL,
    fmt: str = LOG_FORMAT,
    log_dir: Optional[str | Path] = None,
) -> None:
    """
    Configure loguru sinks: stderr always, plus a rotating file under
    ``log_dir`` when given.  ``fmt="json"`` serialises every record.
    """
    serialize = fmt == "json"

    logger.remove()  # remove default handler
    logger.add(sys.stderr, level=level, serialize=serialize)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "diverse_retrieval_{time}.log",
            level=level,
            serialize=serialize,
            rotation="100 MB",
        )
