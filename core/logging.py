"""
Logging configuration
"""

import logging
import sys
from typing import Dict, Iterable, Optional
from core.config import settings

MASK = "****"


def setup_logging(level: Optional[str] = None):
    """Configure application logging"""

    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Third-party loggers are noisy at INFO
    for noisy in ("sqlalchemy.engine", "sqlalchemy.pool", "apscheduler", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level_name} level")


def mask_secrets(values: Dict[str, str], secret_names: Iterable[str]) -> Dict[str, str]:
    """Return a copy of a parameter map that is safe to log."""
    secret_lookup = {name.lower() for name in secret_names}
    return {
        key: (MASK if key.lower() in secret_lookup and value else value)
        for key, value in (values or {}).items()
    }
