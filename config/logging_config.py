"""Centralized logging configuration."""

import logging
import sys
from typing import Optional

from .settings import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[str] = None, settings: Optional[Settings] = None) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name; overrides settings
        settings: Settings instance, loaded from the environment if None
    """
    if level is None:
        level = (settings or Settings()).log_level

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    # boto3/botocore are noisy at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
