"""Centralized logging configuration for API and CLI entrypoints."""

import logging
import sys
from typing import Optional

from companionai.config import Settings


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure the root logger once per process.

    Args:
        settings: Settings instance; environment defaults are used when omitted.

    Edge cases:
        Unknown `LOG_LEVEL` names fall back to `INFO`.
    """
    if settings is None:
        settings = Settings.from_env()

    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger("companionai").setLevel(level)
