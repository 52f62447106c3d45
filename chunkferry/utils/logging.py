from __future__ import annotations

import logging
from logging import Logger
from typing import Optional, Union

LOGGER_NAME = "chunkferry"


def setup_logger(
    name: str = LOGGER_NAME, logfile: Optional[str] = None, level: Union[int, str] = logging.INFO
) -> Logger:
    """Configure the package logger once; module loggers (chunkferry.*) propagate to it."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        logger.addHandler(ch)
        if logfile:
            fh = logging.FileHandler(logfile, encoding="utf-8")
            fh.setLevel(level)
            fh.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
            logger.addHandler(fh)
    return logger
