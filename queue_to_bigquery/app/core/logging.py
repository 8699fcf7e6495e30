"""Loguru sink setup for the pipeline process."""
from __future__ import annotations

import sys

from loguru import logger


def configure_logging(level: str = "INFO", *, json: bool = True) -> None:
    """Replace loguru's default handler with a single stderr sink.

    With ``json`` enabled every record is serialised, so the ``service_name`` /
    ``event`` fields bound by callers end up as structured keys.
    """
    logger.remove()
    if json:
        logger.add(sys.stderr, level=level.upper(), serialize=True)
    else:
        logger.add(
            sys.stderr,
            level=level.upper(),
            format="{time:YYYY-MM-DDTHH:mm:ss.SSSZ} | {level} | {extra[event]} | {message} {extra}",
        )
    logger.configure(extra={"service_name": "", "event": ""})
