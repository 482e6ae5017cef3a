"""Centralized logging configuration for the garment capture pipeline."""

import os
import sys
import logging
from typing import Optional


DEFAULT_LOGGER_NAME = "garment-capture"

_FORMATS = {
    "structured": (
        "%(asctime)s | %(name)s | %(levelname)-8s | "
        "%(filename)s:%(lineno)d | %(funcName)s() | %(message)s"
    ),
    "simple": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_level(level: Optional[str] = None) -> int:
    """Numeric level for an explicit name, else ``LOG_LEVEL``, else INFO."""
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def build_formatter(format_type: str = "structured") -> logging.Formatter:
    """Formatter for ``LOG_FORMAT`` (or ``format_type``); unknown names fall back to simple."""
    chosen = os.getenv("LOG_FORMAT", format_type).lower()
    if chosen == "structured":
        return logging.Formatter(_FORMATS["structured"], datefmt=_DATE_FORMAT)
    return logging.Formatter(_FORMATS["simple"])


def setup_logger(
    name: str = DEFAULT_LOGGER_NAME,
    level: Optional[str] = None,
    format_type: str = "structured",
) -> logging.Logger:
    """
    Return the named logger writing to stdout, configuring it on first use.

    ``LOG_LEVEL`` applies when no explicit ``level`` is given and
    ``LOG_FORMAT`` wins over ``format_type``. Unknown levels mean INFO.
    """
    configured = logging.getLogger(name)
    configured.setLevel(resolve_level(level))

    # One stdout handler per logger, however often it is requested
    if not configured.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(build_formatter(format_type))
        configured.addHandler(handler)

    configured.propagate = False
    return configured


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """Logger configured like every other pipeline logger."""
    return setup_logger(name)


def get_component_logger(component: str) -> logging.Logger:
    """Child of the pipeline logger for one component, e.g. ``garment-capture.relay``."""
    return setup_logger(f"{DEFAULT_LOGGER_NAME}.{component}")


logger = setup_logger()
