"""
Logging setup for the extraction service.

One stdout handler on the root logger. Levels come from settings:
- LOG_LEVEL: root level (default INFO)
- LOG_FORMAT: "structured" (default) or "simple"
- LOG_LEVEL_AI_CLIENT / LOG_LEVEL_EXTRACTION / LOG_LEVEL_API: per-area overrides

Every service line carries its request id in brackets, e.g.:

    2026-10-19 09:12:44 | INFO     | ai_clients.base              | [4f2c...] gemini/gemini-2.5-flash try 1/6 ok in 3.2s
"""

import logging
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from analyst.config import Settings


# Settings suffix -> logger subtree
MODULE_LOGGERS = {
    "ai_client": "analyst.services.ai_clients",
    "extraction": "analyst.services.extraction",
    "api": "analyst.api",
}

# Longest prefix first
NAME_PREFIXES = (
    ("analyst.services.", ""),
    ("analyst.api.", "api."),
    ("analyst.", ""),
)

# httpx logs request URLs, and the Gemini key travels in the query string
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

SIMPLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def short_logger_name(name: str) -> str:
    """Drop the package prefix: analyst.services.extraction.ranker -> extraction.ranker."""
    for prefix, replacement in NAME_PREFIXES:
        if name.startswith(prefix):
            return replacement + name[len(prefix):]
    return name


class StructuredFormatter(logging.Formatter):
    """timestamp | LEVEL | logger | message"""

    def format(self, record: logging.LogRecord) -> str:
        line = " | ".join(
            (
                self.formatTime(record, "%Y-%m-%d %H:%M:%S"),
                f"{record.levelname:8}",
                f"{short_logger_name(record.name):28}",
                record.getMessage(),
            )
        )
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _level(name: str | None, default: int) -> int:
    if not name:
        return default
    return getattr(logging, name.upper(), default)


def setup_logging(settings: "Settings") -> None:
    """
    Install the stdout handler and apply configured levels.

    Safe to call more than once; previous root handlers are replaced.

    Args:
        settings: Application settings with log configuration
    """
    root_level = _level(settings.log_level, logging.INFO)
    formatter = (
        StructuredFormatter()
        if settings.log_format == "structured"
        else logging.Formatter(SIMPLE_FORMAT)
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(root_level)

    for suffix, logger_name in MODULE_LOGGERS.items():
        override = getattr(settings, f"log_level_{suffix}", None)
        if override:
            logging.getLogger(logger_name).setLevel(_level(override, root_level))

    for logger_name in QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
