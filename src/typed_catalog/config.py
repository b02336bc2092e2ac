"""
Configuration for the typed catalog.

All settings come from environment variables with defaults suitable for
embedding the catalog in a test or a local process.

Invariants:
    - A config object is immutable once built
    - No journal directory means no durable journal
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import json_log_formatter

logger = logging.getLogger(__name__)

LOG_FORMATS = ("text", "json")


@dataclass(frozen=True)
class CatalogConfig:
    """Catalog configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (text, json)
        journal_dir: Directory for the JSON journal, or None for no journal
        loop_max_depth: Upper bound on loop iterations in queries, or None
    """

    log_level: str = "INFO"
    log_format: str = "text"
    journal_dir: Path | None = None
    loop_max_depth: int | None = None

    def __post_init__(self) -> None:
        if self.log_format not in LOG_FORMATS:
            raise ValueError(f"log_format must be one of {', '.join(LOG_FORMATS)}, got {self.log_format!r}")
        if self.loop_max_depth is not None and self.loop_max_depth < 1:
            raise ValueError(f"loop_max_depth must be at least 1, got {self.loop_max_depth}")

    @classmethod
    def from_env(cls) -> CatalogConfig:
        """Load configuration from environment variables."""
        journal_dir = os.getenv("TYPED_CATALOG_JOURNAL_DIR")
        max_depth = os.getenv("TYPED_CATALOG_LOOP_MAX_DEPTH")
        return cls(
            log_level=os.getenv("TYPED_CATALOG_LOG_LEVEL", "INFO"),
            log_format=os.getenv("TYPED_CATALOG_LOG_FORMAT", "text").lower(),
            journal_dir=Path(journal_dir) if journal_dir else None,
            loop_max_depth=int(max_depth) if max_depth else None,
        )


def configure_logging(config: CatalogConfig) -> logging.Handler:
    """Install a stream handler on the ``typed_catalog`` logger.

    Returns the handler so callers can remove it again.
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    package_logger = logging.getLogger("typed_catalog")
    package_logger.setLevel(level)
    package_logger.handlers = [handler]
    logger.debug(f"Logging configured at {config.log_level} ({config.log_format})")
    return handler
