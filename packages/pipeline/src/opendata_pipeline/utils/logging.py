"""
utils/logging.py — structlog setup for the ingestion core.

Records go to stderr so `opendata download` can stream an export on stdout.
Each CLI command runs inside resource_context(), which binds the resource
URL and declared format through contextvars; every record emitted while a
resource is fetched, sniffed or aggregated then carries both keys without
threading them through call signatures.

Usage:
    from opendata_pipeline.utils.logging import configure_logging, resource_context

    configure_logging(log_level="DEBUG", log_format="json")
    with resource_context("https://gdi.berlin.de/services/wfs/kita", "WFS"):
        await service.preview(resource)
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from opendata_shared.config import settings


def _level_number(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def configure_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """Install the stderr renderer; safe to call again with new options."""
    level = _level_number(log_level or settings.log_level)
    fmt = log_format or settings.log_format

    # httpx logs every request at INFO; keep it quiet unless debugging
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level, force=True)
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    renderer: Any
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    return logger.bind(**initial_values) if initial_values else logger  # type: ignore[return-value]


@contextmanager
def resource_context(url: str, declared_format: str = "") -> Iterator[None]:
    """Bind resource_url / declared_format to every record logged inside."""
    with structlog.contextvars.bound_contextvars(
        resource_url=url, declared_format=declared_format or None
    ):
        yield
