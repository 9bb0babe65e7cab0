"""Structured logging and OpenTelemetry spans for bindery.

This module provides:
- configure_logging: structlog setup (JSON or console rendering)
- stage_span: span + start/complete/fail log events around a pipeline stage
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

if TYPE_CHECKING:
    from opentelemetry.trace import Span, Tracer

TRACER_NAME = "bindery"

_tracer: Tracer | None = None


def get_tracer() -> Tracer:
    """Get the OpenTelemetry tracer for bindery."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(TRACER_NAME)
    return _tracer


def configure_logging(
    *,
    log_level: str = "INFO",
    json_format: bool = False,
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: If True, output JSON; otherwise human-readable console lines.
        add_timestamp: If True, add ISO timestamp to log entries.

    Example:
        >>> configure_logging(log_level="DEBUG", json_format=True)
    """
    processors: list[Any] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        force=True,
    )


@contextmanager
def stage_span(
    stage: str,
    *,
    subject: str | None = None,
    attributes: dict[str, Any] | None = None,
) -> Iterator[Span]:
    """Wrap a pipeline stage in a span with structured log events.

    Args:
        stage: Stage name (toolchain, build, bindgen, assemble, test, publish).
        subject: Target id or language the stage works on.
        attributes: Extra span attributes.

    Yields:
        OpenTelemetry Span instance.

    Example:
        >>> with stage_span("build", subject="linux-x86_64"):
        ...     orchestrator.run(matrix)
    """
    attrs: dict[str, Any] = {"bindery.stage": stage}
    if subject:
        attrs["bindery.subject"] = subject
    if attributes:
        attrs.update(attributes)

    log = structlog.get_logger(TRACER_NAME).bind(stage=stage, subject=subject)

    with get_tracer().start_as_current_span(
        f"bindery.{stage}", kind=SpanKind.INTERNAL, attributes=attrs
    ) as span:
        log.debug("stage_started")
        try:
            yield span
            span.set_status(Status(StatusCode.OK))
            log.debug("stage_completed")
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            log.error("stage_failed", error=str(exc), error_type=type(exc).__name__)
            raise
