"""
Logging and tracing setup.

Every module logs through ``structlog.get_logger(__name__)``. Output format is
decided once by ``configure_logging``; until it is called structlog's own
defaults apply. Spans are no-ops unless an OpenTelemetry tracer provider is
installed, either by the host application or by ``configure_logging`` when
``OTEL_EXPORTER_OTLP_ENDPOINT`` is set.
"""

import logging
import os
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

SERVICE_NAME = "kernel-session"


def add_otel_trace_info(logger, method_name, event_dict):
    """structlog processor: attach the current span's trace and span ids."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = f"0x{span_context.trace_id:032x}"
        event_dict["span_id"] = f"0x{span_context.span_id:016x}"
    return event_dict


def _install_otlp_exporter(endpoint: str) -> None:
    provider = TracerProvider(resource=Resource(attributes={"service.name": SERVICE_NAME}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None):
    """
    Install the structlog processor chain and send stdlib logging to stderr.

    Args:
        level: Level name; defaults to ``settings.LOG_LEVEL``
        json_output: Force JSON (True) or console (False) rendering. By
            default the console renderer is used on a TTY, JSON otherwise.
    """
    if level is None:
        from .config import settings

        level = settings.LOG_LEVEL
    numeric_level = logging.getLevelName(str(level).upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        _install_otlp_exporter(endpoint)

    if json_output is None:
        json_output = not sys.stderr.isatty()
    renderer = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_otel_trace_info,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    # jupyter_client and traitlets log through the stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)

    logger = structlog.get_logger(__name__)
    if endpoint:
        logger.info("[OTEL] Tracing enabled", endpoint=endpoint)
    return logger


def get_tracer(name=None):
    return trace.get_tracer(name or "kernel_session")


@contextmanager
def kernel_operation(operation: str, kernel_id: str, **attributes) -> Iterator[trace.Span]:
    """
    Run one kernel lifecycle operation inside a span.

    ``kernel_id`` and ``operation`` are bound to the structlog context for
    the duration, so every log line emitted underneath carries them.
    """
    with structlog.contextvars.bound_contextvars(kernel_id=kernel_id, operation=operation):
        with get_tracer().start_as_current_span(f"kernel_session.{operation}") as span:
            span.set_attribute("kernel.id", kernel_id)
            for key, value in attributes.items():
                span.set_attribute(f"kernel.{key}", value)
            yield span
