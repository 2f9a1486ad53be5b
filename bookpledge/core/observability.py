"""Process-wide observability state: tracing and the error-reporting sink.

Initialised once per process with ``init_observability()`` and handed to
request handlers and jobs by reference (``get_observability()``). Repeated
initialisation is a no-op.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from bookpledge.core.config import settings
from bookpledge.core.logging import get_request_id
from bookpledge.core.metrics import errors_captured_total

logger = logging.getLogger("bookpledge")


class Observability:
    """Tracer plus exception sink. One instance per process."""

    def __init__(self, enabled: bool, exporter_name: str = "console", service_name: str = "bookpledge"):
        self.enabled = enabled
        self.exporter = None
        self.tracer = None
        if not enabled:
            return

        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        if exporter_name == "memory":
            self.exporter = InMemorySpanExporter()
        else:
            self.exporter = ConsoleSpanExporter()
        provider.add_span_processor(SimpleSpanProcessor(self.exporter))
        # Local provider: never replaces a globally installed one
        self.tracer = provider.get_tracer(service_name)

    @contextmanager
    def start_span(self, name: str, attributes: Optional[Dict[str, object]] = None):
        if not self.enabled or self.tracer is None:
            yield None
            return
        with self.tracer.start_as_current_span(name) as span:
            if attributes:
                for k, v in attributes.items():
                    span.set_attribute(k, v)
            yield span

    def capture_exception(self, exc: BaseException, context: Optional[Dict[str, object]] = None) -> None:
        source = str((context or {}).get("source", "app"))
        errors_captured_total.inc(labels={"source": source})
        logger.error(
            "exception.captured",
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={
                "request_id": get_request_id(),
                "error_type": type(exc).__name__,
                **{f"ctx_{k}": v for k, v in (context or {}).items()},
            },
        )
        if self.enabled:
            span = trace.get_current_span()
            if span.is_recording():
                span.record_exception(exc)

    def finished_spans(self):
        if self.exporter is not None and hasattr(self.exporter, "get_finished_spans"):
            return self.exporter.get_finished_spans()
        return []


_observability: Optional[Observability] = None
_init_lock = threading.Lock()


def init_observability(enabled: Optional[bool] = None, exporter_name: Optional[str] = None) -> Observability:
    """Create the process-wide instance on first call; later calls return it."""
    global _observability
    with _init_lock:
        if _observability is None:
            flag = settings.OTEL_ENABLED if enabled is None else bool(enabled)
            _observability = Observability(flag, exporter_name or settings.OTEL_EXPORTER)
        return _observability


def get_observability() -> Observability:
    return _observability or init_observability()


def reset_observability() -> None:
    """Drop the process-wide instance (tests only)."""
    global _observability
    with _init_lock:
        _observability = None


def capture_exception(exc: BaseException, context: Optional[Dict[str, object]] = None) -> None:
    get_observability().capture_exception(exc, context)


@contextmanager
def start_span(name: str, attributes: Optional[Dict[str, object]] = None):
    with get_observability().start_span(name, attributes) as span:
        yield span
