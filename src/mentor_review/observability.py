from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
import json
import logging
import sys
from threading import Lock
from typing import Iterator

PACKAGE_LOGGER = 'mentor_review'

_task_id_var: ContextVar[str | None] = ContextVar('task_id', default=None)
_mentor_id_var: ContextVar[str | None] = ContextVar('mentor_id', default=None)


def set_task_context(task_id: str | None = None, mentor_id: str | None = None) -> None:
    """Set correlation context for structured log output."""
    _task_id_var.set(task_id)
    _mentor_id_var.set(mentor_id)


@contextmanager
def task_context(*, task_id: str | None = None, mentor_id: str | None = None) -> Iterator[None]:
    """Bind correlation fields for the duration of one request and restore them after."""
    task_token = _task_id_var.set(task_id)
    mentor_token = _mentor_id_var.set(mentor_id)
    try:
        yield
    finally:
        _mentor_id_var.reset(mentor_token)
        _task_id_var.reset(task_token)


def get_task_id() -> str | None:
    return _task_id_var.get(None)


def get_mentor_id() -> str | None:
    return _mentor_id_var.get(None)


class _JsonFormatter(logging.Formatter):
    """One JSON object per line, tagged with the service and the task being reviewed."""

    def __init__(self, service_name: str | None = None):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        if self.service_name:
            payload['service'] = self.service_name
        for key, var in (('task_id', _task_id_var), ('mentor_id', _mentor_id_var)):
            value = getattr(record, key, None) or var.get(None)
            if value:
                payload[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _json_handlers(logger: logging.Logger) -> list[logging.Handler]:
    return [h for h in logger.handlers if isinstance(getattr(h, 'formatter', None), _JsonFormatter)]


def configure_observability(*, service_name: str, otlp_endpoint: str | None) -> None:
    """Install JSON logging on the package logger once, then tracing if an endpoint is set."""
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            logger = logging.getLogger(PACKAGE_LOGGER)
            if not _json_handlers(logger):
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter(service_name=service_name))
                logger.addHandler(handler)
            logger.setLevel(logging.INFO)
            _configured = True

    endpoint = str(otlp_endpoint or '').strip()
    if not endpoint:
        return
    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logging.getLogger(f'{PACKAGE_LOGGER}.observability').warning(
            'OpenTelemetry packages unavailable; tracing disabled for %s', service_name, exc_info=True,
        )
        return

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    with _configure_lock:
        _configured_otlp_endpoint = endpoint
