"""Logging and tracing setup for the Helpdesk API."""

from __future__ import annotations

import logging
from logging.config import dictConfig

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from helpdesk import __version__
from helpdesk.core.config import Settings

APP_LOGGER = "helpdesk"

_active_provider: TracerProvider | None = None


def _parse_headers(header_string: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` OTLP header strings; malformed pairs are skipped."""

    headers: dict[str, str] = {}
    for item in (header_string or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(settings: Settings) -> logging.Logger:
    """Install handlers once per process and return the ``helpdesk`` logger.

    SQL statements are only logged when ``database_echo`` is on; access logs
    are quietened outside development.
    """

    level = _level(settings.log_level)
    noisy = logging.INFO if settings.environment == "development" else logging.WARNING
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {"format": settings.log_format},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "stream": "ext://sys.stdout",
                },
            },
            "root": {"handlers": ["console"], "level": level},
            "loggers": {
                APP_LOGGER: {"level": level},
                "sqlalchemy.engine": {"level": logging.INFO if settings.database_echo else logging.WARNING},
                "uvicorn.access": {"level": noisy},
            },
        }
    )

    logger = logging.getLogger(APP_LOGGER)
    logger.debug("Logging configured for %s (%s)", settings.app_name, settings.environment)
    return logger


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Register an OTLP tracer provider when tracing is enabled.

    Returns ``None`` when tracing is disabled or a provider is already active.
    """

    global _active_provider

    if _active_provider is not None or not settings.otel_enabled:
        return None

    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": __version__,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)

    exporter_kwargs: dict[str, object] = {}
    if settings.otel_exporter_otlp_endpoint:
        exporter_kwargs["endpoint"] = settings.otel_exporter_otlp_endpoint
    headers = _parse_headers(settings.otel_exporter_otlp_headers)
    if headers:
        exporter_kwargs["headers"] = headers
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))

    trace.set_tracer_provider(provider)
    _active_provider = provider
    logging.getLogger(APP_LOGGER).info("Tracing enabled for %s", settings.otel_service_name)
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    """Flush and stop ``provider``; a ``None`` provider is ignored."""

    global _active_provider

    if provider is None:
        return
    provider.shutdown()
    if provider is _active_provider:
        _active_provider = None
