"""Configuración de logging estructurado con structlog."""

import logging

import structlog


# configure_logging: Instala los procesadores de structlog según la configuración.
def configure_logging(settings) -> None:
    renderer = structlog.processors.JSONRenderer() if settings.log_json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.log_level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


# token_hint: Prefijo corto del token para correlacionar logs sin exponer la sesión.
def token_hint(token: str) -> str:
    if not token:
        return ''
    return token[:8] + '...'
