"""
=============================================================================
SENTRY_CONFIG.PY — Reporte de errores (Sentry)
=============================================================================
Solo se activa si existe SENTRY_DSN. Sin DSN la app funciona igual y
los errores quedan solo en los logs.

Los logger.error(...) de los servicios llegan a Sentry como eventos
gracias a LoggingIntegration.
"""

import logging
import os

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger("habitos.sentry")

SENTRY_DSN = os.getenv("SENTRY_DSN")
SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))


def init_sentry() -> bool:
    """Inicializa Sentry. Retorna True si quedó activo."""
    if not SENTRY_DSN:
        logger.info("Sentry desactivado (sin SENTRY_DSN)")
        return False

    sentry_sdk.init(
        dsn=SENTRY_DSN,
        environment=SENTRY_ENVIRONMENT,
        traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
    )
    logger.info(f"🛰️ Sentry activo: environment={SENTRY_ENVIRONMENT}")
    return True


def set_user_context(user_id: str) -> None:
    """Asocia los eventos de esta petición al usuario"""
    if SENTRY_DSN:
        sentry_sdk.set_user({"id": user_id})


def capture_exception(exception: Exception, **extra_context) -> None:
    """Envía la excepción con contexto extra como tags"""
    if not SENTRY_DSN:
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in extra_context.items():
            scope.set_tag(key, str(value))
        sentry_sdk.capture_exception(exception)
