"""
=============================================================================
ERRORS.PY — Errores del motor de gamificación
=============================================================================
Taxonomía:
  ValidationError → el usuario puede corregirlo (mensaje para la UI)
  NotFoundError   → la entidad referenciada no existe (precondición rota)
  StoreError      → fallo de E/S de la BD, se puede reintentar
  ConflictError   → conflicto de concurrencia optimista

main.py traduce cada uno a su código HTTP.
"""


class GamificationError(Exception):
    """Base de todos los errores del dominio"""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(GamificationError):
    """Entrada incorrecta. El mensaje se muestra tal cual al usuario."""


class NotFoundError(GamificationError):
    """La entidad (stats, hábito, parcería...) no existe"""


class StoreError(GamificationError):
    """La BD falló. No asumir que el estado cambió."""


class ConflictError(GamificationError):
    """Otro proceso modificó la fila antes que nosotros"""
