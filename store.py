"""
=============================================================================
STORE.PY — Escrituras contra la BD
=============================================================================
Dos reglas:
  1. Un fallo de la BD se convierte en StoreError (después de rollback).
     Quien llama NO debe asumir que algo cambió.
  2. Las mutaciones que pueden competir entre usuarios (contar un día de
     parcería, desbloquear un logro) se escriben como UPDATE condicional:
     "actualiza SOLO si la fila sigue como yo la vi". El número de filas
     afectadas dice si ganamos la carrera.
"""

import logging

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import StoreError

logger = logging.getLogger("habitos.store")


def commit(db: Session, action: str) -> None:
    """Hace commit; si falla, rollback + StoreError"""
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Error de BD en '{action}': {e}")
        raise StoreError(f"No se pudo guardar ({action})") from e


def conditional_update(db: Session, model, conditions: list, values: dict, action: str) -> int:
    """
    UPDATE model SET values WHERE conditions, en un solo statement.

    Devuelve cuántas filas cambió (0 → otra petición llegó antes, o la
    condición ya no se cumple). Hace commit inmediatamente.
    """
    stmt = (
        update(model)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Error de BD en '{action}': {e}")
        raise StoreError(f"No se pudo guardar ({action})") from e
    return result.rowcount
