"""
=============================================================================
AUTH.PY — Identificar al usuario de cada petición
=============================================================================
El login (email, Google...) NO vive aquí: lo hace el proveedor de
autenticación alojado, que entrega al móvil un JWT firmado.

Aquí solo:
  - Verificamos ese JWT con el secreto compartido
  - Sacamos el ID del usuario (claim "sub")
  - Lo inyectamos en los endpoints con Depends

Flujo:
  1. El móvil envía "Authorization: Bearer <token>"
  2. Verificamos firma, caducidad y audiencia
  3. El endpoint recibe el perfil del usuario
"""

import os
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from database import get_db
from models import Profile

# ─────────────────────────────────────────────────────────────────────────────
# CONFIGURACIÓN
# ─────────────────────────────────────────────────────────────────────────────

JWT_SECRET = os.getenv("JWT_SECRET", "habitos-dev-secret-cambiar-en-produccion")
# JWT_SECRET → el mismo secreto con el que firma el proveedor de auth

JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "authenticated")

ALGORITHM = "HS256"

ACCESS_TOKEN_EXPIRE_DAYS = 30


# ─────────────────────────────────────────────────────────────────────────────
# TOKENS JWT
# ─────────────────────────────────────────────────────────────────────────────

def create_access_token(user_id: str, email: str, expires_days: int = ACCESS_TOKEN_EXPIRE_DAYS) -> str:
    """
    Firma un token con la misma forma que los del proveedor de auth.
    Se usa en desarrollo y en los tests.
    """
    expire = datetime.utcnow() + timedelta(days=expires_days)
    to_encode = {
        "sub": user_id,
        "email": email,
        "aud": JWT_AUDIENCE,
        "exp": expire,
    }
    return jwt.encode(to_encode, JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Datos del token, o None si es inválido o ha caducado"""
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM], audience=JWT_AUDIENCE)
    except JWTError:
        return None


# ─────────────────────────────────────────────────────────────────────────────
# DEPENDENCIAS
# ─────────────────────────────────────────────────────────────────────────────

security = HTTPBearer()


def get_token_claims(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """Claims del token. 401 si no vale."""
    payload = decode_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token inválido o caducado",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token sin identificador de usuario",
        )
    return payload


def get_current_user(
    claims: dict = Depends(get_token_claims),
    db: Session = Depends(get_db),
) -> Profile:
    """
    Perfil del usuario autenticado.
    404 si todavía no ha completado el alta (POST /profiles).
    """
    user = db.get(Profile, claims["sub"])
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Usuario no encontrado",
        )
    return user
