"""
=============================================================================
DATABASE.PY — Configuración de la Base de Datos (Ledger Store)
=============================================================================
Este archivo configura la conexión a la base de datos donde viven todos
los hechos de la gamificación: hábitos, completados, stats, logros,
amistades y parcerías de racha.

En DESARROLLO: usa SQLite (un archivo .db)
En PRODUCCIÓN: usa PostgreSQL (DATABASE_URL)

¿Cómo sabe cuál usar?
→ Si existe la variable de entorno DATABASE_URL, usa esa.
→ Si no existe, usa SQLite local.

La BD garantiza durabilidad y atomicidad POR FILA. No hay transacciones
que crucen hábitos + stats + racha + logros + parcerías: cada servicio
hace commit de lo suyo (ver store.py).
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# ─────────────────────────────────────────────────────────────────────────────
# CONEXIÓN
# ─────────────────────────────────────────────────────────────────────────────

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./habitos.db")

# Los proveedores dan la URL con "postgres://" pero SQLAlchemy necesita
# "postgresql+psycopg://" (driver psycopg v3)
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg://", 1)
elif DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg://", 1)


# ─────────────────────────────────────────────────────────────────────────────
# ENGINE (Motor de la base de datos)
# ─────────────────────────────────────────────────────────────────────────────

def make_engine(url: str):
    """
    Crea un engine para la URL dada.
    connect_args={"check_same_thread": False} → solo para SQLite, que por
    defecto no permite usar una conexión desde varios hilos.
    """
    engine_args = {}
    if url.startswith("sqlite"):
        engine_args["connect_args"] = {"check_same_thread": False}
    return create_engine(url, echo=False, **engine_args)


engine = make_engine(DATABASE_URL)

# ─────────────────────────────────────────────────────────────────────────────
# SESSION (Sesión de base de datos)
# ─────────────────────────────────────────────────────────────────────────────
# Una sesión es una "conversación" con la BD. SessionLocal es la fábrica.

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# ─────────────────────────────────────────────────────────────────────────────
# BASE (Clase base para los modelos)
# ─────────────────────────────────────────────────────────────────────────────

Base = declarative_base()


def get_db():
    """
    Generador que crea una sesión de BD y la cierra al terminar.

    Se usa como "dependencia" en FastAPI:
      @app.get("/algo")
      def mi_endpoint(db: Session = Depends(get_db)):
          ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """
    Crea todas las tablas en la BD si no existen.
    Se llama una vez al arrancar la aplicación (y en los tests con su
    propio engine).
    """
    # Importar los modelos registra sus tablas en Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
