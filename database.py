"""
=============================================================================
DATABASE.PY — Configuración de la Base de Datos
=============================================================================
Conexión, sesiones y clase base de los modelos de QuestLine.

En DESARROLLO: SQLite (un archivo .db local)
En PRODUCCIÓN: PostgreSQL (variable de entorno DATABASE_URL)

Todas las fechas se guardan en UTC "naive" (sin tzinfo). Las conversiones a
la zona horaria de la aplicación se hacen solo al comparar días de calendario.
"""

import os
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# ─────────────────────────────────────────────────────────────────────────────
# CONEXIÓN
# ─────────────────────────────────────────────────────────────────────────────

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./questline.db")

# Railway/Heroku dan la URL con "postgres://", SQLAlchemy + psycopg v3
# necesitan "postgresql+psycopg://"
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg://", 1)
elif DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg://", 1)


def build_engine(url: str):
    """
    Crea un engine para la URL dada.
    SQLite necesita check_same_thread=False porque FastAPI ejecuta los
    endpoints síncronos en un pool de hilos.
    """
    engine_args = {}
    if url.startswith("sqlite"):
        engine_args["connect_args"] = {"check_same_thread": False}
    return create_engine(url, echo=False, **engine_args)


engine = build_engine(DATABASE_URL)

# ─────────────────────────────────────────────────────────────────────────────
# SESSION
# ─────────────────────────────────────────────────────────────────────────────

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# ─────────────────────────────────────────────────────────────────────────────
# BASE
# ─────────────────────────────────────────────────────────────────────────────

Base = declarative_base()


def utcnow() -> datetime:
    """Hora actual en UTC sin tzinfo (el formato en el que guardamos fechas)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """
    Dependencia de FastAPI: abre una sesión por petición y la cierra al final.

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
    """Crea las tablas que falten. Se llama una vez al arrancar."""
    # Importar los modelos registra sus tablas en Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
