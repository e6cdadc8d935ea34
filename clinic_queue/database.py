"""Engine construction and schema setup.

SQLite is used for local development and tests, PostgreSQL (through
psycopg2) when ``DATABASE_URL`` points at one.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine

from . import config
from .errors import Fatal
from .models import ClinicSettings


def get_engine(url: Optional[str] = None, **kwargs) -> Engine:
    """Return an engine for ``url`` (defaults to ``DATABASE_URL``)."""
    url = url or config.DATABASE_URL
    if url.startswith("postgres://"):
        # Heroku/Railway style URLs are not accepted by SQLAlchemy
        url = url.replace("postgres://", "postgresql+psycopg2://", 1)
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, **kwargs)


def init_db(engine: Engine) -> None:
    """Create tables if they do not exist and seed the settings row."""
    SQLModel.metadata.create_all(engine)
    with Session(engine) as db:
        if db.get(ClinicSettings, 1) is None:
            db.add(ClinicSettings(id=1))
            db.commit()


def get_settings(db: Session) -> ClinicSettings:
    settings = db.get(ClinicSettings, 1)
    if settings is None:
        settings = ClinicSettings(id=1)
        db.add(settings)
        db.flush()
    return settings


@contextmanager
def session_scope(engine: Engine) -> Iterator[Session]:
    """Yield a session; commit on success, roll back on error.

    Connection failures surface as ``Fatal`` so the caller gets a single
    error type for an unavailable store.
    """
    try:
        with Session(engine, expire_on_commit=False) as db:
            try:
                yield db
                db.commit()
            except BaseException:
                db.rollback()
                raise
    except OperationalError as exc:
        raise Fatal(f"Store unavailable: {exc.orig}") from exc
