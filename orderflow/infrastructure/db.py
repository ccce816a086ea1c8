from typing import Iterator, Optional
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from orderflow.core_settings import get_settings
from orderflow.domain.models import Base

_engine: Optional[Engine] = None
SessionLocal = sessionmaker(autoflush=False, autocommit=False, expire_on_commit=False)


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(url, echo=False, future=True,
                               connect_args={"check_same_thread": False, "timeout": 30})

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine
    return create_engine(url, echo=False, future=True, pool_pre_ping=True)


def configure(url: Optional[str] = None) -> Engine:
    """(Re)bind the session factory, e.g. to a test database."""
    global _engine
    _engine = make_engine(url or get_settings().database_url)
    SessionLocal.configure(bind=_engine)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        configure()
    return _engine


def get_db() -> Iterator[Session]:
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_models():
    Base.metadata.create_all(get_engine())
