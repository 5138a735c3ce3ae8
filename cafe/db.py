import logging
from typing import Callable, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

DATABASE_URL = get_settings().database_url


def make_engine(url: str, **kwargs):
    # For SQLite, enable check_same_thread=False for multithreading in FastAPI
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    connect_args.update(kwargs.pop("connect_args", {}))
    engine = create_engine(url, connect_args=connect_args, future=True, **kwargs)

    # Ensure SQLite enforces foreign keys
    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def run_in_transaction(work: Callable[[Session], T], session_factory: sessionmaker | None = None) -> T:
    """Run ``work`` inside one transaction and return its result.

    The session is committed only if ``work`` returns normally. On any error a
    rollback is attempted and the original error is re-raised; a failing
    rollback is logged and never replaces it. The session is always closed.
    """
    session = (session_factory or SessionLocal)()
    try:
        result = work(session)
        session.commit()
        return result
    except BaseException:
        try:
            session.rollback()
        except SQLAlchemyError:
            logger.exception("rollback failed")
        raise
    finally:
        session.close()
