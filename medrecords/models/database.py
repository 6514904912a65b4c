from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from medrecords.config import settings
from medrecords.errors import StorageUnavailableError


def build_engine(url: str):
    kwargs = {"pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = 5
    return create_engine(url, **kwargs)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


class Base(DeclarativeBase):
    pass


def get_db():
    """FastAPI dependency that yields a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def storage_guard(db: Session, operation: str):
    """
    Translate driver failures into StorageUnavailableError.

    The session is rolled back first so nothing from the failed unit of work
    (mutation or audit entry) survives.
    """
    try:
        yield
    except IntegrityError:
        # constraint violations are concurrency signals, the caller decides
        db.rollback()
        raise
    except DBAPIError as exc:
        db.rollback()
        raise StorageUnavailableError(f"Storage unavailable during {operation}") from exc


def commit(db: Session, operation: str) -> None:
    with storage_guard(db, operation):
        db.commit()
