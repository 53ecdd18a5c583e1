import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy import create_engine
from .config import settings
from .errors import PersistenceError


log = structlog.get_logger(__name__)

_is_sqlite = settings.database_url.startswith("sqlite")

engine = create_engine(
    settings.database_url,
    future=True,
    pool_pre_ping=True,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
    **({} if _is_sqlite else {"pool_size": 5, "max_overflow": 10, "pool_recycle": 3600}),
)

# Fresh Session per request; never share one across requests
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit_or_rollback(db: Session, operation: str, **context) -> None:
    """
    Commit the session. On failure roll back, log, and raise PersistenceError
    so the caller sees the pre-write state. No retries.
    """
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        log.error("commit_failed", operation=operation, error=str(exc), **context)
        raise PersistenceError(f"Could not save {operation}; nothing was changed") from exc
