"""Database session management"""
import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from redemption_engine.core.config import settings
from redemption_engine.models import Base

logger = logging.getLogger(__name__)

# Create engine
engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    pool_recycle=3600
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database (create all tables)"""
    Base.metadata.create_all(bind=engine)


@contextmanager
def transaction(db: Session = None):
    """Scope a unit of work: commit when the block exits cleanly, roll back
    and re-raise on any exception.

    When no session is passed a new one is opened and closed afterwards.
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        yield db
        db.commit()
    except Exception:
        logger.warning("Rolling back transaction", exc_info=True)
        db.rollback()
        raise
    finally:
        if should_close:
            db.close()
