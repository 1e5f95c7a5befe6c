"""
Storefront Core - Database Configuration
=========================================
Engine, SessionLocal, Base, get_db and the transaction helper.
All models across all modules inherit from this Base.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from config.settings import DATABASE_URL, DB_ECHO

logger = logging.getLogger("storefront.database")


def build_engine(url: str = DATABASE_URL, **kwargs):
    """Create an engine; SQLite connections are shared across threads."""
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        return create_engine(url, echo=DB_ECHO, connect_args=connect_args, **kwargs)
    return create_engine(
        url,
        echo=DB_ECHO,
        pool_size=20,
        max_overflow=40,
        pool_timeout=30,
        pool_recycle=1800,  # Refresh connections every 30 minutes
        **kwargs,
    )


engine = build_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def import_models():
    """Register every module's tables on Base.metadata."""
    import modules.catalog.models  # noqa: F401
    import modules.inventory.models  # noqa: F401
    import modules.coupon.models  # noqa: F401
    import modules.cart.models  # noqa: F401
    import modules.order.models  # noqa: F401


def init_db(bind=None):
    """Create all tables on the given engine (defaults to the configured one)."""
    import_models()
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """Yields a database session, auto-closes after use."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session):
    """
    Unit of work: commit on success, rollback on any exception.
    Storage failures are re-raised as PersistenceError so callers
    can retry the whole operation.
    """
    from common.exceptions import PersistenceError

    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Transaction rolled back: {e}")
        raise PersistenceError(str(e)) from e
    except Exception:
        db.rollback()
        raise
