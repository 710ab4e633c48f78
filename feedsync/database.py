from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase


def make_engine(url: str) -> Engine:
    """
    Create an engine with connection pooling.

    SQLite connections are shared between request handlers and the
    sync loop, so the same-thread check is disabled for them.
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    return create_engine(
        url,
        echo=False,  # Set True for SQL debugging
        pool_pre_ping=True,  # Verify connections before use
        connect_args=connect_args
    )


def make_session_factory(bind: Engine) -> sessionmaker:
    """Session factory for short-lived, per-operation sessions."""
    return sessionmaker(
        bind=bind,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False
    )


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def init_db(bind: Engine) -> None:
    """Create database tables that do not exist yet."""
    # Models register themselves on Base.metadata when imported
    import feedsync.models  # noqa: F401

    Base.metadata.create_all(bind=bind)
