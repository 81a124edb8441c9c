from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cadence.db.base import Base


def create_db_engine(database_url: str, timeout_seconds: int = 30) -> Engine:
    """Build an engine for one job/worker; the caller owns and disposes it."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": timeout_seconds}}
        if ":memory:" in database_url or database_url == "sqlite://":
            # Single shared connection so every session sees the same in-memory database
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_recycle=300,      # Recycle connections every 5 minutes
        pool_pre_ping=True,    # Validate connections before use
        pool_timeout=timeout_seconds,
        connect_args={"options": f"-c statement_timeout={timeout_seconds * 1000}"}
        if database_url.startswith("postgresql") else {},
        echo=False,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    from cadence.reminders import unified_models  # noqa: F401  (registers tables)
    Base.metadata.create_all(bind=engine)
