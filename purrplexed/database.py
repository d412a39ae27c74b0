"""SQLAlchemy engine and session factory for the usage counter store."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from purrplexed.config import settings


def _connect_args(database_url: str) -> dict:
    # SQLite connections are shared across the relay's worker threads
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url, connect_args=_connect_args(settings.database_url)
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind: Engine | None = None) -> None:
    """Create tables that do not exist yet."""
    # Import models so they register on Base.metadata
    import purrplexed.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
