from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from docsync.config import settings

DATABASE_URL = settings.DATABASE_URL


def make_engine(url: str, **kwargs):
    """Create an engine with connection settings suited to the backend."""
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            # Share the single in-memory database across sessions.
            kwargs.setdefault("poolclass", StaticPool)
        return create_engine(url, connect_args=connect_args, echo=False, **kwargs)

    # PostgreSQL connection settings
    connect_args = {
        "connect_timeout": 10,
        "keepalives": 1,
        "keepalives_idle": 30,
        "keepalives_interval": 10,
        "keepalives_count": 5,
    }
    return create_engine(
        url,
        connect_args=connect_args,
        echo=False,  # keep SQL logging off by default
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,
        pool_timeout=30,
        **kwargs,
    )


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind=None) -> None:
    """Create all tables that do not exist yet (development / tests)."""
    from docsync.models_sqlalchemy import models  # noqa: F401 - register tables

    Base.metadata.create_all(bind=bind or engine)
