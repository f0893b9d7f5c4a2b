"""SQLite run journal storage.

The journal records every build attempt for later inspection. It is
informational only: the build history directory stays authoritative and
nothing in the build path reads the journal back.
"""

from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    """Base class for journal ORM models."""

    pass


def get_engine(db_url: str) -> Engine:
    """Create an engine for the journal database.

    For file-backed SQLite the parent directory is created, so a fresh
    cache directory works without setup.

    Args:
        db_url: SQLAlchemy database URL.

    Returns:
        SQLAlchemy Engine instance.
    """
    connect_args: dict[str, Any] = {}
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(url, connect_args=connect_args, echo=False)


def open_journal(db_url: str) -> sessionmaker[Session]:
    """Open the journal, creating its tables on first use.

    Args:
        db_url: SQLAlchemy database URL.

    Returns:
        Session factory bound to the journal.
    """
    # Registers RunRecord with the mapper
    from imagebuild.runs import models as runs_models  # noqa: F401

    engine = get_engine(db_url)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


__all__ = ["Base", "get_engine", "open_journal"]
