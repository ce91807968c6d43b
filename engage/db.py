from __future__ import annotations
import os
from contextlib import contextmanager
from typing import Iterator
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session
from sqlalchemy.pool import StaticPool

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./engage.db")


def make_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, pool_pre_ping=True)
    connect_args = {"check_same_thread": False}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every checkout sees an empty db
        return create_engine(
            url, echo=False, connect_args=connect_args, poolclass=StaticPool
        )
    return create_engine(url, echo=False, connect_args=connect_args)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run the enclosed writes as one unit: commit on exit, roll back on error.

    Flush-time failures (constraint violations) surface from the commit and
    are re-raised after the rollback, so callers can translate them.
    """
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
