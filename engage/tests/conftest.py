import os

# the app bootstraps its own database at import; keep that one in memory
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from engage import settings
from engage.db import Base, make_engine
from engage.deps import get_db
from engage.models import DailyTask


@pytest.fixture
def session_factory(tmp_path):
    """File-backed database so that two sessions really interleave."""
    engine = make_engine(f"sqlite:///{tmp_path / 'engage-test.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    with factory() as db:
        for title, kind, reward in settings.DEFAULT_DAILY_TASKS:
            db.add(DailyTask(title=title, kind=kind, reward=reward))
        db.commit()
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def client(session_factory):
    from engage.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
