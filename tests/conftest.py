import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")

import pytest
from sqlalchemy.orm import sessionmaker

from core.db import DB, build_engine
from core.models import Base


@pytest.fixture()
def server_db(tmp_path):
    db_path = tmp_path / "contextpalace.sqlite"
    engine = build_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = sessionmaker(bind=engine)
    try:
        yield engine
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture()
def db_session(server_db):
    session = DB.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def reload_shard(server_db):
    """Fetch a fresh copy of a shard row outside any service session."""
    from core.models import Shard

    def _reload(shard_id):
        session = DB.SessionLocal()
        try:
            return session.query(Shard).filter(Shard.id == shard_id).first()
        finally:
            session.close()

    return _reload
