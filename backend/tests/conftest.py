import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")


@pytest.fixture(scope="session")
def test_engine():
    return create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture(scope="session")
def app(test_engine):
    from backend.app import db as db_module
    from backend.app import main as main_module
    from backend.app import models

    TestingSessionLocal = sessionmaker(bind=test_engine, autoflush=False, autocommit=False)
    db_module.engine = test_engine
    db_module.SessionLocal = TestingSessionLocal
    main_module.engine = test_engine

    models.Base.metadata.create_all(bind=test_engine)
    return main_module.app


@pytest.fixture(autouse=True)
def reset_db(test_engine):
    from backend.app import models

    models.Base.metadata.drop_all(bind=test_engine)
    models.Base.metadata.create_all(bind=test_engine)
    yield


@pytest.fixture()
def db_session(app):
    from backend.app import db as db_module

    session = db_module.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(app):
    with TestClient(app, base_url="https://testserver") as test_client:
        yield test_client
