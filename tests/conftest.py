import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from config import config
from data.database import Base, get_db
from main import app
from models.ab_tests import ABTestCreate
from services import registry
from services.audit import AuditLogger, get_audit_logger
from services.cache import get_cache_client, get_in_memory_cache_client

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
config.valid_tokens = ["fake-client-token"]

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield

@pytest.fixture
def session_factory():
    """For tests that need more than one independent session."""
    return TestingSessionLocal

@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

@pytest.fixture
def cache():
    return get_in_memory_cache_client()

@pytest.fixture
def audit():
    return AuditLogger(TestingSessionLocal)

@pytest.fixture
def client(cache, audit):
    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache_client] = lambda: cache
    app.dependency_overrides[get_audit_logger] = lambda: audit
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def checkout_definition(**overrides) -> ABTestCreate:
    data = {
        "name": "checkout_button_color",
        "display_name": "Checkout button color",
        "hypothesis": "A red checkout button converts better.",
        "traffic_allocation": 100,
        "success_metrics": {"primary": "conversion"},
        "variants": [
            {"name": "control", "display_name": "Blue button", "is_control": True,
             "traffic_weight": 50, "configuration": {"color": "blue"}},
            {"name": "red_button", "display_name": "Red button",
             "traffic_weight": 50, "configuration": {"color": "red"}},
        ],
    }
    data.update(overrides)
    return ABTestCreate(**data)

@pytest.fixture
def make_definition():
    return checkout_definition

@pytest.fixture
def active_test(db_session, cache):
    """The checkout_button_color test, created and activated."""
    registry.create_test(db_session, checkout_definition(), created_by="admin-1")
    return registry.transition_test(db_session, cache, "checkout_button_color", "activate")
