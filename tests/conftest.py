import os

os.environ["DATABASE_URL"] = "sqlite:///./test_temp.db"

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from reconciler.database import Base
from reconciler.fulfillment import FulfillmentClient
from reconciler.main import app as fastapi_app
from reconciler.store import DocumentStore
from factories import FakeGateway, make_line_item, make_session
import reconciler.routes

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store():
    s = DocumentStore(TestingSessionLocal())
    yield s
    s.close()


@pytest.fixture
def gateway():
    return FakeGateway(
        sessions={"cs_test_123": make_session()},
        line_items={"cs_test_123": [make_line_item()]},
    )


@pytest.fixture
def fulfillment_calls():
    return []


@pytest.fixture
def fulfillment(fulfillment_calls):
    def handler(request):
        fulfillment_calls.append(request)
        return httpx.Response(200, json={"ok": True})

    client = FulfillmentClient(
        "https://fulfil.example.test",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    yield client
    client.close()


@pytest.fixture
def client(monkeypatch, gateway, fulfillment):
    # Point the request-scoped store at the test database
    monkeypatch.setattr(reconciler.routes, "SessionLocal", TestingSessionLocal)
    monkeypatch.delenv("JWT_SECRET", raising=False)
    fastapi_app.dependency_overrides[reconciler.routes.get_gateway] = lambda: gateway
    fastapi_app.dependency_overrides[reconciler.routes.get_fulfillment] = lambda: fulfillment
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
