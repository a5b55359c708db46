import os

# Settings must exist before the app modules are imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from coachpay.database import Base, make_engine
from coachpay.main import app as fastapi_app

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = make_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def client(monkeypatch):
    # Point every module that opens sessions at the test database
    monkeypatch.setattr("coachpay.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("coachpay.checkout.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("coachpay.webhook.SessionLocal", TestingSessionLocal)
    with TestClient(fastapi_app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def auth_headers():
    def _headers(user_id="u1", email="a@b.com"):
        token = jwt.encode(
            {"sub": user_id, "email": email, "aud": "authenticated"},
            os.environ["JWT_SECRET"],
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def call_action(client):
    def _call(action, params=None, key="params"):
        body = {"action": action}
        if params is not None:
            body[key] = params
        return client.post("/stripe-helper", json=body)
    return _call


@pytest.fixture
def send_event(client, mocker):
    """Deliver ``event`` to the webhook as if Stripe had signed it."""
    def _send(event):
        mocker.patch("stripe.Webhook.construct_event", return_value=event)
        return client.post(
            "/stripe-webhook",
            content="raw_payload",
            headers={"stripe-signature": "t=1,v1=fake"},
        )
    return _send
