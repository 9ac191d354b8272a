import os
import re

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["SENDGRID_API_KEY"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import get_password_hash
from database import Base, get_db
from main import app
from models import User
from utils.email import EmailSender, get_email_sender

# Create in-memory SQLite database for testing
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

API_PREFIX = "/api/v1/auth"
TOKEN_PATTERN = re.compile(r"token=([0-9a-f]{64})")


class RecordingEmailSender(EmailSender):
    def __init__(self):
        self.sent = []

    def send(self, to, subject, html):
        self.sent.append({"to": to, "subject": subject, "html": html})

    def last_token(self):
        for message in reversed(self.sent):
            match = TOKEN_PATTERN.search(message["html"])
            if match:
                return match.group(1)
        return None


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def client(db, email_sender):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_email_sender] = lambda: email_sender

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _make_user(db, email, password="testpassword", name="Test User"):
    user = User(name=name, email=email, hashed_password=get_password_hash(password))
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def test_user(db):
    return _make_user(db, "test@example.com")


@pytest.fixture
def other_user(db):
    return _make_user(db, "other@example.com", password="otherpassword", name="Other User")


@pytest.fixture
def login_as(client):
    """Log in through the API and return the bearer headers for that session."""
    def _login(email="test@example.com", password="testpassword", **extra):
        response = client.post(
            f"{API_PREFIX}/login",
            json={"email": email, "password": password, **extra},
            headers={"User-Agent": "Mozilla/5.0 Chrome/120.0"},
        )
        assert response.status_code == 200, response.text
        data = response.json()["data"]
        return {"Authorization": f"Bearer {data['accessToken']}"}

    return _login
