import os
import tempfile
from datetime import datetime, timedelta

_tmpdir = tempfile.mkdtemp(prefix="guias-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_tmpdir, "test.db")
os.environ["JWT_SECRET"] = "test-secret-key-that-is-long-enough-for-hs256"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CREATE_REFERENCE_TABLES"] = "true"
os.environ["REVOCATION_BACKEND"] = "memory"

import pytest
from fastapi.testclient import TestClient

from guias import services
from guias.api import app
from guias.auth import auth_service, token_service
from guias.authentication import AuthService
from guias.database import Base, SessionLocal, engine, init_db
from guias.tokens import InMemoryRevokedTokenStore, TokenService

PASSWORD = "Secret1!pass"

init_db()


class FakeEmailSender:
    """Collects outgoing mail instead of delivering it."""

    def __init__(self, succeed=True):
        self.succeed = succeed
        self.sent = []

    def send_email(self, to, subject, html_body):
        self.sent.append((to, subject, html_body))
        return self.succeed


class FakeClock:
    def __init__(self, now=None):
        self.now = now or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def clean_db():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def email_sender(monkeypatch):
    sender = FakeEmailSender()
    monkeypatch.setattr(auth_service, "email_sender", sender)
    return sender


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_auth_service(clock):
    def factory(sender=None, codes=None):
        tokens = TokenService(
            secret=os.environ["JWT_SECRET"],
            issuer="GuiasBackend",
            audience="GuiasBackendAPI",
            lifetime_hours=24,
            store=InMemoryRevokedTokenStore(),
        )
        kwargs = {"clock": clock}
        if codes is not None:
            kwargs["code_generator"] = lambda: next(codes)
        return AuthService(SessionLocal, tokens, sender or FakeEmailSender(), **kwargs)

    return factory


@pytest.fixture
def make_user():
    def factory(username="alice", email=None, role="USER", password=PASSWORD, **kwargs):
        return services.create_user(
            username=username,
            password=password,
            email=email or f"{username}@example.com",
            first_names=kwargs.get("first_names", username.title()),
            last_names=kwargs.get("last_names", "Tester"),
            role=role,
        )

    return factory


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def admin(make_user):
    return make_user("admin", role="ADMIN")


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {token_service.issue(admin)}"}


@pytest.fixture
def user(make_user):
    return make_user("alice")


@pytest.fixture
def user_headers(user):
    return {"Authorization": f"Bearer {token_service.issue(user)}"}
