import pytest

from app import create_app
from config import Config
from models import db
from models.provider import Provider
from models.service import Service
from models.user import User, Role
from security.password import hash_password

PASSWORD = "secret123"


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    AUTO_CREATE_TABLES = True
    BCRYPT_ROUNDS = 4
    SMTP_HOST = None
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_dummy"
    STRIPE_SUCCESS_URL = "http://localhost:5173/pay/success"
    STRIPE_CANCEL_URL = "http://localhost:5173/pay/cancel"
    PAYMENT_CURRENCY = "inr"
    SLOT_HOLD_MINUTES = 15
    PENDING_BOOKING_TTL_MINUTES = 60


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def sent_emails(monkeypatch):
    sent = []

    def fake_send(to_email, subject, body):
        sent.append({"to": to_email, "subject": subject, "body": body})
        return True, None

    monkeypatch.setattr("utils.notifications.send_email", fake_send)
    return sent


@pytest.fixture
def make_user(ctx):
    def _make(name="Asha", email=None, role="USER"):
        user = User(
            name=name,
            email=email or f"{name.lower()}@example.com",
            password_hash=hash_password(PASSWORD),
        )
        user.roles.append(Role.query.filter_by(name=role).first())
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def make_provider(make_user):
    def _make(name="Ravi"):
        user = make_user(name=name, role="PROVIDER")
        provider = Provider(user_id=user.id, name=name, availability=[], certifications=[])
        db.session.add(provider)
        db.session.commit()
        return provider
    return _make


@pytest.fixture
def make_service(ctx):
    from marketplace.reservation import rebuild_provider_availability

    def _make(provider, name="Haircut", availability=None, price=500):
        service = Service(
            provider_id=provider.id,
            name=name,
            description=f"{name} at home",
            price=price,
            duration="45 min",
            availability=availability or [],
        )
        db.session.add(service)
        db.session.flush()
        rebuild_provider_availability(provider)
        db.session.commit()
        return service
    return _make


def csrf_from(resp):
    for header in resp.headers.getlist("Set-Cookie"):
        if header.startswith("csrf_token="):
            return header.split(";", 1)[0].split("=", 1)[1]
    return None


def signup(client, name, email, role="user"):
    """Register + login through the API. Returns headers carrying the CSRF token."""
    resp = client.post("/auth/register", json={
        "name": name, "email": email, "password": PASSWORD, "role": role,
    })
    assert resp.status_code == 201, resp.get_json()
    resp = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.get_json()
    return {"X-CSRF-Token": csrf_from(resp)}
