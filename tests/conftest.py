import os

# Must be set before the app module is imported: it creates tables on import.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["APP_TIMEZONE"] = "America/Los_Angeles"

from zoneinfo import ZoneInfo  # noqa: E402

import pytest  # noqa: E402

from app import app as flask_app  # noqa: E402
from local_storage import LocalStorage  # noqa: E402
from models import User, db  # noqa: E402
from storage import DatabaseStorage, seed_default_categories  # noqa: E402

TZ = ZoneInfo("America/Los_Angeles")


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True, CARD_CREATE_BACKOFF=0, TIMEZONE="America/Los_Angeles",
                           GUEST_SESSION_MAX_BYTES=3800)
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        seed_default_categories()
        yield flask_app
        db.session.remove()


@pytest.fixture
def user(app):
    u = User(id="auth0|alice", email="alice@example.com", first_name="Alice")
    db.session.add(u)
    db.session.commit()
    return u


@pytest.fixture
def other_user(app):
    u = User(id="auth0|bob", email="bob@example.com", first_name="Bob")
    db.session.add(u)
    db.session.commit()
    return u


@pytest.fixture
def db_store(user):
    return DatabaseStorage(user.id, TZ, create_attempts=3, create_backoff=0)


@pytest.fixture
def other_store(other_user):
    return DatabaseStorage(other_user.id, TZ, create_attempts=3, create_backoff=0)


@pytest.fixture
def local_store():
    return LocalStorage({}, TZ)


@pytest.fixture(params=["database", "local"])
def store(request, app, user):
    """Each backend in turn; tests using it must hold for both."""
    if request.param == "database":
        return DatabaseStorage(user.id, TZ, create_attempts=3, create_backoff=0)
    return LocalStorage({}, TZ)


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, user_id):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id


@pytest.fixture
def auth_client(client, user):
    login(client, user.id)
    return client


def daily(name, **extra):
    return {"name": name, "frequency": "daily", **extra}


def weekly(name, day_of_week, **extra):
    return {"name": name, "frequency": "weekly", "day_of_week": day_of_week, **extra}


def monthly(name, **extra):
    return {"name": name, "frequency": "monthly", **extra}
