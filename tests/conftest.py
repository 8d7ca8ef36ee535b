import fakeredis
import pytest

from devicelink import create_app, init_db, request_context
from devicelink.extensions import db


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def app(redis_client):
    app = create_app(
        {
            "DATABASE_URL": "sqlite://",
            "LOG_FILE": "",
            "MAINTENANCE_MODE": False,
            "USE_SUBSCRIPTIONS": True,
            "TRIAL_PERIOD_DAYS": 14,
            "GRACE_PERIOD_DAYS": 3,
            "ID_GEN_ADDRESS": "",
        },
        redis_client=redis_client,
    )
    init_db(app)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    return request_context(ip="203.0.113.7")


@pytest.fixture
def readonly_ctx(app):
    app.config["MAINTENANCE_MODE"] = True
    yield request_context(ip="203.0.113.7")
    app.config["MAINTENANCE_MODE"] = False
