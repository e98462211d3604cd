from datetime import datetime

import pytest
from flask_jwt_extended import create_access_token

from circulation import create_app
from circulation.clock import FixedClock
from circulation.config import TestConfig
from circulation.extensions import db
from circulation.gateway import SimulatedGateway
from circulation.services.inventory_service import InventoryService

START = datetime(2024, 1, 1, 10, 0, 0)


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def gateway():
    return SimulatedGateway()


@pytest.fixture
def app(clock, gateway):
    app = create_app(TestConfig, clock=clock, gateway=gateway)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    def _headers(member_id=1, role="member"):
        token = create_access_token(identity=str(member_id), additional_claims={"role": role})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def make_title(app):
    counter = {"n": 0}

    def _make(total=1, title=None):
        counter["n"] += 1
        return InventoryService.add_title({
            "title": title or f"Book {counter['n']}",
            "author": "Author",
            "isbn": f"978000000{counter['n']:04d}",
            "total_copies": total,
        })
    return _make
