from datetime import date
from decimal import Decimal

import pytest

from billing_engine import create_app
from billing_engine.config import TestingConfig
from billing_engine.extensions import db
from billing_engine.models import Client
from billing_engine.services import billing_service
from billing_engine.services.cash_flow_sync import SyncResult


class RecordingSync:
    """Cash-flow adapter double that remembers every notification."""

    def __init__(self, result=None, error=None):
        self.result = result or SyncResult(success=True)
        self.error = error
        self.calls = []

    def sync(self, installment_id, old_status, new_status, payload):
        self.calls.append((installment_id, old_status, new_status, payload))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture()
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def make_client(app):
    def _make(name="Acme Ltda", **fields):
        client = Client(name=name, **fields)
        db.session.add(client)
        db.session.commit()
        return client

    return _make


@pytest.fixture()
def make_billing(make_client):
    def _make(client=None, **fields):
        client = client or make_client()
        values = {
            "description": "Consulting",
            "amount": Decimal("300.00"),
            "due_day": 5,
            "start_date": date(2024, 1, 1),
            "installments": 3,
        }
        values.update(fields)
        return billing_service.create_billing_definition(client_id=client.id, **values)

    return _make


@pytest.fixture()
def recording_sync(app):
    adapter = RecordingSync()
    app.extensions["cash_flow_sync"] = adapter
    yield adapter
    app.extensions.pop("cash_flow_sync", None)
