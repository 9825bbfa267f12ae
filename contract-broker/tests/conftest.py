import os

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from contract_broker.config import Settings
from contract_broker.core.broker import Broker
from contract_broker.core.evaluator import DeploymentPolicy
from contract_broker.main import create_app
from contract_broker.storage.database import Database


@pytest.fixture(scope="session", autouse=True)
def set_env():
    os.environ.setdefault("LOG_LEVEL", "INFO")
    os.environ.setdefault("DATABASE_URL", "sqlite://")


@pytest.fixture()
def broker():
    db = Database("sqlite://")
    db.create_all()
    b = Broker(db, policy=DeploymentPolicy())
    yield b
    b.close()


@pytest.fixture()
def settings():
    return Settings(BROKER_WRITE_TOKEN=None, WEBHOOK_URLS="", REDIS_ENABLED=False)


@pytest.fixture()
def client(broker, settings):
    app = create_app(settings=settings, broker=broker)
    return TestClient(app)


def order_interaction(description="a request for order 1", state="order 1 exists", order_id=1, status="open"):
    return {
        "description": description,
        "providerState": state,
        "request": {"method": "GET", "path": f"/orders/{order_id}"},
        "response": {
            "status": 200,
            "headers": {"Content-Type": "application/json"},
            "body": {"id": order_id, "status": status},
        },
    }


def contract_document(consumer="web", provider="orders", interactions=None):
    return {
        "consumer": {"name": consumer},
        "provider": {"name": provider},
        "interactions": interactions if interactions is not None else [order_interaction()],
        "metadata": {"pactSpecification": {"version": "2.0.0"}},
    }


@pytest.fixture()
def interaction():
    return order_interaction


@pytest.fixture()
def document():
    return contract_document


def make_provider(status="open"):
    """A tiny orders provider with a provider-state setup endpoint."""
    app = FastAPI()
    orders = {}

    @app.post("/_pact/provider-states")
    def setup_state(payload: dict):
        if payload["state"] == "order 1 exists":
            orders[1] = {"id": 1, "status": status}
        elif payload["state"] == "no orders":
            orders.clear()
        else:
            raise HTTPException(status_code=400, detail="unknown state")
        return {}

    @app.get("/orders/{order_id}")
    def get_order(order_id: int):
        if order_id not in orders:
            raise HTTPException(status_code=404, detail="not found")
        return orders[order_id]

    return TestClient(app)


@pytest.fixture()
def provider():
    return make_provider
