from fastapi.testclient import TestClient

from contract_broker.config import Settings
from contract_broker.core.exceptions import StoreUnavailable
from contract_broker.main import create_app


def publish(client, document, version="1.0.0", tags=None, headers=None, **kwargs):
    body = {"consumerVersion": version, "contract": document(**kwargs), "tags": tags or []}
    return client.post("/contracts", json=body, headers=headers or {})


def test_health_and_version(client: TestClient):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    h = client.get("/health")
    assert h.status_code == 200
    assert h.json()["database"] == "ok"
    assert h.json()["cache"] == {"enabled": False}
    v = client.get("/version")
    assert v.status_code == 200
    assert v.json()["service"] == "contract-broker"


def test_metrics_endpoint(client: TestClient, document):
    publish(client, document)
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "broker_contracts_published_total" in r.text


def test_correlation_id_is_echoed(client: TestClient):
    r = client.get("/healthz", headers={"X-Correlation-ID": "abc-123"})
    assert r.headers["X-Correlation-ID"] == "abc-123"
    assert client.get("/healthz").headers["X-Correlation-ID"]


def test_publish_is_created_then_idempotent(client: TestClient, document):
    first = publish(client, document, tags=["main"])
    assert first.status_code == 201
    assert first.json()["created"] is True
    assert first.json()["contractRef"]["revision"] == 1

    second = publish(client, document)
    assert second.status_code == 200
    assert second.json()["contractRef"] == first.json()["contractRef"]

    tagged = client.get("/participants/web/tags/main")
    assert tagged.json()["versions"] == ["1.0.0"]


def test_publish_invalid_contract_is_problem_document(client: TestClient, document):
    r = publish(client, document, interactions=[])
    assert r.status_code == 422
    assert r.headers["content-type"].startswith("application/problem+json")
    problem = r.json()
    assert problem["errorCode"] == "CONTRACT_002"
    assert problem["type"].endswith("/contract-schema-violation")
    assert problem["issues"]


def test_fetch_and_resolve_contract(client: TestClient, document):
    ref = publish(client, document, tags=["main"]).json()["contractRef"]

    fetched = client.get(f"/contracts/{ref['id']}")
    assert fetched.status_code == 200
    assert fetched.headers["X-Contract-Revision"] == "1"
    assert fetched.headers["X-Contract-Current"] == "true"
    assert fetched.json()["consumer"] == {"name": "web"}

    assert client.get("/contracts/orders/web", params={"version": "1.0.0"}).json() == ref
    assert client.get("/contracts/orders/web", params={"tag": "main"}).json() == ref

    for params in ({}, {"version": "1.0.0", "tag": "main"}):
        bad = client.get("/contracts/orders/web", params=params)
        assert bad.status_code == 400
        assert bad.headers["content-type"].startswith("application/problem+json")
        assert bad.json()["errorCode"] == "REQUEST_001"

    missing = client.get("/contracts/orders/web", params={"version": "9.9.9"})
    assert missing.status_code == 404
    assert missing.json()["errorCode"] == "LOOKUP_004"
    assert client.get("/contracts/12345").status_code == 404


def test_revision_history(client: TestClient, document, interaction):
    publish(client, document)
    publish(client, document, interactions=[interaction(status="closed")])
    r = client.get("/contracts/orders/web/versions/1.0.0/revisions")
    assert [ref["revision"] for ref in r.json()] == [1, 2]


def test_record_and_latest_verification(client: TestClient, document):
    ref = publish(client, document).json()["contractRef"]
    body = {"contractId": ref["id"], "providerVersion": "2.0.0", "outcome": "success"}

    r = client.post("/verifications", json=body)
    assert r.status_code == 201
    assert r.json()["stale"] is False

    latest = client.get("/verifications/latest", params={"contractId": ref["id"], "providerVersion": "2.0.0"})
    assert latest.status_code == 200
    assert latest.json()["outcome"] == "success"

    none = client.get("/verifications/latest", params={"contractId": ref["id"], "providerVersion": "3.0.0"})
    assert none.status_code == 404

    unknown = client.post("/verifications", json={**body, "contractId": 999})
    assert unknown.status_code == 404
    assert unknown.json()["errorCode"] == "LOOKUP_002"


def test_tag_endpoints(client: TestClient, document):
    publish(client, document, version="1.0.0")
    publish(client, document, version="2.0.0")

    r = client.put("/participants/web/versions/1.0.0/tags/production")
    assert r.json() == {"participant": "web", "tag": "production", "versions": ["1.0.0"]}
    client.put("/participants/web/versions/2.0.0/tags/production")
    assert client.get("/participants/web/tags/production").json()["versions"] == ["2.0.0"]
    assert client.get("/participants/web/versions/2.0.0/tags").json() == ["production"]

    assert client.put("/participants/web/versions/9.9.9/tags/production").status_code == 404

    removed = client.delete("/participants/web/tags/production")
    assert removed.json()["removed"] is True
    assert client.get("/participants/web/tags/production").json()["versions"] == []


def test_can_i_deploy_flow(client: TestClient, document):
    ref = publish(client, document, tags=["production"]).json()["contractRef"]
    query = {"participant": "orders", "version": "2.0.0", "targetTag": "production"}

    r = client.post("/can-i-deploy", json=query)
    assert r.status_code == 200
    assert r.json()["verdict"] == "no"
    assert r.json()["unsatisfied"][0]["reason"] == "no verification found"

    client.post("/verifications", json={"contractId": ref["id"], "providerVersion": "2.0.0", "outcome": "success"})
    r = client.post("/can-i-deploy", json=query)
    assert r.json()["verdict"] == "yes"
    assert r.json()["checked"] == 1


def test_can_i_deploy_unknown_participant(client: TestClient):
    r = client.post("/can-i-deploy", json={"participant": "ghost", "version": "1", "targetTag": "production"})
    assert r.status_code == 404
    assert r.json()["errorCode"] == "LOOKUP_003"


def test_can_i_deploy_store_outage_is_unknown(client: TestClient, broker, document, monkeypatch):
    publish(client, document)

    def broken_snapshot():
        raise StoreUnavailable("database is down")

    monkeypatch.setattr(broker.db, "snapshot", broken_snapshot)
    r = client.post("/can-i-deploy", json={"participant": "orders", "version": "2.0.0", "targetTag": "production"})
    assert r.status_code == 503
    assert r.json()["verdict"] == "unknown"
    assert "database is down" in r.json()["detail"]


def test_write_token_is_enforced(broker, document):
    app = create_app(settings=Settings(BROKER_WRITE_TOKEN="s3cret", WEBHOOK_URLS=""), broker=broker)
    client = TestClient(app)

    denied = publish(client, document)
    assert denied.status_code == 401
    assert denied.json()["errorCode"] == "AUTH_001"
    assert publish(client, document, headers={"X-Broker-Token": "wrong"}).status_code == 401
    assert publish(client, document, headers={"X-Broker-Token": "s3cret"}).status_code == 201

    assert client.get("/participants/web/tags/main").status_code == 200
