import json

import pytest
import requests

from contract_broker import cli
from contract_broker.core.exceptions import StoreUnavailable

BROKER_URL = "http://broker.test"


class BrokerSession:
    """Stands in for requests.Session, forwarding calls to the app under test."""

    def __init__(self, client):
        self.client = client
        self.headers = {}

    def request(self, method, url, timeout=None, **kwargs):
        return self.client.request(method, url[len(BROKER_URL):], headers=dict(self.headers), **kwargs)


class DownSession:
    headers = {}

    def request(self, method, url, timeout=None, **kwargs):
        raise requests.ConnectionError("connection refused")


@pytest.fixture()
def session(client, monkeypatch):
    s = BrokerSession(client)
    monkeypatch.setattr(cli.requests, "Session", lambda: s)
    return s


@pytest.fixture()
def contract_file(tmp_path, document):
    path = tmp_path / "web-orders.json"
    path.write_text(json.dumps(document()), encoding="utf-8")
    return path


def run(*argv):
    return cli.main(["--broker-url", BROKER_URL, *argv])


def test_publish_tag_and_can_i_deploy(session, contract_file, capsys):
    assert run("publish", str(contract_file), "--consumer-version", "1.0.0", "--tag", "production") == 0
    out = capsys.readouterr().out
    assert "web@1.0.0 -> orders: revision 1 published" in out

    assert run("can-i-deploy", "orders", "2.0.0", "--to", "production") == cli.EXIT_NO
    assert "no verification found" in capsys.readouterr().out

    ref = session.client.get("/contracts/orders/web", params={"version": "1.0.0"}).json()
    assert run("record-verification", "--contract-id", str(ref["id"]), "--provider-version", "2.0.0",
               "--outcome", "success") == 0
    assert run("can-i-deploy", "orders", "2.0.0", "--to", "production", "--output", "json") == cli.EXIT_YES
    assert json.loads(capsys.readouterr().out.split("\n", 1)[1])["verdict"] == "yes"


def test_republish_reports_unchanged(session, contract_file, capsys):
    run("publish", str(contract_file), "--consumer-version", "1.0.0")
    run("publish", str(contract_file), "--consumer-version", "1.0.0")
    assert "revision 1 unchanged" in capsys.readouterr().out


def test_tag_command(session, contract_file, capsys):
    run("publish", str(contract_file), "--consumer-version", "1.0.0")
    assert run("tag", "web", "1.0.0", "main") == 0
    assert session.client.get("/participants/web/tags/main").json()["versions"] == ["1.0.0"]
    assert run("tag", "web", "9.9.9", "main") == 1
    assert "Unknown version 9.9.9" in capsys.readouterr().err


def test_no_allow_empty_flag(session, contract_file):
    run("publish", str(contract_file), "--consumer-version", "1.0.0")
    assert run("can-i-deploy", "orders", "2.0.0", "--to", "staging") == cli.EXIT_YES
    assert run("can-i-deploy", "orders", "2.0.0", "--to", "staging", "--no-allow-empty") == cli.EXIT_NO


def test_invalid_contract_file(session, tmp_path, document, capsys):
    path = tmp_path / "empty.json"
    path.write_text(json.dumps(document(interactions=[])), encoding="utf-8")
    assert run("publish", str(path), "--consumer-version", "1.0.0") == 1
    assert "HTTP 422" in capsys.readouterr().err


def test_broker_unreachable_is_unknown(monkeypatch, capsys):
    monkeypatch.setattr(cli.requests, "Session", DownSession)
    assert run("can-i-deploy", "orders", "2.0.0", "--to", "production") == cli.EXIT_UNKNOWN
    assert "Broker unreachable" in capsys.readouterr().err


def test_store_outage_is_unknown(session, broker, contract_file, monkeypatch):
    run("publish", str(contract_file), "--consumer-version", "1.0.0")

    def broken_snapshot():
        raise StoreUnavailable("database is down")

    monkeypatch.setattr(broker.db, "snapshot", broken_snapshot)
    assert run("can-i-deploy", "orders", "2.0.0", "--to", "production") == cli.EXIT_UNKNOWN


def test_token_header_is_sent(session):
    client = cli.BrokerClient(BROKER_URL, token="s3cret")
    assert client.session.headers["X-Broker-Token"] == "s3cret"


def test_verify_command_records_result(session, contract_file, provider, monkeypatch, capsys):
    run("publish", str(contract_file), "--consumer-version", "1.0.0", "--tag", "production")
    monkeypatch.setattr(cli.httpx, "Client", lambda base_url, timeout: provider())

    code = run("verify", "--provider", "orders", "--consumer", "web", "--consumer-tag", "production",
               "--provider-version", "2.0.0", "--provider-base-url", "http://orders.test", "--publish")
    assert code == 0
    assert "success" in capsys.readouterr().out
    assert run("can-i-deploy", "orders", "2.0.0", "--to", "production") == cli.EXIT_YES


def test_verify_command_reports_failures(session, contract_file, provider, monkeypatch, capsys):
    run("publish", str(contract_file), "--consumer-version", "1.0.0")
    monkeypatch.setattr(cli.httpx, "Client", lambda base_url, timeout: provider(status="closed"))

    code = run("verify", "--provider", "orders", "--consumer", "web", "--consumer-version", "1.0.0",
               "--provider-version", "2.0.0", "--provider-base-url", "http://orders.test")
    assert code == 1
    assert "FAIL a request for order 1: field $.status expected 'open' but received 'closed'" in capsys.readouterr().out
