from contract_broker.core.documents import validate_document
from contract_broker.core.verifier import ProviderVerifier


def test_verify_stored_contract_success(broker, interaction, provider):
    ref = broker.contracts.publish("web", "1.0.0", "orders", [interaction()])
    verifier = ProviderVerifier(provider())

    report = verifier.verify_stored(broker.contracts.fetch(ref.id), "2.0.0")
    assert report.outcome == "success"
    assert report.failures == []
    assert report.contractId == ref.id

    recorded = broker.verifications.record(report.contractId, report.providerVersion, report.outcome, report.failures)
    assert recorded.outcome == "success"


def test_verify_reports_body_mismatch(broker, interaction, provider):
    ref = broker.contracts.publish("web", "1.0.0", "orders", [interaction()])
    verifier = ProviderVerifier(provider(status="closed"))

    report = verifier.verify_stored(broker.contracts.fetch(ref.id), "2.0.0")
    assert report.outcome == "failure"
    assert [(f.interaction, f.description) for f in report.failures] == [
        ("a request for order 1", "field $.status expected 'open' but received 'closed'")
    ]


def test_unknown_provider_state_fails_interaction(broker, interaction, provider):
    ref = broker.contracts.publish("web", "1.0.0", "orders", [interaction(state="order 1 is archived")])
    report = ProviderVerifier(provider()).verify_stored(broker.contracts.fetch(ref.id), "2.0.0")

    assert report.outcome == "failure"
    assert report.failures[0].description == "provider state 'order 1 is archived' could not be set up: HTTP 400"


def test_missing_resource_reports_status(document, interaction, broker, provider):
    missing = interaction(description="a request for a missing order", state="no orders")
    doc = validate_document(document(interactions=[missing]))
    ref = broker.contracts.publish("web", "1.0.0", "orders", doc.interactions)

    report = ProviderVerifier(provider()).verify(doc, ref, "2.0.0")
    descriptions = [f.description for f in report.failures]
    assert "status expected 200 but received 404" in descriptions
