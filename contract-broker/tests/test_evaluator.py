from datetime import datetime, timedelta, timezone

import pytest

from contract_broker.core.evaluator import CompatibilityEvaluator, DeploymentPolicy
from contract_broker.core.exceptions import UnknownParticipant
from contract_broker.core.schemas import UnsatisfiedReason, Verdict


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def evaluator_with(broker, **policy):
    return CompatibilityEvaluator(
        broker.db, broker.contracts, broker.verifications, broker.tags,
        policy=DeploymentPolicy(**policy), metrics=broker.metrics,
    )


def test_contract_lifecycle_scenario(broker, interaction):
    ref = broker.contracts.publish("C", "v1", "P", [interaction()])
    broker.tags.tag("C", "v1", "main")

    verdict = broker.evaluator.can_i_deploy("P", "v1", "main")
    assert verdict.verdict == Verdict.NO
    assert [u.reason for u in verdict.unsatisfied] == [UnsatisfiedReason.NO_VERIFICATION]
    assert verdict.unsatisfied[0].reason.value == "no verification found"

    broker.verifications.record(ref.id, "v1", "success")
    verdict = broker.evaluator.can_i_deploy("P", "v1", "main")
    assert verdict.verdict == Verdict.YES
    assert verdict.unsatisfied == []
    assert verdict.checked == 1

    changed = broker.contracts.publish("C", "v1", "P", [interaction(status="closed")])
    verdict = broker.evaluator.can_i_deploy("P", "v1", "main")
    assert verdict.verdict == Verdict.NO
    assert verdict.unsatisfied[0].reason.value == "verification is for a superseded contract revision"
    assert verdict.unsatisfied[0].contractRef == changed

    broker.verifications.record(changed.id, "v1", "success")
    assert broker.evaluator.can_i_deploy("P", "v1", "main").verdict == Verdict.YES


def test_every_tagged_contract_must_be_verified(broker, interaction):
    web = broker.contracts.publish("web", "1.0.0", "orders", [interaction()])
    mobile = broker.contracts.publish("mobile", "4.0.0", "orders", [interaction(order_id=2)])
    broker.tags.tag("web", "1.0.0", "production")
    broker.tags.tag("mobile", "4.0.0", "production")
    broker.verifications.record(web.id, "2.0.0", "success", verified_at=T0)
    broker.verifications.record(mobile.id, "2.0.0", "success", verified_at=T0)

    assert broker.evaluator.can_i_deploy("orders", "2.0.0", "production").verdict == Verdict.YES

    broker.verifications.record(mobile.id, "2.0.0", "failure", verified_at=T0 + timedelta(minutes=1))
    verdict = broker.evaluator.can_i_deploy("orders", "2.0.0", "production")
    assert verdict.verdict == Verdict.NO
    assert len(verdict.unsatisfied) == 1
    assert verdict.unsatisfied[0].contractRef == mobile
    assert verdict.unsatisfied[0].reason == UnsatisfiedReason.VERIFICATION_FAILED
    assert verdict.unsatisfied[0].tag == "production"
    assert verdict.unsatisfied[0].providerVersion == "2.0.0"


def test_retagging_consumer_changes_which_contract_applies(broker, interaction):
    old = broker.contracts.publish("web", "1.0.0", "orders", [interaction()])
    new = broker.contracts.publish("web", "2.0.0", "orders", [interaction(status="closed")])
    broker.tags.tag("web", "1.0.0", "main")
    broker.verifications.record(old.id, "5.0.0", "success")

    assert broker.evaluator.can_i_deploy("orders", "5.0.0", "main").verdict == Verdict.YES

    broker.tags.tag("web", "2.0.0", "main")
    verdict = broker.evaluator.can_i_deploy("orders", "5.0.0", "main")
    assert verdict.verdict == Verdict.NO
    assert [u.contractRef for u in verdict.unsatisfied] == [new]


def test_untagged_consumers_are_ignored(broker, interaction):
    broker.contracts.publish("web", "1.0.0", "orders", [interaction()])
    broker.tags.tag("web", "1.0.0", "feature-x")

    verdict = broker.evaluator.can_i_deploy("orders", "5.0.0", "production")
    assert verdict.checked == 0
    assert verdict.verdict == Verdict.YES
    assert "No contracts apply" in verdict.detail


def test_empty_relationship_policy_is_explicit(broker, interaction):
    broker.contracts.publish("web", "1.0.0", "orders", [interaction()])

    strict = evaluator_with(broker, allow_empty=False)
    verdict = strict.can_i_deploy("orders", "5.0.0", "production")
    assert verdict.verdict == Verdict.NO
    assert verdict.allowEmpty is False
    assert verdict.unsatisfied == []

    assert strict.can_i_deploy("orders", "5.0.0", "production", allow_empty=True).verdict == Verdict.YES
    assert broker.evaluator.can_i_deploy("orders", "5.0.0", "production", allow_empty=False).verdict == Verdict.NO


def test_consumer_side_requires_verified_provider_in_environment(broker, interaction):
    ref = broker.contracts.publish("web", "1.0.0", "orders", [interaction()])

    verdict = broker.evaluator.can_i_deploy("web", "1.0.0", "production")
    assert verdict.verdict == Verdict.NO
    assert verdict.unsatisfied[0].reason == UnsatisfiedReason.NO_VERIFICATION
    assert verdict.unsatisfied[0].providerVersion is None

    broker.verifications.record(ref.id, "2.0.0", "success")
    broker.tags.tag("orders", "2.0.0", "production")
    assert broker.evaluator.can_i_deploy("web", "1.0.0", "production").verdict == Verdict.YES

    broker.verifications.record(ref.id, "2.1.0", "failure")
    broker.tags.tag("orders", "2.1.0", "production")
    verdict = broker.evaluator.can_i_deploy("web", "1.0.0", "production")
    assert verdict.verdict == Verdict.NO
    assert verdict.unsatisfied[0].providerVersion == "2.1.0"
    assert verdict.unsatisfied[0].reason == UnsatisfiedReason.VERIFICATION_FAILED


def test_required_environments_are_checked_too(broker, interaction):
    ref = broker.contracts.publish("web", "1.0.0", "orders", [interaction()])
    broker.tags.tag("web", "1.0.0", "production")

    evaluator = evaluator_with(broker, required_tags=frozenset({"production"}))
    verdict = evaluator.can_i_deploy("orders", "5.0.0", "staging")
    assert verdict.verdict == Verdict.NO
    assert verdict.unsatisfied[0].tag == "production"

    broker.verifications.record(ref.id, "5.0.0", "success")
    assert evaluator.can_i_deploy("orders", "5.0.0", "staging").verdict == Verdict.YES


def test_unknown_participant_is_an_error(broker):
    with pytest.raises(UnknownParticipant):
        broker.evaluator.can_i_deploy("nobody", "1.0.0", "production")


def test_unknown_candidate_version_has_no_verifications(broker, interaction):
    broker.contracts.publish("web", "1.0.0", "orders", [interaction()])
    broker.tags.tag("web", "1.0.0", "production")

    verdict = broker.evaluator.can_i_deploy("orders", "never-built", "production")
    assert verdict.verdict == Verdict.NO
    assert verdict.unsatisfied[0].reason == UnsatisfiedReason.NO_VERIFICATION


def test_evaluation_is_read_only(broker, interaction):
    broker.contracts.publish("web", "1.0.0", "orders", [interaction()])
    broker.tags.tag("web", "1.0.0", "main")
    first = broker.evaluator.can_i_deploy("orders", "1.0.0", "main")
    second = broker.evaluator.can_i_deploy("orders", "1.0.0", "main")
    assert first == second
    assert broker.metrics.registry.get_sample_value("broker_can_i_deploy_total", {"verdict": "no"}) == 2.0


def test_relevant_tags_include_target_once():
    policy = DeploymentPolicy(required_tags=frozenset({"production", "staging"}))
    assert policy.relevant_tags("production") == ["production", "staging"]
    assert policy.relevant_tags("qa") == ["production", "qa", "staging"]
