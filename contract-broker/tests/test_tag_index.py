import threading

import pytest

from contract_broker.core.exceptions import UnknownParticipant, UnknownVersion
from contract_broker.storage.database import current_write_sequence


@pytest.fixture()
def published(broker, interaction):
    broker.contracts.publish("web", "1.0.0", "orders", [interaction()])
    broker.contracts.publish("web", "2.0.0", "orders", [interaction(status="closed")])
    return broker


def test_tag_points_at_exactly_one_version(published):
    tags = published.tags
    tags.tag("web", "1.0.0", "main")
    assert tags.versions_for_tag("web", "main") == {"1.0.0"}

    tags.tag("web", "2.0.0", "main")
    assert tags.versions_for_tag("web", "main") == {"2.0.0"}
    assert tags.tags_for_version("web", "1.0.0") == set()
    assert tags.tags_for_version("web", "2.0.0") == {"main"}


def test_version_may_carry_several_tags(published):
    published.tags.tag("web", "1.0.0", "main")
    published.tags.tag("web", "1.0.0", "production")
    assert published.tags.tags_for_version("web", "1.0.0") == {"main", "production"}


def test_retagging_same_version_is_a_noop(published):
    published.tags.tag("web", "1.0.0", "main")
    with published.db.snapshot() as s:
        before = current_write_sequence(s)
    published.tags.tag("web", "1.0.0", "main")
    with published.db.snapshot() as s:
        assert current_write_sequence(s) == before
    assert published.metrics.registry.get_sample_value("broker_tag_operations_total", {"operation": "noop"}) == 1.0


def test_tag_requires_known_participant_and_version(published):
    with pytest.raises(UnknownParticipant):
        published.tags.tag("nobody", "1.0.0", "main")
    with pytest.raises(UnknownVersion):
        published.tags.tag("web", "9.9.9", "main")


def test_empty_tag_name_is_rejected(published):
    with pytest.raises(ValueError):
        published.tags.tag("web", "1.0.0", "")


def test_untag(published):
    published.tags.tag("web", "1.0.0", "main")

    assert published.tags.untag("web", "main", version="2.0.0") is False
    assert published.tags.versions_for_tag("web", "main") == {"1.0.0"}
    assert published.tags.untag("web", "main") is True
    assert published.tags.versions_for_tag("web", "main") == set()
    assert published.tags.untag("web", "main") is False
    assert published.tags.untag("nobody", "main") is False


def test_unknown_lookups_are_empty(published):
    assert published.tags.versions_for_tag("nobody", "main") == set()
    assert published.tags.versions_for_tag("web", "main") == set()
    assert published.tags.tags_for_version("web", "9.9.9") == set()


def test_concurrent_tagging_leaves_one_winner(published):
    def move(version):
        published.tags.tag("web", version, "main")

    threads = [threading.Thread(target=move, args=(v,)) for v in ["1.0.0", "2.0.0"] * 5]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(published.tags.versions_for_tag("web", "main")) == 1
