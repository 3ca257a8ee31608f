from kumo_monitor.normalizer import (
    COUNTER_RULES,
    Counters,
    first_match,
    normalize,
    pick_service_total,
    sum_tagged,
    top_domains,
    top_entries,
    top_providers,
)


def test_scalar_value_is_authoritative():
    doc = {
        "total_messages_delivered": {"value": 10},
        "total_messages_delivered_by_provider": {"value": {"provider": {"gmail": 99}}},
    }
    assert normalize(doc).delivered == 10


def test_zero_scalar_falls_through_to_provider_mapping():
    doc = {
        "total_messages_delivered": {"value": 0},
        "total_messages_delivered_by_provider": {"value": {"provider": {"gmail": 4, "yahoo": 6}}},
    }
    assert normalize(doc).delivered == 10


def test_service_rollup_prefers_known_key_over_children():
    doc = {"total_messages_received": {"value": {"service": {"smtp_client": 7, "smtp_client:example.com": 3}}}}
    assert normalize(doc).received == 7


def test_service_rollup_sums_when_no_known_key():
    assert pick_service_total({"a": 2, "b": 3, "c": "x"}) == 5
    assert pick_service_total(None) == 0


def test_tagged_array_sum_for_deferred():
    doc = {"total_messages_transfail_by_provider_and_source": {"value": [{"@": 2}, {"@": 3}, {"x": 1}, "junk"]}}
    assert normalize(doc).deferred == 5
    assert sum_tagged("not-a-list") == 0


def test_depth_prefers_provider_mapping_then_pool_array_then_derived():
    provider = {"queued_count_by_provider": {"value": {"provider": {"a": 2, "b": 1}}}}
    assert normalize(provider).depth == 3

    pools = {"queued_count_by_provider_and_pool": {"value": [{"@": 4}, {"@": 1}]}}
    assert normalize(pools).depth == 5

    derived = {
        "ready_count": {"value": {"service": {"smtp_client": 3}}},
        "scheduled_count_total": {"value": 5},
    }
    counters = normalize(derived)
    assert (counters.ready, counters.scheduled, counters.depth) == (3, 5, 8)


def test_malformed_values_normalize_to_zero():
    assert normalize(None) == Counters()
    assert normalize("garbage") == Counters()
    doc = {
        "total_messages_delivered": {"value": "abc"},
        "total_messages_fail": {"value": True},
        "total_messages_received": {"value": float("nan")},
        "connection_count": 12,
    }
    counters = normalize(doc)
    assert counters.delivered == 0
    assert counters.bounced == 0
    assert counters.received == 0
    assert counters.active_connections == 0


def test_disk_free_percent_is_optional():
    doc = {
        "disk_free_percent": {"value": {"name": {"data spool": 42.5}}},
        "disk_free_inodes_percent": {"value": {"name": {"data spool": 90}}},
    }
    counters = normalize(doc)
    assert counters.disk_free_percent == 42.5
    assert counters.inode_free_percent == 90
    assert normalize({}).disk_free_percent is None


def test_out_sent_is_delivered_plus_bounced():
    counters = normalize({"total_messages_delivered": {"value": 8}, "total_messages_fail": {"value": 2}})
    assert counters.out_sent == 10


def test_each_rule_chain_is_independently_testable():
    doc = {"scheduled_count": {"value": 4}}
    assert first_match(doc, COUNTER_RULES["scheduled"]) == 4
    assert first_match({}, COUNTER_RULES["scheduled"]) == 0


def test_top_entries_sorted_and_limited():
    ranked = top_entries({"a": 1, "b": 5, "c": 3}, limit=2)
    assert ranked == [{"key": "b", "value": 5}, {"key": "c", "value": 3}]
    assert top_entries(None) == []


def test_top_domains_and_providers():
    doc = {
        "scheduled_by_domain": {"value": {"domain": {"a.com": 1, "b.com": 5}}},
        "total_messages_delivered_by_provider": {"value": {"provider": {"gmail": 7}}},
    }
    assert [e["key"] for e in top_domains(doc)] == ["b.com", "a.com"]
    assert top_providers(doc) == [{"key": "gmail", "value": 7}]
    assert top_domains(None) == []
