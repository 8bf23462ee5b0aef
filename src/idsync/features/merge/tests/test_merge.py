from __future__ import annotations

import copy
from datetime import UTC, datetime

from idsync.core.config import MergeConfig
from idsync.features.merge.service import SessionMergeEngine, has_changes, parse_time_point


def _engine(**kw) -> SessionMergeEngine:
    return SessionMergeEngine(MergeConfig(**kw))


def test_end_to_end_scenario():
    existing = {"windowCount": 5, "tags": ["a"], "lastSeen": "2024-01-01"}
    incoming = {"windowCount": None, "tags": ["b"], "lastSeen": "2024-05-01"}

    merged = _engine().merge(existing, incoming)

    assert merged == {"windowCount": 5, "tags": ["a", "b"], "lastSeen": "2024-05-01"}


def test_bootstrap_both_directions():
    x = {"windowCount": 3, "tags": ["a"], "claimVaultProgress": {"photos": True}}
    eng = _engine()

    assert eng.merge({}, x) == x
    assert eng.merge(x, {}) == x
    assert eng.merge(None, x) == x
    assert eng.merge(x, None) == x
    assert eng.merge(None, None) == {}


def test_existing_scalar_never_regresses():
    eng = _engine()
    existing = {"zipCode": "33101", "quizScore": 40, "fastWinCompleted": True}
    incoming = {"zipCode": "90210", "quizScore": 99, "fastWinCompleted": False}

    assert eng.merge(existing, incoming) == existing


def test_empty_incoming_values_are_skipped():
    eng = _engine()
    existing = {"email": "a@example.com", "name": "Ann"}

    merged = eng.merge(existing, {"email": "", "name": None, "phone": None})

    assert merged == existing
    assert "phone" not in merged


def test_empty_existing_adopts_incoming():
    eng = _engine()
    merged = eng.merge({"email": "", "name": None, "city": "Miami"}, {"email": "b@x.io", "name": "Bo"})
    assert merged == {"email": "b@x.io", "name": "Bo", "city": "Miami"}


def test_list_union_keeps_existing_order():
    merged = _engine().merge({"tags": ["a", "b"]}, {"tags": ["b", "c"]})
    assert merged["tags"] == ["a", "b", "c"]


def test_list_union_dedupes_incoming_and_handles_unhashable_items():
    existing = {"toolsCompleted": [{"id": 1}]}
    incoming = {"toolsCompleted": [{"id": 2}, {"id": 1}, {"id": 2}]}

    merged = _engine().merge(existing, incoming)

    assert merged["toolsCompleted"] == [{"id": 1}, {"id": 2}]


def test_list_union_distinguishes_bools_from_numbers():
    eng = _engine()

    assert eng.merge({"t": [1]}, {"t": [True]})["t"] == [1, True]
    assert eng.merge({"t": [0, False]}, {"t": [False, 0, 1]})["t"] == [0, False, 1]


def test_freshness_is_order_independent():
    eng = _engine()
    early, late = "2024-01-01", "2024-06-01"

    assert eng.merge({"lastSeen": early}, {"lastSeen": late})["lastSeen"] == late
    assert eng.merge({"lastSeen": late}, {"lastSeen": early})["lastSeen"] == late


def test_freshness_unparseable_keeps_existing():
    eng = _engine()
    assert eng.merge({"lastVisit": "2024-01-01"}, {"lastVisit": "yesterday"}) == {
        "lastVisit": "2024-01-01"
    }
    assert eng.merge({"lastVisit": "garbage"}, {"lastVisit": "2025-01-01"}) == {
        "lastVisit": "garbage"
    }


def test_freshness_fields_are_configurable():
    eng = _engine(freshness_fields=frozenset({"updatedAt"}))
    # lastSeen is now an ordinary scalar: existing wins
    merged = eng.merge(
        {"lastSeen": "2024-01-01", "updatedAt": "2024-01-01T00:00:00Z"},
        {"lastSeen": "2024-06-01", "updatedAt": "2024-01-01T00:00:01Z"},
    )
    assert merged == {"lastSeen": "2024-01-01", "updatedAt": "2024-01-01T00:00:01Z"}


def test_nested_maps_recurse():
    existing = {"claimVaultProgress": {"photos": True, "receipts": None}}
    incoming = {"claimVaultProgress": {"photos": False, "receipts": True, "policy": True}}

    merged = _engine().merge(existing, incoming)

    assert merged == {"claimVaultProgress": {"photos": True, "receipts": True, "policy": True}}


def test_recursion_is_bounded():
    existing = {"a": {"b": {"c": {"x": 1}}}}
    incoming = {"a": {"b": {"c": {"y": 2}}, "z": 3}}

    merged = _engine(max_depth=2).merge(existing, incoming)

    # "b" sits at max_depth and is kept as-is; shallower fields still merge
    assert merged == {"a": {"b": {"c": {"x": 1}}, "z": 3}}


def _nested(levels: int) -> dict:
    value: dict = {"leaf": 1}
    for _ in range(levels):
        value = {"n": value}
    return value


def test_deeply_nested_incoming_values_are_dropped():
    eng = _engine()
    deep = _nested(600)

    assert eng.merge({"a": 1}, {"blob": deep}) == {"a": 1}
    assert eng.merge({}, {"blob": deep, "k": 1}) == {"k": 1}
    assert eng.merge({}, {"blob": [deep]}) == {}

    report = eng.merge_with_report({"a": 1}, {"blob": deep, "b": 2})
    assert report.record == {"a": 1, "b": 2}
    assert report.fields_updated == ("b",)


def test_value_depth_limit_is_configurable():
    shallow = _nested(3)  # 4 levels of maps

    assert _engine(max_value_depth=4).merge({}, {"blob": shallow}) == {"blob": shallow}
    assert _engine(max_depth=2, max_value_depth=3).merge({}, {"blob": shallow}) == {}


def test_type_mismatch_keeps_existing():
    eng = _engine()
    assert eng.merge({"tags": ["a"]}, {"tags": "b"}) == {"tags": ["a"]}
    assert eng.merge({"meta": {"k": 1}}, {"meta": [1]}) == {"meta": {"k": 1}}


def test_idempotent():
    eng = _engine()
    existing = {"windowCount": 5, "tags": ["a"], "lastSeen": "2024-01-01", "m": {"x": [1]}}
    incoming = {"tags": ["b", "a"], "lastSeen": "2024-05-01", "m": {"x": [2], "y": "k"}, "new": 1}

    once = eng.merge(existing, incoming)
    assert eng.merge(existing, once) == once
    assert eng.merge(once, incoming) == once


def test_disjoint_fragments_commute():
    eng = _engine()
    base = {"zipCode": "33101", "tags": ["a"]}
    frag_a = {"tags": ["b"], "quizScore": 7}
    frag_b = {"homeType": "condo", "lastVisit": "2024-02-02"}

    ab = eng.merge(eng.merge(base, frag_a), frag_b)
    ba = eng.merge(eng.merge(base, frag_b), frag_a)

    assert ab == ba


def test_inputs_are_not_mutated():
    existing = {"tags": ["a"], "m": {"x": 1}}
    incoming = {"tags": ["b"], "m": {"y": 2}}
    existing_before = copy.deepcopy(existing)
    incoming_before = copy.deepcopy(incoming)

    merged = _engine().merge(existing, incoming)
    merged["tags"].append("z")
    merged["m"]["w"] = 0

    assert existing == existing_before
    assert incoming == incoming_before


def test_report_lists_changed_fields():
    result = _engine().merge_with_report(
        {"windowCount": 5, "tags": ["a"], "email": None},
        {"windowCount": 9, "tags": ["a"], "email": "e@x.io", "zipCode": "1"},
    )
    assert result.fields_updated == ("email", "zipCode")


def test_has_changes_ignores_key_order():
    assert not has_changes({"a": 1, "b": 2}, {"b": 2, "a": 1})
    assert has_changes({"a": 1}, {"a": 1, "b": None})


def test_parse_time_point_variants():
    assert parse_time_point("2024-01-01") == datetime(2024, 1, 1, tzinfo=UTC)
    assert parse_time_point("2024-01-01T05:00:00+05:00") == datetime(2024, 1, 1, tzinfo=UTC)
    assert parse_time_point(1_704_067_200_000) == datetime(2024, 1, 1, tzinfo=UTC)
    assert parse_time_point(True) is None
    assert parse_time_point(["2024"]) is None
