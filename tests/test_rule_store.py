from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

import dqboard.store as store_module
from dqboard.store import RuleGraphStore


def _rule_payload(name: str, **overrides) -> dict:
    payload = {
        "query_name": name,
        "sql_statement": f"SELECT * FROM gold.orders WHERE {name.lower().replace(' ', '_')} IS NULL",
        "execution_group": "DQ",
        "execution_stage": 1,
        "target_table": "gold.orders",
        "severity": "ERROR",
    }
    payload.update(overrides)
    return payload


def test_create_assigns_increasing_ids_and_timestamps(store):
    first = store.create_rule(_rule_payload("First"))
    second = store.create_rule(_rule_payload("Second"))

    assert first["query_id"] == 1
    assert second["query_id"] == 2
    assert first["created_date"] == first["modified_date"]
    assert first["dependency_query_ids"] == []
    assert store.get_rule(2)["query_name"] == "Second"


def test_create_defaults_missing_optional_fields(store):
    rule = store.create_rule({"query_name": "Bare", "sql_statement": "SELECT 1"})

    assert rule["query_description"] is None
    assert rule["target_table"] is None
    assert rule["severity"] is None
    assert rule["effective_from"] is None
    assert rule["effective_to"] is None
    assert rule["execution_group"] is None
    assert rule["execution_stage"] is None
    assert rule["is_active"] is True
    assert rule["drops_records"] is False
    assert rule["dependency_query_ids"] == []


def test_create_accepts_empty_payload(store):
    rule = store.create_rule({})

    assert rule["query_id"] == 1
    assert rule["query_name"] == ""
    assert rule["sql_statement"] == ""


def test_ids_are_never_reused_after_delete(store):
    store.create_rule(_rule_payload("A"))
    store.create_rule(_rule_payload("B"))
    last = store.create_rule(_rule_payload("C"))

    assert store.delete_rule(last["query_id"]) is True
    replacement = store.create_rule(_rule_payload("D"))

    assert replacement["query_id"] == 4
    assert {rule["query_id"] for rule in store.list_rules()} == {1, 2, 4}


def test_separate_stores_do_not_share_state():
    left = RuleGraphStore()
    right = RuleGraphStore()

    left.create_rule(_rule_payload("Left A"))
    left.create_rule(_rule_payload("Left B"))
    only_right = right.create_rule(_rule_payload("Right A"))

    assert only_right["query_id"] == 1
    assert len(left.list_rules()) == 2
    assert [rule["query_name"] for rule in right.list_rules()] == ["Right A"]


def test_update_merges_fields_and_refreshes_modified_date(store, monkeypatch):
    monkeypatch.setattr(store_module, "_now", lambda: datetime(2025, 1, 1, tzinfo=timezone.utc))
    rule = store.create_rule(_rule_payload("Original", query_description="before"))

    monkeypatch.setattr(store_module, "_now", lambda: datetime(2025, 2, 1, tzinfo=timezone.utc))
    updated = store.update_rule(rule["query_id"], {"query_name": "Renamed", "is_active": False})

    assert updated["query_name"] == "Renamed"
    assert updated["is_active"] is False
    assert updated["query_description"] == "before"
    assert updated["created_date"] == "2025-01-01T00:00:00+00:00"
    assert updated["modified_date"] == "2025-02-01T00:00:00+00:00"
    assert store.get_rule(rule["query_id"])["query_name"] == "Renamed"


def test_update_cannot_overwrite_identity_or_created_date(store, monkeypatch):
    monkeypatch.setattr(store_module, "_now", lambda: datetime(2025, 1, 1, tzinfo=timezone.utc))
    rule = store.create_rule(_rule_payload("Pinned"))

    monkeypatch.setattr(store_module, "_now", lambda: datetime(2025, 3, 1, tzinfo=timezone.utc))
    updated = store.update_rule(
        rule["query_id"],
        {
            "query_id": 99,
            "created_date": "2000-01-01T00:00:00+00:00",
            "modified_date": "2000-01-01T00:00:00+00:00",
        },
    )

    assert updated["query_id"] == rule["query_id"]
    assert updated["created_date"] == "2025-01-01T00:00:00+00:00"
    assert updated["modified_date"] == "2025-03-01T00:00:00+00:00"
    assert store.get_rule(99) is None


def test_update_missing_rule_returns_none_and_leaves_store_unchanged(store):
    store.create_rule(_rule_payload("Keep"))
    before = store.list_rules()

    assert store.update_rule(42, {"query_name": "Ghost"}) is None
    assert store.list_rules() == before


def test_update_with_invalid_severity_is_all_or_nothing(store):
    rule = store.create_rule(_rule_payload("Strict"))

    with pytest.raises(ValueError, match="INVALID_SEVERITY"):
        store.update_rule(rule["query_id"], {"query_name": "Changed", "severity": "FATAL"})

    assert store.get_rule(rule["query_id"]) == rule


def test_create_with_invalid_severity_stores_nothing(store):
    with pytest.raises(ValueError, match="INVALID_SEVERITY"):
        store.create_rule(_rule_payload("Bad", severity="CRITICAL"))
    assert store.list_rules() == []


def test_effective_dates_are_normalized_to_utc(store):
    rule = store.create_rule(
        _rule_payload(
            "Windowed",
            effective_from="2025-05-15T00:00:00Z",
            effective_to=datetime(2025, 12, 31, 23, 0, tzinfo=timezone.utc),
        )
    )

    assert rule["effective_from"] == "2025-05-15T00:00:00+00:00"
    assert rule["effective_to"] == "2025-12-31T23:00:00+00:00"
    assert store.get_rule(rule["query_id"])["effective_from"] == "2025-05-15T00:00:00+00:00"


def test_create_strips_self_dependency(store):
    # A fresh store hands out id 1 first, so this rule would list itself.
    rule = store.create_rule(_rule_payload("Selfish", dependency_query_ids=[1]))

    assert rule["query_id"] == 1
    assert rule["dependency_query_ids"] == []
    assert store.get_rule(1)["dependency_query_ids"] == []


def test_update_strips_self_dependency(store):
    a = store.create_rule(_rule_payload("A"))
    b = store.create_rule(_rule_payload("B"))

    updated = store.update_rule(b["query_id"], {"dependency_query_ids": [b["query_id"], a["query_id"]]})

    assert updated["dependency_query_ids"] == [a["query_id"]]


def test_delete_missing_rule_returns_false(store):
    store.create_rule(_rule_payload("Only"))
    assert store.delete_rule(7) is False
    assert len(store.list_rules()) == 1


def test_list_rules_filters_and_orders_by_group_and_stage(store):
    store.create_rule(_rule_payload("RI late", execution_group="RI", execution_stage=2))
    store.create_rule(_rule_payload("DQ late", execution_group="DQ", execution_stage=3))
    store.create_rule(_rule_payload("DQ early", execution_group="DQ", execution_stage=1))
    store.create_rule(_rule_payload("RI off", execution_group="RI", execution_stage=1, is_active=False))

    names = [rule["query_name"] for rule in store.list_rules()]
    assert names == ["DQ early", "DQ late", "RI off", "RI late"]

    ri_active = store.list_rules(execution_group="RI", is_active=True)
    assert [rule["query_name"] for rule in ri_active] == ["RI late"]
    assert store.active_rule_count() == 3


def test_reset_clears_rules_and_restarts_ids(store):
    store.create_rule(_rule_payload("A"))
    store.create_rule(_rule_payload("B"))

    store.reset()

    assert store.list_rules() == []
    assert store.create_rule(_rule_payload("C"))["query_id"] == 1


def test_concurrent_creates_get_unique_ids(store):
    def _create(index: int) -> int:
        return store.create_rule(_rule_payload(f"Rule {index}"))["query_id"]

    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(_create, range(40)))

    assert sorted(ids) == list(range(1, 41))
    assert len(store.list_rules()) == 40


def test_update_rejects_null_for_required_fields(store):
    rule = store.create_rule(_rule_payload("Keeper"))

    for field in ("query_name", "sql_statement", "is_active", "drops_records"):
        with pytest.raises(ValueError, match="REQUIRED_FIELD_NULL"):
            store.update_rule(rule["query_id"], {field: None})

    assert store.get_rule(rule["query_id"]) == rule


def test_update_accepts_null_for_optional_fields(store):
    rule = store.create_rule(_rule_payload("Optional", target_table="gold.orders"))

    updated = store.update_rule(rule["query_id"], {"target_table": None, "severity": None})

    assert updated["target_table"] is None
    assert updated["severity"] is None


def test_malformed_timestamp_raises_domain_token(store):
    with pytest.raises(ValueError, match="INVALID_TIMESTAMP"):
        store.create_rule(_rule_payload("Bad date", effective_from="15/05/2025"))
    assert store.list_rules() == []

    rule = store.create_rule(_rule_payload("Dated"))
    with pytest.raises(ValueError, match="INVALID_TIMESTAMP"):
        store.update_rule(rule["query_id"], {"effective_to": "tomorrow"})
    assert store.get_rule(rule["query_id"]) == rule
