from __future__ import annotations

from typing import Any

from dqboard.store import STORE, RuleGraphStore


def _store(s: RuleGraphStore | None) -> RuleGraphStore:
    return s or STORE


def _require_rule(store: RuleGraphStore, query_id: int) -> dict[str, Any]:
    rule = store.get_rule(query_id)
    if rule is None:
        raise KeyError("RULE_NOT_FOUND")
    return rule


def create_rule(
    *,
    query_name: str,
    sql_statement: str,
    execution_group: str = "DQ",
    execution_stage: int = 1,
    query_description: str | None = None,
    target_table: str | None = None,
    severity: str | None = None,
    is_active: bool = True,
    drops_records: bool = False,
    remediation_hint: str | None = None,
    created_by: str | None = None,
    effective_from: str | None = None,
    effective_to: str | None = None,
    dependency_query_ids: list[int] | None = None,
    store: RuleGraphStore | None = None,
) -> dict[str, Any]:
    payload = {
        "query_name": query_name,
        "query_description": query_description,
        "sql_statement": sql_statement,
        "execution_stage": execution_stage,
        "execution_group": execution_group,
        "is_active": is_active,
        "drops_records": drops_records,
        "target_table": target_table,
        "created_by": created_by,
        "remediation_hint": remediation_hint,
        "severity": severity,
        "effective_from": effective_from,
        "effective_to": effective_to,
        "dependency_query_ids": dependency_query_ids or [],
    }
    return _store(store).create_rule(payload, validate_dependencies=True)


def get_rule(*, query_id: int, store: RuleGraphStore | None = None) -> dict[str, Any]:
    return _require_rule(_store(store), query_id)


def list_rules(
    *,
    execution_group: str | None = None,
    is_active: bool | None = None,
    store: RuleGraphStore | None = None,
) -> dict[str, Any]:
    return {"items": _store(store).list_rules(execution_group=execution_group, is_active=is_active)}


def update_rule(
    *,
    query_id: int,
    updates: dict[str, Any],
    store: RuleGraphStore | None = None,
) -> dict[str, Any]:
    rule = _store(store).update_rule(query_id, updates, validate_dependencies=True)
    if rule is None:
        raise KeyError("RULE_NOT_FOUND")
    return rule


def delete_rule(*, query_id: int, store: RuleGraphStore | None = None) -> dict[str, Any]:
    if not _store(store).delete_rule(query_id):
        raise KeyError("RULE_NOT_FOUND")
    return {"deleted": True, "query_id": query_id}


def get_rule_dependencies(*, query_id: int, store: RuleGraphStore | None = None) -> dict[str, Any]:
    selected = _store(store)
    _require_rule(selected, query_id)
    return {"items": selected.get_rule_dependencies(query_id)}


def get_rule_dependents(*, query_id: int, store: RuleGraphStore | None = None) -> dict[str, Any]:
    selected = _store(store)
    _require_rule(selected, query_id)
    return {"items": selected.get_rule_dependents(query_id)}


def get_rule_context(
    *,
    query_id: int,
    dependency_depth: int = 1,
    dependent_depth: int = 1,
    store: RuleGraphStore | None = None,
) -> dict[str, Any]:
    return _store(store).get_rule_context(
        query_id,
        dependency_depth=dependency_depth,
        dependent_depth=dependent_depth,
    )


def get_rule_graph(*, store: RuleGraphStore | None = None) -> dict[str, Any]:
    return _store(store).get_rule_graph()


def trigger_batch(
    *,
    batch_name: str,
    pipeline_type: str = "SILVER_TO_GOLD",
    triggered_by: str = "mcp",
    store: RuleGraphStore | None = None,
) -> dict[str, Any]:
    return _store(store).trigger_batch(batch_name, pipeline_type, triggered_by)


def simulate_batch_completion(*, batch_uuid: str, store: RuleGraphStore | None = None) -> dict[str, Any]:
    batch = _store(store).simulate_batch_completion(batch_uuid)
    if batch is None:
        raise KeyError("BATCH_NOT_FOUND")
    return batch


def get_site_results(
    *,
    batch_uuid: str | None = None,
    site_id: str | None = None,
    execution_group: str | None = None,
    severity: str | None = None,
    store: RuleGraphStore | None = None,
) -> dict[str, Any]:
    items = _store(store).get_site_results_with_actions(
        batch_uuid=batch_uuid,
        site_id=site_id,
        execution_group=execution_group,
        severity=severity,
    )
    return {"items": items}


def get_violations(*, by: str = "group", store: RuleGraphStore | None = None) -> dict[str, Any]:
    selected = _store(store)
    return {
        "stats": selected.get_violation_stats(),
        "by": by,
        "items": selected.get_violations_by(by),
    }


def get_compliance_summary(*, store: RuleGraphStore | None = None) -> dict[str, Any]:
    return {"items": _store(store).get_compliance_summary()}
