import inspect
import json

import pytest

from dqboard import mcp_tools
from dqboard.mcp_server import MCP_TOOL_NAMES, _wrap_tool, create_mcp_server
from dqboard.seed import seed_demo_data
from dqboard.store import STORE


def _create(name: str, **kwargs) -> dict:
    return mcp_tools.create_rule(query_name=name, sql_statement=f"SELECT 1 -- {name}", **kwargs)


def test_mcp_rule_lifecycle():
    a = _create("A", severity="ERROR")
    b = _create("B", dependency_query_ids=[a["query_id"]])
    assert a["execution_group"] == "DQ"
    assert b["dependency_query_ids"] == [a["query_id"]]

    fetched = mcp_tools.get_rule(query_id=a["query_id"])
    assert fetched["severity"] == "ERROR"

    listed = mcp_tools.list_rules(execution_group="DQ")
    assert [rule["query_name"] for rule in listed["items"]] == ["A", "B"]

    updated = mcp_tools.update_rule(query_id=a["query_id"], updates={"is_active": False})
    assert updated["is_active"] is False
    assert mcp_tools.list_rules(is_active=True)["items"][0]["query_name"] == "B"

    deps = mcp_tools.get_rule_dependencies(query_id=b["query_id"])
    assert [rule["query_id"] for rule in deps["items"]] == [a["query_id"]]
    dependents = mcp_tools.get_rule_dependents(query_id=a["query_id"])
    assert [rule["query_id"] for rule in dependents["items"]] == [b["query_id"]]

    context = mcp_tools.get_rule_context(query_id=b["query_id"])
    assert [item["query_id"] for item in context["dependencies"]] == [a["query_id"]]

    graph = mcp_tools.get_rule_graph()
    assert graph["edges"] == [{"from_query_id": a["query_id"], "to_query_id": b["query_id"]}]

    assert mcp_tools.delete_rule(query_id=a["query_id"]) == {"deleted": True, "query_id": a["query_id"]}
    assert mcp_tools.get_rule(query_id=b["query_id"])["dependency_query_ids"] == []


def test_mcp_tools_raise_domain_tokens():
    with pytest.raises(KeyError, match="RULE_NOT_FOUND"):
        mcp_tools.get_rule(query_id=404)
    with pytest.raises(KeyError, match="RULE_NOT_FOUND"):
        mcp_tools.delete_rule(query_id=404)
    with pytest.raises(KeyError, match="DEPENDENCY_NOT_FOUND"):
        _create("Orphan", dependency_query_ids=[404])

    a = _create("A")
    b = _create("B", dependency_query_ids=[a["query_id"]])
    with pytest.raises(ValueError, match="INVALID_SELF_REFERENCE"):
        mcp_tools.update_rule(query_id=a["query_id"], updates={"dependency_query_ids": [a["query_id"]]})
    with pytest.raises(ValueError, match="CYCLE_DETECTED"):
        mcp_tools.update_rule(query_id=a["query_id"], updates={"dependency_query_ids": [b["query_id"]]})
    with pytest.raises(KeyError, match="BATCH_NOT_FOUND"):
        mcp_tools.simulate_batch_completion(batch_uuid="BATCH-UUID-0404")


def test_mcp_tools_accept_explicit_store(store):
    rule = mcp_tools.create_rule(query_name="Scoped", sql_statement="SELECT 1", store=store)

    assert store.get_rule(rule["query_id"])["query_name"] == "Scoped"
    assert mcp_tools.list_rules()["items"] == []


def test_mcp_batch_tools():
    _create("Active")
    batch = mcp_tools.trigger_batch(batch_name="From MCP")
    assert batch["triggered_by"] == "mcp"
    assert batch["status"] == "RUNNING"
    assert batch["total_queries"] == 1

    done = mcp_tools.simulate_batch_completion(batch_uuid=batch["batch_uuid"])
    assert done["status"] in {"SUCCESS", "PARTIAL", "FAILED"}


def test_mcp_tool_names_are_exposed_by_tools_module():
    assert all(callable(getattr(mcp_tools, name)) for name in MCP_TOOL_NAMES)
    assert len(set(MCP_TOOL_NAMES)) == len(MCP_TOOL_NAMES)


def test_wrapped_tool_hides_store_parameter():
    wrapped = _wrap_tool(mcp_tools.get_rule_context)

    params = inspect.signature(wrapped).parameters
    assert "store" not in params
    assert list(params) == ["query_id", "dependency_depth", "dependent_depth"]


def test_mcp_server_constructs():
    server = create_mcp_server()
    assert server is not None


def test_mcp_wrapped_tool_reports_domain_code():
    server = create_mcp_server()
    wrapped = server._tool_manager.get_tool("get_rule").fn
    try:
        wrapped(query_id=404)
        raise AssertionError("Expected RuntimeError")
    except RuntimeError as exc:
        payload = json.loads(str(exc))
    assert payload["error"]["code"] == "RULE_NOT_FOUND"


def test_rule_lookup_tools_are_keyword_only():
    for tool in (mcp_tools.get_rule, mcp_tools.get_rule_graph):
        params = inspect.signature(tool).parameters.values()
        assert all(param.kind is inspect.Parameter.KEYWORD_ONLY for param in params)

    with pytest.raises(TypeError):
        mcp_tools.get_rule(1)


def test_mcp_update_rejects_null_required_field_and_bad_timestamp():
    a = _create("A")

    with pytest.raises(ValueError, match="REQUIRED_FIELD_NULL"):
        mcp_tools.update_rule(query_id=a["query_id"], updates={"query_name": None})
    with pytest.raises(ValueError, match="INVALID_TIMESTAMP"):
        mcp_tools.update_rule(query_id=a["query_id"], updates={"effective_from": "soon"})
    assert mcp_tools.get_rule(query_id=a["query_id"]) == a


def test_mcp_results_tools_report_seeded_history():
    seed_demo_data(STORE)

    results = mcp_tools.get_site_results(batch_uuid="BATCH-UUID-0002", severity="ERROR")
    assert len(results["items"]) == 18
    violations = mcp_tools.get_violations(by="severity")
    assert violations["stats"]["total"] == 192
    assert [item["severity"] for item in violations["items"]] == ["ERROR", "WARN"]
    summary = mcp_tools.get_compliance_summary()
    assert [item["compliance_code"] for item in summary["items"]] == ["CC001", "CC002", "CC003", "CC004", "CC005"]

    with pytest.raises(ValueError, match="INVALID_DIMENSION"):
        mcp_tools.get_violations(by="weekday")
