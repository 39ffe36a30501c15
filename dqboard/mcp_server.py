from __future__ import annotations

import inspect
import json
import logging
import os
from collections.abc import Callable
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from dqboard import mcp_tools


logger = logging.getLogger(__name__)

MCP_TOOL_NAMES = [
    "create_rule",
    "get_rule",
    "list_rules",
    "update_rule",
    "delete_rule",
    "get_rule_dependencies",
    "get_rule_dependents",
    "get_rule_context",
    "get_rule_graph",
    "trigger_batch",
    "simulate_batch_completion",
    "get_site_results",
    "get_violations",
    "get_compliance_summary",
]


_DOMAIN_ERRORS: dict[str, tuple[str, bool]] = {
    "RULE_NOT_FOUND": ("Rule not found", False),
    "DEPENDENCY_NOT_FOUND": ("Dependency rule not found", False),
    "BATCH_NOT_FOUND": ("Batch not found", False),
    "CYCLE_DETECTED": ("Dependency introduces graph cycle", False),
    "INVALID_SELF_REFERENCE": ("A rule cannot depend on itself", False),
    "INVALID_SEVERITY": ("Severity must be ERROR, WARN or INFO", False),
    "INVALID_BATCH_STATUS": ("Unknown batch completion status", False),
    "BATCH_NOT_RUNNING": ("Batch is not running", False),
    "INVALID_TIMESTAMP": ("Timestamps must be ISO-8601", False),
    "REQUIRED_FIELD_NULL": ("Required rule fields cannot be set to null", False),
    "INVALID_DIMENSION": ("Violations can be grouped by group, site, batch or severity", False),
}


def _normalize_tool_exception(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, SQLAlchemyError):
        return {
            "code": "DB_ERROR",
            "message": "Database operation failed",
            "retryable": False,
        }

    token = exc.args[0] if exc.args else str(exc)
    token_str = str(token)
    if token_str in _DOMAIN_ERRORS:
        message, retryable = _DOMAIN_ERRORS[token_str]
        return {
            "code": token_str,
            "message": message,
            "retryable": retryable,
        }

    return {
        "code": "INVARIANT_VIOLATION",
        "message": "Operation failed due to invalid state",
        "retryable": False,
    }


def _wrap_tool(tool_fn: Callable[..., Any]) -> Callable[..., Any]:
    def _wrapped(*args: Any, **kwargs: Any) -> Any:
        try:
            return tool_fn(*args, **kwargs)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Tool %s failed", tool_fn.__name__, exc_info=True)
            payload = {"error": _normalize_tool_exception(exc)}
            raise RuntimeError(json.dumps(payload)) from exc

    # The store override is for in-process callers; MCP clients never see it.
    signature = inspect.signature(tool_fn)
    exposed = [param for param in signature.parameters.values() if param.name != "store"]

    _wrapped.__name__ = tool_fn.__name__
    _wrapped.__doc__ = tool_fn.__doc__
    _wrapped.__signature__ = signature.replace(parameters=exposed)  # type: ignore[attr-defined]
    return _wrapped


def create_mcp_server():
    try:
        from mcp.server.fastmcp import FastMCP
    except ImportError as exc:
        raise RuntimeError("Install the 'mcp' package to run the MCP server") from exc

    server = FastMCP("dqboard")
    for name in MCP_TOOL_NAMES:
        server.tool(name=name)(_wrap_tool(getattr(mcp_tools, name)))
    return server


def main() -> None:
    logging.basicConfig(
        level=os.getenv("DQBOARD_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    server = create_mcp_server()
    server.run()


if __name__ == "__main__":
    main()
