"""Demo rule set for a fresh store.

Rules declare their dependencies by name; ids are whatever the store assigns,
so the seed works on any store regardless of how many rules it already holds.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from dqboard.store import RuleGraphStore


logger = logging.getLogger(__name__)

EFFECTIVE_FROM = "2025-05-15T00:00:00Z"

DEMO_RULES: list[dict[str, Any]] = [
    {
        "query_name": "DQ-1 Missing TurnInDateTime",
        "query_description": "Records missing TurnInDateTime",
        "sql_statement": "SELECT * FROM gold.orders WHERE turnindatetime IS NULL",
        "execution_stage": 1,
        "execution_group": "DQ",
        "target_table": "gold.orders",
        "remediation_hint": "Provide TurnInDateTime",
        "severity": "ERROR",
        "depends_on": [],
    },
    {
        "query_name": "DQ-2 Invalid Status",
        "query_description": "Status not in allowed list",
        "sql_statement": "SELECT * FROM gold.orders WHERE status NOT IN ('OPEN','CLOSED','PENDING')",
        "execution_stage": 2,
        "execution_group": "DQ",
        "target_table": "gold.orders",
        "remediation_hint": "Correct status value",
        "severity": "ERROR",
        "depends_on": ["DQ-1 Missing TurnInDateTime"],
    },
    {
        "query_name": "DQ-3 Late Disposition Date",
        "query_description": "Disposition date older than 365 days",
        "sql_statement": "SELECT * FROM gold.orders WHERE disposition_date < CURRENT_DATE - INTERVAL '365 days'",
        "execution_stage": 3,
        "execution_group": "DQ",
        "target_table": "gold.orders",
        "remediation_hint": "Set a recent disposition date",
        "severity": "WARN",
        "depends_on": ["DQ-1 Missing TurnInDateTime", "DQ-2 Invalid Status"],
    },
    {
        "query_name": "DQ-4 Duplicate Natural Key",
        "query_description": "Duplicate values for business key",
        "sql_statement": "SELECT natural_key, COUNT(*) FROM gold.orders GROUP BY natural_key HAVING COUNT(*)>1",
        "execution_stage": 4,
        "execution_group": "DQ",
        "target_table": "gold.orders",
        "remediation_hint": "Deduplicate business key",
        "severity": "ERROR",
        "depends_on": [],
    },
    {
        "query_name": "RI-1 Orphan Customer",
        "query_description": "Orders referencing missing customer",
        "sql_statement": (
            "SELECT o.* FROM gold.orders o LEFT JOIN gold.customers c "
            "ON o.customer_id=c.customer_id WHERE c.customer_id IS NULL"
        ),
        "execution_stage": 1,
        "execution_group": "RI",
        "target_table": "gold.orders",
        "remediation_hint": "Fix customer reference",
        "severity": "ERROR",
        "depends_on": ["DQ-1 Missing TurnInDateTime", "DQ-2 Invalid Status"],
    },
    {
        "query_name": "RI-2 Orphan Product",
        "query_description": "Orders referencing missing product",
        "sql_statement": (
            "SELECT o.* FROM gold.orders o LEFT JOIN gold.products p "
            "ON o.product_id=p.product_id WHERE p.product_id IS NULL"
        ),
        "execution_stage": 2,
        "execution_group": "RI",
        "target_table": "gold.orders",
        "remediation_hint": "Fix product reference",
        "severity": "ERROR",
        "depends_on": ["RI-1 Orphan Customer"],
    },
    {
        "query_name": "SEC-1 PII Masking Check",
        "query_description": "Ensure PII fields are masked",
        "sql_statement": "SELECT * FROM gold.customers WHERE ssn ~ '^[0-9]{3}-[0-9]{2}-[0-9]{4}$'",
        "execution_stage": 1,
        "execution_group": "SEC",
        "target_table": "gold.customers",
        "remediation_hint": "Mask SSN column",
        "severity": "WARN",
        "depends_on": [],
    },
    {
        "query_name": "METRIC-1 Row Count Drift",
        "query_description": "Row count deviates from expected threshold",
        "sql_statement": "SELECT COUNT(*) FROM gold.orders",
        "execution_stage": 1,
        "execution_group": "METRIC",
        "target_table": "gold.orders",
        "remediation_hint": "Investigate upstream load",
        "severity": "INFO",
        "depends_on": [],
    },
]

DEMO_COMPLIANCE: list[dict[str, Any]] = [
    {
        "compliance_code": "CC001",
        "compliance_name": "Data Completeness & Validity",
        "compliance_description": "Key fields must be present and valid",
        "recommended_action": "Populate missing fields / correct invalid values",
        "rules": ["DQ-1 Missing TurnInDateTime", "DQ-2 Invalid Status", "DQ-3 Late Disposition Date"],
    },
    {
        "compliance_code": "CC002",
        "compliance_name": "Referential Integrity",
        "compliance_description": "References must point to valid dimension/master rows",
        "recommended_action": "Fix foreign key references",
        "rules": ["RI-1 Orphan Customer", "RI-2 Orphan Product"],
    },
    {
        "compliance_code": "CC003",
        "compliance_name": "Duplicate Prevention",
        "compliance_description": "Business keys must be unique",
        "recommended_action": "Deduplicate and enforce uniqueness",
        "rules": ["DQ-3 Late Disposition Date", "DQ-4 Duplicate Natural Key"],
    },
    {
        "compliance_code": "CC004",
        "compliance_name": "PII Protection",
        "compliance_description": "PII must be masked or tokenized",
        "recommended_action": "Mask PII fields",
        "rules": ["SEC-1 PII Masking Check"],
    },
    {
        "compliance_code": "CC005",
        "compliance_name": "Metric Drift",
        "compliance_description": "Unexpected metric drift must be investigated",
        "recommended_action": "Investigate upstream load/source changes",
        "rules": ["METRIC-1 Row Count Drift"],
    },
]

DEMO_BATCHES: list[dict[str, Any]] = [
    {
        "batch_name": "Seed Batch Run",
        "triggered_by": "seed-script",
        "status": "SUCCESS",
        "total_queries": 8,
        "successful_queries": 7,
        "failed_queries": 1,
        "total_rows_affected": 150,
        "start_time": "2025-06-15T08:00:00Z",
        "end_time": "2025-06-15T08:12:34Z",
    },
    {
        "batch_name": "Nightly DQ Run",
        "triggered_by": "scheduler",
        "status": "SUCCESS",
        "total_queries": 8,
        "successful_queries": 8,
        "failed_queries": 0,
        "total_rows_affected": 120,
        "start_time": "2025-06-16T02:00:00Z",
        "end_time": "2025-06-16T02:08:45Z",
    },
    {
        "batch_name": "Ad-Hoc Reprocessing",
        "triggered_by": "admin-user",
        "status": "PARTIAL",
        "total_queries": 8,
        "successful_queries": 6,
        "failed_queries": 2,
        "total_rows_affected": 95,
        "start_time": "2025-06-17T14:30:00Z",
        "end_time": "2025-06-17T14:42:18Z",
    },
    {
        "batch_name": "Weekly Full Scan",
        "triggered_by": "scheduler",
        "status": "RUNNING",
        "total_queries": 8,
        "successful_queries": 3,
        "failed_queries": 0,
        "total_rows_affected": 45,
        "start_time": "2025-06-18T06:00:00Z",
        "end_time": None,
    },
    {
        "batch_name": "Emergency Hotfix Batch",
        "triggered_by": "ops-team",
        "status": "FAILED",
        "total_queries": 4,
        "successful_queries": 1,
        "failed_queries": 3,
        "total_rows_affected": 12,
        "start_time": "2025-06-14T22:15:00Z",
        "end_time": "2025-06-14T22:18:02Z",
    },
]

DEMO_SITES = ("12340", "12341", "12342", "12343", "12344", "12345")

# (batch position, rule names, sites, record suffix, checks per pair, violated(check), checked at)
DEMO_RESULT_RUNS: list[tuple[int, tuple[str, ...], tuple[str, ...], str, int, Callable[[int], bool], str]] = [
    (
        0,
        (
            "DQ-1 Missing TurnInDateTime",
            "DQ-2 Invalid Status",
            "DQ-3 Late Disposition Date",
            "DQ-4 Duplicate Natural Key",
            "RI-1 Orphan Customer",
        ),
        DEMO_SITES,
        "",
        5,
        lambda check: check % 3 != 0,
        "2025-06-15T08:12:00Z",
    ),
    (
        1,
        ("DQ-1 Missing TurnInDateTime", "DQ-2 Invalid Status", "RI-1 Orphan Customer"),
        ("12342", "12343"),
        "B2-",
        3,
        lambda check: check % 2 == 1,
        "2025-06-16T02:08:00Z",
    ),
    (
        2,
        ("DQ-1 Missing TurnInDateTime", "DQ-3 Late Disposition Date", "DQ-4 Duplicate Natural Key"),
        ("12344", "12345"),
        "B3-",
        4,
        lambda check: check <= 3,
        "2025-06-17T14:42:00Z",
    ),
]


def seed_demo_data(store: RuleGraphStore) -> dict[str, int]:
    """Load the demo rules, compliance codes, past batches and their site results.

    Returns rule name -> id.
    """
    ids: dict[str, int] = {}
    for definition in DEMO_RULES:
        payload = {key: value for key, value in definition.items() if key != "depends_on"}
        payload["created_by"] = "seed"
        payload["effective_from"] = EFFECTIVE_FROM
        payload["dependency_query_ids"] = [ids[name] for name in definition["depends_on"]]
        rule = store.create_rule(payload)
        ids[rule["query_name"]] = rule["query_id"]

    for definition in DEMO_COMPLIANCE:
        payload = {key: value for key, value in definition.items() if key != "rules"}
        store.create_compliance_activity(payload, [ids[name] for name in definition["rules"]])

    batch_uuids = [store.record_batch(definition)["batch_uuid"] for definition in DEMO_BATCHES]

    results = 0
    for position, rule_names, sites, suffix, checks, violated, checked_at in DEMO_RESULT_RUNS:
        for site_id in sites:
            for name in rule_names:
                for check in range(1, checks + 1):
                    store.add_site_result(
                        {
                            "batch_uuid": batch_uuids[position],
                            "site_id": site_id,
                            "query_id": ids[name],
                            "record_key": f"REC-{site_id}-{ids[name]}-{suffix}{check}",
                            "is_violated": violated(check),
                            "last_updated_dttm": checked_at,
                        }
                    )
                    results += 1

    logger.info(
        "Seeded %s rules, %s compliance codes, %s batches and %s site results",
        len(ids),
        len(DEMO_COMPLIANCE),
        len(batch_uuids),
        results,
    )
    return ids
