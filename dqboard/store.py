from __future__ import annotations

import logging
import math
import random
import threading
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine

from dqboard.db import (
    DEFAULT_DATABASE_URL,
    build_engine,
    build_session_factory,
    database_url,
    init_db,
    reset_db,
)
from dqboard.models import (
    COMPLETION_STATUSES,
    BatchControlModel,
    BatchStatus,
    NonComplianceActivityModel,
    NonComplianceQueryMapModel,
    RuleModel,
    Severity,
    SiteResultModel,
)


logger = logging.getLogger(__name__)

RULE_FIELDS = (
    "query_name",
    "query_description",
    "sql_statement",
    "execution_stage",
    "execution_group",
    "is_active",
    "drops_records",
    "target_table",
    "created_by",
    "remediation_hint",
    "severity",
    "effective_from",
    "effective_to",
    "dependency_query_ids",
)

# Non-nullable rule columns and the value a missing/None input falls back to.
_RULE_DEFAULTS: dict[str, Any] = {
    "query_name": "",
    "sql_statement": "",
    "is_active": True,
    "drops_records": False,
}

COMPLIANCE_FIELDS = (
    "compliance_code",
    "compliance_name",
    "compliance_description",
    "recommended_action",
)

SIMULATED_OUTCOMES = (
    BatchStatus.SUCCESS,
    BatchStatus.SUCCESS,
    BatchStatus.SUCCESS,
    BatchStatus.PARTIAL,
    BatchStatus.FAILED,
)
PARTIAL_FAILURE_RATIO = 0.3
ROWS_AFFECTED_RANGE = (20, 219)

# Dimension accepted by get_violations_by and the key it reports the bucket under.
VIOLATION_DIMENSIONS = {
    "group": "group",
    "site": "site",
    "batch": "batch_uuid",
    "severity": "severity",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


def _parse_timestamp(value: datetime | str | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError("INVALID_TIMESTAMP") from exc
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _severity(value: Severity | str | None) -> Severity | None:
    if value is None or value == "":
        return None
    try:
        return Severity(value)
    except ValueError as exc:
        raise ValueError("INVALID_SEVERITY") from exc


def _clean_dependency_ids(query_id: int | None, dependency_ids: Iterable[int] | None) -> list[int]:
    cleaned = [int(dep_id) for dep_id in dependency_ids or []]
    if query_id is not None and query_id in cleaned:
        logger.warning("Stripping self dependency from rule %s", query_id)
        cleaned = [dep_id for dep_id in cleaned if dep_id != query_id]
    return cleaned


def _rule_to_dict(model: RuleModel) -> dict[str, Any]:
    return {
        "query_id": model.query_id,
        "query_name": model.query_name,
        "query_description": model.query_description,
        "sql_statement": model.sql_statement,
        "execution_stage": model.execution_stage,
        "execution_group": model.execution_group,
        "is_active": model.is_active,
        "drops_records": model.drops_records,
        "target_table": model.target_table,
        "created_by": model.created_by,
        "remediation_hint": model.remediation_hint,
        "severity": model.severity.value if model.severity is not None else None,
        "effective_from": _iso(model.effective_from),
        "effective_to": _iso(model.effective_to),
        "dependency_query_ids": list(model.dependency_query_ids or []),
        "created_date": _iso(model.created_date),
        "modified_date": _iso(model.modified_date),
    }


def _rule_summary(model: RuleModel, depth: int) -> dict[str, Any]:
    return {
        "query_id": model.query_id,
        "query_name": model.query_name,
        "execution_group": model.execution_group,
        "execution_stage": model.execution_stage,
        "is_active": model.is_active,
        "depth": depth,
    }


def _activity_to_dict(model: NonComplianceActivityModel, linked_query_ids: list[int]) -> dict[str, Any]:
    return {
        "non_compliance_id": model.non_compliance_id,
        "compliance_code": model.compliance_code,
        "compliance_name": model.compliance_name,
        "compliance_description": model.compliance_description,
        "recommended_action": model.recommended_action,
        "linked_query_ids": linked_query_ids,
    }


def _batch_to_dict(model: BatchControlModel) -> dict[str, Any]:
    return {
        "batch_id": model.batch_id,
        "batch_uuid": model.batch_uuid,
        "batch_name": model.batch_name,
        "pipeline_type": model.pipeline_type,
        "triggered_by": model.triggered_by,
        "status": model.status.value,
        "total_queries": model.total_queries,
        "successful_queries": model.successful_queries,
        "failed_queries": model.failed_queries,
        "total_rows_affected": model.total_rows_affected,
        "start_time": _iso(model.start_time),
        "end_time": _iso(model.end_time),
    }


def _apply_rule_fields(model: RuleModel, payload: dict[str, Any], creating: bool = False) -> None:
    for field in RULE_FIELDS:
        if field not in payload:
            continue
        value = payload[field]
        if field == "severity":
            value = _severity(value)
        elif field in ("effective_from", "effective_to"):
            value = _parse_timestamp(value)
        elif field == "dependency_query_ids":
            value = _clean_dependency_ids(model.query_id, value)
        elif value is None and field in _RULE_DEFAULTS:
            # Only a new rule falls back to defaults; an update must not blank it.
            if not creating:
                raise ValueError("REQUIRED_FIELD_NULL")
            value = _RULE_DEFAULTS[field]
        setattr(model, field, value)


def _violation_counts(total: int, violated: int) -> dict[str, Any]:
    return {
        "total": total,
        "violated": violated,
        "clean": total - violated,
        "rate": _percent(violated, total, empty=0.0),
    }


def _percent(part: int, total: int, empty: float) -> float:
    if total == 0:
        return empty
    return round(part / total * 100, 1)


def _result_to_dict(model: SiteResultModel) -> dict[str, Any]:
    return {
        "results_id": model.results_id,
        "batch_uuid": model.batch_uuid,
        "site_id": model.site_id,
        "query_id": model.query_id,
        "execution_stage": model.execution_stage,
        "execution_group": model.execution_group,
        "record_key": model.record_key,
        "is_violated": model.is_violated,
        "violation_details": model.violation_details,
        "last_updated_dttm": _iso(model.last_updated_dttm),
    }


class RuleGraphStore:
    """Rule definitions, their dependency edges, compliance links and batches.

    Every instance owns its own engine, so separate instances never share ids
    or rows. All operations hold the instance lock, which serializes writers
    and keeps readers from observing a half-applied write.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        engine: Engine | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._engine = engine if engine is not None else build_engine(url or DEFAULT_DATABASE_URL)
        self._sessions = build_session_factory(self._engine)
        self._lock = threading.RLock()
        self._rng = rng or random.Random()
        init_db(self._engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    def reset(self) -> None:
        with self._lock:
            reset_db(self._engine)

    # -- rules -------------------------------------------------------------

    def create_rule(self, payload: dict[str, Any], *, validate_dependencies: bool = False) -> dict[str, Any]:
        with self._lock, self._sessions.begin() as session:
            if validate_dependencies:
                self._validate_dependencies(session, None, payload.get("dependency_query_ids") or [])
            now = _now()
            rule = RuleModel(
                query_name="",
                sql_statement="",
                is_active=True,
                drops_records=False,
                dependency_query_ids=[],
                created_date=now,
                modified_date=now,
            )
            _apply_rule_fields(rule, payload, creating=True)
            session.add(rule)
            session.flush()

            # The id only exists after the insert, so self edges are caught here.
            if rule.query_id in rule.dependency_query_ids:
                rule.dependency_query_ids = _clean_dependency_ids(rule.query_id, rule.dependency_query_ids)
                session.flush()

            logger.info("Created rule %s (%s)", rule.query_id, rule.query_name)
            return _rule_to_dict(rule)

    def get_rule(self, query_id: int) -> dict[str, Any] | None:
        with self._lock, self._sessions() as session:
            rule = session.get(RuleModel, query_id)
            if rule is None:
                return None
            return _rule_to_dict(rule)

    def list_rules(
        self,
        execution_group: str | None = None,
        is_active: bool | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock, self._sessions() as session:
            query = select(RuleModel)
            if execution_group is not None:
                query = query.where(RuleModel.execution_group == execution_group)
            if is_active is not None:
                query = query.where(RuleModel.is_active.is_(is_active))
            query = query.order_by(
                RuleModel.execution_group, RuleModel.execution_stage, RuleModel.query_id
            )
            return [_rule_to_dict(rule) for rule in session.execute(query).scalars().all()]

    def update_rule(
        self,
        query_id: int,
        updates: dict[str, Any],
        *,
        validate_dependencies: bool = False,
    ) -> dict[str, Any] | None:
        """Merge ``updates`` into the rule; ``None`` when it does not exist.

        With ``validate_dependencies`` a new dependency list is checked for self
        references, unknown ids and cycles inside the same locked transaction
        as the write.
        """
        with self._lock, self._sessions.begin() as session:
            rule = session.get(RuleModel, query_id)
            if rule is None:
                return None
            dependency_ids = updates.get("dependency_query_ids")
            if validate_dependencies and dependency_ids is not None:
                self._validate_dependencies(session, query_id, dependency_ids)
            _apply_rule_fields(rule, updates)
            rule.modified_date = _now()
            return _rule_to_dict(rule)

    def _validate_dependencies(self, session, query_id: int | None, dependency_ids: Iterable[int]) -> None:
        dependency_ids = [int(dep_id) for dep_id in dependency_ids]
        if query_id is not None and query_id in dependency_ids:
            raise ValueError("INVALID_SELF_REFERENCE")
        known = set(
            session.execute(
                select(RuleModel.query_id).where(RuleModel.query_id.in_(dependency_ids))
            ).scalars()
        )
        missing = sorted({dep_id for dep_id in dependency_ids if dep_id not in known})
        if missing:
            raise KeyError("DEPENDENCY_NOT_FOUND", missing)
        # A rule being created has no dependents yet.
        if query_id is not None and self._creates_cycle(session, query_id, dependency_ids):
            raise ValueError("CYCLE_DETECTED")

    def delete_rule(self, query_id: int) -> bool:
        with self._lock, self._sessions.begin() as session:
            rule = session.get(RuleModel, query_id)
            if rule is None:
                return False
            session.delete(rule)

            scrubbed = 0
            for other in self._all_rules(session):
                if other.query_id == query_id:
                    continue
                dependency_ids = other.dependency_query_ids or []
                if query_id in dependency_ids:
                    other.dependency_query_ids = [dep_id for dep_id in dependency_ids if dep_id != query_id]
                    scrubbed += 1
                    logger.debug("Removed dependency %s from rule %s", query_id, other.query_id)

            session.execute(
                delete(NonComplianceQueryMapModel).where(NonComplianceQueryMapModel.query_id == query_id)
            )
            logger.info("Deleted rule %s; %s dependent rule(s) updated", query_id, scrubbed)
            return True

    def _all_rules(self, session) -> list[RuleModel]:
        return list(session.execute(select(RuleModel).order_by(RuleModel.query_id)).scalars().all())

    def get_rule_dependencies(self, query_id: int) -> list[dict[str, Any]]:
        with self._lock, self._sessions() as session:
            rule = session.get(RuleModel, query_id)
            if rule is None:
                return []
            out: list[dict[str, Any]] = []
            seen: set[int] = set()
            for dep_id in rule.dependency_query_ids or []:
                if dep_id in seen:
                    continue
                seen.add(dep_id)
                dependency = session.get(RuleModel, dep_id)
                if dependency is None:
                    continue
                out.append(_rule_to_dict(dependency))
            return out

    def get_rule_dependents(self, query_id: int) -> list[dict[str, Any]]:
        with self._lock, self._sessions() as session:
            return [
                _rule_to_dict(rule)
                for rule in self._all_rules(session)
                if query_id in (rule.dependency_query_ids or [])
            ]

    def active_rule_count(self) -> int:
        with self._lock, self._sessions() as session:
            return self._active_rule_count(session)

    def _active_rule_count(self, session) -> int:
        return int(
            session.execute(
                select(func.count()).select_from(RuleModel).where(RuleModel.is_active.is_(True))
            ).scalar_one()
        )

    def _dependency_map(self, session) -> dict[int, list[int]]:
        return {rule.query_id: list(rule.dependency_query_ids or []) for rule in self._all_rules(session)}

    def creates_cycle(self, query_id: int, dependency_ids: Iterable[int]) -> bool:
        """Whether giving ``query_id`` these dependencies would close a cycle."""
        with self._lock, self._sessions() as session:
            return self._creates_cycle(session, query_id, dependency_ids)

    def _creates_cycle(self, session, query_id: int, dependency_ids: Iterable[int]) -> bool:
        dependency_map = self._dependency_map(session)
        stack = [int(dep_id) for dep_id in dependency_ids]
        visited: set[int] = set()
        while stack:
            node = stack.pop()
            if node == query_id:
                return True
            if node in visited:
                continue
            visited.add(node)
            stack.extend(dependency_map.get(node, []))
        return False

    def get_rule_context(
        self,
        query_id: int,
        dependency_depth: int = 1,
        dependent_depth: int = 1,
    ) -> dict[str, Any]:
        with self._lock, self._sessions() as session:
            rule = session.get(RuleModel, query_id)
            if rule is None:
                raise KeyError("RULE_NOT_FOUND")

            rules = {item.query_id: item for item in self._all_rules(session)}
            upstream: dict[int, list[int]] = {}
            downstream: dict[int, list[int]] = {}
            for item in rules.values():
                for dep_id in item.dependency_query_ids or []:
                    upstream.setdefault(item.query_id, []).append(dep_id)
                    downstream.setdefault(dep_id, []).append(item.query_id)

            def _walk(graph: dict[int, list[int]], max_depth: int) -> list[dict[str, Any]]:
                if max_depth <= 0:
                    return []
                seen: set[int] = {query_id}
                frontier = [(query_id, 0)]
                out: list[dict[str, Any]] = []
                while frontier:
                    node, depth = frontier.pop(0)
                    if depth >= max_depth:
                        continue
                    for neighbor in graph.get(node, []):
                        if neighbor in seen:
                            continue
                        seen.add(neighbor)
                        neighbor_rule = rules.get(neighbor)
                        if neighbor_rule is None:
                            continue
                        out.append(_rule_summary(neighbor_rule, depth + 1))
                        frontier.append((neighbor, depth + 1))
                return out

            return {
                "rule": _rule_to_dict(rule),
                "dependencies": _walk(upstream, dependency_depth),
                "dependents": _walk(downstream, dependent_depth),
            }

    def get_rule_graph(self) -> dict[str, Any]:
        with self._lock, self._sessions() as session:
            rules = self._all_rules(session)
            known_ids = {rule.query_id for rule in rules}
            edges: list[dict[str, int]] = []
            for rule in rules:
                seen: set[int] = set()
                for dep_id in rule.dependency_query_ids or []:
                    if dep_id in seen or dep_id not in known_ids:
                        continue
                    seen.add(dep_id)
                    edges.append({"from_query_id": dep_id, "to_query_id": rule.query_id})
            return {"rules": [_rule_to_dict(rule) for rule in rules], "edges": edges}

    # -- compliance mapping ------------------------------------------------

    def _linked_query_ids(self, session, non_compliance_id: int) -> list[int]:
        rows = session.execute(
            select(NonComplianceQueryMapModel.query_id)
            .where(NonComplianceQueryMapModel.non_compliance_id == non_compliance_id)
            .order_by(NonComplianceQueryMapModel.id)
        ).all()
        return [row[0] for row in rows]

    def _replace_links(self, session, non_compliance_id: int, linked_query_ids: Iterable[int]) -> None:
        session.execute(
            delete(NonComplianceQueryMapModel).where(
                NonComplianceQueryMapModel.non_compliance_id == non_compliance_id
            )
        )
        for query_id in linked_query_ids:
            session.add(NonComplianceQueryMapModel(non_compliance_id=non_compliance_id, query_id=int(query_id)))
        session.flush()

    def create_compliance_activity(
        self,
        payload: dict[str, Any],
        linked_query_ids: Iterable[int] | None = None,
    ) -> dict[str, Any]:
        with self._lock, self._sessions.begin() as session:
            activity = NonComplianceActivityModel(
                compliance_code=payload["compliance_code"],
                compliance_name=payload["compliance_name"],
                compliance_description=payload.get("compliance_description"),
                recommended_action=payload.get("recommended_action"),
            )
            session.add(activity)
            session.flush()
            if linked_query_ids:
                self._replace_links(session, activity.non_compliance_id, linked_query_ids)
            return _activity_to_dict(activity, self._linked_query_ids(session, activity.non_compliance_id))

    def update_compliance_activity(
        self,
        non_compliance_id: int,
        updates: dict[str, Any],
        linked_query_ids: Iterable[int] | None = None,
    ) -> dict[str, Any] | None:
        with self._lock, self._sessions.begin() as session:
            activity = session.get(NonComplianceActivityModel, non_compliance_id)
            if activity is None:
                return None
            for field in COMPLIANCE_FIELDS:
                if field in updates:
                    setattr(activity, field, updates[field])
            if linked_query_ids is not None:
                self._replace_links(session, non_compliance_id, linked_query_ids)
            return _activity_to_dict(activity, self._linked_query_ids(session, non_compliance_id))

    def delete_compliance_activity(self, non_compliance_id: int) -> bool:
        with self._lock, self._sessions.begin() as session:
            activity = session.get(NonComplianceActivityModel, non_compliance_id)
            if activity is None:
                return False
            session.execute(
                delete(NonComplianceQueryMapModel).where(
                    NonComplianceQueryMapModel.non_compliance_id == non_compliance_id
                )
            )
            session.delete(activity)
            return True

    def get_linked_query_ids(self, non_compliance_id: int) -> list[int]:
        with self._lock, self._sessions() as session:
            return self._linked_query_ids(session, non_compliance_id)

    def list_compliance_activities(self) -> list[dict[str, Any]]:
        with self._lock, self._sessions() as session:
            activities = session.execute(
                select(NonComplianceActivityModel).order_by(NonComplianceActivityModel.non_compliance_id)
            ).scalars().all()
            return [
                _activity_to_dict(activity, self._linked_query_ids(session, activity.non_compliance_id))
                for activity in activities
            ]

    def get_rule_compliance(self, query_id: int) -> list[dict[str, Any]]:
        with self._lock, self._sessions() as session:
            activities = session.execute(
                select(NonComplianceActivityModel)
                .join(
                    NonComplianceQueryMapModel,
                    NonComplianceQueryMapModel.non_compliance_id == NonComplianceActivityModel.non_compliance_id,
                )
                .where(NonComplianceQueryMapModel.query_id == query_id)
                .order_by(NonComplianceActivityModel.non_compliance_id)
                .distinct()
            ).scalars().all()
            return [
                _activity_to_dict(activity, self._linked_query_ids(session, activity.non_compliance_id))
                for activity in activities
            ]

    # -- batches -----------------------------------------------------------

    def _batch_by_uuid(self, session, batch_uuid: str) -> BatchControlModel | None:
        return session.execute(
            select(BatchControlModel).where(BatchControlModel.batch_uuid == batch_uuid)
        ).scalar_one_or_none()

    def _insert_batch(self, session, batch: BatchControlModel) -> BatchControlModel:
        session.add(batch)
        session.flush()
        batch.batch_uuid = f"BATCH-UUID-{batch.batch_id:04d}"
        session.flush()
        return batch

    def trigger_batch(self, batch_name: str, pipeline_type: str, triggered_by: str) -> dict[str, Any]:
        with self._lock, self._sessions.begin() as session:
            batch = self._insert_batch(
                session,
                BatchControlModel(
                    batch_name=batch_name,
                    pipeline_type=pipeline_type,
                    triggered_by=triggered_by,
                    status=BatchStatus.RUNNING,
                    total_queries=self._active_rule_count(session),
                    start_time=_now(),
                ),
            )
            logger.info("Triggered batch %s over %s active rule(s)", batch.batch_uuid, batch.total_queries)
            return _batch_to_dict(batch)

    def record_batch(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Store a batch from an earlier run as given, counts and times included."""
        try:
            status = BatchStatus(payload.get("status", BatchStatus.RUNNING))
        except ValueError as exc:
            raise ValueError("INVALID_BATCH_STATUS") from exc

        with self._lock, self._sessions.begin() as session:
            batch = self._insert_batch(
                session,
                BatchControlModel(
                    batch_name=payload["batch_name"],
                    pipeline_type=payload.get("pipeline_type", "SILVER_TO_GOLD"),
                    triggered_by=payload.get("triggered_by", "import"),
                    status=status,
                    total_queries=payload.get("total_queries", 0),
                    successful_queries=payload.get("successful_queries", 0),
                    failed_queries=payload.get("failed_queries", 0),
                    total_rows_affected=payload.get("total_rows_affected", 0),
                    start_time=_parse_timestamp(payload.get("start_time")) or _now(),
                    end_time=_parse_timestamp(payload.get("end_time")),
                ),
            )
            return _batch_to_dict(batch)

    def get_batch(self, batch_uuid: str) -> dict[str, Any] | None:
        with self._lock, self._sessions() as session:
            batch = self._batch_by_uuid(session, batch_uuid)
            if batch is None:
                return None
            return _batch_to_dict(batch)

    def list_batches(self) -> list[dict[str, Any]]:
        with self._lock, self._sessions() as session:
            batches = session.execute(
                select(BatchControlModel).order_by(BatchControlModel.batch_id.desc())
            ).scalars().all()
            return [_batch_to_dict(batch) for batch in batches]

    def complete_batch(self, batch_uuid: str, status: BatchStatus | str) -> dict[str, Any] | None:
        try:
            target = BatchStatus(status)
        except ValueError as exc:
            raise ValueError("INVALID_BATCH_STATUS") from exc
        if target not in COMPLETION_STATUSES:
            raise ValueError("INVALID_BATCH_STATUS")

        with self._lock, self._sessions.begin() as session:
            batch = self._batch_by_uuid(session, batch_uuid)
            if batch is None:
                return None
            if batch.status != BatchStatus.RUNNING:
                raise ValueError("BATCH_NOT_RUNNING")

            total = batch.total_queries
            if target == BatchStatus.FAILED:
                failed = total
            elif target == BatchStatus.PARTIAL:
                failed = math.floor(total * PARTIAL_FAILURE_RATIO)
            else:
                failed = 0

            batch.status = target
            batch.end_time = _now()
            batch.failed_queries = failed
            batch.successful_queries = total - failed
            batch.total_rows_affected = self._rng.randint(*ROWS_AFFECTED_RANGE)
            logger.info("Batch %s finished with %s", batch_uuid, target.value)
            return _batch_to_dict(batch)

    def simulate_batch_completion(self, batch_uuid: str) -> dict[str, Any] | None:
        with self._lock:
            outcome = self._rng.choice(SIMULATED_OUTCOMES)
            return self.complete_batch(batch_uuid, outcome)

    def stop_batch(self, batch_uuid: str) -> dict[str, Any] | None:
        with self._lock, self._sessions.begin() as session:
            batch = self._batch_by_uuid(session, batch_uuid)
            if batch is None:
                return None
            if batch.status != BatchStatus.RUNNING:
                raise ValueError("BATCH_NOT_RUNNING")
            batch.status = BatchStatus.STOPPED
            batch.end_time = _now()
            logger.info("Stopped batch %s", batch_uuid)
            return _batch_to_dict(batch)

    # -- compliance results ------------------------------------------------

    def add_site_result(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Record one checked record of a site for a rule in a batch.

        The stage and group are copied from the rule at write time. A violated
        record without details gets ``Violation from rule: <name>``.
        """
        with self._lock, self._sessions.begin() as session:
            rule = session.get(RuleModel, payload["query_id"])
            if rule is None:
                raise KeyError("RULE_NOT_FOUND")
            is_violated = bool(payload.get("is_violated", False))
            details = payload.get("violation_details")
            if is_violated and details is None:
                details = f"Violation from rule: {rule.query_name}"
            result = SiteResultModel(
                batch_uuid=payload["batch_uuid"],
                site_id=str(payload["site_id"]),
                query_id=rule.query_id,
                execution_stage=rule.execution_stage,
                execution_group=rule.execution_group,
                record_key=payload["record_key"],
                is_violated=is_violated,
                violation_details=details,
                last_updated_dttm=_parse_timestamp(payload.get("last_updated_dttm")) or _now(),
            )
            session.add(result)
            session.flush()
            return _result_to_dict(result)

    def _site_results(self, session) -> list[SiteResultModel]:
        return list(session.execute(select(SiteResultModel).order_by(SiteResultModel.results_id)).scalars().all())

    def _activities_by_rule(self, session) -> dict[int, list[NonComplianceActivityModel]]:
        rows = session.execute(
            select(NonComplianceQueryMapModel.query_id, NonComplianceActivityModel)
            .join(
                NonComplianceActivityModel,
                NonComplianceActivityModel.non_compliance_id == NonComplianceQueryMapModel.non_compliance_id,
            )
            .order_by(NonComplianceActivityModel.non_compliance_id, NonComplianceQueryMapModel.id)
        ).all()
        out: dict[int, list[NonComplianceActivityModel]] = {}
        for query_id, activity in rows:
            linked = out.setdefault(query_id, [])
            if activity not in linked:
                linked.append(activity)
        return out

    def get_site_results_with_actions(
        self,
        batch_uuid: str | None = None,
        site_id: str | None = None,
        execution_group: str | None = None,
        severity: str | None = None,
    ) -> list[dict[str, Any]]:
        """Site results joined with their rule and the rule's compliance codes."""
        with self._lock, self._sessions() as session:
            query = select(SiteResultModel)
            if batch_uuid is not None:
                query = query.where(SiteResultModel.batch_uuid == batch_uuid)
            if site_id is not None:
                query = query.where(SiteResultModel.site_id == site_id)
            if execution_group is not None:
                query = query.where(SiteResultModel.execution_group == execution_group)
            results = session.execute(query.order_by(SiteResultModel.results_id)).scalars().all()

            rules = {rule.query_id: rule for rule in self._all_rules(session)}
            activities = self._activities_by_rule(session)
            out: list[dict[str, Any]] = []
            for result in results:
                rule = rules.get(result.query_id)
                rule_severity = rule.severity.value if rule is not None and rule.severity is not None else None
                if severity is not None and rule_severity != severity:
                    continue
                linked = activities.get(result.query_id, [])
                actions = [item.recommended_action for item in linked if item.recommended_action]
                row = _result_to_dict(result)
                row.update(
                    {
                        "query_name": rule.query_name if rule is not None else "Unknown",
                        "severity": rule_severity,
                        "compliance_codes": ", ".join(item.compliance_code for item in linked) or None,
                        "compliance_names": ", ".join(item.compliance_name for item in linked) or None,
                        "recommended_actions": " | ".join(actions) or None,
                    }
                )
                out.append(row)
            return out

    def get_violation_stats(self) -> dict[str, Any]:
        with self._lock, self._sessions() as session:
            results = self._site_results(session)
            violated = sum(1 for result in results if result.is_violated)
            return {
                "total": len(results),
                "violated": violated,
                "clean": len(results) - violated,
                "violation_rate": _percent(violated, len(results), empty=0.0),
            }

    def get_violations_by(self, dimension: str) -> list[dict[str, Any]]:
        """Violation counts per ``group``, ``site``, ``batch`` or ``severity``.

        Buckets appear in the order their first result was recorded.
        """
        if dimension not in VIOLATION_DIMENSIONS:
            raise ValueError("INVALID_DIMENSION")

        with self._lock, self._sessions() as session:
            rules = {rule.query_id: rule for rule in self._all_rules(session)}
            counts: dict[str, list[int]] = {}
            for result in self._site_results(session):
                if dimension == "group":
                    key = result.execution_group or "UNKNOWN"
                elif dimension == "site":
                    key = result.site_id
                elif dimension == "batch":
                    key = result.batch_uuid
                else:
                    rule = rules.get(result.query_id)
                    key = rule.severity.value if rule is not None and rule.severity is not None else "UNKNOWN"
                bucket = counts.setdefault(key, [0, 0])
                bucket[0] += 1
                if result.is_violated:
                    bucket[1] += 1

            batch_names: dict[str, str] = {}
            if dimension == "batch":
                batch_names = {
                    batch.batch_uuid: batch.batch_name
                    for batch in session.execute(select(BatchControlModel)).scalars().all()
                }

            out: list[dict[str, Any]] = []
            for key, (total, violated) in counts.items():
                row: dict[str, Any] = {VIOLATION_DIMENSIONS[dimension]: key}
                if dimension == "batch":
                    row["batch_name"] = batch_names.get(key, key)
                row.update(_violation_counts(total, violated))
                out.append(row)
            return out

    def get_compliance_summary(self) -> list[dict[str, Any]]:
        """Per compliance code, how many results of its linked rules were clean."""
        with self._lock, self._sessions() as session:
            activities = session.execute(
                select(NonComplianceActivityModel).order_by(NonComplianceActivityModel.non_compliance_id)
            ).scalars().all()
            results = self._site_results(session)
            out: list[dict[str, Any]] = []
            for activity in activities:
                linked_ids = self._linked_query_ids(session, activity.non_compliance_id)
                linked_set = set(linked_ids)
                matched = [result for result in results if result.query_id in linked_set]
                violated = sum(1 for result in matched if result.is_violated)
                summary = _activity_to_dict(activity, linked_ids)
                summary.update(
                    {
                        "total_records": len(matched),
                        "violated_records": violated,
                        "clean_records": len(matched) - violated,
                        "compliance_rate": _percent(len(matched) - violated, len(matched), empty=100.0),
                    }
                )
                out.append(summary)
            return out


STORE = RuleGraphStore(database_url())
