import logging
import os
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from dqboard.schemas import (
    AddSiteResultRequest,
    Batch,
    BatchList,
    CompleteBatchRequest,
    ComplianceActivity,
    ComplianceActivityList,
    ComplianceSummary,
    ComplianceSummaryList,
    CreateComplianceActivityRequest,
    CreateRuleRequest,
    ErrorResponse,
    Rule,
    RuleContext,
    RuleGraph,
    RuleList,
    SiteResult,
    SiteResultList,
    SiteResultWithActions,
    TriggerBatchRequest,
    UpdateComplianceActivityRequest,
    UpdateRuleRequest,
    ViolationBreakdown,
    ViolationBucket,
    ViolationStats,
)
from dqboard.seed import seed_demo_data
from dqboard.store import STORE, RuleGraphStore


logger = logging.getLogger(__name__)

_SEED_DEMO_DATA = os.getenv("DQBOARD_SEED_DEMO_DATA", "").lower() in ("1", "true", "yes")


def get_store() -> RuleGraphStore:
    return STORE


@asynccontextmanager
async def lifespan(_: FastAPI):
    if _SEED_DEMO_DATA and not STORE.list_rules():
        seed_demo_data(STORE)
        logger.info("Loaded demo rules into the default store")
    yield


app = FastAPI(title="dqboard", lifespan=lifespan)


def _http_error(
    status_code: int,
    code: str,
    message: str,
    retryable: bool = False,
    details: dict | None = None,
) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail=ErrorResponse(
            error={"code": code, "message": message, "retryable": retryable, "details": details}
        ).model_dump(),
    )


def _rule_not_found() -> HTTPException:
    return _http_error(404, "RULE_NOT_FOUND", "Rule not found")


def _check_rule_ids(store: RuleGraphStore, query_ids: list[int], code: str = "DEPENDENCY_NOT_FOUND") -> None:
    missing = sorted({query_id for query_id in query_ids if store.get_rule(query_id) is None})
    if missing:
        raise _http_error(
            404,
            code,
            f"Unknown rule id(s): {', '.join(str(query_id) for query_id in missing)}",
            details={"missing_query_ids": missing},
        )


def _write_rule(action) -> Rule:
    try:
        rule = action()
    except KeyError as exc:
        missing = exc.args[1] if len(exc.args) > 1 else []
        raise _http_error(
            404,
            exc.args[0],
            f"Unknown rule id(s): {', '.join(str(query_id) for query_id in missing)}",
            details={"missing_query_ids": missing},
        )
    except ValueError as exc:
        code = exc.args[0]
        if code == "INVALID_SELF_REFERENCE":
            raise _http_error(409, code, "A rule cannot depend on itself")
        if code == "CYCLE_DETECTED":
            raise _http_error(409, code, "Dependency introduces graph cycle")
        raise _http_error(422, code, "Invalid rule field value")
    if rule is None:
        raise _rule_not_found()
    return Rule(**rule)


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        return JSONResponse(status_code=exc.status_code, content=exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/rules", response_model=Rule, status_code=status.HTTP_201_CREATED)
def create_rule(payload: CreateRuleRequest, store: RuleGraphStore = Depends(get_store)) -> Rule:
    return _write_rule(lambda: store.create_rule(payload.model_dump(), validate_dependencies=True))


@app.get("/v1/rules", response_model=RuleList)
def list_rules(
    execution_group: str | None = None,
    is_active: bool | None = None,
    store: RuleGraphStore = Depends(get_store),
) -> RuleList:
    items = store.list_rules(execution_group=execution_group, is_active=is_active)
    return RuleList(items=[Rule(**item) for item in items])


@app.get("/v1/rules/graph", response_model=RuleGraph)
def get_rule_graph(store: RuleGraphStore = Depends(get_store)) -> RuleGraph:
    return RuleGraph(**store.get_rule_graph())


@app.get("/v1/rules/{query_id}", response_model=Rule)
def get_rule(query_id: int, store: RuleGraphStore = Depends(get_store)) -> Rule:
    rule = store.get_rule(query_id)
    if rule is None:
        raise _rule_not_found()
    return Rule(**rule)


@app.patch("/v1/rules/{query_id}", response_model=Rule)
def update_rule(
    query_id: int,
    payload: UpdateRuleRequest,
    store: RuleGraphStore = Depends(get_store),
) -> Rule:
    updates = payload.model_dump(exclude_unset=True)
    return _write_rule(lambda: store.update_rule(query_id, updates, validate_dependencies=True))


@app.delete("/v1/rules/{query_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(query_id: int, store: RuleGraphStore = Depends(get_store)) -> Response:
    if not store.delete_rule(query_id):
        raise _rule_not_found()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/v1/rules/{query_id}/dependencies", response_model=RuleList)
def get_rule_dependencies(query_id: int, store: RuleGraphStore = Depends(get_store)) -> RuleList:
    if store.get_rule(query_id) is None:
        raise _rule_not_found()
    return RuleList(items=[Rule(**item) for item in store.get_rule_dependencies(query_id)])


@app.get("/v1/rules/{query_id}/dependents", response_model=RuleList)
def get_rule_dependents(query_id: int, store: RuleGraphStore = Depends(get_store)) -> RuleList:
    if store.get_rule(query_id) is None:
        raise _rule_not_found()
    return RuleList(items=[Rule(**item) for item in store.get_rule_dependents(query_id)])


@app.get("/v1/rules/{query_id}/context", response_model=RuleContext)
def get_rule_context(
    query_id: int,
    dependency_depth: int = 1,
    dependent_depth: int = 1,
    store: RuleGraphStore = Depends(get_store),
) -> RuleContext:
    try:
        context = store.get_rule_context(
            query_id,
            dependency_depth=dependency_depth,
            dependent_depth=dependent_depth,
        )
    except KeyError:
        raise _rule_not_found()
    return RuleContext(**context)


@app.get("/v1/rules/{query_id}/compliance", response_model=ComplianceActivityList)
def get_rule_compliance(query_id: int, store: RuleGraphStore = Depends(get_store)) -> ComplianceActivityList:
    if store.get_rule(query_id) is None:
        raise _rule_not_found()
    items = store.get_rule_compliance(query_id)
    return ComplianceActivityList(items=[ComplianceActivity(**item) for item in items])


@app.post("/v1/compliance", response_model=ComplianceActivity, status_code=status.HTTP_201_CREATED)
def create_compliance_activity(
    payload: CreateComplianceActivityRequest,
    store: RuleGraphStore = Depends(get_store),
) -> ComplianceActivity:
    body = payload.model_dump()
    linked_query_ids = body.pop("linked_query_ids")
    _check_rule_ids(store, linked_query_ids, code="RULE_NOT_FOUND")
    activity = store.create_compliance_activity(body, linked_query_ids)
    return ComplianceActivity(**activity)


@app.get("/v1/compliance", response_model=ComplianceActivityList)
def list_compliance_activities(store: RuleGraphStore = Depends(get_store)) -> ComplianceActivityList:
    items = store.list_compliance_activities()
    return ComplianceActivityList(items=[ComplianceActivity(**item) for item in items])


@app.get("/v1/compliance/summary", response_model=ComplianceSummaryList)
def get_compliance_summary(store: RuleGraphStore = Depends(get_store)) -> ComplianceSummaryList:
    return ComplianceSummaryList(items=[ComplianceSummary(**item) for item in store.get_compliance_summary()])


@app.patch("/v1/compliance/{non_compliance_id}", response_model=ComplianceActivity)
def update_compliance_activity(
    non_compliance_id: int,
    payload: UpdateComplianceActivityRequest,
    store: RuleGraphStore = Depends(get_store),
) -> ComplianceActivity:
    updates = payload.model_dump(exclude_unset=True)
    linked_query_ids = updates.pop("linked_query_ids", None)
    if linked_query_ids is not None:
        _check_rule_ids(store, linked_query_ids, code="RULE_NOT_FOUND")
    activity = store.update_compliance_activity(non_compliance_id, updates, linked_query_ids)
    if activity is None:
        raise _http_error(404, "COMPLIANCE_NOT_FOUND", "Compliance activity not found")
    return ComplianceActivity(**activity)


@app.delete("/v1/compliance/{non_compliance_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_compliance_activity(non_compliance_id: int, store: RuleGraphStore = Depends(get_store)) -> Response:
    if not store.delete_compliance_activity(non_compliance_id):
        raise _http_error(404, "COMPLIANCE_NOT_FOUND", "Compliance activity not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/v1/batches", response_model=Batch, status_code=status.HTTP_201_CREATED)
def trigger_batch(payload: TriggerBatchRequest, store: RuleGraphStore = Depends(get_store)) -> Batch:
    batch = store.trigger_batch(payload.batch_name, payload.pipeline_type, payload.triggered_by)
    return Batch(**batch)


@app.get("/v1/batches", response_model=BatchList)
def list_batches(store: RuleGraphStore = Depends(get_store)) -> BatchList:
    return BatchList(items=[Batch(**item) for item in store.list_batches()])


@app.get("/v1/batches/{batch_uuid}", response_model=Batch)
def get_batch(batch_uuid: str, store: RuleGraphStore = Depends(get_store)) -> Batch:
    batch = store.get_batch(batch_uuid)
    if batch is None:
        raise _http_error(404, "BATCH_NOT_FOUND", "Batch not found")
    return Batch(**batch)


def _finish_batch(action) -> Batch:
    try:
        batch = action()
    except ValueError as exc:
        code = str(exc)
        message = "Batch is not running" if code == "BATCH_NOT_RUNNING" else "Invalid batch status"
        raise _http_error(409, code, message)
    if batch is None:
        raise _http_error(404, "BATCH_NOT_FOUND", "Batch not found")
    return Batch(**batch)


@app.post("/v1/batches/{batch_uuid}/complete", response_model=Batch)
def complete_batch(
    batch_uuid: str,
    payload: CompleteBatchRequest,
    store: RuleGraphStore = Depends(get_store),
) -> Batch:
    return _finish_batch(lambda: store.complete_batch(batch_uuid, payload.status))


@app.post("/v1/batches/{batch_uuid}/simulate", response_model=Batch)
def simulate_batch_completion(batch_uuid: str, store: RuleGraphStore = Depends(get_store)) -> Batch:
    return _finish_batch(lambda: store.simulate_batch_completion(batch_uuid))


@app.post("/v1/batches/{batch_uuid}/stop", response_model=Batch)
def stop_batch(batch_uuid: str, store: RuleGraphStore = Depends(get_store)) -> Batch:
    return _finish_batch(lambda: store.stop_batch(batch_uuid))


@app.post("/v1/results", response_model=SiteResult, status_code=status.HTTP_201_CREATED)
def add_site_result(payload: AddSiteResultRequest, store: RuleGraphStore = Depends(get_store)) -> SiteResult:
    try:
        result = store.add_site_result(payload.model_dump())
    except KeyError:
        raise _rule_not_found()
    return SiteResult(**result)


@app.get("/v1/results", response_model=SiteResultList)
def list_site_results(
    batch_uuid: str | None = None,
    site_id: str | None = None,
    execution_group: str | None = None,
    severity: Literal["ERROR", "WARN", "INFO"] | None = None,
    store: RuleGraphStore = Depends(get_store),
) -> SiteResultList:
    items = store.get_site_results_with_actions(
        batch_uuid=batch_uuid,
        site_id=site_id,
        execution_group=execution_group,
        severity=severity,
    )
    return SiteResultList(items=[SiteResultWithActions(**item) for item in items])


@app.get("/v1/results/stats", response_model=ViolationStats)
def get_violation_stats(store: RuleGraphStore = Depends(get_store)) -> ViolationStats:
    return ViolationStats(**store.get_violation_stats())


@app.get("/v1/results/violations", response_model=ViolationBreakdown)
def get_violations_by(
    by: str = "group",
    store: RuleGraphStore = Depends(get_store),
) -> ViolationBreakdown:
    try:
        items = store.get_violations_by(by)
    except ValueError as exc:
        raise _http_error(422, exc.args[0], "Group violations by group, site, batch or severity")
    return ViolationBreakdown(by=by, items=[ViolationBucket(**item) for item in items])
