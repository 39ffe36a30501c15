from __future__ import annotations

from typing import Any, Literal

from datetime import datetime

from pydantic import BaseModel, Field, field_validator


SeverityLiteral = Literal["ERROR", "WARN", "INFO"]


class ApiError(BaseModel):
    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    error: ApiError


class CreateRuleRequest(BaseModel):
    query_name: str = Field(min_length=1)
    query_description: str | None = None
    sql_statement: str = Field(min_length=1)
    execution_stage: int = Field(default=1, ge=0)
    execution_group: str = Field(default="DQ", min_length=1)
    is_active: bool = True
    drops_records: bool = False
    target_table: str | None = None
    created_by: str | None = None
    remediation_hint: str | None = None
    severity: SeverityLiteral | None = None
    effective_from: datetime | None = None
    effective_to: datetime | None = None
    dependency_query_ids: list[int] = Field(default_factory=list)


class UpdateRuleRequest(BaseModel):
    query_name: str | None = Field(default=None, min_length=1)
    query_description: str | None = None
    sql_statement: str | None = Field(default=None, min_length=1)
    execution_stage: int | None = Field(default=None, ge=0)
    execution_group: str | None = Field(default=None, min_length=1)
    is_active: bool | None = None
    drops_records: bool | None = None
    target_table: str | None = None
    created_by: str | None = None
    remediation_hint: str | None = None
    severity: SeverityLiteral | None = None
    effective_from: datetime | None = None
    effective_to: datetime | None = None
    dependency_query_ids: list[int] | None = None

    @field_validator(
        "query_name",
        "sql_statement",
        "execution_stage",
        "execution_group",
        "is_active",
        "drops_records",
    )
    @classmethod
    def reject_null(cls, value):
        # Omit a field to keep it; these columns have no empty value.
        if value is None:
            raise ValueError("field may be omitted but not set to null")
        return value


class Rule(BaseModel):
    query_id: int
    query_name: str
    query_description: str | None = None
    sql_statement: str
    execution_stage: int | None = None
    execution_group: str | None = None
    is_active: bool
    drops_records: bool
    target_table: str | None = None
    created_by: str | None = None
    remediation_hint: str | None = None
    severity: SeverityLiteral | None = None
    effective_from: str | None = None
    effective_to: str | None = None
    dependency_query_ids: list[int]
    created_date: str
    modified_date: str


class RuleList(BaseModel):
    items: list[Rule]


class RuleSummary(BaseModel):
    query_id: int
    query_name: str
    execution_group: str | None = None
    execution_stage: int | None = None
    is_active: bool
    depth: int


class RuleContext(BaseModel):
    rule: Rule
    dependencies: list[RuleSummary]
    dependents: list[RuleSummary]


class RuleEdge(BaseModel):
    from_query_id: int
    to_query_id: int


class RuleGraph(BaseModel):
    rules: list[Rule]
    edges: list[RuleEdge]


class CreateComplianceActivityRequest(BaseModel):
    compliance_code: str = Field(min_length=1)
    compliance_name: str = Field(min_length=1)
    compliance_description: str | None = None
    recommended_action: str | None = None
    linked_query_ids: list[int] = Field(default_factory=list)


class UpdateComplianceActivityRequest(BaseModel):
    compliance_code: str | None = Field(default=None, min_length=1)
    compliance_name: str | None = Field(default=None, min_length=1)
    compliance_description: str | None = None
    recommended_action: str | None = None
    linked_query_ids: list[int] | None = None


class ComplianceActivity(BaseModel):
    non_compliance_id: int
    compliance_code: str
    compliance_name: str
    compliance_description: str | None = None
    recommended_action: str | None = None
    linked_query_ids: list[int]


class ComplianceActivityList(BaseModel):
    items: list[ComplianceActivity]


class TriggerBatchRequest(BaseModel):
    batch_name: str = Field(min_length=1)
    pipeline_type: str = "SILVER_TO_GOLD"
    triggered_by: str = "manual-user"


class CompleteBatchRequest(BaseModel):
    status: Literal["SUCCESS", "FAILED", "PARTIAL"]


class Batch(BaseModel):
    batch_id: int
    batch_uuid: str
    batch_name: str
    pipeline_type: str
    triggered_by: str
    status: str
    total_queries: int
    successful_queries: int
    failed_queries: int
    total_rows_affected: int
    start_time: str
    end_time: str | None = None


class BatchList(BaseModel):
    items: list[Batch]


class AddSiteResultRequest(BaseModel):
    batch_uuid: str = Field(min_length=1)
    site_id: str = Field(min_length=1)
    query_id: int
    record_key: str = Field(min_length=1)
    is_violated: bool = False
    violation_details: str | None = None
    last_updated_dttm: datetime | None = None


class SiteResult(BaseModel):
    results_id: int
    batch_uuid: str
    site_id: str
    query_id: int
    execution_stage: int | None = None
    execution_group: str | None = None
    record_key: str
    is_violated: bool
    violation_details: str | None = None
    last_updated_dttm: str


class SiteResultWithActions(SiteResult):
    query_name: str
    severity: SeverityLiteral | None = None
    compliance_codes: str | None = None
    compliance_names: str | None = None
    recommended_actions: str | None = None


class SiteResultList(BaseModel):
    items: list[SiteResultWithActions]


class ViolationStats(BaseModel):
    total: int
    violated: int
    clean: int
    violation_rate: float


class ViolationBucket(BaseModel):
    group: str | None = None
    site: str | None = None
    batch_uuid: str | None = None
    batch_name: str | None = None
    severity: str | None = None
    total: int
    violated: int
    clean: int
    rate: float


class ViolationBreakdown(BaseModel):
    by: Literal["group", "site", "batch", "severity"]
    items: list[ViolationBucket]


class ComplianceSummary(ComplianceActivity):
    total_records: int
    violated_records: int
    clean_records: int
    compliance_rate: float


class ComplianceSummaryList(BaseModel):
    items: list[ComplianceSummary]
