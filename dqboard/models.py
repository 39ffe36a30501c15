from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, DateTime, Enum as SAEnum, ForeignKey, Integer, JSON, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Severity(str, Enum):
    ERROR = "ERROR"
    WARN = "WARN"
    INFO = "INFO"


class BatchStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"
    STOPPED = "STOPPED"


# Terminal states a running batch can be completed into.
COMPLETION_STATUSES = frozenset({BatchStatus.SUCCESS, BatchStatus.FAILED, BatchStatus.PARTIAL})

JSON_LIST = JSON().with_variant(JSONB, "postgresql")


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class RuleModel(Base):
    __tablename__ = "query_repository"
    # Without AUTOINCREMENT SQLite hands the highest deleted rowid out again.
    __table_args__ = {"sqlite_autoincrement": True}

    query_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    query_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    query_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    sql_statement: Mapped[str] = mapped_column(Text, nullable=False, default="")
    execution_stage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    execution_group: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    drops_records: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    target_table: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    remediation_hint: Mapped[str | None] = mapped_column(Text, nullable=True)
    severity: Mapped[Severity | None] = mapped_column(
        SAEnum(Severity, values_callable=_enum_values), nullable=True
    )
    effective_from: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    effective_to: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    dependency_query_ids: Mapped[list[int]] = mapped_column(JSON_LIST, nullable=False, default=list)
    created_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
    modified_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)


class NonComplianceActivityModel(Base):
    __tablename__ = "non_compliance_activity"
    __table_args__ = {"sqlite_autoincrement": True}

    non_compliance_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    compliance_code: Mapped[str] = mapped_column(Text, nullable=False)
    compliance_name: Mapped[str] = mapped_column(Text, nullable=False)
    compliance_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    recommended_action: Mapped[str | None] = mapped_column(Text, nullable=True)


class NonComplianceQueryMapModel(Base):
    __tablename__ = "non_compliance_query_map"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    non_compliance_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("non_compliance_activity.non_compliance_id", ondelete="CASCADE"), nullable=False
    )
    # Plain integer: links may outlive a rule until the rule delete scrubs them.
    query_id: Mapped[int] = mapped_column(Integer, nullable=False)


class BatchControlModel(Base):
    __tablename__ = "batch_control"
    __table_args__ = {"sqlite_autoincrement": True}

    batch_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_uuid: Mapped[str] = mapped_column(Text, nullable=False, default="")
    batch_name: Mapped[str] = mapped_column(Text, nullable=False)
    pipeline_type: Mapped[str] = mapped_column(Text, nullable=False)
    triggered_by: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[BatchStatus] = mapped_column(
        SAEnum(BatchStatus, values_callable=_enum_values), nullable=False, default=BatchStatus.RUNNING
    )
    total_queries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_queries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_queries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_rows_affected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class SiteResultModel(Base):
    __tablename__ = "site_repository_results"
    __table_args__ = {"sqlite_autoincrement": True}

    results_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_uuid: Mapped[str] = mapped_column(Text, nullable=False)
    site_id: Mapped[str] = mapped_column(Text, nullable=False)
    # Plain integer: results are history and outlive the rule that produced them.
    query_id: Mapped[int] = mapped_column(Integer, nullable=False)
    execution_stage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    execution_group: Mapped[str | None] = mapped_column(Text, nullable=True)
    record_key: Mapped[str] = mapped_column(Text, nullable=False)
    is_violated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    violation_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_updated_dttm: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
