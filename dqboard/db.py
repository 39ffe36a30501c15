from __future__ import annotations

import os

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dqboard.models import Base


DEFAULT_DATABASE_URL = "sqlite+pysqlite:///:memory:"


def database_url() -> str:
    return os.getenv("DQBOARD_DATABASE_URL", DEFAULT_DATABASE_URL)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {"pool_pre_ping": True}


def build_engine(url: str | None = None) -> Engine:
    selected = url or database_url()
    return create_engine(selected, future=True, **_engine_kwargs(selected))


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


REQUIRED_SCHEMA: dict[str, set[str]] = {
    "query_repository": {
        "query_id",
        "query_name",
        "sql_statement",
        "execution_stage",
        "execution_group",
        "is_active",
        "drops_records",
        "severity",
        "dependency_query_ids",
        "created_date",
        "modified_date",
    },
    "non_compliance_activity": {"non_compliance_id", "compliance_code", "compliance_name"},
    "non_compliance_query_map": {"id", "non_compliance_id", "query_id"},
    "batch_control": {
        "batch_id",
        "batch_uuid",
        "batch_name",
        "pipeline_type",
        "triggered_by",
        "status",
        "total_queries",
        "successful_queries",
        "failed_queries",
        "total_rows_affected",
        "start_time",
        "end_time",
    },
    "site_repository_results": {
        "results_id",
        "batch_uuid",
        "site_id",
        "query_id",
        "execution_group",
        "record_key",
        "is_violated",
        "last_updated_dttm",
    },
}


def verify_schema(engine: Engine, required: dict[str, set[str]] | None = None) -> None:
    inspector = inspect(engine)
    required_schema = required or REQUIRED_SCHEMA
    existing_tables = set(inspector.get_table_names())
    missing_columns: list[str] = []
    for table_name, required_columns in required_schema.items():
        if table_name not in existing_tables:
            missing_columns.extend(f"{table_name}.{column}" for column in sorted(required_columns))
            continue
        existing_columns = {column["name"] for column in inspector.get_columns(table_name)}
        for required_column in sorted(required_columns):
            if required_column not in existing_columns:
                missing_columns.append(f"{table_name}.{required_column}")
    if missing_columns:
        detail = ", ".join(missing_columns)
        raise RuntimeError(f"Schema verification failed; missing columns: {detail}")


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
    verify_schema(engine)


def reset_db(engine: Engine) -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
