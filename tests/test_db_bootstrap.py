import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.pool import StaticPool

import dqboard.db as db


def test_verify_schema_detects_missing_required_column():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    with engine.begin() as conn:
        conn.exec_driver_sql("CREATE TABLE query_repository (query_id INTEGER PRIMARY KEY)")

    with pytest.raises(RuntimeError, match=r"query_repository\.query_name"):
        db.verify_schema(engine, {"query_repository": {"query_id", "query_name"}})


def test_verify_schema_reports_missing_table():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)

    with pytest.raises(RuntimeError, match=r"batch_control\.batch_uuid"):
        db.verify_schema(engine, {"batch_control": {"batch_uuid"}})


def test_init_db_creates_required_tables():
    engine = db.build_engine("sqlite+pysqlite:///:memory:")

    db.init_db(engine)

    assert set(db.REQUIRED_SCHEMA).issubset(set(inspect(engine).get_table_names()))


def test_init_db_runs_create_all_then_verify(monkeypatch):
    called: list[str] = []
    engine = db.build_engine("sqlite+pysqlite:///:memory:")

    monkeypatch.setattr(db.Base.metadata, "create_all", lambda bind=None: called.append("create_all"))
    monkeypatch.setattr(db, "verify_schema", lambda engine, required=None: called.append("verify"))

    db.init_db(engine)

    assert called == ["create_all", "verify"]


def test_engine_kwargs_per_backend():
    memory = db._engine_kwargs("sqlite+pysqlite:///:memory:")
    assert memory["poolclass"] is StaticPool
    assert memory["connect_args"] == {"check_same_thread": False}

    on_disk = db._engine_kwargs("sqlite+pysqlite:///./dqboard.db")
    assert "poolclass" not in on_disk

    assert db._engine_kwargs("postgresql+psycopg://x:y@localhost:5432/dqboard") == {"pool_pre_ping": True}


def test_database_url_reads_environment(monkeypatch):
    monkeypatch.setenv("DQBOARD_DATABASE_URL", "sqlite+pysqlite:///./other.db")
    assert db.database_url() == "sqlite+pysqlite:///./other.db"

    monkeypatch.delenv("DQBOARD_DATABASE_URL")
    assert db.database_url() == db.DEFAULT_DATABASE_URL


def test_verify_schema_covers_site_results_table():
    engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
    with engine.begin() as conn:
        conn.exec_driver_sql("CREATE TABLE site_repository_results (results_id INTEGER PRIMARY KEY)")

    with pytest.raises(RuntimeError, match=r"site_repository_results\.record_key"):
        db.verify_schema(engine, {"site_repository_results": db.REQUIRED_SCHEMA["site_repository_results"]})
