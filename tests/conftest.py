import os
import sys
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DQBOARD_DATABASE_URL", "sqlite+pysqlite:///:memory:")

from fastapi.testclient import TestClient

from dqboard.main import app, get_store
from dqboard.store import STORE, RuleGraphStore


@pytest.fixture(autouse=True)
def reset_store():
    STORE.reset()
    yield


@pytest.fixture
def store() -> RuleGraphStore:
    return RuleGraphStore()


@pytest.fixture
def client(store: RuleGraphStore):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()
