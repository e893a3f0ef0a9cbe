"""Shared fixtures for Pattern Nexus tests."""

from pathlib import Path

import pytest

from pattern_nexus.config import PatternNexusConfig
from pattern_nexus.core.global_store import SQLiteGlobalStore
from pattern_nexus.core.store import SQLitePatternStore
from pattern_nexus.patterns.learner import IncrementalLearner
from pattern_nexus.portfolio.registry import ProjectRegistry

CAMEL_TS = """\
import { db } from "./db";
const userName = "ada";
const orderTotal = 42;
function fetchUser(userId) {
  return db.find(userId);
}
"""

SNAKE_PY = """\
from .db import session

MAX_RETRIES = 3
user_name = "ada"


def fetch_user(user_id):
    try:
        return session.get(user_id)
    except KeyError:
        logger.error("missing user")
"""


@pytest.fixture
def config():
    return PatternNexusConfig()


@pytest.fixture
def project_dir(tmp_path):
    root = tmp_path / "app"
    root.mkdir()
    return root


@pytest.fixture
def write_file(project_dir):
    """Write a file under the project root and return its relative path."""

    def _write(relative_path: str, text: str) -> str:
        path = Path(project_dir) / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        return relative_path

    return _write


@pytest.fixture
def store(tmp_path):
    pattern_store = SQLitePatternStore(str(tmp_path / "store" / "patterns.db"))
    yield pattern_store
    pattern_store.close()


@pytest.fixture
def learner(store, project_dir, config):
    return IncrementalLearner(store, project_root=str(project_dir), config=config)


@pytest.fixture
def global_store(tmp_path):
    gstore = SQLiteGlobalStore(str(tmp_path / "global" / "global.db"))
    yield gstore
    gstore.close()


@pytest.fixture
def registry(global_store):
    return ProjectRegistry(global_store)
