"""
Shared fixtures for API tests: an in-memory Redis list and a TestClient
whose settings point artifacts at a temp directory.
"""
import json
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import app
from app.routers.pipeline import get_redis, get_settings


class FakeRedis:
    """The two list operations the pipeline router uses."""

    def __init__(self):
        self.lists: Dict[str, List[str]] = {}

    def rpush(self, name: str, *values: str) -> int:
        self.lists.setdefault(name, []).extend(values)
        return len(self.lists[name])

    def lrange(self, name: str, start: int, end: int) -> List[str]:
        items = self.lists.get(name, [])
        return items[start:] if end == -1 else items[start:end + 1]

    def jobs(self, name: str = "pipeline:queue") -> List[dict]:
        return [json.loads(v) for v in self.lists.get(name, [])]


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def artifacts(tmp_path):
    path = tmp_path / "artifacts"
    path.mkdir()
    return path


@pytest.fixture
def client(fake_redis, artifacts):
    settings = Settings(ARTIFACTS_PATH=artifacts)
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
