from pathlib import Path
import os
import tempfile
import uuid

import pytest

# the app reads these at import time, so they are set before any test module imports it
_TMP = Path(tempfile.mkdtemp(prefix="homeschool-tests-"))
os.environ.setdefault("HOMESCHOOL_DATABASE_URL", f"sqlite:///{_TMP / 'test.db'}")
os.environ.setdefault("HOMESCHOOL_MEDIA_ROOT", str(_TMP / "media"))

from fastapi.testclient import TestClient  # noqa: E402

from homeschool.main import app  # noqa: E402
from homeschool import services  # noqa: E402


@pytest.fixture(autouse=True)
def reset_pin_limiter():
    """PIN throttling is process wide; every test starts with a clean slate."""
    services.pin_rate_limiter.reset()
    yield
    services.pin_rate_limiter.reset()


@pytest.fixture
def client():
    return TestClient(app)


def _login(client, username=None, password='pw-1234'):
    """Register (idempotent) and log in; returns bearer headers."""
    username = username or f"parent-{uuid.uuid4().hex[:8]}"
    client.post('/auth/register', json={'username': username, 'password': password})
    r = client.post('/auth/login', json={'username': username, 'password': password})
    assert r.status_code == 200
    return {'Authorization': f"Bearer {r.json()['access_token']}"}


@pytest.fixture
def headers(client):
    return _login(client)


@pytest.fixture
def curriculum(client, headers):
    """A child plus subject → unit → topic owned by the `headers` user."""
    child = client.post('/children', json={'name': 'Ada', 'grade': '3', 'independence_level': 2}, headers=headers)
    assert child.status_code == 201
    subject = client.post('/subjects', json={'name': 'Science', 'color': '#10b981'}, headers=headers)
    assert subject.status_code == 201
    unit = client.post(f"/subjects/{subject.json()['id']}/units", json={'name': 'Plants'}, headers=headers)
    assert unit.status_code == 201
    topic = client.post(f"/units/{unit.json()['id']}/topics",
                        json={'title': 'Photosynthesis', 'estimated_minutes': 45}, headers=headers)
    assert topic.status_code == 201
    return {
        'child_id': child.json()['id'],
        'subject_id': subject.json()['id'],
        'unit_id': unit.json()['id'],
        'topic_id': topic.json()['id'],
    }


@pytest.fixture
def login_as(client):
    """Log in as a named (or fresh) parent; returns bearer headers."""
    def _login_as(username=None, password='pw-1234'):
        return _login(client, username, password)
    return _login_as
