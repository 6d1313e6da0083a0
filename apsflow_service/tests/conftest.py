import os, sys
import pytest
from fastapi.testclient import TestClient

# Ensure the app module is in path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Change to project directory
os.chdir(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.main import app, get_client, hub, jobs, upload_limiter, workitem_limiter, _startup
from apsflow.testing import make_client

_startup()


# Reset per-process state before each test for isolation
@pytest.fixture(autouse=True)
def _reset_state():
    hub.clear()
    jobs.clear()
    upload_limiter.reset()
    workitem_limiter.reset()
    yield
    jobs.clear()
    app.dependency_overrides.clear()


@pytest.fixture
def aps():
    """(ApsClient, RecordingSession) served to every route instead of the real client."""
    client, session = make_client(sleep=lambda seconds: None)
    app.dependency_overrides[get_client] = lambda: client
    return client, session


@pytest.fixture
def api():
    return TestClient(app)
