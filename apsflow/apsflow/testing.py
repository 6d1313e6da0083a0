"""
In-memory HTTP double for tests.

RecordingSession stands in for requests.Session: routes are registered per
(method, url) with a sequence of scripted responses, and every request is
recorded so tests can assert on what was sent.

    session = RecordingSession()
    session.add("POST", AUTH_URL, FakeResponse(200, {"access_token": "t", "expires_in": 3600}))
    tokens = TokenProvider("id", "secret", session=session)

A route replays its responses in order and keeps answering with the last
one. A response may also be a callable taking the RecordedCall.
"""

import json
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

import requests
from requests.structures import CaseInsensitiveDict

from .settings import ApsSettings


class FakeResponse:
    """The subset of requests.Response the library reads."""

    def __init__(
        self,
        status_code: int = 200,
        json_body: Any = None,
        text: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.status_code = status_code
        self._json = json_body
        if text is None:
            text = json.dumps(json_body) if json_body is not None else ""
        self.text = text
        self.content = text.encode("utf-8")
        self.headers = CaseInsensitiveDict(headers or {})

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self):
        if self._json is not None:
            return self._json
        return json.loads(self.text)


@dataclass
class RecordedCall:
    method: str
    url: str
    kwargs: Dict[str, Any] = field(default_factory=dict)

    @property
    def headers(self) -> Dict[str, str]:
        return self.kwargs.get("headers") or {}

    @property
    def json(self) -> Any:
        return self.kwargs.get("json")

    @property
    def params(self) -> Dict[str, Any]:
        return self.kwargs.get("params") or {}


Responder = Union[FakeResponse, Callable[[RecordedCall], FakeResponse]]


def _strip_query(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


class RecordingSession:
    """Scripted, thread-safe replacement for requests.Session."""

    def __init__(self):
        self._routes: Dict[Tuple[str, str], List[Responder]] = {}
        self._lock = threading.Lock()
        self.calls: List[RecordedCall] = []
        self.closed = False

    def add(self, method: str, url: str, *responses: Responder) -> "RecordingSession":
        with self._lock:
            self._routes.setdefault((method.upper(), _strip_query(url)), []).extend(responses)
        return self

    def request(self, method: str, url: str, **kwargs) -> FakeResponse:
        call = RecordedCall(method.upper(), url, kwargs)
        key = (call.method, _strip_query(url))
        with self._lock:
            self.calls.append(call)
            queue = self._routes.get(key)
            if not queue:
                raise requests.ConnectionError(f"No scripted response for {call.method} {url}")
            responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(responder) and not isinstance(responder, FakeResponse):
            return responder(call)
        return responder

    def calls_to(self, method: str, url: str) -> List[RecordedCall]:
        target = (method.upper(), _strip_query(url))
        with self._lock:
            return [c for c in self.calls if (c.method, _strip_query(c.url)) == target]

    def close(self) -> None:
        self.closed = True


TEST_SETTINGS = dict(
    client_id="testclientid1234",
    client_secret="secret",
    bucket_name="dynbucket",
    nickname="dynnick",
    activity_name="DynamoActivity",
    bundle_app_name="DynamoBundle",
)


def make_settings(**overrides) -> ApsSettings:
    values = dict(TEST_SETTINGS)
    values.update(overrides)
    return ApsSettings(**values)


def make_client(session: Optional[RecordingSession] = None, sleep=None, **overrides):
    """
    ApsClient over a RecordingSession with the token endpoint already scripted.

    Returns:
        (client, session)
    """
    from .client import ApsClient

    session = session or RecordingSession()
    settings = make_settings(**overrides)
    session.add("POST", settings.auth_url, FakeResponse(200, {"access_token": "test-token", "expires_in": 3600}))
    return ApsClient.from_settings(settings, session=session, sleep=sleep), session
