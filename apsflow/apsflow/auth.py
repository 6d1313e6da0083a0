"""
APS two-legged authentication

Exchanges the application's client id and secret for a bearer token using
the client-credentials grant and caches it until it expires.

The provider is an explicit object injected into every component that needs
auth headers. Refreshes are de-duplicated: while one thread is fetching a
token, other callers wait on the same Future instead of starting their own
request.
"""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

import requests
from requests.auth import HTTPBasicAuth

from .errors import AuthError
from .settings import AUTH_URL, DEFAULT_SCOPES
from .util import response_body

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Token:
    """A bearer token and the epoch second at which it stops being valid."""
    access_token: str
    expires_at: float

    def expires_in(self, now: float) -> int:
        return max(0, int(self.expires_at - now))

    def is_valid(self, now: float, margin: float = 0.0) -> bool:
        return now < self.expires_at - margin


class TokenProvider:
    """
    Process-wide token cache for one APS application.

    Thread-safe. The only shared mutable state is the cached Token and the
    in-flight refresh Future, both guarded by one lock.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        scopes: Iterable[str] = DEFAULT_SCOPES,
        session: Optional[requests.Session] = None,
        auth_url: str = AUTH_URL,
        clock: Callable[[], float] = time.time,
        refresh_margin: float = 60.0,
        timeout: float = 30.0,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = " ".join(scopes)
        self._session = session or requests.Session()
        self._auth_url = auth_url
        self._clock = clock
        self._margin = refresh_margin
        self._timeout = timeout
        self._lock = threading.Lock()
        self._token: Optional[Token] = None
        self._inflight: Optional[Future] = None
        self.fetch_count = 0

    @property
    def scope(self) -> str:
        return self._scope

    def peek(self) -> Optional[Token]:
        """Return the cached token without refreshing it."""
        with self._lock:
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None

    def get_token(self) -> Token:
        """
        Return a valid token, fetching a new one when the cache is empty or expired.

        Raises:
            AuthError: The token endpoint was unreachable or answered non-2xx.
        """
        with self._lock:
            if self._token is not None and self._token.is_valid(self._clock(), self._margin):
                return self._token
            fut = self._inflight
            owner = fut is None
            if owner:
                fut = Future()
                self._inflight = fut

        if not owner:
            return fut.result()

        try:
            token = self._fetch()
        except BaseException as exc:
            with self._lock:
                self._inflight = None
            fut.set_exception(exc)
            raise

        with self._lock:
            self._token = token
            self._inflight = None
        fut.set_result(token)
        return token

    def auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.get_token().access_token}"}

    def _fetch(self) -> Token:
        logger.info("Fetching new 2-legged token")
        try:
            resp = self._session.request(
                "POST",
                self._auth_url,
                auth=HTTPBasicAuth(self._client_id, self._client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={"grant_type": "client_credentials", "scope": self._scope},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise AuthError(f"Token request failed: {e}") from e

        if not resp.ok:
            raise AuthError(
                "Could not get authentication token from Autodesk",
                status_code=resp.status_code,
                details=response_body(resp),
            )
        try:
            payload = resp.json()
            access_token = payload["access_token"]
            expires_in = float(payload.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            raise AuthError("Malformed token response", details=response_body(resp)) from e

        self.fetch_count += 1
        logger.info("Token fetched successfully, expires in %ss", int(expires_in))
        return Token(access_token=access_token, expires_at=self._clock() + expires_in)
