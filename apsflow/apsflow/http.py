"""
Shared HTTP plumbing for the APS clients.

Every APS call goes through ApsHttp.send, which attaches the bearer header,
applies the default timeout and turns transport failures into the ApsError
subclass chosen by the caller. Status handling stays with the callers, since
404 and 409 mean different things on different endpoints.
"""

from typing import Any, Dict, Iterable, Optional, Type

import requests

from .auth import TokenProvider
from .errors import ApsError
from .util import response_body


def expect(resp, error: Type[ApsError], message: str, allow: Iterable[int] = ()) -> Any:
    """
    Return the decoded body of a successful response.

    Raises:
        error: status is not 2xx and not listed in ``allow``.
    """
    if resp.ok or resp.status_code in tuple(allow):
        if not resp.content:
            return {}
        return response_body(resp)
    raise error(message, status_code=resp.status_code, details=response_body(resp))


class ApsHttp:
    """Authenticated request helper bound to one TokenProvider and Session."""

    def __init__(self, tokens: TokenProvider, session: Optional[requests.Session] = None, timeout: float = 60.0):
        self.tokens = tokens
        self.session = session or requests.Session()
        self.timeout = timeout

    def auth_header(self) -> Dict[str, str]:
        return self.tokens.auth_header()

    def send(
        self,
        method: str,
        url: str,
        error: Type[ApsError] = ApsError,
        authenticated: bool = True,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ):
        """
        Perform one HTTP request.

        Args:
            method: HTTP verb
            url: Absolute URL
            error: ApsError subclass raised when the request cannot be sent
            authenticated: Attach the bearer header (signed URLs must not)
            headers: Extra headers
            **kwargs: Passed through to requests (json, data, params, files)
        """
        all_headers: Dict[str, str] = {}
        if authenticated:
            all_headers.update(self.tokens.auth_header())
        if headers:
            all_headers.update(headers)
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.session.request(method, url, headers=all_headers, **kwargs)
        except requests.RequestException as e:
            raise error(f"{method} {url} failed: {e}") from e
