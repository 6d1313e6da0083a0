"""
apsflow error taxonomy

Every failure raised by the library is an ApsError. Callers at a handler
boundary turn it into the structured response body

    {"success": false, "operation": ..., "error": ..., "details": ..., "timestamp": ...}

Existence probes (HEAD on optional objects, nickname lookup) are the only
places where a 404 is converted into a plain value instead of an error.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ApsError(Exception):
    """Base class for all APS workflow failures."""

    default_status = 500

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details

    @property
    def http_status(self) -> int:
        """Status to report to our own callers."""
        if self.status_code and 400 <= self.status_code < 600:
            return self.status_code
        return self.default_status

    def to_dict(self, operation: str) -> Dict[str, Any]:
        details = self.details if self.details is not None else self.message
        return {
            "success": False,
            "operation": operation,
            "error": self.message,
            "details": details,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }


class ConfigError(ApsError):
    """Required configuration is missing or malformed."""


class AuthError(ApsError):
    """Client-credentials token exchange failed. Never retried."""

    default_status = 502


class ProvisioningError(ApsError):
    """Bucket, nickname, AppBundle, Activity or alias operation failed."""


class UploadError(ApsError):
    """One of the three signed-URL upload steps failed."""


class NotFoundError(ApsError):
    """The addressed remote resource does not exist."""

    default_status = 404

    @property
    def http_status(self) -> int:
        return 404


class InvalidInputError(ApsError):
    """Caller supplied input that is rejected before any network call."""

    default_status = 400

    @property
    def http_status(self) -> int:
        return 400


class TranslationError(ApsError):
    """Model Derivative job submission failed."""


class WorkitemFailedError(ApsError):
    """Workitem reached a terminal status other than success."""

    def __init__(self, workitem_id: str, status: str, details: Any = None):
        super().__init__(f"Workitem failed with status: {status}", details=details)
        self.workitem_id = workitem_id
        self.status = status


class WorkitemTimeoutError(ApsError):
    """Poll cap exceeded. The remote job is left running."""

    default_status = 504

    def __init__(self, workitem_id: str, attempts: int, last_status: str):
        super().__init__(
            f"Workitem {workitem_id} still {last_status} after {attempts} polls",
            details={"workitemId": workitem_id, "attempts": attempts, "lastStatus": last_status},
        )
        self.workitem_id = workitem_id
        self.attempts = attempts
        self.last_status = last_status


class WorkitemCancelledError(ApsError):
    """Local observation of a workitem was cancelled. The remote job is untouched."""

    default_status = 409

    def __init__(self, workitem_id: Optional[str]):
        super().__init__(
            f"Observation of workitem {workitem_id or '(not submitted)'} was cancelled",
            details={"workitemId": workitem_id},
        )
        self.workitem_id = workitem_id
