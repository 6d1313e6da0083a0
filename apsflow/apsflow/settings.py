"""
Library settings.

Holds the APS credentials, the names of the remote resources a workflow
uses and the fixed object keys exchanged with the Dynamo activity.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from .errors import ConfigError

APS_BASE_URL = "https://developer.api.autodesk.com"
AUTH_URL = f"{APS_BASE_URL}/authentication/v2/token"
OSS_BASE_URL = f"{APS_BASE_URL}/oss/v2"
DA_BASE_URL = f"{APS_BASE_URL}/da/us-east/v3"
MODEL_DERIVATIVE_URL = f"{APS_BASE_URL}/modelderivative/v2"

DEFAULT_SCOPES: Tuple[str, ...] = (
    "code:all",
    "bucket:create",
    "bucket:read",
    "bucket:delete",
    "data:read",
    "data:write",
)

# Object keys shared with the activity definition
RVT_FILE = "run.rvt"
DYN_FILE = "run.dyn"
RUN_REQ_FILE = "run.json"
PYTHON_FILE = "pythonDependencies.zip"
PACKAGES_FILE = "packages.zip"
RESULT_FILE = "result.json"
RVT_RESULT_FILE = "result.rvt"

DEFAULT_ENGINE = "Autodesk.Revit+2026"
DEFAULT_ALIAS = "default"
POLL_INTERVAL_SECONDS = 5.0
POLL_MAX_ATTEMPTS = 60


@dataclass
class ApsSettings:
    """Everything a workflow needs to talk to APS."""
    client_id: str
    client_secret: str
    bucket_name: str = ""
    nickname: str = ""
    activity_name: str = ""
    bundle_app_name: str = ""
    activity_alias: str = DEFAULT_ALIAS
    engine: str = DEFAULT_ENGINE
    scopes: Tuple[str, ...] = DEFAULT_SCOPES
    auth_url: str = AUTH_URL
    oss_base_url: str = OSS_BASE_URL
    da_base_url: str = DA_BASE_URL
    md_base_url: str = MODEL_DERIVATIVE_URL
    poll_interval: float = POLL_INTERVAL_SECONDS
    poll_max_attempts: int = POLL_MAX_ATTEMPTS
    http_timeout: float = 60.0

    @property
    def qualified_activity_id(self) -> str:
        """``<nickname>.<activity>+<alias>`` as expected by POST /workitems."""
        return f"{self.nickname}.{self.activity_name}+{self.activity_alias}"

    @property
    def qualified_bundle_id(self) -> str:
        return f"{self.nickname}.{self.bundle_app_name}+{self.activity_alias}"

    def require(self, *names: str) -> "ApsSettings":
        """Return self, raising ConfigError unless every named attribute is non-empty."""
        missing = [n for n in names if not getattr(self, n)]
        if missing:
            raise ConfigError(
                "Missing configuration: " + ", ".join(missing),
                details={"missing": missing},
            )
        return self

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ApsSettings":
        """
        Build settings from environment variables.

        Raises:
            ConfigError: APS_CLIENT_ID or APS_CLIENT_SECRET is missing, or a
                numeric override does not parse.
        """
        env = os.environ if env is None else env
        client_id = (env.get("APS_CLIENT_ID") or "").strip()
        client_secret = (env.get("APS_CLIENT_SECRET") or "").strip()
        if not client_id or not client_secret:
            raise ConfigError(
                "APS_CLIENT_ID and APS_CLIENT_SECRET must be set",
                details={"missing": [k for k, v in (("APS_CLIENT_ID", client_id), ("APS_CLIENT_SECRET", client_secret)) if not v]},
            )
        try:
            poll_interval = float(env.get("APS_POLL_INTERVAL", POLL_INTERVAL_SECONDS))
            poll_max_attempts = int(env.get("APS_POLL_MAX_ATTEMPTS", POLL_MAX_ATTEMPTS))
            http_timeout = float(env.get("APS_HTTP_TIMEOUT", 60))
        except ValueError as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e

        scopes = tuple((env.get("APS_SCOPES") or "").split()) or DEFAULT_SCOPES
        return cls(
            client_id=client_id,
            client_secret=client_secret,
            bucket_name=(env.get("APS_BUCKET_NAME") or "").strip(),
            nickname=(env.get("APS_NICKNAME") or "").strip(),
            activity_name=(env.get("APS_ACTIVITY_NAME") or "").strip(),
            bundle_app_name=(env.get("APS_BUNDLE_APP_NAME") or "").strip(),
            activity_alias=(env.get("APS_ACTIVITY_ALIAS") or DEFAULT_ALIAS).strip(),
            engine=(env.get("APS_ENGINE") or DEFAULT_ENGINE).strip(),
            scopes=scopes,
            da_base_url=(env.get("APS_DA_BASE_URL") or DA_BASE_URL).rstrip("/"),
            poll_interval=poll_interval,
            poll_max_attempts=poll_max_attempts,
            http_timeout=http_timeout,
        )
