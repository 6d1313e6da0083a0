"""
Configuration module for the apsflow service.

Centralizes all configuration with environment variable support (a .env
file in the working directory is loaded first), validation and a cached
ApsSettings instance.
"""

import os
from functools import lru_cache
from typing import Dict

from dotenv import load_dotenv

from apsflow import ApsSettings

load_dotenv()

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("APSFLOW_ENV", "dev")  # dev|stage|prod
PORT = int(os.getenv("PORT", "3000"))

# Rate limits (requests per minute)
UPLOAD_RPM = int(os.getenv("UPLOAD_RPM", "60"))
WORKITEM_RPM = int(os.getenv("WORKITEM_RPM", "10"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")
LOG_FILE = os.getenv("LOG_FILE", "")

# Progress channel
PROGRESS_HISTORY = int(os.getenv("PROGRESS_HISTORY", "500"))
PROGRESS_SESSION_TTL = int(os.getenv("PROGRESS_SESSION_TTL", "3600"))

# Uploads larger than this are rejected before they reach OSS
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(500 * 1024 * 1024)))

REQUIRED_APS_VARS = (
    "APS_CLIENT_ID",
    "APS_CLIENT_SECRET",
    "APS_BUCKET_NAME",
    "APS_NICKNAME",
    "APS_ACTIVITY_NAME",
    "APS_BUNDLE_APP_NAME",
)


# ============================================================
# Cached Settings
# ============================================================

@lru_cache(maxsize=1)
def get_settings() -> ApsSettings:
    """
    Build APS settings from the environment once per process.

    Raises:
        ConfigError: client id or secret missing
    """
    return ApsSettings.from_env()


def invalidate_settings() -> None:
    """Forget cached settings (after the bucket name changes, or in tests)."""
    get_settings.cache_clear()


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Report which required APS variables are set.
    Returns dict of variable -> present.
    """
    return {name: bool(os.getenv(name, "").strip()) for name in REQUIRED_APS_VARS}


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("APSFLOW_DEBUG", "").lower() in ("1", "true", "yes")
