"""
apsflow: Dynamo-on-Revit workflows for Autodesk Platform Services

Version: 1.0.0

Drives the whole Design Automation round trip for running a Dynamo graph
against a Revit model in the cloud:

    token -> bucket -> AppBundle/Activity -> upload inputs -> workitem -> results

Components share one TokenProvider and one requests.Session. Progress is
reported through a ProgressSink, so the same workflow code serves a CLI, a
web front door or a test.

Usage:
    from apsflow import ApsClient, ApsSettings, MemorySink, to_run_request

    client = ApsClient.from_settings(ApsSettings.from_env())
    sink = MemorySink()

    client.provisioner.ensure_bucket(sink=sink)
    client.oss.upload_object(client.settings.bucket_name, "run.rvt", rvt_bytes, sink=sink)

    run_request, summary = to_run_request(dyn_text)
    ...
    result = client.workitems.run(sink=sink)
    link = client.results.get_download_url(client.settings.bucket_name, "result.json")
"""

__version__ = "1.0.0"
__license__ = "Apache-2.0"

# Errors
from .errors import (
    ApsError,
    AuthError,
    ConfigError,
    InvalidInputError,
    NotFoundError,
    ProvisioningError,
    TranslationError,
    UploadError,
    WorkitemCancelledError,
    WorkitemFailedError,
    WorkitemTimeoutError,
)

# Configuration
from .settings import ApsSettings

# Credentials and transport
from .auth import Token, TokenProvider
from .http import ApsHttp

# Progress
from .progress import (
    FanoutSink,
    LoggingSink,
    MemorySink,
    NullSink,
    ProgressEvent,
    ProgressSink,
)

# Storage and Design Automation
from .oss import CleanupReport, ClearReport, OssClient, StoredObject
from .design_automation import DesignAutomationClient
from .provisioning import (
    BucketStatus,
    DefinitionResult,
    Provisioner,
    build_activity_definition,
)

# Workitems
from .workitems import (
    ArgumentSlot,
    CancellationToken,
    JobState,
    WorkitemJob,
    WorkitemOrchestrator,
    WorkitemResult,
    WorkitemStatus,
    build_arguments,
    default_slots,
)

# Results, viewer and Dynamo
from .results import DownloadLink, ResultRetriever
from .derivative import DerivativeClient
from .dynamo import GraphSummary, to_run_request

from .client import ApsClient

__all__ = [
    "__version__",
    "ApsError",
    "AuthError",
    "ConfigError",
    "InvalidInputError",
    "NotFoundError",
    "ProvisioningError",
    "TranslationError",
    "UploadError",
    "WorkitemCancelledError",
    "WorkitemFailedError",
    "WorkitemTimeoutError",
    "ApsSettings",
    "Token",
    "TokenProvider",
    "ApsHttp",
    "FanoutSink",
    "LoggingSink",
    "MemorySink",
    "NullSink",
    "ProgressEvent",
    "ProgressSink",
    "CleanupReport",
    "ClearReport",
    "OssClient",
    "StoredObject",
    "DesignAutomationClient",
    "BucketStatus",
    "DefinitionResult",
    "Provisioner",
    "build_activity_definition",
    "ArgumentSlot",
    "CancellationToken",
    "JobState",
    "WorkitemJob",
    "WorkitemOrchestrator",
    "WorkitemResult",
    "WorkitemStatus",
    "build_arguments",
    "default_slots",
    "DownloadLink",
    "ResultRetriever",
    "DerivativeClient",
    "GraphSummary",
    "to_run_request",
    "ApsClient",
]
