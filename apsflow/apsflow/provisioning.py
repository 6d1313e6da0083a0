"""
Resource provisioning

Idempotent "ensure" operations for the resources a workitem needs: the OSS
bucket, the AppBundle and the Activity, each Design Automation resource
reachable through an alias that points at its newest version.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .design_automation import ACTIVITIES, APPBUNDLES, DesignAutomationClient
from .errors import NotFoundError, ProvisioningError
from .http import expect
from .oss import OssClient
from .progress import NULL_SINK, ProgressSink
from .settings import (
    DEFAULT_ALIAS, DEFAULT_ENGINE, PACKAGES_FILE, PYTHON_FILE, RESULT_FILE,
    RUN_REQ_FILE, RVT_RESULT_FILE, ApsSettings,
)

logger = logging.getLogger(__name__)


@dataclass
class BucketStatus:
    bucket_key: str
    created: bool
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        if self.created:
            return f"Bucket '{self.bucket_key}' created successfully"
        return f"Bucket '{self.bucket_key}' already exists"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucketKey": self.bucket_key,
            "created": self.created,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class DefinitionResult:
    """Where a definition ended up after ensure_definition + ensure_alias."""
    kind: str
    resource_id: str
    version: int
    alias: str
    alias_created: bool
    new_resource: bool
    qualified_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.resource_id,
            "version": self.version,
            "alias": self.alias,
            "aliasCreated": self.alias_created,
            "newResource": self.new_resource,
            "qualifiedId": self.qualified_id,
        }


def build_activity_definition(
    activity_name: str,
    nickname: str,
    bundle_app_name: str,
    alias: str = DEFAULT_ALIAS,
    engine: str = DEFAULT_ENGINE,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Activity that runs a Dynamo graph inside revitcoreconsole.

    Inputs are the model, the run request, zipped Python libraries and
    zipped Dynamo packages. Outputs are the graph result and the saved model.
    """
    def param(verb, local_name, desc, zip_=False, required=False):
        return {
            "zip": zip_,
            "ondemand": False,
            "verb": verb,
            "description": desc,
            "required": required,
            "localName": local_name,
        }

    if description is None:
        description = f"Activity for Dynamo Revit, version {datetime.now(timezone.utc).isoformat()}"

    return {
        "id": activity_name,
        "commandLine": [
            '$(engine.path)\\\\revitcoreconsole.exe /i "$(args[rvtFile].path)" '
            f'/al "$(appbundles[{bundle_app_name}].path)"'
        ],
        "parameters": {
            "rvtFile": param("get", "$(rvtFile)", "Input Revit model", required=True),
            "runRequest": param("get", RUN_REQ_FILE, "Dynamo run request"),
            "pythonLibs": param("get", PYTHON_FILE.rsplit(".", 1)[0], "Python libs", zip_=True),
            "dynResult": param("put", RESULT_FILE, "Results"),
            "packages": param("get", PACKAGES_FILE.rsplit(".", 1)[0], "Dynamo packages", zip_=True),
            "rvtResult": param("put", RVT_RESULT_FILE, "Results"),
        },
        "engine": engine,
        "appbundles": [f"{nickname}.{bundle_app_name}+{alias}"],
        "description": description,
    }


def build_appbundle_definition(bundle_app_name: str, engine: str = DEFAULT_ENGINE) -> Dict[str, Any]:
    return {
        "id": bundle_app_name,
        "engine": engine,
        "description": "AppBundle for running Dynamo scripts on Revit models",
    }


class Provisioner:
    """Creates or updates the bucket, AppBundle and Activity."""

    def __init__(self, oss: OssClient, da: DesignAutomationClient, settings: ApsSettings):
        self.oss = oss
        self.da = da
        self.settings = settings

    # ------------------------------------------------------------------
    # Bucket
    # ------------------------------------------------------------------

    def ensure_bucket(self, bucket_key: Optional[str] = None, sink: ProgressSink = NULL_SINK) -> BucketStatus:
        """
        Make sure the bucket exists.

        Returns:
            BucketStatus with created=False when the bucket was already there
            (including a 409 race on create)
        """
        bucket_key = bucket_key or self.settings.require("bucket_name").bucket_name
        sink.emit("bucket", f"Checking bucket '{bucket_key}'...")
        try:
            details = self.oss.get_bucket(bucket_key)
            sink.emit("bucket", f"Bucket '{bucket_key}' already exists.")
            return BucketStatus(bucket_key, created=False, details=details)
        except NotFoundError:
            pass

        resp = self.oss.create_bucket(bucket_key)
        if resp.status_code == 409:
            sink.emit("bucket", f"Bucket '{bucket_key}' already exists.")
            return BucketStatus(bucket_key, created=False)
        details = expect(resp, ProvisioningError, f"Failed to create bucket '{bucket_key}'")
        logger.info("Created bucket %s", bucket_key)
        sink.emit("bucket", f"Bucket '{bucket_key}' created.")
        return BucketStatus(bucket_key, created=True, details=details)

    # ------------------------------------------------------------------
    # AppBundle / Activity
    # ------------------------------------------------------------------

    def ensure_definition(self, kind: str, definition: Dict[str, Any], sink: ProgressSink = NULL_SINK):
        """
        Create the resource, or a new version of it when the id is taken.

        Returns:
            (response body, new_resource)
        """
        resource_id = definition["id"]
        resp = self.da.create(kind, definition)
        if resp.status_code == 409:
            sink.emit(kind, f"'{resource_id}' exists, creating a new version...")
            body = self.da.create_version(kind, resource_id, definition)
            new_resource = False
        else:
            body = expect(resp, ProvisioningError, f"Failed to create {kind} '{resource_id}'")
            new_resource = True
        sink.emit(kind, f"'{resource_id}' version {body.get('version')} created.")
        return body, new_resource

    def ensure_alias(
        self, kind: str, resource_id: str, alias: str, version: int, sink: ProgressSink = NULL_SINK
    ) -> bool:
        """
        Point ``alias`` at ``version``. Returns True when the alias was created,
        False when an existing alias was moved.
        """
        resp = self.da.create_alias(kind, resource_id, alias, version)
        if resp.status_code == 409:
            sink.emit(kind, f"Alias exists, updating to version {version}...")
            self.da.update_alias(kind, resource_id, alias, version)
            sink.emit(kind, f"Alias '{alias}' updated.")
            return False
        expect(resp, ProvisioningError, f"Failed to create alias '{alias}' for '{resource_id}'")
        sink.emit(kind, f"Alias '{alias}' created.")
        return True

    def provision_appbundle(
        self, filename: str, data: bytes, sink: ProgressSink = NULL_SINK
    ) -> DefinitionResult:
        """Create/version the AppBundle, upload its zip and move the alias."""
        s = self.settings.require("nickname", "bundle_app_name")
        alias = s.activity_alias
        sink.step("appbundle")
        sink.emit("appbundle", f"Creating AppBundle: {s.qualified_bundle_id}")
        body, new_resource = self.ensure_definition(
            APPBUNDLES, build_appbundle_definition(s.bundle_app_name, s.engine), sink
        )
        version = body.get("version")
        sink.emit("appbundle", "Uploading ZIP file to APS...")
        self.da.upload_bundle_package(body.get("uploadParameters") or {}, filename, data)
        created = self.ensure_alias(APPBUNDLES, s.bundle_app_name, alias, version, sink)
        sink.emit("appbundle", "AppBundle setup complete.")
        return DefinitionResult(
            APPBUNDLES, s.bundle_app_name, version, alias, created, new_resource,
            qualified_id=s.qualified_bundle_id,
        )

    def provision_activity(self, sink: ProgressSink = NULL_SINK) -> DefinitionResult:
        s = self.settings.require("nickname", "activity_name", "bundle_app_name")
        alias = s.activity_alias
        sink.step("activity")
        sink.emit("activity", f"Creating Activity: {s.qualified_activity_id}")
        definition = build_activity_definition(
            s.activity_name, s.nickname, s.bundle_app_name, alias=alias, engine=s.engine
        )
        body, new_resource = self.ensure_definition(ACTIVITIES, definition, sink)
        version = body.get("version")
        created = self.ensure_alias(ACTIVITIES, s.activity_name, alias, version, sink)
        sink.emit("activity", "Activity setup complete.")
        return DefinitionResult(
            ACTIVITIES, s.activity_name, version, alias, created, new_resource,
            qualified_id=s.qualified_activity_id,
        )

    # ------------------------------------------------------------------
    # Listing / account
    # ------------------------------------------------------------------

    def list_owned(self, kind: str) -> List[str]:
        """Ids owned by this app's nickname, without the nickname prefix."""
        prefix = f"{self.settings.require('nickname').nickname}."
        return [i[len(prefix):] for i in self.da.list_ids(kind) if i.startswith(prefix)]

    def clear_account(self, sink: ProgressSink = NULL_SINK) -> bool:
        sink.emit("account", "Deleting Design Automation resources...")
        removed = self.da.delete_app()
        if removed:
            sink.emit("account", "All AppBundles and Activities deleted.")
        else:
            sink.emit("account", "Nothing to clear.")
        return removed
