"""
Object Storage Service client

Bucket and object operations against /oss/v2, including the three-step
signed-URL upload:

    1. GET  objects/{key}/signeds3upload       -> {urls, uploadKey}
    2. PUT  bytes to urls[0]                   (pre-signed, no bearer header)
    3. POST objects/{key}/signeds3upload       {uploadKey} -> {objectId, ...}

Any failed step aborts the upload. Nothing is rolled back.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, ProvisioningError, UploadError
from .http import ApsHttp, expect
from .progress import NULL_SINK, ProgressSink
from .settings import OSS_BASE_URL
from .util import object_address, quote_key, urnify

logger = logging.getLogger(__name__)


@dataclass
class StoredObject:
    """An object that has been uploaded to a bucket."""
    bucket_key: str
    object_key: str
    object_id: str
    size: int = 0

    @property
    def urn(self) -> str:
        return urnify(self.object_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucketKey": self.bucket_key,
            "objectKey": self.object_key,
            "objectId": self.object_id,
            "urn": self.urn,
            "size": self.size,
        }


@dataclass
class ClearReport:
    """Outcome of deleting every object in a bucket."""
    bucket_key: str
    deleted: List[str] = field(default_factory=list)
    failed: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucket_key": self.bucket_key,
            "objects_deleted": len(self.deleted),
            "deleted": self.deleted,
            "failed": self.failed,
        }


@dataclass
class CleanupReport:
    """Outcome of clearing and then deleting a bucket."""
    bucket_key: str
    exists: bool
    objects_deleted: int = 0
    bucket_deleted: bool = False
    new_bucket_suggested: Optional[str] = None
    action_required: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucket_name": self.bucket_key,
            "exists": self.exists,
            "objects_deleted": self.objects_deleted,
            "bucket_deleted": self.bucket_deleted,
            "new_bucket_suggested": self.new_bucket_suggested,
            "action_required": self.action_required,
        }


def suggest_bucket_name(base: str, client_id: str, now_ms: Optional[int] = None) -> str:
    """Fresh bucket name owned by this application: <base>_<client8>_<epoch ms>."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{base}_{client_id[:8]}_{stamp}".lower()


class OssClient:
    """Thin client for buckets and objects."""

    def __init__(self, http: ApsHttp, base_url: str = OSS_BASE_URL):
        self._http = http
        self._base = base_url.rstrip("/")

    def _bucket_url(self, bucket_key: str) -> str:
        return f"{self._base}/buckets/{bucket_key}"

    def _object_url(self, bucket_key: str, object_key: str) -> str:
        return f"{self._bucket_url(bucket_key)}/objects/{quote_key(object_key)}"

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    def get_bucket(self, bucket_key: str) -> Dict[str, Any]:
        """
        Return bucket details.

        Raises:
            NotFoundError: bucket does not exist
            ProvisioningError: any other non-2xx
        """
        resp = self._http.send("GET", f"{self._bucket_url(bucket_key)}/details", error=ProvisioningError)
        if resp.status_code == 404:
            raise NotFoundError(f"Bucket '{bucket_key}' not found", status_code=404)
        return expect(resp, ProvisioningError, f"Failed to read bucket '{bucket_key}'")

    def create_bucket(self, bucket_key: str, policy_key: str = "transient"):
        """POST a new bucket. Returns the raw response so callers can interpret 409."""
        return self._http.send(
            "POST",
            f"{self._base}/buckets",
            error=ProvisioningError,
            json={"bucketKey": bucket_key, "policyKey": policy_key},
        )

    def delete_bucket(self, bucket_key: str) -> bool:
        """Delete a bucket. Returns False when it did not exist."""
        resp = self._http.send("DELETE", self._bucket_url(bucket_key), error=ProvisioningError)
        if resp.status_code == 404:
            return False
        expect(resp, ProvisioningError, f"Failed to delete bucket '{bucket_key}'")
        return True

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def list_objects(self, bucket_key: str) -> List[Dict[str, Any]]:
        """All objects in the bucket, following ``next`` pagination links."""
        items: List[Dict[str, Any]] = []
        url: Optional[str] = f"{self._bucket_url(bucket_key)}/objects"
        params: Optional[Dict[str, Any]] = {"limit": 100}
        while url:
            resp = self._http.send("GET", url, error=ProvisioningError, params=params)
            if resp.status_code == 404:
                raise NotFoundError(f"Bucket '{bucket_key}' not found", status_code=404)
            page = expect(resp, ProvisioningError, f"Failed to list objects in '{bucket_key}'")
            items.extend(page.get("items") or [])
            url = page.get("next")
            params = None
        return items

    def object_exists(self, bucket_key: str, object_key: str) -> bool:
        """HEAD probe. Any non-2xx answer, 404 included, means 'absent'."""
        resp = self._http.send("HEAD", self._object_url(bucket_key, object_key), error=ProvisioningError)
        return resp.ok

    def object_size(self, bucket_key: str, object_key: str) -> int:
        resp = self._http.send("HEAD", self._object_url(bucket_key, object_key), error=ProvisioningError)
        if resp.status_code == 404:
            raise NotFoundError(f"Object '{object_key}' not found in '{bucket_key}'", status_code=404)
        expect(resp, ProvisioningError, f"Failed to read object '{object_key}'")
        return int(resp.headers.get("Content-Length") or 0)

    def delete_object(self, bucket_key: str, object_key: str) -> bool:
        resp = self._http.send("DELETE", self._object_url(bucket_key, object_key), error=ProvisioningError)
        if resp.status_code == 404:
            return False
        expect(resp, ProvisioningError, f"Failed to delete object '{object_key}'")
        return True

    def upload_object(
        self,
        bucket_key: str,
        object_key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        sink: ProgressSink = NULL_SINK,
    ) -> StoredObject:
        """
        Upload bytes through a signed S3 URL.

        Args:
            bucket_key: Target bucket
            object_key: Target object name
            data: Raw bytes
            content_type: Content-Type sent with the PUT
            sink: Progress receiver

        Returns:
            StoredObject whose urn is derived from the returned objectId

        Raises:
            UploadError: any of the three steps answered non-2xx
        """
        signed_url = f"{self._object_url(bucket_key, object_key)}/signeds3upload"

        resp = self._http.send("GET", signed_url, error=UploadError)
        descriptor = expect(resp, UploadError, f"Failed to get signed upload URL for '{object_key}'")
        urls = descriptor.get("urls") or []
        upload_key = descriptor.get("uploadKey")
        if not urls or not upload_key:
            raise UploadError(f"Signed upload descriptor for '{object_key}' has no URL", details=descriptor)

        resp = self._http.send(
            "PUT",
            urls[0],
            error=UploadError,
            authenticated=False,
            headers={"Content-Type": content_type},
            data=data,
        )
        expect(resp, UploadError, f"Failed to upload '{object_key}' to signed URL")

        resp = self._http.send("POST", signed_url, error=UploadError, json={"uploadKey": upload_key})
        completed = expect(resp, UploadError, f"Failed to finalize upload of '{object_key}'")

        stored = StoredObject(
            bucket_key=bucket_key,
            object_key=completed.get("objectKey") or object_key,
            object_id=completed.get("objectId") or object_address(bucket_key, object_key),
            size=int(completed.get("size") or len(data)),
        )
        logger.info("Uploaded %s to %s (%d bytes)", object_key, bucket_key, stored.size)
        sink.emit("upload", f"{object_key} uploaded successfully.")
        return stored

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def clear_bucket(self, bucket_key: str, sink: ProgressSink = NULL_SINK) -> ClearReport:
        """Delete every object. Per-object failures are reported, not raised."""
        report = ClearReport(bucket_key=bucket_key)
        for item in self.list_objects(bucket_key):
            key = item.get("objectKey", "")
            try:
                self.delete_object(bucket_key, key)
            except ProvisioningError as e:
                logger.warning("Could not delete object %s: %s", key, e)
                report.failed[key] = e.details
                continue
            report.deleted.append(key)
            sink.emit("clear bucket", f"Deleted object: {key}")
        return report

    def cleanup_bucket(self, bucket_key: str, client_id: str, sink: ProgressSink = NULL_SINK) -> CleanupReport:
        """
        Clear and delete a bucket.

        When the bucket is owned by another application or cannot be removed,
        suggest a fresh bucket name instead of failing.
        """
        try:
            self.get_bucket(bucket_key)
        except NotFoundError:
            return CleanupReport(bucket_key=bucket_key, exists=False)
        except ProvisioningError as e:
            if e.status_code in (401, 403):
                return CleanupReport(
                    bucket_key=bucket_key,
                    exists=True,
                    new_bucket_suggested=suggest_bucket_name(bucket_key.split("_")[0], client_id),
                    action_required="UPDATE_ENV_FILE",
                )
            raise

        cleared = self.clear_bucket(bucket_key, sink)
        report = CleanupReport(bucket_key=bucket_key, exists=True, objects_deleted=len(cleared.deleted))
        try:
            report.bucket_deleted = self.delete_bucket(bucket_key)
        except ProvisioningError as e:
            logger.warning("Could not delete bucket %s: %s", bucket_key, e)
        if not report.bucket_deleted:
            report.new_bucket_suggested = suggest_bucket_name(bucket_key.split("_")[0], client_id)
            report.action_required = "UPDATE_ENV_FILE"
        else:
            sink.emit("cleanup", f"Bucket '{bucket_key}' deleted.")
        return report
