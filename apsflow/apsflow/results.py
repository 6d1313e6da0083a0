"""
Result retrieval

Time-limited download links for the objects a workitem writes back to the
bucket. Links are minted on every call and never cached.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import ApsError, NotFoundError
from .http import ApsHttp, expect
from .oss import OssClient
from .settings import OSS_BASE_URL
from .util import quote_key

logger = logging.getLogger(__name__)

DEFAULT_LINK_MINUTES = 60


@dataclass
class DownloadLink:
    url: str
    file_name: str
    expires_in_minutes: int
    size_bytes: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "downloadUrl": self.url,
            "fileName": self.file_name,
            "expiresIn": f"{self.expires_in_minutes} minutes",
        }
        if self.size_bytes is not None:
            d["fileSize"] = self.size_bytes
        return d


class ResultRetriever:
    def __init__(self, http: ApsHttp, oss: OssClient, base_url: str = OSS_BASE_URL):
        self._http = http
        self._oss = oss
        self._base = base_url.rstrip("/")

    def get_download_url(
        self,
        bucket_key: str,
        object_key: str,
        minutes: int = DEFAULT_LINK_MINUTES,
        include_size: bool = False,
    ) -> DownloadLink:
        """
        Mint a signed S3 download URL.

        Args:
            bucket_key: Bucket holding the result
            object_key: Result object, e.g. result.json
            minutes: Link lifetime
            include_size: Also HEAD the object for its Content-Length

        Raises:
            NotFoundError: object does not exist (the workitem wrote nothing)
            ApsError: any other non-2xx
        """
        url = f"{self._base}/buckets/{bucket_key}/objects/{quote_key(object_key)}/signeds3download"
        resp = self._http.send("GET", url, params={"minutesExpiration": minutes})
        if resp.status_code == 404:
            raise NotFoundError(
                f"{object_key} not found. Make sure the workitem completed successfully.",
                status_code=404,
            )
        body = expect(resp, ApsError, f"Failed to get download URL for {object_key}")
        if not body.get("url"):
            raise ApsError(f"No download URL returned for {object_key}", details=body)

        size = self._oss.object_size(bucket_key, object_key) if include_size else None
        logger.info("Minted %d-minute download link for %s/%s", minutes, bucket_key, object_key)
        return DownloadLink(url=body["url"], file_name=object_key, expires_in_minutes=minutes, size_bytes=size)
