"""
Model Derivative

Starts SVF2 translations of uploaded models so they can be shown in the
viewer, and summarizes translation manifests.
"""

import logging
from typing import Any, Dict, List, Optional

from .errors import ApsError, TranslationError
from .http import ApsHttp, expect
from .oss import OssClient
from .settings import MODEL_DERIVATIVE_URL
from .util import urnify

logger = logging.getLogger(__name__)


def flatten_messages(manifest: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Messages of every derivative and of each derivative's children, in order."""
    messages: List[Dict[str, Any]] = []
    for derivative in manifest.get("derivatives") or []:
        messages.extend(derivative.get("messages") or [])
        for child in derivative.get("children") or []:
            messages.extend(child.get("messages") or [])
    return messages


class DerivativeClient:
    def __init__(self, http: ApsHttp, oss: OssClient, base_url: str = MODEL_DERIVATIVE_URL):
        self._http = http
        self._oss = oss
        self._base = base_url.rstrip("/")

    def translate(self, urn: str, root_filename: Optional[str] = None) -> Dict[str, Any]:
        """
        Start an SVF2 translation with 2d and 3d views.

        Raises:
            TranslationError: job submission answered non-2xx
        """
        job: Dict[str, Any] = {
            "input": {"urn": urn},
            "output": {"formats": [{"type": "svf2", "views": ["2d", "3d"]}]},
        }
        if root_filename:
            job["input"]["rootFilename"] = root_filename
        resp = self._http.send("POST", f"{self._base}/designdata/job", error=TranslationError, json=job)
        body = expect(resp, TranslationError, "Failed to start model translation")
        logger.info("Translation started for %s: %s", urn, body.get("result"))
        return body

    def get_manifest(self, urn: str) -> Optional[Dict[str, Any]]:
        """Translation manifest, or None when the model was never translated."""
        resp = self._http.send("GET", f"{self._base}/designdata/{urn}/manifest")
        if resp.status_code == 404:
            return None
        return expect(resp, ApsError, "Failed to get model manifest")

    def translation_status(self, urn: str) -> Dict[str, Any]:
        manifest = self.get_manifest(urn)
        if manifest is None:
            return {"status": "n/a"}
        return {
            "status": manifest.get("status"),
            "progress": manifest.get("progress"),
            "messages": flatten_messages(manifest),
        }

    def list_models(self, bucket_key: str) -> List[Dict[str, str]]:
        """Revit models in the bucket with their viewer URNs."""
        return [
            {"name": o["objectKey"], "urn": urnify(o["objectId"]), "objectId": o["objectId"]}
            for o in self._oss.list_objects(bucket_key)
            if o.get("objectKey", "").lower().endswith(".rvt")
        ]
