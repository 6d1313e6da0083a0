"""
Design Automation v3 client

Raw calls against the Design Automation API: forge app nickname, AppBundle
and Activity definitions, their versions and aliases, and workitems.
Higher-level "make it so" logic lives in provisioning and workitems.
"""

import logging
from typing import Any, Dict, List, Optional

from .errors import ApsError, NotFoundError, ProvisioningError
from .http import ApsHttp, expect
from .settings import DA_BASE_URL

logger = logging.getLogger(__name__)

APPBUNDLES = "appbundles"
ACTIVITIES = "activities"
KINDS = (APPBUNDLES, ACTIVITIES)


def _check_kind(kind: str) -> None:
    if kind not in KINDS:
        raise ValueError(f"Unknown Design Automation resource kind: {kind}")


class DesignAutomationClient:
    """Thin client for the Design Automation REST endpoints."""

    def __init__(self, http: ApsHttp, base_url: str = DA_BASE_URL):
        self._http = http
        self._base = base_url.rstrip("/")

    def auth_header(self) -> Dict[str, str]:
        """Bearer header handed to Design Automation for reaching OSS objects."""
        return self._http.auth_header()

    # ------------------------------------------------------------------
    # Forge app (nickname)
    # ------------------------------------------------------------------

    def get_nickname(self) -> str:
        resp = self._http.send("GET", f"{self._base}/forgeapps/me", error=ProvisioningError)
        if resp.status_code == 404:
            raise NotFoundError("Nickname not found", status_code=404)
        body = expect(resp, ProvisioningError, "Failed to get nickname")
        # The endpoint answers with a bare JSON string
        return body if isinstance(body, str) else str(body.get("nickname", body))

    def set_nickname(self, nickname: str) -> None:
        resp = self._http.send(
            "PATCH", f"{self._base}/forgeapps/me", error=ProvisioningError, json={"nickname": nickname}
        )
        expect(resp, ProvisioningError, f"Failed to set nickname '{nickname}'")

    def delete_app(self) -> bool:
        """Delete every DA resource owned by the app. Returns False if nothing existed."""
        resp = self._http.send("DELETE", f"{self._base}/forgeapps/me", error=ProvisioningError)
        if resp.status_code == 404:
            return False
        expect(resp, ProvisioningError, "Failed to clear Design Automation account")
        return True

    # ------------------------------------------------------------------
    # AppBundles / Activities
    # ------------------------------------------------------------------

    def list_ids(self, kind: str) -> List[str]:
        """Fully qualified ids visible to the app, following pagination."""
        _check_kind(kind)
        ids: List[str] = []
        page: Optional[str] = None
        while True:
            params = {"page": page} if page else None
            resp = self._http.send("GET", f"{self._base}/{kind}", error=ProvisioningError, params=params)
            body = expect(resp, ProvisioningError, f"Failed to list {kind}")
            ids.extend(body.get("data") or [])
            page = body.get("paginationToken")
            if not page:
                return ids

    def create(self, kind: str, definition: Dict[str, Any]):
        """POST a new definition. Returns the raw response so callers can interpret 409."""
        _check_kind(kind)
        return self._http.send("POST", f"{self._base}/{kind}", error=ProvisioningError, json=definition)

    def create_version(self, kind: str, resource_id: str, definition: Dict[str, Any]) -> Dict[str, Any]:
        _check_kind(kind)
        body = {k: v for k, v in definition.items() if k != "id"}
        resp = self._http.send(
            "POST", f"{self._base}/{kind}/{resource_id}/versions", error=ProvisioningError, json=body
        )
        return expect(resp, ProvisioningError, f"Failed to create new version of {kind} '{resource_id}'")

    def create_alias(self, kind: str, resource_id: str, alias: str, version: int):
        _check_kind(kind)
        return self._http.send(
            "POST",
            f"{self._base}/{kind}/{resource_id}/aliases",
            error=ProvisioningError,
            json={"id": alias, "version": version},
        )

    def update_alias(self, kind: str, resource_id: str, alias: str, version: int) -> Dict[str, Any]:
        _check_kind(kind)
        resp = self._http.send(
            "PATCH",
            f"{self._base}/{kind}/{resource_id}/aliases/{alias}",
            error=ProvisioningError,
            json={"version": version},
        )
        return expect(resp, ProvisioningError, f"Failed to update alias '{alias}' of '{resource_id}'")

    def upload_bundle_package(self, upload_parameters: Dict[str, Any], filename: str, data: bytes) -> None:
        """POST the bundle zip to the pre-signed form endpoint returned on create."""
        url = upload_parameters.get("endpointURL")
        if not url:
            raise ProvisioningError("AppBundle response has no upload endpoint", details=upload_parameters)
        # formData fields must precede the file part
        form = dict(upload_parameters.get("formData") or {})
        resp = self._http.send(
            "POST",
            url,
            error=ProvisioningError,
            authenticated=False,
            data=form,
            files={"file": (filename, data, "application/zip")},
        )
        expect(resp, ProvisioningError, "Failed to upload AppBundle package")

    # ------------------------------------------------------------------
    # Workitems
    # ------------------------------------------------------------------

    def submit_workitem(self, activity_id: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._http.send(
            "POST",
            f"{self._base}/workitems",
            error=ApsError,
            json={"activityId": activity_id, "arguments": arguments},
        )
        return expect(resp, ApsError, f"Failed to create workitem for '{activity_id}'")

    def get_workitem(self, workitem_id: str) -> Dict[str, Any]:
        resp = self._http.send("GET", f"{self._base}/workitems/{workitem_id}", error=ApsError)
        if resp.status_code == 404:
            raise NotFoundError(f"Workitem '{workitem_id}' not found", status_code=404)
        return expect(resp, ApsError, f"Failed to get status of workitem '{workitem_id}'")

    def cancel_workitem(self, workitem_id: str) -> None:
        resp = self._http.send("DELETE", f"{self._base}/workitems/{workitem_id}", error=ApsError)
        expect(resp, ApsError, f"Failed to cancel workitem '{workitem_id}'", allow=(404,))

    def fetch_report(self, report_url: str) -> Optional[str]:
        """Download the workitem log. Returns None when it cannot be read."""
        try:
            resp = self._http.send("GET", report_url, error=ApsError, authenticated=False)
        except ApsError as e:
            logger.warning("Could not fetch workitem report: %s", e)
            return None
        if not resp.ok:
            logger.warning("Workitem report answered %s", resp.status_code)
            return None
        return resp.text
