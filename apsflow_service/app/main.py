import asyncio
import json
import logging
import os
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from apsflow import (
    ApsClient, ApsError, InvalidInputError, NotFoundError, ProgressSink,
    WorkitemFailedError, WorkitemTimeoutError, default_slots,
)
from apsflow import dynamo
from apsflow.design_automation import ACTIVITIES, APPBUNDLES
from apsflow.settings import (
    DYN_FILE, PACKAGES_FILE, PYTHON_FILE, RESULT_FILE, RUN_REQ_FILE, RVT_RESULT_FILE,
)
from apsflow.util import mask_sensitive
from apsflow.workitems import is_terminal

from .config import (
    ENV, LOG_FILE, LOG_JSON, LOG_LEVEL, MAX_UPLOAD_BYTES, PROGRESS_HISTORY,
    PROGRESS_SESSION_TTL, UPLOAD_RPM, WORKITEM_RPM, get_settings, invalidate_settings,
    is_production, validate_config,
)
from .jobs import JobRegistry
from .logging_config import audit_log, configure_logging, set_request_id
from .models import (
    JsonContentRequest, NicknameRequest, SessionRequest,
    TranslateRequest, WorkitemJobRequest, WorkitemRequest,
)
from .progress import ProgressHub
from .rate_limit import RateLimiter

logger = logging.getLogger("apsflow.service")

app = FastAPI(title="apsflow Design Automation service")

# fileType -> (object key, content type); rvt keeps the uploaded name
UPLOAD_TYPES = {
    "python": (PYTHON_FILE, "application/zip"),
    "rvt": (None, "application/octet-stream"),
    "dynamo": (DYN_FILE, "application/octet-stream"),
    "json": (RUN_REQ_FILE, "application/json"),
    "packages": (PACKAGES_FILE, "application/zip"),
}

WS_POLL_SECONDS = 0.25

hub = ProgressHub(PROGRESS_HISTORY, PROGRESS_SESSION_TTL)
jobs = JobRegistry()
upload_limiter = RateLimiter(UPLOAD_RPM)
workitem_limiter = RateLimiter(WORKITEM_RPM)

_client: Optional[ApsClient] = None
_client_lock = threading.Lock()


def get_client() -> ApsClient:
    """Process-wide client; one token cache and one HTTP session for every request."""
    global _client
    with _client_lock:
        if _client is None:
            _client = ApsClient.from_settings(get_settings())
        return _client


@app.on_event("startup")
def _startup():
    configure_logging(LOG_LEVEL, LOG_JSON, LOG_FILE or None)
    missing = [name for name, present in validate_config().items() if not present]
    if missing:
        level = logging.ERROR if is_production() else logging.WARNING
        logger.log(level, "APS configuration incomplete, missing: %s", ", ".join(missing))
    else:
        logger.info("APS application %s ready", mask_sensitive(os.getenv("APS_CLIENT_ID", "").strip()))


@app.on_event("shutdown")
def _shutdown():
    global _client
    jobs.clear()
    with _client_lock:
        if _client is not None:
            _client.close()
            _client = None
    invalidate_settings()


@app.middleware("http")
async def _bind_request_id(request: Request, call_next):
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ============================================================
# Error boundary
# ============================================================

class OperationFailed(Exception):
    """An ApsError raised inside a named route operation."""

    def __init__(self, operation: str, error: ApsError):
        super().__init__(error.message)
        self.operation = operation
        self.error = error


def _describe(error: ApsError) -> str:
    if isinstance(error.details, (dict, list)):
        return json.dumps(error.details, indent=2, default=str)
    return error.message


@contextmanager
def boundary(operation: str, sink: ProgressSink, step: str = "error"):
    try:
        yield
    except ApsError as e:
        logger.warning("%s failed: %s", operation, e.message)
        audit_log.operation_failed(operation, e.message, e.http_status)
        sink.error(step, _describe(e))
        raise OperationFailed(operation, e) from e


@app.exception_handler(OperationFailed)
async def _operation_failed(request: Request, exc: OperationFailed):
    return JSONResponse(status_code=exc.error.http_status, content=exc.error.to_dict(exc.operation))


@app.exception_handler(ApsError)
async def _aps_error(request: Request, exc: ApsError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(f"{request.method} {request.url.path}"))


def enforce(limiter: RateLimiter, key: str) -> None:
    result = limiter.check(key)
    if not result.allowed:
        audit_log.rate_limit_exceeded(key)
        raise HTTPException(429, 'RATE_LIMIT', headers=result.headers())


def session_of(req: Optional[SessionRequest]) -> Optional[str]:
    return req.sessionId if req is not None else None


def bucket_of(client: ApsClient) -> str:
    return client.settings.require("bucket_name").bucket_name


def read_upload(upload: UploadFile) -> bytes:
    data = upload.file.read()
    if not data:
        raise InvalidInputError(f"Uploaded file '{upload.filename}' is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise InvalidInputError(
            f"Uploaded file '{upload.filename}' is too large",
            details={"size": len(data), "limit": MAX_UPLOAD_BYTES},
        )
    return data


# ============================================================
# Health
# ============================================================

@app.get("/health")
def health():
    hub.prune()
    config = validate_config()
    return {
        "status": "ok" if all(config.values()) else "degraded",
        "env": ENV,
        "config": config,
        "sessions": hub.session_count,
        "jobs": len(jobs),
    }


# ============================================================
# Token / nickname / account
# ============================================================

@app.post("/api/aps/token")
def obtain_token(req: Optional[SessionRequest] = None, client: ApsClient = Depends(get_client)):
    sink = hub.sink(session_of(req))
    with boundary("Get Token", sink, "token"):
        sink.step("get access token")
        token = client.tokens.get_token()
        expires_in = token.expires_in(time.time())
        audit_log.token_issued("service", expires_in)
        sink.emit("token", "2-legged access token obtained and cached on server.")
    return {"message": "Token obtained successfully", "expires_in": expires_in}


@app.get("/api/auth/token")
def viewer_token(client: ApsClient = Depends(get_client)):
    with boundary("Get Viewer Token", hub.sink(None)):
        token = client.tokens.get_token()
    audit_log.token_issued("viewer", token.expires_in(time.time()))
    return {"access_token": token.access_token, "expires_in": token.expires_in(time.time())}


@app.get("/api/aps/nickname")
def get_nickname(client: ApsClient = Depends(get_client)):
    try:
        nickname = client.da.get_nickname()
    except NotFoundError:
        # no nickname yet is a valid state
        return JSONResponse(status_code=404, content={"nickname": "Not found"})
    except ApsError as e:
        raise OperationFailed("Get Nickname", e) from e
    return {"nickname": nickname}


@app.post("/api/aps/nickname")
def set_nickname(req: Optional[NicknameRequest] = None, client: ApsClient = Depends(get_client)):
    sink = hub.sink(session_of(req))
    with boundary("Set Nickname", sink, "nickname"):
        nickname = (req.nickname if req else None) or client.settings.require("nickname").nickname
        sink.step("ensure nickname")
        sink.emit("nickname", "Setting APS Nickname...")
        client.da.set_nickname(nickname)
        sink.emit("nickname", "Nickname set successfully.")
    return {"message": "Nickname set successfully", "nickname": nickname}


@app.delete("/api/aps/account")
def clear_account(sessionId: Optional[str] = None, client: ApsClient = Depends(get_client)):
    sink = hub.sink(sessionId)
    with boundary("Clear Account", sink, "account"):
        sink.step("clear account (nickname/appbundles/activities)")
        removed = client.provisioner.clear_account(sink)
    return {"message": "Account cleared successfully", "deleted": removed}


# ============================================================
# Bucket
# ============================================================

@app.get("/api/aps/bucket")
def get_bucket(client: ApsClient = Depends(get_client)):
    with boundary("Get Bucket", hub.sink(None)):
        return client.oss.get_bucket(bucket_of(client))


@app.post("/api/aps/bucket")
def create_bucket(req: Optional[SessionRequest] = None, client: ApsClient = Depends(get_client)):
    sink = hub.sink(session_of(req))
    with boundary("Create Bucket", sink, "bucket"):
        sink.step("create bucket")
        status = client.provisioner.ensure_bucket(bucket_of(client), sink)
    if status.created:
        audit_log.resource_provisioned("bucket", status.bucket_key)
    return status.to_dict()


@app.delete("/api/aps/bucket")
def delete_bucket(sessionId: Optional[str] = None, client: ApsClient = Depends(get_client)):
    sink = hub.sink(sessionId)
    with boundary("Delete Bucket", sink, "bucket"):
        bucket = bucket_of(client)
        sink.step("delete bucket")
        sink.emit("bucket", f"Deleting bucket: {bucket}...")
        deleted = client.oss.delete_bucket(bucket)
    if not deleted:
        sink.emit("bucket", "Bucket not found, skipping delete.")
        return JSONResponse(status_code=404, content={"message": "Bucket not found."})
    sink.emit("bucket", "Bucket deleted.")
    return {"message": "Bucket deleted", "bucketKey": bucket}


@app.delete("/api/aps/bucket/objects")
def clear_bucket(sessionId: Optional[str] = None, client: ApsClient = Depends(get_client)):
    sink = hub.sink(sessionId)
    with boundary("Clear Bucket", sink, "clear bucket"):
        bucket = bucket_of(client)
        sink.step("clear oss bucket")
        report = client.oss.clear_bucket(bucket, sink)
        sink.emit("clear bucket", f"{len(report.deleted)} objects deleted from '{bucket}'.")
    return {"message": "Bucket cleared", **report.to_dict()}


@app.post("/api/aps/bucket/cleanup")
def cleanup_bucket(req: Optional[SessionRequest] = None, client: ApsClient = Depends(get_client)):
    sink = hub.sink(session_of(req))
    with boundary("Smart Bucket Cleanup", sink, "cleanup"):
        bucket = bucket_of(client)
        sink.step("smart bucket cleanup")
        report = client.oss.cleanup_bucket(bucket, client.settings.client_id, sink)
    if report.new_bucket_suggested:
        sink.emit("cleanup", f"Set APS_BUCKET_NAME={report.new_bucket_suggested} in your .env file and restart.")
    return report.to_dict()


# ============================================================
# AppBundle / Activity
# ============================================================

@app.get("/api/aps/appbundle")
def list_appbundles(client: ApsClient = Depends(get_client)):
    with boundary("List AppBundles", hub.sink(None)):
        return {"appbundles": client.provisioner.list_owned(APPBUNDLES)}


@app.post("/api/aps/appbundle")
def create_appbundle(
    appBundleFile: UploadFile = File(...),
    sessionId: Optional[str] = Form(None),
    client: ApsClient = Depends(get_client),
):
    sink = hub.sink(sessionId)
    with boundary("Create AppBundle", sink, "appbundle"):
        data = read_upload(appBundleFile)
        result = client.provisioner.provision_appbundle(appBundleFile.filename, data, sink)
    audit_log.resource_provisioned("appbundle", result.qualified_id, result.version, result.new_resource)
    return {"message": "AppBundle created successfully", **result.to_dict()}


@app.get("/api/aps/activity")
def list_activities(client: ApsClient = Depends(get_client)):
    with boundary("List Activities", hub.sink(None)):
        return {"activities": client.provisioner.list_owned(ACTIVITIES)}


@app.post("/api/aps/activity")
def create_activity(req: Optional[SessionRequest] = None, client: ApsClient = Depends(get_client)):
    sink = hub.sink(session_of(req))
    with boundary("Create Activity", sink, "activity"):
        result = client.provisioner.provision_activity(sink)
    audit_log.resource_provisioned("activity", result.qualified_id, result.version, result.new_resource)
    return {"message": "Activity created successfully", **result.to_dict()}


# ============================================================
# Uploads
# ============================================================

@app.get("/api/aps/upload")
def list_bucket_objects(client: ApsClient = Depends(get_client)):
    with boundary("List Objects", hub.sink(None)):
        bucket = bucket_of(client)
        return {"bucketKey": bucket, "items": client.oss.list_objects(bucket)}


@app.post("/api/aps/upload/single")
def upload_single(
    file: UploadFile = File(...),
    fileType: str = Form(...),
    sessionId: Optional[str] = Form(None),
    client: ApsClient = Depends(get_client),
):
    enforce(upload_limiter, "upload")
    sink = hub.sink(sessionId)
    with boundary(f"Upload {fileType} file", sink, "upload"):
        if fileType not in UPLOAD_TYPES:
            raise InvalidInputError(
                f"Unknown file type: {fileType}",
                details={"allowed": sorted(UPLOAD_TYPES)},
            )
        object_key, content_type = UPLOAD_TYPES[fileType]
        if fileType == "rvt":
            dynamo.require_model_filename(file.filename)
            object_key = file.filename
        elif fileType == "dynamo":
            dynamo.require_dynamo_filename(file.filename)
        data = read_upload(file)
        bucket = bucket_of(client)

        sink.step(f"upload {fileType} file")
        sink.emit("upload", f"Uploading {object_key} to bucket '{bucket}'...")
        stored = client.oss.upload_object(bucket, object_key, data, content_type=content_type, sink=sink)
    audit_log.object_uploaded(bucket, stored.object_key, stored.size)

    response = {
        "message": f"{fileType} file uploaded successfully",
        "fileName": stored.object_key,
        "fileType": fileType,
    }
    if fileType == "rvt":
        response["objectId"] = stored.object_id
        response["urn"] = stored.urn
        sink.emit("upload", "Starting model translation for viewer...")
        try:
            client.derivative.translate(stored.urn)
        except ApsError as e:
            logger.warning("Translation of %s not started: %s", stored.object_key, e.message)
            sink.emit("upload", f"Warning: Could not start translation: {e.message}")
            response["translationWarning"] = e.message
        else:
            sink.emit("upload", "Model translation started successfully.")
    return response


@app.post("/api/aps/upload/dyn-to-json-preview")
def dyn_to_json_preview(
    dynFile: UploadFile = File(...),
    sessionId: Optional[str] = Form(None),
):
    sink = hub.sink(sessionId)
    with boundary("Convert Dynamo to JSON", sink, "convert"):
        dynamo.require_dynamo_filename(dynFile.filename)
        sink.step("convert dynamo to json")
        sink.emit("convert", f"Reading Dynamo file: {dynFile.filename}")
        run_request, summary = dynamo.to_run_request(read_upload(dynFile))
        sink.emit("convert", "Dynamo file converted to JSON format successfully.")
        sink.emit("convert", "JSON content is ready for upload.")
    return {
        "message": "Dynamo file converted to JSON successfully",
        "originalFile": dynFile.filename,
        "jsonContent": dynamo.dumps(run_request),
        "dynamo_properties": summary.to_dict(),
    }


@app.post("/api/aps/upload/json-content")
def upload_json_content(req: JsonContentRequest, client: ApsClient = Depends(get_client)):
    enforce(upload_limiter, "upload")
    sink = hub.sink(req.sessionId)
    with boundary("Upload JSON Content", sink, "upload"):
        if not req.jsonContent.strip():
            raise InvalidInputError("No JSON content provided")
        try:
            json.loads(req.jsonContent)
        except ValueError as e:
            raise InvalidInputError("jsonContent is not valid JSON", details=str(e)) from e
        bucket = bucket_of(client)
        sink.step("upload json content")
        sink.emit("upload", f"Uploading {RUN_REQ_FILE} to bucket...")
        stored = client.oss.upload_object(
            bucket, RUN_REQ_FILE, req.jsonContent.encode("utf-8"), content_type="application/json", sink=sink
        )
    audit_log.object_uploaded(bucket, stored.object_key, stored.size)
    return {"message": f"JSON content uploaded successfully as {RUN_REQ_FILE}", "fileName": RUN_REQ_FILE}


@app.post("/api/aps/upload/convert/dyn-to-json")
def convert_and_upload(
    dynFile: UploadFile = File(...),
    sessionId: Optional[str] = Form(None),
    client: ApsClient = Depends(get_client),
):
    """Older flow: wrap the graph as {"script": ...} and upload it as run.json."""
    enforce(upload_limiter, "upload")
    sink = hub.sink(sessionId)
    with boundary("Convert Dynamo to JSON", sink, "convert"):
        dynamo.require_dynamo_filename(dynFile.filename)
        data = read_upload(dynFile)
        sink.step("convert dynamo to json")
        sink.emit("convert", f"Reading Dynamo file: {dynFile.filename}")
        dynamo.parse_graph(data)
        text = json.dumps(dynamo.to_legacy_run_request(data))
        bucket = bucket_of(client)
        sink.emit("convert", "Converting to run.json format...")
        sink.emit("convert", f"Uploading {RUN_REQ_FILE} to bucket...")
        stored = client.oss.upload_object(
            bucket, RUN_REQ_FILE, text.encode("utf-8"), content_type="application/json", sink=sink
        )
    audit_log.object_uploaded(bucket, stored.object_key, stored.size)
    return {
        "message": "Dynamo file converted to JSON and uploaded successfully",
        "fileName": RUN_REQ_FILE,
        "originalFile": dynFile.filename,
    }


# ============================================================
# Workitems
# ============================================================

def _check_rvt_name(name: str) -> None:
    if not name:
        raise InvalidInputError("rvtFileName is required")
    dynamo.require_model_filename(name)


@app.post("/api/aps/workitem")
def run_workitem(req: WorkitemRequest, client: ApsClient = Depends(get_client)):
    """Submit one workitem and block until it finishes."""
    enforce(workitem_limiter, "workitem")
    sink = hub.sink(req.sessionId)
    activity_id = client.settings.qualified_activity_id

    def on_poll(workitem_id: str, status: str, attempts: int) -> None:
        if attempts == 0:
            audit_log.workitem_submitted(workitem_id, activity_id)

    with boundary("Run Workitem", sink, "workitem"):
        _check_rvt_name(req.rvtFileName)
        try:
            result = client.workitems.run(default_slots(req.rvtFileName), sink=sink, listener=on_poll)
        except WorkitemFailedError as e:
            audit_log.workitem_finished(e.workitem_id, e.status)
            raise
        except WorkitemTimeoutError as e:
            audit_log.workitem_finished(e.workitem_id, "timeout")
            raise
    audit_log.workitem_finished(result.workitem_id, result.status)
    sink.emit("workitem", f"Result file available as: {RESULT_FILE}")
    return {"message": "Workitem completed successfully", **result.to_dict()}


def _job_audit(job_id: str, activity_id: str, max_attempts: int):
    """Poll listener that writes submission and outcome of a background job to the audit log."""

    def on_poll(workitem_id: str, status: str, attempts: int) -> None:
        if attempts == 0:
            audit_log.workitem_submitted(workitem_id, activity_id, job_id)
        elif is_terminal(status):
            audit_log.workitem_finished(workitem_id, status)
        elif attempts >= max_attempts:
            audit_log.workitem_finished(workitem_id, "timeout")

    return on_poll


@app.post("/api/aps/workitem/jobs", status_code=202)
def start_workitem_job(req: WorkitemJobRequest, client: ApsClient = Depends(get_client)):
    """Submit (or resume watching) a workitem in the background and return at once."""
    sink = hub.sink(req.sessionId)
    job_id = uuid.uuid4().hex
    on_poll = _job_audit(job_id, client.settings.qualified_activity_id, client.settings.poll_max_attempts)
    with boundary("Start Workitem Job", sink, "workitem"):
        if req.workitemId:
            job = client.resume_job(req.workitemId, sink, listener=on_poll, job_id=job_id)
        else:
            enforce(workitem_limiter, "workitem")
            _check_rvt_name(req.rvtFileName)
            job = client.start_job(default_slots(req.rvtFileName), sink, listener=on_poll, job_id=job_id)
    jobs.add(job)
    return job.snapshot()


@app.get("/api/aps/workitem/jobs")
def list_workitem_jobs():
    return {"jobs": jobs.snapshots()}


@app.get("/api/aps/workitem/jobs/{job_id}")
def get_workitem_job(job_id: str):
    with boundary("Get Workitem Job", hub.sink(None)):
        return jobs.get(job_id).snapshot()


@app.delete("/api/aps/workitem/jobs/{job_id}")
def cancel_workitem_job(job_id: str, remote: bool = False, client: ApsClient = Depends(get_client)):
    """Stop watching a job; with ``remote=true`` also ask Design Automation to cancel it."""
    with boundary("Cancel Workitem Job", hub.sink(None)):
        job = jobs.cancel(job_id)
        workitem_id = job.snapshot()["workitemId"]
        if remote and workitem_id:
            client.da.cancel_workitem(workitem_id)
    snap = job.snapshot()
    snap["remoteCancelRequested"] = bool(remote and workitem_id)
    return snap


@app.get("/api/aps/workitem/{workitem_id}")
def get_workitem(workitem_id: str, client: ApsClient = Depends(get_client)):
    with boundary("Get Workitem", hub.sink(None)):
        return client.da.get_workitem(workitem_id)


# ============================================================
# Results
# ============================================================

def _download(client: ApsClient, object_key: str, minutes: int, include_size: bool):
    with boundary(f"Download {object_key}", hub.sink(None)):
        link = client.results.get_download_url(bucket_of(client), object_key, minutes, include_size)
    return {"message": "Download URL generated successfully", **link.to_dict()}


@app.get("/api/aps/download/result-json")
def download_result_json(
    minutes: int = Query(60, ge=1, le=60),
    includeSize: bool = False,
    client: ApsClient = Depends(get_client),
):
    return _download(client, RESULT_FILE, minutes, includeSize)


@app.get("/api/aps/download/result-rvt")
def download_result_rvt(
    minutes: int = Query(60, ge=1, le=60),
    includeSize: bool = False,
    client: ApsClient = Depends(get_client),
):
    return _download(client, RVT_RESULT_FILE, minutes, includeSize)


# ============================================================
# Model Derivative (viewer)
# ============================================================

@app.get("/api/models")
def list_models(client: ApsClient = Depends(get_client)):
    with boundary("List Models", hub.sink(None)):
        return client.derivative.list_models(bucket_of(client))


@app.get("/api/models/{urn}/status")
def model_status(urn: str, client: ApsClient = Depends(get_client)):
    with boundary("Get Model Status", hub.sink(None)):
        return client.derivative.translation_status(urn)


@app.post("/api/models/{urn}/translate")
def translate_model(urn: str, req: Optional[TranslateRequest] = None, client: ApsClient = Depends(get_client)):
    sink = hub.sink(session_of(req))
    with boundary("Translate Model", sink, "translate"):
        sink.emit("translate", "Starting model translation...")
        return client.derivative.translate(urn, req.rootFilename if req else None)


# ============================================================
# Progress channel
# ============================================================

@app.get("/api/progress/{session_id}")
def get_progress(
    session_id: str,
    since: int = Query(0, ge=0),
    wait: float = Query(0, ge=0, le=30),
):
    """Events after ``since``; with ``wait`` > 0 long-poll until one arrives."""
    events = hub.since(session_id, since)
    if not events and wait:
        events = hub.wait(session_id, since, wait)
    return {"sessionId": session_id, "events": events, "lastSeq": hub.last_seq(session_id)}


@app.websocket("/ws/progress/{session_id}")
async def progress_socket(websocket: WebSocket, session_id: str, since: int = 0):
    await websocket.accept()
    last = since
    try:
        while True:
            for event in hub.since(session_id, last):
                await websocket.send_json(event)
                last = event["seq"]
            try:
                # text and binary frames from the client are ignored
                message = await asyncio.wait_for(websocket.receive(), timeout=WS_POLL_SECONDS)
            except asyncio.TimeoutError:
                continue
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        logger.debug("Progress socket for %s dropped", session_id)
        return
    logger.debug("Progress socket for %s closed", session_id)
