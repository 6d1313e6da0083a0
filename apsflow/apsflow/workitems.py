"""
Workitem orchestration

Builds the argument map for the Dynamo activity, submits exactly one
workitem per run and polls it to a terminal status:

    submit -> GET status -> (pending | inprogress) -> sleep -> GET status ...

The first status check happens immediately after submission and the loop
sleeps a fixed interval between checks. After ``max_attempts`` checks that
are still non-terminal the run raises WorkitemTimeoutError; the remote job
keeps running and can be picked up again with ``observe``.

Polling is cancellable through a CancellationToken. WorkitemJob runs a whole
submit-and-poll cycle on a background thread so a caller can return
immediately and query ``snapshot()`` later.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .design_automation import DesignAutomationClient
from .errors import ApsError, WorkitemCancelledError, WorkitemFailedError, WorkitemTimeoutError
from .oss import OssClient
from .progress import NULL_SINK, ProgressSink
from .settings import (
    PACKAGES_FILE, PYTHON_FILE, RESULT_FILE, RUN_REQ_FILE, RVT_FILE,
    RVT_RESULT_FILE, ApsSettings,
)
from .util import object_address

logger = logging.getLogger(__name__)


class WorkitemStatus(str, Enum):
    """Statuses reported by Design Automation."""
    PENDING = "pending"
    INPROGRESS = "inprogress"
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED_LIMIT_DATA_SIZE = "failedLimitDataSize"
    FAILED_LIMIT_PROCESSING_TIME = "failedLimitProcessingTime"
    FAILED_DOWNLOAD = "failedDownload"
    FAILED_INSTRUCTIONS = "failedInstructions"
    FAILED_UPLOAD = "failedUpload"
    FAILED_UPLOAD_OPTIONAL = "failedUploadOptional"


NON_TERMINAL = frozenset({WorkitemStatus.PENDING.value, WorkitemStatus.INPROGRESS.value})


def is_terminal(status: str) -> bool:
    """Anything other than pending/inprogress, unknown strings included."""
    return status not in NON_TERMINAL


# =============================================================================
# Arguments
# =============================================================================

@dataclass
class ArgumentSlot:
    """One activity parameter bound to an object in the bucket."""
    name: str
    object_key: str
    verb: str = "get"
    probe_before_submit: bool = False


def default_slots(rvt_file_name: str = RVT_FILE) -> List[ArgumentSlot]:
    """Slots of the Dynamo-on-Revit activity. Only ``packages`` is optional."""
    return [
        ArgumentSlot("rvtFile", rvt_file_name),
        ArgumentSlot("runRequest", RUN_REQ_FILE),
        ArgumentSlot("pythonLibs", PYTHON_FILE),
        ArgumentSlot("packages", PACKAGES_FILE, probe_before_submit=True),
        ArgumentSlot("dynResult", RESULT_FILE, verb="put"),
        ArgumentSlot("rvtResult", RVT_RESULT_FILE, verb="put"),
    ]


def build_arguments(
    bucket_key: str,
    slots: List[ArgumentSlot],
    auth_header: Dict[str, str],
    probe: Callable[[str, str], bool],
) -> Dict[str, Any]:
    """
    Build the ``arguments`` map of a workitem.

    Args:
        bucket_key: Bucket holding every input and output
        slots: Parameter bindings
        auth_header: Bearer header Design Automation uses to reach OSS
        probe: (bucket, key) -> exists, consulted only for probed slots

    Returns:
        Mapping of parameter name to {url, verb, headers}
    """
    arguments: Dict[str, Any] = {}
    for slot in slots:
        if slot.probe_before_submit and not probe(bucket_key, slot.object_key):
            logger.info("Skipping optional argument %s: %s not in bucket", slot.name, slot.object_key)
            continue
        arguments[slot.name] = {
            "url": object_address(bucket_key, slot.object_key),
            "verb": slot.verb,
            "headers": dict(auth_header),
        }
    return arguments


# =============================================================================
# Cancellation and results
# =============================================================================

class CancellationToken:
    """Cooperative cancel flag that doubles as an interruptible sleep."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``. Returns True if cancelled meanwhile."""
        return self._event.wait(seconds)


@dataclass
class WorkitemResult:
    workitem_id: str
    status: str
    activity_id: str
    bucket_key: str
    outputs: List[str] = field(default_factory=list)
    report_url: Optional[str] = None
    attempts: int = 0
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workitemId": self.workitem_id,
            "status": self.status,
            "activity_id": self.activity_id,
            "bucket_name": self.bucket_key,
            "resultFile": RESULT_FILE if RESULT_FILE in self.outputs else None,
            "outputs": self.outputs,
            "reportUrl": self.report_url,
            "attempts": self.attempts,
            "stats": self.stats,
        }


# Called with (workitem_id, status, attempts) after submission and every poll
PollListener = Callable[[str, str, int], None]


# =============================================================================
# Orchestrator
# =============================================================================

class WorkitemOrchestrator:
    """Submits and polls workitems for one configured activity."""

    def __init__(
        self,
        da: DesignAutomationClient,
        oss: OssClient,
        settings: ApsSettings,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.da = da
        self.oss = oss
        self.settings = settings
        self._sleep = sleep

    def _pause(self, token: CancellationToken) -> None:
        if self._sleep is None:
            token.wait(self.settings.poll_interval)
        else:
            self._sleep(self.settings.poll_interval)

    def submit(
        self,
        slots: Optional[List[ArgumentSlot]] = None,
        activity_id: Optional[str] = None,
        bucket_key: Optional[str] = None,
        sink: ProgressSink = NULL_SINK,
    ) -> str:
        """Create one workitem and return its id."""
        s = self.settings
        bucket_key = bucket_key or s.require("bucket_name").bucket_name
        activity_id = activity_id or s.require("nickname", "activity_name").qualified_activity_id
        slots = slots if slots is not None else default_slots()

        sink.step("workitem")
        sink.emit("workitem", f"Checking optional inputs in bucket '{bucket_key}'...")
        arguments = build_arguments(bucket_key, slots, self.da.auth_header(), self.oss.object_exists)
        skipped = [sl.name for sl in slots if sl.name not in arguments]
        if skipped:
            sink.emit("workitem", f"Optional inputs not found, skipping: {', '.join(skipped)}")

        sink.emit("workitem", f"Submitting workitem for activity {activity_id}...")
        body = self.da.submit_workitem(activity_id, arguments)
        workitem_id = body.get("id")
        if not workitem_id:
            raise ApsError("Workitem response has no id", details=body)
        logger.info("Submitted workitem %s for %s", workitem_id, activity_id)
        sink.emit("workitem", f"Workitem submitted: {workitem_id}")
        return workitem_id

    def run(
        self,
        slots: Optional[List[ArgumentSlot]] = None,
        activity_id: Optional[str] = None,
        bucket_key: Optional[str] = None,
        sink: ProgressSink = NULL_SINK,
        token: Optional[CancellationToken] = None,
        listener: Optional[PollListener] = None,
    ) -> WorkitemResult:
        """
        Submit one workitem and poll it to completion.

        Raises:
            WorkitemFailedError: terminal status other than success
            WorkitemTimeoutError: still pending/inprogress after the poll cap
            WorkitemCancelledError: token cancelled before completion
        """
        token = token or CancellationToken()
        slots = slots if slots is not None else default_slots()
        bucket_key = bucket_key or self.settings.require("bucket_name").bucket_name
        activity_id = activity_id or self.settings.require("nickname", "activity_name").qualified_activity_id
        if token.cancelled:
            raise WorkitemCancelledError(None)

        workitem_id = self.submit(slots, activity_id, bucket_key, sink)
        if listener:
            listener(workitem_id, WorkitemStatus.PENDING.value, 0)
        outputs = [sl.object_key for sl in slots if sl.verb == "put"]
        return self.observe(workitem_id, activity_id, bucket_key, outputs, sink, token, listener)

    def observe(
        self,
        workitem_id: str,
        activity_id: str = "",
        bucket_key: str = "",
        outputs: Optional[List[str]] = None,
        sink: ProgressSink = NULL_SINK,
        token: Optional[CancellationToken] = None,
        listener: Optional[PollListener] = None,
    ) -> WorkitemResult:
        """Poll an already-submitted workitem until it reaches a terminal status."""
        token = token or CancellationToken()
        max_attempts = self.settings.poll_max_attempts
        bucket_key = bucket_key or self.settings.bucket_name
        outputs = outputs if outputs is not None else [RESULT_FILE, RVT_RESULT_FILE]

        sink.emit("workitem", "Workitem is being processed...")
        attempts = 0
        while True:
            if token.cancelled:
                sink.emit("workitem", f"Stopped watching workitem {workitem_id}.")
                raise WorkitemCancelledError(workitem_id)
            info = self.da.get_workitem(workitem_id)
            attempts += 1
            status = info.get("status", "")
            logger.debug("Workitem %s status %s (poll %d)", workitem_id, status, attempts)
            sink.emit("workitem", f"Workitem status: {status}")
            if listener:
                listener(workitem_id, status, attempts)
            if is_terminal(status):
                break
            if attempts >= max_attempts:
                sink.error("workitem", f"Workitem still {status} after {attempts} status checks")
                raise WorkitemTimeoutError(workitem_id, attempts, status)
            self._pause(token)

        report_url = info.get("reportUrl")
        if status == WorkitemStatus.SUCCESS.value:
            logger.info("Workitem %s succeeded after %d polls", workitem_id, attempts)
            sink.emit("workitem", "Workitem completed successfully!")
            return WorkitemResult(
                workitem_id=workitem_id,
                status=status,
                activity_id=activity_id,
                bucket_key=bucket_key,
                outputs=outputs,
                report_url=report_url,
                attempts=attempts,
                stats=info.get("stats") or {},
            )

        report = self.da.fetch_report(report_url) if report_url else None
        logger.warning("Workitem %s finished with %s", workitem_id, status)
        sink.error("workitem", f"Workitem failed with status: {status}")
        raise WorkitemFailedError(
            workitem_id,
            status,
            details={
                "workitemId": workitem_id,
                "status": status,
                "activity_id": activity_id,
                "reportUrl": report_url,
                "report": report,
            },
        )


# =============================================================================
# Background jobs
# =============================================================================

class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkitemJob:
    """
    One submit-and-poll cycle on a background thread.

    A job either submits a new workitem (``slots`` given) or resumes watching
    an existing one (``workitem_id`` given).
    """

    def __init__(
        self,
        orchestrator: WorkitemOrchestrator,
        slots: Optional[List[ArgumentSlot]] = None,
        workitem_id: Optional[str] = None,
        sink: ProgressSink = NULL_SINK,
        job_id: Optional[str] = None,
        listener: Optional[PollListener] = None,
    ):
        self.job_id = job_id or uuid.uuid4().hex
        self._orchestrator = orchestrator
        self._slots = slots
        self._sink = sink
        self._listener = listener
        self._token = CancellationToken()
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._state = JobState.QUEUED
        self._workitem_id = workitem_id
        self._status: Optional[str] = None
        self._attempts = 0
        self._result: Optional[WorkitemResult] = None
        self._error: Optional[ApsError] = None
        self.created_at = datetime.now(timezone.utc)

    def start(self) -> "WorkitemJob":
        with self._lock:
            if self._thread is not None:
                return self
            self._state = JobState.RUNNING
            self._thread = threading.Thread(target=self._run, name=f"workitem-job-{self.job_id[:8]}", daemon=True)
        self._thread.start()
        return self

    def _on_poll(self, workitem_id: str, status: str, attempts: int) -> None:
        with self._lock:
            self._workitem_id = workitem_id
            self._status = status
            self._attempts = attempts
        if self._listener:
            self._listener(workitem_id, status, attempts)

    def _run(self) -> None:
        try:
            if self._workitem_id:
                result = self._orchestrator.observe(
                    self._workitem_id, sink=self._sink, token=self._token, listener=self._on_poll
                )
            else:
                result = self._orchestrator.run(
                    self._slots, sink=self._sink, token=self._token, listener=self._on_poll
                )
        except WorkitemCancelledError as e:
            with self._lock:
                self._state = JobState.CANCELLED
                self._error = e
        except ApsError as e:
            logger.warning("Workitem job %s failed: %s", self.job_id, e)
            with self._lock:
                self._state = JobState.FAILED
                self._error = e
        except Exception as e:
            logger.exception("Workitem job %s crashed", self.job_id)
            with self._lock:
                self._state = JobState.FAILED
                self._error = ApsError(str(e))
        else:
            with self._lock:
                self._state = JobState.SUCCEEDED
                self._result = result
                self._status = result.status
        finally:
            self._done.set()

    def cancel(self) -> None:
        """Stop watching. The remote workitem is not cancelled."""
        self._token.cancel()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def state(self) -> JobState:
        with self._lock:
            return self._state

    def wait(self, timeout: Optional[float] = None) -> WorkitemResult:
        """
        Block until the job finishes.

        Raises:
            TimeoutError: job still running after ``timeout``
            ApsError: the error the job ended with
        """
        if not self._done.wait(timeout):
            raise TimeoutError(f"Job {self.job_id} still running")
        with self._lock:
            if self._error is not None:
                raise self._error
            return self._result

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            snap = {
                "jobId": self.job_id,
                "state": self._state.value,
                "workitemId": self._workitem_id,
                "status": self._status,
                "attempts": self._attempts,
                "createdAt": self.created_at.isoformat().replace("+00:00", "Z"),
                "result": self._result.to_dict() if self._result else None,
                "error": None,
            }
            if self._error is not None:
                snap["error"] = {"message": self._error.message, "details": self._error.details}
            return snap
