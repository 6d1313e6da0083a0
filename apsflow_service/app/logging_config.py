"""
Logging configuration for the apsflow service.

Provides structured JSON logging for workflow audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class WorkflowAuditLogger:
    """
    Audit events for the APS workflow.

    One method per event type so every event carries the same fields
    wherever it is emitted.
    """

    def __init__(self, name: str = "apsflow.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def token_issued(self, purpose: str, expires_in: int) -> None:
        self._log(
            logging.INFO,
            "TOKEN_ISSUED",
            purpose=purpose,
            expires_in=expires_in,
            message=f"Token issued for {purpose}"
        )

    def resource_provisioned(self, kind: str, resource_id: str, version: Optional[int] = None, created: bool = True) -> None:
        """Log a bucket, AppBundle or Activity create/update."""
        self._log(
            logging.INFO,
            "RESOURCE_PROVISIONED",
            kind=kind,
            resource_id=resource_id,
            version=version,
            created=created,
            message=f"{kind} {resource_id} {'created' if created else 'updated'}"
        )

    def object_uploaded(self, bucket_key: str, object_key: str, size: int) -> None:
        self._log(
            logging.INFO,
            "OBJECT_UPLOADED",
            bucket_key=bucket_key,
            object_key=object_key,
            size=size,
            message=f"Uploaded {object_key} to {bucket_key}"
        )

    def workitem_submitted(self, workitem_id: Optional[str], activity_id: str, job_id: Optional[str] = None) -> None:
        self._log(
            logging.INFO,
            "WORKITEM_SUBMITTED",
            workitem_id=workitem_id,
            activity_id=activity_id,
            job_id=job_id,
            message=f"Workitem submitted for {activity_id}"
        )

    def workitem_finished(self, workitem_id: Optional[str], status: str) -> None:
        """Log the terminal status of a workitem."""
        level = logging.INFO if status == "success" else logging.ERROR
        self._log(
            level,
            "WORKITEM_FINISHED",
            workitem_id=workitem_id,
            status=status,
            message=f"Workitem {workitem_id} finished with {status}"
        )

    def operation_failed(self, operation: str, error: str, status_code: int) -> None:
        self._log(
            logging.WARNING if status_code < 500 else logging.ERROR,
            "OPERATION_FAILED",
            operation=operation,
            error=error,
            status_code=status_code,
            message=f"{operation} failed: {error}"
        )

    def rate_limit_exceeded(self, endpoint: str) -> None:
        """Log rate limit exceeded."""
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            endpoint=endpoint,
            message=f"Rate limit exceeded on {endpoint}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


# Global audit logger instance
audit_log = WorkflowAuditLogger()
