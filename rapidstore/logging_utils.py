import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from pythonjsonlogger import jsonlogger

from rapidstore.errors import InvalidResource, NotFound, StorageError, ValidationError
from rapidstore.metrics import record_store_operation


# Context variable to store operation_id for the current store call
operation_id_ctx: ContextVar[Optional[str]] = ContextVar("operation_id", default=None)


def get_operation_id() -> Optional[str]:
    """Get the current operation ID from context."""
    return operation_id_ctx.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps and operation_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        # Ensure timestamp is in ISO-8601 format with Z suffix
        if not log_record.get('ts'):
            now = datetime.now(timezone.utc)
            log_record['ts'] = now.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        # Add operation_id from context if available and not already present
        if 'operation_id' not in log_record:
            op_id = operation_id_ctx.get()
            if op_id:
                log_record['operation_id'] = op_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    # Configure root logger
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Remove existing handlers
    logger.handlers = []

    # Create JSON handler for stdout
    json_handler = logging.StreamHandler(sys.stdout)

    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    # SQL echo goes through the same handler when enabled
    sqlalchemy_logger = logging.getLogger("sqlalchemy.engine")
    sqlalchemy_logger.handlers = []
    sqlalchemy_logger.propagate = True

    return logger


_RESULT_LABELS = (
    (InvalidResource, "invalid_resource"),
    (ValidationError, "validation_error"),
    (NotFound, "not_found"),
    (StorageError, "storage_error"),
)


def _result_label(exc: BaseException) -> str:
    for exc_type, label in _RESULT_LABELS:
        if isinstance(exc, exc_type):
            return label
    return "error"


class OperationLog:
    """
    Mutable log record for one store operation.

    The provider fills in kind, result and extra fields while the
    operation runs; operation_context logs and records them at the end.
    """

    def __init__(self, operation: str, path: str):
        self.operation = operation
        self.path = path
        self.kind = "unknown"
        self.result = "ok"
        self.extra: Dict[str, Any] = {}


@contextmanager
def operation_context(operation: str, path: str) -> Iterator[OperationLog]:
    """
    Log one store operation in structured JSON format.

    Log keys:
    - operation_id: unique per operation
    - operation: insert, update, delete, query, query_form_data
    - path: resource path as given by the caller
    - kind: matched resource kind ("unknown" if the path did not match)
    - result: ok, existing, or the error label
    - latency_ms: processing time in milliseconds
    plus any operation-specific fields (rowcount, uri, ...).
    """
    operation_id = str(uuid.uuid4())
    token = operation_id_ctx.set(operation_id)
    start_time = time.time()
    record = OperationLog(operation, path)
    logger = logging.getLogger("rapidstore.operations")

    try:
        yield record
    except Exception as e:
        record.result = _result_label(e)
        record.extra["error"] = str(e)
        raise
    finally:
        latency_seconds = time.time() - start_time
        record_store_operation(
            operation=record.operation,
            kind=record.kind,
            result=record.result,
            latency_seconds=latency_seconds,
        )

        log_data = {
            "operation_id": operation_id,
            "operation": record.operation,
            "path": record.path,
            "kind": record.kind,
            "result": record.result,
            "latency_ms": round(latency_seconds * 1000, 2),
        }
        log_data.update(record.extra)

        if record.result in ("storage_error", "error"):
            logger.error("Operation completed", extra=log_data)
        elif record.result in ("invalid_resource", "validation_error", "not_found"):
            logger.warning("Operation completed", extra=log_data)
        else:
            logger.info("Operation completed", extra=log_data)

        operation_id_ctx.reset(token)
