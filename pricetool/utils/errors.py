"""
Ingestion error taxonomy.

Errors fall in three groups:

Row-level (the offending row is skipped, the load continues):
- ValidationError: a row is missing mandatory content or is semantically invalid
- ResolutionError: a code/payer/plan could not be resolved to an identifier

Load-level (the load transaction is rolled back and the load fails):
- DecodeError: the file cannot be decoded or lacks mandatory structure
- WriteError: a bulk write failed after bounded retries
- TransactionError: the load transaction could not be started or committed
- LoadAbortedError: too many rows failed reference resolution
- LoadCancelledError: the load was cancelled or exceeded its deadline

Start-up:
- ConfigurationError: the database settings cannot run loads
"""
from typing import Any, Dict, Optional


class IngestionError(Exception):
    """Base ingestion error."""

    fatal = True

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or "INGESTION_ERROR"
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class DecodeError(IngestionError):
    """Source file cannot be decoded."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="DECODE_ERROR", details=details)


class ValidationError(IngestionError):
    """A single row failed validation."""

    fatal = False

    def __init__(
        self,
        message: str,
        row_number: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.row_number = row_number
        details = dict(details or {})
        if row_number is not None:
            details.setdefault("row_number", row_number)
        super().__init__(message=message, code="VALIDATION_ERROR", details=details)


class ResolutionError(IngestionError):
    """A reference entity could not be resolved to an identifier."""

    fatal = False

    def __init__(self, kind: str, key: Any, message: Optional[str] = None):
        self.kind = kind
        self.key = key
        super().__init__(
            message=message or f"Failed to resolve {kind} {key!r}",
            code="RESOLUTION_ERROR",
            details={"kind": kind, "key": repr(key)},
        )


class WriteError(IngestionError):
    """A bulk write failed after retries."""

    def __init__(self, message: str, table: Optional[str] = None, attempts: int = 0):
        self.table = table
        self.attempts = attempts
        super().__init__(
            message=message,
            code="WRITE_ERROR",
            details={"table": table, "attempts": attempts},
        )


class TransactionError(IngestionError):
    """The load transaction could not be started or committed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="TRANSACTION_ERROR", details=details)


class LoadAbortedError(IngestionError):
    """Load aborted because reference resolution failed for too many rows."""

    def __init__(self, failed_rows: int, rows_seen: int, threshold: float):
        rate = failed_rows / rows_seen if rows_seen else 0.0
        super().__init__(
            message=(
                f"Reference resolution failed for {failed_rows} of {rows_seen} rows "
                f"({rate:.1%}), above threshold {threshold:.1%}"
            ),
            code="RESOLUTION_FAILURE_RATE",
            details={
                "failed_rows": failed_rows,
                "rows_seen": rows_seen,
                "threshold": threshold,
            },
        )


class LoadCancelledError(IngestionError):
    """Load cancelled by the caller or by its deadline."""

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(
            message=f"Load {reason}",
            code="LOAD_CANCELLED",
            details={"reason": reason},
        )


class ConfigurationError(IngestionError):
    """The store configuration cannot run loads."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="CONFIGURATION_ERROR", details=details)
