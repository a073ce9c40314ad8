from __future__ import annotations

from typing import Any, Dict, List, Optional

from google.api_core import exceptions

# Raised unchanged by the transport; never retried here.
TransportError = exceptions.GoogleAPICallError
NotFoundError = exceptions.NotFound


class JobKitError(Exception):
    pass


class OperationFailedError(JobKitError):
    """The request succeeded but the job itself reported an error result."""

    def __init__(
        self,
        message: str,
        error_result: Optional[Dict[str, Any]] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
        job_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_result = error_result or {}
        self.errors = errors or []
        self.job_id = job_id

    @property
    def reason(self) -> Optional[str]:
        return self.error_result.get("reason")

    @classmethod
    def from_status(cls, status: Dict[str, Any], job_id: Optional[str] = None) -> "OperationFailedError":
        error_result = status.get("errorResult") or {}
        message = error_result.get("message") or "Job failed."
        if job_id:
            message = f"Job {job_id} failed: {message}"
        return cls(message, error_result=error_result, errors=status.get("errors"), job_id=job_id)


class QueryTimeoutError(JobKitError, TimeoutError):
    def __init__(
        self,
        timeout_ms: int,
        next_query: Any = None,
        response: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(f"The query did not complete before {timeout_ms}ms")
        self.timeout_ms = timeout_ms
        self.next_query = next_query
        self.response = response


class PartialFailureError(JobKitError):
    """Some rows of a streaming insert were rejected.

    ``errors`` holds one ``{"row": ..., "errors": [...]}`` entry per failed
    row, in input order.
    """

    def __init__(self, errors: List[Dict[str, Any]], response: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"A failure occurred during this request ({len(errors)} rows failed).")
        self.errors = errors
        self.response = response
