from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Tuple, Union

from ..app_model import CachedPage, PollResult, PollState, QueryResultsOptions, ResultPage
from ..errors import NotFoundError, OperationFailedError
from .client import Transport, build_query_config
from .rows import IntegerTypeCastOptions

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5


class Job:
    """Client-side handle on a BigQuery job.

    The handle is cheap: it only holds the job reference and the last
    fetched metadata. Dropping it never touches server state.
    """

    def __init__(
        self,
        transport: Transport,
        job_id: str,
        project: str,
        location: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.transport = transport
        self.id = job_id
        self.project = project
        self.location = location
        self.metadata: Dict[str, Any] = metadata or {}

    def __repr__(self) -> str:
        return f"Job(project={self.project!r}, id={self.id!r}, location={self.location!r})"

    @property
    def path(self) -> str:
        return f"/projects/{self.project}/jobs/{self.id}"

    @property
    def state(self) -> Optional[str]:
        return (self.metadata.get("status") or {}).get("state")

    @property
    def done(self) -> bool:
        return self.state == "DONE"

    @property
    def error_result(self) -> Optional[Dict[str, Any]]:
        return (self.metadata.get("status") or {}).get("errorResult")

    def _trace(self, message: str, *args: Any) -> None:
        logger.debug("[job][%s] " + message, self.id, *args)

    def _location_params(self) -> Optional[Dict[str, Any]]:
        return {"location": self.location} if self.location else None

    def get_metadata(self) -> Dict[str, Any]:
        metadata = self.transport.request("GET", self.path, query_params=self._location_params())
        self.metadata = metadata
        location = (metadata.get("jobReference") or {}).get("location")
        if location:
            self.location = location
        self._trace("[get_metadata] state=%s", self.state)
        return metadata

    def exists(self) -> bool:
        try:
            self.get_metadata()
        except NotFoundError:
            return False
        return True

    def cancel(self) -> Dict[str, Any]:
        """Ask the server to stop the job.

        Acceptance does not mean the job has stopped; keep polling to see it
        finish.
        """
        self._trace("[cancel]")
        return self.transport.request("POST", f"{self.path}/cancel", query_params=self._location_params())

    def delete(self) -> None:
        self._trace("[delete]")
        self.transport.request("DELETE", f"{self.path}/delete", query_params=self._location_params())

    def _terminal_result(self) -> PollResult:
        status = self.metadata.get("status") or {}
        if status.get("errorResult"):
            return PollResult(
                PollState.FAILED,
                metadata=self.metadata,
                error=OperationFailedError.from_status(status, job_id=self.id),
            )
        return PollResult(PollState.COMPLETE, metadata=self.metadata)

    def poll(self) -> PollResult:
        if self.done:
            return self._terminal_result()
        try:
            metadata = self.get_metadata()
        except Exception as exc:
            return PollResult(PollState.FAILED, error=exc)
        status = metadata.get("status") or {}
        if status.get("errorResult"):
            return self._terminal_result()
        if status.get("state") != "DONE":
            return PollResult(PollState.INCOMPLETE, metadata=metadata)
        return PollResult(PollState.COMPLETE, metadata=metadata)

    async def wait(
        self,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stop: Optional[asyncio.Event] = None,
    ) -> Optional[Dict[str, Any]]:
        """Poll until the job finishes.

        Returns the final metadata, raises the failure, or returns None once
        ``stop`` is set. Cancelling the awaiting task stops polling at once.
        """
        while stop is None or not stop.is_set():
            result = await asyncio.to_thread(self.poll)
            if result.state == PollState.COMPLETE:
                return result.metadata
            if result.state == PollState.FAILED:
                raise result.error
            if stop is None:
                await asyncio.sleep(poll_interval)
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass
        return None

    def get_query_results(
        self,
        options: Optional[QueryResultsOptions] = None,
        cached: Optional[CachedPage] = None,
    ) -> ResultPage:
        from .results import fetch_query_results

        return fetch_query_results(self, options, cached=cached)


def _job_from_response(transport: Transport, response: Dict[str, Any], project: str) -> Job:
    reference = response.get("jobReference") or {}
    return Job(
        transport,
        reference["jobId"],
        project=reference.get("projectId") or project,
        location=reference.get("location"),
        metadata=response if "status" in response else None,
    )


def create_job(
    transport: Transport,
    project: str,
    configuration: Dict[str, Any],
    job_id: Optional[str] = None,
    job_prefix: Optional[str] = None,
    location: Optional[str] = None,
) -> Tuple[Job, Dict[str, Any]]:
    if job_id is None:
        job_id = f"{job_prefix or ''}{uuid.uuid4()}"
    reference: Dict[str, Any] = {"projectId": project, "jobId": job_id}
    if location:
        reference["location"] = location
    response = transport.request(
        "POST",
        f"/projects/{project}/jobs",
        data={"jobReference": reference, "configuration": configuration},
    )
    job = _job_from_response(transport, response, project)
    logger.info("Created job %s in %s", job.id, job.location or "default location")
    status = response.get("status") or {}
    if status.get("errorResult"):
        raise OperationFailedError.from_status(status, job_id=job.id)
    return job, response


def create_query_job(
    transport: Transport,
    project: str,
    sql: str,
    location: Optional[str] = None,
    use_query_cache: bool = True,
    labels: Optional[Dict[str, Any]] = None,
    dry_run: bool = False,
    job_id: Optional[str] = None,
    job_prefix: Optional[str] = None,
) -> Tuple[Job, Dict[str, Any]]:
    configuration = build_query_config(sql, use_query_cache=use_query_cache, labels=labels or {}, dry_run=dry_run)
    return create_job(transport, project, configuration, job_id=job_id, job_prefix=job_prefix, location=location)


def query(
    transport: Transport,
    project: str,
    sql: str,
    location: Optional[str] = None,
    timeout_ms: Optional[int] = None,
    max_results: Optional[int] = None,
    use_query_cache: bool = True,
    labels: Optional[Dict[str, Any]] = None,
    wrap_integers: Union[bool, IntegerTypeCastOptions] = False,
    parse_json: bool = False,
) -> Tuple[Job, Dict[str, Any], Optional[CachedPage]]:
    """Run a query through ``jobs.query``.

    When the server answers with results inline the first page comes back as
    a ``CachedPage`` to hand to the first results fetch.
    """
    body: Dict[str, Any] = {
        "query": sql,
        "useLegacySql": False,
        "useQueryCache": use_query_cache,
        "formatOptions": {"useInt64Timestamp": True},
        "requestId": str(uuid.uuid4()),
    }
    if location:
        body["location"] = location
    if timeout_ms is not None:
        body["timeoutMs"] = timeout_ms
    if max_results is not None:
        body["maxResults"] = max_results
    if labels:
        body["labels"] = dict(labels)
    response = transport.request("POST", f"/projects/{project}/queries", data=body)
    job = _job_from_response(transport, response, project)
    cached = CachedPage.from_response(response, wrap_integers=wrap_integers, parse_json=parse_json)
    logger.info("Submitted query job %s (inline results: %s)", job.id, cached is not None)
    return job, response, cached
