from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from .app_model import FetchResult, JobResult, PollState, QueryResultsOptions, ResultPage
from .bq.client import Transport, get_transport
from .bq.jobs import Job, create_query_job, query
from .bq.results import fetch_all_rows, fetch_query_results
from .bq.tables import insert_rows
from .config import ConfigLoader, get_history_path, resolve_location, resolve_project
from .errors import OperationFailedError, PartialFailureError, QueryTimeoutError
from .history import append_history, read_history

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _resolve_project_location(config: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
    project = payload.get("project") or resolve_project(config)
    location = payload.get("location") or resolve_location(config)
    return {"project": project, "location": location}


def _columns(rows: List[Any], schema: Optional[Dict[str, Any]]) -> List[str]:
    if schema and schema.get("fields"):
        return [field["name"] for field in schema["fields"]]
    if rows:
        return list(rows[0].keys())
    return []


def _fetch_result(rows: List[Any], response: Dict[str, Any], next_query: Optional[QueryResultsOptions]) -> FetchResult:
    columns = _columns(rows, response.get("schema"))
    total = response.get("totalRows")
    return FetchResult(
        columns=columns,
        rows=[[row.get(col) for col in columns] for row in rows],
        next_query=next_query.to_dict() if next_query is not None else None,
        total_rows=int(total) if total is not None else None,
    )


def _job_result(job: Job) -> JobResult:
    return JobResult(job_id=job.id, location=job.location, state=job.state, error_result=job.error_result)


def _results_options(config: Dict[str, Any], payload: Dict[str, Any]) -> QueryResultsOptions:
    data = dict(payload.get("options") or {})
    data.setdefault("maxResults", config["app"]["page_size"])
    data.setdefault("wrapIntegers", config["app"]["wrap_integers"])
    data.setdefault("parseJSON", config["app"]["parse_json"])
    return QueryResultsOptions.from_dict(data)


class _Session:
    def __init__(self, config: Dict[str, Any], payload: Dict[str, Any], transport: Optional[Transport]) -> None:
        resolved = _resolve_project_location(config, payload)
        self.config = config
        self.location = resolved["location"]
        if transport is None:
            transport, project = get_transport(resolved["project"], api_endpoint=config["app"]["api_endpoint"])
            resolved["project"] = project
        self.transport = transport
        self.project = resolved["project"]

    def job(self, job_id: str) -> Job:
        return Job(self.transport, job_id, project=self.project, location=self.location)

    def history(self, status: str, **fields: Any) -> None:
        append_history({"status": status, "project": self.project, "location": self.location, **fields})


def _error(message: str, exc: Optional[BaseException] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"message": message}
    if exc is not None:
        error["detail"] = str(exc)
    if isinstance(exc, OperationFailedError):
        error["error_result"] = exc.error_result
    if isinstance(exc, PartialFailureError):
        error["errors"] = exc.errors
    if isinstance(exc, QueryTimeoutError):
        error["next_query"] = exc.next_query.to_dict() if exc.next_query is not None else None
    return {"ok": False, "error": error}


def _handle_query(session: _Session, payload: Dict[str, Any]) -> Dict[str, Any]:
    sql = payload.get("sql")
    if not sql:
        return _error("SQL is required.")
    app = session.config["app"]
    try:
        job, response, cached = query(
            session.transport,
            session.project,
            sql,
            location=session.location,
            timeout_ms=app["timeout_ms"],
            max_results=app["page_size"],
            use_query_cache=app["bq"]["use_query_cache"],
            labels=app["bq"]["labels"],
            wrap_integers=app["wrap_integers"],
            parse_json=app["parse_json"],
        )
    except Exception as exc:
        session.history("QUERY_FAILED", sql=sql, error=str(exc))
        return _error("Query failed.", exc)
    session.history("SUBMITTED", sql=sql, job_id=job.id)
    result: Dict[str, Any] = {"ok": True, "job": asdict(_job_result(job))}
    if cached is not None:
        page = fetch_query_results(job, _results_options(session.config, {}), cached=cached)
        result["page"] = asdict(_fetch_result(page.rows, page.response, page.next_query))
    else:
        result["job"]["job_complete"] = response.get("jobComplete", False)
    return result


def _handle_create_job(session: _Session, payload: Dict[str, Any]) -> Dict[str, Any]:
    sql = payload.get("sql")
    if not sql:
        return _error("SQL is required.")
    app = session.config["app"]
    try:
        job, _ = create_query_job(
            session.transport,
            session.project,
            sql,
            location=session.location,
            use_query_cache=app["bq"]["use_query_cache"],
            labels=app["bq"]["labels"],
            dry_run=bool(payload.get("dry_run")),
            job_prefix=payload.get("job_prefix"),
        )
    except Exception as exc:
        session.history("CREATE_FAILED", sql=sql, error=str(exc))
        return _error("Create job failed.", exc)
    session.history("SUBMITTED", sql=sql, job_id=job.id)
    return {"ok": True, "job": asdict(_job_result(job))}


def _handle_job_op(session: _Session, op: str, job_id: str) -> Dict[str, Any]:
    job = session.job(job_id)
    if op == "get_job":
        try:
            metadata = job.get_metadata()
        except Exception as exc:
            return _error("Get job failed.", exc)
        return {"ok": True, "job": asdict(_job_result(job)), "metadata": metadata}

    if op == "poll":
        result = job.poll()
        response = {"ok": result.state != PollState.FAILED, "state": result.state.value}
        if result.state == PollState.FAILED:
            response.update(_error("Job failed.", result.error))
        return response

    if op == "wait":
        interval = session.config["app"]["poll_interval_ms"] / 1000.0
        try:
            metadata = asyncio.run(job.wait(poll_interval=interval))
        except Exception as exc:
            session.history("FAILED", job_id=job_id, error=str(exc))
            return _error("Job failed.", exc)
        session.history("DONE", job_id=job_id)
        return {"ok": True, "job": asdict(_job_result(job)), "metadata": metadata}

    if op == "cancel":
        try:
            response = job.cancel()
        except Exception as exc:
            return _error("Cancel failed.", exc)
        session.history("CANCEL_REQUESTED", job_id=job_id)
        return {"ok": True, "cancel": response}

    if op == "delete":
        try:
            job.delete()
        except Exception as exc:
            return _error("Delete failed.", exc)
        session.history("DELETED", job_id=job_id)
        return {"ok": True}

    try:
        return {"ok": True, "exists": job.exists()}
    except Exception as exc:
        return _error("Exists check failed.", exc)


def _handle_fetch(session: _Session, op: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    job = session.job(payload["job_id"])
    options = _results_options(session.config, payload)
    if op == "fetch_page":
        try:
            page: ResultPage = fetch_query_results(job, options)
        except Exception as exc:
            return _error("Page fetch failed.", exc)
        return {"ok": True, "page": asdict(_fetch_result(page.rows, page.response, page.next_query))}

    max_api_calls = payload.get("max_api_calls", session.config["app"]["max_api_calls"])
    try:
        rows, response = fetch_all_rows(job, options, max_api_calls=max_api_calls, max_rows=payload.get("max_rows"))
    except Exception as exc:
        return _error("Fetch failed.", exc)
    return {"ok": True, "page": asdict(_fetch_result(rows, response, None))}


def _handle_insert(session: _Session, payload: Dict[str, Any]) -> Dict[str, Any]:
    dataset_id = payload.get("dataset_id")
    table_id = payload.get("table_id")
    rows = payload.get("rows") or []
    if not dataset_id or not table_id or not rows:
        return _error("dataset_id, table_id, rows required.")
    try:
        insert_rows(
            session.transport,
            session.project,
            dataset_id,
            table_id,
            rows,
            skip_invalid_rows=bool(payload.get("skip_invalid_rows")),
            ignore_unknown_values=bool(payload.get("ignore_unknown_values")),
        )
    except Exception as exc:
        session.history("INSERT_FAILED", table=f"{dataset_id}.{table_id}", error=str(exc))
        return _error("Insert failed.", exc)
    session.history("INSERTED", table=f"{dataset_id}.{table_id}", rows=len(rows))
    return {"ok": True, "inserted": len(rows)}


JOB_OPS = {"get_job", "poll", "wait", "cancel", "delete", "exists"}


def handle_request(
    payload: Dict[str, Any],
    config: Optional[Dict[str, Any]] = None,
    transport: Optional[Transport] = None,
) -> Dict[str, Any]:
    loader = ConfigLoader()
    config = config or loader.load()
    op = payload.get("op")

    if op == "history":
        entries = read_history(limit=int(payload.get("limit") or 50), job_id=payload.get("job_id"))
        return {"ok": True, "history": entries}

    if op == "get_effective_config":
        return {
            "ok": True,
            "config": config,
            "paths": {
                "config": loader.config_path,
                "history": get_history_path(),
            },
        }

    if op not in JOB_OPS | {"query", "create_job", "fetch_page", "fetch_all", "insert_rows"}:
        return _error(f"Unknown op {op}.")
    if (op in JOB_OPS or op.startswith("fetch_")) and not payload.get("job_id"):
        return _error("job_id is required.")

    session = _Session(config, payload, transport)
    if op == "query":
        return _handle_query(session, payload)
    if op == "create_job":
        return _handle_create_job(session, payload)
    if op in JOB_OPS:
        return _handle_job_op(session, op, payload["job_id"])
    if op == "insert_rows":
        return _handle_insert(session, payload)
    return _handle_fetch(session, op, payload)


def main() -> None:
    config = ConfigLoader().load()
    configure_logging(config["app"]["log_level"])
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
            response = handle_request(payload, config=config)
        except Exception as exc:
            logger.exception("Unhandled error")
            response = {"ok": False, "error": {"message": "Unhandled error", "detail": str(exc)}}
        sys.stdout.write(json.dumps(response, ensure_ascii=False, default=str) + "\n")
        sys.stdout.flush()


if __name__ == "__main__":
    main()
