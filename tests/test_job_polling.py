import pytest
from google.api_core import exceptions

from bq_jobkit.app_model import PollState
from bq_jobkit.bq.jobs import Job, create_query_job, query
from bq_jobkit.errors import NotFoundError, OperationFailedError


def job_resource(state, error_result=None, location="US"):
    status = {"state": state}
    if error_result:
        status["errorResult"] = error_result
        status["errors"] = [error_result]
    return {
        "jobReference": {"projectId": "p", "jobId": "j1", "location": location},
        "status": status,
    }


def test_poll_incomplete_while_running(transport):
    transport.responses = [job_resource("RUNNING")]
    job = Job(transport, "j1", project="p")
    result = job.poll()
    assert result.state == PollState.INCOMPLETE
    assert not result.terminal
    assert job.done is False


def test_poll_complete_when_done(transport):
    transport.responses = [job_resource("DONE")]
    job = Job(transport, "j1", project="p", location="US")
    result = job.poll()
    assert result.state == PollState.COMPLETE
    assert result.metadata["status"]["state"] == "DONE"
    assert transport.calls[0]["path"] == "/projects/p/jobs/j1"
    assert transport.calls[0]["query_params"] == {"location": "US"}


def test_poll_error_result_is_failure_even_though_fetch_succeeded(transport):
    error_result = {"reason": "invalidQuery", "message": "Syntax error"}
    transport.responses = [job_resource("DONE", error_result=error_result)]
    job = Job(transport, "j1", project="p")
    result = job.poll()
    assert result.state == PollState.FAILED
    assert isinstance(result.error, OperationFailedError)
    assert result.error.reason == "invalidQuery"
    assert result.error.errors == [error_result]
    assert "Syntax error" in str(result.error)


def test_poll_fetch_error_is_failure(transport):
    transport.responses = [exceptions.NotFound("Not found: Job p:j1")]
    job = Job(transport, "j1", project="p")
    result = job.poll()
    assert result.state == PollState.FAILED
    assert isinstance(result.error, NotFoundError)


def test_get_metadata_raises_not_found(transport):
    transport.responses = [exceptions.NotFound("Not found: Job p:j1")]
    job = Job(transport, "j1", project="p")
    with pytest.raises(NotFoundError):
        job.get_metadata()


def test_done_job_is_not_polled_again(transport):
    transport.responses = [job_resource("DONE")]
    job = Job(transport, "j1", project="p")
    first = job.poll()
    second = job.poll()
    assert first.state == second.state == PollState.COMPLETE
    assert job.done is True
    assert len(transport.calls) == 1


def test_get_metadata_replaces_metadata_wholesale(transport):
    first = job_resource("RUNNING")
    first["statistics"] = {"creationTime": "1"}
    transport.responses = [first, job_resource("DONE", location="EU")]
    job = Job(transport, "j1", project="p")
    job.get_metadata()
    job.get_metadata()
    assert "statistics" not in job.metadata
    assert job.location == "EU"


def test_exists(transport):
    transport.responses = [job_resource("DONE"), exceptions.NotFound("gone")]
    job = Job(transport, "j1", project="p")
    assert job.exists() is True
    assert job.exists() is False


def test_exists_propagates_other_errors(transport):
    transport.responses = [exceptions.Forbidden("denied")]
    job = Job(transport, "j1", project="p")
    with pytest.raises(exceptions.Forbidden):
        job.exists()


def test_cancel_does_not_change_local_state(transport):
    transport.responses = [{"kind": "bigquery#jobCancelResponse", "job": job_resource("RUNNING")}]
    job = Job(transport, "j1", project="p", location="EU")
    response = job.cancel()
    assert response["kind"] == "bigquery#jobCancelResponse"
    assert transport.calls[0]["method"] == "POST"
    assert transport.calls[0]["path"] == "/projects/p/jobs/j1/cancel"
    assert transport.calls[0]["query_params"] == {"location": "EU"}
    assert job.done is False


def test_delete(transport):
    transport.responses = [{}]
    job = Job(transport, "j1", project="p")
    job.delete()
    assert transport.calls[0]["method"] == "DELETE"
    assert transport.calls[0]["path"] == "/projects/p/jobs/j1/delete"


def test_create_query_job_sends_reference_and_config(transport):
    transport.responses = [job_resource("PENDING", location="EU")]
    job, response = create_query_job(
        transport, "p", "SELECT 1", location="EU", labels={"app": "x"}, job_id="j1"
    )
    body = transport.calls[0]["data"]
    assert body["jobReference"] == {"projectId": "p", "jobId": "j1", "location": "EU"}
    assert body["configuration"]["query"]["query"] == "SELECT 1"
    assert body["configuration"]["labels"] == {"app": "x"}
    assert job.id == "j1"
    assert job.location == "EU"
    assert job.state == "PENDING"


def test_create_job_generates_prefixed_id(transport):
    transport.responses = [job_resource("PENDING")]
    create_query_job(transport, "p", "SELECT 1", job_prefix="nightly_")
    assert transport.calls[0]["data"]["jobReference"]["jobId"].startswith("nightly_")


def test_create_job_raises_when_rejected(transport):
    transport.responses = [job_resource("DONE", error_result={"reason": "invalid", "message": "bad"})]
    with pytest.raises(OperationFailedError):
        create_query_job(transport, "p", "SELECT", job_id="j1")


def test_query_returns_inline_first_page(transport):
    transport.responses = [
        {
            "jobReference": {"projectId": "p", "jobId": "j1", "location": "US"},
            "jobComplete": True,
            "schema": {"fields": [{"name": "n", "type": "INTEGER"}]},
            "rows": [{"f": [{"v": "1"}]}, {"f": [{"v": "2"}]}],
            "pageToken": "t1",
            "totalRows": "5",
        }
    ]
    job, response, cached = query(transport, "p", "SELECT n", location="US", max_results=2)
    assert job.id == "j1"
    assert [row["n"] for row in cached.rows] == [1, 2]
    assert cached.page_token == "t1"
    assert "rows" not in cached.response
    assert "rows" in response
    assert transport.calls[0]["data"]["maxResults"] == 2


def test_query_without_inline_results(transport):
    transport.responses = [
        {"jobReference": {"projectId": "p", "jobId": "j1"}, "jobComplete": False}
    ]
    job, response, cached = query(transport, "p", "SELECT n", timeout_ms=10)
    assert cached is None
    assert transport.calls[0]["data"]["timeoutMs"] == 10
