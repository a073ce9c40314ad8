import json

import pytest
import requests
from google.api_core import exceptions

from bq_jobkit.app_model import CachedPage, QueryResultsOptions
from bq_jobkit.bq.client import HttpTransport
from bq_jobkit.bq.jobs import Job
from bq_jobkit.bq.results import fetch_all_rows, fetch_query_results, iter_result_pages, iter_rows
from bq_jobkit.errors import QueryTimeoutError

SCHEMA = {"fields": [{"name": "n", "type": "INTEGER"}]}


def results_response(values, page_token=None, job_complete=True, total_rows=None):
    response = {
        "kind": "bigquery#getQueryResultsResponse",
        "jobReference": {"projectId": "p", "jobId": "j1", "location": "US"},
        "jobComplete": job_complete,
    }
    if job_complete:
        response["schema"] = SCHEMA
        response["totalRows"] = str(total_rows if total_rows is not None else len(values))
    if values:
        response["rows"] = [{"f": [{"v": str(value)}]} for value in values]
    if page_token:
        response["pageToken"] = page_token
    return response


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.sent = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.sent.append({"method": method, "url": url, "params": params})
        return self.response


def make_job(transport):
    return Job(transport, "j1", project="p", location="US")


def test_manual_pagination_round_trip(transport):
    transport.responses = [
        results_response([0, 1, 2], page_token="t1", total_rows=7),
        results_response([3, 4, 5], page_token="t2", total_rows=7),
        results_response([6], total_rows=7),
    ]
    job = make_job(transport)
    seen = []
    query = QueryResultsOptions(max_results=3)
    pages = 0
    while query is not None:
        page = job.get_query_results(query)
        seen.extend(row["n"] for row in page.rows)
        query = page.next_query
        pages += 1

    assert seen == list(range(7))
    assert pages == 3
    assert [call["query_params"].get("pageToken") for call in transport.calls] == [None, "t1", "t2"]
    assert all(call["path"] == "/projects/p/queries/j1" for call in transport.calls)


def test_next_query_uses_page_token_and_drops_start_index(transport):
    transport.responses = [results_response([5, 6], page_token="t9")]
    page = fetch_query_results(make_job(transport), QueryResultsOptions(start_index=5, max_results=2))
    assert page.next_query.page_token == "t9"
    assert page.next_query.start_index is None
    assert page.next_query.max_results == 2
    assert transport.calls[0]["query_params"]["startIndex"] == "5"


def test_last_page_has_no_next_query(transport):
    transport.responses = [results_response([1])]
    page = fetch_query_results(make_job(transport))
    assert page.next_query is None
    assert page.total_rows == 1
    assert page.job_complete is True


def test_wire_params_leave_out_client_only_options(transport):
    transport.responses = [results_response([1])]
    options = QueryResultsOptions(timeout_ms=500, wrap_integers=True, parse_json=True, max_results=10)
    fetch_query_results(make_job(transport), options)
    assert transport.calls[0]["query_params"] == {
        "formatOptions.useInt64Timestamp": "true",
        "location": "US",
        "timeoutMs": 500,
        "maxResults": 10,
    }


def test_incomplete_job_repeats_same_query(transport):
    transport.responses = [results_response([], job_complete=False)]
    options = QueryResultsOptions(max_results=3)
    page = fetch_query_results(make_job(transport), options)
    assert page.rows == []
    assert page.job_complete is False
    assert page.next_query.max_results == 3
    assert page.next_query.page_token is None


def test_timeout_override_raises_with_value(transport):
    transport.responses = [results_response([], job_complete=False)]
    options = QueryResultsOptions(timeout_ms=1000)
    with pytest.raises(QueryTimeoutError) as info:
        fetch_query_results(make_job(transport), options)
    assert "1000ms" in str(info.value)
    assert info.value.timeout_ms == 1000
    assert info.value.next_query is not None
    assert info.value.next_query.timeout_ms == 1000
    assert info.value.response["jobComplete"] is False
    assert info.value.response["jobReference"]["jobId"] == "j1"


def test_timeout_wins_over_page_token(transport):
    transport.responses = [results_response([], page_token="t1", job_complete=False)]
    with pytest.raises(QueryTimeoutError) as info:
        fetch_query_results(make_job(transport), QueryResultsOptions(timeout_ms=250))
    assert info.value.next_query.page_token is None


def test_transport_error_propagates_unchanged(transport):
    error = exceptions.BadRequest("bad page token")
    transport.responses = [error]
    with pytest.raises(exceptions.BadRequest) as info:
        fetch_query_results(make_job(transport))
    assert info.value is error


def test_empty_result_without_schema_yields_no_rows(transport):
    transport.responses = [{"jobComplete": True, "totalRows": "0"}]
    page = fetch_query_results(make_job(transport))
    assert page.rows == []
    assert page.next_query is None


def test_rows_are_stripped_from_response(transport):
    transport.responses = [results_response([1, 2])]
    page = fetch_query_results(make_job(transport))
    assert "rows" not in page.response
    assert page.schema == SCHEMA


def test_cached_page_is_returned_without_request(transport):
    cached = CachedPage.from_response(results_response([1, 2], page_token="t1", total_rows=3))
    job = make_job(transport)
    page = fetch_query_results(job, QueryResultsOptions(max_results=2), cached=cached)
    assert [row["n"] for row in page.rows] == [1, 2]
    assert page.next_query.page_token == "t1"
    assert "rows" not in page.response
    assert transport.calls == []

    transport.responses = [results_response([3])]
    page = fetch_query_results(job, page.next_query)
    assert [row["n"] for row in page.rows] == [3]
    assert len(transport.calls) == 1


def test_cached_page_used_only_for_first_page(transport):
    cached = CachedPage.from_response(results_response([1, 2], page_token="t1", total_rows=3))
    transport.responses = [results_response([3])]
    rows = [row["n"] for row in iter_rows(make_job(transport), cached=cached)]
    assert rows == [1, 2, 3]
    assert len(transport.calls) == 1
    assert transport.calls[0]["query_params"]["pageToken"] == "t1"


def test_incomplete_response_is_not_cached():
    assert CachedPage.from_response(results_response([], job_complete=False)) is None


def test_auto_pagination_waits_through_incomplete_pages(transport):
    transport.responses = [
        results_response([], job_complete=False),
        results_response([1, 2], page_token="t1", total_rows=3),
        results_response([3]),
    ]
    rows, response = fetch_all_rows(make_job(transport))
    assert [row["n"] for row in rows] == [1, 2, 3]
    assert response["totalRows"] == "1"
    assert len(transport.calls) == 3


def test_max_api_calls_caps_requests(transport):
    transport.responses = [
        results_response([1], page_token="t1"),
        results_response([2], page_token="t2"),
        results_response([3]),
    ]
    pages = list(iter_result_pages(make_job(transport), max_api_calls=2))
    assert len(pages) == 2
    assert len(transport.calls) == 2


def test_max_rows_caps_rows(transport):
    transport.responses = [
        results_response([1, 2], page_token="t1"),
        results_response([3, 4]),
    ]
    rows, _ = fetch_all_rows(make_job(transport), max_rows=3)
    assert [row["n"] for row in rows] == [1, 2, 3]


def test_zero_timeout_is_not_an_override(transport):
    transport.responses = [results_response([], job_complete=False)]
    options = QueryResultsOptions(timeout_ms=0, max_results=3)
    page = fetch_query_results(make_job(transport), options)
    assert page.job_complete is False
    assert page.next_query.timeout_ms == 0
    assert page.next_query.max_results == 3


def test_http_error_keeps_response_for_diagnostics():
    body = {"error": {"code": 400, "message": "Invalid page token", "errors": [{"reason": "invalid"}]}}
    response = requests.Response()
    response.status_code = 400
    response._content = json.dumps(body).encode("utf-8")
    response.headers["Content-Type"] = "application/json"
    response.request = requests.Request("GET", "https://bq.test/v2/projects/p/queries/j1").prepare()
    session = FakeSession(response)
    job = make_job(HttpTransport(session, api_endpoint="https://bq.test/v2"))

    with pytest.raises(exceptions.BadRequest) as info:
        fetch_query_results(job, QueryResultsOptions(page_token="stale"))
    assert "Invalid page token" in str(info.value)
    assert info.value.response is response
    assert info.value.response.json()["error"]["errors"] == [{"reason": "invalid"}]
    assert session.sent[0]["params"]["pageToken"] == "stale"
