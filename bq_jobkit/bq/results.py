from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Tuple

from ..app_model import CachedPage, QueryResultsOptions, ResultPage
from ..errors import QueryTimeoutError
from .rows import merge_schema_with_rows

if TYPE_CHECKING:
    from .jobs import Job

logger = logging.getLogger(__name__)


def _next_query_from_token(options: QueryResultsOptions, page_token: Optional[str]) -> Optional[QueryResultsOptions]:
    if not page_token:
        return None
    return options.with_page_token(page_token)


def fetch_query_results(
    job: "Job",
    options: Optional[QueryResultsOptions] = None,
    cached: Optional[CachedPage] = None,
) -> ResultPage:
    """Fetch one page of query results.

    ``cached`` short-circuits the request with rows that came back inline
    from the submission call. The returned ``next_query`` is None once the
    results are exhausted, the same options while the job is still running,
    or the options moved on to the next page token.
    """
    options = options or QueryResultsOptions()
    if options.location is None and job.location:
        options = replace(options, location=job.location)
    logger.debug(
        "[job][%s] [get_query_results] page_token=%s start_index=%s",
        job.id,
        options.page_token,
        options.start_index,
    )

    if cached is not None:
        response = dict(cached.response)
        response.pop("rows", None)
        return ResultPage(
            rows=list(cached.rows),
            next_query=_next_query_from_token(options, cached.page_token),
            response=response,
        )

    response = job.transport.request(
        "GET",
        f"/projects/{job.project}/queries/{job.id}",
        query_params=options.to_query_params(),
    )

    rows: List[Any] = []
    if response.get("schema") and response.get("rows"):
        rows = merge_schema_with_rows(
            response["schema"],
            response["rows"],
            wrap_integers=options.wrap_integers,
            parse_json=options.parse_json,
        )

    next_query: Optional[QueryResultsOptions] = None
    if response.get("jobComplete") is False:
        next_query = options
        if options.timeout_ms:
            response.pop("rows", None)
            raise QueryTimeoutError(options.timeout_ms, next_query=next_query, response=response)
    elif response.get("pageToken"):
        logger.debug("[job][%s] [get_query_results] has more pages %s", job.id, response["pageToken"])
        next_query = options.with_page_token(response["pageToken"])

    response.pop("rows", None)
    return ResultPage(rows=rows, next_query=next_query, response=response)


def iter_result_pages(
    job: "Job",
    options: Optional[QueryResultsOptions] = None,
    cached: Optional[CachedPage] = None,
    max_api_calls: Optional[int] = None,
) -> Iterator[ResultPage]:
    query: Optional[QueryResultsOptions] = options or QueryResultsOptions()
    api_calls = 0
    while query is not None:
        if cached is None:
            if max_api_calls is not None and api_calls >= max_api_calls:
                logger.info("[job][%s] stopping after %s API calls", job.id, api_calls)
                return
            api_calls += 1
        page = fetch_query_results(job, query, cached=cached)
        cached = None
        yield page
        query = page.next_query


def iter_rows(
    job: "Job",
    options: Optional[QueryResultsOptions] = None,
    cached: Optional[CachedPage] = None,
    max_api_calls: Optional[int] = None,
    max_rows: Optional[int] = None,
) -> Iterator[Any]:
    count = 0
    for page in iter_result_pages(job, options, cached=cached, max_api_calls=max_api_calls):
        for row in page.rows:
            if max_rows is not None and count >= max_rows:
                return
            count += 1
            yield row


def fetch_all_rows(
    job: "Job",
    options: Optional[QueryResultsOptions] = None,
    cached: Optional[CachedPage] = None,
    max_api_calls: Optional[int] = None,
    max_rows: Optional[int] = None,
) -> Tuple[List[Any], Dict[str, Any]]:
    rows: List[Any] = []
    response: Dict[str, Any] = {}
    for page in iter_result_pages(job, options, cached=cached, max_api_calls=max_api_calls):
        response = page.response
        for row in page.rows:
            if max_rows is not None and len(rows) >= max_rows:
                return rows, response
            rows.append(row)
    return rows, response
