from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .bq.rows import IntegerTypeCastOptions, merge_schema_with_rows

_OPTION_FIELDS = {
    "location": "location",
    "timeoutMs": "timeout_ms",
    "pageToken": "page_token",
    "startIndex": "start_index",
    "maxResults": "max_results",
    "wrapIntegers": "wrap_integers",
    "parseJSON": "parse_json",
}


class PollState(str, Enum):
    INCOMPLETE = "INCOMPLETE"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PollResult:
    state: PollState
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None

    @property
    def terminal(self) -> bool:
        return self.state != PollState.INCOMPLETE


@dataclass(frozen=True)
class QueryResultsOptions:
    location: Optional[str] = None
    timeout_ms: Optional[int] = None
    page_token: Optional[str] = None
    start_index: Optional[int] = None
    max_results: Optional[int] = None
    wrap_integers: Union[bool, IntegerTypeCastOptions] = False
    parse_json: bool = False

    def to_query_params(self) -> Dict[str, Any]:
        """Render the wire query string. Client-only fields are left out."""
        params: Dict[str, Any] = {"formatOptions.useInt64Timestamp": "true"}
        if self.location:
            params["location"] = self.location
        if self.timeout_ms is not None:
            params["timeoutMs"] = self.timeout_ms
        if self.page_token:
            params["pageToken"] = self.page_token
        if self.start_index is not None:
            params["startIndex"] = str(self.start_index)
        if self.max_results is not None:
            params["maxResults"] = self.max_results
        return params

    def with_page_token(self, page_token: str) -> "QueryResultsOptions":
        return replace(self, page_token=page_token, start_index=None)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for wire, attr in _OPTION_FIELDS.items():
            value = getattr(self, attr)
            if isinstance(value, IntegerTypeCastOptions):
                value = True
            if value is None or value is False:
                continue
            data[wire] = value
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "QueryResultsOptions":
        data = data or {}
        kwargs = {attr: data[wire] for wire, attr in _OPTION_FIELDS.items() if data.get(wire) is not None}
        return cls(**kwargs)


@dataclass
class CachedPage:
    """Results that arrived inline with the submission response."""

    rows: List[Any]
    response: Dict[str, Any]
    page_token: Optional[str] = None

    @classmethod
    def from_response(
        cls,
        response: Dict[str, Any],
        wrap_integers: Union[bool, IntegerTypeCastOptions] = False,
        parse_json: bool = False,
    ) -> Optional["CachedPage"]:
        if not response.get("jobComplete"):
            return None
        response = copy.deepcopy(response)
        rows: List[Any] = []
        if response.get("schema") and response.get("rows"):
            rows = merge_schema_with_rows(
                response["schema"], response["rows"], wrap_integers=wrap_integers, parse_json=parse_json
            )
        response.pop("rows", None)
        return cls(rows=rows, response=response, page_token=response.get("pageToken"))


@dataclass
class ResultPage:
    rows: List[Any]
    next_query: Optional[QueryResultsOptions]
    response: Dict[str, Any] = field(default_factory=dict)

    @property
    def schema(self) -> Optional[Dict[str, Any]]:
        return self.response.get("schema")

    @property
    def job_complete(self) -> bool:
        return self.response.get("jobComplete") is not False

    @property
    def total_rows(self) -> Optional[int]:
        total = self.response.get("totalRows")
        return int(total) if total is not None else None


@dataclass
class FetchResult:
    columns: List[str]
    rows: List[List[Any]]
    next_query: Optional[Dict[str, Any]] = None
    total_rows: Optional[int] = None


@dataclass
class JobResult:
    job_id: str
    location: Optional[str]
    state: Optional[str]
    error_result: Optional[Dict[str, Any]] = None
