from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional, Protocol, Sequence, Tuple

import google.auth
import requests
from google.api_core import exceptions
from google.auth.transport.requests import AuthorizedSession

logger = logging.getLogger(__name__)

DEFAULT_API_ENDPOINT = "https://bigquery.googleapis.com/bigquery/v2"
SCOPES = ("https://www.googleapis.com/auth/bigquery",)


@dataclass(frozen=True)
class RequestSpec:
    method: str
    path: str
    query_params: Dict[str, Any] = field(default_factory=dict)
    data: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)


Middleware = Callable[[RequestSpec], RequestSpec]


class Transport(Protocol):
    def request(
        self,
        method: str,
        path: str,
        query_params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ...


class HttpTransport:
    """JSON over HTTP against the BigQuery REST API.

    Middlewares are fixed at construction and applied in order to every
    request before it is sent. Retries are left to the session.
    """

    def __init__(
        self,
        session: requests.Session,
        api_endpoint: str = DEFAULT_API_ENDPOINT,
        middlewares: Sequence[Middleware] = (),
        timeout: Optional[float] = None,
    ) -> None:
        self._session = session
        self._api_endpoint = api_endpoint.rstrip("/")
        self._middlewares = tuple(middlewares)
        self._timeout = timeout

    def prepare(
        self,
        method: str,
        path: str,
        query_params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> RequestSpec:
        spec = RequestSpec(method=method.upper(), path=path, query_params=dict(query_params or {}), data=data)
        for middleware in self._middlewares:
            spec = middleware(spec)
        return spec

    def request(
        self,
        method: str,
        path: str,
        query_params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        spec = self.prepare(method, path, query_params, data)
        url = f"{self._api_endpoint}{spec.path}"
        logger.debug("%s %s params=%s", spec.method, url, spec.query_params)
        try:
            response = self._session.request(
                spec.method,
                url,
                params=spec.query_params or None,
                json=spec.data,
                headers=spec.headers or None,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise exceptions.GoogleAPICallError(f"{spec.method} {url} failed: {exc}") from exc
        if response.status_code >= 400:
            raise exceptions.from_http_response(response)
        if not response.content:
            return {}
        return response.json()


def user_agent_middleware(agent: str) -> Middleware:
    def apply(spec: RequestSpec) -> RequestSpec:
        headers = dict(spec.headers)
        current = headers.get("User-Agent")
        headers["User-Agent"] = f"{current} {agent}" if current else agent
        return replace(spec, headers=headers)

    return apply


def get_transport(
    project: Optional[str] = None,
    api_endpoint: str = DEFAULT_API_ENDPOINT,
    middlewares: Sequence[Middleware] = (),
    timeout: Optional[float] = None,
) -> Tuple[HttpTransport, Optional[str]]:
    credentials, default_project = google.auth.default(scopes=SCOPES)
    session = AuthorizedSession(credentials)
    transport = HttpTransport(session, api_endpoint=api_endpoint, middlewares=middlewares, timeout=timeout)
    return transport, project or default_project


def build_query_config(
    sql: str,
    use_query_cache: bool,
    labels: Dict[str, Any],
    dry_run: bool,
    use_legacy_sql: bool = False,
) -> Dict[str, Any]:
    config: Dict[str, Any] = {
        "query": {
            "query": sql,
            "useLegacySql": use_legacy_sql,
            "useQueryCache": use_query_cache,
        },
        "dryRun": dry_run,
    }
    if labels:
        config["labels"] = dict(labels)
    return config
