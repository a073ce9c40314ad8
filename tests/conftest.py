import copy

import pytest


class FakeTransport:
    """Replays scripted responses in order and records every request."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def request(self, method, path, query_params=None, data=None):
        self.calls.append(
            {"method": method, "path": path, "query_params": dict(query_params or {}), "data": data}
        )
        if not self.responses:
            raise AssertionError(f"unexpected request {method} {path}")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return copy.deepcopy(response)


@pytest.fixture
def transport():
    return FakeTransport()
