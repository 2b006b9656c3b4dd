import os
import sys
import threading
from types import SimpleNamespace

import pytest
import requests

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import project_viewer as pv  # noqa: E402


API = "http://api.test/api"


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


class FakeHttp:
    """Stand-in for requests.Session that answers from a route table.

    Routes are keyed by (method, path relative to the API base). A route can
    return a response or raise an exception. `gate` lets a test hold every
    request until it decides to release them.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.gate = None
        self._lock = threading.Lock()
        self.closed = False

    def route(self, method, path, status=200, text="", exc=None):
        self.routes[(method, path)] = (status, text, exc)

    def request(self, method, url, data=None, headers=None):
        path = url[len(API) + 1:] if url.startswith(API + "/") else url
        with self._lock:
            self.calls.append(SimpleNamespace(method=method, path=path, url=url, data=data, headers=dict(headers or {})))
        if self.gate is not None:
            self.gate.wait(timeout=5)
        status, text, exc = self.routes.get((method, path), (404, "no such route", None))
        if exc is not None:
            raise exc
        return FakeResponse(status, text)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture
def state_path(tmp_path):
    """Isolated session state file per test."""
    return tmp_path / "state.json"


@pytest.fixture
def ctx(state_path):
    return pv.AppContext(session=pv.SessionStore(str(state_path)))


@pytest.fixture
def dispatcher(ctx, fake_http):
    d = pv.RequestDispatcher(ctx, API, http=fake_http)
    try:
        yield d
    finally:
        d.close()


@pytest.fixture
def api(ctx, dispatcher):
    return pv.ApiClient(ctx, dispatcher)


@pytest.fixture
def signed_in(ctx):
    user = pv.UserIdentity(email="ada@example.com", id=7, session=pv.Session("sess-7"))
    ctx.session.replace(user)
    return user


@pytest.fixture
def connection_error():
    return requests.ConnectionError("connection refused")
