import time
from threading import Lock

import pytest
import requests


class FakeResponse:
    def __init__(self, status=200, body=b"", headers=None, chunks=None):
        self.status_code = status
        self.headers = headers or {}
        self._chunks = chunks if chunks is not None else [body]
        self.closed = False

    def iter_content(self, chunk_size=1):
        for chunk in self._chunks:
            if callable(chunk):
                chunk = chunk()
            yield chunk

    def close(self):
        self.closed = True


class FakeSession:
    """Maps URLs to a response, an exception to raise, or a callable producing either."""

    def __init__(self, routes=None, delay=0.0):
        self.routes = dict(routes or {})
        self.delay = delay
        self.calls = []
        self.responses = []
        self._lock = Lock()

    def get(self, url, **kwargs):
        with self._lock:
            self.calls.append((url, kwargs))
        if self.delay:
            time.sleep(self.delay)
        route = self.routes.get(url)
        if route is None:
            raise requests.ConnectionError(f"no route for {url}")
        if callable(route):
            route = route()
        if isinstance(route, Exception):
            raise route
        with self._lock:
            self.responses.append(route)
        return route

    def urls(self):
        return [url for url, _ in self.calls]


def slow_chunk(data, seconds):
    def produce():
        time.sleep(seconds)
        return data

    return produce


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def ok():
    def make(body=b"\x89PNG fake image bytes", **kwargs):
        return FakeResponse(200, body, **kwargs)

    return make
