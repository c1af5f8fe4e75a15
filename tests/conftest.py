from __future__ import annotations

import hashlib
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Union

import pytest
import requests
from requests.cookies import RequestsCookieJar

from web_bake.settings import BakeContext, Settings

ORIGIN = "http://src.test"

Route = Union[requests.Response, Exception, Callable[[str], requests.Response]]


def make_response(
    url: str,
    body: Union[str, bytes] = b"",
    status: int = 200,
    content_type: str = "application/octet-stream",
) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = body.encode("utf-8") if isinstance(body, str) else body
    resp.headers["Content-Type"] = content_type
    resp.url = url
    return resp


class FakeSession:
    """Stands in for requests.Session; unknown URLs answer 404."""

    def __init__(self) -> None:
        self.routes: Dict[str, Route] = {}
        self.calls: List[str] = []
        self.headers: Dict[str, str] = {}
        self.cookies = RequestsCookieJar()
        self._lock = Lock()

    def add(
        self,
        url: str,
        body: Union[str, bytes] = b"",
        status: int = 200,
        content_type: str = "application/octet-stream",
    ) -> None:
        self.routes[url] = make_response(url, body, status, content_type)

    def fail(self, url: str, exc: Exception) -> None:
        self.routes[url] = exc

    def get(self, url: str, params=None, **kwargs) -> requests.Response:
        if params:
            url = requests.Request("GET", url, params=params).prepare().url
        with self._lock:
            self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return make_response(url, b"not found", 404, "text/plain")
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(url)
        return make_response(
            url, route.content, route.status_code, route.headers["Content-Type"]
        )

    def count(self, url: str) -> int:
        with self._lock:
            return self.calls.count(url)

    def close(self) -> None:
        pass


def sha(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def out_dir(tmp_path: Path) -> Path:
    return tmp_path / "public"


@pytest.fixture
def ctx(session: FakeSession, out_dir: Path) -> BakeContext:
    settings = Settings(source_origin=ORIGIN, output_dir=str(out_dir), workers=4)
    context = BakeContext(settings, session=session)
    yield context
    context.close()
