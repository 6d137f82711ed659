"""HTTP test doubles.

`FakeSession` mimics the slice of `aiohttp.ClientSession` used by PageFetcher
(`get`/`post` returning async context managers). `FakePageFetcher` replaces
PageFetcher wholesale for the batch job and directory sync tests.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from src.data_collector.krx_valuation.errors import FetchError


class FakeResponse:
    def __init__(self, status: int = 200, body: Union[bytes, str] = b"", charset: Optional[str] = "utf-8"):
        self.status = status
        self._body = body.encode(charset or "utf-8") if isinstance(body, str) else body
        self.charset = charset

    async def read(self) -> bytes:
        return self._body

    async def text(self) -> str:
        return self._body.decode(self.charset or "utf-8")


class _FakeCM:
    def __init__(self, outcome: Any):
        self._outcome = outcome

    async def __aenter__(self):
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Routes by URL to a FakeResponse or an exception to raise on enter."""

    def __init__(self, routes: Optional[Dict[str, Any]] = None, default: Any = None):
        self.routes = routes or {}
        self.default = default if default is not None else FakeResponse(404)
        self.calls: List[Tuple[str, str, Any]] = []
        self.closed = False

    def get(self, url: str, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return _FakeCM(self.routes.get(url, self.default))

    def post(self, url: str, data: Any = None, headers: Any = None, **kwargs):
        self.calls.append(("POST", url, {"data": data, "headers": headers}))
        return _FakeCM(self.routes.get(url, self.default))

    async def close(self):
        self.closed = True


PageOutcome = Union[str, Exception]


class FakePageFetcher:
    """PageFetcher stand-in serving canned pages and KRX payloads.

    `pages` maps URL → text or exception. `krx` is called with the posted form
    and returns the decoded JSON payload (or raises).
    """

    def __init__(
        self,
        pages: Optional[Dict[str, PageOutcome]] = None,
        krx: Optional[Callable[[Dict[str, str]], Any]] = None,
        delay: float = 0.0,
    ):
        self.pages = pages or {}
        self.krx = krx or (lambda form: {"OutBlock_1": []})
        self.delay = delay
        self.requested: List[str] = []
        self.encodings: Dict[str, Optional[str]] = {}
        self.forms: List[Dict[str, str]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def get_text(self, url: str, encoding: Optional[str] = None) -> str:
        self.requested.append(url)
        self.encodings[url] = encoding
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.pages.get(url)
        if outcome is None:
            raise FetchError(url, "http_status", status=404)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def post_json(self, url: str, form: Dict[str, str], headers: Optional[Dict[str, str]] = None) -> Any:
        self.forms.append(dict(form))
        return self.krx(form)
