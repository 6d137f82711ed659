from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from src.data_collector.config import KrxValuationConfig, krx_config
from src.data_collector.krx_valuation.errors import FetchError
from src.utils.logger import get_logger


logger = get_logger(__name__)


class PageFetcher:
    """
    Thin aiohttp wrapper for the KRX endpoint and the scraped company pages.
    Keeps HTTP concerns isolated (session, headers, timeouts, failure classification).
    No retries here; callers decide.
    """

    def __init__(self, config: Optional[KrxValuationConfig] = None) -> None:
        self.config = config or krx_config
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "PageFetcher":
        timeout = aiohttp.ClientTimeout(
            total=self.config.REQUEST_TIMEOUT, connect=self.config.CONNECTION_TIMEOUT
        )
        self.session = aiohttp.ClientSession(headers=self.config.HEADERS, timeout=timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.session:
            await self.session.close()

    def _require_session(self) -> aiohttp.ClientSession:
        if not self.session:
            raise RuntimeError("Fetcher session not initialized. Use async context manager.")
        return self.session

    async def get_text(self, url: str, encoding: Optional[str] = None) -> str:
        """GET a page and return decoded text.

        `encoding` overrides the response charset (naver pages are EUC-KR).
        """
        session = self._require_session()
        try:
            async with session.get(url) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise FetchError(url, "http_status", status=resp.status)
                body = await resp.read()
                charset = encoding or resp.charset or "utf-8"
        except FetchError:
            raise
        except asyncio.TimeoutError as e:
            raise FetchError(url, "network", detail="timeout") from e
        except aiohttp.ClientError as e:
            raise FetchError(url, "network", detail=str(e)) from e

        try:
            return body.decode(charset)
        except (UnicodeDecodeError, LookupError) as e:
            raise FetchError(url, "decode", detail=str(e)) from e

    async def post_json(
        self, url: str, form: Dict[str, Any], headers: Optional[Dict[str, str]] = None
    ) -> Any:
        """POST form data and decode the body as JSON regardless of content-type."""
        session = self._require_session()
        try:
            async with session.post(url, data=form, headers=headers) as resp:
                if resp.status == 429:
                    logger.warning(f"429 rate limited by {url}")
                if resp.status < 200 or resp.status >= 300:
                    raise FetchError(url, "http_status", status=resp.status)
                body = await resp.read()
                charset = resp.charset or "utf-8"
        except FetchError:
            raise
        except asyncio.TimeoutError as e:
            raise FetchError(url, "network", detail="timeout") from e
        except aiohttp.ClientError as e:
            raise FetchError(url, "network", detail=str(e)) from e

        try:
            return json.loads(body.decode(charset))
        except (UnicodeDecodeError, LookupError, ValueError) as e:
            raise FetchError(url, "decode", detail=str(e)) from e
