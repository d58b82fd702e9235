from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import aiohttp

from .errors import ProtocolError, RateLimitedError, TransportError
from .sse import SseEvent, iter_sse_events
from .types import JobStatus, Variant, parse_job_status, parse_variants

logger = logging.getLogger(__name__)


class EventStream(Protocol):
    """One streaming subscription attempt."""

    async def open(self) -> None:
        """Return once the transport is open; raise TransportError otherwise."""
        ...

    def events(self) -> AsyncIterator[SseEvent]:
        ...

    async def close(self) -> None:
        ...


class JobApi(Protocol):
    async def get_job_status(self, job_id: str) -> JobStatus:
        ...

    async def get_job_variants(self, job_id: str) -> List[Variant]:
        ...

    def create_event_stream(self, job_id: str) -> EventStream:
        ...


class JobApiClient:
    """
    Backend job APIs.

    Endpoints:
      - GET <base>/job/<id>            -> job status
      - GET <base>/job/<id>/variants   -> result variant records
      - GET <base>/job/stream/<id>     -> text/event-stream

    Responses may be wrapped in the `{success, data, error}` envelope.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_s: float = 30,
        stream_read_timeout_s: Optional[float] = 30,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = (token or "").strip() or None
        self.timeout_s = timeout_s
        self.stream_read_timeout_s = stream_read_timeout_s or None

    def _headers(self) -> Dict[str, str]:
        h: Dict[str, str] = {"Accept": "application/json"}
        if self.token:
            h["Authorization"] = f"Bearer {self.token}"
        return h

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _get_json(self, path: str) -> Any:
        url = self._url(path)
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=self._headers()) as session:
                async with session.get(url) as resp:
                    if resp.status == 429:
                        raise RateLimitedError(f"rate limited: GET {path}")
                    if resp.status >= 400:
                        raise TransportError(f"HTTP {resp.status}: GET {path}", status=resp.status)
                    try:
                        return await resp.json(content_type=None)
                    except ValueError as e:
                        raise ProtocolError(f"invalid JSON from GET {path}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"GET {path} failed: {e!r}") from e

    async def get_job_status(self, job_id: str) -> JobStatus:
        if not job_id:
            raise ValueError("job_id required")
        data = await self._get_json(f"/job/{job_id}")
        return parse_job_status(data)

    async def get_job_variants(self, job_id: str) -> List[Variant]:
        if not job_id:
            raise ValueError("job_id required")
        data = await self._get_json(f"/job/{job_id}/variants")
        return parse_variants(data)

    def create_event_stream(self, job_id: str) -> "AiohttpEventStream":
        if not job_id:
            raise ValueError("job_id required")
        headers = self._headers()
        headers["Accept"] = "text/event-stream"
        headers["Cache-Control"] = "no-cache"
        return AiohttpEventStream(
            self._url(f"/job/stream/{job_id}"),
            headers=headers,
            connect_timeout_s=self.timeout_s,
            read_timeout_s=self.stream_read_timeout_s,
        )


class AiohttpEventStream:
    def __init__(
        self,
        url: str,
        *,
        headers: Dict[str, str],
        connect_timeout_s: float = 30,
        read_timeout_s: Optional[float] = 30,
    ) -> None:
        self.url = url
        self._headers = headers
        # The body is long-lived: bound connection setup and the gap between reads, never the total.
        self._timeout = aiohttp.ClientTimeout(total=None, sock_connect=connect_timeout_s, sock_read=read_timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None
        self._resp: Optional[aiohttp.ClientResponse] = None

    async def open(self) -> None:
        self._session = aiohttp.ClientSession(timeout=self._timeout, headers=self._headers)
        try:
            self._resp = await self._session.get(self.url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await self.close()
            raise TransportError(f"stream connect failed: {e!r}") from e
        if self._resp.status == 429:
            await self.close()
            raise RateLimitedError("rate limited: event stream")
        if self._resp.status != 200:
            status = self._resp.status
            await self.close()
            raise TransportError(f"HTTP {status}: event stream", status=status)
        ctype = (self._resp.headers.get("Content-Type") or "").lower()
        if "text/event-stream" not in ctype:
            await self.close()
            raise ProtocolError(f"unexpected stream content type: {ctype or 'missing'}")
        logger.debug(f"Event stream open: {self.url}")

    async def events(self) -> AsyncIterator[SseEvent]:
        if self._resp is None:
            raise TransportError("event stream not open")
        try:
            async for ev in iter_sse_events(self._resp.content):
                yield ev
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"event stream dropped: {e!r}") from e

    async def close(self) -> None:
        resp, self._resp = self._resp, None
        session, self._session = self._session, None
        if resp is not None:
            resp.close()
        if session is not None:
            await session.close()
