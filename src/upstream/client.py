from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable

import httpx

from ._version import __version__
from .config import DEFAULT_TIMEOUT_S
from .errors import NetworkError, NotFound, RateLimited

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

_CHUNK_SIZE = 64 * 1024


def _is_rate_limited(resp: httpx.Response) -> bool:
    if resp.status_code == 429:
        return True
    return resp.status_code == 403 and resp.headers.get("x-ratelimit-remaining") == "0"


def raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    url = str(resp.request.url) if resp.request is not None else ""
    if resp.status_code == 404:
        raise NotFound(f"Not found: {url}")
    if _is_rate_limited(resp):
        raise RateLimited(f"Rate limited by {resp.request.url.host}", status_code=resp.status_code)
    raise NetworkError(f"HTTP {resp.status_code} for {url}", status_code=resp.status_code)


class HttpClient:
    """
    Thin async wrapper around httpx that maps transport and status failures onto
    upstream error kinds. One instance is shared by every provider of a run.
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"User-Agent": f"upstream/{__version__}"}
        headers.update(default_headers or {})
        self.timeout_s = timeout_s
        self._http = httpx.AsyncClient(
            timeout=timeout_s,
            follow_redirects=True,
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        logger.debug("%s %s params=%s", method.upper(), url, params)
        try:
            resp = await self._http.request(method.upper(), url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise NetworkError(f"Request failed: {e}") from e
        raise_for_status(resp)
        return resp

    async def get_json(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        resp = await self.request("GET", url, params=params, headers=headers)
        try:
            return resp.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON from {url}: {e}") from e

    async def head(self, url: str, *, headers: dict[str, str] | None = None) -> httpx.Response:
        return await self.request("HEAD", url, headers=headers)

    async def download(
        self,
        url: str,
        dest: Path,
        *,
        expected_size: int = 0,
        headers: dict[str, str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        logger.debug("download %s -> %s", url, dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        req_headers = {"Accept": "application/octet-stream"}
        req_headers.update(headers or {})
        total_read = 0
        try:
            async with self._http.stream("GET", url, headers=req_headers) as resp:
                raise_for_status(resp)
                total = expected_size or int(resp.headers.get("content-length") or 0)
                with dest.open("wb") as out:
                    async for chunk in resp.aiter_bytes(_CHUNK_SIZE):
                        out.write(chunk)
                        total_read += len(chunk)
                        if on_progress is not None:
                            on_progress(total_read, total)
        except httpx.HTTPError as e:
            raise NetworkError(f"Download failed: {e}") from e

        if expected_size and total_read != expected_size:
            raise NetworkError(f"Download of {url} was truncated: got {total_read} of {expected_size} bytes")
        return dest
