"""Control channel to the browser daemon service.

The browser service runs one automation daemon per session and exposes a
small HTTP API:

    GET    /daemons/{session_id}           -> {"running", "ready", "port"}
    POST   /daemons/{session_id}           start (body: {"url"?})
    DELETE /daemons/{session_id}           stop; 404 when not running
    POST   /daemons/{session_id}/command   execute a daemon command
    POST   /daemons/{session_id}/navigate  open a URL
"""

from __future__ import annotations

from typing import Any, Protocol

import aiohttp
from pydantic import BaseModel

from labsessions.logger import logger


class DaemonStatus(BaseModel):
    running: bool = False
    ready: bool = False
    port: int | None = None


class DaemonError(Exception):
    """The daemon service rejected a request or could not be reached."""


class DaemonController(Protocol):
    async def start(self, session_id: str, url: str | None = None) -> DaemonStatus: ...
    async def stop(self, session_id: str) -> None: ...
    async def get_status(self, session_id: str) -> DaemonStatus: ...
    async def execute(self, session_id: str, command: dict[str, Any]) -> dict[str, Any]: ...
    async def navigate(self, session_id: str, url: str) -> None: ...


class HttpDaemonController:
    def __init__(self, base_url: str, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, session_id: str, suffix: str = "") -> str:
        return f"{self._base_url}/daemons/{session_id}{suffix}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any] | None:
        try:
            async with self._client().request(method, url, json=json) as resp:
                if resp.status == 404 and allow_not_found:
                    return None
                if resp.status >= 400:
                    body = await resp.text()
                    raise DaemonError(f"{method} {url} failed with {resp.status}: {body[:200]}")
                if resp.content_type != "application/json":
                    return {}
                data = await resp.json()
                return data if isinstance(data, dict) else {}
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise DaemonError(f"{method} {url} failed: {exc}") from exc

    async def start(self, session_id: str, url: str | None = None) -> DaemonStatus:
        body = {"url": url} if url else {}
        data = await self._request("POST", self._url(session_id), json=body)
        logger.info("Browser daemon started", session_id=session_id)
        return DaemonStatus.model_validate(data or {"running": True})

    async def stop(self, session_id: str) -> None:
        await self._request("DELETE", self._url(session_id), allow_not_found=True)
        logger.info("Browser daemon stopped", session_id=session_id)

    async def get_status(self, session_id: str) -> DaemonStatus:
        data = await self._request("GET", self._url(session_id), allow_not_found=True)
        if data is None:
            return DaemonStatus()
        return DaemonStatus.model_validate(data)

    async def execute(self, session_id: str, command: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", self._url(session_id, "/command"), json=command) or {}

    async def navigate(self, session_id: str, url: str) -> None:
        await self._request("POST", self._url(session_id, "/navigate"), json={"url": url})
