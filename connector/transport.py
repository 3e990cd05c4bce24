"""
Async HTTP transport with timeout, bounded retry and linear backoff.

All outbound calls to the gateway and to the CRM go through
:class:`Transport`. Expected failures never raise: they come back as
``Err(TransportFailure)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol
import asyncio
import inspect
import json
import logging
import re
import time

import aiohttp

from .config import TransportConfig
from .errors import ConnectorError, TransportFailure
from .result import Err, Ok, Result

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {"Content-Type": "application/json"}
RETRIABLE_PATTERN = re.compile(r"HTTP 5\d{2}|network|timed out|abort|connection", re.IGNORECASE)

TransportObserver = Callable[[Mapping[str, Any]], Any]


@dataclass(slots=True)
class RequestSpec:
    url: str
    method: str = "POST"
    headers: Mapping[str, str] | None = None
    query: Mapping[str, Any] | None = None
    body: Any | None = None
    timeout: float | None = None


class Requester(Protocol):
    async def request(self, spec: RequestSpec) -> Result[Any]: ...

    async def close(self) -> None: ...


def is_retriable(error: ConnectorError) -> bool:
    if not isinstance(error, TransportFailure):
        return False
    if error.status is not None:
        return error.status >= 500
    return bool(RETRIABLE_PATTERN.search(error.message))


def _encode_query(query: Mapping[str, Any] | None) -> dict[str, str] | None:
    if not query:
        return None
    encoded: dict[str, str] = {}
    for key, value in query.items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        else:
            encoded[key] = str(value)
    return encoded


def _log_observer(event: Mapping[str, Any]) -> None:
    logger.debug("[HTTP] %s", dict(event))


class Transport:
    """Resilient request executor bound to one base URL."""

    def __init__(
        self,
        base_url: str = "",
        *,
        config: TransportConfig | None = None,
        default_headers: Mapping[str, str] | None = None,
        bearer: str | None = None,
        observer: TransportObserver | None = _log_observer,
        session: aiohttp.ClientSession | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._config = config or TransportConfig()
        self._default_headers = dict(DEFAULT_HEADERS if default_headers is None else default_headers)
        self._bearer = bearer
        self._observer = observer
        self._own_session = session is None
        self._session = session
        self._sleep = sleep
        self._observer_tasks: set[asyncio.Task] = set()

    @property
    def config(self) -> TransportConfig:
        return self._config

    async def close(self) -> None:
        if self._own_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def request(self, spec: RequestSpec) -> Result[Any]:
        attempt = 0
        while True:
            result = await self._attempt(spec, attempt + 1)
            if result.ok:
                return result
            if attempt >= self._config.retries or not is_retriable(result.error):
                return result
            attempt += 1
            delay = self._config.backoff * attempt
            logger.warning(
                "%s %s failed (%s); retry %s/%s in %.2fs",
                spec.method,
                spec.url,
                result.error.message,
                attempt,
                self._config.retries,
                delay,
            )
            await self._sleep(delay)

    def _build_url(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        return f"{self._base_url}{url}"

    def _build_headers(self, spec: RequestSpec) -> dict[str, str]:
        headers = {**self._default_headers, **(spec.headers or {})}
        if self._bearer:
            headers["Authorization"] = f"Bearer {self._bearer}"
        return headers

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._own_session = True
        return self._session

    async def _send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        params: Mapping[str, str] | None,
        data: str | None,
        timeout: float,
    ) -> tuple[int, str, str]:
        session = self._ensure_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with session.request(
            method, url, headers=headers, params=params, data=data, timeout=client_timeout
        ) as resp:
            raw = await resp.text()
            return resp.status, raw, resp.reason or ""

    async def _attempt(self, spec: RequestSpec, attempt: int) -> Result[Any]:
        url = self._build_url(spec.url)
        data = json.dumps(spec.body, ensure_ascii=False) if spec.body is not None else None
        timeout = spec.timeout if spec.timeout is not None else self._config.timeout
        started = time.monotonic()
        event: dict[str, Any] = {"url": url, "method": spec.method, "attempt": attempt}
        try:
            status, raw, reason = await asyncio.wait_for(
                self._send(spec.method, url, self._build_headers(spec), _encode_query(spec.query), data, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            error = TransportFailure(f"Request aborted: timed out after {timeout}s")
            return self._fail(event, started, error)
        except aiohttp.ClientError as exc:
            error = TransportFailure(f"Network error: {exc or type(exc).__name__}")
            return self._fail(event, started, error)
        except OSError as exc:
            error = TransportFailure(f"Network error: {exc}")
            return self._fail(event, started, error)

        event["status"] = status
        if not 200 <= status < 300:
            error = TransportFailure(
                f"HTTP {status}: {raw or reason}",
                status=status,
                details=_maybe_json(raw),
            )
            return self._fail(event, started, error)
        try:
            payload = json.loads(raw) if raw.strip() else None
        except ValueError as exc:
            error = TransportFailure(f"Malformed response body: {exc}", status=status, details=raw[:500])
            return self._fail(event, started, error)

        event.update(ok=True, elapsed=round(time.monotonic() - started, 4), data=payload)
        self._notify(event)
        return Ok(payload)

    def _fail(self, event: dict[str, Any], started: float, error: TransportFailure) -> Err:
        event.update(ok=False, elapsed=round(time.monotonic() - started, 4), error=error.message)
        self._notify(event)
        return Err(error)

    def _notify(self, event: Mapping[str, Any]) -> None:
        if self._observer is None:
            return
        try:
            outcome = self._observer(event)
        except Exception:  # noqa: BLE001 - observer must not break requests
            logger.debug("Transport observer failed", exc_info=True)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._observer_tasks.add(task)
            task.add_done_callback(self._observer_done)

    def _observer_done(self, task: asyncio.Future) -> None:
        self._observer_tasks.discard(task)  # type: ignore[arg-type]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Async transport observer failed: %s", task.exception())


def _maybe_json(raw: str) -> Any:
    try:
        return json.loads(raw) if raw else None
    except ValueError:
        return raw[:500]


__all__ = [
    "DEFAULT_HEADERS",
    "RETRIABLE_PATTERN",
    "RequestSpec",
    "Requester",
    "Transport",
    "TransportObserver",
    "is_retriable",
]
