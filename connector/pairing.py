"""
Pairing-code poll loop.

One :class:`PairingPoller` drives one pairing attempt: it asks the gateway for
the session status every ``interval`` seconds until the session reports a
connected state, the timeout elapses, or the caller stops it. Delivering the
pairing code and reaching the connected state are separate events.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar
import asyncio
import logging

from .config import PollConfig
from .errors import Cancelled, ConnectorError, TimedOut
from .gateway import extract_pairing_code, extract_state
from .result import Result

logger = logging.getLogger(__name__)

TERMINAL_CONNECTED_STATES = frozenset({"connected", "open", "ready", "online"})

T = TypeVar("T")

Fetch = Callable[[], Awaitable[Result[Any]]]
CodeCallback = Callable[[str], Awaitable[None]]
StateCallback = Callable[[str], Awaitable[None]]


class PollState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAIRED = "paired"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(slots=True)
class PollResult:
    state: PollState
    ticks: int = 0
    pairing_code: str | None = None
    last_remote_state: str | None = None
    error: ConnectorError | None = None


def is_terminal_connected(state: str | None) -> bool:
    return (state or "").strip().lower() in TERMINAL_CONNECTED_STATES


class CancelToken:
    """Explicit cancellation flag that can also be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` or until cancelled; returns True if cancelled."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True

    async def guard(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """
        Await ``awaitable`` unless the token fires or ``timeout`` passes first.

        The pending work is cancelled in both cases and :class:`Cancelled` or
        :class:`TimedOut` is raised instead of its result.
        """
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=None if timeout is None else max(0.0, timeout),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        await asyncio.gather(task, return_exceptions=True)
        if self.cancelled:
            raise Cancelled("Cancelled while waiting")
        raise TimedOut(f"No reply within {timeout}s")


class PairingPoller:
    def __init__(
        self,
        fetch_status: Fetch,
        *,
        fetch_code: Fetch | None = None,
        config: PollConfig | None = None,
        on_code: CodeCallback | None = None,
        on_state: StateCallback | None = None,
        name: str = "pairing",
    ) -> None:
        self._fetch_status = fetch_status
        self._fetch_code = fetch_code
        self._config = config or PollConfig()
        self._on_code = on_code
        self._on_state = on_state
        self._name = name
        self._task: asyncio.Task | None = None
        self._token: CancelToken | None = None
        self._code_ready: asyncio.Event = asyncio.Event()
        self.state = PollState.IDLE
        self.pairing_code: str | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def start(self, pairing_code: str | None = None) -> asyncio.Task:
        """Start polling; ``pairing_code`` seeds a code the caller already delivered."""
        if self.running:
            return self._task  # type: ignore[return-value]
        self._token = CancelToken()
        self._code_ready = asyncio.Event()
        self.pairing_code = pairing_code
        if pairing_code:
            self._code_ready.set()
        self.ticks = 0
        self.state = PollState.RUNNING
        self._task = asyncio.create_task(self._guarded_run(self._token), name=f"poll-{self._name}")
        return self._task

    def stop(self) -> None:
        if not self.running or self._token is None:
            return
        logger.debug("Stopping poll loop %s", self._name)
        self._token.cancel()

    async def wait_for_code(self) -> str | None:
        """Wait until a pairing code is delivered or the loop ends."""
        if self._task is None:
            return self.pairing_code
        code_waiter = asyncio.ensure_future(self._code_ready.wait())
        try:
            await asyncio.wait({code_waiter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            code_waiter.cancel()
        return self.pairing_code

    async def _guarded_run(self, token: CancelToken) -> PollResult:
        try:
            result = await self.run(token)
        except asyncio.CancelledError:
            self.state = PollState.CANCELLED
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Poll loop %s crashed", self._name)
            self.state = PollState.ERROR
            error = exc if isinstance(exc, ConnectorError) else ConnectorError(str(exc))
            return PollResult(PollState.ERROR, ticks=self.ticks, pairing_code=self.pairing_code, error=error)
        self.state = result.state
        return result

    async def run(self, token: CancelToken) -> PollResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.timeout
        last_state: str | None = None
        while True:
            if token.cancelled:
                return self._cancelled(last_state)
            if loop.time() >= deadline:
                return self._timed_out(last_state)

            self.ticks += 1
            try:
                state = await self._tick(token, deadline)
            except Cancelled:
                return self._cancelled(last_state)
            except TimedOut:
                return self._timed_out(last_state)
            if state:
                last_state = state
            if is_terminal_connected(state):
                logger.info("Poll loop %s paired after %s ticks (state=%s)", self._name, self.ticks, state)
                return self._finish(PollState.PAIRED, last_state)

            if token.cancelled:
                continue
            await token.sleep(min(self._config.interval, deadline - loop.time()))

    async def _tick(self, token: CancelToken, deadline: float) -> str | None:
        status = await self._safe_fetch(self._fetch_status, "status", token, deadline)
        if status is None:
            return None
        state = extract_state(status)
        code = extract_pairing_code(status)
        if code is None and self.pairing_code is None and self._fetch_code is not None and not is_terminal_connected(state):
            code = extract_pairing_code(await self._safe_fetch(self._fetch_code, "pairing code", token, deadline))
        if code and self.pairing_code is None:
            await self._deliver_code(code)
        if state and self._on_state is not None:
            await self._notify(self._on_state, state, "state")
        return state

    async def _safe_fetch(self, fetch: Fetch, what: str, token: CancelToken, deadline: float) -> Any | None:
        """Run one fetch bounded by the token and the deadline; raises Cancelled or TimedOut."""
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            result = await token.guard(fetch(), timeout=remaining)
        except (Cancelled, TimedOut):
            raise
        except Exception as exc:  # noqa: BLE001 - a failed poll is transient
            logger.warning("Poll %s: %s fetch raised: %s", self._name, what, exc)
            return None
        if not result.ok:
            logger.warning("Poll %s: %s fetch failed: %s", self._name, what, result.error)
            return None
        return result.value

    async def _deliver_code(self, code: str) -> None:
        self.pairing_code = code
        self._code_ready.set()
        if self._on_code is not None:
            await self._notify(self._on_code, code, "code")

    async def _notify(self, callback: Callable[[str], Awaitable[None]], value: str, what: str) -> None:
        try:
            await callback(value)
        except Exception:  # noqa: BLE001
            logger.exception("Poll %s: %s callback failed", self._name, what)

    def _cancelled(self, last_state: str | None) -> PollResult:
        return self._finish(PollState.CANCELLED, last_state, Cancelled(f"Polling {self._name} cancelled"))

    def _timed_out(self, last_state: str | None) -> PollResult:
        logger.info("Poll loop %s timed out after %s ticks", self._name, self.ticks)
        return self._finish(
            PollState.TIMED_OUT,
            last_state,
            TimedOut(f"Polling {self._name} timed out after {self._config.timeout}s"),
        )

    def _finish(self, state: PollState, last_state: str | None, error: ConnectorError | None = None) -> PollResult:
        return PollResult(
            state=state,
            ticks=self.ticks,
            pairing_code=self.pairing_code,
            last_remote_state=last_state,
            error=error,
        )


__all__ = [
    "CancelToken",
    "PairingPoller",
    "PollResult",
    "PollState",
    "TERMINAL_CONNECTED_STATES",
    "is_terminal_connected",
]
