"""
Binding coordinator: ties a CRM open line to a messaging-gateway instance.

Per line the binding moves ``pending_qr -> connecting -> open | error``;
``closed``/``disconnected`` come from the remote side and ``start`` may move
the line back into pairing. The remote system is the source of truth, so any
transition reported by a poll tick or a webhook is accepted (last write
wins). Reconnection is never automatic: after ``closed`` a caller must call
:meth:`BindingCoordinator.start` again.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Protocol
import asyncio
import logging

from .config import PollConfig
from .errors import NotFound, PersistenceFailure
from .events import BindingEvent, BindingEvents, Subscriber
from .gateway import GatewayClient, extract_pairing_code
from .pairing import PairingPoller, PollState
from .result import Err, Ok, Result

logger = logging.getLogger(__name__)


class BindingStatus(str, Enum):
    UNKNOWN = "unknown"
    PENDING_QR = "pending_qr"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    DISCONNECTED = "disconnected"
    ERROR = "error"


_EXACT_STATES = {
    "open": BindingStatus.OPEN,
    "connected": BindingStatus.OPEN,
    "ready": BindingStatus.OPEN,
    "online": BindingStatus.OPEN,
    "connecting": BindingStatus.CONNECTING,
    "pairing": BindingStatus.CONNECTING,
    "pending_qr": BindingStatus.PENDING_QR,
    "qr": BindingStatus.PENDING_QR,
    "qrcode": BindingStatus.PENDING_QR,
    "close": BindingStatus.CLOSED,
    "closed": BindingStatus.CLOSED,
    "disconnected": BindingStatus.DISCONNECTED,
    "logout": BindingStatus.DISCONNECTED,
    "logged_out": BindingStatus.DISCONNECTED,
    "error": BindingStatus.ERROR,
    "failed": BindingStatus.ERROR,
    "unknown": BindingStatus.UNKNOWN,
}


def map_remote_state(raw: str | None) -> BindingStatus:
    """Map the gateway's state vocabulary onto :class:`BindingStatus`."""
    value = (raw or "").strip().lower()
    if not value:
        return BindingStatus.UNKNOWN
    if value in _EXACT_STATES:
        return _EXACT_STATES[value]
    if "disconnect" in value:
        return BindingStatus.DISCONNECTED
    if "connected" in value:
        return BindingStatus.OPEN
    if "connecting" in value:
        return BindingStatus.CONNECTING
    if "qr" in value or "pair" in value:
        return BindingStatus.PENDING_QR
    return BindingStatus.UNKNOWN


@dataclass(slots=True)
class Binding:
    tenant_id: str
    line_id: str
    instance_id: str
    status: BindingStatus = BindingStatus.PENDING_QR
    line_name: str | None = None
    pairing_code: str | None = None
    is_active: bool = True
    last_sync_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None


class BindingStore(Protocol):
    """Narrow CRUD surface; implementations raise ``PersistenceFailure``."""

    async def get(self, tenant_id: str, line_id: str) -> Binding | None: ...

    async def get_by_instance(self, instance_id: str) -> Binding | None: ...

    async def list(self, tenant_id: str) -> list[Binding]: ...

    async def insert(self, binding: Binding) -> Binding: ...

    async def update(self, binding: Binding) -> Binding: ...

    async def upsert(self, binding: Binding) -> Binding: ...

    async def deactivate(self, tenant_id: str, line_id: str) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BindingCoordinator:
    def __init__(
        self,
        tenant_id: str,
        store: BindingStore,
        gateway: GatewayClient,
        *,
        poll_config: PollConfig | None = None,
        events: BindingEvents | None = None,
        clock: Callable[[], datetime] = _utcnow,
        instance_prefix: str = "bitrix_line",
    ) -> None:
        self.tenant_id = tenant_id
        self._store = store
        self._gateway = gateway
        self._poll_config = poll_config or PollConfig()
        self.events = events or BindingEvents()
        self._clock = clock
        self._instance_prefix = instance_prefix
        self._locks: dict[str, asyncio.Lock] = {}
        self._pollers: dict[str, PairingPoller] = {}
        self._start_locks: dict[str, asyncio.Lock] = {}
        self._stop_requested: set[str] = set()

    def _lock(self, line_id: str) -> asyncio.Lock:
        lock = self._locks.get(line_id)
        if lock is None:
            lock = self._locks[line_id] = asyncio.Lock()
        return lock

    def _start_lock(self, line_id: str) -> asyncio.Lock:
        lock = self._start_locks.get(line_id)
        if lock is None:
            lock = self._start_locks[line_id] = asyncio.Lock()
        return lock

    def make_instance_id(self, line_id: str) -> str:
        stamp = int(self._clock().timestamp() * 1000)
        return f"{self._instance_prefix}_{line_id}_{stamp}"

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        return self.events.subscribe(callback)

    # reads

    async def get(self, line_id: str) -> Result[Binding | None]:
        try:
            return Ok(await self._store.get(self.tenant_id, line_id))
        except PersistenceFailure as exc:
            return Err(exc)

    async def list(self) -> Result[list[Binding]]:
        try:
            return Ok(await self._store.list(self.tenant_id))
        except PersistenceFailure as exc:
            return Err(exc)

    async def _require(self, line_id: str) -> Result[Binding]:
        loaded = await self.get(line_id)
        if not loaded.ok:
            return loaded
        if loaded.value is None:
            return Err(NotFound(f"No binding for line {line_id}"))
        return Ok(loaded.value)

    def poller(self, line_id: str) -> PairingPoller | None:
        return self._pollers.get(line_id)

    # lifecycle

    async def ensure(self, line_id: str, line_name: str | None = None) -> Result[Binding]:
        """Return the active binding for ``line_id``, creating it if needed."""
        async with self._lock(line_id):
            try:
                existing = await self._store.get(self.tenant_id, line_id)
                if existing is not None:
                    return Ok(existing)
                now = self._clock()
                binding = Binding(
                    tenant_id=self.tenant_id,
                    line_id=line_id,
                    line_name=line_name,
                    instance_id=self.make_instance_id(line_id),
                    status=BindingStatus.PENDING_QR,
                    created_at=now,
                    updated_at=now,
                )
                saved = await self._store.insert(binding)
            except PersistenceFailure as exc:
                logger.error("Could not create binding for line %s: %s", line_id, exc)
                return Err(exc)
        logger.info("Binding created: line %s -> %s", line_id, saved.instance_id)
        await self._publish(None, saved, "ensure")
        return Ok(saved)

    async def bind(self, line_id: str, instance_id: str, line_name: str | None = None) -> Result[Binding]:
        """Upsert the (tenant, line) binding to point at ``instance_id``."""
        async with self._lock(line_id):
            try:
                existing = await self._store.get(self.tenant_id, line_id)
                now = self._clock()
                if existing is None:
                    binding = Binding(
                        tenant_id=self.tenant_id,
                        line_id=line_id,
                        line_name=line_name,
                        instance_id=instance_id,
                        status=BindingStatus.PENDING_QR,
                        created_at=now,
                        updated_at=now,
                    )
                elif existing.instance_id == instance_id:
                    binding = replace(existing, line_name=line_name or existing.line_name, updated_at=now)
                else:
                    binding = replace(
                        existing,
                        instance_id=instance_id,
                        line_name=line_name or existing.line_name,
                        status=BindingStatus.PENDING_QR,
                        pairing_code=None,
                        updated_at=now,
                    )
                saved = await self._store.upsert(binding)
            except PersistenceFailure as exc:
                logger.error("Could not bind line %s to %s: %s", line_id, instance_id, exc)
                return Err(exc)
        previous = existing.status if existing else None
        if existing is None or existing.instance_id != instance_id:
            await self._publish(previous, saved, "bind")
        return Ok(saved)

    async def start(self, line_id: str, number: str | None = None) -> Result[Binding]:
        """
        Ask the gateway to start the session and begin polling for the code.

        Returns as soon as a pairing code is known, or when the poll loop ends
        first (connected, timed out or stopped). A line that is not pending is
        moved back to ``pending_qr`` first, so a gateway failure leaves it
        there and is returned as-is. Concurrent calls for one line share a
        single session start and poll loop.
        """
        async with self._start_lock(line_id):
            self._stop_requested.discard(line_id)
            loaded = await self._require(line_id)
            if not loaded.ok:
                return loaded

            poller = self._pollers.get(line_id)
            if poller is None or not poller.running:
                if loaded.value.status is not BindingStatus.PENDING_QR:
                    reset = await self._apply(
                        line_id, BindingStatus.PENDING_QR, pairing_code=None, clear_code=True, source="start"
                    )
                    if not reset.ok:
                        return reset
                started = await self._gateway.start_session_for_line(line_id, number)
                if not started.ok:
                    logger.warning("Session start failed for line %s: %s", line_id, started.error)
                    return started
                code = extract_pairing_code(started.value)
                moved = await self._apply(line_id, BindingStatus.CONNECTING, pairing_code=code, source="start")
                if not moved.ok:
                    return moved
                poller = self._new_poller(line_id)
                self._pollers[line_id] = poller
                poller.start(pairing_code=code)
                if line_id in self._stop_requested:
                    poller.stop()

        await poller.wait_for_code()
        task = poller.task
        if poller.pairing_code is None and task is not None and task.done() and not task.cancelled():
            outcome = task.result()
            if outcome.state is not PollState.PAIRED and outcome.error is not None:
                return Err(outcome.error)
        return await self._require(line_id)

    def _new_poller(self, line_id: str) -> PairingPoller:
        async def on_state(state: str) -> None:
            await self.on_status(line_id, state, source="poll")

        async def on_code(code: str) -> None:
            await self._apply(line_id, None, pairing_code=code, source="poll")

        return PairingPoller(
            lambda: self._gateway.get_status_for_line(line_id),
            fetch_code=lambda: self._gateway.get_qr_for_line(line_id),
            config=self._poll_config,
            on_code=on_code,
            on_state=on_state,
            name=f"{self.tenant_id}:{line_id}",
        )

    def stop(self, line_id: str) -> None:
        if self._start_lock(line_id).locked():
            self._stop_requested.add(line_id)
        poller = self._pollers.get(line_id)
        if poller is not None:
            poller.stop()

    async def stop_all(self) -> None:
        tasks = []
        for line_id, lock in self._start_locks.items():
            if lock.locked():
                self._stop_requested.add(line_id)
        for poller in self._pollers.values():
            poller.stop()
            if poller.task is not None:
                tasks.append(poller.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pollers.clear()

    async def deactivate(self, line_id: str) -> Result[bool]:
        self.stop(line_id)
        try:
            changed = await self._store.deactivate(self.tenant_id, line_id)
        except PersistenceFailure as exc:
            return Err(exc)
        if changed:
            logger.info("Binding deactivated for line %s", line_id)
        return Ok(changed)

    # status ingestion

    async def on_status(
        self,
        line_id: str,
        remote_state: str | None,
        *,
        pairing_code: str | None = None,
        source: str = "webhook",
    ) -> Result[Binding]:
        status = map_remote_state(remote_state)
        if status is BindingStatus.UNKNOWN and remote_state:
            logger.info("Unknown remote state %r for line %s", remote_state, line_id)
        return await self._apply(line_id, status, pairing_code=pairing_code, source=source)

    async def on_instance_status(
        self,
        instance_id: str,
        remote_state: str | None,
        *,
        pairing_code: str | None = None,
    ) -> Result[Binding]:
        try:
            binding = await self._store.get_by_instance(instance_id)
        except PersistenceFailure as exc:
            return Err(exc)
        if binding is None or binding.tenant_id != self.tenant_id:
            return Err(NotFound(f"No binding for instance {instance_id}"))
        if remote_state is None:
            return await self._apply(binding.line_id, None, pairing_code=pairing_code, source="webhook")
        return await self.on_status(binding.line_id, remote_state, pairing_code=pairing_code, source="webhook")

    async def _apply(
        self,
        line_id: str,
        status: BindingStatus | None,
        *,
        pairing_code: str | None,
        source: str,
        clear_code: bool = False,
    ) -> Result[Binding]:
        async with self._lock(line_id):
            try:
                current = await self._store.get(self.tenant_id, line_id)
                if current is None:
                    return Err(NotFound(f"No binding for line {line_id}"))
                now = self._clock()
                new_status = status or current.status
                code = None if clear_code else pairing_code or current.pairing_code
                if new_status is BindingStatus.OPEN:
                    code = None
                updated = replace(current, status=new_status, pairing_code=code, last_sync_at=now, updated_at=now)
                saved = await self._store.update(updated)
            except PersistenceFailure as exc:
                logger.error("Could not update binding for line %s: %s", line_id, exc)
                return Err(exc)
        if saved.status is not current.status or saved.pairing_code != current.pairing_code:
            logger.info("Line %s: %s -> %s (%s)", line_id, current.status.value, saved.status.value, source)
            await self._publish(current.status, saved, source)
        if saved.status in (BindingStatus.CLOSED, BindingStatus.DISCONNECTED) and current.status is BindingStatus.OPEN:
            logger.warning("Line %s lost its session; call start() to pair again", line_id)
        return Ok(saved)

    async def _publish(self, previous: BindingStatus | None, binding: Binding, source: str) -> None:
        await self.events.publish(
            BindingEvent(
                tenant_id=self.tenant_id,
                line_id=binding.line_id,
                previous=previous,
                current=binding,
                source=source,
            )
        )


def describe(binding: Binding) -> dict[str, Any]:
    """Plain-dict view of a binding for logs, CLI output and JSON replies."""
    return {
        "tenant_id": binding.tenant_id,
        "line_id": binding.line_id,
        "line_name": binding.line_name,
        "instance_id": binding.instance_id,
        "status": binding.status.value,
        "has_pairing_code": bool(binding.pairing_code),
        "is_active": binding.is_active,
        "last_sync_at": binding.last_sync_at.isoformat() if binding.last_sync_at else None,
        "created_at": binding.created_at.isoformat() if binding.created_at else None,
        "updated_at": binding.updated_at.isoformat() if binding.updated_at else None,
    }


__all__ = [
    "Binding",
    "BindingCoordinator",
    "BindingStatus",
    "BindingStore",
    "describe",
    "map_remote_state",
]
