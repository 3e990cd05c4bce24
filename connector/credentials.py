"""
OAuth credential freshness for the CRM portal.

:class:`CredentialScheduler` keeps every active credential at least
``RefreshConfig.margin`` seconds away from expiry. Refreshes for one
(subject, portal) pair are single-flight: concurrent callers join the refresh
already in progress instead of writing divergent tokens.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Protocol
import asyncio
import logging

from .bitrix import BitrixClient, TokenGrant
from .config import RefreshConfig
from .errors import ConnectorError, MissingRefreshToken, NoCredential, PersistenceFailure
from .result import Err, Ok, Result

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Credential:
    subject: str
    portal_url: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    id: int | None = None
    updated_at: datetime | None = None


class CredentialStore(Protocol):
    """Narrow CRUD surface; implementations raise ``PersistenceFailure``."""

    async def get_active(self, subject: str, portal_url: str) -> Credential | None: ...

    async def list_active(self) -> list[Credential]: ...

    async def activate(self, credential: Credential) -> Credential: ...

    async def update_tokens(self, credential: Credential) -> Credential: ...


ReconnectCallback = Callable[[Credential, ConnectorError], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialScheduler:
    def __init__(
        self,
        store: CredentialStore,
        bitrix: BitrixClient,
        *,
        config: RefreshConfig | None = None,
        on_reconnect_required: ReconnectCallback | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._bitrix = bitrix
        self._config = config or RefreshConfig()
        self._on_reconnect_required = on_reconnect_required
        self._clock = clock
        self._inflight: dict[tuple[str, str], asyncio.Task] = {}
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    def is_fresh(self, credential: Credential) -> bool:
        if credential.expires_at is None:
            return False
        return credential.expires_at - self._clock() > timedelta(seconds=self._config.margin)

    async def _load(self, subject: str, portal_url: str) -> Result[Credential]:
        try:
            credential = await self._store.get_active(subject, portal_url)
        except PersistenceFailure as exc:
            return Err(exc)
        if credential is None:
            return Err(NoCredential(f"No active credential for {subject} @ {portal_url}"))
        return Ok(credential)

    async def check_and_refresh(self, subject: str, portal_url: str) -> Result[Credential]:
        loaded = await self._load(subject, portal_url)
        if not loaded.ok:
            return loaded
        if self.is_fresh(loaded.value):
            return loaded
        logger.info("Token for %s @ %s expires soon, refreshing", subject, portal_url)
        return await self._single_flight(subject, portal_url, force=False)

    async def refresh(self, subject: str, portal_url: str) -> Result[Credential]:
        return await self._single_flight(subject, portal_url, force=True)

    async def access_token(self, subject: str, portal_url: str) -> Result[str]:
        result = await self.check_and_refresh(subject, portal_url)
        if not result.ok:
            return result
        return Ok(result.value.access_token)

    async def exchange_code(self, subject: str, portal_url: str, code: str) -> Result[Credential]:
        """Trade an OAuth authorization code for a new active credential."""
        grant = await self._bitrix.exchange_code(
            portal_url,
            code,
            client_id=self._config.client_id,
            client_secret=self._config.client_secret,
        )
        if not grant.ok:
            logger.warning("OAuth code exchange failed for %s @ %s: %s", subject, portal_url, grant.error)
            return grant
        if grant.value.domain:
            portal_url = f"https://{grant.value.domain}"
        credential = Credential(
            subject=subject,
            portal_url=portal_url,
            access_token=grant.value.access_token,
            refresh_token=grant.value.refresh_token,
            expires_at=self._clock() + timedelta(seconds=grant.value.expires_in),
        )
        try:
            saved = await self._store.activate(credential)
        except PersistenceFailure as exc:
            return Err(exc)
        logger.info("Credential activated for %s @ %s", subject, portal_url)
        return Ok(saved)

    async def _single_flight(self, subject: str, portal_url: str, *, force: bool) -> Result[Credential]:
        key = (subject, portal_url)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._do_refresh(subject, portal_url, force=force))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, key=key: self._inflight.pop(key, None))
        else:
            logger.debug("Joining in-flight refresh for %s @ %s", subject, portal_url)
        return await asyncio.shield(task)

    async def _do_refresh(self, subject: str, portal_url: str, *, force: bool) -> Result[Credential]:
        loaded = await self._load(subject, portal_url)
        if not loaded.ok:
            return loaded
        credential = loaded.value
        if not force and self.is_fresh(credential):
            # refreshed by someone else between our read and this flight
            return loaded
        if not credential.refresh_token:
            return Err(MissingRefreshToken(f"Refresh token not available for {subject} @ {portal_url}"))

        grant = await self._bitrix.refresh_token(
            portal_url,
            credential.refresh_token,
            client_id=self._config.client_id,
            client_secret=self._config.client_secret,
        )
        if not grant.ok:
            logger.warning("Token refresh failed for %s @ %s: %s", subject, portal_url, grant.error)
            return grant
        return await self._persist(credential, grant.value)

    async def _persist(self, credential: Credential, grant: TokenGrant) -> Result[Credential]:
        now = self._clock()
        renewed = replace(
            credential,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or credential.refresh_token,
            expires_at=now + timedelta(seconds=grant.expires_in),
            updated_at=now,
        )
        try:
            saved = await self._store.update_tokens(renewed)
        except PersistenceFailure as exc:
            return Err(exc)
        logger.info(
            "Token refreshed for %s @ %s (expires at %s)",
            saved.subject,
            saved.portal_url,
            saved.expires_at.isoformat() if saved.expires_at else "?",
        )
        return Ok(saved)

    # repeating schedule

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self.run(), name="credential-scheduler")
        return self._task

    async def stop(self) -> None:
        self._stopping.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run(self) -> None:
        logger.info("Credential scheduler started (period %.0fs)", self._config.period)
        try:
            while not self._stopping.is_set():
                await self.tick()
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self._config.period)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("Credential scheduler stopped")

    async def tick(self) -> dict[tuple[str, str], Result[Credential]]:
        """Check every active credential once."""
        try:
            credentials = await self._store.list_active()
        except PersistenceFailure as exc:
            logger.warning("Credential scheduler could not list credentials: %s", exc)
            return {}
        outcomes: dict[tuple[str, str], Result[Credential]] = {}
        for credential in credentials:
            key = (credential.subject, credential.portal_url)
            result = await self.check_and_refresh(*key)
            outcomes[key] = result
            if result.ok:
                continue
            if isinstance(result.error, MissingRefreshToken):
                logger.error("Reconnect required for %s @ %s", *key)
                await self._escalate(credential, result.error)
            else:
                logger.warning("Refresh for %s @ %s failed, retrying next tick: %s", *key, result.error)
        return outcomes

    async def _escalate(self, credential: Credential, error: ConnectorError) -> None:
        if self._on_reconnect_required is None:
            return
        try:
            await self._on_reconnect_required(credential, error)
        except Exception:  # pragma: no cover - alerting is best-effort
            logger.exception("Reconnect-required notification failed for %s", credential.subject)


__all__ = [
    "Credential",
    "CredentialScheduler",
    "CredentialStore",
    "ReconnectCallback",
]
