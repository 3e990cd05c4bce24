"""Service entry point: wires the connector from the environment and runs it."""

from __future__ import annotations

from dataclasses import dataclass, field
import asyncio
import logging
import signal

import asyncpg

from connector.bindings import BindingCoordinator, BindingStore
from connector.bitrix import BitrixClient
from connector.config import AppConfig, load_config
from connector.credentials import CredentialScheduler, CredentialStore
from connector.gateway import GatewayClient
from connector.mock import MockTransport, default_routes
from connector.transport import Requester, Transport
from notifications import AdminAlerts, GatewayWebhookServer, create_admin_alerts, start_gateway_webhook
from services.db import PgBindingStore, PgCredentialStore, ensure_connector_schema
from services.memory import MemoryBindingStore, MemoryCredentialStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    config: AppConfig
    transport: Requester
    gateway: GatewayClient
    bitrix: BitrixClient
    binding_store: BindingStore
    credential_store: CredentialStore
    scheduler: CredentialScheduler
    coordinator: BindingCoordinator
    alerts: AdminAlerts | None = None
    webhook: GatewayWebhookServer | None = None
    pool: asyncpg.Pool | None = None
    unsubscribers: list = field(default_factory=list)

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.coordinator.stop_all()
        for unsubscribe in self.unsubscribers:
            unsubscribe()
        if self.webhook is not None:
            await self.webhook.stop()
        if self.alerts is not None:
            await self.alerts.close()
        await self.transport.close()
        if self.pool is not None:
            await self.pool.close()


def build_transport(config: AppConfig) -> Requester:
    if config.mode == "mock":
        logger.info("API_MODE=mock: using the in-process mock transport")
        return MockTransport(default_routes())
    return Transport(config.base_url, config=config.transport, bearer=config.bearer)


async def build_stores(config: AppConfig) -> tuple[BindingStore, CredentialStore, asyncpg.Pool | None]:
    if config.db_dsn:
        pool = await asyncpg.create_pool(dsn=config.db_dsn, min_size=1, max_size=5)
        async with pool.acquire() as conn:
            await ensure_connector_schema(conn)
        return PgBindingStore(pool), PgCredentialStore(pool), pool
    if config.mode != "mock":
        logger.warning("DB_DSN is not set: bindings and credentials live in memory only")
    return MemoryBindingStore(), MemoryCredentialStore(), None


async def build_runtime(config: AppConfig) -> Runtime:
    transport = build_transport(config)
    gateway = GatewayClient(transport, timeout=config.request_timeout)
    bitrix = BitrixClient(transport, timeout=config.request_timeout)
    binding_store, credential_store, pool = await build_stores(config)

    alerts = create_admin_alerts(config.alerts.bot_token, config.alerts.admin_ids)
    if alerts is None:
        logger.info("Admin alerts disabled (BOT_TOKEN / ADMIN_TG_IDS not set)")

    scheduler = CredentialScheduler(
        credential_store,
        bitrix,
        config=config.refresh,
        on_reconnect_required=alerts.reconnect_required if alerts else None,
    )
    coordinator = BindingCoordinator(
        config.tenant_id,
        binding_store,
        gateway,
        poll_config=config.poll,
    )
    runtime = Runtime(
        config=config,
        transport=transport,
        gateway=gateway,
        bitrix=bitrix,
        binding_store=binding_store,
        credential_store=credential_store,
        scheduler=scheduler,
        coordinator=coordinator,
        alerts=alerts,
        pool=pool,
    )
    if alerts is not None:
        runtime.unsubscribers.append(coordinator.subscribe(alerts.binding_changed))
    return runtime


async def start_runtime(runtime: Runtime) -> None:
    runtime.scheduler.start()
    webhook = runtime.config.webhook
    if webhook.enabled:
        try:
            runtime.webhook = await start_gateway_webhook(
                runtime.binding_store,
                {runtime.coordinator.tenant_id: runtime.coordinator},
                host=webhook.host,
                port=webhook.port,
                token=webhook.token,
                secret=webhook.secret,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to start Evolution webhook server: %s", exc)
    else:
        logger.info("Evolution webhook server disabled (EVOLUTION_WEBHOOK_PORT not set)")


async def main() -> None:
    config = load_config()
    runtime = await build_runtime(config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    try:
        await start_runtime(runtime)
        logger.info("Connector running for tenant %s (mode=%s)", config.tenant_id, config.mode)
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await runtime.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
