"""Minimal aiohttp server to accept Evolution gateway webhook callbacks."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Awaitable, Callable, Mapping

from aiohttp import web

from connector.bindings import BindingCoordinator, BindingStore
from connector.errors import PersistenceFailure
from connector.gateway import extract_pairing_code, extract_state

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/evolution/webhook"
MESSAGE_EVENTS = frozenset({"messages.upsert", "messages.update", "send.message"})
QR_EVENTS = frozenset({"qrcode.updated"})
_INSTANCE_KEYS = ("instanceName", "instance", "instance_id", "instance_name")

InboundHandler = Callable[[Mapping[str, Any]], Awaitable[bool]]


def verify_signature(secret: str, body: bytes, provided: str | None) -> bool:
    """Check an ``X-Evolution-Signature`` (``sha256=<hex>`` or bare hex)."""
    if not provided:
        return False
    value = provided.strip()
    if value.lower().startswith("sha256="):
        value = value[len("sha256="):]
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, value.lower())


class GatewayWebhookServer:
    def __init__(
        self,
        store: BindingStore,
        coordinators: Mapping[str, BindingCoordinator],
        *,
        token: str | None = None,
        secret: str | None = None,
        inbound_handler: InboundHandler | None = None,
    ) -> None:
        self.store = store
        self.coordinators = coordinators
        self.token = token
        self.secret = secret
        self.inbound_handler = inbound_handler
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(WEBHOOK_PATH, self._handle)
        app.router.add_post(WEBHOOK_PATH + "/", self._handle)
        return app

    async def start(self, host: str, port: int) -> None:
        if self._runner:
            return
        app = self.create_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()
        logger.info("Evolution webhook server listening on %s:%s", host, port)

    async def stop(self) -> None:
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Evolution webhook server stopped")

    async def _handle(self, request: web.Request) -> web.Response:
        if self.token:
            provided = request.headers.get("X-Webhook-Token") or request.rel_url.query.get("token")
            if provided != self.token:
                return web.json_response({"ok": False, "error": "unauthorized"}, status=401)

        body = await request.read()
        if self.secret and not verify_signature(self.secret, body, request.headers.get("X-Evolution-Signature")):
            logger.warning("Webhook rejected: bad signature")
            return web.json_response({"ok": False, "error": "invalid_signature"}, status=403)

        try:
            payload: Any = await request.json()
        except Exception:  # noqa: BLE001
            return web.json_response({"ok": False, "error": "invalid_json"}, status=400)
        if not isinstance(payload, Mapping):
            return web.json_response({"ok": False, "error": "invalid_json"}, status=400)

        normalized = _normalize_payload(payload)
        instance_id = _instance_of(normalized)
        if not instance_id:
            return web.json_response({"ok": False, "error": "missing_instance"}, status=400)

        event = _event_name(normalized)
        logger.info("Evolution webhook: instance=%s event=%s", instance_id, event or "-")

        if event in MESSAGE_EVENTS:
            handled = await self._handle_message(normalized)
        else:
            handled = await self._handle_status(instance_id, event, normalized)
        if not handled:
            logger.debug("Webhook payload ignored: %s", payload)
        return web.json_response({"ok": True, "handled": handled})

    async def _handle_message(self, payload: Mapping[str, Any]) -> bool:
        if self.inbound_handler is None:
            return False
        try:
            return bool(await self.inbound_handler(payload))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Inbound handler failed: %s", exc)
            return False

    async def _handle_status(self, instance_id: str, event: str | None, payload: Mapping[str, Any]) -> bool:
        state = extract_state(payload)
        code = extract_pairing_code(payload.get("data")) if event in QR_EVENTS else None
        if state is None and code is None:
            return False

        try:
            binding = await self.store.get_by_instance(instance_id)
        except PersistenceFailure as exc:
            logger.error("Webhook lookup for %s failed: %s", instance_id, exc)
            return False
        if binding is None:
            logger.info("Webhook for unknown instance %s", instance_id)
            return False
        coordinator = self.coordinators.get(binding.tenant_id)
        if coordinator is None:
            logger.warning("No coordinator for tenant %s (instance %s)", binding.tenant_id, instance_id)
            return False

        result = await coordinator.on_instance_status(instance_id, state, pairing_code=code)
        if not result.ok:
            logger.warning("Webhook status for %s not applied: %s", instance_id, result.error)
        return result.ok


async def start_gateway_webhook(
    store: BindingStore,
    coordinators: Mapping[str, BindingCoordinator],
    *,
    host: str,
    port: int,
    token: str | None = None,
    secret: str | None = None,
    inbound_handler: InboundHandler | None = None,
) -> GatewayWebhookServer:
    server = GatewayWebhookServer(
        store,
        coordinators,
        token=token,
        secret=secret,
        inbound_handler=inbound_handler,
    )
    await server.start(host, port)
    return server


def _normalize_payload(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    if "data" in payload:
        return payload
    inner = payload.get("payload")
    if isinstance(inner, Mapping):
        normalized = dict(payload)
        normalized["data"] = inner
        if "event" not in normalized:
            normalized["event"] = payload.get("action")
        return normalized
    return payload


def _event_name(payload: Mapping[str, Any]) -> str | None:
    event = payload.get("event")
    if not isinstance(event, str) or not event.strip():
        return None
    return event.strip().lower().replace("_", ".")


def _instance_of(payload: Mapping[str, Any]) -> str | None:
    for source in (payload, payload.get("data")):
        if not isinstance(source, Mapping):
            continue
        for key in _INSTANCE_KEYS:
            value = source.get(key)
            if isinstance(value, Mapping):
                value = value.get("instanceName") or value.get("name")
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


__all__ = ["GatewayWebhookServer", "start_gateway_webhook", "verify_signature"]
