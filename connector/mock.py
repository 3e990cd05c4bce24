"""In-process transport answering the connector endpoints with canned data."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping
import inspect
import logging

from .errors import TransportFailure
from .result import Err, Ok, Result
from .transport import RequestSpec

logger = logging.getLogger(__name__)

MockHandler = Callable[[RequestSpec], Any | Awaitable[Any]]

# 1x1 transparent PNG
MOCK_QR_BASE64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="
)


class MockTransport:
    """
    Route table keyed by ``"METHOD /path"``.

    A ``"* /path"`` key matches any method. Handlers may be sync or async;
    an exception raised by a handler becomes ``Err(TransportFailure)``.
    """

    def __init__(self, routes: Mapping[str, MockHandler]) -> None:
        self._routes = dict(routes)
        self.calls: list[RequestSpec] = []

    async def close(self) -> None:
        return None

    async def request(self, spec: RequestSpec) -> Result[Any]:
        self.calls.append(spec)
        path = spec.url.split("?", 1)[0]
        key = f"{spec.method} {spec.url}"
        handler = self._routes.get(key) or self._routes.get(f"* {spec.url}") or self._routes.get(f"{spec.method} {path}")
        if handler is None:
            return Err(TransportFailure(f"Mock route not found: {key}", status=404))
        try:
            value = handler(spec)
            if inspect.isawaitable(value):
                value = await value
        except Exception as exc:  # noqa: BLE001 - mirrors a failed network call
            return Err(TransportFailure(str(exc) or type(exc).__name__))
        return Ok(value)


def _action(spec: RequestSpec) -> str | None:
    body = spec.body if isinstance(spec.body, Mapping) else {}
    return body.get("action")


def _gateway(spec: RequestSpec) -> Mapping[str, Any]:
    action = _action(spec)
    line = (spec.body or {}).get("lineId", "15")
    if action == "diag":
        return {"ok": True, "steps": {"fetchInstances": "mock-ok"}}
    if action == "list_instances":
        return {"instances": [{"id": f"evo_line_{line}", "state": "open"}]}
    if action == "get_qr_for_line":
        return {"line": line, "qr_base64": MOCK_QR_BASE64}
    if action == "get_status_for_line":
        return {"line": line, "state": "connecting"}
    if action == "ensure_line_session":
        return {"line": line, "instance": f"evo_line_{line}"}
    if action == "start_session_for_line":
        return {"line": line, "base64": MOCK_QR_BASE64}
    if action == "test_send":
        return {"result": {"success": True, "messageId": "mock-123"}}
    if action in ("bind_line", "bind_openline"):
        return {"success": True}
    raise ValueError(f"mock unknown action: {action}")


def _openlines(spec: RequestSpec) -> Mapping[str, Any]:
    action = _action(spec)
    if action == "list_lines":
        return {"lines": [{"id": "15", "name": "Suporte"}, {"id": "16", "name": "Vendas"}]}
    if action == "bind_line":
        return {"success": True}
    return {"lines": []}


def _connector_manager(spec: RequestSpec) -> Mapping[str, Any]:
    action = _action(spec)
    if action == "get_status":
        return {"result": {"registered": True, "active": True, "connector": "evolution_whatsapp"}}
    return {"result": True, "action": action}


def _oauth(spec: RequestSpec) -> Mapping[str, Any]:
    body = spec.body if isinstance(spec.body, Mapping) else {}
    if not body.get("portalUrl"):
        return {"success": False, "code": "INVALID_PAYLOAD", "error": "Missing required parameters"}
    return {
        "success": True,
        "data": {
            "access_token": "mock-access-token",
            "refresh_token": "mock-refresh-token",
            "expires_in": 3600,
            "domain": body["portalUrl"].split("://", 1)[-1].rstrip("/"),
        },
    }


def default_routes() -> dict[str, MockHandler]:
    return {
        "POST /evolution-connector-v2": _gateway,
        "POST /bitrix-openlines": _openlines,
        "POST /bitrix-openlines-manager": _connector_manager,
        "POST /bitrix-events": lambda spec: {"ok": True, "portal": "https://mock.bitrix24.com.br"},
        "POST /bitrix-oauth-exchange": _oauth,
        "POST /bitrix-oauth-refresh": _oauth,
    }


__all__ = ["MOCK_QR_BASE64", "MockHandler", "MockTransport", "default_routes"]
