"""
Messaging-gateway (Evolution connector) facade.

Every operation is a POST to one action endpoint with ``{"action": ..., ...}``.
The facade only shapes requests and checks replies; retries belong to the
transport.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
import logging

from .config import DEFAULT_REQUEST_TIMEOUT
from .result import Ok, Result, check_reply
from .transport import RequestSpec, Requester

logger = logging.getLogger(__name__)

GATEWAY_ENDPOINT = "/evolution-connector-v2"

_CODE_KEYS = ("qr_base64", "base64", "qrcode")
_STATE_KEYS = ("state", "status")


@dataclass(slots=True)
class GatewayInstance:
    id: str
    state: str | None = None
    label: str | None = None
    owner: str | None = None
    profile_name: str | None = None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "GatewayInstance":
        return cls(
            id=str(data.get("id") or data.get("instanceName") or data.get("name") or ""),
            state=extract_state(data),
            label=data.get("label"),
            owner=data.get("owner"),
            profile_name=data.get("profileName"),
        )


def extract_state(payload: Any) -> str | None:
    """Read the connection state from the gateway's loosely shaped replies."""
    if not isinstance(payload, Mapping):
        return None
    for key in _STATE_KEYS:
        value = payload.get(key)
        if isinstance(value, Mapping):
            nested = extract_state(value)
            if nested:
                return nested
        elif isinstance(value, str) and value:
            return value
    data = payload.get("data")
    if isinstance(data, Mapping):
        return extract_state(data)
    return None


def extract_pairing_code(payload: Any) -> str | None:
    """Return the pairing-code image payload, if the reply carries one."""
    if not isinstance(payload, Mapping):
        return None
    for key in _CODE_KEYS:
        value = payload.get(key)
        if isinstance(value, Mapping):
            nested = extract_pairing_code(value)
            if nested:
                return nested
        elif isinstance(value, str) and value:
            return value
    data = payload.get("data")
    if isinstance(data, Mapping):
        return extract_pairing_code(data)
    return None


class GatewayClient:
    def __init__(
        self,
        transport: Requester,
        *,
        endpoint: str = GATEWAY_ENDPOINT,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._transport = transport
        self._endpoint = endpoint
        self._timeout = timeout

    async def _call(self, action: str, **params: Any) -> Result[Any]:
        body = {"action": action}
        body.update({key: value for key, value in params.items() if value is not None})
        logger.debug("Gateway %s %s", action, params)
        result = await self._transport.request(
            RequestSpec(url=self._endpoint, method="POST", body=body, timeout=self._timeout)
        )
        return check_reply(result, action)

    async def diag(self) -> Result[Any]:
        return await self._call("diag")

    async def list_instances(self) -> Result[list[GatewayInstance]]:
        result = await self._call("list_instances")
        if not result.ok:
            return result
        payload = result.value if isinstance(result.value, Mapping) else {}
        items = payload.get("instances") or []
        return Ok([GatewayInstance.from_payload(item) for item in items if isinstance(item, Mapping)])

    async def ensure_line_session(self, line_id: str) -> Result[Any]:
        return await self._call("ensure_line_session", lineId=line_id)

    async def start_session_for_line(self, line_id: str, number: str | None = None) -> Result[Any]:
        return await self._call("start_session_for_line", lineId=line_id, number=number)

    async def get_status_for_line(self, line_id: str) -> Result[Any]:
        return await self._call("get_status_for_line", lineId=line_id)

    async def get_qr_for_line(self, line_id: str) -> Result[Any]:
        return await self._call("get_qr_for_line", lineId=line_id)

    async def test_send(self, line_id: str, to: str, text: str = "Ping") -> Result[Any]:
        return await self._call("test_send", lineId=line_id, to=to, text=text)

    async def bind_line(self, instance_id: str, line_id: str) -> Result[Any]:
        return await self._call("bind_line", instanceId=instance_id, lineId=line_id)

    async def bind_openline(self, line_id: str, instance_name: str) -> Result[Any]:
        return await self._call("bind_openline", lineId=line_id, instanceName=instance_name)


__all__ = [
    "GATEWAY_ENDPOINT",
    "GatewayClient",
    "GatewayInstance",
    "extract_pairing_code",
    "extract_state",
]
