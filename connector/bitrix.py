"""
Bitrix24 (CRM) facade: open lines, connector management and OAuth.

The OAuth endpoints answer HTTP 200 even when the exchange failed, so the
reply body's ``success`` flag is what decides the outcome.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
import logging

from .config import DEFAULT_REQUEST_TIMEOUT
from .errors import RemoteRejected
from .result import Err, Ok, Result, check_reply
from .transport import RequestSpec, Requester

logger = logging.getLogger(__name__)

OPENLINES_ENDPOINT = "/bitrix-openlines"
CONNECTOR_ENDPOINT = "/bitrix-openlines-manager"
EVENTS_ENDPOINT = "/bitrix-events"
OAUTH_EXCHANGE_ENDPOINT = "/bitrix-oauth-exchange"
OAUTH_REFRESH_ENDPOINT = "/bitrix-oauth-refresh"

DEFAULT_EXPIRES_IN = 3600


@dataclass(slots=True)
class BitrixLine:
    id: str
    name: str
    code: str | None = None
    active: bool | None = None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "BitrixLine":
        return cls(
            id=str(data.get("id") or data.get("ID") or ""),
            name=str(data.get("name") or data.get("NAME") or ""),
            code=data.get("code"),
            active=data.get("active"),
        )


@dataclass(slots=True, frozen=True)
class TokenGrant:
    access_token: str
    expires_in: int = DEFAULT_EXPIRES_IN
    refresh_token: str | None = None
    domain: str | None = None


def _decode_grant(result: Result[Any], operation: str) -> Result[TokenGrant]:
    if not result.ok:
        return result
    payload = result.value if isinstance(result.value, Mapping) else {}
    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
    access_token = data.get("access_token")
    if not access_token:
        return Err(RemoteRejected(f"{operation} rejected: access token missing", details=payload))
    try:
        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
    except (TypeError, ValueError):
        expires_in = DEFAULT_EXPIRES_IN
    return Ok(
        TokenGrant(
            access_token=str(access_token),
            expires_in=expires_in,
            refresh_token=data.get("refresh_token") or None,
            domain=data.get("domain") or None,
        )
    )


class BitrixClient:
    def __init__(
        self,
        transport: Requester,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        openlines_endpoint: str = OPENLINES_ENDPOINT,
        connector_endpoint: str = CONNECTOR_ENDPOINT,
        events_endpoint: str = EVENTS_ENDPOINT,
        oauth_exchange_endpoint: str = OAUTH_EXCHANGE_ENDPOINT,
        oauth_refresh_endpoint: str = OAUTH_REFRESH_ENDPOINT,
    ) -> None:
        self._transport = transport
        self._timeout = timeout
        self._openlines = openlines_endpoint
        self._connector = connector_endpoint
        self._events = events_endpoint
        self._oauth_exchange = oauth_exchange_endpoint
        self._oauth_refresh = oauth_refresh_endpoint

    async def _post(self, url: str, operation: str, body: Mapping[str, Any]) -> Result[Any]:
        payload = {key: value for key, value in body.items() if value is not None}
        result = await self._transport.request(
            RequestSpec(url=url, method="POST", body=payload, timeout=self._timeout)
        )
        return check_reply(result, operation)

    async def token_status(self) -> Result[Any]:
        return await self._post(self._events, "token_status", {"action": "token_status"})

    # open lines

    async def list_lines(self) -> Result[list[BitrixLine]]:
        result = await self._post(self._openlines, "list_lines", {"action": "list_lines"})
        if not result.ok:
            return result
        payload = result.value if isinstance(result.value, Mapping) else {}
        items = payload.get("lines") or []
        return Ok([BitrixLine.from_payload(item) for item in items if isinstance(item, Mapping)])

    async def bind_line(self, line_id: str, instance_id: str) -> Result[Any]:
        return await self._post(
            self._openlines,
            "bind_line",
            {"action": "bind_line", "lineId": line_id, "instanceId": instance_id},
        )

    # connector management

    async def _manage(self, action: str, **params: Any) -> Result[Any]:
        return await self._post(self._connector, action, {"action": action, **params})

    async def get_status(self) -> Result[Any]:
        return await self._manage("get_status")

    async def register_connector(self, **params: Any) -> Result[Any]:
        return await self._manage("register_connector", **params)

    async def publish_connector_data(self, **params: Any) -> Result[Any]:
        return await self._manage("publish_connector_data", **params)

    async def add_to_contact_center(self, **params: Any) -> Result[Any]:
        return await self._manage("add_to_contact_center", **params)

    async def create_line(self, name: str) -> Result[Any]:
        return await self._manage("create_line", name=name)

    async def activate_connector(self, **params: Any) -> Result[Any]:
        return await self._manage("activate_connector", **params)

    # oauth

    async def exchange_code(
        self,
        portal_url: str,
        code: str,
        *,
        client_id: str | None,
        client_secret: str | None,
    ) -> Result[TokenGrant]:
        result = await self._post(
            self._oauth_exchange,
            "oauth_exchange",
            {"portalUrl": portal_url, "code": code, "clientId": client_id, "clientSecret": client_secret},
        )
        return _decode_grant(result, "oauth_exchange")

    async def refresh_token(
        self,
        portal_url: str,
        refresh_token: str,
        *,
        client_id: str | None,
        client_secret: str | None,
    ) -> Result[TokenGrant]:
        result = await self._post(
            self._oauth_refresh,
            "oauth_refresh",
            {
                "portalUrl": portal_url,
                "refreshToken": refresh_token,
                "clientId": client_id,
                "clientSecret": client_secret,
            },
        )
        return _decode_grant(result, "oauth_refresh")


__all__ = [
    "BitrixClient",
    "BitrixLine",
    "CONNECTOR_ENDPOINT",
    "EVENTS_ENDPOINT",
    "OAUTH_EXCHANGE_ENDPOINT",
    "OAUTH_REFRESH_ENDPOINT",
    "OPENLINES_ENDPOINT",
    "TokenGrant",
]
