"""
Tests for the gateway and CRM facades over the mock transport.

Verifies:
- Request shaping (endpoint, action, camelCase parameters)
- Decoding of instances, lines and OAuth grants
- Application errors in a 200 body become RemoteRejected
- Transport failures pass through untouched
"""

import pytest

from connector.bitrix import BitrixClient, TokenGrant
from connector.errors import RemoteRejected, TransportFailure
from connector.gateway import GatewayClient, GatewayInstance, extract_pairing_code, extract_state
from connector.mock import MOCK_QR_BASE64, MockTransport, default_routes
from connector.transport import RequestSpec


class TestGatewayClient:
    @pytest.mark.asyncio
    async def test_start_session_returns_pairing_code(self, gateway, mock_transport):
        result = await gateway.start_session_for_line("15", number="5511999999999")

        assert result.ok
        assert extract_pairing_code(result.value) == MOCK_QR_BASE64
        spec = mock_transport.calls[-1]
        assert spec.url == "/evolution-connector-v2"
        assert spec.method == "POST"
        assert spec.body == {"action": "start_session_for_line", "lineId": "15", "number": "5511999999999"}

    @pytest.mark.asyncio
    async def test_optional_parameters_are_dropped(self, gateway, mock_transport):
        await gateway.start_session_for_line("16")

        assert mock_transport.calls[-1].body == {"action": "start_session_for_line", "lineId": "16"}

    @pytest.mark.asyncio
    async def test_status_and_qr(self, gateway):
        status = await gateway.get_status_for_line("15")
        qr = await gateway.get_qr_for_line("15")

        assert extract_state(status.value) == "connecting"
        assert extract_pairing_code(qr.value) == MOCK_QR_BASE64

    @pytest.mark.asyncio
    async def test_list_instances(self, gateway):
        result = await gateway.list_instances()

        assert result.ok
        assert result.value == [GatewayInstance(id="evo_line_15", state="open")]

    @pytest.mark.asyncio
    async def test_bind_and_test_send_shape(self, gateway, mock_transport):
        assert (await gateway.bind_line("evo_1", "15")).ok
        assert mock_transport.calls[-1].body == {"action": "bind_line", "instanceId": "evo_1", "lineId": "15"}

        assert (await gateway.bind_openline("15", "evo_1")).ok
        assert mock_transport.calls[-1].body == {"action": "bind_openline", "lineId": "15", "instanceName": "evo_1"}

        sent = await gateway.test_send("15", "5511999999999")
        assert sent.ok
        assert mock_transport.calls[-1].body["text"] == "Ping"

    @pytest.mark.asyncio
    async def test_error_field_becomes_remote_rejected(self):
        transport = MockTransport(
            {"POST /evolution-connector-v2": lambda spec: {"error": "instance not found", "code": "E404"}}
        )
        result = await GatewayClient(transport).ensure_line_session("99")

        assert not result.ok
        assert isinstance(result.error, RemoteRejected)
        assert result.error.code == "E404"
        assert "ensure_line_session rejected" in result.error.message

    @pytest.mark.asyncio
    async def test_transport_failure_passes_through(self):
        def explode(spec):
            raise ConnectionError("network down")

        result = await GatewayClient(MockTransport({"POST /evolution-connector-v2": explode})).diag()

        assert not result.ok
        assert isinstance(result.error, TransportFailure)
        assert "network down" in result.error.message


class TestExtractors:
    def test_state_from_nested_shapes(self):
        assert extract_state({"state": "open"}) == "open"
        assert extract_state({"instance": {"state": "close"}, "status": {"state": "close"}}) == "close"
        assert extract_state({"data": {"status": "connecting"}}) == "connecting"
        assert extract_state({"data": {}}) is None
        assert extract_state("open") is None

    def test_pairing_code_keys(self):
        assert extract_pairing_code({"qrcode": {"base64": "abc"}}) == "abc"
        assert extract_pairing_code({"data": {"qr_base64": "xyz"}}) == "xyz"
        assert extract_pairing_code({"code": "E500"}) is None


class TestBitrixClient:
    @pytest.mark.asyncio
    async def test_list_lines(self, bitrix):
        result = await bitrix.list_lines()

        assert result.ok
        assert [(line.id, line.name) for line in result.value] == [("15", "Suporte"), ("16", "Vendas")]

    @pytest.mark.asyncio
    async def test_bind_line_shape(self, bitrix, mock_transport):
        assert (await bitrix.bind_line("15", "evo_1")).ok
        spec = mock_transport.calls[-1]
        assert spec.url == "/bitrix-openlines"
        assert spec.body == {"action": "bind_line", "lineId": "15", "instanceId": "evo_1"}

    @pytest.mark.asyncio
    async def test_connector_management_actions(self, bitrix, mock_transport):
        status = await bitrix.get_status()
        assert status.value["result"]["registered"] is True

        created = await bitrix.create_line("Suporte 2")
        assert created.ok
        assert mock_transport.calls[-1].url == "/bitrix-openlines-manager"
        assert mock_transport.calls[-1].body == {"action": "create_line", "name": "Suporte 2"}

    @pytest.mark.asyncio
    async def test_token_status(self, bitrix, mock_transport):
        result = await bitrix.token_status()

        assert result.ok
        assert mock_transport.calls[-1].url == "/bitrix-events"

    @pytest.mark.asyncio
    async def test_refresh_token_decodes_grant(self, bitrix, mock_transport):
        result = await bitrix.refresh_token(
            "https://acme.bitrix24.com.br", "r-1", client_id="cid", client_secret="sec"
        )

        assert result.ok
        assert result.value == TokenGrant(
            access_token="mock-access-token",
            expires_in=3600,
            refresh_token="mock-refresh-token",
            domain="acme.bitrix24.com.br",
        )
        assert mock_transport.calls[-1].body == {
            "portalUrl": "https://acme.bitrix24.com.br",
            "refreshToken": "r-1",
            "clientId": "cid",
            "clientSecret": "sec",
        }

    @pytest.mark.asyncio
    async def test_oauth_failure_in_200_body(self, bitrix):
        result = await bitrix.exchange_code("", "code-1", client_id=None, client_secret=None)

        assert not result.ok
        assert isinstance(result.error, RemoteRejected)
        assert result.error.code == "INVALID_PAYLOAD"

    @pytest.mark.asyncio
    async def test_grant_without_access_token_is_rejected(self):
        routes = default_routes()
        routes["POST /bitrix-oauth-refresh"] = lambda spec: {"success": True, "data": {"expires_in": 10}}
        result = await BitrixClient(MockTransport(routes)).refresh_token(
            "https://acme.bitrix24.com.br", "r-1", client_id=None, client_secret=None
        )

        assert not result.ok
        assert "access token missing" in result.error.message


class TestMockTransport:
    @pytest.mark.asyncio
    async def test_unknown_route_is_404(self, mock_transport):
        result = await mock_transport.request(RequestSpec(url="/nope"))

        assert not result.ok
        assert result.error.status == 404

    @pytest.mark.asyncio
    async def test_async_handlers_and_wildcard_method(self):
        async def handler(spec):
            return {"method": spec.method}

        transport = MockTransport({"* /thing": handler})
        result = await transport.request(RequestSpec(url="/thing", method="GET"))

        assert result.value == {"method": "GET"}
