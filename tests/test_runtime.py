"""
Tests for the service wiring, the admin alerts and the in-memory stores.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from connector.bindings import Binding, BindingStatus
from connector.config import load_config
from connector.credentials import Credential
from connector.errors import MissingRefreshToken, PersistenceFailure
from connector.events import BindingEvent
from connector.mock import MockTransport
from main import build_runtime, start_runtime
from notifications.alerts import AdminAlerts, create_admin_alerts
from services.memory import MemoryBindingStore, MemoryCredentialStore


class TestRuntime:
    @pytest.mark.asyncio
    async def test_mock_mode_wiring(self):
        runtime = await build_runtime(load_config({"API_MODE": "mock", "TENANT_ID": "acme"}))
        try:
            assert isinstance(runtime.transport, MockTransport)
            assert isinstance(runtime.binding_store, MemoryBindingStore)
            assert runtime.alerts is None
            assert runtime.coordinator.tenant_id == "acme"

            await start_runtime(runtime)
            assert runtime.webhook is None
            lines = await runtime.bitrix.list_lines()
            assert [line.id for line in lines.value] == ["15", "16"]
        finally:
            await runtime.close()


class TestAdminAlerts:
    def _alerts(self, fail_for=()):
        bot = MagicMock()

        async def send_message(chat_id, text):
            if chat_id in fail_for:
                raise RuntimeError("blocked")

        bot.send_message = AsyncMock(side_effect=send_message)
        return AdminAlerts(bot, [1, 2]), bot

    @pytest.mark.asyncio
    async def test_reconnect_required_reaches_every_admin(self):
        alerts, bot = self._alerts(fail_for=(1,))
        credential = Credential(subject="user-1", portal_url="https://acme.bitrix24.com.br", access_token="a")

        await alerts.reconnect_required(credential, MissingRefreshToken("Refresh token not available"))

        assert bot.send_message.await_count == 2
        text = bot.send_message.await_args.args[1]
        assert "https://acme.bitrix24.com.br" in text

    @pytest.mark.asyncio
    async def test_only_lost_sessions_are_reported(self):
        alerts, bot = self._alerts()
        binding = Binding(tenant_id="t", line_id="15", instance_id="evo_1", status=BindingStatus.CLOSED)

        await alerts.binding_changed(BindingEvent("t", "15", BindingStatus.CONNECTING, binding, "webhook"))
        bot.send_message.assert_not_awaited()

        await alerts.binding_changed(BindingEvent("t", "15", BindingStatus.OPEN, binding, "webhook"))
        assert bot.send_message.await_count == 2

    def test_disabled_without_token_or_admins(self):
        assert create_admin_alerts(None, [1]) is None
        assert create_admin_alerts("123:abc", []) is None


class TestMemoryStores:
    @pytest.mark.asyncio
    async def test_one_active_binding_per_line(self):
        store = MemoryBindingStore()
        await store.insert(Binding(tenant_id="t", line_id="15", instance_id="evo_1"))

        with pytest.raises(PersistenceFailure):
            await store.insert(Binding(tenant_id="t", line_id="15", instance_id="evo_2"))
        await store.insert(Binding(tenant_id="other", line_id="15", instance_id="evo_3"))

        assert [b.instance_id for b in await store.list("t")] == ["evo_1"]

    @pytest.mark.asyncio
    async def test_returned_rows_are_copies(self):
        store = MemoryBindingStore()
        saved = await store.insert(Binding(tenant_id="t", line_id="15", instance_id="evo_1"))
        saved.status = BindingStatus.OPEN

        assert (await store.get("t", "15")).status is BindingStatus.PENDING_QR

    @pytest.mark.asyncio
    async def test_activate_retires_previous_credential(self):
        store = MemoryCredentialStore()
        await store.activate(Credential(subject="u", portal_url="p", access_token="a-1"))
        await store.activate(Credential(subject="u", portal_url="p", access_token="a-2"))

        active = await store.list_active()
        assert [c.access_token for c in active] == ["a-2"]
        assert len(store.rows) == 2

    @pytest.mark.asyncio
    async def test_update_without_active_credential_fails(self):
        store = MemoryCredentialStore()

        with pytest.raises(PersistenceFailure):
            await store.update_tokens(Credential(subject="u", portal_url="p", access_token="a"))
