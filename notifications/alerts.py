"""Telegram alerts for operators (aiogram)."""

from __future__ import annotations

import logging
from typing import Iterable

from aiogram import Bot

from connector.bindings import Binding, BindingStatus
from connector.credentials import Credential
from connector.errors import ConnectorError
from connector.events import BindingEvent

logger = logging.getLogger(__name__)


class AdminAlerts:
    def __init__(self, bot: Bot, admin_ids: Iterable[int]) -> None:
        self.bot = bot
        self.admin_ids = tuple(admin_ids)

    async def _broadcast(self, text: str) -> int:
        delivered = 0
        for admin_id in self.admin_ids:
            try:
                await self.bot.send_message(admin_id, text)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to notify admin %s: %s", admin_id, exc)
        return delivered

    async def reconnect_required(self, credential: Credential, error: ConnectorError) -> None:
        text = (
            "⚠️ Bitrix24 needs to be reconnected\n"
            f"Portal: {credential.portal_url}\n"
            f"Account: {credential.subject}\n"
            f"Reason: {error}"
        )
        await self._broadcast(text)

    async def binding_changed(self, event: BindingEvent) -> None:
        """Tell operators when a paired line drops its session."""
        if event.previous is not BindingStatus.OPEN:
            return
        if event.current.status not in (BindingStatus.CLOSED, BindingStatus.DISCONNECTED):
            return
        await self._broadcast(_lost_session_text(event.current))

    async def close(self) -> None:
        await self.bot.session.close()


def _lost_session_text(binding: Binding) -> str:
    line = binding.line_name or binding.line_id
    return (
        "📵 WhatsApp session lost\n"
        f"Line: {line}\n"
        f"Instance: {binding.instance_id}\n"
        f"Status: {binding.status.value}"
    )


def create_admin_alerts(bot_token: str | None, admin_ids: Iterable[int]) -> AdminAlerts | None:
    ids = tuple(admin_ids)
    if not bot_token or not ids:
        return None
    return AdminAlerts(Bot(bot_token), ids)


__all__ = ["AdminAlerts", "create_admin_alerts"]
