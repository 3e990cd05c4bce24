"""Notification subsystem exports."""

from .alerts import AdminAlerts, create_admin_alerts
from .webhook import GatewayWebhookServer, start_gateway_webhook, verify_signature

__all__ = [
    "AdminAlerts",
    "create_admin_alerts",
    "GatewayWebhookServer",
    "start_gateway_webhook",
    "verify_signature",
]
