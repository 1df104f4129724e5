"""
Order Event Notifications
Delivers provisioning, payment and renewal events to the admin Telegram group.

Callers use the narrow Notifier contract send_notification(event, user_id, order); message
formatting stays deliberately plain. Delivery failures are logged and never propagate.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from telegram import Bot
from telegram.error import TelegramError

from models.order_models import Order

logger = logging.getLogger(__name__)

# Events emitted by the orchestration core
PAYMENT_CONFIRMED = 'payment_confirmed'
PAYMENT_FAILED = 'payment_failed'
PROVISIONING_SUCCEEDED = 'provisioning_succeeded'
PROVISIONING_PENDING = 'provisioning_pending'
PROVISIONING_FAILED = 'provisioning_failed'
RENEWAL_APPLIED = 'renewal_applied'
RENEWAL_PROVIDER_FAILED = 'renewal_provider_failed'
SERVER_ACTION_REQUESTED = 'server_action_requested'
SERVER_ACTION_PROCESSED = 'server_action_processed'

_EVENT_TITLES = {
    PAYMENT_CONFIRMED: '💳 Payment confirmed',
    PAYMENT_FAILED: '❌ Payment failed',
    PROVISIONING_SUCCEEDED: '✅ Server provisioned',
    PROVISIONING_PENDING: '⌛ Server provisioning in progress',
    PROVISIONING_FAILED: '🚨 Provisioning failed - admin action needed',
    RENEWAL_APPLIED: '🔄 Renewal applied',
    RENEWAL_PROVIDER_FAILED: '⚠️ Renewal paid but provider renew failed',
    SERVER_ACTION_REQUESTED: '🛠️ Server action requested',
    SERVER_ACTION_PROCESSED: '🛠️ Server action processed',
}


def format_event_message(event: str, user_id: Optional[str], order: Optional[Order], extra: Optional[Dict[str, Any]] = None) -> str:
    """Plain-text summary of an order event (never includes passwords)"""
    lines = [_EVENT_TITLES.get(event, event)]
    if order is not None:
        lines.append(f"Order: {order.id}")
        lines.append(f"Product: {order.product_name} {order.memory or ''}".rstrip())
        if order.provider:
            lines.append(f"Provider: {order.provider.value}")
        if order.ip_address:
            lines.append(f"IP: {order.ip_address}")
        if order.provisioning_error and event == PROVISIONING_FAILED:
            lines.append(f"Error: {order.provisioning_error}")
    if user_id:
        lines.append(f"User: {user_id}")
    for key, value in (extra or {}).items():
        lines.append(f"{key}: {value}")
    return '\n'.join(lines)


class Notifier(ABC):
    """send_notification(event, user_id, order) contract"""

    @abstractmethod
    async def send_notification(self, event: str, user_id: Optional[str], order: Optional[Order], **extra: Any) -> bool: ...


class LoggingNotifier(Notifier):
    """Fallback when no Telegram bot is configured; also records events for inspection"""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def send_notification(self, event, user_id, order, **extra) -> bool:
        self.events.append({'event': event, 'user_id': user_id, 'order_id': order.id if order else None, **extra})
        logger.info(f"📣 NOTIFY [{event}] order={order.id if order else None} user={user_id}")
        return True


class TelegramGroupNotifier(Notifier):
    """Posts order events to the configured admin group"""

    def __init__(self, bot_token: str, admin_group_id: str, bot: Optional[Bot] = None):
        self.bot = bot or Bot(token=bot_token)
        self.admin_group_id = admin_group_id

    async def send_notification(self, event, user_id, order, **extra) -> bool:
        message = format_event_message(event, user_id, order, extra)
        try:
            await self.bot.send_message(chat_id=self.admin_group_id, text=message)
            logger.debug(f"Group notification sent: {event}")
            return True
        except TelegramError as e:
            logger.error(f"❌ Failed to send {event} notification to group {self.admin_group_id}: {e}")
            return False


def build_notifier(bot_token: Optional[str], admin_group_id: Optional[str]) -> Notifier:
    if bot_token and admin_group_id:
        logger.info("📣 Telegram group notifications enabled")
        return TelegramGroupNotifier(bot_token, admin_group_id)
    logger.info("📣 Telegram not configured - notifications are logged only")
    return LoggingNotifier()


async def notify_safe(notifier: Optional[Notifier], event: str, user_id: Optional[str], order: Optional[Order], **extra: Any) -> None:
    """Send a notification without letting delivery problems reach the caller"""
    if notifier is None:
        return
    try:
        await notifier.send_notification(event, user_id, order, **extra)
    except Exception as e:
        logger.error(f"❌ Notification {event} failed: {e}")
