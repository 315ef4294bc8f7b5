"""
Notifications Module
====================
Fire-and-forget Telegram notifications for deal events with anti-spam
protection. Delivery failures are logged and swallowed; callers never see
them.
"""

import html
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, WebAppInfo
from telegram.error import TelegramError

import config
from models import Button, Channel, Deal, to_iso
from state_machine import DealStateMachine

logger = logging.getLogger(__name__)

NOTIFICATION_COOLDOWN_SECONDS = 60  # Minimum seconds between same notifications


# =============================================================================
# MESSAGE TEMPLATES
# =============================================================================

TEMPLATES = {
    'deal_request': (
        "📩 <b>New Ad Request</b>\n\n"
        "An advertiser wants to place an ad on <b>{channel}</b>.\n\n"
        "💰 Amount: <b>{amount} TON</b>\n"
        "📝 Next step: accept or reject the deal\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'deal_created': (
        "🆕 <b>New Deal</b>\n\n"
        "A new deal was opened for <b>{channel}</b>.\n\n"
        "💰 Amount: <b>{amount} TON</b>\n"
        "📝 Waiting for the advertiser's payment\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'accepted': (
        "✅ <b>Deal Accepted</b>\n\n"
        "Your ad request for <b>{channel}</b> has been approved!\n\n"
        "💰 Escrow Amount: <b>{amount} TON</b>\n"
        "🏦 Escrow Address: <code>{escrow_address}</code>\n"
        "📝 Next step: fund the escrow to proceed\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'rejected': (
        "❌ <b>Deal Rejected</b>\n\n"
        "<b>{channel}</b> declined your ad request.\n"
        "📝 Reason: {reason}\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'funded': (
        "💰 <b>Payment Received</b>\n\n"
        "Escrow has been funded for <b>{channel}</b>.\n\n"
        "Amount: <b>{amount} TON</b>\n"
        "📝 Next step: submit the ad creative\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'status_changed': (
        "🔔 <b>Deal Update</b>\n\n"
        "Your deal with <b>{channel}</b> is now: <b>{label}</b>\n"
        "{details}\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'posted': (
        "📢 <b>Ad Posted!</b>\n\n"
        "Your advertisement is now live on <b>{channel}</b>.\n\n"
        "💰 Escrow: <b>{amount} TON</b>\n"
        "⏳ Hold Period: {hold_hours} hours\n\n"
        "<i>Funds will be released after successful verification.</i>\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'publish_failed': (
        "⚠️ <b>Auto-Post Failed</b>\n\n"
        "The scheduled ad on <b>{channel}</b> could not be published.\n"
        "The deal was sent to dispute for review.\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'disputed': (
        "⚠️ <b>Deal Disputed</b>\n\n"
        "The deal with <b>{channel}</b> is under dispute.\n"
        "📝 Reason: {reason}\n\n"
        "<i>An arbiter will review it.</i>\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'dispute_opened': (
        "🛡 <b>Dispute Needs Review</b>\n\n"
        "Channel: <b>{channel}</b>\n"
        "💰 Escrow: <b>{amount} TON</b>\n"
        "📝 Reason: {reason}\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'completed': (
        "🎉 <b>Deal Completed!</b>\n\n"
        "Funds have been released for your deal with <b>{channel}</b>.\n\n"
        "💸 Released: <b>{payout} TON</b>\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'refunded': (
        "↩️ <b>Escrow Refunded</b>\n\n"
        "The escrow for <b>{channel}</b> has been refunded.\n\n"
        "💸 Refunded: <b>{refund_amount} TON</b>\n"
        "📝 Reason: {reason}\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'cancelled': (
        "❌ <b>Deal Cancelled</b>\n\n"
        "Your deal with <b>{channel}</b> has been cancelled.\n"
        "📝 Reason: {reason}\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'timeout': (
        "⌛ <b>Deal Expired</b>\n\n"
        "Your deal with <b>{channel}</b> expired after {timeout_hours} hours without activity.\n"
        "{details}\n"
        "<i>Deal #{deal_id}</i>"
    ),
    'dispute_resolved': (
        "⚖️ <b>Dispute Resolved</b>\n\n"
        "The dispute for <b>{channel}</b> was resolved: <b>{resolution}</b>.\n"
        "📝 Reason: {reason}\n\n"
        "<i>Deal #{deal_id}</i>"
    ),
}

# Extra line per status for 'status_changed'
STATUS_DETAILS = {
    'creative_submitted': "📝 A creative is waiting for your review.",
    'creative_approved': "✅ The creative was approved. Please schedule the post.",
    'creative_revision': "✏️ Changes requested: {feedback}",
    'scheduled': "⏰ Posting time: {scheduled_time}",
    'verified': "✔️ Delivery verified, releasing funds.",
}


# =============================================================================
# NOTIFICATION FUNCTIONS
# =============================================================================

def get_notification_message(event_type: str, data: Dict[str, Any]) -> Optional[str]:
    """
    Get formatted notification message for an event type.

    Args:
        event_type: Template key (accepted, funded, posted, etc.)
        data: Template variables; values are HTML-escaped

    Returns:
        Formatted message string or None if event type unknown
    """
    template = TEMPLATES.get(event_type)
    if not template:
        logger.warning(f"Unknown notification event type: {event_type}")
        return None

    defaults = {
        'channel': 'Channel',
        'amount': 0,
        'deal_id': 0,
        'hold_hours': config.DEFAULT_POST_DURATION_HOURS,
        'timeout_hours': config.ESCROW_TIMEOUT_HOURS,
        'scheduled_time': 'Soon',
        'escrow_address': '-',
        'reason': 'Not specified',
        'label': '',
        'details': '',
        'payout': 0,
        'refund_amount': 0,
        'resolution': '',
    }
    merged = {**defaults, **{k: v for k, v in data.items() if v is not None}}
    escaped = {k: html.escape(str(v)) if k != 'details' else v for k, v in merged.items()}
    try:
        return template.format(**escaped).strip()
    except KeyError as e:
        logger.error(f"Missing template variable for {event_type}: {e}")
        return None


def status_details(status: str, data: Dict[str, Any]) -> str:
    line = STATUS_DETAILS.get(status)
    if not line:
        return ''
    values = {k: html.escape(str(v)) for k, v in data.items() if v is not None}
    values.setdefault('feedback', '-')
    values.setdefault('scheduled_time', 'Soon')
    return line.format(**values)


def deal_notification_data(deal: Deal, channel: Optional[Channel] = None) -> Dict[str, Any]:
    """Template variables shared by every deal notification"""
    return {
        'deal_id': deal.id,
        'amount': deal.amount,
        'channel': channel.display_name if channel else f"channel {deal.channel_id}",
        'hold_hours': deal.post_duration_hours,
        'escrow_address': deal.escrow_address,
        'status': deal.status.value,
        'updated_at': to_iso(deal.updated_at),
        'label': DealStateMachine.get_label(deal.status),
        'scheduled_time': (
            deal.scheduled_time.strftime('%Y-%m-%d %H:%M UTC') if deal.scheduled_time else None
        ),
    }


class TelegramNotifier:
    """Notification service; every public method is safe to fire and forget"""

    def __init__(self, bot, webapp_url: str = None,
                 cooldown_seconds: int = NOTIFICATION_COOLDOWN_SECONDS):
        self.bot = bot
        self.webapp_url = config.WEBAPP_URL if webapp_url is None else webapp_url
        self.cooldown_seconds = cooldown_seconds
        # Rate limiting: last send time per (recipient, deal, event)
        self._notification_cache: Dict[str, datetime] = {}

    def should_send_notification(self, recipient: int, deal_id: str, event_type: str) -> bool:
        """Anti-spam: True if this notification was not sent within the cooldown"""
        cache_key = f"{recipient}:{deal_id}:{event_type}"
        last_sent = self._notification_cache.get(cache_key)
        if last_sent:
            elapsed = (datetime.now() - last_sent).total_seconds()
            if elapsed < self.cooldown_seconds:
                logger.debug(f"Notification throttled: {cache_key} ({elapsed:.0f}s ago)")
                return False
        return True

    def mark_notification_sent(self, recipient: int, deal_id: str, event_type: str):
        self._notification_cache[f"{recipient}:{deal_id}:{event_type}"] = datetime.now()

    def _keyboard(self, actions: Optional[List[Any]]) -> Optional[InlineKeyboardMarkup]:
        rows = []
        for action in actions or []:
            if isinstance(action, Button):
                rows.append([InlineKeyboardButton(text=action.text, url=action.url)])
            elif action.get('web_app') or action.get('path') is not None:
                url = action.get('web_app') or f"{self.webapp_url.rstrip('/')}{action['path']}"
                if url.startswith('http'):
                    rows.append([InlineKeyboardButton(text=action['text'], web_app=WebAppInfo(url=url))])
            elif action.get('url'):
                rows.append([InlineKeyboardButton(text=action['text'], url=action['url'])])
        return InlineKeyboardMarkup(rows) if rows else None

    async def notify(self, recipient: int, message: str, actions: List[Any] = None) -> bool:
        """
        Send a message to a user.

        Returns:
            True if Telegram accepted the message; failures return False
        """
        if not recipient:
            return False
        try:
            await self.bot.send_message(
                chat_id=recipient,
                text=message,
                parse_mode='HTML',
                reply_markup=self._keyboard(actions),
                disable_web_page_preview=True
            )
            return True
        except TelegramError as e:
            logger.error(f"Failed to send notification to {recipient}: {e}")
        except Exception as e:
            logger.error(f"Unexpected notification error for {recipient}: {e}")
        return False

    async def notify_event(
        self,
        recipient: int,
        event_type: str,
        data: Dict[str, Any],
        actions: List[Any] = None,
        force: bool = False,
    ) -> bool:
        """Render a template and send it, honouring the anti-spam cooldown"""
        deal_id = data.get('deal_id', 0)
        # Each deal revision is a distinct event; only repeats of the same one are throttled
        throttle_key = ':'.join(
            str(part) for part in (event_type, data.get('status'), data.get('updated_at')) if part
        )
        if not force and not self.should_send_notification(recipient, deal_id, throttle_key):
            return False

        message = get_notification_message(event_type, data)
        if not message:
            return False

        sent = await self.notify(recipient, message, actions)
        if sent:
            self.mark_notification_sent(recipient, deal_id, throttle_key)
            logger.info(f"Sent {event_type} notification to {recipient} for deal {deal_id}")
        return sent
