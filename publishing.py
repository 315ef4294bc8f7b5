"""
Publishing Module
=================
Posts ads to Telegram channels and checks that they stay up unchanged.

Post verification runs an ordered list of probe strategies. Each probe
either returns a conclusive outcome or raises VerificationInconclusive to
hand over to the next one. When every probe is inconclusive the post is
assumed intact: a missed dispute costs less than a wrongful one.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import BadRequest, TelegramError

import config
from errors import PublishFailed, VerificationInconclusive
from models import Button

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = (
    'message to forward not found',
    'message to copy not found',
    'message not found',
    'message_id_invalid',
)

_TAG_RE = re.compile(r'<[^>]+>')


@dataclass
class PostContent:
    text: str
    media_url: Optional[str] = None
    buttons: List[Button] = field(default_factory=list)


@dataclass
class VerificationOutcome:
    exists: bool
    unmodified: bool
    strategy: str = 'default'


def normalize_text(text: Optional[str]) -> str:
    """Compare posts on visible text only: no markup, collapsed whitespace"""
    plain = html.unescape(_TAG_RE.sub('', text or ''))
    return ' '.join(plain.split())


def _is_not_found(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in NOT_FOUND_MARKERS)


def build_keyboard(buttons: List[Button]) -> Optional[InlineKeyboardMarkup]:
    if not buttons:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(text=b.text, url=b.url)] for b in buttons]
    )


# =============================================================================
# VERIFICATION STRATEGIES
# =============================================================================

async def _delete_probe(bot, chat_id: int, message_id: int):
    try:
        await bot.delete_message(chat_id=chat_id, message_id=message_id)
    except TelegramError as e:
        logger.debug(f"Could not delete probe message {message_id}: {e}")


class ForwardProbe:
    """Forward the post into the probe chat and compare its text"""

    name = 'forward'

    async def check(self, bot, chat_id: int, post_ref: int, original: PostContent,
                    probe_chat_id: int) -> VerificationOutcome:
        try:
            forwarded = await bot.forward_message(
                chat_id=probe_chat_id,
                from_chat_id=chat_id,
                message_id=post_ref,
                disable_notification=True
            )
        except BadRequest as e:
            if _is_not_found(e):
                return VerificationOutcome(exists=False, unmodified=False, strategy=self.name)
            raise VerificationInconclusive(f"Forward probe failed: {e}") from e
        except TelegramError as e:
            raise VerificationInconclusive(f"Forward probe failed: {e}") from e

        try:
            current = forwarded.text or forwarded.caption or ''
            unmodified = normalize_text(current) == normalize_text(original.text)
            return VerificationOutcome(exists=True, unmodified=unmodified, strategy=self.name)
        finally:
            await _delete_probe(bot, probe_chat_id, forwarded.message_id)


class CopyProbe:
    """Copy the post; proves existence but cannot read back the text"""

    name = 'copy'

    async def check(self, bot, chat_id: int, post_ref: int, original: PostContent,
                    probe_chat_id: int) -> VerificationOutcome:
        try:
            copied = await bot.copy_message(
                chat_id=probe_chat_id,
                from_chat_id=chat_id,
                message_id=post_ref,
                disable_notification=True
            )
        except BadRequest as e:
            if _is_not_found(e):
                return VerificationOutcome(exists=False, unmodified=False, strategy=self.name)
            raise VerificationInconclusive(f"Copy probe failed: {e}") from e
        except TelegramError as e:
            raise VerificationInconclusive(f"Copy probe failed: {e}") from e

        await _delete_probe(bot, probe_chat_id, copied.message_id)
        return VerificationOutcome(exists=True, unmodified=True, strategy=self.name)


DEFAULT_STRATEGIES = (ForwardProbe(), CopyProbe())


# =============================================================================
# PUBLISHER
# =============================================================================

class TelegramPublisher:
    """Publishing service backed by the Telegram Bot API"""

    def __init__(self, bot, probe_chat_id: int = None, strategies=None):
        self.bot = bot
        self.probe_chat_id = config.VERIFICATION_CHAT_ID if probe_chat_id is None else probe_chat_id
        self.strategies = list(strategies if strategies is not None else DEFAULT_STRATEGIES)

    async def publish(self, chat_id: int, content: PostContent) -> int:
        """
        Post an ad to a channel.

        Returns:
            The Telegram message id of the new post
        """
        keyboard = build_keyboard(content.buttons)
        try:
            if content.media_url:
                message = await self.bot.send_photo(
                    chat_id=chat_id,
                    photo=content.media_url,
                    caption=content.text,
                    parse_mode='HTML',
                    reply_markup=keyboard
                )
            else:
                message = await self.bot.send_message(
                    chat_id=chat_id,
                    text=content.text,
                    parse_mode='HTML',
                    reply_markup=keyboard
                )
        except TelegramError as e:
            logger.error(f"Error posting to channel {chat_id}: {e}")
            raise PublishFailed(f"Could not post to channel {chat_id}: {e}") from e

        logger.info(f"Posted to channel {chat_id}, message_id={message.message_id}")
        return message.message_id

    async def verify(self, chat_id: int, post_ref: int, original: PostContent) -> VerificationOutcome:
        """Run the probes in order; assume intact if none is conclusive"""
        if not self.probe_chat_id:
            logger.warning("No verification chat configured, assuming posts are intact")
            return VerificationOutcome(exists=True, unmodified=True)

        for strategy in self.strategies:
            try:
                outcome = await strategy.check(
                    self.bot, chat_id, post_ref, original, self.probe_chat_id
                )
            except VerificationInconclusive as e:
                logger.warning(f"{strategy.name} probe inconclusive for {chat_id}/{post_ref}: {e}")
                continue
            logger.debug(f"Post {chat_id}/{post_ref} checked by {strategy.name}: {outcome}")
            return outcome

        logger.warning(f"All probes inconclusive for {chat_id}/{post_ref}, assuming intact")
        return VerificationOutcome(exists=True, unmodified=True)

    async def is_still_admin(self, chat_id: int, telegram_user_id: int) -> bool:
        """Whether the user is still creator/administrator of the channel"""
        try:
            member = await self.bot.get_chat_member(chat_id, telegram_user_id)
        except TelegramError as e:
            logger.error(f"Error verifying admin {telegram_user_id} in {chat_id}: {e}")
            return False
        is_admin = member.status in ['creator', 'administrator']
        logger.info(f"Verified admin: user={telegram_user_id}, channel={chat_id}, is_admin={is_admin}")
        return is_admin
