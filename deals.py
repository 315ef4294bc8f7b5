"""
Deal Service
============
User-facing deal lifecycle operations: create, transition, accept/reject,
revision requests and on-demand payment checks.

Every write is a compare-and-set against the status the operation read,
so user actions and the reconciliation jobs can race on the same deal
without producing two outcomes.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

import config
from deal_store import DealStore
from errors import (
    ConcurrentModification, Forbidden, InvalidRequest, InvalidState,
    InvalidTransition, NotFound
)
from escrow import EscrowAccountManager
from models import (
    AdBrief, CREATIVE_APPROVED, CREATIVE_REJECTED, Creative, CreativeSubmission,
    Deal, SOURCE_LISTING, SOURCE_REQUEST, User, is_arbiter, parse_datetime, utcnow
)
from notifications import deal_notification_data, status_details
from state_machine import DealStateMachine, DealStatus, Role

logger = logging.getLogger(__name__)


def _parse_status(value) -> DealStatus:
    try:
        return DealStatus(value)
    except ValueError:
        raise InvalidRequest(f"Unknown deal status: {value}")


def _parse_time(value, field_name: str):
    try:
        return parse_datetime(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"Invalid {field_name}: {value}")


class DealService:
    """Deal lifecycle operations; the acting user is always passed in explicitly"""

    def __init__(
        self,
        store: DealStore,
        escrow: EscrowAccountManager,
        publisher,
        notifier,
        min_amount: float = None,
        timeout_hours: float = None,
        default_post_duration: int = None,
        demo_mode: bool = None,
        arbiter_ids: List[int] = None,
    ):
        self.store = store
        self.escrow = escrow
        self.publisher = publisher
        self.notifier = notifier
        self.min_amount = config.MIN_DEAL_AMOUNT if min_amount is None else min_amount
        self.timeout_hours = config.ESCROW_TIMEOUT_HOURS if timeout_hours is None else timeout_hours
        self.default_post_duration = (
            config.DEFAULT_POST_DURATION_HOURS
            if default_post_duration is None else default_post_duration
        )
        self.demo_mode = config.DEMO_MODE if demo_mode is None else demo_mode
        self.arbiter_ids = config.ADMIN_TELEGRAM_IDS if arbiter_ids is None else arbiter_ids

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _load(self, deal_id: str) -> Deal:
        deal = self.store.get_deal(deal_id)
        if not deal:
            raise NotFound(f"Deal {deal_id} not found")
        return deal

    @staticmethod
    def role_of(deal: Deal, user: User) -> Role:
        if user.id == deal.advertiser_id:
            return Role.ADVERTISER
        if user.id == deal.channel_owner_id:
            return Role.CHANNEL_OWNER
        raise Forbidden("You are not a party to this deal")

    def _deadline(self, now):
        return now + timedelta(hours=self.timeout_hours)

    def _notification_data(self, deal: Deal) -> Dict[str, Any]:
        return deal_notification_data(deal, self.store.get_channel(deal.channel_id))

    def _telegram_id(self, user_id: int) -> Optional[int]:
        user = self.store.get_user(user_id)
        return user.telegram_id if user else None

    async def notify_user(self, user_id: int, event_type: str, data: Dict[str, Any],
                          actions: List[Any] = None, force: bool = False):
        recipient = self._telegram_id(user_id)
        if recipient:
            await self.notifier.notify_event(recipient, event_type, data, actions, force)

    async def notify_parties(self, deal: Deal, event_type: str, extra: Dict[str, Any] = None,
                             advertiser_extra: Dict[str, Any] = None):
        """Notify both parties; ``advertiser_extra`` overrides fields for the advertiser only"""
        data = {**self._notification_data(deal), **(extra or {})}
        await self.notify_user(deal.channel_owner_id, event_type, data)
        await self.notify_user(deal.advertiser_id, event_type, {**data, **(advertiser_extra or {})})

    async def notify_arbiters(self, deal: Deal, reason: str):
        data = {**self._notification_data(deal), 'reason': reason}
        for arbiter_id in self.arbiter_ids:
            await self.notifier.notify_event(arbiter_id, 'dispute_opened', data, force=True)

    async def notify_funded(self, deal: Deal):
        await self.notify_user(
            deal.channel_owner_id, 'funded', self._notification_data(deal),
            actions=[{'text': 'Open deal', 'path': f'/deals/{deal.id}'}]
        )

    async def _require_channel_admin(self, deal: Deal):
        """The channel owner must still administer the channel to push creative"""
        channel = self.store.get_channel(deal.channel_id)
        if not channel:
            raise NotFound(f"Channel {deal.channel_id} not found")
        owner_telegram_id = self._telegram_id(deal.channel_owner_id)
        if not owner_telegram_id or not await self.publisher.is_still_admin(
            channel.chat_id, owner_telegram_id
        ):
            raise Forbidden("Channel owner is no longer an administrator of the channel")

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_deal(self, deal_id: str, user: User) -> Deal:
        deal = self._load(deal_id)
        if not is_arbiter(user, self.arbiter_ids):
            self.role_of(deal, user)
        return deal

    def set_payout_wallet(self, user: User, wallet_address: str) -> User:
        """Store the wallet used for payouts and default refunds"""
        address = self.escrow.validate_address(wallet_address, 'wallet_address')
        self.store.set_wallet_address(user.id, address)
        logger.info(f"User {user.id} set payout wallet {address[:20]}...")
        return self.store.get_user(user.id)

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_deal(
        self,
        user: User,
        channel_id: int,
        amount: float,
        source_type: str = SOURCE_LISTING,
        source_id: int = None,
        format: str = 'post',
        post_duration_hours: int = None,
        scheduled_time=None,
        brief=None,
        publish_with_image: bool = False,
    ) -> Deal:
        """
        Open a deal from a channel listing or an ad request application.

        Listing deals start in ``pending_payment`` with escrow opened right
        away; request deals wait in ``pending_acceptance`` for the channel
        owner.
        """
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            raise InvalidRequest(f"Invalid amount: {amount}")
        if amount < self.min_amount:
            raise InvalidRequest(f"Minimum deal amount is {self.min_amount} TON")

        duration = int(post_duration_hours or self.default_post_duration)
        if duration <= 0:
            raise InvalidRequest("post_duration_hours must be positive")

        if source_type not in (SOURCE_LISTING, SOURCE_REQUEST):
            raise InvalidRequest(f"Unknown source type: {source_type}")

        channel = self.store.get_channel(channel_id)
        if not channel:
            raise NotFound(f"Channel {channel_id} not found")
        is_self_trade = user.id == channel.owner_id or user.id in channel.admin_ids

        if source_type == SOURCE_LISTING:
            if is_self_trade and not self.demo_mode:
                raise Forbidden("You cannot buy an ad on your own channel")
            status = DealStatus.PENDING_PAYMENT
        else:
            ad_request = self.store.get_ad_request(source_id) if source_id is not None else None
            if not ad_request:
                raise NotFound(f"Ad request {source_id} not found")
            if ad_request.advertiser_id != user.id:
                raise Forbidden("Only the request owner can accept its applications")
            if channel.id not in ad_request.applicant_channel_ids:
                raise InvalidState("This channel did not apply to the request")
            status = DealStatus.PENDING_ACCEPTANCE

        if isinstance(brief, dict):
            brief = AdBrief.from_dict(brief)

        now = utcnow()
        deal = Deal(
            id=uuid.uuid4().hex[:12],
            channel_id=channel.id,
            channel_owner_id=channel.owner_id,
            advertiser_id=user.id,
            source_type=source_type,
            source_id=source_id,
            amount=amount,
            status=status,
            format=format or 'post',
            post_duration_hours=duration,
            created_at=now,
            auto_cancel_deadline=self._deadline(now),
            brief=brief,
            publish_with_image=bool(publish_with_image),
            scheduled_time=_parse_time(scheduled_time, 'scheduled_time'),
            is_demo=bool(self.demo_mode and is_self_trade),
        )

        if status == DealStatus.PENDING_PAYMENT:
            wallet = self.escrow.ensure_account(deal)
            deal.escrow_account_ref = wallet.id
            deal.escrow_address = wallet.address

        self.store.insert_deal(deal)
        logger.info(
            f"Deal {deal.id} created by user {user.id} for channel {channel.id}: "
            f"{amount} TON via {source_type}"
        )

        event = 'deal_created' if source_type == SOURCE_LISTING else 'deal_request'
        await self.notify_user(
            deal.channel_owner_id, event, self._notification_data(deal),
            actions=[{'text': 'Review deal', 'path': f'/deals/{deal.id}'}]
        )
        return deal

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def _transition_changes(self, deal: Deal, target: DealStatus,
                            payload: Dict[str, Any], now) -> Dict[str, Any]:
        """Field changes that accompany a move into ``target``"""
        changes: Dict[str, Any] = {}
        history = list(deal.creative_history)

        if target == DealStatus.CREATIVE_SUBMITTED:
            data = payload.get('creative') or payload
            try:
                creative = Creative(
                    text=data.get('text'),
                    media_urls=list(data.get('media_urls') or []),
                    buttons=data.get('buttons') or [],
                    submitted_at=now,
                )
            except (ValueError, AttributeError) as e:
                raise InvalidRequest(f"Invalid creative: {e}")
            history.append(CreativeSubmission(
                id=uuid.uuid4().hex[:8],
                text=creative.text,
                media_urls=list(creative.media_urls),
                buttons=list(creative.buttons),
                submitted_at=now,
            ))
            changes['current_creative'] = creative
            changes['creative_history'] = history
            if payload.get('scheduled_time'):
                changes['scheduled_time'] = _parse_time(payload['scheduled_time'], 'scheduled_time')

        elif target == DealStatus.CREATIVE_APPROVED or (
            target == DealStatus.SCHEDULED and deal.status == DealStatus.CREATIVE_SUBMITTED
        ):
            if not history or not deal.current_creative:
                raise InvalidState("There is no creative to approve")
            history[-1].status = CREATIVE_APPROVED
            deal.current_creative.approved_at = now
            changes['current_creative'] = deal.current_creative
            changes['creative_history'] = history

        elif target == DealStatus.CREATIVE_REVISION:
            if not history:
                raise InvalidState("There is no creative to revise")
            history[-1].status = CREATIVE_REJECTED
            history[-1].feedback = payload.get('feedback')
            changes['creative_history'] = history

        elif target == DealStatus.DISPUTED:
            changes['dispute_reason'] = payload.get('reason') or 'Opened by advertiser'

        elif target == DealStatus.CANCELLED:
            changes['cancellation_reason'] = payload.get('reason')

        elif target == DealStatus.PENDING_PAYMENT:
            wallet = self.escrow.ensure_account(deal)
            changes['escrow_account_ref'] = wallet.id
            changes['escrow_address'] = wallet.address

        if target == DealStatus.SCHEDULED:
            scheduled = (
                _parse_time(payload.get('scheduled_time'), 'scheduled_time')
                or deal.scheduled_time
                or (deal.brief.publish_time if deal.brief else None)
            )
            if not scheduled:
                raise InvalidRequest("scheduled_time is required to schedule a post")
            changes['scheduled_time'] = scheduled

        return changes

    async def request_transition(
        self,
        deal_id: str,
        user: User,
        target_status,
        payload: Dict[str, Any] = None,
    ) -> Deal:
        """
        Move a deal to ``target_status`` on behalf of one of its parties.

        Checks run in order: deal exists, user is a party, the transition
        table allows the move, the user's role may request it.
        """
        target = _parse_status(target_status)
        payload = payload or {}

        deal = self._load(deal_id)
        role = self.role_of(deal, user)

        if not DealStateMachine.can_transition(deal.status, target):
            allowed = [s.value for s in DealStateMachine.get_allowed_transitions(deal.status)]
            raise InvalidTransition(
                f"Invalid transition: {deal.status.value} -> {target.value}. Allowed: {allowed}"
            )
        if not DealStateMachine.role_can_request(role, deal.status, target):
            raise Forbidden(f"The {role.value} cannot move a deal from {deal.status.value} to {target.value}")

        if target in (DealStatus.CREATIVE_SUBMITTED, DealStatus.SCHEDULED):
            await self._require_channel_admin(deal)

        if target == DealStatus.CANCELLED and deal.escrow_account_ref is not None:
            # Funds held in escrow go back to the advertiser instead of being stranded
            balance = await self.escrow.current_balance(deal)
            if balance > 0:
                result = await self.escrow.refund(deal.id, expected_status=deal.status)
                logger.info(
                    f"Deal {deal.id} cancelled by {role.value} {user.id} with funds held; "
                    f"refunded -> {result.status.value}"
                )
                updated = result.deal or self._load(deal.id)
                await self.notify_parties(
                    updated, 'refunded',
                    {'refund_amount': result.amount, 'reason': payload.get('reason') or 'Deal cancelled'}
                )
                return updated

        now = utcnow()
        changes = self._transition_changes(deal, target, payload, now)
        updated = self.store.update_deal(
            deal.id, deal.status,
            status=target,
            last_activity_at=now,
            auto_cancel_deadline=self._deadline(now),
            **changes
        )
        if not updated:
            raise ConcurrentModification("Deal was changed by another process, please retry")

        logger.info(
            f"Deal state transition: {deal.id} {deal.status.value} -> {target.value} "
            f"by {role.value} {user.id}"
        )
        await self._notify_transition(updated, role, payload)
        return updated

    async def _notify_transition(self, deal: Deal, role: Role, payload: Dict[str, Any]):
        counterparty = deal.channel_owner_id if role == Role.ADVERTISER else deal.advertiser_id
        data = self._notification_data(deal)
        actions = [{'text': 'Open deal', 'path': f'/deals/{deal.id}'}]

        if deal.status == DealStatus.PENDING_PAYMENT:
            await self.notify_user(counterparty, 'accepted', data, actions)
        elif deal.status == DealStatus.CANCELLED:
            if payload.get('reason'):
                await self.notify_user(counterparty, 'cancelled', {**data, 'reason': payload['reason']})
        elif deal.status == DealStatus.DISPUTED:
            await self.notify_user(counterparty, 'disputed', {**data, 'reason': deal.dispute_reason})
            await self.notify_arbiters(deal, deal.dispute_reason)
        else:
            details = status_details(deal.status.value, {
                'feedback': payload.get('feedback'),
                'scheduled_time': data.get('scheduled_time'),
            })
            await self.notify_user(counterparty, 'status_changed', {**data, 'details': details}, actions)

    def system_transition(self, deal: Deal, target: DealStatus, **changes: Any) -> Deal:
        """
        Apply a machine-driven move (posting, verification, timeouts).

        Skips the role matrix but not the transition table. Callers decide
        whether the move refreshes the activity timestamps.
        """
        target = DealStatus(target)
        if not DealStateMachine.can_transition(deal.status, target):
            raise InvalidTransition(
                f"Invalid transition: {deal.status.value} -> {target.value}"
            )
        updated = self.store.update_deal(deal.id, deal.status, status=target, **changes)
        if not updated:
            raise ConcurrentModification(f"Deal {deal.id} changed since it was read")
        logger.info(f"Deal state transition: {deal.id} {deal.status.value} -> {target.value} by system")
        return updated

    # =========================================================================
    # CONVENIENCE OPERATIONS
    # =========================================================================

    async def accept_deal(self, deal_id: str, user: User) -> Deal:
        """Channel owner accepts an ad request; escrow opens for payment"""
        return await self.request_transition(deal_id, user, DealStatus.PENDING_PAYMENT)

    async def reject_deal(self, deal_id: str, user: User, reason: str = None) -> Deal:
        deal = self._load(deal_id)
        if self.role_of(deal, user) != Role.CHANNEL_OWNER:
            raise Forbidden("Only the channel owner can reject a deal")
        if deal.status != DealStatus.PENDING_ACCEPTANCE:
            raise InvalidState(f"Only deals awaiting acceptance can be rejected, not {deal.status.value}")

        reason = reason or 'Declined by channel owner'
        now = utcnow()
        updated = self.store.update_deal(
            deal.id, deal.status,
            status=DealStatus.CANCELLED,
            cancellation_reason=reason,
            last_activity_at=now,
        )
        if not updated:
            raise ConcurrentModification("Deal was changed by another process, please retry")

        logger.info(f"Deal {deal.id} rejected by channel owner {user.id}: {reason}")
        await self.notify_user(
            deal.advertiser_id, 'rejected', {**self._notification_data(updated), 'reason': reason}
        )
        return updated

    async def request_revision(self, deal_id: str, user: User, feedback: str) -> Deal:
        if not feedback or not feedback.strip():
            raise InvalidRequest("Feedback is required when requesting a revision")
        return await self.request_transition(
            deal_id, user, DealStatus.CREATIVE_REVISION, {'feedback': feedback.strip()}
        )

    async def check_payment_now(self, deal_id: str, user: User,
                                advertiser_wallet_address: str = None) -> Deal:
        """Run the funding check for one deal immediately instead of waiting for the poll"""
        deal = self._load(deal_id)
        role = self.role_of(deal, user)
        if deal.status != DealStatus.PENDING_PAYMENT:
            return deal

        refund_address = advertiser_wallet_address if role == Role.ADVERTISER else None
        result = await self.escrow.confirm_funding(deal.id, refund_address=refund_address)
        if result.advanced:
            await self.notify_funded(result.deal)
        return result.deal or self._load(deal.id)
