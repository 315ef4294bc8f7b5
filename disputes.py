"""
Dispute Resolver
================
Arbiter decisions on disputed deals. A dispute is resolved exactly once:
the resolution record is written together with the terminal status, and a
second attempt finds the deal no longer disputed.
"""

import logging
from typing import Any, Dict, List, Optional

import config
from deals import DealService
from errors import Forbidden, InvalidRequest, InvalidState, MissingRecipientAddress, NotFound
from escrow import DisbursementResult, EscrowAccountManager
from models import (
    RESOLUTION_REFUND, RESOLUTION_RELEASE, Channel, Deal, Resolution, User, is_arbiter, utcnow
)
from state_machine import DealStatus

logger = logging.getLogger(__name__)

DECISIONS = (RESOLUTION_REFUND, RESOLUTION_RELEASE)


class DisputeResolver:
    def __init__(self, deal_service: DealService, escrow: EscrowAccountManager,
                 arbiter_ids: List[int] = None):
        self.deals = deal_service
        self.store = deal_service.store
        self.escrow = escrow
        self.arbiter_ids = config.ADMIN_TELEGRAM_IDS if arbiter_ids is None else arbiter_ids

    def _require_arbiter(self, user: User, message: str):
        if not is_arbiter(user, self.arbiter_ids):
            raise Forbidden(message)

    # =========================================================================
    # DISPUTE QUEUE
    # =========================================================================

    @staticmethod
    def _party(user: Optional[User]) -> Optional[Dict[str, Any]]:
        if not user:
            return None
        return {
            'id': user.id,
            'telegram_id': user.telegram_id,
            'username': user.username,
            'first_name': user.first_name,
        }

    @staticmethod
    def _channel(channel: Optional[Channel]) -> Optional[Dict[str, Any]]:
        if not channel:
            return None
        return {
            'id': channel.id,
            'chat_id': channel.chat_id,
            'title': channel.title,
            'username': channel.username,
        }

    def _dispute_view(self, deal: Deal) -> Dict[str, Any]:
        data = deal.to_api_dict()
        data.update({
            'advertiser': self._party(self.store.get_user(deal.advertiser_id)),
            'channel_owner': self._party(self.store.get_user(deal.channel_owner_id)),
            'channel': self._channel(self.store.get_channel(deal.channel_id)),
        })
        return data

    def list_disputes(self, arbiter: User) -> List[Dict[str, Any]]:
        """Open disputes, oldest first, with party and channel info"""
        self._require_arbiter(arbiter, "Only arbiters can view disputes")
        deals = self.store.query_deals([DealStatus.DISPUTED])
        return [self._dispute_view(deal) for deal in deals if deal.resolution is None]

    def get_dispute(self, deal_id: str, arbiter: User) -> Dict[str, Any]:
        """
        One deal as an arbiter sees it.

        Adds the addresses a resolution would pay: the channel owner's payout
        wallet and the advertiser's refund destination.
        """
        self._require_arbiter(arbiter, "Only arbiters can view disputes")
        deal = self.store.get_deal(deal_id)
        if not deal:
            raise NotFound(f"Deal {deal_id} not found")

        data = self._dispute_view(deal)
        owner = self.store.get_user(deal.channel_owner_id)
        advertiser = self.store.get_user(deal.advertiser_id)
        data['payout_address'] = owner.wallet_address if owner else None
        data['refund_address'] = (
            deal.advertiser_refund_address or (advertiser.wallet_address if advertiser else None)
        )
        return data

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    async def resolve(
        self,
        deal_id: str,
        arbiter: User,
        decision: str,
        reason: str = '',
        refund_address: str = None,
    ) -> DisbursementResult:
        """
        Settle a disputed deal in favour of one party.

        Args:
            deal_id: Deal under dispute
            arbiter: Acting user; must be a configured arbiter
            decision: 'refund' (advertiser) or 'release' (channel owner)
            reason: Free text stored on the resolution record
            refund_address: Overrides the advertiser's refund address

        Returns:
            The disbursement result; the deal ends refunded or completed
        """
        self._require_arbiter(arbiter, "Only arbiters can resolve disputes")
        if decision not in DECISIONS:
            raise InvalidRequest(f"Resolution must be one of {list(DECISIONS)}")

        deal = self.store.get_deal(deal_id)
        if not deal:
            raise NotFound(f"Deal {deal_id} not found")
        if deal.status != DealStatus.DISPUTED:
            raise InvalidState(f"Deal is {deal.status.value}, not disputed")
        if deal.resolution is not None:
            raise InvalidState("Dispute already resolved")

        # Fail before any ledger call when the winning side cannot be paid
        if decision == RESOLUTION_RELEASE:
            owner = self.store.get_user(deal.channel_owner_id)
            if not owner or not owner.wallet_address:
                raise MissingRecipientAddress("Channel owner has not set a payout wallet address")
        else:
            if refund_address:
                refund_address = self.escrow.validate_address(refund_address, "refund_address")
            advertiser = self.store.get_user(deal.advertiser_id)
            destination = (
                refund_address
                or deal.advertiser_refund_address
                or (advertiser.wallet_address if advertiser else None)
            )
            if not destination:
                raise MissingRecipientAddress("Advertiser has no refund address")

        resolution = Resolution(
            resolution=decision,
            reason=reason or '',
            resolved_by=arbiter.telegram_id,
            resolved_at=utcnow(),
        )

        if decision == RESOLUTION_RELEASE:
            result = await self.escrow.release(
                deal.id, resolution=resolution, expected_status=DealStatus.DISPUTED
            )
        else:
            result = await self.escrow.refund(
                deal.id, to_address=refund_address, resolution=resolution,
                expected_status=DealStatus.DISPUTED
            )

        logger.info(
            f"Dispute on deal {deal.id} resolved by arbiter {arbiter.telegram_id}: "
            f"{decision} -> {result.status.value}"
        )

        updated = result.deal or self.store.get_deal(deal.id)
        await self.deals.notify_parties(updated, 'dispute_resolved', {
            'resolution': 'funds released to the channel owner'
            if decision == RESOLUTION_RELEASE else 'escrow refunded to the advertiser',
            'reason': reason or None,
        })
        return result
