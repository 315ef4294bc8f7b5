"""Tests for user-driven deal operations."""

from datetime import datetime, timedelta, timezone

import pytest

from errors import (
    Forbidden, InvalidRequest, InvalidState, InvalidTransition, NotFound
)
from models import AdBrief, CREATIVE_APPROVED, CREATIVE_REJECTED, SOURCE_REQUEST, utcnow
from state_machine import DealStatus
from ton_escrow import SEND_ALL


class TestCreateDeal:
    @pytest.mark.asyncio
    async def test_listing_deal_opens_escrow(self, deal_service, store, notifier, advertiser, owner, channel):
        deal = await deal_service.create_deal(advertiser, channel.id, 10)

        assert deal.status == DealStatus.PENDING_PAYMENT
        assert deal.escrow_address.startswith('EQ_escrow_')
        assert store.get_wallet_for_deal(deal.id).address == deal.escrow_address
        assert deal.auto_cancel_deadline > utcnow()
        assert notifier.recipients('deal_created') == [owner.telegram_id]

    @pytest.mark.asyncio
    async def test_request_deal_waits_for_owner(self, deal_service, store, notifier, advertiser, owner, channel):
        ad_request = store.add_ad_request(advertiser.id, [channel.id])

        deal = await deal_service.create_deal(
            advertiser, channel.id, 5, source_type=SOURCE_REQUEST, source_id=ad_request.id
        )

        assert deal.status == DealStatus.PENDING_ACCEPTANCE
        assert deal.escrow_account_ref is None
        assert store.get_wallet_for_deal(deal.id) is None
        assert notifier.recipients('deal_request') == [owner.telegram_id]

    @pytest.mark.asyncio
    async def test_request_deal_needs_application(self, deal_service, store, advertiser, channel):
        ad_request = store.add_ad_request(advertiser.id, [])

        with pytest.raises(InvalidState):
            await deal_service.create_deal(
                advertiser, channel.id, 5, source_type=SOURCE_REQUEST, source_id=ad_request.id
            )

    @pytest.mark.asyncio
    async def test_amount_below_minimum(self, deal_service, advertiser, channel):
        with pytest.raises(InvalidRequest):
            await deal_service.create_deal(advertiser, channel.id, 0.05)

    @pytest.mark.asyncio
    async def test_cannot_buy_ad_on_own_channel(self, deal_service, owner, channel):
        with pytest.raises(Forbidden):
            await deal_service.create_deal(owner, channel.id, 10)

    @pytest.mark.asyncio
    async def test_unknown_channel(self, deal_service, advertiser):
        with pytest.raises(NotFound):
            await deal_service.create_deal(advertiser, 999, 10)

    @pytest.mark.asyncio
    async def test_brief_dict_is_parsed(self, deal_service, advertiser, channel):
        deal = await deal_service.create_deal(
            advertiser, channel.id, 10,
            brief={'suggested_text': 'Try it', 'publish_time': '2030-01-01T10:00:00Z'}
        )

        assert isinstance(deal.brief, AdBrief)
        assert deal.brief.publish_time == datetime(2030, 1, 1, 10, tzinfo=timezone.utc)


class TestAccess:
    def test_outsider_cannot_read_deal(self, deal_service, outsider, make_deal):
        deal = make_deal()

        with pytest.raises(Forbidden):
            deal_service.get_deal(deal.id, outsider)

    def test_arbiter_can_read_deal(self, deal_service, arbiter, make_deal):
        deal = make_deal()

        assert deal_service.get_deal(deal.id, arbiter).id == deal.id

    @pytest.mark.asyncio
    async def test_missing_deal(self, deal_service, advertiser):
        with pytest.raises(NotFound):
            await deal_service.request_transition('nope', advertiser, 'cancelled')


class TestRequestTransition:
    @pytest.mark.asyncio
    async def test_owner_accepts_request(self, deal_service, store, notifier, advertiser, owner, make_deal):
        deal = make_deal(status=DealStatus.PENDING_ACCEPTANCE, with_escrow=False)

        updated = await deal_service.accept_deal(deal.id, owner)

        assert updated.status == DealStatus.PENDING_PAYMENT
        assert updated.escrow_address
        assert store.get_wallet_for_deal(deal.id) is not None
        assert notifier.recipients('accepted') == [advertiser.telegram_id]

    @pytest.mark.asyncio
    async def test_advertiser_cannot_accept(self, deal_service, store, advertiser, make_deal):
        deal = make_deal(status=DealStatus.PENDING_ACCEPTANCE, with_escrow=False)

        with pytest.raises(Forbidden):
            await deal_service.request_transition(deal.id, advertiser, DealStatus.PENDING_PAYMENT)
        assert store.get_deal(deal.id).status == DealStatus.PENDING_ACCEPTANCE

    @pytest.mark.asyncio
    async def test_move_outside_table(self, deal_service, advertiser, make_deal):
        deal = make_deal(status=DealStatus.POSTED)

        with pytest.raises(InvalidTransition):
            await deal_service.request_transition(deal.id, advertiser, 'completed')

    @pytest.mark.asyncio
    async def test_unknown_status(self, deal_service, advertiser, make_deal):
        deal = make_deal()

        with pytest.raises(InvalidRequest):
            await deal_service.request_transition(deal.id, advertiser, 'teleported')

    @pytest.mark.asyncio
    async def test_owner_submits_creative(self, deal_service, notifier, advertiser, owner, make_deal):
        deal = make_deal(status=DealStatus.CREATIVE_PENDING, balance=10.0)

        updated = await deal_service.request_transition(deal.id, owner, 'creative_submitted', {
            'creative': {
                'text': 'Best VPN in town',
                'buttons': [{'text': 'Get it', 'url': 'https://example.com'}],
            }
        })

        assert updated.status == DealStatus.CREATIVE_SUBMITTED
        assert updated.current_creative.text == 'Best VPN in town'
        assert updated.current_creative.buttons[0].url == 'https://example.com'
        assert len(updated.creative_history) == 1
        assert notifier.recipients('status_changed') == [advertiser.telegram_id]

    @pytest.mark.asyncio
    async def test_creative_requires_text(self, deal_service, owner, make_deal):
        deal = make_deal(status=DealStatus.CREATIVE_PENDING)

        with pytest.raises(InvalidRequest):
            await deal_service.request_transition(
                deal.id, owner, 'creative_submitted', {'creative': {'text': '  '}}
            )

    @pytest.mark.asyncio
    async def test_creative_needs_channel_admin(self, deal_service, publisher, store, owner, make_deal):
        deal = make_deal(status=DealStatus.CREATIVE_PENDING)
        publisher.is_admin = False

        with pytest.raises(Forbidden):
            await deal_service.request_transition(
                deal.id, owner, 'creative_submitted', {'creative': {'text': 'Hi'}}
            )
        assert store.get_deal(deal.id).status == DealStatus.CREATIVE_PENDING

    @pytest.mark.asyncio
    async def test_revision_records_feedback(self, deal_service, advertiser, make_deal):
        deal = make_deal(status=DealStatus.CREATIVE_SUBMITTED)

        updated = await deal_service.request_revision(deal.id, advertiser, ' Shorter please ')

        assert updated.status == DealStatus.CREATIVE_REVISION
        assert updated.creative_history[-1].status == CREATIVE_REJECTED
        assert updated.creative_history[-1].feedback == 'Shorter please'

    @pytest.mark.asyncio
    async def test_revision_requires_feedback(self, deal_service, advertiser, make_deal):
        deal = make_deal(status=DealStatus.CREATIVE_SUBMITTED)

        with pytest.raises(InvalidRequest):
            await deal_service.request_revision(deal.id, advertiser, '')

    @pytest.mark.asyncio
    async def test_owner_schedules_approved_creative(self, deal_service, owner, make_deal):
        deal = make_deal(status=DealStatus.CREATIVE_APPROVED)

        updated = await deal_service.request_transition(
            deal.id, owner, 'scheduled', {'scheduled_time': '2030-01-01T12:00:00Z'}
        )

        assert updated.status == DealStatus.SCHEDULED
        assert updated.scheduled_time == datetime(2030, 1, 1, 12, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_schedule_falls_back_to_brief_time(self, deal_service, owner, make_deal):
        publish_time = datetime(2030, 2, 1, 9, tzinfo=timezone.utc)
        deal = make_deal(status=DealStatus.CREATIVE_APPROVED, brief=AdBrief(publish_time=publish_time))

        updated = await deal_service.request_transition(deal.id, owner, 'scheduled')

        assert updated.scheduled_time == publish_time

    @pytest.mark.asyncio
    async def test_schedule_needs_a_time(self, deal_service, owner, make_deal):
        deal = make_deal(status=DealStatus.CREATIVE_APPROVED)

        with pytest.raises(InvalidRequest):
            await deal_service.request_transition(deal.id, owner, 'scheduled')

    @pytest.mark.asyncio
    async def test_advertiser_schedules_submitted_creative(self, deal_service, advertiser, make_deal):
        deal = make_deal(status=DealStatus.CREATIVE_SUBMITTED)

        updated = await deal_service.request_transition(
            deal.id, advertiser, 'scheduled', {'scheduled_time': '2030-01-01T12:00:00+00:00'}
        )

        assert updated.status == DealStatus.SCHEDULED
        assert updated.creative_history[-1].status == CREATIVE_APPROVED
        assert updated.current_creative.approved_at is not None

    @pytest.mark.asyncio
    async def test_advertiser_opens_dispute(self, deal_service, notifier, owner, arbiter, advertiser, make_deal):
        deal = make_deal(status=DealStatus.POSTED, post_ref=42, posted_at=utcnow())

        updated = await deal_service.request_transition(
            deal.id, advertiser, 'disputed', {'reason': 'Post edited'}
        )

        assert updated.status == DealStatus.DISPUTED
        assert updated.dispute_reason == 'Post edited'
        assert notifier.recipients('disputed') == [owner.telegram_id]
        assert notifier.recipients('dispute_opened') == [arbiter.telegram_id]

    @pytest.mark.asyncio
    async def test_transition_refreshes_deadline(self, deal_service, owner, make_deal):
        deal = make_deal(
            status=DealStatus.CREATIVE_PENDING,
            auto_cancel_deadline=utcnow() + timedelta(minutes=5),
        )

        updated = await deal_service.request_transition(
            deal.id, owner, 'creative_submitted', {'creative': {'text': 'Hi'}}
        )

        assert updated.auto_cancel_deadline > utcnow() + timedelta(hours=47)


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_funded_deal_refunds(self, deal_service, ledger, notifier, advertiser, make_deal):
        deal = make_deal(status=DealStatus.CREATIVE_PENDING, balance=10.0)

        updated = await deal_service.request_transition(deal.id, advertiser, 'cancelled')

        assert updated.status == DealStatus.REFUNDED
        assert ledger.transfers == [(deal.escrow_address, 'EQ_advertiser', SEND_ALL)]
        assert len(notifier.sent('refunded')) == 2

    @pytest.mark.asyncio
    async def test_cancel_unfunded_deal(self, deal_service, ledger, notifier, owner, advertiser, make_deal):
        deal = make_deal(status=DealStatus.PENDING_PAYMENT, balance=0.0)

        updated = await deal_service.request_transition(
            deal.id, advertiser, 'cancelled', {'reason': 'Changed my mind'}
        )

        assert updated.status == DealStatus.CANCELLED
        assert updated.cancellation_reason == 'Changed my mind'
        assert ledger.transfers == []
        assert notifier.recipients('cancelled') == [owner.telegram_id]

    @pytest.mark.asyncio
    async def test_silent_cancel_without_reason(self, deal_service, notifier, advertiser, make_deal):
        deal = make_deal(status=DealStatus.PENDING_ACCEPTANCE, with_escrow=False)

        await deal_service.request_transition(deal.id, advertiser, 'cancelled')

        assert notifier.sent('cancelled') == []

    @pytest.mark.asyncio
    async def test_owner_rejects_request(self, deal_service, notifier, advertiser, owner, make_deal):
        deal = make_deal(status=DealStatus.PENDING_ACCEPTANCE, with_escrow=False)

        updated = await deal_service.reject_deal(deal.id, owner, 'Not my audience')

        assert updated.status == DealStatus.CANCELLED
        assert updated.cancellation_reason == 'Not my audience'
        assert notifier.recipients('rejected') == [advertiser.telegram_id]

    @pytest.mark.asyncio
    async def test_advertiser_cannot_reject(self, deal_service, advertiser, make_deal):
        deal = make_deal(status=DealStatus.PENDING_ACCEPTANCE, with_escrow=False)

        with pytest.raises(Forbidden):
            await deal_service.reject_deal(deal.id, advertiser)

    @pytest.mark.asyncio
    async def test_reject_after_acceptance(self, deal_service, owner, make_deal):
        deal = make_deal(status=DealStatus.PENDING_PAYMENT)

        with pytest.raises(InvalidState):
            await deal_service.reject_deal(deal.id, owner)


class TestCheckPayment:
    @pytest.mark.asyncio
    async def test_funded_deal_advances_and_notifies_owner(self, deal_service, store, notifier, owner, advertiser, make_deal):
        deal = make_deal(balance=10.0)

        updated = await deal_service.check_payment_now(deal.id, advertiser, 'EQ_adv_wallet')

        assert updated.status == DealStatus.CREATIVE_PENDING
        assert store.get_deal(deal.id).advertiser_refund_address == 'EQ_adv_wallet'
        assert notifier.recipients('funded') == [owner.telegram_id]

    @pytest.mark.asyncio
    async def test_unfunded_deal_unchanged(self, deal_service, notifier, advertiser, make_deal):
        deal = make_deal(balance=1.0)

        updated = await deal_service.check_payment_now(deal.id, advertiser)

        assert updated.status == DealStatus.PENDING_PAYMENT
        assert notifier.sent('funded') == []

    @pytest.mark.asyncio
    async def test_other_statuses_returned_as_is(self, deal_service, ledger, advertiser, make_deal):
        deal = make_deal(status=DealStatus.SCHEDULED, balance=10.0)

        updated = await deal_service.check_payment_now(deal.id, advertiser)

        assert updated.status == DealStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_malformed_refund_address_is_rejected(self, deal_service, store, advertiser, make_deal):
        deal = make_deal(balance=10.0)

        with pytest.raises(InvalidRequest):
            await deal_service.check_payment_now(deal.id, advertiser, 'my wallet')

        stored = store.get_deal(deal.id)
        assert stored.status == DealStatus.PENDING_PAYMENT
        assert stored.advertiser_refund_address is None


class TestPayoutWallet:
    def test_wallet_is_trimmed_and_saved(self, deal_service, store, outsider):
        user = deal_service.set_payout_wallet(outsider, '  EQ_new_wallet ')

        assert user.wallet_address == 'EQ_new_wallet'
        assert store.get_user(outsider.id).wallet_address == 'EQ_new_wallet'

    @pytest.mark.parametrize('address', ['', 'not-a-ton-address', '0:zz'])
    def test_malformed_wallet_is_rejected(self, deal_service, store, owner, address):
        with pytest.raises(InvalidRequest):
            deal_service.set_payout_wallet(owner, address)

        assert store.get_user(owner.id).wallet_address == 'EQ_owner'
