"""Tests for the Flask API routes."""

import pytest

import bot as app_module
from state_machine import DealStatus


@pytest.fixture
def client(store, ledger, publisher, notifier, arbiter):
    app_module.configure(app_module.build_services(
        None,
        store=store,
        ledger=ledger,
        publisher=publisher,
        notifier=notifier,
        arbiter_ids=[arbiter.telegram_id],
        platform_address='EQ_platform',
        settlement_delay=0,
    ))
    app_module.flask_app.config['TESTING'] = True
    with app_module.flask_app.test_client() as test_client:
        yield test_client
    app_module.configure(None)


class TestErrors:
    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'ok'

    def test_missing_telegram_id(self, client, channel):
        response = client.post('/api/deals', json={'channel_id': channel.id, 'amount': 10})

        assert response.status_code == 400
        assert response.get_json()['kind'] == 'InvalidRequest'

    def test_unknown_user(self, client, channel):
        response = client.post('/api/deals', json={
            'telegram_id': 424242, 'channel_id': channel.id, 'amount': 10
        })

        assert response.status_code == 403

    def test_outsider_reads_deal(self, client, outsider, make_deal):
        deal = make_deal()

        response = client.get(f'/api/deal/{deal.id}?telegram_id={outsider.telegram_id}')

        assert response.status_code == 403
        body = response.get_json()
        assert body == {'success': False, 'error': body['error'], 'kind': 'Forbidden'}

    def test_missing_deal(self, client, advertiser):
        response = client.get(f'/api/deal/nope?telegram_id={advertiser.telegram_id}')

        assert response.status_code == 404

    def test_invalid_transition(self, client, advertiser, make_deal):
        deal = make_deal(status=DealStatus.POSTED, post_ref=3)

        response = client.post(f'/api/deal/{deal.id}/transition', json={
            'telegram_id': advertiser.telegram_id, 'status': 'completed'
        })

        assert response.status_code == 400
        assert response.get_json()['kind'] == 'InvalidTransition'


class TestDealRoutes:
    def test_create_listing_deal(self, client, advertiser, channel):
        response = client.post('/api/deals', json={
            'telegram_id': advertiser.telegram_id, 'channel_id': channel.id, 'amount': 10
        })

        assert response.status_code == 201
        deal = response.get_json()['deal']
        assert deal['status'] == 'pending_payment'
        assert deal['escrow_address']
        assert 'payment_received' in deal['allowed_transitions']

    def test_get_deal(self, client, advertiser, make_deal):
        deal = make_deal()

        response = client.get(f'/api/deal/{deal.id}?telegram_id={advertiser.telegram_id}')

        assert response.status_code == 200
        assert response.get_json()['deal']['label'] == 'Awaiting payment'

    def test_accept_and_reject(self, client, owner, make_deal):
        accepted = make_deal(status=DealStatus.PENDING_ACCEPTANCE, with_escrow=False)
        rejected = make_deal(status=DealStatus.PENDING_ACCEPTANCE, with_escrow=False)

        accept = client.post(f'/api/deal/{accepted.id}/accept', json={'telegram_id': owner.telegram_id})
        reject = client.post(f'/api/deal/{rejected.id}/reject', json={
            'telegram_id': owner.telegram_id, 'reason': 'Off topic'
        })

        assert accept.get_json()['deal']['status'] == 'pending_payment'
        assert reject.get_json()['deal']['status'] == 'cancelled'
        assert reject.get_json()['deal']['cancellation_reason'] == 'Off topic'

    def test_submit_creative_then_request_revision(self, client, owner, advertiser, make_deal):
        deal = make_deal(status=DealStatus.CREATIVE_PENDING, balance=10.0)

        submit = client.post(f'/api/deal/{deal.id}/transition', json={
            'telegram_id': owner.telegram_id,
            'status': 'creative_submitted',
            'creative': {'text': 'Our new app is live'},
        })
        revision = client.post(f'/api/deal/{deal.id}/revision', json={
            'telegram_id': advertiser.telegram_id, 'feedback': 'Add a link'
        })

        assert submit.status_code == 200
        assert revision.get_json()['deal']['status'] == 'creative_revision'

    def test_check_payment(self, client, ledger, advertiser, make_deal):
        deal = make_deal(balance=10.0)

        response = client.post(f'/api/deal/{deal.id}/check-payment', json={
            'telegram_id': advertiser.telegram_id
        })

        assert response.get_json()['deal']['status'] == 'creative_pending'

    def test_escrow_status(self, client, advertiser, make_deal):
        deal = make_deal(balance=4.0)

        response = client.get(
            f'/api/deal/{deal.id}/escrow/status?telegram_id={advertiser.telegram_id}'
        )

        escrow = response.get_json()['escrow']
        assert escrow['has_escrow'] is True
        assert escrow['balance'] == 4.0
        assert escrow['is_funded'] is False


class TestAdminRoutes:
    def test_resolve_dispute(self, client, ledger, arbiter, make_deal):
        deal = make_deal(status=DealStatus.DISPUTED, balance=10.0, post_ref=3)

        response = client.post(f'/api/admin/deal/{deal.id}/resolve', json={
            'telegram_id': arbiter.telegram_id, 'resolution': 'refund', 'reason': 'Deleted early'
        })

        body = response.get_json()
        assert response.status_code == 200
        assert body['result']['status'] == 'refunded'
        assert body['deal']['resolution']['reason'] == 'Deleted early'

    def test_party_cannot_resolve(self, client, advertiser, make_deal):
        deal = make_deal(status=DealStatus.DISPUTED, balance=10.0, post_ref=3)

        response = client.post(f'/api/admin/deal/{deal.id}/resolve', json={
            'telegram_id': advertiser.telegram_id, 'resolution': 'refund'
        })

        assert response.status_code == 403

    def test_recover_funds(self, client, ledger, arbiter, make_deal):
        deal = make_deal(balance=2.0)

        response = client.post('/api/admin/recover-funds', json={
            'telegram_id': arbiter.telegram_id,
            'wallet_id': deal.escrow_account_ref,
            'to_address': 'EQ_rescue',
        })

        assert response.status_code == 200
        assert response.get_json()['result']['amount'] == 2.0
        assert ledger.transfers_to('EQ_rescue')

    def test_dispute_queue(self, client, arbiter, make_deal):
        deal = make_deal(status=DealStatus.DISPUTED, balance=10.0, post_ref=3, dispute_reason='DELETED')

        listing = client.get(f'/api/admin/disputes?telegram_id={arbiter.telegram_id}')
        detail = client.get(f'/api/admin/disputes/{deal.id}?telegram_id={arbiter.telegram_id}')

        assert listing.status_code == 200
        assert listing.get_json()['count'] == 1
        assert listing.get_json()['disputes'][0]['id'] == deal.id
        assert detail.get_json()['dispute']['payout_address'] == 'EQ_owner'

    def test_party_cannot_view_disputes(self, client, advertiser, make_deal):
        deal = make_deal(status=DealStatus.DISPUTED, balance=10.0, post_ref=3)

        listing = client.get(f'/api/admin/disputes?telegram_id={advertiser.telegram_id}')
        detail = client.get(f'/api/admin/disputes/{deal.id}?telegram_id={advertiser.telegram_id}')

        assert listing.status_code == 403
        assert detail.status_code == 403


class TestUserRoutes:
    def test_set_wallet(self, client, store, outsider):
        response = client.post('/api/user/wallet', json={
            'telegram_id': outsider.telegram_id, 'wallet_address': 'EQ_payout'
        })

        assert response.status_code == 200
        assert response.get_json()['user']['wallet_address'] == 'EQ_payout'
        assert store.get_user(outsider.id).wallet_address == 'EQ_payout'

    def test_malformed_wallet_is_rejected(self, client, store, owner):
        response = client.post('/api/user/wallet', json={
            'telegram_id': owner.telegram_id, 'wallet_address': 'not-a-ton-address'
        })

        assert response.status_code == 400
        assert response.get_json()['kind'] == 'InvalidRequest'
        assert store.get_user(owner.id).wallet_address == 'EQ_owner'
