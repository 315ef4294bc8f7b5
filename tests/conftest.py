"""
Pytest fixtures for the deal orchestrator tests.

Services run against a real SQLite store in a temp directory; the ledger,
publisher and notifier are in-memory fakes.
"""

import asyncio
import itertools
from datetime import timedelta

import pytest

from deal_store import DealStore
from deals import DealService
from disputes import DisputeResolver
from errors import LedgerUnavailable, PublishFailed
from escrow import EscrowAccountManager
from models import (
    Creative, CreativeSubmission, Deal, EscrowWallet, SOURCE_LISTING, WALLET_TYPE_DEAL, utcnow
)
from publishing import VerificationOutcome
from scheduler import ReconciliationScheduler
from state_machine import DealStatus
from ton_escrow import SEND_ALL, IncomingPayment, TransferResult

ARBITER_TELEGRAM_ID = 9009
PLATFORM_ADDRESS = 'EQ_platform'


class FakeLedger:
    """In-memory ledger: balances per address plus a transfer log"""

    def __init__(self):
        self.balances = {}
        self.incoming = {}
        self.transfers = []
        self.failing_destinations = set()
        self.raising_destinations = {}
        self.yield_in_transfer = False
        self.unavailable = False
        self._counter = itertools.count(1)

    def create_account(self, owner_id=None, wallet_type=WALLET_TYPE_DEAL):
        return EscrowWallet(
            address=f"EQ_escrow_{next(self._counter)}",
            encrypted_mnemonic='encrypted-mnemonic',
            owner_id=owner_id,
            wallet_type=wallet_type,
        )

    async def balance(self, address):
        if self.unavailable:
            raise LedgerUnavailable('toncenter down')
        return self.balances.get(address, 0.0)

    async def check_incoming(self, address, expected_amount, since, tolerance=None):
        if self.unavailable:
            raise LedgerUnavailable('toncenter down')
        return self.incoming.get(address, IncomingPayment(received=False))

    @staticmethod
    def is_valid_address(address):
        return bool(address) and address.startswith(('EQ', 'UQ'))

    async def transfer(self, wallet, to_address, amount, memo=''):
        if self.yield_in_transfer:
            await asyncio.sleep(0.01)
        if to_address in self.raising_destinations:
            raise self.raising_destinations[to_address]
        if to_address in self.failing_destinations:
            return TransferResult(success=False, error='transfer rejected')
        self.transfers.append((wallet.address, to_address, amount))
        if amount == SEND_ALL:
            self.balances[wallet.address] = 0.0
        else:
            self.balances[wallet.address] = round(self.balances.get(wallet.address, 0.0) - amount, 9)
        return TransferResult(success=True, tx_ref=f"tx{len(self.transfers)}")

    def transfers_to(self, address):
        return [t for t in self.transfers if t[1] == address]


class FakePublisher:
    def __init__(self):
        self.published = []
        self.verified = []
        self.publish_error = None
        self.outcome = VerificationOutcome(exists=True, unmodified=True)
        self.is_admin = True
        self._refs = itertools.count(500)

    async def publish(self, chat_id, content):
        if self.publish_error:
            raise self.publish_error
        self.published.append((chat_id, content))
        return next(self._refs)

    async def verify(self, chat_id, post_ref, original):
        self.verified.append((chat_id, post_ref))
        return self.outcome

    async def is_still_admin(self, chat_id, telegram_user_id):
        return self.is_admin


class FakeNotifier:
    def __init__(self):
        self.events = []

    async def notify_event(self, recipient, event_type, data, actions=None, force=False):
        self.events.append((recipient, event_type, data))
        return True

    def sent(self, event_type):
        return [e for e in self.events if e[1] == event_type]

    def recipients(self, event_type):
        return [e[0] for e in self.sent(event_type)]


# =============================================================================
# INFRASTRUCTURE
# =============================================================================

@pytest.fixture
def store(tmp_path):
    deal_store = DealStore(str(tmp_path / 'deals.db'))
    deal_store.init_database()
    return deal_store


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def notifier():
    return FakeNotifier()


# =============================================================================
# RECORDS
# =============================================================================

@pytest.fixture
def advertiser(store):
    return store.add_user(1001, 'ad_buyer', 'Ada', wallet_address='EQ_advertiser')


@pytest.fixture
def owner(store):
    return store.add_user(2002, 'chan_owner', 'Omar', wallet_address='EQ_owner')


@pytest.fixture
def outsider(store):
    return store.add_user(3003, 'someone', 'Sam')


@pytest.fixture
def arbiter(store):
    return store.add_user(ARBITER_TELEGRAM_ID, 'arbiter', 'Ari')


@pytest.fixture
def channel(store, owner):
    return store.add_channel(-1001234, owner.id, username='crypto_daily', title='Crypto Daily')


# =============================================================================
# SERVICES
# =============================================================================

@pytest.fixture
def escrow(store, ledger):
    return EscrowAccountManager(
        store, ledger,
        platform_address=PLATFORM_ADDRESS,
        fee_percent=10,
        gas_reserve=0.01,
        settlement_delay=0,
        funding_tolerance=0.99,
        timeout_hours=48,
        arbiter_ids=[ARBITER_TELEGRAM_ID],
    )


@pytest.fixture
def deal_service(store, escrow, publisher, notifier):
    return DealService(
        store, escrow, publisher, notifier,
        min_amount=0.1,
        timeout_hours=48,
        default_post_duration=24,
        demo_mode=False,
        arbiter_ids=[ARBITER_TELEGRAM_ID],
    )


@pytest.fixture
def scheduler(deal_service, escrow, publisher):
    return ReconciliationScheduler(deal_service, escrow, publisher, max_concurrency=3)


@pytest.fixture
def resolver(deal_service, escrow):
    return DisputeResolver(deal_service, escrow, arbiter_ids=[ARBITER_TELEGRAM_ID])


# =============================================================================
# DEAL FACTORY
# =============================================================================

def sample_creative(text='Join <b>Crypto Daily</b> today!'):
    return Creative(text=text)


@pytest.fixture
def make_deal(store, escrow, ledger, channel, advertiser, owner):
    """Insert a deal directly in any status, optionally with a funded escrow"""
    counter = itertools.count(1)

    def make(status=DealStatus.PENDING_PAYMENT, amount=10.0, balance=None,
             with_escrow=True, with_creative=None, **fields):
        deal_status = DealStatus(status)
        if with_creative is None:
            with_creative = deal_status not in (
                DealStatus.PENDING_ACCEPTANCE, DealStatus.PENDING_PAYMENT,
                DealStatus.PAYMENT_RECEIVED, DealStatus.CREATIVE_PENDING,
            )
        fields.setdefault('auto_cancel_deadline', utcnow() + timedelta(hours=48))

        deal = Deal(
            id=f"deal{next(counter)}",
            channel_id=channel.id,
            channel_owner_id=owner.id,
            advertiser_id=advertiser.id,
            source_type=SOURCE_LISTING,
            source_id=None,
            amount=amount,
            status=deal_status,
            **fields
        )
        if with_creative:
            creative = sample_creative()
            deal.current_creative = creative
            deal.creative_history = [
                CreativeSubmission(id='c1', text=creative.text, submitted_at=creative.submitted_at)
            ]
        if with_escrow:
            wallet = escrow.ensure_account(deal)
            deal.escrow_account_ref = wallet.id
            deal.escrow_address = wallet.address
            if balance is not None:
                ledger.balances[wallet.address] = balance

        store.insert_deal(deal)
        return deal

    return make


@pytest.fixture
def failing_publish(publisher):
    publisher.publish_error = PublishFailed('bot was kicked from the channel')
    return publisher
