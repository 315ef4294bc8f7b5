"""
Escrow Account Manager
======================
Opens per-deal escrow wallets, confirms funding, and disburses them.

Disbursement rules:
- release pays the channel owner ``amount - fee - gas reserve``, waits for
  the ledger to settle, then sweeps everything left to the platform wallet
- refund sends the whole balance back to the advertiser
- a deal already in a terminal state is never paid out twice; repeated
  calls return success without touching the ledger
- at most one disbursement sequence can start per deal (claimed in the store)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Tuple

import config
from deal_store import DealStore
from errors import (
    ConcurrentModification, Forbidden, InvalidRequest, InvalidState,
    InvalidTransition, LedgerTransferFailed, MissingRecipientAddress, NotFound
)
from models import Deal, EscrowWallet, Resolution, User, is_arbiter, utcnow
from state_machine import DealStateMachine, DealStatus
from ton_escrow import SEND_ALL

logger = logging.getLogger(__name__)

NANO = Decimal("0.000000001")

DISBURSEMENT_RELEASE = 'release'
DISBURSEMENT_REFUND = 'refund'


def _dec(value) -> Decimal:
    return Decimal(str(value))


@dataclass
class FundingResult:
    funded: bool
    observed_amount: float = 0.0
    advanced: bool = False
    deal: Optional[Deal] = None


@dataclass
class DisbursementResult:
    success: bool
    status: Optional[DealStatus] = None
    tx_ref: Optional[str] = None
    fee_tx_ref: Optional[str] = None
    amount: float = 0.0
    platform_fee: float = 0.0
    already_settled: bool = False
    fee_error: Optional[str] = None
    deal: Optional[Deal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'status': self.status.value if self.status else None,
            'tx_ref': self.tx_ref,
            'fee_tx_ref': self.fee_tx_ref,
            'amount': self.amount,
            'platform_fee': self.platform_fee,
            'already_settled': self.already_settled,
            'fee_error': self.fee_error,
        }


class EscrowAccountManager:
    """Sole owner of escrow wallets and their signing material"""

    def __init__(
        self,
        store: DealStore,
        ledger,
        platform_address: str = None,
        fee_percent: float = None,
        gas_reserve: float = None,
        settlement_delay: float = None,
        funding_tolerance: float = None,
        timeout_hours: float = None,
        arbiter_ids: List[int] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.platform_address = (
            config.PLATFORM_WALLET_ADDRESS if platform_address is None else platform_address
        )
        self.fee_percent = config.PLATFORM_FEE_PERCENT if fee_percent is None else fee_percent
        self.gas_reserve = config.GAS_RESERVE if gas_reserve is None else gas_reserve
        self.settlement_delay = (
            config.SETTLEMENT_DELAY_SECONDS if settlement_delay is None else settlement_delay
        )
        self.funding_tolerance = (
            config.FUNDING_TOLERANCE if funding_tolerance is None else funding_tolerance
        )
        self.timeout_hours = config.ESCROW_TIMEOUT_HOURS if timeout_hours is None else timeout_hours
        self.arbiter_ids = config.ADMIN_TELEGRAM_IDS if arbiter_ids is None else arbiter_ids

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _load(self, deal_id: str) -> Deal:
        deal = self.store.get_deal(deal_id)
        if not deal:
            raise NotFound(f"Deal {deal_id} not found")
        return deal

    def _wallet_for(self, deal: Deal) -> Optional[EscrowWallet]:
        if deal.escrow_account_ref is not None:
            wallet = self.store.get_wallet(deal.escrow_account_ref)
            if wallet:
                return wallet
        return self.store.get_wallet_for_deal(deal.id)

    @staticmethod
    def _check_expected(deal: Deal, expected_status: Optional[DealStatus]):
        if expected_status is not None and deal.status != DealStatus(expected_status):
            raise ConcurrentModification(
                f"Deal {deal.id} is {deal.status.value}, expected {DealStatus(expected_status).value}"
            )

    def is_funded_amount(self, observed: float, amount: float) -> bool:
        """Observed funds count as payment once they reach the tolerance share"""
        return _dec(observed) >= _dec(amount) * _dec(self.funding_tolerance)

    def split_release(self, amount: float) -> Tuple[Decimal, Decimal]:
        """
        Split a deal amount into (platform fee, owner payout).

        For amount 10 at 10% the payout before gas reserve is 9; the
        platform later sweeps whatever is left in the wallet, not a fixed fee.
        """
        fee = (_dec(amount) * _dec(self.fee_percent) / Decimal(100)).quantize(NANO, ROUND_DOWN)
        payout = (_dec(amount) - fee - _dec(self.gas_reserve)).quantize(NANO, ROUND_DOWN)
        return fee, payout

    def _deadline(self):
        return utcnow() + timedelta(hours=self.timeout_hours)

    def validate_address(self, address: str, field_name: str = "address") -> str:
        """Return the trimmed address or raise InvalidRequest when the ledger rejects it"""
        address = (address or "").strip()
        if not self.ledger.is_valid_address(address):
            raise InvalidRequest(f"Invalid TON address for {field_name}: {address or '(empty)'}")
        return address

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    def ensure_account(self, deal: Deal) -> EscrowWallet:
        """Return the deal's wallet, creating and persisting one if needed"""
        wallet = self._wallet_for(deal)
        if wallet:
            return wallet

        wallet = self.ledger.create_account(owner_id=deal.advertiser_id)
        wallet.deal_id = deal.id
        wallet = self.store.insert_wallet(wallet)
        logger.info(f"Opened escrow wallet {wallet.id} for deal {deal.id}")
        return wallet

    async def open(self, deal_id: str) -> EscrowWallet:
        """Create the deal's escrow wallet (idempotent) and link it to the deal"""
        deal = self._load(deal_id)
        wallet = self.ensure_account(deal)
        if deal.escrow_account_ref == wallet.id:
            return wallet

        updated = self.store.update_deal(
            deal.id, deal.status,
            escrow_account_ref=wallet.id,
            escrow_address=wallet.address,
        )
        if not updated:
            raise ConcurrentModification(f"Deal {deal.id} changed while opening escrow")
        return wallet

    async def current_balance(self, deal: Deal) -> float:
        """Fresh ledger balance of the deal's escrow; 0 when it has none"""
        wallet = self._wallet_for(deal)
        if not wallet:
            return 0.0
        balance = await self.ledger.balance(wallet.address)
        self.store.update_wallet(wallet.id, balance=balance)
        return balance

    async def get_escrow_status(self, deal_id: str) -> Dict[str, Any]:
        deal = self._load(deal_id)
        wallet = self._wallet_for(deal)
        if not wallet:
            return {'has_escrow': False, 'deal_id': deal.id, 'status': deal.status.value}

        balance = await self.current_balance(deal)
        return {
            'has_escrow': True,
            'deal_id': deal.id,
            'status': deal.status.value,
            'address': wallet.address,
            'balance': balance,
            'expected_amount': deal.amount,
            'is_funded': self.is_funded_amount(balance, deal.amount),
            'spent': wallet.spent,
        }

    # =========================================================================
    # FUNDING
    # =========================================================================

    async def confirm_funding(self, deal_id: str, refund_address: str = None) -> FundingResult:
        """
        Check the ledger for the deal's payment and advance it when found.

        Funding counts if either the incoming transfers since deal creation
        or the raw balance reach the tolerance share of the amount. A
        confirmed deal moves pending_payment -> payment_received ->
        creative_pending in one write.
        """
        if refund_address:
            refund_address = self.validate_address(refund_address, "refund_address")
        deal = self._load(deal_id)
        if deal.status != DealStatus.PENDING_PAYMENT:
            funded = deal.status not in (
                DealStatus.PENDING_ACCEPTANCE, DealStatus.PENDING_PAYMENT, DealStatus.CANCELLED
            )
            return FundingResult(
                funded=funded, observed_amount=deal.escrow_balance_last_observed, deal=deal
            )

        wallet = self._wallet_for(deal)
        if not wallet:
            await self.open(deal.id)
            return FundingResult(funded=False, deal=self._load(deal.id))

        incoming = await self.ledger.check_incoming(
            wallet.address, deal.amount, deal.created_at, self.funding_tolerance
        )
        balance = await self.ledger.balance(wallet.address)
        self.store.update_wallet(wallet.id, balance=balance)

        observed = max(incoming.amount, balance)
        funded = incoming.received or self.is_funded_amount(balance, deal.amount)

        if not funded:
            if observed != deal.escrow_balance_last_observed:
                self.store.update_deal(
                    deal.id, DealStatus.PENDING_PAYMENT, escrow_balance_last_observed=observed
                )
            logger.debug(f"Deal {deal.id} not funded yet: {observed}/{deal.amount} TON")
            return FundingResult(funded=False, observed_amount=observed, deal=deal)

        path = [DealStatus.PENDING_PAYMENT, DealStatus.PAYMENT_RECEIVED, DealStatus.CREATIVE_PENDING]
        if not DealStateMachine.is_valid_path(path):
            raise InvalidTransition("Funded deals cannot advance to creative_pending")

        now = utcnow()
        updated = self.store.update_deal(
            deal.id, DealStatus.PENDING_PAYMENT,
            status=DealStatus.CREATIVE_PENDING,
            escrow_balance_last_observed=observed,
            advertiser_refund_address=(
                refund_address or deal.advertiser_refund_address or incoming.from_address
            ),
            last_activity_at=now,
            auto_cancel_deadline=self._deadline(),
        )
        if not updated:
            logger.info(f"Deal {deal.id} advanced by another writer during funding check")
            return FundingResult(funded=True, observed_amount=observed, deal=self._load(deal.id))

        logger.info(f"Escrow funded for deal {deal.id}: {observed} TON")
        return FundingResult(funded=True, observed_amount=observed, advanced=True, deal=updated)

    # =========================================================================
    # DISBURSEMENT
    # =========================================================================

    async def release(
        self,
        deal_id: str,
        resolution: Resolution = None,
        expected_status: DealStatus = None,
    ) -> DisbursementResult:
        """
        Pay the channel owner and sweep the remainder to the platform.

        Allowed from ``verified``, or from ``disputed`` when an arbiter
        releases (disputed -> verified -> completed).
        """
        deal = self._load(deal_id)
        if deal.is_terminal:
            logger.info(f"Release for deal {deal.id} skipped, already {deal.status.value}")
            return DisbursementResult(
                success=True, status=deal.status, already_settled=True, deal=deal
            )
        self._check_expected(deal, expected_status)

        if deal.status == DealStatus.VERIFIED:
            path = [DealStatus.VERIFIED, DealStatus.COMPLETED]
        elif deal.status == DealStatus.DISPUTED:
            path = [DealStatus.DISPUTED, DealStatus.VERIFIED, DealStatus.COMPLETED]
        else:
            raise InvalidState(f"Cannot release escrow for a deal in {deal.status.value}")
        if not DealStateMachine.is_valid_path(path):
            raise InvalidTransition(f"No release path from {deal.status.value}")

        owner = self.store.get_user(deal.channel_owner_id)
        payee = owner.wallet_address if owner else None
        if not payee:
            raise MissingRecipientAddress("Channel owner has not set a payout wallet address")

        wallet = self._wallet_for(deal)
        if not wallet:
            raise NotFound(f"No escrow wallet for deal {deal.id}")

        fee, payout = self.split_release(deal.amount)
        if payout <= 0:
            raise InvalidState(f"Deal amount {deal.amount} TON too small to release")

        if not self.store.claim_disbursement(deal.id, deal.status, DISBURSEMENT_RELEASE):
            raise ConcurrentModification(f"Disbursement already in progress for deal {deal.id}")

        try:
            balance = await self.ledger.balance(wallet.address)
            if _dec(balance) < payout:
                raise LedgerTransferFailed(
                    f"Escrow holds {balance} TON, payout needs {payout} TON"
                )
            result = await self.ledger.transfer(
                wallet, payee, float(payout), memo=f"Ad deal {deal.id} payout"
            )
            if not result.success:
                raise LedgerTransferFailed(f"Payout transfer failed: {result.error}")
        except Exception:
            self.store.clear_disbursement(deal.id)
            raise

        logger.info(f"Paid {payout} TON to channel owner for deal {deal.id}")

        # Second transfer must wait for the first seqno to land
        if self.settlement_delay:
            await asyncio.sleep(self.settlement_delay)

        fee_tx_ref, fee_error = None, None
        if self.platform_address:
            # Owner is already paid: a failed sweep is logged and the deal still completes
            try:
                fee_result = await self.ledger.transfer(
                    wallet, self.platform_address, SEND_ALL, memo=f"Ad deal {deal.id} fee"
                )
                fee_tx_ref = fee_result.tx_ref
                if not fee_result.success:
                    fee_error = fee_result.error or "transfer failed"
            except Exception as e:
                fee_error = f"{type(e).__name__}: {e}"
            if fee_error:
                logger.error(f"Platform fee sweep failed for deal {deal.id}: {fee_error}")
        else:
            fee_error = "Platform wallet address not configured"
            logger.error(f"Platform fee sweep skipped for deal {deal.id}: {fee_error}")

        updated = self.store.update_deal(
            deal.id, deal.status,
            status=DealStatus.COMPLETED,
            platform_fee=float(fee),
            escrow_balance_last_observed=0.0,
            resolution=resolution or deal.resolution,
        )
        if not updated:
            # Payout already left the wallet; the claim stays so it cannot repeat
            logger.critical(f"Deal {deal.id} paid out but status write lost; needs review")
            raise ConcurrentModification(f"Deal {deal.id} changed during release")

        self.store.update_wallet(wallet.id, balance=0.0, spent=fee_error is None)
        logger.info(f"Escrow released for deal {deal.id}")

        return DisbursementResult(
            success=True,
            status=DealStatus.COMPLETED,
            tx_ref=result.tx_ref,
            fee_tx_ref=fee_tx_ref,
            amount=float(payout),
            platform_fee=float(fee),
            fee_error=fee_error,
            deal=updated,
        )

    async def refund(
        self,
        deal_id: str,
        to_address: str = None,
        resolution: Resolution = None,
        expected_status: DealStatus = None,
    ) -> DisbursementResult:
        """
        Return everything the escrow holds to the advertiser.

        The deal ends ``refunded`` where the table allows it, otherwise
        ``cancelled`` (a partly paid deal still awaiting payment).
        """
        deal = self._load(deal_id)
        if deal.is_terminal:
            logger.info(f"Refund for deal {deal.id} skipped, already {deal.status.value}")
            return DisbursementResult(
                success=True, status=deal.status, already_settled=True, deal=deal
            )
        self._check_expected(deal, expected_status)

        if DealStateMachine.can_transition(deal.status, DealStatus.REFUNDED):
            target = DealStatus.REFUNDED
        elif DealStateMachine.can_transition(deal.status, DealStatus.CANCELLED):
            target = DealStatus.CANCELLED
        else:
            raise InvalidState(f"Cannot refund a deal in {deal.status.value}")
        if to_address:
            to_address = self.validate_address(to_address, "to_address")

        if not self.store.claim_disbursement(deal.id, deal.status, DISBURSEMENT_REFUND):
            raise ConcurrentModification(f"Disbursement already in progress for deal {deal.id}")

        wallet = self._wallet_for(deal)
        destination = to_address or deal.advertiser_refund_address
        if not destination:
            advertiser = self.store.get_user(deal.advertiser_id)
            destination = advertiser.wallet_address if advertiser else None

        tx_ref, refunded_amount = None, 0.0
        try:
            balance = await self.ledger.balance(wallet.address) if wallet else 0.0
            if balance > 0:
                if not destination:
                    raise MissingRecipientAddress("Advertiser has no refund address")
                result = await self.ledger.transfer(
                    wallet, destination, SEND_ALL, memo=f"Ad deal {deal.id} refund"
                )
                if not result.success:
                    raise LedgerTransferFailed(f"Refund transfer failed: {result.error}")
                tx_ref, refunded_amount = result.tx_ref, balance
        except Exception:
            self.store.clear_disbursement(deal.id)
            raise

        now = utcnow()
        updated = self.store.update_deal(
            deal.id, deal.status,
            status=target,
            escrow_balance_last_observed=0.0,
            advertiser_refund_address=destination or deal.advertiser_refund_address,
            last_activity_at=now,
            resolution=resolution or deal.resolution,
        )
        if not updated:
            logger.critical(f"Deal {deal.id} refunded but status write lost; needs review")
            raise ConcurrentModification(f"Deal {deal.id} changed during refund")

        if wallet:
            self.store.update_wallet(wallet.id, balance=0.0, spent=True)
        logger.info(f"Escrow refunded for deal {deal.id}: {refunded_amount} TON -> {target.value}")

        return DisbursementResult(
            success=True, status=target, tx_ref=tx_ref, amount=refunded_amount, deal=updated
        )

    async def recover(self, account_ref, to_address: str, arbiter: User) -> DisbursementResult:
        """Drain any escrow wallet to an arbitrary address; arbiters only"""
        if not is_arbiter(arbiter, self.arbiter_ids):
            raise Forbidden("Only arbiters can recover escrow funds")
        if not to_address:
            raise InvalidRequest("to_address is required")
        to_address = self.validate_address(to_address, "to_address")

        if isinstance(account_ref, int) or str(account_ref).isdigit():
            wallet = self.store.get_wallet(int(account_ref))
        else:
            wallet = self.store.get_wallet_by_address(str(account_ref))
        if not wallet:
            raise NotFound(f"Escrow wallet {account_ref} not found")

        balance = await self.ledger.balance(wallet.address)
        if balance <= 0:
            raise InvalidState(f"Escrow wallet {wallet.address} is empty")

        result = await self.ledger.transfer(wallet, to_address, SEND_ALL, memo="Escrow recovery")
        if not result.success:
            raise LedgerTransferFailed(f"Recovery transfer failed: {result.error}")

        self.store.update_wallet(wallet.id, balance=0.0, spent=True)
        logger.warning(
            f"Arbiter {arbiter.telegram_id} recovered {balance} TON from wallet "
            f"{wallet.id} (deal {wallet.deal_id}) to {to_address[:20]}..."
        )
        return DisbursementResult(success=True, tx_ref=result.tx_ref, amount=balance)
