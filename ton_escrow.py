"""
TON Escrow Module
=================
Ledger adapter for per-deal TON escrow wallets.

Creates v4r2 wallets with encrypted mnemonic storage, reads balances and
incoming transfers from toncenter, and signs outgoing transfers. Only the
escrow account manager calls into this module.

Uses TON testnet by default.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp
from cryptography.fernet import Fernet, InvalidToken
from tonsdk._exceptions import TonSdkException
from tonsdk.contract.wallet import Wallets, WalletVersionEnum
from tonsdk.crypto import mnemonic_new
from tonsdk.utils import Address, bytes_to_b64str, from_nano, to_nano

import config
from errors import LedgerUnavailable
from models import EscrowWallet, WALLET_TYPE_DEAL

logger = logging.getLogger(__name__)

TONCENTER_ENDPOINTS = {
    "testnet": "https://testnet.toncenter.com/api/v2",
    "mainnet": "https://toncenter.com/api/v2"
}

# Marker for "transfer the entire balance" (mode 128 + destroy-if-zero 32)
SEND_ALL = "ALL"
SEND_MODE_PAY_FEES_SEPARATELY = 3
SEND_MODE_CARRY_ALL_BALANCE = 128 + 32

REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=20)


@dataclass
class TransferResult:
    success: bool
    tx_ref: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'success': self.success, 'tx_ref': self.tx_ref, 'error': self.error}


@dataclass
class IncomingPayment:
    received: bool
    amount: float = 0.0
    tx_ref: Optional[str] = None
    from_address: Optional[str] = None


# =============================================================================
# ENCRYPTION
# =============================================================================

_generated_key: Optional[bytes] = None


def get_encryption_key(secret: str = None) -> bytes:
    """
    Get the Fernet key used for mnemonic storage.
    MUST be set via ESCROW_SECRET_KEY environment variable in production.
    """
    global _generated_key
    key = secret if secret is not None else config.ESCROW_SECRET_KEY
    if key:
        try:
            Fernet(key.encode())
            return key.encode()
        except (ValueError, TypeError):
            logger.warning("Invalid ESCROW_SECRET_KEY format, using a process-local key")

    # Development only: wallets created with this key are unreadable after restart
    if _generated_key is None:
        _generated_key = Fernet.generate_key()
        logger.warning("ESCROW_SECRET_KEY not set; generated a process-local encryption key")
    return _generated_key


def encrypt_mnemonic(mnemonic: list, secret: str = None) -> str:
    """Encrypt mnemonic phrase for secure storage"""
    f = Fernet(get_encryption_key(secret))
    return f.encrypt(" ".join(mnemonic).encode()).decode()


def decrypt_mnemonic(encrypted_mnemonic: str, secret: str = None) -> list:
    """Decrypt stored mnemonic phrase"""
    f = Fernet(get_encryption_key(secret))
    return f.decrypt(encrypted_mnemonic.encode()).decode().split(" ")


# =============================================================================
# LEDGER SERVICE
# =============================================================================

class TonLedger:
    """toncenter-backed ledger: accounts, balances, incoming checks, transfers"""

    def __init__(self, network: str = None, api_key: str = None, secret_key: str = None):
        self.network = network or config.TON_NETWORK
        self.api_key = config.TONCENTER_API_KEY if api_key is None else api_key
        self.secret_key = secret_key

    @property
    def base_url(self) -> str:
        return TONCENTER_ENDPOINTS.get(self.network, TONCENTER_ENDPOINTS["testnet"])

    def _headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.api_key} if self.api_key else {}

    async def _get(self, method: str, params: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/{method}"
        try:
            async with aiohttp.ClientSession(timeout=REQUEST_TIMEOUT) as session:
                async with session.get(url, params=params, headers=self._headers()) as response:
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise LedgerUnavailable(f"toncenter {method} failed: {e}") from e

        if not data.get("ok"):
            raise LedgerUnavailable(f"toncenter {method} error: {data.get('error', 'unknown')}")
        return data.get("result")

    async def _post(self, method: str, payload: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/{method}"
        try:
            async with aiohttp.ClientSession(timeout=REQUEST_TIMEOUT) as session:
                async with session.post(url, json=payload, headers=self._headers()) as response:
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise LedgerUnavailable(f"toncenter {method} failed: {e}") from e

        if not data.get("ok"):
            raise LedgerUnavailable(f"toncenter {method} error: {data.get('error', 'unknown')}")
        return data.get("result")

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def create_account(self, owner_id: Optional[int] = None,
                       wallet_type: str = WALLET_TYPE_DEAL) -> EscrowWallet:
        """Generate a fresh v4r2 wallet; the mnemonic is only kept encrypted"""
        mnemonic = mnemonic_new()
        _, _, _, wallet = Wallets.from_mnemonics(
            mnemonics=mnemonic,
            version=WalletVersionEnum.v4r2,
            workchain=0
        )

        # Non-bounceable, so deposits to the undeployed wallet are not bounced back
        address = wallet.address.to_string(True, True, False)
        logger.info(f"Generated new escrow wallet: {address[:20]}...")

        return EscrowWallet(
            address=address,
            encrypted_mnemonic=encrypt_mnemonic(mnemonic, self.secret_key),
            owner_id=owner_id,
            wallet_type=wallet_type,
            wallet_version="v4r2",
        )

    def _restore_wallet(self, encrypted_mnemonic: str):
        mnemonic = decrypt_mnemonic(encrypted_mnemonic, self.secret_key)
        _, _, _, wallet = Wallets.from_mnemonics(
            mnemonics=mnemonic,
            version=WalletVersionEnum.v4r2,
            workchain=0
        )
        return wallet

    @staticmethod
    def is_valid_address(address: str) -> bool:
        """True for a parseable TON address in raw or user-friendly form"""
        if not address or not isinstance(address, str):
            return False
        try:
            Address(address.strip())
        except (TonSdkException, ValueError, TypeError):
            return False
        return True

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def balance(self, address: str) -> float:
        """Current balance in TON; raises LedgerUnavailable rather than guessing 0"""
        result = await self._get("getAddressBalance", {"address": address})
        return float(from_nano(int(result or 0), "ton"))

    async def check_incoming(
        self,
        address: str,
        expected_amount: float,
        since: datetime,
        tolerance: float = None,
    ) -> IncomingPayment:
        """
        Sum incoming transfers to ``address`` since ``since``.

        ``received`` is true once the total reaches ``expected_amount``
        scaled by ``tolerance``.
        """
        tolerance = config.FUNDING_TOLERANCE if tolerance is None else tolerance
        result = await self._get("getTransactions", {"address": address, "limit": 20})

        since_ts = since.timestamp() if since else 0
        total = Decimal(0)
        latest = None
        for tx in result or []:
            in_msg = tx.get("in_msg") or {}
            value = int(in_msg.get("value") or 0)
            if value <= 0 or not in_msg.get("source"):
                continue
            if tx.get("utime", 0) < since_ts:
                continue
            total += Decimal(str(from_nano(value, "ton")))
            if latest is None or tx.get("utime", 0) > latest.get("utime", 0):
                latest = tx

        received = total >= Decimal(str(expected_amount)) * Decimal(str(tolerance))
        return IncomingPayment(
            received=bool(received) and total > 0,
            amount=float(total),
            tx_ref=latest["transaction_id"].get("hash") if latest else None,
            from_address=latest["in_msg"].get("source") if latest else None,
        )

    async def get_seqno(self, address: str) -> int:
        """Wallet seqno; an undeployed wallet reports 0"""
        result = await self._post("runGetMethod", {
            "address": address,
            "method": "seqno",
            "stack": []
        })
        if result.get("exit_code", 0) != 0:
            return 0
        stack = result.get("stack") or []
        if stack:
            return int(stack[0][1], 16)
        return 0

    # -------------------------------------------------------------------------
    # Transfers
    # -------------------------------------------------------------------------

    async def transfer(
        self,
        wallet: EscrowWallet,
        to_address: str,
        amount,
        memo: str = "",
    ) -> TransferResult:
        """
        Send ``amount`` TON (or SEND_ALL) from an escrow wallet.

        Never raises for ledger failures; the outcome is in the result.
        """
        try:
            ton_wallet = self._restore_wallet(wallet.encrypted_mnemonic)
            seqno = await self.get_seqno(wallet.address)

            if amount == SEND_ALL:
                nano, send_mode = 0, SEND_MODE_CARRY_ALL_BALANCE
            else:
                nano, send_mode = to_nano(str(amount), "ton"), SEND_MODE_PAY_FEES_SEPARATELY

            transfer = ton_wallet.create_transfer_message(
                to_addr=to_address,
                amount=nano,
                seqno=seqno,
                payload=memo or None,
                send_mode=send_mode
            )
            boc = bytes_to_b64str(transfer["message"].to_boc(False))
            result = await self._post("sendBocReturnHash", {"boc": boc})

            tx_ref = (result or {}).get("hash")
            logger.info(f"Sent {amount} TON from {wallet.address[:20]}... to {to_address[:20]}...")
            return TransferResult(success=True, tx_ref=tx_ref)

        except LedgerUnavailable as e:
            logger.error(f"Transfer failed: {e}")
            return TransferResult(success=False, error=e.message)
        except (InvalidToken, TonSdkException, ValueError) as e:
            logger.error(f"Error signing transfer from {wallet.address[:20]}...: {e}")
            return TransferResult(success=False, error=str(e))
