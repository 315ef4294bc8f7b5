"""
Configuration Module
====================
Environment-driven settings for the deal escrow orchestrator.

Values are read once at import; services take them as constructor
defaults so callers (and tests) can override per instance.
"""

import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _get_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _get_id_list(name: str) -> List[int]:
    raw = os.getenv(name, "")
    return [int(part) for part in raw.split(",") if part.strip()]


# =============================================================================
# TELEGRAM
# =============================================================================

BOT_TOKEN = os.getenv("BOT_TOKEN", "")
WEBAPP_URL = os.getenv("WEBAPP_URL", "")

# Arbiters: telegram ids allowed to resolve disputes and recover wallets
ADMIN_TELEGRAM_IDS = _get_id_list("ADMIN_TELEGRAM_IDS")

# Chat the publisher forwards probe copies into when verifying posts
VERIFICATION_CHAT_ID = int(os.getenv("VERIFICATION_CHAT_ID", "0")) or (
    ADMIN_TELEGRAM_IDS[0] if ADMIN_TELEGRAM_IDS else 0
)


# =============================================================================
# STORAGE
# =============================================================================

DATABASE_PATH = os.getenv(
    "DATABASE_PATH",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), 'database.db')
)

# Store calls run on the event loop; a locked database blocks it for at most this long
DB_BUSY_TIMEOUT_SECONDS = float(os.getenv("DB_BUSY_TIMEOUT_SECONDS", "5"))


# =============================================================================
# TON / ESCROW
# =============================================================================

TON_NETWORK = os.getenv("TON_NETWORK", "testnet")
TONCENTER_API_KEY = os.getenv("TONCENTER_API_KEY", "")
ESCROW_SECRET_KEY = os.getenv("ESCROW_SECRET_KEY", "")
PLATFORM_WALLET_ADDRESS = os.getenv("PLATFORM_WALLET_ADDRESS", "")

PLATFORM_FEE_PERCENT = float(os.getenv("PLATFORM_FEE_PERCENT", "10"))
MIN_DEAL_AMOUNT = float(os.getenv("MIN_DEAL_AMOUNT", "0.1"))
GAS_RESERVE = float(os.getenv("GAS_RESERVE", "0.01"))

# Seconds between the payout and the fee sweep so the wallet seqno advances
SETTLEMENT_DELAY_SECONDS = float(os.getenv("SETTLEMENT_DELAY_SECONDS", "30"))

# Share of the deal amount that counts as funded (covers transfer fee rounding)
FUNDING_TOLERANCE = float(os.getenv("FUNDING_TOLERANCE", "0.99"))


# =============================================================================
# DEAL LIFECYCLE
# =============================================================================

ESCROW_TIMEOUT_HOURS = float(os.getenv("ESCROW_TIMEOUT_HOURS", "48"))
DEFAULT_POST_DURATION_HOURS = int(os.getenv("DEFAULT_POST_DURATION_HOURS", "24"))
DEMO_MODE = _get_bool("DEMO_MODE")


# =============================================================================
# SCHEDULER (seconds)
# =============================================================================

PAYMENT_POLL_INTERVAL = int(os.getenv("PAYMENT_POLL_INTERVAL", "60"))
AUTO_POST_INTERVAL = int(os.getenv("AUTO_POST_INTERVAL", "60"))
VERIFY_INTERVAL = int(os.getenv("VERIFY_INTERVAL", "600"))
TIMEOUT_SWEEP_INTERVAL = int(os.getenv("TIMEOUT_SWEEP_INTERVAL", "300"))
SCHEDULER_MAX_CONCURRENCY = int(os.getenv("SCHEDULER_MAX_CONCURRENCY", "5"))


# =============================================================================
# HTTP
# =============================================================================

PORT = int(os.getenv("PORT", "8000"))
