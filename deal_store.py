"""
Deal Store
==========
SQLite-backed document store for deals, escrow wallets and the
user/channel/request records the deal services read.

Deals are stored as JSON documents with their queryable fields mirrored
into columns. Every deal write is a compare-and-set on ``status``: the
write is rejected if the stored status no longer matches what the caller
read.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, List, Optional

import config
from models import (
    AdRequest, Channel, Deal, EscrowWallet, User, parse_datetime, to_iso, utcnow
)
from state_machine import DealStatus

logger = logging.getLogger(__name__)


class DealStore:
    """Single source of truth for deal status"""

    def __init__(self, db_path: str = None, busy_timeout: float = None):
        self.db_path = db_path or config.DATABASE_PATH
        self.busy_timeout = (
            config.DB_BUSY_TIMEOUT_SECONDS if busy_timeout is None else busy_timeout
        )

    # =========================================================================
    # CONNECTION
    # =========================================================================

    @contextmanager
    def get_db(self):
        """Context manager for database connections"""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """Write transaction that takes the database write lock up front"""
        with self.get_db() as conn:
            conn.execute('BEGIN IMMEDIATE')
            try:
                yield conn
            except Exception:
                conn.execute('ROLLBACK')
                raise
            else:
                conn.execute('COMMIT')

    def init_database(self):
        """Initialize SQLite database with required tables"""
        with self.get_db() as conn:
            cursor = conn.cursor()
            cursor.execute('PRAGMA journal_mode = WAL')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    telegram_id INTEGER UNIQUE NOT NULL,
                    username TEXT,
                    first_name TEXT,
                    wallet_address TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS channels (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id INTEGER NOT NULL,
                    owner_id INTEGER NOT NULL,
                    username TEXT,
                    title TEXT,
                    admin_ids TEXT DEFAULT '[]',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (owner_id) REFERENCES users(id)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS ad_requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    advertiser_id INTEGER NOT NULL,
                    applicant_channel_ids TEXT DEFAULT '[]',
                    status TEXT DEFAULT 'active',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (advertiser_id) REFERENCES users(id)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS deals (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    scheduled_time TEXT,
                    auto_cancel_deadline TEXT,
                    disbursement TEXT,
                    doc TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_deals_status ON deals(status)')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS escrow_wallets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id INTEGER,
                    deal_id TEXT UNIQUE,
                    wallet_type TEXT NOT NULL DEFAULT 'deal',
                    address TEXT UNIQUE NOT NULL,
                    encrypted_mnemonic TEXT NOT NULL,
                    wallet_version TEXT DEFAULT 'v4r2',
                    balance REAL DEFAULT 0,
                    spent INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            ''')

        logger.info(f'Database initialized at {self.db_path}')

    # =========================================================================
    # USERS, CHANNELS, REQUESTS
    # =========================================================================

    def add_user(self, telegram_id: int, username: str = None, first_name: str = None,
                 wallet_address: str = None) -> User:
        with self.transaction() as conn:
            cursor = conn.execute(
                'INSERT INTO users (telegram_id, username, first_name, wallet_address) '
                'VALUES (?, ?, ?, ?)',
                (telegram_id, username, first_name, wallet_address)
            )
            user_id = cursor.lastrowid
        return User(id=user_id, telegram_id=telegram_id, username=username,
                    first_name=first_name, wallet_address=wallet_address)

    def set_wallet_address(self, user_id: int, wallet_address: str):
        with self.transaction() as conn:
            conn.execute('UPDATE users SET wallet_address = ? WHERE id = ?',
                         (wallet_address, user_id))

    def get_user(self, user_id: int) -> Optional[User]:
        with self.get_db() as conn:
            row = conn.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_telegram_id(self, telegram_id: int) -> Optional[User]:
        with self.get_db() as conn:
            row = conn.execute(
                'SELECT * FROM users WHERE telegram_id = ?', (telegram_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    @staticmethod
    def _row_to_user(row) -> User:
        return User(
            id=row['id'],
            telegram_id=row['telegram_id'],
            username=row['username'],
            first_name=row['first_name'],
            wallet_address=row['wallet_address'],
        )

    def add_channel(self, chat_id: int, owner_id: int, username: str = None,
                    title: str = None, admin_ids: List[int] = None) -> Channel:
        admin_ids = list(admin_ids or [])
        with self.transaction() as conn:
            cursor = conn.execute(
                'INSERT INTO channels (chat_id, owner_id, username, title, admin_ids) '
                'VALUES (?, ?, ?, ?, ?)',
                (chat_id, owner_id, username, title, json.dumps(admin_ids))
            )
            channel_id = cursor.lastrowid
        return Channel(id=channel_id, chat_id=chat_id, owner_id=owner_id,
                       username=username, title=title, admin_ids=admin_ids)

    def get_channel(self, channel_id: int) -> Optional[Channel]:
        with self.get_db() as conn:
            row = conn.execute('SELECT * FROM channels WHERE id = ?', (channel_id,)).fetchone()
        if not row:
            return None
        return Channel(
            id=row['id'],
            chat_id=row['chat_id'],
            owner_id=row['owner_id'],
            username=row['username'],
            title=row['title'],
            admin_ids=json.loads(row['admin_ids'] or '[]'),
        )

    def add_ad_request(self, advertiser_id: int,
                       applicant_channel_ids: List[int] = None) -> AdRequest:
        applicants = list(applicant_channel_ids or [])
        with self.transaction() as conn:
            cursor = conn.execute(
                'INSERT INTO ad_requests (advertiser_id, applicant_channel_ids) VALUES (?, ?)',
                (advertiser_id, json.dumps(applicants))
            )
            request_id = cursor.lastrowid
        return AdRequest(id=request_id, advertiser_id=advertiser_id,
                         applicant_channel_ids=applicants)

    def get_ad_request(self, request_id: int) -> Optional[AdRequest]:
        with self.get_db() as conn:
            row = conn.execute(
                'SELECT * FROM ad_requests WHERE id = ?', (request_id,)
            ).fetchone()
        if not row:
            return None
        return AdRequest(
            id=row['id'],
            advertiser_id=row['advertiser_id'],
            applicant_channel_ids=json.loads(row['applicant_channel_ids'] or '[]'),
            status=row['status'],
        )

    # =========================================================================
    # DEALS
    # =========================================================================

    def insert_deal(self, deal: Deal) -> Deal:
        doc = deal.to_dict()
        with self.transaction() as conn:
            conn.execute('''
                INSERT INTO deals
                (id, status, scheduled_time, auto_cancel_deadline, doc, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (
                deal.id, deal.status.value, doc['scheduled_time'],
                doc['auto_cancel_deadline'], json.dumps(doc),
                doc['created_at'], doc['updated_at'],
            ))
        logger.info(f"Deal {deal.id} created in status {deal.status.value}")
        return deal

    def get_deal(self, deal_id: str) -> Optional[Deal]:
        with self.get_db() as conn:
            row = conn.execute('SELECT doc FROM deals WHERE id = ?', (deal_id,)).fetchone()
        return Deal.from_dict(json.loads(row['doc'])) if row else None

    def update_deal(self, deal_id: str, expected_status: DealStatus, **changes: Any) -> Optional[Deal]:
        """
        Apply field changes to a deal if its stored status still equals
        ``expected_status``.

        Returns:
            The updated deal, or None if the deal is missing or the
            compare-and-set lost against a concurrent writer.
        """
        expected = DealStatus(expected_status).value
        with self.transaction() as conn:
            row = conn.execute(
                'SELECT doc FROM deals WHERE id = ? AND status = ?', (deal_id, expected)
            ).fetchone()
            if not row:
                return None

            deal = Deal.from_dict(json.loads(row['doc']))
            for name, value in changes.items():
                if not hasattr(deal, name):
                    raise AttributeError(f"Deal has no field '{name}'")
                setattr(deal, name, value)
            deal.status = DealStatus(deal.status)
            if 'updated_at' not in changes:
                deal.updated_at = utcnow()

            doc = deal.to_dict()
            cursor = conn.execute('''
                UPDATE deals SET status = ?, scheduled_time = ?, auto_cancel_deadline = ?,
                       doc = ?, updated_at = ?
                WHERE id = ? AND status = ?
            ''', (
                deal.status.value, doc['scheduled_time'], doc['auto_cancel_deadline'],
                json.dumps(doc), doc['updated_at'], deal_id, expected,
            ))
            if cursor.rowcount == 0:
                return None

        if deal.status.value != expected:
            logger.info(f"Deal {deal_id} status {expected} -> {deal.status.value}")
        return deal

    def query_deals(
        self,
        statuses: Iterable[DealStatus],
        scheduled_before: datetime = None,
        deadline_before: datetime = None,
    ) -> List[Deal]:
        """Deals whose status is in ``statuses``, optionally bounded by time columns"""
        values = [DealStatus(s).value for s in statuses]
        if not values:
            return []

        clauses = [f"status IN ({', '.join('?' for _ in values)})"]
        params: List[Any] = list(values)
        if scheduled_before is not None:
            clauses.append('scheduled_time IS NOT NULL AND scheduled_time <= ?')
            params.append(to_iso(scheduled_before))
        if deadline_before is not None:
            clauses.append('auto_cancel_deadline IS NOT NULL AND auto_cancel_deadline <= ?')
            params.append(to_iso(deadline_before))

        with self.get_db() as conn:
            rows = conn.execute(
                f"SELECT doc FROM deals WHERE {' AND '.join(clauses)} ORDER BY created_at",
                params
            ).fetchall()
        return [Deal.from_dict(json.loads(row['doc'])) for row in rows]

    # -------------------------------------------------------------------------
    # Disbursement claims
    # -------------------------------------------------------------------------

    def claim_disbursement(self, deal_id: str, expected_status: DealStatus, kind: str) -> bool:
        """
        Claim the right to move funds out of a deal's escrow.

        Succeeds for exactly one caller per deal while the status still
        matches; the claim stays until cleared or the deal goes terminal.
        """
        with self.transaction() as conn:
            cursor = conn.execute('''
                UPDATE deals SET disbursement = ?
                WHERE id = ? AND status = ? AND disbursement IS NULL
            ''', (kind, deal_id, DealStatus(expected_status).value))
            return cursor.rowcount == 1

    def clear_disbursement(self, deal_id: str):
        with self.transaction() as conn:
            conn.execute('UPDATE deals SET disbursement = NULL WHERE id = ?', (deal_id,))

    def get_disbursement(self, deal_id: str) -> Optional[str]:
        with self.get_db() as conn:
            row = conn.execute(
                'SELECT disbursement FROM deals WHERE id = ?', (deal_id,)
            ).fetchone()
        return row['disbursement'] if row else None

    # =========================================================================
    # ESCROW WALLETS
    # =========================================================================

    def insert_wallet(self, wallet: EscrowWallet) -> EscrowWallet:
        """Insert a wallet; a deal keeps the first wallet stored for it"""
        try:
            with self.transaction() as conn:
                cursor = conn.execute('''
                    INSERT INTO escrow_wallets
                    (owner_id, deal_id, wallet_type, address, encrypted_mnemonic,
                     wallet_version, balance, spent, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    wallet.owner_id, wallet.deal_id, wallet.wallet_type, wallet.address,
                    wallet.encrypted_mnemonic, wallet.wallet_version, wallet.balance,
                    int(wallet.spent), to_iso(wallet.created_at),
                ))
                wallet.id = cursor.lastrowid
        except sqlite3.IntegrityError:
            existing = self.get_wallet_for_deal(wallet.deal_id) if wallet.deal_id else None
            if not existing:
                raise
            logger.info(f"Deal {wallet.deal_id} already has wallet {existing.id}, keeping it")
            return existing
        return wallet

    def get_wallet(self, wallet_id: int) -> Optional[EscrowWallet]:
        with self.get_db() as conn:
            row = conn.execute(
                'SELECT * FROM escrow_wallets WHERE id = ?', (wallet_id,)
            ).fetchone()
        return self._row_to_wallet(row) if row else None

    def get_wallet_by_address(self, address: str) -> Optional[EscrowWallet]:
        with self.get_db() as conn:
            row = conn.execute(
                'SELECT * FROM escrow_wallets WHERE address = ?', (address,)
            ).fetchone()
        return self._row_to_wallet(row) if row else None

    def get_wallet_for_deal(self, deal_id: str) -> Optional[EscrowWallet]:
        with self.get_db() as conn:
            row = conn.execute(
                'SELECT * FROM escrow_wallets WHERE deal_id = ?', (deal_id,)
            ).fetchone()
        return self._row_to_wallet(row) if row else None

    def update_wallet(self, wallet_id: int, balance: float = None, spent: bool = None):
        updates, params = [], []
        if balance is not None:
            updates.append('balance = ?')
            params.append(balance)
        if spent is not None:
            updates.append('spent = ?')
            params.append(int(spent))
        if not updates:
            return
        params.append(wallet_id)
        with self.transaction() as conn:
            conn.execute(f"UPDATE escrow_wallets SET {', '.join(updates)} WHERE id = ?", params)

    @staticmethod
    def _row_to_wallet(row) -> EscrowWallet:
        return EscrowWallet(
            id=row['id'],
            owner_id=row['owner_id'],
            deal_id=row['deal_id'],
            wallet_type=row['wallet_type'],
            address=row['address'],
            encrypted_mnemonic=row['encrypted_mnemonic'],
            wallet_version=row['wallet_version'],
            balance=row['balance'] or 0.0,
            spent=bool(row['spent']),
            created_at=parse_datetime(row['created_at']),
        )
