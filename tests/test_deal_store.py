"""Tests for the SQLite deal store."""

import sqlite3
import time

import pytest

import config
from deal_store import DealStore
from models import EscrowWallet


class TestLocking:
    def test_busy_timeout_defaults_to_config(self, tmp_path):
        assert DealStore(str(tmp_path / 'a.db')).busy_timeout == config.DB_BUSY_TIMEOUT_SECONDS
        assert DealStore(str(tmp_path / 'a.db'), busy_timeout=0.25).busy_timeout == 0.25

    def test_locked_database_fails_within_busy_timeout(self, tmp_path):
        path = str(tmp_path / 'locked.db')
        store = DealStore(path, busy_timeout=0.05)
        store.init_database()

        holder = sqlite3.connect(path, isolation_level=None)
        holder.execute('BEGIN IMMEDIATE')
        try:
            started = time.monotonic()
            with pytest.raises(sqlite3.OperationalError):
                store.add_user(4242, 'blocked')
            assert time.monotonic() - started < 2
        finally:
            holder.execute('ROLLBACK')
            holder.close()


class TestWallets:
    def test_second_wallet_for_deal_returns_first(self, store):
        first = store.insert_wallet(EscrowWallet(address='EQ_first', encrypted_mnemonic='m', deal_id='deal9'))

        second = store.insert_wallet(EscrowWallet(address='EQ_second', encrypted_mnemonic='m', deal_id='deal9'))

        assert second.id == first.id
        assert second.address == 'EQ_first'
        assert store.get_wallet_by_address('EQ_second') is None

    def test_duplicate_address_without_deal_still_raises(self, store):
        store.insert_wallet(EscrowWallet(address='EQ_same', encrypted_mnemonic='m'))

        with pytest.raises(sqlite3.IntegrityError):
            store.insert_wallet(EscrowWallet(address='EQ_same', encrypted_mnemonic='m'))
