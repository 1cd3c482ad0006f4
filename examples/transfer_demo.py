#!/usr/bin/env python3
"""
Example: Transfers against the configured ledger store

Picks the backend from SIMPLE_BANK_DATABASE_URL (memory:// by default),
opens two accounts and runs a completed transfer, a failed one and a
reversal.

    SIMPLE_BANK_DATABASE_URL=sqlite:///demo.db python examples/transfer_demo.py
"""

import os
import sys

# Add the simple_bank package to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from simple_bank.accounts import AccountManager
from simple_bank.config import get_config
from simple_bank.executor import TransferExecutor
from simple_bank.logging_config import setup_logging
from simple_bank.models import Currency
from simple_bank.storage import create_store


def main():
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format)

    print("Simple Bank - transfer example")
    print("=" * 40)
    print(f"Database URL: {config.database_url}")

    store = create_store(config)
    try:
        accounts = AccountManager(store)
        executor = TransferExecutor(store, config)

        alice = accounts.create_account("alice", Currency.USD, 1000)
        bob = accounts.create_account("bob", Currency.USD, 500)

        print("\n1. Transfer 300 from alice to bob")
        transfer = executor.execute(alice.id, bob.id, 300, reason="rent")
        print(f"   transfer {transfer.id}: {transfer.status.value}")

        print("\n2. Transfer 5000 from alice to bob")
        failed = executor.execute(alice.id, bob.id, 5000)
        print(f"   transfer {failed.id}: {failed.status.value} ({failed.reason})")

        print("\n3. Reverse the first transfer")
        reversal = executor.reverse(transfer.id, "sent in error")
        print(f"   transfer {reversal.id}: {reversal.status.value}, reverses {reversal.reverses_transfer_id}")

        print("\nBalances")
        for account in accounts.list_accounts():
            print(f"   {account.owner}: {account.balance} {account.currency.value}")

        print("\nEntries")
        for entry in executor.recorder.list_entries():
            print(f"   #{entry.id} account {entry.account_id}: {entry.amount:+d} (transfer {entry.transfer_id})")
    finally:
        store.close()


if __name__ == "__main__":
    main()
