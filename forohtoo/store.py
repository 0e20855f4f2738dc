"""Database operations for wallets and transactions, in domain terms."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.engine import Engine

from forohtoo.models import (
    CreateTransactionParams,
    CreateWalletParams,
    ListTransactionsByWalletAndTimeRangeParams,
    ListTransactionsByWalletParams,
    Transaction,
    Wallet,
)
from forohtoo.queries import Queries

__all__ = ["Store"]


class Store:
    """Reads and writes wallets and transactions through a SQLAlchemy engine.

    Lookups that find nothing raise ``NoRowsError``; inserts that collide with
    an existing key raise ``DuplicateKeyError``.
    """

    def __init__(self, engine: Engine):
        self._engine = engine
        self._queries = Queries(engine)

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the engine's pooled connections."""
        self._engine.dispose()

    # Transactions

    def create_transaction(self, params: CreateTransactionParams) -> Transaction:
        """Record a new transaction and return it as stored."""
        return self._queries.create_transaction(params)

    def get_transaction(self, signature: str) -> Transaction:
        """Return the transaction with this signature."""
        return self._queries.get_transaction(signature)

    def get_transaction_signatures_by_wallet(
        self, wallet_address: str, since: datetime | None = None
    ) -> list[str]:
        """Return the signatures of a wallet's transactions, optionally after ``since``."""
        return self._queries.get_transaction_signatures_by_wallet(wallet_address, since)

    def list_transactions_by_wallet(
        self, params: ListTransactionsByWalletParams
    ) -> list[Transaction]:
        """Return a page of a wallet's transactions with a known sender, newest first."""
        return self._queries.list_transactions_by_wallet(
            params.wallet_address, params.limit, params.offset
        )

    def list_transactions_by_wallet_and_time_range(
        self, params: ListTransactionsByWalletAndTimeRangeParams
    ) -> list[Transaction]:
        """Return a wallet's transactions within an inclusive window, newest first."""
        return self._queries.list_transactions_by_wallet_and_time_range(
            params.wallet_address, params.start_time, params.end_time
        )

    def count_transactions_by_wallet(self, wallet_address: str) -> int:
        """Return how many transactions a wallet has."""
        return self._queries.count_transactions_by_wallet(wallet_address)

    def get_latest_transaction_by_wallet(self, wallet_address: str) -> Transaction:
        """Return a wallet's transaction with the latest block time."""
        return self._queries.get_latest_transaction_by_wallet(wallet_address)

    def get_transactions_since(self, wallet_address: str, since: datetime) -> list[Transaction]:
        """Return a wallet's transactions after ``since``, oldest first."""
        return self._queries.get_transactions_since(wallet_address, since)

    def delete_transactions_older_than(self, before: datetime) -> None:
        """Delete every transaction whose block time is before ``before``."""
        self._queries.delete_transactions_older_than(before)

    # Wallets

    def create_wallet(self, params: CreateWalletParams) -> Wallet:
        """Register a wallet for monitoring."""
        return self._queries.create_wallet(params.address, params.poll_interval, params.status)

    def get_wallet(self, address: str) -> Wallet:
        """Return the wallet with this address."""
        return self._queries.get_wallet(address)

    def list_wallets(self) -> list[Wallet]:
        """Return every registered wallet, most recently created first."""
        return self._queries.list_wallets()

    def list_active_wallets(self) -> list[Wallet]:
        """Return active wallets, least recently polled (or never polled) first."""
        return self._queries.list_active_wallets()

    def update_wallet_poll_time(self, address: str, poll_time: datetime) -> Wallet:
        """Set a wallet's last poll time."""
        return self._queries.update_wallet_poll_time(address, poll_time)

    def update_wallet_status(self, address: str, status: str) -> Wallet:
        """Set a wallet's status."""
        return self._queries.update_wallet_status(address, status)

    def delete_wallet(self, address: str) -> None:
        """Remove a wallet; removing an unknown wallet is not an error."""
        self._queries.delete_wallet(address)

    def wallet_exists(self, address: str) -> bool:
        """Return whether a wallet is registered."""
        return self._queries.wallet_exists(address)