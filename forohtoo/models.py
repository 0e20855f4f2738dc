"""Domain records for wallets and transactions, and the errors the data layer raises."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

__all__ = [
    "NoRowsError",
    "DuplicateKeyError",
    "Transaction",
    "Wallet",
    "CreateTransactionParams",
    "CreateWalletParams",
    "ListTransactionsByWalletParams",
    "ListTransactionsByWalletAndTimeRangeParams",
]


class NoRowsError(LookupError):
    """Raised when a query that expects a row finds none."""

    def __init__(self, message: str = "no rows in result set"):
        super().__init__(message)


class DuplicateKeyError(ValueError):
    """Raised when an insert collides with an existing primary key."""

    def __init__(self, message: str = "duplicate key value violates unique constraint"):
        super().__init__(message)


@dataclass(frozen=True, kw_only=True)
class Transaction:
    """A Solana transaction recorded for a monitored wallet."""

    signature: str
    wallet_address: str
    slot: int
    block_time: datetime
    amount: int
    token_mint: str | None = None  # None for native SOL
    memo: str | None = None
    confirmation_status: str
    created_at: datetime
    from_address: str | None = None  # sender, when known


@dataclass(frozen=True, kw_only=True)
class Wallet:
    """A wallet registered for polling."""

    address: str
    poll_interval: timedelta
    last_poll_time: datetime | None = None
    status: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True, kw_only=True)
class CreateTransactionParams:
    """Fields needed to record a transaction."""

    signature: str
    wallet_address: str
    slot: int
    block_time: datetime
    amount: int
    token_mint: str | None = None
    memo: str | None = None
    confirmation_status: str
    from_address: str | None = None


@dataclass(frozen=True, kw_only=True)
class CreateWalletParams:
    """Fields needed to register a wallet."""

    address: str
    poll_interval: timedelta
    status: str


@dataclass(frozen=True, kw_only=True)
class ListTransactionsByWalletParams:
    """Pagination for listing a wallet's transactions."""

    wallet_address: str
    limit: int
    offset: int = 0


@dataclass(frozen=True, kw_only=True)
class ListTransactionsByWalletAndTimeRangeParams:
    """An inclusive block-time window for a wallet's transactions."""

    wallet_address: str
    start_time: datetime
    end_time: datetime