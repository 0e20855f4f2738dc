"""SQL access to the ``transactions`` and ``wallets`` tables."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    delete,
    exists,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.types import TypeDecorator

from forohtoo.models import (
    CreateTransactionParams,
    DuplicateKeyError,
    NoRowsError,
    Transaction,
    Wallet,
)

__all__ = ["create_schema", "Queries", "transactions", "wallets"]

T = TypeVar("T")


class _UTCDateTime(TypeDecorator):
    """Timestamp column that always yields timezone-aware UTC datetimes."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class _Microseconds(TypeDecorator):
    """Interval stored as a whole number of microseconds."""

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value: timedelta | None, dialect: Any) -> int | None:
        if value is None:
            return None
        return value // timedelta(microseconds=1)

    def process_result_value(self, value: int | None, dialect: Any) -> timedelta:
        return timedelta(microseconds=value or 0)


_metadata = MetaData()

transactions = Table(
    "transactions",
    _metadata,
    Column("signature", String, primary_key=True),
    Column("wallet_address", String, nullable=False, index=True),
    Column("slot", BigInteger, nullable=False),
    Column("block_time", _UTCDateTime, primary_key=True),
    Column("amount", BigInteger, nullable=False),
    Column("token_mint", String),
    Column("memo", String),
    Column("confirmation_status", String, nullable=False),
    Column("created_at", _UTCDateTime, nullable=False),
    Column("from_address", String),
)

wallets = Table(
    "wallets",
    _metadata,
    Column("address", String, primary_key=True),
    Column("poll_interval", _Microseconds, nullable=False),
    Column("last_poll_time", _UTCDateTime),
    Column("status", String, nullable=False),
    Column("created_at", _UTCDateTime, nullable=False),
    Column("updated_at", _UTCDateTime, nullable=False),
)


def create_schema(engine: Engine) -> None:
    """Create the tables if they do not exist yet."""
    _metadata.create_all(engine)


def _transaction_from_row(row: Any) -> Transaction:
    return Transaction(
        signature=row.signature,
        wallet_address=row.wallet_address,
        slot=row.slot,
        block_time=row.block_time,
        amount=row.amount,
        token_mint=row.token_mint,
        memo=row.memo,
        confirmation_status=row.confirmation_status,
        created_at=row.created_at,
        from_address=row.from_address,
    )


def _wallet_from_row(row: Any) -> Wallet:
    return Wallet(
        address=row.address,
        poll_interval=row.poll_interval,
        last_poll_time=row.last_poll_time,
        status=row.status,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _one(conn: Connection, stmt: Any, convert: Callable[[Any], T]) -> T:
    row = conn.execute(stmt).first()
    if row is None:
        raise NoRowsError()
    return convert(row)


class Queries:
    """The fixed set of SQL statements the service runs."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._clock_lock = threading.Lock()
        self._last_now: datetime | None = None

    def _now(self) -> datetime:
        # Strictly increasing, so rows written in quick succession still order.
        now = datetime.now(timezone.utc)
        with self._clock_lock:
            if self._last_now is not None and now <= self._last_now:
                now = self._last_now + timedelta(microseconds=1)
            self._last_now = now
        return now

    # Transactions

    def count_transactions_by_wallet(self, wallet_address: str) -> int:
        stmt = (
            select(func.count())
            .select_from(transactions)
            .where(transactions.c.wallet_address == wallet_address)
        )
        with self._engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())

    def create_transaction(self, params: CreateTransactionParams) -> Transaction:
        values = {
            "signature": params.signature,
            "wallet_address": params.wallet_address,
            "slot": params.slot,
            "block_time": params.block_time,
            "amount": params.amount,
            "token_mint": params.token_mint,
            "memo": params.memo,
            "confirmation_status": params.confirmation_status,
            "created_at": self._now(),
            "from_address": params.from_address,
        }
        lookup = select(transactions).where(
            transactions.c.signature == params.signature,
            transactions.c.block_time == params.block_time,
        )
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(transactions).values(**values))
                return _one(conn, lookup, _transaction_from_row)
        except IntegrityError as exc:
            raise DuplicateKeyError(
                'duplicate key value violates unique constraint "transactions_pkey"'
            ) from exc

    def delete_transactions_older_than(self, before: datetime) -> None:
        with self._engine.begin() as conn:
            conn.execute(delete(transactions).where(transactions.c.block_time < before))

    def get_latest_transaction_by_wallet(self, wallet_address: str) -> Transaction:
        stmt = (
            select(transactions)
            .where(transactions.c.wallet_address == wallet_address)
            .order_by(transactions.c.block_time.desc())
            .limit(1)
        )
        with self._engine.connect() as conn:
            return _one(conn, stmt, _transaction_from_row)

    def get_transaction(self, signature: str) -> Transaction:
        stmt = select(transactions).where(transactions.c.signature == signature).limit(1)
        with self._engine.connect() as conn:
            return _one(conn, stmt, _transaction_from_row)

    def get_transaction_signatures_by_wallet(
        self, wallet_address: str, since: datetime | None = None
    ) -> list[str]:
        stmt = select(transactions.c.signature).where(
            transactions.c.wallet_address == wallet_address
        )
        if since is not None:
            stmt = stmt.where(transactions.c.block_time > since)
        stmt = stmt.order_by(transactions.c.block_time)
        with self._engine.connect() as conn:
            return list(conn.execute(stmt).scalars())

    def get_transactions_since(self, wallet_address: str, since: datetime) -> list[Transaction]:
        stmt = (
            select(transactions)
            .where(
                transactions.c.wallet_address == wallet_address,
                transactions.c.block_time > since,
            )
            .order_by(transactions.c.block_time.asc())
        )
        return self._transactions(stmt)

    def list_transactions_by_wallet(
        self, wallet_address: str, limit: int, offset: int = 0
    ) -> list[Transaction]:
        stmt = (
            select(transactions)
            .where(
                transactions.c.wallet_address == wallet_address,
                transactions.c.from_address.is_not(None),
            )
            .order_by(transactions.c.block_time.desc())
            .limit(limit)
            .offset(offset)
        )
        return self._transactions(stmt)

    def list_transactions_by_wallet_and_time_range(
        self, wallet_address: str, start_time: datetime, end_time: datetime
    ) -> list[Transaction]:
        stmt = (
            select(transactions)
            .where(
                transactions.c.wallet_address == wallet_address,
                transactions.c.block_time >= start_time,
                transactions.c.block_time <= end_time,
            )
            .order_by(transactions.c.block_time.desc())
        )
        return self._transactions(stmt)

    def _transactions(self, stmt: Any) -> list[Transaction]:
        with self._engine.connect() as conn:
            return [_transaction_from_row(row) for row in conn.execute(stmt)]

    # Wallets

    def create_wallet(self, address: str, poll_interval: timedelta, status: str) -> Wallet:
        now = self._now()
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(wallets).values(
                        address=address,
                        poll_interval=poll_interval,
                        status=status,
                        created_at=now,
                        updated_at=now,
                    )
                )
                return _one(conn, self._wallet_query(address), _wallet_from_row)
        except IntegrityError as exc:
            raise DuplicateKeyError(
                'duplicate key value violates unique constraint "wallets_pkey"'
            ) from exc

    def delete_wallet(self, address: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(delete(wallets).where(wallets.c.address == address))

    def get_wallet(self, address: str) -> Wallet:
        with self._engine.connect() as conn:
            return _one(conn, self._wallet_query(address), _wallet_from_row)

    def list_active_wallets(self) -> list[Wallet]:
        stmt = (
            select(wallets)
            .where(wallets.c.status == "active")
            .order_by(wallets.c.last_poll_time.asc().nulls_first())
        )
        return self._wallets(stmt)

    def list_wallets(self) -> list[Wallet]:
        return self._wallets(select(wallets).order_by(wallets.c.created_at.desc()))

    def update_wallet_poll_time(self, address: str, poll_time: datetime) -> Wallet:
        return self._update_wallet(address, last_poll_time=poll_time)

    def update_wallet_status(self, address: str, status: str) -> Wallet:
        return self._update_wallet(address, status=status)

    def wallet_exists(self, address: str) -> bool:
        stmt = select(exists().where(wallets.c.address == address))
        with self._engine.connect() as conn:
            return bool(conn.execute(stmt).scalar_one())

    @staticmethod
    def _wallet_query(address: str) -> Any:
        return select(wallets).where(wallets.c.address == address)

    def _wallets(self, stmt: Any) -> list[Wallet]:
        with self._engine.connect() as conn:
            return [_wallet_from_row(row) for row in conn.execute(stmt)]

    def _update_wallet(self, address: str, **changes: Any) -> Wallet:
        stmt = (
            update(wallets)
            .where(wallets.c.address == address)
            .values(updated_at=self._now(), **changes)
        )
        with self._engine.begin() as conn:
            if conn.execute(stmt).rowcount == 0:
                raise NoRowsError()
            return _one(conn, self._wallet_query(address), _wallet_from_row)