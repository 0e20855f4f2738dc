from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine

from forohtoo.models import CreateTransactionParams, DuplicateKeyError, NoRowsError
from forohtoo.queries import Queries, create_schema

BASE = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def queries():
    engine = create_engine("sqlite://")
    create_schema(engine)
    yield Queries(engine)
    engine.dispose()


def _txn(signature, wallet, block_time, *, from_address="sender1", **extra):
    return CreateTransactionParams(
        signature=signature,
        wallet_address=wallet,
        slot=12345,
        block_time=block_time,
        amount=1000000,
        confirmation_status="finalized",
        from_address=from_address,
        **extra,
    )


def test_create_and_get_transaction_round_trip(queries):
    memo = '{"workflow_id": "test-workflow-123"}'
    mint = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
    created = queries.create_transaction(
        _txn("sig123", "wallet123", BASE, memo=memo, token_mint=mint)
    )
    fetched = queries.get_transaction("sig123")
    assert fetched == created
    assert fetched.memo == memo
    assert fetched.token_mint == mint
    assert fetched.block_time == BASE
    assert fetched.created_at.tzinfo == timezone.utc


def test_nullable_fields_round_trip_as_none(queries):
    created = queries.create_transaction(_txn("sig1", "wallet123", BASE, from_address=None))
    assert created.token_mint is None
    assert created.memo is None
    assert created.from_address is None


def test_duplicate_signature_and_block_time(queries):
    queries.create_transaction(_txn("sig123", "wallet123", BASE))
    with pytest.raises(DuplicateKeyError) as info:
        queries.create_transaction(_txn("sig123", "wallet456", BASE))
    assert "duplicate key" in str(info.value)
    later = queries.create_transaction(_txn("sig123", "wallet123", BASE + timedelta(minutes=1)))
    assert later.block_time == BASE + timedelta(minutes=1)


def test_get_missing_transaction(queries):
    with pytest.raises(NoRowsError):
        queries.get_transaction("nonexistent")


def test_non_utc_block_time_is_normalised(queries):
    local = timezone(timedelta(hours=2))
    block_time = datetime(2025, 1, 1, 2, 0, tzinfo=local)
    created = queries.create_transaction(_txn("sigTZ", "wallet123", block_time))
    assert created.block_time == BASE
    assert created.block_time.tzinfo == timezone.utc


def test_count_transactions_by_wallet(queries):
    for i in range(7):
        queries.create_transaction(_txn(f"count{i}", "walletCount", BASE + timedelta(minutes=i)))
    assert queries.count_transactions_by_wallet("walletCount") == 7
    assert queries.count_transactions_by_wallet("nonexistent") == 0


def test_list_transactions_by_wallet_orders_and_paginates(queries):
    for i, letter in enumerate("ABCDE"):
        queries.create_transaction(_txn("sig" + letter, "wallet123", BASE + timedelta(minutes=i)))
    for i, letter in enumerate("XYZ"):
        queries.create_transaction(_txn("sig" + letter, "wallet456", BASE + timedelta(minutes=i)))
    queries.create_transaction(
        _txn("sigNoSender", "wallet123", BASE + timedelta(hours=1), from_address=None)
    )

    first = queries.list_transactions_by_wallet("wallet123", 3, 0)
    assert [t.signature for t in first] == ["sigE", "sigD", "sigC"]
    rest = queries.list_transactions_by_wallet("wallet123", 2, 3)
    assert [t.signature for t in rest] == ["sigB", "sigA"]
    everything = queries.list_transactions_by_wallet("wallet123", 10, 0)
    assert len(everything) == 5
    assert all(t.wallet_address == "wallet123" for t in everything)
    assert all(t.from_address is not None for t in everything)


def test_time_range_is_inclusive_and_descending(queries):
    for i, letter in enumerate("ABCDE"):
        queries.create_transaction(_txn("time" + letter, "wallet789", BASE + timedelta(hours=i)))
    txns = queries.list_transactions_by_wallet_and_time_range(
        "wallet789", BASE + timedelta(hours=1), BASE + timedelta(hours=3)
    )
    assert [t.signature for t in txns] == ["timeD", "timeC", "timeB"]


def test_get_transactions_since_ascending(queries):
    for i, letter in enumerate("ABCD"):
        queries.create_transaction(
            _txn("since" + letter, "walletSince", BASE + timedelta(minutes=10 * i))
        )
    txns = queries.get_transactions_since("walletSince", BASE + timedelta(minutes=15))
    assert [t.signature for t in txns] == ["sinceC", "sinceD"]


def test_latest_transaction(queries):
    for i, letter in enumerate("ABC"):
        queries.create_transaction(
            _txn("latest" + letter, "walletLatest", BASE + timedelta(minutes=i))
        )
    assert queries.get_latest_transaction_by_wallet("walletLatest").signature == "latestC"
    with pytest.raises(NoRowsError):
        queries.get_latest_transaction_by_wallet("nobody")


def test_signatures_by_wallet_with_and_without_since(queries):
    for i, letter in enumerate("ABC"):
        queries.create_transaction(_txn("s" + letter, "walletSig", BASE + timedelta(hours=i)))
    assert set(queries.get_transaction_signatures_by_wallet("walletSig", None)) == {"sA", "sB", "sC"}
    assert queries.get_transaction_signatures_by_wallet("walletSig", BASE) == ["sB", "sC"]
    assert queries.get_transaction_signatures_by_wallet("other", None) == []


def test_delete_transactions_older_than(queries):
    for i, letter in enumerate("ABC"):
        queries.create_transaction(_txn("old" + letter, "walletDelete", BASE + timedelta(hours=i)))
    for i, letter in enumerate("AB"):
        queries.create_transaction(
            _txn("new" + letter, "walletDelete", BASE + timedelta(hours=10 + i))
        )
    queries.delete_transactions_older_than(BASE + timedelta(hours=5))
    assert queries.count_transactions_by_wallet("walletDelete") == 2
    remaining = queries.list_transactions_by_wallet("walletDelete", 10, 0)
    assert [t.signature for t in remaining] == ["newB", "newA"]


@pytest.mark.parametrize(
    "interval",
    [timedelta(seconds=30), timedelta(minutes=1), timedelta(minutes=5), timedelta(hours=1)],
)
def test_wallet_poll_interval_round_trip(queries, interval):
    created = queries.create_wallet("wallet123", interval, "active")
    assert created.poll_interval == interval
    assert created.last_poll_time is None
    assert created.status == "active"
    assert queries.get_wallet("wallet123") == created


def test_duplicate_wallet(queries):
    queries.create_wallet("wallet123", timedelta(seconds=30), "active")
    with pytest.raises(DuplicateKeyError) as info:
        queries.create_wallet("wallet123", timedelta(seconds=30), "active")
    assert "duplicate key" in str(info.value)


def test_get_missing_wallet(queries):
    with pytest.raises(NoRowsError):
        queries.get_wallet("nonexistent")


def test_list_wallets_newest_first(queries):
    for address in ["wallet1", "wallet2", "wallet3"]:
        queries.create_wallet(address, timedelta(seconds=30), "active")
    assert [w.address for w in queries.list_wallets()] == ["wallet3", "wallet2", "wallet1"]


def test_list_wallets_empty(queries):
    assert queries.list_wallets() == []


def test_list_active_wallets_never_polled_first(queries):
    queries.create_wallet("active1", timedelta(seconds=30), "active")
    queries.create_wallet("active2", timedelta(seconds=30), "active")
    queries.create_wallet("paused1", timedelta(seconds=30), "paused")
    queries.update_wallet_poll_time("active1", BASE)
    active = queries.list_active_wallets()
    assert [w.address for w in active] == ["active2", "active1"]
    assert all(w.status == "active" for w in active)


def test_update_wallet_poll_time(queries):
    wallet = queries.create_wallet("wallet789", timedelta(seconds=30), "active")
    updated = queries.update_wallet_poll_time("wallet789", BASE)
    assert updated.last_poll_time == BASE
    assert updated.updated_at > wallet.updated_at
    assert updated.created_at == wallet.created_at


def test_update_wallet_status_persists(queries):
    wallet = queries.create_wallet("wallet999", timedelta(seconds=30), "active")
    updated = queries.update_wallet_status("wallet999", "paused")
    assert updated.status == "paused"
    assert updated.updated_at > wallet.updated_at
    assert queries.get_wallet("wallet999").status == "paused"


def test_update_missing_wallet(queries):
    with pytest.raises(NoRowsError):
        queries.update_wallet_status("nonexistent", "paused")
    with pytest.raises(NoRowsError):
        queries.update_wallet_poll_time("nonexistent", BASE)


def test_delete_wallet_and_exists(queries):
    assert queries.wallet_exists("wallet222") is False
    queries.create_wallet("wallet222", timedelta(seconds=30), "active")
    assert queries.wallet_exists("wallet222") is True
    queries.delete_wallet("wallet222")
    assert queries.wallet_exists("wallet222") is False
    queries.delete_wallet("wallet222")
    with pytest.raises(NoRowsError):
        queries.get_wallet("wallet222")