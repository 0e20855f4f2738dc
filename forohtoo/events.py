"""Transaction events published on the ``txns.{wallet_address}`` subjects."""

from __future__ import annotations

import abc
import json
import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from forohtoo.models import Transaction

__all__ = [
    "STREAM_NAME",
    "STREAM_SUBJECTS",
    "STREAM_RETENTION",
    "TransactionEvent",
    "event_from_json",
    "from_db_transaction",
    "subject_for",
    "Publisher",
    "MockPublisher",
]

STREAM_NAME = "TRANSACTIONS"
STREAM_SUBJECTS = "txns.*"
STREAM_RETENTION = timedelta(days=30)

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_TIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)


def subject_for(wallet_address: str) -> str:
    """Return the subject an event for this wallet is published on."""
    return f"txns.{wallet_address}"


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    offset = value.utcoffset() or timedelta(0)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(offset) // timedelta(minutes=1)
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(text: Any) -> datetime:
    if not isinstance(text, str):
        raise ValueError(f"invalid timestamp: {text!r}")
    match = _TIME_RE.match(text)
    if match is None:
        raise ValueError(f"invalid timestamp: {text!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micros = int((fraction or "0")[:6].ljust(6, "0"))
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micros, tzinfo=tz
    )


@dataclass(kw_only=True)
class TransactionEvent:
    """A transaction as published to subscribers."""

    signature: str
    slot: int
    wallet_address: str  # receiver
    from_address: str | None = None  # sender, when known
    amount: int
    token_type: str = ""
    memo: str = ""
    timestamp: datetime
    block_time: datetime
    confirmation_status: str
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Return the event as its JSON-ready mapping, omitting empty optional fields."""
        data: dict[str, Any] = {
            "signature": self.signature,
            "slot": self.slot,
            "wallet_address": self.wallet_address,
        }
        if self.from_address is not None:
            data["from_address"] = self.from_address
        data["amount"] = self.amount
        data["token_type"] = self.token_type
        if self.memo:
            data["memo"] = self.memo
        data["timestamp"] = _format_time(self.timestamp)
        data["block_time"] = _format_time(self.block_time)
        data["confirmation_status"] = self.confirmation_status
        data["published_at"] = _format_time(self.published_at)
        return data

    def to_json(self) -> str:
        """Serialise the event as compact JSON."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)


def event_from_json(data: str | bytes) -> TransactionEvent:
    """Decode an event from JSON; absent fields take their zero values."""
    decoded = json.loads(data)
    if not isinstance(decoded, dict):
        raise ValueError("transaction event must be a JSON object")

    def time_field(name: str) -> datetime:
        value = decoded.get(name)
        return _ZERO_TIME if value is None else _parse_time(value)

    return TransactionEvent(
        signature=decoded.get("signature") or "",
        slot=int(decoded.get("slot") or 0),
        wallet_address=decoded.get("wallet_address") or "",
        from_address=decoded.get("from_address"),
        amount=int(decoded.get("amount") or 0),
        token_type=decoded.get("token_type") or "",
        memo=decoded.get("memo") or "",
        timestamp=time_field("timestamp"),
        block_time=time_field("block_time"),
        confirmation_status=decoded.get("confirmation_status") or "",
        published_at=time_field("published_at"),
    )


def from_db_transaction(txn: Transaction) -> TransactionEvent:
    """Build an event for a stored transaction, stamped with the current time."""
    return TransactionEvent(
        signature=txn.signature,
        slot=txn.slot,
        wallet_address=txn.wallet_address,
        from_address=txn.from_address,
        amount=txn.amount,
        token_type=txn.token_mint or "",
        memo=txn.memo or "",
        timestamp=txn.created_at,
        block_time=txn.block_time,
        confirmation_status=txn.confirmation_status,
        published_at=datetime.now(timezone.utc),
    )


class Publisher(abc.ABC):
    """Something that publishes transaction events."""

    @abc.abstractmethod
    def publish_transaction(self, event: TransactionEvent) -> None:
        """Publish one event on its wallet's subject."""

    @abc.abstractmethod
    def publish_transaction_batch(self, events: Iterable[TransactionEvent]) -> None:
        """Publish several events."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the connection."""

    def __enter__(self) -> Publisher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class MockPublisher(Publisher):
    """In-memory publisher that records events, for tests."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._events: list[TransactionEvent] = []
        self.publish_error: BaseException | None = None
        self.publish_batch_error: BaseException | None = None
        self._closed = False

    def publish_transaction(self, event: TransactionEvent) -> None:
        """Record the event, or raise the configured ``publish_error``."""
        with self._lock:
            if self.publish_error is not None:
                raise self.publish_error
            self._events.append(event)

    def publish_transaction_batch(self, events: Iterable[TransactionEvent]) -> None:
        """Record the events, or raise the configured ``publish_batch_error``."""
        with self._lock:
            if self.publish_batch_error is not None:
                raise self.publish_batch_error
            self._events.extend(events)

    def close(self) -> None:
        """Mark the publisher closed."""
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def published_events(self) -> list[TransactionEvent]:
        """A copy of every event recorded so far."""
        with self._lock:
            return list(self._events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def events_for_wallet(self, address: str) -> list[TransactionEvent]:
        """Return the recorded events whose receiver is ``address``."""
        with self._lock:
            return [e for e in self._events if e.wallet_address == address]

    def reset(self) -> None:
        """Forget every event and configured error, and reopen."""
        with self._lock:
            self._events = []
            self.publish_error = None
            self.publish_batch_error = None
            self._closed = False