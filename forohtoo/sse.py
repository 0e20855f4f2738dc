"""Server-sent event streaming of transaction events to HTTP clients."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterable, Iterator

from forohtoo.events import Publisher, TransactionEvent, event_from_json, subject_for

__all__ = [
    "DEFAULT_KEEPALIVE_INTERVAL",
    "EventSource",
    "subject_for_address",
    "format_event",
    "stream_transactions",
]

logger = logging.getLogger(__name__)

DEFAULT_KEEPALIVE_INTERVAL = 10.0  # seconds

_ALL_WALLETS = "all wallets"
_KEEPALIVE = ": keepalive\n\n"
_SUBSCRIBE_FAILED = '{"error": "failed to subscribe"}'
_END = object()


def _subject_matches(pattern: str, subject: str) -> bool:
    """Match a subject against a pattern where ``*`` is one token and ``>`` the rest."""
    wanted = pattern.split(".")
    tokens = subject.split(".")
    for position, token in enumerate(wanted):
        if token == ">":
            return len(tokens) > position
        if position >= len(tokens):
            return False
        if token not in ("*", tokens[position]):
            return False
    return len(wanted) == len(tokens)


class _Subscription:
    """Messages published on a subject pattern after the subscription was made."""

    def __init__(self, source: EventSource, subject: str):
        self.subject = subject
        self._source = source
        self._queue: queue.Queue[object] = queue.Queue()

    def _deliver(self, data: bytes) -> None:
        self._queue.put(data)

    def _end(self) -> None:
        self._queue.put(_END)

    def get(self, timeout: float | None = None) -> bytes | None:
        """Return the next message, or None on timeout; raise EOFError once the source closed."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _END:
            self._queue.put(_END)
            raise EOFError("event source closed")
        assert isinstance(item, bytes)
        return item

    def close(self) -> None:
        """Stop receiving messages."""
        self._source._unsubscribe(self)

    def __enter__(self) -> _Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventSource(Publisher):
    """In-process subject broker: publishers send events, streams subscribe to them.

    Subscribers only see messages published after they subscribed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[_Subscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscribe(self, subject: str) -> _Subscription:
        """Subscribe to a subject pattern; raise ConnectionError if the source is closed."""
        with self._lock:
            if self._closed:
                raise ConnectionError("event source is closed")
            subscription = _Subscription(self, subject)
            self._subscriptions.append(subscription)
            return subscription

    def _unsubscribe(self, subscription: _Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, subject: str, data: bytes | str) -> None:
        """Deliver raw data to every subscription whose pattern matches ``subject``."""
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        with self._lock:
            if self._closed:
                raise ConnectionError("event source is closed")
            targets = [s for s in self._subscriptions if _subject_matches(s.subject, subject)]
        for subscription in targets:
            subscription._deliver(payload)

    def publish_transaction(self, event: TransactionEvent) -> None:
        """Publish an event on its wallet's subject."""
        self.publish(subject_for(event.wallet_address), event.to_json())
        logger.debug(
            "published transaction event %s for %s", event.signature, event.wallet_address
        )

    def publish_transaction_batch(self, events: Iterable[TransactionEvent]) -> None:
        """Publish each event; a failure is logged and does not stop the batch."""
        count = 0
        for event in events:
            count += 1
            try:
                self.publish_transaction(event)
            except Exception as exc:
                logger.error(
                    "failed to publish transaction %s for %s in batch: %s",
                    event.signature,
                    event.wallet_address,
                    exc,
                )
        logger.debug("published transaction batch of %d", count)

    def close(self) -> None:
        """Close the source and end every open subscription."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription._end()
        logger.info("event source closed")


def subject_for_address(address: str) -> str:
    """Return the subject filter for one wallet, or for all wallets when empty."""
    return subject_for(address) if address else subject_for("*")


def format_event(event: str, data: str) -> str:
    """Render one server-sent event."""
    return f"event: {event}\ndata: {data}\n\n"


def stream_transactions(
    source: EventSource,
    address: str = "",
    keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
) -> Iterator[str]:
    """Yield server-sent events for new transactions of one wallet (or all when empty).

    The stream opens with a ``connected`` event, sends a keepalive comment
    whenever ``keepalive_interval`` seconds pass without a message, and ends
    when the source closes or the generator is closed.
    """
    subject = subject_for_address(address)
    wallet_desc = address or _ALL_WALLETS
    connected = format_event("connected", '{"wallet":"%s"}' % wallet_desc)

    try:
        subscription = source.subscribe(subject)
    except ConnectionError as exc:
        logger.error("failed to subscribe for %s: %s", wallet_desc, exc)
        yield connected
        yield format_event("error", _SUBSCRIBE_FAILED)
        return

    logger.debug("SSE client connected for %s", wallet_desc)
    with subscription:
        yield connected
        while True:
            try:
                data = subscription.get(timeout=keepalive_interval)
            except EOFError:
                return
            if data is None:
                yield _KEEPALIVE
                continue
            try:
                event = event_from_json(data)
            except (ValueError, TypeError) as exc:
                logger.warning("failed to decode event: %s", exc)
                continue
            yield format_event("transaction", event.to_json())
            logger.debug("sent transaction event %s for %s", event.signature, wallet_desc)