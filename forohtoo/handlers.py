"""HTTP request handlers for wallet registration and transaction listing."""

from __future__ import annotations

import abc
import json
import logging
import re
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import Any

from werkzeug.wrappers import Request, Response

from forohtoo.durations import format_duration, parse_duration
from forohtoo.models import (
    CreateWalletParams,
    DuplicateKeyError,
    ListTransactionsByWalletParams,
    NoRowsError,
    Transaction,
    Wallet,
)
from forohtoo.store import Store

__all__ = [
    "MAX_REQUEST_BODY_SIZE",
    "MAX_ADDRESS_LENGTH",
    "MIN_POLL_INTERVAL",
    "MAX_POLL_INTERVAL",
    "ValidationError",
    "Scheduler",
    "validate_address",
    "validate_poll_interval",
    "wallet_to_response",
    "transaction_to_response",
    "register_wallet",
    "unregister_wallet",
    "get_wallet",
    "list_wallets",
    "list_transactions",
]

logger = logging.getLogger(__name__)

MAX_REQUEST_BODY_SIZE = 1 << 20  # 1MB
MAX_ADDRESS_LENGTH = 100  # Solana addresses are 44 characters; leave room
MIN_POLL_INTERVAL = timedelta(seconds=10)
MAX_POLL_INTERVAL = timedelta(hours=24)

# Base58 alphabet: no 0, O, I or l.
_VALID_ADDRESS = re.compile(r"[1-9A-HJ-NP-Za-km-z]+")
_SQL_PATTERNS = ("drop ", "delete ", "insert ", "update ", "select ", "--", "/*", "*/", ";")
_INTEGER_PREFIX = re.compile(r"\s*([+-]?\d+)")
_JSON_WHITESPACE = " \t\n\r"
_INT64_MIN, _INT64_MAX = -(1 << 63), (1 << 63) - 1


class ValidationError(ValueError):
    """Raised when a request field fails validation."""

    def __init__(self, message: str):
        super().__init__(message.strip())


class Scheduler(abc.ABC):
    """Creates and removes the recurring polling schedule of a wallet."""

    @abc.abstractmethod
    def create_wallet_schedule(self, address: str, interval: timedelta) -> None:
        """Start polling ``address`` every ``interval``."""

    @abc.abstractmethod
    def delete_wallet_schedule(self, address: str) -> None:
        """Stop polling ``address``."""


class _BadRequestBody(ValueError):
    pass


def validate_address(address: str) -> None:
    """Raise ValidationError unless ``address`` looks like a safe base58 wallet address."""
    if not address:
        raise ValidationError("address is required")
    if len(address.encode("utf-8", errors="surrogatepass")) > MAX_ADDRESS_LENGTH:
        raise ValidationError(
            f"address too long: maximum length is {MAX_ADDRESS_LENGTH} characters"
        )
    if any(unicodedata.category(ch) == "Cc" for ch in address):
        raise ValidationError("invalid characters in address: control characters not allowed")
    lowered = address.lower()
    if any(pattern in lowered for pattern in _SQL_PATTERNS):
        raise ValidationError("invalid characters in address: suspicious pattern detected")
    if _VALID_ADDRESS.fullmatch(address) is None:
        raise ValidationError(
            "invalid address format: must contain only valid base58 characters"
        )


def validate_poll_interval(interval: timedelta) -> None:
    """Raise ValidationError unless ``interval`` lies within the allowed bounds."""
    if interval <= timedelta(0):
        raise ValidationError("poll_interval must be positive")
    if interval < MIN_POLL_INTERVAL:
        raise ValidationError(
            f"poll_interval must be at least {format_duration(MIN_POLL_INTERVAL)}"
        )
    if interval > MAX_POLL_INTERVAL:
        raise ValidationError(
            f"poll_interval cannot exceed {format_duration(MAX_POLL_INTERVAL)}"
        )


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


def wallet_to_response(wallet: Wallet) -> dict[str, Any]:
    """Return the JSON-ready representation of a wallet."""
    data: dict[str, Any] = {
        "address": wallet.address,
        "poll_interval": format_duration(wallet.poll_interval),
    }
    if wallet.last_poll_time is not None:
        data["last_poll_time"] = _format_time(wallet.last_poll_time)
    data["status"] = wallet.status
    data["created_at"] = _format_time(wallet.created_at)
    data["updated_at"] = _format_time(wallet.updated_at)
    return data


def transaction_to_response(txn: Transaction) -> dict[str, Any]:
    """Return the JSON-ready representation of a transaction."""
    data: dict[str, Any] = {
        "signature": txn.signature,
        "wallet_address": txn.wallet_address,
    }
    if txn.from_address is not None:
        data["from_address"] = txn.from_address
    data["slot"] = txn.slot
    data["block_time"] = _format_time(txn.block_time)
    data["amount"] = txn.amount
    if txn.token_mint is not None:
        data["token_type"] = txn.token_mint
    if txn.memo is not None:
        data["memo"] = txn.memo
    data["confirmation_status"] = txn.confirmation_status
    data["created_at"] = _format_time(txn.created_at)
    return data


def _json_response(data: Any, status: int) -> Response:
    body = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    for raw, escaped in (
        ("&", "\\u0026"),
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        body = body.replace(raw, escaped)
    return Response(body + "\n", status=status, content_type="application/json")


def _error(message: str, status: int) -> Response:
    return _json_response({"error": message}, status)


def _no_content() -> Response:
    response = Response(status=204)
    response.headers.pop("Content-Type", None)
    return response


def _read_register_body(request: Request) -> tuple[str, str]:
    raw = request.stream.read(MAX_REQUEST_BODY_SIZE + 1)
    too_large = len(raw) > MAX_REQUEST_BODY_SIZE
    text = raw[:MAX_REQUEST_BODY_SIZE].decode("utf-8", errors="replace").lstrip(_JSON_WHITESPACE)
    try:
        decoded, _ = json.JSONDecoder().raw_decode(text)
    except ValueError as exc:
        if too_large:
            raise _BadRequestBody("request body too large: maximum size is 1MB") from exc
        raise _BadRequestBody("invalid request body: must be valid JSON") from exc

    fields = {"address": "", "poll_interval": ""}
    if decoded is None:
        return fields["address"], fields["poll_interval"]
    if not isinstance(decoded, dict):
        raise _BadRequestBody("invalid request body: must be valid JSON")
    for key, value in decoded.items():
        name = key if key in fields else key.lower()
        if name not in fields or value is None:
            continue
        if not isinstance(value, str):
            raise _BadRequestBody("invalid request body: must be valid JSON")
        fields[name] = value
    return fields["address"], fields["poll_interval"]


def register_wallet(store: Store, scheduler: Scheduler, request: Request) -> Response:
    """Handle POST /api/v1/wallets: store the wallet and schedule its polling."""
    try:
        address, interval_text = _read_register_body(request)
    except _BadRequestBody as exc:
        logger.debug("failed to decode register request: %s", exc)
        return _error(str(exc), 400)

    try:
        validate_address(address)
    except ValidationError as exc:
        logger.debug("invalid address %r: %s", address, exc)
        return _error(str(exc), 400)

    try:
        poll_interval = parse_duration(interval_text)
    except ValueError as exc:
        logger.debug("invalid poll interval %r: %s", interval_text, exc)
        return _error("invalid poll_interval: must be a valid duration (e.g. '30s', '1m')", 400)

    try:
        validate_poll_interval(poll_interval)
    except ValidationError as exc:
        logger.debug("invalid poll interval value %s: %s", poll_interval, exc)
        return _error(str(exc), 400)

    params = CreateWalletParams(address=address, poll_interval=poll_interval, status="active")
    try:
        wallet = store.create_wallet(params)
    except Exception as exc:
        logger.error("failed to create wallet %s: %s", address, exc)
        if isinstance(exc, DuplicateKeyError) or "duplicate key" in str(exc):
            return _error("failed to register wallet: wallet already exists", 409)
        return _error("failed to register wallet", 500)

    try:
        scheduler.create_wallet_schedule(address, poll_interval)
    except Exception as exc:
        logger.error("failed to create schedule for %s: %s", address, exc)
        try:
            store.delete_wallet(address)
        except Exception as rollback_exc:
            logger.error("failed to roll back wallet %s: %s", address, rollback_exc)
        return _error("failed to create schedule for wallet", 500)

    logger.info(
        "wallet %s registered with schedule every %s",
        wallet.address,
        format_duration(wallet.poll_interval),
    )
    return _json_response(wallet_to_response(wallet), 201)


def unregister_wallet(store: Store, scheduler: Scheduler | None, address: str) -> Response:
    """Handle DELETE /api/v1/wallets/{address}.

    The polling schedule, when a scheduler is given, is removed before the
    wallet so that a scheduler failure leaves the wallet in place.
    """
    try:
        validate_address(address)
    except ValidationError as exc:
        logger.debug("invalid address %r: %s", address, exc)
        return _error(str(exc), 400)

    try:
        found = store.wallet_exists(address)
    except Exception as exc:
        logger.error("failed to check wallet existence for %s: %s", address, exc)
        return _error("internal server error", 500)
    if not found:
        return _error("wallet not found", 404)

    if scheduler is not None:
        try:
            scheduler.delete_wallet_schedule(address)
        except Exception as exc:
            logger.error("failed to delete schedule for %s: %s", address, exc)
            return _error("failed to delete schedule for wallet", 500)

    try:
        store.delete_wallet(address)
    except Exception as exc:
        logger.error("failed to delete wallet %s: %s", address, exc)
        return _error("failed to unregister wallet", 500)

    logger.info("wallet %s unregistered", address)
    return _no_content()


def get_wallet(store: Store, address: str) -> Response:
    """Handle GET /api/v1/wallets/{address}."""
    try:
        validate_address(address)
    except ValidationError as exc:
        logger.debug("invalid address %r: %s", address, exc)
        return _error(str(exc), 400)

    try:
        wallet = store.get_wallet(address)
    except NoRowsError:
        return _error("wallet not found", 404)
    except Exception as exc:
        logger.error("failed to get wallet %s: %s", address, exc)
        return _error("internal server error", 500)

    return _json_response(wallet_to_response(wallet), 200)


def list_wallets(store: Store) -> Response:
    """Handle GET /api/v1/wallets."""
    try:
        wallets = store.list_wallets()
    except Exception as exc:
        logger.error("failed to list wallets: %s", exc)
        return _error("internal server error", 500)
    logger.debug("listed %d wallets", len(wallets))
    return _json_response({"wallets": [wallet_to_response(w) for w in wallets]}, 200)


def _parse_int(text: str) -> int:
    match = _INTEGER_PREFIX.match(text)
    if match is None:
        raise ValueError(text)
    value = int(match.group(1))
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(text)
    return value


def _int32(value: int) -> int:
    return ((value + (1 << 31)) % (1 << 32)) - (1 << 31)


def list_transactions(store: Store, request: Request) -> Response:
    """Handle GET /api/v1/transactions?wallet_address=...&limit=...&offset=..."""
    args = request.args
    wallet_address = args.get("wallet_address", "")
    if not wallet_address:
        return _error("wallet_address query parameter is required", 400)

    try:
        validate_address(wallet_address)
    except ValidationError as exc:
        logger.debug("invalid address %r: %s", wallet_address, exc)
        return _error(str(exc), 400)

    limit = 100
    limit_text = args.get("limit", "")
    if limit_text:
        try:
            parsed = _parse_int(limit_text)
        except ValueError:
            return _error("invalid limit parameter: must be an integer", 400)
        if parsed < 1:
            return _error("limit must be at least 1", 400)
        if parsed > 1000:
            return _error("limit cannot exceed 1000", 400)
        limit = parsed

    offset = 0
    offset_text = args.get("offset", "")
    if offset_text:
        try:
            parsed = _parse_int(offset_text)
        except ValueError:
            return _error("invalid offset parameter: must be an integer", 400)
        if parsed < 0:
            return _error("offset cannot be negative", 400)
        offset = _int32(parsed)

    try:
        txns = store.list_transactions_by_wallet(
            ListTransactionsByWalletParams(
                wallet_address=wallet_address, limit=limit, offset=offset
            )
        )
    except Exception as exc:
        logger.error("failed to list transactions for %s: %s", wallet_address, exc)
        return _error("internal server error", 500)

    items = [transaction_to_response(t) for t in txns]
    logger.debug("listed %d transactions for %s", len(items), wallet_address)
    return _json_response(
        {"count": len(items), "limit": limit, "offset": offset, "transactions": items},
        200,
    )