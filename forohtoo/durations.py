"""Parsing and formatting of duration strings such as ``30s``, ``1m30s`` or ``1.5h``."""

from __future__ import annotations

from datetime import timedelta

__all__ = ["parse_duration", "format_duration"]

_NANOS_PER_UNIT = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,  # U+00B5 micro sign
    "μs": 1_000,  # U+03BC Greek small letter mu
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 60 * 60 * 1_000_000_000,
}

_MAX_NANOS = (1 << 63) - 1
_DIGITS = "0123456789"


def _invalid(text: str) -> ValueError:
    return ValueError(f'time: invalid duration "{text}"')


def _take_digits(s: str) -> tuple[str, str]:
    end = len(s) - len(s.lstrip(_DIGITS))
    return s[:end], s[end:]


def _parse_nanos(text: str) -> int:
    s = text
    negative = False
    if s and s[0] in "+-":
        negative = s[0] == "-"
        s = s[1:]

    if s == "0":
        return 0
    if not s:
        raise _invalid(text)

    total = 0
    while s:
        if s[0] != "." and s[0] not in _DIGITS:
            raise _invalid(text)

        whole, s = _take_digits(s)
        fraction = ""
        has_point = s.startswith(".")
        if has_point:
            fraction, s = _take_digits(s[1:])
        if not whole and not fraction:
            raise _invalid(text)

        unit_end = next(
            (pos for pos, ch in enumerate(s) if ch == "." or ch in _DIGITS), len(s)
        )
        unit, s = s[:unit_end], s[unit_end:]
        if not unit:
            raise ValueError(f'time: missing unit in duration "{text}"')
        scale = _NANOS_PER_UNIT.get(unit)
        if scale is None:
            raise ValueError(f'time: unknown unit "{unit}" in duration "{text}"')

        value = int(whole or "0") * scale
        if fraction:
            value += int(fraction) * scale // 10 ** len(fraction)
        total += value
        if total > _MAX_NANOS + (1 if negative else 0):
            raise _invalid(text)

    return -total if negative else total


def parse_duration(text: str) -> timedelta:
    """Parse a duration string into a timedelta.

    Accepts a signed sequence of decimal numbers, each with an optional
    fraction and a unit suffix (``ns``, ``us``/``µs``, ``ms``, ``s``, ``m``,
    ``h``). Precision below one microsecond is truncated.
    """
    nanos = _parse_nanos(text)
    micros = abs(nanos) // 1_000
    return timedelta(microseconds=-micros if nanos < 0 else micros)


def _with_fraction(value: int, precision: int) -> str:
    whole, frac = divmod(value, 10**precision)
    rendered = str(whole)
    if frac:
        rendered += "." + f"{frac:0{precision}d}".rstrip("0")
    return rendered


def format_duration(value: timedelta) -> str:
    """Render a timedelta in the canonical form, e.g. ``1h2m3.5s`` or ``1.5ms``."""
    nanos = (value // timedelta(microseconds=1)) * 1_000
    sign = "-" if nanos < 0 else ""
    u = abs(nanos)

    if u < 1_000_000_000:
        if u == 0:
            return "0s"
        if u < 1_000:
            body = f"{u}ns"
        elif u < 1_000_000:
            body = _with_fraction(u, 3) + "µs"
        else:
            body = _with_fraction(u, 6) + "ms"
        return sign + body

    minute = 60 * 1_000_000_000
    minutes, rest = divmod(u, minute)
    body = _with_fraction(rest, 9) + "s"
    if minutes:
        hours, mins = divmod(minutes, 60)
        body = f"{mins}m" + body
        if hours:
            body = f"{hours}h" + body
    return sign + body