"""
Fixed-point amount helpers for Custodia.

On-chain balances are integers in a token's smallest unit ("base units").
A token declaring ``decimals = 6`` stores 1.5 tokens as 1_500_000:

    1 token = 10 ** decimals base units

Conversion never goes through binary floating point.  Human input is parsed
as a decimal string and scaled exactly; anything that cannot be represented
in base units is rejected rather than rounded.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from custodia_core.errors import InvalidAmount

# Native coin precision (wei per ether).
NATIVE_DECIMALS: int = 18

MAX_UINT256: int = 2**256 - 1

_AMOUNT_RE = re.compile(r"^(?P<int>[0-9]*)(?:\.(?P<frac>[0-9]*))?$")


def parse_units(value: str | int, decimals: int) -> int:
    """Convert a human decimal string into an integer base-unit amount.

    >>> parse_units("1.5", 6)
    1500000
    >>> parse_units("0.000001", 6)
    1

    Raises ``InvalidAmount`` for non-numeric, negative or zero input, for
    exponent notation, and when a non-zero digit falls beyond ``decimals``.
    Trailing zeros past the token's precision are accepted since they lose
    nothing.
    """
    if not 0 <= decimals <= 255:
        raise InvalidAmount(f"Token declares unsupported precision ({decimals})")
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise InvalidAmount("Amount must be a decimal string")
    if isinstance(value, int) and value > MAX_UINT256:
        raise InvalidAmount("Amount is too large")
    text = str(value).strip()
    if text.startswith("-"):
        raise InvalidAmount("Amount must not be negative")
    m = _AMOUNT_RE.match(text)
    if not m or not (m.group("int") or m.group("frac")):
        raise InvalidAmount("Amount must be a decimal number")

    whole = (m.group("int") or "").lstrip("0") or "0"
    # 2**256 has 78 digits; longer input cannot fit and may exceed int()'s digit limit.
    if len(whole) > len(str(MAX_UINT256)):
        raise InvalidAmount("Amount is too large")
    frac = (m.group("frac") or "").rstrip("0")
    if len(frac) > decimals:
        raise InvalidAmount(
            f"Amount has more than {decimals} fractional digits"
        )
    raw = int(whole) * 10**decimals + int(frac.ljust(decimals, "0") or "0")
    if raw == 0:
        raise InvalidAmount("Amount must be greater than zero")
    if raw > MAX_UINT256:
        raise InvalidAmount("Amount is too large")
    return raw


def format_units(raw: int, decimals: int) -> str:
    """Render a base-unit integer as an exact decimal string.

    >>> format_units(1500000, 6)
    '1.5'
    >>> format_units(10**18, 18)
    '1.0'
    """
    sign = "-" if raw < 0 else ""
    raw = abs(raw)
    if decimals == 0:
        return f"{sign}{raw}.0"
    whole, frac = divmod(raw, 10**decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0") or "0"
    return f"{sign}{whole}.{frac_str}"


@dataclass(frozen=True)
class Amount:
    """An integer base-unit quantity tagged with its precision."""

    raw: int
    decimals: int = NATIVE_DECIMALS

    def __str__(self) -> str:
        return format_units(self.raw, self.decimals)
