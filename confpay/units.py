"""
Display-unit <-> subunit conversion.

Amounts are kept as integer subunits (lamports) for every ledger and
ciphertext operation; floats only appear at the display edge.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_FLOOR

from confpay import LAMPORTS_PER_SOL

_SCALE = Decimal(LAMPORTS_PER_SOL)


def to_subunits(amount: float | int | str | Decimal) -> int:
    """floor(amount × subunits-per-unit), computed exactly.

    Raises ValueError for non-numeric or negative amounts.
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    if value < 0:
        raise ValueError(f"Amount must be non-negative, got {amount!r}")
    return int((value * _SCALE).to_integral_value(rounding=ROUND_FLOOR))


def from_subunits(subunits: int) -> float:
    """Scale integer subunits back to display units."""
    return int(subunits) / LAMPORTS_PER_SOL


def parse_positive_subunits(value: object) -> int | None:
    """Interpret an external plaintext as a positive subunit count.

    Returns None for non-numeric or non-positive values.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite() or number <= 0:
        return None
    return int(number.to_integral_value(rounding=ROUND_FLOOR)) or None
