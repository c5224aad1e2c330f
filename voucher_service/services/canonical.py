"""
Canonical text form of a voucher's signable content.

Field order is part of the signature format: new fields may only be appended
at the end, otherwise every previously issued signature stops verifying.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

DELIMITER = "|"

SIGNABLE_FIELDS = (
    "voucher_number",
    "company_id",
    "tenant_id",
    "payee_id",
    "amount",
    "payment_mode",
    "head_of_account",
    "created_at",
    "created_by",
)

_CENTS = Decimal("0.01")


def format_amount(amount: Any) -> str:
    """Exactly two fraction digits, rounded half-up."""
    return format(Decimal(str(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP), "f")


def format_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision, e.g. 2026-04-01T09:30:00.125Z."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%S") + f".{value.microsecond // 1000:03d}Z"


def _text(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "value"):  # enums
        return str(value.value)
    return str(value)


def canonical_string(voucher: Any) -> str:
    parts = [
        _text(voucher.voucher_number),
        _text(voucher.company_id),
        _text(voucher.tenant_id),
        _text(voucher.payee_id),
        format_amount(voucher.amount),
        _text(voucher.payment_mode),
        _text(voucher.head_of_account),
        format_timestamp(voucher.created_at),
        _text(voucher.created_by),
    ]
    return DELIMITER.join(parts)
