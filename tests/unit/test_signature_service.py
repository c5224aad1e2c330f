"""
Unit tests for voucher_service/services/signature_service.py

Tests: sign/verify round trip, tamper detection per signable field,
       malformed stored signatures, secret generation.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest

from voucher_service.services.signature_service import generate_secret, sign, verify

SECRET = "9f" * 32


def _voucher(**overrides):
    values = dict(
        voucher_number="VCH-2026-27-00042",
        company_id=uuid.uuid4(),
        tenant_id=uuid.uuid4(),
        payee_id=uuid.uuid4(),
        amount=Decimal("5000.00"),
        payment_mode="mobile_pay",
        head_of_account=None,
        created_at=datetime(2026, 6, 1, 12, 0, 0),
        created_by=uuid.uuid4(),
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_signature_is_64_lowercase_hex():
    signature = sign(_voucher(), SECRET)
    assert len(signature) == 64
    assert signature == signature.lower()
    int(signature, 16)


def test_verify_accepts_unmodified_voucher():
    v = _voucher()
    assert verify(v, sign(v, SECRET), SECRET) is True


def test_sign_is_deterministic():
    v = _voucher()
    assert sign(v, SECRET) == sign(v, SECRET)


@pytest.mark.parametrize(
    "field, value",
    [
        ("amount", Decimal("5000.01")),
        ("payee_id", uuid.uuid4()),
        ("payment_mode", "cash"),
        ("company_id", uuid.uuid4()),
        ("head_of_account", "Misc"),
        ("voucher_number", "VCH-2026-27-00043"),
    ],
)
def test_single_field_change_breaks_verification(field, value):
    v = _voucher()
    signature = sign(v, SECRET)
    setattr(v, field, value)
    assert verify(v, signature, SECRET) is False


def test_different_secret_does_not_verify():
    v = _voucher()
    assert verify(v, sign(v, SECRET), generate_secret()) is False


def test_amount_scale_does_not_matter():
    v = _voucher(amount=Decimal("5000"))
    signature = sign(v, SECRET)
    v.amount = Decimal("5000.00")
    assert verify(v, signature, SECRET) is True


@pytest.mark.parametrize(
    "stored",
    [None, "", "abc", 12345, "z" * 64, "a" * 63, "a" * 65, b"a" * 64],
)
def test_malformed_signatures_are_invalid_without_raising(stored):
    assert verify(_voucher(), stored, SECRET) is False


def test_uppercase_signature_is_not_accepted():
    v = _voucher()
    assert verify(v, sign(v, SECRET).upper(), SECRET) is False


def test_generate_secret_is_32_random_bytes():
    a, b = generate_secret(), generate_secret()
    assert len(bytes.fromhex(a)) == 32
    assert a != b
