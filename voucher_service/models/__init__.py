"""Central model registry: import all models so Alembic autodiscover works."""

from voucher_service.database import Base  # noqa: F401

from voucher_service.models.voucher import Voucher, VoucherSequence  # noqa: F401
from voucher_service.models.license import License, LicenseUsage, LicenseVerification  # noqa: F401
from voucher_service.models.signing_secret import TenantSigningSecret  # noqa: F401
from voucher_service.models.audit_log import VoucherAuditLog, SecurityEvent  # noqa: F401
from voucher_service.models.signature_verification import SignatureVerification  # noqa: F401
