"""
Typed error hierarchy for voucher operations.

Every error carries a stable ``code``, the HTTP status the API answers with,
and structured ``details``. main.py renders them as
``{"error": {"code": ..., "message": ..., "details": {...}}}``.
"""

from typing import Any, Optional


class VoucherServiceError(Exception):
    code = "VOUCHER_SERVICE_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(VoucherServiceError):
    code = "VALIDATION_ERROR"
    status_code = 422


class NotFound(VoucherServiceError):
    code = "NOT_FOUND"
    status_code = 404


class PermissionDenied(VoucherServiceError):
    code = "INSUFFICIENT_PERMISSIONS"
    status_code = 403


class InvalidStateTransition(VoucherServiceError):
    code = "INVALID_STATE_TRANSITION"
    status_code = 409

    def __init__(self, event: str, status: str):
        super().__init__(
            f"Cannot {event} a voucher in status '{status}'",
            {"event": event, "status": status},
        )
        self.event = event
        self.status = status


class IntegrityViolation(VoucherServiceError):
    """Stored signature does not match the voucher's current content."""

    code = "SIGNATURE_INVALID"
    status_code = 409

    def __init__(self, voucher_id: str):
        super().__init__(
            "Voucher signature verification failed. The voucher may have been tampered with.",
            {"voucher_id": voucher_id},
        )
        self.voucher_id = voucher_id


class Conflict(VoucherServiceError):
    code = "CONFLICT"
    status_code = 409

    def __init__(self, voucher_id: str, status: str, version: Optional[int]):
        super().__init__(
            "Voucher was modified by another request",
            {"voucher_id": voucher_id, "status": status, "version": version},
        )
        self.status = status
        self.version = version


class QuotaExceeded(VoucherServiceError):
    code = "QUOTA_EXCEEDED"
    status_code = 429

    def __init__(self, counter: str, plan: str, limit: int, used: int):
        super().__init__(
            f"Monthly {counter} limit of {limit} reached on the '{plan}' plan",
            {"counter": counter, "plan": plan, "limit": limit, "used": used},
        )
        self.counter = counter
        self.plan = plan
        self.limit = limit
        self.used = used


class LicenseError(VoucherServiceError):
    status_code = 403


class LicenseNotFound(LicenseError):
    code = "LICENSE_NOT_FOUND"
    status_code = 404

    def __init__(self, tenant_id: str):
        super().__init__(
            "No license found for this organization",
            {"tenant_id": tenant_id},
        )


class LicenseInactive(LicenseError):
    def __init__(self, status: str):
        super().__init__(f"License is {status}", {"status": status})
        self.status = status
        self.code = f"LICENSE_{status.upper()}"


class LicenseExpired(LicenseError):
    code = "LICENSE_EXPIRED"

    def __init__(self, expiry_date: str):
        super().__init__(
            "License has expired. Please renew to continue.",
            {"expiry_date": expiry_date},
        )


class LicenseRestricted(LicenseError):
    code = "LICENSE_RESTRICTED"

    def __init__(self, restriction: str, message: str):
        super().__init__(message, {"restriction": restriction})
        self.restriction = restriction


class OtpExpired(VoucherServiceError):
    code = "OTP_EXPIRED"
    status_code = 400


class OtpInvalid(VoucherServiceError):
    code = "OTP_INVALID"
    status_code = 400


class OtpDeliveryFailed(VoucherServiceError):
    code = "OTP_DELIVERY_FAILED"
    status_code = 502


class SigningSecretMissing(VoucherServiceError):
    code = "SIGNING_SECRET_MISSING"
    status_code = 500


class StorageUnavailable(VoucherServiceError):
    code = "STORAGE_UNAVAILABLE"
    status_code = 503


class AuditImmutable(VoucherServiceError):
    code = "AUDIT_IMMUTABLE"
    status_code = 500
