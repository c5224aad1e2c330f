"""
Voucher state machine: the only code path that changes a voucher.

    draft ──► pending_approval ──► approved ──► completed
      │              │                 │
      └──────────────┴──► cancelled ◄──┘
                     └──► rejected

Every event runs the same pipeline: capability check, license gate, legal
transition lookup, integrity check where the step is irreversible, the
mutation itself, an audit entry, and metering for create and request_code.
All of it happens in the caller's transaction.
"""

import enum
import uuid
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
import structlog

from voucher_service.config import settings
from voucher_service.database import insert_if_absent, utcnow
from voucher_service.errors import (
    Conflict,
    IntegrityViolation,
    InvalidStateTransition,
    NotFound,
    OtpExpired,
    OtpInvalid,
    PermissionDenied,
    ValidationError,
)
from voucher_service.models.voucher import (
    PaymentMode,
    Voucher,
    VoucherSequence,
    VoucherStatus,
)
from voucher_service.permissions import Actor, Capability, require_capability
from voucher_service.services import audit_service
from voucher_service.services.license_service import LicenseCheck, LicenseGate
from voucher_service.services.otp_service import OtpProvider, mask_mobile
from voucher_service.services.quota_service import QuotaCounter
from voucher_service.services.signature_service import SignatureEngine

logger = structlog.get_logger()


class VoucherEvent(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CODE = "request_code"
    CONFIRM_CODE = "confirm_code"
    CANCEL = "cancel"
    DELETE = "delete"


S = VoucherStatus
E = VoucherEvent

# (event, current status) -> resulting status; None means the row is removed.
TRANSITIONS: dict[tuple[VoucherEvent, VoucherStatus], Optional[VoucherStatus]] = {
    (E.UPDATE, S.DRAFT): S.DRAFT,
    (E.UPDATE, S.PENDING_APPROVAL): S.PENDING_APPROVAL,
    (E.APPROVE, S.PENDING_APPROVAL): S.APPROVED,
    (E.REJECT, S.PENDING_APPROVAL): S.REJECTED,
    (E.REQUEST_CODE, S.APPROVED): S.APPROVED,
    (E.CONFIRM_CODE, S.APPROVED): S.COMPLETED,
    (E.CANCEL, S.DRAFT): S.CANCELLED,
    (E.CANCEL, S.PENDING_APPROVAL): S.CANCELLED,
    (E.CANCEL, S.APPROVED): S.CANCELLED,
    (E.DELETE, S.DRAFT): None,
}

EVENT_CAPABILITY = {event: Capability(event.value) for event in VoucherEvent}

SIGNABLE_INPUT_FIELDS = frozenset(
    {"company_id", "payee_id", "amount", "payment_mode", "head_of_account"}
)
EDITABLE_FIELDS = SIGNABLE_INPUT_FIELDS | {
    "payee_name",
    "payee_mobile",
    "description",
    "remarks",
}

# Events that sign or verify and so must see one secret for the whole transaction.
SIGNING_EVENTS = frozenset({E.CREATE, E.UPDATE, E.APPROVE, E.CONFIRM_CODE})

# Largest value a NUMERIC(15, 2) column holds.
MAX_AMOUNT = Decimal("9999999999999.99")


def next_status(event: VoucherEvent, current: str) -> Optional[VoucherStatus]:
    try:
        key = (event, VoucherStatus(current))
    except ValueError:
        raise InvalidStateTransition(event.value, current)
    if key not in TRANSITIONS:
        raise InvalidStateTransition(event.value, current)
    return TRANSITIONS[key]


def financial_year(when: datetime, start_month: int = 4) -> str:
    """Indian-style financial year label, e.g. 2026-27 for May 2026."""
    start = when.year if when.month >= start_month else when.year - 1
    return f"{start}-{(start + 1) % 100:02d}"


@dataclass
class VoucherInput:
    company_id: uuid.UUID
    payee_id: uuid.UUID
    amount: Decimal
    payment_mode: str
    head_of_account: Optional[str] = None
    description: Optional[str] = None
    remarks: Optional[str] = None
    payee_name: Optional[str] = None
    payee_mobile: Optional[str] = None
    currency: Optional[str] = None


def _clean_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Amount must be a number", {"field": "amount"})
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero", {"field": "amount"})
    if amount > MAX_AMOUNT:
        raise ValidationError(
            "Amount is too large", {"field": "amount", "max": str(MAX_AMOUNT)}
        )
    if amount.as_tuple().exponent < -2:
        raise ValidationError(
            "Amount may have at most two decimal places", {"field": "amount"}
        )
    return amount


def _clean_payment_mode(value: Any) -> str:
    try:
        return PaymentMode(value).value
    except ValueError:
        raise ValidationError(
            f"Unsupported payment mode '{value}'",
            {"field": "payment_mode", "allowed": [m.value for m in PaymentMode]},
        )


def _clean_uuid(value: Any, field_name: str) -> uuid.UUID:
    if value is None:
        raise ValidationError(f"{field_name} is required", {"field": field_name})
    try:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"{field_name} must be a valid UUID", {"field": field_name})


def _clean_field(name: str, value: Any) -> Any:
    if name == "amount":
        return _clean_amount(value)
    if name == "payment_mode":
        return _clean_payment_mode(value)
    if name in ("company_id", "payee_id"):
        return _clean_uuid(value, name)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _require_reason(reason: Optional[str], field_name: str) -> str:
    if reason is None or not reason.strip():
        raise ValidationError(f"{field_name} is required", {"field": field_name})
    return reason.strip()


class VoucherStateMachine:
    def __init__(
        self,
        signer: Optional[SignatureEngine] = None,
        gate: Optional[LicenseGate] = None,
        otp_provider: Optional[OtpProvider] = None,
        clock: Callable[[], datetime] = utcnow,
        otp_validity: Optional[timedelta] = None,
    ):
        self.clock = clock
        self.signer = signer or SignatureEngine()
        self.gate = gate or LicenseGate(clock=clock)
        self.otp_provider = otp_provider
        self.otp_validity = otp_validity or timedelta(minutes=settings.OTP_VALIDITY_MINUTES)
        self.license_check: Optional[LicenseCheck] = None

    # ---------- shared steps ----------

    async def _begin(
        self, session: AsyncSession, actor: Actor, event: VoucherEvent
    ) -> LicenseCheck:
        require_capability(actor, EVENT_CAPABILITY[event])
        self.license_check = await self.gate.authorize(
            session, actor.tenant_id, actor.ip_address, actor.hardware_id
        )
        if event in SIGNING_EVENTS:
            # Taken before the voucher is read so a rotation cannot land in between.
            await self.signer.hold_secret(session, actor.tenant_id)
        return self.license_check

    async def get(
        self, session: AsyncSession, actor: Actor, voucher_id: uuid.UUID
    ) -> Voucher:
        result = await session.execute(
            select(Voucher)
            .where(Voucher.id == voucher_id, Voucher.tenant_id == actor.tenant_id)
            .execution_options(populate_existing=True)
        )
        voucher = result.scalar_one_or_none()
        if voucher is None:
            raise NotFound("Voucher not found", {"voucher_id": str(voucher_id)})
        return voucher

    async def _flush(
        self, session: AsyncSession, voucher: Voucher, seen_status: str, seen_version: int
    ) -> None:
        # Attributes are unreadable once a failed flush has rolled back.
        voucher_id = str(voucher.id)
        try:
            await session.flush()
        except StaleDataError as exc:
            logger.warning(
                "voucher_conflict",
                voucher_id=voucher_id,
                seen_status=seen_status,
                seen_version=seen_version,
            )
            raise Conflict(voucher_id, seen_status, seen_version) from exc

    async def _ensure_integrity(
        self, session: AsyncSession, actor: Actor, voucher: Voucher, event: VoucherEvent
    ) -> None:
        """
        Abort the event if the stored signature no longer matches.

        The security event is committed before raising so it outlives the
        rolled-back request.
        """
        if await self.signer.verify_voucher(session, voucher):
            return
        await audit_service.record_security_event(
            session,
            "signature_mismatch",
            actor,
            voucher_id=voucher.id,
            details={
                "event": event.value,
                "voucher_number": voucher.voucher_number,
                "status": voucher.status,
            },
        )
        await session.commit()
        logger.error(
            "voucher_integrity_violation",
            voucher_id=str(voucher.id),
            voucher_event=event.value,
            actor_id=str(actor.id),
        )
        raise IntegrityViolation(str(voucher.id))

    async def _allocate_number(
        self, session: AsyncSession, tenant_id: uuid.UUID, fy: str
    ) -> str:
        await insert_if_absent(
            session,
            VoucherSequence,
            dict(tenant_id=tenant_id, financial_year=fy, last_value=0),
            index_elements=["tenant_id", "financial_year"],
        )
        await session.execute(
            update(VoucherSequence)
            .where(
                VoucherSequence.tenant_id == tenant_id,
                VoucherSequence.financial_year == fy,
            )
            .values(last_value=VoucherSequence.last_value + 1)
            .execution_options(synchronize_session=False)
        )
        value = (
            await session.execute(
                select(VoucherSequence.last_value).where(
                    VoucherSequence.tenant_id == tenant_id,
                    VoucherSequence.financial_year == fy,
                )
            )
        ).scalar_one()
        return f"{settings.VOUCHER_NUMBER_PREFIX}-{fy}-{value:05d}"

    # ---------- events ----------

    async def create(
        self, session: AsyncSession, actor: Actor, data: VoucherInput
    ) -> Voucher:
        """Create a voucher directly in pending_approval, signed and metered."""
        require_capability(actor, Capability.CREATE)
        values = {f.name: getattr(data, f.name) for f in fields(data)}
        for name in ("company_id", "payee_id", "amount", "payment_mode"):
            values[name] = _clean_field(name, values[name])
        for name in ("head_of_account", "description", "remarks", "payee_name", "payee_mobile"):
            values[name] = _clean_field(name, values[name])
        currency = (values.pop("currency") or settings.DEFAULT_CURRENCY).upper()

        check = await self._begin(session, actor, E.CREATE)

        now = self.clock()
        fy = financial_year(now, settings.FINANCIAL_YEAR_START_MONTH)
        voucher = Voucher(
            id=uuid.uuid4(),
            tenant_id=actor.tenant_id,
            voucher_number=await self._allocate_number(session, actor.tenant_id, fy),
            financial_year=fy,
            currency=currency,
            status=S.PENDING_APPROVAL.value,
            created_by=actor.id,
            created_at=now,
            updated_at=now,
            **values,
        )
        await self.signer.sign_voucher(session, voucher)
        session.add(voucher)
        await session.flush()

        await audit_service.append_entry(
            session,
            voucher.id,
            "created",
            actor,
            after_state=audit_service.voucher_snapshot(voucher),
        )
        await self.gate.consume(session, check.license, QuotaCounter.VOUCHERS)

        logger.info(
            "voucher_created",
            voucher_id=str(voucher.id),
            voucher_number=voucher.voucher_number,
            amount=str(voucher.amount),
        )
        return voucher

    async def update(
        self,
        session: AsyncSession,
        actor: Actor,
        voucher_id: uuid.UUID,
        changes: dict,
    ) -> Voucher:
        """Edit a draft or pending voucher, re-signing when signed content changes."""
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(
                "These fields cannot be edited", {"fields": sorted(unknown)}
            )
        await self._begin(session, actor, E.UPDATE)
        voucher = await self.get(session, actor, voucher_id)
        next_status(E.UPDATE, voucher.status)

        cleaned = {name: _clean_field(name, value) for name, value in changes.items()}
        for name in SIGNABLE_INPUT_FIELDS & cleaned.keys():
            if cleaned[name] is None:
                raise ValidationError(f"{name} cannot be empty", {"field": name})
        changed = {
            name: value for name, value in cleaned.items() if getattr(voucher, name) != value
        }
        if not changed:
            return voucher

        resign = bool(SIGNABLE_INPUT_FIELDS & changed.keys())
        if resign and voucher.digital_signature:
            await self._ensure_integrity(session, actor, voucher, E.UPDATE)

        # Loaded before any setattr so the query cannot autoflush a half-edited row.
        secret = await self.signer.load_secret(session, voucher.tenant_id) if resign else None
        seen_status, seen_version = voucher.status, voucher.version
        before = audit_service.voucher_snapshot(voucher)
        for name, value in changed.items():
            setattr(voucher, name, value)
        if resign:
            self.signer.apply_signature(voucher, secret)
        await self._flush(session, voucher, seen_status, seen_version)

        await audit_service.append_entry(
            session,
            voucher.id,
            "modified",
            actor,
            before_state=before,
            after_state=audit_service.voucher_snapshot(voucher),
        )
        logger.info(
            "voucher_updated",
            voucher_id=str(voucher.id),
            fields=sorted(changed),
            resigned=resign,
        )
        return voucher

    async def approve(
        self, session: AsyncSession, actor: Actor, voucher_id: uuid.UUID
    ) -> Voucher:
        await self._begin(session, actor, E.APPROVE)
        voucher = await self.get(session, actor, voucher_id)
        target = next_status(E.APPROVE, voucher.status)
        if voucher.created_by == actor.id:
            raise PermissionDenied(
                "You cannot approve your own voucher",
                {"voucher_id": str(voucher.id)},
            )
        await self._ensure_integrity(session, actor, voucher, E.APPROVE)

        seen_status, seen_version = voucher.status, voucher.version
        before = audit_service.voucher_snapshot(voucher)
        now = self.clock()
        voucher.status = target.value
        voucher.approved_by = actor.id
        voucher.approved_at = now
        voucher.signature_verified = True
        voucher.last_verification_at = now
        await self._flush(session, voucher, seen_status, seen_version)

        await audit_service.append_entry(
            session,
            voucher.id,
            "approved",
            actor,
            before_state=before,
            after_state=audit_service.voucher_snapshot(voucher),
            notes="Signature verified before approval",
        )
        logger.info("voucher_approved", voucher_id=str(voucher.id), approved_by=str(actor.id))
        return voucher

    async def reject(
        self,
        session: AsyncSession,
        actor: Actor,
        voucher_id: uuid.UUID,
        reason: Optional[str],
    ) -> Voucher:
        await self._begin(session, actor, E.REJECT)
        voucher = await self.get(session, actor, voucher_id)
        target = next_status(E.REJECT, voucher.status)
        reason = _require_reason(reason, "rejection_reason")

        seen_status, seen_version = voucher.status, voucher.version
        before = audit_service.voucher_snapshot(voucher)
        voucher.status = target.value
        voucher.rejected_by = actor.id
        voucher.rejected_at = self.clock()
        voucher.rejection_reason = reason
        await self._flush(session, voucher, seen_status, seen_version)

        await audit_service.append_entry(
            session,
            voucher.id,
            "rejected",
            actor,
            before_state=before,
            after_state=audit_service.voucher_snapshot(voucher),
            notes=reason,
        )
        logger.info("voucher_rejected", voucher_id=str(voucher.id))
        return voucher

    async def cancel(
        self,
        session: AsyncSession,
        actor: Actor,
        voucher_id: uuid.UUID,
        reason: Optional[str],
    ) -> Voucher:
        await self._begin(session, actor, E.CANCEL)
        voucher = await self.get(session, actor, voucher_id)
        target = next_status(E.CANCEL, voucher.status)
        reason = _require_reason(reason, "cancellation_reason")

        seen_status, seen_version = voucher.status, voucher.version
        before = audit_service.voucher_snapshot(voucher)
        voucher.status = target.value
        voucher.cancelled_by = actor.id
        voucher.cancelled_at = self.clock()
        voucher.cancellation_reason = reason
        voucher.otp_session_id = None
        await self._flush(session, voucher, seen_status, seen_version)

        await audit_service.append_entry(
            session,
            voucher.id,
            "cancelled",
            actor,
            before_state=before,
            after_state=audit_service.voucher_snapshot(voucher),
            notes=reason,
        )
        logger.info("voucher_cancelled", voucher_id=str(voucher.id))
        return voucher

    async def delete(
        self, session: AsyncSession, actor: Actor, voucher_id: uuid.UUID
    ) -> None:
        """Hard delete a draft. Its audit history stays behind."""
        await self._begin(session, actor, E.DELETE)
        voucher = await self.get(session, actor, voucher_id)
        next_status(E.DELETE, voucher.status)

        before = audit_service.voucher_snapshot(voucher)
        seen_status, seen_version = voucher.status, voucher.version
        await session.delete(voucher)
        await self._flush(session, voucher, seen_status, seen_version)
        await audit_service.append_entry(
            session, voucher.id, "deleted", actor, before_state=before
        )
        logger.info("voucher_deleted", voucher_id=str(voucher.id))

    async def request_code(
        self, session: AsyncSession, actor: Actor, voucher_id: uuid.UUID
    ) -> tuple[Voucher, str]:
        """
        Send a payout confirmation code to the payee's mobile.

        The SMS counter is incremented in the same transaction as the send,
        so a provider failure rolls the increment back with everything else.
        Returns the voucher and the masked destination number.
        """
        check = await self._begin(session, actor, E.REQUEST_CODE)
        voucher = await self.get(session, actor, voucher_id)
        next_status(E.REQUEST_CODE, voucher.status)
        if not voucher.payee_mobile:
            raise ValidationError(
                "Payee mobile number not available", {"field": "payee_mobile"}
            )
        if self.otp_provider is None:
            raise ValidationError("No OTP provider is configured")

        await self.gate.consume(session, check.license, QuotaCounter.SMS)
        session_id = await self.otp_provider.request_code(voucher.payee_mobile)

        seen_status, seen_version = voucher.status, voucher.version
        voucher.otp_session_id = session_id
        voucher.otp_sent_at = self.clock()
        await self._flush(session, voucher, seen_status, seen_version)

        masked = mask_mobile(voucher.payee_mobile)
        await audit_service.append_entry(
            session,
            voucher.id,
            "otp_sent",
            actor,
            notes=f"OTP sent to {masked}",
        )
        logger.info("voucher_otp_sent", voucher_id=str(voucher.id), to=masked)
        return voucher, masked

    async def confirm_code(
        self,
        session: AsyncSession,
        actor: Actor,
        voucher_id: uuid.UUID,
        code: Optional[str],
    ) -> Voucher:
        """Complete the payout once the payee's code checks out."""
        await self._begin(session, actor, E.CONFIRM_CODE)
        voucher = await self.get(session, actor, voucher_id)
        target = next_status(E.CONFIRM_CODE, voucher.status)
        if not code or not code.strip():
            raise ValidationError("OTP is required", {"field": "otp"})
        if not voucher.otp_session_id or voucher.otp_sent_at is None:
            raise ValidationError("OTP not sent. Please request OTP first.")
        if self.clock() - voucher.otp_sent_at > self.otp_validity:
            raise OtpExpired(
                "OTP expired. Please request a new OTP.",
                {"otp_sent_at": voucher.otp_sent_at.isoformat()},
            )
        if self.otp_provider is None:
            raise ValidationError("No OTP provider is configured")

        await self._ensure_integrity(session, actor, voucher, E.CONFIRM_CODE)

        if not await self.otp_provider.verify_code(voucher.otp_session_id, code.strip()):
            await audit_service.append_entry(
                session, voucher.id, "otp_failed", actor, notes="Invalid OTP entered"
            )
            await session.commit()
            logger.warning("voucher_otp_invalid", voucher_id=str(voucher.id))
            raise OtpInvalid("Invalid OTP")

        seen_status, seen_version = voucher.status, voucher.version
        before = audit_service.voucher_snapshot(voucher)
        voucher.status = target.value
        voucher.completed_by = actor.id
        voucher.completed_at = self.clock()
        voucher.payee_otp_verified = True
        voucher.otp_session_id = None
        await self._flush(session, voucher, seen_status, seen_version)

        await audit_service.append_entry(
            session,
            voucher.id,
            "completed",
            actor,
            before_state=before,
            after_state=audit_service.voucher_snapshot(voucher),
            notes="Payment completed with OTP verification",
        )
        logger.info("voucher_completed", voucher_id=str(voucher.id))
        return voucher
