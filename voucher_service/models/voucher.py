import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from voucher_service.database import Base, utcnow


class VoucherStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PaymentMode(str, enum.Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_PAY = "mobile_pay"
    CHEQUE = "cheque"


TERMINAL_STATUSES = frozenset(
    {VoucherStatus.COMPLETED, VoucherStatus.REJECTED, VoucherStatus.CANCELLED}
)


class Voucher(Base):
    __tablename__ = "vouchers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    voucher_number: Mapped[str] = mapped_column(String(50), nullable=False)
    financial_year: Mapped[str] = mapped_column(String(10), nullable=False)

    company_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    payee_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    payee_name: Mapped[Optional[str]] = mapped_column(String(255))
    payee_mobile: Mapped[Optional[str]] = mapped_column(String(20))
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    payment_mode: Mapped[str] = mapped_column(String(20), nullable=False)
    head_of_account: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    remarks: Mapped[Optional[str]] = mapped_column(Text)

    digital_signature: Mapped[Optional[str]] = mapped_column(String(64))
    signature_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime)
    signature_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    last_verification_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=VoucherStatus.PENDING_APPROVAL.value
    )
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    completed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    otp_session_id: Mapped[Optional[str]] = mapped_column(String(100))
    otp_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    payee_otp_verified: Mapped[bool] = mapped_column(Boolean, default=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("tenant_id", "voucher_number", name="uq_voucher_tenant_number"),
        CheckConstraint("amount > 0", name="chk_voucher_amount_positive"),
        CheckConstraint(
            "payment_mode IN ('cash', 'bank_transfer', 'mobile_pay', 'cheque')",
            name="chk_voucher_payment_mode",
        ),
        CheckConstraint(
            "status IN ('draft', 'pending_approval', 'approved', 'completed', "
            "'rejected', 'cancelled')",
            name="chk_voucher_status",
        ),
        Index("idx_vouchers_tenant_status", "tenant_id", "status"),
        Index("idx_vouchers_company", "company_id"),
        Index("idx_vouchers_created", "tenant_id", "created_at"),
    )


class VoucherSequence(Base):
    """Per-tenant, per-financial-year counter behind voucher numbers."""

    __tablename__ = "voucher_sequences"

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    financial_year: Mapped[str] = mapped_column(String(10), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
