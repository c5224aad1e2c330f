import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from voucher_service.database import Base, JSONType, utcnow


class LicenseStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    REVOKED = "revoked"


class License(Base):
    __tablename__ = "licenses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    license_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    plan_type: Mapped[str] = mapped_column(String(20), nullable=False, default="trial")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LicenseStatus.PENDING.value
    )
    # Zero or negative means unlimited.
    max_vouchers_per_month: Mapped[int] = mapped_column(Integer, default=0)
    sms_credits: Mapped[int] = mapped_column(Integer, default=0)
    expiry_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    hardware_id: Mapped[Optional[str]] = mapped_column(String(255))
    ip_whitelist: Mapped[Optional[list]] = mapped_column(JSONType)
    last_verified: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'suspended', 'expired', 'revoked')",
            name="chk_license_status",
        ),
    )


class LicenseUsage(Base):
    """Monthly usage counters, one row per (license, YYYY-MM)."""

    __tablename__ = "license_usage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    license_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("licenses.id", ondelete="CASCADE"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    vouchers_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sms_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity: Mapped[Optional[datetime]] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("license_id", "month", name="uq_license_usage_month"),
    )


class LicenseVerification(Base):
    """One row per license gate decision, refusals included."""

    __tablename__ = "license_verifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    # Null when the tenant has no license at all.
    license_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("licenses.id", ondelete="CASCADE")
    )
    # success, invalid, expired, hardware_mismatch, ip_not_whitelisted, or the
    # license status that refused the request (suspended, revoked, ...)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    hardware_id: Mapped[Optional[str]] = mapped_column(String(255))
    verified_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_license_verifications_tenant", "tenant_id", "verified_at"),
    )
