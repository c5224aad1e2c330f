import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from voucher_service.database import Base, utcnow


class SignatureVerification(Base):
    __tablename__ = "signature_verifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    voucher_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    verified_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    verification_result: Mapped[str] = mapped_column(String(10), nullable=False)
    signature_checked: Mapped[Optional[str]] = mapped_column(String(64))
    request_source: Mapped[str] = mapped_column(String(20), default="web")
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    user_agent: Mapped[Optional[str]] = mapped_column(Text)
    verified_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "verification_result IN ('VALID', 'INVALID')",
            name="chk_signature_verification_result",
        ),
        Index("idx_sigver_voucher", "voucher_id", "verified_at"),
        Index("idx_sigver_tenant", "tenant_id", "verified_at"),
    )
