import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, String, Text, Uuid, desc, event
from sqlalchemy.orm import Mapped, mapped_column

from voucher_service.database import Base, JSONType, utcnow
from voucher_service.errors import AuditImmutable


class VoucherAuditLog(Base):
    __tablename__ = "voucher_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    # No foreign key: entries outlive a hard-deleted draft.
    voucher_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    actor_name: Mapped[Optional[str]] = mapped_column(String(255))
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    before_state: Mapped[Optional[dict]] = mapped_column(JSONType)
    after_state: Mapped[Optional[dict]] = mapped_column(JSONType)
    changed_fields: Mapped[Optional[list]] = mapped_column(JSONType)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    user_agent: Mapped[Optional[str]] = mapped_column(Text)
    request_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_voucher_audit_voucher", "voucher_id", "created_at"),
        Index("idx_voucher_audit_tenant", "tenant_id", desc("created_at")),
        Index("idx_voucher_audit_actor", "actor_id"),
    )


class SecurityEvent(Base):
    """Possible tampering and other security incidents, kept apart from routine audit."""

    __tablename__ = "security_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    voucher_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="high")
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    actor_name: Mapped[Optional[str]] = mapped_column(String(255))
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    details: Mapped[Optional[dict]] = mapped_column(JSONType)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    user_agent: Mapped[Optional[str]] = mapped_column(Text)
    request_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_security_events_tenant", "tenant_id", desc("created_at")),
        Index("idx_security_events_voucher", "voucher_id"),
    )


@event.listens_for(VoucherAuditLog, "before_update")
@event.listens_for(SecurityEvent, "before_update")
def prevent_audit_update(mapper, connection, target):
    raise AuditImmutable(
        f"{type(target).__name__} entries are append-only",
        {"id": str(target.id)},
    )


@event.listens_for(VoucherAuditLog, "before_delete")
@event.listens_for(SecurityEvent, "before_delete")
def prevent_audit_delete(mapper, connection, target):
    raise AuditImmutable(
        f"{type(target).__name__} entries cannot be deleted",
        {"id": str(target.id)},
    )
