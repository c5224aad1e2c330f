import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from voucher_service.database import Base, utcnow


class TenantSigningSecret(Base):
    """Per-tenant HMAC key, stored only as an AES-GCM envelope."""

    __tablename__ = "tenant_signing_secrets"

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    encrypted_secret: Mapped[str] = mapped_column(Text, nullable=False)
    key_version: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    rotated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
