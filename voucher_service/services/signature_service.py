"""
Signature engine: HMAC-SHA256 over the canonical voucher string.

Each tenant has one signing secret, held only as an AES-GCM envelope in
``tenant_signing_secrets``. Readers take a shared row lock on that row for the
rest of their transaction and rotation takes an exclusive one, so no caller
can see vouchers re-signed with a new secret while the old secret is still
the active one.
"""

import hashlib
import hmac
import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from voucher_service.database import utcnow
from voucher_service.errors import SigningSecretMissing
from voucher_service.models.signature_verification import SignatureVerification
from voucher_service.models.signing_secret import TenantSigningSecret
from voucher_service.models.voucher import Voucher
from voucher_service.permissions import Actor
from voucher_service.services import audit_service
from voucher_service.services.canonical import canonical_string
from voucher_service.services.encryption import SecretCipher, get_cipher

logger = structlog.get_logger()

SIGNATURE_LENGTH = 64
_HEX_DIGITS = frozenset(string.hexdigits)


@dataclass
class RotationResult:
    total: int
    resigned: int
    failed: int
    rotated_at: datetime
    failed_voucher_ids: list[str] = field(default_factory=list)


@dataclass
class VerificationResult:
    voucher_id: str
    voucher_number: str
    is_valid: bool
    status: str
    checked_at: datetime


@dataclass
class BatchVerifyItem:
    voucher_id: str
    is_valid: Optional[bool]
    voucher_number: Optional[str] = None
    error: Optional[str] = None


def generate_secret() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def sign(voucher, secret: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"),
        canonical_string(voucher).encode("utf-8"),
        hashlib.sha256,
    )
    return digest.hexdigest()


def verify(voucher, stored_signature, secret: str) -> bool:
    """Constant-time comparison; malformed input is simply not valid."""
    if not isinstance(stored_signature, str) or len(stored_signature) != SIGNATURE_LENGTH:
        return False
    if not _HEX_DIGITS.issuperset(stored_signature):
        return False
    expected = sign(voucher, secret)
    return hmac.compare_digest(expected, stored_signature)


class SignatureEngine:
    def __init__(self, cipher: Optional[SecretCipher] = None):
        self.cipher = cipher or get_cipher()

    sign = staticmethod(sign)
    verify = staticmethod(verify)

    async def provision_secret(
        self, session: AsyncSession, tenant_id: uuid.UUID
    ) -> TenantSigningSecret:
        """Create the tenant's secret if it has none yet."""
        existing = await session.get(TenantSigningSecret, tenant_id)
        if existing:
            return existing
        row = TenantSigningSecret(
            tenant_id=tenant_id,
            encrypted_secret=self.cipher.encrypt(generate_secret(), str(tenant_id)),
            key_version=self.cipher.version,
            created_at=utcnow(),
        )
        session.add(row)
        await session.flush()
        logger.info("signing_secret_provisioned", tenant_id=str(tenant_id))
        return row

    async def _lock_secret_row(
        self, session: AsyncSession, tenant_id: uuid.UUID, exclusive: bool
    ) -> TenantSigningSecret:
        q = (
            select(TenantSigningSecret)
            .where(TenantSigningSecret.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        q = q.with_for_update() if exclusive else q.with_for_update(read=True)
        row = (await session.execute(q)).scalar_one_or_none()
        if row is None:
            raise SigningSecretMissing(
                "No signing secret configured for this organization",
                {"tenant_id": str(tenant_id)},
            )
        return row

    async def hold_secret(self, session: AsyncSession, tenant_id: uuid.UUID) -> None:
        """Shared lock only; a rotation waits for this transaction to end."""
        await self._lock_secret_row(session, tenant_id, exclusive=False)

    async def load_secret(self, session: AsyncSession, tenant_id: uuid.UUID) -> str:
        """Decrypt the active secret, holding a shared lock until the transaction ends."""
        row = await self._lock_secret_row(session, tenant_id, exclusive=False)
        return self.cipher.decrypt(row.encrypted_secret, str(tenant_id))

    async def sign_voucher(self, session: AsyncSession, voucher: Voucher) -> str:
        secret = await self.load_secret(session, voucher.tenant_id)
        return self.apply_signature(voucher, secret)

    def apply_signature(self, voucher: Voucher, secret: str) -> str:
        voucher.digital_signature = self.sign(voucher, secret)
        voucher.signature_timestamp = utcnow()
        return voucher.digital_signature

    async def verify_voucher(self, session: AsyncSession, voucher: Voucher) -> bool:
        secret = await self.load_secret(session, voucher.tenant_id)
        return self.verify(voucher, voucher.digital_signature, secret)

    async def rotate_secret(self, session: AsyncSession, actor: Actor) -> RotationResult:
        """
        Replace the tenant's secret and re-sign all of its vouchers.

        Runs inside the caller's transaction under an exclusive lock on the
        secret row. A voucher that no longer verifies under the old secret
        is left with its old signature and counted as failed, so rotation
        never launders tampered content.
        """
        tenant_id = actor.tenant_id
        row = await self._lock_secret_row(session, tenant_id, exclusive=True)
        old_secret = self.cipher.decrypt(row.encrypted_secret, str(tenant_id))
        new_secret = generate_secret()
        logger.warning("signing_secret_rotation_started", tenant_id=str(tenant_id))

        vouchers = (
            await session.execute(select(Voucher).where(Voucher.tenant_id == tenant_id))
        ).scalars().all()

        now = utcnow()
        resigned = 0
        failed_ids: list[str] = []
        for voucher in vouchers:
            try:
                if voucher.digital_signature and not self.verify(
                    voucher, voucher.digital_signature, old_secret
                ):
                    failed_ids.append(str(voucher.id))
                    await audit_service.record_security_event(
                        session,
                        "signature_mismatch_on_rotation",
                        actor,
                        voucher_id=voucher.id,
                        details={"voucher_number": voucher.voucher_number},
                    )
                    continue
                voucher.digital_signature = self.sign(voucher, new_secret)
                voucher.signature_timestamp = now
                resigned += 1
            except (ArithmeticError, AttributeError, TypeError, ValueError) as exc:
                failed_ids.append(str(voucher.id))
                logger.error(
                    "voucher_resign_failed",
                    voucher_id=str(voucher.id),
                    error=str(exc),
                )

        row.encrypted_secret = self.cipher.encrypt(new_secret, str(tenant_id))
        row.key_version = self.cipher.version
        row.rotated_at = now
        await session.flush()

        logger.info(
            "signing_secret_rotated",
            tenant_id=str(tenant_id),
            total_vouchers=len(vouchers),
            resigned=resigned,
            failed=len(failed_ids),
        )
        return RotationResult(
            total=len(vouchers),
            resigned=resigned,
            failed=len(failed_ids),
            rotated_at=now,
            failed_voucher_ids=failed_ids,
        )

    async def batch_verify(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        voucher_ids: list[uuid.UUID],
    ) -> list[BatchVerifyItem]:
        """Verify each voucher independently; one bad item never aborts the rest."""
        secret = await self.load_secret(session, tenant_id)
        result = await session.execute(
            select(Voucher).where(Voucher.tenant_id == tenant_id, Voucher.id.in_(voucher_ids))
        )
        found = {v.id: v for v in result.scalars().all()}

        items: list[BatchVerifyItem] = []
        for voucher_id in voucher_ids:
            voucher = found.get(voucher_id)
            if voucher is None:
                items.append(BatchVerifyItem(str(voucher_id), None, error="Voucher not found"))
                continue
            try:
                valid = self.verify(voucher, voucher.digital_signature, secret)
                items.append(BatchVerifyItem(str(voucher.id), valid, voucher.voucher_number))
            except (ArithmeticError, AttributeError, TypeError, ValueError) as exc:
                logger.warning("batch_verify_item_failed", voucher_id=str(voucher_id), error=str(exc))
                items.append(
                    BatchVerifyItem(str(voucher.id), None, voucher.voucher_number, error=str(exc))
                )
        return items

    async def verify_and_log(
        self,
        session: AsyncSession,
        voucher: Voucher,
        actor: Optional[Actor],
        request_source: str = "web",
    ) -> VerificationResult:
        is_valid = await self.verify_voucher(session, voucher)
        now = utcnow()
        session.add(
            SignatureVerification(
                tenant_id=voucher.tenant_id,
                voucher_id=voucher.id,
                verified_by=actor.id if actor else None,
                verification_result="VALID" if is_valid else "INVALID",
                signature_checked=voucher.digital_signature,
                request_source=request_source,
                ip_address=actor.ip_address if actor else None,
                user_agent=actor.user_agent if actor else None,
                verified_at=now,
            )
        )
        await session.flush()
        if not is_valid and actor is not None:
            await audit_service.record_security_event(
                session,
                "signature_mismatch",
                actor,
                voucher_id=voucher.id,
                details={"voucher_number": voucher.voucher_number, "source": request_source},
            )
        logger.info(
            "signature_verified",
            voucher_id=str(voucher.id),
            valid=is_valid,
            source=request_source,
        )
        return VerificationResult(
            voucher_id=str(voucher.id),
            voucher_number=voucher.voucher_number,
            is_valid=is_valid,
            status=voucher.status,
            checked_at=now,
        )

    async def verification_history(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        voucher_id: uuid.UUID,
        limit: int = 50,
    ) -> list[SignatureVerification]:
        result = await session.execute(
            select(SignatureVerification)
            .where(
                SignatureVerification.tenant_id == tenant_id,
                SignatureVerification.voucher_id == voucher_id,
            )
            .order_by(SignatureVerification.verified_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def verification_stats(
        self, session: AsyncSession, tenant_id: uuid.UUID, days: int = 30
    ) -> dict:
        since = utcnow() - timedelta(days=days)
        valid_expr = case((SignatureVerification.verification_result == "VALID", 1), else_=0)
        row = (
            await session.execute(
                select(
                    func.count(SignatureVerification.id),
                    func.coalesce(func.sum(valid_expr), 0),
                ).where(
                    SignatureVerification.tenant_id == tenant_id,
                    SignatureVerification.verified_at >= since,
                )
            )
        ).one()
        total, valid = int(row[0] or 0), int(row[1] or 0)
        return {
            "period_days": days,
            "total_verifications": total,
            "valid": valid,
            "invalid": total - valid,
            "success_rate": round(valid * 100 / total, 2) if total else None,
        }
