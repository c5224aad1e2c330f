"""
AES-GCM envelope for tenant signing secrets.

Stored form is a JSON blob ``{"ver", "nonce", "ct"}`` with urlsafe-base64
fields. The tenant id and key version are bound in as associated data, so a
blob copied onto another tenant's row fails to decrypt.
"""

import base64
import json
import os
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
import structlog

from voucher_service.config import settings
from voucher_service.errors import SigningSecretMissing

logger = structlog.get_logger()

_PURPOSE = "voucher_signing_secret"


class SecretCipher:
    def __init__(self, key: bytes, version: str):
        if len(key) not in (16, 24, 32):
            raise ValueError("ENCRYPTION_KEY must decode to 16, 24 or 32 bytes")
        self._aead = AESGCM(key)
        self.version = version

    @staticmethod
    def _aad(tenant_id: str, version: str) -> bytes:
        binding = {"tenant_id": str(tenant_id), "key_version": version, "purpose": _PURPOSE}
        return json.dumps(binding, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def encrypt(self, plaintext: str, tenant_id: str) -> str:
        nonce = os.urandom(12)
        ct = self._aead.encrypt(
            nonce, plaintext.encode("utf-8"), self._aad(tenant_id, self.version)
        )
        return json.dumps(
            {
                "ver": self.version,
                "nonce": base64.urlsafe_b64encode(nonce).decode("utf-8"),
                "ct": base64.urlsafe_b64encode(ct).decode("utf-8"),
            },
            sort_keys=True,
        )

    def decrypt(self, blob: str, tenant_id: str) -> str:
        try:
            payload = json.loads(blob)
            ver = str(payload["ver"])
            nonce = base64.urlsafe_b64decode(str(payload["nonce"]).encode("utf-8"))
            ct = base64.urlsafe_b64decode(str(payload["ct"]).encode("utf-8"))
            return self._aead.decrypt(nonce, ct, self._aad(tenant_id, ver)).decode("utf-8")
        except (InvalidTag, KeyError, TypeError, ValueError) as exc:
            logger.error("signing_secret_decrypt_failed", tenant_id=str(tenant_id))
            raise SigningSecretMissing(
                "Signing secret for this organization could not be decrypted"
            ) from exc


def build_cipher(key: Optional[str] = None, version: Optional[str] = None) -> SecretCipher:
    raw = key if key is not None else settings.ENCRYPTION_KEY
    version = version or settings.ENCRYPTION_KEY_VERSION
    if raw:
        return SecretCipher(base64.urlsafe_b64decode(raw.encode("utf-8")), version)
    if settings.is_production:
        raise RuntimeError("ENCRYPTION_KEY is required in production")
    logger.warning("encryption_key_ephemeral", message="Signing secrets will not survive a restart")
    return SecretCipher(AESGCM.generate_key(bit_length=256), version)


@lru_cache()
def get_cipher() -> SecretCipher:
    return build_cipher()
