import os

# Settings are read at import time, so the test configuration goes first.
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-not-for-production"
os.environ["ENCRYPTION_KEY"] = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="
os.environ["UPSTASH_REDIS_REST_URL"] = ""
os.environ["TWOFACTOR_API_KEY"] = ""

import uuid
from datetime import datetime, timedelta
from typing import Optional

import pytest

import voucher_service.models  # noqa: F401
from voucher_service.database import (
    Base,
    create_engine_from_settings,
    create_session_factory,
    utcnow,
)
from voucher_service.errors import OtpDeliveryFailed
from voucher_service.models.license import License, LicenseStatus
from voucher_service.permissions import Actor, Role
from voucher_service.services.auth_service import create_access_token
from voucher_service.services.encryption import build_cipher
from voucher_service.services.signature_service import SignatureEngine
from voucher_service.services.voucher_state_machine import (
    VoucherInput,
    VoucherStateMachine,
)

VALID_CODE = "123456"


class FakeOtpProvider:
    """In-memory code provider: every session accepts VALID_CODE."""

    def __init__(self, fail_send: bool = False):
        self.fail_send = fail_send
        self.sent: list[str] = []
        self.checked: list[tuple[str, str]] = []

    async def request_code(self, channel: str) -> str:
        if self.fail_send:
            raise OtpDeliveryFailed("Failed to send OTP")
        self.sent.append(channel)
        return f"otp-session-{len(self.sent)}"

    async def verify_code(self, session_id: str, code: str) -> bool:
        self.checked.append((session_id, code))
        return code == VALID_CODE

    async def aclose(self) -> None:
        pass


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_actor(role: Role, tenant_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> Actor:
    return Actor(
        id=user_id or uuid.uuid4(),
        tenant_id=tenant_id,
        role=role,
        name=f"{role.value} user",
        email=f"{role.value}@acme.com",
        ip_address="10.0.0.5",
        user_agent="pytest",
        request_id="req-test",
    )


def voucher_input(**overrides) -> VoucherInput:
    values = dict(
        company_id=uuid.uuid4(),
        payee_id=uuid.uuid4(),
        amount="5000.00",
        payment_mode="mobile_pay",
        head_of_account="Travel",
        payee_name="Ravi Kumar",
        payee_mobile="+91 98765 43210",
    )
    values.update(overrides)
    return VoucherInput(**values)


def bearer(actor: Actor) -> dict:
    token = create_access_token(
        user_id=str(actor.id),
        tenant_id=str(actor.tenant_id),
        role=actor.role.value,
        email=actor.email,
        name=actor.name,
    )
    return {"Authorization": f"Bearer {token}"}


async def provision_tenant(session_factory, signer: SignatureEngine, tenant_id: uuid.UUID, **license_fields) -> License:
    values = dict(
        tenant_id=tenant_id,
        license_key=f"TEST-{uuid.uuid4().hex[:12]}",
        plan_type="professional",
        status=LicenseStatus.ACTIVE.value,
        max_vouchers_per_month=100,
        sms_credits=50,
        expiry_date=utcnow() + timedelta(days=365),
    )
    values.update(license_fields)
    async with session_factory() as session:
        license = License(**values)
        session.add(license)
        await signer.provision_secret(session, tenant_id)
        await session.commit()
        return license


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def engine(tmp_path):
    engine = create_engine_from_settings(f"sqlite+aiosqlite:///{tmp_path / 'vouchers.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def signer():
    return SignatureEngine(cipher=build_cipher())


@pytest.fixture
def otp_provider():
    return FakeOtpProvider()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def machine(signer, otp_provider, clock):
    return VoucherStateMachine(signer=signer, otp_provider=otp_provider, clock=clock)


@pytest.fixture
def tenant_id():
    return uuid.uuid4()


@pytest.fixture
async def tenant_license(session_factory, signer, tenant_id):
    return await provision_tenant(session_factory, signer, tenant_id)


@pytest.fixture
def accounts(tenant_id):
    return make_actor(Role.ACCOUNTS, tenant_id)


@pytest.fixture
def approver(tenant_id):
    return make_actor(Role.APPROVER, tenant_id)


@pytest.fixture
def admin(tenant_id):
    return make_actor(Role.ORG_ADMIN, tenant_id)


@pytest.fixture
def viewer(tenant_id):
    return make_actor(Role.VIEWER, tenant_id)
