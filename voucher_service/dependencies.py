"""FastAPI providers for the service objects routes work with."""

from fastapi import Request

from voucher_service.services.license_service import LicenseGate
from voucher_service.services.otp_service import OtpProvider
from voucher_service.services.signature_service import SignatureEngine
from voucher_service.services.voucher_state_machine import VoucherStateMachine


def get_signature_engine(request: Request) -> SignatureEngine:
    return request.app.state.signature_engine


def get_otp_provider(request: Request) -> OtpProvider:
    return request.app.state.otp_provider


def get_license_gate() -> LicenseGate:
    return LicenseGate()


def get_state_machine(request: Request) -> VoucherStateMachine:
    """A fresh machine per request; it remembers that request's license check."""
    return VoucherStateMachine(
        signer=get_signature_engine(request),
        otp_provider=get_otp_provider(request),
    )
