from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field

from voucher_service.models.voucher import PaymentMode
from voucher_service.schemas.audit_log import VoucherAuditEntryResponse


class VoucherCreate(BaseModel):
    company_id: str
    payee_id: str
    amount: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2)
    payment_mode: PaymentMode
    head_of_account: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    remarks: Optional[str] = Field(None, max_length=2000)
    payee_name: Optional[str] = Field(None, max_length=255)
    payee_mobile: Optional[str] = Field(None, max_length=20)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class VoucherUpdate(BaseModel):
    company_id: Optional[str] = None
    payee_id: Optional[str] = None
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=15, decimal_places=2)
    payment_mode: Optional[PaymentMode] = None
    head_of_account: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    remarks: Optional[str] = Field(None, max_length=2000)
    payee_name: Optional[str] = Field(None, max_length=255)
    payee_mobile: Optional[str] = Field(None, max_length=20)


class RejectRequest(BaseModel):
    rejection_reason: Optional[str] = Field(None, max_length=1000)


class CancelRequest(BaseModel):
    cancellation_reason: Optional[str] = Field(None, max_length=1000)


class VerifyOtpRequest(BaseModel):
    otp: Optional[str] = Field(None, max_length=10)


class OtpSentResponse(BaseModel):
    message: str
    otp_sent_to: str
    otp_sent_at: str


class VoucherResponse(BaseModel):
    id: str
    tenant_id: str
    voucher_number: str
    financial_year: str
    company_id: str
    payee_id: str
    payee_name: Optional[str] = None
    amount: str
    currency: str
    payment_mode: str
    head_of_account: Optional[str] = None
    description: Optional[str] = None
    remarks: Optional[str] = None
    status: str
    digital_signature: Optional[str] = None
    signature_timestamp: Optional[str] = None
    signature_verified: bool = False
    created_by: str
    created_at: str
    updated_at: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None
    completed_by: Optional[str] = None
    completed_at: Optional[str] = None
    otp_sent_at: Optional[str] = None
    payee_otp_verified: bool = False
    version: int
    audit_trail: Optional[List[VoucherAuditEntryResponse]] = None

    model_config = {"from_attributes": True}
