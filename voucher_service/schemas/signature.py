from typing import List, Optional
from pydantic import BaseModel, Field


class SignatureVerifyResponse(BaseModel):
    voucher_id: str
    voucher_number: str
    is_valid: bool
    status: str
    verified_at: str
    message: str


class SignatureStatusResponse(BaseModel):
    voucher_number: str
    status: str
    amount: str
    created_at: str
    signature_prefix: Optional[str] = None
    signature_timestamp: Optional[str] = None
    approved_at: Optional[str] = None


class SignatureHistoryItem(BaseModel):
    id: str
    verification_result: str
    verified_by: Optional[str] = None
    request_source: str
    ip_address: Optional[str] = None
    verified_at: str


class BatchVerifyRequest(BaseModel):
    voucher_ids: List[str] = Field(..., min_length=1, max_length=100)


class BatchVerifyItemResponse(BaseModel):
    voucher_id: str
    voucher_number: Optional[str] = None
    is_valid: Optional[bool] = None
    error: Optional[str] = None


class BatchVerifyResponse(BaseModel):
    total: int
    valid: int
    invalid: int
    errors: int
    results: List[BatchVerifyItemResponse]



class RotateSecretResponse(BaseModel):
    total_vouchers: int
    resigned_count: int
    failed_count: int
    failed_voucher_ids: List[str] = []
    rotated_at: str


class VerificationStatsResponse(BaseModel):
    period_days: int
    total_verifications: int
    valid: int
    invalid: int
    success_rate: Optional[float] = None
