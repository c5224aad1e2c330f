from typing import Optional
from pydantic import BaseModel


class LicenseUsageResponse(BaseModel):
    month: str
    vouchers_count: int
    sms_sent: int
    max_vouchers_per_month: int
    sms_credits: int


class LicenseResponse(BaseModel):
    id: str
    tenant_id: str
    plan_type: str
    status: str
    expiry_date: str
    days_remaining: int
    last_verified: Optional[str] = None
    usage: LicenseUsageResponse


class LicenseVerificationResponse(BaseModel):
    id: str
    status: str
    ip_address: Optional[str] = None
    hardware_id: Optional[str] = None
    verified_at: str
