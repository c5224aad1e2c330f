from typing import Optional
from pydantic import BaseModel


class VoucherAuditEntryResponse(BaseModel):
    id: str
    voucher_id: str
    action: str
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    actor_role: Optional[str] = None
    before_state: Optional[dict] = None
    after_state: Optional[dict] = None
    changed_fields: Optional[list[str]] = None
    notes: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: str

    model_config = {"from_attributes": True}
