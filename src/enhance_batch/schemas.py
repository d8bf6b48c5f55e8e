from typing import Literal

from pydantic import BaseModel, Field


class ItemResponse(BaseModel):
    id: str
    batch_id: str
    position: int
    source_filename: str
    status: str
    progress: int = 0
    output_path: str | None = None
    signed_url: str | None = None
    signed_url_expires_at: str | None = None
    size_bytes: int | None = None
    error: str | None = None
    created_at: str
    updated_at: str


class BatchResponse(BaseModel):
    id: str
    owner_id: str
    mode: str
    shape: str
    total_items: int
    completed_count: int = 0
    failed_count: int = 0
    status: str
    credits_charged: int = 0
    error: str | None = None
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None
    updated_at: str
    expires_at: str


class SubmitResponse(BaseModel):
    batch_id: str
    credits_charged: int


class WorkerRequest(BaseModel):
    batch_id: str


class BundleResponse(BaseModel):
    signed_url: str
    filename: str


class CreditBalanceResponse(BaseModel):
    user_id: str
    plan: str = "free"
    monthly_balance: int = 0
    topup_balance: int = 0
    used_this_cycle: int = 0
    available: int = 0


class AdminGrantRequest(BaseModel):
    user_id: str
    amount: int = Field(gt=0)
    source: Literal["grant", "topup"] = "topup"
    reference: str | None = None
    note: str = "manual grant"
    email: str | None = None


class BillingEventRequest(BaseModel):
    event_id: str
    type: str
    user_id: str
    plan: str | None = None
    pack: str | None = None
    reference: str | None = None
