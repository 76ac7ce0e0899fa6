from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.services.mikrotik import normalize_mac_address


class PlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    duration_minutes: int
    speed_down_kbps: int | None = None
    speed_up_kbps: int | None = None
    data_limit_mb: int | None = None
    price: Decimal
    currency: str


class DeviceContext(BaseModel):
    """What the captive portal learned about the device from the router."""

    mac: str | None = Field(default=None, max_length=32)
    ip: str | None = Field(default=None, max_length=64)
    login_url: str | None = Field(default=None, max_length=512)

    @field_validator("mac")
    @classmethod
    def _mac_or_none(cls, value: str | None) -> str | None:
        # An unreadable MAC only costs auto-login, so keep the purchase going.
        return normalize_mac_address(value)


class FlutterwavePurchaseRequest(DeviceContext):
    plan_id: int = Field(gt=0)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)


class YoPaymentsPurchaseRequest(DeviceContext):
    plan_id: int = Field(gt=0)
    phone: str = Field(min_length=9, max_length=32)

    @field_validator("phone")
    @classmethod
    def _digits(cls, value: str) -> str:
        stripped = value.strip().replace(" ", "")
        if not stripped.lstrip("+").isdigit():
            raise ValueError("phone must contain digits only")
        return stripped


class PurchaseResponse(BaseModel):
    order_reference: str
    status: str
    provider: str
    payment_link: str | None = None
    provider_ref: str | None = None
    message: str | None = None


class OrderStatusResponse(BaseModel):
    order_reference: str
    status: str
    message: str
    already_processed: bool = False
    result: dict | None = None


class VoucherRequest(DeviceContext):
    code: str = Field(min_length=1, max_length=32)

    @field_validator("code")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class VoucherValidationResponse(BaseModel):
    valid: bool
    message: str
    plan: PlanRead | None = None
    source: str | None = None


class VoucherRedeemResponse(BaseModel):
    success: bool
    message: str
    result: dict | None = None


class UsageRead(BaseModel):
    username: str
    total_sessions: int
    total_download_mb: float
    total_upload_mb: float
    total_session_minutes: int
    last_session_start: datetime | None = None
    last_session_stop: datetime | None = None
