from fastapi import APIRouter, Depends, HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db, get_radius_db
from app.models.catalog import Plan
from app.schemas.portal import (
    FlutterwavePurchaseRequest,
    OrderStatusResponse,
    PlanRead,
    PurchaseResponse,
    UsageRead,
    VoucherRedeemResponse,
    VoucherRequest,
    VoucherValidationResponse,
    YoPaymentsPurchaseRequest,
)
from app.services.order_activation import order_activation
from app.services.radius import radius_vouchers
from app.services.voucher_security import ClientInfo, DenialCode, ValidationResult, voucher_gate

router = APIRouter(prefix="/portal", tags=["portal"])
limiter = Limiter(key_func=get_remote_address)

DENIAL_STATUS = {
    DenialCode.ip_blocked: status.HTTP_403_FORBIDDEN,
    DenialCode.rate_limited: status.HTTP_429_TOO_MANY_REQUESTS,
    DenialCode.not_found: status.HTTP_404_NOT_FOUND,
    DenialCode.disabled: status.HTTP_400_BAD_REQUEST,
    DenialCode.already_used: status.HTTP_409_CONFLICT,
    DenialCode.active_session: status.HTTP_409_CONFLICT,
    DenialCode.expired: status.HTTP_410_GONE,
}


def _client(request: Request, payload: VoucherRequest) -> ClientInfo:
    return ClientInfo(
        ip_address=get_remote_address(request),
        user_agent=request.headers.get("user-agent"),
        mac_address=payload.mac,
    )


def _raise_denial(result: ValidationResult) -> None:
    headers = None
    if result.denial == DenialCode.rate_limited and result.retry_after:
        headers = {"Retry-After": str(result.retry_after)}
    raise HTTPException(
        status_code=DENIAL_STATUS.get(result.denial, status.HTTP_400_BAD_REQUEST),
        detail={"code": result.denial.value if result.denial else "invalid", "message": result.message},
        headers=headers,
    )


@router.get("/plans", response_model=list[PlanRead])
def list_plans(db: Session = Depends(get_db)):
    return db.scalars(
        select(Plan).where(Plan.is_active.is_(True)).order_by(Plan.price, Plan.id)
    ).all()


@router.post(
    "/purchase/flutterwave",
    response_model=PurchaseResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.purchase_rate_limit)
def purchase_flutterwave(
    request: Request, payload: FlutterwavePurchaseRequest, db: Session = Depends(get_db)
):
    if not payload.email and not payload.phone:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "invalid_input", "message": "Email or phone number is required"},
        )
    order, handle = order_activation.create_purchase(
        db,
        "flutterwave",
        payload.plan_id,
        {
            "email": payload.email,
            "msisdn": payload.phone,
            "mac": payload.mac,
            "ip": payload.ip,
            "login_url": payload.login_url,
        },
    )
    return PurchaseResponse(
        order_reference=order.reference,
        status=order.status.value,
        provider=order.provider,
        payment_link=handle.payment_link,
        message=handle.message,
    )


@router.post(
    "/purchase/yopayments",
    response_model=PurchaseResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.purchase_rate_limit)
def purchase_yopayments(
    request: Request, payload: YoPaymentsPurchaseRequest, db: Session = Depends(get_db)
):
    order, handle = order_activation.create_purchase(
        db,
        "yopayments",
        payload.plan_id,
        {"msisdn": payload.phone, "mac": payload.mac, "ip": payload.ip, "login_url": payload.login_url},
    )
    return PurchaseResponse(
        order_reference=order.reference,
        status=order.status.value,
        provider=order.provider,
        provider_ref=order.provider_ref,
        message=handle.message,
    )


@router.get("/orders/{reference}/status", response_model=OrderStatusResponse)
def order_status(
    reference: str,
    db: Session = Depends(get_db),
    radius_db: Session = Depends(get_radius_db),
):
    outcome = order_activation.poll_status(db, radius_db, reference)
    return OrderStatusResponse(
        order_reference=outcome.order_reference,
        status=outcome.status,
        message=outcome.message,
        already_processed=outcome.already_processed,
        result=outcome.payload if outcome.paid else None,
    )


@router.post("/vouchers/validate", response_model=VoucherValidationResponse)
def validate_voucher(
    request: Request,
    payload: VoucherRequest,
    db: Session = Depends(get_db),
    radius_db: Session = Depends(get_radius_db),
):
    result = voucher_gate.check_and_validate(db, radius_db, payload.code, _client(request, payload))
    if not result.valid:
        _raise_denial(result)
    return VoucherValidationResponse(
        valid=True,
        message=result.message,
        plan=PlanRead.model_validate(result.plan) if result.plan else None,
        source=result.source.kind.value if result.source else None,
    )


@router.post("/vouchers/redeem", response_model=VoucherRedeemResponse)
def redeem_voucher(
    request: Request,
    payload: VoucherRequest,
    db: Session = Depends(get_db),
    radius_db: Session = Depends(get_radius_db),
):
    outcome = order_activation.redeem_voucher(db, radius_db, payload.code, _client(request, payload))
    if not outcome.success:
        if outcome.validation and not outcome.validation.valid:
            _raise_denial(outcome.validation)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": DenialCode.already_used.value, "message": outcome.message},
        )
    return VoucherRedeemResponse(success=True, message=outcome.message, result=outcome.payload)


@router.get("/vouchers/{code}/usage", response_model=UsageRead)
def voucher_usage(code: str, radius_db: Session = Depends(get_radius_db)):
    stats = radius_vouchers.get_usage(radius_db, code)
    return UsageRead(
        username=stats.username,
        total_sessions=stats.total_sessions,
        total_download_mb=stats.total_download_mb,
        total_upload_mb=stats.total_upload_mb,
        total_session_minutes=stats.total_session_minutes,
        last_session_start=stats.last_session_start,
        last_session_stop=stats.last_session_stop,
    )
