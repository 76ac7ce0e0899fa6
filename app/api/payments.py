from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.db import get_db, get_radius_db
from app.schemas.portal import OrderStatusResponse
from app.services import api_payment_webhooks as api_payment_webhooks_service
from app.services.order_activation import order_activation

router = APIRouter(prefix="/payments", tags=["payment-events"])


@router.post("/flutterwave/webhook")
async def flutterwave_webhook(
    request: Request,
    db: Session = Depends(get_db),
    radius_db: Session = Depends(get_radius_db),
):
    body = await request.body()
    return api_payment_webhooks_service.process_flutterwave_webhook(
        db=db,
        radius_db=radius_db,
        body=body,
        headers=request.headers,
    )


@router.post("/yopayments/webhook")
async def yopayments_webhook(
    request: Request,
    db: Session = Depends(get_db),
    radius_db: Session = Depends(get_radius_db),
):
    body = await request.body()
    return api_payment_webhooks_service.process_yopayments_webhook(
        db=db,
        radius_db=radius_db,
        body=body,
        headers=request.headers,
    )


@router.get("/flutterwave/redirect", response_model=OrderStatusResponse)
def flutterwave_redirect(
    order_ref: str = Query(alias="orderRef", min_length=1),
    transaction_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    radius_db: Session = Depends(get_radius_db),
):
    # The query-string status is client controlled; only the verify call counts.
    outcome = order_activation.confirm_payment(
        db,
        radius_db,
        order_ref,
        claimed_tx_id=transaction_id,
        provider="flutterwave",
        channel="redirect",
    )
    return OrderStatusResponse(
        order_reference=outcome.order_reference,
        status=outcome.status,
        message=outcome.message,
        already_processed=outcome.already_processed,
        result=outcome.payload if outcome.paid else None,
    )
