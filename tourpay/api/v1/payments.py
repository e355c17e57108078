from uuid import UUID

import simplejson
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.core.dependencies import get_current_user, require_payment_operator
from tourpay.db.session import get_session
from tourpay.models.booking import BookingType
from tourpay.models.user import User, UserRole
from tourpay.schemas.payment import (
    BookingDecisionRequest,
    BookingDecisionResponse,
    CaptureRequest,
    CardPaymentCreate,
    CardPaymentResponse,
    GatewayPaymentResponse,
    MercadoPagoNotification,
    PreferenceCreate,
    PreferenceResponse,
    RefundCreate,
    RefundResponse,
)
from tourpay.services import bookings as bookings_service
from tourpay.services import payments
from tourpay.services import vouchers as vouchers_service
from tourpay.services.mercadopago import MercadoPagoClient, get_mercadopago_client
from tourpay.services.webhook_signature import WebhookSignatureVerifier, get_webhook_verifier

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/mercadopago/preferences", response_model=PreferenceResponse, status_code=status.HTTP_201_CREATED)
async def create_preference(
    payload: PreferenceCreate,
    session: AsyncSession = Depends(get_session),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
    _: User = Depends(get_current_user),
) -> PreferenceResponse:
    return await payments.create_preference(
        session,
        client,
        booking_id=payload.booking_id,
        booking_type=payload.booking_type,
        title=payload.title,
        quantity=payload.quantity,
        unit_price=payload.unit_price,
        currency=payload.currency,
        back_urls=payload.back_urls.model_dump() if payload.back_urls else None,
        capture_mode=payload.capture_mode,
        metadata=payload.metadata,
    )


@router.post("/mercadopago/payments", response_model=CardPaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    payload: CardPaymentCreate,
    session: AsyncSession = Depends(get_session),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
    _: User = Depends(get_current_user),
) -> CardPaymentResponse:
    return await payments.create_payment(session, client, payload=payload)


@router.post("/mercadopago/payments/{payment_id}/capture", response_model=GatewayPaymentResponse)
async def capture_payment(
    payment_id: str,
    payload: CaptureRequest | None = None,
    session: AsyncSession = Depends(get_session),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
    _: User = Depends(require_payment_operator),
) -> GatewayPaymentResponse:
    amount = payload.amount if payload else None
    return await payments.capture_payment(session, client, payment_id=payment_id, amount=amount)


@router.post("/mercadopago/payments/{payment_id}/cancel", response_model=GatewayPaymentResponse)
async def cancel_payment(
    payment_id: str,
    session: AsyncSession = Depends(get_session),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
    _: User = Depends(require_payment_operator),
) -> GatewayPaymentResponse:
    return await payments.cancel_payment(session, client, payment_id=payment_id)


@router.post(
    "/mercadopago/payments/{payment_id}/refunds",
    response_model=RefundResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_refund(
    payment_id: str,
    payload: RefundCreate,
    session: AsyncSession = Depends(get_session),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
    _: User = Depends(require_payment_operator),
) -> RefundResponse:
    return await payments.create_refund(
        session, client, payment_id=payment_id, amount=payload.amount, reason=payload.reason
    )


def _decision_response(result: payments.BookingDecisionResult) -> BookingDecisionResponse:
    if not result.success:
        code = status.HTTP_404_NOT_FOUND if result.error == "Booking not found" else status.HTTP_409_CONFLICT
        raise HTTPException(status_code=code, detail=result.error)
    return BookingDecisionResponse(
        success=True,
        booking_status=result.booking_status,
        payment_status=result.payment_status,
    )


@router.post("/bookings/{booking_type}/{booking_id}/approve", response_model=BookingDecisionResponse)
async def approve_booking(
    booking_type: BookingType,
    booking_id: UUID,
    payload: BookingDecisionRequest | None = None,
    session: AsyncSession = Depends(get_session),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
    _: User = Depends(require_payment_operator),
) -> BookingDecisionResponse:
    result = await payments.approve_booking(
        session,
        client,
        booking_id=booking_id,
        booking_type=booking_type,
        partner_notes=payload.reason if payload else None,
    )
    return _decision_response(result)


@router.post("/bookings/{booking_type}/{booking_id}/reject", response_model=BookingDecisionResponse)
async def reject_booking(
    booking_type: BookingType,
    booking_id: UUID,
    payload: BookingDecisionRequest | None = None,
    session: AsyncSession = Depends(get_session),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
    _: User = Depends(require_payment_operator),
) -> BookingDecisionResponse:
    result = await payments.reject_booking(
        session,
        client,
        booking_id=booking_id,
        booking_type=booking_type,
        reason=payload.reason if payload else None,
    )
    return _decision_response(result)


@router.get("/bookings/{booking_type}/{booking_id}/voucher.pdf")
async def download_voucher(
    booking_type: BookingType,
    booking_id: UUID,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> Response:
    booking = await bookings_service.find_booking(session, booking_id, booking_type)
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    if current_user.role not in (UserRole.master, UserRole.partner) and booking.user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to access this voucher")
    voucher = await vouchers_service.get_active_voucher(session, booking_id=str(booking.id), booking_type=booking_type.value)
    if voucher is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Voucher not found")
    pdf = vouchers_service.render_voucher_pdf(voucher, booking)
    headers = {"Content-Disposition": f'attachment; filename="{voucher.voucher_number}.pdf"'}
    return Response(content=pdf, media_type="application/pdf", headers=headers)


@router.post("/mercadopago/webhook", status_code=status.HTTP_200_OK)
async def mercadopago_webhook(
    request: Request,
    x_signature: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
    verifier: WebhookSignatureVerifier = Depends(get_webhook_verifier),
) -> dict:
    body = await request.body()
    try:
        raw = simplejson.loads(body) if body else {}
    except simplejson.JSONDecodeError:
        raw = None

    data = raw.get("data") if isinstance(raw, dict) else None
    data_id = data.get("id") if isinstance(data, dict) else None
    if not verifier.verify(
        x_signature,
        query_params=request.query_params,
        headers=request.headers,
        data_id=str(data_id) if data_id is not None else None,
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    if not isinstance(raw, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    try:
        notification = MercadoPagoNotification.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload") from exc

    fallback_id = request.query_params.get("id") or request.query_params.get("data.id")
    result = await payments.process_webhook(session, client, notification, fallback_event_id=fallback_id)
    if not result.success:
        if result.error == "Missing event id":
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event id")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook processing failed")
    return {"received": True, "processed": result.processed, "duplicate": result.duplicate}
