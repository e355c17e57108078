"""MercadoPago payment orchestration for bookings.

Local booking and coupon state is only patched after the gateway confirms an
operation. Confirmation side effects (voucher, emails) run as post-commit hooks
whose failures are logged and never undo the status transition.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Sequence

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.core import metrics
from tourpay.core.config import settings
from tourpay.models.booking import BookingPaymentMixin, BookingStatus, BookingType
from tourpay.models.coupon import Coupon, CouponUsageStatus
from tourpay.schemas.payment import (
    CardPaymentCreate,
    CardPaymentResponse,
    GatewayPaymentResponse,
    MercadoPagoNotification,
    PreferenceResponse,
    RefundResponse,
)
from tourpay.services import bookings as bookings_service
from tourpay.services import coupons as coupons_service
from tourpay.services import email as email_service
from tourpay.services import vouchers as vouchers_service
from tourpay.services import webhook_events
from tourpay.services.coupon_rules import quantize_money
from tourpay.services.mercadopago import MercadoPagoClient, MercadoPagoConfigurationError, MercadoPagoError

logger = logging.getLogger(__name__)

# Card brands that support authorize-now, capture-later.
MANUAL_CAPTURE_METHODS = {"visa", "master", "amex", "elo", "hipercard", "diners", "discover"}
CAPTURABLE_STATUSES = {"authorized", "pending"}
REFUNDABLE_STATUSES = {"paid", "succeeded"}

PostCommitHook = Callable[..., Awaitable[Any]]


@dataclass
class BookingDecisionResult:
    success: bool
    error: str | None = None
    booking_status: str | None = None
    payment_status: str | None = None


@dataclass
class WebhookResult:
    success: bool
    processed: bool = False
    duplicate: bool = False
    error: str | None = None


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


def _gateway_failure(operation: str, exc: MercadoPagoError, detail: str) -> HTTPException:
    metrics.record_payment_failure()
    logger.warning(
        "mercadopago_operation_failed",
        extra={"operation": operation, "status_code": exc.status_code, "error": exc.message},
    )
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


def _status_value(value: Any) -> str | None:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def _metadata_value(metadata: dict[str, Any], camel: str, snake: str) -> Any:
    # The gateway snake_cases metadata keys on the way back.
    value = metadata.get(camel)
    if value is None:
        value = metadata.get(snake)
    return value


async def _require_booking(session: AsyncSession, booking_id: Any, booking_type: Any) -> tuple[BookingPaymentMixin, BookingType]:
    kind = bookings_service.resolve_booking_type(booking_type)
    booking = await bookings_service.find_booking(session, booking_id, kind) if kind else None
    if booking is None or kind is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking, kind


async def create_preference(
    session: AsyncSession,
    client: MercadoPagoClient,
    *,
    booking_id: Any,
    booking_type: Any,
    title: str,
    unit_price: Decimal,
    quantity: int = 1,
    currency: str | None = None,
    back_urls: dict[str, str] | None = None,
    notification_url: str | None = None,
    capture_mode: str = "manual",
    metadata: dict[str, Any] | None = None,
) -> PreferenceResponse:
    booking, kind = await _require_booking(session, booking_id, booking_type)

    extra = dict(metadata or {})
    usage = await coupons_service.get_active_usage_for_booking(session, booking_id=str(booking.id), booking_type=kind.value)
    if usage is not None and usage.status == CouponUsageStatus.applied:
        unit_price = usage.final_amount
        quantity = 1
        coupon = await session.get(Coupon, usage.coupon_id)
        if coupon is not None:
            extra["couponCode"] = coupon.code

    body: dict[str, Any] = {
        "items": [
            {
                "title": title,
                "quantity": quantity,
                "currency_id": (currency or booking.currency or settings.mercadopago_currency).upper(),
                "unit_price": quantize_money(unit_price),
            }
        ],
        "auto_return": "approved",
        "payment_methods": {"installments": 1},
        "external_reference": str(booking.id),
        "metadata": {
            **extra,
            "bookingId": str(booking.id),
            "assetType": kind.value,
            "assetId": booking.asset_id,
            "userId": str(booking.user_id) if booking.user_id else None,
            "captureMode": capture_mode,
        },
    }
    if back_urls:
        body["back_urls"] = back_urls
    notification = notification_url or settings.mercadopago_notification_url
    if notification:
        body["notification_url"] = notification
    if capture_mode == "manual":
        body["binary_mode"] = False
        body["additional_info"] = {"capture": False}
    else:
        body["binary_mode"] = True

    # Retries of the same charge reuse the key; a changed amount gets a fresh preference.
    idempotency_key = f"booking-pref-{booking.id}-{quantize_money(unit_price)}x{quantity}"
    try:
        response = await client.create_preference(body, idempotency_key=idempotency_key)
    except MercadoPagoError as exc:
        raise _gateway_failure("create_preference", exc, "Could not create payment preference") from exc

    preference_id = response.get("id") if isinstance(response, dict) else None
    if not preference_id:
        metrics.record_payment_failure()
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Could not create payment preference")

    bookings_service.update_mp_info(booking, preference_id=str(preference_id), payment_status="pending")
    session.add(booking)
    await session.commit()

    init_point = response.get("init_point")
    sandbox_init_point = response.get("sandbox_init_point")
    logger.info("mercadopago_preference_created", extra={"booking_id": str(booking.id), "preference_id": preference_id})
    return PreferenceResponse(
        preference_id=str(preference_id),
        init_point=init_point,
        sandbox_init_point=sandbox_init_point,
        redirect_url=sandbox_init_point or init_point,
    )


def _pix_and_boleto(response: dict[str, Any]) -> dict[str, str | None]:
    interaction = response.get("point_of_interaction") or {}
    transaction_data = interaction.get("transaction_data") or {}
    details = response.get("transaction_details") or {}
    return {
        "pix_qr_code": transaction_data.get("qr_code"),
        "pix_qr_code_base64": transaction_data.get("qr_code_base64"),
        "boleto_url": details.get("external_resource_url"),
    }


async def create_payment(session: AsyncSession, client: MercadoPagoClient, *, payload: CardPaymentCreate) -> CardPaymentResponse:
    booking, kind = await _require_booking(session, payload.booking_id, payload.booking_type)

    method = payload.payment_method_id.strip().lower()
    payer = payload.payer.model_dump(exclude_none=True) if payload.payer else {"email": booking.customer_email}
    body: dict[str, Any] = {
        "transaction_amount": quantize_money(payload.amount),
        "description": payload.description,
        "payment_method_id": method,
        "installments": payload.installments,
        "payer": payer,
        "external_reference": str(booking.id),
        "metadata": {**payload.metadata, "bookingId": str(booking.id), "assetType": kind.value},
    }
    if payload.token:
        body["token"] = payload.token
    if payload.issuer_id:
        body["issuer_id"] = payload.issuer_id
    requires_manual_capture = method in MANUAL_CAPTURE_METHODS
    if requires_manual_capture:
        body["capture"] = False
    if settings.mercadopago_notification_url:
        body["notification_url"] = settings.mercadopago_notification_url

    idempotency_key = f"{booking.id}-{_timestamp_ms()}-{secrets.token_hex(4)}"
    try:
        response = await client.create_payment(body, idempotency_key=idempotency_key)
    except MercadoPagoError as exc:
        raise _gateway_failure("create_payment", exc, "Payment could not be processed") from exc

    payment_id = str(response.get("id"))
    gateway_status = response.get("status")
    payment_status = bookings_service.normalize_payment_status(gateway_status)
    bookings_service.update_mp_info(booking, payment_id=payment_id, payment_status=payment_status)
    if gateway_status == "authorized":
        booking.status = BookingStatus.awaiting_confirmation
    elif gateway_status == "approved":
        booking.status = BookingStatus.confirmed
    session.add(booking)
    await session.commit()
    await coupons_service.settle_usage_for_payment_status(
        session, booking_id=str(booking.id), booking_type=kind.value, payment_status=payment_status
    )

    logger.info(
        "mercadopago_payment_created",
        extra={"booking_id": str(booking.id), "payment_id": payment_id, "status": gateway_status},
    )
    return CardPaymentResponse(
        payment_id=payment_id,
        status=gateway_status,
        status_detail=response.get("status_detail"),
        payment_status=payment_status,
        requires_manual_capture=requires_manual_capture,
        **_pix_and_boleto(response),
    )


async def _sync_booking_from_payment(session: AsyncSession, payment_id: str, gateway_status: str | None) -> None:
    located = await bookings_service.find_booking_by_payment_id(session, payment_id)
    if located is None:
        return
    booking, _ = located
    bookings_service.update_payment_status(booking, bookings_service.normalize_payment_status(gateway_status))
    session.add(booking)
    await session.commit()


async def capture_payment(
    session: AsyncSession, client: MercadoPagoClient, *, payment_id: str, amount: Decimal | None = None
) -> GatewayPaymentResponse:
    try:
        response = await client.capture_payment(payment_id, amount)
    except MercadoPagoError as exc:
        raise _gateway_failure("capture_payment", exc, "Payment capture failed") from exc
    gateway_status = response.get("status")
    await _sync_booking_from_payment(session, payment_id, gateway_status)
    return GatewayPaymentResponse(
        payment_id=str(payment_id),
        status=gateway_status,
        payment_status=bookings_service.normalize_payment_status(gateway_status),
    )


async def cancel_payment(session: AsyncSession, client: MercadoPagoClient, *, payment_id: str) -> GatewayPaymentResponse:
    try:
        response = await client.cancel_payment(payment_id)
    except MercadoPagoError as exc:
        raise _gateway_failure("cancel_payment", exc, "Payment cancellation failed") from exc
    gateway_status = response.get("status")
    await _sync_booking_from_payment(session, payment_id, gateway_status)
    return GatewayPaymentResponse(
        payment_id=str(payment_id),
        status=gateway_status,
        payment_status=bookings_service.normalize_payment_status(gateway_status),
    )


async def _record_refund(
    session: AsyncSession,
    booking: BookingPaymentMixin,
    kind: BookingType,
    response: dict[str, Any],
    *,
    amount: Decimal | None,
    reason: str | None,
) -> None:
    refunded = response.get("amount")
    bookings_service.add_refund(
        booking,
        refund_id=str(response.get("id")),
        amount=quantize_money(refunded) if refunded is not None else amount,
        reason=reason,
        refund_status=response.get("status"),
    )
    session.add(booking)
    await session.commit()
    if booking.payment_status == "refunded":
        await coupons_service.settle_usage_for_payment_status(
            session, booking_id=str(booking.id), booking_type=kind.value, payment_status="refunded"
        )


async def create_refund(
    session: AsyncSession,
    client: MercadoPagoClient,
    *,
    payment_id: str,
    amount: Decimal | None = None,
    reason: str | None = None,
) -> RefundResponse:
    try:
        response = await client.refund_payment(payment_id, amount=amount, reason=reason)
    except MercadoPagoError as exc:
        raise _gateway_failure("create_refund", exc, "Refund could not be processed") from exc

    metadata = response.get("metadata") or {}
    booking_ref = _metadata_value(metadata, "bookingId", "booking_id")
    located = await bookings_service.find_booking_any_type(session, booking_ref) if booking_ref else None
    if located is None:
        located = await bookings_service.find_booking_by_payment_id(session, payment_id)

    booking_id = None
    if located is not None:
        booking, kind = located
        booking_id = str(booking.id)
        await _record_refund(session, booking, kind, response, amount=amount, reason=reason)
    else:
        logger.warning("mercadopago_refund_unmatched", extra={"payment_id": str(payment_id)})

    refunded = response.get("amount")
    return RefundResponse(
        refund_id=str(response.get("id")) if response.get("id") is not None else None,
        status=response.get("status"),
        amount=quantize_money(refunded) if refunded is not None else amount,
        booking_id=booking_id,
    )


async def _generate_voucher_hook(session: AsyncSession, booking: BookingPaymentMixin, kind: BookingType, **_: Any) -> None:
    await vouchers_service.generate_voucher(session, booking_id=str(booking.id), booking_type=kind.value)


async def _send_confirmation_hook(session: AsyncSession, booking: BookingPaymentMixin, kind: BookingType, **_: Any) -> None:
    if not booking.customer_email:
        return
    voucher = await vouchers_service.get_active_voucher(session, booking_id=str(booking.id), booking_type=kind.value)
    await email_service.send_booking_confirmation(
        booking.customer_email, booking, voucher_number=voucher.voucher_number if voucher else None
    )


async def _send_cancellation_hook(
    session: AsyncSession, booking: BookingPaymentMixin, kind: BookingType, *, reason: str | None = None, **_: Any
) -> None:
    if not booking.customer_email:
        return
    await email_service.send_booking_cancelled(booking.customer_email, booking, reason=reason)


APPROVAL_HOOKS: tuple[PostCommitHook, ...] = (_generate_voucher_hook, _send_confirmation_hook)
REJECTION_HOOKS: tuple[PostCommitHook, ...] = (_send_cancellation_hook,)


async def _run_post_commit_hooks(
    hooks: Sequence[PostCommitHook],
    session: AsyncSession,
    booking: BookingPaymentMixin,
    kind: BookingType,
    **context: Any,
) -> None:
    booking_ref = str(booking.id)
    for hook in hooks:
        try:
            await hook(session, booking, kind, **context)
        except Exception:
            await session.rollback()
            logger.exception(
                "booking_post_commit_hook_failed",
                extra={"hook": getattr(hook, "__name__", repr(hook)), "booking_id": booking_ref},
            )
            # Rollback expired the booking; later hooks and the caller still read it.
            await session.refresh(booking)


async def approve_booking(
    session: AsyncSession,
    client: MercadoPagoClient,
    *,
    booking_id: Any,
    booking_type: Any,
    partner_notes: str | None = None,
    hooks: Sequence[PostCommitHook] | None = None,
) -> BookingDecisionResult:
    """Capture the payment, then confirm the booking.

    The booking is never confirmed unless the capture succeeded or the payment
    was already captured.
    """
    kind = bookings_service.resolve_booking_type(booking_type)
    booking = await bookings_service.find_booking(session, booking_id, kind) if kind else None
    if booking is None or kind is None:
        return BookingDecisionResult(success=False, error="Booking not found")

    payment_status = booking.payment_status
    if booking.mp_payment_id:
        if payment_status in CAPTURABLE_STATUSES:
            try:
                response = await client.capture_payment(booking.mp_payment_id)
            except MercadoPagoError as exc:
                metrics.record_payment_failure()
                logger.warning(
                    "booking_capture_failed",
                    extra={"booking_id": str(booking.id), "status_code": exc.status_code, "error": exc.message},
                )
                return BookingDecisionResult(
                    success=False,
                    error="Payment capture failed",
                    booking_status=_status_value(booking.status),
                    payment_status=payment_status,
                )
            payment_status = bookings_service.normalize_payment_status(response.get("status"))
            if payment_status != "paid":
                return BookingDecisionResult(
                    success=False,
                    error=f"Payment was not captured (status: {payment_status})",
                    booking_status=_status_value(booking.status),
                    payment_status=booking.payment_status,
                )
        elif payment_status != "paid":
            return BookingDecisionResult(
                success=False,
                error=f"Payment cannot be captured in status {payment_status}",
                booking_status=_status_value(booking.status),
                payment_status=payment_status,
            )

    bookings_service.update_booking_status(
        booking, BookingStatus.confirmed, payment_status=payment_status, partner_notes=partner_notes
    )
    session.add(booking)
    await session.commit()
    await session.refresh(booking)
    logger.info("booking_approved", extra={"booking_id": str(booking.id), "booking_type": kind.value})

    await _run_post_commit_hooks(APPROVAL_HOOKS if hooks is None else hooks, session, booking, kind)
    return BookingDecisionResult(
        success=True, booking_status=_status_value(booking.status), payment_status=booking.payment_status
    )


async def reject_booking(
    session: AsyncSession,
    client: MercadoPagoClient,
    *,
    booking_id: Any,
    booking_type: Any,
    reason: str | None = None,
    hooks: Sequence[PostCommitHook] | None = None,
) -> BookingDecisionResult:
    kind = bookings_service.resolve_booking_type(booking_type)
    booking = await bookings_service.find_booking(session, booking_id, kind) if kind else None
    if booking is None or kind is None:
        return BookingDecisionResult(success=False, error="Booking not found")

    usage_outcome = "cancelled"
    payment_id = booking.mp_payment_id
    if payment_id and booking.payment_status in CAPTURABLE_STATUSES:
        try:
            await client.cancel_payment(payment_id)
        except MercadoPagoError as exc:
            metrics.record_payment_failure()
            logger.warning("booking_cancel_payment_failed", extra={"booking_id": str(booking.id), "error": exc.message})
    elif payment_id and booking.payment_status in REFUNDABLE_STATUSES:
        usage_outcome = "refunded"
        try:
            refund = await client.refund_payment(payment_id, reason=reason)
        except MercadoPagoError as exc:
            metrics.record_payment_failure()
            logger.warning("booking_refund_failed", extra={"booking_id": str(booking.id), "error": exc.message})
        else:
            bookings_service.add_refund(
                booking,
                refund_id=str(refund.get("id")),
                amount=quantize_money(refund["amount"]) if refund.get("amount") is not None else None,
                reason=reason,
                refund_status=refund.get("status"),
            )

    bookings_service.update_booking_status(
        booking, BookingStatus.canceled, payment_status="refunded", partner_notes=reason
    )
    session.add(booking)
    await session.commit()
    await session.refresh(booking)
    await coupons_service.settle_usage_for_payment_status(
        session, booking_id=str(booking.id), booking_type=kind.value, payment_status=usage_outcome
    )
    logger.info("booking_rejected", extra={"booking_id": str(booking.id), "booking_type": kind.value})

    await _run_post_commit_hooks(REJECTION_HOOKS if hooks is None else hooks, session, booking, kind, reason=reason)
    return BookingDecisionResult(
        success=True, booking_status=_status_value(booking.status), payment_status=booking.payment_status
    )


async def _reconcile_payment(session: AsyncSession, client: MercadoPagoClient, event_id: str, payment_id: str) -> None:
    try:
        payment = await client.get_payment(payment_id)
    except MercadoPagoError as exc:
        # Unknown or test payment ids would otherwise be redelivered forever.
        logger.warning(
            "mercadopago_webhook_payment_unavailable",
            extra={"payment_id": payment_id, "status_code": exc.status_code, "error": exc.message},
        )
        return

    metadata = payment.get("metadata") or {}
    booking_ref = _metadata_value(metadata, "bookingId", "booking_id")
    if not booking_ref:
        return

    kind = bookings_service.resolve_booking_type(_metadata_value(metadata, "assetType", "asset_type"))
    located = None
    if kind is not None:
        booking = await bookings_service.find_booking(session, booking_ref, kind)
        located = (booking, kind) if booking is not None else None
    if located is None:
        located = await bookings_service.find_booking_any_type(session, booking_ref)
    if located is None:
        logger.warning("mercadopago_webhook_booking_missing", extra={"booking_id": str(booking_ref)})
        await webhook_events.set_relations(session, event_id, booking_id=str(booking_ref))
        return

    booking, kind = located
    payment_status = bookings_service.normalize_payment_status(payment.get("status"))
    receipt_url = payment.get("receipt_url") or (payment.get("transaction_details") or {}).get("external_resource_url")
    bookings_service.update_payment_status(
        booking, payment_status, payment_id=str(payment.get("id") or payment_id), receipt_url=receipt_url
    )
    preference_id = _metadata_value(metadata, "preferenceId", "preference_id")
    bookings_service.update_mp_info(booking, preference_id=preference_id)
    session.add(booking)
    await session.commit()

    await coupons_service.settle_usage_for_payment_status(
        session, booking_id=str(booking.id), booking_type=kind.value, payment_status=payment_status
    )
    await webhook_events.set_relations(
        session, event_id, booking_id=str(booking.id), asset_type=kind.value, asset_id=booking.asset_id
    )
    logger.info(
        "mercadopago_payment_reconciled",
        extra={"booking_id": str(booking.id), "payment_id": payment_id, "status": payment_status},
    )


async def process_webhook(
    session: AsyncSession,
    client: MercadoPagoClient,
    notification: MercadoPagoNotification,
    *,
    fallback_event_id: str | None = None,
) -> WebhookResult:
    event_id = notification.event_id(fallback_event_id)
    if not event_id:
        return WebhookResult(success=False, error="Missing event id")

    metrics.record_webhook_received()
    existing = await webhook_events.get_event(session, event_id)
    # Resource-keyed deliveries share one id across status changes, so they are always re-read.
    if existing is not None and existing.processed and notification.has_event_id:
        metrics.record_webhook_duplicate()
        logger.info("mercadopago_webhook_duplicate", extra={"event_id": event_id})
        return WebhookResult(success=True, processed=True, duplicate=True)

    await webhook_events.record_event(
        session,
        event_id=event_id,
        event_type=notification.event_type,
        action=notification.action,
        payload=notification.model_dump(mode="json"),
    )

    try:
        payment_id = notification.payment_id()
        if notification.is_payment_event() and payment_id:
            await _reconcile_payment(session, client, event_id, payment_id)
        await webhook_events.mark_processed(session, event_id)
    except Exception as exc:
        await session.rollback()
        metrics.record_webhook_failure()
        logger.exception("mercadopago_webhook_failed", extra={"event_id": event_id})
        await webhook_events.append_error(session, event_id, str(exc) or exc.__class__.__name__)
        if isinstance(exc, MercadoPagoConfigurationError):
            raise
        return WebhookResult(success=False, error="Webhook processing failed")

    return WebhookResult(success=True, processed=True)
