import asyncio
from decimal import Decimal
from typing import Any, Awaitable, Callable
from uuid import uuid4

import pytest
from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tourpay.core import metrics
from tourpay.db.base import Base
from tourpay.models.booking import ActivityBooking, BookingStatus, EventBooking
from tourpay.models.coupon import Coupon, CouponUsage, CouponUsageStatus, DiscountType
from tourpay.models.user import User
from tourpay.models.voucher import Voucher
from tourpay.models.webhook import MercadoPagoWebhookEvent
from tourpay.schemas.payment import CardPaymentCreate, MercadoPagoNotification
from tourpay.services import coupons as coupons_service
from tourpay.services import payments
from tourpay.services.mercadopago import MercadoPagoConfigurationError, MercadoPagoError


class FakeMercadoPagoClient:
    def __init__(
        self,
        *,
        fail: set[str] | None = None,
        payment: dict[str, Any] | None = None,
        payment_response: dict[str, Any] | None = None,
        capture_status: str = "approved",
        refund_status: str = "approved",
    ) -> None:
        self.fail = fail or set()
        self.payment = payment or {}
        self.payment_response = payment_response or {"id": 9001, "status": "authorized"}
        self.capture_status = capture_status
        self.refund_status = refund_status
        self.calls: list[tuple[str, Any]] = []
        self.idempotency_keys: list[str | None] = []

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail:
            raise MercadoPagoError(f"{operation} refused", status_code=400)

    async def create_preference(self, payload: dict[str, Any], *, idempotency_key: str | None = None) -> dict[str, Any]:
        self.calls.append(("create_preference", payload))
        self.idempotency_keys.append(idempotency_key)
        self._maybe_fail("create_preference")
        return {"id": "pref-1", "init_point": "https://mp.test/init", "sandbox_init_point": "https://sandbox.mp.test/init"}

    async def create_payment(self, payload: dict[str, Any], *, idempotency_key: str | None = None) -> dict[str, Any]:
        self.calls.append(("create_payment", payload))
        self._maybe_fail("create_payment")
        return self.payment_response

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        self.calls.append(("get_payment", payment_id))
        self._maybe_fail("get_payment")
        return self.payment

    async def capture_payment(self, payment_id: str, amount: Decimal | None = None) -> dict[str, Any]:
        self.calls.append(("capture_payment", payment_id))
        self._maybe_fail("capture_payment")
        return {"id": payment_id, "status": self.capture_status}

    async def cancel_payment(self, payment_id: str) -> dict[str, Any]:
        self.calls.append(("cancel_payment", payment_id))
        self._maybe_fail("cancel_payment")
        return {"id": payment_id, "status": "cancelled"}

    async def refund_payment(
        self, payment_id: str, *, amount: Decimal | None = None, reason: str | None = None
    ) -> dict[str, Any]:
        self.calls.append(("refund_payment", payment_id))
        self._maybe_fail("refund_payment")
        return {"id": 77, "status": self.refund_status, "amount": amount if amount is not None else 500, "metadata": {}}

    def operations(self) -> list[str]:
        return [name for name, _ in self.calls]


def run_with_session(fn: Callable[[AsyncSession], Awaitable[Any]]) -> Any:
    async def _run() -> Any:
        engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
        try:
            async with SessionLocal() as session:
                return await fn(session)
        finally:
            await engine.dispose()

    return asyncio.run(_run())


async def seed_booking(session: AsyncSession, **overrides: Any) -> ActivityBooking:
    user = User(email=f"{uuid4().hex[:8]}@example.com", name="Guest")
    session.add(user)
    await session.flush()
    values: dict[str, Any] = {
        "user_id": user.id,
        "asset_id": "tour-1",
        "status": BookingStatus.awaiting_confirmation,
        "payment_status": "authorized",
        "total_price": Decimal("500.00"),
        "currency": "BRL",
        "customer_email": "guest@example.com",
        "customer_name": "Guest",
        "confirmation_code": "ACT-001",
        "mp_payment_id": "pay-1",
    }
    values.update(overrides)
    booking = ActivityBooking(**values)
    session.add(booking)
    await session.commit()
    await session.refresh(booking)
    return booking


async def apply_coupon_to(session: AsyncSession, booking: ActivityBooking) -> CouponUsage:
    from datetime import datetime, timedelta, timezone

    now = datetime.now(timezone.utc)
    coupon = Coupon(
        code="SUMMER20",
        name="Summer",
        discount_type=DiscountType.percentage,
        discount_value=Decimal("20"),
        valid_from=now - timedelta(days=1),
        valid_until=now + timedelta(days=1),
    )
    session.add(coupon)
    await session.commit()
    return await coupons_service.apply_coupon(
        session,
        code="SUMMER20",
        user_id=booking.user_id,
        booking_id=str(booking.id),
        booking_type="activity",
        original_amount=booking.total_price,
    )


async def reload_booking(session: AsyncSession, booking_id) -> ActivityBooking:
    result = await session.execute(
        select(ActivityBooking).where(ActivityBooking.id == booking_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


def test_approve_captures_then_confirms() -> None:
    client = FakeMercadoPagoClient()

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session)
        result = await payments.approve_booking(
            session, client, booking_id=booking.id, booking_type="activity", partner_notes="See you soon"
        )

        assert result.success is True
        assert result.booking_status == "confirmed"
        assert result.payment_status == "paid"
        assert client.operations() == ["capture_payment"]

        stored = await reload_booking(session, booking.id)
        assert stored.status == BookingStatus.confirmed
        assert stored.payment_status == "paid"
        assert stored.partner_notes == "See you soon"

        voucher = (await session.execute(select(Voucher))).scalar_one()
        assert voucher.booking_id == str(booking.id)

    run_with_session(_scenario)


def test_approve_keeps_booking_when_capture_fails() -> None:
    client = FakeMercadoPagoClient(fail={"capture_payment"})

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session)
        result = await payments.approve_booking(session, client, booking_id=booking.id, booking_type="activity")

        assert result.success is False
        assert result.error == "Payment capture failed"
        stored = await reload_booking(session, booking.id)
        assert stored.status == BookingStatus.awaiting_confirmation
        assert stored.payment_status == "authorized"
        assert (await session.execute(select(Voucher))).first() is None
        assert metrics.snapshot().get("payment_failures") == 1

    run_with_session(_scenario)


def test_approve_refuses_uncaptured_status() -> None:
    client = FakeMercadoPagoClient(capture_status="in_process")

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session)
        result = await payments.approve_booking(session, client, booking_id=booking.id, booking_type="activity")
        assert result.success is False
        assert result.error == "Payment was not captured (status: processing)"
        assert (await reload_booking(session, booking.id)).status == BookingStatus.awaiting_confirmation

    run_with_session(_scenario)


def test_approve_already_paid_skips_capture() -> None:
    client = FakeMercadoPagoClient()

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session, payment_status="paid")
        result = await payments.approve_booking(
            session, client, booking_id=booking.id, booking_type="activity", hooks=()
        )
        assert result.success is True
        assert client.operations() == []

    run_with_session(_scenario)


def test_approve_unknown_booking() -> None:
    async def _scenario(session: AsyncSession) -> None:
        result = await payments.approve_booking(
            session, FakeMercadoPagoClient(), booking_id=uuid4(), booking_type="activity"
        )
        assert result.success is False
        assert result.error == "Booking not found"

        wrong_table = await seed_booking(session)
        result = await payments.approve_booking(
            session, FakeMercadoPagoClient(), booking_id=wrong_table.id, booking_type="event"
        )
        assert result.error == "Booking not found"

    run_with_session(_scenario)


def test_hook_failure_does_not_undo_confirmation() -> None:
    client = FakeMercadoPagoClient()
    ran: list[str] = []

    async def broken_hook(session: AsyncSession, booking: Any, kind: Any, **_: Any) -> None:
        raise RuntimeError("smtp down")

    async def tracking_hook(session: AsyncSession, booking: Any, kind: Any, **_: Any) -> None:
        ran.append(str(booking.id))

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session)
        result = await payments.approve_booking(
            session, client, booking_id=booking.id, booking_type="activity", hooks=(broken_hook, tracking_hook)
        )
        assert result.success is True
        assert ran == [str(booking.id)]
        assert (await reload_booking(session, booking.id)).status == BookingStatus.confirmed

    run_with_session(_scenario)


def test_reject_authorized_payment_cancels_hold_and_coupon() -> None:
    client = FakeMercadoPagoClient()

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session)
        usage = await apply_coupon_to(session, booking)

        result = await payments.reject_booking(
            session, client, booking_id=booking.id, booking_type="activity", reason="Fully booked"
        )

        assert result.success is True
        assert result.booking_status == "canceled"
        assert client.operations() == ["cancel_payment"]
        stored = await reload_booking(session, booking.id)
        assert stored.status == BookingStatus.canceled
        assert stored.partner_notes == "Fully booked"

        await session.refresh(usage)
        assert usage.status == CouponUsageStatus.cancelled

    run_with_session(_scenario)


def test_reject_paid_booking_refunds_payment_and_coupon() -> None:
    client = FakeMercadoPagoClient()

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session, payment_status="paid")
        usage = await apply_coupon_to(session, booking)

        result = await payments.reject_booking(session, client, booking_id=booking.id, booking_type="activity")

        assert result.success is True
        assert client.operations() == ["refund_payment"]
        stored = await reload_booking(session, booking.id)
        assert stored.payment_status == "refunded"
        assert len(stored.refunds) == 1
        assert stored.refunds[0]["refundId"] == "77"

        await session.refresh(usage)
        assert usage.status == CouponUsageStatus.refunded

    run_with_session(_scenario)


def test_reject_still_cancels_when_gateway_refuses() -> None:
    client = FakeMercadoPagoClient(fail={"cancel_payment"})

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session)
        result = await payments.reject_booking(session, client, booking_id=booking.id, booking_type="activity")
        assert result.success is True
        assert (await reload_booking(session, booking.id)).status == BookingStatus.canceled

    run_with_session(_scenario)


def test_create_refund_records_entry_and_refunds_coupon() -> None:
    client = FakeMercadoPagoClient()

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session, payment_status="paid", mp_payment_id="pay-9")
        usage = await apply_coupon_to(session, booking)

        response = await payments.create_refund(session, client, payment_id="pay-9", reason="Weather")

        assert response.refund_id == "77"
        assert response.status == "approved"
        assert response.amount == Decimal("500.00")
        assert response.booking_id == str(booking.id)

        stored = await reload_booking(session, booking.id)
        entry = stored.refunds[0]
        assert entry["amount"] == "500.00"
        assert entry["reason"] == "Weather"
        assert entry["processedAt"]
        assert stored.payment_status == "refunded"

        await session.refresh(usage)
        assert usage.status == CouponUsageStatus.refunded

    run_with_session(_scenario)


def test_pending_refund_has_no_processed_timestamp() -> None:
    client = FakeMercadoPagoClient(refund_status="pending")

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session, payment_status="paid")
        await payments.create_refund(session, client, payment_id="pay-1", amount=Decimal("50"))
        stored = await reload_booking(session, booking.id)
        assert "processedAt" not in stored.refunds[0]
        assert stored.refunds[0]["amount"] == "50.00"
        assert stored.payment_status == "paid"

    run_with_session(_scenario)


def test_create_refund_gateway_failure() -> None:
    client = FakeMercadoPagoClient(fail={"refund_payment"})

    async def _scenario(session: AsyncSession) -> None:
        with pytest.raises(HTTPException) as excinfo:
            await payments.create_refund(session, client, payment_id="pay-1")
        assert excinfo.value.status_code == 502
        assert excinfo.value.detail == "Refund could not be processed"

    run_with_session(_scenario)


def test_preference_uses_coupon_final_amount() -> None:
    client = FakeMercadoPagoClient()

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session, mp_payment_id=None, payment_status=None)
        await apply_coupon_to(session, booking)

        response = await payments.create_preference(
            session,
            client,
            booking_id=booking.id,
            booking_type="activity",
            title="Sunset tour",
            unit_price=Decimal("250"),
            quantity=2,
        )

        assert response.preference_id == "pref-1"
        assert response.redirect_url == "https://sandbox.mp.test/init"
        payload = client.calls[0][1]
        assert payload["items"][0]["unit_price"] == Decimal("400.00")
        assert payload["items"][0]["quantity"] == 1
        assert payload["items"][0]["currency_id"] == "BRL"
        assert payload["metadata"]["couponCode"] == "SUMMER20"
        assert payload["metadata"]["bookingId"] == str(booking.id)
        assert payload["additional_info"] == {"capture": False}

        stored = await reload_booking(session, booking.id)
        assert stored.mp_preference_id == "pref-1"
        assert stored.payment_status == "pending"

    run_with_session(_scenario)


def test_preference_retry_reuses_idempotency_key() -> None:
    client = FakeMercadoPagoClient()

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session, mp_payment_id=None, payment_status=None)
        for unit_price in (Decimal("250"), Decimal("250"), Decimal("300")):
            await payments.create_preference(
                session, client, booking_id=booking.id, booking_type="activity", title="Sunset tour", unit_price=unit_price
            )

        first, retry, repriced = client.idempotency_keys
        assert first == retry == f"booking-pref-{booking.id}-250.00x1"
        assert repriced != first

    run_with_session(_scenario)


def test_preference_failures() -> None:
    async def _scenario(session: AsyncSession) -> None:
        with pytest.raises(HTTPException) as excinfo:
            await payments.create_preference(
                session,
                FakeMercadoPagoClient(),
                booking_id=uuid4(),
                booking_type="activity",
                title="Tour",
                unit_price=Decimal("10"),
            )
        assert excinfo.value.status_code == 404

        booking = await seed_booking(session)
        with pytest.raises(HTTPException) as excinfo:
            await payments.create_preference(
                session,
                FakeMercadoPagoClient(fail={"create_preference"}),
                booking_id=booking.id,
                booking_type="activity",
                title="Tour",
                unit_price=Decimal("10"),
                capture_mode="automatic",
            )
        assert excinfo.value.status_code == 502
        assert excinfo.value.detail == "Could not create payment preference"

    run_with_session(_scenario)


def test_card_payment_requests_manual_capture() -> None:
    client = FakeMercadoPagoClient(payment_response={"id": 9001, "status": "authorized", "status_detail": "pending_capture"})

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session, mp_payment_id=None, payment_status=None, status=BookingStatus.pending)
        payload = CardPaymentCreate(
            booking_id=booking.id,
            booking_type="activity",
            token="card-token",
            payment_method_id="Visa",
            amount=Decimal("500"),
            description="Sunset tour",
        )
        response = await payments.create_payment(session, client, payload=payload)

        assert response.payment_id == "9001"
        assert response.requires_manual_capture is True
        assert response.payment_status == "authorized"
        body = client.calls[0][1]
        assert body["capture"] is False
        assert body["payer"] == {"email": "guest@example.com"}

        stored = await reload_booking(session, booking.id)
        assert stored.mp_payment_id == "9001"
        assert stored.status == BookingStatus.awaiting_confirmation

    run_with_session(_scenario)


def test_pix_payment_returns_qr_code() -> None:
    client = FakeMercadoPagoClient(
        payment_response={
            "id": 9002,
            "status": "pending",
            "point_of_interaction": {"transaction_data": {"qr_code": "000201", "qr_code_base64": "aGk="}},
        }
    )

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session, mp_payment_id=None, payment_status=None)
        payload = CardPaymentCreate(
            booking_id=booking.id,
            booking_type="activity",
            payment_method_id="pix",
            amount=Decimal("500"),
            description="Sunset tour",
        )
        response = await payments.create_payment(session, client, payload=payload)
        assert response.requires_manual_capture is False
        assert response.pix_qr_code == "000201"
        assert "capture" not in client.calls[0][1]

    run_with_session(_scenario)


def test_rejected_card_payment_releases_coupon() -> None:
    client = FakeMercadoPagoClient(payment_response={"id": 9003, "status": "rejected"})

    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session, mp_payment_id=None, payment_status=None)
        usage = await apply_coupon_to(session, booking)
        payload = CardPaymentCreate(
            booking_id=booking.id,
            booking_type="activity",
            token="card-token",
            payment_method_id="master",
            amount=Decimal("400"),
            description="Sunset tour",
        )
        response = await payments.create_payment(session, client, payload=payload)
        assert response.payment_status == "failed"
        await session.refresh(usage)
        assert usage.status == CouponUsageStatus.cancelled

    run_with_session(_scenario)


def test_capture_and_cancel_sync_booking() -> None:
    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session)
        captured = await payments.capture_payment(session, FakeMercadoPagoClient(), payment_id="pay-1")
        assert captured.payment_status == "paid"
        assert (await reload_booking(session, booking.id)).payment_status == "paid"

        cancelled = await payments.cancel_payment(session, FakeMercadoPagoClient(), payment_id="pay-1")
        assert cancelled.payment_status == "cancelled"

        with pytest.raises(HTTPException) as excinfo:
            await payments.capture_payment(session, FakeMercadoPagoClient(fail={"capture_payment"}), payment_id="pay-1")
        assert excinfo.value.status_code == 502

    run_with_session(_scenario)


def _notification(**data: Any) -> MercadoPagoNotification:
    return MercadoPagoNotification.model_validate(data)


def test_webhook_reconciles_booking_once() -> None:
    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session, mp_payment_id=None, payment_status="pending")
        client = FakeMercadoPagoClient(
            payment={
                "id": 123,
                "status": "approved",
                "metadata": {"booking_id": str(booking.id), "asset_type": "activity"},
                "transaction_details": {"external_resource_url": "https://mp.test/receipt"},
            }
        )
        notification = _notification(id="evt-1", type="payment", action="payment.updated", data={"id": "123"})

        first = await payments.process_webhook(session, client, notification)
        assert first.success and first.processed and not first.duplicate

        stored = await reload_booking(session, booking.id)
        assert stored.payment_status == "paid"
        assert stored.mp_payment_id == "123"
        assert stored.payment_details == {"receiptUrl": "https://mp.test/receipt"}

        second = await payments.process_webhook(session, client, notification)
        assert second.duplicate is True
        assert client.operations() == ["get_payment"]

        event = (await session.execute(select(MercadoPagoWebhookEvent))).scalar_one()
        assert event.processed is True
        assert event.related_booking_id == str(booking.id)
        assert event.related_asset_type == "activity"
        assert event.payload["paymentId"] == "123"
        assert metrics.snapshot().get("webhooks_duplicate") == 1

    run_with_session(_scenario)


def test_webhook_prefers_gateway_receipt_url() -> None:
    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session, mp_payment_id=None, payment_status="pending")
        client = FakeMercadoPagoClient(
            payment={
                "id": 321,
                "status": "approved",
                "receipt_url": "https://mp.test/receipts/321",
                "metadata": {"bookingId": str(booking.id), "assetType": "activity"},
                "transaction_details": {"external_resource_url": "https://mp.test/ticket/321"},
            }
        )
        await payments.process_webhook(session, client, _notification(id="evt-321", type="payment", data={"id": "321"}))

        stored = await reload_booking(session, booking.id)
        assert stored.payment_details == {"receiptUrl": "https://mp.test/receipts/321"}

    run_with_session(_scenario)


def test_webhook_finds_booking_without_asset_type() -> None:
    async def _scenario(session: AsyncSession) -> None:
        event_booking = EventBooking(asset_id="show-1", total_price=Decimal("80"), payment_status="pending")
        session.add(event_booking)
        await session.commit()
        client = FakeMercadoPagoClient(
            payment={"id": 5, "status": "rejected", "metadata": {"bookingId": str(event_booking.id)}}
        )
        result = await payments.process_webhook(
            session, client, _notification(id="evt-5", type="payment", data={"id": "5"})
        )
        assert result.processed
        await session.refresh(event_booking)
        assert event_booking.payment_status == "failed"

    run_with_session(_scenario)


def test_legacy_notification_shape() -> None:
    async def _scenario(session: AsyncSession) -> None:
        client = FakeMercadoPagoClient(payment={"id": 7, "status": "approved", "metadata": {}})
        notification = _notification(topic="payment", resource="https://api.mercadopago.com/v1/payments/7")

        result = await payments.process_webhook(session, client, notification)
        assert result.processed
        assert client.calls == [("get_payment", "7")]

        event = (await session.execute(select(MercadoPagoWebhookEvent))).scalar_one()
        assert event.mp_event_id == "payment:7"
        assert event.event_type == "payment"

        again = await payments.process_webhook(session, client, notification, fallback_event_id=None)
        assert again.processed and not again.duplicate
        assert client.operations() == ["get_payment", "get_payment"]
        await session.refresh(event)
        assert event.attempts == 2

    run_with_session(_scenario)


def test_legacy_redelivery_applies_latest_payment_status() -> None:
    async def _scenario(session: AsyncSession) -> None:
        booking = await seed_booking(session, mp_payment_id=None, payment_status="pending")
        metadata = {"bookingId": str(booking.id), "assetType": "activity"}
        client = FakeMercadoPagoClient(payment={"id": 7, "status": "pending", "metadata": metadata})
        notification = _notification(topic="payment", resource="7")

        first = await payments.process_webhook(session, client, notification, fallback_event_id="7")
        assert first.processed
        assert (await reload_booking(session, booking.id)).payment_status == "pending"

        client.payment = {"id": 7, "status": "approved", "metadata": metadata}
        second = await payments.process_webhook(session, client, notification, fallback_event_id="7")
        assert second.processed and not second.duplicate
        assert client.calls == [("get_payment", "7"), ("get_payment", "7")]
        assert (await reload_booking(session, booking.id)).payment_status == "paid"

    run_with_session(_scenario)


def test_unfetchable_payment_is_still_marked_processed() -> None:
    async def _scenario(session: AsyncSession) -> None:
        client = FakeMercadoPagoClient(fail={"get_payment"})
        result = await payments.process_webhook(
            session, client, _notification(id="evt-404", type="payment", data={"id": "404"})
        )
        assert result.success and result.processed
        event = (await session.execute(select(MercadoPagoWebhookEvent))).scalar_one()
        assert event.processed is True
        assert event.processing_errors == []

    run_with_session(_scenario)


def test_non_payment_events_are_acknowledged() -> None:
    async def _scenario(session: AsyncSession) -> None:
        client = FakeMercadoPagoClient()
        result = await payments.process_webhook(
            session, client, _notification(id="evt-mo", type="merchant_order", data={"id": "1"})
        )
        assert result.processed
        assert client.calls == []

    run_with_session(_scenario)


def test_missing_event_id() -> None:
    async def _scenario(session: AsyncSession) -> None:
        result = await payments.process_webhook(session, FakeMercadoPagoClient(), _notification(type="payment"))
        assert result.success is False
        assert result.error == "Missing event id"

    run_with_session(_scenario)


def test_processing_failure_is_recorded(monkeypatch: pytest.MonkeyPatch) -> None:
    async def exploding(*args: Any, **kwargs: Any) -> None:
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(payments, "_reconcile_payment", exploding)

    async def _scenario(session: AsyncSession) -> None:
        notification = _notification(id="evt-err", type="payment", data={"id": "1"})
        result = await payments.process_webhook(session, FakeMercadoPagoClient(), notification)
        assert result.success is False
        assert result.error == "Webhook processing failed"

        event = (await session.execute(select(MercadoPagoWebhookEvent))).scalar_one()
        assert event.processed is False
        assert event.processing_errors[0]["error"] == "database unavailable"

        # A redelivery is retried, not treated as a duplicate.
        retry = await payments.process_webhook(session, FakeMercadoPagoClient(), notification)
        assert retry.duplicate is False
        await session.refresh(event)
        assert event.attempts == 2
        assert [e["retryCount"] for e in event.processing_errors] == [0, 1]

    run_with_session(_scenario)


def test_configuration_error_propagates() -> None:
    class UnconfiguredClient(FakeMercadoPagoClient):
        async def get_payment(self, payment_id: str) -> dict[str, Any]:
            raise MercadoPagoConfigurationError("MERCADOPAGO_ACCESS_TOKEN is not configured")

    async def _scenario(session: AsyncSession) -> None:
        with pytest.raises(MercadoPagoConfigurationError):
            await payments.process_webhook(
                session, UnconfiguredClient(), _notification(id="evt-cfg", type="payment", data={"id": "1"})
            )
        event = (await session.execute(select(MercadoPagoWebhookEvent))).scalar_one()
        assert len(event.processing_errors) == 1

    run_with_session(_scenario)
