"""Idempotent ledger of MercadoPago webhook deliveries."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.models.webhook import MercadoPagoWebhookEvent


def payload_summary(event_id: str, payload: dict[str, Any] | None) -> dict[str, Any]:
    data = payload.get("data") if isinstance(payload, dict) else None
    data = data if isinstance(data, dict) else {}
    payment_id = data.get("id")
    if payment_id is None and isinstance(payload, dict):
        payment_id = payload.get("resource")
    return {
        "id": str(event_id),
        "status": data.get("status"),
        "paymentId": str(payment_id) if payment_id is not None else None,
        "amount": data.get("transaction_amount"),
        "currency": data.get("currency_id"),
    }


async def get_event(session: AsyncSession, event_id: str) -> MercadoPagoWebhookEvent | None:
    result = await session.execute(
        select(MercadoPagoWebhookEvent).where(MercadoPagoWebhookEvent.mp_event_id == str(event_id))
    )
    return result.scalar_one_or_none()


async def record_event(
    session: AsyncSession,
    *,
    event_id: str,
    event_type: str | None,
    action: str | None,
    payload: dict[str, Any] | None,
) -> MercadoPagoWebhookEvent:
    """Insert the event on first sighting; later sightings only bump ``attempts``."""
    now = datetime.now(timezone.utc)
    record = MercadoPagoWebhookEvent(
        mp_event_id=str(event_id),
        event_type=event_type,
        action=action,
        processed=False,
        attempts=1,
        last_attempt_at=now,
        payload=payload_summary(event_id, payload),
        processing_errors=[],
    )
    session.add(record)
    try:
        await session.commit()
        await session.refresh(record)
        return record
    except IntegrityError:
        await session.rollback()

    existing = await get_event(session, event_id)
    if existing is None:
        raise RuntimeError(f"Webhook event {event_id} vanished after a duplicate insert")
    existing.attempts = int(existing.attempts or 0) + 1
    existing.last_attempt_at = now
    session.add(existing)
    await session.commit()
    await session.refresh(existing)
    return existing


async def mark_processed(session: AsyncSession, event_id: str) -> MercadoPagoWebhookEvent | None:
    record = await get_event(session, event_id)
    if record is None:
        return None
    record.processed = True
    record.processed_at = datetime.now(timezone.utc)
    session.add(record)
    await session.commit()
    return record


async def append_error(session: AsyncSession, event_id: str, message: str) -> MercadoPagoWebhookEvent | None:
    record = await get_event(session, event_id)
    if record is None:
        return None
    errors = list(record.processing_errors or [])
    errors.append(
        {
            "error": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "retryCount": len(errors),
        }
    )
    # Reassign so the JSON column is flagged dirty.
    record.processing_errors = errors
    session.add(record)
    await session.commit()
    return record


async def set_relations(
    session: AsyncSession,
    event_id: str,
    *,
    booking_id: str | None,
    asset_type: str | None = None,
    asset_id: str | None = None,
) -> MercadoPagoWebhookEvent | None:
    record = await get_event(session, event_id)
    if record is None:
        return None
    record.related_booking_id = booking_id
    record.related_asset_type = asset_type
    record.related_asset_id = asset_id
    session.add(record)
    await session.commit()
    return record
