"""Coupon application engine.

Applying a coupon validates it against the purchase, freezes the monetary
snapshot on a ``CouponUsage`` row and bumps the coupon's ``usage_count``. The
per-booking uniqueness guarantee is backed by the ``active_booking_key``
constraint so two concurrent applications to the same booking cannot both
commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.core import metrics
from tourpay.models.coupon import (
    Coupon,
    CouponAuditAction,
    CouponAuditLog,
    CouponType,
    CouponUsage,
    CouponUsageStatus,
    booking_key,
)
from tourpay.models.user import User, UserRole
from tourpay.schemas.coupon import CouponAuditData
from tourpay.services import coupon_rules
from tourpay.services.coupon_rules import DiscountCalculation, as_utc, normalize_code

logger = logging.getLogger(__name__)

ALREADY_APPLIED_DETAIL = "Coupon already applied to this booking"

CANCEL_PAYMENT_STATUSES = {"failed", "cancelled"}
REFUND_PAYMENT_STATUSES = {"refunded", "charged_back"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _rejected(status_code: int, detail: str, *, code: str | None = None) -> HTTPException:
    metrics.record_coupon_rejected()
    logger.info("coupon_rejected", extra={"coupon_code": code, "reason": detail})
    return HTTPException(status_code=status_code, detail=detail)


def add_audit_log(
    session: AsyncSession,
    *,
    coupon_id: UUID,
    action: CouponAuditAction,
    performed_by: UUID | None,
    **data: Any,
) -> CouponAuditLog:
    """Stage an audit row; ``data`` must match ``CouponAuditData`` fields."""
    action_data = CouponAuditData(**data).model_dump(by_alias=True, exclude_none=True, mode="json")
    entry = CouponAuditLog(
        coupon_id=coupon_id,
        action_type=action,
        performed_by=performed_by,
        performed_at=_now(),
        action_data=action_data,
    )
    session.add(entry)
    return entry


def ensure_coupon_access(actor: User, coupon: Coupon, *, action: str = "modify") -> None:
    if actor.role == UserRole.master:
        return
    if actor.role == UserRole.partner and coupon.partner_id == actor.id:
        return
    if actor.role == UserRole.employee and actor.partner_id is not None and coupon.partner_id == actor.partner_id:
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Not allowed to {action} this coupon")


async def get_coupon_by_code(session: AsyncSession, code: str, *, for_update: bool = False) -> Coupon | None:
    stmt = select(Coupon).where(Coupon.code == normalize_code(code), Coupon.deleted_at.is_(None))
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalars().first()


async def count_user_usages(session: AsyncSession, *, coupon_id: UUID, user_id: UUID) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(CouponUsage)
        .where(
            CouponUsage.coupon_id == coupon_id,
            CouponUsage.user_id == user_id,
            CouponUsage.status != CouponUsageStatus.cancelled,
        )
    )
    return int(result.scalar_one() or 0)


async def count_user_history(session: AsyncSession, *, user_id: UUID) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(CouponUsage)
        .where(CouponUsage.user_id == user_id, CouponUsage.status != CouponUsageStatus.cancelled)
    )
    return int(result.scalar_one() or 0)


async def get_active_usage_for_booking(
    session: AsyncSession, *, booking_id: str, booking_type: str
) -> CouponUsage | None:
    result = await session.execute(
        select(CouponUsage).where(CouponUsage.active_booking_key == booking_key(booking_type, str(booking_id)))
    )
    return result.scalar_one_or_none()


def _booking_type_value(booking_type: Any) -> str:
    return str(getattr(booking_type, "value", booking_type))


async def apply_coupon(
    session: AsyncSession,
    *,
    code: str,
    user_id: UUID,
    booking_id: str,
    booking_type: Any,
    original_amount: Decimal,
    asset_type: str | None = None,
    asset_id: str | None = None,
    performed_by: UUID | None = None,
) -> CouponUsage:
    normalized = normalize_code(code)
    coupon = await get_coupon_by_code(session, normalized, for_update=True)
    if coupon is None:
        raise _rejected(status.HTTP_404_NOT_FOUND, "Coupon not found", code=normalized)

    now = _now()
    amount = coupon_rules.quantize_money(original_amount)

    if not coupon.is_active:
        raise _rejected(status.HTTP_400_BAD_REQUEST, "Coupon is inactive", code=normalized)
    if not coupon_rules.is_within_validity(coupon, now):
        raise _rejected(status.HTTP_400_BAD_REQUEST, "Coupon is outside its validity period", code=normalized)
    if coupon.usage_limit and int(coupon.usage_count or 0) >= int(coupon.usage_limit):
        raise _rejected(status.HTTP_409_CONFLICT, "Coupon usage limit reached", code=normalized)
    if coupon.user_usage_limit:
        used = await count_user_usages(session, coupon_id=coupon.id, user_id=user_id)
        if used >= int(coupon.user_usage_limit):
            raise _rejected(status.HTTP_409_CONFLICT, "Per-user usage limit reached", code=normalized)
    if coupon.minimum_order_value is not None and amount < coupon.minimum_order_value:
        raise _rejected(
            status.HTTP_400_BAD_REQUEST,
            f"Minimum order value: R$ {coupon_rules.quantize_money(coupon.minimum_order_value)}",
            code=normalized,
        )
    if coupon.maximum_order_value is not None and amount > coupon.maximum_order_value:
        raise _rejected(
            status.HTTP_400_BAD_REQUEST,
            f"Maximum order value: R$ {coupon_rules.quantize_money(coupon.maximum_order_value)}",
            code=normalized,
        )
    if asset_type and asset_id and not coupon_rules.is_asset_applicable(coupon, asset_type, asset_id):
        raise _rejected(status.HTTP_400_BAD_REQUEST, "Coupon is not applicable to this item", code=normalized)
    if coupon.type == CouponType.private and coupon.allowed_users and str(user_id) not in coupon.allowed_users:
        raise _rejected(status.HTTP_403_FORBIDDEN, "Coupon is not available for this user", code=normalized)

    calc = coupon_rules.calculate_discount(coupon.discount_type, coupon.discount_value, amount, coupon.max_discount_amount)

    kind = _booking_type_value(booking_type)
    key = booking_key(kind, str(booking_id))
    if await get_active_usage_for_booking(session, booking_id=str(booking_id), booking_type=kind) is not None:
        raise _rejected(status.HTTP_409_CONFLICT, ALREADY_APPLIED_DETAIL, code=normalized)

    usage = CouponUsage(
        coupon_id=coupon.id,
        user_id=user_id,
        booking_id=str(booking_id),
        booking_type=kind,
        original_amount=calc.original_amount,
        discount_amount=calc.discount_amount,
        final_amount=calc.final_amount,
        status=CouponUsageStatus.applied,
        active_booking_key=key,
        applied_at=now,
    )
    session.add(usage)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        raise _rejected(status.HTTP_409_CONFLICT, ALREADY_APPLIED_DETAIL, code=normalized)

    new_count = int(coupon.usage_count or 0) + 1
    await session.execute(
        update(Coupon).where(Coupon.id == coupon.id).values(usage_count=Coupon.usage_count + 1, updated_at=now)
    )

    actor_id = performed_by or user_id
    add_audit_log(
        session,
        coupon_id=coupon.id,
        action=CouponAuditAction.applied,
        performed_by=actor_id,
        affected_booking_id=str(booking_id),
        affected_user_id=str(user_id),
        metadata={
            "originalAmount": str(calc.original_amount),
            "discountAmount": str(calc.discount_amount),
            "finalAmount": str(calc.final_amount),
        },
    )
    if coupon.usage_limit and new_count >= int(coupon.usage_limit):
        add_audit_log(
            session,
            coupon_id=coupon.id,
            action=CouponAuditAction.usage_limit_reached,
            performed_by=actor_id,
            metadata={"usageCount": new_count, "usageLimit": coupon.usage_limit},
        )

    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise _rejected(status.HTTP_409_CONFLICT, ALREADY_APPLIED_DETAIL, code=normalized)
    await session.refresh(usage)

    metrics.record_coupon_applied()
    logger.info(
        "coupon_applied",
        extra={"coupon_code": normalized, "booking_id": str(booking_id), "discount": str(calc.discount_amount)},
    )
    return usage


@dataclass
class CouponEligibility:
    is_valid: bool
    reasons: list[str] = field(default_factory=list)
    coupon: Coupon | None = None
    discount: DiscountCalculation | None = None


async def _eligibility_reasons(
    session: AsyncSession,
    coupon: Coupon,
    *,
    user_id: UUID | None,
    order_value: Decimal | None,
    asset_type: str | None,
    asset_id: str | None,
) -> list[str]:
    now = _now()
    reasons: list[str] = []
    if not coupon.is_active:
        reasons.append("Coupon is inactive")
    if as_utc(coupon.valid_from) > now:
        reasons.append("Coupon is not valid yet")
    if as_utc(coupon.valid_until) < now:
        reasons.append("Coupon has expired")
    if coupon.usage_limit and int(coupon.usage_count or 0) >= int(coupon.usage_limit):
        reasons.append("Coupon usage limit reached")

    if order_value is not None:
        if coupon.minimum_order_value is not None and order_value < coupon.minimum_order_value:
            reasons.append(f"Minimum order value: R$ {coupon_rules.quantize_money(coupon.minimum_order_value)}")
        if coupon.maximum_order_value is not None and order_value > coupon.maximum_order_value:
            reasons.append(f"Maximum order value: R$ {coupon_rules.quantize_money(coupon.maximum_order_value)}")

    if asset_type and asset_id and not coupon_rules.is_asset_applicable(coupon, asset_type, asset_id):
        reasons.append("Coupon is not applicable to this item")

    if user_id is not None:
        if coupon.user_usage_limit:
            used = await count_user_usages(session, coupon_id=coupon.id, user_id=user_id)
            if used >= int(coupon.user_usage_limit):
                reasons.append("Per-user usage limit reached")
        if coupon.type == CouponType.private and str(user_id) not in (coupon.allowed_users or []):
            reasons.append("Coupon is not available for this user")
        if coupon.type in (CouponType.first_purchase, CouponType.returning_customer):
            history = await count_user_history(session, user_id=user_id)
            if coupon.type == CouponType.first_purchase and history > 0:
                reasons.append("Coupon is only valid on a first purchase")
            if coupon.type == CouponType.returning_customer and history == 0:
                reasons.append("Coupon is only valid for returning customers")
    return reasons


async def evaluate_coupon(
    session: AsyncSession,
    *,
    code: str,
    user_id: UUID | None = None,
    order_value: Decimal | None = None,
    asset_type: str | None = None,
    asset_id: str | None = None,
) -> CouponEligibility:
    """Side-effect free eligibility check collecting every failing rule."""
    coupon = await get_coupon_by_code(session, code)
    if coupon is None:
        return CouponEligibility(is_valid=False, reasons=["Coupon not found"])

    reasons = await _eligibility_reasons(
        session, coupon, user_id=user_id, order_value=order_value, asset_type=asset_type, asset_id=asset_id
    )
    discount = None
    if order_value is not None:
        discount = coupon_rules.calculate_discount(
            coupon.discount_type, coupon.discount_value, order_value, coupon.max_discount_amount
        )
    return CouponEligibility(is_valid=not reasons, reasons=reasons, coupon=coupon, discount=discount)


@dataclass
class CouponSuggestions:
    ranked: list[coupon_rules.RankedCoupon]
    best: coupon_rules.CouponCombination


async def suggest_coupons(
    session: AsyncSession,
    *,
    user_id: UUID,
    order_value: Decimal,
    asset_type: str | None = None,
    asset_id: str | None = None,
) -> CouponSuggestions:
    """Rank the coupons a user could apply right now and pick the best combination.

    Only publicly visible or auto-apply coupons are offered, plus private ones
    that list the user.
    """
    now = _now()
    result = await session.execute(
        select(Coupon)
        .where(
            Coupon.is_active.is_(True),
            Coupon.deleted_at.is_(None),
            Coupon.valid_from <= now,
            Coupon.valid_until >= now,
        )
        .order_by(Coupon.created_at)
    )
    eligible: list[Coupon] = []
    for coupon in result.scalars().all():
        listed = coupon.type == CouponType.private and str(user_id) in (coupon.allowed_users or [])
        if not (coupon.is_publicly_visible or coupon.auto_apply or listed):
            continue
        reasons = await _eligibility_reasons(
            session, coupon, user_id=user_id, order_value=order_value, asset_type=asset_type, asset_id=asset_id
        )
        if not reasons:
            eligible.append(coupon)
    return CouponSuggestions(
        ranked=coupon_rules.prioritize_coupons(eligible, order_value),
        best=coupon_rules.optimize_coupon_combination(eligible, order_value),
    )


@dataclass
class CombinationCheck:
    report: coupon_rules.ConflictReport
    best: coupon_rules.CouponCombination


async def check_coupon_combination(session: AsyncSession, *, codes: list[str], order_value: Decimal) -> CombinationCheck:
    coupons: list[Coupon] = []
    for code in dict.fromkeys(normalize_code(c) for c in codes):
        coupon = await get_coupon_by_code(session, code)
        if coupon is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Coupon {code} not found")
        coupons.append(coupon)
    return CombinationCheck(
        report=coupon_rules.check_coupon_conflicts(coupons),
        best=coupon_rules.optimize_coupon_combination(coupons, order_value),
    )


async def get_user_savings(session: AsyncSession, *, user_id: UUID) -> coupon_rules.UserSavings:
    result = await session.execute(select(CouponUsage).where(CouponUsage.user_id == user_id))
    return coupon_rules.calculate_user_savings(list(result.scalars().all()))


async def _load_usage_for_update(session: AsyncSession, usage_id: UUID) -> CouponUsage:
    result = await session.execute(
        select(CouponUsage)
        .where(CouponUsage.id == usage_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    usage = result.scalar_one_or_none()
    if usage is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon usage not found")
    return usage


async def _decrement_usage_count(session: AsyncSession, coupon_id: UUID, now: datetime) -> None:
    await session.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id, Coupon.usage_count > 0)
        .values(usage_count=Coupon.usage_count - 1, updated_at=now)
    )


def _append_note(usage: CouponUsage, note: str) -> None:
    details = dict(usage.details or {})
    details["systemNotes"] = note
    usage.details = details


async def refund_coupon_usage(
    session: AsyncSession,
    *,
    usage_id: UUID,
    actor: User | None,
    reason: str | None = None,
) -> CouponUsage:
    usage = await _load_usage_for_update(session, usage_id)
    if usage.status != CouponUsageStatus.applied:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Coupon usage cannot be refunded")
    coupon = await session.get(Coupon, usage.coupon_id)
    if coupon is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    if actor is not None:
        ensure_coupon_access(actor, coupon, action="refund usage of")

    now = _now()
    actor_id = actor.id if actor is not None else None
    usage.status = CouponUsageStatus.refunded
    usage.refunded_at = now
    _append_note(usage, f"{reason or 'Refunded'} - refunded at {now.isoformat()} by {actor_id or 'system'}")
    session.add(usage)
    await _decrement_usage_count(session, usage.coupon_id, now)
    add_audit_log(
        session,
        coupon_id=usage.coupon_id,
        action=CouponAuditAction.refunded,
        performed_by=actor_id,
        reason=reason,
        affected_booking_id=usage.booking_id,
        affected_user_id=str(usage.user_id),
        metadata={
            "originalAmount": str(usage.original_amount),
            "discountAmount": str(usage.discount_amount),
            "finalAmount": str(usage.final_amount),
        },
    )
    await session.commit()
    await session.refresh(usage)
    metrics.record_coupon_usage_refunded()
    logger.info("coupon_usage_refunded", extra={"usage_id": str(usage.id), "booking_id": usage.booking_id})
    return usage


async def cancel_coupon_usage(session: AsyncSession, *, usage_id: UUID, reason: str | None = None) -> CouponUsage:
    """Cancel an applied usage; the booking may then receive a coupon again."""
    usage = await _load_usage_for_update(session, usage_id)
    if usage.status != CouponUsageStatus.applied:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Coupon usage cannot be cancelled")

    now = _now()
    usage.status = CouponUsageStatus.cancelled
    usage.cancelled_at = now
    usage.active_booking_key = None
    _append_note(usage, f"{reason or 'Cancelled'} - cancelled at {now.isoformat()}")
    session.add(usage)
    await _decrement_usage_count(session, usage.coupon_id, now)
    add_audit_log(
        session,
        coupon_id=usage.coupon_id,
        action=CouponAuditAction.updated,
        performed_by=None,
        reason=reason or "Coupon usage cancelled",
        affected_booking_id=usage.booking_id,
        affected_user_id=str(usage.user_id),
        metadata={"usageId": str(usage.id), "status": CouponUsageStatus.cancelled.value},
    )
    await session.commit()
    await session.refresh(usage)
    logger.info("coupon_usage_cancelled", extra={"usage_id": str(usage.id), "booking_id": usage.booking_id})
    return usage


async def settle_usage_for_payment_status(
    session: AsyncSession,
    *,
    booking_id: str,
    booking_type: Any,
    payment_status: str | None,
) -> CouponUsage | None:
    """Release or refund the booking's applied usage once the payment fails or is reversed."""
    if payment_status not in CANCEL_PAYMENT_STATUSES and payment_status not in REFUND_PAYMENT_STATUSES:
        return None
    usage = await get_active_usage_for_booking(
        session, booking_id=str(booking_id), booking_type=_booking_type_value(booking_type)
    )
    if usage is None or usage.status != CouponUsageStatus.applied:
        return None
    if payment_status in CANCEL_PAYMENT_STATUSES:
        return await cancel_coupon_usage(session, usage_id=usage.id, reason=f"Payment {payment_status}")
    return await refund_coupon_usage(session, usage_id=usage.id, actor=None, reason=f"Payment {payment_status}")
