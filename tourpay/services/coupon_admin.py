from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Sequence
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.core.config import settings
from tourpay.models.coupon import Coupon, CouponAuditAction, CouponAuditLog, CouponUsage, CouponUsageStatus, DiscountType
from tourpay.models.user import AssetPermission, User, UserRole
from tourpay.schemas.coupon import (
    ApplicableAsset,
    CouponAssetsUpdate,
    CouponBulkItemResult,
    CouponCreate,
    CouponUpdate,
)
from tourpay.services import email as email_service
from tourpay.services.coupon_rules import as_utc, generate_coupon_code, is_coupon_expiring_soon, normalize_code
from tourpay.services.coupons import add_audit_log, ensure_coupon_access

logger = logging.getLogger(__name__)

COUPON_MANAGER_ROLES = {UserRole.master, UserRole.partner, UserRole.employee}
_EDIT_PERMISSIONS = {"edit", "manage"}
_CODE_ATTEMPTS = 5

_SNAPSHOT_FIELDS = (
    "code",
    "name",
    "description",
    "discount_type",
    "discount_value",
    "max_discount_amount",
    "minimum_order_value",
    "maximum_order_value",
    "usage_limit",
    "user_usage_limit",
    "valid_from",
    "valid_until",
    "type",
    "is_active",
    "is_publicly_visible",
    "stackable",
    "auto_apply",
    "notify_on_expiration",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _snapshot(coupon: Coupon, fields: Iterable[str] = _SNAPSHOT_FIELDS) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for name in fields:
        value = getattr(coupon, name)
        if isinstance(value, datetime):
            value = as_utc(value).isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        elif hasattr(value, "value"):
            value = value.value
        data[name] = value
    return data


def _validate_terms(
    *,
    discount_type: DiscountType,
    discount_value: Decimal,
    valid_from: datetime,
    valid_until: datetime,
    minimum_order_value: Decimal | None,
    maximum_order_value: Decimal | None,
) -> None:
    if discount_type == DiscountType.percentage and not (Decimal("0") < discount_value <= Decimal("100")):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Percentage discount must be between 0 and 100")
    if discount_value <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Discount value must be greater than zero")
    if as_utc(valid_from) >= as_utc(valid_until):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Start date must be before end date")
    if (
        minimum_order_value is not None
        and maximum_order_value is not None
        and minimum_order_value > maximum_order_value
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Minimum order value cannot exceed maximum order value",
        )


async def _ensure_code_available(session: AsyncSession, code: str, *, exclude_id: UUID | None = None) -> None:
    stmt = select(Coupon.id).where(Coupon.code == code, Coupon.deleted_at.is_(None))
    if exclude_id is not None:
        stmt = stmt.where(Coupon.id != exclude_id)
    if (await session.execute(stmt)).first() is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Coupon code already exists")


async def _resolve_code(session: AsyncSession, requested: str | None, *, prefix: str | None = None) -> str:
    if requested:
        code = normalize_code(requested)
        await _ensure_code_available(session, code)
        return code
    for _ in range(_CODE_ATTEMPTS):
        code = generate_coupon_code(prefix)
        stmt = select(Coupon.id).where(Coupon.code == code, Coupon.deleted_at.is_(None))
        if (await session.execute(stmt)).first() is None:
            return code
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Could not generate a unique coupon code")


async def _ensure_employee_asset_permissions(
    session: AsyncSession, actor: User, assets: Sequence[ApplicableAsset]
) -> None:
    result = await session.execute(select(AssetPermission).where(AssetPermission.employee_id == actor.id))
    permissions = [p for p in result.scalars().all() if _EDIT_PERMISSIONS.intersection(p.permissions or [])]
    if not permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Employee is not allowed to manage coupons")
    allowed = {(p.asset_type, str(p.asset_id)) for p in permissions}
    if any((asset.asset_type, str(asset.asset_id)) not in allowed for asset in assets):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Employee lacks permission for every referenced asset",
        )


async def get_coupon(session: AsyncSession, coupon_id: UUID, *, include_deleted: bool = False) -> Coupon:
    coupon = await session.get(Coupon, coupon_id)
    if coupon is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    if coupon.deleted_at is not None and not include_deleted:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Coupon has been removed")
    return coupon


def _assets_json(assets: Sequence[ApplicableAsset]) -> list[dict[str, Any]]:
    return [asset.model_dump(by_alias=True) for asset in assets]


async def create_coupon(session: AsyncSession, *, actor: User, payload: CouponCreate) -> Coupon:
    if actor.role not in COUPON_MANAGER_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to create coupons")

    code = await _resolve_code(session, payload.code, prefix=payload.code_prefix)
    _validate_terms(
        discount_type=payload.discount_type,
        discount_value=payload.discount_value,
        valid_from=payload.valid_from,
        valid_until=payload.valid_until,
        minimum_order_value=payload.minimum_order_value,
        maximum_order_value=payload.maximum_order_value,
    )

    if actor.role == UserRole.partner:
        partner_id = actor.id
    elif actor.role == UserRole.employee:
        partner_id = actor.partner_id
        await _ensure_employee_asset_permissions(session, actor, payload.applicable_assets)
    else:
        partner_id = payload.partner_id

    coupon = Coupon(
        code=code,
        name=payload.name,
        description=payload.description,
        discount_type=payload.discount_type,
        discount_value=payload.discount_value,
        max_discount_amount=payload.max_discount_amount,
        minimum_order_value=payload.minimum_order_value,
        maximum_order_value=payload.maximum_order_value,
        usage_limit=payload.usage_limit,
        usage_count=0,
        user_usage_limit=payload.user_usage_limit,
        valid_from=payload.valid_from,
        valid_until=payload.valid_until,
        type=payload.type,
        applicable_assets=_assets_json(payload.applicable_assets),
        is_global=payload.global_application.is_global,
        global_asset_types=list(payload.global_application.asset_types),
        allowed_users=[str(uid) for uid in payload.allowed_users],
        partner_id=partner_id,
        organization_id=payload.organization_id,
        is_active=payload.is_active,
        is_publicly_visible=payload.is_publicly_visible,
        stackable=payload.stackable,
        auto_apply=payload.auto_apply,
        notify_on_expiration=payload.notify_on_expiration,
        created_by=actor.id,
        updated_by=actor.id,
    )
    session.add(coupon)
    await session.flush()
    add_audit_log(
        session,
        coupon_id=coupon.id,
        action=CouponAuditAction.created,
        performed_by=actor.id,
        new_values=_snapshot(coupon),
        reason="Coupon created from the admin panel",
    )
    await session.commit()
    await session.refresh(coupon)
    logger.info("coupon_created", extra={"coupon_code": code, "actor_id": str(actor.id)})
    return coupon


async def update_coupon(session: AsyncSession, *, actor: User, coupon_id: UUID, payload: CouponUpdate) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    ensure_coupon_access(actor, coupon, action="edit")

    changes = payload.model_dump(exclude_unset=True, exclude={"reason"})
    _validate_terms(
        discount_type=changes.get("discount_type", coupon.discount_type),
        discount_value=changes.get("discount_value", coupon.discount_value),
        valid_from=changes.get("valid_from", coupon.valid_from),
        valid_until=changes.get("valid_until", coupon.valid_until),
        minimum_order_value=changes.get("minimum_order_value", coupon.minimum_order_value),
        maximum_order_value=changes.get("maximum_order_value", coupon.maximum_order_value),
    )

    old_values = _snapshot(coupon, changes.keys())
    for field, value in changes.items():
        setattr(coupon, field, value)
    coupon.updated_by = actor.id
    session.add(coupon)
    add_audit_log(
        session,
        coupon_id=coupon.id,
        action=CouponAuditAction.updated,
        performed_by=actor.id,
        old_values=old_values,
        new_values=_snapshot(coupon, changes.keys()),
        reason=payload.reason,
    )
    await session.commit()
    await session.refresh(coupon)
    return coupon


async def toggle_coupon_status(session: AsyncSession, *, actor: User, coupon_id: UUID) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    ensure_coupon_access(actor, coupon, action="change")
    coupon.is_active = not coupon.is_active
    coupon.updated_by = actor.id
    session.add(coupon)
    add_audit_log(
        session,
        coupon_id=coupon.id,
        action=CouponAuditAction.activated if coupon.is_active else CouponAuditAction.deactivated,
        performed_by=actor.id,
        old_values={"is_active": not coupon.is_active},
        new_values={"is_active": coupon.is_active},
    )
    await session.commit()
    await session.refresh(coupon)
    return coupon


async def delete_coupon(session: AsyncSession, *, actor: User, coupon_id: UUID, reason: str | None = None) -> Coupon:
    coupon = await get_coupon(session, coupon_id, include_deleted=True)
    if coupon.deleted_at is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Coupon was already removed")
    ensure_coupon_access(actor, coupon, action="delete")

    active_usages = await session.execute(
        select(func.count())
        .select_from(CouponUsage)
        .where(CouponUsage.coupon_id == coupon.id, CouponUsage.status == CouponUsageStatus.applied)
    )
    if int(active_usages.scalar_one() or 0) > 0:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Cannot delete a coupon with active usages")

    now = _now()
    coupon.deleted_at = now
    coupon.deleted_by = actor.id
    coupon.is_active = False
    coupon.updated_by = actor.id
    session.add(coupon)
    add_audit_log(
        session,
        coupon_id=coupon.id,
        action=CouponAuditAction.deleted,
        performed_by=actor.id,
        reason=reason or "Coupon removed",
    )
    await session.commit()
    await session.refresh(coupon)
    return coupon


async def duplicate_coupon(
    session: AsyncSession, *, actor: User, coupon_id: UUID, new_code: str | None = None
) -> Coupon:
    original = await get_coupon(session, coupon_id, include_deleted=True)
    ensure_coupon_access(actor, original, action="duplicate")
    code = await _resolve_code(session, new_code)

    copy = Coupon(
        code=code,
        name=f"{original.name} (Copy)",
        description=original.description,
        discount_type=original.discount_type,
        discount_value=original.discount_value,
        max_discount_amount=original.max_discount_amount,
        minimum_order_value=original.minimum_order_value,
        maximum_order_value=original.maximum_order_value,
        usage_limit=original.usage_limit,
        usage_count=0,
        user_usage_limit=original.user_usage_limit,
        valid_from=original.valid_from,
        valid_until=original.valid_until,
        type=original.type,
        applicable_assets=list(original.applicable_assets or []),
        is_global=original.is_global,
        global_asset_types=list(original.global_asset_types or []),
        allowed_users=list(original.allowed_users or []),
        partner_id=original.partner_id,
        organization_id=original.organization_id,
        is_active=False,
        is_publicly_visible=original.is_publicly_visible,
        stackable=original.stackable,
        auto_apply=original.auto_apply,
        notify_on_expiration=original.notify_on_expiration,
        created_by=actor.id,
        updated_by=actor.id,
    )
    session.add(copy)
    await session.flush()
    add_audit_log(
        session,
        coupon_id=copy.id,
        action=CouponAuditAction.created,
        performed_by=actor.id,
        reason="Coupon duplicated",
        metadata={"originalCouponId": str(original.id), "newCode": code},
    )
    await session.commit()
    await session.refresh(copy)
    return copy


async def _set_allowed_users(
    session: AsyncSession, coupon: Coupon, actor: User, users: list[str], *, reason: str
) -> Coupon:
    previous = list(coupon.allowed_users or [])
    coupon.allowed_users = users
    coupon.updated_by = actor.id
    session.add(coupon)
    add_audit_log(
        session,
        coupon_id=coupon.id,
        action=CouponAuditAction.updated,
        performed_by=actor.id,
        old_values={"allowedUsers": previous},
        new_values={"allowedUsers": users},
        reason=reason,
    )
    await session.commit()
    await session.refresh(coupon)
    return coupon


async def assign_coupon_users(session: AsyncSession, *, actor: User, coupon_id: UUID, user_ids: Sequence[UUID]) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    ensure_coupon_access(actor, coupon)
    users = list(coupon.allowed_users or [])
    for uid in user_ids:
        if str(uid) not in users:
            users.append(str(uid))
    return await _set_allowed_users(session, coupon, actor, users, reason="Users assigned to coupon")


async def remove_coupon_users(session: AsyncSession, *, actor: User, coupon_id: UUID, user_ids: Sequence[UUID]) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    ensure_coupon_access(actor, coupon)
    removed = {str(uid) for uid in user_ids}
    users = [uid for uid in (coupon.allowed_users or []) if uid not in removed]
    return await _set_allowed_users(session, coupon, actor, users, reason="Users removed from coupon")


async def update_coupon_assets(
    session: AsyncSession, *, actor: User, coupon_id: UUID, payload: CouponAssetsUpdate
) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    ensure_coupon_access(actor, coupon)
    if actor.role == UserRole.employee:
        await _ensure_employee_asset_permissions(session, actor, payload.applicable_assets)

    old_values = {
        "applicableAssets": list(coupon.applicable_assets or []),
        "globalApplication": {"isGlobal": coupon.is_global, "assetTypes": list(coupon.global_asset_types or [])},
    }
    coupon.applicable_assets = _assets_json(payload.applicable_assets)
    if payload.global_application is not None:
        coupon.is_global = payload.global_application.is_global
        coupon.global_asset_types = list(payload.global_application.asset_types)
    coupon.updated_by = actor.id
    session.add(coupon)
    add_audit_log(
        session,
        coupon_id=coupon.id,
        action=CouponAuditAction.updated,
        performed_by=actor.id,
        old_values=old_values,
        new_values={
            "applicableAssets": coupon.applicable_assets,
            "globalApplication": {"isGlobal": coupon.is_global, "assetTypes": coupon.global_asset_types},
        },
        reason="Coupon assets updated",
    )
    await session.commit()
    await session.refresh(coupon)
    return coupon


async def bulk_update_coupons(
    session: AsyncSession, *, actor: User, coupon_ids: Sequence[UUID], action: str
) -> list[CouponBulkItemResult]:
    results: list[CouponBulkItemResult] = []
    for coupon_id in coupon_ids:
        try:
            if action == "delete":
                await delete_coupon(session, actor=actor, coupon_id=coupon_id, reason="Bulk delete")
            else:
                coupon = await get_coupon(session, coupon_id)
                if coupon.is_active != (action == "activate"):
                    await toggle_coupon_status(session, actor=actor, coupon_id=coupon_id)
        except HTTPException as exc:
            await session.rollback()
            results.append(CouponBulkItemResult(coupon_id=coupon_id, success=False, error=str(exc.detail)))
            continue
        results.append(CouponBulkItemResult(coupon_id=coupon_id, success=True))
    return results


async def list_coupon_audit_logs(
    session: AsyncSession, *, actor: User, coupon_id: UUID, limit: int = 100
) -> list[CouponAuditLog]:
    coupon = await get_coupon(session, coupon_id, include_deleted=True)
    ensure_coupon_access(actor, coupon, action="view")
    result = await session.execute(
        select(CouponAuditLog)
        .where(CouponAuditLog.coupon_id == coupon_id)
        .order_by(CouponAuditLog.performed_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def deactivate_expired_coupons(session: AsyncSession, *, now: datetime | None = None) -> int:
    now = now or _now()
    result = await session.execute(
        select(Coupon).where(Coupon.is_active.is_(True), Coupon.deleted_at.is_(None), Coupon.valid_until < now)
    )
    expired = list(result.scalars().all())
    for coupon in expired:
        coupon.is_active = False
        session.add(coupon)
        add_audit_log(
            session,
            coupon_id=coupon.id,
            action=CouponAuditAction.expired,
            performed_by=None,
            reason="Coupon expired automatically",
            metadata={"validUntil": as_utc(coupon.valid_until).isoformat()},
        )
    if expired:
        await session.commit()
    logger.info("coupons_expired", extra={"count": len(expired)})
    return len(expired)


async def notify_expiring_coupons(
    session: AsyncSession, *, days: int | None = None, now: datetime | None = None
) -> int:
    now = now or _now()
    days = days if days is not None else settings.coupon_expiration_notice_days
    result = await session.execute(
        select(Coupon).where(
            Coupon.notify_on_expiration.is_(True),
            Coupon.notification_sent_at.is_(None),
            Coupon.is_active.is_(True),
            Coupon.deleted_at.is_(None),
            Coupon.valid_until > now,
            Coupon.valid_until <= now + timedelta(days=days),
        )
    )
    notified = 0
    for coupon in result.scalars().all():
        if not is_coupon_expiring_soon(coupon.valid_until, days, now=now):
            continue
        owner = await session.get(User, coupon.partner_id) if coupon.partner_id else None
        if owner is None or not owner.email:
            continue
        # Unsent notices stay unstamped so the next run retries them.
        if not await email_service.send_coupon_expiring(owner.email, coupon):
            logger.warning("coupon_expiry_notice_not_sent", extra={"coupon_code": coupon.code})
            continue
        coupon.notification_sent_at = now
        session.add(coupon)
        notified += 1
    if notified:
        await session.commit()
    return notified
