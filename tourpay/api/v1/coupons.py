from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.core.dependencies import get_current_user, require_coupon_manager
from tourpay.db.session import get_session
from tourpay.models.user import User
from tourpay.schemas.coupon import (
    CouponApplyRequest,
    CouponAssetsUpdate,
    CouponAuditLogRead,
    CouponBulkItemResult,
    CouponBulkRequest,
    CouponCombinationCheck,
    CouponCombinationRead,
    CouponCombinationRequest,
    CouponCreate,
    CouponDuplicateRequest,
    CouponRead,
    CouponRefundRequest,
    CouponSuggestionRequest,
    CouponSuggestionResponse,
    CouponUpdate,
    CouponUsageRead,
    CouponUsersRequest,
    CouponValidateRequest,
    CouponValidationResponse,
    DiscountPreview,
    RankedCouponRead,
    UserSavingsRead,
)
from tourpay.services import coupon_admin
from tourpay.services import coupons as coupons_service
from tourpay.services.coupon_rules import CouponCombination, DiscountCalculation, describe_coupon

router = APIRouter(prefix="/coupons", tags=["coupons"])


def _preview(calculation: DiscountCalculation) -> DiscountPreview:
    return DiscountPreview(
        original_amount=calculation.original_amount,
        discount_amount=calculation.discount_amount,
        final_amount=calculation.final_amount,
        discount_percentage=calculation.discount_percentage,
        max_discount_reached=calculation.max_discount_reached,
    )


def _combination(combination: CouponCombination) -> CouponCombinationRead:
    return CouponCombinationRead(
        codes=[coupon.code for coupon in combination.coupons],
        total_discount=combination.total_discount,
        final_amount=combination.final_amount,
    )


@router.post("", response_model=CouponRead, status_code=status.HTTP_201_CREATED)
async def create_coupon(
    payload: CouponCreate,
    session: AsyncSession = Depends(get_session),
    actor: User = Depends(require_coupon_manager),
) -> CouponRead:
    coupon = await coupon_admin.create_coupon(session, actor=actor, payload=payload)
    return CouponRead.model_validate(coupon)


@router.post("/validate", response_model=CouponValidationResponse)
async def validate_coupon(
    payload: CouponValidateRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> CouponValidationResponse:
    result = await coupons_service.evaluate_coupon(
        session,
        code=payload.code,
        user_id=current_user.id,
        order_value=payload.order_value,
        asset_type=payload.asset_type,
        asset_id=payload.asset_id,
    )
    discount = _preview(result.discount) if result.discount is not None else None
    return CouponValidationResponse(
        is_valid=result.is_valid,
        reasons=result.reasons,
        coupon_id=result.coupon.id if result.coupon else None,
        code=result.coupon.code if result.coupon else None,
        discount=discount,
    )


@router.post("/apply", response_model=CouponUsageRead, status_code=status.HTTP_201_CREATED)
async def apply_coupon(
    payload: CouponApplyRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> CouponUsageRead:
    usage = await coupons_service.apply_coupon(
        session,
        code=payload.code,
        user_id=current_user.id,
        booking_id=payload.booking_id,
        booking_type=payload.booking_type,
        original_amount=payload.original_amount,
        asset_type=payload.asset_type,
        asset_id=payload.asset_id,
    )
    return CouponUsageRead.model_validate(usage)


@router.post("/suggestions", response_model=CouponSuggestionResponse)
async def suggest_coupons(
    payload: CouponSuggestionRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> CouponSuggestionResponse:
    suggestions = await coupons_service.suggest_coupons(
        session,
        user_id=current_user.id,
        order_value=payload.order_value,
        asset_type=payload.asset_type,
        asset_id=payload.asset_id,
    )
    ranked = [
        RankedCouponRead(
            coupon_id=item.coupon.id,
            code=item.coupon.code,
            summary=describe_coupon(item.coupon),
            discount=_preview(item.calculation),
        )
        for item in suggestions.ranked
    ]
    return CouponSuggestionResponse(ranked=ranked, best_combination=_combination(suggestions.best))


@router.post("/combination", response_model=CouponCombinationCheck)
async def check_coupon_combination(
    payload: CouponCombinationRequest,
    session: AsyncSession = Depends(get_session),
    _: User = Depends(get_current_user),
) -> CouponCombinationCheck:
    check = await coupons_service.check_coupon_combination(
        session, codes=payload.codes, order_value=payload.order_value
    )
    return CouponCombinationCheck(
        has_conflicts=check.report.has_conflicts,
        conflicts=check.report.conflicts,
        best_combination=_combination(check.best),
    )


@router.get("/savings", response_model=UserSavingsRead)
async def my_savings(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> UserSavingsRead:
    savings = await coupons_service.get_user_savings(session, user_id=current_user.id)
    return UserSavingsRead(
        total_savings=savings.total_savings,
        usage_count=savings.usage_count,
        average_savings=savings.average_savings,
        last_used=savings.last_used,
    )


@router.post("/bulk", response_model=list[CouponBulkItemResult])
async def bulk_update_coupons(
    payload: CouponBulkRequest,
    session: AsyncSession = Depends(get_session),
    actor: User = Depends(require_coupon_manager),
) -> list[CouponBulkItemResult]:
    return await coupon_admin.bulk_update_coupons(
        session, actor=actor, coupon_ids=payload.coupon_ids, action=payload.action
    )


@router.post("/usages/{usage_id}/refund", response_model=CouponUsageRead)
async def refund_coupon_usage(
    usage_id: UUID,
    payload: CouponRefundRequest,
    session: AsyncSession = Depends(get_session),
    actor: User = Depends(require_coupon_manager),
) -> CouponUsageRead:
    usage = await coupons_service.refund_coupon_usage(session, usage_id=usage_id, actor=actor, reason=payload.reason)
    return CouponUsageRead.model_validate(usage)


@router.patch("/{coupon_id}", response_model=CouponRead)
async def update_coupon(
    coupon_id: UUID,
    payload: CouponUpdate,
    session: AsyncSession = Depends(get_session),
    actor: User = Depends(require_coupon_manager),
) -> CouponRead:
    coupon = await coupon_admin.update_coupon(session, actor=actor, coupon_id=coupon_id, payload=payload)
    return CouponRead.model_validate(coupon)


@router.post("/{coupon_id}/toggle", response_model=CouponRead)
async def toggle_coupon(
    coupon_id: UUID,
    session: AsyncSession = Depends(get_session),
    actor: User = Depends(require_coupon_manager),
) -> CouponRead:
    coupon = await coupon_admin.toggle_coupon_status(session, actor=actor, coupon_id=coupon_id)
    return CouponRead.model_validate(coupon)


@router.delete("/{coupon_id}", response_model=CouponRead)
async def delete_coupon(
    coupon_id: UUID,
    session: AsyncSession = Depends(get_session),
    actor: User = Depends(require_coupon_manager),
) -> CouponRead:
    coupon = await coupon_admin.delete_coupon(session, actor=actor, coupon_id=coupon_id)
    return CouponRead.model_validate(coupon)


@router.post("/{coupon_id}/duplicate", response_model=CouponRead, status_code=status.HTTP_201_CREATED)
async def duplicate_coupon(
    coupon_id: UUID,
    payload: CouponDuplicateRequest,
    session: AsyncSession = Depends(get_session),
    actor: User = Depends(require_coupon_manager),
) -> CouponRead:
    coupon = await coupon_admin.duplicate_coupon(session, actor=actor, coupon_id=coupon_id, new_code=payload.new_code)
    return CouponRead.model_validate(coupon)


@router.post("/{coupon_id}/users", response_model=CouponRead)
async def assign_coupon_users(
    coupon_id: UUID,
    payload: CouponUsersRequest,
    session: AsyncSession = Depends(get_session),
    actor: User = Depends(require_coupon_manager),
) -> CouponRead:
    coupon = await coupon_admin.assign_coupon_users(session, actor=actor, coupon_id=coupon_id, user_ids=payload.user_ids)
    return CouponRead.model_validate(coupon)


@router.delete("/{coupon_id}/users", response_model=CouponRead)
async def remove_coupon_users(
    coupon_id: UUID,
    payload: CouponUsersRequest,
    session: AsyncSession = Depends(get_session),
    actor: User = Depends(require_coupon_manager),
) -> CouponRead:
    coupon = await coupon_admin.remove_coupon_users(session, actor=actor, coupon_id=coupon_id, user_ids=payload.user_ids)
    return CouponRead.model_validate(coupon)


@router.put("/{coupon_id}/assets", response_model=CouponRead)
async def update_coupon_assets(
    coupon_id: UUID,
    payload: CouponAssetsUpdate,
    session: AsyncSession = Depends(get_session),
    actor: User = Depends(require_coupon_manager),
) -> CouponRead:
    coupon = await coupon_admin.update_coupon_assets(session, actor=actor, coupon_id=coupon_id, payload=payload)
    return CouponRead.model_validate(coupon)


@router.get("/{coupon_id}/audit", response_model=list[CouponAuditLogRead])
async def list_audit_logs(
    coupon_id: UUID,
    limit: int = Query(default=100, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    actor: User = Depends(require_coupon_manager),
) -> list[CouponAuditLogRead]:
    logs = await coupon_admin.list_coupon_audit_logs(session, actor=actor, coupon_id=coupon_id, limit=limit)
    return [CouponAuditLogRead.model_validate(log) for log in logs]
