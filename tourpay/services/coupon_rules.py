from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Literal, Sequence

from tourpay.models.coupon import CouponType, CouponUsageStatus, DiscountType

MONEY_QUANT = Decimal("0.01")
_CODE_ALPHABET = string.ascii_uppercase + string.digits

CouponStatus = Literal["active", "inactive", "expired", "used_up", "deleted"]


def quantize_money(value: Decimal | int | str) -> Decimal:
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


@dataclass(frozen=True)
class DiscountCalculation:
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    discount_percentage: Decimal
    max_discount_reached: bool = False


def calculate_discount(
    discount_type: DiscountType | str,
    discount_value: Decimal,
    order_amount: Decimal,
    max_discount_amount: Decimal | None = None,
) -> DiscountCalculation:
    """Discount for one coupon; the final amount never drops below zero."""
    original = quantize_money(order_amount)
    value = Decimal(str(discount_value))
    max_reached = False

    if DiscountType(discount_type) == DiscountType.percentage:
        discount = quantize_money(original * value / Decimal("100"))
        if max_discount_amount is not None and discount > Decimal(str(max_discount_amount)):
            discount = quantize_money(max_discount_amount)
            max_reached = True
    else:
        discount = quantize_money(min(value, original))

    final = max(Decimal("0.00"), original - discount)
    percentage = quantize_money(discount / original * Decimal("100")) if original > 0 else Decimal("0.00")
    return DiscountCalculation(
        original_amount=original,
        discount_amount=discount,
        final_amount=quantize_money(final),
        discount_percentage=percentage,
        max_discount_reached=max_reached,
    )


def generate_coupon_code(prefix: str | None = None, length: int = 8) -> str:
    head = ""
    if prefix:
        head = f"{prefix.strip().upper()}-"
        length = max(4, length - len(prefix.strip()) - 1)
    return head + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def is_within_validity(coupon: Any, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return as_utc(coupon.valid_from) <= now <= as_utc(coupon.valid_until)


def is_coupon_expiring_soon(valid_until: datetime, days_threshold: int = 3, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    valid_until = as_utc(valid_until)
    return now < valid_until <= now + timedelta(days=days_threshold)


def usage_rate(usage_count: int, usage_limit: int | None) -> Decimal:
    if not usage_limit:
        return Decimal("0.00")
    return min(Decimal("100.00"), quantize_money(Decimal(usage_count) / Decimal(usage_limit) * Decimal("100")))


def coupon_status(coupon: Any, now: datetime | None = None) -> CouponStatus:
    now = now or datetime.now(timezone.utc)
    if coupon.deleted_at is not None:
        return "deleted"
    if not coupon.is_active:
        return "inactive"
    if as_utc(coupon.valid_until) < now:
        return "expired"
    if coupon.usage_limit and int(coupon.usage_count or 0) >= int(coupon.usage_limit):
        return "used_up"
    return "active"


STATUS_MESSAGES: dict[str, str] = {
    "deleted": "Coupon has been removed",
    "inactive": "Coupon is inactive",
    "expired": "Coupon has expired",
    "used_up": "Coupon usage limit reached",
    "active": "Coupon is active",
}


def is_asset_applicable(coupon: Any, asset_type: str, asset_id: str) -> bool:
    if coupon.is_global:
        return asset_type in (coupon.global_asset_types or [])
    for asset in coupon.applicable_assets or []:
        if (
            asset.get("assetType") == asset_type
            and str(asset.get("assetId")) == str(asset_id)
            and asset.get("isActive", True)
        ):
            return True
    return False


@dataclass(frozen=True)
class RankedCoupon:
    coupon: Any
    calculation: DiscountCalculation


def _calculate_for(coupon: Any, order_value: Decimal) -> DiscountCalculation:
    return calculate_discount(coupon.discount_type, coupon.discount_value, order_value, coupon.max_discount_amount)


def prioritize_coupons(coupons: Iterable[Any], order_value: Decimal) -> list[RankedCoupon]:
    ranked = [RankedCoupon(coupon=c, calculation=_calculate_for(c, order_value)) for c in coupons]
    ranked.sort(key=lambda item: item.calculation.discount_amount, reverse=True)
    return ranked


def describe_coupon(coupon: Any) -> str:
    if DiscountType(coupon.discount_type) == DiscountType.percentage:
        text = f"{Decimal(str(coupon.discount_value)).normalize():f}% off"
        if coupon.max_discount_amount is not None:
            text += f" (up to R$ {quantize_money(coupon.max_discount_amount)})"
    else:
        text = f"R$ {quantize_money(coupon.discount_value)} off"
    if coupon.minimum_order_value is not None:
        text += f" on orders over R$ {quantize_money(coupon.minimum_order_value)}"
    return text


@dataclass(frozen=True)
class UserSavings:
    total_savings: Decimal
    usage_count: int
    average_savings: Decimal
    last_used: datetime | None = None


def calculate_user_savings(usages: Sequence[Any]) -> UserSavings:
    applied = [u for u in usages if CouponUsageStatus(u.status) == CouponUsageStatus.applied]
    total = sum((Decimal(str(u.discount_amount)) for u in applied), start=Decimal("0.00"))
    count = len(applied)
    average = quantize_money(total / count) if count else Decimal("0.00")
    last_used = max((as_utc(u.applied_at) for u in applied), default=None)
    return UserSavings(total_savings=quantize_money(total), usage_count=count, average_savings=average, last_used=last_used)


@dataclass
class ConflictReport:
    conflicts: list[str] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


_SINGLETON_TYPES = (CouponType.first_purchase, CouponType.returning_customer)


def check_coupon_conflicts(coupons: Sequence[Any]) -> ConflictReport:
    report = ConflictReport()
    non_stackable = [c for c in coupons if not c.stackable]
    if len(non_stackable) > 1:
        report.conflicts.append("Multiple non-stackable coupons selected")
    if non_stackable and len(coupons) > 1:
        report.conflicts.append("Selected coupon cannot be combined with other coupons")
    for coupon_type in _SINGLETON_TYPES:
        if sum(1 for c in coupons if CouponType(c.type) == coupon_type) > 1:
            report.conflicts.append(f'Multiple coupons of type "{coupon_type.value}" are not allowed')
    return report


@dataclass(frozen=True)
class CouponCombination:
    coupons: list[Any]
    total_discount: Decimal
    final_amount: Decimal


def optimize_coupon_combination(coupons: Sequence[Any], order_value: Decimal) -> CouponCombination:
    """Best of: every stackable coupon together, or the single best non-stackable one."""
    best: list[Any] = []
    best_discount = Decimal("0.00")

    stackable = [c for c in coupons if c.stackable]
    if stackable:
        combined = sum((_calculate_for(c, order_value).discount_amount for c in stackable), start=Decimal("0.00"))
        if combined > best_discount:
            best, best_discount = list(stackable), combined

    for coupon in coupons:
        if coupon.stackable:
            continue
        discount = _calculate_for(coupon, order_value).discount_amount
        if discount > best_discount:
            best, best_discount = [coupon], discount

    final = max(Decimal("0.00"), quantize_money(order_value) - best_discount)
    return CouponCombination(coupons=best, total_discount=best_discount, final_amount=quantize_money(final))
