from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from tourpay.models.booking import BookingType
from tourpay.models.coupon import CouponAuditAction, CouponType, CouponUsageStatus, DiscountType
from tourpay.services import coupon_rules


class ApplicableAsset(BaseModel):
    """One allow-listed asset; persisted with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    asset_type: str = Field(min_length=1, max_length=30)
    asset_id: str = Field(min_length=1, max_length=64)
    is_active: bool = True


class GlobalApplication(BaseModel):
    is_global: bool = False
    asset_types: list[str] = Field(default_factory=list)


class CouponCreate(BaseModel):
    code: str | None = Field(default=None, min_length=3, max_length=40)
    code_prefix: str | None = Field(default=None, min_length=1, max_length=10)
    name: str = Field(min_length=1, max_length=120)
    description: str | None = None
    discount_type: DiscountType
    discount_value: Decimal = Field(gt=0)
    max_discount_amount: Decimal | None = Field(default=None, gt=0)
    minimum_order_value: Decimal | None = Field(default=None, ge=0)
    maximum_order_value: Decimal | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    user_usage_limit: int | None = Field(default=None, ge=1)
    valid_from: datetime
    valid_until: datetime
    type: CouponType = CouponType.public
    applicable_assets: list[ApplicableAsset] = Field(default_factory=list)
    global_application: GlobalApplication = Field(default_factory=GlobalApplication)
    allowed_users: list[UUID] = Field(default_factory=list)
    partner_id: UUID | None = None
    organization_id: UUID | None = None
    is_active: bool = True
    is_publicly_visible: bool = False
    stackable: bool = False
    auto_apply: bool = False
    notify_on_expiration: bool = False


class CouponUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = Field(default=None, gt=0)
    max_discount_amount: Decimal | None = Field(default=None, gt=0)
    minimum_order_value: Decimal | None = Field(default=None, ge=0)
    maximum_order_value: Decimal | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    user_usage_limit: int | None = Field(default=None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    type: CouponType | None = None
    is_publicly_visible: bool | None = None
    stackable: bool | None = None
    auto_apply: bool | None = None
    notify_on_expiration: bool | None = None
    reason: str | None = Field(default=None, max_length=255)


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    description: str | None = None
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_amount: Decimal | None = None
    minimum_order_value: Decimal | None = None
    maximum_order_value: Decimal | None = None
    usage_limit: int | None = None
    usage_count: int
    user_usage_limit: int | None = None
    valid_from: datetime
    valid_until: datetime
    type: CouponType
    applicable_assets: list[ApplicableAsset] = Field(default_factory=list)
    is_global: bool
    global_asset_types: list[str] = Field(default_factory=list)
    allowed_users: list[str] = Field(default_factory=list)
    partner_id: UUID | None = None
    organization_id: UUID | None = None
    is_active: bool
    is_publicly_visible: bool
    stackable: bool
    auto_apply: bool
    notify_on_expiration: bool
    deleted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> str:
        return coupon_rules.coupon_status(self)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status_message(self) -> str:
        return coupon_rules.STATUS_MESSAGES[self.status]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def usage_rate(self) -> Decimal:
        return coupon_rules.usage_rate(self.usage_count, self.usage_limit)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def summary(self) -> str:
        return coupon_rules.describe_coupon(self)


class CouponDuplicateRequest(BaseModel):
    new_code: str | None = Field(default=None, min_length=3, max_length=40)


class CouponUsersRequest(BaseModel):
    user_ids: list[UUID] = Field(min_length=1)


class CouponAssetsUpdate(BaseModel):
    applicable_assets: list[ApplicableAsset] = Field(default_factory=list)
    global_application: GlobalApplication | None = None


class CouponBulkRequest(BaseModel):
    coupon_ids: list[UUID] = Field(min_length=1, max_length=200)
    action: Literal["activate", "deactivate", "delete"]


class CouponBulkItemResult(BaseModel):
    coupon_id: UUID
    success: bool
    error: str | None = None


class CouponApplyRequest(BaseModel):
    code: str = Field(min_length=1, max_length=40)
    booking_id: str = Field(min_length=1, max_length=64)
    booking_type: BookingType
    original_amount: Decimal = Field(ge=0)
    asset_type: str | None = Field(default=None, max_length=30)
    asset_id: str | None = Field(default=None, max_length=64)


class CouponUsageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    coupon_id: UUID
    user_id: UUID
    booking_id: str
    booking_type: str
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    status: CouponUsageStatus
    applied_at: datetime
    refunded_at: datetime | None = None
    cancelled_at: datetime | None = None


class CouponRefundRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=40)
    order_value: Decimal | None = Field(default=None, ge=0)
    asset_type: str | None = Field(default=None, max_length=30)
    asset_id: str | None = Field(default=None, max_length=64)


class DiscountPreview(BaseModel):
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    discount_percentage: Decimal
    max_discount_reached: bool = False


class CouponValidationResponse(BaseModel):
    is_valid: bool
    reasons: list[str] = Field(default_factory=list)
    coupon_id: UUID | None = None
    code: str | None = None
    discount: DiscountPreview | None = None


class CouponSuggestionRequest(BaseModel):
    order_value: Decimal = Field(ge=0)
    asset_type: str | None = Field(default=None, max_length=30)
    asset_id: str | None = Field(default=None, max_length=64)


class RankedCouponRead(BaseModel):
    coupon_id: UUID
    code: str
    summary: str
    discount: DiscountPreview


class CouponCombinationRead(BaseModel):
    codes: list[str] = Field(default_factory=list)
    total_discount: Decimal
    final_amount: Decimal


class CouponSuggestionResponse(BaseModel):
    ranked: list[RankedCouponRead] = Field(default_factory=list)
    best_combination: CouponCombinationRead


class CouponCombinationRequest(BaseModel):
    codes: list[str] = Field(min_length=1, max_length=10)
    order_value: Decimal = Field(ge=0)


class CouponCombinationCheck(BaseModel):
    has_conflicts: bool
    conflicts: list[str] = Field(default_factory=list)
    best_combination: CouponCombinationRead


class UserSavingsRead(BaseModel):
    total_savings: Decimal
    usage_count: int
    average_savings: Decimal
    last_used: datetime | None = None


class CouponAuditData(BaseModel):
    """Shape of ``CouponAuditLog.action_data``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    reason: str | None = None
    affected_booking_id: str | None = None
    affected_user_id: str | None = None
    metadata: dict[str, Any] | None = None


class CouponAuditLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    coupon_id: UUID
    action_type: CouponAuditAction
    performed_by: UUID | None = None
    performed_at: datetime
    action_data: dict[str, Any] = Field(default_factory=dict)
