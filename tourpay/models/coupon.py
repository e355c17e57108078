import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from tourpay.db.base import Base


class DiscountType(str, enum.Enum):
    percentage = "percentage"
    fixed_amount = "fixed_amount"


class CouponType(str, enum.Enum):
    public = "public"
    private = "private"
    first_purchase = "first_purchase"
    returning_customer = "returning_customer"


class CouponUsageStatus(str, enum.Enum):
    applied = "applied"
    refunded = "refunded"
    cancelled = "cancelled"


class CouponAuditAction(str, enum.Enum):
    created = "created"
    updated = "updated"
    activated = "activated"
    deactivated = "deactivated"
    deleted = "deleted"
    applied = "applied"
    refunded = "refunded"
    expired = "expired"
    usage_limit_reached = "usage_limit_reached"


class Coupon(Base):
    __tablename__ = "coupons"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # Unique among non-deleted coupons; a soft-deleted code may be reused.
    code: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    discount_type: Mapped[DiscountType] = mapped_column(Enum(DiscountType, native_enum=False), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    max_discount_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    minimum_order_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    maximum_order_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    user_usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    type: Mapped[CouponType] = mapped_column(
        Enum(CouponType, native_enum=False), nullable=False, default=CouponType.public
    )
    # [{"assetType": "activities", "assetId": "...", "isActive": true}]
    applicable_assets: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_global: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    global_asset_types: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    allowed_users: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    partner_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_publicly_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    stackable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_apply: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notify_on_expiration: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    updated_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    deleted_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)


class CouponUsage(Base):
    __tablename__ = "coupon_usages"
    __table_args__ = (UniqueConstraint("active_booking_key", name="uq_coupon_usages_active_booking"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coupon_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("coupons.id"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    booking_type: Mapped[str] = mapped_column(String(20), nullable=False)

    original_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    final_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    status: Mapped[CouponUsageStatus] = mapped_column(
        Enum(CouponUsageStatus, native_enum=False), nullable=False, default=CouponUsageStatus.applied
    )
    # "{booking_type}:{booking_id}" while not cancelled, NULL afterwards.
    active_booking_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CouponAuditLog(Base):
    __tablename__ = "coupon_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coupon_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("coupons.id"), nullable=False, index=True)
    action_type: Mapped[CouponAuditAction] = mapped_column(Enum(CouponAuditAction, native_enum=False), nullable=False)
    performed_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    action_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)


def booking_key(booking_type: str, booking_id: str) -> str:
    return f"{booking_type}:{booking_id}"
