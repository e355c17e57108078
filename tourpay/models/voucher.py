import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from tourpay.db.base import Base


class VoucherStatus(str, enum.Enum):
    active = "active"
    used = "used"
    cancelled = "cancelled"
    expired = "expired"


class Voucher(Base):
    __tablename__ = "vouchers"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    voucher_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    booking_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[VoucherStatus] = mapped_column(
        Enum(VoucherStatus, native_enum=False), nullable=False, default=VoucherStatus.active
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
