import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, false, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from tourpay.db.base import Base


class MercadoPagoWebhookEvent(Base):
    __tablename__ = "mercadopago_webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mp_event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    action: Mapped[str | None] = mapped_column(String(100), nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    last_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    processing_errors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    related_booking_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    related_asset_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    related_asset_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
