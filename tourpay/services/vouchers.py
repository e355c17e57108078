from __future__ import annotations

import io
import logging
import re
import secrets
from datetime import datetime, timezone
from typing import Final

from fastapi import HTTPException, status
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.models.booking import BookingPaymentMixin
from tourpay.models.voucher import Voucher, VoucherStatus

logger = logging.getLogger(__name__)

VOUCHER_NUMBER_PATTERN: Final = re.compile(r"^VCH-\d{8}-\d{4}$")
_MAX_NUMBER_ATTEMPTS: Final[int] = 10


def generate_voucher_number(when: datetime | None = None) -> str:
    when = when or datetime.now(timezone.utc)
    return f"VCH-{when:%Y%m%d}-{secrets.randbelow(10000):04d}"


async def get_active_voucher(session: AsyncSession, *, booking_id: str, booking_type: str) -> Voucher | None:
    result = await session.execute(
        select(Voucher).where(
            Voucher.booking_id == str(booking_id),
            Voucher.booking_type == booking_type,
            Voucher.is_active.is_(True),
        )
    )
    return result.scalars().first()


async def _unused_number(session: AsyncSession) -> str:
    for _ in range(_MAX_NUMBER_ATTEMPTS):
        candidate = generate_voucher_number()
        taken = await session.execute(select(Voucher.id).where(Voucher.voucher_number == candidate))
        if taken.first() is None:
            return candidate
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not allocate a voucher number")


async def generate_voucher(
    session: AsyncSession,
    *,
    booking_id: str,
    booking_type: str,
    expires_at: datetime | None = None,
) -> Voucher:
    if await get_active_voucher(session, booking_id=booking_id, booking_type=booking_type):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Voucher already exists for this booking")

    voucher = Voucher(
        voucher_number=await _unused_number(session),
        booking_id=str(booking_id),
        booking_type=booking_type,
        status=VoucherStatus.active,
        is_active=True,
        generated_at=datetime.now(timezone.utc),
        expires_at=expires_at,
    )
    session.add(voucher)
    await session.commit()
    await session.refresh(voucher)
    logger.info("voucher_generated", extra={"booking_id": str(booking_id), "voucher_number": voucher.voucher_number})
    return voucher


def render_voucher_pdf(voucher: Voucher, booking: BookingPaymentMixin) -> bytes:
    styles = getSampleStyleSheet()
    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=16 * mm,
        bottomMargin=16 * mm,
        title=f"Voucher {voucher.voucher_number}",
    )
    rows = [
        ["Voucher", voucher.voucher_number],
        ["Booking", booking.confirmation_code or str(booking.id)],
        ["Guest", booking.customer_name or "-"],
        ["Total", f"{booking.total_price} {booking.currency}"],
    ]
    if voucher.expires_at:
        rows.append(["Valid until", voucher.expires_at.strftime("%Y-%m-%d")])
    table = Table(rows, colWidths=[40 * mm, 120 * mm])
    table.setStyle(
        TableStyle(
            [
                ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
            ]
        )
    )
    doc.build([Paragraph("Booking voucher", styles["Title"]), Spacer(1, 8), table])
    pdf = buf.getvalue()
    buf.close()
    return pdf
