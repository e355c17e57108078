import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from tourpay.core.config import settings
from tourpay.services.coupon_rules import describe_coupon

logger = logging.getLogger(__name__)

TEMPLATE_PATH = Path(__file__).parent.parent / "templates" / "emails"
env = Environment(loader=FileSystemLoader(TEMPLATE_PATH), autoescape=select_autoescape(["html", "xml", "html.j2"]))


def _build_message(to_email: str, subject: str, text_body: str, html_body: str | None = None) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from_email or "no-reply@tourpay.local"
    msg["To"] = to_email
    msg.set_content(text_body)
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    return msg


async def send_email(to_email: str, subject: str, text_body: str, html_body: str | None = None) -> bool:
    if not settings.smtp_enabled:
        return False
    msg = _build_message(to_email, subject, text_body, html_body)
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as smtp:
            if settings.smtp_use_tls:
                smtp.starttls()
            if settings.smtp_username and settings.smtp_password:
                smtp.login(settings.smtp_username, settings.smtp_password)
            smtp.send_message(msg)
        return True
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("Email send failed: %s", exc)
        return False


def render_template(template_name: str, context: dict) -> tuple[str, str]:
    base_text = env.get_template("base.txt.j2")
    base_html = env.get_template("base.html.j2")
    body_text = env.get_template(template_name).render(**context)
    body_html = env.get_template(template_name.replace(".txt.j2", ".html.j2")).render(**context)
    return base_text.render(body=body_text), base_html.render(body=body_html)


def _booking_context(booking) -> dict:
    return {
        "booking_id": str(booking.id),
        "confirmation_code": booking.confirmation_code,
        "customer_name": booking.customer_name,
        "total": booking.total_price,
        "currency": booking.currency,
    }


async def send_booking_confirmation(to_email: str, booking, *, voucher_number: str | None = None) -> bool:
    subject = f"Booking confirmed {booking.confirmation_code or booking.id}"
    context = _booking_context(booking) | {"voucher_number": voucher_number, "notes": booking.partner_notes}
    text_body, html_body = render_template("booking_confirmed.txt.j2", context)
    return await send_email(to_email, subject, text_body, html_body)


async def send_booking_cancelled(to_email: str, booking, *, reason: str | None = None) -> bool:
    subject = f"Booking cancelled {booking.confirmation_code or booking.id}"
    context = _booking_context(booking) | {"reason": reason}
    text_body, html_body = render_template("booking_cancelled.txt.j2", context)
    return await send_email(to_email, subject, text_body, html_body)


async def send_coupon_expiring(to_email: str, coupon) -> bool:
    subject = f"Coupon {coupon.code} is about to expire"
    context = {
        "code": coupon.code,
        "name": coupon.name,
        "valid_until": coupon.valid_until.strftime("%Y-%m-%d %H:%M"),
        "usage_count": coupon.usage_count,
        "summary": describe_coupon(coupon),
    }
    text_body, html_body = render_template("coupon_expiring.txt.j2", context)
    return await send_email(to_email, subject, text_body, html_body)

