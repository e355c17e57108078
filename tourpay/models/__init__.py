from tourpay.models.booking import (  # noqa: F401
    ActivityBooking,
    BookingStatus,
    BookingType,
    EventBooking,
    PackageBooking,
    RestaurantReservation,
    VehicleBooking,
)
from tourpay.models.coupon import Coupon, CouponAuditLog, CouponUsage  # noqa: F401
from tourpay.models.user import AssetPermission, User, UserRole  # noqa: F401
from tourpay.models.voucher import Voucher  # noqa: F401
from tourpay.models.webhook import MercadoPagoWebhookEvent  # noqa: F401
