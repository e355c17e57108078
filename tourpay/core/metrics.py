from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_coupon_applied() -> None:
    _inc("coupons_applied")


def record_coupon_rejected() -> None:
    _inc("coupons_rejected")


def record_coupon_usage_refunded() -> None:
    _inc("coupon_usages_refunded")


def record_webhook_received() -> None:
    _inc("webhooks_received")


def record_webhook_duplicate() -> None:
    _inc("webhooks_duplicate")


def record_webhook_failure() -> None:
    _inc("webhooks_failed")


def record_payment_failure() -> None:
    _inc("payment_failures")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
