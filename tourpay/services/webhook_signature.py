from __future__ import annotations

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

from tourpay.core.config import Settings, settings

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[,;]")


@dataclass(frozen=True)
class SignatureContext:
    ts: str
    query_params: Mapping[str, str]
    headers: Mapping[str, str]
    data_id: str | None = None


CandidateBuilder = Callable[[SignatureContext], "str | None"]


def parse_signature_header(header: str | None) -> dict[str, str]:
    """Parse ``ts=<ts>, v1=<hex>`` (comma or semicolon delimited) into a dict."""
    parts: dict[str, str] = {}
    for chunk in _SEPARATORS.split(header or ""):
        key, sep, value = chunk.partition("=")
        if not sep:
            continue
        key = key.strip()
        if key:
            parts[key] = value.strip()
    return parts


def _clean(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return _clean(value)


def _event_id(ctx: SignatureContext) -> str | None:
    return (
        _clean(ctx.query_params.get("id"))
        or _clean(ctx.query_params.get("data.id"))
        or _clean(ctx.data_id)
        or _header(ctx.headers, "x-event-id")
    )


def _topic(ctx: SignatureContext) -> str | None:
    return (
        _clean(ctx.query_params.get("type"))
        or _clean(ctx.query_params.get("topic"))
        or _header(ctx.headers, "x-topic")
    )


def topic_candidate(ctx: SignatureContext) -> str | None:
    event_id = _event_id(ctx)
    topic = _topic(ctx)
    if not event_id or not topic:
        return None
    return f"id:{event_id};topic:{topic};ts:{ctx.ts}"


def request_id_candidate(ctx: SignatureContext) -> str | None:
    # Older deliveries signed the request id instead of the topic.
    event_id = _event_id(ctx)
    request_id = _header(ctx.headers, "x-request-id")
    if not event_id or not request_id:
        return None
    return f"id:{event_id};request-id:{request_id};ts:{ctx.ts}"


DEFAULT_CANDIDATE_BUILDERS: tuple[CandidateBuilder, ...] = (topic_candidate, request_id_candidate)


def compute_signature(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def constant_time_equals(left: str, right: str) -> bool:
    if len(left) != len(right):
        return False
    result = 0
    for a, b in zip(left, right):
        result |= ord(a) ^ ord(b)
    return result == 0


class WebhookSignatureVerifier:
    def __init__(
        self,
        secret: str | None,
        *,
        allow_unsigned: bool = False,
        builders: Sequence[CandidateBuilder] = DEFAULT_CANDIDATE_BUILDERS,
    ) -> None:
        self.secret = (secret or "").strip() or None
        self.allow_unsigned = allow_unsigned
        self.builders = tuple(builders)

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "WebhookSignatureVerifier":
        cfg = source or settings
        return cls(cfg.mercadopago_webhook_secret, allow_unsigned=cfg.mercadopago_allow_unsigned_webhooks)

    def candidates(self, ctx: SignatureContext) -> list[str]:
        return [message for message in (builder(ctx) for builder in self.builders) if message]

    def verify(
        self,
        signature_header: str | None,
        *,
        query_params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        data_id: str | None = None,
    ) -> bool:
        if not self.secret:
            if self.allow_unsigned:
                logger.warning("mercadopago_webhook_unsigned_allowed")
                return True
            logger.error("mercadopago_webhook_secret_missing")
            return False

        parts = parse_signature_header(signature_header)
        ts = parts.get("ts")
        received = parts.get("v1")
        if not ts or not received:
            logger.warning("mercadopago_webhook_signature_malformed")
            return False

        ctx = SignatureContext(ts=ts, query_params=query_params or {}, headers=headers or {}, data_id=data_id)
        messages = self.candidates(ctx)
        if not messages:
            logger.warning("mercadopago_webhook_signature_unbuildable")
            return False

        received = received.lower()
        matched = False
        for message in messages:
            if constant_time_equals(compute_signature(self.secret, message), received):
                matched = True
        if not matched:
            logger.warning("mercadopago_webhook_signature_mismatch")
        return matched


def get_webhook_verifier() -> WebhookSignatureVerifier:
    return WebhookSignatureVerifier.from_settings()
