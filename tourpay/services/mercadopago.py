"""MercadoPago REST client.

Thin authenticated wrapper over the endpoints the payment flows consume. No
retries happen here: webhook redelivery and explicit operator actions are the
retry mechanism.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx
import simplejson

from tourpay.core.config import Settings, settings

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "X-Idempotency-Key"


class MercadoPagoConfigurationError(RuntimeError):
    """Raised when the gateway credential is missing; never retried."""


class MercadoPagoError(Exception):
    """Non-2xx response, network failure or timeout from the gateway."""

    def __init__(self, message: str, *, status_code: int | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.status_code}: {self.message}"


@dataclass(frozen=True)
class MercadoPagoConfig:
    access_token: str | None
    base_url: str = "https://api.mercadopago.com"
    timeout_seconds: float = 15.0

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "MercadoPagoConfig":
        cfg = source or settings
        return cls(
            access_token=(cfg.mercadopago_access_token or "").strip() or None,
            base_url=(cfg.mercadopago_api_base_url or "https://api.mercadopago.com").rstrip("/"),
            timeout_seconds=float(cfg.mercadopago_timeout_seconds or 15.0),
        )


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return str(message)
    if isinstance(body, str) and body.strip():
        return body.strip()[:500]
    return fallback


def _parse_body(resp: httpx.Response) -> Any:
    text = resp.text
    if not text:
        return None
    try:
        return simplejson.loads(text, use_decimal=True)
    except simplejson.JSONDecodeError:
        return text


class MercadoPagoClient:
    def __init__(self, config: MercadoPagoConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self._transport = transport

    def _headers(self, idempotency_key: str | None) -> dict[str, str]:
        token = self.config.access_token
        if not token:
            raise MercadoPagoConfigurationError("MERCADOPAGO_ACCESS_TOKEN is not configured")
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        headers = self._headers(idempotency_key)
        content = simplejson.dumps(json, use_decimal=True).encode("utf-8") if json is not None else None
        try:
            async with httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, path, headers=headers, content=content)
        except httpx.TimeoutException as exc:
            logger.warning("mercadopago_timeout", extra={"method": method, "mp_path": path})
            raise MercadoPagoError("MercadoPago request timed out") from exc
        except httpx.RequestError as exc:
            logger.warning("mercadopago_request_failed", extra={"method": method, "mp_path": path, "error": str(exc)})
            raise MercadoPagoError("MercadoPago request failed") from exc

        body = _parse_body(resp)
        if resp.status_code >= 400:
            message = _error_message(body, f"MercadoPago request failed with status {resp.status_code}")
            logger.warning(
                "mercadopago_error_response",
                extra={"method": method, "mp_path": path, "status_code": resp.status_code, "error": message},
            )
            raise MercadoPagoError(message, status_code=resp.status_code, payload=body)
        return body

    async def create_preference(self, payload: dict[str, Any], *, idempotency_key: str | None = None) -> dict[str, Any]:
        return await self.request("POST", "/checkout/preferences", json=payload, idempotency_key=idempotency_key)

    async def create_payment(self, payload: dict[str, Any], *, idempotency_key: str | None = None) -> dict[str, Any]:
        return await self.request("POST", "/v1/payments", json=payload, idempotency_key=idempotency_key)

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        return await self.request("GET", f"/v1/payments/{payment_id}")

    async def capture_payment(self, payment_id: str, amount: Decimal | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"capture": True}
        if amount is not None:
            body["transaction_amount"] = amount
        return await self.request(
            "PUT",
            f"/v1/payments/{payment_id}",
            json=body,
            idempotency_key=f"capture-{payment_id}-{_timestamp_ms()}",
        )

    async def cancel_payment(self, payment_id: str) -> dict[str, Any]:
        return await self.request(
            "PUT",
            f"/v1/payments/{payment_id}",
            json={"status": "cancelled"},
            idempotency_key=f"cancel-{payment_id}-{_timestamp_ms()}",
        )

    async def refund_payment(
        self, payment_id: str, *, amount: Decimal | None = None, reason: str | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if amount is not None:
            body["amount"] = amount
        if reason:
            body["reason"] = reason
        return await self.request(
            "POST",
            f"/v1/payments/{payment_id}/refunds",
            json=body,
            idempotency_key=f"refund-{payment_id}-{_timestamp_ms()}",
        )


def get_mercadopago_client() -> MercadoPagoClient:
    """FastAPI dependency; tests override it with a fake client."""
    return MercadoPagoClient(MercadoPagoConfig.from_settings())
