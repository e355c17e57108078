import asyncio
import json
import logging
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from tourpay.core import metrics
from tourpay.core.logging_config import JsonFormatter
from tourpay.db.base import Base
from tourpay.db.session import get_session
from tourpay.main import app


@pytest.fixture
def client() -> TestClient:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    test_client = TestClient(app)
    yield test_client
    test_client.close()
    app.dependency_overrides.clear()


def test_healthcheck(client: TestClient) -> None:
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_readiness(client: TestClient) -> None:
    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_request_id_header(client: TestClient) -> None:
    response = client.get("/api/v1/health")
    assert response.headers.get("X-Request-ID")


def test_upstream_request_id_is_echoed(client: TestClient) -> None:
    response = client.get("/api/v1/health", headers={"x-request-id": "mp-retry-1"})
    assert response.headers.get("X-Request-ID") == "mp-retry-1"


def test_metrics_snapshot(client: TestClient) -> None:
    metrics.record_webhook_received()
    metrics.record_webhook_received()
    response = client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert response.json()["webhooks_received"] == 2


def test_unknown_route_uses_error_envelope(client: TestClient) -> None:
    response = client.get("/api/v1/nope")
    assert response.status_code == 404
    assert response.json()["detail"] == "Not Found"
    assert response.json()["code"] is None


def test_json_formatter_serializes_structured_extras() -> None:
    record = logging.LogRecord("tourpay.test", logging.INFO, __file__, 1, "coupon_applied", None, None)
    record.request_id = "req-1"
    record.discount = Decimal("12.50")
    record.codes = ["A", "B"]

    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "coupon_applied"
    assert payload["request_id"] == "req-1"
    assert payload["discount"] == "12.50"
    assert payload["codes"] == ["A", "B"]
