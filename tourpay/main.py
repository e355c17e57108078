import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tourpay.api.v1 import api_router
from tourpay.core.config import settings
from tourpay.core.logging_config import configure_logging, request_id_ctx_var
from tourpay.core.sentry import init_sentry
from tourpay.middleware import RequestLoggingMiddleware
from tourpay.schemas.error import ErrorResponse
from tourpay.services.mercadopago import MercadoPagoConfigurationError

logger = logging.getLogger(__name__)


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    init_sentry()
    tags_metadata = [
        {"name": "coupons", "description": "Coupon lifecycle and checkout application"},
        {"name": "payments", "description": "MercadoPago payments, booking decisions and webhooks"},
        {"name": "health", "description": "Liveness and readiness probes"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        swagger_ui_parameters={"displayRequestDuration": True},
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None, request_id=request_id_ctx_var.get())
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(payload.model_dump()),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error", request_id=request_id_ctx_var.get())
        return JSONResponse(status_code=422, content=payload.model_dump())

    @app.exception_handler(MercadoPagoConfigurationError)
    async def gateway_configuration_handler(request: Request, exc: MercadoPagoConfigurationError):
        logger.error("mercadopago_not_configured", extra={"path": request.url.path})
        payload = ErrorResponse(
            detail="Payment gateway not configured",
            code="gateway_not_configured",
            request_id=request_id_ctx_var.get(),
        )
        return JSONResponse(status_code=500, content=payload.model_dump())

    return app


app = get_application()
