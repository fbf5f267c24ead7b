from typing import Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SchemaValidationError

from jewelry_payments import signature
from jewelry_payments.config import Settings
from jewelry_payments.coordinator import OrderStateCoordinator, base_merchant_transaction_id
from jewelry_payments.database import create_engine, create_session_factory, init_db
from jewelry_payments.errors import ErrorCode, PaymentServiceError, ValidationError, status_code_for
from jewelry_payments.gateway import GatewayClient
from jewelry_payments.logging_config import configure_logging
from jewelry_payments.notifications import NotificationGateway, build_email_sender
from jewelry_payments.schemas import (
    CallbackAck,
    CallbackPayload,
    ErrorBody,
    PaymentCreate,
    PaymentCreated,
    RefundProcessed,
)

logger = structlog.get_logger().bind(component="api")

EMAIL_DRAIN_TIMEOUT_SECONDS = 30


def get_coordinator(request: Request) -> OrderStateCoordinator:
    return request.app.state.coordinator


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def create_app(settings: Settings, coordinator: Optional[OrderStateCoordinator] = None) -> FastAPI:
    app = FastAPI(title="Payment Service")
    app.state.settings = settings

    engine = None
    if coordinator is None:
        engine = create_engine(settings.database_url)
        notifications = NotificationGateway(
            build_email_sender(settings),
            admin_email=settings.admin_email,
            shop_name=settings.shop_name,
        )
        coordinator = OrderStateCoordinator(
            settings,
            create_session_factory(engine),
            GatewayClient(settings),
            notifications,
        )
    app.state.coordinator = coordinator

    @app.on_event("startup")
    async def startup_event():
        if engine is not None:
            await init_db(engine)
        logger.info("service_started")

    @app.on_event("shutdown")
    async def shutdown_event():
        await coordinator.notifications.drain(timeout=EMAIL_DRAIN_TIMEOUT_SECONDS)
        await coordinator.gateway.aclose()
        sender = coordinator.notifications.sender
        if hasattr(sender, "aclose"):
            await sender.aclose()
        if engine is not None:
            await engine.dispose()

    @app.exception_handler(PaymentServiceError)
    async def payment_error_handler(request: Request, exc: PaymentServiceError):
        return _error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        # Field-level details stay in the log; the body keeps the {error, message} shape
        logger.info("request_invalid", path=request.url.path, errors=exc.errors())
        return _error_response(request, ValidationError(ErrorCode.INVALID_REQUEST))

    _register_routes(app)
    return app


def _error_response(request: Request, exc: PaymentServiceError) -> JSONResponse:
    status_code = status_code_for(exc)
    logger.info(
        "request_failed",
        path=request.url.path,
        status_code=status_code,
        error=exc.code.value,
        message=exc.message,
    )
    return JSONResponse(
        status_code=status_code,
        content=ErrorBody(error=exc.code.value, message=exc.message).model_dump(),
    )


async def _read_callback(request: Request, settings: Settings) -> CallbackPayload:
    # Verify over the raw bytes before anything is parsed or mutated
    body = await request.body()
    if settings.verify_callback_signature:
        signature.verify(
            request.method,
            body,
            request.headers.get("content-type"),
            request.headers.get("date"),
            request.url.path,
            settings.gateway_shared_secret,
            request.headers.get("x-signature"),
            max_age=settings.callback_max_age_seconds or None,
        )
    try:
        return CallbackPayload.model_validate_json(body)
    except SchemaValidationError as e:
        logger.warning("callback_malformed", error=str(e))
        raise ValidationError(ErrorCode.MALFORMED_CALLBACK)


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/payment", response_model=PaymentCreated)
    async def create_payment(
        payment: PaymentCreate,
        coordinator: OrderStateCoordinator = Depends(get_coordinator),
    ):
        return await coordinator.create_payment(payment.order_id, payment.amount, payment.currency, payment.return_url)

    # The path parameter carries the merchant transaction id (the order id)
    @app.post("/payment/refund/{transaction_id}", response_model=RefundProcessed)
    async def refund_payment(
        transaction_id: str,
        coordinator: OrderStateCoordinator = Depends(get_coordinator),
    ):
        return await coordinator.refund_payment(transaction_id)

    @app.post("/payment/callback", response_model=CallbackAck)
    async def payment_callback(
        request: Request,
        settings: Settings = Depends(get_settings),
        coordinator: OrderStateCoordinator = Depends(get_coordinator),
    ):
        payload = await _read_callback(request, settings)
        return await coordinator.handle_callback(payload)

    @app.post("/payment/{order_id}/callback", response_model=CallbackAck)
    async def order_payment_callback(
        order_id: str,
        request: Request,
        settings: Settings = Depends(get_settings),
        coordinator: OrderStateCoordinator = Depends(get_coordinator),
    ):
        payload = await _read_callback(request, settings)
        base_id, _ = base_merchant_transaction_id(payload.merchant_transaction_id)
        if base_id != order_id:
            raise ValidationError(ErrorCode.CALLBACK_ORDER_MISMATCH)
        return await coordinator.handle_callback(payload)


if __name__ == "__main__":
    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)
