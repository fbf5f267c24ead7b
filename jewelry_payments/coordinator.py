from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from jewelry_payments.config import Settings
from jewelry_payments.errors import (
    ConflictError,
    ErrorCode,
    GatewayError,
    NotFoundError,
    PaymentError,
    ValidationError,
)
from jewelry_payments.gateway import TWO_PLACES, GatewayClient
from jewelry_payments.models import (
    REFUND_SUFFIX,
    Order,
    OrderPaymentStatus,
    OrderStatus,
    PaymentTransaction,
    TransactionStatus,
)
from jewelry_payments.notifications import NotificationGateway
from jewelry_payments.schemas import (
    CallbackAck,
    CallbackPayload,
    Customer,
    DebitRequest,
    PaymentCreated,
    RefundProcessed,
    RefundRequest,
    ReturnUrls,
)
from jewelry_payments.store import OrderRepository, TransactionStore

RESULT_OK = "OK"

ACK_PROCESSED = "Callback processed successfully"
ACK_ALREADY_PROCESSED = "Already processed"
ACK_ALREADY_REFUNDED = "Already refunded"
REFUND_PROCESSED = "Refund processed successfully"


def split_full_name(full_name: Optional[str]) -> Tuple[str, str]:
    """First whitespace-delimited token and the remainder (possibly empty)."""
    parts = (full_name or "").split(None, 1)
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1].strip()


def base_merchant_transaction_id(merchant_transaction_id: str) -> Tuple[str, bool]:
    if merchant_transaction_id.endswith(REFUND_SUFFIX):
        return merchant_transaction_id[: -len(REFUND_SUFFIX)], True
    return merchant_transaction_id, False


class OrderStateCoordinator:
    """Drives the Order/PaymentTransaction state machine.

    Each operation opens its own session; every Order and transaction change
    belonging to one step is committed in a single database transaction.
    Network calls (gateway, email) happen outside open database transactions,
    and emails are handed to the notification gateway without being awaited.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker,
        gateway: GatewayClient,
        notifications: NotificationGateway,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifications = notifications
        self._logger = structlog.get_logger().bind(component="order_state_coordinator")

    # --- create ---

    async def create_payment(self, order_id: str, amount, currency: Optional[str], return_url: str) -> PaymentCreated:
        log = self._logger.bind(order_id=order_id)
        amount = Decimal(str(amount)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
        if amount <= 0:
            raise ValidationError(ErrorCode.INVALID_AMOUNT)

        async with self.session_factory() as session:
            async with session.begin():
                order = await OrderRepository(session).find_by_id(order_id)
                if order is None:
                    raise NotFoundError(ErrorCode.ORDER_NOT_FOUND)
                if order.status != OrderStatus.PENDING:
                    raise ValidationError(ErrorCode.ORDER_NOT_PENDING)
                if order.shipping_address is None:
                    raise ValidationError(ErrorCode.SHIPPING_ADDRESS_MISSING)
                if Decimal(order.total).quantize(TWO_PLACES, rounding=ROUND_HALF_UP) != amount:
                    raise ValidationError(ErrorCode.AMOUNT_MISMATCH)

                # Recorded before the debit so no callback can arrive unmatched
                transaction = await TransactionStore(session).create(
                    PaymentTransaction(
                        order_id=order.id,
                        merchant_transaction_id=order.id,
                        amount=amount,
                        currency=(currency or self.settings.default_currency).upper(),
                        status=TransactionStatus.PENDING,
                    )
                )

        request = self._debit_request(order, transaction, return_url)
        log.info("debit_requested", transaction_id=transaction.id, amount=str(amount), currency=transaction.currency)

        try:
            result = await self.gateway.debit(request)
        except GatewayError as e:
            await self._fail_transaction(transaction.id, e.message)
            log.warning("debit_failed", transaction_id=transaction.id, error=e.message)
            raise

        if not result.success:
            error = GatewayError(ErrorCode.GATEWAY_REJECTED, result.error_message)
            await self._fail_transaction(transaction.id, error.message)
            log.warning("debit_rejected", transaction_id=transaction.id, error=error.message, error_code=result.error_code)
            raise error

        # The synchronous answer only correlates; the callback decides completion
        async with self.session_factory() as session:
            async with session.begin():
                store = TransactionStore(session)
                stored = await store.find_by_id(transaction.id)
                stored.bankart_transaction_id = result.purchase_id
                stored.uuid = stored.uuid or result.uuid
                stored.redirect_url = result.redirect_url
                await store.save(stored)

        log.info("payment_created", transaction_id=transaction.id, purchase_id=result.purchase_id, uuid=result.uuid)
        return PaymentCreated(redirect_url=result.redirect_url, transaction_id=transaction.id)

    def _debit_request(self, order: Order, transaction: PaymentTransaction, return_url: str) -> DebitRequest:
        address = order.shipping_address
        first_name, last_name = split_full_name(address.full_name)
        base = return_url.rstrip("/")
        return DebitRequest(
            merchant_transaction_id=transaction.merchant_transaction_id,
            amount=transaction.amount,
            currency=transaction.currency,
            description=f"Order {order.id}",
            customer=Customer(
                first_name=first_name,
                last_name=last_name,
                email=order.email,
                billing_address1=address.address,
                billing_city=address.city,
                billing_country=address.country,
                billing_postcode=address.postal_code,
                billing_phone=address.phone,
            ),
            urls=ReturnUrls(
                success_url=f"{base}/success?orderId={order.id}",
                cancel_url=f"{base}/cancel?orderId={order.id}",
                error_url=f"{base}/error?orderId={order.id}",
                callback_url=f"{self.settings.callback_base}/payment/{order.id}/callback",
            ),
        )

    async def _fail_transaction(self, transaction_id: str, error_message: Optional[str]) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await TransactionStore(session).compare_and_set(
                    transaction_id,
                    [TransactionStatus.PENDING],
                    TransactionStatus.FAILED,
                    error_message=error_message,
                )

    # --- callback ---

    async def handle_callback(self, payload: CallbackPayload) -> CallbackAck:
        merchant_transaction_id, is_refund = base_merchant_transaction_id(payload.merchant_transaction_id)
        log = self._logger.bind(
            merchant_transaction_id=merchant_transaction_id,
            is_refund=is_refund,
            result=payload.result,
        )
        log.info("callback_received", gateway_status=payload.status, uuid=payload.uuid)

        succeeded = False
        async with self.session_factory() as session:
            async with session.begin():
                orders = OrderRepository(session)
                store = TransactionStore(session)

                order = await orders.find_by_id(merchant_transaction_id)
                transaction = await store.find_by_merchant_transaction_id(merchant_transaction_id)
                if order is None:
                    log.warning("callback_order_not_found")
                    raise NotFoundError(ErrorCode.ORDER_NOT_FOUND)
                if transaction is None:
                    log.warning("callback_transaction_not_found")
                    raise NotFoundError(ErrorCode.TRANSACTION_NOT_FOUND)

                if transaction.status == TransactionStatus.COMPLETED:
                    log.info("callback_ignored", reason="already_processed")
                    return CallbackAck(message=ACK_ALREADY_PROCESSED)
                if transaction.status == TransactionStatus.REFUNDED:
                    log.info("callback_ignored", reason="already_refunded")
                    return CallbackAck(message=ACK_ALREADY_REFUNDED)

                if payload.result == RESULT_OK:
                    if not await store.complete(transaction.id, uuid=payload.uuid):
                        # A concurrent delivery won the conditional update
                        log.info("callback_ignored", reason="lost_race")
                        return CallbackAck(message=ACK_ALREADY_PROCESSED)
                    order.status = OrderStatus.PROCESSING
                    order.payment_status = OrderPaymentStatus.SUCCESS
                    succeeded = True
                else:
                    error_message = payload.error_message or payload.message
                    if not await store.fail(transaction.id, uuid=payload.uuid, error_message=error_message):
                        log.info("callback_ignored", reason="lost_race")
                        return CallbackAck(message=ACK_ALREADY_PROCESSED)
                    order.status = OrderStatus.CANCELLED
                    order.payment_status = OrderPaymentStatus.FAILED

                await orders.save(order)

        log.info("callback_applied", order_status=order.status.value, transaction_status=transaction.status.value)

        if succeeded:
            self.notifications.notify_payment_succeeded(order, transaction)

        return CallbackAck(message=ACK_PROCESSED)

    # --- refund ---

    async def refund_payment(self, merchant_transaction_id: str) -> RefundProcessed:
        log = self._logger.bind(merchant_transaction_id=merchant_transaction_id)

        async with self.session_factory() as session:
            async with session.begin():
                transaction = await TransactionStore(session).find_by_merchant_transaction_id(merchant_transaction_id)
                if transaction is None:
                    raise NotFoundError(ErrorCode.TRANSACTION_NOT_FOUND)
                if transaction.status != TransactionStatus.COMPLETED:
                    raise ValidationError(ErrorCode.TRANSACTION_NOT_COMPLETED)
                if transaction.is_refund or not transaction.uuid:
                    raise ValidationError(ErrorCode.TRANSACTION_NOT_REFUNDABLE)
                order = await OrderRepository(session).find_by_id(transaction.order_id)
                if order is None:
                    raise NotFoundError(ErrorCode.ORDER_NOT_FOUND)

        request = RefundRequest(
            merchant_transaction_id=f"{transaction.merchant_transaction_id}{REFUND_SUFFIX}",
            reference_uuid=transaction.uuid,
            amount=transaction.amount,
            currency=transaction.currency,
            description=f"Refund for order {order.id}",
        )

        try:
            result = await self.gateway.refund(request)
        except GatewayError as e:
            log.warning("refund_failed", error=e.message)
            raise PaymentError(ErrorCode.REFUND_FAILED, e.detail)
        if not result.success:
            log.warning("refund_rejected", error=result.error_message, error_code=result.error_code)
            raise PaymentError(ErrorCode.REFUND_FAILED, result.error_message)

        async with self.session_factory() as session:
            async with session.begin():
                store = TransactionStore(session)
                orders = OrderRepository(session)
                if not await store.mark_refunded(transaction.id):
                    # Refunded at the gateway but someone else already moved the row
                    log.error("refund_state_conflict", transaction_id=transaction.id, uuid=result.uuid)
                    raise ConflictError(ErrorCode.TRANSACTION_NOT_REFUNDABLE)
                await store.create(
                    PaymentTransaction(
                        order_id=order.id,
                        merchant_transaction_id=request.merchant_transaction_id,
                        bankart_transaction_id=result.purchase_id,
                        uuid=result.uuid,
                        amount=transaction.amount,
                        currency=transaction.currency,
                        status=TransactionStatus.COMPLETED,
                    )
                )
                refreshed = await orders.find_by_id(order.id)
                refreshed.status = OrderStatus.REFUNDED
                await orders.save(refreshed)
                transaction = await store.find_by_id(transaction.id)

        log.info("payment_refunded", uuid=result.uuid, purchase_id=result.purchase_id)
        self.notifications.notify_refunded(refreshed, transaction)
        return RefundProcessed(message=REFUND_PROCESSED, uuid=result.uuid, purchase_id=result.purchase_id)
