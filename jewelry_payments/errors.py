import enum
from typing import Optional


class ErrorCode(enum.Enum):
    ORDER_NOT_FOUND = "order_not_found"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    ORDER_NOT_PENDING = "order_not_pending"
    SHIPPING_ADDRESS_MISSING = "shipping_address_missing"
    AMOUNT_MISMATCH = "amount_mismatch"
    INVALID_AMOUNT = "invalid_amount"
    TRANSACTION_NOT_COMPLETED = "transaction_not_completed"
    TRANSACTION_NOT_REFUNDABLE = "transaction_not_refundable"
    CALLBACK_ORDER_MISMATCH = "callback_order_mismatch"
    MALFORMED_CALLBACK = "malformed_callback"
    INVALID_REQUEST = "invalid_request"
    DUPLICATE_TRANSACTION = "duplicate_transaction"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    GATEWAY_TIMEOUT = "gateway_timeout"
    GATEWAY_REJECTED = "gateway_rejected"
    GATEWAY_BAD_RESPONSE = "gateway_bad_response"
    REFUND_FAILED = "refund_failed"
    INVALID_SIGNATURE = "invalid_signature"
    MISSING_SIGNATURE = "missing_signature"
    EXPIRED_SIGNATURE = "expired_signature"
    MISSING_CONFIGURATION = "missing_configuration"


# User-facing text lives here only; call sites raise by code.
MESSAGES = {
    ErrorCode.ORDER_NOT_FOUND: "Order not found",
    ErrorCode.TRANSACTION_NOT_FOUND: "Transaction not found",
    ErrorCode.ORDER_NOT_PENDING: "Order is not in pending state",
    ErrorCode.SHIPPING_ADDRESS_MISSING: "Order has no shipping address",
    ErrorCode.AMOUNT_MISMATCH: "Payment amount does not match the order total",
    ErrorCode.INVALID_AMOUNT: "Payment amount must be greater than zero",
    ErrorCode.TRANSACTION_NOT_COMPLETED: "Transaction is not completed",
    ErrorCode.TRANSACTION_NOT_REFUNDABLE: "Transaction cannot be refunded",
    ErrorCode.CALLBACK_ORDER_MISMATCH: "Callback does not belong to this order",
    ErrorCode.MALFORMED_CALLBACK: "Malformed callback payload",
    ErrorCode.INVALID_REQUEST: "Invalid request body",
    ErrorCode.DUPLICATE_TRANSACTION: "A payment for this order is already in progress",
    ErrorCode.GATEWAY_UNAVAILABLE: "Failed to create payment",
    ErrorCode.GATEWAY_TIMEOUT: "Payment provider did not respond in time",
    ErrorCode.GATEWAY_REJECTED: "Payment was rejected by the payment provider",
    ErrorCode.GATEWAY_BAD_RESPONSE: "Invalid response from payment provider",
    ErrorCode.REFUND_FAILED: "Failed to process refund",
    ErrorCode.INVALID_SIGNATURE: "Invalid signature",
    ErrorCode.MISSING_SIGNATURE: "Missing signature headers",
    ErrorCode.EXPIRED_SIGNATURE: "Signature timestamp is outside the allowed window",
    ErrorCode.MISSING_CONFIGURATION: "Missing required configuration",
}


class PaymentServiceError(Exception):
    """Base class for every error the payment service reports to callers.

    ``detail`` carries a more specific message (usually the gateway's own
    text) and takes precedence over the generic text for ``code``.
    """

    def __init__(self, code: ErrorCode, detail: Optional[str] = None):
        self.code = code
        self.detail = detail
        super().__init__(self.message)

    @property
    def message(self) -> str:
        return self.detail or MESSAGES[self.code]


class ValidationError(PaymentServiceError):
    pass


class NotFoundError(PaymentServiceError):
    pass


class GatewayError(PaymentServiceError):
    pass


class ConflictError(PaymentServiceError):
    pass


class SignatureError(PaymentServiceError):
    pass


class PaymentError(PaymentServiceError):
    pass


class ConfigurationError(PaymentServiceError):
    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(
            ErrorCode.MISSING_CONFIGURATION,
            f"{MESSAGES[ErrorCode.MISSING_CONFIGURATION]}: {', '.join(self.missing)}",
        )


HTTP_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    GatewayError: 400,
    ConflictError: 409,
    SignatureError: 401,
    PaymentError: 400,
}


def status_code_for(error: PaymentServiceError) -> int:
    for error_class in type(error).__mro__:
        if error_class in HTTP_STATUS:
            return HTTP_STATUS[error_class]
    return 500
