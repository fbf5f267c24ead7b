from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# --- API bodies ---

class PaymentCreate(CamelModel):
    order_id: str = Field(..., alias="orderId", min_length=1, examples=["5f0c1c7e-8a71-4d3b-9a57-1e4b6f8e2a10"])
    amount: Decimal = Field(..., gt=0, examples=["49.99"])
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    return_url: str = Field(..., alias="returnUrl", min_length=1, examples=["https://shop.example.com/checkout"])


class PaymentCreated(CamelModel):
    redirect_url: Optional[str] = Field(None, alias="redirectUrl")
    transaction_id: str = Field(..., alias="transactionId")


class RefundProcessed(CamelModel):
    message: str
    uuid: Optional[str] = None
    purchase_id: Optional[str] = Field(None, alias="purchaseId")


class CallbackPayload(CamelModel):
    """Asynchronous notification posted by the gateway. Unknown keys are kept."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    merchant_transaction_id: str = Field(..., alias="merchantTransactionId", min_length=1)
    result: str
    uuid: Optional[str] = None
    status: Optional[str] = None
    purchase_id: Optional[str] = Field(None, alias="purchaseId")
    message: Optional[str] = None
    error_message: Optional[str] = Field(None, alias="errorMessage")


class CallbackAck(BaseModel):
    message: str


class ErrorBody(BaseModel):
    error: str
    message: str


# --- Gateway wire models ---

class Customer(CamelModel):
    first_name: str = Field(..., alias="firstName")
    last_name: str = Field("", alias="lastName")
    email: str
    billing_address1: Optional[str] = Field(None, alias="billingAddress1")
    billing_city: Optional[str] = Field(None, alias="billingCity")
    billing_country: Optional[str] = Field(None, alias="billingCountry")
    billing_postcode: Optional[str] = Field(None, alias="billingPostcode")
    billing_phone: Optional[str] = Field(None, alias="billingPhone")


class ReturnUrls(CamelModel):
    success_url: str = Field(..., alias="successUrl")
    cancel_url: str = Field(..., alias="cancelUrl")
    error_url: str = Field(..., alias="errorUrl")
    callback_url: str = Field(..., alias="callbackUrl")


class DebitRequest(BaseModel):
    merchant_transaction_id: str
    amount: Decimal
    currency: str
    customer: Customer
    urls: ReturnUrls
    description: str


class RefundRequest(BaseModel):
    merchant_transaction_id: str
    reference_uuid: str
    amount: Decimal
    currency: str
    description: str


class GatewayErrorEntry(CamelModel):
    error_message: Optional[str] = Field(None, alias="errorMessage")
    error_code: Optional[int] = Field(None, alias="errorCode")


class GatewayResponse(CamelModel):
    """Normalized gateway answer for both debit and refund calls."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool = False
    uuid: Optional[str] = None
    purchase_id: Optional[str] = Field(None, alias="purchaseId")
    return_type: Optional[str] = Field(None, alias="returnType")
    redirect_url: Optional[str] = Field(None, alias="redirectUrl")
    errors: List[GatewayErrorEntry] = Field(default_factory=list)

    @property
    def error_message(self) -> Optional[str]:
        for entry in self.errors:
            if entry.error_message:
                return entry.error_message
        return None

    @property
    def error_code(self) -> Optional[int]:
        return self.errors[0].error_code if self.errors else None
