import json
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union
from urllib.parse import urlsplit

import httpx
import structlog
from pydantic import ValidationError as SchemaValidationError

from jewelry_payments import signature
from jewelry_payments.config import Settings
from jewelry_payments.errors import ErrorCode, GatewayError
from jewelry_payments.schemas import DebitRequest, GatewayResponse, RefundRequest

TWO_PLACES = Decimal("0.01")


def format_amount(value: Union[Decimal, float, int, str]) -> str:
    """Fixed two-digit amount string, rounding half away from zero.

    >>> format_amount(10.005)
    '10.01'
    """
    if isinstance(value, float):
        value = str(value)
    return str(Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def _compact_json(payload: dict) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class GatewayClient:
    """Signed HTTP client for the payment gateway's transaction API.

    Holds no database state; every call is one POST whose outcome is returned
    as a ``GatewayResponse`` or raised as ``GatewayError``.
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(settings.gateway_timeout_seconds))
        self._logger = structlog.get_logger().bind(component="gateway_client")

    async def aclose(self) -> None:
        await self._http.aclose()

    def endpoint(self, action: str) -> str:
        return f"{self._settings.gateway_base}/transaction/{self._settings.gateway_api_key}/{action}"

    async def debit(self, request: DebitRequest) -> GatewayResponse:
        payload = {
            "merchantTransactionId": request.merchant_transaction_id,
            "amount": format_amount(request.amount),
            "currency": request.currency,
            "description": request.description,
            "customer": request.customer.model_dump(by_alias=True, exclude_none=True),
            **request.urls.model_dump(by_alias=True),
        }
        return await self._post("debit", payload, request.merchant_transaction_id)

    async def refund(self, request: RefundRequest) -> GatewayResponse:
        payload = {
            "merchantTransactionId": request.merchant_transaction_id,
            "referenceUuid": request.reference_uuid,
            "amount": format_amount(request.amount),
            "currency": request.currency,
            "description": request.description,
        }
        return await self._post("refund", payload, request.merchant_transaction_id)

    async def _post(self, action: str, payload: dict, merchant_transaction_id: str) -> GatewayResponse:
        url = self.endpoint(action)
        body = _compact_json(payload)
        headers = signature.signed_headers(
            "POST",
            body,
            urlsplit(url).path,
            self._settings.gateway_shared_secret,
            self._settings.gateway_username,
            self._settings.gateway_password,
        )
        log = self._logger.bind(action=action, merchant_transaction_id=merchant_transaction_id)

        try:
            response = await self._http.post(url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            log.error("gateway_timeout", error=str(e))
            raise GatewayError(ErrorCode.GATEWAY_TIMEOUT)
        except httpx.HTTPError as e:
            log.error("gateway_unreachable", error=str(e), error_type=type(e).__name__)
            raise GatewayError(ErrorCode.GATEWAY_UNAVAILABLE)

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            message = _extract_message(data)
            log.warning("gateway_http_error", status_code=response.status_code, gateway_message=message)
            raise GatewayError(ErrorCode.GATEWAY_UNAVAILABLE, message)

        if not isinstance(data, dict):
            log.warning("gateway_malformed_response", status_code=response.status_code)
            raise GatewayError(ErrorCode.GATEWAY_BAD_RESPONSE)

        try:
            result = GatewayResponse.model_validate(data)
        except SchemaValidationError as e:
            log.warning("gateway_malformed_response", error=str(e))
            raise GatewayError(ErrorCode.GATEWAY_BAD_RESPONSE)

        log.info(
            "gateway_response",
            success=result.success,
            uuid=result.uuid,
            purchase_id=result.purchase_id,
            error_code=result.error_code,
        )
        return result


def _extract_message(data) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    for key in ("message", "errorMessage"):
        if isinstance(data.get(key), str) and data[key]:
            return data[key]
    errors = data.get("errors")
    if isinstance(errors, list):
        for entry in errors:
            if isinstance(entry, dict) and isinstance(entry.get("errorMessage"), str):
                return entry["errorMessage"]
    return None
