"""
ZarinPal payment gateway (REST API v4) over httpx.

    >>> async with ZarinPalGateway(merchant_id="xxxxxxxx-...", sandbox=True) as gateway:
    ...     opened = await gateway.request_payment(amount, "Order ORD-...", callback_url, contact)
"""

from decimal import Decimal
from typing import Any

import httpx

from orderflow.checkout.ports import PaymentGateway, PaymentRequestResult, PaymentVerification
from orderflow.checkout.types import PayerContact
from orderflow.core.exceptions import PaymentGatewayError, PaymentGatewayTimeoutError
from orderflow.core.logger import get_logger

logger = get_logger(__name__)

REQUEST_OK = 100
VERIFIED_CODES = frozenset({100, 101})  # 101: already verified earlier


class ZarinPalGateway(PaymentGateway):
    """
    Payment gateway backed by ZarinPal.

    A shared ``httpx.AsyncClient`` may be passed in (tests use one built
    on ``httpx.MockTransport``); otherwise the gateway owns its client and
    closes it in :meth:`close`.
    """

    name = "zarinpal"

    def __init__(
        self,
        merchant_id: str,
        sandbox: bool = True,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        if not merchant_id:
            msg = "ZarinPal merchant_id is required"
            raise ValueError(msg)
        self.merchant_id = merchant_id
        self.sandbox = sandbox
        self.api_base = "https://sandbox.zarinpal.com" if sandbox else "https://api.zarinpal.com"
        self.startpay_base = "https://sandbox.zarinpal.com" if sandbox else "https://www.zarinpal.com"
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "ZarinPalGateway":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.api_base}/pg/v4/payment/{path}"
        try:
            response = await self.client.post(url, json=payload)
        except httpx.TimeoutException as e:
            msg = f"ZarinPal {path} timed out"
            raise PaymentGatewayTimeoutError(msg) from e
        except httpx.HTTPError as e:
            msg = f"ZarinPal {path} failed: {e}"
            raise PaymentGatewayError(msg) from e

        try:
            body = response.json()
        except ValueError as e:
            msg = f"ZarinPal {path} returned a non-JSON response (HTTP {response.status_code})"
            raise PaymentGatewayError(msg) from e

        # ZarinPal answers errors with HTTP 4xx and an "errors" object; "data" is then empty.
        data = body.get("data") or {}
        if not isinstance(data, dict):
            data = {}
        if not data and body.get("errors"):
            errors = body["errors"]
            code = errors.get("code") if isinstance(errors, dict) else None
            data = {"code": code, "message": errors.get("message") if isinstance(errors, dict) else str(errors)}
        return data

    async def request_payment(
        self,
        amount: Decimal,
        description: str,
        callback_url: str,
        contact: PayerContact,
    ) -> PaymentRequestResult:
        payload = {
            "merchant_id": self.merchant_id,
            "amount": int(amount),
            "description": description,
            "callback_url": callback_url,
            "metadata": {"mobile": contact.mobile, "email": contact.email},
        }
        data = await self._post("request.json", payload)

        code = data.get("code")
        if code != REQUEST_OK or not data.get("authority"):
            logger.error(f"ZarinPal payment request failed. Code: {code}, message: {data.get('message')}")
            msg = f"ZarinPal refused the payment request: {data.get('message') or 'unknown error'}"
            raise PaymentGatewayError(msg, code=code)

        authority = data["authority"]
        return PaymentRequestResult(
            redirect_url=f"{self.startpay_base}/pg/StartPay/{authority}",
            authority=authority,
        )

    async def verify_payment(self, amount: Decimal, authority: str) -> PaymentVerification:
        payload = {"merchant_id": self.merchant_id, "amount": int(amount), "authority": authority}
        data = await self._post("verify.json", payload)

        code = data.get("code")
        if code not in VERIFIED_CODES:
            logger.warning(f"ZarinPal verification for {authority} rejected with code {code}")
            return PaymentVerification(verified=False, code=code)

        fee = data.get("fee")
        return PaymentVerification(
            verified=True,
            reference_id=str(data["ref_id"]) if data.get("ref_id") is not None else None,
            card_mask=data.get("card_pan"),
            fee=Decimal(str(fee)) if fee is not None else None,
            code=code,
        )
