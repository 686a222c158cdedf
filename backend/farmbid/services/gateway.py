"""Payment gateway client.

The engines only see `PaymentGateway`: off-session charge, retry charge,
retrieve.  `StripeGateway` implements it over Stripe's REST API with httpx
(form-encoded PaymentIntents, `off_session=true`, `confirm=true`).

Outcomes:
    ChargeResult(status="succeeded" | "processing" | "failed")
    GatewayDeclined   card declined / authentication required (HTTP 402)
    GatewayTimeout    no answer within `gateway_timeout_seconds`
    GatewayError      any other transport or API failure
"""

import logging
from dataclasses import dataclass

import httpx

from farmbid.config import settings
from farmbid.middleware.exceptions import GatewayDeclined, GatewayError, GatewayTimeout

logger = logging.getLogger(__name__)

# PaymentIntent.status → our three-state outcome
_STATUS_MAP = {
    "succeeded": "succeeded",
    "processing": "processing",
    "requires_capture": "processing",
}


@dataclass
class ChargeResult:
    id: str | None
    status: str
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class PaymentGateway:
    """Interface the reconciliation and retry engines depend on."""

    async def create_off_session_charge(
        self,
        customer_token: str | None,
        payment_method_token: str,
        amount: int,
        currency: str,
        metadata: dict,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        raise NotImplementedError

    async def retry_charge(
        self,
        customer_token: str | None,
        payment_method_token: str,
        amount: int,
        currency: str,
        metadata: dict,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        return await self.create_off_session_charge(
            customer_token, payment_method_token, amount, currency,
            metadata, idempotency_key,
        )

    async def retrieve_charge(self, charge_id: str) -> ChargeResult:
        raise NotImplementedError


class StripeGateway(PaymentGateway):
    def __init__(
        self,
        secret_key: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.api_base = (api_base or settings.stripe_api_base).rstrip("/")
        self.timeout = timeout or settings.gateway_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=self.timeout,
            auth=(self.secret_key, ""),
            transport=self._transport,
        )

    async def create_off_session_charge(
        self,
        customer_token,
        payment_method_token,
        amount,
        currency,
        metadata,
        idempotency_key=None,
    ) -> ChargeResult:
        form = {
            "amount": str(amount),
            "currency": currency,
            "payment_method": payment_method_token,
            "off_session": "true",
            "confirm": "true",
        }
        if customer_token:
            form["customer"] = customer_token
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = "" if value is None else str(value)

        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        payload = await self._request("POST", "/payment_intents", data=form, headers=headers)
        return self._to_result(payload)

    async def retrieve_charge(self, charge_id: str) -> ChargeResult:
        payload = await self._request("GET", f"/payment_intents/{charge_id}")
        return self._to_result(payload)

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            async with self._client() as http_client:
                response = await http_client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("Stripe %s %s timed out: %s", method, path, e)
            raise GatewayTimeout() from e
        except httpx.HTTPError as e:
            logger.error("Stripe %s %s transport error: %s", method, path, e)
            raise GatewayError(f"Payment gateway unreachable: {e}") from e

        if response.status_code == 402:
            error = response.json().get("error", {})
            intent = error.get("payment_intent") or {}
            raise GatewayDeclined(
                error.get("message", "Card declined"),
                payment_intent_id=intent.get("id"),
            )
        if response.status_code >= 400:
            logger.error(
                "Stripe %s %s failed: %s %s",
                method, path, response.status_code, response.text[:500],
            )
            try:
                message = response.json().get("error", {}).get("message")
            except ValueError:
                message = None
            raise GatewayError(message or f"Gateway returned HTTP {response.status_code}")

        return response.json()

    @staticmethod
    def _to_result(payload: dict) -> ChargeResult:
        raw_status = payload.get("status", "")
        status = _STATUS_MAP.get(raw_status, "failed")
        error = None
        if status == "failed":
            last_error = payload.get("last_payment_error") or {}
            error = last_error.get("message") or f"Payment intent status: {raw_status}"
        return ChargeResult(id=payload.get("id"), status=status, error=error)
