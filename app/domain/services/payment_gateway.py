"""
Payment Gateway client

The credit services depend only on BasePaymentGateway. HttpPaymentGateway
talks to the hosted gateway over httpx with retry on transient status codes
and a circuit breaker around each call. Every charge carries an idempotency
key so a retried request never charges twice.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.circuit_breaker import CircuitBreaker, get_payment_gateway_circuit_breaker
from app.core.config import settings
from app.core.exceptions import PaymentGatewayError
from app.core.logging import get_logger
from app.core.validation import mask_secret

logger = get_logger(__name__)

CHARGE_SUCCEEDED = "succeeded"
CHARGE_FAILED = "failed"


@dataclass
class ChargeResult:
    id: str | None
    status: str
    amount_cents: int
    currency: str
    failure_reason: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == CHARGE_SUCCEEDED


@dataclass
class RefundResult:
    id: str
    charge_id: str
    amount_cents: int
    status: str = "succeeded"


class BasePaymentGateway(ABC):
    """Charge and refund contract used by purchases and auto-topups"""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short provider name for logs"""

    @abstractmethod
    async def create_charge(
        self,
        amount_cents: int,
        currency: str,
        payment_method_id: str,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> ChargeResult:
        """
        Charge a stored payment method.

        A decline is returned as a ChargeResult with status "failed".

        Raises:
            PaymentGatewayError: the gateway could not be reached or answered with an error.
            ServiceTimeoutError: the call exceeded the configured timeout.
            CircuitBreakerOpenError: the gateway is currently considered down.
        """

    @abstractmethod
    async def create_refund(self, charge_id: str, amount_cents: int, reason: str) -> RefundResult:
        """Refund all or part of a charge"""


class HttpPaymentGateway(BasePaymentGateway):
    """
    REST gateway client.

    POST /v1/charges  -> {"id", "status", "amount", "currency", "failure_reason"}
    POST /v1/refunds  -> {"id", "charge_id", "amount", "status"}
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        base_url: str | None = None,
        api_key: str | None = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._base_url = base_url or settings.PAYMENT_GATEWAY_URL
        self._api_key = api_key if api_key is not None else settings.PAYMENT_GATEWAY_API_KEY
        self._max_retries = max(1, settings.PAYMENT_GATEWAY_MAX_RETRIES)
        self._timeout = settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS
        self._transient_status_codes = {
            int(code.strip())
            for code in settings.PAYMENT_GATEWAY_TRANSIENT_STATUS_CODES.split(",")
            if code.strip()
        }

    @property
    def provider_name(self) -> str:
        return "http"

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request_with_retry(
        self,
        endpoint: str,
        payload: dict,
        operation_name: str,
        idempotency_key: str | None = None,
    ) -> httpx.Response:
        """
        POST to the gateway, retrying transient statuses, timeouts and network
        errors with 2**attempt seconds backoff. 2xx and 402 are returned to
        the caller; anything else raises PaymentGatewayError.
        """
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for attempt in range(self._max_retries):
                is_last = attempt == self._max_retries - 1
                try:
                    response = await client.post(
                        f"{self._base_url}/{endpoint}",
                        json=payload,
                        headers=self._headers(idempotency_key),
                    )
                except httpx.TimeoutException:
                    if not is_last:
                        await self._backoff(operation_name, attempt, reason="timeout")
                        continue
                    raise PaymentGatewayError(
                        message=f"/{endpoint} timeout after retries",
                        details={"timeout": True, "attempts": self._max_retries},
                    )
                except httpx.RequestError as exc:
                    if not is_last:
                        await self._backoff(operation_name, attempt, reason=str(exc))
                        continue
                    raise PaymentGatewayError(
                        message=f"/{endpoint} network error: {exc}",
                        details={"network_error": True, "attempts": self._max_retries},
                    )

                if response.is_success or response.status_code == 402:
                    return response

                if response.status_code in self._transient_status_codes and not is_last:
                    await self._backoff(operation_name, attempt, status_code=response.status_code)
                    continue

                raise PaymentGatewayError.from_response(endpoint, response)

        raise PaymentGatewayError(message=f"/{endpoint} exhausted retries")

    async def _backoff(self, operation_name: str, attempt: int, **details: Any) -> None:
        backoff = 2 ** attempt
        logger.warning(
            f"Transient error during {operation_name}, retrying",
            extra_data={
                "attempt": attempt + 1,
                "max_retries": self._max_retries,
                "backoff_seconds": backoff,
                **details,
            },
        )
        await asyncio.sleep(backoff)

    async def create_charge(
        self,
        amount_cents: int,
        currency: str,
        payment_method_id: str,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> ChargeResult:
        payload = {
            "amount": amount_cents,
            "currency": currency,
            "payment_method": payment_method_id,
            "metadata": metadata,
        }

        async def _charge() -> httpx.Response:
            return await self._request_with_retry(
                "v1/charges", payload, "create charge", idempotency_key=idempotency_key
            )

        response = await self._circuit_breaker.execute(_charge, timeout_seconds=self._timeout * self._max_retries)
        body = response.json() if response.content else {}

        result = ChargeResult(
            id=body.get("id"),
            status=body.get("status") or (CHARGE_FAILED if response.status_code == 402 else CHARGE_SUCCEEDED),
            amount_cents=int(body.get("amount", amount_cents)),
            currency=body.get("currency", currency),
            failure_reason=body.get("failure_reason") or body.get("error"),
            raw=body,
        )
        logger.info(
            "Payment charge processed",
            extra_data={
                "charge_id": result.id,
                "status": result.status,
                "amount_cents": result.amount_cents,
                "payment_method": mask_secret(payment_method_id),
                "idempotency_key": idempotency_key,
            },
        )
        return result

    async def create_refund(self, charge_id: str, amount_cents: int, reason: str) -> RefundResult:
        payload = {"charge": charge_id, "amount": amount_cents, "reason": reason}

        async def _refund() -> httpx.Response:
            return await self._request_with_retry(
                "v1/refunds", payload, "create refund", idempotency_key=f"refund:{charge_id}:{amount_cents}"
            )

        response = await self._circuit_breaker.execute(_refund, timeout_seconds=self._timeout * self._max_retries)
        if response.status_code == 402:
            raise PaymentGatewayError.from_response("v1/refunds", response, message="refund declined")

        body = response.json()
        logger.info(
            "Payment refund processed",
            extra_data={"charge_id": charge_id, "refund_id": body.get("id"), "amount_cents": amount_cents},
        )
        return RefundResult(
            id=body["id"],
            charge_id=charge_id,
            amount_cents=int(body.get("amount", amount_cents)),
            status=body.get("status", "succeeded"),
        )


def create_payment_gateway() -> BasePaymentGateway:
    return HttpPaymentGateway(circuit_breaker=get_payment_gateway_circuit_breaker())
