"""
Mobile money gateway (ZenoPay) client and the create-order attempt engine.

The gateway is picky about phone format and the (undocumented) channel hint.
The engine walks a bounded, ordered list of variants and stops at the first
accepted attempt:

    local          + channel, local          (no channel)
    country code   + channel, country code   (no channel)
    +country code  + channel, +country code  (no channel)

Without a resolved channel only the three "no channel" variants are tried.
Attempts are sequential: the gateway keeps state per phone+channel.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import pybreaker

from checkout.core.config import settings
from checkout.models.payment_session import PaymentSession
from checkout.services.circuit_breaker import get_circuit_breaker
from checkout.services.payments.config import get_gateway_ok_statuses
from checkout.services.payments.errors import GatewayError, GatewayRejected
from checkout.services.payments.phone import mask_phone, phone_variants
from checkout.utils.metrics import gateway_attempts_total, gateway_request_duration_seconds

logger = logging.getLogger(__name__)

CREATE_ORDER_PATH = "/mobile_money_tanzania"
ORDER_STATUS_PATH = "/order-status"


class GatewayClient(Protocol):
    def create_order(
        self,
        *,
        order_id: str,
        buyer_name: str,
        buyer_phone: str,
        buyer_email: str,
        amount: int,
        webhook_url: str | None = None,
        channel: str | None = None,
    ) -> dict[str, Any]: ...

    def get_order_status(self, order_id: str) -> dict[str, Any]: ...


class ZenoPayClient:
    """
    Sync ZenoPay client (httpx). Usable from API handlers and Celery workers.
    5xx and transport failures count towards the shared circuit breaker.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        status_timeout: float | None = None,
        breaker: pybreaker.CircuitBreaker | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._base_url = (base_url or settings.zenopay_base_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.zenopay_api_key
        self._timeout = timeout or settings.gateway_timeout_seconds
        self._status_timeout = status_timeout or settings.gateway_status_timeout_seconds
        self._breaker = breaker
        self._client = http_client

    @property
    def breaker(self) -> pybreaker.CircuitBreaker:
        if self._breaker is None:
            self._breaker = get_circuit_breaker("zenopay")
        return self._breaker

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(
                headers={"Accept": "application/json", "x-api-key": self._api_key},
            )
        return self._client

    def _send(self, method: str, url: str, timeout: float, **kwargs: Any) -> httpx.Response:
        resp = self.client.request(method, url, timeout=timeout, **kwargs)
        if resp.status_code >= 500:
            raise GatewayError(
                f"Gateway {method} failed ({resp.status_code}): {resp.text[:500]}",
                status_code=resp.status_code,
            )
        return resp

    def _request(self, operation: str, method: str, path: str, timeout: float, **kwargs: Any) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        start = time.time()
        try:
            resp = self.breaker.call(self._send, method, url, timeout, **kwargs)
        finally:
            gateway_request_duration_seconds.labels(operation=operation).observe(time.time() - start)
        if not resp.is_success:
            raise GatewayError(
                f"Gateway {operation} failed ({resp.status_code}): {resp.text[:500]}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError:
            return {"raw": resp.text}
        return data if isinstance(data, dict) else {"data": data}

    def create_order(
        self,
        *,
        order_id: str,
        buyer_name: str,
        buyer_phone: str,
        buyer_email: str,
        amount: int,
        webhook_url: str | None = None,
        channel: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "order_id": order_id,
            "buyer_name": buyer_name,
            "buyer_phone": buyer_phone,
            "buyer_email": buyer_email,
            "amount": amount,
        }
        if webhook_url:
            payload["webhook_url"] = webhook_url
        if channel:
            payload["channel"] = channel
        return self._request("create_order", "POST", CREATE_ORDER_PATH, self._timeout, json=payload)

    def get_order_status(self, order_id: str) -> dict[str, Any]:
        return self._request(
            "order_status", "GET", ORDER_STATUS_PATH, self._status_timeout, params={"order_id": order_id}
        )

    def close(self) -> None:
        """Close httpx client."""
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.warning("gateway_client_close_failed", extra={"error": str(e)})
            finally:
                self._client = None


# ----------------------------------------------------------------------
# Attempt engine
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class BuyerInfo:
    name: str
    email: str
    webhook_url: str


@dataclass(frozen=True)
class AttemptVariant:
    phone_format: str
    phone: str
    channel: str | None = None

    def describe(self) -> dict[str, Any]:
        return {
            "phone_format": self.phone_format,
            "phone": mask_phone(self.phone),
            "with_channel": self.channel is not None,
            "channel": self.channel,
        }


@dataclass(frozen=True)
class AttemptResult:
    variant: AttemptVariant
    accepted: bool
    reason: str | None = None
    response: dict[str, Any] | None = None

    def describe(self) -> dict[str, Any]:
        return {**self.variant.describe(), "accepted": self.accepted, "reason": self.reason}


@dataclass
class AttemptOutcome:
    accepted: AttemptResult
    attempts: list[AttemptResult] = field(default_factory=list)

    @property
    def gateway_transaction_id(self) -> str | None:
        return extract_gateway_transaction_id(self.accepted.response or {})


def build_variants(phone_number: str, channel: str | None) -> list[AttemptVariant]:
    """At most 6 variants with a channel, 3 without. Raises InvalidPhoneFormat."""
    variants: list[AttemptVariant] = []
    for phone_format, phone in phone_variants(phone_number):
        if channel:
            variants.append(AttemptVariant(phone_format, phone, channel))
        variants.append(AttemptVariant(phone_format, phone, None))
    return variants


def extract_gateway_transaction_id(resp: dict[str, Any]) -> str | None:
    data = resp.get("data") if isinstance(resp.get("data"), dict) else {}
    for value in (data.get("order_id"), resp.get("order_id"), resp.get("transaction_id"), data.get("transaction_id")):
        if value:
            return str(value)
    return None


class AttemptEngine:
    def __init__(self, client: GatewayClient, ok_statuses: set[str] | None = None) -> None:
        self.client = client
        self.ok_statuses = ok_statuses if ok_statuses is not None else get_gateway_ok_statuses()

    def run(self, session: PaymentSession, buyer: BuyerInfo, channel: str | None) -> AttemptOutcome:
        """Fold over the variants; first accepted attempt wins, exhaustion raises GatewayRejected."""
        results: list[AttemptResult] = []
        for number, variant in enumerate(build_variants(session.phone_number, channel), start=1):
            result = self._attempt(session, buyer, variant)
            results.append(result)
            gateway_attempts_total.labels(
                phone_format=variant.phone_format,
                with_channel=str(variant.channel is not None).lower(),
                outcome="accepted" if result.accepted else "rejected",
            ).inc()
            logger.info(
                "gateway_attempt",
                extra={
                    "transaction_reference": session.transaction_reference,
                    "attempt": number,
                    "phone": mask_phone(variant.phone),
                    "channel": variant.channel,
                    "status": "accepted" if result.accepted else "rejected",
                    "reason": result.reason,
                },
            )
            if result.accepted:
                return AttemptOutcome(accepted=result, attempts=results)

        last_reason = results[-1].reason if results else "No gateway attempt was made"
        raise GatewayRejected(
            last_reason or "Failed to initiate mobile money payment",
            attempts=[r.describe() for r in results],
        )

    def _attempt(self, session: PaymentSession, buyer: BuyerInfo, variant: AttemptVariant) -> AttemptResult:
        try:
            resp = self.client.create_order(
                order_id=session.transaction_reference,
                buyer_name=buyer.name,
                buyer_phone=variant.phone,
                buyer_email=buyer.email,
                amount=int(session.amount),
                webhook_url=buyer.webhook_url,
                channel=variant.channel,
            )
        except httpx.TimeoutException:
            return AttemptResult(variant, False, "Gateway request timed out")
        except pybreaker.CircuitBreakerError:
            return AttemptResult(variant, False, "Gateway circuit open: service temporarily unavailable")
        except GatewayError as e:
            return AttemptResult(variant, False, e.message)
        except httpx.HTTPError as e:
            return AttemptResult(variant, False, f"Gateway network error: {e}")

        resp = resp or {}
        status = str(resp.get("status") or "").strip().lower()
        if status and status not in self.ok_statuses:
            return AttemptResult(
                variant, False, str(resp.get("message") or f"Gateway returned status={status}"), resp
            )
        return AttemptResult(variant, True, None, resp)
