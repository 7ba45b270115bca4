"""Payment processor client wrapping the Stripe PaymentIntents REST API.

Money movement happens entirely on the processor side: this client opens
a client-completable PaymentIntent and later parses the processor's signed
webhook callbacks into per-party payment results.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from sublease_platform.app.config import get_settings
from sublease_platform.domain.enums import PartyRole, PaymentMethod, PaymentStatus
from sublease_platform.domain.exceptions import DependencyError, ValidationError

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10.0
_SIGNATURE_TOLERANCE_SECONDS = 300

# Processor payment_method_types per payment method
METHOD_TYPES: dict[PaymentMethod, str] = {
    PaymentMethod.CARD: "card",
    PaymentMethod.BANK_TRANSFER: "us_bank_account",
}

# Webhook event type -> resulting payment status. Other events are ignored.
EVENT_STATUS: dict[str, PaymentStatus] = {
    "payment_intent.processing": PaymentStatus.PROCESSING,
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
}

# Intent states in which the intent can still be completed client-side
OPEN_INTENT_STATES = {
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "processing",
}


@dataclass(frozen=True)
class PaymentHandle:
    """What the client needs to complete one party's payment."""

    intent_id: str
    client_secret: str
    amount_cents: int
    currency: str
    party: PartyRole
    payment_method: PaymentMethod

    def to_dict(self) -> dict:
        return {
            "intent_id": self.intent_id,
            "client_secret": self.client_secret,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "party": self.party.value,
            "payment_method": self.payment_method.value,
        }


@dataclass(frozen=True)
class PaymentResult:
    """A processor callback reduced to what the payment tracker needs."""

    agreement_id: str
    party: PartyRole
    status: PaymentStatus
    intent_id: Optional[str] = None
    event_id: Optional[str] = None


class PaymentProcessor:
    """Async client for the processor's REST API."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        currency: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self._secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self._webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        )
        self._api_base = (api_base or settings.stripe_api_base).rstrip("/")
        self.currency = currency or settings.payment_currency
        self._transport = transport

    # ------------------------------------------------------------------
    # PaymentIntents
    # ------------------------------------------------------------------

    async def create_payment_intent(
        self,
        amount_cents: int,
        party: PartyRole,
        payment_method: PaymentMethod,
        metadata: dict[str, str],
        receipt_email: Optional[str] = None,
    ) -> PaymentHandle:
        """Open a PaymentIntent for one party's fee."""
        form = {
            "amount": str(int(amount_cents)),
            "currency": self.currency,
            "payment_method_types[]": METHOD_TYPES[payment_method],
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = str(value)
        if receipt_email:
            form["receipt_email"] = receipt_email

        data = await self._request("POST", "/payment_intents", data=form)
        logger.info(
            "Opened payment intent %s for %s (%d %s, %s)",
            data.get("id"), party.value, amount_cents, self.currency, payment_method.value,
        )
        return PaymentHandle(
            intent_id=data["id"],
            client_secret=data["client_secret"],
            amount_cents=int(data.get("amount", amount_cents)),
            currency=data.get("currency", self.currency),
            party=party,
            payment_method=payment_method,
        )

    async def retrieve_payment_intent(self, intent_id: str) -> dict:
        return await self._request("GET", f"/payment_intents/{intent_id}")

    async def cancel_payment_intent(self, intent_id: str) -> dict:
        return await self._request("POST", f"/payment_intents/{intent_id}/cancel")

    async def _request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        if not self._secret_key:
            raise DependencyError("payment processor", "no API key configured")
        try:
            async with httpx.AsyncClient(
                base_url=self._api_base,
                timeout=_TIMEOUT_SECONDS,
                auth=(self._secret_key, ""),
                transport=self._transport,
            ) as client:
                resp = await client.request(method, path, data=data)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error("Payment processor HTTP error on %s %s: %s", method, path, exc)
            raise DependencyError("payment processor", f"HTTP {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            logger.error("Payment processor request failed on %s %s: %s", method, path, exc)
            raise DependencyError("payment processor", str(exc)) from exc

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, signature_header: Optional[str], now: Optional[float] = None) -> dict:
        """Verify a ``Stripe-Signature`` header and return the decoded event.

        The header carries ``t=<timestamp>,v1=<hex hmac>``; the signed
        message is ``"<timestamp>." + payload``.

        Raises:
            ValidationError: missing/invalid signature, stale timestamp or bad JSON.
            DependencyError: no webhook secret configured.
        """
        if not self._webhook_secret:
            raise DependencyError("payment processor", "no webhook secret configured")
        if not signature_header:
            raise ValidationError("Missing webhook signature")

        timestamp = None
        signatures: list[str] = []
        for part in signature_header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if not timestamp or not signatures:
            raise ValidationError("Malformed webhook signature header")

        signed = f"{timestamp}.".encode() + payload
        expected = hmac.new(self._webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
        if not any(hmac.compare_digest(expected, sig) for sig in signatures):
            raise ValidationError("Invalid webhook signature")

        try:
            age = (now if now is not None else time.time()) - int(timestamp)
        except ValueError:
            raise ValidationError("Malformed webhook timestamp")
        if abs(age) > _SIGNATURE_TOLERANCE_SECONDS:
            raise ValidationError("Webhook timestamp outside tolerance")

        try:
            return json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValidationError("Webhook payload is not valid JSON") from exc


def parse_payment_event(event: dict) -> Optional[PaymentResult]:
    """Reduce a processor event to a PaymentResult, or None if irrelevant."""
    status = EVENT_STATUS.get(event.get("type", ""))
    if status is None:
        return None
    intent = (event.get("data") or {}).get("object") or {}
    metadata = intent.get("metadata") or {}
    agreement_id = metadata.get("agreement_id")
    if not agreement_id:
        logger.warning("Payment event %s has no agreement_id metadata", event.get("id"))
        return None
    try:
        party = PartyRole(metadata.get("party", ""))
    except ValueError:
        logger.warning("Payment event %s has unknown party %r", event.get("id"), metadata.get("party"))
        return None
    if party == PartyRole.NONE:
        return None
    return PaymentResult(
        agreement_id=agreement_id,
        party=party,
        status=status,
        intent_id=intent.get("id"),
        event_id=event.get("id"),
    )


def get_payment_processor() -> PaymentProcessor:
    """FastAPI dependency: processor configured from settings."""
    return PaymentProcessor()
