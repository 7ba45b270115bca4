"""Pydantic v2 schemas for API request/response validation."""

from datetime import datetime

from pydantic import BaseModel, Field

from sublease_platform.domain.enums import PaymentMethod


# ---------------------------------------------------------------------------
# Agreements
# ---------------------------------------------------------------------------


class AgreementInitiate(BaseModel):
    """Lister opens a draft with a tenant for one of their properties."""

    property_id: str
    tenant_id: str


class DraftUpdate(BaseModel):
    """Replace the template body and/or the full variables map of a draft."""

    template_body: str | None = None
    variables: dict[str, str | None] | None = None


class AgreementSignRequest(BaseModel):
    """Signature image as a base64 PNG, optionally wrapped in a data URL."""

    signature: str = Field(..., min_length=1)
    payment_method: PaymentMethod | None = None


class SignatureResponse(BaseModel):
    url: str
    signed_at: datetime | None = None


class AgreementResponse(BaseModel):
    """Read-only projection of an agreement for one of its parties."""

    id: str
    property_id: str
    lister_id: str
    tenant_id: str
    status: str
    template_body: str
    variables: dict[str, str]
    placeholders: list[str]
    unfilled: list[str]
    rendered_body: str
    tenant_signature: SignatureResponse | None = None
    lister_signature: SignatureResponse | None = None
    final_document_url: str | None = None
    completed_at: datetime | None = None
    payment_snapshot: dict | None = None
    tenant_payment_status: str
    lister_payment_status: str
    is_fully_settled: bool
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    version: int
    created_at: datetime | None = None
    updated_at: datetime | None = None
    role: str
    allowed_actions: list[str]


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentBegin(BaseModel):
    method: PaymentMethod


class PaymentHandleResponse(BaseModel):
    """What the client needs to complete the payment with the processor."""

    intent_id: str
    client_secret: str
    amount_cents: int
    currency: str
    party: str
    payment_method: str


class WebhookAck(BaseModel):
    received: bool = True
    applied: bool = False
