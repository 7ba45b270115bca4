"""Finalization: the write-once rendering of a countersigned agreement.

Runs inside the lister's countersign unit of work. The caller commits the
returned document URL and payment snapshot together with the COMPLETED
status, or nothing at all.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional

from sublease_platform.domain.enums import AgreementAction, PartyRole, PaymentMethod
from sublease_platform.domain.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from sublease_platform.infra.object_storage import ObjectStorage
from sublease_platform.services import fee_calculator, variable_binder
from sublease_platform.services.agreement_state_machine import to_status
from sublease_platform.services.document_renderer import SignatureBlock, render_agreement_pdf

logger = logging.getLogger(__name__)

RENT_VARIABLE = "Rent_Amount"


@dataclass(frozen=True)
class FinalizationResult:
    document_url: str
    payment_snapshot: dict


def resolve_rent_cents(variables: Mapping[str, str], directory_rent_cents: Optional[int]) -> Optional[int]:
    """The agreed monthly rent in cents.

    The ``Rent_Amount`` variable wins when it holds a figure; when it is left
    open (blank, TBD) the directory's listed rent is used. Returns None when
    neither is known.

    Raises:
        ValidationError: ``Rent_Amount`` is filled in but is not an amount.
    """
    raw = (variables or {}).get(RENT_VARIABLE)
    if fee_calculator.is_unspecified(raw):
        return directory_rent_cents
    cents = fee_calculator.parse_dollars_to_cents(raw)
    if cents is None:
        raise ValidationError(f"{RENT_VARIABLE} {raw!r} is not a valid amount")
    return cents


def require_positive_rent(rent_cents: Optional[int]) -> int:
    if rent_cents is None:
        raise ValidationError(f"Rent is unknown: fill in {RENT_VARIABLE} before sending for signature")
    if rent_cents <= 0:
        raise ValidationError("Rent must be greater than zero")
    return rent_cents


def build_payment_snapshot(
    rent_cents: int,
    tenant_method: Optional[str],
    lister_method: Optional[str],
    currency: str,
) -> dict:
    """Freeze the fee basis. A party with no declared method gets its fee at payment time."""
    snapshot = {"rent_cents": rent_cents, "currency": currency}
    for party, method in ((PartyRole.TENANT, tenant_method), (PartyRole.LISTER, lister_method)):
        fee_cents = None
        if method:
            fee_cents = fee_calculator.calculate_fee(rent_cents, PaymentMethod(method)).fee_cents
        snapshot[f"{party.value}_payment_method"] = method
        snapshot[f"{party.value}_fee_cents"] = fee_cents
    return snapshot


async def _signature_image(storage: ObjectStorage, url: Optional[str]) -> Optional[bytes]:
    if not url:
        return None
    try:
        return await storage.read(url)
    except NotFoundError:
        logger.warning("Signature image %s missing; rendering without it", url)
        return None


async def finalize(
    agreement,
    storage: ObjectStorage,
    *,
    rent_cents: int,
    currency: str,
    lister_signature_image: bytes,
    lister_signed_at: datetime,
    lister_payment_method: Optional[str],
    tenant_name: str,
    lister_name: str,
    property_title: Optional[str] = None,
) -> FinalizationResult:
    """Render, store and snapshot a countersigned agreement.

    Raises:
        InvalidTransitionError: the agreement already has a final document.
        DependencyError: object storage is unavailable.
    """
    if agreement.final_document_url or agreement.payment_snapshot:
        raise InvalidTransitionError(
            AgreementAction.SIGN, to_status(agreement.status), "agreement has already been finalized"
        )
    require_positive_rent(rent_cents)

    rendered = variable_binder.render(agreement.template_body, agreement.variables or {})
    tenant_image = await _signature_image(storage, agreement.tenant_signature_url)
    signatures = [
        SignatureBlock("Tenant Signature", tenant_name, agreement.tenant_signed_at, tenant_image),
        SignatureBlock("Lister Signature", lister_name, lister_signed_at, lister_signature_image),
    ]
    title = f"Sublease Agreement: {property_title}" if property_title else "Sublease Agreement"
    pdf = await asyncio.to_thread(render_agreement_pdf, rendered, signatures, agreement.id, title)
    document_url = await storage.upload_document(agreement.id, pdf)

    snapshot = build_payment_snapshot(
        rent_cents,
        agreement.tenant_payment_method,
        lister_payment_method,
        currency,
    )
    logger.info("Agreement %s finalized: document %s", agreement.id, document_url)
    return FinalizationResult(document_url=document_url, payment_snapshot=snapshot)
