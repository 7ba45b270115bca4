"""Service-fee payment routes: start a party's payment and receive processor webhooks."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from sublease_platform.app.routes.auth import get_current_user_dep
from sublease_platform.app.routes.errors import to_http
from sublease_platform.domain.exceptions import AgreementError, NotFoundError, ValidationError
from sublease_platform.domain.models import User
from sublease_platform.domain.schemas import PaymentBegin, PaymentHandleResponse, WebhookAck
from sublease_platform.infra.database import get_db
from sublease_platform.infra.payment_processor import (
    PaymentProcessor,
    get_payment_processor,
    parse_payment_event,
)
from sublease_platform.services.notification_service import (
    NotificationService,
    get_notification_service,
)
from sublease_platform.services.payment_tracker import PaymentTracker

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


def get_payment_tracker(
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    notifier: NotificationService = Depends(get_notification_service),
) -> PaymentTracker:
    return PaymentTracker(db, processor=processor, notifier=notifier)


@router.post("/api/agreements/{agreement_id}/payments", response_model=PaymentHandleResponse)
async def begin_payment(
    agreement_id: str,
    data: PaymentBegin,
    user: User = Depends(get_current_user_dep),
    tracker: PaymentTracker = Depends(get_payment_tracker),
):
    """Open the caller's own service-fee payment on a completed agreement."""
    try:
        handle = await tracker.begin_payment(agreement_id, user.id, data.method)
    except AgreementError as e:
        raise to_http(e)
    return handle.to_dict()


@router.post("/api/payments/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    processor: PaymentProcessor = Depends(get_payment_processor),
    tracker: PaymentTracker = Depends(get_payment_tracker),
):
    """Receive a signed payment result from the processor."""
    payload = await request.body()
    try:
        event = processor.verify_webhook(payload, request.headers.get("Stripe-Signature"))
    except ValidationError as e:
        logger.warning("Rejected payment webhook: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())
    except AgreementError as e:
        raise to_http(e)

    result = parse_payment_event(event)
    if result is None:
        logger.debug("Ignoring payment webhook event %s (%s)", event.get("id"), event.get("type"))
        return WebhookAck(applied=False)

    try:
        applied = await tracker.record_payment_result(result)
    except NotFoundError:
        logger.warning("Payment webhook for unknown agreement %s", result.agreement_id)
        return WebhookAck(applied=False)
    except AgreementError as e:
        raise to_http(e)
    return WebhookAck(applied=applied)
