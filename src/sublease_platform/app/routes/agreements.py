"""Sublease agreement routes: draft, lock, sign, cancel and read."""

import base64
import binascii
import logging

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from sublease_platform.app.routes.auth import get_current_user_dep
from sublease_platform.app.routes.errors import to_http
from sublease_platform.domain.enums import AgreementStatus
from sublease_platform.domain.exceptions import AgreementError, ValidationError
from sublease_platform.domain.models import User
from sublease_platform.domain.schemas import (
    AgreementInitiate,
    AgreementResponse,
    AgreementSignRequest,
    DraftUpdate,
)
from sublease_platform.infra.database import get_db
from sublease_platform.infra.object_storage import ObjectStorage, get_object_storage
from sublease_platform.services.agreement_service import AgreementService
from sublease_platform.services.notification_service import (
    NotificationService,
    get_notification_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/agreements", tags=["agreements"])

_DATA_URL_PREFIX = "base64,"


def get_agreement_service(
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_object_storage),
    notifier: NotificationService = Depends(get_notification_service),
) -> AgreementService:
    return AgreementService(db, storage=storage, notifier=notifier)


def _decode_signature(value: str) -> bytes:
    """Accept raw base64 or a ``data:image/png;base64,...`` URL."""
    payload = value.split(_DATA_URL_PREFIX, 1)[1] if _DATA_URL_PREFIX in value else value
    try:
        return base64.b64decode(payload.strip(), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Signature is not valid base64")


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.post("/initiate", response_model=AgreementResponse)
async def initiate_agreement(
    data: AgreementInitiate,
    user: User = Depends(get_current_user_dep),
    service: AgreementService = Depends(get_agreement_service),
):
    """Open a draft with a tenant, or return the one already in progress."""
    try:
        agreement = await service.initiate(data.property_id, data.tenant_id, user.id)
    except AgreementError as e:
        raise to_http(e)
    return service.describe(agreement, user.id)


@router.get("/mine", response_model=list[AgreementResponse])
async def list_my_agreements(
    status_filter: AgreementStatus | None = Query(None, alias="status"),
    user: User = Depends(get_current_user_dep),
    service: AgreementService = Depends(get_agreement_service),
):
    agreements = await service.list_for_user(user.id, status_filter)
    return [service.describe(a, user.id) for a in agreements]


@router.get("/{agreement_id}", response_model=AgreementResponse)
async def get_agreement(
    agreement_id: str,
    user: User = Depends(get_current_user_dep),
    service: AgreementService = Depends(get_agreement_service),
):
    try:
        return await service.get(agreement_id, user.id)
    except AgreementError as e:
        raise to_http(e)


@router.put("/{agreement_id}/draft", response_model=AgreementResponse)
async def update_draft(
    agreement_id: str,
    data: DraftUpdate,
    user: User = Depends(get_current_user_dep),
    service: AgreementService = Depends(get_agreement_service),
):
    try:
        agreement = await service.update_draft(
            agreement_id, user.id, template_body=data.template_body, variables=data.variables
        )
    except AgreementError as e:
        raise to_http(e)
    return service.describe(agreement, user.id)


@router.post("/{agreement_id}/lock", response_model=AgreementResponse)
async def lock_agreement(
    agreement_id: str,
    user: User = Depends(get_current_user_dep),
    service: AgreementService = Depends(get_agreement_service),
):
    """Freeze the draft and send it to the tenant."""
    try:
        agreement = await service.lock(agreement_id, user.id)
    except AgreementError as e:
        raise to_http(e)
    return service.describe(agreement, user.id)


@router.post("/{agreement_id}/recall", response_model=AgreementResponse)
async def recall_agreement(
    agreement_id: str,
    user: User = Depends(get_current_user_dep),
    service: AgreementService = Depends(get_agreement_service),
):
    try:
        agreement = await service.recall(agreement_id, user.id)
    except AgreementError as e:
        raise to_http(e)
    return service.describe(agreement, user.id)


@router.post("/{agreement_id}/sign", response_model=AgreementResponse)
async def sign_agreement(
    agreement_id: str,
    data: AgreementSignRequest,
    request: Request,
    user: User = Depends(get_current_user_dep),
    service: AgreementService = Depends(get_agreement_service),
):
    """Sign as tenant, or countersign as lister to complete the agreement."""
    try:
        image = _decode_signature(data.signature)
        agreement = await service.sign(
            agreement_id,
            user.id,
            image,
            signer_ip=_client_ip(request),
            payment_method=data.payment_method.value if data.payment_method else None,
        )
    except AgreementError as e:
        raise to_http(e)
    return service.describe(agreement, user.id)


@router.post("/{agreement_id}/cancel", response_model=AgreementResponse)
async def cancel_agreement(
    agreement_id: str,
    user: User = Depends(get_current_user_dep),
    service: AgreementService = Depends(get_agreement_service),
):
    try:
        agreement = await service.cancel(agreement_id, user.id)
    except AgreementError as e:
        raise to_http(e)
    return service.describe(agreement, user.id)


@router.post("/{agreement_id}/decline", response_model=AgreementResponse)
async def decline_agreement(
    agreement_id: str,
    user: User = Depends(get_current_user_dep),
    service: AgreementService = Depends(get_agreement_service),
):
    try:
        agreement = await service.decline(agreement_id, user.id)
    except AgreementError as e:
        raise to_http(e)
    return service.describe(agreement, user.id)


@router.delete("/{agreement_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_draft(
    agreement_id: str,
    user: User = Depends(get_current_user_dep),
    service: AgreementService = Depends(get_agreement_service),
):
    try:
        await service.delete_draft(agreement_id, user.id)
    except AgreementError as e:
        raise to_http(e)
