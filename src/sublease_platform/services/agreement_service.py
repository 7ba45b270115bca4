"""Agreement Service: every lifecycle operation on a sublease agreement.

Each public method is one unit of work: load, validate against the state
machine, mutate, append an audit event, commit. The commit is guarded by
``Agreement.version`` so two racing transitions can never both apply; the
loser is re-validated against fresh state and surfaces either an
InvalidTransitionError ("already locked") or a ConcurrentModificationError.

Notifications go out only after the commit and never raise.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Mapping, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from sublease_platform.app.config import get_settings
from sublease_platform.domain.enums import (
    AgreementAction,
    AgreementEventType,
    AgreementStatus,
    NotificationEvent,
    PartyRole,
    PaymentMethod,
)
from sublease_platform.domain.exceptions import (
    AgreementError,
    ConcurrentModificationError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from sublease_platform.domain.models import NON_TERMINAL_STATUSES, Agreement, AgreementEvent
from sublease_platform.infra.object_storage import PNG_MAGIC, ObjectStorage
from sublease_platform.services import fee_calculator, variable_binder
from sublease_platform.services.agreement_state_machine import (
    AgreementStateMachine,
    resolve_role,
    to_status,
)
from sublease_platform.services.directory_service import DirectoryService
from sublease_platform.services.finalization import (
    finalize,
    require_positive_rent,
    resolve_rent_cents,
)
from sublease_platform.services.notification_service import NotificationService
from sublease_platform.services.payment_tracker import can_begin_payment, is_fully_settled

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = """<h3>Sublease Agreement</h3>
<p>This sublease is made between <strong>{{Subletter_Name}}</strong> (Subletter) and <strong>{{Subtenant_Name}}</strong> (Subtenant) for the property at <strong>{{Address}}</strong>.</p>
<p>The tenant agrees to pay a monthly rent of <strong>{{Rent_Amount}}</strong>.</p>
<p>Lease Start Date: <strong>{{Start_Date}}</strong></p>
<p>Lease End Date: <strong>{{End_Date}}</strong></p>
<p>Security Deposit: <strong>{{Security_Deposit}}</strong></p>
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_variables(variables: Mapping[str, object]) -> dict[str, str]:
    bad = variable_binder.invalid_identifiers(variables)
    if bad:
        raise ValidationError(
            "Invalid variable names: " + ", ".join(repr(name) for name in bad)
        )
    return {key: "" if value is None else str(value) for key, value in variables.items()}


class AgreementService:
    """Lifecycle operations for sublease agreements."""

    def __init__(
        self,
        db: AsyncSession,
        storage: Optional[ObjectStorage] = None,
        notifier: Optional[NotificationService] = None,
        state_machine: Optional[AgreementStateMachine] = None,
    ):
        self.db = db
        self.storage = storage or ObjectStorage()
        self.notifier = notifier or NotificationService()
        self.state_machine = state_machine or AgreementStateMachine()
        self.directory = DirectoryService(db)
        self.currency = get_settings().payment_currency

    # ------------------------------------------------------------------
    # Loading and persistence helpers
    # ------------------------------------------------------------------

    async def _find(self, agreement_id: str) -> Optional[Agreement]:
        result = await self.db.execute(
            select(Agreement)
            .where(Agreement.id == agreement_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _load(self, agreement_id: str) -> Agreement:
        agreement = await self._find(agreement_id)
        if agreement is None:
            raise NotFoundError(f"Agreement {agreement_id} not found")
        return agreement

    async def _find_active(self, property_id: str, tenant_id: str) -> Optional[Agreement]:
        result = await self.db.execute(
            select(Agreement)
            .where(
                Agreement.property_id == property_id,
                Agreement.tenant_id == tenant_id,
                Agreement.status.in_([s.value for s in NON_TERMINAL_STATUSES]),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    def _authorize(self, agreement: Agreement, acting_user_id: str, action: AgreementAction):
        """Resolve the acting party and the status *action* leads to."""
        role = resolve_role(agreement, acting_user_id)
        target = self.state_machine.validate_transition(
            to_status(agreement.status), action, role, agreement
        )
        return role, target

    def _record(
        self,
        agreement: Agreement,
        event_type: AgreementEventType,
        role: PartyRole,
        acting_user_id: Optional[str],
        from_status: Optional[str],
        data: Optional[dict] = None,
    ) -> None:
        self.db.add(AgreementEvent(
            id=str(uuid.uuid4()),
            agreement_id=agreement.id,
            event_type=event_type.value,
            actor=role.value,
            actor_id=acting_user_id,
            from_status=from_status,
            to_status=agreement.status,
            data=data,
        ))

    def _apply(self, agreement: Agreement, target: AgreementStatus, action: AgreementAction, acting_user_id: str) -> str:
        old_status = agreement.status
        agreement.status = target.value
        agreement.updated_at = _utcnow()
        logger.info(
            "Agreement %s: %s → %s (action=%s, user=%s)",
            agreement.id, old_status, target.value, action.value, acting_user_id,
        )
        return old_status

    async def _commit(self, agreement_id: str, action: AgreementAction, role: PartyRole) -> None:
        """Commit the unit of work; a lost version race is re-judged on fresh state."""
        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            logger.warning("Agreement %s: %s lost a concurrent update", agreement_id, action.value)
            fresh = await self._load(agreement_id)
            # Raises InvalidTransitionError when the winner moved the status on
            self.state_machine.validate_transition(to_status(fresh.status), action, role, fresh)
            raise ConcurrentModificationError(agreement_id, action)

    async def _discard(self, urls: list[str]) -> None:
        """Delete objects stored for a unit of work that did not commit."""
        for url in urls:
            try:
                await self.storage.delete(url)
            except AgreementError:
                logger.warning("Could not delete orphaned object %s", url, exc_info=True)

    async def _notify(
        self,
        event: NotificationEvent,
        agreement: Agreement,
        recipient_id: str,
        detail: Optional[str] = None,
    ) -> None:
        try:
            recipient = await self.directory.find_user(recipient_id)
            await self.notifier.notify(event, agreement.id, recipient.email if recipient else None, detail)
        except Exception:
            logger.warning(
                "Notification %s for agreement %s failed", event.value, agreement.id, exc_info=True
            )

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    async def initiate(self, property_id: str, tenant_id: str, lister_id: str) -> Agreement:
        """Open a draft for (property, tenant), or return the one already open."""
        if not tenant_id or not lister_id:
            raise ValidationError("Both a lister and a tenant are required")
        if tenant_id == lister_id:
            raise ValidationError("A lister cannot open an agreement with themselves")

        prop = await self.directory.get_property(property_id, active_only=True)
        if prop.owner_id != lister_id:
            raise PermissionDeniedError("Only the property's lister can start an agreement for it")
        lister = await self.directory.get_user(lister_id)
        tenant = await self.directory.get_user(tenant_id)

        existing = await self._find_active(property_id, tenant_id)
        if existing is not None:
            logger.info(
                "Agreement %s already open for property %s / tenant %s",
                existing.id, property_id, tenant_id,
            )
            return existing

        now = _utcnow()
        variables = variable_binder.reconcile(DEFAULT_TEMPLATE, {
            "Subletter_Name": lister.name,
            "Subtenant_Name": tenant.name,
            "Address": prop.address or "",
            "Rent_Amount": fee_calculator.format_cents(prop.rent_cents) if prop.rent_cents else "",
        })
        agreement = Agreement(
            id=str(uuid.uuid4()),
            property_id=property_id,
            lister_id=lister_id,
            tenant_id=tenant_id,
            status=AgreementStatus.DRAFT.value,
            template_body=DEFAULT_TEMPLATE,
            variables=variables,
            created_at=now,
            updated_at=now,
        )
        self.db.add(agreement)
        self._record(agreement, AgreementEventType.INITIATED, PartyRole.LISTER, lister_id, None)

        try:
            await self.db.commit()
        except IntegrityError:
            # Lost the race to the partial unique index; the winner's draft is the answer
            await self.db.rollback()
            existing = await self._find_active(property_id, tenant_id)
            if existing is None:
                raise
            logger.info("Agreement %s opened concurrently; returning it", existing.id)
            return existing

        logger.info(
            "Agreement %s: initiated for property %s (lister=%s, tenant=%s)",
            agreement.id, property_id, lister_id, tenant_id,
        )
        return agreement

    # ------------------------------------------------------------------
    # Draft editing
    # ------------------------------------------------------------------

    async def update_draft(
        self,
        agreement_id: str,
        acting_user_id: str,
        template_body: Optional[str] = None,
        variables: Optional[Mapping[str, object]] = None,
    ) -> Agreement:
        """Replace the template and/or variables of a DRAFT.

        Variables sent are the complete new map; placeholders in the body
        with no entry are added back empty.
        """
        agreement = await self._load(agreement_id)
        role, _ = self._authorize(agreement, acting_user_id, AgreementAction.EDIT)

        body = agreement.template_body if template_body is None else template_body
        malformed = variable_binder.malformed_placeholders(body)
        if malformed:
            raise ValidationError("Malformed placeholders: " + ", ".join(malformed))
        new_variables = (
            _normalize_variables(variables) if variables is not None else dict(agreement.variables or {})
        )

        agreement.template_body = body
        agreement.variables = variable_binder.reconcile(body, new_variables)
        agreement.updated_at = _utcnow()
        self._record(
            agreement, AgreementEventType.DRAFT_UPDATED, role, acting_user_id, agreement.status,
            {"placeholders": sorted(variable_binder.extract(body))},
        )
        await self._commit(agreement.id, AgreementAction.EDIT, role)
        logger.info("Agreement %s: draft updated by %s", agreement.id, acting_user_id)
        return agreement

    # ------------------------------------------------------------------
    # Lock / recall
    # ------------------------------------------------------------------

    async def lock(self, agreement_id: str, acting_user_id: str) -> Agreement:
        """Freeze the draft and send it to the tenant for signature."""
        agreement = await self._load(agreement_id)
        role, target = self._authorize(agreement, acting_user_id, AgreementAction.LOCK)

        directory_rent = await self.directory.get_rent_cents(agreement.property_id)
        rent_cents = require_positive_rent(resolve_rent_cents(agreement.variables, directory_rent))

        old_status = self._apply(agreement, target, AgreementAction.LOCK, acting_user_id)
        self._record(
            agreement, AgreementEventType.LOCKED, role, acting_user_id, old_status,
            {"rent_cents": rent_cents, "unfilled": variable_binder.unfilled(agreement.template_body, agreement.variables)},
        )
        await self._commit(agreement.id, AgreementAction.LOCK, role)

        await self._notify(NotificationEvent.AGREEMENT_LOCKED, agreement, agreement.tenant_id)
        return agreement

    async def recall(self, agreement_id: str, acting_user_id: str) -> Agreement:
        """Pull an unsigned agreement back to DRAFT; template and variables are kept."""
        agreement = await self._load(agreement_id)
        role, target = self._authorize(agreement, acting_user_id, AgreementAction.RECALL)

        old_status = self._apply(agreement, target, AgreementAction.RECALL, acting_user_id)
        self._record(agreement, AgreementEventType.RECALLED, role, acting_user_id, old_status)
        await self._commit(agreement.id, AgreementAction.RECALL, role)

        await self._notify(NotificationEvent.AGREEMENT_RECALLED, agreement, agreement.tenant_id)
        return agreement

    # ------------------------------------------------------------------
    # Sign / countersign
    # ------------------------------------------------------------------

    async def sign(
        self,
        agreement_id: str,
        acting_user_id: str,
        signature_image: bytes,
        signer_ip: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Agreement:
        """Attach the acting party's signature.

        The tenant signs first. The lister's countersign completes the
        agreement and finalizes it in the same commit: the document is
        rendered and stored and the fee snapshot frozen before anything is
        written, so a storage failure leaves the agreement untouched. Objects
        stored for a sign that then fails are deleted again.
        """
        agreement = await self._load(agreement_id)
        role, target = self._authorize(agreement, acting_user_id, AgreementAction.SIGN)

        method = None
        if payment_method:
            try:
                method = PaymentMethod(payment_method).value
            except ValueError:
                raise ValidationError(f"Unknown payment method: {payment_method}")
        if not signature_image:
            raise ValidationError("A signature image is required")
        if not signature_image.startswith(PNG_MAGIC):
            raise ValidationError("Signature image must be a PNG")

        signed_at = _utcnow()
        stored: list[str] = []
        try:
            if role == PartyRole.TENANT:
                signature_url = await self.storage.upload_signature(agreement.id, role, signature_image)
                stored.append(signature_url)

                agreement.tenant_signature_url = signature_url
                agreement.tenant_signed_at = signed_at
                agreement.tenant_signature_ip = signer_ip
                agreement.tenant_payment_method = method
                old_status = self._apply(agreement, target, AgreementAction.SIGN, acting_user_id)
                self._record(
                    agreement, AgreementEventType.TENANT_SIGNED, role, acting_user_id, old_status,
                    {"signature_url": signature_url, "ip": signer_ip, "payment_method": method},
                )
            else:
                prop = await self.directory.get_property(agreement.property_id)
                lister = await self.directory.find_user(agreement.lister_id)
                tenant = await self.directory.find_user(agreement.tenant_id)
                rent_cents = require_positive_rent(resolve_rent_cents(agreement.variables, prop.rent_cents))

                result = await finalize(
                    agreement,
                    self.storage,
                    rent_cents=rent_cents,
                    currency=self.currency,
                    lister_signature_image=signature_image,
                    lister_signed_at=signed_at,
                    lister_payment_method=method,
                    tenant_name=tenant.name if tenant else "",
                    lister_name=lister.name if lister else "",
                    property_title=prop.title,
                )
                stored.append(result.document_url)
                signature_url = await self.storage.upload_signature(agreement.id, role, signature_image)
                stored.append(signature_url)

                agreement.lister_signature_url = signature_url
                agreement.lister_signed_at = signed_at
                agreement.lister_signature_ip = signer_ip
                agreement.lister_payment_method = method
                agreement.final_document_url = result.document_url
                agreement.payment_snapshot = result.payment_snapshot
                agreement.completed_at = signed_at
                old_status = self._apply(agreement, target, AgreementAction.SIGN, acting_user_id)
                self._record(
                    agreement, AgreementEventType.LISTER_SIGNED, role, acting_user_id, old_status,
                    {"signature_url": signature_url, "ip": signer_ip, "payment_method": method},
                )
                self._record(
                    agreement, AgreementEventType.COMPLETED, role, acting_user_id, old_status,
                    {"document_url": result.document_url, "payment_snapshot": result.payment_snapshot},
                )

            await self._commit(agreement.id, AgreementAction.SIGN, role)
        except Exception:
            await self._discard(stored)
            raise

        if role == PartyRole.TENANT:
            await self._notify(NotificationEvent.AGREEMENT_SIGNED, agreement, agreement.lister_id)
        else:
            for party_id in (agreement.tenant_id, agreement.lister_id):
                await self._notify(NotificationEvent.AGREEMENT_COMPLETED, agreement, party_id)
        return agreement

    # ------------------------------------------------------------------
    # Cancel / decline / delete
    # ------------------------------------------------------------------

    async def cancel(self, agreement_id: str, acting_user_id: str) -> Agreement:
        """Lister abandons a not-yet-completed agreement."""
        agreement = await self._load(agreement_id)
        role, target = self._authorize(agreement, acting_user_id, AgreementAction.CANCEL)

        old_status = self._apply(agreement, target, AgreementAction.CANCEL, acting_user_id)
        agreement.cancelled_by = role.value
        agreement.cancelled_at = agreement.updated_at
        self._record(agreement, AgreementEventType.CANCELLED, role, acting_user_id, old_status)
        await self._commit(agreement.id, AgreementAction.CANCEL, role)

        if old_status != AgreementStatus.DRAFT.value:
            await self._notify(NotificationEvent.AGREEMENT_CANCELLED, agreement, agreement.tenant_id)
        return agreement

    async def decline(self, agreement_id: str, acting_user_id: str) -> Agreement:
        """Tenant rejects an agreement sent for their signature."""
        agreement = await self._load(agreement_id)
        role, target = self._authorize(agreement, acting_user_id, AgreementAction.DECLINE)

        old_status = self._apply(agreement, target, AgreementAction.DECLINE, acting_user_id)
        agreement.cancelled_by = role.value
        agreement.cancelled_at = agreement.updated_at
        self._record(agreement, AgreementEventType.DECLINED, role, acting_user_id, old_status)
        await self._commit(agreement.id, AgreementAction.DECLINE, role)

        await self._notify(NotificationEvent.AGREEMENT_DECLINED, agreement, agreement.lister_id)
        return agreement

    async def delete_draft(self, agreement_id: str, acting_user_id: str) -> None:
        """Hard-delete a DRAFT. Anything past DRAFT is archived, never deleted."""
        agreement = await self._load(agreement_id)
        role, _ = self._authorize(agreement, acting_user_id, AgreementAction.DELETE)

        self._record(agreement, AgreementEventType.DELETED, role, acting_user_id, agreement.status)
        await self.db.delete(agreement)
        await self._commit(agreement_id, AgreementAction.DELETE, role)
        logger.info("Agreement %s: draft deleted by %s", agreement_id, acting_user_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, agreement_id: str, acting_user_id: str) -> dict:
        """Read-only projection of an agreement for one of its parties."""
        agreement = await self._load(agreement_id)
        if resolve_role(agreement, acting_user_id) == PartyRole.NONE:
            raise PermissionDeniedError("Only the lister or tenant of this agreement can view it")
        return self.describe(agreement, acting_user_id)

    async def list_for_user(
        self, user_id: str, status: Optional[AgreementStatus] = None
    ) -> list[Agreement]:
        """Agreements where *user_id* is either party, newest first."""
        query = select(Agreement).where(
            or_(Agreement.lister_id == user_id, Agreement.tenant_id == user_id)
        )
        if status is not None:
            query = query.where(Agreement.status == to_status(status).value)
        result = await self.db.execute(query.order_by(Agreement.created_at.desc()))
        return list(result.scalars().all())

    def describe(self, agreement: Agreement, acting_user_id: Optional[str]) -> dict:
        role = resolve_role(agreement, acting_user_id)
        variables = dict(agreement.variables or {})
        allowed = [action.value for action in self.state_machine.get_allowed_actions(agreement, role)]
        if can_begin_payment(agreement, role):
            allowed.append(AgreementAction.PAY.value)
        return {
            "id": agreement.id,
            "property_id": agreement.property_id,
            "lister_id": agreement.lister_id,
            "tenant_id": agreement.tenant_id,
            "status": agreement.status,
            "template_body": agreement.template_body,
            "variables": variables,
            "placeholders": sorted(variable_binder.extract(agreement.template_body)),
            "unfilled": variable_binder.unfilled(agreement.template_body, variables),
            "rendered_body": variable_binder.render(agreement.template_body, variables),
            "tenant_signature": _signature_view(agreement.tenant_signature_url, agreement.tenant_signed_at),
            "lister_signature": _signature_view(agreement.lister_signature_url, agreement.lister_signed_at),
            "final_document_url": agreement.final_document_url,
            "completed_at": agreement.completed_at,
            "payment_snapshot": agreement.payment_snapshot,
            "tenant_payment_status": agreement.tenant_payment_status,
            "lister_payment_status": agreement.lister_payment_status,
            "is_fully_settled": is_fully_settled(agreement),
            "cancelled_by": agreement.cancelled_by,
            "cancelled_at": agreement.cancelled_at,
            "version": agreement.version,
            "created_at": agreement.created_at,
            "updated_at": agreement.updated_at,
            "role": role.value,
            "allowed_actions": allowed,
        }


def _signature_view(url: Optional[str], signed_at: Optional[datetime]) -> Optional[dict]:
    if not url:
        return None
    return {"url": url, "signed_at": signed_at}
