"""Payment Tracker: each party's service-fee payment on a completed agreement.

The tenant and the lister pay separately; neither payment status ever
depends on the other. "Fully settled" is derived from both, never stored.

Payment results arrive from the processor's webhook and race user reads
and writes on the same row, so they are applied with the same version
check as lifecycle transitions and retried against fresh state.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from sublease_platform.domain.enums import (
    AgreementAction,
    AgreementEventType,
    AgreementStatus,
    NotificationEvent,
    PartyRole,
    PaymentMethod,
    PaymentStatus,
)
from sublease_platform.domain.exceptions import (
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from sublease_platform.domain.models import Agreement, AgreementEvent
from sublease_platform.infra.payment_processor import (
    OPEN_INTENT_STATES,
    PaymentHandle,
    PaymentProcessor,
    PaymentResult,
)
from sublease_platform.services import fee_calculator
from sublease_platform.services.agreement_state_machine import resolve_role, to_status
from sublease_platform.services.directory_service import DirectoryService
from sublease_platform.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

MAX_RESULT_ATTEMPTS = 3

# Statuses from which a party may open a (new) payment
PAYABLE_STATUSES = {PaymentStatus.NONE, PaymentStatus.FAILED}

# Which recorded results may follow which. SUCCEEDED is final.
PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.NONE: {PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED},
    PaymentStatus.SUCCEEDED: set(),
}

_RESULT_NOTIFICATIONS = {
    PaymentStatus.PROCESSING: NotificationEvent.PAYMENT_PROCESSING,
    PaymentStatus.SUCCEEDED: NotificationEvent.PAYMENT_RECEIVED,
    PaymentStatus.FAILED: NotificationEvent.PAYMENT_FAILED,
}


def payment_status(agreement, party: PartyRole) -> PaymentStatus:
    return PaymentStatus(getattr(agreement, f"{party.value}_payment_status") or PaymentStatus.NONE.value)


def is_fully_settled(agreement) -> bool:
    """Both parties have paid."""
    return (
        payment_status(agreement, PartyRole.TENANT) == PaymentStatus.SUCCEEDED
        and payment_status(agreement, PartyRole.LISTER) == PaymentStatus.SUCCEEDED
    )


def can_begin_payment(agreement, party: PartyRole) -> bool:
    return (
        party != PartyRole.NONE
        and to_status(agreement.status) == AgreementStatus.COMPLETED
        and payment_status(agreement, party) in PAYABLE_STATUSES
    )


def _counterparty(party: PartyRole) -> PartyRole:
    return PartyRole.LISTER if party == PartyRole.TENANT else PartyRole.TENANT


class PaymentTracker:
    """Starts party payments and records their results."""

    def __init__(
        self,
        db: AsyncSession,
        processor: Optional[PaymentProcessor] = None,
        notifier: Optional[NotificationService] = None,
    ):
        self.db = db
        self.processor = processor or PaymentProcessor()
        self.notifier = notifier or NotificationService()
        self.directory = DirectoryService(db)

    async def _find(self, agreement_id: str) -> Optional[Agreement]:
        result = await self.db.execute(
            select(Agreement)
            .where(Agreement.id == agreement_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Begin payment
    # ------------------------------------------------------------------

    async def begin_payment(
        self, agreement_id: str, acting_user_id: str, method: PaymentMethod | str
    ) -> PaymentHandle:
        """Open (or reopen) the acting party's fee payment.

        The fee is computed from the rent frozen in the payment snapshot. A
        repeat call with the same method while the intent is still open
        returns that intent; a different method replaces it. A processor
        failure leaves the payment status exactly as it was.
        """
        agreement = await self._find(agreement_id)
        if agreement is None:
            raise NotFoundError(f"Agreement {agreement_id} not found")
        party = resolve_role(agreement, acting_user_id)
        if party == PartyRole.NONE:
            raise PermissionDeniedError("Only the lister or tenant of this agreement can pay its fee")

        current_status = to_status(agreement.status)
        if current_status != AgreementStatus.COMPLETED:
            raise InvalidTransitionError(
                AgreementAction.PAY, current_status, "fees can be paid once both parties have signed"
            )
        status = payment_status(agreement, party)
        if status not in PAYABLE_STATUSES:
            raise InvalidTransitionError(
                AgreementAction.PAY, current_status,
                f"the {party.value} payment is already {status.value.lower()}",
            )
        try:
            method = PaymentMethod(method)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {method}")

        snapshot = agreement.payment_snapshot or {}
        quote = fee_calculator.calculate_fee(snapshot.get("rent_cents"), method)

        reused = await self._reuse_open_intent(agreement, party, method, quote.charge_cents)
        if reused is not None:
            return reused

        payer = await self.directory.find_user(acting_user_id)
        handle = await self.processor.create_payment_intent(
            quote.charge_cents,
            party,
            method,
            metadata={
                "agreement_id": agreement.id,
                "party": party.value,
                "fee_cents": str(quote.fee_cents),
            },
            receipt_email=payer.email if payer else None,
        )

        setattr(agreement, f"{party.value}_payment_intent_id", handle.intent_id)
        setattr(agreement, f"{party.value}_payment_intent_method", method.value)
        setattr(agreement, f"{party.value}_payment_amount_cents", quote.charge_cents)
        agreement.updated_at = datetime.now(timezone.utc)
        self._record(agreement, AgreementEventType.PAYMENT_STARTED, party, acting_user_id, {
            "intent_id": handle.intent_id,
            "payment_method": method.value,
            "fee": quote.to_dict(),
        })
        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            logger.warning(
                "Agreement %s: %s payment intent %s not recorded, concurrent update",
                agreement_id, party.value, handle.intent_id,
            )
            raise ConcurrentModificationError(agreement_id, AgreementAction.PAY)

        logger.info(
            "Agreement %s: %s payment started (%s, %d cents, intent %s)",
            agreement.id, party.value, method.value, quote.charge_cents, handle.intent_id,
        )
        return handle

    async def _reuse_open_intent(
        self, agreement: Agreement, party: PartyRole, method: PaymentMethod, amount_cents: int
    ) -> Optional[PaymentHandle]:
        intent_id = getattr(agreement, f"{party.value}_payment_intent_id")
        if not intent_id:
            return None

        intent = await self.processor.retrieve_payment_intent(intent_id)
        intent_status = intent.get("status")
        if intent_status == "succeeded":
            raise InvalidTransitionError(
                AgreementAction.PAY, to_status(agreement.status),
                f"the {party.value} payment already went through and is awaiting confirmation",
            )

        same_method = getattr(agreement, f"{party.value}_payment_intent_method") == method.value
        same_amount = getattr(agreement, f"{party.value}_payment_amount_cents") == amount_cents
        if intent_status in OPEN_INTENT_STATES and same_method and same_amount:
            logger.info("Agreement %s: reusing %s payment intent %s", agreement.id, party.value, intent_id)
            return PaymentHandle(
                intent_id=intent_id,
                client_secret=intent["client_secret"],
                amount_cents=amount_cents,
                currency=intent.get("currency", self.processor.currency),
                party=party,
                payment_method=method,
            )
        if intent_status == "processing":
            raise InvalidTransitionError(
                AgreementAction.PAY, to_status(agreement.status),
                f"the {party.value} payment is already processing",
            )
        if intent_status in OPEN_INTENT_STATES:
            await self.processor.cancel_payment_intent(intent_id)
            logger.info(
                "Agreement %s: cancelled %s payment intent %s to switch method",
                agreement.id, party.value, intent_id,
            )
        return None

    # ------------------------------------------------------------------
    # Record result (webhook)
    # ------------------------------------------------------------------

    async def record_payment_result(self, result: PaymentResult) -> bool:
        """Apply one processor result. Returns True if the stored status changed.

        Replays, results for a superseded intent and results that would move
        a status backwards are ignored.
        """
        for attempt in range(1, MAX_RESULT_ATTEMPTS + 1):
            agreement = await self._find(result.agreement_id)
            if agreement is None:
                raise NotFoundError(f"Agreement {result.agreement_id} not found")

            if to_status(agreement.status) != AgreementStatus.COMPLETED:
                logger.warning(
                    "Agreement %s: ignoring %s payment result on a %s agreement",
                    agreement.id, result.party.value, agreement.status,
                )
                return False

            current_intent = getattr(agreement, f"{result.party.value}_payment_intent_id")
            if result.intent_id and current_intent and result.intent_id != current_intent:
                logger.info(
                    "Agreement %s: ignoring result for superseded %s intent %s",
                    agreement.id, result.party.value, result.intent_id,
                )
                return False

            current = payment_status(agreement, result.party)
            if current == result.status:
                return False
            if result.status not in PAYMENT_TRANSITIONS[current]:
                logger.info(
                    "Agreement %s: ignoring %s payment %s after %s",
                    agreement.id, result.party.value, result.status.value, current.value,
                )
                return False

            setattr(agreement, f"{result.party.value}_payment_status", result.status.value)
            agreement.updated_at = datetime.now(timezone.utc)
            self._record(agreement, AgreementEventType.PAYMENT_RESULT, result.party, None, {
                "from": current.value,
                "to": result.status.value,
                "intent_id": result.intent_id,
                "event_id": result.event_id,
            })
            try:
                await self.db.commit()
            except StaleDataError:
                await self.db.rollback()
                logger.warning(
                    "Agreement %s: payment result lost a concurrent update (attempt %d/%d)",
                    result.agreement_id, attempt, MAX_RESULT_ATTEMPTS,
                )
                continue

            logger.info(
                "Agreement %s: %s payment %s → %s",
                agreement.id, result.party.value, current.value, result.status.value,
            )
            await self._notify_result(agreement, result.party, result.status)
            return True

        raise ConcurrentModificationError(result.agreement_id, AgreementAction.PAY)

    async def _notify_result(self, agreement: Agreement, party: PartyRole, status: PaymentStatus) -> None:
        event = _RESULT_NOTIFICATIONS[status]
        recipients = [(party, None)]
        if status == PaymentStatus.SUCCEEDED:
            recipients.append((_counterparty(party), f"The {party.value} has paid their service fee."))
        for recipient, detail in recipients:
            try:
                user = await self.directory.find_user(getattr(agreement, f"{recipient.value}_id"))
                await self.notifier.notify(event, agreement.id, user.email if user else None, detail)
            except Exception:
                logger.warning(
                    "Notification %s for agreement %s failed", event.value, agreement.id, exc_info=True
                )

    def _record(
        self,
        agreement: Agreement,
        event_type: AgreementEventType,
        party: PartyRole,
        actor_id: Optional[str],
        data: dict,
    ) -> None:
        self.db.add(AgreementEvent(
            id=str(uuid.uuid4()),
            agreement_id=agreement.id,
            event_type=event_type.value,
            actor=party.value if actor_id else "system",
            actor_id=actor_id or "system",
            from_status=agreement.status,
            to_status=agreement.status,
            data=data,
        ))
