"""Domain enumerations for the sublease agreement engine.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class AgreementStatus(str, Enum):
    """Lifecycle status of a sublease agreement."""

    DRAFT = "DRAFT"
    PENDING_TENANT_SIGNATURE = "PENDING_TENANT_SIGNATURE"
    PENDING_LISTER_SIGNATURE = "PENDING_LISTER_SIGNATURE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class AgreementAction(str, Enum):
    """Actions a party can attempt against an agreement."""

    EDIT = "edit"
    LOCK = "lock"
    RECALL = "recall"
    SIGN = "sign"
    CANCEL = "cancel"
    DECLINE = "decline"
    DELETE = "delete"
    PAY = "pay"


class PartyRole(str, Enum):
    """Which side of an agreement the acting user is on."""

    LISTER = "lister"
    TENANT = "tenant"
    NONE = "none"


class PaymentStatus(str, Enum):
    """Status of one party's fee payment."""

    NONE = "NONE"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class PaymentMethod(str, Enum):
    """How a party pays their service fee."""

    CARD = "card"
    BANK_TRANSFER = "bank_transfer"


class AgreementEventType(str, Enum):
    """Type of event in the agreement audit trail."""

    INITIATED = "initiated"
    DRAFT_UPDATED = "draft_updated"
    LOCKED = "locked"
    RECALLED = "recalled"
    TENANT_SIGNED = "tenant_signed"
    LISTER_SIGNED = "lister_signed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    DELETED = "deleted"
    PAYMENT_STARTED = "payment_started"
    PAYMENT_RESULT = "payment_result"


class NotificationEvent(str, Enum):
    """Events pushed to the notification sink."""

    AGREEMENT_LOCKED = "agreement_locked"
    AGREEMENT_RECALLED = "agreement_recalled"
    AGREEMENT_SIGNED = "agreement_signed"
    AGREEMENT_COMPLETED = "agreement_completed"
    AGREEMENT_CANCELLED = "agreement_cancelled"
    AGREEMENT_DECLINED = "agreement_declined"
    PAYMENT_PROCESSING = "payment_processing"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
