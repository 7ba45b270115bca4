"""SQLAlchemy ORM models for the sublease agreement engine.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (no TIMESTAMPTZ)
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    text,
)
from sqlalchemy.sql import func

from sublease_platform.domain.enums import AgreementStatus, PaymentStatus
from sublease_platform.infra.database import Base

# Statuses in which an agreement is still being negotiated. At most one
# agreement per (property, tenant) may sit in any of these at a time.
NON_TERMINAL_STATUSES = (
    AgreementStatus.DRAFT,
    AgreementStatus.PENDING_TENANT_SIGNATURE,
    AgreementStatus.PENDING_LISTER_SIGNATURE,
)

_ACTIVE_PAIR_WHERE = text(
    "status IN ({})".format(", ".join(f"'{s.value}'" for s in NON_TERMINAL_STATUSES))
)


# ---------------------------------------------------------------------------
# Directory (read-only to the agreement engine)
# ---------------------------------------------------------------------------


class User(Base):
    """Platform user; either side of an agreement."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())


class Property(Base):
    """Sublease listing owned by a lister."""

    __tablename__ = "properties"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    address = Column(String(500), nullable=True)
    rent_cents = Column(Integer, nullable=True)  # monthly rent, smallest currency unit
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())


# ---------------------------------------------------------------------------
# Agreement
# ---------------------------------------------------------------------------


class Agreement(Base):
    """Sublease agreement between exactly one lister and one tenant."""

    __tablename__ = "agreements"
    __table_args__ = (
        Index(
            "uq_agreements_active_pair",
            "property_id",
            "tenant_id",
            unique=True,
            sqlite_where=_ACTIVE_PAIR_WHERE,
            postgresql_where=_ACTIVE_PAIR_WHERE,
        ),
        Index("ix_agreements_lister_status", "lister_id", "status"),
        Index("ix_agreements_tenant_status", "tenant_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Parties and subject; immutable after creation
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=False)
    lister_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    tenant_id = Column(String(36), ForeignKey("users.id"), nullable=False)

    status = Column(String(40), nullable=False, default=AgreementStatus.DRAFT.value, index=True)

    # Content
    template_body = Column(Text, nullable=False, default="")
    variables = Column(JSON, nullable=False, default=dict)

    # Signatures
    tenant_signature_url = Column(String(1000), nullable=True)
    tenant_signed_at = Column(DateTime, nullable=True)
    tenant_signature_ip = Column(String(45), nullable=True)
    lister_signature_url = Column(String(1000), nullable=True)
    lister_signed_at = Column(DateTime, nullable=True)
    lister_signature_ip = Column(String(45), nullable=True)

    # Declared at signing time; feeds the fee snapshot when known
    tenant_payment_method = Column(String(20), nullable=True)  # PaymentMethod
    lister_payment_method = Column(String(20), nullable=True)  # PaymentMethod

    # Finalization (write-once)
    final_document_url = Column(String(1000), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    payment_snapshot = Column(JSON, nullable=True)

    # Per-party payments
    tenant_payment_status = Column(String(20), nullable=False, default=PaymentStatus.NONE.value)
    tenant_payment_intent_id = Column(String(255), nullable=True)
    tenant_payment_intent_method = Column(String(20), nullable=True)
    tenant_payment_amount_cents = Column(Integer, nullable=True)
    lister_payment_status = Column(String(20), nullable=False, default=PaymentStatus.NONE.value)
    lister_payment_intent_id = Column(String(255), nullable=True)
    lister_payment_intent_method = Column(String(20), nullable=True)
    lister_payment_amount_cents = Column(Integer, nullable=True)

    # Cancellation
    cancelled_by = Column(String(20), nullable=True)  # PartyRole
    cancelled_at = Column(DateTime, nullable=True)

    # Optimistic concurrency: every UPDATE is guarded by WHERE version = ?
    version = Column(Integer, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}


class AgreementEvent(Base):
    """Immutable audit trail entry for agreement actions."""

    __tablename__ = "agreement_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    agreement_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(40), nullable=False)  # AgreementEventType
    actor = Column(String(20), nullable=False)  # PartyRole or "system"
    actor_id = Column(String(36), nullable=True)
    from_status = Column(String(40), nullable=True)
    to_status = Column(String(40), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=func.now())
