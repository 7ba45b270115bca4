"""Tests for AgreementService: the full agreement lifecycle against a real session."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from sublease_platform.domain.enums import AgreementAction, AgreementStatus, NotificationEvent
from sublease_platform.domain.exceptions import (
    ConcurrentModificationError,
    DependencyError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from sublease_platform.domain.models import Agreement, AgreementEvent, Property, User
from sublease_platform.infra.database import Base, configure_sqlite
from sublease_platform.services.agreement_service import DEFAULT_TEMPLATE, AgreementService


async def _event_types(db_session, agreement_id):
    result = await db_session.execute(
        select(AgreementEvent.event_type).where(AgreementEvent.agreement_id == agreement_id)
    )
    return sorted(result.scalars().all())


def _stored(storage, pattern):
    return sorted(storage.root.glob(pattern))


async def _locked(agreement_service, parties):
    agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
    return await agreement_service.lock(agreement.id, parties.lister.id)


# ---------------------------------------------------------------------------
# Initiate
# ---------------------------------------------------------------------------


class TestInitiate:
    async def test_creates_draft_from_default_template(self, agreement_service, parties):
        agreement = await agreement_service.initiate(
            parties.property.id, parties.tenant.id, parties.lister.id
        )
        assert agreement.status == AgreementStatus.DRAFT.value
        assert agreement.template_body == DEFAULT_TEMPLATE
        assert agreement.variables["Subletter_Name"] == "Lena Lister"
        assert agreement.variables["Subtenant_Name"] == "Tom Tenant"
        assert agreement.variables["Rent_Amount"] == "$2,000.00"
        assert agreement.variables["Start_Date"] == ""
        assert agreement.version == 1

    async def test_is_idempotent_for_open_pair(self, agreement_service, parties):
        first = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        second = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        assert first.id == second.id

    async def test_returns_existing_even_after_lock(self, agreement_service, parties):
        locked = await _locked(agreement_service, parties)
        again = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        assert again.id == locked.id
        assert again.status == AgreementStatus.PENDING_TENANT_SIGNATURE.value

    async def test_new_agreement_after_cancel(self, agreement_service, parties):
        first = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        await agreement_service.cancel(first.id, parties.lister.id)
        second = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        assert second.id != first.id
        assert second.status == AgreementStatus.DRAFT.value

    async def test_different_tenants_get_separate_agreements(self, agreement_service, parties, make_user):
        other = await make_user(name="Second Tenant")
        a = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        b = await agreement_service.initiate(parties.property.id, other.id, parties.lister.id)
        assert a.id != b.id

    async def test_only_owner_can_initiate(self, agreement_service, parties):
        with pytest.raises(PermissionDeniedError):
            await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.outsider.id)

    async def test_unknown_property(self, agreement_service, parties):
        with pytest.raises(NotFoundError):
            await agreement_service.initiate("no-such-property", parties.tenant.id, parties.lister.id)

    async def test_taken_down_listing_cannot_start(self, agreement_service, parties, db_session):
        parties.property.is_active = False
        await db_session.commit()
        with pytest.raises(NotFoundError):
            await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)

    async def test_unknown_tenant(self, agreement_service, parties):
        with pytest.raises(NotFoundError):
            await agreement_service.initiate(parties.property.id, "no-such-user", parties.lister.id)

    async def test_lister_cannot_be_tenant(self, agreement_service, parties):
        with pytest.raises(ValidationError):
            await agreement_service.initiate(parties.property.id, parties.lister.id, parties.lister.id)

    async def test_property_without_rent_leaves_rent_blank(self, agreement_service, parties, make_property):
        prop = await make_property(parties.lister, rent_cents=None)
        agreement = await agreement_service.initiate(prop.id, parties.tenant.id, parties.lister.id)
        assert agreement.variables["Rent_Amount"] == ""


# ---------------------------------------------------------------------------
# Draft editing
# ---------------------------------------------------------------------------


class TestUpdateDraft:
    async def test_new_placeholders_get_empty_values(self, agreement_service, parties):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        body = agreement.template_body + "<p>Pets: {{Pet_Policy}}</p>"
        updated = await agreement_service.update_draft(agreement.id, parties.lister.id, template_body=body)
        assert updated.variables["Pet_Policy"] == ""
        assert updated.variables["Subletter_Name"] == "Lena Lister"

    async def test_variables_replace_whole_map(self, agreement_service, parties):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        updated = await agreement_service.update_draft(
            agreement.id, parties.lister.id,
            template_body="Rent {{Rent_Amount}} from {{Start_Date}}",
            variables={"Rent_Amount": "$1,500", "Start_Date": None},
        )
        assert updated.variables == {"Rent_Amount": "$1,500", "Start_Date": ""}

    async def test_removed_placeholder_keeps_its_value(self, agreement_service, parties):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        await agreement_service.update_draft(
            agreement.id, parties.lister.id, variables={**agreement.variables, "Start_Date": "June 1"}
        )
        updated = await agreement_service.update_draft(
            agreement.id, parties.lister.id, template_body="Rent {{Rent_Amount}}"
        )
        assert updated.variables["Start_Date"] == "June 1"

    async def test_malformed_placeholder_rejected(self, agreement_service, parties):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        with pytest.raises(ValidationError, match="Malformed"):
            await agreement_service.update_draft(
                agreement.id, parties.lister.id, template_body="Rent {{Rent Amount}}"
            )

    async def test_invalid_variable_name_rejected(self, agreement_service, parties):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        with pytest.raises(ValidationError, match="Invalid variable"):
            await agreement_service.update_draft(
                agreement.id, parties.lister.id, variables={"Move-in": "soon"}
            )

    async def test_tenant_cannot_edit(self, agreement_service, parties):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        with pytest.raises(PermissionDeniedError):
            await agreement_service.update_draft(agreement.id, parties.tenant.id, template_body="x")

    async def test_no_edits_after_lock(self, agreement_service, parties):
        locked = await _locked(agreement_service, parties)
        with pytest.raises(InvalidTransitionError) as exc_info:
            await agreement_service.update_draft(locked.id, parties.lister.id, template_body="x")
        assert exc_info.value.current_status == AgreementStatus.PENDING_TENANT_SIGNATURE

    async def test_rendered_body_flags_missing_values(self, agreement_service, parties):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        view = await agreement_service.get(agreement.id, parties.lister.id)
        assert "[MISSING: Start_Date]" in view["rendered_body"]
        assert "$2,000.00" in view["rendered_body"]
        assert "Start_Date" in view["unfilled"]

    async def test_rendered_body_escapes_values(self, agreement_service, parties):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        await agreement_service.update_draft(
            agreement.id, parties.lister.id,
            template_body="<p>Unit: {{Unit}}</p>",
            variables={"Unit": "<4B> & up"},
        )
        view = await agreement_service.get(agreement.id, parties.lister.id)
        assert view["rendered_body"] == "<p>Unit: &lt;4B&gt; &amp; up</p>"
        assert view["variables"]["Unit"] == "<4B> & up"


# ---------------------------------------------------------------------------
# Lock / recall
# ---------------------------------------------------------------------------


class TestLockAndRecall:
    async def test_lock_sends_to_tenant(self, agreement_service, parties, notifier):
        locked = await _locked(agreement_service, parties)
        assert locked.status == AgreementStatus.PENDING_TENANT_SIGNATURE.value
        assert locked.version == 2
        notifier.notify.assert_awaited_with(
            NotificationEvent.AGREEMENT_LOCKED, locked.id, "tenant@test.com", None
        )

    async def test_lock_twice_reports_already_locked(self, agreement_service, parties):
        locked = await _locked(agreement_service, parties)
        with pytest.raises(InvalidTransitionError, match="already locked"):
            await agreement_service.lock(locked.id, parties.lister.id)

    async def test_tenant_cannot_lock(self, agreement_service, parties):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        with pytest.raises(PermissionDeniedError):
            await agreement_service.lock(agreement.id, parties.tenant.id)

    @pytest.mark.parametrize("rent", ["0", "-100", "about two grand"])
    async def test_lock_rejects_bad_rent(self, agreement_service, parties, rent):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        await agreement_service.update_draft(
            agreement.id, parties.lister.id, variables={**agreement.variables, "Rent_Amount": rent}
        )
        with pytest.raises(ValidationError):
            await agreement_service.lock(agreement.id, parties.lister.id)
        view = await agreement_service.get(agreement.id, parties.lister.id)
        assert view["status"] == AgreementStatus.DRAFT.value

    async def test_lock_falls_back_to_listed_rent(self, agreement_service, parties):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        await agreement_service.update_draft(
            agreement.id, parties.lister.id, variables={**agreement.variables, "Rent_Amount": "TBD"}
        )
        locked = await agreement_service.lock(agreement.id, parties.lister.id)
        assert locked.status == AgreementStatus.PENDING_TENANT_SIGNATURE.value

    async def test_lock_after_listing_taken_down(self, agreement_service, parties, db_session):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        parties.property.is_active = False
        await db_session.commit()
        locked = await agreement_service.lock(agreement.id, parties.lister.id)
        assert locked.status == AgreementStatus.PENDING_TENANT_SIGNATURE.value

    async def test_lock_needs_some_rent(self, agreement_service, parties, make_property):
        prop = await make_property(parties.lister, rent_cents=None)
        agreement = await agreement_service.initiate(prop.id, parties.tenant.id, parties.lister.id)
        with pytest.raises(ValidationError, match="Rent is unknown"):
            await agreement_service.lock(agreement.id, parties.lister.id)

    async def test_recall_returns_to_draft_with_content(self, agreement_service, parties, notifier):
        locked = await _locked(agreement_service, parties)
        variables = dict(locked.variables)
        recalled = await agreement_service.recall(locked.id, parties.lister.id)
        assert recalled.status == AgreementStatus.DRAFT.value
        assert recalled.variables == variables
        assert recalled.template_body == DEFAULT_TEMPLATE
        notifier.notify.assert_awaited_with(
            NotificationEvent.AGREEMENT_RECALLED, locked.id, "tenant@test.com", None
        )
        edited = await agreement_service.update_draft(
            locked.id, parties.lister.id, variables={**variables, "Start_Date": "July 1"}
        )
        assert edited.variables["Start_Date"] == "July 1"

    async def test_recall_after_tenant_signed(self, agreement_service, parties, signature_png):
        locked = await _locked(agreement_service, parties)
        await agreement_service.sign(locked.id, parties.tenant.id, signature_png)
        with pytest.raises(InvalidTransitionError, match="cancel instead"):
            await agreement_service.recall(locked.id, parties.lister.id)

    async def test_notification_failure_does_not_roll_back(self, agreement_service, parties, notifier):
        notifier.notify.side_effect = RuntimeError("mail relay down")
        locked = await _locked(agreement_service, parties)
        view = await agreement_service.get(locked.id, parties.lister.id)
        assert view["status"] == AgreementStatus.PENDING_TENANT_SIGNATURE.value


# ---------------------------------------------------------------------------
# Signing and finalization
# ---------------------------------------------------------------------------


class TestSign:
    async def test_tenant_signs(self, agreement_service, parties, signature_png, storage, notifier):
        locked = await _locked(agreement_service, parties)
        signed = await agreement_service.sign(
            locked.id, parties.tenant.id, signature_png, "10.0.0.2", "card"
        )
        assert signed.status == AgreementStatus.PENDING_LISTER_SIGNATURE.value
        assert signed.tenant_signature_url.startswith("/uploads/signatures/tenant_")
        assert signed.tenant_signature_ip == "10.0.0.2"
        assert signed.tenant_payment_method == "card"
        stored = storage.root / signed.tenant_signature_url.removeprefix("/uploads/")
        assert stored.read_bytes() == signature_png
        notifier.notify.assert_awaited_with(
            NotificationEvent.AGREEMENT_SIGNED, locked.id, "lister@test.com", None
        )

    async def test_tenant_cannot_sign_twice(self, agreement_service, parties, signature_png):
        locked = await _locked(agreement_service, parties)
        await agreement_service.sign(locked.id, parties.tenant.id, signature_png)
        with pytest.raises(InvalidTransitionError, match="already signed"):
            await agreement_service.sign(locked.id, parties.tenant.id, signature_png)

    async def test_lister_cannot_sign_first(self, agreement_service, parties, signature_png):
        locked = await _locked(agreement_service, parties)
        with pytest.raises(InvalidTransitionError, match="waiting for the tenant"):
            await agreement_service.sign(locked.id, parties.lister.id, signature_png)

    async def test_draft_cannot_be_signed(self, agreement_service, parties, signature_png):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        with pytest.raises(InvalidTransitionError):
            await agreement_service.sign(agreement.id, parties.tenant.id, signature_png)

    async def test_outsider_cannot_sign(self, agreement_service, parties, signature_png):
        locked = await _locked(agreement_service, parties)
        with pytest.raises(PermissionDeniedError):
            await agreement_service.sign(locked.id, parties.outsider.id, signature_png)

    async def test_signature_must_be_png(self, agreement_service, parties):
        locked = await _locked(agreement_service, parties)
        with pytest.raises(ValidationError):
            await agreement_service.sign(locked.id, parties.tenant.id, b"GIF89a not a png")

    async def test_unknown_payment_method(self, agreement_service, parties, signature_png):
        locked = await _locked(agreement_service, parties)
        with pytest.raises(ValidationError):
            await agreement_service.sign(locked.id, parties.tenant.id, signature_png, payment_method="cash")

    async def test_countersign_completes_and_finalizes(self, complete_agreement, storage, notifier):
        agreement = await complete_agreement()
        assert agreement.status == AgreementStatus.COMPLETED.value
        assert agreement.completed_at is not None
        assert agreement.lister_signature_url.startswith("/uploads/signatures/lister_")
        assert agreement.final_document_url.startswith("/uploads/contracts/contract_")
        document = storage.root / agreement.final_document_url.removeprefix("/uploads/")
        assert document.read_bytes().startswith(b"%PDF")
        recipients = [c.args[2] for c in notifier.notify.await_args_list[-2:]]
        assert sorted(recipients) == ["lister@test.com", "tenant@test.com"]

    async def test_payment_snapshot_frozen_per_party(self, complete_agreement):
        agreement = await complete_agreement(tenant_method="card", lister_method="bank_transfer")
        assert agreement.payment_snapshot == {
            "rent_cents": 200000,
            "currency": "usd",
            "tenant_payment_method": "card",
            "tenant_fee_cents": 7000,
            "lister_payment_method": "bank_transfer",
            "lister_fee_cents": 5000,
        }

    async def test_snapshot_without_declared_methods(self, complete_agreement):
        agreement = await complete_agreement(tenant_method=None, lister_method=None)
        assert agreement.payment_snapshot["rent_cents"] == 200000
        assert agreement.payment_snapshot["tenant_fee_cents"] is None
        assert agreement.payment_snapshot["lister_fee_cents"] is None

    async def test_rent_variable_wins_over_listing(self, agreement_service, parties, signature_png):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        await agreement_service.update_draft(
            agreement.id, parties.lister.id, variables={**agreement.variables, "Rent_Amount": "$1,533.33"}
        )
        await agreement_service.lock(agreement.id, parties.lister.id)
        await agreement_service.sign(agreement.id, parties.tenant.id, signature_png, payment_method="card")
        done = await agreement_service.sign(
            agreement.id, parties.lister.id, signature_png, payment_method="bank_transfer"
        )
        assert done.payment_snapshot["rent_cents"] == 153333
        assert done.payment_snapshot["tenant_fee_cents"] == 5367
        assert done.payment_snapshot["lister_fee_cents"] == 3833

    async def test_storage_failure_leaves_agreement_unsigned(
        self, agreement_service, parties, signature_png, storage
    ):
        locked = await _locked(agreement_service, parties)
        await agreement_service.sign(locked.id, parties.tenant.id, signature_png)

        failing = AsyncMock(side_effect=DependencyError("object storage", "disk full"))
        with patch.object(storage, "upload_document", failing):
            with pytest.raises(DependencyError):
                await agreement_service.sign(locked.id, parties.lister.id, signature_png)

        assert _stored(storage, "signatures/lister_*") == []

        view = await agreement_service.get(locked.id, parties.lister.id)
        assert view["status"] == AgreementStatus.PENDING_LISTER_SIGNATURE.value
        assert view["lister_signature"] is None
        assert view["final_document_url"] is None
        assert view["payment_snapshot"] is None

        done = await agreement_service.sign(locked.id, parties.lister.id, signature_png)
        assert done.status == AgreementStatus.COMPLETED.value

    async def test_countersign_after_listing_taken_down(
        self, agreement_service, parties, signature_png, db_session
    ):
        locked = await _locked(agreement_service, parties)
        await agreement_service.sign(locked.id, parties.tenant.id, signature_png)
        parties.property.is_active = False
        await db_session.commit()

        done = await agreement_service.sign(locked.id, parties.lister.id, signature_png)
        assert done.status == AgreementStatus.COMPLETED.value
        assert done.payment_snapshot["rent_cents"] == 200000

    async def test_lost_countersign_race_discards_stored_objects(
        self, agreement_service, parties, signature_png, storage
    ):
        locked = await _locked(agreement_service, parties)
        await agreement_service.sign(locked.id, parties.tenant.id, signature_png)

        lost = AsyncMock(side_effect=ConcurrentModificationError(locked.id, AgreementAction.SIGN))
        with patch.object(agreement_service, "_commit", lost):
            with pytest.raises(ConcurrentModificationError):
                await agreement_service.sign(locked.id, parties.lister.id, signature_png)

        assert _stored(storage, "contracts/*") == []
        assert _stored(storage, "signatures/lister_*") == []
        assert len(_stored(storage, "signatures/tenant_*")) == 1

    async def test_lost_tenant_sign_race_discards_signature(
        self, agreement_service, parties, signature_png, storage
    ):
        locked = await _locked(agreement_service, parties)

        lost = AsyncMock(side_effect=ConcurrentModificationError(locked.id, AgreementAction.SIGN))
        with patch.object(agreement_service, "_commit", lost):
            with pytest.raises(ConcurrentModificationError):
                await agreement_service.sign(locked.id, parties.tenant.id, signature_png)

        assert _stored(storage, "signatures/*") == []

    async def test_completed_agreement_is_frozen(self, complete_agreement, agreement_service, parties, signature_png):
        agreement = await complete_agreement()
        document_url = agreement.final_document_url
        for call in (
            agreement_service.update_draft(agreement.id, parties.lister.id, template_body="x"),
            agreement_service.sign(agreement.id, parties.lister.id, signature_png),
            agreement_service.cancel(agreement.id, parties.lister.id),
            agreement_service.recall(agreement.id, parties.lister.id),
        ):
            with pytest.raises(InvalidTransitionError):
                await call
        view = await agreement_service.get(agreement.id, parties.tenant.id)
        assert view["final_document_url"] == document_url


# ---------------------------------------------------------------------------
# Cancel / decline / delete
# ---------------------------------------------------------------------------


class TestCancelDeclineDelete:
    async def test_cancel_draft_without_notifying(self, agreement_service, parties, notifier):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        cancelled = await agreement_service.cancel(agreement.id, parties.lister.id)
        assert cancelled.status == AgreementStatus.CANCELLED.value
        assert cancelled.cancelled_by == "lister"
        assert cancelled.cancelled_at is not None
        notifier.notify.assert_not_awaited()

    async def test_cancel_after_tenant_signed_notifies_tenant(
        self, agreement_service, parties, signature_png, notifier
    ):
        locked = await _locked(agreement_service, parties)
        await agreement_service.sign(locked.id, parties.tenant.id, signature_png)
        cancelled = await agreement_service.cancel(locked.id, parties.lister.id)
        assert cancelled.status == AgreementStatus.CANCELLED.value
        notifier.notify.assert_awaited_with(
            NotificationEvent.AGREEMENT_CANCELLED, locked.id, "tenant@test.com", None
        )

    async def test_tenant_cannot_cancel(self, agreement_service, parties):
        locked = await _locked(agreement_service, parties)
        with pytest.raises(PermissionDeniedError):
            await agreement_service.cancel(locked.id, parties.tenant.id)

    async def test_decline(self, agreement_service, parties, notifier):
        locked = await _locked(agreement_service, parties)
        declined = await agreement_service.decline(locked.id, parties.tenant.id)
        assert declined.status == AgreementStatus.CANCELLED.value
        assert declined.cancelled_by == "tenant"
        notifier.notify.assert_awaited_with(
            NotificationEvent.AGREEMENT_DECLINED, locked.id, "lister@test.com", None
        )

    async def test_decline_only_while_awaiting_tenant(self, agreement_service, parties):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        with pytest.raises(InvalidTransitionError):
            await agreement_service.decline(agreement.id, parties.tenant.id)

    async def test_delete_draft(self, agreement_service, parties, db_session):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        await agreement_service.delete_draft(agreement.id, parties.lister.id)
        with pytest.raises(NotFoundError):
            await agreement_service.get(agreement.id, parties.lister.id)
        assert "deleted" in await _event_types(db_session, agreement.id)

    async def test_locked_agreement_cannot_be_deleted(self, agreement_service, parties):
        locked = await _locked(agreement_service, parties)
        with pytest.raises(InvalidTransitionError, match="only drafts"):
            await agreement_service.delete_draft(locked.id, parties.lister.id)


# ---------------------------------------------------------------------------
# Reads and audit trail
# ---------------------------------------------------------------------------


class TestReads:
    async def test_outsider_cannot_view(self, agreement_service, parties):
        agreement = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        with pytest.raises(PermissionDeniedError):
            await agreement_service.get(agreement.id, parties.outsider.id)

    async def test_unknown_agreement(self, agreement_service, parties):
        with pytest.raises(NotFoundError):
            await agreement_service.get("missing", parties.lister.id)

    async def test_view_is_role_aware(self, agreement_service, parties):
        locked = await _locked(agreement_service, parties)
        tenant_view = await agreement_service.get(locked.id, parties.tenant.id)
        lister_view = await agreement_service.get(locked.id, parties.lister.id)
        assert tenant_view["role"] == "tenant"
        assert tenant_view["allowed_actions"] == ["sign", "decline"]
        assert lister_view["allowed_actions"] == ["recall", "cancel"]

    async def test_completed_view_offers_payment(self, complete_agreement, agreement_service, parties):
        agreement = await complete_agreement()
        view = await agreement_service.get(agreement.id, parties.tenant.id)
        assert view["allowed_actions"] == ["pay"]
        assert view["is_fully_settled"] is False
        assert view["tenant_signature"]["url"] == agreement.tenant_signature_url

    async def test_list_for_user(self, agreement_service, parties, make_user):
        other = await make_user(name="Second Tenant")
        first = await agreement_service.initiate(parties.property.id, parties.tenant.id, parties.lister.id)
        second = await agreement_service.initiate(parties.property.id, other.id, parties.lister.id)
        await agreement_service.lock(second.id, parties.lister.id)

        mine = await agreement_service.list_for_user(parties.lister.id)
        assert [a.id for a in mine] == [second.id, first.id]
        assert [a.id for a in await agreement_service.list_for_user(parties.tenant.id)] == [first.id]
        assert await agreement_service.list_for_user(parties.outsider.id) == []

        drafts = await agreement_service.list_for_user(parties.lister.id, AgreementStatus.DRAFT)
        assert [a.id for a in drafts] == [first.id]

    async def test_audit_trail(self, complete_agreement, db_session):
        agreement = await complete_agreement()
        assert await _event_types(db_session, agreement.id) == sorted([
            "initiated", "locked", "tenant_signed", "lister_signed", "completed",
        ])

    async def test_version_increments_per_transition(self, complete_agreement):
        agreement = await complete_agreement()
        # initiate, lock, tenant sign, lister sign
        assert agreement.version == 4


# ---------------------------------------------------------------------------
# Concurrency: two sessions racing on the same row
# ---------------------------------------------------------------------------


@pytest.fixture
async def race_db(tmp_path, storage, notifier):
    """File-backed database shared by independent sessions."""
    engine = configure_sqlite(create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    ))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with factory() as setup:
        lister = User(id="lister-1", email="lister@race.test", name="Lister", is_active=True)
        tenant = User(id="tenant-1", email="tenant@race.test", name="Tenant", is_active=True)
        prop = Property(id="prop-1", owner_id=lister.id, title="Loft", rent_cents=120000, is_active=True)
        setup.add_all([lister, tenant])
        await setup.flush()
        setup.add(prop)
        await setup.commit()

    def service(session):
        return AgreementService(session, storage=storage, notifier=notifier)

    yield factory, service
    await engine.dispose()


def _outcomes(results):
    successes = [r for r in results if not isinstance(r, BaseException)]
    errors = [r for r in results if isinstance(r, BaseException)]
    return successes, errors


class TestConcurrentTransitions:
    async def test_racing_initiates_share_one_draft(self, race_db):
        factory, service = race_db
        async with factory() as s1, factory() as s2:
            results = await asyncio.gather(
                service(s1).initiate("prop-1", "tenant-1", "lister-1"),
                service(s2).initiate("prop-1", "tenant-1", "lister-1"),
                return_exceptions=True,
            )
        successes, errors = _outcomes(results)
        assert errors == []
        assert successes[0].id == successes[1].id

        async with factory() as check:
            rows = (await check.execute(select(Agreement))).scalars().all()
        assert len(rows) == 1

    async def test_racing_locks_apply_once(self, race_db):
        factory, service = race_db
        async with factory() as setup:
            agreement = await service(setup).initiate("prop-1", "tenant-1", "lister-1")

        async with factory() as s1, factory() as s2:
            results = await asyncio.gather(
                service(s1).lock(agreement.id, "lister-1"),
                service(s2).lock(agreement.id, "lister-1"),
                return_exceptions=True,
            )
        successes, errors = _outcomes(results)
        assert len(successes) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], (InvalidTransitionError, ConcurrentModificationError))

        async with factory() as check:
            events = await _event_types(check, agreement.id)
            fresh = (await check.execute(select(Agreement))).scalar_one()
        assert events.count("locked") == 1
        assert fresh.version == 2

    async def test_sign_racing_recall(self, race_db, signature_png):
        factory, service = race_db
        async with factory() as setup:
            agreement = await service(setup).initiate("prop-1", "tenant-1", "lister-1")
            await service(setup).lock(agreement.id, "lister-1")

        async with factory() as s1, factory() as s2:
            results = await asyncio.gather(
                service(s1).sign(agreement.id, "tenant-1", signature_png),
                service(s2).recall(agreement.id, "lister-1"),
                return_exceptions=True,
            )
        successes, errors = _outcomes(results)
        assert len(successes) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], (InvalidTransitionError, ConcurrentModificationError))

        async with factory() as check:
            fresh = (await check.execute(select(Agreement))).scalar_one()
        assert fresh.status == successes[0].status
        if fresh.status == AgreementStatus.DRAFT.value:
            assert fresh.tenant_signature_url is None
        else:
            assert fresh.tenant_signature_url is not None
