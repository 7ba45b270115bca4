"""Agreement state machine: validates actions and resolves their target status.

    DRAFT -> PENDING_TENANT_SIGNATURE -> PENDING_LISTER_SIGNATURE -> COMPLETED

CANCELLED is reachable from every non-terminal status. The only backward
edge is recall (PENDING_TENANT_SIGNATURE -> DRAFT), and only while the
tenant has not signed.
"""

from typing import Optional

from sublease_platform.domain.enums import AgreementAction, AgreementStatus, PartyRole
from sublease_platform.domain.exceptions import InvalidTransitionError, PermissionDeniedError

S = AgreementStatus
A = AgreementAction
R = PartyRole


# ---------------------------------------------------------------------------
# Transition map: action -> {from_status: {actor_role: to_status}}
# ---------------------------------------------------------------------------

TRANSITION_MAP: dict[AgreementAction, dict[AgreementStatus, dict[PartyRole, AgreementStatus]]] = {
    A.EDIT: {
        S.DRAFT: {R.LISTER: S.DRAFT},
    },
    A.LOCK: {
        S.DRAFT: {R.LISTER: S.PENDING_TENANT_SIGNATURE},
    },
    A.RECALL: {
        S.PENDING_TENANT_SIGNATURE: {R.LISTER: S.DRAFT},
    },
    A.SIGN: {
        S.PENDING_TENANT_SIGNATURE: {R.TENANT: S.PENDING_LISTER_SIGNATURE},
        S.PENDING_LISTER_SIGNATURE: {R.LISTER: S.COMPLETED},
    },
    A.CANCEL: {
        S.DRAFT: {R.LISTER: S.CANCELLED},
        S.PENDING_TENANT_SIGNATURE: {R.LISTER: S.CANCELLED},
        S.PENDING_LISTER_SIGNATURE: {R.LISTER: S.CANCELLED},
    },
    A.DECLINE: {
        S.PENDING_TENANT_SIGNATURE: {R.TENANT: S.CANCELLED},
    },
    A.DELETE: {
        S.DRAFT: {R.LISTER: S.DRAFT},
    },
}

# Which roles may ever attempt an action, regardless of status
ACTION_ROLES: dict[AgreementAction, set[PartyRole]] = {
    action: {role for by_role in by_status.values() for role in by_role}
    for action, by_status in TRANSITION_MAP.items()
}

# Reason shown when an action is attempted from a status that does not allow it
_STATUS_REASONS: dict[AgreementAction, dict[AgreementStatus, str]] = {
    A.EDIT: {
        S.PENDING_TENANT_SIGNATURE: "agreement is not editable: it has already been sent to the tenant",
        S.PENDING_LISTER_SIGNATURE: "agreement is not editable: the tenant has already signed",
        S.COMPLETED: "agreement is not editable: it has been completed",
        S.CANCELLED: "agreement is not editable: it has been cancelled",
    },
    A.LOCK: {
        S.PENDING_TENANT_SIGNATURE: "agreement is already locked and was sent to the tenant",
        S.PENDING_LISTER_SIGNATURE: "agreement is already locked and signed by the tenant",
        S.COMPLETED: "agreement is already completed",
        S.CANCELLED: "agreement has been cancelled",
    },
    A.RECALL: {
        S.DRAFT: "agreement is already a draft",
        S.PENDING_LISTER_SIGNATURE: "the tenant has already signed; cancel instead",
        S.COMPLETED: "agreement is already completed",
        S.CANCELLED: "agreement has been cancelled",
    },
    A.CANCEL: {
        S.COMPLETED: "a completed agreement cannot be cancelled",
        S.CANCELLED: "agreement is already cancelled",
    },
    A.DECLINE: {
        S.DRAFT: "agreement has not been sent to the tenant",
        S.PENDING_LISTER_SIGNATURE: "the tenant has already signed",
        S.COMPLETED: "agreement is already completed",
        S.CANCELLED: "agreement is already cancelled",
    },
    A.DELETE: {
        S.PENDING_TENANT_SIGNATURE: "only drafts can be deleted; recall or cancel instead",
        S.PENDING_LISTER_SIGNATURE: "only drafts can be deleted; cancel instead",
        S.COMPLETED: "completed agreements are archived, never deleted",
        S.CANCELLED: "cancelled agreements are archived, never deleted",
    },
}

_SIGN_REASONS: dict[tuple[PartyRole, AgreementStatus], str] = {
    (R.TENANT, S.DRAFT): "agreement has not been sent for signature yet",
    (R.TENANT, S.PENDING_LISTER_SIGNATURE): "tenant has already signed",
    (R.TENANT, S.COMPLETED): "tenant has already signed",
    (R.TENANT, S.CANCELLED): "agreement has been cancelled",
    (R.LISTER, S.DRAFT): "agreement has not been sent for signature yet",
    (R.LISTER, S.PENDING_TENANT_SIGNATURE): "waiting for the tenant to sign first",
    (R.LISTER, S.COMPLETED): "lister has already signed",
    (R.LISTER, S.CANCELLED): "agreement has been cancelled",
}


def to_status(value) -> AgreementStatus:
    """Get AgreementStatus enum from a model value (may be stored as string)."""
    if isinstance(value, AgreementStatus):
        return value
    return AgreementStatus(value)


def resolve_role(agreement, acting_user_id: Optional[str]) -> PartyRole:
    """Single authorization predicate: which party is *acting_user_id* on *agreement*."""
    if not acting_user_id:
        return R.NONE
    if agreement.lister_id == acting_user_id:
        return R.LISTER
    if agreement.tenant_id == acting_user_id:
        return R.TENANT
    return R.NONE


class AgreementStateMachine:
    """Validates agreement actions and enforces the lifecycle guards."""

    def validate_transition(
        self,
        current_status: AgreementStatus,
        action: AgreementAction,
        role: PartyRole,
        agreement=None,
    ) -> AgreementStatus:
        """Return the target status, or raise if the action is not allowed.

        Checks:
        1. The acting user is a party permitted to attempt the action at all.
        2. The action is allowed from the current status for that party.
        3. Signature guards: no party signs twice, recall only before any
           signature exists.
        """
        current_status = to_status(current_status)

        if role == R.NONE:
            raise PermissionDeniedError("Only the lister or tenant of this agreement can act on it")
        if role not in ACTION_ROLES.get(action, set()):
            raise PermissionDeniedError(
                f"The {role.value} is not permitted to {action.value} this agreement"
            )

        target = TRANSITION_MAP[action].get(current_status, {}).get(role)
        if target is None:
            raise InvalidTransitionError(action, current_status, self._reason(action, current_status, role))

        if agreement is not None:
            self._check_signatures(current_status, action, role, agreement)

        return target

    def _check_signatures(self, current_status, action, role, agreement) -> None:
        if action == A.SIGN and role == R.TENANT and agreement.tenant_signature_url:
            raise InvalidTransitionError(action, current_status, "tenant has already signed")
        if action == A.SIGN and role == R.LISTER:
            if agreement.lister_signature_url:
                raise InvalidTransitionError(action, current_status, "lister has already signed")
            if not agreement.tenant_signature_url:
                raise InvalidTransitionError(action, current_status, "waiting for the tenant to sign first")
        if action == A.RECALL and agreement.tenant_signature_url:
            raise InvalidTransitionError(action, current_status, "the tenant has already signed; cancel instead")

    def _reason(self, action: AgreementAction, current_status: AgreementStatus, role: PartyRole) -> str:
        if action == A.SIGN:
            return _SIGN_REASONS.get((role, current_status), "not this party's turn to sign")
        return _STATUS_REASONS.get(action, {}).get(
            current_status,
            f"{action.value} is not allowed from {current_status.value}",
        )

    def is_allowed(
        self,
        current_status: AgreementStatus,
        action: AgreementAction,
        role: PartyRole,
        agreement=None,
    ) -> bool:
        try:
            self.validate_transition(current_status, action, role, agreement)
        except (InvalidTransitionError, PermissionDeniedError):
            return False
        return True

    def get_allowed_actions(self, agreement, role: PartyRole) -> list[AgreementAction]:
        """Return the actions *role* may take on *agreement* right now."""
        current = to_status(agreement.status)
        return [
            action for action in TRANSITION_MAP
            if self.is_allowed(current, action, role, agreement)
        ]
