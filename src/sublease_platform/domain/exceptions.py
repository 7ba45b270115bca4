"""Typed, recoverable errors raised by the agreement engine.

The service layer raises only these; the HTTP layer maps them to status
codes. None of them is ever swallowed between the two.
"""

from typing import Optional

from sublease_platform.domain.enums import AgreementAction, AgreementStatus


class AgreementError(Exception):
    """Base class for every error the agreement engine raises."""

    code = "agreement_error"

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": str(self)}


class InvalidTransitionError(AgreementError):
    """Raised when an action is not allowed in the agreement's current status."""

    code = "invalid_transition"

    def __init__(
        self,
        action: AgreementAction,
        current_status: AgreementStatus,
        reason: str,
    ):
        self.action = action
        self.current_status = current_status
        self.reason = reason
        super().__init__(
            f"Cannot {action.value} agreement in status {current_status.value}: {reason}"
        )

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "detail": self.reason,
            "action": self.action.value,
            "current_status": self.current_status.value,
        }


class ConcurrentModificationError(AgreementError):
    """Raised when an optimistic version check fails; retry against fresh state."""

    code = "concurrent_modification"

    def __init__(self, agreement_id: str, action: Optional[AgreementAction] = None):
        self.agreement_id = agreement_id
        self.action = action
        super().__init__(
            f"Agreement {agreement_id} was modified concurrently; reload and retry"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.action is not None:
            data["action"] = self.action.value
        return data


class ValidationError(AgreementError):
    """Raised for user-correctable input problems (bad identifier, rent <= 0, ...)."""

    code = "validation_error"


class DependencyError(AgreementError):
    """Raised when object storage or the payment processor is unavailable."""

    code = "dependency_unavailable"

    def __init__(self, dependency: str, message: str):
        self.dependency = dependency
        super().__init__(f"{dependency} unavailable: {message}")


class NotFoundError(AgreementError):
    """Raised for an unknown agreement, property or user id."""

    code = "not_found"


class PermissionDeniedError(AgreementError):
    """Raised when the acting user is not the party an action requires."""

    code = "permission_denied"
