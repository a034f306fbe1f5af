from __future__ import annotations


class KinshipError(Exception):
    """Base error for Kinship."""

    code = "KINSHIP_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(KinshipError):
    """Malformed input such as an unknown entity type or access level."""

    code = "VALIDATION_ERROR"


class NotFoundError(KinshipError):
    """Referenced role, user, tenant or ticket does not exist."""

    code = "NOT_FOUND"


class ConflictError(KinshipError):
    """Operation conflicts with the current state of a record."""

    code = "CONFLICT"

    def __init__(
        self,
        message: str,
        *,
        current_status: str | None = None,
        reference_count: int | None = None,
    ) -> None:
        super().__init__(message)
        self.current_status = current_status
        self.reference_count = reference_count


class PermissionDeniedError(KinshipError):
    """Actor is not allowed to perform the operation."""

    code = "PERMISSION_DENIED"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InvariantViolation(KinshipError):
    """Internal consistency failure; never expected from a well-behaved caller."""

    code = "INVARIANT_VIOLATION"
