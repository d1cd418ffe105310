from __future__ import annotations


class BillrailError(Exception):
    """Base error for billrail."""

    code = "BILLRAIL_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class AuthenticationError(BillrailError):
    """Credential invalid, principal unresolvable, or test override misused."""

    code = "AUTH_UNAUTHORIZED"


class ValidationError(BillrailError):
    """Caller-supplied structure violates an invariant."""

    code = "VALIDATION_ERROR"


class NotFoundError(BillrailError):
    """Referenced entity is absent or belongs to another organization."""

    code = "NOT_FOUND"
