from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from billrail.services.transactions import (
    AuthOptions,
    ProcedureContext,
    TransactionRunner,
    get_transaction_runner,
)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format for API key authentication.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def get_auth_options(
    authorization: str | None = Header(default=None, alias="Authorization"),
    session_user_id: str | None = Header(default=None, alias="X-Session-User-Id"),
    customer_organization_id: str | None = Header(default=None, alias="X-Customer-Organization-Id"),
    customer_id: str | None = Header(default=None, alias="X-Customer-Id"),
    test_organization_id: str | None = Header(default=None, alias="X-Test-Organization-Id"),
) -> AuthOptions:
    """Collect every credential the request carries; the runner picks one."""
    api_key = _parse_bearer_token(authorization)
    if not any((api_key, session_user_id, test_organization_id)):
        raise _auth_error("Missing credentials")
    return AuthOptions(
        api_key=api_key,
        session_user_id=session_user_id,
        customer_organization_id=customer_organization_id,
        customer_id=customer_id,
        test_only_organization_id=test_organization_id,
    )


def get_runner(request: Request) -> TransactionRunner:
    # Apps may pin a runner on state (tests inject fakes); otherwise use the process default.
    runner = getattr(request.app.state, "transaction_runner", None)
    return runner or get_transaction_runner()


def get_procedure_context(
    request: Request, auth: AuthOptions = Depends(get_auth_options)
) -> ProcedureContext:
    return ProcedureContext(
        auth=auth,
        extra={"path": request.url.path, "method": request.method},
    )
