"""
Typed errors raised by the service layer and their HTTP rendering.

Every error renders as ``{"error": {"code", "message", "status"}}``, the same
envelope the security middleware uses.
"""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tenantgate_shared.schemas.common import ErrorBody, ErrorEnvelope

log = structlog.get_logger()


class TenantGateError(Exception):
    """Base class for every error the service layer raises on purpose."""

    code = "TENANTGATE_ERROR"
    status = 500
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_envelope(self) -> dict:
        return ErrorEnvelope(
            error=ErrorBody(code=self.code, message=self.message, status=self.status)
        ).model_dump()


class NotAuthenticated(TenantGateError):
    code = "NOT_AUTHENTICATED"
    status = 401
    default_message = "Authentication required"


class Denied(TenantGateError):
    code = "DENIED"
    status = 403
    default_message = "You do not have permission to perform this action"


class NotFound(TenantGateError):
    code = "NOT_FOUND"
    status = 404
    default_message = "Not found"


class PrerequisiteMissing(TenantGateError):
    code = "PREREQUISITE_MISSING"
    status = 409
    default_message = "User must be an active member of the organisation first"


class LastOwnerProtected(TenantGateError):
    code = "LAST_OWNER_PROTECTED"
    status = 409
    default_message = "An organisation must keep at least one active owner"


class Conflict(TenantGateError):
    code = "CONFLICT"
    status = 409
    default_message = "Conflicts with existing data"


class InvalidTenantSelection(TenantGateError):
    code = "INVALID_TENANT_SELECTION"
    status = 403
    default_message = "You cannot switch to that organisation or project"


class InvalidRequest(TenantGateError):
    code = "INVALID_REQUEST"
    status = 400
    default_message = "Invalid request"


class StaleOverlay(TenantGateError):
    """A view-as overlay the principal may no longer assume.

    Handled inside the tenant context, which clears the overlay; never
    rendered to a client.
    """

    code = "STALE_OVERLAY"
    status = 409
    default_message = "View-as overlay is no longer valid"


class ContextUnavailable(TenantGateError):
    code = "CONTEXT_UNAVAILABLE"
    status = 503
    default_message = "Tenant context could not be loaded; retry"


class ContextSuperseded(TenantGateError):
    """A newer switch for the same principal finished first; this result was discarded."""

    code = "CONTEXT_SUPERSEDED"
    status = 409
    default_message = "A newer context switch is in progress; reload the context"


class EnforcementDivergence(TenantGateError):
    code = "ENFORCEMENT_DIVERGENCE"
    status = 500
    default_message = "Authorization check failed"


async def tenantgate_error_handler(request: Request, exc: TenantGateError) -> JSONResponse:
    if exc.status >= 500:
        log.error("request.failed", path=request.url.path, code=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status, content=exc.to_envelope())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TenantGateError, tenantgate_error_handler)
