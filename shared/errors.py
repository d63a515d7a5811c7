"""
Domain error taxonomy shared by every service.

Services raise these; ``register_error_handlers`` renders them on each
FastAPI app as ``{"error": <kind>, "detail": <message>}`` so callers can
branch on a stable kind instead of parsing messages.
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class DomainError(Exception):
    kind = "domain_error"
    status_code = 400

    def __init__(self, message: str | None = None):
        self.message = message or self.kind.replace("_", " ")
        super().__init__(self.message)


class ValidationError(DomainError):
    kind = "validation_error"
    status_code = 422


class InvalidAmountError(ValidationError):
    kind = "invalid_amount"


class LockedStateError(DomainError):
    kind = "locked_state"
    status_code = 409


class InsufficientBalanceError(DomainError):
    kind = "insufficient_balance"
    status_code = 409


class ForbiddenError(DomainError):
    kind = "forbidden"
    status_code = 403


class NotFoundError(DomainError):
    kind = "not_found"
    status_code = 404


class AlreadyDeletedError(DomainError):
    kind = "already_deleted"
    status_code = 409


class GoneError(DomainError):
    kind = "gone"
    status_code = 410


class ConflictError(DomainError):
    kind = "conflict"
    status_code = 409


class LedgerFrozenError(DomainError):
    kind = "ledger_frozen"
    status_code = 409


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.kind, "detail": exc.message},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
