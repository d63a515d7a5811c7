from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from shared.config.database import init_models
from shared.errors import register_error_handlers
from shared.observability.setup import setup_observability
from shared.security import limiter

from .models import Payment, PendingLedgerEffect  # noqa: F401 registers models with Base
from .router import router, internal_router, public_router


payment_app = FastAPI(title="Payment Service", version="2.0.0")

# Emits structured logs, OTLP traces and /metrics
setup_observability(payment_app, "payment_service")

payment_app.state.limiter = limiter
payment_app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_error_handlers(payment_app)

payment_app.include_router(public_router)
payment_app.include_router(internal_router)
payment_app.include_router(router)

@payment_app.on_event("startup")
async def startup_event():
    await init_models()
