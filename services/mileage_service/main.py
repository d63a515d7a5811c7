from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from shared.config.database import init_models
from shared.errors import register_error_handlers
from shared.observability import setup_observability
from shared.security import limiter

from .models import MileageLedger, MileageTransaction  # noqa: F401 registers models with Base
from .router import router, internal_router, public_router

mileage_app = FastAPI(title="Mileage Service", version="1.0.0")

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(mileage_app, "mileage_service")

# --- SECURITY / ERRORS ---
mileage_app.state.limiter = limiter
mileage_app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_error_handlers(mileage_app)

mileage_app.include_router(public_router)
mileage_app.include_router(internal_router)
mileage_app.include_router(router)

@mileage_app.on_event("startup")
async def startup_event():
    await init_models()
