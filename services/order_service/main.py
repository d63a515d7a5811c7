from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from shared.config.database import init_models
from shared.errors import register_error_handlers
from shared.observability import setup_observability
from shared.security import limiter

from .models import Order, OrderItem  # noqa: F401 registers models with Base
from .router import router, internal_router, public_router

order_app = FastAPI(title="Order Service", version="1.0.0")

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(order_app, "order_service")

order_app.state.limiter = limiter
order_app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_error_handlers(order_app)

order_app.include_router(public_router)
order_app.include_router(internal_router)
order_app.include_router(router)

@order_app.on_event("startup")
async def startup_event():
    await init_models()
