import asyncio

from fastapi import FastAPI

from shared.config import settings
from shared.config.database import AsyncSessionLocal, init_models

# IMPORTANT: import models so they register with Base
from services.order_service import models as order_models
from services.payment_service import models as payment_models
from services.mileage_service import models as mileage_models

from services.order_service.main import order_app
from services.payment_service.main import payment_app
from services.mileage_service.main import mileage_app
from services.mileage_service.sweep import expiry_sweep_loop
from services.payment_service.ledger_effects import ledger_effect_retry_loop

app = FastAPI(title="Commerce Ledger Cluster")

background_tasks = []


@app.on_event("startup")
async def startup_event():
    await init_models()

    if settings.MILEAGE_SWEEP_INTERVAL_SECONDS > 0:
        background_tasks.append(
            asyncio.create_task(
                expiry_sweep_loop(AsyncSessionLocal, settings.MILEAGE_SWEEP_INTERVAL_SECONDS)
            )
        )
    if settings.LEDGER_EFFECT_RETRY_INTERVAL_SECONDS > 0:
        background_tasks.append(
            asyncio.create_task(
                ledger_effect_retry_loop(
                    AsyncSessionLocal, settings.LEDGER_EFFECT_RETRY_INTERVAL_SECONDS
                )
            )
        )


@app.on_event("shutdown")
async def shutdown_event():
    for task in background_tasks:
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions=True)
    background_tasks.clear()


app.mount("/orders", order_app)
app.mount("/payments", payment_app)
app.mount("/mileage", mileage_app)
