from .setup import setup_observability
from .metrics import (
    ledger_payment_transitions_total,
    ledger_locked_rejections_total,
    ledger_mileage_operations_total,
    ledger_mileage_points_total,
    ledger_expiry_sweep_duration_seconds,
    ledger_expiry_sweep_ledgers_total,
    ledger_pending_effects,
    ledger_effect_retries_total,
    ecomm_saga_compensation_total,
)
