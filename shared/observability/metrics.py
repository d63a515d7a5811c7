from prometheus_client import Counter, Histogram, Gauge

# Business Metrics
ledger_payment_transitions_total = Counter(
    "ledger_payment_transitions_total",
    "Payment status transitions applied",
    ["from_status", "to_status"]
)

ledger_locked_rejections_total = Counter(
    "ledger_locked_rejections_total",
    "Mutations rejected because the payment was settled",
    ["field"]
)

ledger_mileage_operations_total = Counter(
    "ledger_mileage_operations_total",
    "Mileage ledger operations",
    ["type", "outcome"] # outcome: 'applied', 'rejected', 'conflict'
)

ledger_mileage_points_total = Counter(
    "ledger_mileage_points_total",
    "Mileage points moved",
    ["type"]
)

ledger_expiry_sweep_duration_seconds = Histogram(
    "ledger_expiry_sweep_duration_seconds",
    "Expiry sweep duration in seconds"
)

ledger_expiry_sweep_ledgers_total = Counter(
    "ledger_expiry_sweep_ledgers_total",
    "Ledgers processed by the expiry sweep",
    ["outcome"] # 'expired', 'skipped', 'failed'
)

ledger_pending_effects = Gauge(
    "ledger_pending_effects",
    "Ledger side effects waiting for retry"
)

ledger_effect_retries_total = Counter(
    "ledger_effect_retries_total",
    "Retried ledger side effects",
    ["effect", "outcome"]
)

ecomm_saga_compensation_total = Counter(
    "ecomm_saga_compensation_total",
    "Total saga compensations triggered",
    ["step_name"] # Labels: 'hold_mileage', 'create_order', etc.
)
