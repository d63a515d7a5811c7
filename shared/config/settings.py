import os
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()

SUPPORTED_CURRENCIES = frozenset(
    c.strip().upper()
    for c in os.getenv("SUPPORTED_CURRENCIES", "KRW,USD,EUR,JPY").split(",")
    if c.strip()
)

# Points credited per unit of settled amount (0.01 == 1%)
MILEAGE_ACCRUAL_RATE = Decimal(os.getenv("MILEAGE_ACCRUAL_RATE", "0.01"))

# Per-seller overrides, e.g. "seller-a:0.02,seller-b:0.005"
MILEAGE_SELLER_RATES = {
    seller.strip(): Decimal(rate)
    for seller, rate in (
        pair.split(":", 1)
        for pair in os.getenv("MILEAGE_SELLER_RATES", "").split(",")
        if ":" in pair
    )
}

# 0 disables expiry for newly accrued credits
MILEAGE_EXPIRY_DAYS = int(os.getenv("MILEAGE_EXPIRY_DAYS", "365"))

# 0 disables the background loop (sweep can still be triggered over HTTP)
MILEAGE_SWEEP_INTERVAL_SECONDS = float(os.getenv("MILEAGE_SWEEP_INTERVAL_SECONDS", "0"))
MILEAGE_SWEEP_MAX_ATTEMPTS = int(os.getenv("MILEAGE_SWEEP_MAX_ATTEMPTS", "2"))

LEDGER_EFFECT_MAX_ATTEMPTS = int(os.getenv("LEDGER_EFFECT_MAX_ATTEMPTS", "5"))

OBSERVABILITY_ENABLED = os.getenv("OBSERVABILITY_ENABLED", "true").lower() == "true"
LEDGER_EFFECT_RETRY_INTERVAL_SECONDS = float(os.getenv("LEDGER_EFFECT_RETRY_INTERVAL_SECONDS", "0"))
