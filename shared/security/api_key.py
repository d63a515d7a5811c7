"""
Internal service key used by system callers (payment gateway callbacks,
the expiry scheduler, back-office tooling).

INTERNAL_API_KEYS may hold several comma-separated keys so a key can be
rotated without downtime. A missing value falls back to an insecure default
with a warning rather than crashing at import.
"""
import os
import secrets
import warnings

_RAW_KEYS: str = os.getenv("INTERNAL_API_KEYS", os.getenv("INTERNAL_API_KEY", ""))

INTERNAL_API_KEYS: tuple[str, ...] = tuple(k.strip() for k in _RAW_KEYS.split(",") if k.strip())

if not INTERNAL_API_KEYS:
    warnings.warn(
        "INTERNAL_API_KEY is not set. Using an insecure default. "
        "Set this env var in production!",
        stacklevel=2,
    )
    INTERNAL_API_KEYS = ("insecure-default-change-me",)


def verify_api_key(provided_key: str) -> bool:
    """Constant-time check of the key against every active internal key."""
    if not provided_key:
        return False
    matched = False
    for key in INTERNAL_API_KEYS:
        # no short-circuit, so timing does not reveal which key matched
        matched |= secrets.compare_digest(str(provided_key), key)
    return matched
