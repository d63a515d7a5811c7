from .jwt_handler import create_access_token, verify_access_token
from .api_key import verify_api_key
from .dependencies import (
    Actor,
    ensure_owner,
    get_current_actor,
    require_admin,
    verify_internal_api_key,
)
from .rate_limiter import limiter, user_id_or_ip

__all__ = [
    "create_access_token",
    "verify_access_token",
    "verify_api_key",
    "Actor",
    "ensure_owner",
    "get_current_actor",
    "require_admin",
    "verify_internal_api_key",
    "limiter",
    "user_id_or_ip"
]
