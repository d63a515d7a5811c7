from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request
from .jwt_handler import verify_access_token

# Applied to customer-initiated endpoints that move money or points
MONEY_MOVEMENT_LIMIT = "30/minute"


def user_id_or_ip(request: Request) -> str:
    """
    Key function for SlowAPI.
    Buckets by actor (role + subject) when a valid bearer token is present,
    otherwise by client IP.
    """
    auth_header = request.headers.get("Authorization")

    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        payload = verify_access_token(token)
        if payload and "sub" in payload:
            return f"{payload.get('role', 'customer')}:{payload['sub']}"

    return f"ip:{get_remote_address(request)}"


limiter = Limiter(key_func=user_id_or_ip)
