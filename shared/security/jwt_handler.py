"""
Bearer token verification.

Tokens are issued by the platform's auth service. This module only checks
them and reads the two claims the ledger services rely on: ``sub`` (the
actor id) and ``role`` (customer, seller or admin). ``create_access_token``
exists for back-office tooling and tests.
"""
import os
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt

SECRET_KEY = os.getenv("JWT_SECRET_KEY")
if not SECRET_KEY:
    raise ValueError("FATAL ERROR: JWT_SECRET_KEY is not set in the environment!")

ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
DEFAULT_ROLE = "customer"


def create_access_token(claims: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = dict(claims)
    to_encode.setdefault("role", DEFAULT_ROLE)
    to_encode["sub"] = str(to_encode["sub"])

    issued_at = datetime.now(timezone.utc)
    to_encode.update({
        "iat": issued_at,
        "exp": issued_at + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
    })
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_access_token(token: str) -> dict | None:
    """Returns the claims of a valid token, None if it is invalid, expired or has no subject."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    payload.setdefault("role", DEFAULT_ROLE)
    return payload
