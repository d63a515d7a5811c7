from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, APIKeyHeader

from shared.errors import ForbiddenError
from .jwt_handler import verify_access_token
from .api_key import verify_api_key

ROLES = frozenset({"customer", "seller", "admin"})

# Defines the expected header format (Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

# Defines the expected internal service header
api_key_header = APIKeyHeader(name="X-Internal-API-Key", auto_error=False)


@dataclass(frozen=True)
class Actor:
    """Opaque identity handed to us by the auth layer."""
    actor_id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def ensure_owner(actor: Actor, customer_id: str) -> None:
    """Only the owning customer (or an admin) may touch a customer's resources."""
    if actor.is_admin:
        return
    if actor.actor_id != customer_id:
        raise ForbiddenError("You may only access your own resources")


async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    """Dependency to validate JWT and return the calling actor."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not token:
        raise credentials_exception

    payload = verify_access_token(token)
    if payload is None:
        raise credentials_exception

    actor_id = payload.get("sub")
    role = payload.get("role", "customer")
    if actor_id is None or role not in ROLES:
        raise credentials_exception

    return Actor(actor_id=str(actor_id), role=role)


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise ForbiddenError("Administrator role required")
    return actor


async def verify_internal_api_key(api_key: str = Depends(api_key_header)) -> bool:
    """Dependency to validate service-to-service internal requests."""
    if not verify_api_key(api_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or missing X-Internal-API-Key header"
        )
    return True
