from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from models.enums import UserRole
from security import jwt as jwt_utils


@dataclass(frozen=True)
class Actor:
    """The user on whose behalf a lifecycle operation runs.

    Passed explicitly into every service call instead of being read from
    ambient session state.
    """

    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def has_role(self, *roles: UserRole) -> bool:
        return self.is_admin or self.role in roles


def get_current_actor(authorization: Optional[str] = Header(default=None, alias="Authorization")) -> Actor:
    """FastAPI dependency that resolves the Actor from the bearer token."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt_utils.decode_access(token)
        user_id = int(payload["sub"])
        role = UserRole(payload.get("role", UserRole.CUSTOMER.value))
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return Actor(user_id=user_id, role=role)


def require_role(*roles: UserRole):
    """Dependency factory restricting an endpoint to the given roles (admins always pass)."""
    def _check_role(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not actor.has_role(*roles):
            allowed = ", ".join(r.value for r in roles)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Requires one of: {allowed}")
        return actor
    return _check_role
