from fastapi import Depends, HTTPException, status

from .constants import Role
from .security import Principal, get_current_user


def require_role(principal: Principal, allowed_roles: list[str]):
    if principal.role not in Role.ALL:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Role missing in token",
        )

    allowed = {r.lower() for r in allowed_roles}

    if principal.role not in allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"User role {principal.role} is not authorized to access this route",
        )


def authorize(*allowed_roles: str):
    """Dependency factory: resolve the caller and gate it by role before the handler runs."""

    def dependency(principal: Principal = Depends(get_current_user)) -> Principal:
        require_role(principal, list(allowed_roles))
        return principal

    return dependency
