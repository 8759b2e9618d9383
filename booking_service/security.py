from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import jwt, JWTError
from fastapi import Request, HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .config import JWT_SECRET, JWT_ALGORITHM
from .constants import Role

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def create_access_token(user_id: str, role: str, expires_in: timedelta = timedelta(hours=12)) -> str:
    """Issue a token the way the identity service does; used by tooling and tests."""
    payload = {
        "sub": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Principal:
    payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])

    sub = payload.get("sub")
    role = payload.get("role")
    if role is None:
        # tokens minted with a roles list carry the primary role first
        roles = payload.get("roles")
        if isinstance(roles, list) and roles:
            role = roles[0]

    if not sub or not isinstance(role, str):
        raise JWTError("Token is missing subject or role")

    return Principal(id=str(sub), role=role.strip().lower())


def get_current_user(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    token = None
    if creds and creds.scheme.lower() == "bearer":
        token = creds.credentials

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized - No token provided",
        )

    try:
        principal = verify_token(token)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    request.state.user_sub = principal.id
    request.state.user_roles = [principal.role]
    return principal
