from dataclasses import dataclass
from typing import Optional, Dict, Any, Iterable
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from datetime import datetime, timedelta, timezone

from backend.app.config import settings
from backend.app.models.enums import Role, STATE_LEVEL_ROLES

security = HTTPBearer()


@dataclass(frozen=True)
class Principal:
    """Caller identity as carried by the access token."""
    user_id: int
    role: Role
    institution_id: Optional[int] = None

    @property
    def is_state_level(self) -> bool:
        return self.role in STATE_LEVEL_ROLES


def create_access_token(data: Dict[str, Any], expires_delta: Optional[int] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(seconds=(expires_delta or settings.ACCESS_TOKEN_EXPIRE_SECONDS))
    to_encode.update({"exp": expire})
    token = jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token


def token_for(user_id: int, role: Role, institution_id: Optional[int] = None) -> str:
    return create_access_token({"sub": str(user_id), "role": role.value, "institution_id": institution_id})


def decode_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="token_expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="invalid_token")


def principal_from_payload(payload: Dict[str, Any]) -> Principal:
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="invalid_token_payload")
    try:
        user_id = int(sub)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="invalid_user_id")
    try:
        role = Role(payload.get("role"))
    except ValueError:
        raise HTTPException(status_code=401, detail="invalid_role")
    institution_id = payload.get("institution_id")
    return Principal(user_id=user_id, role=role, institution_id=int(institution_id) if institution_id else None)


def get_current_principal(creds: HTTPAuthorizationCredentials = Depends(security)) -> Principal:
    return principal_from_payload(decode_token(creds.credentials))


def require_roles(roles: Iterable[Role]):
    allowed = frozenset(roles)

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=403, detail="forbidden")
        return principal

    return dependency
