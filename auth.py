"""
Bearer-token identification.

Tokens are minted out of band (``python maintenance.py token``) and carry the
caller's id in ``sub`` and one of ROLES in ``role``. There is no login here.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

import config

ROLES = ("donor", "organization", "admin")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def donor_id(self) -> Optional[str]:
        return self.id if self.role == "donor" else None

    @property
    def organization_id(self) -> Optional[str]:
        return self.id if self.role == "organization" else None


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def get_current_actor(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Actor:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    try:
        payload = jwt.decode(credentials.credentials, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        raise credentials_exception
    actor_id = payload.get("sub")
    role = payload.get("role")
    if actor_id is None or role not in ROLES:
        raise credentials_exception
    return Actor(id=actor_id, role=role)


def require_role(actor: Actor, roles: List[str]):
    if actor.role not in roles:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
