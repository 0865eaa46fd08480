from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import List
import jwt
from datetime import datetime, timedelta, timezone
from assessment_engine.core.config import settings

ROLE_LEVELS = {"candidate": 0, "creator": 1, "admin": 2, "owner": 3}

class TokenData(BaseModel):
    sub: str
    roles: List[str]
    tenant: str

bearer = HTTPBearer()

def has_minimum_role(roles: List[str], minimum: str) -> bool:
    return max((ROLE_LEVELS.get(r, -1) for r in roles), default=-1) >= ROLE_LEVELS[minimum]

def create_token(user_id: str, roles: List[str], tenant: str | None = None, ttl_minutes: int | None = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = ttl_minutes or settings.ACCESS_TOKEN_TTL_MINUTES
    payload = {"sub": user_id, "roles": roles, "tenant": tenant or settings.DEFAULT_TENANT_ID,
               "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl)).timestamp())}
    return jwt.encode(payload, settings.APP_SECRET.get_secret_value(), algorithm=settings.ALGORITHM)

def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> TokenData:
    try:
        payload = jwt.decode(creds.credentials, settings.APP_SECRET.get_secret_value(), algorithms=[settings.ALGORITHM])
        return TokenData(sub=payload["sub"], roles=payload.get("roles", []),
                         tenant=payload.get("tenant") or settings.DEFAULT_TENANT_ID)
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

def require_min_role(minimum: str):
    """Role-hierarchy gate: candidate < creator < admin < owner."""
    def checker(user: TokenData = Depends(get_current_user)):
        if not has_minimum_role(user.roles, minimum):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user
    return checker
