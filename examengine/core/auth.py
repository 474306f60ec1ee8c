from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import List
from dataclasses import dataclass
import jwt
from datetime import datetime, timedelta, timezone
from examengine.core.config import APP_SECRET

ROLES = ("admin", "editor", "recruiter", "candidate")

class TokenData(BaseModel):
    sub: str
    roles: List[str]

@dataclass(frozen=True)
class Actor:
    """Who is calling the engine. Passed explicitly into every lifecycle operation."""
    candidate_id: str
    role: str = "candidate"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

bearer = HTTPBearer()

def create_token(user_id: str, roles: List[str], ttl_minutes: int = 120) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "roles": roles, "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp())}
    return jwt.encode(payload, APP_SECRET, algorithm="HS256")

def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> TokenData:
    try:
        payload = jwt.decode(creds.credentials, APP_SECRET, algorithms=["HS256"])
        return TokenData(sub=payload["sub"], roles=payload.get("roles", []))
    except (jwt.PyJWTError, KeyError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

def require_roles(*required: str):
    def checker(user: TokenData = Depends(get_current_user)):
        roles = set(user.roles)
        if not roles.intersection(set(required)):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user
    return checker

def actor_for(user: TokenData) -> Actor:
    # admin wins over any other role the token carries
    role = "admin" if "admin" in user.roles else next((r for r in ROLES if r in user.roles), "candidate")
    return Actor(candidate_id=user.sub, role=role)

def require_actor(*roles: str):
    """Like require_roles, but hands the route an Actor for the engine instead of raw token data."""
    checker = require_roles(*roles)
    def resolve(user: TokenData = Depends(checker)) -> Actor:
        return actor_for(user)
    return resolve

get_actor = require_actor("candidate", "admin")
