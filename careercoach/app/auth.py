"""Bearer token authentication for the subscription API."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import SubscriptionConfig
from .services.subscriptions import get_subscription_config

ACCESS_TOKEN_TTL = timedelta(days=7)

_bearer = HTTPBearer(auto_error=False)


def create_access_token(
    user_id: str,
    config: SubscriptionConfig,
    *,
    expires_delta: Optional[timedelta] = None,
) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or ACCESS_TOKEN_TTL)
    payload = {"userId": user_id, "sub": user_id, "exp": expire}
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def resolve_user_id(token: str, config: SubscriptionConfig) -> Optional[str]:
    try:
        payload = jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except JWTError:
        return None
    subject = payload.get("userId") or payload.get("sub")
    return str(subject) if subject else None


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    config: SubscriptionConfig = Depends(get_subscription_config),
) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user_id = resolve_user_id(credentials.credentials, config)
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    return user_id
