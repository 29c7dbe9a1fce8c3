import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from src.config import settings
from src.errors import InvalidToken, UnAuthenticated
from .schemas import TokenUser

ACCESS_TOKEN_EXPIRE_MINUTES = 300
logger = logging.getLogger(__name__)


class OptionalOAuth2Scheme(OAuth2PasswordBearer):
    async def __call__(self, request: Request) -> Optional[str]:
        try:
            return await super().__call__(request)
        except Exception:
            return None

# Replace with the optional version
optional_oauth2_scheme = OptionalOAuth2Scheme(tokenUrl="token")


def create_access_token(user: TokenUser, expires_delta: timedelta | None = None):
    to_encode = {
        "sub": user.email or user.id,
        "id": str(user.id),
        "is_verified": user.is_verified,
        "full_name": user.full_name,
        "exp": datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    }
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


async def get_current_user(
    request: Request,
    token: Optional[str] = Depends(optional_oauth2_scheme),
) -> TokenUser:
    # Authorization header first, then the access_token cookie
    access_token = token or request.cookies.get("access_token")

    if not access_token:
        raise UnAuthenticated()

    try:
        payload = jwt.decode(access_token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise InvalidToken()
    except jwt.PyJWTError as e:
        logger.warning(f"Token validation error: {str(e)}")
        raise UnAuthenticated()

    user_id = payload.get("id")
    if not user_id:
        raise UnAuthenticated()

    return TokenUser(
        id=user_id,
        email=payload.get("sub"),
        full_name=payload.get("full_name"),
        is_verified=bool(payload.get("is_verified")),
        token_type="bearer",
    )
