"""Bearer-token authentication for the billing API."""
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from app.database import db
from app.models import TokenData, UserRole

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24

security = HTTPBearer(auto_error=False)


def get_jwt_secret() -> str:
    """Read the signing secret at call time so load_dotenv() has already run."""
    return os.getenv("JWT_SECRET", "dev-secret-key-change-in-production")


def create_access_token(
    user_id: str, email: str, role: UserRole, expires_delta: Optional[timedelta] = None
) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {"sub": user_id, "email": email, "role": UserRole(role).value, "exp": expire}
    return jwt.encode(claims, get_jwt_secret(), algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[TokenData]:
    try:
        payload = jwt.decode(token, get_jwt_secret(), algorithms=[ALGORITHM])
    except JWTError:
        return None
    if payload.get("sub") is None:
        return None
    try:
        return TokenData(user_id=payload["sub"], email=payload.get("email"), role=payload.get("role"))
    except ValueError:
        # Missing email or a role this API does not know
        return None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenData:
    if credentials is None:
        raise _unauthorized("Not authenticated")
    token_data = decode_token(credentials.credentials)
    if token_data is None:
        raise _unauthorized("Invalid token")

    user = db.get_user(token_data.user_id)
    if user is None:
        raise _unauthorized("User not found")
    # Role comes from the stored user, not the claim
    return token_data.model_copy(update={"role": user.role})


async def require_landlord(current_user: TokenData = Depends(require_auth)) -> TokenData:
    if current_user.role != UserRole.LANDLORD:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only landlords can manage subscriptions",
        )
    return current_user
