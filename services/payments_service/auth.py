from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel
from config import SECRET_KEY, ALGORITHM
from errors import ApiError, ErrorCode, ForbiddenError
from models import UserType

http_bearer = HTTPBearer(auto_error=False)


class Account(BaseModel):
    id: int
    user_type: UserType


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if "sub" in to_encode:
        to_encode["sub"] = str(to_encode["sub"])
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=30))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _unauthorized(message: str) -> ApiError:
    return ApiError(ErrorCode.UNAUTHORIZED, message, 401)


def verify_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise _unauthorized("Could not validate credentials")


def resolve_account(credentials: HTTPAuthorizationCredentials = Depends(http_bearer)) -> Account:
    """Resolve the caller from the bearer JWT (``sub`` = user id, ``role`` = user type)."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("Authentication required")

    payload = verify_token(credentials.credentials)
    user_id = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role is None:
        raise _unauthorized("Invalid authentication payload")
    try:
        return Account(id=int(user_id), user_type=UserType(role))
    except ValueError:
        raise ForbiddenError(f"Unsupported user type: {role}", ErrorCode.FORBIDDEN_USER_TYPE)


def require_user_type(account: Account, *allowed: UserType):
    if account.user_type not in allowed:
        names = ", ".join(t.value for t in allowed)
        raise ForbiddenError(f"Only {names} accounts can perform this action", ErrorCode.FORBIDDEN_USER_TYPE)


def assert_ownership(account: Account, owner_id: Optional[int], resource: str):
    if owner_id is None or account.id != owner_id:
        raise ForbiddenError(f"You do not have access to this {resource}")
