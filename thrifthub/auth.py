import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request
from jose import JWTError, jwt

from thrifthub.errors import AuthError, Forbidden
from thrifthub.models import UserRole


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def verify_token(request: Request, authorization: Optional[str] = Header(None)) -> CurrentUser:
    """Decode the bearer token issued upstream into the caller's identity."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, request.app.state.settings.jwt_secret, algorithms=["HS256"])
        return CurrentUser(user_id=claims["sub"], role=UserRole(claims.get("role", "STUDENT")))
    except (AttributeError, ValueError, KeyError, JWTError):
        raise AuthError("Invalid or missing token")


def require_role(role: UserRole):
    def dependency(user: CurrentUser = Depends(verify_token)) -> CurrentUser:
        if user.role != role:
            raise Forbidden(f"{role.value.title()} access required")
        return user

    return dependency


def verify_internal_key(request: Request, x_api_key: Optional[str] = Header(None)) -> None:
    expected = request.app.state.settings.internal_api_key
    if not x_api_key or not expected or not hmac.compare_digest(x_api_key, expected):
        raise AuthError("Unauthorized")
