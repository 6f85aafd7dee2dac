"""FastAPI dependencies: get_current_principal / require_admin.

Usage in any protected router:
    from src.lp_gateway.auth.dependencies import get_current_principal

    @router.get("/protected")
    async def protected(principal: Principal = Depends(get_current_principal)):
        ...
"""

from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from src.lp_common.enums import PrincipalRole
from src.lp_common.errors import InvalidCredentialsError, PermissionDeniedError
from src.lp_gateway.auth.jwt_handler import decode_token

# auto_error=False so a missing header gets the same 401 body as a bad token
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)

_CREDENTIALS_EXCEPTION = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Invalid or expired token",
    headers={"WWW-Authenticate": "Bearer"},
)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, as asserted by the token."""

    user_id: str
    role: PrincipalRole

    @property
    def is_admin(self) -> bool:
        return self.role == PrincipalRole.ADMIN


async def get_current_principal(
    token: str | None = Depends(oauth2_scheme),
) -> Principal:
    """Extract and validate the JWT Bearer token.

    Raises HTTP 401 if the token is missing, invalid, expired, or carries an
    unknown role.
    """
    if not token:
        raise _CREDENTIALS_EXCEPTION
    try:
        payload = decode_token(token)
    except InvalidCredentialsError:
        raise _CREDENTIALS_EXCEPTION from None

    user_id = payload.get("sub")
    if not user_id:
        raise _CREDENTIALS_EXCEPTION

    try:
        role = PrincipalRole(payload.get("role", PrincipalRole.USER.value))
    except ValueError:
        raise _CREDENTIALS_EXCEPTION from None

    return Principal(user_id=str(user_id), role=role)


async def require_admin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """Verify the caller holds the admin role (HTTP 403 otherwise)."""
    if not principal.is_admin:
        raise PermissionDeniedError()
    return principal
