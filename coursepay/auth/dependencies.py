# coursepay/auth/dependencies.py
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import httpx
from typing import Annotated

from clerk_backend_api import Clerk
from clerk_backend_api.security.types import AuthenticateRequestOptions
from clerk_backend_api.models import ClerkBaseError

from .principal import Principal, Role
from .policy import authorize
from ..config import settings
from ..error_handlers import UnauthorizedException
from ..logging_config import get_logger

logger = get_logger(__name__)

clerk_client = Clerk(bearer_auth=settings.CLERK_SECRET_KEY)
bearer_scheme = HTTPBearer()


def _role_from_claims(payload: dict) -> Role:
    # Role lives in a custom session claim, either top level or in metadata
    raw = payload.get("role") or (payload.get("metadata") or {}).get("role")
    try:
        return Role(str(raw).upper()) if raw else Role.STUDENT
    except ValueError:
        logger.warning("Unknown role claim, defaulting to STUDENT", extra={"extra_data": {"role": raw}})
        return Role.STUDENT


async def get_current_principal(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)]
) -> Principal:
    try:
        # Clerk authenticates an httpx request, not a Starlette one
        httpx_request = httpx.Request(
            method=request.method,
            url=str(request.url),
            headers=dict(request.headers)
        )

        request_state = clerk_client.authenticate_request(
            httpx_request,
            AuthenticateRequestOptions(authorized_parties=[settings.FRONTEND_URL])
        )
    except ClerkBaseError as e:
        raise UnauthorizedException("Could not validate credentials") from e

    if not request_state.is_signed_in:
        raise UnauthorizedException(f"Authentication failed: {request_state.reason}")

    user_id = request_state.payload.get("sub")
    if not user_id:
        raise UnauthorizedException("Invalid token: missing user ID")

    # Rate limiter keys on this
    request.state.user_id = user_id

    return Principal(user_id=user_id, role=_role_from_claims(request_state.payload))


async def require_admin(
    principal: Principal = Depends(get_current_principal)
) -> Principal:
    authorize(principal, "admin", "access")
    return principal
