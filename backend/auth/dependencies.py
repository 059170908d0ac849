from dataclasses import dataclass, field
from typing import FrozenSet, Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer
from backend.auth.constants import ADMIN_ROLE, logger
from backend.auth.utils import decode_token


@dataclass(frozen=True)
class Principal:
    user_id: int
    roles: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


class Authentication(HTTPBearer):
    def __init__(self, auto_error=True):
        super().__init__(auto_error=auto_error)

    async def __call__(self, request: Request) -> Optional[dict]:
        auth_creds = await super().__call__(request)
        if auth_creds is None:
            return None

        decoded_token = decode_token(auth_creds.credentials)
        if not decoded_token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token provided.")

        return decoded_token


def principal_from_claims(claims: dict) -> Principal:
    try:
        user_id = int(claims.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token subject is not a user id.")
    roles = claims.get("roles") or []
    return Principal(user_id=user_id, roles=frozenset(str(r) for r in roles))


async def get_principal(request: Request) -> Principal:
    # set by AuthenticationMiddleware for protected paths
    principal = getattr(request.state, "principal", None)
    if principal is not None:
        return principal

    claims = await Authentication()(request)
    principal = principal_from_claims(claims)
    request.state.principal = principal
    return principal


async def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        logger.warning("auth.admin_required", extra={"user_id": principal.user_id})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return principal
