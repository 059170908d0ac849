from typing import Iterable
from fastapi import HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from backend.auth.constants import logger
from backend.auth.dependencies import Authentication, principal_from_claims
from backend.common.utils import build_error, json_error


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Bearer JWT check for every path except the public prefixes."""

    def __init__(self, app, *, public_paths: Iterable[str]):
        super().__init__(app)
        self.public_paths = tuple(public_paths)

    async def dispatch(self, request: Request, call_next):

        if request.url.path.startswith(self.public_paths):
            return await call_next(request)

        try:
            claims = await Authentication()(request)
            principal = principal_from_claims(claims)
        except HTTPException as e:
            reason = getattr(e, "detail", "Missing or Invalid Auth Headers")
            logger.warning("auth.middleware.failed", extra={
                "reason": reason,
                "path": request.url.path,
                "method": request.method
            })
            payload = build_error(code="INVALID_AUTH", details={"message": "Missing or Invalid Auth Headers"})
            return json_error(payload, status_code=status.HTTP_401_UNAUTHORIZED)

        request.state.principal = principal
        request.state.user_identifier = principal.user_id

        return await call_next(request)
