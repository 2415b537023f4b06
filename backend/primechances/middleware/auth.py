from __future__ import annotations

import re

from fastapi import HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware

from ..auth.cognito import CognitoAuthError, verify_bearer_token
from ..observability.context import user_id_var
from ..observability.logging import get_logger
from ..problem_details import problem_response

log = get_logger("auth_middleware")

_COUNTER_PATH = re.compile(r"^/api/opportunities/[^/]+/(view|share)$")


def is_public_path(method: str, path: str) -> bool:
    if path == "/":
        return True

    m = method.upper()
    # Anonymous browsing of the public catalogue.
    if m == "GET" and (path == "/api/opportunities" or path.startswith("/api/opportunities/")):
        return True
    # View/share counters are bumped for anonymous visitors too.
    if m == "POST" and _COUNTER_PATH.match(path):
        return True

    return False


def _bearer(request: Request) -> str | None:
    auth = request.headers.get("authorization")
    if not auth:
        return None
    parts = str(auth).split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


async def require_auth(request: Request):
    path = request.url.path

    # CORSMiddleware handles preflight.
    if request.method.upper() == "OPTIONS":
        return

    if not path.startswith("/api/"):
        return

    token = _bearer(request)

    if is_public_path(request.method, path):
        # Signed-in callers on public routes still get their identity attached
        # (admins see unpublished rows); a bad token just means anonymous.
        if token:
            try:
                request.state.user = verify_bearer_token(token)
            except CognitoAuthError:
                request.state.user = None
        return

    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        user = verify_bearer_token(token)
    except CognitoAuthError as e:
        raise HTTPException(status_code=int(getattr(e, "status_code", 401)), detail=str(e))

    request.state.user = user


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Auth enforcement as ASGI middleware.

    Added before CORSMiddleware so CORS wraps every response, auth failures
    included.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            await require_auth(request)
        except HTTPException as exc:
            status_code = int(exc.status_code)
            if status_code >= 500:
                log.error("auth_middleware_error", status_code=status_code, path=request.url.path)
            else:
                log.info("auth_middleware_denied", status_code=status_code, path=request.url.path)
            return problem_response(
                request=request,
                status_code=status_code,
                title="Unauthorized" if status_code == 401 else None,
                detail=str(exc.detail) if isinstance(exc.detail, str) else None,
            )

        user = getattr(request.state, "user", None)
        token = user_id_var.set(str(getattr(user, "sub", "") or "") or None)
        try:
            return await call_next(request)
        finally:
            user_id_var.reset(token)
