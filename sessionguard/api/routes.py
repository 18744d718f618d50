from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from sessionguard.api.schemas import Envelope, LoginRequest, TokenPairResponse, TokenRefreshRequest
from sessionguard.logging import get_logger
from sessionguard.service.context import RequestContext
from sessionguard.service.runtime import get_runtime
from sessionguard.service.validator import ValidationResult, extract_bearer
from sessionguard.storage.models import ADMIN_ROLES, SecurityLevel, TokenClaims

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

TOKEN_REFRESH_HEADER = "X-Token-Refresh"


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def request_context(request: Request) -> RequestContext:
    peer_ip = request.client.host if request.client else None
    return RequestContext.from_headers(request.headers, peer_ip)


@dataclass
class Principal:
    """The authenticated caller of a route."""

    token: str
    claims: TokenClaims
    context: RequestContext
    result: ValidationResult

    @property
    def user_id(self) -> str:
        return self.claims.user_id

    @property
    def session_id(self) -> Optional[str]:
        return self.claims.session_id

    @property
    def role(self) -> str:
        return self.claims.role


def require_security(level: SecurityLevel) -> Callable[..., Awaitable[Principal]]:
    """Build a dependency that validates the bearer token at ``level``.

    Rejections surface as a generic 401; the specific flags only reach logs
    and the audit trail.
    """

    async def dependency(
        request: Request,
        response: Response,
        authorization: Optional[str] = Header(None),
    ) -> Principal:
        runtime = get_runtime()
        context = request_context(request)
        token = extract_bearer(authorization)
        result = await runtime.auth.validate(context, token, level)
        if not result.valid or result.claims is None or token is None:
            logger.info(
                "request_rejected",
                path=request.url.path,
                security_level=level.value,
                flags=result.flags,
                error_code=result.error.value if result.error else None,
            )
            if result.require_reauth:
                raise _http_error(
                    "reauth_required",
                    "reauthentication required",
                    status_code=401,
                    headers={"WWW-Authenticate": "Bearer"},
                )
            raise _http_error(
                "unauthorized",
                "unauthorized",
                status_code=401,
                headers={"WWW-Authenticate": "Bearer"},
            )
        if result.should_refresh:
            response.headers[TOKEN_REFRESH_HEADER] = "1"
        return Principal(token=token, claims=result.claims, context=context, result=result)

    return dependency


get_user_low = require_security(SecurityLevel.LOW)
get_user = require_security(SecurityLevel.MEDIUM)
get_sensitive_user = require_security(SecurityLevel.HIGH)


async def get_admin_user(principal: Principal = Depends(get_sensitive_user)) -> Principal:
    if principal.role not in ADMIN_ROLES:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password and open a new session.

    Raises:
        401: If the credentials are invalid or the account cannot sign in
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, request_context(request))
    if not result.ok or result.user is None or result.pair is None:
        logger.info("login_rejected", error_code=result.error.value if result.error else None)
        raise _http_error("unauthorized", "invalid credentials", status_code=401)
    pair = result.pair
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            user_id=result.user.id,
            session_id=pair.session_id,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            refresh_expires_in=pair.refresh_expires_in,
            role=result.user.role,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    """Exchange a refresh token for a new pair; each refresh token works once."""
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token, request_context(request))
    if not result.ok or result.pair is None:
        raise _http_error("unauthorized", "invalid refresh", status_code=401)
    pair = result.pair
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            user_id=result.user_id or "",
            session_id=pair.session_id,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            refresh_expires_in=pair.refresh_expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: Principal = Depends(get_user_low)):
    runtime = get_runtime()
    runtime.auth.logout(principal.token)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    sessions = runtime.auth.list_user_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data={
            "items": [
                s.to_public_dict(current_session_id=principal.session_id) for s in sessions
            ]
        },
    )


@router.delete("/auth/sessions", response_model=Envelope, tags=["auth"])
async def logout_other_sessions(principal: Principal = Depends(get_sensitive_user)):
    """End every session of the caller except the one making this request."""
    runtime = get_runtime()
    count = runtime.auth.invalidate_all_for_user(
        principal.user_id,
        "logout_all",
        except_session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"invalidated": count})


@router.get("/auth/sessions/stats", response_model=Envelope, tags=["admin"])
async def session_stats(principal: Principal = Depends(get_admin_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.session_stats().to_dict())


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def logout_session(
    session_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_sensitive_user),
):
    runtime = get_runtime()
    session = runtime.registry.get_session(session_id)
    # Sessions of other users look exactly like missing ones
    if session is None or session.user_id != principal.user_id:
        raise _http_error("not_found", "session not found", status_code=404)
    runtime.auth.invalidate_session(session_id, "logout_session")
    return Envelope(status="ok", data={"session_id": session_id, "invalidated": True})


@router.get("/auth/security-report", response_model=Envelope, tags=["auth"])
async def security_report(request: Request, authorization: Optional[str] = Header(None)):
    """Diagnostic view of the presented access token; every check is flag-only."""
    runtime = get_runtime()
    token = extract_bearer(authorization)
    report = await runtime.auth.security_report(request_context(request), token)
    if report["token_info"] is None:
        raise _http_error("unauthorized", "unauthorized", status_code=401)
    return Envelope(status="ok", data=report)
