from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Query, Response
from fastapi.responses import RedirectResponse

from tokengate.api.error_handling import _error_response
from tokengate.api.schemas import (
    AccountResponse,
    Envelope,
    LoginRequest,
    RegisterRequest,
    SessionResponse,
)
from tokengate.config import Settings
from tokengate.logging import get_logger
from tokengate.service.accounts import AuthContext, SessionTokens
from tokengate.service.errors import InvalidTokenError
from tokengate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/account")

ACCESS_COOKIE = "ACCESS_TOKEN"
REFRESH_COOKIE = "REFRESH_TOKEN"


def _apply_session_cookies(
    response: Response, tokens: SessionTokens, settings: Settings
) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        expires=tokens.refresh_expires_at,
        path="/",
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )


def _session_envelope(tokens: SessionTokens) -> Envelope:
    return Envelope(
        status="ok",
        data=SessionResponse(
            user_id=tokens.user.id,
            email=tokens.user.email,
            access_expires_at=tokens.access_expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
        ),
    )


async def get_user(
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.accounts.authenticate(access_token)


@router.post("/register", response_model=Envelope, tags=["account"])
async def register(body: RegisterRequest, response: Response):
    """Create a password account and sign it in."""
    runtime = get_runtime()
    tokens = await runtime.accounts.register(body.email, body.password)
    _apply_session_cookies(response, tokens, runtime.settings)
    return _session_envelope(tokens)


@router.post("/login", response_model=Envelope, tags=["account"])
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    tokens = await runtime.accounts.login(body.email, body.password)
    _apply_session_cookies(response, tokens, runtime.settings)
    return _session_envelope(tokens)


@router.post("/refresh", response_model=Envelope, tags=["account"])
async def refresh(
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Exchange the refresh cookie for a new token pair.

    The presented token is single-use. On any failure both cookies are
    cleared so the client falls back to signing in again.
    """
    runtime = get_runtime()
    try:
        tokens = await runtime.accounts.refresh(refresh_token)
    except InvalidTokenError as exc:
        failure = _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code
        )
        _clear_session_cookies(failure, runtime.settings)
        return failure
    _apply_session_cookies(response, tokens, runtime.settings)
    return _session_envelope(tokens)


@router.get("/login/external", tags=["account"])
async def login_external(
    return_url: str = Query(..., alias="returnUrl", max_length=2048),
):
    """Redirect the browser to the external provider's consent page."""
    runtime = get_runtime()
    authorization_url = await runtime.external.start(return_url)
    return RedirectResponse(authorization_url, status_code=302)


@router.get("/login/external/callback", tags=["account"])
async def login_external_callback(
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=512),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish the provider handshake and return to the URL bound to ``state``."""
    runtime = get_runtime()
    claim, return_url = await runtime.external.complete(code, state, error=error)
    tokens = await runtime.accounts.login_with_external_provider(claim)
    redirect = RedirectResponse(return_url or "/", status_code=302)
    _apply_session_cookies(redirect, tokens, runtime.settings)
    return redirect


@router.get("/me", response_model=Envelope, tags=["account"])
async def me(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=AccountResponse(user_id=principal.user_id, email=principal.email),
    )


__all__ = ["router", "get_user", "ACCESS_COOKIE", "REFRESH_COOKIE"]
