from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Request, Response

from agora.api.schemas import (
    AuthResponse,
    EmailRequest,
    Envelope,
    ForgotPasswordVerifyRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordChangeRequest,
    RecoveryConfirmRequest,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    UserResponse,
)
from agora.config import Settings
from agora.logging import get_logger
from agora.service.auth import LoginResult
from agora.service.errors import AuthenticationError
from agora.service.runtime import get_runtime
from agora.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def client_ip(request: Request) -> str:
    """First hop of ``X-Forwarded-For``, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else ""


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_access_token(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> str:
    token = _extract_bearer(authorization) or access_token
    if not token:
        raise AuthenticationError("missing access token")
    return token


async def get_user(token: str = Depends(get_access_token)) -> User:
    runtime = get_runtime()
    return runtime.tokens.validate(token)


def _apply_session_cookies(response: Response, result: LoginResult, settings: Settings) -> None:
    response.set_cookie(
        "session_id",
        result.session.id,
        max_age=settings.session_cookie_max_age_seconds,
        secure=settings.cookie_secure,
        path="/",
    )
    # refresh/access max-ages are set independently of the token lifetimes
    response.set_cookie(
        "refresh_token",
        result.tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.refresh_cookie_max_age_seconds,
        path="/",
    )
    response.set_cookie(
        "access_token",
        result.tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.access_cookie_max_age_seconds,
        path="/",
    )


def _auth_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        session=SessionResponse.from_session(result.session),
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        access_expires_at=result.tokens.access_expires_at,
        refresh_expires_at=result.tokens.refresh_expires_at,
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    runtime = get_runtime()
    user = await runtime.auth.register(
        body.email,
        body.password,
        body.display_name,
        birthday=body.birthday,
        gender=body.gender,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user.public()))


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
    session_id: Optional[str] = Cookie(None),
):
    """Sign in with email and password.

    Reuses the ``session_id`` cookie session when it is still live and sets
    the session, refresh and access cookies on success.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        client_ip(request),
        user_agent,
        session_id=session_id,
    )
    _apply_session_cookies(response, result, runtime.settings)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/logout", response_model=Envelope)
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    session_id: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        body.session_id if body else None, cookie_session_id=session_id
    )
    response.delete_cookie("access_token", path="/")
    response.delete_cookie("refresh_token", path="/")
    return Envelope(status="ok", data=MessageResponse(message="Logout successful"))


@router.post("/refresh", response_model=Envelope)
async def refresh(
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
    session_id: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_token
    if not token:
        raise AuthenticationError("missing refresh token")
    result = await runtime.auth.refresh(
        token, session_id=(body.session_id if body else None) or session_id
    )
    _apply_session_cookies(response, result, runtime.settings)
    return Envelope(status="ok", data=_auth_response(result))


@router.get("/me", response_model=Envelope)
async def me(token: str = Depends(get_access_token)):
    runtime = get_runtime()
    user = await runtime.auth.me(token)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/change-password", response_model=Envelope)
async def change_password(body: PasswordChangeRequest, user: User = Depends(get_user)):
    runtime = get_runtime()
    updated = await runtime.auth.change_password(
        user.id, body.old_password, body.new_password
    )
    return Envelope(status="ok", data=UserResponse.from_user(updated))


@router.post("/recovery", response_model=Envelope)
async def recovery_account(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.recovery_account(body.email)
    return Envelope(status="ok", data=MessageResponse(message="Send recovery email successful"))


@router.post("/recovery/confirm", response_model=Envelope)
async def confirm_recovery_account(body: RecoveryConfirmRequest):
    runtime = get_runtime()
    await runtime.auth.confirm_recovery_account(body.email, body.code, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="Account recovered"))


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data=MessageResponse(message="Send forgot password email successful"))


@router.post("/forgot-password/verify", response_model=Envelope)
async def verify_token_forgot_password(body: ForgotPasswordVerifyRequest):
    runtime = get_runtime()
    await runtime.auth.verify_token_forgot_password(
        body.user_id, body.token, body.new_password, body.email
    )
    return Envelope(status="ok", data=MessageResponse(message="Change password successful"))
