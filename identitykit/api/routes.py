from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Query

from identitykit.api.schemas import (
    AccountResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenRefreshRequest,
    TokenResponse,
)
from identitykit.logging import get_correlation_id
from identitykit.service.auth import TokenPair
from identitykit.service.errors import AuthError, AuthErrorKind
from identitykit.service.runtime import get_runtime

router = APIRouter(prefix="/v1")


def _ok(data: Any) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        token_type=pair.token_type,
    )


async def get_account_id(authorization: Optional[str] = Header(None)) -> str:
    """Resolve the bearer access token to an account id or fail with 401."""
    if not authorization:
        raise AuthError(AuthErrorKind.INVALID_ACCESS_TOKEN, "missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError(AuthErrorKind.INVALID_ACCESS_TOKEN, "missing bearer token")
    result = await get_runtime().auth.authenticate_access_token(token.strip())
    return result.unwrap()


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a new account.

    Raises:
        409: If the email is already registered
    """
    result = await get_runtime().auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    account = result.unwrap()
    return _ok(
        RegisterResponse(
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
        )
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        409: If the account is unknown or the password is wrong
    """
    result = await get_runtime().auth.login(email=body.email, password=body.password)
    return _ok(_token_response(result.unwrap()))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Rotate the refresh token; the presented one stops working."""
    result = await get_runtime().auth.refresh(body.refresh_token)
    return _ok(_token_response(result.unwrap()))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_account(account_id: str = Depends(get_account_id)):
    result = await get_runtime().auth.fetch_current_user(account_id)
    view = result.unwrap()
    return _ok(
        AccountResponse(
            email=view.email,
            first_name=view.first_name,
            last_name=view.last_name,
            roles=list(view.roles),
            status=view.status.value,
            quota=view.quota,
        )
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Mail a password reset link to the account's address."""
    result = await get_runtime().auth.forgot_password(body.email)
    result.unwrap()
    return _ok(MessageResponse(message="password reset email sent"))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    token: str = Query(..., min_length=1, max_length=4096),
):
    """Set a new password using the token from the reset link.

    Raises:
        400: If the token is invalid, expired or superseded
    """
    result = await get_runtime().auth.reset_password(token, body.new_password)
    result.unwrap()
    return _ok(MessageResponse(message="password has been reset"))
