from __future__ import annotations

from typing import Any, Optional, Type, TypeVar

from fastapi import APIRouter, Body, Depends, Header, Request, Response
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from authgate.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    MfaVerifyRequest,
    PasswordChangeRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from authgate.logging import get_correlation_id, get_logger
from authgate.service.auth import (
    AuthContext,
    Authenticated,
    Blocked,
    Expired,
    Rejected,
    Retry,
    UserSummary,
)
from authgate.service.crypto import (
    DecryptionError,
    is_transport_payload,
    parse_decrypted_payload,
)
from authgate.service.errors import AuthRejected, RateLimited, ValidationError
from authgate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _ok(data: Any) -> Envelope:
    cid = get_correlation_id()
    if cid:
        return Envelope(status="ok", data=data, request_id=cid)
    return Envelope(status="ok", data=data)


def _user_response(user: UserSummary) -> UserResponse:
    return UserResponse(**user.as_dict())


def _read_body(model: Type[ModelT], raw: Any) -> ModelT:
    """Validate a request body, decrypting it first when it is a transport payload."""
    if is_transport_payload(raw):
        runtime = get_runtime()
        try:
            raw = parse_decrypted_payload(runtime.transport_cipher.decrypt(raw))
        except DecryptionError as exc:
            raise ValidationError("encrypted payload could not be decrypted") from exc
    try:
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        # Only location and message; the input may hold a password
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
            for err in exc.errors()
        ]
        raise ValidationError("invalid request", detail={"errors": errors}) from exc


def _client_id(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def enforce_auth_rate_limit(request: Request, response: Response) -> str:
    """Per-client request budget in front of the unauthenticated auth routes."""
    runtime = get_runtime()
    client_id = _client_id(request)
    limit = runtime.settings.auth_rate_limit_requests
    window = runtime.settings.auth_rate_limit_window_seconds
    allowed, remaining = await runtime.limiter.hit_request_limit(client_id, limit, window)
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(remaining)
    if not allowed:
        logger.warning("auth_request_limit_exceeded", client=client_id, limit=limit)
        raise RateLimited(
            "too many requests", detail={"retry_after_seconds": window}
        )
    return client_id


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    payload: Any = Body(...),
    client_id: str = Depends(enforce_auth_rate_limit),
):
    """Create a user with a username, password and phone number for SMS codes.

    Raises:
        400: If the input is invalid or the username is taken
        429: If the client exceeded its request budget
    """
    body = _read_body(RegisterRequest, payload)
    runtime = get_runtime()
    user = await runtime.auth.register(body.username, body.password, body.phone)
    return _ok(_user_response(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    payload: Any = Body(...),
    client_id: str = Depends(enforce_auth_rate_limit),
):
    """Check username and password, then send a one-time code by SMS.

    Raises:
        401: If credentials are invalid; ``details.remaining`` counts attempts left
        429: If the username is locked out
    """
    body = _read_body(LoginRequest, payload)
    runtime = get_runtime()
    result = await runtime.auth.login(body.username, body.password, client_id=client_id)
    if isinstance(result, Blocked):
        raise RateLimited("too many failed login attempts, try again later")
    if isinstance(result, Rejected):
        raise AuthRejected("invalid credentials", remaining=result.remaining)
    login_response = LoginResponse(mfa_required=result.mfa_required, user=_user_response(result.user))
    return _ok(login_response.model_dump(by_alias=True))


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def verify_mfa(
    payload: Any = Body(...),
    client_id: str = Depends(enforce_auth_rate_limit),
):
    body = _read_body(MfaVerifyRequest, payload)
    runtime = get_runtime()
    result = await runtime.auth.verify_mfa(body.username, body.code, client_id=client_id)
    if isinstance(result, Authenticated):
        return _ok(
            TokenResponse(
                token=result.token,
                expires_at=result.expires_at,
                user=_user_response(result.user),
            )
        )
    if isinstance(result, Retry):
        raise AuthRejected("invalid verification code", remaining=result.remaining)
    if isinstance(result, Blocked):
        raise RateLimited("too many invalid codes, please log in again")
    if isinstance(result, Expired):
        raise ValidationError("verification code expired, please log in again")
    raise AuthRejected("invalid credentials")


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    """Revoke the presented bearer token until it expires.

    An already expired token is still accepted and revoked for a short grace period.
    """
    runtime = get_runtime()
    token = runtime.auth._extract_bearer(authorization)
    if not token:
        raise AuthRejected("missing bearer token")
    await runtime.auth.logout(token)
    return _ok(MessageResponse(message="logged out"))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    payload: Any = Body(...),
    principal: AuthContext = Depends(get_user),
):
    """Change the current user's password.

    Requires the current password for verification.
    """
    body = _read_body(PasswordChangeRequest, payload)
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user_id, body.old_password, body.new_password
    )
    return _ok(MessageResponse(message="password changed"))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    return _ok(
        UserResponse(
            id=principal.user_id, username=principal.username, phone=principal.phone
        )
    )
