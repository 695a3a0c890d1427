from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _strip_invisible(value: str) -> str:
    """Drop zero-width and bidi override characters, then NFKC normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_username(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("username must be a string")
    normalized = _strip_invisible(value)
    if normalized != normalized.strip():
        raise ValueError("username must not start or end with whitespace")
    if not normalized:
        raise ValueError("username must not be empty")
    if len(normalized) > 64:
        raise ValueError("username must be at most 64 characters")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


_E164_PATTERN = re.compile(r"^\+[1-9][0-9]{6,14}$")


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: str
    password: str
    phone: str

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: str) -> str:
        compact = re.sub(r"[\s().-]", "", value or "")
        if not _E164_PATTERN.match(compact):
            raise ValueError("phone must be in E.164 format, e.g. +15551234567")
        return compact


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _strip_invisible(value)


class MfaVerifyRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: str = Field(..., min_length=1, max_length=64)
    # Format is checked by the service so a malformed code never reaches the store
    code: str = Field(..., max_length=16)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _strip_invisible(value)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    model_config = ConfigDict(extra="ignore")

    old_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserResponse(BaseModel):
    id: str
    username: str
    phone: str


class LoginResponse(BaseModel):
    mfa_required: bool = Field(True, serialization_alias="requires2FA")
    user: UserResponse


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserResponse


class MessageResponse(BaseModel):
    message: str
