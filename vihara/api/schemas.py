from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_LOGIN_LENGTH = 254
MAX_PASSWORD_LENGTH = 128

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
_PHONE_PATTERN = re.compile(r"^[\+]?[0-9\s\-\(\)]{7,15}$")


class LoginRequest(BaseModel):
    # Presence is checked by the auth service so a blank field reports which one
    username: Optional[str] = Field(default=None, max_length=MAX_LOGIN_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    role: Optional[str] = Field(default=None, max_length=16)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value).strip() if value is not None else None


class RegisterRequest(BaseModel):
    """Donator self-registration form."""

    model_config = ConfigDict(extra="ignore")

    username: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=MAX_LOGIN_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    full_name: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=512)
    organization: Optional[str] = Field(default=None, max_length=128)
    preferred_contact: Optional[str] = Field(default=None, max_length=16)
    is_anonymous: bool = False

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: Optional[str]) -> Optional[str]:
        if not value or not value.strip():
            return value
        value = _normalize_unicode(value).strip()
        if len(value) < 3:
            raise ValueError("username must be at least 3 characters")
        if not _USERNAME_PATTERN.match(value):
            raise ValueError("username can only contain letters, numbers, and underscores")
        return value

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if not value or not value.strip():
            return value
        if not _PHONE_PATTERN.match(value.strip()):
            raise ValueError("invalid phone number format")
        return value.strip()

    @field_validator("preferred_contact")
    @classmethod
    def _validate_preferred_contact(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in {"email", "phone"}:
            raise ValueError("preferred_contact must be 'email' or 'phone'")
        return normalized

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password is not None and self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class RegisterResponse(BaseModel):
    principal_id: int
    role: str = "donator"
    redirect: str = "/login"


class LoginResponse(BaseModel):
    principal_id: int
    role: str
    login_name: str
    display_name: str
    session_id: str
    remaining_time: int
    redirect: str


class PasswordChangeRequest(BaseModel):
    current_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    new_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    logout_other_sessions: bool = True

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password is not None and self.new_password != self.confirm_password:
            raise ValueError("new passwords do not match")
        return self


class PasswordChangeResponse(BaseModel):
    message: str = "Password changed successfully"
    sessions_terminated: int = 0


class SessionStatusResponse(BaseModel):
    valid: bool
    remaining_time: int
    role: Optional[str] = None


class SessionExtendResponse(BaseModel):
    success: bool
    message: str
    remaining_time: int


class SessionInfo(BaseModel):
    token_hint: str
    session_id: Optional[str] = None
    role: str
    principal_id: int
    login_time: datetime
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionInfo]
    count: int


class LogoutOthersResponse(BaseModel):
    sessions_terminated: int


class PrincipalActiveRequest(BaseModel):
    active: bool


class PrincipalResponse(BaseModel):
    id: int
    role: str
    username: str
    email: str
    full_name: str
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None
