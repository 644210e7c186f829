from __future__ import annotations

import re
import unicodedata
from typing import Any, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from authcore.service.errors import ValidationError
from authcore.storage.models import Provider

_EMAIL_LOCAL_PART = re.compile(r"^[a-z0-9!#$%&'*+/=?^_`{|}~.-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 4096

RequestT = TypeVar("RequestT", bound=BaseModel)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


class _DeviceContext(_Request):
    device_info: Optional[str] = Field(default=None, max_length=255)
    ip_address: Optional[str] = Field(default=None, max_length=45)


class RegisterRequest(_DeviceContext):
    email: str
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(_DeviceContext):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(_Request):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class SocialLoginRequest(_DeviceContext):
    provider: Provider
    code: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    state: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)

    @field_validator("provider")
    @classmethod
    def _reject_local(cls, value: Provider) -> Provider:
        if value is Provider.LOCAL:
            raise ValueError("provider must be a social provider")
        return value


class ChangePasswordRequest(_Request):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(
        ..., min_length=MIN_PASSWORD_LENGTH, max_length=MAX_PASSWORD_LENGTH
    )


class PasswordResetRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirmRequest(_Request):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_password: str = Field(
        ..., min_length=MIN_PASSWORD_LENGTH, max_length=MAX_PASSWORD_LENGTH
    )


def parse_request(model: Type[RequestT], data: Mapping[str, Any]) -> RequestT:
    """Validate ``data`` into ``model`` or raise the service ValidationError."""
    try:
        return model.model_validate(dict(data))
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise ValidationError(
            "invalid request",
            detail={"fields": fields, "errors": [err["msg"] for err in exc.errors()]},
        ) from exc
