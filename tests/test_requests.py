import pytest

from authcore.service.errors import ValidationError
from authcore.service.requests import (
    ChangePasswordRequest,
    LoginRequest,
    PasswordResetConfirmRequest,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    SocialLoginRequest,
    parse_request,
)
from authcore.storage.models import Provider


def test_register_request_normalizes_email():
    req = parse_request(
        RegisterRequest,
        {"email": "  Alice@Example.COM ", "password": "Sturdy-pass-1", "device_info": "ios"},
    )
    assert req.email == "alice@example.com"
    assert req.device_info == "ios"


@pytest.mark.parametrize(
    "email",
    ["not-an-email", "a@b", "@example.com", "a@-example.com", "a b@example.com"],
)
def test_register_request_rejects_bad_email(email):
    with pytest.raises(ValidationError) as exc_info:
        parse_request(RegisterRequest, {"email": email, "password": "Sturdy-pass-1"})
    assert exc_info.value.detail["fields"] == ["email"]


def test_register_password_length():
    with pytest.raises(ValidationError) as exc_info:
        parse_request(RegisterRequest, {"email": "a@example.com", "password": "short"})
    assert exc_info.value.detail["fields"] == ["password"]


def test_login_accepts_short_passwords():
    req = parse_request(LoginRequest, {"email": "a@example.com", "password": "x"})
    assert req.password == "x"


def test_unknown_fields_rejected():
    with pytest.raises(ValidationError) as exc_info:
        parse_request(RefreshRequest, {"refresh_token": "tok", "remember_me": True})
    assert "remember_me" in exc_info.value.detail["fields"]


def test_refresh_token_required():
    with pytest.raises(ValidationError):
        parse_request(RefreshRequest, {"refresh_token": ""})


def test_social_request_provider():
    req = parse_request(SocialLoginRequest, {"provider": "apple", "code": "c", "state": "s"})
    assert req.provider is Provider.APPLE
    assert req.state == "s"

    with pytest.raises(ValidationError):
        parse_request(SocialLoginRequest, {"provider": "local", "code": "c", "state": "s"})
    with pytest.raises(ValidationError):
        parse_request(SocialLoginRequest, {"provider": "github", "code": "c", "state": "s"})


def test_social_request_requires_state():
    with pytest.raises(ValidationError) as exc_info:
        parse_request(SocialLoginRequest, {"provider": "google", "code": "c"})
    assert exc_info.value.detail["fields"] == ["state"]


def test_ip_address_length_capped():
    with pytest.raises(ValidationError) as exc_info:
        parse_request(
            LoginRequest,
            {"email": "a@example.com", "password": "x", "ip_address": "1" * 46},
        )
    assert exc_info.value.detail["fields"] == ["ip_address"]


def test_password_reset_requests():
    req = parse_request(PasswordResetRequest, {"email": " Bob@Example.com "})
    assert req.email == "bob@example.com"

    confirm = parse_request(
        PasswordResetConfirmRequest, {"token": "t" * 43, "new_password": "Fresh-pass-2"}
    )
    assert confirm.token == "t" * 43

    with pytest.raises(ValidationError) as exc_info:
        parse_request(PasswordResetConfirmRequest, {"token": "t", "new_password": "short"})
    assert exc_info.value.detail["fields"] == ["new_password"]


def test_change_password_new_password_policy():
    with pytest.raises(ValidationError):
        parse_request(
            ChangePasswordRequest, {"current_password": "old", "new_password": "short"}
        )
    req = parse_request(
        ChangePasswordRequest, {"current_password": "old", "new_password": "Fresh-pass-2"}
    )
    assert req.current_password == "old"
