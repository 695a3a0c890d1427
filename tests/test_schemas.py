import pytest
from pydantic import ValidationError

from authgate.api.schemas import LoginRequest, LoginResponse, MfaVerifyRequest, RegisterRequest, UserResponse

PASSWORD = "correct horse battery"


class TestRegisterRequest:
    @pytest.mark.parametrize(
        "raw",
        ["+15551234567", "+1 555 123 4567", "+1 (555) 123-4567", "+1.555.123.4567"],
    )
    def test_phone_is_compacted_to_e164(self, raw):
        body = RegisterRequest(username="alice", password=PASSWORD, phone=raw)
        assert body.phone == "+15551234567"

    @pytest.mark.parametrize("raw", ["15551234567", "+0123456789", "+1555", "+1555abc4567", ""])
    def test_bad_phone_numbers(self, raw):
        with pytest.raises(ValidationError):
            RegisterRequest(username="alice", password=PASSWORD, phone=raw)

    def test_zero_width_characters_are_removed_from_username(self):
        body = RegisterRequest(username="ali\u200bce", password=PASSWORD, phone="+15551234567")
        assert body.username == "alice"

    @pytest.mark.parametrize("username", ["", " alice", "alice ", "a" * 65])
    def test_bad_usernames(self, username):
        with pytest.raises(ValidationError):
            RegisterRequest(username=username, password=PASSWORD, phone="+15551234567")

    @pytest.mark.parametrize("password", ["short", "x" * 129])
    def test_password_length_bounds(self, password):
        with pytest.raises(ValidationError):
            RegisterRequest(username="alice", password=password, phone="+15551234567")


def test_unknown_fields_are_ignored():
    body = LoginRequest.model_validate({"username": "alice", "password": "pw", "remember": True})
    assert not hasattr(body, "remember")


def test_code_format_is_left_to_the_service():
    assert MfaVerifyRequest(username="alice", code="12a").code == "12a"


@pytest.mark.parametrize("typed", ["\uff41lice", "ali\u200bce", "\u202ealice"])
def test_login_and_mfa_usernames_match_the_registered_form(typed):
    registered = RegisterRequest(username=typed, password=PASSWORD, phone="+15551234567")

    assert LoginRequest(username=typed, password=PASSWORD).username == registered.username
    assert MfaVerifyRequest(username=typed, code="042").username == registered.username


def test_login_response_uses_wire_flag_name():
    user = UserResponse(id="u1", username="alice", phone="+15551234567")
    dumped = LoginResponse(mfa_required=True, user=user).model_dump(by_alias=True)

    assert dumped["requires2FA"] is True
    assert "mfa_required" not in dumped
