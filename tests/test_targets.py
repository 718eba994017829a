import pytest

from idwarden.service.errors import ValidationError
from idwarden.service.notify import redact_target
from idwarden.service.targets import (
    client_ip_from_headers,
    guess_target,
    normalize_email,
    normalize_phone,
    normalize_target,
    validate_username,
)


class TestEmail:
    def test_lowercased_and_trimmed(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize(
        "value", ["plainaddress", "a@b", "@example.com", "a@-bad-.com", "a b@example.com"]
    )
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            normalize_email(value)


class TestPhone:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("13800138000", "+8613800138000"),
            ("138-0013-8000", "+8613800138000"),
            ("+1 (415) 555-0100", "+14155550100"),
            ("0044 20 7946 0000", "+442079460000"),
        ],
    )
    def test_normalized_to_e164(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_default_country_code_strips_trunk_zero(self):
        assert normalize_phone("020 7946 0000", "44") == "+442079460000"

    @pytest.mark.parametrize("value", ["", "+0123", "phone", "+1234567890123456"])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            normalize_phone(value)


class TestTargets:
    def test_exactly_one_contact(self):
        with pytest.raises(ValidationError):
            normalize_target(email="a@example.com", phone="13800138000")
        with pytest.raises(ValidationError):
            normalize_target()
        assert normalize_target(phone="13800138000") == ("phone", "+8613800138000")

    def test_guess_target(self):
        assert guess_target("Bob@Example.com") == "bob@example.com"
        assert guess_target("13800138000") == "+8613800138000"

    def test_redaction(self):
        assert redact_target("alice@example.com") == "al***@example.com"
        assert redact_target("+8613800138000") == "+86***00"
        assert redact_target("123") == "***"


class TestUsernameAndClientIp:
    def test_username_rules(self):
        assert validate_username(" alice_01 ") == "alice_01"
        for bad in ("ab", "x" * 21, "bad-name", ""):
            with pytest.raises(ValidationError):
                validate_username(bad)

    def test_forwarded_for_first_hop(self):
        headers = {"x-forwarded-for": "203.0.113.5, 10.0.0.1", "x-real-ip": "10.0.0.9"}
        assert client_ip_from_headers(headers, "127.0.0.1") == "203.0.113.5"

    def test_falls_back_to_real_ip_then_peer(self):
        assert client_ip_from_headers({"x-real-ip": "10.0.0.9"}, "127.0.0.1") == "10.0.0.9"
        assert client_ip_from_headers({}, "127.0.0.1") == "127.0.0.1"
