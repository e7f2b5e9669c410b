"""Tests for the error taxonomy and message sanitizing."""

from __future__ import annotations

import pytest

from calbridge.errors import (
    CalbridgeError,
    DateFormatError,
    RecoverableNotFound,
    UpstreamAPIError,
    UpstreamAuthError,
    ValidationError,
    redact_credentials,
    safe_error_message,
)

pytestmark = pytest.mark.unit


class TestTaxonomy:
    def test_date_format_error_is_validation_error(self):
        exc = DateFormatError("next tuesday")
        assert isinstance(exc, ValidationError)
        assert "next tuesday" in str(exc)

    def test_upstream_errors_carry_service(self):
        auth = UpstreamAuthError(service="registry", message="expired")
        api = UpstreamAPIError(service="google", status_code=None, message="timeout")
        assert auth.service == "registry"
        assert str(api) == "google request failed (transport): timeout"
        assert isinstance(api, CalbridgeError)

    def test_recoverable_not_found(self):
        exc = RecoverableNotFound("evt-1", reason="cancelled")
        assert exc.event_id == "evt-1"
        assert "cancelled" in str(exc)


class TestRedaction:
    @pytest.mark.parametrize(
        ("message", "secret"),
        [
            ("client_secret=abc123&grant_type=refresh_token", "abc123"),
            ('{"accessToken": "tok-9"}', "tok-9"),
            ("Authorization: Bearer ya29.a0AfH6", "ya29.a0AfH6"),
        ],
    )
    def test_secrets_removed(self, message, secret):
        assert secret not in redact_credentials(message)

    def test_safe_message_normalizes_and_truncates(self):
        message = safe_error_message("a   b\n\nc" + "x" * 500)
        assert message.startswith("a b c")
        assert len(message) == 200

    def test_safe_message_accepts_exceptions(self):
        assert safe_error_message(ValueError("refresh_token=zzz")) == "refresh_token=[REDACTED]"
