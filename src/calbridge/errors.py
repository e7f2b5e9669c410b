"""Error taxonomy shared by the reconciliation core and its collaborators.

Status code mapping used by the HTTP surface:
- ``ValidationError`` / ``DateFormatError`` -> 400
- ``UpstreamAuthError`` / ``UpstreamAPIError`` -> 502
- ``RecoverableNotFound`` never leaves the reconciler
"""

from __future__ import annotations

import re


class CalbridgeError(Exception):
    """Base error for the registry/calendar bridge."""


class ValidationError(CalbridgeError):
    """Raised when an inbound payload lacks required fields or has the wrong shape."""


class DateFormatError(ValidationError):
    """Raised when a date string matches no known format and is not ISO-like."""

    def __init__(self, raw_value: str, message: str | None = None) -> None:
        self.raw_value = raw_value
        super().__init__(message or f"Unrecognised date format: {raw_value!r}")


class UpstreamAuthError(CalbridgeError):
    """Raised when a token refresh against either remote fails."""

    def __init__(self, *, service: str, message: str) -> None:
        self.service = service
        self.message = message
        super().__init__(f"{service} token refresh failed: {message}")


class UpstreamAPIError(CalbridgeError):
    """Raised when a remote returns an unexpected status or the transport fails."""

    def __init__(self, *, service: str, status_code: int | None, message: str) -> None:
        self.service = service
        self.status_code = status_code
        self.message = message
        status = status_code if status_code is not None else "transport"
        super().__init__(f"{service} request failed ({status}): {message}")


class RecoverableNotFound(CalbridgeError):
    """A counterpart is gone (404/410) or cancelled; absorbed into a create."""

    def __init__(self, event_id: str, *, reason: str = "missing") -> None:
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Counterpart {event_id!r} is {reason}")


_SECRET_PATTERNS = (
    (
        re.compile(r"(?i)\b(client_secret|refresh_token|refreshToken|access_token|accessToken)\s*=\s*([^\s,;&]+)"),
        r"\1=[REDACTED]",
    ),
    (
        re.compile(
            r"""(?i)(['"]?(?:client_secret|refresh_token|refreshToken|access_token|accessToken)['"]?\s*:\s*)(['"]).*?\2"""
        ),
        r'\1"[REDACTED]"',
    ),
    (
        re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+"),
        "Bearer [REDACTED]",
    ),
)


def redact_credentials(message: str) -> str:
    """Redact credential-looking values from an error message."""
    redacted = message
    for pattern, replacement in _SECRET_PATTERNS:
        redacted = pattern.sub(replacement, redacted)
    return redacted


def safe_error_message(exc: BaseException | str, *, limit: int = 200) -> str:
    """Return a redacted, whitespace-normalized and truncated error message."""
    raw = exc if isinstance(exc, str) else str(exc)
    return " ".join(redact_credentials(raw).split())[:limit]
