"""
License authority errors.

Each error carries a machine-readable code and the HTTP status the API
answers with. The API layer maps them once; the CLI maps them to exit codes.
"""
from __future__ import annotations


class LicenseAuthorityError(Exception):
    """Base class for errors raised by the license authority."""

    status_code = 500
    default_code = "INTERNAL"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ValidationError(LicenseAuthorityError):
    """Malformed key, unknown license type, bad duration or setting value."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFound(LicenseAuthorityError):
    status_code = 404
    default_code = "NOT_FOUND"

    def __init__(self, message: str = "License not found", code: str | None = None) -> None:
        super().__init__(message, code)


class Conflict(LicenseAuthorityError):
    status_code = 409
    default_code = "CONFLICT"


class HwidMismatch(Conflict):
    default_code = "HWID_MISMATCH"

    def __init__(self, message: str = "HwidMismatch") -> None:
        super().__init__(message)


class IllegalTransition(Conflict):
    default_code = "ILLEGAL_TRANSITION"


class DuplicateKey(Conflict):
    default_code = "DUPLICATE_KEY"


class Gone(LicenseAuthorityError):
    """License is expired or revoked and the operation needs it alive."""

    status_code = 410
    default_code = "GONE"


class KeyExhaustion(LicenseAuthorityError):
    status_code = 500
    default_code = "KEY_EXHAUSTION"

    def __init__(self, message: str = "Failed to generate a unique license key") -> None:
        super().__init__(message)


class UpstreamError(LicenseAuthorityError):
    """An outbound call the caller explicitly asked for did not succeed."""

    status_code = 502
    default_code = "UPSTREAM_ERROR"
