"""Exception hierarchy for the manual assistant."""

from __future__ import annotations


class AssistantError(Exception):
    """Base exception for all assistant errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(AssistantError):
    """Raised at first AI use when the Gemini credential is missing."""

    pass


class GatewayError(AssistantError):
    """Raised when contacting the Gemini backend fails."""

    pass


class EmptyResponseError(GatewayError):
    """Raised when Gemini returns no text for a troubleshooting step."""

    pass


class MalformedResponseError(GatewayError):
    """Raised when a troubleshooting step cannot be parsed as the expected JSON."""

    pass


class DocumentError(AssistantError):
    """Base exception for manual ingestion failures."""

    pass


class UnsupportedFormatError(DocumentError):
    pass


class ParseError(DocumentError):
    pass


class ReadError(DocumentError):
    pass


class AllowlistError(AssistantError):
    """Base exception for allowlist lookups and mutations."""

    pass


class AccessDeniedError(AllowlistError):
    """Raised when a login id is not on the allowlist."""

    pass


class DuplicateUserError(AllowlistError):
    pass


class ProtectedUserError(AllowlistError):
    """Raised when removing or granting a user is not permitted for the actor."""

    pass
