# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc_client

"""
Custom exceptions for the coreason-oidc-client package.
"""


class CoreasonOidcError(Exception):
    """Base exception for all coreason-oidc-client errors."""


class ConfigurationInvalidError(CoreasonOidcError):
    """
    Raised when a required configuration field is missing or empty.
    No URL is built and no callback is processed while this holds.
    """

    def __init__(self, missing_fields: list[str]) -> None:
        self.missing_fields = missing_fields
        super().__init__(f"OIDC configuration is incomplete, missing: {', '.join(missing_fields)}")


class TokenValidationError(CoreasonOidcError):
    """Raised when a token response fails validation."""


class StateMismatchError(TokenValidationError):
    """Raised when the received state differs from the state issued at login."""


class NonceMismatchError(TokenValidationError):
    """Raised when the id_token nonce differs from the nonce issued at login."""


class ClockSkewExceededError(TokenValidationError):
    """Raised when the id_token was issued too long ago (iat offset exceeded)."""


class SignatureInvalidError(TokenValidationError):
    """Raised when the id_token signature cannot be verified with the supplied keys."""


class IssuerMismatchError(TokenValidationError):
    """Raised when the id_token issuer does not match the discovered issuer."""


class AudienceMismatchError(TokenValidationError):
    """Raised when the id_token audience does not contain the client id."""


class TokenExpiredError(TokenValidationError):
    """Raised when the id_token has expired."""


class AtHashMismatchError(TokenValidationError):
    """Raised when the at_hash claim does not match the access token."""


class CallbackMalformedError(CoreasonOidcError):
    """Raised when a redirect callback lacks a required field."""


class SecureTokenServerError(CoreasonOidcError):
    """
    Raised when the identity provider answers with an OAuth2 error
    (e.g. `login_required`, `invalid_grant`).
    """

    def __init__(self, error: str, description: str | None = None) -> None:
        self.error = error
        self.description = description
        message = f"Identity provider returned error '{error}'"
        if description:
            message = f"{message}: {description}"
        super().__init__(message)


class RenewalFailedError(CoreasonOidcError):
    """Raised when a silent or refresh-token renewal cannot complete."""


class OversizedResponseError(CoreasonOidcError):
    """Raised when an HTTP response is too large."""
