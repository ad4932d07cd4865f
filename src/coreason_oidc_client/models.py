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
Data models for the coreason-oidc-client package.
"""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class AuthorizationState(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    RENEWING_SILENTLY = "renewing_silently"


class SilentRenewState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"


class ValidationResult(StrEnum):
    OK = "ok"
    STATES_DO_NOT_MATCH = "states_do_not_match"
    INCORRECT_NONCE = "incorrect_nonce"
    MAX_OFFSET_EXPIRED = "max_offset_expired"
    SIGNATURE_FAILED = "signature_failed"
    ISS_DOES_NOT_MATCH = "iss_does_not_match"
    INCORRECT_AUD = "incorrect_aud"
    TOKEN_EXPIRED = "token_expired"
    INCORRECT_AT_HASH = "incorrect_at_hash"
    INVALID_TOKEN = "invalid_token"
    SECURE_TOKEN_SERVER_ERROR = "secure_token_server_error"
    CALLBACK_MALFORMED = "callback_malformed"
    RENEWAL_FAILED = "renewal_failed"
    SESSION_ENDED = "session_ended"
    LOGGED_OFF = "logged_off"


class WellKnownEndpoints(BaseModel):
    """
    Issuer metadata from .well-known/openid-configuration, or supplied statically.

    Every endpoint is optional: logoff degrades gracefully when
    `end_session_endpoint` is absent.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    issuer: str | None = Field(default=None, description="The OIDC issuer URL.")
    authorization_endpoint: str | None = Field(default=None, description="The authorize endpoint URL.")
    token_endpoint: str | None = Field(default=None, description="The token endpoint URL.")
    userinfo_endpoint: str | None = Field(default=None, description="The user info endpoint URL.")
    end_session_endpoint: str | None = Field(default=None, description="The end session (logout) endpoint URL.")
    check_session_iframe: str | None = Field(default=None, description="The check session iframe URL.")
    revocation_endpoint: str | None = Field(default=None, description="The token revocation endpoint URL.")
    introspection_endpoint: str | None = Field(default=None, description="The token introspection endpoint URL.")
    jwks_uri: str | None = Field(default=None, description="The URL to the JWKS.")


class AuthorizeRequest(BaseModel):
    """
    Values created for a single login attempt.

    Attributes:
        nonce (str): Anti-replay value expected back in the id_token.
        state (str): Anti-CSRF value expected back in the callback.
        redirect_url (str): Where the identity provider sends the user back.
        authorization_endpoint (str): Base authorize URL, possibly carrying its own query.
        is_code_flow (bool): True for the authorization code flow.
        code_verifier (str | None): PKCE verifier, persisted for the token exchange.
        code_challenge (str | None): S256 challenge derived from the verifier.
    """

    model_config = ConfigDict(frozen=True)

    nonce: str
    state: str
    redirect_url: str
    authorization_endpoint: str
    is_code_flow: bool = False
    code_verifier: str | None = None
    code_challenge: str | None = None


class ImplicitCallbackResult(BaseModel):
    """Token response delivered in the redirect fragment (implicit flow)."""

    model_config = ConfigDict(frozen=True)

    access_token: str | None = None
    token_type: str | None = None
    id_token: str | None = None
    state: str
    expires_in: int | None = None
    session_state: str | None = None
    error: str | None = None


class CodeCallbackResult(BaseModel):
    """Authorization code delivered in the redirect query (code flow)."""

    model_config = ConfigDict(frozen=True)

    code: str
    state: str
    session_state: str | None = None


class TokenResponse(BaseModel):
    """
    Response from the token endpoint.

    Attributes:
        access_token (str | None): The access token; absent only for the `id_token` response type.
        token_type (str): The type of the token (e.g. "Bearer").
        id_token (str | None): The ID token, if issued.
        refresh_token (str | None): The refresh token, if issued.
        expires_in (int | None): The lifetime in seconds of the access token.
        scope (str | None): The granted scopes.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str | None = None
    token_type: str = "Bearer"
    id_token: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None
    session_state: str | None = None


class AuthorizationResult(BaseModel):
    """
    Outcome of a session operation. Every failure other than an invalid
    configuration is reported through this object instead of being raised.
    """

    model_config = ConfigDict(frozen=True)

    authorization_state: AuthorizationState
    validation_result: ValidationResult
    is_renew_process: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.validation_result is ValidationResult.OK
