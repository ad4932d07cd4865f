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
Builders for the authorize and end-session URLs, plus PKCE helpers.

All functions are pure: callers supply nonce, state, endpoints and tokens.
"""

from collections.abc import Iterable, Mapping
from urllib.parse import quote

from authlib.common.security import generate_token
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from coreason_oidc_client.config import OidcClientConfig

# Characters left literal in a URI component, everything else is percent-encoded
URI_COMPONENT_SAFE = "-_.!~*()"


def encode_uri_component(value: str) -> str:
    """
    Percent-encodes a value for use as a query parameter value.

    Only `A-Za-z0-9-_.!~*()` stay literal; a space becomes `%20`, never `+`.

    Args:
        value: The raw value.

    Returns:
        str: The encoded value.
    """
    return quote(value, safe=URI_COMPONENT_SAFE)


def _append_params(base_url: str, params: Iterable[tuple[str, str]]) -> str:
    # Vanity endpoints (e.g. Azure AD B2C `?p=policy`) already carry a query string
    separator = "&" if "?" in base_url else "?"
    url = base_url
    for name, value in params:
        url = f"{url}{separator}{name}={value}"
        separator = "&"
    return url


def _merge_custom_params(
    configured: Mapping[str, str],
    extra: Mapping[str, str] | None,
) -> dict[str, str]:
    merged = dict(configured)
    if extra:
        merged.update(extra)
    return merged


def build_authorize_url(
    config: OidcClientConfig,
    is_code_flow: bool,
    code_challenge: str | None,
    redirect_url: str,
    nonce: str,
    state: str,
    authorization_endpoint: str,
    custom_params: Mapping[str, str] | None = None,
) -> str:
    """
    Builds the authorize request URL.

    Parameter order is fixed: client_id, redirect_uri, response_type, scope,
    nonce, state, the PKCE pair (code flow only), then custom parameters in
    the order they appear in the configuration, then per-call extras.

    Args:
        config: The relying party configuration.
        is_code_flow: Whether the PKCE challenge is appended.
        code_challenge: S256 challenge, ignored for implicit flow or when empty.
        redirect_url: Where the identity provider redirects back to.
        nonce: Value expected back in the id_token.
        state: Value expected back in the callback.
        authorization_endpoint: The base authorize URL.
        custom_params: Per-call parameters; a key already configured keeps its position.

    Returns:
        str: The complete authorize URL.

    Raises:
        ConfigurationInvalidError: If a required configuration field is empty.
    """
    config.ensure_complete()

    params: list[tuple[str, str]] = [
        ("client_id", encode_uri_component(config.client_id)),
        ("redirect_uri", encode_uri_component(redirect_url)),
        ("response_type", encode_uri_component(config.response_type)),
        ("scope", encode_uri_component(config.scope)),
        ("nonce", encode_uri_component(nonce)),
        ("state", encode_uri_component(state)),
    ]

    if is_code_flow and code_challenge:
        params.append(("code_challenge", encode_uri_component(code_challenge)))
        params.append(("code_challenge_method", "S256"))

    for name, value in _merge_custom_params(config.custom_params, custom_params).items():
        params.append((encode_uri_component(name), encode_uri_component(value)))

    return _append_params(authorization_endpoint, params)


def build_silent_renew_url(
    config: OidcClientConfig,
    code_challenge: str | None,
    nonce: str,
    state: str,
    authorization_endpoint: str,
    custom_params: Mapping[str, str] | None = None,
) -> str:
    """
    Builds an authorize URL for a background renewal: `prompt=none`
    against the silent renew redirect.
    """
    redirect_url = config.silent_renew_url or config.redirect_url
    extra = {"prompt": "none"}
    if custom_params:
        extra.update(custom_params)
    return build_authorize_url(
        config,
        config.is_code_flow,
        code_challenge,
        redirect_url,
        nonce,
        state,
        authorization_endpoint,
        extra,
    )


def build_end_session_url(
    config: OidcClientConfig,
    end_session_endpoint: str,
    id_token_hint: str,
) -> str:
    """
    Builds the end-session (logout) URL.

    `post_logout_redirect_uri` is omitted when not configured.

    Raises:
        ConfigurationInvalidError: If a required configuration field is empty.
    """
    config.ensure_complete()

    params = [("id_token_hint", encode_uri_component(id_token_hint))]
    if config.post_logout_redirect_uri:
        params.append(("post_logout_redirect_uri", encode_uri_component(config.post_logout_redirect_uri)))

    return _append_params(end_session_endpoint, params)


def create_random_token(length: int = 32) -> str:
    """Random URL-safe value for nonce and state."""
    return generate_token(length)


def create_code_verifier() -> str:
    """PKCE code verifier (RFC 7636: 43 to 128 unreserved characters)."""
    return generate_token(64)


def create_code_challenge(code_verifier: str) -> str:
    """S256 code challenge for a PKCE verifier."""
    return create_s256_code_challenge(code_verifier)
