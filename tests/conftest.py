# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc_client

import time
from collections.abc import Callable
from typing import Any

import pytest
from authlib.jose import JsonWebKey, jwt

from coreason_oidc_client.config import OidcClientConfig
from coreason_oidc_client.models import WellKnownEndpoints

STS_SERVER = "https://localhost:5001"
CLIENT_ID = "188968487735-b1hh7k87nkkh6vv84548sinju2kpr7gn.apps.googleusercontent.com"

TokenFactory = Callable[..., str]


@pytest.fixture
def config() -> OidcClientConfig:
    return OidcClientConfig(
        sts_server=STS_SERVER,
        redirect_url="https://localhost:44386",
        client_id=CLIENT_ID,
        response_type="id_token token",
        scope="openid email profile",
        post_logout_redirect_uri="https://localhost:44386/Unauthorized",
        start_check_session=False,
        silent_renew=False,
        silent_renew_offset_in_seconds=0,
        log_console_warning_active=True,
        log_console_debug_active=True,
        max_id_token_iat_offset_allowed_in_seconds=10,
    )


@pytest.fixture
def code_flow_config(config: OidcClientConfig) -> OidcClientConfig:
    return config.model_copy(update={"response_type": "code", "use_refresh_token": True})


@pytest.fixture
def well_known() -> WellKnownEndpoints:
    return WellKnownEndpoints(
        issuer=STS_SERVER,
        authorization_endpoint=f"{STS_SERVER}/connect/authorize",
        token_endpoint=f"{STS_SERVER}/connect/token",
        userinfo_endpoint=f"{STS_SERVER}/connect/userinfo",
        end_session_endpoint=f"{STS_SERVER}/connect/endsession",
        revocation_endpoint=f"{STS_SERVER}/connect/revocation",
        jwks_uri=f"{STS_SERVER}/.well-known/openid-configuration/jwks",
    )


@pytest.fixture(scope="session")
def key_pair() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture(scope="session")
def jwks(key_pair: Any) -> dict[str, Any]:
    return {"keys": [key_pair.as_dict(is_private=False)]}


@pytest.fixture
def make_id_token(key_pair: Any) -> TokenFactory:
    """Signs an id_token for the test issuer; keyword arguments override claims."""

    def _make(**overrides: Any) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": STS_SERVER,
            "sub": "user123",
            "aud": CLIENT_ID,
            "exp": now + 3600,
            "iat": now,
            "nonce": "nonce",
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        header = {"alg": "RS256", "kid": key_pair.as_dict()["kid"]}
        token: bytes = jwt.encode(header, claims, key_pair)
        return token.decode("utf-8")

    return _make
