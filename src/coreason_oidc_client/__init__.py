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
OpenID Connect relying-party client: authorize URLs, redirect callbacks, id_token validation and session state.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .callback_parser import parse_code_flow_url, parse_fragment, parse_implicit_callback
from .config import ConfigurationProvider, OidcClientConfig
from .events import EventBus
from .exceptions import ConfigurationInvalidError, CoreasonOidcError, TokenValidationError
from .models import AuthorizationResult, AuthorizationState, SilentRenewState, ValidationResult, WellKnownEndpoints
from .oidc_provider import WellKnownProvider
from .session import OidcSecurityService
from .storage import MemorySecurityStorage, StoragePersistence
from .url_builder import build_authorize_url, build_end_session_url, encode_uri_component
from .validator import IdTokenValidator

__all__ = [
    "AuthorizationResult",
    "AuthorizationState",
    "ConfigurationInvalidError",
    "ConfigurationProvider",
    "CoreasonOidcError",
    "EventBus",
    "IdTokenValidator",
    "MemorySecurityStorage",
    "OidcClientConfig",
    "OidcSecurityService",
    "SilentRenewState",
    "StoragePersistence",
    "TokenValidationError",
    "ValidationResult",
    "WellKnownEndpoints",
    "WellKnownProvider",
    "build_authorize_url",
    "build_end_session_url",
    "encode_uri_component",
    "parse_code_flow_url",
    "parse_fragment",
    "parse_implicit_callback",
]
