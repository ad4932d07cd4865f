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
Configuration for the coreason-oidc-client package.
"""

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from coreason_oidc_client.exceptions import ConfigurationInvalidError
from coreason_oidc_client.models import WellKnownEndpoints

REQUIRED_FIELDS = ("sts_server", "client_id", "redirect_url", "response_type")


class OidcClientConfig(BaseSettings):
    """
    Configuration settings for one relying party.

    Attributes:
        sts_server (str): Base URL of the identity provider (security token service).
        redirect_url (str): Callback URL registered with the identity provider.
        client_id (str): The OIDC Client ID.
        response_type (str): `code`, `id_token token` or `id_token`.
        scope (str): Space separated scopes to request.
        post_logout_redirect_uri (str | None): Where the provider sends the user after logout.
        custom_params (dict[str, str]): Extra authorize parameters, sent in insertion order.
        max_id_token_iat_offset_allowed_in_seconds (int): Maximum age of the id_token `iat`.
        silent_renew_timeout_in_seconds (int): Age after which a persisted `running` renew marker is stale.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_OIDC_",
        case_sensitive=False,
        frozen=True,
    )

    # Declared first so the HTTPS validators below can read it
    unsafe_local_dev: bool = False
    sts_server: str = ""
    redirect_url: str = ""
    client_id: str = ""
    response_type: str = ""
    scope: str = "openid email profile"
    post_logout_redirect_uri: str | None = None
    post_login_route: str = "/"
    forbidden_route: str = "/forbidden"
    unauthorized_route: str = "/unauthorized"
    start_check_session: bool = False
    silent_renew: bool = False
    silent_renew_url: str | None = None
    silent_renew_offset_in_seconds: int = 0
    silent_renew_timeout_in_seconds: int = 20
    use_refresh_token: bool = False
    use_pkce: bool = True
    log_console_warning_active: bool = True
    log_console_debug_active: bool = False
    max_id_token_iat_offset_allowed_in_seconds: int = 120
    disable_iat_offset_validation: bool = False
    iss_validation_off: bool = False
    auto_user_info: bool = False
    custom_params: dict[str, str] = Field(default_factory=dict)
    custom_params_refresh: dict[str, str] = Field(default_factory=dict)
    auth_wellknown_endpoint: str | None = None
    http_timeout: float = Field(10.0, description="Timeout in seconds for all IdP network operations.")

    @field_validator("sts_server", "auth_wellknown_endpoint", mode="after")
    @classmethod
    def validate_https(cls, v: str | None, info: ValidationInfo) -> str | None:
        """
        Ensures that the identity provider uses HTTPS, unless strictly opted out for local dev.
        """
        if v and v.startswith("http://") and not info.data.get("unsafe_local_dev", False):
            raise ValueError("HTTPS is required for production. Set 'unsafe_local_dev=True' only for local testing.")
        return v.rstrip("/") if v else v

    @field_validator("response_type")
    @classmethod
    def normalize_response_type(cls, v: str) -> str:
        # `token id_token` and `id_token  token` denote the same flow
        return " ".join(v.split())

    @property
    def is_code_flow(self) -> bool:
        return self.response_type == "code"

    @property
    def discovery_url(self) -> str:
        if self.auth_wellknown_endpoint:
            return f"{self.auth_wellknown_endpoint}/.well-known/openid-configuration"
        return f"{self.sts_server}/.well-known/openid-configuration"

    def ensure_complete(self) -> None:
        """
        Checks that every field needed to talk to the identity provider is set.

        Raises:
            ConfigurationInvalidError: Listing every empty required field.
        """
        missing = [name for name in REQUIRED_FIELDS if not getattr(self, name)]
        if missing:
            raise ConfigurationInvalidError(missing)


class ConfigurationProvider:
    """
    Holds the active configuration and the issuer metadata resolved for it.

    One provider serves one relying party. Replacing the configuration drops
    the metadata cached for the previous one.
    """

    def __init__(
        self,
        config: OidcClientConfig | None = None,
        well_known_endpoints: WellKnownEndpoints | None = None,
    ) -> None:
        self._config = config
        self._well_known_endpoints = well_known_endpoints

    @property
    def openid_configuration(self) -> OidcClientConfig:
        if self._config is None:
            raise ConfigurationInvalidError(list(REQUIRED_FIELDS))
        return self._config

    @property
    def well_known_endpoints(self) -> WellKnownEndpoints | None:
        return self._well_known_endpoints

    def set_config(
        self,
        config: OidcClientConfig,
        well_known_endpoints: WellKnownEndpoints | None = None,
    ) -> None:
        self._config = config
        self._well_known_endpoints = well_known_endpoints

    def set_well_known_endpoints(self, well_known_endpoints: WellKnownEndpoints) -> None:
        self._well_known_endpoints = well_known_endpoints

    def reset_well_known_endpoints(self) -> None:
        self._well_known_endpoints = None
