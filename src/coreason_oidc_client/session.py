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
OidcSecurityService component orchestrating login, callbacks, renewal and logoff.
"""

import json
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import anyio
import httpx
from authlib.common.encoding import urlsafe_b64decode
from opentelemetry import trace
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from pydantic import ValidationError

from coreason_oidc_client.callback_parser import parse_code_flow_url, parse_implicit_callback
from coreason_oidc_client.config import ConfigurationProvider, OidcClientConfig
from coreason_oidc_client.events import (
    AuthorizationResultEvent,
    AuthorizationStateChanged,
    EventBus,
    SilentRenewStateChanged,
    StorageResetEvent,
)
from coreason_oidc_client.exceptions import (
    AtHashMismatchError,
    AudienceMismatchError,
    CallbackMalformedError,
    ClockSkewExceededError,
    CoreasonOidcError,
    IssuerMismatchError,
    NonceMismatchError,
    RenewalFailedError,
    SecureTokenServerError,
    SignatureInvalidError,
    StateMismatchError,
    TokenExpiredError,
    TokenValidationError,
)
from coreason_oidc_client.models import (
    AuthorizationResult,
    AuthorizationState,
    AuthorizeRequest,
    SilentRenewState,
    TokenResponse,
    ValidationResult,
    WellKnownEndpoints,
)
from coreason_oidc_client.oidc_provider import WellKnownProvider
from coreason_oidc_client.storage import StoragePersistence
from coreason_oidc_client.transport import post_form, request_json
from coreason_oidc_client.url_builder import (
    build_authorize_url,
    build_end_session_url,
    build_silent_renew_url,
    create_code_challenge,
    create_code_verifier,
    create_random_token,
)
from coreason_oidc_client.utils.logger import OidcLogger
from coreason_oidc_client.validator import IdTokenValidator

tracer = trace.get_tracer(__name__)

UrlHandler = Callable[[str], None]

_ALLOWED_TRANSITIONS: dict[AuthorizationState, frozenset[AuthorizationState]] = {
    AuthorizationState.UNAUTHENTICATED: frozenset({AuthorizationState.AUTHENTICATING}),
    AuthorizationState.AUTHENTICATING: frozenset(
        {AuthorizationState.AUTHENTICATED, AuthorizationState.UNAUTHENTICATED}
    ),
    AuthorizationState.AUTHENTICATED: frozenset(
        {
            AuthorizationState.RENEWING_SILENTLY,
            AuthorizationState.AUTHENTICATING,
            AuthorizationState.UNAUTHENTICATED,
        }
    ),
    AuthorizationState.RENEWING_SILENTLY: frozenset(
        {
            AuthorizationState.AUTHENTICATED,
            AuthorizationState.AUTHENTICATING,
            AuthorizationState.UNAUTHENTICATED,
        }
    ),
}

_VALIDATION_RESULTS: dict[type[Exception], ValidationResult] = {
    StateMismatchError: ValidationResult.STATES_DO_NOT_MATCH,
    NonceMismatchError: ValidationResult.INCORRECT_NONCE,
    ClockSkewExceededError: ValidationResult.MAX_OFFSET_EXPIRED,
    SignatureInvalidError: ValidationResult.SIGNATURE_FAILED,
    IssuerMismatchError: ValidationResult.ISS_DOES_NOT_MATCH,
    AudienceMismatchError: ValidationResult.INCORRECT_AUD,
    TokenExpiredError: ValidationResult.TOKEN_EXPIRED,
    AtHashMismatchError: ValidationResult.INCORRECT_AT_HASH,
    TokenValidationError: ValidationResult.INVALID_TOKEN,
    CallbackMalformedError: ValidationResult.CALLBACK_MALFORMED,
}


def _validation_result_for(error: Exception) -> ValidationResult:
    for cls in type(error).__mro__:
        if cls in _VALIDATION_RESULTS:
            return _VALIDATION_RESULTS[cls]
    return ValidationResult.SECURE_TOKEN_SERVER_ERROR


class NavigatorProtocol(Protocol):
    """Performs the actual browser or user-agent navigation."""

    def redirect_to(self, url: str) -> None: ...


class OidcSecurityService:
    """
    Drives the relying-party side of the OIDC redirect flows.

    The service owns the authorization state and the silent renew state;
    each has exactly one writer (`_transition`, `_set_silent_renew_state`).
    Every operation reports failures as an `AuthorizationResult`; only an
    incomplete configuration raises.

    Attributes:
        provider (ConfigurationProvider): Active configuration and issuer metadata.
        storage (StoragePersistence): Session values (nonce, state, tokens).
        navigator (NavigatorProtocol | None): Default redirect collaborator.
        events (EventBus): Channel for state transitions and results.
    """

    def __init__(
        self,
        provider: ConfigurationProvider,
        storage: StoragePersistence | None = None,
        navigator: NavigatorProtocol | None = None,
        client: httpx.AsyncClient | None = None,
        events: EventBus | None = None,
        well_known_provider: WellKnownProvider | None = None,
        validator: IdTokenValidator | None = None,
    ) -> None:
        """
        Initialize the OidcSecurityService.

        Args:
            provider: Holds the relying party configuration.
            storage: Session persistence. Defaults to in-memory storage.
            navigator: Default redirect collaborator.
            client: External async client (optional). If not provided, an instrumented client is created.
            events: Event bus to publish on. A private bus is created when omitted.
            well_known_provider: Discovery and JWKS provider. Created from the configuration when omitted.
            validator: id_token validator. Defaults to `IdTokenValidator()`.
        """
        self.provider = provider
        self.storage = storage if storage is not None else StoragePersistence()
        self.navigator = navigator
        self.events = events if events is not None else EventBus()
        self.validator = validator or IdTokenValidator()
        self._internal_client = client is None

        if client:
            self._client = client
        else:
            self._client = httpx.AsyncClient(timeout=self.provider.openid_configuration.http_timeout)
            HTTPXClientInstrumentor().instrument_client(self._client)

        self._well_known_provider = well_known_provider
        self._authorization_state = AuthorizationState.UNAUTHENTICATED
        self._module_ready: anyio.Event | None = None
        self._setup_lock: anyio.Lock | None = None
        # Bumped by logoff and reconfiguration; results of older generations are discarded
        self._generation = 0

    async def __aenter__(self) -> "OidcSecurityService":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._internal_client:
            await self._client.aclose()

    @property
    def config(self) -> OidcClientConfig:
        return self.provider.openid_configuration

    @property
    def logger(self) -> OidcLogger:
        return OidcLogger(self.config)

    @property
    def authorization_state(self) -> AuthorizationState:
        return self._authorization_state

    @property
    def is_authenticated(self) -> bool:
        return self._authorization_state in (
            AuthorizationState.AUTHENTICATED,
            AuthorizationState.RENEWING_SILENTLY,
        )

    @property
    def silent_renew_state(self) -> SilentRenewState:
        """The renew state; a `running` marker older than the renew timeout is released."""
        state = self.storage.silent_renew_running
        if state is SilentRenewState.RUNNING:
            started_at = self.storage.silent_renew_started_at
            if started_at is None or time.time() - started_at > self.config.silent_renew_timeout_in_seconds:
                self.logger.log_warning("Stale silent renew marker found, resetting renew state to idle")
                self._set_silent_renew_state(SilentRenewState.IDLE)
                return SilentRenewState.IDLE
        return state

    def _get_ready_gate(self) -> anyio.Event:
        if self._module_ready is None:
            self._module_ready = anyio.Event()
        return self._module_ready

    def _get_well_known_provider(self) -> WellKnownProvider:
        if self._well_known_provider is None:
            self._well_known_provider = WellKnownProvider(
                self.config.discovery_url,
                self._client,
                well_known_endpoints=self.provider.well_known_endpoints,
            )
        return self._well_known_provider

    # State writers

    def _transition(self, new_state: AuthorizationState) -> None:
        previous = self._authorization_state
        if new_state is previous:
            return
        if new_state not in _ALLOWED_TRANSITIONS[previous]:
            raise CoreasonOidcError(f"Illegal authorization state transition {previous} -> {new_state}")
        self._authorization_state = new_state
        self.logger.log_debug(f"Authorization state {previous} -> {new_state}")
        self.events.publish(AuthorizationStateChanged(previous=previous, current=new_state))

    def _set_silent_renew_state(self, state: SilentRenewState) -> None:
        self.storage.silent_renew_running = state
        self.events.publish(SilentRenewStateChanged(state=state))

    def _result(
        self,
        validation_result: ValidationResult,
        is_renew: bool = False,
        error: str | None = None,
    ) -> AuthorizationResult:
        result = AuthorizationResult(
            authorization_state=self._authorization_state,
            validation_result=validation_result,
            is_renew_process=is_renew,
            error=error,
        )
        self.events.publish(AuthorizationResultEvent(result=result))
        return result

    # Setup

    async def setup(self) -> WellKnownEndpoints:
        """
        Resolves the issuer metadata and opens the module-ready gate.

        The gate opens once; later calls return the cached metadata without
        another discovery round trip.

        Raises:
            CoreasonOidcError: If discovery fails. The gate stays closed.
        """
        gate = self._get_ready_gate()
        if gate.is_set() and self.provider.well_known_endpoints is not None:
            return self.provider.well_known_endpoints

        if self._setup_lock is None:
            self._setup_lock = anyio.Lock()

        async with self._setup_lock:
            well_known = self.provider.well_known_endpoints
            if well_known is None:
                well_known = await self._get_well_known_provider().get_well_known_endpoints()
                self.provider.set_well_known_endpoints(well_known)
            if not gate.is_set():
                self.logger.log_debug("Module setup complete, releasing queued callbacks")
                gate.set()
            return well_known

    def reconfigure(
        self,
        config: OidcClientConfig,
        well_known_endpoints: WellKnownEndpoints | None = None,
    ) -> None:
        """
        Switches to a new configuration. The session is reset and every
        configuration-dependent cache (metadata, keys, ready gate) is dropped.
        """
        self.reset_authorization_data()
        self.provider.set_config(config, well_known_endpoints)
        if self._well_known_provider is not None:
            self._well_known_provider.reset()
            self._well_known_provider = None
        if self._module_ready is not None:
            # Queued callbacks wake up, see the new generation and end as stale
            self._module_ready.set()
            self._module_ready = None

    # Login

    def _create_authorize_request(self, authorization_endpoint: str, redirect_url: str) -> AuthorizeRequest:
        config = self.config
        code_verifier = None
        code_challenge = None
        if config.is_code_flow and config.use_pkce:
            code_verifier = create_code_verifier()
            code_challenge = create_code_challenge(code_verifier)

        request = AuthorizeRequest(
            nonce=create_random_token(),
            state=create_random_token(),
            redirect_url=redirect_url,
            authorization_endpoint=authorization_endpoint,
            is_code_flow=config.is_code_flow,
            code_verifier=code_verifier,
            code_challenge=code_challenge,
        )
        self.storage.auth_nonce = request.nonce
        self.storage.auth_state_control = request.state
        self.storage.code_verifier = request.code_verifier
        return request

    def create_authorize_url(
        self,
        is_code_flow: bool,
        code_challenge: str | None,
        redirect_url: str,
        nonce: str,
        state: str,
        authorization_endpoint: str,
        custom_params: Mapping[str, str] | None = None,
    ) -> str:
        return build_authorize_url(
            self.config,
            is_code_flow,
            code_challenge,
            redirect_url,
            nonce,
            state,
            authorization_endpoint,
            custom_params,
        )

    def create_end_session_url(self, end_session_endpoint: str, id_token_hint: str) -> str:
        return build_end_session_url(self.config, end_session_endpoint, id_token_hint)

    def _navigate(self, url: str, url_handler: UrlHandler | None) -> None:
        if url_handler is not None:
            url_handler(url)
        elif self.navigator is not None:
            self.navigator.redirect_to(url)
        else:
            self.logger.log_warning(f"No navigator configured, cannot redirect to {url}")

    async def login(
        self,
        url_handler: UrlHandler | None = None,
        custom_params: Mapping[str, str] | None = None,
    ) -> str | None:
        """
        Starts a login: fresh nonce, state and PKCE verifier, then a redirect
        to the authorize endpoint.

        Args:
            url_handler: Receives the authorize URL instead of the navigator.
            custom_params: Extra authorize parameters for this login only.

        Returns:
            str | None: The authorize URL, or None when the metadata is unavailable.

        Raises:
            ConfigurationInvalidError: If a required configuration field is empty.
        """
        config = self.config
        config.ensure_complete()

        try:
            well_known = await self.setup()
        except (CoreasonOidcError, httpx.HTTPError) as e:
            self.logger.log_error(f"Cannot login, issuer metadata unavailable: {e}")
            return None

        if not well_known.authorization_endpoint:
            self.logger.log_error("Cannot login, well-known endpoints carry no authorization_endpoint")
            return None

        if self.silent_renew_state is SilentRenewState.RUNNING:
            self._generation += 1
            self._set_silent_renew_state(SilentRenewState.IDLE)

        request = self._create_authorize_request(well_known.authorization_endpoint, config.redirect_url)
        url = self.create_authorize_url(
            request.is_code_flow,
            request.code_challenge,
            request.redirect_url,
            request.nonce,
            request.state,
            request.authorization_endpoint,
            custom_params,
        )

        self._transition(AuthorizationState.AUTHENTICATING)
        self._navigate(url, url_handler)
        return url

    # Callbacks

    def _begin_callback(self, is_renew: bool) -> None:
        state = self._authorization_state
        if is_renew and state is AuthorizationState.AUTHENTICATED:
            self._transition(AuthorizationState.RENEWING_SILENTLY)
        elif state is AuthorizationState.UNAUTHENTICATED or (
            state is AuthorizationState.AUTHENTICATED and not is_renew
        ):
            self._transition(AuthorizationState.AUTHENTICATING)

    def _current_session_valid(self) -> bool:
        payload = self.get_payload_from_id_token()
        exp = payload.get("exp") if payload else None
        return isinstance(exp, (int, float)) and exp > time.time()

    def _fail(self, error: Exception, is_renew: bool, generation: int) -> AuthorizationResult:
        if generation != self._generation:
            return self._result(ValidationResult.SESSION_ENDED, is_renew, str(error))

        if is_renew:
            self.logger.log_warning(f"Renewal failed: {error}")
            if self._authorization_state is AuthorizationState.RENEWING_SILENTLY and self._current_session_valid():
                self._transition(AuthorizationState.AUTHENTICATED)
                self._set_silent_renew_state(SilentRenewState.IDLE)
            else:
                self.reset_authorization_data()
            return self._result(ValidationResult.RENEWAL_FAILED, True, str(error))

        self.logger.log_warning(f"Authorization failed: {error}")
        self.reset_authorization_data()
        return self._result(_validation_result_for(error), False, str(error))

    async def _get_signing_keys(self, force_refresh: bool = False) -> dict[str, Any]:
        return await self._get_well_known_provider().get_signing_keys(force_refresh=force_refresh)

    async def _validate_id_token(
        self,
        id_token: str,
        received_state: str | None,
        access_token: str | None,
        check_state: bool,
        check_nonce: bool,
    ) -> dict[str, Any]:
        well_known = self.provider.well_known_endpoints
        issuer = well_known.issuer if well_known else None

        def _validate(signing_keys: dict[str, Any]) -> dict[str, Any]:
            return self.validator.validate(
                id_token,
                self.storage.auth_nonce,
                self.storage.auth_state_control,
                received_state,
                signing_keys,
                self.config,
                issuer=issuer,
                access_token=access_token,
                check_nonce=check_nonce,
                check_state=check_state,
            )

        try:
            return _validate(await self._get_signing_keys())
        except SignatureInvalidError:
            # Possible key rotation at the issuer, retry once with fresh keys
            self.logger.log_debug("Signature check failed with cached keys, refreshing JWKS and retrying")
            return _validate(await self._get_signing_keys(force_refresh=True))

    async def _fetch_user_info(self, access_token: str, expected_sub: Any) -> dict[str, Any] | None:
        well_known = self.provider.well_known_endpoints
        if not well_known or not well_known.userinfo_endpoint:
            self.logger.log_warning("auto_user_info is set but no userinfo_endpoint is known")
            return None

        user_data = await request_json(
            self._client,
            "GET",
            well_known.userinfo_endpoint,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if user_data.get("sub") != expected_sub:
            raise TokenValidationError("User info 'sub' does not match the id_token subject")
        return user_data

    async def _complete_authorization(
        self,
        tokens: TokenResponse,
        received_state: str | None,
        is_renew: bool,
        generation: int,
        check_state: bool,
        check_nonce: bool,
    ) -> AuthorizationResult:
        """
        Validates a token response and, if it holds, commits it to storage
        and moves the session to `authenticated`.
        """
        if generation != self._generation:
            return self._result(ValidationResult.SESSION_ENDED, is_renew)

        self._begin_callback(is_renew)

        try:
            claims: dict[str, Any] | None = None
            if tokens.id_token:
                claims = await self._validate_id_token(
                    tokens.id_token, received_state, tokens.access_token, check_state, check_nonce
                )
            elif check_nonce:
                # Only a refresh response may omit the id_token
                raise CallbackMalformedError("Token response carries no id_token")

            user_data = None
            if self.config.auto_user_info and tokens.access_token:
                sub = claims.get("sub") if claims else (self.get_payload_from_id_token() or {}).get("sub")
                user_data = await self._fetch_user_info(tokens.access_token, sub)
        except (CoreasonOidcError, httpx.HTTPError) as e:
            return self._fail(e, is_renew, generation)

        if generation != self._generation:
            return self._result(ValidationResult.SESSION_ENDED, is_renew)

        auth_result = tokens.model_dump(exclude_none=True)
        previous_refresh_token = self.storage.get_refresh_token()
        if "refresh_token" not in auth_result and previous_refresh_token:
            auth_result["refresh_token"] = previous_refresh_token
        if tokens.expires_in is not None:
            auth_result["expires_at"] = int(time.time()) + tokens.expires_in

        self.storage.auth_result = auth_result
        self.storage.access_token = tokens.access_token
        if tokens.id_token:
            self.storage.id_token = tokens.id_token
        if tokens.session_state:
            self.storage.session_state = tokens.session_state
        if user_data is not None:
            self.storage.user_data = user_data
        self.storage.auth_nonce = None
        self.storage.auth_state_control = None
        self.storage.code_verifier = None

        self._transition(AuthorizationState.AUTHENTICATED)
        if is_renew:
            self._set_silent_renew_state(SilentRenewState.IDLE)
        self.logger.log_debug("Authorization completed")
        return self._result(ValidationResult.OK, is_renew)

    async def authorized_implicit_flow_callback(self, hash_fragment: str) -> AuthorizationResult:
        """
        Handles an implicit-flow redirect fragment.

        The parsed result is held until the module-ready gate opens, so no
        callback is processed against missing issuer metadata.

        Args:
            hash_fragment: The redirect fragment, with or without the leading `#`.

        Raises:
            ConfigurationInvalidError: If a required configuration field is empty.
        """
        self.config.ensure_complete()
        is_renew = self.silent_renew_state is SilentRenewState.RUNNING
        generation = self._generation

        try:
            callback = parse_implicit_callback(hash_fragment)
        except CallbackMalformedError as e:
            self.logger.log_warning(f"Ignoring malformed callback: {e}")
            if is_renew:
                self._set_silent_renew_state(SilentRenewState.IDLE)
            return self._result(ValidationResult.CALLBACK_MALFORMED, is_renew, str(e))
        except SecureTokenServerError as e:
            await self._get_ready_gate().wait()
            if generation != self._generation:
                return self._result(ValidationResult.SESSION_ENDED, is_renew, str(e))
            self._begin_callback(is_renew)
            return self._fail(e, is_renew, generation)

        await self._get_ready_gate().wait()

        if generation != self._generation:
            return self._result(ValidationResult.SESSION_ENDED, is_renew)

        if not is_renew:
            self.storage.auth_result = callback.model_dump(exclude_none=True)
        if callback.session_state:
            self.storage.session_state = callback.session_state

        expects_access_token = "token" in self.config.response_type.split()
        if not callback.id_token or (expects_access_token and not callback.access_token):
            if is_renew:
                self._set_silent_renew_state(SilentRenewState.IDLE)
            error = f"Implicit flow callback does not carry the tokens of response_type '{self.config.response_type}'"
            self.logger.log_warning(error)
            return self._result(ValidationResult.CALLBACK_MALFORMED, is_renew, error)

        tokens = TokenResponse(
            access_token=callback.access_token,
            token_type=callback.token_type or "Bearer",
            id_token=callback.id_token,
            expires_in=callback.expires_in,
            session_state=callback.session_state,
        )
        return await self._complete_authorization(
            tokens, callback.state, is_renew, generation, check_state=True, check_nonce=True
        )

    async def authorized_callback_with_code(self, url: str) -> AuthorizationResult:
        """
        Handles a code-flow redirect URL: extracts `code` and `state` and
        exchanges them for tokens.

        Raises:
            ConfigurationInvalidError: If a required configuration field is empty.
        """
        self.config.ensure_complete()
        is_renew = self.silent_renew_state is SilentRenewState.RUNNING
        generation = self._generation

        try:
            callback = parse_code_flow_url(url)
        except CallbackMalformedError as e:
            self.logger.log_warning(f"Ignoring malformed callback: {e}")
            if is_renew:
                self._set_silent_renew_state(SilentRenewState.IDLE)
            return self._result(ValidationResult.CALLBACK_MALFORMED, is_renew, str(e))
        except SecureTokenServerError as e:
            self._begin_callback(is_renew)
            return self._fail(e, is_renew, generation)

        if callback.session_state:
            self.storage.session_state = callback.session_state

        code_verifier = self.storage.code_verifier if self.config.use_pkce else None
        return await self.request_tokens_with_code(callback.code, callback.state, code_verifier)

    async def request_tokens_with_code(
        self,
        code: str,
        state: str,
        code_verifier: str | None,
    ) -> AuthorizationResult:
        """
        Exchanges an authorization code for tokens at the token endpoint.

        The received state is checked against the stored one before the code
        leaves the agent.

        Args:
            code: The authorization code.
            state: The state received with the code.
            code_verifier: PKCE verifier, None when PKCE is not in use.
        """
        config = self.config
        is_renew = self.silent_renew_state is SilentRenewState.RUNNING
        generation = self._generation

        self._begin_callback(is_renew)

        try:
            IdTokenValidator._validate_state(self.storage.auth_state_control, state)
            well_known = await self.setup()
            if not well_known.token_endpoint:
                raise CoreasonOidcError("Well-known endpoints carry no token_endpoint")

            redirect_url = config.silent_renew_url if is_renew and config.silent_renew_url else config.redirect_url
            data = {
                "grant_type": "authorization_code",
                "client_id": config.client_id,
                "code": code,
                "redirect_uri": redirect_url,
            }
            if code_verifier:
                data["code_verifier"] = code_verifier

            with tracer.start_as_current_span("request_tokens_with_code"):
                body = await request_json(self._client, "POST", well_known.token_endpoint, data=data)
            tokens = TokenResponse(**body)
            if not tokens.access_token:
                raise CoreasonOidcError("Token response carries no access_token")
        except ValidationError as e:
            return self._fail(CoreasonOidcError(f"Invalid token response: {e}"), is_renew, generation)
        except (CoreasonOidcError, httpx.HTTPError) as e:
            return self._fail(e, is_renew, generation)

        return await self._complete_authorization(
            tokens, state, is_renew, generation, check_state=False, check_nonce=True
        )

    # Renewal

    async def refresh_session(
        self,
        custom_params: Mapping[str, str] | None = None,
        url_handler: UrlHandler | None = None,
    ) -> AuthorizationResult | None:
        """
        Renews the session in the background.

        With `use_refresh_token` and a stored refresh token, the renew state
        is set to `running` before the refresh procedure is dispatched.
        Otherwise, with `silent_renew`, a `prompt=none` authorize URL is
        handed to the navigator and the result arrives through the callback
        methods.

        Returns:
            AuthorizationResult | None: The refresh outcome; None when a renewal
            is already running, was dispatched to the navigator, or no renewal
            mechanism is configured.
        """
        config = self.config

        if self.silent_renew_state is SilentRenewState.RUNNING:
            self.logger.log_debug("Renewal already running, skipping")
            return None

        if config.use_refresh_token:
            refresh_token = self.storage.get_refresh_token()
            if refresh_token:
                generation = self._generation
                self._set_silent_renew_state(SilentRenewState.RUNNING)
                try:
                    return await self.refresh_tokens_with_code_procedure(refresh_token, custom_params)
                except (CoreasonOidcError, httpx.HTTPError) as e:
                    if generation != self._generation:
                        return self._result(ValidationResult.SESSION_ENDED, True, str(e))
                    self._set_silent_renew_state(SilentRenewState.IDLE)
                    self.logger.log_warning(f"Refresh token renewal failed: {e}")
                    return self._result(ValidationResult.RENEWAL_FAILED, True, str(e))
            self.logger.log_debug("No refresh token stored, falling back to silent renew")

        if not config.silent_renew:
            self.logger.log_warning("No renewal mechanism configured")
            return None

        try:
            well_known = await self.setup()
        except (CoreasonOidcError, httpx.HTTPError) as e:
            return self._result(ValidationResult.RENEWAL_FAILED, True, str(e))
        if not well_known.authorization_endpoint:
            return self._result(ValidationResult.RENEWAL_FAILED, True, "No authorization_endpoint known")
        if url_handler is None and self.navigator is None:
            self.logger.log_warning("Silent renew needs a navigator or url_handler, renewal not started")
            return self._result(ValidationResult.RENEWAL_FAILED, True, "No navigator configured")

        self._set_silent_renew_state(SilentRenewState.RUNNING)
        request = self._create_authorize_request(
            well_known.authorization_endpoint,
            config.silent_renew_url or config.redirect_url,
        )
        url = build_silent_renew_url(
            config,
            request.code_challenge,
            request.nonce,
            request.state,
            request.authorization_endpoint,
            custom_params,
        )
        self._navigate(url, url_handler)
        return None

    async def refresh_tokens_with_code_procedure(
        self,
        refresh_token: str,
        custom_params: Mapping[str, str] | None = None,
    ) -> AuthorizationResult:
        """
        Posts a refresh-token grant and processes the response. Processing
        resets the renew state to `idle`.

        Raises:
            RenewalFailedError: If no token endpoint is known or the response is invalid.
            SecureTokenServerError: If the provider rejects the refresh token.
            httpx.HTTPError: For transport failures.
        """
        config = self.config
        generation = self._generation
        well_known = await self.setup()
        if not well_known.token_endpoint:
            raise RenewalFailedError("Well-known endpoints carry no token_endpoint")

        data = {
            "grant_type": "refresh_token",
            "client_id": config.client_id,
            "refresh_token": refresh_token,
        }
        data.update(config.custom_params_refresh)
        if custom_params:
            data.update(custom_params)

        with tracer.start_as_current_span("refresh_tokens"):
            body = await request_json(self._client, "POST", well_known.token_endpoint, data=data)

        try:
            tokens = TokenResponse(**body)
        except ValidationError as e:
            raise RenewalFailedError(f"Invalid refresh token response: {e}") from e
        if not tokens.access_token:
            raise RenewalFailedError("Refresh token response carries no access_token")

        return await self._complete_authorization(
            tokens, None, True, generation, check_state=False, check_nonce=False
        )

    def token_expires_soon(self, offset_in_seconds: int | None = None) -> bool:
        """
        True when the id_token or the access token expires within the
        configured renewal offset.
        """
        offset = self.config.silent_renew_offset_in_seconds if offset_in_seconds is None else offset_in_seconds
        deadline = time.time() + offset

        payload = self.get_payload_from_id_token()
        id_token_exp = payload.get("exp") if payload else None
        if isinstance(id_token_exp, (int, float)) and id_token_exp <= deadline:
            return True

        auth_result = self.storage.auth_result or {}
        expires_at = auth_result.get("expires_at")
        return isinstance(expires_at, (int, float)) and expires_at <= deadline

    async def run_silent_renew_loop(self, interval: float = 3.0) -> None:
        """
        Checks token expiry every `interval` seconds while the session is
        authenticated and renews when it is due.
        """
        config = self.config
        while self.is_authenticated:
            if (
                (config.silent_renew or config.use_refresh_token)
                and self.silent_renew_state is SilentRenewState.IDLE
                and self.token_expires_soon()
            ):
                self.logger.log_debug("Token expires soon, starting renewal")
                await self.refresh_session()
            await anyio.sleep(interval)

    # Logoff

    def reset_authorization_data(self) -> None:
        """
        Clears the session. Storage is reset and announced before the
        `unauthenticated` transition becomes visible.
        """
        self._generation += 1
        if self.storage.silent_renew_running is SilentRenewState.RUNNING:
            self._set_silent_renew_state(SilentRenewState.IDLE)
        self.storage.reset_storage_data()
        self.events.publish(StorageResetEvent())
        if self._authorization_state is not AuthorizationState.UNAUTHENTICATED:
            self._transition(AuthorizationState.UNAUTHENTICATED)

    def logoff(self, url_handler: UrlHandler | None = None) -> str | None:
        """
        Ends the session locally and at the identity provider.

        Without an `end_session_endpoint` only the local session is cleared.

        Args:
            url_handler: Receives the end-session URL; no redirect happens when given.

        Returns:
            str | None: The end-session URL, if one could be built.

        Raises:
            ConfigurationInvalidError: If an end-session URL is due and the configuration is incomplete.
        """
        well_known = self.provider.well_known_endpoints
        end_session_url = None
        if well_known is not None and well_known.end_session_endpoint:
            end_session_url = self.create_end_session_url(well_known.end_session_endpoint, self.storage.id_token or "")

        self.reset_authorization_data()

        if end_session_url:
            self._navigate(end_session_url, url_handler)
        else:
            self.logger.log_warning("No end_session_endpoint known, only the local session was cleared")
        return end_session_url

    def logoff_local(self) -> None:
        self.reset_authorization_data()

    async def revoke_token(self, token: str, token_type_hint: str) -> bool:
        """
        Revokes a token at the revocation endpoint (RFC 7009).

        Returns:
            bool: False when no endpoint is known or the request failed.
        """
        well_known = self.provider.well_known_endpoints
        if well_known is None or not well_known.revocation_endpoint:
            self.logger.log_warning("No revocation_endpoint known, token not revoked")
            return False

        data = {"client_id": self.config.client_id, "token": token, "token_type_hint": token_type_hint}
        try:
            await post_form(self._client, well_known.revocation_endpoint, data)
        except (CoreasonOidcError, httpx.HTTPError) as e:
            self.logger.log_error(f"Revoking {token_type_hint} failed: {e}")
            return False
        return True

    async def logoff_and_revoke_tokens(self, url_handler: UrlHandler | None = None) -> str | None:
        refresh_token = self.storage.get_refresh_token()
        if refresh_token:
            await self.revoke_token(refresh_token, "refresh_token")
        access_token = self.storage.access_token
        if access_token:
            await self.revoke_token(access_token, "access_token")
        return self.logoff(url_handler)

    # Accessors

    def get_token(self) -> str | None:
        return self.storage.access_token if self.is_authenticated else None

    def get_id_token(self) -> str | None:
        return self.storage.id_token if self.is_authenticated else None

    def get_refresh_token(self) -> str | None:
        return self.storage.get_refresh_token() if self.is_authenticated else None

    def get_user_data(self) -> dict[str, Any] | None:
        return self.storage.user_data

    def get_payload_from_id_token(self) -> dict[str, Any] | None:
        """Decodes the stored id_token payload without verifying it."""
        id_token = self.storage.id_token
        if not id_token:
            return None
        parts = id_token.split(".")
        if len(parts) != 3:
            return None
        try:
            payload = json.loads(urlsafe_b64decode(parts[1].encode("ascii")))
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None
