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
Tests for the OidcSecurityService state machine.
"""

import time
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, Mock, patch
from urllib.parse import parse_qsl, urlsplit

import anyio
import httpx
import pytest
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from coreason_oidc_client.config import ConfigurationProvider, OidcClientConfig
from coreason_oidc_client.events import (
    AuthorizationStateChanged,
    OidcEvent,
    SilentRenewStateChanged,
    StorageResetEvent,
)
from coreason_oidc_client.exceptions import ConfigurationInvalidError, CoreasonOidcError
from coreason_oidc_client.models import AuthorizationState, SilentRenewState, ValidationResult, WellKnownEndpoints
from coreason_oidc_client.session import OidcSecurityService

TokenFactory = Callable[..., str]


class FakeIdp:
    """Answers token, JWKS, user info and revocation requests; records every request."""

    def __init__(self, jwks: dict[str, Any]) -> None:
        self.jwks = jwks
        self.requests: list[tuple[str, dict[str, str]]] = []
        self.token_response: Callable[[dict[str, str]], httpx.Response] = lambda form: httpx.Response(404)
        self.user_info: dict[str, Any] = {"sub": "user123", "name": "Jane"}
        self.release: anyio.Event | None = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode())) if request.content else {}
        self.requests.append((request.url.path, form))
        path = request.url.path
        if path.endswith("/jwks"):
            return httpx.Response(200, json=self.jwks)
        if path == "/connect/token":
            if self.release is not None:
                await self.release.wait()
            return self.token_response(form)
        if path == "/connect/userinfo":
            return httpx.Response(200, json=self.user_info)
        if path == "/connect/revocation":
            return httpx.Response(200)
        return httpx.Response(404)

    def paths(self) -> list[str]:
        return [path for path, _ in self.requests]


@pytest.fixture
def idp(jwks: dict[str, Any]) -> FakeIdp:
    return FakeIdp(jwks)


@pytest.fixture
def navigator() -> Mock:
    return Mock()


@pytest.fixture
def make_service(
    idp: FakeIdp, navigator: Mock, well_known: WellKnownEndpoints
) -> Callable[..., OidcSecurityService]:
    def _make(config: OidcClientConfig, endpoints: WellKnownEndpoints | None = well_known) -> OidcSecurityService:
        client = httpx.AsyncClient(transport=httpx.MockTransport(idp))
        provider = ConfigurationProvider(config, endpoints)
        return OidcSecurityService(provider, navigator=navigator, client=client)

    return _make


@pytest.fixture
def service(make_service: Callable[..., OidcSecurityService], config: OidcClientConfig) -> OidcSecurityService:
    return make_service(config)


@pytest.fixture
def code_service(
    make_service: Callable[..., OidcSecurityService], code_flow_config: OidcClientConfig
) -> OidcSecurityService:
    return make_service(code_flow_config)


def _record_events(service: OidcSecurityService) -> list[OidcEvent]:
    events: list[OidcEvent] = []
    service.events.subscribe(events.append)
    return events


def _token_endpoint(
    service: OidcSecurityService, make_id_token: TokenFactory, **claims: Any
) -> Callable[[dict[str, str]], httpx.Response]:
    def respond(form: dict[str, str]) -> httpx.Response:
        if form.get("grant_type") == "refresh_token":
            body = {
                "access_token": "renewed-access-token",
                "token_type": "Bearer",
                "id_token": make_id_token(nonce=None, **claims),
                "refresh_token": "second-refresh-token",
                "expires_in": 3600,
            }
        else:
            body = {
                "access_token": "access-token",
                "token_type": "Bearer",
                "id_token": make_id_token(nonce=service.storage.auth_nonce, **claims),
                "refresh_token": "first-refresh-token",
                "expires_in": 3600,
            }
        return httpx.Response(200, json=body)

    return respond


async def _authenticate_with_code(
    service: OidcSecurityService, idp: FakeIdp, make_id_token: TokenFactory
) -> None:
    idp.token_response = _token_endpoint(service, make_id_token)
    await service.login(url_handler=lambda url: None)
    state = service.storage.auth_state_control
    result = await service.authorized_callback_with_code(f"https://localhost:44386/?code=abc&state={state}")
    assert result.succeeded


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_redirects_to_authorize_url(self, service: OidcSecurityService, navigator: Mock) -> None:
        url = await service.login()

        assert url is not None
        navigator.redirect_to.assert_called_once_with(url)
        assert url.startswith("https://localhost:5001/connect/authorize?client_id=")
        query = dict(parse_qsl(urlsplit(url).query))
        assert query["nonce"] == service.storage.auth_nonce
        assert query["state"] == service.storage.auth_state_control
        assert "code_challenge" not in query
        assert service.authorization_state is AuthorizationState.AUTHENTICATING

    @pytest.mark.asyncio
    async def test_login_with_url_handler_does_not_redirect(
        self, service: OidcSecurityService, navigator: Mock
    ) -> None:
        handled: list[str] = []
        url = await service.login(url_handler=handled.append)

        assert handled == [url]
        navigator.redirect_to.assert_not_called()

    @pytest.mark.asyncio
    async def test_login_uses_fresh_nonce_and_state(self, service: OidcSecurityService) -> None:
        await service.login()
        first = (service.storage.auth_nonce, service.storage.auth_state_control)
        await service.login()
        second = (service.storage.auth_nonce, service.storage.auth_state_control)

        assert first != second

    @pytest.mark.asyncio
    async def test_login_code_flow_with_pkce(self, code_service: OidcSecurityService) -> None:
        url = await code_service.login(custom_params={"ui_locales": "de"})

        assert url is not None
        query = dict(parse_qsl(urlsplit(url).query))
        verifier = code_service.storage.code_verifier
        assert verifier
        assert query["code_challenge"] == create_s256_code_challenge(verifier)
        assert query["code_challenge_method"] == "S256"
        assert query["response_type"] == "code"
        assert query["ui_locales"] == "de"

    @pytest.mark.asyncio
    async def test_login_incomplete_config_raises(self, make_service: Callable[..., OidcSecurityService]) -> None:
        service = make_service(OidcClientConfig(sts_server="https://localhost:5001"))
        with pytest.raises(ConfigurationInvalidError):
            await service.login()
        assert service.authorization_state is AuthorizationState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_login_without_authorization_endpoint(
        self, make_service: Callable[..., OidcSecurityService], config: OidcClientConfig, navigator: Mock
    ) -> None:
        service = make_service(config, WellKnownEndpoints())

        assert await service.login() is None
        navigator.redirect_to.assert_not_called()
        assert service.authorization_state is AuthorizationState.UNAUTHENTICATED


class TestImplicitFlowCallback:
    @pytest.fixture(autouse=True)
    def login_values(self, service: OidcSecurityService) -> None:
        service.storage.auth_nonce = "nonce"
        service.storage.auth_state_control = "state"

    @pytest.mark.asyncio
    async def test_success(self, service: OidcSecurityService, make_id_token: TokenFactory) -> None:
        await service.setup()
        token = make_id_token()

        result = await service.authorized_implicit_flow_callback(
            f"#access_token=ACCESS-TOKEN==&token_type=bearer&id_token={token}&state=state&expires_in=3600"
            "&session_state=abc"
        )

        assert result.validation_result is ValidationResult.OK
        assert result.authorization_state is AuthorizationState.AUTHENTICATED
        assert service.is_authenticated
        assert service.get_token() == "ACCESS-TOKEN=="
        assert service.get_id_token() == token
        assert service.storage.session_state == "abc"
        assert service.storage.auth_nonce is None
        assert service.storage.auth_state_control is None

    @pytest.mark.asyncio
    async def test_waits_for_module_ready(self, service: OidcSecurityService, make_id_token: TokenFactory) -> None:
        results = []
        fragment = f"access_token=at&id_token={make_id_token()}&state=state"

        async def callback() -> None:
            results.append(await service.authorized_implicit_flow_callback(fragment))

        async with anyio.create_task_group() as tg:
            tg.start_soon(callback)
            await anyio.wait_all_tasks_blocked()
            assert results == []
            await service.setup()

        assert results[0].validation_result is ValidationResult.OK

    @pytest.mark.asyncio
    async def test_reconfigure_releases_queued_callbacks(
        self,
        service: OidcSecurityService,
        config: OidcClientConfig,
        well_known: WellKnownEndpoints,
        make_id_token: TokenFactory,
    ) -> None:
        results = []
        fragment = f"access_token=at&id_token={make_id_token()}&state=state"

        async def callback() -> None:
            results.append(await service.authorized_implicit_flow_callback(fragment))

        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                tg.start_soon(callback)
                await anyio.wait_all_tasks_blocked()
                service.reconfigure(config, well_known)
                await service.setup()

        assert results[0].validation_result is ValidationResult.SESSION_ENDED
        assert service.authorization_state is AuthorizationState.UNAUTHENTICATED
        assert service.storage.access_token is None

    @pytest.mark.asyncio
    async def test_id_token_response_type(
        self,
        make_service: Callable[..., OidcSecurityService],
        config: OidcClientConfig,
        make_id_token: TokenFactory,
        idp: FakeIdp,
    ) -> None:
        service = make_service(config.model_copy(update={"response_type": "id_token", "auto_user_info": True}))
        service.storage.auth_nonce = "nonce"
        service.storage.auth_state_control = "state"
        await service.setup()
        token = make_id_token()

        result = await service.authorized_implicit_flow_callback(f"#id_token={token}&state=state")

        assert result.validation_result is ValidationResult.OK
        assert service.authorization_state is AuthorizationState.AUTHENTICATED
        assert service.get_id_token() == token
        assert service.get_token() is None
        assert "/connect/userinfo" not in idp.paths()

    @pytest.mark.asyncio
    async def test_access_token_required_for_token_response_type(
        self, service: OidcSecurityService, make_id_token: TokenFactory
    ) -> None:
        await service.setup()

        result = await service.authorized_implicit_flow_callback(f"#id_token={make_id_token()}&state=state")

        assert result.validation_result is ValidationResult.CALLBACK_MALFORMED
        assert service.authorization_state is AuthorizationState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_setup_is_one_shot(self, service: OidcSecurityService) -> None:
        first = await service.setup()
        with patch.object(service.provider, "set_well_known_endpoints") as mock_set:
            second = await service.setup()

        assert first is second
        mock_set.assert_not_called()

    @pytest.mark.asyncio
    async def test_nonce_mismatch(self, service: OidcSecurityService, make_id_token: TokenFactory) -> None:
        await service.setup()
        events = _record_events(service)

        result = await service.authorized_implicit_flow_callback(
            f"access_token=at&id_token={make_id_token(nonce='other')}&state=state"
        )

        assert result.validation_result is ValidationResult.INCORRECT_NONCE
        assert service.authorization_state is AuthorizationState.UNAUTHENTICATED
        assert service.storage.access_token is None
        assert service.storage.auth_result is None
        transitions = [(e.previous, e.current) for e in events if isinstance(e, AuthorizationStateChanged)]
        assert transitions == [
            (AuthorizationState.UNAUTHENTICATED, AuthorizationState.AUTHENTICATING),
            (AuthorizationState.AUTHENTICATING, AuthorizationState.UNAUTHENTICATED),
        ]

    @pytest.mark.asyncio
    async def test_state_mismatch(self, service: OidcSecurityService, make_id_token: TokenFactory) -> None:
        await service.setup()
        result = await service.authorized_implicit_flow_callback(
            f"access_token=at&id_token={make_id_token()}&state=forged"
        )
        assert result.validation_result is ValidationResult.STATES_DO_NOT_MATCH

    @pytest.mark.asyncio
    async def test_clock_skew(self, service: OidcSecurityService, make_id_token: TokenFactory) -> None:
        await service.setup()
        token = make_id_token(iat=int(time.time()) - 300)
        result = await service.authorized_implicit_flow_callback(f"access_token=at&id_token={token}&state=state")
        assert result.validation_result is ValidationResult.MAX_OFFSET_EXPIRED

    @pytest.mark.asyncio
    async def test_malformed_callback_leaves_session_untouched(self, service: OidcSecurityService) -> None:
        events = _record_events(service)

        result = await service.authorized_implicit_flow_callback("#access_token=at")

        assert result.validation_result is ValidationResult.CALLBACK_MALFORMED
        assert service.authorization_state is AuthorizationState.UNAUTHENTICATED
        assert service.storage.auth_nonce == "nonce"
        assert not any(isinstance(e, AuthorizationStateChanged) for e in events)

    @pytest.mark.asyncio
    async def test_provider_error(self, service: OidcSecurityService) -> None:
        await service.setup()
        result = await service.authorized_implicit_flow_callback("#error=login_required&state=state")

        assert result.validation_result is ValidationResult.SECURE_TOKEN_SERVER_ERROR
        assert "login_required" in (result.error or "")
        assert service.authorization_state is AuthorizationState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_signature_failure_refreshes_keys_once(
        self, service: OidcSecurityService, make_id_token: TokenFactory, idp: FakeIdp
    ) -> None:
        await service.setup()
        idp.jwks = {"keys": []}

        result = await service.authorized_implicit_flow_callback(
            f"access_token=at&id_token={make_id_token()}&state=state"
        )

        assert result.validation_result is ValidationResult.SIGNATURE_FAILED
        assert idp.paths().count("/.well-known/openid-configuration/jwks") == 1


class TestCodeFlowCallback:
    @pytest.mark.asyncio
    async def test_dispatches_code_state_and_verifier(self, code_service: OidcSecurityService) -> None:
        code_service.storage.code_verifier = "verifier"

        with patch.object(code_service, "request_tokens_with_code", new_callable=AsyncMock) as mock_request:
            await code_service.authorized_callback_with_code(
                "https://www.example.com/signin?code=thisisacode&state=0000.1234.000#"
            )

        mock_request.assert_awaited_once_with("thisisacode", "0000.1234.000", "verifier")

    @pytest.mark.asyncio
    async def test_verifier_is_none_without_pkce(
        self, make_service: Callable[..., OidcSecurityService], code_flow_config: OidcClientConfig
    ) -> None:
        service = make_service(code_flow_config.model_copy(update={"use_pkce": False}))
        service.storage.code_verifier = "stale"

        with patch.object(service, "request_tokens_with_code", new_callable=AsyncMock) as mock_request:
            await service.authorized_callback_with_code(
                "https://www.example.com/signin?code=thisisacode&state=0000.1234.000#"
            )

        mock_request.assert_awaited_once_with("thisisacode", "0000.1234.000", None)

    @pytest.mark.asyncio
    async def test_full_code_exchange(
        self, code_service: OidcSecurityService, idp: FakeIdp, make_id_token: TokenFactory
    ) -> None:
        await _authenticate_with_code(code_service, idp, make_id_token)

        token_requests = [form for path, form in idp.requests if path == "/connect/token"]
        assert len(token_requests) == 1
        form = token_requests[0]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "abc"
        assert form["redirect_uri"] == "https://localhost:44386"
        assert form["code_verifier"]

        assert code_service.authorization_state is AuthorizationState.AUTHENTICATED
        assert code_service.get_token() == "access-token"
        assert code_service.get_refresh_token() == "first-refresh-token"
        assert code_service.storage.code_verifier is None
        assert code_service.get_payload_from_id_token()["sub"] == "user123"  # type: ignore[index]

    @pytest.mark.asyncio
    async def test_state_mismatch_skips_token_request(self, code_service: OidcSecurityService, idp: FakeIdp) -> None:
        await code_service.login(url_handler=lambda url: None)

        result = await code_service.authorized_callback_with_code("https://localhost:44386/?code=abc&state=forged")

        assert result.validation_result is ValidationResult.STATES_DO_NOT_MATCH
        assert "/connect/token" not in idp.paths()
        assert code_service.authorization_state is AuthorizationState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_token_endpoint_error(self, code_service: OidcSecurityService, idp: FakeIdp) -> None:
        idp.token_response = lambda form: httpx.Response(400, json={"error": "invalid_grant"})
        await code_service.login(url_handler=lambda url: None)
        state = code_service.storage.auth_state_control

        result = await code_service.authorized_callback_with_code(f"https://localhost:44386/?code=abc&state={state}")

        assert result.validation_result is ValidationResult.SECURE_TOKEN_SERVER_ERROR
        assert code_service.authorization_state is AuthorizationState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_malformed_code_callback(self, code_service: OidcSecurityService) -> None:
        result = await code_service.authorized_callback_with_code("https://localhost:44386/?state=abc")
        assert result.validation_result is ValidationResult.CALLBACK_MALFORMED

    @pytest.mark.asyncio
    async def test_auto_user_info(
        self,
        make_service: Callable[..., OidcSecurityService],
        code_flow_config: OidcClientConfig,
        idp: FakeIdp,
        make_id_token: TokenFactory,
    ) -> None:
        service = make_service(code_flow_config.model_copy(update={"auto_user_info": True}))
        await _authenticate_with_code(service, idp, make_id_token)

        assert service.get_user_data() == {"sub": "user123", "name": "Jane"}

    @pytest.mark.asyncio
    async def test_auto_user_info_subject_mismatch(
        self,
        make_service: Callable[..., OidcSecurityService],
        code_flow_config: OidcClientConfig,
        idp: FakeIdp,
        make_id_token: TokenFactory,
    ) -> None:
        service = make_service(code_flow_config.model_copy(update={"auto_user_info": True}))
        idp.user_info = {"sub": "someone-else"}
        idp.token_response = _token_endpoint(service, make_id_token)
        await service.login(url_handler=lambda url: None)
        state = service.storage.auth_state_control

        result = await service.authorized_callback_with_code(f"https://localhost:44386/?code=abc&state={state}")

        assert result.validation_result is ValidationResult.INVALID_TOKEN
        assert service.authorization_state is AuthorizationState.UNAUTHENTICATED


class TestRefreshSession:
    @pytest.mark.asyncio
    async def test_sets_running_before_dispatch(self, code_service: OidcSecurityService) -> None:
        code_service.storage.auth_result = {"refresh_token": "rt"}
        observed: list[SilentRenewState] = []

        async def procedure(refresh_token: str, custom_params: Any = None) -> None:
            observed.append(code_service.silent_renew_state)

        with patch.object(
            code_service, "refresh_tokens_with_code_procedure", new_callable=AsyncMock, side_effect=procedure
        ) as mock_procedure:
            await code_service.refresh_session()

        mock_procedure.assert_awaited_once_with("rt", None)
        assert observed == [SilentRenewState.RUNNING]
        assert code_service.silent_renew_state is SilentRenewState.RUNNING

    @pytest.mark.asyncio
    async def test_skips_when_already_running(self, code_service: OidcSecurityService) -> None:
        code_service.storage.auth_result = {"refresh_token": "rt"}
        code_service.storage.silent_renew_running = SilentRenewState.RUNNING

        with patch.object(code_service, "refresh_tokens_with_code_procedure", new_callable=AsyncMock) as mock_procedure:
            assert await code_service.refresh_session() is None

        mock_procedure.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_success(
        self, code_service: OidcSecurityService, idp: FakeIdp, make_id_token: TokenFactory
    ) -> None:
        await _authenticate_with_code(code_service, idp, make_id_token)
        events = _record_events(code_service)

        result = await code_service.refresh_session()

        assert result is not None
        assert result.validation_result is ValidationResult.OK
        assert result.is_renew_process
        assert code_service.get_token() == "renewed-access-token"
        assert code_service.get_refresh_token() == "second-refresh-token"
        assert code_service.silent_renew_state is SilentRenewState.IDLE
        transitions = [e.current for e in events if isinstance(e, AuthorizationStateChanged)]
        assert transitions == [AuthorizationState.RENEWING_SILENTLY, AuthorizationState.AUTHENTICATED]

        refresh_form = [form for path, form in idp.requests if path == "/connect/token"][-1]
        assert refresh_form == {
            "grant_type": "refresh_token",
            "client_id": code_service.config.client_id,
            "refresh_token": "first-refresh-token",
        }

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token_when_not_rotated(
        self, code_service: OidcSecurityService, idp: FakeIdp, make_id_token: TokenFactory
    ) -> None:
        await _authenticate_with_code(code_service, idp, make_id_token)
        idp.token_response = lambda form: httpx.Response(200, json={"access_token": "renewed", "expires_in": 60})

        result = await code_service.refresh_session()

        assert result is not None and result.succeeded
        assert code_service.get_token() == "renewed"
        assert code_service.get_refresh_token() == "first-refresh-token"

    @pytest.mark.asyncio
    async def test_refresh_rejected_by_provider(
        self, code_service: OidcSecurityService, idp: FakeIdp, make_id_token: TokenFactory
    ) -> None:
        await _authenticate_with_code(code_service, idp, make_id_token)
        idp.token_response = lambda form: httpx.Response(400, json={"error": "invalid_grant"})

        result = await code_service.refresh_session()

        assert result is not None
        assert result.validation_result is ValidationResult.RENEWAL_FAILED
        assert code_service.silent_renew_state is SilentRenewState.IDLE
        assert code_service.authorization_state is AuthorizationState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_refresh_validation_failure_keeps_valid_session(
        self, code_service: OidcSecurityService, idp: FakeIdp, make_id_token: TokenFactory
    ) -> None:
        await _authenticate_with_code(code_service, idp, make_id_token)
        idp.token_response = _token_endpoint(code_service, make_id_token, aud="someone-else")

        result = await code_service.refresh_session()

        assert result is not None
        assert result.validation_result is ValidationResult.RENEWAL_FAILED
        assert code_service.authorization_state is AuthorizationState.AUTHENTICATED
        assert code_service.get_token() == "access-token"
        assert code_service.silent_renew_state is SilentRenewState.IDLE

    @pytest.mark.asyncio
    async def test_logoff_cancels_in_flight_refresh(
        self, code_service: OidcSecurityService, idp: FakeIdp, make_id_token: TokenFactory
    ) -> None:
        await _authenticate_with_code(code_service, idp, make_id_token)
        idp.release = anyio.Event()
        results = []
        events = _record_events(code_service)

        async def renew() -> None:
            results.append(await code_service.refresh_session())

        async with anyio.create_task_group() as tg:
            tg.start_soon(renew)
            await anyio.wait_all_tasks_blocked()
            code_service.logoff(url_handler=lambda url: None)
            idp.release.set()

        assert results[0].validation_result is ValidationResult.SESSION_ENDED
        assert code_service.authorization_state is AuthorizationState.UNAUTHENTICATED
        assert code_service.storage.access_token is None
        assert code_service.silent_renew_state is SilentRenewState.IDLE
        renew_events = [e.state for e in events if isinstance(e, SilentRenewStateChanged)]
        assert renew_events == [SilentRenewState.RUNNING, SilentRenewState.IDLE]
        published = [e for e in events if isinstance(e, (SilentRenewStateChanged, StorageResetEvent))]
        assert [type(e) for e in published] == [SilentRenewStateChanged, SilentRenewStateChanged, StorageResetEvent]

    @pytest.mark.asyncio
    async def test_silent_renew_through_navigator(
        self, make_service: Callable[..., OidcSecurityService], config: OidcClientConfig, navigator: Mock
    ) -> None:
        service = make_service(
            config.model_copy(
                update={"silent_renew": True, "silent_renew_url": "https://localhost:44386/silent-renew.html"}
            )
        )

        assert await service.refresh_session() is None

        url = navigator.redirect_to.call_args[0][0]
        query = dict(parse_qsl(urlsplit(url).query))
        assert query["prompt"] == "none"
        assert query["redirect_uri"] == "https://localhost:44386/silent-renew.html"
        assert service.silent_renew_state is SilentRenewState.RUNNING

    @pytest.mark.asyncio
    async def test_no_renewal_mechanism(self, service: OidcSecurityService, navigator: Mock) -> None:
        assert await service.refresh_session() is None
        navigator.redirect_to.assert_not_called()
        assert service.silent_renew_state is SilentRenewState.IDLE

    @pytest.mark.asyncio
    async def test_silent_renew_without_navigator(
        self, config: OidcClientConfig, well_known: WellKnownEndpoints, idp: FakeIdp
    ) -> None:
        service = OidcSecurityService(
            ConfigurationProvider(config.model_copy(update={"silent_renew": True}), well_known),
            client=httpx.AsyncClient(transport=httpx.MockTransport(idp)),
        )

        for _ in range(2):
            result = await service.refresh_session()
            assert result is not None
            assert result.validation_result is ValidationResult.RENEWAL_FAILED
            assert service.silent_renew_state is SilentRenewState.IDLE

        assert service.storage.auth_state_control is None

    @pytest.mark.asyncio
    async def test_stale_running_marker_is_released(self, code_service: OidcSecurityService) -> None:
        code_service.storage.auth_result = {"refresh_token": "rt"}
        launched = time.time() - code_service.config.silent_renew_timeout_in_seconds - 1
        with patch("coreason_oidc_client.storage.time.time", return_value=launched):
            code_service.storage.silent_renew_running = SilentRenewState.RUNNING
        events = _record_events(code_service)

        with patch.object(code_service, "refresh_tokens_with_code_procedure", new_callable=AsyncMock) as mock_procedure:
            await code_service.refresh_session()

        mock_procedure.assert_awaited_once_with("rt", None)
        renew_events = [e.state for e in events if isinstance(e, SilentRenewStateChanged)]
        assert renew_events == [SilentRenewState.IDLE, SilentRenewState.RUNNING]

    @pytest.mark.asyncio
    async def test_silent_renew_loop_renews_when_due(
        self, code_service: OidcSecurityService, make_id_token: TokenFactory
    ) -> None:
        code_service.storage.id_token = make_id_token(exp=int(time.time()) - 1)
        code_service._authorization_state = AuthorizationState.AUTHENTICATED

        async def renew(*args: Any) -> None:
            code_service.logoff_local()

        with patch.object(code_service, "refresh_session", new_callable=AsyncMock, side_effect=renew) as mock_renew:
            await code_service.run_silent_renew_loop(interval=0)

        mock_renew.assert_awaited_once()

    def test_token_expires_soon(self, code_service: OidcSecurityService, make_id_token: TokenFactory) -> None:
        code_service.storage.id_token = make_id_token(exp=int(time.time()) + 30)

        assert code_service.token_expires_soon(60) is True
        assert code_service.token_expires_soon(0) is False

        code_service.storage.id_token = None
        code_service.storage.auth_result = {"expires_at": int(time.time()) + 10}
        assert code_service.token_expires_soon(60) is True


class TestLogoff:
    @pytest.fixture(autouse=True)
    def authenticated(self, service: OidcSecurityService) -> None:
        service.storage.id_token = "mytoken"
        service.storage.access_token = "at"
        service._authorization_state = AuthorizationState.AUTHENTICATED

    def test_logoff_with_url_handler(self, service: OidcSecurityService, navigator: Mock) -> None:
        handled: list[str] = []

        url = service.logoff(url_handler=handled.append)

        assert handled == [
            "https://localhost:5001/connect/endsession?id_token_hint=mytoken"
            "&post_logout_redirect_uri=https%3A%2F%2Flocalhost%3A44386%2FUnauthorized"
        ]
        assert url == handled[0]
        navigator.redirect_to.assert_not_called()
        assert service.authorization_state is AuthorizationState.UNAUTHENTICATED
        assert service.storage.id_token is None

    def test_logoff_redirects_by_default(self, service: OidcSecurityService, navigator: Mock) -> None:
        url = service.logoff()
        navigator.redirect_to.assert_called_once_with(url)

    def test_logoff_without_end_session_endpoint(
        self, make_service: Callable[..., OidcSecurityService], config: OidcClientConfig, navigator: Mock
    ) -> None:
        service = make_service(config, WellKnownEndpoints())
        service.storage.access_token = "at"
        service._authorization_state = AuthorizationState.AUTHENTICATED

        seen: list[tuple[str, str | None]] = []

        def record(event: OidcEvent) -> None:
            if isinstance(event, StorageResetEvent):
                seen.append(("reset", service.storage.access_token))
            elif isinstance(event, AuthorizationStateChanged):
                seen.append((event.current, service.storage.access_token))

        service.events.subscribe(record)
        handled: list[str] = []

        assert service.logoff(url_handler=handled.append) is None

        assert seen == [("reset", None), (AuthorizationState.UNAUTHENTICATED, None)]
        assert handled == []
        navigator.redirect_to.assert_not_called()

    def test_logoff_local(self, service: OidcSecurityService, navigator: Mock) -> None:
        service.logoff_local()

        navigator.redirect_to.assert_not_called()
        assert service.authorization_state is AuthorizationState.UNAUTHENTICATED
        assert service.get_token() is None

    @pytest.mark.asyncio
    async def test_logoff_and_revoke_tokens(self, service: OidcSecurityService, idp: FakeIdp) -> None:
        service.storage.auth_result = {"refresh_token": "rt"}

        url = await service.logoff_and_revoke_tokens(url_handler=lambda u: None)

        revocations = [form for path, form in idp.requests if path == "/connect/revocation"]
        assert [(f["token"], f["token_type_hint"]) for f in revocations] == [
            ("rt", "refresh_token"),
            ("at", "access_token"),
        ]
        assert url is not None
        assert service.authorization_state is AuthorizationState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_revoke_token_without_endpoint(
        self, make_service: Callable[..., OidcSecurityService], config: OidcClientConfig
    ) -> None:
        service = make_service(config, WellKnownEndpoints())

        assert await service.revoke_token("at", "access_token") is False

    def test_reconfigure_resets_session(self, service: OidcSecurityService, config: OidcClientConfig) -> None:
        other = config.model_copy(update={"client_id": "other-client"})

        service.reconfigure(other)

        assert service.config.client_id == "other-client"
        assert service.provider.well_known_endpoints is None
        assert service.authorization_state is AuthorizationState.UNAUTHENTICATED
        assert service.storage.access_token is None


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_internal_client_closed(self, config: OidcClientConfig, well_known: WellKnownEndpoints) -> None:
        service = OidcSecurityService(ConfigurationProvider(config, well_known))
        assert service._internal_client is True

        with patch.object(service._client, "aclose", new_callable=AsyncMock) as mock_close:
            async with service:
                pass
            mock_close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_external_client_not_closed(self, config: OidcClientConfig) -> None:
        client = AsyncMock(spec=httpx.AsyncClient)
        service = OidcSecurityService(ConfigurationProvider(config), client=client)

        async with service:
            pass

        client.aclose.assert_not_called()

    def test_requires_configuration(self) -> None:
        with pytest.raises(ConfigurationInvalidError):
            OidcSecurityService(ConfigurationProvider())

    def test_illegal_transition_rejected(self, service: OidcSecurityService) -> None:
        with pytest.raises(CoreasonOidcError, match="Illegal authorization state transition"):
            service._transition(AuthorizationState.AUTHENTICATED)

    def test_payload_of_malformed_id_token(self, service: OidcSecurityService) -> None:
        service.storage.id_token = "not-a-jwt"
        assert service.get_payload_from_id_token() is None
