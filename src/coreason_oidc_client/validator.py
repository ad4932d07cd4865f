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
IdTokenValidator component for validating id_tokens returned to the relying party.
"""

import hmac
import re
import time
from typing import Any, cast

from authlib.common.encoding import to_unicode
from authlib.jose import JsonWebToken
from authlib.jose.errors import (
    BadSignatureError,
    DecodeError,
    ExpiredTokenError,
    InvalidClaimError,
    JoseError,
    MissingClaimError,
)
from authlib.oidc.core.util import create_half_hash
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coreason_oidc_client.config import OidcClientConfig
from coreason_oidc_client.exceptions import (
    AtHashMismatchError,
    AudienceMismatchError,
    ClockSkewExceededError,
    IssuerMismatchError,
    NonceMismatchError,
    SignatureInvalidError,
    StateMismatchError,
    TokenExpiredError,
    TokenValidationError,
)
from coreason_oidc_client.utils.logger import OidcLogger

tracer = trace.get_tracer(__name__)

DEFAULT_ALGORITHMS = ["RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"]


def _claim_name(error: JoseError) -> str | None:
    name = getattr(error, "claim_name", None)
    if name:
        return str(name)
    # MissingClaimError only carries the name in its description: Missing "iss" claim
    match = re.search(r'"(\w+)"', str(error.description or error))
    return match.group(1) if match else None


class IdTokenValidator:
    """
    Validates id_tokens against signing keys supplied by the caller and the
    relying party configuration.

    The validator never retrieves keys itself; the session injects the JWKS
    it fetched through the well-known provider.

    Attributes:
        allowed_algorithms (list[str]): Accepted JWS algorithms; `none` and HMAC are rejected.
        leeway (int): Clock skew tolerated on `exp` and `nbf`, in seconds.
    """

    def __init__(self, allowed_algorithms: list[str] | None = None, leeway: int = 0) -> None:
        self.allowed_algorithms = allowed_algorithms or list(DEFAULT_ALGORITHMS)
        self.leeway = leeway
        self.jwt = JsonWebToken(self.allowed_algorithms)

    def validate(
        self,
        id_token: str,
        expected_nonce: str | None,
        expected_state: str | None,
        received_state: str | None,
        signing_keys: dict[str, Any] | None,
        config: OidcClientConfig,
        *,
        issuer: str | None = None,
        access_token: str | None = None,
        check_nonce: bool = True,
        check_state: bool = True,
    ) -> dict[str, Any]:
        """
        Validates an id_token and the callback it arrived with.

        Emits an OpenTelemetry span `validate_id_token`.

        Args:
            id_token: The compact JWS id_token.
            expected_nonce: Nonce issued at login.
            expected_state: State issued at login.
            received_state: State echoed back in the callback.
            signing_keys: JWKS dictionary (`{"keys": [...]}`) of the issuer.
            config: The relying party configuration.
            issuer: Issuer from the well-known metadata; `iss` is not checked when None.
            access_token: Access token delivered with the id_token, checked against `at_hash`.
            check_nonce: False for refresh-token responses, which carry no fresh nonce.
            check_state: False when the state was already checked before a token exchange.

        Returns:
            dict[str, Any]: The validated claims.

        Raises:
            StateMismatchError: If the received state differs from the issued one.
            SignatureInvalidError: If the keys cannot verify the signature.
            IssuerMismatchError: If `iss` differs from the discovered issuer.
            AudienceMismatchError: If `aud` does not contain the client id.
            TokenExpiredError: If the token has expired.
            NonceMismatchError: If the nonce differs from the issued one.
            ClockSkewExceededError: If `iat` is older than the allowed offset.
            AtHashMismatchError: If `at_hash` does not match the access token.
        """
        logger = OidcLogger(config)
        with tracer.start_as_current_span("validate_id_token") as span:
            try:
                if check_state:
                    self._validate_state(expected_state, received_state)

                claims, alg = self._decode(id_token.strip(), signing_keys, config, issuer)

                if check_nonce:
                    self._validate_nonce(claims, expected_nonce)

                if not config.disable_iat_offset_validation:
                    self._validate_iat(claims, config.max_id_token_iat_offset_allowed_in_seconds)

                if access_token:
                    self._validate_at_hash(claims, access_token, alg)

            except TokenValidationError as e:
                logger.log_warning(f"id_token validation failed: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            logger.log_debug("id_token validated")
            span.set_status(Status(StatusCode.OK))
            return claims

    @staticmethod
    def _validate_state(expected_state: str | None, received_state: str | None) -> None:
        if not expected_state or not received_state:
            raise StateMismatchError("State is missing from the stored login or the callback")
        if not hmac.compare_digest(expected_state, received_state):
            raise StateMismatchError("Received state does not match the state issued at login")

    def _decode(
        self,
        id_token: str,
        signing_keys: dict[str, Any] | None,
        config: OidcClientConfig,
        issuer: str | None,
    ) -> tuple[dict[str, Any], str | None]:
        if not signing_keys or not signing_keys.get("keys"):
            raise SignatureInvalidError("No signing keys available to verify the id_token")

        claims_options: dict[str, Any] = {
            "exp": {"essential": True},
            "aud": {"essential": True, "value": config.client_id},
        }
        if issuer and not config.iss_validation_off:
            claims_options["iss"] = {"essential": True, "value": issuer}

        try:
            jwt_any = cast("Any", self.jwt)
            claims = jwt_any.decode(id_token, signing_keys, claims_options=claims_options)
        except (BadSignatureError, DecodeError, ValueError) as e:
            # Authlib raises ValueError when the key set holds no matching `kid`
            raise SignatureInvalidError(f"Invalid signature or key not found: {e}") from e
        except JoseError as e:
            raise SignatureInvalidError(f"id_token could not be decoded: {e}") from e

        try:
            claims.validate(now=int(time.time()), leeway=self.leeway)
        except ExpiredTokenError as e:
            raise TokenExpiredError(f"id_token has expired: {e}") from e
        except (InvalidClaimError, MissingClaimError) as e:
            claim_name = _claim_name(e)
            if claim_name == "iss":
                raise IssuerMismatchError(f"Invalid issuer: {e}") from e
            if claim_name == "aud":
                raise AudienceMismatchError(f"Invalid audience: {e}") from e
            raise TokenValidationError(f"Invalid claim: {e}") from e
        except JoseError as e:
            raise TokenValidationError(f"id_token validation failed: {e}") from e

        return dict(claims), claims.header.get("alg")

    @staticmethod
    def _validate_nonce(claims: dict[str, Any], expected_nonce: str | None) -> None:
        nonce = claims.get("nonce")
        if not expected_nonce or not isinstance(nonce, str) or not hmac.compare_digest(nonce, expected_nonce):
            raise NonceMismatchError(f"Nonce {nonce!r} does not match the nonce issued at login")

    @staticmethod
    def _validate_iat(claims: dict[str, Any], max_offset: int) -> None:
        iat = claims.get("iat")
        if not isinstance(iat, (int, float)):
            raise ClockSkewExceededError("id_token has no 'iat' claim")
        offset = int(time.time()) - int(iat)
        if offset > max_offset:
            raise ClockSkewExceededError(f"id_token issued {offset}s ago, maximum allowed is {max_offset}s")

    @staticmethod
    def _validate_at_hash(claims: dict[str, Any], access_token: str, alg: str | None) -> None:
        at_hash = claims.get("at_hash")
        if not at_hash:
            return
        expected = create_half_hash(access_token, alg or "RS256")
        if expected is None or not hmac.compare_digest(to_unicode(expected), str(at_hash)):
            raise AtHashMismatchError("at_hash does not match the access token")
