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
Well-known endpoint discovery and signing key retrieval.
"""

import time
from typing import Any

import anyio
import httpx
from pydantic import ValidationError

from coreason_oidc_client.exceptions import CoreasonOidcError, OversizedResponseError
from coreason_oidc_client.models import WellKnownEndpoints
from coreason_oidc_client.transport import request_json
from coreason_oidc_client.utils.logger import logger


class WellKnownProvider:
    """
    Fetches and caches the identity provider's metadata and JWKS.

    Attributes:
        discovery_url (str): The OIDC discovery URL.
        cache_ttl (int): The JWKS cache time-to-live in seconds.
    """

    def __init__(
        self,
        discovery_url: str,
        client: httpx.AsyncClient,
        cache_ttl: int = 3600,
        refresh_cooldown: float = 30.0,
        well_known_endpoints: WellKnownEndpoints | None = None,
    ) -> None:
        """
        Initialize the WellKnownProvider.

        Args:
            discovery_url: The OIDC discovery URL (e.g., https://sts.example.com/.well-known/openid-configuration).
            client: The async HTTP client to use for requests.
            cache_ttl: Time-to-live for the JWKS cache in seconds. Defaults to 3600 (1 hour).
            refresh_cooldown: Minimum time in seconds between forced refreshes. Defaults to 30.0.
            well_known_endpoints: Statically supplied metadata; discovery is skipped when given.
        """
        self.discovery_url = discovery_url
        self.client = client
        self.cache_ttl = cache_ttl
        self.refresh_cooldown = refresh_cooldown
        self._well_known_cache: WellKnownEndpoints | None = well_known_endpoints
        self._jwks_cache: dict[str, Any] | None = None
        self._last_update: float = 0.0
        self._lock: anyio.Lock | None = None

    def _get_lock(self) -> anyio.Lock:
        if self._lock is None:
            self._lock = anyio.Lock()
        return self._lock

    async def _fetch_with_retry(self, url: str, what: str) -> dict[str, Any]:
        """
        Fetches a JSON document, retrying on `httpx.HTTPError` up to 3 times
        with exponential backoff (initial=0.1s, max=1.0s).
        """
        attempts = 3
        wait_initial = 0.1
        wait_max = 1.0

        for attempt in range(attempts):
            try:
                return await request_json(self.client, "GET", url)
            except OversizedResponseError:
                raise
            except (CoreasonOidcError, httpx.HTTPError) as e:
                if attempt == attempts - 1:
                    raise CoreasonOidcError(f"Failed to fetch {what} from {url}: {e}") from e

                sleep_time = min(wait_initial * (2**attempt), wait_max)
                logger.debug(f"Fetching {what} failed (attempt {attempt + 1}), retrying in {sleep_time}s")
                await anyio.sleep(sleep_time)

        raise CoreasonOidcError(f"Failed to fetch {what} from {url}")  # pragma: no cover

    async def get_well_known_endpoints(self) -> WellKnownEndpoints:
        """
        Returns the issuer metadata, fetching it once per provider.

        Raises:
            CoreasonOidcError: If discovery fails or returns invalid data.
        """
        if self._well_known_cache is not None:
            return self._well_known_cache

        async with self._get_lock():
            if self._well_known_cache is None:
                data = await self._fetch_with_retry(self.discovery_url, "OIDC configuration")
                try:
                    self._well_known_cache = WellKnownEndpoints(**data)
                except ValidationError as e:
                    raise CoreasonOidcError(f"Invalid OIDC configuration from {self.discovery_url}: {e}") from e
                logger.debug(f"Loaded well-known endpoints from {self.discovery_url}")
            return self._well_known_cache

    async def _refresh_jwks_critical_section(self, force_refresh: bool) -> dict[str, Any]:
        """
        Critical section for refreshing JWKS.
        Must be called while holding the lock.
        """
        current_time = time.time()
        age = current_time - self._last_update
        is_cache_valid = self._jwks_cache is not None and age < self.cache_ttl
        is_in_cooldown = self._jwks_cache is not None and age < self.refresh_cooldown

        if not force_refresh and is_cache_valid:
            return self._jwks_cache  # type: ignore[return-value]

        if force_refresh and is_in_cooldown:
            logger.warning("JWKS refresh cooldown active. Returning cached keys despite force_refresh request.")
            return self._jwks_cache  # type: ignore[return-value]

        if self._well_known_cache is None:
            data = await self._fetch_with_retry(self.discovery_url, "OIDC configuration")
            try:
                self._well_known_cache = WellKnownEndpoints(**data)
            except ValidationError as e:
                raise CoreasonOidcError(f"Invalid OIDC configuration from {self.discovery_url}: {e}") from e

        jwks_uri = self._well_known_cache.jwks_uri
        if not jwks_uri:
            raise CoreasonOidcError("OIDC configuration does not contain 'jwks_uri'")

        jwks = await self._fetch_with_retry(jwks_uri, "JWKS")
        self._jwks_cache = jwks
        self._last_update = current_time
        return jwks

    async def get_signing_keys(self, force_refresh: bool = False) -> dict[str, Any]:
        """
        Returns the JWKS, using the cache if valid.

        Args:
            force_refresh: If True, bypasses the cache (subject to the refresh cooldown).

        Raises:
            CoreasonOidcError: If fetching fails.
        """
        if not force_refresh and self._jwks_cache is not None:
            if (time.time() - self._last_update) < self.cache_ttl:
                return self._jwks_cache

        async with self._get_lock():
            return await self._refresh_jwks_critical_section(force_refresh)

    def reset(self) -> None:
        """Drops cached metadata and keys, e.g. after reconfiguration."""
        self._well_known_cache = None
        self._jwks_cache = None
        self._last_update = 0.0
