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
HTTP helpers for talking to the identity provider with a bounded response size.
"""

import json
from typing import Any

import httpx

from coreason_oidc_client.exceptions import CoreasonOidcError, OversizedResponseError, SecureTokenServerError

MAX_RESPONSE_BYTES = 1_000_000


async def _read_limited(response: httpx.Response, max_bytes: int) -> bytes:
    content_length = response.headers.get("Content-Length")
    if content_length:
        try:
            if int(content_length) > max_bytes:
                raise OversizedResponseError(f"Response too large ({content_length} bytes)")
        except ValueError:
            pass

    content = bytearray()
    async for chunk in response.aiter_bytes():
        content.extend(chunk)
        if len(content) > max_bytes:
            raise OversizedResponseError("Response too large")
    return bytes(content)


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    data: dict[str, str] | None = None,
    headers: dict[str, str] | None = None,
    max_bytes: int = MAX_RESPONSE_BYTES,
) -> dict[str, Any]:
    """
    Sends a request and decodes a JSON object response.

    OAuth2 error bodies (`{"error": ...}`, usually with status 400) are
    surfaced as `SecureTokenServerError` rather than a bare HTTP error.

    Args:
        client: The async HTTP client.
        method: HTTP method.
        url: Target URL.
        data: Form fields for POST requests.
        headers: Extra request headers.
        max_bytes: Maximum accepted body size.

    Returns:
        dict[str, Any]: The decoded JSON object.

    Raises:
        OversizedResponseError: If the body exceeds `max_bytes`.
        SecureTokenServerError: If the body is an OAuth2 error response.
        CoreasonOidcError: If the body is not a JSON object.
        httpx.HTTPError: For transport failures and non-OAuth2 error statuses.
    """
    async with client.stream(method, url, data=data, headers=headers, follow_redirects=True) as response:
        content = await _read_limited(response, max_bytes)

    try:
        body = json.loads(content) if content else None
    except json.JSONDecodeError:
        response.raise_for_status()
        raise CoreasonOidcError(f"Invalid JSON response from {url}") from None

    if response.status_code >= 400:
        if isinstance(body, dict) and isinstance(body.get("error"), str):
            raise SecureTokenServerError(body["error"], body.get("error_description"))
        response.raise_for_status()

    if not isinstance(body, dict):
        raise CoreasonOidcError(f"Expected a JSON object from {url}")
    return body


async def post_form(
    client: httpx.AsyncClient,
    url: str,
    data: dict[str, str],
    *,
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    """
    Posts a form and returns the raw response, for endpoints answering
    without a body (e.g. token revocation).
    """
    response = await client.post(url, data=data, headers=headers)
    if response.status_code >= 400:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), str):
            raise SecureTokenServerError(body["error"], body.get("error_description"))
        response.raise_for_status()
    return response
