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
Parsers for redirect responses: fragment-encoded token responses (implicit
flow) and query-encoded code responses (code flow).
"""

from urllib.parse import unquote_plus, urlsplit

from pydantic import ValidationError

from coreason_oidc_client.exceptions import CallbackMalformedError, SecureTokenServerError
from coreason_oidc_client.models import CodeCallbackResult, ImplicitCallbackResult
from coreason_oidc_client.utils.logger import logger


def _strip_markers(raw: str) -> str:
    raw = raw.strip()
    if raw.startswith("#"):
        raw = raw[1:]
    # Some identity providers append an empty fragment after the query string
    if raw.endswith("#"):
        raw = raw[:-1]
    return raw


def _split_pairs(raw: str) -> dict[str, str]:
    result: dict[str, str] = {}
    for segment in raw.split("&"):
        if not segment:
            continue
        # Split on the first '=' only: base64 padding and state values may contain more
        name, _, value = segment.partition("=")
        name = unquote_plus(name)
        if name in result:
            logger.warning(f"Callback parameter '{name}' repeated, keeping the last value")
        result[name] = unquote_plus(value)
    return result


def parse_fragment(raw_fragment: str) -> dict[str, str]:
    """
    Parses a fragment-encoded response into a flat mapping.

    Args:
        raw_fragment: The fragment, with or without the leading `#`.

    Returns:
        dict[str, str]: Every parameter once; the last occurrence wins on repeats.
    """
    return _split_pairs(_strip_markers(raw_fragment))


def _raise_for_error(params: dict[str, str]) -> None:
    error = params.get("error")
    if error:
        raise SecureTokenServerError(error, params.get("error_description"))


def parse_implicit_callback(raw_fragment: str) -> ImplicitCallbackResult:
    """
    Parses an implicit-flow redirect fragment.

    Raises:
        SecureTokenServerError: If the provider answered with an error (e.g. `login_required`).
        CallbackMalformedError: If `state` is missing or no token was delivered.
    """
    params = parse_fragment(raw_fragment)
    _raise_for_error(params)

    if "state" not in params:
        raise CallbackMalformedError("Implicit flow callback is missing 'state'")
    if "access_token" not in params and "id_token" not in params:
        raise CallbackMalformedError("Implicit flow callback carries neither 'access_token' nor 'id_token'")

    try:
        return ImplicitCallbackResult(**params)
    except ValidationError as e:
        raise CallbackMalformedError(f"Implicit flow callback is malformed: {e}") from e


def parse_code_flow_url(url: str) -> CodeCallbackResult:
    """
    Extracts `code` and `state` from a code-flow redirect URL.

    Args:
        url: The full redirect URL, possibly ending with an empty `#`.

    Raises:
        SecureTokenServerError: If the provider answered with an error.
        CallbackMalformedError: If `code` or `state` is missing.
    """
    url = url.strip()
    if url.endswith("#"):
        url = url[:-1]

    params = _split_pairs(urlsplit(url).query)
    _raise_for_error(params)

    missing = [name for name in ("code", "state") if not params.get(name)]
    if missing:
        raise CallbackMalformedError(f"Code flow callback is missing: {', '.join(missing)}")

    return CodeCallbackResult(
        code=params["code"],
        state=params["state"],
        session_state=params.get("session_state"),
    )
