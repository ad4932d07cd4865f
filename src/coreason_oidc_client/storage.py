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
Key-value persistence for login correlation values, tokens and renewal state.
"""

import json
import time
from typing import Any, Protocol

from coreason_oidc_client.models import SilentRenewState

AUTH_NONCE = "authNonce"
AUTH_STATE_CONTROL = "authStateControl"
CODE_VERIFIER = "codeVerifier"
AUTH_RESULT = "authorizationResult"
ACCESS_TOKEN = "authzData"
ID_TOKEN = "authnData"
SESSION_STATE = "session_state"
SILENT_RENEW_RUNNING = "storageSilentRenewRunning"
USER_DATA = "userData"

SESSION_KEYS = (
    AUTH_NONCE,
    AUTH_STATE_CONTROL,
    CODE_VERIFIER,
    AUTH_RESULT,
    ACCESS_TOKEN,
    ID_TOKEN,
    SESSION_STATE,
    SILENT_RENEW_RUNNING,
    USER_DATA,
)


class SecurityStorageProtocol(Protocol):
    """Backing store for session data. Values are strings."""

    def read(self, key: str) -> str | None: ...

    def write(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemorySecurityStorage:
    """
    In-memory implementation of SecurityStorageProtocol.
    Not shared between processes; suitable for tests and CLI agents.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def read(self, key: str) -> str | None:
        return self._data.get(key)

    def write(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class StoragePersistence:
    """
    Typed access to the session values kept in a SecurityStorageProtocol.

    Keys are prefixed with the client id so that relying parties sharing one
    backing store stay isolated.
    """

    def __init__(self, storage: SecurityStorageProtocol | None = None, prefix: str = "") -> None:
        self.storage = storage if storage is not None else MemorySecurityStorage()
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}_{key}" if self.prefix else key

    def get(self, key: str) -> str | None:
        return self.storage.read(self._key(key))

    def set(self, key: str, value: str | None) -> None:
        if value is None:
            self.remove(key)
        else:
            self.storage.write(self._key(key), value)

    def remove(self, key: str) -> None:
        self.storage.remove(self._key(key))

    def reset_storage_data(self) -> None:
        """Removes every session value, including an in-flight renewal marker."""
        for key in SESSION_KEYS:
            self.remove(key)

    @property
    def auth_nonce(self) -> str | None:
        return self.get(AUTH_NONCE)

    @auth_nonce.setter
    def auth_nonce(self, value: str | None) -> None:
        self.set(AUTH_NONCE, value)

    @property
    def auth_state_control(self) -> str | None:
        return self.get(AUTH_STATE_CONTROL)

    @auth_state_control.setter
    def auth_state_control(self, value: str | None) -> None:
        self.set(AUTH_STATE_CONTROL, value)

    @property
    def code_verifier(self) -> str | None:
        return self.get(CODE_VERIFIER)

    @code_verifier.setter
    def code_verifier(self, value: str | None) -> None:
        self.set(CODE_VERIFIER, value)

    @property
    def auth_result(self) -> dict[str, Any] | None:
        raw = self.get(AUTH_RESULT)
        return json.loads(raw) if raw else None

    @auth_result.setter
    def auth_result(self, value: dict[str, Any] | None) -> None:
        self.set(AUTH_RESULT, json.dumps(value) if value is not None else None)

    @property
    def access_token(self) -> str | None:
        return self.get(ACCESS_TOKEN)

    @access_token.setter
    def access_token(self, value: str | None) -> None:
        self.set(ACCESS_TOKEN, value)

    @property
    def id_token(self) -> str | None:
        return self.get(ID_TOKEN)

    @id_token.setter
    def id_token(self, value: str | None) -> None:
        self.set(ID_TOKEN, value)

    @property
    def session_state(self) -> str | None:
        return self.get(SESSION_STATE)

    @session_state.setter
    def session_state(self, value: str | None) -> None:
        self.set(SESSION_STATE, value)

    @property
    def user_data(self) -> dict[str, Any] | None:
        raw = self.get(USER_DATA)
        return json.loads(raw) if raw else None

    @user_data.setter
    def user_data(self, value: dict[str, Any] | None) -> None:
        self.set(USER_DATA, json.dumps(value) if value is not None else None)

    @property
    def silent_renew_running(self) -> SilentRenewState:
        marker = self._silent_renew_marker()
        return SilentRenewState(marker["state"]) if marker else SilentRenewState.IDLE

    @silent_renew_running.setter
    def silent_renew_running(self, value: SilentRenewState) -> None:
        if value is SilentRenewState.IDLE:
            self.remove(SILENT_RENEW_RUNNING)
        else:
            self.set(SILENT_RENEW_RUNNING, json.dumps({"state": value.value, "started_at": time.time()}))

    @property
    def silent_renew_started_at(self) -> float | None:
        """Epoch seconds at which the running renewal was launched."""
        marker = self._silent_renew_marker()
        started_at = marker.get("started_at") if marker else None
        return float(started_at) if isinstance(started_at, (int, float)) else None

    def _silent_renew_marker(self) -> dict[str, Any] | None:
        raw = self.get(SILENT_RENEW_RUNNING)
        if not raw:
            return None
        try:
            marker = json.loads(raw)
        except json.JSONDecodeError:
            # Plain marker without a launch time
            return {"state": raw}
        return marker if isinstance(marker, dict) and "state" in marker else None

    def get_refresh_token(self) -> str | None:
        result = self.auth_result
        if not result:
            return None
        token = result.get("refresh_token")
        return token if isinstance(token, str) and token else None
