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
Publish/subscribe channel for authorization state transitions and renewal outcomes.
"""

from collections.abc import Callable

from pydantic import BaseModel, ConfigDict

from coreason_oidc_client.models import AuthorizationResult, AuthorizationState, SilentRenewState
from coreason_oidc_client.utils.logger import logger


class AuthorizationStateChanged(BaseModel):
    model_config = ConfigDict(frozen=True)

    previous: AuthorizationState
    current: AuthorizationState


class SilentRenewStateChanged(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: SilentRenewState


class StorageResetEvent(BaseModel):
    """Published once the session storage has been cleared."""

    model_config = ConfigDict(frozen=True)


class AuthorizationResultEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    result: AuthorizationResult


OidcEvent = AuthorizationStateChanged | SilentRenewStateChanged | StorageResetEvent | AuthorizationResultEvent
Subscriber = Callable[[OidcEvent], None]


class EventBus:
    """
    Synchronous in-process event bus.

    Subscribers run in publish order on the caller's task, so an event is
    fully handled before the next one is published.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[Subscriber, tuple[type[BaseModel], ...] | None]] = []

    def subscribe(
        self,
        callback: Subscriber,
        event_types: tuple[type[BaseModel], ...] | None = None,
    ) -> Callable[[], None]:
        """
        Registers a subscriber.

        Args:
            callback: Called with each matching event.
            event_types: Only deliver these event classes; all events when None.

        Returns:
            Callable[[], None]: Removes the subscription.
        """
        entry = (callback, event_types)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: OidcEvent) -> None:
        for callback, event_types in list(self._subscribers):
            if event_types is not None and not isinstance(event, event_types):
                continue
            try:
                callback(event)
            except Exception:
                # Subscriber errors are logged; delivery to the remaining subscribers continues
                logger.exception(f"Subscriber {callback!r} failed handling {type(event).__name__}")
