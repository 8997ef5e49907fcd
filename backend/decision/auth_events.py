"""Auth state subscription.

The auth provider is an external collaborator; this stream is the seam
it talks through.  ``publish`` is called with an ``AuthUser`` on sign-in
and ``None`` on sign-out, and every subscriber is awaited in
registration order.  New subscribers are called once immediately with
the current state.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from decision.schemas import AuthUser

logger = logging.getLogger(__name__)

AuthListener = Callable[[AuthUser | None], Awaitable[None]]


class AuthEventStream:
    """In-process fan-out of auth state changes."""

    def __init__(self) -> None:
        self._listeners: list[AuthListener] = []
        self._current: AuthUser | None = None

    @property
    def current(self) -> AuthUser | None:
        return self._current

    async def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        """Register *listener*, deliver the current state, return an unsubscribe callable."""
        self._listeners.append(listener)
        await listener(self._current)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def publish(self, user: AuthUser | None) -> None:
        """Deliver a sign-in (*user*) or sign-out (``None``) event.

        A failing listener does not stop delivery to the others; the first
        failure is re-raised once every listener has run.
        """
        self._current = user
        logger.info("Auth state changed: %s", f"signed in as {user.user_id}" if user else "signed out")
        first_error: BaseException | None = None
        for listener in list(self._listeners):
            try:
                await listener(user)
            except Exception as exc:
                logger.exception("Auth listener %r failed", listener)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error
