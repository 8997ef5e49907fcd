"""Reconciliation between the local device store and the per-user remote store.

The controller is a two-state machine, signed out or signed in as one
user, driven by auth events.  It owns which scope is current and which
backend serves it, and replaces the in-memory record list wholesale on
every transition:

- sign in: load the user's remote records and replace the list (local
  records are not migrated)
- sign out: clear the list, then reload the local records
- switch user: same as sign in for the new user

Every transition bumps a generation counter.  Operations capture a
``WriteTicket`` before awaiting anything; a ticket whose generation is
no longer current belongs to a previous scope and its result must not
touch the list.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from decision.errors import PersistenceFailure, StorageUnavailable
from decision.persistence import ClearResult, DecisionStorage, Scope
from decision.preferences import Preferences
from decision.schemas import AuthUser, DecisionRecord

logger = logging.getLogger(__name__)

ReplaceListener = Callable[[list[DecisionRecord]], None]


@dataclass(frozen=True)
class WriteTicket:
    """Scope and generation captured before an awaited operation."""
    scope: Scope
    generation: int
    backend: DecisionStorage


class ReconciliationController:
    """Tracks the auth state and routes reads/writes to the right backend."""

    def __init__(
        self,
        local: DecisionStorage,
        remote: DecisionStorage | None = None,
        preferences: Preferences | None = None,
    ):
        self.local = local
        self.remote = remote
        self.preferences = preferences
        self._user: AuthUser | None = None
        self._scope = Scope.local()
        self._generation = 0
        self._listeners: list[ReplaceListener] = []
        self._last_error: PersistenceFailure | None = None
        # Scope whose records the current list was loaded from
        self._loaded_scope: Scope | None = None

    # -- State --------------------------------------------------------------

    @property
    def user(self) -> AuthUser | None:
        return self._user

    @property
    def scope(self) -> Scope:
        return self._scope

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def last_error(self) -> PersistenceFailure | None:
        """Failure of the most recent load, cleared by the next successful one."""
        return self._last_error

    @property
    def loaded(self) -> bool:
        """True once the current scope's records have been loaded."""
        return self._loaded_scope == self._scope

    @property
    def backend(self) -> DecisionStorage:
        if self._scope.is_local:
            return self.local
        if self.remote is None:
            raise StorageUnavailable("No remote decision store is configured", scope=self._scope)
        return self.remote

    def on_replace(self, listener: ReplaceListener) -> Callable[[], None]:
        """Register a listener for wholesale list replacement."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _replace(self, records: list[DecisionRecord]) -> None:
        for listener in list(self._listeners):
            listener(list(records))

    def capture(self) -> WriteTicket:
        """Ticket for a write to the current scope.

        Raises StorageUnavailable until the scope's records have loaded, so
        records left over from another scope are never written into it.
        """
        backend = self.backend
        if not self.loaded:
            raise StorageUnavailable(f"Records for {self._scope} have not been loaded", scope=self._scope)
        return WriteTicket(scope=self._scope, generation=self._generation, backend=backend)

    def is_current(self, ticket: WriteTicket) -> bool:
        return ticket.generation == self._generation

    # -- Transitions --------------------------------------------------------

    async def start(self) -> list[DecisionRecord]:
        """Load the local records for the initial signed-out state."""
        generation = self._generation
        records = await self._load(self.local, Scope.local(), generation)
        logger.info("Decision store started with %d local records", len(records))
        return records

    async def handle_auth_event(self, user: AuthUser | None) -> None:
        """Apply a sign-in (*user*) or sign-out (``None``) event."""
        if user is None:
            if self._user is None:
                if not self.loaded:
                    await self.reload()
                return
            await self._sign_out()
            return

        if self._user is not None and self._user.user_id == user.user_id:
            if not self.loaded:
                # The earlier sign-in never loaded the user's records
                await self._sign_in(user)
                return
            self._user = user
            self._merge_profile(user)
            return

        await self._sign_in(user)

    async def reload(self) -> list[DecisionRecord]:
        """Load the current scope's records again, e.g. after a failed load."""
        self._generation += 1
        generation = self._generation
        logger.info("Reloading records for %s (generation %d)", self._scope, generation)
        if self._scope.is_local:
            return await self._load(self.local, self._scope, generation)
        if self.remote is None:
            error = StorageUnavailable("No remote decision store is configured", scope=self._scope)
            self._last_error = error
            raise error
        return await self._load(self.remote, self._scope, generation)

    def _merge_profile(self, user: AuthUser) -> None:
        if self.preferences is None:
            return
        try:
            self.preferences.merge_profile(user)
        except OSError as e:
            logger.warning("Could not merge profile for %s into settings: %s", user.user_id, e)

    async def _sign_in(self, user: AuthUser) -> None:
        self._generation += 1
        generation = self._generation
        self._user = user
        self._scope = Scope.for_user(user.user_id)
        logger.info("Signed in as %s (generation %d)", user.user_id, generation)
        self._merge_profile(user)

        if self.remote is None:
            error = StorageUnavailable("No remote decision store is configured", scope=self._scope)
            self._last_error = error
            logger.error("Cannot load records for %s: no remote store configured", self._scope)
            raise error

        await self._load(self.remote, self._scope, generation)

    async def _sign_out(self) -> None:
        self._generation += 1
        generation = self._generation
        previous = self._user
        self._user = None
        self._scope = Scope.local()
        logger.info("Signed out %s (generation %d)", previous.user_id if previous else "-", generation)

        # Never show the previous user's records while local ones load
        self._loaded_scope = None
        self._replace([])
        await self._load(self.local, self._scope, generation)

    async def _load(self, backend: DecisionStorage, scope: Scope, generation: int) -> list[DecisionRecord]:
        try:
            records = await backend.load(scope)
        except PersistenceFailure as e:
            if generation != self._generation:
                logger.warning("Ignoring failed load for %s: scope already changed", scope)
                return []
            self._last_error = e
            logger.error("Failed to load decision records for %s: %s", scope, e, exc_info=True)
            raise

        if generation != self._generation:
            logger.warning("Discarding %d records loaded for stale scope %s", len(records), scope)
            return []

        self._last_error = None
        self._loaded_scope = scope
        self._replace(records)
        return records

    # -- Writes -------------------------------------------------------------

    async def upsert(self, ticket: WriteTicket, record: DecisionRecord) -> bool:
        """Write *record* to the ticket's backend.

        Returns True when the caller should reflect the write in memory,
        i.e. the ticket's scope is still current once the write completed.
        """
        if not self.is_current(ticket):
            logger.warning("Skipping write of %s: scope %s is no longer current", record.id, ticket.scope)
            return False
        try:
            await ticket.backend.upsert(ticket.scope, record)
        except PersistenceFailure:
            if not self.is_current(ticket):
                logger.warning("Write of %s to stale scope %s failed; ignoring", record.id, ticket.scope)
                return False
            raise
        return self.is_current(ticket)

    async def remove(self, ticket: WriteTicket, record_id: str) -> bool:
        if not self.is_current(ticket):
            logger.warning("Skipping remove of %s: scope %s is no longer current", record_id, ticket.scope)
            return False
        try:
            await ticket.backend.remove(ticket.scope, record_id)
        except PersistenceFailure:
            if not self.is_current(ticket):
                logger.warning("Remove of %s from stale scope %s failed; ignoring", record_id, ticket.scope)
                return False
            raise
        return self.is_current(ticket)

    async def clear_all(self, ticket: WriteTicket) -> ClearResult:
        """Bulk-clear the ticket's scope if its backend supports it."""
        if not self.is_current(ticket):
            logger.warning("Skipping clear: scope %s is no longer current", ticket.scope)
            return ClearResult(cleared=False)
        result = await ticket.backend.clear_all(ticket.scope)
        logger.info("Clear requested for %s: cleared=%s", ticket.scope, result.cleared)
        return result
