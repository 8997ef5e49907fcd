"""Wiring of the decision engine for one in-process session."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from decision.analyzer import DecisionAnalyzer
from decision.auth_events import AuthEventStream
from decision.local_state import LocalStateFile
from decision.persistence import (
    DecisionStorage,
    InMemoryDecisionStorage,
    LocalDecisionStorage,
    PostgresDecisionStorage,
)
from decision.preferences import Preferences
from decision.reconciliation import ReconciliationController
from decision.store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class DecisionRuntime:
    """Local state, backends, controller, store and auth stream for one session."""
    state: LocalStateFile
    local: LocalDecisionStorage
    remote: DecisionStorage | None
    preferences: Preferences
    controller: ReconciliationController
    store: RecordStore
    auth_events: AuthEventStream = field(default_factory=AuthEventStream)
    _unsubscribe: Callable[[], None] | None = field(default=None, repr=False)

    @classmethod
    def build(
        cls,
        state: LocalStateFile,
        analyzer: DecisionAnalyzer,
        remote: DecisionStorage | None = None,
    ) -> "DecisionRuntime":
        local = LocalDecisionStorage(state)
        preferences = Preferences(state)
        controller = ReconciliationController(local, remote, preferences)
        store = RecordStore(controller, analyzer, preferences=preferences)
        return cls(
            state=state,
            local=local,
            remote=remote,
            preferences=preferences,
            controller=controller,
            store=store,
        )

    async def start(self) -> None:
        """Load local records, then follow auth events."""
        await self.controller.start()
        self._unsubscribe = await self.auth_events.subscribe(self.controller.handle_auth_event)

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.store.close()
        close = getattr(self.remote, "close", None)
        if close is not None:
            await close()


def create_remote_storage() -> DecisionStorage | None:
    """Select the remote store from the environment.

    Returns None when neither ``USE_IN_MEMORY_REMOTE`` nor ``PG_CONN_STR``
    is set; signing in then fails with ``StorageUnavailable``.
    """
    from config import get_pg_conn_str, use_in_memory_remote

    if use_in_memory_remote():
        logger.info("Using in-memory remote decision store")
        return InMemoryDecisionStorage()

    conn_str = get_pg_conn_str()
    if conn_str:
        logger.info("Using PostgreSQL remote decision store")
        return PostgresDecisionStorage(conn_str)

    logger.warning("No remote decision store configured; sign-in will be unavailable")
    return None


def build_runtime_from_env(analyzer: DecisionAnalyzer | None = None) -> DecisionRuntime:
    from config import get_local_state_path

    if analyzer is None:
        from decision.analyzer import build_analyzer_from_env
        analyzer = build_analyzer_from_env()

    state = LocalStateFile(get_local_state_path())
    return DecisionRuntime.build(state, analyzer, create_remote_storage())


def get_storage_mode(runtime: DecisionRuntime) -> dict[str, str]:
    """Describe where records are currently read from and written to."""
    remote = runtime.remote
    if remote is None:
        remote_mode = "none"
        message = "Signed-out records are kept on this device only; no cloud store is configured"
    elif isinstance(remote, InMemoryDecisionStorage):
        remote_mode = "memory"
        message = "Signed-in records are stored in memory and will be lost on restart"
    else:
        remote_mode = "database"
        message = "Signed-in records are persisted to PostgreSQL"
    return {
        "mode": "local" if runtime.controller.scope.is_local else "remote",
        "remote": remote_mode,
        "scope": str(runtime.controller.scope),
        "local_path": str(runtime.state.path),
        "message": message,
    }
