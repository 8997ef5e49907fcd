"""Tests for the reconciliation controller (sign-in / sign-out state machine)."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from decision.errors import PersistenceFailure, StorageUnavailable
from decision.history import new_record
from decision.persistence import InMemoryDecisionStorage, Scope
from decision.reconciliation import ReconciliationController
from decision.schemas import AuthUser

ALICE = AuthUser(user_id="alice", email="alice@example.com", display_name="Alice")
BOB = AuthUser(user_id="bob")


def _records(decision_input, analysis_factory, count: int, start: int = 0):
    return [
        new_record(decision_input, analysis_factory({"Stay": 5, "Move": 6}), clock=lambda n=n: 1_000 + n)
        for n in range(start, start + count)
    ]


class _Recorder:
    """Collects every wholesale replacement the controller publishes."""

    def __init__(self):
        self.calls: list[list] = []

    def __call__(self, records):
        self.calls.append(records)

    @property
    def latest(self):
        return self.calls[-1] if self.calls else None


@pytest.fixture
def controller(local_storage, remote_storage, preferences):
    return ReconciliationController(local_storage, remote_storage, preferences)


@pytest.fixture
def recorder(controller):
    recorder = _Recorder()
    controller.on_replace(recorder)
    return recorder


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


class TestTransitions:

    @pytest.mark.asyncio
    async def test_start_loads_local(self, controller, recorder, local_storage, decision_input, analysis_factory):
        for record in _records(decision_input, analysis_factory, 2):
            await local_storage.upsert(Scope.local(), record)

        await controller.start()

        assert len(recorder.latest) == 2
        assert controller.scope.is_local
        assert controller.backend is local_storage

    @pytest.mark.asyncio
    async def test_sign_in_replaces_local_with_remote(
        self, controller, recorder, local_storage, remote_storage, decision_input, analysis_factory,
    ):
        for record in _records(decision_input, analysis_factory, 3):
            await local_storage.upsert(Scope.local(), record)
        remote_records = _records(decision_input, analysis_factory, 5, start=10)
        for record in remote_records:
            await remote_storage.upsert(Scope.for_user("alice"), record)
        await controller.start()

        await controller.handle_auth_event(ALICE)

        assert len(recorder.latest) == 5
        assert {r.id for r in recorder.latest} == {r.id for r in remote_records}
        assert controller.scope == Scope.for_user("alice")
        assert controller.backend is remote_storage
        # Local records are neither migrated nor removed
        assert len(await local_storage.load(Scope.local())) == 3

    @pytest.mark.asyncio
    async def test_sign_in_failure_keeps_list_and_surfaces_error(
        self, controller, recorder, local_storage, remote_storage, decision_input, analysis_factory,
    ):
        for record in _records(decision_input, analysis_factory, 3):
            await local_storage.upsert(Scope.local(), record)
        await controller.start()
        remote_storage.online = False
        calls_before = len(recorder.calls)

        with pytest.raises(StorageUnavailable):
            await controller.handle_auth_event(ALICE)

        assert len(recorder.calls) == calls_before
        assert isinstance(controller.last_error, StorageUnavailable)
        assert controller.user == ALICE
        assert not controller.loaded

    @pytest.mark.asyncio
    async def test_same_user_reannounced_after_failed_sign_in_loads_remote(
        self, controller, recorder, local_storage, remote_storage, decision_input, analysis_factory,
    ):
        local_record = _records(decision_input, analysis_factory, 1)[0]
        remote_record = _records(decision_input, analysis_factory, 1, start=10)[0]
        await local_storage.upsert(Scope.local(), local_record)
        await remote_storage.upsert(Scope.for_user("alice"), remote_record)
        await controller.start()
        remote_storage.online = False
        with pytest.raises(StorageUnavailable):
            await controller.handle_auth_event(ALICE)

        remote_storage.online = True
        await controller.handle_auth_event(ALICE)

        assert recorder.latest == [remote_record]
        assert controller.loaded
        assert controller.last_error is None

    @pytest.mark.asyncio
    async def test_writes_refused_until_sign_in_loads(
        self, controller, local_storage, remote_storage, decision_input, analysis_factory,
    ):
        local_record = _records(decision_input, analysis_factory, 1)[0]
        remote_record = _records(decision_input, analysis_factory, 1, start=10)[0]
        await local_storage.upsert(Scope.local(), local_record)
        await remote_storage.upsert(Scope.for_user("alice"), remote_record)
        await controller.start()
        remote_storage.online = False
        with pytest.raises(StorageUnavailable):
            await controller.handle_auth_event(ALICE)
        remote_storage.online = True

        with pytest.raises(StorageUnavailable):
            controller.capture()

        assert await remote_storage.load(Scope.for_user("alice")) == [remote_record]

    @pytest.mark.asyncio
    async def test_reload_retries_failed_load(self, controller, recorder, remote_storage, decision_input, analysis_factory):
        remote_record = _records(decision_input, analysis_factory, 1)[0]
        await remote_storage.upsert(Scope.for_user("alice"), remote_record)
        await controller.start()
        remote_storage.online = False
        with pytest.raises(StorageUnavailable):
            await controller.handle_auth_event(ALICE)
        with pytest.raises(StorageUnavailable):
            await controller.reload()

        remote_storage.online = True
        assert await controller.reload() == [remote_record]

        assert recorder.latest == [remote_record]
        assert controller.capture().scope == Scope.for_user("alice")

    @pytest.mark.asyncio
    async def test_sign_in_without_remote(self, local_storage, preferences):
        controller = ReconciliationController(local_storage, None, preferences)
        await controller.start()
        with pytest.raises(StorageUnavailable):
            await controller.handle_auth_event(ALICE)
        with pytest.raises(StorageUnavailable):
            controller.capture()

    @pytest.mark.asyncio
    async def test_sign_out_clears_then_reloads_local(
        self, controller, recorder, local_storage, remote_storage, decision_input, analysis_factory,
    ):
        for record in _records(decision_input, analysis_factory, 2):
            await local_storage.upsert(Scope.local(), record)
        for record in _records(decision_input, analysis_factory, 4, start=10):
            await remote_storage.upsert(Scope.for_user("alice"), record)
        await controller.start()
        await controller.handle_auth_event(ALICE)

        await controller.handle_auth_event(None)

        assert recorder.calls[-2] == []
        assert len(recorder.latest) == 2
        assert controller.scope.is_local
        # Remote data untouched
        assert len(await remote_storage.load(Scope.for_user("alice"))) == 4

    @pytest.mark.asyncio
    async def test_switch_user(self, controller, recorder, remote_storage, decision_input, analysis_factory):
        await remote_storage.upsert(Scope.for_user("bob"), _records(decision_input, analysis_factory, 1)[0])
        await controller.start()
        await controller.handle_auth_event(ALICE)

        await controller.handle_auth_event(BOB)

        assert controller.scope == Scope.for_user("bob")
        assert len(recorder.latest) == 1

    @pytest.mark.asyncio
    async def test_repeated_events_are_noops(self, controller, recorder):
        await controller.start()
        await controller.handle_auth_event(None)
        await controller.handle_auth_event(ALICE)
        generation = controller.generation
        calls = len(recorder.calls)

        await controller.handle_auth_event(ALICE)

        assert controller.generation == generation
        assert len(recorder.calls) == calls

    @pytest.mark.asyncio
    async def test_sign_in_fills_empty_profile_settings(self, controller, preferences):
        await controller.start()
        await controller.handle_auth_event(ALICE)
        settings = preferences.load_settings()
        assert settings.display_name == "Alice"
        assert settings.email == "alice@example.com"


# ---------------------------------------------------------------------------
# Stale scope guard
# ---------------------------------------------------------------------------


class TestStaleGuard:

    @pytest.mark.asyncio
    async def test_ticket_goes_stale_on_transition(self, controller):
        await controller.start()
        ticket = controller.capture()
        assert controller.is_current(ticket)

        await controller.handle_auth_event(ALICE)

        assert not controller.is_current(ticket)

    @pytest.mark.asyncio
    async def test_stale_write_is_skipped(self, controller, local_storage, decision_input, analysis_factory):
        await controller.start()
        ticket = controller.capture()
        await controller.handle_auth_event(ALICE)

        record = _records(decision_input, analysis_factory, 1)[0]
        assert await controller.upsert(ticket, record) is False
        assert await local_storage.load(Scope.local()) == []

    @pytest.mark.asyncio
    async def test_current_write_goes_to_scope_backend(self, controller, remote_storage, decision_input, analysis_factory):
        await controller.start()
        await controller.handle_auth_event(ALICE)
        record = _records(decision_input, analysis_factory, 1)[0]

        assert await controller.upsert(controller.capture(), record) is True
        assert await remote_storage.load(Scope.for_user("alice")) == [record]

    @pytest.mark.asyncio
    async def test_current_write_failure_propagates(self, controller, remote_storage, decision_input, analysis_factory):
        await controller.start()
        await controller.handle_auth_event(ALICE)
        remote_storage.online = False
        with pytest.raises(PersistenceFailure):
            await controller.upsert(controller.capture(), _records(decision_input, analysis_factory, 1)[0])

    @pytest.mark.asyncio
    async def test_load_overtaken_by_another_transition_is_discarded(
        self, local_storage, preferences, decision_input, analysis_factory,
    ):
        remote = InMemoryDecisionStorage()
        await remote.upsert(Scope.for_user("alice"), _records(decision_input, analysis_factory, 1)[0])
        release = asyncio.Event()
        original_load = remote.load

        async def slow_load(scope):
            await release.wait()
            return await original_load(scope)

        remote.load = AsyncMock(side_effect=slow_load)
        controller = ReconciliationController(local_storage, remote, preferences)
        recorder = _Recorder()
        controller.on_replace(recorder)
        await controller.start()

        sign_in = asyncio.create_task(controller.handle_auth_event(ALICE))
        await asyncio.sleep(0)
        await controller.handle_auth_event(None)
        release.set()
        await sign_in

        assert controller.scope.is_local
        assert recorder.latest == []

    @pytest.mark.asyncio
    async def test_unsubscribe(self, controller):
        recorder = _Recorder()
        unsubscribe = controller.on_replace(recorder)
        unsubscribe()
        await controller.start()
        assert recorder.calls == []
