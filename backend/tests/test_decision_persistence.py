"""Tests for the local state file and the storage backends."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from decision.errors import PersistenceFailure, StorageUnavailable
from decision.history import new_record
from decision.local_state import HISTORY_KEY, LocalStateFile
from decision.persistence import (
    REMOTE_CLEAR_NOTICE,
    InMemoryDecisionStorage,
    LocalDecisionStorage,
    PostgresDecisionStorage,
    Scope,
)
from decision.schemas import FeedbackSubmission

LOCAL = Scope.local()
ALICE = Scope.for_user("alice")


def _records(decision_input, analysis_factory, count: int):
    return [
        new_record(decision_input, analysis_factory({"Stay": 5, "Move": 6}), clock=lambda n=n: 1_000 + n)
        for n in range(count)
    ]


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------


class TestScope:

    def test_local(self):
        assert LOCAL.is_local
        assert str(LOCAL) == "local"

    def test_user(self):
        assert not ALICE.is_local
        assert str(ALICE) == "user:alice"

    def test_user_requires_id(self):
        with pytest.raises(ValueError):
            Scope.for_user("")


# ---------------------------------------------------------------------------
# LocalStateFile
# ---------------------------------------------------------------------------


class TestLocalStateFile:

    def test_missing_file_reads_empty(self, tmp_path):
        assert LocalStateFile(tmp_path / "nope.json").get_item("k") is None

    def test_set_get_remove(self, state_file):
        state_file.set_item("a", "1")
        state_file.set_item("b", "2")
        assert state_file.get_item("a") == "1"
        state_file.remove_item("a")
        assert state_file.get_item("a") is None
        assert state_file.get_item("b") == "2"

    def test_creates_parent_directories(self, tmp_path):
        state = LocalStateFile(tmp_path / "nested" / "dir" / "state.json")
        state.set_item("k", "v")
        assert json.loads((tmp_path / "nested" / "dir" / "state.json").read_text()) == {"k": "v"}


# ---------------------------------------------------------------------------
# Local backend
# ---------------------------------------------------------------------------


class TestLocalDecisionStorage:

    @pytest.mark.asyncio
    async def test_round_trip(self, local_storage, decision_input, analysis_factory):
        records = _records(decision_input, analysis_factory, 3)
        for record in records:
            await local_storage.upsert(LOCAL, record)

        loaded = await local_storage.load(LOCAL)

        assert loaded == sorted(records, key=lambda r: r.created_at, reverse=True)

    @pytest.mark.asyncio
    async def test_round_trip_through_a_new_instance(self, state_file, decision_input, analysis_factory):
        record = _records(decision_input, analysis_factory, 1)[0]
        await LocalDecisionStorage(state_file).upsert(LOCAL, record)

        reopened = LocalDecisionStorage(LocalStateFile(state_file.path))
        assert await reopened.load(LOCAL) == [record]

    @pytest.mark.asyncio
    async def test_upsert_overwrites_by_id(self, local_storage, decision_input, analysis_factory):
        record = _records(decision_input, analysis_factory, 1)[0]
        await local_storage.upsert(LOCAL, record)
        changed = record.model_copy(update={"title": "Changed"})
        await local_storage.upsert(LOCAL, changed)

        assert await local_storage.load(LOCAL) == [changed]

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, local_storage, decision_input, analysis_factory):
        record = _records(decision_input, analysis_factory, 1)[0]
        await local_storage.upsert(LOCAL, record)
        await local_storage.remove(LOCAL, record.id)
        await local_storage.remove(LOCAL, record.id)
        await local_storage.remove(LOCAL, "never-existed")
        assert await local_storage.load(LOCAL) == []

    @pytest.mark.asyncio
    async def test_clear_all(self, local_storage, state_file, decision_input, analysis_factory):
        for record in _records(decision_input, analysis_factory, 2):
            await local_storage.upsert(LOCAL, record)
        state_file.set_item("clarity_choice_onboarded", "true")

        result = await local_storage.clear_all(LOCAL)

        assert result.cleared
        assert result.notice is None
        assert await local_storage.load(LOCAL) == []
        assert state_file.get_item("clarity_choice_onboarded") == "true"

    @pytest.mark.asyncio
    async def test_rejects_user_scope(self, local_storage):
        with pytest.raises(ValueError):
            await local_storage.load(ALICE)

    @pytest.mark.asyncio
    async def test_corrupt_slot_is_a_persistence_failure(self, local_storage, state_file):
        state_file.set_item(HISTORY_KEY, "{not json")
        with pytest.raises(PersistenceFailure):
            await local_storage.load(LOCAL)

    @pytest.mark.asyncio
    async def test_write_failure_carries_record(self, local_storage, decision_input, analysis_factory):
        record = _records(decision_input, analysis_factory, 1)[0]
        with patch.object(LocalStateFile, "_write_all", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceFailure) as exc_info:
                await local_storage.upsert(LOCAL, record)
        assert exc_info.value.record == record
        assert not exc_info.value.is_remote
        assert await local_storage.load(LOCAL) == []

    def test_capabilities(self, local_storage):
        assert local_storage.supports_bulk_clear is True


# ---------------------------------------------------------------------------
# In-memory remote backend
# ---------------------------------------------------------------------------


class TestInMemoryDecisionStorage:

    @pytest.mark.asyncio
    async def test_scoped_per_user(self, remote_storage, decision_input, analysis_factory):
        alice, bob = _records(decision_input, analysis_factory, 2)
        await remote_storage.upsert(ALICE, alice)
        await remote_storage.upsert(Scope.for_user("bob"), bob)

        assert await remote_storage.load(ALICE) == [alice]
        assert await remote_storage.load(Scope.for_user("bob")) == [bob]

    @pytest.mark.asyncio
    async def test_newest_first(self, remote_storage, decision_input, analysis_factory):
        records = _records(decision_input, analysis_factory, 3)
        for record in records:
            await remote_storage.upsert(ALICE, record)
        loaded = await remote_storage.load(ALICE)
        assert [r.created_at for r in loaded] == [1_002, 1_001, 1_000]

    @pytest.mark.asyncio
    async def test_clear_all_is_a_noop_with_notice(self, remote_storage, decision_input, analysis_factory):
        record = _records(decision_input, analysis_factory, 1)[0]
        await remote_storage.upsert(ALICE, record)

        result = await remote_storage.clear_all(ALICE)

        assert not result.cleared
        assert result.notice == REMOTE_CLEAR_NOTICE
        assert await remote_storage.load(ALICE) == [record]

    @pytest.mark.asyncio
    async def test_offline_raises_storage_unavailable(self, remote_storage, decision_input, analysis_factory):
        remote_storage.online = False
        record = _records(decision_input, analysis_factory, 1)[0]
        with pytest.raises(StorageUnavailable) as exc_info:
            await remote_storage.upsert(ALICE, record)
        assert exc_info.value.record == record
        assert exc_info.value.is_remote

    @pytest.mark.asyncio
    async def test_rejects_local_scope(self, remote_storage):
        with pytest.raises(ValueError):
            await remote_storage.load(LOCAL)

    @pytest.mark.asyncio
    async def test_feedback(self, remote_storage):
        feedback = FeedbackSubmission(type="bug", message="Broken button", timestamp=1)
        await remote_storage.add_feedback(feedback)
        assert remote_storage.feedback == [feedback]


# ---------------------------------------------------------------------------
# PostgreSQL backend
# ---------------------------------------------------------------------------


class TestPostgresDecisionStorage:

    def test_no_bulk_clear(self):
        storage = PostgresDecisionStorage("postgresql://user:pw@localhost/db")
        assert storage.supports_bulk_clear is False

    @pytest.mark.asyncio
    async def test_clear_all_does_not_touch_database(self):
        storage = PostgresDecisionStorage("postgresql://user:pw@localhost/db")
        with patch.object(storage, "_get_pool") as get_pool:
            result = await storage.clear_all(ALICE)
        get_pool.assert_not_called()
        assert result.notice == REMOTE_CLEAR_NOTICE

    @pytest.mark.asyncio
    async def test_connection_error_is_storage_unavailable(self, decision_input, analysis_factory):
        storage = PostgresDecisionStorage("postgresql://user:pw@localhost/db")
        record = _records(decision_input, analysis_factory, 1)[0]
        with patch.object(storage, "_get_pool", side_effect=OSError("connection refused")):
            with pytest.raises(StorageUnavailable) as exc_info:
                await storage.upsert(ALICE, record)
        assert exc_info.value.record == record
