"""In-memory record list for the current session.

The store is the only component that edits the list record by record
(the reconciliation controller only ever replaces it wholesale).  All
mutations are write-then-reflect: the backend write has to succeed
before the list changes, so ``records`` only ever shows confirmed
state.  When a write fails the ``PersistenceFailure`` carries the
unsaved record and ``save`` can retry it without re-running analysis.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from decision.analyzer import DecisionAnalyzer
from decision.errors import RecordNotFound, StaleRecordError
from decision.history import Clock, Version, VersionHistory, new_record, now_ms
from decision.persistence import ClearResult, FeedbackStorage
from decision.preferences import Preferences
from decision.reconciliation import ReconciliationController
from decision.schemas import DecisionInput, DecisionRecord, FeedbackSubmission

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeleteOutcome:
    """Result of ``delete``; ``navigate_away`` is set when the viewed record went away."""
    record_id: str
    navigate_away: bool = False


class RecordStore:
    """Session-level list of decision records and the actions on it."""

    def __init__(
        self,
        controller: ReconciliationController,
        analyzer: DecisionAnalyzer,
        *,
        preferences: Preferences | None = None,
        clock: Clock = now_ms,
    ):
        self.controller = controller
        self.analyzer = analyzer
        self.preferences = preferences
        self._clock = clock
        self._records: list[DecisionRecord] = []
        self._selected_id: str | None = None
        self._unsubscribe = controller.on_replace(self._replace_records)

    # -- Reads --------------------------------------------------------------

    @property
    def records(self) -> list[DecisionRecord]:
        return list(self._records)

    @property
    def selected_id(self) -> str | None:
        return self._selected_id

    def _find(self, record_id: str) -> DecisionRecord | None:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def get(self, record_id: str) -> DecisionRecord:
        record = self._find(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def select(self, record_id: str | None) -> DecisionRecord | None:
        """Mark a record as the one being viewed; ``None`` clears the selection."""
        if record_id is None:
            self._selected_id = None
            return None
        record = self.get(record_id)
        self._selected_id = record_id
        return record

    def versions(self, record_id: str) -> list[Version]:
        return VersionHistory(self.get(record_id), clock=self._clock).versions()

    def _replace_records(self, records: list[DecisionRecord]) -> None:
        self._records = list(records)
        if self._selected_id is not None and self._find(self._selected_id) is None:
            self._selected_id = None
        logger.debug("Record list replaced (%d records)", len(self._records))

    # -- Mutations ----------------------------------------------------------

    def _user_name(self) -> str | None:
        if self.preferences is None:
            return None
        return self.preferences.load_settings().display_name or None

    async def analyze(self, decision_input: DecisionInput) -> DecisionRecord:
        """Run a first analysis and store it as a new record.

        The new record is prepended and selected once the write succeeds.
        If the scope changed while the analysis ran, the record is returned
        without being stored.
        """
        ticket = self.controller.capture()
        analysis = await self.analyzer.analyze(decision_input, self._user_name())
        record = new_record(decision_input, analysis, clock=self._clock)

        if await self.controller.upsert(ticket, record):
            self._records = [record, *self._records]
            self._selected_id = record.id
            logger.info("Created decision record %s (%s)", record.id, ticket.scope)
        else:
            logger.warning("Analysis for %s finished after a scope change; not stored", record.id)
        return record

    async def refine(self, record_id: str, instruction: str) -> DecisionRecord:
        """Refine a record's head analysis and push the old head onto its history."""
        if not instruction or not instruction.strip():
            raise ValueError("Refinement instruction must not be blank")
        instruction = instruction.strip()

        record = self.get(record_id)
        ticket = self.controller.capture()
        refined = await self.analyzer.refine(record.input, record.analysis, instruction)

        if not self.controller.is_current(ticket):
            raise StaleRecordError(record_id, "the signed-in user changed")
        current = self._find(record_id)
        if current is None:
            raise StaleRecordError(record_id, "the record was deleted")
        if current is not record:
            raise StaleRecordError(record_id, "another change was saved first")

        updated = VersionHistory(record, clock=self._clock).append(refined, instruction)
        if await self.controller.upsert(ticket, updated):
            self._records = [updated if r.id == record_id else r for r in self._records]
            logger.info("Refined decision record %s to version %d", record_id, updated.version_count)
        return updated

    async def save(self, record: DecisionRecord) -> DecisionRecord:
        """Write *record* in full, e.g. to retry a failed write."""
        ticket = self.controller.capture()
        if await self.controller.upsert(ticket, record):
            if self._find(record.id) is None:
                self._records = [record, *self._records]
            else:
                self._records = [record if r.id == record.id else r for r in self._records]
            logger.info("Saved decision record %s", record.id)
        return record

    async def delete(self, record_id: str) -> DeleteOutcome:
        """Remove a record from the backend, then from the list."""
        ticket = self.controller.capture()
        if not await self.controller.remove(ticket, record_id):
            return DeleteOutcome(record_id=record_id)

        self._records = [r for r in self._records if r.id != record_id]
        navigate_away = self._selected_id == record_id
        if navigate_away:
            self._selected_id = None
        logger.info("Deleted decision record %s", record_id)
        return DeleteOutcome(record_id=record_id, navigate_away=navigate_away)

    async def clear_all(self) -> ClearResult:
        """Bulk-clear the current scope; remote scopes only return a notice."""
        ticket = self.controller.capture()
        result = await self.controller.clear_all(ticket)
        if result.cleared and self.controller.is_current(ticket):
            self._records = []
            self._selected_id = None
        return result

    async def submit_feedback(
        self,
        type: Literal["bug", "suggestion", "other"],
        message: str,
        email: str | None = None,
    ) -> bool:
        """Send feedback to the remote store; returns False when there is none."""
        user = self.controller.user
        feedback = FeedbackSubmission(
            type=type,
            message=message,
            email=email or None,
            timestamp=self._clock(),
            user_id=user.user_id if user else None,
        )
        remote = self.controller.remote
        if not isinstance(remote, FeedbackStorage):
            logger.info("No remote store configured; %s feedback not sent", feedback.type)
            return False
        await remote.add_feedback(feedback)
        return True

    def close(self) -> None:
        self._unsubscribe()
