"""Version history for a single decision record.

A record's timeline is ``[h.analysis for h in refinement_history] +
[analysis]``, oldest first.  Refining pushes the current head onto the
history together with the instruction that replaced it.  Records are
values: every operation here returns a new record and leaves its input
untouched.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable
from uuid import uuid4

from decision.diff import DiffView, diff_timeline
from decision.schemas import AnalysisResult, DecisionInput, DecisionRecord, HistoryItem

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def now_ms() -> int:
    """Milliseconds since the epoch, the timestamp unit used in stored records."""
    return int(time.time() * 1000)


def new_record(
    decision_input: DecisionInput,
    analysis: AnalysisResult,
    *,
    clock: Clock = now_ms,
) -> DecisionRecord:
    """Create the first version of a decision from a successful analysis."""
    return DecisionRecord(
        id=uuid4().hex,
        title=decision_input.question,
        input=decision_input,
        analysis=analysis,
        created_at=clock(),
        refinement_history=[],
    )


@dataclass(frozen=True)
class Version:
    """One entry of the display timeline."""
    index: int
    label: str
    analysis: AnalysisResult
    diff: DiffView
    # Instruction that produced the *next* version; None for the head.
    superseded_by: str | None = None
    timestamp: int = 0
    is_latest: bool = False


class VersionHistory:
    """Read and extend the version chain of one record."""

    def __init__(self, record: DecisionRecord, *, clock: Clock = now_ms) -> None:
        self.record = record
        self._clock = clock

    def current(self) -> AnalysisResult:
        return self.record.analysis

    def append(self, new_analysis: AnalysisResult, instruction: str) -> DecisionRecord:
        """Return a new record with *new_analysis* as head.

        The previous head is pushed onto the history paired with
        *instruction*.  ``self.record`` is not modified.
        """
        entry = HistoryItem(
            analysis=self.record.analysis,
            instruction=instruction,
            timestamp=self._clock(),
        )
        updated = self.record.model_copy(
            update={
                "refinement_history": [*self.record.refinement_history, entry],
                "analysis": new_analysis,
            }
        )
        logger.debug(
            "Appended version %d to record %s", updated.version_count, self.record.id,
        )
        return updated

    def replace_current(self, analysis: AnalysisResult) -> DecisionRecord:
        """Swap the head without recording a version."""
        return self.record.model_copy(update={"analysis": analysis})

    def timeline(self) -> list[AnalysisResult]:
        return [item.analysis for item in self.record.refinement_history] + [self.record.analysis]

    def versions(self) -> list[Version]:
        """Display-ready timeline with each version diffed against its predecessor."""
        history = self.record.refinement_history
        diffs = diff_timeline(self.timeline())
        # Version k was produced when history entry k-1 was pushed.
        produced_at = [self.record.created_at] + [item.timestamp for item in history]
        versions: list[Version] = []
        for index, item in enumerate(history):
            versions.append(Version(
                index=index,
                label="Original Answer" if index == 0 else f"Refined Version {index + 1}",
                analysis=item.analysis,
                diff=diffs[index],
                superseded_by=item.instruction,
                timestamp=produced_at[index],
            ))
        versions.append(Version(
            index=len(history),
            label="Refined Analysis" if history else "Analysis",
            analysis=self.record.analysis,
            diff=diffs[-1],
            timestamp=produced_at[-1],
            is_latest=True,
        ))
        return versions


def append_version(
    record: DecisionRecord,
    new_analysis: AnalysisResult,
    instruction: str,
    *,
    clock: Clock = now_ms,
) -> DecisionRecord:
    """Functional shorthand for ``VersionHistory(record).append(...)``."""
    return VersionHistory(record, clock=clock).append(new_analysis, instruction)
