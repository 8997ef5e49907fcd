"""Exception hierarchy for the decision record engine.

Every failure raised by the analyzer, the storage backends or the record
store derives from ``DecisionError`` so the HTTP layer can map them in
one place.  Input validation is left to pydantic (``ValidationError``
raised while building a ``DecisionInput``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from decision.persistence import Scope
    from decision.schemas import DecisionRecord


class DecisionError(Exception):
    """Base class for all decision engine failures."""


class AnalysisFailure(DecisionError):
    """The analysis collaborator failed or returned a malformed payload."""


class PersistenceFailure(DecisionError):
    """A storage backend could not complete an operation.

    ``record`` carries the record that was not saved (when the failing
    operation was a write) so the caller can offer a retry without
    re-running the analysis.
    """

    def __init__(
        self,
        message: str,
        *,
        scope: Scope | None = None,
        record: DecisionRecord | None = None,
    ) -> None:
        super().__init__(message)
        self.scope = scope
        self.record = record

    @property
    def is_remote(self) -> bool:
        return self.scope is not None and not self.scope.is_local


class StorageUnavailable(PersistenceFailure):
    """The backend is offline or not configured."""


class RecordNotFound(DecisionError, LookupError):
    """No record with the given id exists in the current scope."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"No decision record with id {record_id}")
        self.record_id = record_id


class StaleRecordError(DecisionError):
    """A refinement finished after its record had already changed."""

    def __init__(self, record_id: str, reason: str) -> None:
        super().__init__(f"Decision record {record_id} changed during refinement: {reason}")
        self.record_id = record_id
