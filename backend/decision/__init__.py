"""Decision records with version history and local/remote persistence.

A decision is analysed once, refined any number of times (each refinement
pushes the previous analysis onto the record's history), and stored
either on the device or in the signed-in user's remote namespace.  The
reconciliation controller switches between the two on auth events; the
record store holds the session's list and applies every mutation
write-then-reflect.
"""

from __future__ import annotations

from decision.diff import DiffView, OptionDelta, diff
from decision.errors import (
    AnalysisFailure,
    DecisionError,
    PersistenceFailure,
    RecordNotFound,
    StaleRecordError,
    StorageUnavailable,
)
from decision.history import Version, VersionHistory, append_version, new_record
from decision.persistence import ClearResult, Scope
from decision.reconciliation import ReconciliationController, WriteTicket
from decision.schemas import (
    AnalysisOption,
    AnalysisResult,
    AuthUser,
    Criterion,
    DecisionInput,
    DecisionRecord,
    HistoryItem,
    OptionItem,
)
from decision.store import DeleteOutcome, RecordStore

__all__ = [
    "AnalysisFailure",
    "AnalysisOption",
    "AnalysisResult",
    "AuthUser",
    "ClearResult",
    "Criterion",
    "DecisionError",
    "DecisionInput",
    "DecisionRecord",
    "DeleteOutcome",
    "DiffView",
    "HistoryItem",
    "OptionDelta",
    "OptionItem",
    "PersistenceFailure",
    "RecordNotFound",
    "RecordStore",
    "ReconciliationController",
    "Scope",
    "StaleRecordError",
    "StorageUnavailable",
    "Version",
    "VersionHistory",
    "WriteTicket",
    "append_version",
    "diff",
    "new_record",
]
