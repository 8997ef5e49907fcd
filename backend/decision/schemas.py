"""Pydantic schemas for decision records.

These models define the data exchanged between the analyzer, the
version history and the storage backends:
- The form produces a validated DecisionInput
- The analyzer returns an AnalysisResult (or a safety-warning variant)
- A DecisionRecord holds the input, the head analysis and its history

Records serialise with camelCase keys so stored JSON matches what the
client application has always written (``totalScore``,
``refinementHistory`` ...).  All models are frozen: changes produce new
values via ``model_copy``.
"""

from __future__ import annotations

from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

SUGGESTION_PREFIX = "[Suggestion] "
UNRATED = -1

DEFAULT_CRITERION_NAME = "General Benefit"
DEFAULT_CRITERION_WEIGHT = 3

MIN_QUESTION_LENGTH = 4
MIN_VALID_OPTIONS = 2

OptionKind = Literal["text", "image", "file", "audio"]


def _new_id() -> str:
    return uuid4().hex


class _RecordModel(BaseModel):
    """Base for every stored shape: camelCase on the wire, immutable in memory."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


class Criterion(_RecordModel):
    """A named decision criterion with a 1-5 importance weight."""

    id: str = Field(default_factory=_new_id)
    name: str
    weight: int = Field(ge=1, le=5)


class OptionItem(_RecordModel):
    """One user-supplied option, either plain text or a media attachment."""

    id: str = Field(default_factory=_new_id)
    kind: OptionKind = "text"
    label: str = ""
    media_payload: bytes | None = None
    media_type: str | None = None

    @property
    def is_valid(self) -> bool:
        return bool(self.label.strip()) or bool(self.media_payload)

    @property
    def display_name(self) -> str:
        return self.label.strip() or f"{self.kind} attachment"


def default_criterion() -> Criterion:
    return Criterion(id="default", name=DEFAULT_CRITERION_NAME, weight=DEFAULT_CRITERION_WEIGHT)


class DecisionInput(_RecordModel):
    """The final, validated form submission.

    Blank options and nameless criteria are dropped on construction; an
    empty criteria list falls back to a single "General Benefit" criterion.
    """

    question: str
    options: list[OptionItem]
    criteria: list[Criterion] = Field(default_factory=list)

    @field_validator("question")
    @classmethod
    def _question_long_enough(cls, value: str) -> str:
        if len(value.strip()) < MIN_QUESTION_LENGTH:
            raise ValueError(f"question must be at least {MIN_QUESTION_LENGTH} characters")
        return value

    @field_validator("options")
    @classmethod
    def _enough_valid_options(cls, value: list[OptionItem]) -> list[OptionItem]:
        valid = [option for option in value if option.is_valid]
        if len(valid) < MIN_VALID_OPTIONS:
            raise ValueError(f"at least {MIN_VALID_OPTIONS} options with a label or attachment are required")
        return valid

    @field_validator("criteria")
    @classmethod
    def _default_criteria(cls, value: list[Criterion]) -> list[Criterion]:
        named = [criterion for criterion in value if criterion.name.strip()]
        return named or [default_criterion()]


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


class CriterionScore(_RecordModel):
    criterion_name: str
    score: float


class AnalysisOption(_RecordModel):
    """Analysis of one option.

    ``total_score == -1`` marks an unrated suggestion; all of its criterion
    scores are then -1 too.  Rated options score within [1, 10].
    """

    name: str
    pros: list[str] = Field(default_factory=list)
    cons: list[str] = Field(default_factory=list)
    scores: list[CriterionScore] = Field(default_factory=list)
    total_score: float

    @model_validator(mode="after")
    def _check_scores(self) -> AnalysisOption:
        if self.total_score == UNRATED:
            if any(s.score != UNRATED for s in self.scores):
                raise ValueError(f"unrated option {self.name!r} must have every criterion score set to -1")
            return self
        if not 1 <= self.total_score <= 10:
            raise ValueError(f"option {self.name!r} total score must be within 1-10")
        for s in self.scores:
            if not 1 <= s.score <= 10:
                raise ValueError(f"option {self.name!r} score for {s.criterion_name!r} must be within 1-10")
        return self

    @property
    def is_rated(self) -> bool:
        return self.total_score != UNRATED

    @property
    def is_suggestion(self) -> bool:
        return self.name.startswith(SUGGESTION_PREFIX)

    def score_for(self, criterion_name: str) -> float | None:
        for s in self.scores:
            if s.criterion_name == criterion_name:
                return s.score
        return None


class CriterionAnalysis(_RecordModel):
    name: str
    weight: float
    explanation: str = ""


class Recommendation(_RecordModel):
    suggested_option: str
    reasoning: list[str] = Field(default_factory=list)


class AnalysisResult(_RecordModel):
    """Structured analysis returned by the analyzer.

    When ``safety_warning`` is set the rest of the payload is not
    authoritative and may be empty; only the warning is shown.
    """

    safety_warning: str | None = None
    summary: str = ""
    changes_from_previous: list[str] = Field(default_factory=list)
    criteria_analysis: list[CriterionAnalysis] = Field(default_factory=list)
    options_analysis: list[AnalysisOption] = Field(default_factory=list)
    recommendation: Recommendation | None = None
    reflection_questions: list[str] = Field(default_factory=list)

    @field_validator("safety_warning")
    @classmethod
    def _blank_warning_is_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _complete_unless_flagged(self) -> AnalysisResult:
        if self.is_flagged:
            return self
        if not self.options_analysis:
            raise ValueError("analysis must contain at least one option")
        if self.recommendation is None:
            raise ValueError("analysis must contain a recommendation")
        return self

    @property
    def is_flagged(self) -> bool:
        return self.safety_warning is not None

    def option(self, name: str) -> AnalysisOption | None:
        for candidate in self.options_analysis:
            if candidate.name == name:
                return candidate
        return None

    def ranked_options(self) -> list[AnalysisOption]:
        """Options by total score, best first, unrated suggestions last."""
        return sorted(
            self.options_analysis,
            key=lambda o: o.total_score if o.is_rated else float("-inf"),
            reverse=True,
        )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class HistoryItem(_RecordModel):
    """A superseded analysis plus the instruction that replaced it."""

    analysis: AnalysisResult
    instruction: str | None = None
    timestamp: int


class DecisionRecord(_RecordModel):
    """One persisted decision: its input, head analysis and version history."""

    id: str
    title: str
    input: DecisionInput
    analysis: AnalysisResult
    created_at: int
    refinement_history: list[HistoryItem] = Field(default_factory=list)

    @property
    def version_count(self) -> int:
        return len(self.refinement_history) + 1


_RECORD_LIST = TypeAdapter(list[DecisionRecord])


def dump_records(records: list[DecisionRecord]) -> bytes:
    """Serialise records in the stored (camelCase JSON) format."""
    return _RECORD_LIST.dump_json(records, by_alias=True)


def load_records(raw: str | bytes) -> list[DecisionRecord]:
    return _RECORD_LIST.validate_json(raw)


# ---------------------------------------------------------------------------
# Settings / feedback / auth
# ---------------------------------------------------------------------------


class UserSettings(_RecordModel):
    display_name: str = ""
    email: str = ""
    theme: Literal["light", "dark", "system"] = "system"
    decision_method: Literal["analytical", "intuitive", "balanced", "quick"] = "balanced"


class FeedbackSubmission(_RecordModel):
    type: Literal["bug", "suggestion", "other"] = "suggestion"
    message: str = Field(min_length=1)
    email: str | None = None
    timestamp: int
    user_id: str | None = None


class AuthUser(_RecordModel):
    """Identity delivered by the auth provider on sign-in."""

    user_id: str
    email: str | None = None
    display_name: str | None = None
