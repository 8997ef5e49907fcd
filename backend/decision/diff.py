"""Semantic diff between two consecutive analysis versions.

The diff is presentation data only: it tells the UI which recommendation
changed, how each option's score moved and which options are new.
Options and criteria are matched by exact name, so a renamed option
shows up as one removed and one new entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from decision.schemas import AnalysisOption, AnalysisResult, UNRATED

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CriterionDelta:
    """Score movement of one option on one criterion."""
    criterion_name: str
    previous: float
    current: float

    @property
    def delta(self) -> float:
        return self.current - self.previous


@dataclass(frozen=True)
class OptionDelta:
    """Change of a single option between two versions.

    ``total_delta`` is None when the option is new or unrated on either side.
    """
    name: str
    is_new: bool = False
    total_delta: Optional[float] = None
    criteria: tuple[CriterionDelta, ...] = ()

    @property
    def has_delta(self) -> bool:
        return self.total_delta is not None


@dataclass(frozen=True)
class DiffView:
    """Everything the UI needs to badge one version against its predecessor."""
    recommendation_changed: bool = False
    previous_recommendation: Optional[str] = None
    current_recommendation: Optional[str] = None
    options: tuple[OptionDelta, ...] = ()
    removed_options: tuple[str, ...] = ()
    changes_from_previous: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def empty(cls) -> "DiffView":
        return cls()

    @property
    def is_empty(self) -> bool:
        return self == DiffView()

    def for_option(self, name: str) -> Optional[OptionDelta]:
        for option in self.options:
            if option.name == name:
                return option
        return None

    @property
    def new_options(self) -> list[str]:
        return [o.name for o in self.options if o.is_new]


def _criterion_deltas(previous: AnalysisOption, current: AnalysisOption) -> tuple[CriterionDelta, ...]:
    deltas: list[CriterionDelta] = []
    for score in current.scores:
        before = previous.score_for(score.criterion_name)
        if before is None or before == UNRATED or score.score == UNRATED:
            continue
        deltas.append(CriterionDelta(score.criterion_name, before, score.score))
    return tuple(deltas)


def _option_delta(previous: Optional[AnalysisOption], current: AnalysisOption) -> OptionDelta:
    if previous is None:
        return OptionDelta(name=current.name, is_new=True)
    if not (previous.is_rated and current.is_rated):
        return OptionDelta(name=current.name)
    return OptionDelta(
        name=current.name,
        total_delta=current.total_score - previous.total_score,
        criteria=_criterion_deltas(previous, current),
    )


def diff(previous: Optional[AnalysisResult], current: AnalysisResult) -> DiffView:
    """Compare *current* against *previous*.

    Returns an empty view when there is nothing to compare: no previous
    version, or either version is a safety warning whose scores are not
    authoritative.
    """
    if previous is None or previous.is_flagged or current.is_flagged:
        return DiffView.empty()

    before = {option.name: option for option in previous.options_analysis}
    after_names = {option.name for option in current.options_analysis}

    options = tuple(_option_delta(before.get(option.name), option) for option in current.options_analysis)
    removed = tuple(name for name in before if name not in after_names)

    previous_pick = previous.recommendation.suggested_option
    current_pick = current.recommendation.suggested_option

    view = DiffView(
        recommendation_changed=previous_pick != current_pick,
        previous_recommendation=previous_pick,
        current_recommendation=current_pick,
        options=options,
        removed_options=removed,
        changes_from_previous=tuple(current.changes_from_previous),
    )
    logger.debug(
        "Diff computed: recommendation_changed=%s new=%s removed=%s",
        view.recommendation_changed, view.new_options, list(removed),
    )
    return view


def diff_timeline(analyses: Iterable[AnalysisResult]) -> list[DiffView]:
    """One diff per version, oldest first; the first version diffs against nothing."""
    views: list[DiffView] = []
    previous: Optional[AnalysisResult] = None
    for analysis in analyses:
        views.append(diff(previous, analysis))
        previous = analysis
    return views
