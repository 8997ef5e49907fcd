import os
import sys
from pathlib import Path
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest


# Ensure backend modules (e.g. config.py, decision/) are importable even when running pytest from repo root.
BACKEND_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_DIR))

# Avoid requiring real credentials / services during import-time initialization.
os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("USE_IN_MEMORY_REMOTE", "1")

from decision.local_state import LocalStateFile  # noqa: E402
from decision.persistence import InMemoryDecisionStorage, LocalDecisionStorage  # noqa: E402
from decision.preferences import Preferences  # noqa: E402
from decision.schemas import (  # noqa: E402
    AnalysisOption,
    AnalysisResult,
    CriterionAnalysis,
    CriterionScore,
    DecisionInput,
    OptionItem,
    Recommendation,
)


def make_analysis(
    scores: dict[str, float],
    recommended: str | None = None,
    criterion: str = "General Benefit",
    changes: list[str] | None = None,
) -> AnalysisResult:
    """Build a valid analysis where each option scores the same on one criterion."""
    options = [
        AnalysisOption(
            name=name,
            pros=[f"{name} pro"],
            cons=[f"{name} con"],
            scores=[CriterionScore(criterion_name=criterion, score=total)],
            total_score=total,
        )
        for name, total in scores.items()
    ]
    return AnalysisResult(
        summary="Summary",
        changes_from_previous=changes or [],
        criteria_analysis=[CriterionAnalysis(name=criterion, weight=3, explanation="Matters")],
        options_analysis=options,
        recommendation=Recommendation(
            suggested_option=recommended or next(iter(scores)),
            reasoning=["Best fit"],
        ),
    )


def make_input(question: str = "Move cities?", options: tuple[str, ...] = ("Stay", "Move")) -> DecisionInput:
    return DecisionInput(
        question=question,
        options=[OptionItem(label=label) for label in options],
        criteria=[],
    )


@pytest.fixture
def analysis_factory() -> Callable[..., AnalysisResult]:
    return make_analysis


@pytest.fixture
def decision_input() -> DecisionInput:
    return make_input()


@pytest.fixture
def state_file(tmp_path) -> LocalStateFile:
    return LocalStateFile(tmp_path / "state.json")


@pytest.fixture
def local_storage(state_file) -> LocalDecisionStorage:
    return LocalDecisionStorage(state_file)


@pytest.fixture
def remote_storage() -> InMemoryDecisionStorage:
    return InMemoryDecisionStorage()


@pytest.fixture
def preferences(state_file) -> Preferences:
    return Preferences(state_file)


@pytest.fixture
def fake_analyzer() -> MagicMock:
    """Analyzer double: analyze/refine are AsyncMocks returning fixed analyses."""
    analyzer = MagicMock()
    analyzer.analyze = AsyncMock(return_value=make_analysis({"Stay": 6, "Move": 8}, recommended="Move"))
    analyzer.refine = AsyncMock(
        return_value=make_analysis({"Stay": 7, "Move": 6}, recommended="Stay", changes=["Weighted family higher"])
    )
    return analyzer
