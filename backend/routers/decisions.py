"""Decision record endpoints.

Thin HTTP layer over the session ``RecordStore``.  Engine errors are
mapped to status codes by the handlers registered in ``main.py``.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from decision.diff import DiffView
from decision.history import Version
from decision.schemas import Criterion, DecisionInput, DecisionRecord
from decision.store import RecordStore
from routers.dependencies import get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/decisions", tags=["Decisions"])
suggestions_router = APIRouter(prefix="/suggestions", tags=["Suggestions"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RefineRequest(_CamelModel):
    instruction: str


class DeleteResponse(_CamelModel):
    record_id: str
    navigate_away: bool


class ClearResponse(_CamelModel):
    cleared: bool
    notice: Optional[str] = None


class SuggestionRequest(_CamelModel):
    decision: str = ""


class QuestionSuggestion(_CamelModel):
    question: str


class OptionsSuggestion(_CamelModel):
    options: list[str]


class CriteriaSuggestion(_CamelModel):
    criteria: list[Criterion]


class SelectionResponse(_CamelModel):
    selected_id: Optional[str] = Field(default=None)


def _diff_payload(view: DiffView) -> dict[str, Any]:
    return {
        "recommendationChanged": view.recommendation_changed,
        "previousRecommendation": view.previous_recommendation,
        "currentRecommendation": view.current_recommendation,
        "options": [
            {
                "name": delta.name,
                "isNew": delta.is_new,
                "totalDelta": delta.total_delta,
                "criteria": [
                    {
                        "criterionName": c.criterion_name,
                        "previous": c.previous,
                        "current": c.current,
                        "delta": c.delta,
                    }
                    for c in delta.criteria
                ],
            }
            for delta in view.options
        ],
        "removedOptions": list(view.removed_options),
        "changesFromPrevious": list(view.changes_from_previous),
    }


def _version_payload(version: Version) -> dict[str, Any]:
    return {
        "index": version.index,
        "label": version.label,
        "timestamp": version.timestamp,
        "isLatest": version.is_latest,
        "supersededBy": version.superseded_by,
        "analysis": version.analysis.model_dump(mode="json", by_alias=True),
        "diff": _diff_payload(version.diff),
    }


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@router.get("", response_model=list[DecisionRecord])
async def list_decisions(store: RecordStore = Depends(get_store)) -> list[DecisionRecord]:
    """List the current scope's records, newest first."""
    return store.records


@router.post("", response_model=DecisionRecord, status_code=status.HTTP_201_CREATED)
async def create_decision(
    decision_input: DecisionInput,
    store: RecordStore = Depends(get_store),
) -> DecisionRecord:
    """Analyse a decision and store it as a new record."""
    return await store.analyze(decision_input)


@router.delete("", response_model=ClearResponse)
async def clear_decisions(store: RecordStore = Depends(get_store)) -> ClearResponse:
    """Clear every record in the current scope (local only; remote returns a notice)."""
    result = await store.clear_all()
    return ClearResponse(cleared=result.cleared, notice=result.notice)


@router.get("/{record_id}", response_model=DecisionRecord)
async def get_decision(record_id: str, store: RecordStore = Depends(get_store)) -> DecisionRecord:
    return store.get(record_id)


@router.get("/{record_id}/versions")
async def get_decision_versions(record_id: str, store: RecordStore = Depends(get_store)) -> list[dict[str, Any]]:
    """Version timeline, oldest first, each diffed against its predecessor."""
    return [_version_payload(v) for v in store.versions(record_id)]


@router.post("/{record_id}/refine", response_model=DecisionRecord)
async def refine_decision(
    record_id: str,
    payload: RefineRequest,
    store: RecordStore = Depends(get_store),
) -> DecisionRecord:
    return await store.refine(record_id, payload.instruction)


@router.post("/{record_id}/select", response_model=SelectionResponse)
async def select_decision(record_id: str, store: RecordStore = Depends(get_store)) -> SelectionResponse:
    store.select(record_id)
    return SelectionResponse(selected_id=store.selected_id)


@router.delete("/{record_id}", response_model=DeleteResponse)
async def delete_decision(record_id: str, store: RecordStore = Depends(get_store)) -> DeleteResponse:
    outcome = await store.delete(record_id)
    return DeleteResponse(record_id=outcome.record_id, navigate_away=outcome.navigate_away)


# ---------------------------------------------------------------------------
# Form suggestions
# ---------------------------------------------------------------------------


def _suggestion_helper(store: RecordStore, name: str):
    helper = getattr(store.analyzer, name, None)
    if helper is None:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="The configured analyzer does not provide suggestions",
        )
    return helper


@suggestions_router.post("/question", response_model=QuestionSuggestion)
async def suggest_question(
    payload: SuggestionRequest,
    store: RecordStore = Depends(get_store),
) -> QuestionSuggestion:
    helper = _suggestion_helper(store, "suggest_question")
    return QuestionSuggestion(question=await helper(payload.decision))


@suggestions_router.post("/options", response_model=OptionsSuggestion)
async def suggest_options(
    payload: SuggestionRequest,
    store: RecordStore = Depends(get_store),
) -> OptionsSuggestion:
    if not payload.decision.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Decision is required")
    helper = _suggestion_helper(store, "suggest_options")
    return OptionsSuggestion(options=await helper(payload.decision))


@suggestions_router.post("/criteria", response_model=CriteriaSuggestion)
async def suggest_criteria(
    payload: SuggestionRequest,
    store: RecordStore = Depends(get_store),
) -> CriteriaSuggestion:
    if not payload.decision.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Decision is required")
    helper = _suggestion_helper(store, "suggest_criteria")
    return CriteriaSuggestion(criteria=await helper(payload.decision))
