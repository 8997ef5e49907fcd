"""LLM-backed analysis collaborator.

Turns a ``DecisionInput`` into an ``AnalysisResult`` and refines an
existing analysis from a free-text instruction.  The model is asked for
JSON; the response is parsed, normalised and validated here so the rest
of the engine only ever sees well-formed results:

- options prefixed with ``[Suggestion] `` are forced to unrated (-1),
  and unrated options always carry the prefix
- on a first analysis, every option the user did not supply becomes an
  unrated suggestion
- rated scores are clamped into 1-10
- a first analysis always carries at least 4 options, padded with
  unrated suggestions when the model returns fewer
- a safety warning short-circuits everything else

Any provider error or malformed payload raises ``AnalysisFailure``.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from typing import Any, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import ValidationError

from decision.errors import AnalysisFailure
from decision.schemas import (
    SUGGESTION_PREFIX,
    UNRATED,
    AnalysisOption,
    AnalysisResult,
    Criterion,
    CriterionScore,
    DecisionInput,
)

logger = logging.getLogger(__name__)

MIN_ANALYSED_OPTIONS = 4

# Generic alternatives used when the model returns too few options.
FALLBACK_SUGGESTIONS = (
    "Gather more information before deciding",
    "Combine the strongest parts of your options",
    "Postpone the decision for a set period",
    "Talk it through with someone you trust",
)

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

ANALYSIS_SYSTEM_PROMPT = """\
You are an assistant that helps people make thoughtful, grounded decisions.
The user shares a decision, the options they are considering, and the
criteria that matter to them (with weights 1-5).

Your job is to:
1. Clarify the decision in one sentence ("summary").
2. Ensure there are AT LEAST 4 options analysed.  If the user provided
   fewer than 4, add distinct, realistic additional options and prefix
   each of their names with "[Suggestion] ".
3. Evaluate each option against each criterion using the user's weights.
4. Give pros and cons for ALL options.
5. Score user-provided options from 1-10 per criterion and overall
   (10 = best fit).  For "[Suggestion] " options set "totalScore" and
   every criterion "score" to -1: they are unrated.
6. Recommend one option with calm reasoning, reminding the user that the
   final choice is theirs.
7. Offer a few reflection questions.

Safety rules:
If the decision involves self-harm, suicide, harming others, or an
emergency, do not give decision advice.  Return JSON with ONLY a
"safetyWarning" field urging the user to contact local emergency
services or a crisis hotline.
Do not give medical, legal, or financial advice; encourage the user to
consult a qualified professional where relevant.

Output ONLY valid JSON matching this schema:
{
  "safetyWarning": null,
  "summary": "<one sentence>",
  "criteriaAnalysis": [{"name": "<criterion>", "weight": <1-5>, "explanation": "<why it matters>"}],
  "optionsAnalysis": [
    {
      "name": "<option name>",
      "pros": ["<pro>", ...],
      "cons": ["<con>", ...],
      "scores": [{"criterionName": "<criterion>", "score": <1-10 or -1>}],
      "totalScore": <1-10 or -1>
    }
  ],
  "recommendation": {"suggestedOption": "<option name>", "reasoning": ["<reason>", ...]},
  "reflectionQuestions": ["<question>", ...]
}
"""

REFINEMENT_SYSTEM_PROMPT = """\
You are refining a previous decision analysis based on user feedback.
Update the entire analysis (criteria, options, scores, recommendation) to
reflect the user's instruction:
- If they add an option, evaluate it.
- If they change how much a criterion matters, adjust weights and scores.
- If they correct a fact, update the pros and cons.
- New options the user asked for are scored normally; options you
  propose yourself keep the "[Suggestion] " prefix and -1 scores.
- List what changed compared to the previous analysis in
  "changesFromPrevious" as short bullet points.

Safety rules apply: if the refinement introduces self-harm or illegal
acts, return JSON with ONLY a "safetyWarning" field.

Output ONLY valid JSON with the same schema as the previous analysis,
plus "changesFromPrevious": ["<change>", ...].
"""


# ---------------------------------------------------------------------------
# Collaborator contract
# ---------------------------------------------------------------------------


class DecisionAnalyzer(Protocol):
    """What the record store needs from the analysis service."""

    async def analyze(self, decision_input: DecisionInput, user_name: str | None = None) -> AnalysisResult:
        ...

    async def refine(
        self,
        decision_input: DecisionInput,
        current: AnalysisResult,
        instruction: str,
    ) -> AnalysisResult:
        ...


# ---------------------------------------------------------------------------
# LLM factory
# ---------------------------------------------------------------------------


def create_analysis_llm(provider: str, model: str, api_key: str) -> BaseChatModel:
    """Create a chat model for the given provider/model."""
    if provider == "openai":
        return ChatOpenAI(
            model=model,
            temperature=0.5,
            api_key=api_key,
            model_kwargs={"response_format": {"type": "json_object"}},
        )
    elif provider == "claude":
        from langchain_anthropic import ChatAnthropic
        return ChatAnthropic(model=model, temperature=0.5, anthropic_api_key=api_key)
    elif provider == "gemini":
        from langchain_google_genai import ChatGoogleGenerativeAI
        return ChatGoogleGenerativeAI(model=model, google_api_key=api_key, temperature=0.5)
    else:
        raise ValueError(f"Unsupported analysis provider: {provider}")


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _response_text(response: Any) -> str:
    content = getattr(response, "content", "") or ""
    # Claude returns content as a list of blocks; extract text from them
    if isinstance(content, list):
        content = " ".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    return str(content).strip()


def extract_json(text: str) -> Any:
    """Parse the JSON payload out of a model response.

    Accepts bare JSON, fenced code blocks, or JSON surrounded by prose.
    """
    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", text, re.DOTALL)
    if fence_match:
        text = fence_match.group(1).strip()

    if not text.startswith(("{", "[")):
        start = min((i for i in (text.find("{"), text.find("[")) if i != -1), default=-1)
        end = max(text.rfind("}"), text.rfind("]"))
        if start != -1 and end > start:
            text = text[start : end + 1]

    return json.loads(text)


def _clamp(value: Any) -> float:
    return min(10.0, max(1.0, float(value)))


def _suggestion_name(name: str) -> str:
    return name if name.startswith(SUGGESTION_PREFIX) else f"{SUGGESTION_PREFIX}{name}"


def _normalise_option(option: dict[str, Any]) -> dict[str, Any]:
    option = dict(option)
    scores = [dict(s) for s in option.get("scores") or [] if isinstance(s, dict)]
    name = str(option.get("name", ""))
    total = option.get("totalScore", UNRATED)

    if name.startswith(SUGGESTION_PREFIX) or total == UNRATED:
        # Unrated options are always shown as suggestions
        option["name"] = _suggestion_name(name)
        option["totalScore"] = UNRATED
        for s in scores:
            s["score"] = UNRATED
    else:
        option["totalScore"] = _clamp(total)
        for s in scores:
            s["score"] = _clamp(s.get("score", 1))
    option["scores"] = scores
    return option


def parse_analysis(payload: Any) -> AnalysisResult:
    """Validate a decoded model payload into an ``AnalysisResult``."""
    if not isinstance(payload, dict):
        raise AnalysisFailure("Analysis response was not a JSON object")

    warning = payload.get("safetyWarning")
    if isinstance(warning, str) and warning.strip():
        return AnalysisResult(safety_warning=warning.strip())

    payload = dict(payload)
    raw_options = [o for o in payload.get("optionsAnalysis") or [] if isinstance(o, dict)]
    try:
        options = [_normalise_option(o) for o in raw_options]
    except (TypeError, ValueError) as exc:
        raise AnalysisFailure(f"Analysis response contained a non-numeric score: {exc}") from exc
    payload["optionsAnalysis"] = options

    renamed = {
        str(raw.get("name", "")): option["name"]
        for raw, option in zip(raw_options, options)
        if raw.get("name") != option["name"]
    }
    recommendation = payload.get("recommendation")
    if isinstance(recommendation, dict) and recommendation.get("suggestedOption") in renamed:
        payload["recommendation"] = {
            **recommendation,
            "suggestedOption": renamed[recommendation["suggestedOption"]],
        }
    try:
        return AnalysisResult.model_validate(payload)
    except ValidationError as exc:
        raise AnalysisFailure(f"Analysis response did not match the expected shape: {exc}") from exc


def _option_key(name: str) -> str:
    return " ".join(name.split()).casefold()


def _as_suggestion(option: AnalysisOption) -> AnalysisOption:
    return option.model_copy(update={
        "name": _suggestion_name(option.name),
        "scores": [s.model_copy(update={"score": UNRATED}) for s in option.scores],
        "total_score": UNRATED,
    })


def mark_suggestions(analysis: AnalysisResult, decision_input: DecisionInput) -> AnalysisResult:
    """Mark every option the user did not supply as an unrated suggestion.

    Options are matched to the user's options by display name, ignoring
    case and repeated whitespace.
    """
    if analysis.is_flagged:
        return analysis

    user_keys = {_option_key(o.display_name) for o in decision_input.options}
    seen: set[str] = set()
    options: list[AnalysisOption] = []
    renamed: dict[str, str] = {}
    for option in analysis.options_analysis:
        key = _option_key(option.name)
        if option.is_rated and key in user_keys and key not in seen:
            seen.add(key)
            options.append(option)
            continue
        marked = _as_suggestion(option)
        if marked.name != option.name:
            renamed[option.name] = marked.name
        options.append(marked)

    missing = user_keys - seen
    if missing:
        logger.warning("Analysis did not evaluate %d user option(s): %s", len(missing), sorted(missing))
    if renamed:
        logger.info("Marked %d model-added option(s) as suggestions", len(renamed))

    update: dict[str, Any] = {"options_analysis": options}
    recommendation = analysis.recommendation
    if recommendation is not None and recommendation.suggested_option in renamed:
        update["recommendation"] = recommendation.model_copy(
            update={"suggested_option": renamed[recommendation.suggested_option]}
        )
    return analysis.model_copy(update=update)


def pad_with_suggestions(analysis: AnalysisResult, criteria: list[Criterion]) -> AnalysisResult:
    """Top up to ``MIN_ANALYSED_OPTIONS`` with unrated suggestion options."""
    if analysis.is_flagged or len(analysis.options_analysis) >= MIN_ANALYSED_OPTIONS:
        return analysis

    existing = {o.name for o in analysis.options_analysis}
    extra: list[AnalysisOption] = []
    for idea in FALLBACK_SUGGESTIONS:
        if len(analysis.options_analysis) + len(extra) >= MIN_ANALYSED_OPTIONS:
            break
        name = f"{SUGGESTION_PREFIX}{idea}"
        if name in existing:
            continue
        extra.append(AnalysisOption(
            name=name,
            pros=["Worth considering alongside your own options"],
            cons=["Not evaluated against your criteria"],
            scores=[CriterionScore(criterion_name=c.name, score=UNRATED) for c in criteria],
            total_score=UNRATED,
        ))
    logger.info("Padded analysis with %d suggestion option(s)", len(extra))
    return analysis.model_copy(update={"options_analysis": [*analysis.options_analysis, *extra]})


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------


def _describe_options(decision_input: DecisionInput) -> str:
    lines = []
    for option in decision_input.options:
        if option.kind == "text":
            lines.append(f"- {option.display_name}")
        else:
            media = f", {option.media_type}" if option.media_type else ""
            lines.append(f"- {option.display_name} ({option.kind} attachment{media})")
    return "\n".join(lines)


def _describe_criteria(decision_input: DecisionInput) -> str:
    return "\n".join(f"- {c.name} (Weight: {c.weight})" for c in decision_input.criteria)


def _image_parts(decision_input: DecisionInput) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    for option in decision_input.options:
        if option.kind != "image" or not option.media_payload:
            continue
        encoded = base64.b64encode(option.media_payload).decode("ascii")
        mime = option.media_type or "image/png"
        parts.append({"type": "text", "text": f"Image for option: {option.display_name}"})
        parts.append({"type": "image_url", "image_url": {"url": f"data:{mime};base64,{encoded}"}})
    return parts


def build_analysis_messages(decision_input: DecisionInput, user_name: str | None = None) -> list:
    user_context = ""
    if user_name:
        user_context = (
            f"The user's name is {user_name}. Address them personally in the "
            f"recommendation and reflection questions where appropriate.\n\n"
        )
    text = (
        f"{user_context}"
        f"Decision: \"{decision_input.question}\"\n\n"
        f"Options:\n{_describe_options(decision_input)}\n\n"
        f"Criteria (with weights 1-5):\n{_describe_criteria(decision_input)}"
    )
    images = _image_parts(decision_input)
    content: Any = [{"type": "text", "text": text}, *images] if images else text
    return [SystemMessage(content=ANALYSIS_SYSTEM_PROMPT), HumanMessage(content=content)]


def build_refinement_messages(
    decision_input: DecisionInput,
    current: AnalysisResult,
    instruction: str,
) -> list:
    previous = current.model_dump(mode="json", by_alias=True, exclude={"changes_from_previous"})
    text = (
        f"Decision: \"{decision_input.question}\"\n"
        f"Original options:\n{_describe_options(decision_input)}\n"
        f"Original criteria:\n{_describe_criteria(decision_input)}\n\n"
        f"## Current Analysis\n{json.dumps(previous, indent=2)}\n\n"
        f"USER REFINEMENT INSTRUCTION: \"{instruction}\""
    )
    return [SystemMessage(content=REFINEMENT_SYSTEM_PROMPT), HumanMessage(content=text)]


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class LLMDecisionAnalyzer:
    """``DecisionAnalyzer`` backed by a LangChain chat model."""

    def __init__(self, llm: BaseChatModel):
        self.llm = llm

    async def _invoke(self, messages: list, action: str) -> Any:
        try:
            response = await self.llm.ainvoke(messages)
        except Exception as exc:
            logger.error("Decision %s LLM invoke failed: %s", action, exc, exc_info=True)
            raise AnalysisFailure(f"Failed to {action} decision. Please try again.") from exc

        raw = _response_text(response)
        if not raw:
            raise AnalysisFailure(f"No response from the model while trying to {action} the decision")
        try:
            return extract_json(raw)
        except ValueError as exc:
            logger.warning(
                "Failed to parse %s response. Raw content (first 1000 chars): %s",
                action, raw[:1000],
            )
            raise AnalysisFailure(f"Model returned malformed JSON while trying to {action} the decision") from exc

    async def analyze(self, decision_input: DecisionInput, user_name: str | None = None) -> AnalysisResult:
        payload = await self._invoke(build_analysis_messages(decision_input, user_name), "analyze")
        analysis = parse_analysis(payload)
        if analysis.is_flagged:
            logger.info("Analysis returned a safety warning")
            return analysis
        # A first version never describes changes
        analysis = analysis.model_copy(update={"changes_from_previous": []})
        analysis = mark_suggestions(analysis, decision_input)
        return pad_with_suggestions(analysis, decision_input.criteria)

    async def refine(
        self,
        decision_input: DecisionInput,
        current: AnalysisResult,
        instruction: str,
    ) -> AnalysisResult:
        payload = await self._invoke(build_refinement_messages(decision_input, current, instruction), "refine")
        refined = parse_analysis(payload)
        if not refined.is_flagged and not refined.changes_from_previous:
            refined = refined.model_copy(update={"changes_from_previous": [f"Updated for: {instruction}"]})
        return refined

    # -- Form helpers ---------------------------------------------------------

    async def suggest_question(self, current: str = "") -> str:
        """Rewrite a draft question, or propose one when the draft is empty."""
        if current and len(current.strip()) > 3:
            prompt = (
                f"Rewrite this decision question to be clearer, more specific, and well-framed "
                f"for decision analysis: \"{current}\". Return ONLY the plain text of the question."
            )
        else:
            prompt = (
                "Give me one realistic, specific, and slightly complex decision question a person "
                "might need to make (e.g. regarding career, living situation, or major purchase). "
                "Return ONLY the plain text of the question."
            )
        try:
            response = await self.llm.ainvoke([HumanMessage(content=prompt)])
        except Exception as exc:
            logger.error("Question suggestion failed: %s", exc, exc_info=True)
            raise AnalysisFailure("Failed to suggest a question. Please try again.") from exc
        question = _response_text(response).strip().strip('"').strip()
        if not question:
            raise AnalysisFailure("No response from the model while trying to suggest a question")
        return question

    async def suggest_options(self, decision: str) -> list[str]:
        payload = await self._invoke([HumanMessage(content=(
            f"For the decision: \"{decision}\", list 3-5 distinct, realistic, and mutually "
            f"exclusive options someone might consider. Return a raw JSON array of strings."
        ))], "suggest options for")
        if not isinstance(payload, list):
            raise AnalysisFailure("Option suggestions were not a JSON array")
        return [str(item).strip() for item in payload if str(item).strip()]

    async def suggest_criteria(self, decision: str) -> list[Criterion]:
        payload = await self._invoke([HumanMessage(content=(
            f"For the decision: \"{decision}\", list 4-6 key criteria that matter most when "
            f"making this decision. Assign a recommended importance weight (1-5) for each. "
            f"Return a raw JSON array of objects with \"name\" and \"weight\"."
        ))], "suggest criteria for")
        if not isinstance(payload, list):
            raise AnalysisFailure("Criteria suggestions were not a JSON array")
        criteria: list[Criterion] = []
        for item in payload:
            if not isinstance(item, dict) or not str(item.get("name", "")).strip():
                continue
            try:
                weight = int(round(float(item.get("weight", 3))))
            except (TypeError, ValueError):
                weight = 3
            criteria.append(Criterion(name=str(item["name"]).strip(), weight=min(5, max(1, weight))))
        return criteria


def build_analyzer_from_env() -> LLMDecisionAnalyzer:
    """Create the analyzer configured by ANALYSIS_PROVIDER / ANALYSIS_MODEL."""
    from config import get_analysis_model, get_analysis_provider, get_provider_api_key

    provider = get_analysis_provider()
    model = get_analysis_model()
    logger.info("Decision analysis using %s/%s", provider, model)
    return LLMDecisionAnalyzer(create_analysis_llm(provider, model, get_provider_api_key(provider)))
