"""Session, settings, onboarding and feedback endpoints.

The auth provider lives outside this service; it reports sign-in and
sign-out through ``POST /session`` and ``DELETE /session``, which feed
the in-process auth event stream.
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from decision.runtime import DecisionRuntime
from decision.schemas import AuthUser, UserSettings
from routers.dependencies import get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Session"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionResponse(_CamelModel):
    signed_in: bool
    user: Optional[AuthUser] = None
    scope: str
    record_count: int
    last_error: Optional[str] = None


class OnboardingResponse(_CamelModel):
    onboarded: bool


class FeedbackRequest(_CamelModel):
    type: Literal["bug", "suggestion", "other"] = "suggestion"
    message: str = Field(min_length=1)
    email: Optional[str] = None


class FeedbackResponse(_CamelModel):
    sent: bool


def _session_state(runtime: DecisionRuntime) -> SessionResponse:
    controller = runtime.controller
    error = controller.last_error
    return SessionResponse(
        signed_in=controller.user is not None,
        user=controller.user,
        scope=str(controller.scope),
        record_count=len(runtime.store.records),
        last_error=str(error) if error else None,
    )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.get("/session", response_model=SessionResponse)
async def get_session(runtime: DecisionRuntime = Depends(get_runtime)) -> SessionResponse:
    return _session_state(runtime)


@router.post("/session", response_model=SessionResponse)
async def sign_in(user: AuthUser, runtime: DecisionRuntime = Depends(get_runtime)) -> SessionResponse:
    """Report a sign-in; the records switch to the user's remote scope."""
    await runtime.auth_events.publish(user)
    return _session_state(runtime)


@router.delete("/session", response_model=SessionResponse)
async def sign_out(runtime: DecisionRuntime = Depends(get_runtime)) -> SessionResponse:
    """Report a sign-out; the records switch back to this device."""
    await runtime.auth_events.publish(None)
    return _session_state(runtime)


# ---------------------------------------------------------------------------
# Settings & onboarding
# ---------------------------------------------------------------------------


@router.get("/settings", response_model=UserSettings)
async def get_settings(runtime: DecisionRuntime = Depends(get_runtime)) -> UserSettings:
    return runtime.preferences.load_settings()


@router.put("/settings", response_model=UserSettings)
async def update_settings(
    settings: UserSettings,
    runtime: DecisionRuntime = Depends(get_runtime),
) -> UserSettings:
    return runtime.preferences.save_settings(settings)


@router.get("/onboarding", response_model=OnboardingResponse)
async def get_onboarding(runtime: DecisionRuntime = Depends(get_runtime)) -> OnboardingResponse:
    return OnboardingResponse(onboarded=runtime.preferences.is_onboarded())


@router.post("/onboarding/complete", response_model=OnboardingResponse)
async def complete_onboarding(runtime: DecisionRuntime = Depends(get_runtime)) -> OnboardingResponse:
    runtime.preferences.complete_onboarding()
    return OnboardingResponse(onboarded=True)


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------


@router.post("/feedback", response_model=FeedbackResponse)
async def submit_feedback(
    payload: FeedbackRequest,
    runtime: DecisionRuntime = Depends(get_runtime),
) -> FeedbackResponse:
    sent = await runtime.store.submit_feedback(payload.type, payload.message, payload.email)
    return FeedbackResponse(sent=sent)
