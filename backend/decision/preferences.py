"""User settings and onboarding state, kept in the local key-value slots."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from decision.local_state import ONBOARDED_KEY, SETTINGS_KEY, LocalStateFile
from decision.schemas import AuthUser, UserSettings

logger = logging.getLogger(__name__)


class Preferences:
    """Settings and onboarding flag for this device."""

    def __init__(self, state: LocalStateFile):
        self.state = state

    def load_settings(self) -> UserSettings:
        raw = self.state.get_item(SETTINGS_KEY)
        if not raw:
            return UserSettings()
        try:
            return UserSettings.model_validate_json(raw)
        except ValidationError:
            logger.warning("Stored settings are invalid; falling back to defaults", exc_info=True)
            return UserSettings()

    def save_settings(self, settings: UserSettings) -> UserSettings:
        self.state.set_item(SETTINGS_KEY, settings.model_dump_json(by_alias=True))
        return settings

    def merge_profile(self, user: AuthUser) -> UserSettings:
        """Fill empty display name / email from the signed-in profile."""
        settings = self.load_settings()
        update: dict[str, str] = {}
        if not settings.display_name and user.display_name:
            update["display_name"] = user.display_name
        if not settings.email and user.email:
            update["email"] = user.email
        if not update:
            return settings
        logger.info("Filled %s from the auth profile", ", ".join(sorted(update)))
        return self.save_settings(settings.model_copy(update=update))

    def is_onboarded(self) -> bool:
        return self.state.get_item(ONBOARDED_KEY) == "true"

    def complete_onboarding(self) -> None:
        self.state.set_item(ONBOARDED_KEY, "true")
