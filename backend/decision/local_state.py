"""Durable per-device key-value slots.

Mirrors the browser ``localStorage`` the client application used: a flat
mapping of fixed string keys to serialised string values, kept in one
JSON file.  Writes are synchronous and atomic (temp file + rename), so a
crash never leaves a half-written state file behind.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

# Fixed slot keys
HISTORY_KEY = "clarity_choice_history"
SETTINGS_KEY = "clarity_choice_settings"
ONBOARDED_KEY = "clarity_choice_onboarded"


class LocalStateFile:
    """String-valued key-value slots persisted to a single JSON file."""

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path).expanduser()

    def _read_all(self) -> dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not raw.strip():
            return {}
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"Local state file {self.path} does not contain an object")
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _write_all(self, slots: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".state-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(slots, fh)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get_item(self, key: str) -> str | None:
        return self._read_all().get(key)

    def set_item(self, key: str, value: str) -> None:
        slots = self._read_all()
        slots[key] = value
        self._write_all(slots)
        logger.debug("Wrote local slot %s (%d bytes)", key, len(value))

    def remove_item(self, key: str) -> None:
        slots = self._read_all()
        if key not in slots:
            return
        del slots[key]
        self._write_all(slots)
        logger.debug("Removed local slot %s", key)
