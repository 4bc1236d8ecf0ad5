from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from aidloop.validation.schemas import LearnedSchedule, LoopSettings

logger = logging.getLogger("aidloop.settings")


def validate_settings_dict(data: Dict[str, Any]) -> LoopSettings:
    return LoopSettings.model_validate(data)


def load_settings(path: Union[str, Path]) -> LoopSettings:
    settings_path = Path(path)
    text = settings_path.read_text()
    if settings_path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    return validate_settings_dict(data or {})


def format_validation_error(error: ValidationError) -> List[str]:
    lines: List[str] = []
    for entry in error.errors():
        loc = ".".join(str(item) for item in entry.get("loc", []))
        msg = entry.get("msg", "Invalid value")
        lines.append(f"{loc}: {msg}")
    return lines


class SettingsStore:
    """Holds the current settings snapshot; each update swaps in a new one."""

    def __init__(self, settings: Optional[LoopSettings] = None) -> None:
        self._settings = settings if settings is not None else LoopSettings()

    def snapshot(self) -> LoopSettings:
        return self._settings

    def update(self, **changes: Any) -> LoopSettings:
        data = self._settings.model_dump()
        data.update(changes)
        self._settings = validate_settings_dict(data)
        logger.info("Settings updated: %s", ", ".join(sorted(changes)))
        return self._settings


__all__ = [
    "LearnedSchedule",
    "LoopSettings",
    "SettingsStore",
    "format_validation_error",
    "load_settings",
    "validate_settings_dict",
]
