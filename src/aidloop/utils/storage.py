from __future__ import annotations

from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
import json
import os
from pathlib import Path
from typing import Any, Dict, Union


def _serialize_payload(payload: Any) -> Any:
    if hasattr(payload, "to_dict"):
        return payload.to_dict()
    if is_dataclass(payload) and not isinstance(payload, type):
        return asdict(payload)
    if isinstance(payload, dict):
        return {key: _serialize_payload(value) for key, value in payload.items()}
    if isinstance(payload, (list, tuple)):
        return [_serialize_payload(value) for value in payload]
    if isinstance(payload, datetime):
        return payload.isoformat()
    if isinstance(payload, Enum):
        return payload.value
    if isinstance(payload, Path):
        return str(payload)
    return payload


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    safe_payload = {key: _serialize_payload(value) for key, value in payload.items()}
    path.write_text(json.dumps(safe_payload, indent=2, sort_keys=True))


class JsonStore:
    """
    A single JSON document on disk.

    Writes go to a sibling temp file first and are moved into place, so a
    crash mid-write leaves the previous document intact.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def read(self, default: Any = None) -> Any:
        if not self.path.exists():
            return default
        return json.loads(self.path.read_text())

    def write(self, payload: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(_serialize_payload(payload), indent=2))
        os.replace(tmp_path, self.path)
