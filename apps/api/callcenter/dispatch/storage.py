from __future__ import annotations

import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path

from callcenter.core.config import get_settings


@dataclass(frozen=True)
class StoredRecording:
    filename: str
    path: str
    size: int


def _base_dir() -> Path:
    configured = get_settings().recordings_dir
    base = Path(configured) if configured else Path(tempfile.gettempdir()) / "callcenter_recordings"
    base.mkdir(parents=True, exist_ok=True)
    return base


def store_recording(content: bytes, original_name: str | None) -> StoredRecording:
    extension = Path(original_name or "").suffix or ".mp4"
    filename = f"recording-{uuid.uuid4().hex}{extension}"
    (_base_dir() / filename).write_bytes(content)
    return StoredRecording(filename=filename, path=f"recordings/{filename}", size=len(content))

