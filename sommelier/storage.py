from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from sommelier.telemetry.logging import get_logger

PERMISSION_KEY = "mic_permission_granted"
SKIP_PROMPT_KEY = "skipMicrophonePrompt"
LOCKED_VOICE_URI_KEY = "LOCKED_VOICE_URI"
LOCKED_VOICE_NAME_KEY = "LOCKED_VOICE_NAME"


class ClientStore:
    """Durable string key/value store backed by a single JSON file.

    Values are strings, mirroring browser storage. Every write rewrites the
    file through a temp file and ``os.replace`` so a crash never leaves a
    truncated document behind.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._logger = get_logger(__name__)
        self._data: dict[str, str] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._flush_locked()

    def remove(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._flush_locked()

    def get_json(self, key: str) -> Any | None:
        raw = self.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, separators=(",", ":")))

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            self._logger.warning("client_store.load_failed", path=str(self._path), error=str(exc))
            return {}
        if not isinstance(raw, dict):
            self._logger.warning("client_store.invalid_document", path=str(self._path))
            return {}
        return {str(k): str(v) for k, v in raw.items()}

    def _flush_locked(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".client_state.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(self._data, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


__all__ = [
    "ClientStore",
    "PERMISSION_KEY",
    "SKIP_PROMPT_KEY",
    "LOCKED_VOICE_URI_KEY",
    "LOCKED_VOICE_NAME_KEY",
]
