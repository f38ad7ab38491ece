"""JSON file decision cache that survives between invocations.

The whole file is loaded on first access and rewritten on every ``set`` (once
per ``set_many``) via a temporary file plus ``os.replace`` so a crash never
leaves a truncated cache.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from egress_probe.cache.base import CacheError

LOGGER = logging.getLogger(__name__)


class FileCache:
    """Persist cache entries as one JSON object on disk."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._data: Optional[Dict[str, Dict[str, Any]]] = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._data is not None:
            return self._data
        if not self._path.exists():
            self._data = {}
            return self._data
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CacheError(f"cannot read cache file {self._path}: {exc}") from exc
        if not raw.strip():
            self._data = {}
            return self._data
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CacheError(f"cache file {self._path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise CacheError(f"cache file {self._path} must contain a JSON object")
        self._data = payload
        LOGGER.debug("Loaded %d cache entries from %s", len(payload), self._path)
        return self._data

    def _flush(self) -> None:
        data = self._data or {}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=str(self._path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, ensure_ascii=False, sort_keys=True)
            os.replace(tmp_name, self._path)
        except OSError as exc:
            raise CacheError(f"cannot write cache file {self._path}: {exc}") from exc

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self._load().get(key)
        return dict(value) if isinstance(value, dict) else None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        self._load()[key] = dict(value)
        self._flush()

    def set_many(self, items: Mapping[str, Dict[str, Any]]) -> None:
        data = self._load()
        for key, value in items.items():
            data[key] = dict(value)
        self._flush()
