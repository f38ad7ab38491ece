"""Decision cache interface and the degradation guard around it.

The engine only needs ``get``/``set`` over JSON-compatible dictionaries. No
atomicity between the two is assumed: a lost update costs a redundant probe,
never a wrong permanent verdict. Backends may also offer ``set_many`` to
persist a round's decisions in one write.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Protocol

LOGGER = logging.getLogger(__name__)


class CacheError(RuntimeError):
    """Raised by cache backends when the underlying store is unavailable."""


class DecisionCache(Protocol):
    """Key -> record store consumed by the probe engine."""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def set(self, key: str, value: Dict[str, Any]) -> None:
        ...


def write_many(cache: DecisionCache, items: Mapping[str, Dict[str, Any]]) -> None:
    """Persist several entries, in one call when the backend has ``set_many``."""
    if not items:
        return
    set_many = getattr(cache, "set_many", None)
    if set_many is not None:
        set_many(items)
        return
    for key, value in items.items():
        cache.set(key, value)


class GuardedCache:
    """Wrap a backend so that a failing store degrades instead of aborting.

    After the first ``CacheError`` the guard logs one warning and switches to
    always-miss reads and dropped writes for the rest of its life. Probing
    stays correct; only the savings from caching are lost.
    """

    def __init__(self, backend: DecisionCache) -> None:
        self._backend = backend
        self._degraded = False

    @property
    def degraded(self) -> bool:
        return self._degraded

    def _degrade(self, operation: str, key: str, exc: Exception) -> None:
        self._degraded = True
        LOGGER.warning(
            "Decision cache unavailable during %s(%s): %s; continuing without cache",
            operation,
            key,
            exc,
        )

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        if self._degraded:
            return None
        try:
            value = self._backend.get(key)
        except CacheError as exc:
            self._degrade("get", key, exc)
            return None
        if value is not None and not isinstance(value, dict):
            LOGGER.debug("Ignoring non-mapping cache value for %s: %r", key, value)
            return None
        return value

    def set(self, key: str, value: Dict[str, Any]) -> None:
        if self._degraded:
            return
        try:
            self._backend.set(key, value)
        except CacheError as exc:
            self._degrade("set", key, exc)

    def set_many(self, items: Mapping[str, Dict[str, Any]]) -> None:
        if self._degraded or not items:
            return
        try:
            write_many(self._backend, items)
        except CacheError as exc:
            self._degrade("set_many", next(iter(items)), exc)


__all__ = ["CacheError", "DecisionCache", "GuardedCache", "write_many"]
