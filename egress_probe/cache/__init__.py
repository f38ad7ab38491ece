"""Decision cache backends.

Exports:
- ``DecisionCache``: the get/set protocol the engine consumes.
- ``GuardedCache``: degrade-to-no-cache wrapper used by the engine.
- ``MemoryCache``, ``FileCache``, ``PostgresCache``: concrete backends.
- ``build_cache``: pick a backend from ``AppConfig``.
"""

import logging
from typing import Optional

from egress_probe.cache.base import CacheError, DecisionCache, GuardedCache
from egress_probe.cache.file import FileCache
from egress_probe.cache.memory import MemoryCache
from egress_probe.config import AppConfig

LOGGER = logging.getLogger(__name__)


def build_cache(config: AppConfig) -> Optional[DecisionCache]:
    """Instantiate the backend named by ``config.cache_backend``.

    Returns None for ``none``. The postgres backend is imported lazily so
    psycopg is only loaded when it is actually used.
    """
    backend = config.cache_backend
    if backend == "none":
        return None
    if backend == "memory":
        return MemoryCache()
    if backend == "file":
        LOGGER.debug("Using file decision cache at %s", config.cache_path)
        return FileCache(config.cache_path)
    if backend == "postgres":
        if not config.database_url:
            raise ValueError("database_url is required for the postgres cache backend")
        from egress_probe.cache.postgres import PostgresCache

        return PostgresCache(config.database_url, timeout=config.cache_timeout_ms / 1000.0)
    raise ValueError(f"Unknown cache backend: {backend!r}")


__all__ = [
    "CacheError",
    "DecisionCache",
    "FileCache",
    "GuardedCache",
    "MemoryCache",
    "build_cache",
]
