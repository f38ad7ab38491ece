"""Configuration utilities for egress-probe runs.

This module reads environment variables (optionally from an `.env` file) and
produces the two configuration objects consumed across the project:

- ``AppConfig``: logging and cache backend settings.
- ``ProbeSettings``: the probing knobs (concurrency, timeouts, retry/run caps,
  strictness, probe mode and services).

See `.env.example` for supported keys. Probe settings use the ``PROBE_``
prefix, e.g. ``PROBE_CONCURRENCY``, ``PROBE_TIMEOUT_MS``, ``PROBE_MAX_TRIES``.

Usage example:

    from egress_probe.config import load_config, load_probe_settings

    config = load_config()
    settings = load_probe_settings().with_overrides(force=True)
"""

import os
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional, Tuple
from urllib.parse import quote_plus

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_ENV_FILE = REPO_ROOT / ".env"

PROBE_MODES = ("api_only", "web_only", "api_then_web")
CACHE_BACKENDS = ("none", "memory", "file", "postgres")
DEFAULT_WEB_OK_STATUSES: Tuple[int, ...] = (200, 302)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _load_env_file(path: Path) -> Dict[str, str]:
    """Parse a dotenv-style file into a dictionary."""
    if not path.exists():
        return {}

    data: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        data[key.strip()] = value.strip().strip("\"'")
    return data


def _build_database_url_from_components(
    values: Mapping[str, str], dotenv_values: Mapping[str, str]
) -> Optional[str]:
    """Construct a PostgreSQL DSN from discrete HOST/USER/PASSWORD/DB keys."""

    host = (
        values.get("DATABASE_HOST")
        or dotenv_values.get("DATABASE_HOST")
        or dotenv_values.get("HOST")
    )
    user = (
        values.get("DATABASE_USER")
        or dotenv_values.get("DATABASE_USER")
        or dotenv_values.get("USER")
    )
    password = (
        values.get("DATABASE_PASSWORD")
        or dotenv_values.get("DATABASE_PASSWORD")
        or dotenv_values.get("PASSWORD")
    )
    database = (
        values.get("DATABASE_NAME")
        or dotenv_values.get("DATABASE_NAME")
        or dotenv_values.get("DB")
    )
    port = (
        values.get("DATABASE_PORT")
        or dotenv_values.get("DATABASE_PORT")
        or dotenv_values.get("DB_PORT")
        or dotenv_values.get("PORT")
        or "5432"
    )

    if not all([host, user, password, database]):
        return None

    safe_user = quote_plus(user)
    safe_password = quote_plus(password)
    safe_host = host.strip()
    safe_database = database.strip()

    return f"postgresql://{safe_user}:{safe_password}@{safe_host}:{port}/{safe_database}"


@dataclass(frozen=True)
class AppConfig:
    """Application-level configuration values."""

    log_directory: Path
    log_level: str
    app_name: str = "egress-probe"
    cache_backend: str = "file"
    cache_path: Path = REPO_ROOT / ".cache" / "probe-cache.json"
    database_url: Optional[str] = None
    cache_timeout_ms: int = 5000


@dataclass(frozen=True)
class ProbeSettings:
    """Knobs controlling one probing round.

    Attributes:
        concurrency: Maximum probes in flight.
        timeout_ms: Per-request timeout in milliseconds.
        global_timeout_ms: Wall-clock budget for the whole round; no probe
            starts after it elapses.
        max_tries: Failed attempts per node before giving up (<= 0 disables).
        max_runs: Probing rounds per identical batch before it is locked to
            cache-only answers (<= 0 disables).
        force: Ignore give-up markers, cached successes and batch locks.
        strict: Use exact error-schema validation instead of status-only checks.
        mode: One of ``api_only``, ``web_only``, ``api_then_web``.
        services: Services to probe; more than one runs them in parallel.
        use_cache: Read and persist decisions through the decision cache.
        rename: Prepend a prefix to the label of accepted nodes.
        prefix: Prefix override (defaults to the service prefix).
        deny: Case-insensitive regex; matching node labels are rejected.
        allow_429: Treat Anthropic API 429 responses as reachable.
        allow_529: Treat Anthropic API 529 responses as reachable.
        anthropic_version: ``anthropic-version`` header sent to the API.
        web_ok_statuses: Status codes a web probe treats as reachable.
        gemini_web_url: Override for the Gemini web probe URL.
        platform: Hint passed to the node materializer (e.g. ``Surge``).
    """

    concurrency: int = 10
    timeout_ms: int = 5000
    global_timeout_ms: int = 28000
    max_tries: int = 2
    max_runs: int = 2
    force: bool = False
    strict: bool = True
    mode: str = "api_then_web"
    services: Tuple[str, ...] = ("claude",)
    use_cache: bool = True
    rename: bool = False
    prefix: Optional[str] = None
    deny: Optional[str] = None
    allow_429: bool = False
    allow_529: bool = False
    anthropic_version: str = "2023-06-01"
    web_ok_statuses: Tuple[int, ...] = DEFAULT_WEB_OK_STATUSES
    gemini_web_url: Optional[str] = None
    platform: Optional[str] = None

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if self.global_timeout_ms < 0:
            raise ValueError("global_timeout_ms must not be negative")
        if self.mode not in PROBE_MODES:
            raise ValueError(f"mode must be one of {', '.join(PROBE_MODES)}; got {self.mode!r}")
        if not self.services:
            raise ValueError("at least one service must be configured")
        if self.deny:
            try:
                re.compile(self.deny)
            except re.error as exc:
                raise ValueError(f"deny is not a valid regular expression: {exc}") from exc

    @property
    def effective_force(self) -> bool:
        """Force only means something when decisions are cached."""
        return self.force and self.use_cache

    @property
    def deny_pattern(self) -> Optional["re.Pattern[str]"]:
        if not self.deny:
            return None
        return re.compile(self.deny, re.IGNORECASE)

    def with_overrides(self, **overrides: Any) -> "ProbeSettings":
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        return replace(self, **changes)


def _merge_envs(dotenv_values: Mapping[str, str], env: MutableMapping[str, str]) -> Dict[str, str]:
    """Merge dotenv values with the current environment, preferring os.environ."""
    merged = dict(dotenv_values)
    merged.update(env)  # os.environ wins
    return merged


def parse_bool(value: str, *, key: str = "value") -> bool:
    """Parse the boolean spellings accepted in env files and CLI flags."""
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{key} must be a boolean (true/false/1/0); got {value!r}")


def _parse_int(value: str, *, key: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer; got {value!r}") from exc


def parse_status_list(value: Optional[str]) -> Tuple[int, ...]:
    """Parse ``"200, 302"`` into ``(200, 302)``; empty input yields the defaults."""
    statuses = []
    for part in (value or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            status = int(part)
        except ValueError:
            continue
        if status not in statuses:
            statuses.append(status)
    return tuple(statuses) if statuses else DEFAULT_WEB_OK_STATUSES


def parse_services(value: Optional[str]) -> Tuple[str, ...]:
    """Parse a comma separated service list, lowercased and deduplicated."""
    services = []
    for part in (value or "").split(","):
        name = part.strip().lower()
        if name and name not in services:
            services.append(name)
    return tuple(services)


def load_config(env_file: Optional[Path] = None) -> AppConfig:
    """Load configuration values using environment defaults."""
    target_file = env_file or DEFAULT_ENV_FILE
    dotenv_values = _load_env_file(target_file)
    merged = _merge_envs(dotenv_values, os.environ)

    cache_backend = merged.get("CACHE_BACKEND", "file").strip().lower()
    if cache_backend not in CACHE_BACKENDS:
        raise ValueError(
            f"CACHE_BACKEND must be one of {', '.join(CACHE_BACKENDS)}; got {cache_backend!r}"
        )

    database_url = merged.get("DATABASE_URL") or _build_database_url_from_components(
        merged, dotenv_values
    )
    if cache_backend == "postgres" and not database_url:
        raise ValueError(
            "DATABASE_URL (or HOST/USER/PASSWORD/DB combination) must be defined "
            "when CACHE_BACKEND=postgres."
        )

    log_directory = Path(merged.get("LOG_DIR", REPO_ROOT / "logs"))
    if not log_directory.is_absolute():
        log_directory = REPO_ROOT / log_directory

    cache_path = Path(merged.get("CACHE_PATH", REPO_ROOT / ".cache" / "probe-cache.json"))
    if not cache_path.is_absolute():
        cache_path = REPO_ROOT / cache_path

    log_level = merged.get("LOG_LEVEL", "INFO").upper()

    cache_timeout_ms = _parse_int(merged.get("CACHE_TIMEOUT_MS", "5000"), key="CACHE_TIMEOUT_MS")
    if cache_timeout_ms <= 0:
        raise ValueError(f"CACHE_TIMEOUT_MS must be positive; got {cache_timeout_ms}")

    return AppConfig(
        log_directory=log_directory,
        log_level=log_level,
        app_name=merged.get("APP_NAME", "egress-probe"),
        cache_backend=cache_backend,
        cache_path=cache_path,
        database_url=database_url,
        cache_timeout_ms=cache_timeout_ms,
    )


def load_probe_settings(env_file: Optional[Path] = None) -> ProbeSettings:
    """Build ``ProbeSettings`` from ``PROBE_*`` variables.

    Unset keys keep their dataclass defaults. ``PROBE_MAXTRIES`` and
    ``PROBE_MAXRUNS`` are accepted as alternative spellings.
    """
    target_file = env_file or DEFAULT_ENV_FILE
    merged = _merge_envs(_load_env_file(target_file), os.environ)

    def get(*keys: str) -> Optional[str]:
        for key in keys:
            value = merged.get(key)
            if value is not None and value.strip() != "":
                return value
        return None

    values: Dict[str, Any] = {}
    int_keys = {
        "concurrency": ("PROBE_CONCURRENCY",),
        "timeout_ms": ("PROBE_TIMEOUT_MS", "PROBE_TIMEOUT"),
        "global_timeout_ms": ("PROBE_GLOBAL_TIMEOUT_MS",),
        "max_tries": ("PROBE_MAX_TRIES", "PROBE_MAXTRIES"),
        "max_runs": ("PROBE_MAX_RUNS", "PROBE_MAXRUNS"),
    }
    for field_name, keys in int_keys.items():
        raw = get(*keys)
        if raw is not None:
            values[field_name] = _parse_int(raw, key=keys[0])

    bool_keys = {
        "force": "PROBE_FORCE",
        "strict": "PROBE_STRICT",
        "use_cache": "PROBE_CACHE",
        "rename": "PROBE_RENAME",
        "allow_429": "PROBE_ALLOW_429",
        "allow_529": "PROBE_ALLOW_529",
    }
    for field_name, key in bool_keys.items():
        raw = get(key)
        if raw is not None:
            values[field_name] = parse_bool(raw, key=key)

    str_keys = {
        "prefix": "PROBE_PREFIX",
        "deny": "PROBE_DENY",
        "anthropic_version": "PROBE_ANTHROPIC_VERSION",
        "gemini_web_url": "PROBE_GEMINI_WEB_URL",
        "platform": "PROBE_PLATFORM",
    }
    for field_name, key in str_keys.items():
        # prefix may legitimately end with a space; keep it verbatim
        raw = merged.get(key)
        if raw:
            values[field_name] = raw

    mode = get("PROBE_MODE")
    if mode is not None:
        values["mode"] = mode.strip().lower()

    services = get("PROBE_SERVICES")
    if services is not None:
        values["services"] = parse_services(services)

    statuses = get("PROBE_WEB_OK_STATUSES")
    if statuses is not None:
        values["web_ok_statuses"] = parse_status_list(statuses)

    return ProbeSettings(**values)


__all__ = [
    "AppConfig",
    "ProbeSettings",
    "load_config",
    "load_probe_settings",
    "parse_bool",
    "parse_services",
    "parse_status_list",
    "PROBE_MODES",
    "CACHE_BACKENDS",
    "REPO_ROOT",
]
