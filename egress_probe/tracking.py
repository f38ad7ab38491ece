"""Per-node retry caps and per-batch run locks, persisted via the decision cache.

Two small state machines live here:

- Retry/give-up: a node is probed until it succeeds once (success is sticky)
  or until ``max_tries`` concrete failures were recorded.
- Batch lock: an identical batch is probed at most ``max_runs`` rounds; after
  that it is answered from cache only, without touching the network.

The pure decision functions (``should_probe``, ``record_result``,
``is_locked``, ``advance``) carry all the logic; the tracker classes only bind
them to a cache and a clock.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from egress_probe.cache.base import DecisionCache, write_many

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    return default


def _as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    return default


@dataclass(frozen=True)
class DecisionRecord:
    """Persisted verdict for one node fingerprint.

    Attributes:
        ok: Whether the last conclusive probe accepted the node.
        tries: Number of conclusive attempts recorded so far.
        ts: Epoch seconds of the last write.
        denied: True when the failure came from the name deny-list.
        targets: Per-service verdicts for multi-target probes.
    """

    ok: bool
    tries: int = 0
    ts: float = 0.0
    denied: bool = False
    targets: Mapping[str, bool] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok, "tries": self.tries, "ts": self.ts}
        if self.denied:
            payload["denied"] = True
        if self.targets:
            payload["targets"] = dict(self.targets)
        return payload

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> Optional["DecisionRecord"]:
        """Parse a cached payload; tolerant of records written by older versions."""
        if not payload:
            return None
        raw_targets = payload.get("targets")
        targets = (
            {str(k): v is True for k, v in raw_targets.items()}
            if isinstance(raw_targets, Mapping)
            else {}
        )
        return cls(
            ok=payload.get("ok") is True,
            tries=max(0, _as_int(payload.get("tries"))),
            ts=_as_float(payload.get("ts")),
            denied=payload.get("denied") is True,
            targets=targets,
        )


@dataclass(frozen=True)
class BatchMeta:
    """Persisted round counter for one batch key."""

    runs: int = 0
    locked: bool = False
    ts: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"runs": self.runs, "locked": self.locked, "ts": self.ts}

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "BatchMeta":
        if not payload:
            return cls()
        return cls(
            runs=max(0, _as_int(payload.get("runs"))),
            locked=payload.get("locked") is True,
            ts=_as_float(payload.get("ts")),
        )


def should_probe(record: Optional[DecisionRecord], max_tries: int, force: bool) -> bool:
    """Decide whether a node needs a network probe this round."""
    if force or record is None:
        return True
    if record.ok:
        return False
    if max_tries <= 0:
        return True
    return record.tries < max_tries


def record_result(
    prior_tries: int,
    ok: bool,
    now: float,
    *,
    targets: Optional[Mapping[str, bool]] = None,
    denied: bool = False,
) -> DecisionRecord:
    """Build the record written after one conclusive attempt."""
    return DecisionRecord(
        ok=bool(ok),
        tries=max(0, prior_tries) + 1,
        ts=now,
        denied=denied,
        targets=dict(targets or {}),
    )


def is_locked(meta: BatchMeta, max_runs: int, force: bool) -> bool:
    """True when the batch must be answered from cache only."""
    if force or max_runs <= 0:
        return False
    return meta.locked or meta.runs >= max_runs


def advance(meta: BatchMeta, attempted: int, max_runs: int, now: float) -> BatchMeta:
    """Count one round, unless nothing was actually probed."""
    if attempted <= 0 or max_runs <= 0:
        return meta
    runs = meta.runs + 1
    return BatchMeta(runs=runs, locked=runs >= max_runs, ts=now)


class RetryTracker:
    """Bind the retry/give-up rules to a decision cache."""

    def __init__(
        self,
        cache: Optional[DecisionCache],
        *,
        max_tries: int,
        force: bool = False,
        clock: Clock = time.time,
    ) -> None:
        self._cache = cache
        self._max_tries = max_tries
        self._force = force
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._cache is not None

    def load(self, key: str) -> Optional[DecisionRecord]:
        if self._cache is None:
            return None
        return DecisionRecord.from_dict(self._cache.get(key))

    def should_probe(self, record: Optional[DecisionRecord]) -> bool:
        return should_probe(record, self._max_tries, self._force)

    def commit(
        self,
        key: str,
        prior: Optional[DecisionRecord],
        ok: bool,
        *,
        targets: Optional[Mapping[str, bool]] = None,
    ) -> DecisionRecord:
        """Record one conclusive attempt and persist it."""
        record = record_result(
            prior.tries if prior else 0, ok, self._clock(), targets=targets
        )
        if self._cache is not None:
            self._cache.set(key, record.to_dict())
        return record

    def commit_many(
        self,
        decisions: Iterable[Tuple[str, Optional[DecisionRecord], bool, Mapping[str, bool]]],
    ) -> Dict[str, DecisionRecord]:
        """Record several conclusive attempts with a single cache write.

        ``decisions`` yields ``(key, prior, ok, targets)``; a key seen twice
        keeps its last decision.
        """
        now = self._clock()
        records = {
            key: record_result(prior.tries if prior else 0, ok, now, targets=targets)
            for key, prior, ok, targets in decisions
        }
        if self._cache is not None:
            write_many(self._cache, {key: record.to_dict() for key, record in records.items()})
        return records

    def mark_denied(self, key: str, prior: Optional[DecisionRecord]) -> DecisionRecord:
        """Persist a deny-list rejection so it counts against the retry cap."""
        record = record_result(
            prior.tries if prior else 0, False, self._clock(), denied=True
        )
        if self._cache is not None:
            self._cache.set(key, record.to_dict())
        return record


class BatchLockTracker:
    """Bind the batch run-count/lock rules to a decision cache."""

    def __init__(
        self,
        cache: Optional[DecisionCache],
        *,
        max_runs: int,
        force: bool = False,
        clock: Clock = time.time,
    ) -> None:
        self._cache = cache
        self._max_runs = max_runs
        self._force = force
        self._clock = clock

    def load(self, key: str) -> BatchMeta:
        if self._cache is None:
            return BatchMeta()
        return BatchMeta.from_dict(self._cache.get(key))

    def is_locked(self, meta: BatchMeta) -> bool:
        # without a cache there is nothing to answer from
        if self._cache is None:
            return False
        return is_locked(meta, self._max_runs, self._force)

    def advance(self, key: str, meta: BatchMeta, attempted: int) -> BatchMeta:
        """Count a finished round; forced rounds never feed the lock."""
        if self._cache is None or self._force:
            return meta
        updated = advance(meta, attempted, self._max_runs, self._clock())
        if updated is not meta:
            self._cache.set(key, updated.to_dict())
            if updated.locked:
                LOGGER.info(
                    "Batch %s locked to cache-only answers after %d runs", key, updated.runs
                )
        return updated


__all__ = [
    "BatchLockTracker",
    "BatchMeta",
    "DecisionRecord",
    "RetryTracker",
    "advance",
    "is_locked",
    "record_result",
    "should_probe",
]
