"""Probe engine: one bounded, cached probing round over a batch of nodes.

Round outline:

1. Compute the batch key. If the batch is locked, answer every node from the
   decision cache (``ok is True`` accepts, anything else rejects) and stop.
2. Per node: apply the name deny-list, read its decision record, and either
   settle it from cache (sticky success or given up) or queue a probe.
3. Run the queued probes through ``run_bounded`` under the concurrency limit
   and the global deadline, which starts once the cache reads are done. Each
   probe materializes the node and runs the strategy; conclusive results are
   buffered.
4. Write the buffered decisions and advance the batch run counter if at
   least one real probe happened.
5. Return the accepted nodes in input order, optionally labelled.
"""

import asyncio
import functools
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from egress_probe.cache.base import DecisionCache, GuardedCache
from egress_probe.config import ProbeSettings
from egress_probe.fingerprint import batch_key, node_cache_key
from egress_probe.logging_utils import perf_span
from egress_probe.materializer import NodeMaterializer, ProxyUrlMaterializer
from egress_probe.nodes import Node, apply_prefix, node_label
from egress_probe.probes import Probe, ProbeResult, build_strategy
from egress_probe.scheduler import SchedulerStats, run_bounded
from egress_probe.targets import cache_namespace, get_service
from egress_probe.tracking import BatchLockTracker, BatchMeta, DecisionRecord, RetryTracker
from egress_probe.transport import HttpClient, HttpxClient

LOGGER = logging.getLogger(__name__)

# NodeOutcome.reason values
CACHED = "cached"
GAVE_UP = "gave_up"
DENIED = "denied"
LOCKED = "locked"
PROBED = "probed"
INCONCLUSIVE = "inconclusive"
UNMATERIALIZED = "unmaterialized"
DEADLINE = "deadline"
ERROR = "error"
_PENDING = "pending"
_PROBING = "probing"


@dataclass
class NodeOutcome:
    """Per-invocation verdict for one node; never persisted on the node."""

    node: Node
    cache_key: str
    ok: bool = False
    reason: str = _PENDING
    targets: Dict[str, bool] = field(default_factory=dict)
    result: Optional[ProbeResult] = None

    @property
    def label(self) -> str:
        return node_label(self.node)


@dataclass
class ProbeReport:
    """What one round decided."""

    accepted: List[Node]
    outcomes: List[NodeOutcome]
    batch_key: str
    locked: bool
    attempted: int
    elapsed_ms: float
    stats: Optional[SchedulerStats] = None
    cache_degraded: bool = False

    def counts(self) -> Dict[str, int]:
        return dict(Counter(outcome.reason for outcome in self.outcomes))


class ProbeEngine:
    """Schedule probes for a batch and cache their decisions.

    Args:
        settings: Probe knobs for the round.
        cache: Decision cache backend, or None to run without persistence.
            Ignored when ``settings.use_cache`` is False.
        materializer: Node -> connection converter.
        strategy: Probe strategy; built from ``settings`` when omitted.
        client: HTTP client used to build the default strategy.
        clock: Monotonic clock for the global deadline.
        wall_clock: Epoch clock for record timestamps.
    """

    def __init__(
        self,
        settings: ProbeSettings,
        *,
        cache: Optional[DecisionCache] = None,
        materializer: Optional[NodeMaterializer] = None,
        strategy: Optional[Probe] = None,
        client: Optional[HttpClient] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._services = [get_service(name) for name in settings.services]
        self._namespace = cache_namespace(settings.services)
        self._cache = GuardedCache(cache) if cache is not None and settings.use_cache else None
        self._materializer = materializer or ProxyUrlMaterializer()
        self._strategy = strategy or build_strategy(settings, client or HttpxClient())
        self._clock = clock

        force = settings.effective_force
        self._force = force
        self._retry = RetryTracker(
            self._cache, max_tries=settings.max_tries, force=force, clock=wall_clock
        )
        self._batch = BatchLockTracker(
            self._cache, max_runs=settings.max_runs, force=force, clock=wall_clock
        )

    @property
    def namespace(self) -> str:
        return self._namespace

    # --- labelling ---------------------------------------------------------

    def _prefix_for(self, targets: Dict[str, bool]) -> str:
        if len(self._services) == 1:
            return self._settings.prefix or self._services[0].prefix
        return "".join(service.prefix for service in self._services if targets.get(service.name))

    def _label(self, outcome: NodeOutcome) -> None:
        if not self._settings.rename or not outcome.ok:
            return
        sentinels = [service.prefix for service in self._services]
        apply_prefix(outcome.node, self._prefix_for(outcome.targets), sentinels)

    def _settle_from_record(
        self, outcome: NodeOutcome, record: Optional[DecisionRecord], reason: str
    ) -> None:
        outcome.ok = record is not None and record.ok
        outcome.targets = dict(record.targets) if record else {}
        outcome.reason = reason
        self._label(outcome)

    # --- round -------------------------------------------------------------

    async def run(self, nodes: Iterable[Node]) -> ProbeReport:
        """Run one round over ``nodes`` and return the report.

        Cache I/O runs in a worker thread before and after the probes, never
        while a probe is in flight.
        """
        start = self._clock()
        node_list = list(nodes)
        key = batch_key(node_list, self._namespace)
        outcomes = [NodeOutcome(node, node_cache_key(node, self._namespace)) for node in node_list]

        with perf_span(
            "engine.round",
            tags={"nodes": len(node_list), "namespace": self._namespace},
            logger=LOGGER,
        ):
            meta, queued = await asyncio.to_thread(self._prepare, key, outcomes)
            if queued is None:
                return self._report(key, outcomes, start, locked=True, attempted=0, stats=None)

            deadline = self._clock() + self._settings.global_timeout_ms / 1000.0
            attempted = 0
            decisions: List[Tuple[str, Optional[DecisionRecord], bool, Dict[str, bool]]] = []

            async def probe_node(outcome: NodeOutcome, record: Optional[DecisionRecord]) -> None:
                nonlocal attempted
                outcome.reason = _PROBING
                try:
                    connection = self._materializer.materialize(outcome.node, self._settings.platform)
                except Exception as exc:  # noqa: BLE001 - skip the node this round
                    LOGGER.warning("Cannot materialize node %r: %s", outcome.label, exc)
                    connection = None
                if connection is None:
                    outcome.reason = UNMATERIALIZED
                    return

                attempted += 1
                result = await self._strategy(connection, self._settings.timeout_ms)
                outcome.result = result
                outcome.ok = result.ok
                outcome.targets = result.targets
                if result.conclusive:
                    decisions.append((outcome.cache_key, record, result.ok, result.targets))
                    outcome.reason = PROBED
                else:
                    outcome.reason = INCONCLUSIVE
                self._label(outcome)

            stats = await run_bounded(
                [functools.partial(probe_node, outcome, record) for outcome, record in queued],
                self._settings.concurrency,
                deadline,
                clock=self._clock,
            )

            for outcome, _ in queued:
                if outcome.reason == _PENDING:
                    outcome.reason = DEADLINE
                elif outcome.reason == _PROBING:
                    outcome.reason = ERROR

            await asyncio.to_thread(self._persist, key, meta, attempted, decisions)
            return self._report(key, outcomes, start, locked=False, attempted=attempted, stats=stats)

    def _prepare(
        self, key: str, outcomes: List[NodeOutcome]
    ) -> Tuple[BatchMeta, Optional[List[Tuple[NodeOutcome, Optional[DecisionRecord]]]]]:
        """Read the batch meta and node records. A None queue means the batch is locked."""
        meta = self._batch.load(key)
        if outcomes and self._batch.is_locked(meta):
            for outcome in outcomes:
                self._settle_from_record(outcome, self._retry.load(outcome.cache_key), LOCKED)
            return meta, None
        return meta, self._triage(outcomes)

    def _persist(
        self,
        key: str,
        meta: BatchMeta,
        attempted: int,
        decisions: List[Tuple[str, Optional[DecisionRecord], bool, Dict[str, bool]]],
    ) -> None:
        self._retry.commit_many(decisions)
        self._batch.advance(key, meta, attempted)

    def _triage(
        self, outcomes: List[NodeOutcome]
    ) -> List[Tuple[NodeOutcome, Optional[DecisionRecord]]]:
        """Settle what the cache and deny-list can answer; return the rest."""
        deny = self._settings.deny_pattern
        queued = []
        for outcome in outcomes:
            record = self._retry.load(outcome.cache_key)
            if deny is not None and not self._force and deny.search(outcome.label):
                self._retry.mark_denied(outcome.cache_key, record)
                outcome.reason = DENIED
                continue
            if not self._retry.should_probe(record):
                self._settle_from_record(outcome, record, CACHED if record.ok else GAVE_UP)
                continue
            queued.append((outcome, record))
        return queued

    def _report(
        self,
        key: str,
        outcomes: List[NodeOutcome],
        start: float,
        *,
        locked: bool,
        attempted: int,
        stats: Optional[SchedulerStats],
    ) -> ProbeReport:
        report = ProbeReport(
            accepted=[outcome.node for outcome in outcomes if outcome.ok],
            outcomes=outcomes,
            batch_key=key,
            locked=locked,
            attempted=attempted,
            elapsed_ms=(self._clock() - start) * 1000.0,
            stats=stats,
            cache_degraded=self._cache is not None and self._cache.degraded,
        )
        counts = report.counts()
        LOGGER.info(
            "Probe round: nodes=%d accepted=%d attempted=%d locked=%s reasons=%s",
            len(outcomes),
            len(report.accepted),
            attempted,
            str(locked).lower(),
            ",".join(f"{reason}={counts[reason]}" for reason in sorted(counts)) or "-",
        )
        return report

    def run_sync(self, nodes: Iterable[Node]) -> ProbeReport:
        """Blocking wrapper around ``run`` for synchronous callers."""
        return asyncio.run(self.run(nodes))


async def probe_nodes(
    nodes: Iterable[Node],
    settings: ProbeSettings,
    *,
    cache: Optional[DecisionCache] = None,
    client: Optional[HttpClient] = None,
) -> List[Node]:
    """Convenience wrapper: run one round and return the accepted nodes."""
    engine = ProbeEngine(settings, cache=cache, client=client)
    report = await engine.run(nodes)
    return report.accepted


__all__ = [
    "NodeOutcome",
    "ProbeEngine",
    "ProbeReport",
    "probe_nodes",
]
