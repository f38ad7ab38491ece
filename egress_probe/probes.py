"""Probe strategies: how one node is tested against one or more services.

Every strategy is an async callable ``probe(connection, timeout_ms)`` that
returns a ``ProbeResult``. Strategies compose:

- ``HttpProbe``: one GET through the node, judged by the classifier.
- ``SequentialFallback``: try A; only if A did not accept, try B.
- ``ParallelMultiTarget``: probe several services concurrently.

A transport failure (timeout, reset, DNS, proxy handshake) yields a result
without a signal: ``conclusive`` is False and the engine does not cache it.
A received response is always conclusive, whichever way it was judged.
No strategy retries; retries happen across invocations via the trackers.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Mapping, Optional

from egress_probe.classifier import Verdict, classify
from egress_probe.config import ProbeSettings
from egress_probe.targets import ProbeTarget, ServiceSpec, get_service
from egress_probe.transport import HttpClient, ProbeResponse

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one strategy invocation.

    Attributes:
        target: Name of the target (or composite) that produced the result.
        ok: Whether the node is considered reachable.
        conclusive: False when any required signal was lost to a transport
            failure; such results must not be cached as negatives.
        signal: The response that was classified, if any.
        latency_ms: Wall time spent in the strategy.
        error: Transport error text, if any.
        results: Per-target results of a multi-target probe.
    """

    target: str
    ok: bool
    conclusive: bool
    signal: Optional[ProbeResponse] = None
    latency_ms: float = 0.0
    error: Optional[str] = None
    results: Mapping[str, "ProbeResult"] = field(default_factory=dict)

    @property
    def verdict(self) -> Verdict:
        if self.ok:
            return Verdict.ACCEPT
        return Verdict.REJECT if self.conclusive else Verdict.INCONCLUSIVE

    @property
    def targets(self) -> Dict[str, bool]:
        return {name: result.ok for name, result in self.results.items()}


Probe = Callable[[Optional[str], int], Awaitable[ProbeResult]]


def _elapsed_ms(start_ns: int) -> float:
    return (time.perf_counter_ns() - start_ns) / 1_000_000.0


class HttpProbe:
    """Issue one GET for ``target`` through the node and classify the answer."""

    def __init__(self, target: ProbeTarget, client: HttpClient) -> None:
        self._target = target
        self._client = client

    @property
    def target(self) -> ProbeTarget:
        return self._target

    async def __call__(self, connection: Optional[str], timeout_ms: int) -> ProbeResult:
        start_ns = time.perf_counter_ns()
        try:
            response = await self._client.get(
                self._target.url, self._target.headers, connection, timeout_ms
            )
        except Exception as exc:  # noqa: BLE001 - any transport failure is inconclusive
            error_text = f"{type(exc).__name__}: {exc}"
            LOGGER.debug("probe %s transport failure: %s", self._target.name, error_text)
            return ProbeResult(
                target=self._target.name,
                ok=False,
                conclusive=False,
                latency_ms=_elapsed_ms(start_ns),
                error=error_text,
            )

        verdict = classify(response, self._target.policy)
        LOGGER.debug(
            "probe %s status=%s verdict=%s", self._target.name, response.status, verdict.value
        )
        return ProbeResult(
            target=self._target.name,
            ok=verdict is Verdict.ACCEPT,
            conclusive=True,
            signal=response,
            latency_ms=_elapsed_ms(start_ns),
        )


class SequentialFallback:
    """Run ``first``; when it does not accept, run ``second`` and return its result."""

    def __init__(self, first: Probe, second: Probe) -> None:
        self._first = first
        self._second = second

    async def __call__(self, connection: Optional[str], timeout_ms: int) -> ProbeResult:
        first = await self._first(connection, timeout_ms)
        if first.ok:
            return first
        return await self._second(connection, timeout_ms)


class ParallelMultiTarget:
    """Probe every named strategy concurrently through the same node.

    The node is ``ok`` when any target accepts; the result is conclusive only
    when every target produced a signal.
    """

    def __init__(self, probes: Mapping[str, Probe], name: str = "multi") -> None:
        if not probes:
            raise ValueError("ParallelMultiTarget needs at least one probe")
        self._probes = dict(probes)
        self._name = name

    async def __call__(self, connection: Optional[str], timeout_ms: int) -> ProbeResult:
        start_ns = time.perf_counter_ns()
        names = list(self._probes)
        outcomes = await asyncio.gather(
            *(self._probes[name](connection, timeout_ms) for name in names)
        )
        results = dict(zip(names, outcomes))
        errors = [f"{name}: {res.error}" for name, res in results.items() if res.error]
        return ProbeResult(
            target=self._name,
            ok=any(res.ok for res in outcomes),
            conclusive=all(res.conclusive for res in outcomes),
            latency_ms=_elapsed_ms(start_ns),
            error="; ".join(errors) or None,
            results=results,
        )


def build_service_probe(
    service: ServiceSpec,
    mode: str,
    client: HttpClient,
    settings: ProbeSettings,
) -> Probe:
    """Compose the strategy for one service according to ``mode``.

    A service lacking the requested surface is probed on the one it has.
    """
    api = HttpProbe(service.api(settings), client) if service.api else None
    web = HttpProbe(service.web(settings), client) if service.web else None

    if mode == "api_only":
        chosen = api or web
    elif mode == "web_only":
        chosen = web or api
    elif mode == "api_then_web":
        if api and web:
            return SequentialFallback(api, web)
        chosen = api or web
    else:
        raise ValueError(f"Unknown probe mode: {mode!r}")

    if chosen is None:
        raise ValueError(f"Service {service.name!r} defines no probe target")
    if (mode == "api_only" and api is None) or (mode == "web_only" and web is None):
        LOGGER.warning(
            "Service %s has no %s probe; using %s instead",
            service.name,
            mode.split("_")[0],
            chosen.target.name,
        )
    return chosen


def build_strategy(settings: ProbeSettings, client: HttpClient) -> Probe:
    """Strategy for ``settings.services``: one service, or all in parallel."""
    services = [get_service(name) for name in settings.services]
    if len(services) == 1:
        return build_service_probe(services[0], settings.mode, client, settings)
    return ParallelMultiTarget(
        {
            service.name: build_service_probe(service, settings.mode, client, settings)
            for service in services
        }
    )


__all__ = [
    "HttpProbe",
    "ParallelMultiTarget",
    "Probe",
    "ProbeResult",
    "SequentialFallback",
    "build_service_probe",
    "build_strategy",
]
