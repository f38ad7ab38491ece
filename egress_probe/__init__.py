"""Reachability probing for proxy nodes with cached, bounded decisions.

Exports:
- ``ProbeEngine`` / ``probe_nodes``: run one probing round over a batch.
- ``ProbeSettings``: the knobs of a round.
- ``fingerprint`` / ``batch_key``: stable identity keys.
"""

from egress_probe.config import ProbeSettings
from egress_probe.engine import NodeOutcome, ProbeEngine, ProbeReport, probe_nodes
from egress_probe.fingerprint import batch_key, fingerprint

__all__ = [
    "NodeOutcome",
    "ProbeEngine",
    "ProbeReport",
    "ProbeSettings",
    "batch_key",
    "fingerprint",
    "probe_nodes",
]
