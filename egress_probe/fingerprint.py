"""Stable identity keys for nodes and node batches.

A node's fingerprint ignores its display label and bookkeeping fields, so a
renamed node keeps its cached verdict. A batch key is derived from the sorted
fingerprints, so reordering a subscription does not reset its run counter.
"""

import json
import re
from typing import Any, Iterable, List, Mapping

# name/collectionName/subName/id are labels; "_"-prefixed keys are transient
VOLATILE_KEY_RE = re.compile(r"^(name|collectionName|subName|id|_.*)$", re.IGNORECASE)

_HASH_SEED = 5381
_HASH_MASK = 0xFFFFFFFF


def canonical_fields(node: Mapping[str, Any]) -> dict:
    """Return the identity-bearing fields of ``node`` sorted by key."""
    return {
        key: node[key]
        for key in sorted(node, key=str)
        if not VOLATILE_KEY_RE.match(str(key))
    }


def fingerprint(node: Mapping[str, Any]) -> str:
    """Serialize the canonical fields of ``node`` into a deterministic string."""
    return json.dumps(
        canonical_fields(node),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def hash_strings(values: Iterable[str]) -> str:
    """Order-sensitive 32-bit djb2/xor rolling hash, as lowercase hex."""
    h = _HASH_SEED
    for value in values:
        for ch in value:
            h = (((h << 5) + h) ^ ord(ch)) & _HASH_MASK
    return format(h, "x")


def node_cache_key(node: Mapping[str, Any], namespace: str) -> str:
    """Decision cache key for a single node."""
    return f"{namespace}:{fingerprint(node)}"


def batch_key(nodes: Iterable[Mapping[str, Any]], namespace: str) -> str:
    """Order-independent key for a whole batch of nodes."""
    fingerprints: List[str] = sorted(fingerprint(node) for node in nodes)
    return f"{namespace}_batch:{hash_strings(fingerprints)}"


__all__ = [
    "VOLATILE_KEY_RE",
    "batch_key",
    "canonical_fields",
    "fingerprint",
    "hash_strings",
    "node_cache_key",
]
