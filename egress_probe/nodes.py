"""Node list helpers: loading, fetching, and label handling.

Nodes are plain dictionaries in the Clash/Sub-Store shape (``name``, ``type``,
``server``, ``port``, credentials...). Two input formats are supported:

1) JSON: a list of node objects, or an object with a ``proxies`` list.
2) Plain text: one ``host:port`` HTTP proxy per line.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import requests

from egress_probe.fingerprint import fingerprint

LOGGER = logging.getLogger(__name__)

Node = Dict[str, Any]


def node_label(node: Node) -> str:
    """Return the display label of a node (empty string when absent)."""
    name = node.get("name")
    return name if isinstance(name, str) else ""


def apply_prefix(node: Node, prefix: str, sentinels: Sequence[str] = ()) -> bool:
    """Prepend ``prefix`` to the node label unless it is already labelled.

    The label counts as already labelled when it starts with ``prefix`` or
    with any of ``sentinels``. Returns True when the label changed.
    """
    if not prefix:
        return False
    label = node_label(node)
    for marker in (prefix, *sentinels):
        if marker and label.startswith(marker):
            return False
    node["name"] = prefix + label
    return True


def parse_node_line(line: str) -> Optional[Node]:
    """Parse a single ``host:port`` line into an HTTP proxy node.

    Returns None for invalid lines.
    """
    raw_line = (line or "").strip()
    if not raw_line or raw_line.startswith("#") or ":" not in raw_line:
        return None
    host, port_text = raw_line.rsplit(":", 1)
    host = host.strip()
    try:
        port = int(port_text.strip())
    except ValueError:
        return None
    if not host or not (0 < port < 65536):
        return None
    return {"name": f"{host}:{port}", "type": "http", "server": host, "port": port}


def parse_nodes(text: str) -> List[Node]:
    """Parse JSON or ``host:port`` text into a list of node dictionaries."""
    stripped = text.strip()
    if not stripped:
        return []
    if stripped[0] in "[{":
        payload = json.loads(stripped)
        if isinstance(payload, dict):
            payload = payload.get("proxies", [])
        if not isinstance(payload, list):
            raise ValueError("Node JSON must be a list or an object with a 'proxies' list")
        return [item for item in payload if isinstance(item, dict)]
    nodes = []
    for text_line in stripped.splitlines():
        node = parse_node_line(text_line)
        if node:
            nodes.append(node)
    return nodes


def dedupe_nodes(nodes: Iterable[Node]) -> List[Node]:
    """Drop nodes whose fingerprint was already seen, keeping the first."""
    seen = set()
    unique: List[Node] = []
    for node in nodes:
        key = fingerprint(node)
        if key in seen:
            continue
        seen.add(key)
        unique.append(node)
    return unique


def load_nodes(path: Path) -> List[Node]:
    """Read a node list from a JSON or plain-text file."""
    return parse_nodes(Path(path).read_text(encoding="utf-8"))


def fetch_node_list(
    source_url: str,
    *,
    timeout_seconds: float = 8.0,
    limit: Optional[int] = None,
) -> List[Node]:
    """Fetch and parse a node list published at ``source_url``.

    Args:
        source_url: URL returning JSON nodes or ``host:port`` lines.
        timeout_seconds: Request timeout in seconds.
        limit: Optional cap on the number of nodes kept (after dedupe).

    Returns:
        A deduplicated list of node dictionaries, in source order.
    """
    resp = requests.get(source_url, timeout=timeout_seconds)
    resp.raise_for_status()

    nodes = dedupe_nodes(parse_nodes(resp.text))
    if limit and limit > 0:
        nodes = nodes[:limit]

    LOGGER.info(
        "Fetched %d nodes from %s (limit=%s)",
        len(nodes),
        source_url,
        str(limit),
    )
    return nodes


__all__ = [
    "Node",
    "apply_prefix",
    "dedupe_nodes",
    "fetch_node_list",
    "load_nodes",
    "node_label",
    "parse_node_line",
    "parse_nodes",
]
