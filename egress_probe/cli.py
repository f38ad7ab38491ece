"""Command-line entry point: probe a node list and print the usable nodes.

Settings come from ``PROBE_*`` environment variables (or ``.env``) and can be
overridden per invocation with flags. The accepted nodes are written as a JSON
list to stdout or to ``--output``; logs go to stderr and the per-run log file.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from egress_probe.cache import build_cache
from egress_probe.config import (
    PROBE_MODES,
    REPO_ROOT,
    AppConfig,
    load_config,
    load_probe_settings,
    parse_bool,
    parse_services,
    parse_status_list,
)
from egress_probe.engine import ProbeEngine
from egress_probe.logging_utils import configure_logging, perf_span
from egress_probe.nodes import Node, fetch_node_list, load_nodes
from egress_probe.targets import get_service

LOGGER = logging.getLogger(__name__)


def _bool_flag(value: str) -> bool:
    try:
        return parse_bool(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Probe proxy nodes for AI service reachability and print the usable ones."
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--nodes", type=Path, help="Node list file (JSON or host:port lines).")
    source.add_argument("--source-url", type=str, help="URL of a node list to download.")
    parser.add_argument(
        "--fetch-limit",
        type=int,
        default=None,
        help="Keep at most this many nodes from --source-url.",
    )
    parser.add_argument("--output", type=Path, default=None, help="Write accepted nodes here.")
    parser.add_argument(
        "--service",
        dest="services",
        action="append",
        default=None,
        help="Service to probe (claude, gemini, chatgpt). Repeat or comma-separate for several.",
    )
    parser.add_argument("--mode", choices=PROBE_MODES, default=None, help="Probe mode.")
    parser.add_argument(
        "--strict",
        type=_bool_flag,
        default=None,
        metavar="BOOL",
        help="Strict error-schema validation (default: true).",
    )
    parser.add_argument("--concurrency", type=int, default=None, help="Probes in flight (default: 10).")
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=None,
        help="Per-request timeout in milliseconds (default: 5000).",
    )
    parser.add_argument(
        "--global-timeout-ms",
        type=int,
        default=None,
        help="Budget for starting probes in milliseconds (default: 28000).",
    )
    parser.add_argument("--max-tries", type=int, default=None, help="Failures before giving up (default: 2).")
    parser.add_argument("--max-runs", type=int, default=None, help="Rounds before locking a batch (default: 2).")
    parser.add_argument("--force", action="store_true", default=None, help="Ignore locks and cached verdicts.")
    parser.add_argument("--no-cache", action="store_true", help="Do not read or write the decision cache.")
    parser.add_argument("--rename", action="store_true", default=None, help="Prefix accepted node names.")
    parser.add_argument("--prefix", type=str, default=None, help="Prefix used with --rename.")
    parser.add_argument("--deny", type=str, default=None, help="Regex of node names to reject outright.")
    parser.add_argument(
        "--web-ok-statuses",
        type=str,
        default=None,
        help="Comma-separated statuses a web probe accepts (default: 200,302).",
    )
    parser.add_argument("--platform", type=str, default=None, help="Platform hint for the materializer.")
    return parser.parse_args(argv)


def _settings_overrides(args: argparse.Namespace) -> dict:
    services = None
    if args.services:
        services = parse_services(",".join(args.services))
    return {
        "services": services,
        "mode": args.mode,
        "strict": args.strict,
        "concurrency": args.concurrency,
        "timeout_ms": args.timeout_ms,
        "global_timeout_ms": args.global_timeout_ms,
        "max_tries": args.max_tries,
        "max_runs": args.max_runs,
        "force": args.force,
        "use_cache": False if args.no_cache else None,
        "rename": args.rename,
        "prefix": args.prefix,
        "deny": args.deny,
        "web_ok_statuses": parse_status_list(args.web_ok_statuses) if args.web_ok_statuses else None,
        "platform": args.platform,
    }


def _read_nodes(args: argparse.Namespace) -> List[Node]:
    if args.nodes is not None:
        return load_nodes(args.nodes)
    return fetch_node_list(args.source_url, limit=args.fetch_limit)


def _write_nodes(nodes: List[Node], output: Optional[Path]) -> None:
    text = json.dumps(nodes, ensure_ascii=False, indent=2)
    if output is None:
        sys.stdout.write(text + "\n")
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text + "\n", encoding="utf-8")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config()
        settings = load_probe_settings().with_overrides(**_settings_overrides(args))
        for name in settings.services:
            get_service(name)
    except Exception as exc:  # noqa: BLE001 - log and exit gracefully with a file
        fallback = AppConfig(log_directory=REPO_ROOT / "logs", log_level="INFO")
        configure_logging(fallback)
        logging.getLogger(__name__).error("Failed to load configuration: %s", exc)
        for handler in logging.getLogger().handlers:
            handler.flush()
        return 1

    configure_logging(config)

    cache = build_cache(config) if settings.use_cache else None
    try:
        nodes = _read_nodes(args)
        LOGGER.info(
            "Probing %d nodes services=%s mode=%s strict=%s",
            len(nodes),
            ",".join(settings.services),
            settings.mode,
            str(settings.strict).lower(),
        )
        engine = ProbeEngine(settings, cache=cache)
        with perf_span("probe.total", tags={"nodes": len(nodes), "app": config.app_name}):
            report = asyncio.run(engine.run(nodes))
        _write_nodes(report.accepted, args.output)
    finally:
        close = getattr(cache, "close", None)
        if callable(close):
            close()

    return 0


__all__ = ["main", "parse_args"]
