"""Shared pytest fixtures for the egress_probe package tests.

Provides reusable fakes (HTTP client, materializer, clocks, psycopg pool) so
tests stay deterministic and never touch the network or a real database.
"""

import asyncio
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Mapping, Optional, Union

import pytest

from egress_probe.config import AppConfig
from egress_probe.transport import ProbeResponse


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Application config fixture.

    Points logging and the file cache to a temporary directory. Avoids
    touching real user config, network or databases.
    """
    return AppConfig(
        log_directory=tmp_path,
        log_level="INFO",
        cache_backend="memory",
        cache_path=tmp_path / "cache.json",
    )


Reply = Union[ProbeResponse, Exception, Callable[[Optional[str]], Any]]


class FakeHttpClient:
    """Scripted ``HttpClient``: replies are looked up by URL.

    A reply may be a ``ProbeResponse``, an exception instance (raised as a
    transport failure) or a callable taking the connection and returning
    either of those. ``delay`` makes every call sleep first.
    """

    def __init__(self, replies: Optional[Dict[str, Reply]] = None, delay: float = 0.0) -> None:
        self.replies: Dict[str, Reply] = dict(replies or {})
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def get(
        self,
        url: str,
        headers: Mapping[str, str],
        connection: Optional[str],
        timeout_ms: int,
    ) -> ProbeResponse:
        self.calls.append(
            {"url": url, "headers": dict(headers), "connection": connection, "timeout_ms": timeout_ms}
        )
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            reply = self.replies.get(url)
            if reply is None:
                raise ConnectionError(f"no scripted reply for {url}")
            if callable(reply) and not isinstance(reply, (ProbeResponse, Exception)):
                reply = reply(connection)
            if isinstance(reply, Exception):
                raise reply
            return reply
        finally:
            self.in_flight -= 1

    def urls(self) -> List[str]:
        return [call["url"] for call in self.calls]


class FakeMaterializer:
    """Maps a node to ``proxy://<server>:<port>``; nodes listed in ``unusable`` yield None."""

    def __init__(self, unusable: Optional[set] = None, fail: Optional[set] = None) -> None:
        self.unusable = unusable or set()
        self.fail = fail or set()
        self.calls: List[str] = []

    def materialize(self, node: Mapping[str, Any], platform_hint: Optional[str] = None) -> Optional[str]:
        server = str(node.get("server"))
        self.calls.append(server)
        if server in self.fail:
            raise RuntimeError(f"cannot build {server}")
        if server in self.unusable:
            return None
        return f"proxy://{server}:{node.get('port')}"


class StepClock:
    """Clock advancing by ``step`` on every read."""

    def __init__(self, start: float = 1000.0, step: float = 0.0) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


def make_node(index: int, **extra: Any) -> Dict[str, Any]:
    node = {
        "name": f"node-{index}",
        "type": "http",
        "server": f"10.0.0.{index}",
        "port": 8000 + index,
    }
    node.update(extra)
    return node


@pytest.fixture
def nodes() -> List[Dict[str, Any]]:
    return [make_node(i) for i in range(1, 6)]


@pytest.fixture
def fake_materializer() -> FakeMaterializer:
    return FakeMaterializer()


class FakeCursor:
    def __init__(self, store: Dict[str, Any]) -> None:
        self.store = store
        self.executed = []
        self._row = None

    def execute(self, query, params=None):
        self.executed.append((query, params))
        if query.strip().startswith("SELECT"):
            key = params["key"]
            self._row = {"value": self.store[key]} if key in self.store else None
        elif query.strip().startswith("INSERT"):
            self.store[params["key"]] = params["value"].obj

    def fetchone(self):
        return self._row

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeTransaction:
    def __init__(self, conn):
        self.conn = conn
        self.entered = False
        self.exited = False

    def __enter__(self):
        self.entered = True
        return self.conn

    def __exit__(self, exc_type, exc, tb):
        self.exited = True
        return False


class FakeConnection:
    def __init__(self):
        self.store: Dict[str, Any] = {}
        self.cursors: List[FakeCursor] = []
        self.transaction_calls = []

    def cursor(self, *_, **__):
        cursor = FakeCursor(self.store)
        self.cursors.append(cursor)
        return cursor

    def transaction(self):
        txn = FakeTransaction(self)
        self.transaction_calls.append(txn)
        return txn

    def executed(self) -> List[str]:
        return [query for cursor in self.cursors for query, _ in cursor.executed]


class FakePool:
    def __init__(self, conn, error: Optional[Exception] = None):
        self.conn = conn
        self.error = error
        self.request_count = 0
        self.closed = False

    @contextmanager
    def connection(self):
        self.request_count += 1
        if self.error is not None:
            raise self.error
        yield self.conn

    def close(self):
        self.closed = True


@pytest.fixture
def fake_conn() -> FakeConnection:
    """In-memory fake DB connection used by postgres cache tests."""
    return FakeConnection()


@pytest.fixture
def fake_pool(fake_conn: FakeConnection) -> Generator[FakePool, None, None]:
    """In-memory fake connection pool wrapping ``fake_conn``."""
    pool = FakePool(fake_conn)
    yield pool


@pytest.fixture
def make_client():
    """Factory for scripted HTTP clients: ``make_client({url: reply}, delay=0.0)``."""
    return FakeHttpClient


@pytest.fixture
def make_materializer():
    """Factory for fake materializers: ``make_materializer(unusable=set(), fail=set())``."""
    return FakeMaterializer


@pytest.fixture
def step_clock():
    """Factory for deterministic clocks: ``step_clock(start=1000.0, step=0.0)``."""
    return StepClock


@pytest.fixture
def node_factory():
    return make_node
