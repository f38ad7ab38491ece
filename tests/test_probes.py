import asyncio
import json
import logging

import pytest

from egress_probe.classifier import Verdict
from egress_probe.config import ProbeSettings
from egress_probe.probes import (
    HttpProbe,
    ParallelMultiTarget,
    ProbeResult,
    SequentialFallback,
    build_service_probe,
    build_strategy,
)
from egress_probe.targets import (
    ANTHROPIC_API_URL,
    CHATGPT_WEB_URL,
    CLAUDE_WEB_URL,
    GEMINI_API_URL,
    SERVICES,
    anthropic_api_target,
)
from egress_probe.transport import ProbeResponse

AUTH_ERROR = ProbeResponse(
    401,
    json.dumps({"type": "error", "error": {"type": "authentication_error", "message": "bad key"}}),
)
REGION_BLOCK = ProbeResponse(403, '{"error": {"type": "forbidden", "message": "unsupported_country"}}')


def _fixed(result: ProbeResult):
    calls = []

    async def probe(connection, timeout_ms):
        calls.append(connection)
        return result

    probe.calls = calls
    return probe


def test_http_probe_accepts_and_passes_connection(make_client):
    client = make_client({ANTHROPIC_API_URL: AUTH_ERROR})
    probe = HttpProbe(anthropic_api_target(ProbeSettings()), client)

    result = asyncio.run(probe("http://10.0.0.1:8001", 1500))

    assert result.ok is True
    assert result.conclusive is True
    assert result.verdict is Verdict.ACCEPT
    assert result.signal is AUTH_ERROR
    assert client.calls[0]["connection"] == "http://10.0.0.1:8001"
    assert client.calls[0]["timeout_ms"] == 1500
    assert client.calls[0]["headers"]["x-api-key"] == "sk-ant-invalid"
    assert client.calls[0]["headers"]["anthropic-version"] == "2023-06-01"


def test_http_probe_rejection_is_conclusive(make_client):
    client = make_client({ANTHROPIC_API_URL: REGION_BLOCK})
    probe = HttpProbe(anthropic_api_target(ProbeSettings()), client)

    result = asyncio.run(probe("proxy", 1000))

    assert result.ok is False
    assert result.conclusive is True
    assert result.verdict is Verdict.REJECT


@pytest.mark.parametrize("error", [asyncio.TimeoutError(), ConnectionResetError("reset"), OSError("dns")])
def test_http_probe_transport_failure_is_inconclusive(make_client, error):
    client = make_client({ANTHROPIC_API_URL: error})
    probe = HttpProbe(anthropic_api_target(ProbeSettings()), client)

    result = asyncio.run(probe("proxy", 1000))

    assert result.ok is False
    assert result.conclusive is False
    assert result.verdict is Verdict.INCONCLUSIVE
    assert result.signal is None
    assert type(error).__name__ in result.error


def test_sequential_fallback_skips_second_when_first_accepts():
    first = _fixed(ProbeResult("a", ok=True, conclusive=True))
    second = _fixed(ProbeResult("b", ok=True, conclusive=True))

    result = asyncio.run(SequentialFallback(first, second)("conn", 100))

    assert result.target == "a"
    assert first.calls == ["conn"]
    assert second.calls == []


@pytest.mark.parametrize("first_conclusive", [True, False])
def test_sequential_fallback_returns_second_result(first_conclusive):
    first = _fixed(ProbeResult("a", ok=False, conclusive=first_conclusive))
    second = _fixed(ProbeResult("b", ok=False, conclusive=True))

    result = asyncio.run(SequentialFallback(first, second)("conn", 100))

    assert result.target == "b"
    assert result.conclusive is True
    assert second.calls == ["conn"]


def test_parallel_multi_target_any_ok_all_conclusive():
    probes = {
        "claude": _fixed(ProbeResult("claude_api", ok=False, conclusive=True)),
        "gemini": _fixed(ProbeResult("gemini_api", ok=True, conclusive=True)),
    }

    result = asyncio.run(ParallelMultiTarget(probes)("conn", 100))

    assert result.ok is True
    assert result.conclusive is True
    assert result.targets == {"claude": False, "gemini": True}


def test_parallel_multi_target_inconclusive_when_any_target_lost():
    probes = {
        "claude": _fixed(ProbeResult("claude_api", ok=True, conclusive=True)),
        "gemini": _fixed(ProbeResult("gemini_api", ok=False, conclusive=False, error="timeout")),
    }

    result = asyncio.run(ParallelMultiTarget(probes)("conn", 100))

    assert result.ok is True
    assert result.conclusive is False
    assert result.error == "gemini: timeout"


def test_parallel_multi_target_requires_probes():
    with pytest.raises(ValueError):
        ParallelMultiTarget({})


def test_api_then_web_falls_back_to_web(make_client):
    client = make_client(
        {
            ANTHROPIC_API_URL: ProbeResponse(403, "<html>blocked</html>"),
            CLAUDE_WEB_URL: ProbeResponse(200, "<html>Claude</html>"),
        }
    )
    settings = ProbeSettings(mode="api_then_web")

    result = asyncio.run(build_strategy(settings, client)("conn", 100))

    assert result.ok is True
    assert result.target == "claude_web"
    assert client.urls() == [ANTHROPIC_API_URL, CLAUDE_WEB_URL]


def test_api_only_never_touches_web(make_client):
    client = make_client({ANTHROPIC_API_URL: ProbeResponse(403, "<html>blocked</html>")})

    result = asyncio.run(build_strategy(ProbeSettings(mode="api_only"), client)("conn", 100))

    assert result.ok is False
    assert client.urls() == [ANTHROPIC_API_URL]


def test_missing_surface_falls_back_with_warning(make_client, caplog):
    client = make_client({CHATGPT_WEB_URL: ProbeResponse(200, "<html></html>")})

    with caplog.at_level(logging.WARNING, logger="egress_probe.probes"):
        probe = build_service_probe(SERVICES["chatgpt"], "api_only", client, ProbeSettings())
    result = asyncio.run(probe("conn", 100))

    assert result.ok is True
    assert client.urls() == [CHATGPT_WEB_URL]
    assert "has no api probe" in caplog.text


def test_build_service_probe_rejects_unknown_mode(make_client):
    with pytest.raises(ValueError):
        build_service_probe(SERVICES["claude"], "sideways", make_client(), ProbeSettings())


def test_build_strategy_multi_service_runs_in_parallel(make_client):
    client = make_client(
        {
            ANTHROPIC_API_URL: AUTH_ERROR,
            GEMINI_API_URL: ProbeResponse(403, "forbidden"),
        }
    )
    settings = ProbeSettings(services=("claude", "gemini"), mode="api_only")

    result = asyncio.run(build_strategy(settings, client)("conn", 100))

    assert result.ok is True
    assert result.conclusive is True
    assert result.targets == {"claude": True, "gemini": False}
    assert sorted(client.urls()) == sorted([ANTHROPIC_API_URL, GEMINI_API_URL])
