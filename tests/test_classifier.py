import json

import pytest

from egress_probe.classifier import (
    ResponsePolicy,
    Verdict,
    anthropic_auth_error,
    anthropic_error_shape,
    classify,
    compile_patterns,
    google_api_key_error,
)
from egress_probe.config import ProbeSettings
from egress_probe.targets import (
    anthropic_api_target,
    chatgpt_web_target,
    claude_web_target,
    gemini_api_target,
    gemini_web_target,
)
from egress_probe.transport import ProbeResponse

AUTH_ERROR_BODY = json.dumps(
    {"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}}
)
PERMISSION_ERROR_BODY = json.dumps(
    {"type": "error", "error": {"type": "permission_error", "message": "nope"}}
)
REGION_BLOCK_BODY = json.dumps(
    {"type": "error", "error": {"type": "forbidden", "message": "Request not allowed: unsupported_country"}}
)


def _api_policy(**overrides):
    return anthropic_api_target(ProbeSettings(**overrides)).policy


def test_strict_api_accepts_401_authentication_error():
    response = ProbeResponse(status=401, body=AUTH_ERROR_BODY)

    assert classify(response, _api_policy(strict=True)) is Verdict.ACCEPT


@pytest.mark.parametrize("strict", [True, False])
def test_region_marker_rejects_in_both_modes(strict):
    response = ProbeResponse(status=403, body=REGION_BLOCK_BODY)

    assert classify(response, _api_policy(strict=strict)) is Verdict.REJECT


def test_strict_api_rejects_other_error_types_and_statuses():
    policy = _api_policy(strict=True)

    assert classify(ProbeResponse(401, PERMISSION_ERROR_BODY), policy) is Verdict.REJECT
    assert classify(ProbeResponse(403, AUTH_ERROR_BODY), policy) is Verdict.REJECT
    assert classify(ProbeResponse(401, "<html>login</html>"), policy) is Verdict.REJECT


def test_lenient_api_accepts_error_envelope_on_400_401_403():
    policy = _api_policy(strict=False)

    for status in (400, 401, 403):
        assert classify(ProbeResponse(status, PERMISSION_ERROR_BODY), policy) is Verdict.ACCEPT
    assert classify(ProbeResponse(200, PERMISSION_ERROR_BODY), policy) is Verdict.REJECT
    assert classify(ProbeResponse(403, "<html>blocked</html>"), policy) is Verdict.REJECT


def test_throttle_statuses_reject_unless_allowed():
    overloaded = ProbeResponse(529, json.dumps({"type": "error", "error": {"type": "overloaded_error", "message": "busy"}}))
    limited = ProbeResponse(429, json.dumps({"type": "error", "error": {"type": "rate_limit_error", "message": "slow"}}))

    assert classify(overloaded, _api_policy()) is Verdict.REJECT
    assert classify(limited, _api_policy()) is Verdict.REJECT
    assert classify(overloaded, _api_policy(allow_529=True)) is Verdict.ACCEPT
    assert classify(limited, _api_policy(allow_429=True)) is Verdict.ACCEPT
    # allowed throttle still needs a well-formed envelope
    assert classify(ProbeResponse(429, "busy"), _api_policy(allow_429=True)) is Verdict.REJECT


def test_classify_is_deterministic():
    response = ProbeResponse(status=401, body=AUTH_ERROR_BODY)
    policy = _api_policy()

    assert {classify(response, policy) for _ in range(5)} == {Verdict.ACCEPT}


def test_claude_web_uses_ok_statuses_and_region_markers():
    policy = claude_web_target(ProbeSettings(web_ok_statuses=(200, 302))).policy

    assert classify(ProbeResponse(200, "<html>Claude</html>"), policy) is Verdict.ACCEPT
    assert classify(ProbeResponse(302, "", {"location": "/login"}), policy) is Verdict.ACCEPT
    assert classify(ProbeResponse(403, "<html>Forbidden</html>"), policy) is Verdict.REJECT
    assert (
        classify(ProbeResponse(200, "App unavailable: region not supported"), policy)
        is Verdict.REJECT
    )


def test_gemini_api_strict_requires_google_error():
    strict = gemini_api_target(ProbeSettings(strict=True)).policy
    lenient = gemini_api_target(ProbeSettings(strict=False)).policy
    google_error = ProbeResponse(
        400,
        json.dumps({"error": {"code": 400, "message": "API key not valid.", "status": "INVALID_ARGUMENT"}}),
    )
    plain = ProbeResponse(400, "Bad Request")

    assert classify(google_error, strict) is Verdict.ACCEPT
    assert classify(plain, strict) is Verdict.REJECT
    assert classify(plain, lenient) is Verdict.ACCEPT
    assert classify(ProbeResponse(403, "denied"), lenient) is Verdict.REJECT


def test_gemini_web_rejects_sorry_redirect_and_block_page():
    policy = gemini_web_target(ProbeSettings()).policy

    sorry = ProbeResponse(302, "", {"Location": "https://www.google.com/sorry/index?continue=x"})
    login = ProbeResponse(302, "", {"Location": "https://accounts.google.com/ServiceLogin"})
    block = ProbeResponse(200, "Gemini isn't available in your country")

    assert classify(sorry, policy) is Verdict.REJECT
    assert classify(login, policy) is Verdict.ACCEPT
    assert classify(block, policy) is Verdict.REJECT
    assert classify(ProbeResponse(200, "<html>Gemini</html>"), policy) is Verdict.ACCEPT


def test_chatgpt_web_only_denies_403_with_region_markers():
    policy = chatgpt_web_target(ProbeSettings()).policy

    assert classify(ProbeResponse(403, "<html>Just a moment...</html>"), policy) is Verdict.ACCEPT
    assert classify(ProbeResponse(403, "unsupported_country"), policy) is Verdict.REJECT
    assert classify(ProbeResponse(200, "choose your location"), policy) is Verdict.ACCEPT
    assert classify(ProbeResponse(429, "slow down"), policy) is Verdict.ACCEPT
    assert classify(ProbeResponse(500, "oops"), policy) is Verdict.REJECT


@pytest.mark.parametrize(
    "body",
    [
        "<script>window.location.href = '/c/challenge';</script>",
        "<script>var proxyUrl = '/cdn-cgi/challenge-platform';</script>",
        '<meta name="country-code" content="US">',
    ],
)
def test_chatgpt_challenge_page_script_is_not_a_region_block(body):
    policy = chatgpt_web_target(ProbeSettings()).policy

    assert classify(ProbeResponse(403, body), policy) is Verdict.ACCEPT


@pytest.mark.parametrize(
    "body",
    [
        "ChatGPT is not available in your country.",
        "Access denied",
        "VPN detected. Please disable your VPN and try again.",
    ],
)
def test_chatgpt_region_block_phrases_reject(body):
    policy = chatgpt_web_target(ProbeSettings()).policy

    assert classify(ProbeResponse(403, body), policy) is Verdict.REJECT


def test_custom_policy_evaluation_order():
    policy = ResponsePolicy(
        strict=False,
        lenient_statuses=frozenset({200}),
        deny_patterns=compile_patterns(["blocked"]),
        redirect_deny_patterns=compile_patterns(["/sorry"]),
    )

    assert classify(ProbeResponse(200, "ok"), policy) is Verdict.ACCEPT
    assert classify(ProbeResponse(200, "BLOCKED here"), policy) is Verdict.REJECT
    assert classify(ProbeResponse(301, "", {"location": "/sorry"}), policy) is Verdict.REJECT
    assert classify(ProbeResponse(429, "ok"), policy) is Verdict.REJECT


def test_body_checks():
    assert anthropic_error_shape(ProbeResponse(400, PERMISSION_ERROR_BODY)) is True
    assert anthropic_auth_error(ProbeResponse(401, PERMISSION_ERROR_BODY)) is False
    assert anthropic_auth_error(ProbeResponse(401, AUTH_ERROR_BODY)) is True
    assert anthropic_error_shape(ProbeResponse(400, '{"type": "error", "error": "x"}')) is False
    assert anthropic_error_shape(ProbeResponse(400, "not json")) is False

    assert google_api_key_error(ProbeResponse(400, "API key not valid. Please pass a valid API key.")) is True
    assert google_api_key_error(ProbeResponse(400, '{"error": {"code": 400}}')) is True
    assert google_api_key_error(ProbeResponse(400, "<html>Error 400</html>")) is False
