"""Remote services probed through each node, and how their answers are judged.

A service exposes an API surface, a web surface, or both. API probes send a
deliberately invalid credential: a node that reaches the real API gets a
well-formed authentication error back, while a blocked node gets a block page,
a redirect or nothing at all.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

from egress_probe.classifier import (
    ResponsePolicy,
    anthropic_auth_error,
    anthropic_error_shape,
    compile_patterns,
    google_api_key_error,
)
from egress_probe.config import ProbeSettings
from egress_probe.transport import BROWSER_USER_AGENT

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/models"
CLAUDE_WEB_URL = "https://claude.ai"
GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models/gemini-pro?key=InvalidKey"
GEMINI_WEB_URL = "https://gemini.google.com/app?hl=en"
CHATGPT_WEB_URL = "https://chatgpt.com"

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8"

REGION_BLOCK_PATTERNS = (
    r"unsupported_country",
    r"region not supported",
    r"not (?:available|supported) in your (?:country|region)",
    r"isn[’']t (?:available|supported) in your (?:country|region)",
)

GOOGLE_BLOCK_PATTERNS = REGION_BLOCK_PATTERNS + (
    r"Our systems have detected unusual traffic",
    r"unusual traffic from your computer network",
    r"To continue, please verify",
    r"www\.google\.com/sorry",
    r"\bAccess denied\b",
    r"\bForbidden\b",
    r"This service is not available",
    r"无法在您所在的国家/地区使用",
    r"该服务在您所在的国家/地区不可用",
    r"不适用于您所在的国家/地区",
    r"此服务目前无法使用",
)

GOOGLE_SORRY_REDIRECT_PATTERNS = (r"google\.com/sorry", r"/sorry\b")

# OpenAI serves a 403 challenge page to many healthy nodes; only these
# markers mean the region itself is refused.
CHATGPT_BLOCK_PATTERNS = (
    r"unsupported_country",
    r"region not supported",
    r"\bnot (?:available|supported) in your (?:country|region|location)\b",
    r"\baccess denied\b",
    r"\b(?:vpn|proxy) (?:detected|not allowed|is not supported)\b",
    r"\bdisable your (?:vpn|proxy)\b",
)


@dataclass(frozen=True)
class ProbeTarget:
    """One URL to request through a node, with its judging policy."""

    name: str
    url: str
    policy: ResponsePolicy
    headers: Mapping[str, str] = field(default_factory=dict)


TargetBuilder = Callable[[ProbeSettings], ProbeTarget]


@dataclass(frozen=True)
class ServiceSpec:
    """A probed service: its surfaces, label prefix and cache namespace."""

    name: str
    prefix: str
    namespace: str
    api: Optional[TargetBuilder] = None
    web: Optional[TargetBuilder] = None


def _web_headers() -> Dict[str, str]:
    return {
        "User-Agent": BROWSER_USER_AGENT,
        "Accept": HTML_ACCEPT,
        "Accept-Language": "en-US,en;q=0.9",
    }


def anthropic_api_target(settings: ProbeSettings) -> ProbeTarget:
    allowed = set()
    if settings.allow_429:
        allowed.add(429)
    if settings.allow_529:
        allowed.add(529)
    policy = ResponsePolicy(
        strict=settings.strict,
        strict_statuses=frozenset({401}),
        strict_check=anthropic_auth_error,
        lenient_statuses=frozenset({400, 401, 403}),
        lenient_check=anthropic_error_shape,
        allowed_throttle_statuses=frozenset(allowed),
        throttle_check=anthropic_error_shape,
        deny_patterns=compile_patterns(REGION_BLOCK_PATTERNS),
    )
    return ProbeTarget(
        name="claude_api",
        url=ANTHROPIC_API_URL,
        policy=policy,
        headers={
            "User-Agent": BROWSER_USER_AGENT,
            "Accept": "application/json",
            "content-type": "application/json",
            "x-api-key": "sk-ant-invalid",
            "anthropic-version": settings.anthropic_version,
        },
    )


def claude_web_target(settings: ProbeSettings) -> ProbeTarget:
    statuses = frozenset(settings.web_ok_statuses)
    policy = ResponsePolicy(
        strict=settings.strict,
        strict_statuses=statuses,
        lenient_statuses=statuses,
        deny_patterns=compile_patterns(REGION_BLOCK_PATTERNS),
    )
    return ProbeTarget(name="claude_web", url=CLAUDE_WEB_URL, policy=policy, headers=_web_headers())


def gemini_api_target(settings: ProbeSettings) -> ProbeTarget:
    policy = ResponsePolicy(
        strict=settings.strict,
        strict_statuses=frozenset({400}),
        strict_check=google_api_key_error,
        lenient_statuses=frozenset({400}),
    )
    return ProbeTarget(
        name="gemini_api",
        url=GEMINI_API_URL,
        policy=policy,
        headers={"User-Agent": BROWSER_USER_AGENT, "Accept": "application/json"},
    )


def gemini_web_target(settings: ProbeSettings) -> ProbeTarget:
    statuses = frozenset(settings.web_ok_statuses)
    policy = ResponsePolicy(
        strict=settings.strict,
        strict_statuses=statuses,
        lenient_statuses=statuses,
        deny_patterns=compile_patterns(GOOGLE_BLOCK_PATTERNS),
        redirect_deny_patterns=compile_patterns(GOOGLE_SORRY_REDIRECT_PATTERNS),
    )
    headers = _web_headers()
    headers["Accept-Language"] = "en-US,en;q=0.9,zh-CN;q=0.8"
    return ProbeTarget(
        name="gemini_web",
        url=settings.gemini_web_url or GEMINI_WEB_URL,
        policy=policy,
        headers=headers,
    )


def chatgpt_web_target(settings: ProbeSettings) -> ProbeTarget:
    statuses = frozenset({200, 302, 403, 429})
    policy = ResponsePolicy(
        strict=settings.strict,
        strict_statuses=statuses,
        lenient_statuses=statuses,
        allowed_throttle_statuses=frozenset({429}),
        deny_patterns=compile_patterns(CHATGPT_BLOCK_PATTERNS),
        deny_statuses=frozenset({403}),
    )
    return ProbeTarget(name="chatgpt_web", url=CHATGPT_WEB_URL, policy=policy, headers=_web_headers())


SERVICES: Dict[str, ServiceSpec] = {
    "claude": ServiceSpec(
        name="claude",
        prefix="[Claude] ",
        namespace="claude_check_v4",
        api=anthropic_api_target,
        web=claude_web_target,
    ),
    "gemini": ServiceSpec(
        name="gemini",
        prefix="[Gemini] ",
        namespace="gemini_check_v4",
        api=gemini_api_target,
        web=gemini_web_target,
    ),
    "chatgpt": ServiceSpec(
        name="chatgpt",
        prefix="[GPT] ",
        namespace="gpt_check_v3",
        web=chatgpt_web_target,
    ),
}


def get_service(name: str) -> ServiceSpec:
    try:
        return SERVICES[name]
    except KeyError:
        raise ValueError(
            f"Unknown service {name!r}; expected one of {', '.join(sorted(SERVICES))}"
        ) from None


def cache_namespace(service_names) -> str:
    """Namespace shared by all keys of one service (or service combination)."""
    names = list(service_names)
    if len(names) == 1:
        return get_service(names[0]).namespace
    return "multi_check_v1_" + "+".join(sorted(names))


__all__ = [
    "ProbeTarget",
    "SERVICES",
    "ServiceSpec",
    "anthropic_api_target",
    "cache_namespace",
    "chatgpt_web_target",
    "claude_web_target",
    "gemini_api_target",
    "gemini_web_target",
    "get_service",
]
