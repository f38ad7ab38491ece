"""Pure classification of probe responses.

``classify`` maps one HTTP response to ``ACCEPT`` or ``REJECT`` under a
``ResponsePolicy``. Transport failures never reach the classifier; probes map
them to ``INCONCLUSIVE`` directly.

Evaluation order:

1. Throttling statuses (429/529 by default) reject unless explicitly allowed,
   in which case the policy's ``throttle_check`` must pass.
2. Body deny patterns reject, whatever the strictness.
3. ``Location`` deny patterns reject 3xx responses.
4. The status must be in the strict or lenient allow-list, and the matching
   body check (if any) must pass.
"""

import enum
import re
from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, Optional, Pattern, Sequence, Tuple

from egress_probe.transport import ProbeResponse

BodyCheck = Callable[[ProbeResponse], bool]

THROTTLE_STATUSES: FrozenSet[int] = frozenset({429, 529})


class Verdict(enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    INCONCLUSIVE = "inconclusive"


@dataclass(frozen=True)
class ResponsePolicy:
    """How a target's responses are judged.

    Attributes:
        strict: Select the strict allow-list and check.
        strict_statuses: Statuses acceptable in strict mode.
        strict_check: Body validation applied in strict mode.
        lenient_statuses: Statuses acceptable in permissive mode.
        lenient_check: Body validation applied in permissive mode.
        throttle_statuses: Rate-limit/overload statuses never accepted by
            default.
        allowed_throttle_statuses: Throttle statuses that may still accept.
        throttle_check: Body validation for allowed throttle statuses.
        deny_patterns: Body markers that force a reject.
        deny_statuses: Restrict ``deny_patterns`` to these statuses (None
            means every status).
        redirect_deny_patterns: ``Location`` markers that reject a 3xx.
    """

    strict: bool = True
    strict_statuses: FrozenSet[int] = frozenset()
    strict_check: Optional[BodyCheck] = None
    lenient_statuses: FrozenSet[int] = frozenset()
    lenient_check: Optional[BodyCheck] = None
    throttle_statuses: FrozenSet[int] = THROTTLE_STATUSES
    allowed_throttle_statuses: FrozenSet[int] = frozenset()
    throttle_check: Optional[BodyCheck] = None
    deny_patterns: Tuple[Pattern[str], ...] = ()
    deny_statuses: Optional[FrozenSet[int]] = None
    redirect_deny_patterns: Tuple[Pattern[str], ...] = ()


def compile_patterns(patterns: Sequence[str], flags: int = re.IGNORECASE) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(pattern, flags) for pattern in patterns)


def matches_any(text: str, patterns: Sequence[Pattern[str]]) -> bool:
    return any(pattern.search(text or "") for pattern in patterns)


def _check(check: Optional[BodyCheck], response: ProbeResponse) -> bool:
    return True if check is None else bool(check(response))


def classify(response: ProbeResponse, policy: ResponsePolicy) -> Verdict:
    """Classify one response. Identical inputs always yield the same verdict."""
    status = response.status

    if status in policy.throttle_statuses:
        if status in policy.allowed_throttle_statuses and _check(policy.throttle_check, response):
            return Verdict.ACCEPT
        return Verdict.REJECT

    if policy.deny_patterns and (
        policy.deny_statuses is None or status in policy.deny_statuses
    ):
        if matches_any(response.body, policy.deny_patterns):
            return Verdict.REJECT

    if 300 <= status < 400 and policy.redirect_deny_patterns:
        if matches_any(response.header("location"), policy.redirect_deny_patterns):
            return Verdict.REJECT

    if policy.strict:
        statuses, check = policy.strict_statuses, policy.strict_check
    else:
        statuses, check = policy.lenient_statuses, policy.lenient_check

    if status not in statuses:
        return Verdict.REJECT
    return Verdict.ACCEPT if _check(check, response) else Verdict.REJECT


# --- body checks --------------------------------------------------------------


def _anthropic_error_payload(response: ProbeResponse) -> Optional[dict]:
    payload: Any = response.json()
    if not isinstance(payload, dict) or payload.get("type") != "error":
        return None
    error = payload.get("error")
    if not isinstance(error, dict):
        return None
    if not isinstance(error.get("type"), str) or not isinstance(error.get("message"), str):
        return None
    return error


def anthropic_error_shape(response: ProbeResponse) -> bool:
    """``{"type": "error", "error": {"type": str, "message": str}}``."""
    return _anthropic_error_payload(response) is not None


def anthropic_auth_error(response: ProbeResponse) -> bool:
    """Anthropic error envelope whose ``error.type`` is ``authentication_error``."""
    error = _anthropic_error_payload(response)
    return error is not None and error.get("type") == "authentication_error"


_API_KEY_RE = re.compile(r"api key", re.IGNORECASE)
_KEY_INVALID_RE = re.compile(r"not valid|invalid", re.IGNORECASE)


def google_api_key_error(response: ProbeResponse) -> bool:
    """Google API error JSON, or an "API key not valid" message."""
    payload: Any = response.json()
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and (error.get("code") == 400 or error.get("status")):
            return True
    body = response.body or ""
    return bool(_API_KEY_RE.search(body) and _KEY_INVALID_RE.search(body))


__all__ = [
    "BodyCheck",
    "ResponsePolicy",
    "THROTTLE_STATUSES",
    "Verdict",
    "anthropic_auth_error",
    "anthropic_error_shape",
    "classify",
    "compile_patterns",
    "google_api_key_error",
    "matches_any",
]
