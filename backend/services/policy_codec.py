"""
Policy codec: converts loosely-typed management API records into
ApiKeyPolicy objects and back into the kebab-case wire shape.

Wire records come from a JSON API that other tools also write to, so every
field is probed defensively: wrong types fall back to defaults, incomplete
rules are dropped, numbers are coerced and clamped. The number and string
coercions mirror what the management web UI does, so both sides agree on
what a stored policy means.
"""

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from schemas.api_key_policy import (
    DEFAULT_FAILOVER_TARGET_MODEL,
    DEFAULT_STICKY_WINDOW_SECONDS,
    ApiKeyPolicy,
    ModelFailoverRule,
    ModelRoutingRule,
)


class PolicyValidationError(ValueError):
    """Raised when a wire record cannot be turned into a policy."""


@dataclass
class NormalizedPolicies:
    """Result of normalizing a list of wire records."""
    policies: list[ApiKeyPolicy] = field(default_factory=list)
    dropped: int = 0


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

_DECIMAL_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_RADIX_PREFIXES = {"0x": 16, "0o": 8, "0b": 2}


def _to_text(value: Any) -> str:
    """Stringify a JSON scalar the way the web UI does, then trim."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def to_number(value: Any) -> float:
    """Coerce a value to a float the way the web UI's Number() does; NaN when it is not numeric."""
    if isinstance(value, bool):
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return math.nan

    text = value.strip()
    if not text:
        return 0.0
    if _DECIMAL_RE.match(text):
        return float(text)
    if text in ("Infinity", "+Infinity"):
        return math.inf
    if text == "-Infinity":
        return -math.inf
    base = _RADIX_PREFIXES.get(text[:2].lower())
    if base:
        try:
            return float(int(text[2:], base))
        except ValueError:
            return math.nan
    return math.nan


def _truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _bool_or_default(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return _truthy(value)


def _clamp_percent(value: Any) -> int:
    num = to_number(value)
    if not math.isfinite(num):
        return 0
    return max(0, min(100, math.floor(num)))


def _sticky_window(value: Any) -> int:
    num = to_number(value)
    if math.isfinite(num) and num > 0:
        return math.floor(num)
    return DEFAULT_STICKY_WINDOW_SECONDS


def _excluded_models(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [m for m in (_to_text(item) for item in value) if m]


def _daily_limits(value: Any) -> dict[str, int]:
    limits: dict[str, int] = {}
    if not isinstance(value, Mapping):
        return limits
    for raw_key, raw_value in value.items():
        key = _to_text(raw_key).lower()
        num = to_number(raw_value)
        if key and math.isfinite(num) and math.floor(num) > 0:
            limits[key] = math.floor(num)
    return limits


# ---------------------------------------------------------------------------
# Wire → policy
# ---------------------------------------------------------------------------

def _parse_failover_rule(raw: Any) -> ModelFailoverRule | None:
    if not isinstance(raw, Mapping):
        return None
    from_model = _to_text(raw.get("from-model"))
    target_model = _to_text(raw.get("target-model"))
    if not from_model or not target_model:
        return None
    return ModelFailoverRule(from_model=from_model, target_model=target_model)


def _parse_routing_rule(raw: Any) -> ModelRoutingRule | None:
    if not isinstance(raw, Mapping):
        return None
    from_model = _to_text(raw.get("from-model"))
    target_model = _to_text(raw.get("target-model"))
    if not from_model or not target_model:
        return None
    return ModelRoutingRule(
        enabled=_bool_or_default(raw.get("enabled"), True),
        from_model=from_model,
        target_model=target_model,
        target_percent=_clamp_percent(raw.get("target-percent", "")),
        sticky_window_seconds=_sticky_window(raw.get("sticky-window-seconds", "")),
    )


def parse_policy(raw: Any) -> ApiKeyPolicy:
    """Parse one wire record into an ApiKeyPolicy.

    Raises:
        PolicyValidationError: if ``raw`` is not an object or has no api-key.
    """
    if not isinstance(raw, Mapping):
        raise PolicyValidationError(f"policy record must be an object, got {type(raw).__name__}")

    api_key = _to_text(raw.get("api-key"))
    if not api_key:
        raise PolicyValidationError("policy record has no api-key")

    failover_enabled = False
    failover_target = ""
    failover_rules: list[ModelFailoverRule] = []
    failover = raw.get("failover")
    if isinstance(failover, Mapping):
        claude = failover.get("claude")
        if isinstance(claude, Mapping):
            failover_enabled = _truthy(claude.get("enabled"))
            failover_target = _to_text(claude.get("target-model"))
            rules = claude.get("rules")
            if isinstance(rules, list):
                failover_rules = [r for r in map(_parse_failover_rule, rules) if r]
    if failover_enabled and not failover_target:
        failover_target = DEFAULT_FAILOVER_TARGET_MODEL

    routing_rules: list[ModelRoutingRule] = []
    routing = raw.get("model-routing")
    if isinstance(routing, Mapping):
        rules = routing.get("rules")
        if isinstance(rules, list):
            routing_rules = [r for r in map(_parse_routing_rule, rules) if r]

    return ApiKeyPolicy(
        api_key=api_key,
        upstream_base_url=_to_text(raw.get("upstream-base-url")),
        excluded_models=_excluded_models(raw.get("excluded-models")),
        allow_claude_opus_46=_bool_or_default(raw.get("allow-claude-opus-4-6"), True),
        daily_limits=_daily_limits(raw.get("daily-limits")),
        model_routing_rules=routing_rules,
        claude_failover_enabled=failover_enabled,
        claude_failover_target_model=failover_target,
        claude_failover_rules=failover_rules,
    )


def normalize_policy(raw: Any) -> ApiKeyPolicy | None:
    """Like parse_policy, but returns None for records that fail validation."""
    try:
        return parse_policy(raw)
    except PolicyValidationError:
        return None


def normalize_policy_list(raw: Any) -> NormalizedPolicies:
    """Normalize a list of wire records, counting the ones that were dropped."""
    result = NormalizedPolicies()
    if not isinstance(raw, list):
        return result
    for item in raw:
        policy = normalize_policy(item)
        if policy is None:
            result.dropped += 1
        else:
            result.policies.append(policy)
    return result


# ---------------------------------------------------------------------------
# Policy → wire
# ---------------------------------------------------------------------------

def _serialize_window(value: Any) -> int:
    num = to_number(value)
    if not math.isfinite(num):
        return DEFAULT_STICKY_WINDOW_SECONDS
    return max(1, math.floor(num))


def policy_to_dto(policy: ApiKeyPolicy) -> dict[str, Any]:
    """Serialize a policy to the management API wire shape.

    Rule lists are sanitized again on the way out, since fields of a pydantic
    model can be assigned without validation.
    """
    routing_rules = []
    for rule in policy.model_routing_rules or []:
        if rule is None:
            continue
        dto = {
            "enabled": _bool_or_default(getattr(rule, "enabled", None), True),
            "from-model": _to_text(getattr(rule, "from_model", None)),
            "target-model": _to_text(getattr(rule, "target_model", None)),
            "target-percent": _clamp_percent(getattr(rule, "target_percent", 0)),
            "sticky-window-seconds": _serialize_window(
                getattr(rule, "sticky_window_seconds", DEFAULT_STICKY_WINDOW_SECONDS)
            ),
        }
        if dto["from-model"] and dto["target-model"]:
            routing_rules.append(dto)

    failover_rules = []
    for rule in policy.claude_failover_rules or []:
        if rule is None:
            continue
        dto = {
            "from-model": _to_text(getattr(rule, "from_model", None)),
            "target-model": _to_text(getattr(rule, "target_model", None)),
        }
        if dto["from-model"] and dto["target-model"]:
            failover_rules.append(dto)

    failover_enabled = _truthy(policy.claude_failover_enabled)
    failover_target = _to_text(policy.claude_failover_target_model)
    if failover_enabled and not failover_target:
        failover_target = DEFAULT_FAILOVER_TARGET_MODEL

    return {
        "api-key": _to_text(policy.api_key),
        "upstream-base-url": _to_text(policy.upstream_base_url),
        "excluded-models": _excluded_models(policy.excluded_models),
        "allow-claude-opus-4-6": _bool_or_default(policy.allow_claude_opus_46, True),
        "daily-limits": _daily_limits(policy.daily_limits),
        "model-routing": {"rules": routing_rules},
        "failover": {
            "claude": {
                "enabled": failover_enabled,
                "target-model": failover_target,
                "rules": failover_rules,
            }
        },
    }
