# Tests for policy wire normalization and serialization

import math

import pytest

from schemas.api_key_policy import (
    DEFAULT_FAILOVER_TARGET_MODEL,
    ApiKeyPolicy,
    ModelFailoverRule,
    ModelRoutingRule,
)
from services.policy_codec import (
    PolicyValidationError,
    normalize_policy,
    normalize_policy_list,
    parse_policy,
    policy_to_dto,
)


def _routing(**overrides) -> dict:
    rule = {"from-model": "claude-opus-4-6", "target-model": "gpt-5.2-codex"}
    rule.update(overrides)
    return rule


def _routing_policy(*rules) -> dict:
    return {"api-key": "sk-1", "model-routing": {"rules": list(rules)}}


# ===== Record-level validation =====


class TestRecordValidation:
    @pytest.mark.parametrize("raw", [None, "sk-1", 42, [], ["api-key"], True])
    def test_non_object_records_are_rejected(self, raw):
        assert normalize_policy(raw) is None
        with pytest.raises(PolicyValidationError):
            parse_policy(raw)

    @pytest.mark.parametrize("api_key", [None, "", "   ", "\t\n"])
    def test_missing_or_blank_api_key_is_rejected(self, api_key):
        assert normalize_policy({"api-key": api_key}) is None

    def test_record_without_api_key_field_is_rejected(self):
        assert normalize_policy({"excluded-models": ["x"]}) is None

    def test_minimal_record_gets_every_default(self):
        policy = normalize_policy({"api-key": "  sk-1  "})

        assert policy == ApiKeyPolicy(
            api_key="sk-1",
            upstream_base_url="",
            excluded_models=[],
            allow_claude_opus_46=True,
            daily_limits={},
            model_routing_rules=[],
            claude_failover_enabled=False,
            claude_failover_target_model="",
            claude_failover_rules=[],
        )

    def test_unknown_fields_are_ignored(self):
        policy = normalize_policy({"api-key": "sk-1", "priority": 7, "note": {"a": 1}})
        assert policy is not None
        assert policy.api_key == "sk-1"

    def test_numeric_api_key_is_stringified(self):
        assert normalize_policy({"api-key": 12345}).api_key == "12345"


# ===== Scalar fields =====


class TestScalarFields:
    def test_upstream_base_url_is_trimmed(self):
        policy = normalize_policy({"api-key": "k", "upstream-base-url": "  https://up.example/  "})
        assert policy.upstream_base_url == "https://up.example/"

    def test_excluded_models_are_trimmed_and_empties_dropped(self):
        policy = normalize_policy({"api-key": "k", "excluded-models": [" claude-* ", "", "  ", 7, None]})
        assert policy.excluded_models == ["claude-*", "7"]

    def test_excluded_models_must_be_a_list(self):
        policy = normalize_policy({"api-key": "k", "excluded-models": "claude-*"})
        assert policy.excluded_models == []

    @pytest.mark.parametrize(
        "raw, expected",
        [(True, True), (False, False), (None, True), (0, False), (1, True), ("", False), ("no", True)],
    )
    def test_allow_opus_coercion(self, raw, expected):
        policy = normalize_policy({"api-key": "k", "allow-claude-opus-4-6": raw})
        assert policy.allow_claude_opus_46 is expected

    def test_allow_opus_defaults_true_when_absent(self):
        assert normalize_policy({"api-key": "k"}).allow_claude_opus_46 is True


# ===== Daily limits =====


class TestDailyLimits:
    def test_keys_are_lower_cased_and_values_floored(self):
        policy = normalize_policy({"api-key": "k", "daily-limits": {"Claude-Opus-4-6": 10.9, "gpt-5": "25"}})
        assert policy.daily_limits == {"claude-opus-4-6": 10, "gpt-5": 25}

    @pytest.mark.parametrize("value", [0, -3, 0.5, "abc", None, True, math.inf, "Infinity", math.nan, [], {}])
    def test_invalid_values_are_dropped(self, value):
        policy = normalize_policy({"api-key": "k", "daily-limits": {"m": value}})
        assert policy.daily_limits == {}

    def test_colliding_keys_last_one_wins(self):
        policy = normalize_policy(
            {"api-key": "k", "daily-limits": {"Claude-Opus-4-6": 5, "claude-opus-4-6": 9}}
        )
        assert policy.daily_limits == {"claude-opus-4-6": 9}

    def test_blank_key_is_dropped(self):
        policy = normalize_policy({"api-key": "k", "daily-limits": {"  ": 5}})
        assert policy.daily_limits == {}

    @pytest.mark.parametrize("raw", [[1, 2], "claude=5", 10])
    def test_non_mapping_is_ignored(self, raw):
        assert normalize_policy({"api-key": "k", "daily-limits": raw}).daily_limits == {}

    def test_numeric_strings_follow_number_parsing(self):
        policy = normalize_policy(
            {"api-key": "k", "daily-limits": {"a": " 12 ", "b": "1e2", "c": "0x10", "d": "12abc"}}
        )
        assert policy.daily_limits == {"a": 12, "b": 100, "c": 16}


# ===== Failover =====


class TestFailover:
    def test_enabled_without_target_uses_default_model(self):
        policy = normalize_policy({"api-key": "k", "failover": {"claude": {"enabled": True, "target-model": "  "}}})
        assert policy.claude_failover_enabled is True
        assert policy.claude_failover_target_model == DEFAULT_FAILOVER_TARGET_MODEL == "gpt-5.2(high)"

    def test_disabled_keeps_target_as_given(self):
        policy = normalize_policy({"api-key": "k", "failover": {"claude": {"enabled": False}}})
        assert policy.claude_failover_enabled is False
        assert policy.claude_failover_target_model == ""

    def test_enabled_is_coerced(self):
        policy = normalize_policy(
            {"api-key": "k", "failover": {"claude": {"enabled": 1, "target-model": " gpt-5.2-codex "}}}
        )
        assert policy.claude_failover_enabled is True
        assert policy.claude_failover_target_model == "gpt-5.2-codex"

    def test_rules_missing_a_model_are_dropped(self):
        policy = normalize_policy({
            "api-key": "k",
            "failover": {"claude": {"enabled": True, "rules": [
                {"from-model": "claude-opus-*", "target-model": "gpt-5.2(high)"},
                {"from-model": "x"},
                {"target-model": "y"},
                {"from-model": "  ", "target-model": "y"},
                "claude-*",
                None,
            ]}},
        })
        assert policy.claude_failover_rules == [
            ModelFailoverRule(from_model="claude-opus-*", target_model="gpt-5.2(high)")
        ]

    @pytest.mark.parametrize("failover", [None, [], "on", {"claude": []}, {"claude": "yes"}, {"codex": {"enabled": True}}])
    def test_malformed_failover_blocks_fall_back_to_disabled(self, failover):
        policy = normalize_policy({"api-key": "k", "failover": failover})
        assert policy.claude_failover_enabled is False
        assert policy.claude_failover_rules == []


# ===== Model routing =====


class TestModelRouting:
    @pytest.mark.parametrize("raw, expected", [(150.7, 100), (-5, 0), (37.9, 37), ("42", 42), ("abc", 0), (None, 0)])
    def test_target_percent_is_clamped_and_floored(self, raw, expected):
        policy = normalize_policy(_routing_policy(_routing(**{"target-percent": raw})))
        assert policy.model_routing_rules[0].target_percent == expected

    def test_target_percent_defaults_to_zero(self):
        policy = normalize_policy(_routing_policy(_routing()))
        assert policy.model_routing_rules[0].target_percent == 0

    @pytest.mark.parametrize("raw, expected", [(0, 3600), (-10, 3600), ("abc", 3600), (None, 3600), ("7200", 7200), (90.9, 90)])
    def test_sticky_window_defaults_and_floors(self, raw, expected):
        policy = normalize_policy(_routing_policy(_routing(**{"sticky-window-seconds": raw})))
        assert policy.model_routing_rules[0].sticky_window_seconds == expected

    def test_enabled_defaults_to_true(self):
        policy = normalize_policy(_routing_policy(_routing(), _routing(enabled=None), _routing(enabled=False)))
        assert [r.enabled for r in policy.model_routing_rules] == [True, True, False]

    def test_incomplete_rules_are_dropped_and_order_kept(self):
        policy = normalize_policy(_routing_policy(
            _routing(**{"from-model": "a", "target-percent": 10}),
            {"from-model": "x"},
            {"target-model": "y"},
            _routing(**{"from-model": "b", "target-percent": 20}),
            [1, 2],
        ))
        assert [r.from_model for r in policy.model_routing_rules] == ["a", "b"]

    @pytest.mark.parametrize("routing", [None, [], {"rules": "all"}, {"rules": {"from-model": "a"}}])
    def test_malformed_routing_blocks_yield_no_rules(self, routing):
        assert normalize_policy({"api-key": "k", "model-routing": routing}).model_routing_rules == []


# ===== List normalization =====


class TestNormalizePolicyList:
    def test_counts_dropped_records(self):
        result = normalize_policy_list([{"api-key": "a"}, {"api-key": ""}, "junk", {"api-key": "b"}])
        assert [p.api_key for p in result.policies] == ["a", "b"]
        assert result.dropped == 2

    @pytest.mark.parametrize("raw", [None, {}, "policies"])
    def test_non_list_is_empty(self, raw):
        result = normalize_policy_list(raw)
        assert result.policies == []
        assert result.dropped == 0


# ===== Serialization =====


def _full_policy() -> ApiKeyPolicy:
    return ApiKeyPolicy(
        api_key="sk-1",
        upstream_base_url="https://up.example",
        excluded_models=["claude-3-*", "claude-sonnet-4-5"],
        allow_claude_opus_46=False,
        daily_limits={"claude-opus-4-6": 50},
        model_routing_rules=[
            ModelRoutingRule(from_model="claude-opus-4-6", target_model="gpt-5.2-codex", target_percent=30),
            ModelRoutingRule(enabled=False, from_model="claude-*", target_model="gpt-5", sticky_window_seconds=60),
        ],
        claude_failover_enabled=True,
        claude_failover_target_model="gpt-5.2-codex",
        claude_failover_rules=[ModelFailoverRule(from_model="claude-opus-*", target_model="gpt-5.2(high)")],
    )


class TestPolicyToDto:
    def test_wire_shape(self):
        assert policy_to_dto(_full_policy()) == {
            "api-key": "sk-1",
            "upstream-base-url": "https://up.example",
            "excluded-models": ["claude-3-*", "claude-sonnet-4-5"],
            "allow-claude-opus-4-6": False,
            "daily-limits": {"claude-opus-4-6": 50},
            "model-routing": {"rules": [
                {
                    "enabled": True,
                    "from-model": "claude-opus-4-6",
                    "target-model": "gpt-5.2-codex",
                    "target-percent": 30,
                    "sticky-window-seconds": 3600,
                },
                {
                    "enabled": False,
                    "from-model": "claude-*",
                    "target-model": "gpt-5",
                    "target-percent": 0,
                    "sticky-window-seconds": 60,
                },
            ]},
            "failover": {"claude": {
                "enabled": True,
                "target-model": "gpt-5.2-codex",
                "rules": [{"from-model": "claude-opus-*", "target-model": "gpt-5.2(high)"}],
            }},
        }

    def test_round_trip_is_stable(self):
        dto = policy_to_dto(_full_policy())
        assert policy_to_dto(normalize_policy(dto)) == dto

    def test_round_trip_of_defaults_is_stable(self):
        dto = policy_to_dto(ApiKeyPolicy(api_key="sk-2"))
        assert policy_to_dto(normalize_policy(dto)) == dto

    def test_directly_mutated_rules_are_resanitized(self):
        policy = _full_policy()
        policy.model_routing_rules[0].target_percent = 250
        policy.model_routing_rules[1].sticky_window_seconds = 0
        policy.model_routing_rules.append(ModelRoutingRule.model_construct(from_model="x", target_model=""))
        policy.claude_failover_rules[0].target_model = "   "

        dto = policy_to_dto(policy)

        rules = dto["model-routing"]["rules"]
        assert [r["target-percent"] for r in rules] == [100, 0]
        assert rules[1]["sticky-window-seconds"] == 1
        assert dto["failover"]["claude"]["rules"] == []
        assert policy_to_dto(normalize_policy(dto)) == dto

    def test_enabled_failover_without_target_gets_default(self):
        dto = policy_to_dto(ApiKeyPolicy(api_key="k", claude_failover_enabled=True))
        assert dto["failover"]["claude"]["target-model"] == "gpt-5.2(high)"
