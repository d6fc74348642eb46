"""Pydantic schemas for the API key policies page."""

from typing import Annotated

from pydantic import BaseModel, Field, StringConstraints, field_validator

from schemas.api_key_policy import (
    DEFAULT_STICKY_WINDOW_SECONDS,
    ApiKeyPolicy,
    ModelFailoverRule,
    ModelRoutingRule,
)


class ModelOption(BaseModel):
    """A Claude model checkbox on the page."""
    id: str
    display_name: str | None = None
    allowed: bool = True


class PolicyFormState(BaseModel):
    allow_opus_46: bool
    opus_46_daily_limit: str
    excluded_exact: list[str]
    excluded_custom: list[str]
    failover_enabled: bool
    failover_target_model: str
    failover_rules: list[ModelFailoverRule]
    routing_rules: list[ModelRoutingRule]
    upstream_base_url: str


class NotificationItem(BaseModel):
    level: str  # success, error, info
    message: str


class PageSnapshot(BaseModel):
    status: str  # idle, loading, error
    error: str = ""
    controls_disabled: bool = False
    api_keys: list[str] = []
    selected_key: str = ""
    has_policy: bool = False
    form: PolicyFormState | None = None
    claude_models: list[ModelOption] = []
    codex_models: list[str] = []
    policy_count: int = 0
    dropped_policies: int = 0
    notifications: list[NotificationItem] = []


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class SelectKeyRequest(BaseModel):
    api_key: str


class FormUpdateRequest(BaseModel):
    """Partial form update; omitted fields are left unchanged."""
    allow_opus_46: bool | None = None
    opus_46_daily_limit: str | None = None
    failover_enabled: bool | None = None
    failover_target_model: str | None = None
    upstream_base_url: str | None = None
    excluded_custom: list[str] | None = None


class ToggleModelRequest(BaseModel):
    model_id: str
    allowed: bool


# Model names are trimmed before the length check, so "  " is rejected
ModelName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class FailoverRuleRequest(BaseModel):
    from_model: ModelName
    target_model: ModelName


class RoutingRuleRequest(BaseModel):
    enabled: bool = True
    from_model: ModelName
    target_model: ModelName
    target_percent: int = Field(default=0, ge=0, le=100)
    sticky_window_seconds: int = Field(default=DEFAULT_STICKY_WINDOW_SECONDS, ge=1)


class RoutingRuleUpdateRequest(BaseModel):
    enabled: bool | None = None
    from_model: ModelName | None = None
    target_model: ModelName | None = None
    target_percent: int | None = Field(default=None, ge=0, le=100)
    sticky_window_seconds: int | None = Field(default=None, ge=1)


class ReplacePoliciesRequest(BaseModel):
    policies: list[ApiKeyPolicy]

    @field_validator("policies")
    @classmethod
    def keys_must_be_unique(cls, policies: list[ApiKeyPolicy]) -> list[ApiKeyPolicy]:
        seen: set[str] = set()
        trimmed = []
        for i, p in enumerate(policies):
            key = p.api_key.strip()
            if not key:
                raise ValueError(f"policies[{i}] has a blank api_key")
            if key in seen:
                raise ValueError(f"policies[{i}] repeats api_key {key[:4]}...")
            seen.add(key)
            trimmed.append(p.model_copy(update={"api_key": key}))
        return trimmed
