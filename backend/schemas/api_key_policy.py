"""Pydantic schemas for API key policies (internal shape)."""

from pydantic import BaseModel, Field


DEFAULT_FAILOVER_TARGET_MODEL = "gpt-5.2(high)"
DEFAULT_STICKY_WINDOW_SECONDS = 3600
OPUS_46_MODEL_ID = "claude-opus-4-6"


class ModelFailoverRule(BaseModel):
    """Overrides the default failover target for models matching ``from_model``."""
    from_model: str
    target_model: str


class ModelRoutingRule(BaseModel):
    """Sends ``target_percent`` of sticky windows for ``from_model`` to ``target_model``."""
    enabled: bool = True
    from_model: str
    target_model: str
    target_percent: int = 0
    sticky_window_seconds: int = DEFAULT_STICKY_WINDOW_SECONDS


class ApiKeyPolicy(BaseModel):
    """Access, quota, routing and failover rules bound to one API key."""
    api_key: str
    upstream_base_url: str = ""
    excluded_models: list[str] = Field(default_factory=list)
    allow_claude_opus_46: bool = True
    daily_limits: dict[str, int] = Field(default_factory=dict)
    model_routing_rules: list[ModelRoutingRule] = Field(default_factory=list)
    claude_failover_enabled: bool = False
    claude_failover_target_model: str = ""
    claude_failover_rules: list[ModelFailoverRule] = Field(default_factory=list)


class ModelDefinition(BaseModel):
    """A model id offered by the upstream service for one channel."""
    id: str
    display_name: str | None = None
