"""
API key policies page - view-model.

One PolicyPageController backs one browser page session. It holds the data
loaded from the management API, the selected key and a local edit buffer for
that key's policy. Edits stay local until save(); save() and delete() are
followed by a full reload, so the server state always wins afterwards.

In-flight loads are not cancelled: a reload that finishes after the user has
switched keys or started editing re-derives the form and overwrites the
buffer. Concurrent editors in other sessions overwrite each other silently.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from schemas.api_key_policy import (
    DEFAULT_FAILOVER_TARGET_MODEL,
    OPUS_46_MODEL_ID,
    ApiKeyPolicy,
    ModelDefinition,
    ModelFailoverRule,
    ModelRoutingRule,
)
from schemas.policy_page import (
    ModelOption,
    NotificationItem,
    PageSnapshot,
    PolicyFormState,
)
from services.api_key_policies import (
    ApiKeyPoliciesApi,
    ApiKeysApi,
    ModelDefinitionsApi,
    mask_key,
    uniq_strings,
)
from services.management_api import ManagementApiError
from services.policy_codec import to_number

logger = logging.getLogger(__name__)

# Called with (event_type, message, details) after a successful write
ChangeRecorder = Callable[[str, str, dict[str, Any]], Awaitable[None]]


class LoadStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    ERROR = "error"


@dataclass
class PolicyForm:
    """Edit buffer for the selected key's policy."""
    allow_opus_46: bool = True
    opus_46_daily_limit: str = ""
    excluded_exact: set[str] = field(default_factory=set)
    excluded_custom: list[str] = field(default_factory=list)
    failover_enabled: bool = False
    failover_target_model: str = DEFAULT_FAILOVER_TARGET_MODEL
    failover_rules: list[ModelFailoverRule] = field(default_factory=list)
    routing_rules: list[ModelRoutingRule] = field(default_factory=list)
    upstream_base_url: str = ""
    # Limits for models other than opus 4.6; not editable here but kept on save
    other_daily_limits: dict[str, int] = field(default_factory=dict)


def parse_positive_int(text: str) -> int | None:
    """Parse a daily-limit text box: blank or non-positive means no limit."""
    trimmed = str(text if text is not None else "").strip()
    if not trimmed:
        return None
    n = to_number(trimmed)
    if not math.isfinite(n):
        return None
    i = math.floor(n)
    return i if i > 0 else None


def _check_index(items: list, index: int) -> None:
    if not 0 <= index < len(items):
        raise IndexError(f"no rule at index {index}")


def _rule_models(from_model: Any, target_model: Any) -> tuple[str, str]:
    """Trimmed (from_model, target_model). Raises ValueError if either is blank."""
    from_model = str(from_model or "").strip()
    target_model = str(target_model or "").strip()
    if not from_model or not target_model:
        raise ValueError("rule needs both from_model and target_model")
    return from_model, target_model


def unique_policies(policies: list[ApiKeyPolicy]) -> list[ApiKeyPolicy]:
    """Trim api keys, drop blank ones and keep the last policy per key."""
    by_key: dict[str, ApiKeyPolicy] = {}
    for p in policies:
        key = p.api_key.strip()
        if not key:
            continue
        by_key.pop(key, None)
        by_key[key] = p if p.api_key == key else p.model_copy(update={"api_key": key})
    return list(by_key.values())


class PolicyPageController:
    def __init__(
        self,
        policies_api: ApiKeyPoliciesApi | None = None,
        keys_api: ApiKeysApi | None = None,
        models_api: ModelDefinitionsApi | None = None,
        recorder: ChangeRecorder | None = None,
    ):
        self.policies_api = policies_api or ApiKeyPoliciesApi()
        self.keys_api = keys_api or ApiKeysApi(self.policies_api.client)
        self.models_api = models_api or ModelDefinitionsApi(self.policies_api.client)
        self.recorder = recorder

        self.status = LoadStatus.IDLE
        self.error = ""
        self.loaded = False

        self.api_keys: list[str] = []
        self.policies: list[ApiKeyPolicy] = []
        self.claude_models: list[ModelDefinition] = []
        self.codex_models: list[ModelDefinition] = []

        self.selected_key = ""
        self.form = PolicyForm()
        self.notifications: list[NotificationItem] = []

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def controls_disabled(self) -> bool:
        return not self.policies_api.client.connection.is_configured

    @property
    def current_policy(self) -> ApiKeyPolicy | None:
        key = self.selected_key.strip()
        if not key:
            return None
        for p in self.policies:
            if p.api_key == key:
                return p
        return None

    def _claude_model_ids(self) -> set[str]:
        return {m.id for m in self.claude_models}

    def _derive_form(self) -> None:
        """Reset the edit buffer from the selected key's policy (or defaults)."""
        key = self.selected_key.strip()
        if not key:
            self.form = PolicyForm()
            return

        p = self.current_policy or ApiKeyPolicy(
            api_key=key,
            claude_failover_target_model=DEFAULT_FAILOVER_TARGET_MODEL,
        )

        limits = dict(p.daily_limits or {})
        limit = limits.pop(OPUS_46_MODEL_ID, None)

        known = self._claude_model_ids()
        excluded = uniq_strings(p.excluded_models or [])
        custom = [x for x in excluded if "*" in x or x not in known]
        exact = {x for x in excluded if "*" not in x and x in known}

        self.form = PolicyForm(
            allow_opus_46=p.allow_claude_opus_46,
            opus_46_daily_limit=str(limit) if limit else "",
            excluded_exact=exact,
            excluded_custom=custom,
            failover_enabled=bool(p.claude_failover_enabled),
            failover_target_model=(p.claude_failover_target_model or "").strip() or DEFAULT_FAILOVER_TARGET_MODEL,
            failover_rules=[r.model_copy() for r in p.claude_failover_rules],
            routing_rules=[r.model_copy() for r in p.model_routing_rules],
            upstream_base_url=p.upstream_base_url,
            other_daily_limits=limits,
        )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_all(self) -> None:
        """Reload keys, policies and model lists from the management API."""
        self.status = LoadStatus.LOADING
        self.error = ""
        # Wait for all four so no request outlives this call
        results = await asyncio.gather(
            self.keys_api.list(),
            self.policies_api.list(),
            self.models_api.get("claude"),
            self.models_api.get("codex"),
            return_exceptions=True,
        )
        try:
            for result in results:
                if isinstance(result, BaseException):
                    raise result
        except ManagementApiError as e:
            logger.warning(f"Failed to load api key policies page: {e}")
            self.status = LoadStatus.ERROR
            self.error = str(e) or "Refresh failed"
            return

        keys, policies, claude_models, codex_models = results
        self.api_keys = uniq_strings(keys)
        self.policies = policies
        self.claude_models = claude_models
        self.codex_models = codex_models
        self.loaded = True

        prev = self.selected_key
        if not (prev and prev in self.api_keys) and self.api_keys:
            self.selected_key = self.api_keys[0]
        self._derive_form()
        self.status = LoadStatus.IDLE

    async def ensure_loaded(self) -> None:
        """Load once on first visit; after a failure only an explicit load_all() retries."""
        if not self.loaded and self.status == LoadStatus.IDLE:
            await self.load_all()

    # ------------------------------------------------------------------
    # Edit buffer setters
    # ------------------------------------------------------------------

    def select_key(self, api_key: str) -> None:
        self.selected_key = str(api_key or "").strip()
        self._derive_form()

    def set_allow_opus_46(self, allowed: bool) -> None:
        self.form.allow_opus_46 = bool(allowed)

    def set_opus_46_daily_limit(self, text: str) -> None:
        self.form.opus_46_daily_limit = str(text or "")

    def toggle_model_allowed(self, model_id: str, allowed: bool) -> None:
        if allowed:
            self.form.excluded_exact.discard(model_id)
        else:
            self.form.excluded_exact.add(model_id)

    def set_excluded_custom(self, patterns: list[str]) -> None:
        self.form.excluded_custom = uniq_strings(patterns)

    def set_failover_enabled(self, enabled: bool) -> None:
        self.form.failover_enabled = bool(enabled)

    def set_failover_target_model(self, model: str) -> None:
        self.form.failover_target_model = str(model or "")

    def set_upstream_base_url(self, url: str) -> None:
        self.form.upstream_base_url = str(url or "").strip()

    def add_failover_rule(self, from_model: str, target_model: str) -> None:
        """Raises ValueError if either model is blank."""
        from_model, target_model = _rule_models(from_model, target_model)
        self.form.failover_rules.append(ModelFailoverRule(from_model=from_model, target_model=target_model))

    def remove_failover_rule(self, index: int) -> None:
        """Raises IndexError for an unknown rule index."""
        _check_index(self.form.failover_rules, index)
        del self.form.failover_rules[index]

    def add_routing_rule(self, rule: ModelRoutingRule) -> None:
        """Raises ValueError if either model is blank."""
        from_model, target_model = _rule_models(rule.from_model, rule.target_model)
        self.form.routing_rules.append(
            rule.model_copy(update={"from_model": from_model, "target_model": target_model})
        )

    def update_routing_rule(self, index: int, **changes) -> ModelRoutingRule:
        """Apply ``changes`` to one routing rule.

        Raises IndexError for an unknown index and ValueError if the change
        would blank out either model.
        """
        _check_index(self.form.routing_rules, index)
        rule = self.form.routing_rules[index]
        changes = {k: v for k, v in changes.items() if v is not None}
        from_model, target_model = _rule_models(
            changes.get("from_model", rule.from_model),
            changes.get("target_model", rule.target_model),
        )
        changes.update(from_model=from_model, target_model=target_model)
        updated = rule.model_copy(update=changes)
        self.form.routing_rules[index] = updated
        return updated

    def remove_routing_rule(self, index: int) -> None:
        _check_index(self.form.routing_rules, index)
        del self.form.routing_rules[index]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def build_policy(self) -> ApiKeyPolicy:
        """Turn the edit buffer into the policy that save() would send."""
        daily_limits = dict(self.form.other_daily_limits)
        limit = parse_positive_int(self.form.opus_46_daily_limit)
        if limit:
            daily_limits[OPUS_46_MODEL_ID] = limit

        return ApiKeyPolicy(
            api_key=self.selected_key.strip(),
            upstream_base_url=self.form.upstream_base_url,
            excluded_models=uniq_strings([*self.form.excluded_custom, *sorted(self.form.excluded_exact)]),
            allow_claude_opus_46=self.form.allow_opus_46,
            daily_limits=daily_limits,
            model_routing_rules=list(self.form.routing_rules),
            claude_failover_enabled=self.form.failover_enabled,
            claude_failover_target_model=self.form.failover_target_model.strip(),
            claude_failover_rules=list(self.form.failover_rules),
        )

    def notify(self, level: str, message: str) -> None:
        self.notifications.append(NotificationItem(level=level, message=message))

    def drain_notifications(self) -> list[NotificationItem]:
        items, self.notifications = self.notifications, []
        return items

    async def _record(self, event_type: str, message: str, details: dict[str, Any]) -> None:
        if not self.recorder:
            return
        try:
            await self.recorder(event_type, message, details)
        except Exception as e:
            logger.error(f"Failed to record {event_type} event: {e}")

    async def save(self) -> bool:
        api_key = self.selected_key.strip()
        if not api_key:
            return False

        policy = self.build_policy()
        try:
            await self.policies_api.upsert(policy)
        except ManagementApiError as e:
            self.notify("error", f"Save failed: {e}")
            return False

        await self.load_all()
        self.notify("success", "Saved")
        await self._record(
            "policy.save",
            f"Saved policy for {mask_key(api_key)}",
            {"api_key": mask_key(api_key)},
        )
        return True

    async def delete(self) -> bool:
        api_key = self.selected_key.strip()
        if not api_key:
            return False

        try:
            await self.policies_api.remove(api_key)
        except ManagementApiError as e:
            self.notify("error", f"Delete failed: {e}")
            return False

        await self.load_all()
        self.notify("success", "Deleted")
        await self._record(
            "policy.delete",
            f"Deleted policy for {mask_key(api_key)}",
            {"api_key": mask_key(api_key)},
        )
        return True

    async def replace_all(self, policies: list[ApiKeyPolicy]) -> bool:
        """Overwrite the whole remote collection with ``policies``.

        Keys are trimmed first; policies with a blank key are dropped and a
        repeated key keeps its last policy.
        """
        cleaned = unique_policies(policies)
        if len(cleaned) != len(policies):
            logger.warning(f"Dropped {len(policies) - len(cleaned)} blank or duplicate policies before replace")
        policies = cleaned
        try:
            await self.policies_api.replace(policies)
        except ManagementApiError as e:
            self.notify("error", f"Replace failed: {e}")
            return False

        await self.load_all()
        self.notify("success", "Saved")
        await self._record(
            "policy.replace",
            f"Replaced all policies ({len(policies)} total)",
            {"count": len(policies)},
        )
        return True

    # ------------------------------------------------------------------
    # View
    # ------------------------------------------------------------------

    def snapshot(self) -> PageSnapshot:
        form = None
        if self.selected_key:
            form = PolicyFormState(
                allow_opus_46=self.form.allow_opus_46,
                opus_46_daily_limit=self.form.opus_46_daily_limit,
                excluded_exact=sorted(self.form.excluded_exact),
                excluded_custom=list(self.form.excluded_custom),
                failover_enabled=self.form.failover_enabled,
                failover_target_model=self.form.failover_target_model,
                failover_rules=list(self.form.failover_rules),
                routing_rules=list(self.form.routing_rules),
                upstream_base_url=self.form.upstream_base_url,
            )

        return PageSnapshot(
            status=self.status.value,
            error=self.error,
            controls_disabled=self.controls_disabled,
            api_keys=list(self.api_keys),
            selected_key=self.selected_key,
            has_policy=self.current_policy is not None,
            form=form,
            claude_models=[
                ModelOption(
                    id=m.id,
                    display_name=m.display_name,
                    allowed=m.id not in self.form.excluded_exact,
                )
                for m in self.claude_models
            ],
            codex_models=[m.id for m in self.codex_models],
            policy_count=len(self.policies),
            dropped_policies=self.policies_api.last_dropped,
            notifications=self.drain_notifications(),
        )
