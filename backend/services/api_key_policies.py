"""
API key policy store client, plus the read-only management endpoints the
policies page needs (API key list, model definitions).
"""

import logging
from urllib.parse import quote

from schemas.api_key_policy import ApiKeyPolicy, ModelDefinition
from services.management_api import ManagementApiClient
from services.policy_codec import normalize_policy_list, policy_to_dto

logger = logging.getLogger(__name__)

POLICIES_PATH = "/api-key-policies"
# Characters encodeURIComponent leaves alone, so keys are encoded like the web UI does
_URI_COMPONENT_SAFE = "!~*'()"


def uniq_strings(values) -> list[str]:
    """Trimmed, non-empty, first-occurrence-wins list of strings."""
    seen: set[str] = set()
    out: list[str] = []
    for v in values:
        t = str(v if v is not None else "").strip()
        if not t or t in seen:
            continue
        seen.add(t)
        out.append(t)
    return out


class ApiKeyPoliciesApi:
    """CRUD over the remote ``/api-key-policies`` collection.

    A later write always overwrites an earlier one: there is no versioning or
    locking, and replace() relies on the backend for atomicity.
    """

    def __init__(self, client: ManagementApiClient | None = None):
        self.client = client or ManagementApiClient()
        self.last_dropped = 0

    async def replace(self, policies: list[ApiKeyPolicy]) -> None:
        await self.client.put(POLICIES_PATH, json=[policy_to_dto(p) for p in policies])
        logger.info(f"Replaced api key policies ({len(policies)} total)")

    async def upsert(self, policy: ApiKeyPolicy) -> None:
        dto = policy_to_dto(policy)
        await self.client.patch(POLICIES_PATH, json={"api-key": dto["api-key"], "value": dto})
        logger.info(f"Upserted api key policy for {mask_key(dto['api-key'])}")

    async def remove(self, api_key: str) -> None:
        key = str(api_key if api_key is not None else "").strip()
        if not key:
            return
        await self.client.delete(f"{POLICIES_PATH}?api-key={quote(key, safe=_URI_COMPONENT_SAFE)}")
        logger.info(f"Removed api key policy for {mask_key(key)}")

    async def list(self) -> list[ApiKeyPolicy]:
        """Fetch and normalize all policies, skipping malformed records."""
        data = await self.client.get(POLICIES_PATH)
        raw = data.get("api-key-policies") if isinstance(data, dict) else None
        result = normalize_policy_list(raw)
        self.last_dropped = result.dropped
        if result.dropped:
            logger.warning(f"Dropped {result.dropped} malformed api key policy record(s)")
        return result.policies


class ApiKeysApi:
    """The proxy's configured client API keys."""

    def __init__(self, client: ManagementApiClient | None = None):
        self.client = client or ManagementApiClient()

    async def list(self) -> list[str]:
        data = await self.client.get("/api-keys")
        raw = data.get("api-keys") if isinstance(data, dict) else data
        if not isinstance(raw, list):
            return []
        return uniq_strings(raw)


class ModelDefinitionsApi:
    """Models the proxy offers per channel (e.g. ``claude``, ``codex``)."""

    def __init__(self, client: ManagementApiClient | None = None):
        self.client = client or ManagementApiClient()

    async def get(self, channel: str) -> list[ModelDefinition]:
        data = await self.client.get(f"/model-definitions/{quote(channel.strip(), safe='')}")
        raw = data.get("models") if isinstance(data, dict) else data
        if not isinstance(raw, list):
            return []

        models: list[ModelDefinition] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            model_id = str(item.get("id") or "").strip()
            if not model_id:
                continue
            display_name = item.get("display_name")
            models.append(ModelDefinition(
                id=model_id,
                display_name=str(display_name) if display_name else None,
            ))
        return models


def mask_key(api_key: str) -> str:
    """Shorten an API key for log lines."""
    if len(api_key) <= 8:
        return "***"
    return f"{api_key[:4]}...{api_key[-4:]}"
