"""Pydantic schemas for Settings API."""

from pydantic import BaseModel


class SettingUpdate(BaseModel):
    """Schema for updating a setting."""
    key: str
    value: str


class SettingsResponse(BaseModel):
    """Schema for all settings response."""
    settings: dict[str, str]


class ConnectionStatus(BaseModel):
    """Result of probing the management API."""
    configured: bool
    connected: bool = False
    base_url: str
    latency_ms: int | None = None
    api_key_count: int | None = None
    error: str | None = None
