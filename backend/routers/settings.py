"""Settings management API routes."""

import time

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_session, DATA_DIR
from models.settings import AppSettings
from schemas.settings import ConnectionStatus, SettingUpdate, SettingsResponse
from services.api_key_policies import ApiKeysApi
from services.management_api import (
    DEFAULT_MANAGEMENT_BASE_URL,
    DEFAULT_REQUEST_TIMEOUT,
    ManagementApiError,
    get_cached_connection,
    set_cached_connection,
)

router = APIRouter()

# Default settings
DEFAULT_SETTINGS = {
    "management_base_url": DEFAULT_MANAGEMENT_BASE_URL,
    "management_key": "",
    "request_timeout": str(int(DEFAULT_REQUEST_TIMEOUT)),
    "data_dir": str(DATA_DIR),
}

SECRET_SETTINGS = {"management_key"}
READ_ONLY_SETTINGS = {"data_dir"}
MASKED_VALUE = "********"


def _mask(value: str) -> str:
    return MASKED_VALUE if value else ""


@router.get("/", response_model=SettingsResponse)
async def get_all_settings(
    session: AsyncSession = Depends(get_session),
):
    """Get all settings, merging with defaults. Secrets are masked."""
    result = await session.execute(select(AppSettings))
    db_settings = {s.key: s.value for s in result.scalars().all()}

    # Merge: DB values override defaults
    merged = {**DEFAULT_SETTINGS, **db_settings}

    # Force data_dir to be the actual runtime path
    merged["data_dir"] = str(DATA_DIR)

    for key in SECRET_SETTINGS:
        merged[key] = _mask(merged.get(key, ""))

    return SettingsResponse(settings=merged)


@router.put("/")
async def update_settings(
    updates: list[SettingUpdate],
    session: AsyncSession = Depends(get_session),
):
    """Update one or more settings."""
    for update in updates:
        if update.key not in DEFAULT_SETTINGS or update.key in READ_ONLY_SETTINGS:
            raise HTTPException(status_code=400, detail=f"Unknown or read-only setting: {update.key}")

    for update in updates:
        # A form echoing back the masked GET payload leaves the stored secret alone
        if update.key in SECRET_SETTINGS and update.value == MASKED_VALUE:
            continue

        result = await session.execute(
            select(AppSettings).where(AppSettings.key == update.key)
        )
        setting = result.scalar_one_or_none()

        if setting:
            setting.value = update.value
        else:
            setting = AppSettings(key=update.key, value=update.value)
            session.add(setting)

        # Side-effects: update the connection cache immediately
        if update.key == "management_base_url":
            set_cached_connection(base_url=update.value)
        elif update.key == "management_key":
            set_cached_connection(management_key=update.value)
        elif update.key == "request_timeout":
            set_cached_connection(timeout=update.value)

    await session.commit()
    return {"status": "ok"}


@router.get("/connection/status", response_model=ConnectionStatus)
async def connection_status():
    """Probe the management API by listing its API keys."""
    conn = get_cached_connection()
    status = ConnectionStatus(configured=conn.is_configured, base_url=conn.base_url)
    if not conn.is_configured:
        return status

    start = time.time()
    try:
        keys = await ApiKeysApi().list()
    except ManagementApiError as e:
        status.error = str(e)
        return status

    status.connected = True
    status.latency_ms = round((time.time() - start) * 1000)
    status.api_key_count = len(keys)
    return status
