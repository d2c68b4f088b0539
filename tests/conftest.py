"""Shared fixtures for the callsync test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from callsync.config import SyncConfig, parse_config

# 2025-03-10 12:00 UTC is 20:00 in Asia/Singapore.
FIXED_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def config_data(tmp_path: Path) -> dict[str, Any]:
    """Minimal valid raw config with instant retries and a temp state dir."""
    return {
        "source": {"api_key": "dp-key", "base_url": "https://dialpad.test"},
        "destination": {
            "token": "at-token",
            "base_id": "appBase",
            "base_url": "https://airtable.test/v0",
        },
        "fields": {"unmatched_phone": "Unmatched Phone"},
        "retry": {"max_attempts": 2, "base_delay_seconds": 0, "jitter_factor": 0},
        "state": {"dir": str(tmp_path / "state")},
    }


@pytest.fixture
def make_config(config_data: dict[str, Any]) -> Callable[..., SyncConfig]:
    """Factory: build a SyncConfig from the base data plus nested overrides."""

    def _make(**overrides: Any) -> SyncConfig:
        return parse_config(_merge(config_data, overrides))

    return _make


@pytest.fixture
def call_payload() -> Callable[..., dict[str, Any]]:
    """Factory: a raw Dialpad call item started a minute before FIXED_NOW."""

    def _make(call_id: str | int, **overrides: Any) -> dict[str, Any]:
        started_ms = int(FIXED_NOW.timestamp() * 1000) - 60_000
        payload: dict[str, Any] = {
            "call_id": str(call_id),
            "direction": "inbound",
            "date_started": started_ms,
            "date_connected": started_ms + 5_000,
            "date_ended": started_ms + 65_000,
            "duration": 60_000,
            "external_number": "+6591234567",
            "contact": {"name": "Alice Tan"},
            "target": {"name": "Support Line"},
            "was_recorded": False,
        }
        payload.update(overrides)
        return payload

    return _make
