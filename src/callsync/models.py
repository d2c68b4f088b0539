"""Provider-neutral data shapes for call sync.

Call events come from the telephony feed, directory entries and transformed
records go to/from the CRM store, and the watermark/run result types describe
sync progress.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CallDirection(enum.StrEnum):
    """Direction of a call relative to the company."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


MatchStatus = Literal["matched", "unmatched", "no_phone"]


class CallEvent(BaseModel):
    """One call from the telephony feed. Immutable once fetched."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    call_id: str = Field(min_length=1)
    direction: CallDirection
    started_at: datetime
    connected_at: datetime | None = None
    ended_at: datetime | None = None
    external_number: str | None = None
    recording_url: str | None = None
    duration_seconds: int = Field(default=0, ge=0)
    contact_name: str | None = None
    target_name: str | None = None
    was_recorded: bool = False
    mos_score: float | None = None
    raw: dict[str, Any] | None = None

    @field_validator("call_id")
    @classmethod
    def _normalize_call_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("call_id must be a non-empty string")
        return normalized

    @property
    def answered(self) -> bool:
        return self.connected_at is not None


class CallPage(BaseModel):
    """One page of the call feed."""

    model_config = ConfigDict(extra="forbid")

    items: list[CallEvent] = Field(default_factory=list)
    next_cursor: str | None = None

    @field_validator("next_cursor")
    @classmethod
    def _normalize_cursor(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class CustomerDirectoryEntry(BaseModel):
    """A customer row from the CRM directory table."""

    model_config = ConfigDict(extra="forbid")

    record_id: str = Field(min_length=1)
    phone: str | None = None


class TransformedCallRecord(BaseModel):
    """Outbound write payload for one call."""

    model_config = ConfigDict(extra="forbid")

    call_id: str
    fields: dict[str, Any]
    match_status: MatchStatus
    customer_id: str | None = None

    @property
    def matched(self) -> bool:
        return self.match_status == "matched"


class SyncWatermark(BaseModel):
    """Persisted progress marker."""

    model_config = ConfigDict(extra="ignore")

    last_synced_epoch_s: int = Field(ge=0)
    last_synced_iso: str
    updated_at: str

    @classmethod
    def at(cls, epoch_seconds: int) -> SyncWatermark:
        return cls(
            last_synced_epoch_s=epoch_seconds,
            last_synced_iso=datetime.fromtimestamp(epoch_seconds, UTC).isoformat(),
            updated_at=datetime.now(UTC).isoformat(),
        )


class SyncRunResult(BaseModel):
    """Outcome summary from one sync run."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    total_calls: int = 0
    matched_calls: int = 0
    unmatched_calls: int = 0
    pages_processed: int = 0
    failed_batches: int = 0
    skipped_internal_calls: int = 0
    no_op: bool = False
    partial: bool = False
    window_start: datetime | None = None
    window_end: datetime | None = None
    duration_ms: int = 0
    error: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SyncStatus(BaseModel):
    """Read-only view of the orchestrator for status surfaces."""

    model_config = ConfigDict(extra="forbid")

    running: bool
    last_run: SyncRunResult | None = None
    watermark: SyncWatermark | None = None
    history: list[SyncRunResult] = Field(default_factory=list)
