"""Incremental call-event sync from a telephony feed into a CRM base."""

from callsync.config import SyncConfig, load_config
from callsync.engine import SyncOrchestrator
from callsync.models import SyncRunResult, SyncStatus
from callsync.phone import normalize_phone

__all__ = [
    "SyncConfig",
    "SyncOrchestrator",
    "SyncRunResult",
    "SyncStatus",
    "load_config",
    "normalize_phone",
]
