"""Customer identity resolution by phone number.

The full customer directory is drained from the CRM before any call is
matched.  Phones are normalized to E.164 and indexed ``phone -> record id``;
when two customers share a normalized phone, the one loaded later wins.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .config import FieldMapping
from .destination import AirtableClient
from .models import CallDirection, CallEvent, CustomerDirectoryEntry, TransformedCallRecord
from .phone import normalize_phone

logger = logging.getLogger(__name__)


@dataclass
class CustomerDirectory:
    """In-memory ``normalized phone -> customer record id`` index."""

    default_region: str
    by_phone: dict[str, str] = field(default_factory=dict)
    entries_loaded: int = 0
    duplicate_phones: int = 0

    def add(self, entry: CustomerDirectoryEntry) -> None:
        self.entries_loaded += 1
        normalized = normalize_phone(entry.phone, self.default_region)
        if normalized is None:
            return
        previous = self.by_phone.get(normalized)
        if previous is not None and previous != entry.record_id:
            self.duplicate_phones += 1
            logger.debug(
                "Phone %s shared by %s and %s; keeping %s",
                normalized,
                previous,
                entry.record_id,
                entry.record_id,
            )
        self.by_phone[normalized] = entry.record_id

    def lookup(self, normalized_phone: str | None) -> str | None:
        if normalized_phone is None:
            return None
        return self.by_phone.get(normalized_phone)

    def __len__(self) -> int:
        return len(self.by_phone)

    @classmethod
    def from_entries(
        cls, entries: Iterable[CustomerDirectoryEntry], *, default_region: str
    ) -> CustomerDirectory:
        directory = cls(default_region=default_region)
        for entry in entries:
            directory.add(entry)
        return directory

    @classmethod
    async def load(
        cls,
        client: AirtableClient,
        *,
        table: str,
        phone_field: str,
        default_region: str,
    ) -> CustomerDirectory:
        """Drain every page of the customers table into a new directory."""
        directory = cls(default_region=default_region)
        offset: str | None = None
        pages = 0
        while True:
            records, offset = await client.list_records(table, fields=[phone_field], offset=offset)
            pages += 1
            for record in records:
                entry = _parse_directory_record(record, phone_field)
                if entry is not None:
                    directory.add(entry)
            if offset is None:
                break

        logger.info(
            "Loaded %d customers with phone numbers (%d records, %d page(s), %d duplicate phone(s))",
            len(directory),
            directory.entries_loaded,
            pages,
            directory.duplicate_phones,
        )
        return directory


def _parse_directory_record(record: dict[str, Any], phone_field: str) -> CustomerDirectoryEntry | None:
    record_id = record.get("id")
    if not isinstance(record_id, str) or not record_id.strip():
        return None
    fields = record.get("fields")
    phone = fields.get(phone_field) if isinstance(fields, dict) else None
    return CustomerDirectoryEntry(
        record_id=record_id,
        phone=phone if isinstance(phone, str) else None,
    )


class CallTransformer:
    """Maps a :class:`CallEvent` to its destination field map and match outcome."""

    def __init__(
        self,
        directory: CustomerDirectory,
        fields: FieldMapping,
        *,
        company_numbers: frozenset[str] = frozenset(),
    ) -> None:
        self._directory = directory
        self._fields = fields
        self._company_numbers = company_numbers

    def normalize(self, call: CallEvent) -> str | None:
        return normalize_phone(call.external_number, self._directory.default_region)

    def is_internal(self, call: CallEvent) -> bool:
        if not self._company_numbers:
            return False
        normalized = self.normalize(call)
        return normalized is not None and normalized in self._company_numbers

    def transform(self, call: CallEvent) -> TransformedCallRecord:
        f = self._fields
        record: dict[str, Any] = {
            f.call_id: call.call_id,
            f.external_number: call.external_number,
            f.direction: "Inbound" if call.direction is CallDirection.INBOUND else "Outbound",
            f.start_time: call.started_at.isoformat(),
            f.connected_time: call.connected_at.isoformat() if call.connected_at else None,
            f.end_time: call.ended_at.isoformat() if call.ended_at else None,
            f.duration: call.duration_seconds,
            f.contact_name: call.contact_name or "Unknown",
            f.target: call.target_name or "N/A",
            f.was_recorded: call.was_recorded,
            f.mos_score: call.mos_score,
        }
        if call.recording_url:
            record[f.recording_url] = call.recording_url

        if call.external_number is None:
            return TransformedCallRecord(call_id=call.call_id, fields=record, match_status="no_phone")

        normalized = self.normalize(call)
        customer_id = self._directory.lookup(normalized)
        if customer_id is not None:
            record[f.customer_link] = [customer_id]
            return TransformedCallRecord(
                call_id=call.call_id,
                fields=record,
                match_status="matched",
                customer_id=customer_id,
            )

        if f.unmatched_phone:
            record[f.unmatched_phone] = normalized or call.external_number
        return TransformedCallRecord(call_id=call.call_id, fields=record, match_status="unmatched")
