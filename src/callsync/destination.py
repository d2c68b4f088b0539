"""CRM destination: Airtable REST client and rate-paced batch upsert writer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from .config import DESTINATION_MAX_BATCH_SIZE, DestinationConfig
from .errors import DestinationRequestError
from .models import TransformedCallRecord
from .retry import RetryPolicy, SleepFn, execute_with_retry
from .source import safe_error_message

logger = logging.getLogger(__name__)

DIRECTORY_PAGE_SIZE = 100


class AirtableClient:
    """Minimal Airtable REST client: paginated reads and batch upserts."""

    def __init__(
        self,
        *,
        token: str,
        base_id: str,
        base_url: str,
        timeout_s: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._retry_policy = retry_policy or RetryPolicy()
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(
                base_url=f"{base_url.rstrip('/')}/{base_id}",
                timeout=httpx.Timeout(timeout_s, connect=10.0),
            )
        )
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_config(
        cls,
        config: DestinationConfig,
        *,
        retry_policy: RetryPolicy,
        http_client: httpx.AsyncClient | None = None,
    ) -> AirtableClient:
        return cls(
            token=config.token,
            base_id=config.base_id,
            base_url=config.base_url,
            timeout_s=config.timeout_s,
            retry_policy=retry_policy,
            http_client=http_client,
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    async def list_records(
        self,
        table: str,
        *,
        fields: Sequence[str] = (),
        offset: str | None = None,
        page_size: int = DIRECTORY_PAGE_SIZE,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Read one page of *table*; returns ``(records, next_offset)``."""
        params: list[tuple[str, Any]] = [("pageSize", page_size)]
        params.extend(("fields[]", name) for name in fields)
        if offset is not None:
            params.append(("offset", offset))

        payload = await execute_with_retry(
            lambda: self._request("GET", table, params=params),
            label=f"Destination list_records({table})",
            policy=self._retry_policy,
        )
        records = payload.get("records")
        next_offset = payload.get("offset")
        return (
            [r for r in records if isinstance(r, dict)] if isinstance(records, list) else [],
            next_offset if isinstance(next_offset, str) and next_offset else None,
        )

    async def upsert_records(
        self,
        table: str,
        records: Sequence[dict[str, Any]],
        *,
        merge_on: Sequence[str],
    ) -> dict[str, Any]:
        """Upsert one batch of field maps, merging on *merge_on* (single attempt)."""
        body = {
            "records": [{"fields": fields} for fields in records],
            "performUpsert": {"fieldsToMergeOn": list(merge_on)},
        }
        return await self._request("PATCH", table, json=body)

    async def validate_credentials(self, table: str) -> int:
        """Read a single record from *table*; return how many came back."""
        records, _ = await self.list_records(table, page_size=1)
        return len(records)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Any = None,
        json: Any = None,
    ) -> dict[str, Any]:
        response = await self._http_client.request(
            method,
            f"/{quote(table, safe='')}",
            params=params,
            json=json,
            headers=self._headers,
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise DestinationRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise DestinationRequestError(
                status_code=response.status_code,
                message="Invalid JSON payload from destination",
            ) from exc
        if not isinstance(payload, dict):
            raise DestinationRequestError(
                status_code=response.status_code,
                message="Destination payload must be a JSON object",
            )
        return payload


@dataclass
class WriteSummary:
    """Outcome of writing one page worth of records."""

    records_written: int = 0
    batches_written: int = 0
    batches_failed: int = 0
    records_failed: int = 0


class DestinationWriter:
    """Chunks records into batch upserts paced under the destination's rate ceiling.

    A batch that still fails after retries is logged and counted; the writer
    moves on to the next batch.
    """

    def __init__(
        self,
        client: AirtableClient,
        *,
        table: str,
        merge_on: str,
        batch_size: int = DESTINATION_MAX_BATCH_SIZE,
        pacing_delay_s: float = 0.2,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._client = client
        self._table = table
        self._merge_on = merge_on
        self._batch_size = max(1, min(int(batch_size), DESTINATION_MAX_BATCH_SIZE))
        self._pacing_delay_s = max(0.0, pacing_delay_s)
        self._retry_policy = retry_policy or client.retry_policy
        self._sleep = sleep

    async def upsert(self, records: Sequence[TransformedCallRecord]) -> WriteSummary:
        summary = WriteSummary()
        for offset in range(0, len(records), self._batch_size):
            chunk = records[offset : offset + self._batch_size]
            batch = [record.fields for record in chunk]
            try:
                await execute_with_retry(
                    lambda batch=batch: self._client.upsert_records(
                        self._table, batch, merge_on=[self._merge_on]
                    ),
                    label=f"Destination upsert({self._table})",
                    policy=self._retry_policy,
                    sleep=self._sleep,
                )
            except Exception as exc:
                summary.batches_failed += 1
                summary.records_failed += len(chunk)
                logger.error(
                    "Dropping batch of %d call(s) after retries (first call_id=%s): %s",
                    len(chunk),
                    chunk[0].call_id,
                    exc,
                )
            else:
                summary.batches_written += 1
                summary.records_written += len(chunk)

            if self._pacing_delay_s > 0:
                await self._sleep(self._pacing_delay_s)
        return summary
