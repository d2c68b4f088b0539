"""Telephony call feed: provider contract, Dialpad client, and paginator.

This module focuses on:
- the provider fetch contract (one page per call, cursor in / cursor out)
- mapping raw feed items to :class:`~callsync.models.CallEvent`
- bounded pagination with first-page-fatal / later-page-partial semantics
"""

from __future__ import annotations

import abc
import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

import httpx

from .config import SOURCE_MAX_PAGE_SIZE, SourceConfig
from .errors import SourceRequestError
from .models import CallDirection, CallEvent, CallPage
from .retry import RetryPolicy, execute_with_retry
from .window import SyncWindow

logger = logging.getLogger(__name__)

CALLS_PATH = "/api/v2/call"
COMPANY_PATH = "/api/v2/company"
COMPANY_NUMBERS_PATH = "/api/v2/company/numbers"


class CallSource(abc.ABC):
    """Provider contract for the call-event feed."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Stable provider name."""
        ...

    @abc.abstractmethod
    async def fetch_page(
        self,
        start: datetime,
        end: datetime,
        cursor: str | None = None,
    ) -> CallPage:
        """Fetch one page of calls started in ``[start, end)``."""
        ...

    async def list_company_numbers(self) -> list[str]:
        """Return the company's own numbers (raw). Empty when unsupported."""
        return []

    async def shutdown(self) -> None:
        """Release provider resources."""
        return None


class DialpadCallSource(CallSource):
    """Dialpad v2 ``/call`` feed implementation."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        page_size: int = SOURCE_MAX_PAGE_SIZE,
        timeout_s: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._page_size = max(1, min(int(page_size), SOURCE_MAX_PAGE_SIZE))
        self._retry_policy = retry_policy or RetryPolicy()
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(
                base_url=base_url,
                timeout=httpx.Timeout(timeout_s, connect=10.0),
            )
        )
        self._headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {api_key}",
        }

    @classmethod
    def from_config(
        cls,
        config: SourceConfig,
        *,
        retry_policy: RetryPolicy,
        http_client: httpx.AsyncClient | None = None,
    ) -> DialpadCallSource:
        return cls(
            api_key=config.api_key,
            base_url=config.base_url,
            page_size=config.page_size,
            timeout_s=config.timeout_s,
            retry_policy=retry_policy,
            http_client=http_client,
        )

    @property
    def name(self) -> str:
        return "dialpad"

    async def fetch_page(
        self,
        start: datetime,
        end: datetime,
        cursor: str | None = None,
    ) -> CallPage:
        params: dict[str, Any] = {
            "started_after": int(start.timestamp() * 1000),
            "started_before": int(end.timestamp() * 1000),
            "limit": self._page_size,
        }
        if cursor is not None:
            params["cursor"] = cursor
        logger.debug("Fetching calls with params %s", params)

        payload = await execute_with_retry(
            lambda: self._get_json(CALLS_PATH, params),
            label="Call feed fetch_page",
            policy=self._retry_policy,
        )
        return parse_call_page(payload)

    async def list_company_numbers(self) -> list[str]:
        try:
            payload = await execute_with_retry(
                lambda: self._get_json(COMPANY_NUMBERS_PATH),
                label="Call feed list_company_numbers",
                policy=self._retry_policy,
            )
        except (SourceRequestError, httpx.HTTPError) as exc:
            logger.warning("Could not fetch company numbers, processing all calls: %s", exc)
            return []

        numbers: list[str] = []
        items = payload.get("items")
        if isinstance(items, list):
            for item in items:
                if not isinstance(item, dict):
                    continue
                value = _as_non_empty_string(item.get("phone_number") or item.get("number"))
                if value is not None:
                    numbers.append(value)
        return numbers

    async def validate_credentials(self) -> str | None:
        """Make a lightweight authenticated call; return the company name."""
        payload = await self._get_json(COMPANY_PATH)
        return _as_non_empty_string(payload.get("name"))

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self._http_client.get(path, params=params, headers=self._headers)
        if response.status_code < 200 or response.status_code >= 300:
            raise SourceRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceRequestError(
                status_code=response.status_code,
                message="Invalid JSON payload from call feed",
            ) from exc
        if not isinstance(payload, dict):
            raise SourceRequestError(
                status_code=response.status_code,
                message="Call feed payload must be a JSON object",
            )
        return payload


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short single-line error message from an API response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:200]

    text = response.text.strip()
    if text:
        return " ".join(text.split())[:200]
    return "unknown error"


def _as_non_empty_string(value: Any) -> str | None:
    if isinstance(value, int | float) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_epoch_ms(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        millis = int(float(value))
    except (TypeError, ValueError):
        return None
    if millis <= 0:
        return None
    return datetime.fromtimestamp(millis / 1000, UTC)


def _first_url(value: Any) -> str | None:
    if isinstance(value, list):
        for item in value:
            url = _as_non_empty_string(item)
            if url is not None:
                return url
        return None
    return _as_non_empty_string(value)


def parse_call_page(payload: dict[str, Any]) -> CallPage:
    raw_items = payload.get("items")
    items: list[CallEvent] = []
    if isinstance(raw_items, list):
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            parsed = parse_call(item)
            if parsed is not None:
                items.append(parsed)
    return CallPage(items=items, next_cursor=_as_non_empty_string(payload.get("cursor")))


def parse_call(payload: dict[str, Any]) -> CallEvent | None:
    started_at = _parse_epoch_ms(payload.get("date_started"))
    if started_at is None:
        logger.warning("Skipping call without date_started: id=%s", payload.get("call_id"))
        return None

    external_number = _as_non_empty_string(payload.get("external_number"))
    call_id = _as_non_empty_string(payload.get("id")) or _as_non_empty_string(
        payload.get("call_id")
    )
    if call_id is None:
        call_id = f"{payload.get('date_started')}_{external_number}"

    connected_at = _parse_epoch_ms(payload.get("date_connected"))
    ended_at = _parse_epoch_ms(payload.get("date_ended"))

    raw_duration = payload.get("duration")
    if isinstance(raw_duration, int | float) and not isinstance(raw_duration, bool):
        duration_seconds = max(0, int(raw_duration // 1000))
    elif ended_at is not None:
        duration_seconds = max(0, int((ended_at - started_at).total_seconds()))
    else:
        duration_seconds = 0

    direction = (
        CallDirection.INBOUND
        if str(payload.get("direction", "")).strip().lower() == "inbound"
        else CallDirection.OUTBOUND
    )

    contact = payload.get("contact")
    target = payload.get("target")
    mos_raw = payload.get("mos_score")

    return CallEvent(
        call_id=call_id,
        direction=direction,
        started_at=started_at,
        connected_at=connected_at,
        ended_at=ended_at,
        external_number=external_number,
        recording_url=_first_url(payload.get("recording_url"))
        or _first_url(payload.get("admin_recording_urls")),
        duration_seconds=duration_seconds,
        contact_name=_as_non_empty_string(contact.get("name")) if isinstance(contact, dict) else None,
        target_name=_as_non_empty_string(target.get("name")) if isinstance(target, dict) else None,
        was_recorded=bool(payload.get("was_recorded", False)),
        mos_score=float(mos_raw) if isinstance(mos_raw, int | float) and mos_raw else None,
        raw=payload,
    )


class CallPageFetcher:
    """Walks the call feed page by page for one window.

    The first page failing propagates to the caller.  A later page failing
    stops pagination; pages already yielded stay processed and
    :attr:`error` records why the walk ended early.  Reaching ``max_pages``
    ends the walk with a warning.
    """

    def __init__(self, source: CallSource, *, max_pages: int) -> None:
        self._source = source
        self._max_pages = max(1, int(max_pages))
        self.pages_fetched = 0
        self.error: str | None = None
        self.hit_page_limit = False

    @property
    def partial(self) -> bool:
        return self.error is not None or self.hit_page_limit

    async def pages(self, window: SyncWindow) -> AsyncIterator[CallPage]:
        self.pages_fetched = 0
        self.error = None
        self.hit_page_limit = False
        cursor: str | None = None

        while True:
            page_number = self.pages_fetched + 1
            logger.info("Fetching calls page %d...", page_number)
            try:
                page = await self._source.fetch_page(window.start, window.end, cursor)
            except Exception as exc:
                if page_number == 1:
                    raise
                self.error = f"page {page_number} fetch failed: {exc}"[:300]
                logger.error(
                    "Call feed page %d failed; keeping %d processed page(s): %s",
                    page_number,
                    self.pages_fetched,
                    exc,
                )
                return

            self.pages_fetched = page_number
            if not page.items:
                logger.info("No more calls to process")
                return

            yield page

            cursor = page.next_cursor
            if cursor is None:
                return
            if self.pages_fetched >= self._max_pages:
                self.hit_page_limit = True
                logger.warning("Reached maximum page limit (%d), stopping sync", self._max_pages)
                return
