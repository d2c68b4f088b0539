"""Sync configuration loading and validation.

Reads ``callsync.toml``, resolves ``${VAR}`` environment references, and
returns an immutable :class:`SyncConfig`.  The config object is built once at
startup and handed to every component constructor.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import date, time
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from .errors import ConfigError
from .retry import RetryPolicy

DEFAULT_CONFIG_FILE = "callsync.toml"

DEFAULT_SOURCE_BASE_URL = "https://dialpad.com"
DEFAULT_DESTINATION_BASE_URL = "https://api.airtable.com/v0"

# Provider caps: the call feed returns at most 100 items per page and the
# destination accepts at most 10 records per batch write.
SOURCE_MAX_PAGE_SIZE = 100
DESTINATION_MAX_BATCH_SIZE = 10

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_TIME_RANGE_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})\s*$")


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass(frozen=True)
class SourceConfig:
    """Telephony call feed settings from [source]."""

    api_key: str
    base_url: str = DEFAULT_SOURCE_BASE_URL
    page_size: int = SOURCE_MAX_PAGE_SIZE
    max_pages: int = 100
    timeout_s: float = 30.0


@dataclass(frozen=True)
class DestinationConfig:
    """CRM store settings from [destination]."""

    token: str
    base_id: str
    base_url: str = DEFAULT_DESTINATION_BASE_URL
    customers_table: str = "Customers"
    calls_table: str = "Calls"
    batch_size: int = DESTINATION_MAX_BATCH_SIZE
    requests_per_second: float = 5.0
    timeout_s: float = 30.0

    @property
    def pacing_delay_s(self) -> float:
        return 1.0 / self.requests_per_second


@dataclass(frozen=True)
class FieldMapping:
    """Destination field names, fixed at startup.

    ``unmatched_phone`` is optional: when unset, unmatched calls are written
    without a fallback phone value.
    """

    customer_phone: str = "Phone"
    customer_link: str = "Customer"
    unmatched_phone: str | None = None
    call_id: str = "Call ID"
    external_number: str = "External Number"
    direction: str = "Direction"
    start_time: str = "Start Time"
    connected_time: str = "Connected Time"
    end_time: str = "End Time"
    duration: str = "Duration (s)"
    contact_name: str = "Contact Name"
    target: str = "Target"
    was_recorded: str = "Was Recorded"
    mos_score: str = "MOS Score"
    recording_url: str = "Recording URL"


@dataclass(frozen=True)
class TimeRange:
    """Daily wall-clock range, e.g. 09:00-18:00."""

    start: time
    end: time


@dataclass(frozen=True)
class WindowConfig:
    """Time-window selection from [window].

    Mode priority when several are set: ``time_range`` > ``sync_date`` >
    ``lookback_days`` > continuous (watermark-driven).
    """

    timezone: str = "Asia/Singapore"
    backfill_grace_seconds: int = 21600
    lookback_days: int | None = None
    sync_date: date | None = None
    time_range: TimeRange | None = None


@dataclass(frozen=True)
class ScheduleConfig:
    """Recurring run schedule from [schedule]."""

    enabled: bool = False
    cron: str = "*/5 * * * *"
    run_on_startup: bool = True


@dataclass(frozen=True)
class SyncConfig:
    """Parsed and validated sync configuration."""

    source: SourceConfig
    destination: DestinationConfig
    fields: FieldMapping = field(default_factory=FieldMapping)
    window: WindowConfig = field(default_factory=WindowConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    state_dir: str = "state"
    default_region: str = "SG"
    skip_internal_calls: bool = True
    history_limit: int = 100


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def load_config(path: str | Path = DEFAULT_CONFIG_FILE) -> SyncConfig:
    """Load and validate sync configuration from a TOML file.

    Parameters
    ----------
    path:
        Path to ``callsync.toml``.

    Returns
    -------
    SyncConfig
        Fully parsed and validated configuration.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = Path(path)
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(resolve_env_vars(data))


def parse_config(data: dict[str, Any]) -> SyncConfig:
    """Build a :class:`SyncConfig` from an already env-resolved mapping."""
    source = _parse_source(_section(data, "source"))
    destination = _parse_destination(_section(data, "destination"))

    missing = [
        name
        for name, value in (
            ("source.api_key", source.api_key),
            ("destination.token", destination.token),
            ("destination.base_id", destination.base_id),
        )
        if not value
    ]
    if missing:
        raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

    fields_section = _section(data, "fields")
    unmatched = fields_section.get("unmatched_phone")
    if isinstance(unmatched, str) and not unmatched.strip():
        unmatched = None
    fields = FieldMapping(
        customer_phone=str(fields_section.get("customer_phone", "Phone")),
        customer_link=str(fields_section.get("customer_link", "Customer")),
        unmatched_phone=unmatched,
        call_id=str(fields_section.get("call_id", "Call ID")),
    )

    logging_section = _section(data, "logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    default_region = str(data.get("default_region", "SG")).strip().upper()
    if len(default_region) != 2 or not default_region.isalpha():
        raise ConfigError(
            f"Invalid default_region: {default_region!r}. Expected a two-letter region code."
        )

    history_limit = int(data.get("history_limit", 100))
    if history_limit <= 0:
        raise ConfigError(f"Invalid history_limit: {history_limit!r}. Must be positive.")

    return SyncConfig(
        source=source,
        destination=destination,
        fields=fields,
        window=_parse_window(_section(data, "window")),
        retry=_parse_retry(_section(data, "retry")),
        schedule=_parse_schedule(_section(data, "schedule")),
        logging=logging_config,
        state_dir=str(_section(data, "state").get("dir", "state")),
        default_region=default_region,
        skip_internal_calls=bool(data.get("skip_internal_calls", True)),
        history_limit=history_limit,
    )


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    value = int(section.get(key, default))
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _parse_source(section: dict[str, Any]) -> SourceConfig:
    page_size = _positive_int(section, "page_size", SOURCE_MAX_PAGE_SIZE, "source")
    return SourceConfig(
        api_key=str(section.get("api_key") or "").strip(),
        base_url=str(section.get("base_url", DEFAULT_SOURCE_BASE_URL)).rstrip("/"),
        page_size=min(page_size, SOURCE_MAX_PAGE_SIZE),
        max_pages=_positive_int(section, "max_pages", 100, "source"),
        timeout_s=float(section.get("timeout_s", 30.0)),
    )


def _parse_destination(section: dict[str, Any]) -> DestinationConfig:
    batch_size = _positive_int(section, "batch_size", DESTINATION_MAX_BATCH_SIZE, "destination")
    rps = float(section.get("requests_per_second", 5.0))
    if rps <= 0:
        raise ConfigError(f"Invalid destination.requests_per_second: {rps!r}. Must be positive.")
    return DestinationConfig(
        token=str(section.get("token") or "").strip(),
        base_id=str(section.get("base_id") or "").strip(),
        base_url=str(section.get("base_url", DEFAULT_DESTINATION_BASE_URL)).rstrip("/"),
        customers_table=str(section.get("customers_table", "Customers")),
        calls_table=str(section.get("calls_table", "Calls")),
        batch_size=min(batch_size, DESTINATION_MAX_BATCH_SIZE),
        requests_per_second=rps,
        timeout_s=float(section.get("timeout_s", 30.0)),
    )


def parse_time_range(raw: Any) -> TimeRange:
    """Parse ``"HH:MM-HH:MM"`` or ``{start = "HH:MM", end = "HH:MM"}``."""
    if isinstance(raw, dict):
        raw = f"{raw.get('start', '')}-{raw.get('end', '')}"
    match = _TIME_RANGE_PATTERN.match(str(raw))
    if match is None:
        raise ConfigError(f"Invalid window.time_range: {raw!r}. Expected 'HH:MM-HH:MM'.")
    sh, sm, eh, em = (int(part) for part in match.groups())
    try:
        time_range = TimeRange(start=time(sh, sm), end=time(eh, em))
    except ValueError as exc:
        raise ConfigError(f"Invalid window.time_range: {raw!r}: {exc}") from exc
    if time_range.start == time_range.end:
        raise ConfigError(f"Invalid window.time_range: {raw!r}. Start and end must differ.")
    return time_range


def _parse_window(section: dict[str, Any]) -> WindowConfig:
    tz_name = str(section.get("timezone", "Asia/Singapore"))
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown window.timezone: {tz_name!r}") from exc

    grace = int(section.get("backfill_grace_seconds", 21600))
    if grace < 0:
        raise ConfigError(f"Invalid window.backfill_grace_seconds: {grace!r}. Must be >= 0.")

    lookback_raw = section.get("lookback_days")
    lookback_days: int | None = None
    if lookback_raw is not None:
        lookback_days = int(lookback_raw)
        if not 1 <= lookback_days <= 365:
            raise ConfigError(
                f"Invalid window.lookback_days: {lookback_days!r}. Must be between 1 and 365."
            )

    sync_date_raw = section.get("sync_date")
    sync_date: date | None = None
    if isinstance(sync_date_raw, date):
        sync_date = sync_date_raw
    elif sync_date_raw:
        try:
            sync_date = date.fromisoformat(str(sync_date_raw))
        except ValueError as exc:
            raise ConfigError(f"Invalid window.sync_date: {sync_date_raw!r}") from exc

    time_range_raw = section.get("time_range")
    time_range = parse_time_range(time_range_raw) if time_range_raw else None

    return WindowConfig(
        timezone=tz_name,
        backfill_grace_seconds=grace,
        lookback_days=lookback_days,
        sync_date=sync_date,
        time_range=time_range,
    )


def _parse_retry(section: dict[str, Any]) -> RetryPolicy:
    try:
        return RetryPolicy(
            max_attempts=int(section.get("max_attempts", 5)),
            base_delay_seconds=float(section.get("base_delay_seconds", 1.0)),
            max_delay_seconds=float(section.get("max_delay_seconds", 30.0)),
            backoff_factor=float(section.get("backoff_factor", 2.0)),
            jitter_factor=float(section.get("jitter_factor", 0.1)),
            retry_permanent_errors=bool(section.get("retry_permanent_errors", False)),
        )
    except ValueError as exc:
        raise ConfigError(f"Invalid [retry] section: {exc}") from exc


def _parse_schedule(section: dict[str, Any]) -> ScheduleConfig:
    cron = str(section.get("cron", "*/5 * * * *"))
    if not croniter.is_valid(cron):
        raise ConfigError(f"Invalid schedule.cron expression: {cron!r}")
    return ScheduleConfig(
        enabled=bool(section.get("enabled", False)),
        cron=cron,
        run_on_startup=bool(section.get("run_on_startup", True)),
    )
