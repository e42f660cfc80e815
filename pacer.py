#!/usr/bin/env python3
"""
pacer.py

YAML-driven planner and dispatcher for paced presale purchase feeds.
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
import random
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple
from urllib import error as urllib_error
from urllib import request as urllib_request

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

from telegram_client import DeliveryError, TelegramClient


LOG_FILE = "pacer.log"
DEFAULT_CONFIG = "pacer.yaml"
DEFAULT_STATE_FILE = "data/state.json"
DEFAULT_ASSETS_DIR = "assets"
DEFAULT_PREVIEW_COUNT = 10
DEFAULT_PUBLIC_HOST = "0.0.0.0"
DEFAULT_PUBLIC_PORT = 8787
DEFAULT_CLOCK_TIMEOUT_SECONDS = 8
DEFAULT_TELEGRAM_TIMEOUT_SECONDS = 15
DEFAULT_BURST_MINUTES = 10

SECONDS_PER_HOUR = 3600
MAX_LATENESS_SECONDS = 30
MAX_WAIT_SECONDS = 5.0
RETRY_DELAY_SECONDS = 1.0
UNIQUENESS_SEARCH_RADIUS = 300
COUNTDOWN_MINUTES = (59, 30, 5, 4, 3, 2, 1)

KIND_PURCHASE = "purchase"
KIND_COUNTDOWN = "countdown"
KIND_LAUNCH = "launch"
VALID_KINDS = {KIND_PURCHASE, KIND_COUNTDOWN, KIND_LAUNCH}

PURCHASE_IMAGE = "feed.png"
LAUNCH_IMAGE = "live.png"

# Indexed by datetime.weekday(): Monday=0 .. Sunday=6.
WEEKDAY_BIAS = (0.95, 1.0, 1.05, 1.1, 1.2, 1.25, 0.9)


class PacerError(Exception):
    """Base error for pacer."""


class ConfigError(PacerError):
    """Config validation error."""


class ConfigurationMissing(ConfigError):
    """Required delivery identity is absent."""


class ClockUnavailable(PacerError):
    """An authoritative time source could not be reached or parsed."""


class ClockNotSynchronized(PacerError):
    """Corrected time was requested before synchronization."""


class StateError(PacerError):
    """Persisted execution state is malformed."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("pacer")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()
UTC = timezone.utc


@dataclass(frozen=True)
class ScheduleSettings:
    start: datetime
    end: datetime
    target_total: float
    amount_per_event: float
    start_raised: float
    min_per_hour: int
    max_per_hour: int
    enforce_hard_stop: bool


@dataclass(frozen=True)
class SpecialPhaseSettings:
    enabled: bool
    countdown_start: Optional[datetime]
    launch_at: datetime
    burst_minutes: int
    burst_count: int


@dataclass(frozen=True)
class FooterLink:
    label: str
    url: str


@dataclass(frozen=True)
class CampaignSettings:
    name: str
    phase_label: str
    token_symbol: str
    tokens_per_unit: float
    hard_cap: float
    token_supply: float
    total_spots: int
    whitelisted: int
    max_contribution: float
    presale_url: str
    footer_links: List[FooterLink] = field(default_factory=list)


@dataclass(frozen=True)
class TelegramSettings:
    bot_token: str
    chat_id: str
    timeout_seconds: int


@dataclass(frozen=True)
class StorageSettings:
    state_file: Path
    assets_dir: Path


@dataclass(frozen=True)
class StatusServerSettings:
    enabled: bool
    host: str
    port: int


@dataclass(frozen=True)
class PacerConfig:
    schedule: ScheduleSettings
    special_phase: Optional[SpecialPhaseSettings]
    campaign: CampaignSettings
    telegram: TelegramSettings
    storage: StorageSettings
    status_server: StatusServerSettings
    clock_timeout_seconds: int


@dataclass
class ScheduleEntry:
    at: datetime
    kind: str
    text: Optional[str] = None
    image: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"at": format_instant(self.at), "kind": self.kind}
        if self.text is not None:
            payload["text"] = self.text
        if self.image is not None:
            payload["image"] = self.image
        return payload

    @staticmethod
    def from_payload(payload: Any) -> "ScheduleEntry":
        if not isinstance(payload, dict):
            raise StateError("Schedule entry must be a mapping.")
        kind = payload.get("kind")
        if kind not in VALID_KINDS:
            raise StateError(f'Unknown schedule entry kind "{kind}".')
        try:
            at = parse_instant(payload.get("at"))
        except ValueError as exc:
            raise StateError(f"Invalid schedule entry timestamp: {exc}") from exc
        text = payload.get("text")
        if kind == KIND_COUNTDOWN and not text:
            raise StateError(f"Countdown entry at {payload.get('at')} has no text.")
        return ScheduleEntry(at=at, kind=kind, text=text, image=payload.get("image"))


@dataclass
class Plan:
    entries: List[ScheduleEntry]
    effective_end: datetime

    def counts_by_kind(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for entry in self.entries:
            counts[entry.kind] = counts.get(entry.kind, 0) + 1
        return counts


@dataclass
class ExecutionState:
    signature: str
    entries: List[ScheduleEntry]
    effective_end: datetime
    cursor: int = 0
    total_raised: float = 0.0
    completed: bool = False

    @property
    def remaining(self) -> int:
        return max(0, len(self.entries) - self.cursor)

    @property
    def next_entry(self) -> Optional[ScheduleEntry]:
        if self.cursor < len(self.entries):
            return self.entries[self.cursor]
        return None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "configSignature": self.signature,
            "schedule": [entry.to_payload() for entry in self.entries],
            "effectiveEnd": format_instant(self.effective_end),
            "sentCount": self.cursor,
            "totalRaised": self.total_raised,
            "completed": self.completed,
        }

    @staticmethod
    def from_payload(payload: Any) -> "ExecutionState":
        if not isinstance(payload, dict):
            raise StateError("State record must be a mapping.")
        schedule_raw = payload.get("schedule")
        if not isinstance(schedule_raw, list):
            raise StateError("State record has no schedule list.")
        entries = [ScheduleEntry.from_payload(item) for item in schedule_raw]
        cursor = payload.get("sentCount", 0)
        if not isinstance(cursor, int) or cursor < 0 or cursor > len(entries):
            raise StateError(f"State cursor {cursor!r} is outside the schedule (length {len(entries)}).")
        signature = payload.get("configSignature")
        if not isinstance(signature, str):
            raise StateError("State record has no configuration signature.")
        try:
            effective_end = parse_instant(payload.get("effectiveEnd"))
        except ValueError as exc:
            raise StateError(f"Invalid effectiveEnd: {exc}") from exc
        total_raised = payload.get("totalRaised", 0)
        if not isinstance(total_raised, (int, float)) or isinstance(total_raised, bool):
            raise StateError("State totalRaised must be a number.")
        return ExecutionState(
            signature=signature,
            entries=entries,
            effective_end=effective_end,
            cursor=cursor,
            total_raised=float(total_raised),
            completed=cursor == len(entries),
        )


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def parse_instant(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"expected ISO datetime, got {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_instant(value: datetime) -> str:
    return value.astimezone(UTC).isoformat()


def to_epoch_seconds(value: datetime) -> int:
    return int(math.floor(value.timestamp()))


def from_epoch_seconds(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=UTC)


def format_display_time(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def require_yaml_dependency() -> None:
    if yaml is None:
        raise PacerError("Missing required dependency: PyYAML. Install with: pip install PyYAML")


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_number(value: Any, field_path: str, default: Optional[float]) -> float:
    if value is None:
        if default is None:
            raise ConfigError(f"Error: {field_path} is required.")
        return default
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be a number.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def optional_str(value: Any, field_path: str, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be a string.")
    return value.strip()


def parse_iso_datetime(value: Any, field_path: str) -> datetime:
    if value is None:
        raise ConfigError(f"Error: {field_path} is required.")
    try:
        return parse_instant(value)
    except ValueError as exc:
        raise ConfigError(f'Error: {field_path} must be ISO datetime, got "{value}".') from exc


def _section(payload: Mapping[str, Any], name: str, allowed: Set[str]) -> Dict[str, Any]:
    raw = payload.get(name, {}) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {name} must be a mapping.")
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {name}: {sorted(unknown)}.")
    return raw


def _resolve_path(value: Any, config_dir: Path, field_path: str, default: str) -> Path:
    raw = optional_str(value, field_path, default) or default
    path = Path(raw)
    if not path.is_absolute():
        path = config_dir / path
    return path.resolve()


def _env_str(raw: str, env_name: str) -> str:
    return raw.strip()


def _env_number(raw: str, env_name: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f'Error: {env_name} must be a number, got "{raw}".') from exc


def _env_int(raw: str, env_name: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f'Error: {env_name} must be an integer, got "{raw}".') from exc


def _env_flag(raw: str, env_name: str) -> bool:
    return raw.strip().lower() == "true"


ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str, str], Any]]] = {
    "BOT_TOKEN": ("telegram", "bot_token", _env_str),
    "TARGET_CHAT_ID": ("telegram", "chat_id", _env_str),
    "START_TIME_UTC": ("schedule", "start", _env_str),
    "END_TIME_UTC": ("schedule", "end", _env_str),
    "TARGET_TOTAL_USD": ("schedule", "target_total", _env_number),
    "AMOUNT_PER_MESSAGE_USD": ("schedule", "amount_per_event", _env_number),
    "START_RAISED_USD": ("schedule", "start_raised", _env_number),
    "MIN_PER_HOUR": ("schedule", "min_per_hour", _env_int),
    "MAX_PER_HOUR": ("schedule", "max_per_hour", _env_int),
    "ENFORCE_HARD_STOP": ("schedule", "enforce_hard_stop", _env_flag),
    "TOKENS_PER_HUNDRED": ("campaign", "tokens_per_unit", _env_number),
    "PUBLIC_PORT": ("status_server", "port", _env_int),
}


def apply_env_overrides(payload: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {
        key: (dict(value) if isinstance(value, dict) else value) for key, value in payload.items()
    }
    for env_name, (section, key, caster) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or not raw.strip():
            continue
        section_payload = merged.get(section)
        if section_payload is None:
            section_payload = {}
        elif not isinstance(section_payload, dict):
            raise ConfigError(f"Error: {section} must be a mapping.")
        section_payload[key] = caster(raw, env_name)
        merged[section] = section_payload
    return merged


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    require_yaml_dependency()
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_schedule_settings(payload: Mapping[str, Any]) -> ScheduleSettings:
    raw = _section(
        payload,
        "schedule",
        {
            "start",
            "end",
            "target_total",
            "amount_per_event",
            "start_raised",
            "min_per_hour",
            "max_per_hour",
            "enforce_hard_stop",
        },
    )
    start = parse_iso_datetime(raw.get("start"), "schedule.start")
    end = parse_iso_datetime(raw.get("end"), "schedule.end")
    if end <= start:
        raise ConfigError("Error: schedule.end must be after schedule.start.")

    target_total = ensure_number(raw.get("target_total"), "schedule.target_total", None)
    if target_total <= 0:
        raise ConfigError("Error: schedule.target_total must be > 0.")
    amount_per_event = ensure_number(raw.get("amount_per_event"), "schedule.amount_per_event", None)
    if amount_per_event <= 0:
        raise ConfigError("Error: schedule.amount_per_event must be > 0.")
    start_raised = ensure_number(raw.get("start_raised"), "schedule.start_raised", 0.0)
    if start_raised < 0:
        raise ConfigError("Error: schedule.start_raised must be >= 0.")

    min_per_hour = ensure_int(raw.get("min_per_hour"), "schedule.min_per_hour", 0, 0)
    max_per_hour = ensure_int(raw.get("max_per_hour"), "schedule.max_per_hour", 60, 1)
    if max_per_hour > SECONDS_PER_HOUR:
        raise ConfigError(f"Error: schedule.max_per_hour must be <= {SECONDS_PER_HOUR}.")
    if min_per_hour > max_per_hour:
        raise ConfigError("Error: schedule.min_per_hour must be <= schedule.max_per_hour.")

    return ScheduleSettings(
        start=start,
        end=end,
        target_total=target_total,
        amount_per_event=amount_per_event,
        start_raised=start_raised,
        min_per_hour=min_per_hour,
        max_per_hour=max_per_hour,
        enforce_hard_stop=ensure_bool(raw.get("enforce_hard_stop"), "schedule.enforce_hard_stop", False),
    )


def parse_special_phase(payload: Mapping[str, Any]) -> Optional[SpecialPhaseSettings]:
    if payload.get("special_phase") is None:
        return None
    raw = _section(
        payload,
        "special_phase",
        {"enabled", "countdown_start", "launch_at", "burst_minutes", "burst_count"},
    )
    enabled = ensure_bool(raw.get("enabled"), "special_phase.enabled", False)
    if not enabled:
        return None
    launch_at = parse_iso_datetime(raw.get("launch_at"), "special_phase.launch_at")
    countdown_start = (
        parse_iso_datetime(raw["countdown_start"], "special_phase.countdown_start")
        if raw.get("countdown_start") is not None
        else None
    )
    if countdown_start is not None and countdown_start > launch_at:
        raise ConfigError("Error: special_phase.countdown_start must be <= special_phase.launch_at.")
    burst_minutes = ensure_int(
        raw.get("burst_minutes"), "special_phase.burst_minutes", DEFAULT_BURST_MINUTES, 1
    )
    burst_count = ensure_int(raw.get("burst_count"), "special_phase.burst_count", 0, 0)
    if burst_count > burst_minutes * 60:
        raise ConfigError(
            "Error: special_phase.burst_count cannot exceed the seconds in special_phase.burst_minutes."
        )
    return SpecialPhaseSettings(
        enabled=enabled,
        countdown_start=countdown_start,
        launch_at=launch_at,
        burst_minutes=burst_minutes,
        burst_count=burst_count,
    )


def parse_campaign_settings(payload: Mapping[str, Any], schedule: ScheduleSettings) -> CampaignSettings:
    raw = _section(
        payload,
        "campaign",
        {
            "name",
            "phase_label",
            "token_symbol",
            "tokens_per_unit",
            "hard_cap",
            "token_supply",
            "total_spots",
            "whitelisted",
            "max_contribution",
            "presale_url",
            "footer_links",
        },
    )
    tokens_per_unit = ensure_number(raw.get("tokens_per_unit"), "campaign.tokens_per_unit", 1.0)
    if tokens_per_unit < 0:
        raise ConfigError("Error: campaign.tokens_per_unit must be >= 0.")
    hard_cap = ensure_number(raw.get("hard_cap"), "campaign.hard_cap", schedule.target_total)
    if hard_cap <= 0:
        raise ConfigError("Error: campaign.hard_cap must be > 0.")
    default_spots = required_event_count(schedule.target_total, schedule.amount_per_event)

    links_raw = raw.get("footer_links", []) or []
    if not isinstance(links_raw, list):
        raise ConfigError("Error: campaign.footer_links must be a list.")
    footer_links: List[FooterLink] = []
    for idx, link_raw in enumerate(links_raw):
        item_path = f"campaign.footer_links[{idx}]"
        if not isinstance(link_raw, dict):
            raise ConfigError(f"Error: {item_path} must be a mapping.")
        unknown = set(link_raw.keys()) - {"label", "url"}
        if unknown:
            raise ConfigError(f"Error: Unknown keys in {item_path}: {sorted(unknown)}.")
        footer_links.append(
            FooterLink(
                label=ensure_str(link_raw.get("label"), f"{item_path}.label"),
                url=ensure_str(link_raw.get("url"), f"{item_path}.url"),
            )
        )

    return CampaignSettings(
        name=optional_str(raw.get("name"), "campaign.name", "Presale") or "Presale",
        phase_label=optional_str(raw.get("phase_label"), "campaign.phase_label"),
        token_symbol=optional_str(raw.get("token_symbol"), "campaign.token_symbol", "TOKEN") or "TOKEN",
        tokens_per_unit=tokens_per_unit,
        hard_cap=hard_cap,
        token_supply=ensure_number(raw.get("token_supply"), "campaign.token_supply", 0.0),
        total_spots=ensure_int(raw.get("total_spots"), "campaign.total_spots", default_spots, 1),
        whitelisted=ensure_int(raw.get("whitelisted"), "campaign.whitelisted", 0, 0),
        max_contribution=ensure_number(
            raw.get("max_contribution"), "campaign.max_contribution", schedule.amount_per_event
        ),
        presale_url=optional_str(raw.get("presale_url"), "campaign.presale_url"),
        footer_links=footer_links,
    )


def load_config(config_path: Path, environ: Optional[Mapping[str, str]] = None) -> PacerConfig:
    payload = _load_config_payload(config_path)
    payload = apply_env_overrides(payload, os.environ if environ is None else environ)

    unknown_top = set(payload.keys()) - {
        "version",
        "schedule",
        "special_phase",
        "campaign",
        "telegram",
        "storage",
        "status_server",
        "clock",
    }
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    config_dir = config_path.parent
    schedule = parse_schedule_settings(payload)
    special_phase = parse_special_phase(payload)
    campaign = parse_campaign_settings(payload, schedule)

    telegram_raw = _section(payload, "telegram", {"bot_token", "chat_id", "timeout_seconds"})
    telegram = TelegramSettings(
        bot_token=optional_str(telegram_raw.get("bot_token"), "telegram.bot_token"),
        chat_id=optional_str(telegram_raw.get("chat_id"), "telegram.chat_id"),
        timeout_seconds=ensure_int(
            telegram_raw.get("timeout_seconds"),
            "telegram.timeout_seconds",
            DEFAULT_TELEGRAM_TIMEOUT_SECONDS,
            1,
        ),
    )

    storage_raw = _section(payload, "storage", {"state_file", "assets_dir"})
    storage = StorageSettings(
        state_file=_resolve_path(storage_raw.get("state_file"), config_dir, "storage.state_file", DEFAULT_STATE_FILE),
        assets_dir=_resolve_path(storage_raw.get("assets_dir"), config_dir, "storage.assets_dir", DEFAULT_ASSETS_DIR),
    )

    server_raw = _section(payload, "status_server", {"enabled", "host", "port"})
    status_server = StatusServerSettings(
        enabled=ensure_bool(server_raw.get("enabled"), "status_server.enabled", True),
        host=optional_str(server_raw.get("host"), "status_server.host", DEFAULT_PUBLIC_HOST) or DEFAULT_PUBLIC_HOST,
        port=ensure_int(server_raw.get("port"), "status_server.port", DEFAULT_PUBLIC_PORT, 0),
    )

    clock_raw = _section(payload, "clock", {"timeout_seconds"})
    clock_timeout = ensure_int(
        clock_raw.get("timeout_seconds"), "clock.timeout_seconds", DEFAULT_CLOCK_TIMEOUT_SECONDS, 1
    )

    return PacerConfig(
        schedule=schedule,
        special_phase=special_phase,
        campaign=campaign,
        telegram=telegram,
        storage=storage,
        status_server=status_server,
        clock_timeout_seconds=clock_timeout,
    )


def active_special_phase(config: PacerConfig) -> Optional[SpecialPhaseSettings]:
    phase = config.special_phase
    if phase is None or not phase.enabled:
        return None
    return phase


def require_credentials(config: PacerConfig) -> None:
    missing = []
    if not config.telegram.bot_token:
        missing.append("telegram.bot_token (BOT_TOKEN)")
    if not config.telegram.chat_id:
        missing.append("telegram.chat_id (TARGET_CHAT_ID)")
    if missing:
        raise ConfigurationMissing(f"Error: Missing required settings: {', '.join(missing)}.")


def config_signature(config: PacerConfig) -> str:
    """Serialize the fields that shape the schedule; other settings are cosmetic."""
    schedule = config.schedule
    phase = active_special_phase(config)
    shallow: Dict[str, Any] = {
        "start": format_instant(schedule.start),
        "end": format_instant(schedule.end),
        "target_total": schedule.target_total,
        "amount_per_event": schedule.amount_per_event,
        "min_per_hour": schedule.min_per_hour,
        "max_per_hour": schedule.max_per_hour,
        "tokens_per_unit": config.campaign.tokens_per_unit,
        "enforce_hard_stop": schedule.enforce_hard_stop,
        "special_phase": None,
    }
    if phase is not None:
        shallow["special_phase"] = {
            "enabled": phase.enabled,
            "countdown_start": format_instant(phase.countdown_start) if phase.countdown_start else None,
            "launch_at": format_instant(phase.launch_at),
            "burst_minutes": phase.burst_minutes,
            "burst_count": phase.burst_count,
        }
    return json.dumps(shallow, sort_keys=True, separators=(",", ":"))


# ---------------------------------------------------------------------------
# Clock synchronization
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeSource:
    name: str
    url: str
    parse: Callable[[Dict[str, Any]], datetime]


def _parse_worldtimeapi(payload: Dict[str, Any]) -> datetime:
    return parse_instant(payload["utc_datetime"])


def _parse_timeapi(payload: Dict[str, Any]) -> datetime:
    return datetime(
        int(payload["year"]),
        int(payload["month"]),
        int(payload["day"]),
        int(payload["hour"]),
        int(payload["minute"]),
        int(payload["seconds"]),
        tzinfo=UTC,
    )


def _parse_worldclockapi(payload: Dict[str, Any]) -> datetime:
    return parse_instant(payload["currentDateTime"])


DEFAULT_TIME_SOURCES: Tuple[TimeSource, ...] = (
    TimeSource("worldtimeapi.org", "https://worldtimeapi.org/api/timezone/Etc/UTC", _parse_worldtimeapi),
    TimeSource("timeapi.io", "https://timeapi.io/api/Time/current/zone?timeZone=UTC", _parse_timeapi),
    TimeSource("worldclockapi.com", "http://worldclockapi.com/api/json/utc/now", _parse_worldclockapi),
)


def fetch_authoritative_utc(source: TimeSource, timeout_seconds: float) -> datetime:
    req = urllib_request.Request(url=source.url, method="GET", headers={"Accept": "application/json"})
    try:
        with urllib_request.urlopen(req, timeout=timeout_seconds) as response:
            payload = json.loads(response.read().decode("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("response body is not a JSON object")
        return source.parse(payload)
    except urllib_error.URLError as exc:
        raise ClockUnavailable(f"{source.name} unreachable: {exc.reason}") from exc
    except (OSError, ValueError, KeyError, TypeError) as exc:
        raise ClockUnavailable(f"{source.name} returned no usable time: {exc}") from exc


class ClockSynchronizer:
    """One-shot offset between the local clock and an authoritative UTC source."""

    def __init__(
        self,
        sources: Sequence[TimeSource] = DEFAULT_TIME_SOURCES,
        timeout_seconds: float = DEFAULT_CLOCK_TIMEOUT_SECONDS,
        fetch: Callable[[TimeSource, float], datetime] = fetch_authoritative_utc,
        local_time: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.sources = list(sources)
        self.timeout_seconds = timeout_seconds
        self._fetch = fetch
        self._local_time = local_time or (lambda: datetime.now(tz=UTC))
        self.offset: Optional[timedelta] = None
        self.source_name: Optional[str] = None

    @property
    def synchronized(self) -> bool:
        return self.offset is not None

    def synchronize(self) -> bool:
        """Return True when an authoritative source answered, False on local fallback."""
        if self.offset is not None:
            return self.source_name is not None

        logger.info("Synchronizing clock against %s time source(s)", len(self.sources))
        for source in self.sources:
            local_at_request = self._local_time()
            try:
                authoritative = self._fetch(source, self.timeout_seconds)
            except ClockUnavailable as exc:
                logger.warning("Time source %s failed: %s", source.name, str(exc))
                continue
            self.offset = authoritative - local_at_request
            self.source_name = source.name
            logger.info(
                "Clock synchronized with %s (local=%s, authoritative=%s, offset=%.3fs)",
                source.name,
                format_instant(local_at_request),
                format_instant(authoritative),
                self.offset.total_seconds(),
            )
            return True

        self.offset = timedelta(0)
        logger.warning(
            "All time sources failed; using the local clock as fallback (local=%s).",
            format_instant(self._local_time()),
        )
        return False

    def now(self) -> datetime:
        if self.offset is None:
            raise ClockNotSynchronized("Clock offset not initialized; call synchronize() first.")
        return self._local_time() + self.offset


# ---------------------------------------------------------------------------
# Rate envelope
# ---------------------------------------------------------------------------


def required_event_count(target_total: float, amount_per_event: float) -> int:
    return int(math.ceil(target_total / amount_per_event))


def plan_span_hours(start: datetime, end: datetime, total_events: int, max_per_hour: int) -> int:
    hours = max(1, int(math.ceil((end - start).total_seconds() / SECONDS_PER_HOUR)))
    capacity = hours * max_per_hour
    if capacity < total_events:
        additional = int(math.ceil((total_events - capacity) / max_per_hour))
        logger.info(
            "Extending span by %s hour(s): %s events exceed capacity %s (%s h x %s/h)",
            additional,
            total_events,
            capacity,
            hours,
            max_per_hour,
        )
        hours += additional
    return hours


def hourly_weights(start: datetime, hours: int, rng: random.Random) -> List[float]:
    weights: List[float] = []
    origin = start.astimezone(UTC)
    for index in range(hours):
        moment = origin + timedelta(hours=index)
        # Peaks in the UTC afternoon and evening.
        diurnal = 0.95 + 0.35 * math.sin((2 * math.pi * (moment.hour + 2)) / 24)
        noise = rng.uniform(0.9, 1.2)
        weights.append(diurnal * WEEKDAY_BIAS[moment.weekday()] * noise)
    return weights


def _shuffled_indices(count: int, rng: random.Random) -> List[int]:
    order = list(range(count))
    rng.shuffle(order)
    return order


def _add_with_headroom(per_hour: List[int], amount: int, ceiling: int, rng: random.Random) -> int:
    for index in _shuffled_indices(len(per_hour), rng):
        if amount <= 0:
            break
        headroom = ceiling - per_hour[index]
        if headroom > 0:
            add = min(headroom, amount)
            per_hour[index] += add
            amount -= add
    return amount


def _take_above_floor(per_hour: List[int], amount: int, floor: int, rng: random.Random) -> int:
    for index in _shuffled_indices(len(per_hour), rng):
        if amount <= 0:
            break
        surplus = per_hour[index] - floor
        if surplus > 0:
            take = min(surplus, amount)
            per_hour[index] -= take
            amount -= take
    return amount


def _reconcile_total(
    per_hour: List[int],
    total_events: int,
    max_per_hour: int,
    rng: random.Random,
    floor: int = 0,
) -> None:
    diff = total_events - sum(per_hour)
    if diff > 0:
        _add_with_headroom(per_hour, diff, max_per_hour, rng)
    elif diff < 0:
        remaining = _take_above_floor(per_hour, -diff, floor, rng)
        if remaining > 0 and floor > 0:
            _take_above_floor(per_hour, remaining, 0, rng)


def build_rate_envelope(
    start: datetime,
    hours: int,
    total_events: int,
    min_per_hour: int,
    max_per_hour: int,
    rng: Optional[random.Random] = None,
) -> List[int]:
    """Allocate ``total_events`` across ``hours`` hourly buckets.

    The result always sums to ``total_events`` and never exceeds
    ``max_per_hour``. Every hour reaches ``min_per_hour`` whenever
    ``hours * min_per_hour <= total_events``; otherwise the floor is relaxed
    so the total stays exact. Callers must extend ``hours`` first when
    ``hours * max_per_hour < total_events`` (see :func:`plan_span_hours`).
    """
    if hours < 1:
        raise PacerError("Rate envelope needs at least one hour.")
    if hours * max_per_hour < total_events:
        raise PacerError(
            f"Rate envelope cannot hold {total_events} events in {hours} hour(s) at {max_per_hour}/h."
        )
    rng = rng or random.Random()

    weights = hourly_weights(start, hours, rng)
    weight_sum = sum(weights)
    per_hour = [int(round((weight / weight_sum) * total_events)) for weight in weights]

    per_hour = [min(count, max_per_hour) for count in per_hour]
    _reconcile_total(per_hour, total_events, max_per_hour, rng)

    deficit = 0
    for index, count in enumerate(per_hour):
        if count < min_per_hour:
            deficit += min_per_hour - count
            per_hour[index] = min_per_hour
    if deficit > 0:
        _take_above_floor(per_hour, deficit, min_per_hour, rng)

    _reconcile_total(per_hour, total_events, max_per_hour, rng, floor=min_per_hour)
    return per_hour


# ---------------------------------------------------------------------------
# Interval uniqueness
# ---------------------------------------------------------------------------


def sample_unique_offsets(count: int, span_seconds: int, rng: random.Random) -> List[int]:
    span = max(1, span_seconds)
    if count >= span:
        return list(range(span))
    picked: Set[int] = set()
    while len(picked) < count:
        picked.add(rng.randrange(span))
    return sorted(picked)


def _hour_floor(moment: int) -> int:
    return moment - (moment % SECONDS_PER_HOUR)


def _gap(moment: int, previous: int) -> int:
    return max(1, moment - previous)


def _radius_candidate(
    hour_start: int,
    base: int,
    lower: int,
    upper: int,
    previous: int,
    occupied: Set[int],
    used_gaps: Set[int],
) -> Optional[int]:
    for radius in range(1, UNIQUENESS_SEARCH_RADIUS + 1):
        above = base + radius
        below = base - radius
        if above > upper and below < lower:
            break
        for second in (above, below):
            if second < lower or second > upper or second in occupied:
                continue
            if _gap(hour_start + second, previous) in used_gaps:
                continue
            return hour_start + second
    return None


def _scan_candidate(
    hour_start: int,
    lower: int,
    upper: int,
    previous: int,
    occupied: Set[int],
    used_gaps: Set[int],
) -> Optional[int]:
    for second in range(lower, upper + 1):
        if second in occupied:
            continue
        if _gap(hour_start + second, previous) in used_gaps:
            continue
        return hour_start + second
    return None


def enforce_unique_intervals(timestamps: Sequence[int]) -> List[int]:
    """Nudge epoch-second timestamps so consecutive gaps do not repeat.

    Entries stay inside their UTC clock hour and never cross a neighbour.
    When no free second yields an unused gap the duplicate is kept.
    """
    times = list(timestamps)
    if len(times) <= 1:
        return times

    used_gaps: Set[int] = set()
    seconds_by_hour: Dict[int, Set[int]] = {}
    for moment in times:
        seconds_by_hour.setdefault(_hour_floor(moment), set()).add(moment % SECONDS_PER_HOUR)

    relaxed = 0
    for index in range(1, len(times)):
        previous = times[index - 1]
        current = times[index]
        gap = _gap(current, previous)
        if gap not in used_gaps:
            used_gaps.add(gap)
            continue

        hour_start = _hour_floor(current)
        hour_end = hour_start + SECONDS_PER_HOUR - 1
        lower_bound = max(hour_start, previous + 1)
        upper_bound = min(hour_end, times[index + 1] - 1) if index + 1 < len(times) else hour_end
        if lower_bound > upper_bound:
            logger.debug(
                "Keeping duplicate interval %ss at %s: no room between neighbours",
                gap,
                format_instant(from_epoch_seconds(current)),
            )
            used_gaps.add(gap)
            relaxed += 1
            continue

        occupied = seconds_by_hour.setdefault(hour_start, set())
        occupied.discard(current - hour_start)
        lower = lower_bound - hour_start
        upper = upper_bound - hour_start

        candidate = _radius_candidate(
            hour_start, current - hour_start, lower, upper, previous, occupied, used_gaps
        )
        if candidate is None:
            candidate = _scan_candidate(hour_start, lower, upper, previous, occupied, used_gaps)

        if candidate is None:
            logger.debug(
                "Keeping duplicate interval %ss at %s: search exhausted in [%s, %s]",
                gap,
                format_instant(from_epoch_seconds(current)),
                lower,
                upper,
            )
            relaxed += 1
        else:
            current = candidate
            gap = _gap(candidate, previous)

        times[index] = current
        used_gaps.add(gap)
        occupied.add(current - hour_start)

    if relaxed:
        logger.info("Interval uniqueness relaxed for %s of %s entries", relaxed, len(times))
    return times


# ---------------------------------------------------------------------------
# Message rendering
# ---------------------------------------------------------------------------


def _money(amount: float) -> str:
    return f"{amount:,.2f}"


def _whole(amount: float) -> str:
    return f"{amount:,.0f}"


def _header(campaign: CampaignSettings) -> str:
    if campaign.phase_label:
        return f"═════ {campaign.name.upper()} PRESALE [ {campaign.phase_label} ] ═════"
    return f"═════ {campaign.name.upper()} PRESALE ═════"


def _footer(campaign: CampaignSettings) -> List[str]:
    if not campaign.footer_links:
        return []
    links = " | ".join(f'<a href="{link.url}">{link.label}</a>' for link in campaign.footer_links)
    return ["", "━" * 40, links]


def _campaign_facts(campaign: CampaignSettings) -> List[str]:
    lines = [f"⚡ First Come, First Served — Only {campaign.total_spots:,} spots!", ""]
    if campaign.whitelisted:
        lines.append(f"👥 Whitelisted: {campaign.whitelisted:,}")
    lines.append(f"💰 Max: ${_whole(campaign.max_contribution)} each")
    if campaign.token_supply:
        lines.append(f"💎 Supply: {_whole(campaign.token_supply)} ${campaign.token_symbol}")
    lines.append(f"📊 Hard Cap: ${_whole(campaign.hard_cap)}")
    return lines


def render_purchase(
    campaign: CampaignSettings,
    amount_per_event: float,
    total_raised: float,
    now: datetime,
) -> Tuple[str, str]:
    spots_filled = int(total_raised // amount_per_event)
    tokens_sold = spots_filled * campaign.tokens_per_unit
    spots_remaining = max(0, campaign.total_spots - spots_filled)
    percent_sold = (total_raised / campaign.hard_cap) * 100
    lines = [
        _header(campaign),
        "",
        "🚀 NEW PURCHASE!",
        "",
        f"💰 ${_money(amount_per_event)} ({_money(campaign.tokens_per_unit)} ${campaign.token_symbol})",
        f"📅 {format_display_time(now)} UTC",
        "",
        f"📊 Raised: ${_money(total_raised)} / ${_whole(campaign.hard_cap)} ({percent_sold:.2f}%)",
    ]
    if campaign.token_supply:
        lines.append(
            f"💎 Sold: {_money(tokens_sold)} / {_whole(campaign.token_supply)} ${campaign.token_symbol}"
        )
    lines.extend(
        [
            f"👥 Spots Filled: {spots_filled:,} / {campaign.total_spots:,}",
            f"⚡ Remaining: {spots_remaining:,}",
        ]
    )
    lines.extend(_footer(campaign))
    return "\n".join(lines), PURCHASE_IMAGE


def render_countdown(campaign: CampaignSettings, minutes: int) -> Tuple[str, str]:
    unit = "MINUTE" if minutes == 1 else "MINUTES"
    lines = [f"🚀 {minutes} {unit} TO LAUNCH! 🚀", ""]
    lines.extend(_campaign_facts(campaign))
    if campaign.presale_url:
        lines.extend(["", f'🔗 Be ready: <a href="{campaign.presale_url}">{campaign.presale_url}</a>'])
    return "\n".join(lines), f"{minutes}.png"


def render_launch(campaign: CampaignSettings) -> Tuple[str, str]:
    lines = [f"🎯 {campaign.name.upper()} PRESALE IS LIVE! 🎯", ""]
    lines.extend(_campaign_facts(campaign))
    if campaign.presale_url:
        lines.extend(["", f'🔗 Secure your spot now: <a href="{campaign.presale_url}">{campaign.presale_url}</a>'])
    return "\n".join(lines), LAUNCH_IMAGE


# ---------------------------------------------------------------------------
# Schedule composition
# ---------------------------------------------------------------------------


def countdown_entries(phase: SpecialPhaseSettings, campaign: CampaignSettings) -> List[ScheduleEntry]:
    entries: List[ScheduleEntry] = []
    for minutes in COUNTDOWN_MINUTES:
        text, image = render_countdown(campaign, minutes)
        entries.append(
            ScheduleEntry(
                at=phase.launch_at - timedelta(minutes=minutes),
                kind=KIND_COUNTDOWN,
                text=text,
                image=image,
            )
        )
    return entries


def launch_entry(phase: SpecialPhaseSettings, campaign: CampaignSettings) -> ScheduleEntry:
    text, image = render_launch(campaign)
    return ScheduleEntry(at=phase.launch_at, kind=KIND_LAUNCH, text=text, image=image)


def ordinary_timestamps(
    start: datetime,
    end: datetime,
    total_events: int,
    min_per_hour: int,
    max_per_hour: int,
    rng: random.Random,
) -> List[int]:
    hours = plan_span_hours(start, end, total_events, max_per_hour)
    per_hour = build_rate_envelope(start, hours, total_events, min_per_hour, max_per_hour, rng)
    base = to_epoch_seconds(start)
    moments: List[int] = []
    for index, count in enumerate(per_hour):
        hour_start = base + index * SECONDS_PER_HOUR
        moments.extend(hour_start + offset for offset in sample_unique_offsets(count, SECONDS_PER_HOUR, rng))
    moments.sort()
    return enforce_unique_intervals(moments)


def compose_plan(config: PacerConfig, rng: Optional[random.Random] = None) -> Plan:
    rng = rng or random.Random()
    schedule = config.schedule
    remaining = required_event_count(schedule.target_total, schedule.amount_per_event)
    normal_start = schedule.start
    entries: List[ScheduleEntry] = []

    phase = active_special_phase(config)
    if phase is not None:
        entries.extend(countdown_entries(phase, config.campaign))
        entries.append(launch_entry(phase, config.campaign))
        if phase.burst_count > 0:
            burst = min(phase.burst_count, remaining)
            window_seconds = phase.burst_minutes * 60
            launch = to_epoch_seconds(phase.launch_at)
            for offset in sample_unique_offsets(burst, window_seconds, rng):
                entries.append(ScheduleEntry(at=from_epoch_seconds(launch + offset), kind=KIND_PURCHASE))
            remaining -= burst
            normal_start = phase.launch_at + timedelta(seconds=window_seconds)
        else:
            normal_start = phase.launch_at

    if remaining > 0:
        for moment in ordinary_timestamps(
            normal_start,
            schedule.end,
            remaining,
            schedule.min_per_hour,
            schedule.max_per_hour,
            rng,
        ):
            entries.append(ScheduleEntry(at=from_epoch_seconds(moment), kind=KIND_PURCHASE))

    entries.sort(key=lambda entry: entry.at)

    if schedule.enforce_hard_stop:
        kept = [entry for entry in entries if entry.at <= schedule.end]
        if len(kept) != len(entries):
            logger.warning(
                "Hard stop dropped %s entr(ies) scheduled after %s",
                len(entries) - len(kept),
                format_instant(schedule.end),
            )
        entries = kept

    effective_end = entries[-1].at if entries else schedule.start
    return Plan(entries=entries, effective_end=effective_end)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class StateStore:
    """JSON execution state on disk, replaced atomically on every save."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Optional[ExecutionState]:
        if not self.path.exists():
            return None
        try:
            text = self.path.read_text(encoding="utf-8").lstrip("\ufeff")
            return ExecutionState.from_payload(json.loads(text))
        except (ValueError, StateError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, str(exc))
            return None

    def save(self, state: ExecutionState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(state.to_payload(), handle, indent=2, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise


def new_execution_state(config: PacerConfig, rng: Optional[random.Random] = None) -> ExecutionState:
    plan = compose_plan(config, rng)
    return ExecutionState(
        signature=config_signature(config),
        entries=plan.entries,
        effective_end=plan.effective_end,
        cursor=0,
        total_raised=config.schedule.start_raised,
        completed=not plan.entries,
    )


def load_or_generate_state(
    config: PacerConfig,
    store: StateStore,
    rng: Optional[random.Random] = None,
) -> ExecutionState:
    signature = config_signature(config)
    state = store.load()
    if state is not None and state.signature == signature:
        logger.info(
            "Resuming persisted state: %s/%s sent, total=%s",
            state.cursor,
            len(state.entries),
            _money(state.total_raised),
        )
        return state

    if state is not None:
        logger.info("Configuration signature changed; regenerating schedule.")
    state = new_execution_state(config, rng)
    store.save(state)
    counts = Plan(entries=state.entries, effective_end=state.effective_end).counts_by_kind()
    logger.info(
        "Planned schedule: total=%s counts=%s first_at=%s last_at=%s effective_end=%s",
        len(state.entries),
        json.dumps(counts, sort_keys=True),
        format_instant(state.entries[0].at) if state.entries else None,
        format_instant(state.entries[-1].at) if state.entries else None,
        format_instant(state.effective_end),
    )
    return state


# ---------------------------------------------------------------------------
# Dispatch loop
# ---------------------------------------------------------------------------


def status_snapshot(state: ExecutionState, config: PacerConfig) -> Dict[str, Any]:
    phase = active_special_phase(config)
    next_entry = state.next_entry
    return {
        "totalRaised": state.total_raised,
        "sentCount": state.cursor,
        "remaining": state.remaining,
        "completed": state.completed,
        "effectiveEnd": format_instant(state.effective_end),
        "nextAt": format_instant(next_entry.at) if next_entry else None,
        "countdownStart": format_instant(phase.countdown_start) if phase and phase.countdown_start else None,
        "launchAt": format_instant(phase.launch_at) if phase else None,
    }


class Dispatcher:
    """Sends plan entries at their scheduled corrected-time instants.

    Only the dispatcher mutates ``state``; mutations and saves happen under
    ``lock`` so status readers always see a consistent snapshot.
    """

    def __init__(
        self,
        config: PacerConfig,
        state: ExecutionState,
        store: StateStore,
        clock: ClockSynchronizer,
        sender: Any,
        lock: Optional[threading.Lock] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.state = state
        self.store = store
        self.clock = clock
        self.sender = sender
        self.lock = lock or threading.Lock()
        self._sleep = sleep

    def snapshot(self) -> Dict[str, Any]:
        with self.lock:
            return status_snapshot(self.state, self.config)

    def run(self) -> None:
        logger.info(
            "Dispatch loop started at entry %s/%s",
            self.state.cursor,
            len(self.state.entries),
        )
        while True:
            delay = self.tick()
            if delay is None:
                break
            self._sleep(delay)

    def tick(self) -> Optional[float]:
        """Run one due-check; return seconds until the next check or None once complete."""
        state = self.state
        if state.completed:
            return None
        if state.cursor >= len(state.entries):
            self._complete()
            return None

        now = self.clock.now()
        entry = state.entries[state.cursor]
        seconds_until = (entry.at - now).total_seconds()

        while seconds_until < -MAX_LATENESS_SECONDS:
            logger.warning(
                "Skipping stale %s entry at %s (behind by %.1fs)",
                entry.kind,
                format_instant(entry.at),
                -seconds_until,
            )
            with self.lock:
                state.cursor += 1
                state.completed = state.cursor >= len(state.entries)
                self.store.save(state)
            if state.cursor >= len(state.entries):
                self._complete()
                return None
            entry = state.entries[state.cursor]
            seconds_until = (entry.at - now).total_seconds()

        if seconds_until > 0:
            logger.debug(
                "Waiting for next %s entry at %s (in %.1fs)",
                entry.kind,
                format_instant(entry.at),
                seconds_until,
            )
            return min(seconds_until, MAX_WAIT_SECONDS)

        try:
            next_total = self._deliver(entry, now)
        except DeliveryError as exc:
            logger.error(
                "Delivery failed for %s entry at %s; retrying in %ss: %s",
                entry.kind,
                format_instant(entry.at),
                RETRY_DELAY_SECONDS,
                str(exc),
            )
            return RETRY_DELAY_SECONDS

        with self.lock:
            state.total_raised = next_total
            state.cursor += 1
            state.completed = state.cursor >= len(state.entries)
            self.store.save(state)

        if seconds_until < 0:
            logger.info(
                "Sent %s entry %s/%s (total=%s, late by %.1fs)",
                entry.kind,
                state.cursor,
                len(state.entries),
                _money(state.total_raised),
                -seconds_until,
            )
        else:
            logger.info(
                "Sent %s entry %s/%s (total=%s)",
                entry.kind,
                state.cursor,
                len(state.entries),
                _money(state.total_raised),
            )

        if state.cursor >= len(state.entries):
            self._complete()
            return None
        return RETRY_DELAY_SECONDS

    def _deliver(self, entry: ScheduleEntry, now: datetime) -> float:
        total = self.state.total_raised
        if entry.kind == KIND_PURCHASE:
            total += self.config.schedule.amount_per_event
            text, image = render_purchase(
                self.config.campaign,
                self.config.schedule.amount_per_event,
                total,
                now,
            )
        else:
            text, image = entry.text, entry.image
            if not text and entry.kind == KIND_LAUNCH:
                text, image = render_launch(self.config.campaign)
        self._send(text or "", image)
        return total

    def _send(self, text: str, image: Optional[str]) -> None:
        chat_id = self.config.telegram.chat_id
        image_path = self.config.storage.assets_dir / image if image else None
        if image_path is not None and image_path.is_file():
            self.sender.send_photo(chat_id, image_path, text)
        else:
            self.sender.send_text(chat_id, text)

    def _complete(self) -> None:
        with self.lock:
            if not self.state.completed:
                self.state.completed = True
                self.store.save(self.state)
        logger.info(
            "All entries dispatched (%s total, raised=%s)",
            len(self.state.entries),
            _money(self.state.total_raised),
        )


# ---------------------------------------------------------------------------
# Status server
# ---------------------------------------------------------------------------


def _make_status_handler(
    snapshot: Callable[[], Dict[str, Any]],
    phases: Dict[str, Optional[str]],
) -> type:
    class StatusHandler(BaseHTTPRequestHandler):
        def _write(self, code: int, body: Optional[Dict[str, Any]]) -> None:
            self.send_response(code)
            self.send_header("Access-Control-Allow-Origin", "*")
            self.send_header("Access-Control-Allow-Methods", "GET, OPTIONS")
            self.send_header("Access-Control-Allow-Headers", "Content-Type")
            if body is None:
                self.send_header("Content-Length", "0")
                self.end_headers()
                return
            data = json.dumps(body).encode("utf-8")
            self.send_header("Content-Type", "application/json; charset=utf-8")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def do_OPTIONS(self) -> None:  # noqa: N802 - http.server naming
            self._write(204, None)

        def do_GET(self) -> None:  # noqa: N802 - http.server naming
            route = self.path.split("?", 1)[0].rstrip("/")
            try:
                if route == "/status":
                    self._write(200, snapshot())
                elif route == "/total-raised":
                    self._write(200, {"totalRaised": snapshot()["totalRaised"]})
                elif route == "/countdown-start":
                    self._write(200, {"countdownStart": phases["countdownStart"]})
                elif route == "/presale-start":
                    self._write(200, {"launchAt": phases["launchAt"]})
                elif route == "/phases":
                    self._write(200, dict(phases))
                else:
                    self._write(404, {"error": "Not Found"})
            except Exception as exc:  # pragma: no cover
                logger.warning("Status request %s failed: %s", self.path, str(exc))
                self._write(500, {"error": "Internal Server Error"})

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug("Status server: " + format, *args)

    return StatusHandler


def phase_summary(config: PacerConfig) -> Dict[str, Optional[str]]:
    phase = active_special_phase(config)
    return {
        "start": format_instant(config.schedule.start),
        "end": format_instant(config.schedule.end),
        "countdownStart": format_instant(phase.countdown_start) if phase and phase.countdown_start else None,
        "launchAt": format_instant(phase.launch_at) if phase else None,
    }


class StatusServer:
    """Read-only JSON status endpoint served from a daemon thread."""

    def __init__(
        self,
        host: str,
        port: int,
        snapshot: Callable[[], Dict[str, Any]],
        phases: Dict[str, Optional[str]],
    ) -> None:
        self._server = ThreadingHTTPServer((host, port), _make_status_handler(snapshot, phases))
        self._server.daemon_threads = True
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return int(self._server.server_address[1])

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._server.serve_forever, daemon=True, name="pacer-status-server"
        )
        self._thread.start()
        logger.info("Status server listening on port %s", self.port)

    def close(self) -> None:
        self._server.shutdown()
        self._server.server_close()
        if self._thread:
            self._thread.join(timeout=2.0)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def command_validate(config_path: Path) -> int:
    config = load_config(config_path)
    schedule = config.schedule
    phase = active_special_phase(config)
    print(f"Config valid: {config_path}")
    print(f"Window: {format_instant(schedule.start)} -> {format_instant(schedule.end)}")
    print(
        f"Target: {_money(schedule.target_total)} in steps of {_money(schedule.amount_per_event)} "
        f"({required_event_count(schedule.target_total, schedule.amount_per_event)} events)"
    )
    print(f"Per hour: {schedule.min_per_hour}-{schedule.max_per_hour}")
    if phase is not None:
        print(
            f"Special phase: launch {format_instant(phase.launch_at)}, "
            f"burst {phase.burst_count} in {phase.burst_minutes}m"
        )
    else:
        print("Special phase: disabled")
    print(f"State file: {config.storage.state_file}")
    print(f"Signature: {config_signature(config)}")
    return 0


def command_preview(config_path: Path, count: int) -> int:
    config = load_config(config_path)
    plan = compose_plan(config)
    print("=" * 80)
    print(f"Entries: {len(plan.entries)}")
    for kind, kind_count in sorted(plan.counts_by_kind().items()):
        print(f"- {kind}: {kind_count}")
    print(f"Effective end: {format_instant(plan.effective_end)}")
    if plan.effective_end > config.schedule.end:
        print("Note: effective end exceeds the configured end (span was extended).")
    print(f"First {count} entr(ies):")
    if not plan.entries:
        print("- none")
    for entry in plan.entries[:count]:
        print(f"- {format_instant(entry.at)} {entry.kind}")
    print("=" * 80)
    return 0


def command_status(config_path: Path) -> int:
    config = load_config(config_path)
    state = StateStore(config.storage.state_file).load()
    if state is None:
        print(f"No persisted state at {config.storage.state_file}")
        return 0
    payload = status_snapshot(state, config)
    payload["signatureMatches"] = state.signature == config_signature(config)
    print(json.dumps(payload, indent=2))
    return 0


def command_run(config_path: Path) -> int:
    config = load_config(config_path)
    require_credentials(config)

    clock = ClockSynchronizer(timeout_seconds=config.clock_timeout_seconds)
    if not clock.synchronize():
        logger.warning("Proceeding without authoritative time; dispatch may drift with the local clock.")

    store = StateStore(config.storage.state_file)
    state = load_or_generate_state(config, store)
    sender = TelegramClient(config.telegram.bot_token, timeout_seconds=config.telegram.timeout_seconds)
    dispatcher = Dispatcher(config, state, store, clock, sender)

    server: Optional[StatusServer] = None
    if config.status_server.enabled:
        server = StatusServer(
            config.status_server.host,
            config.status_server.port,
            dispatcher.snapshot,
            phase_summary(config),
        )
        server.start()

    try:
        dispatcher.run()
    except KeyboardInterrupt:
        logger.info("Dispatch loop interrupted by user.")
        return 130
    finally:
        if server is not None:
            server.close()
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="pacer.py presale feed planner and dispatcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to pacer YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate config and print its signature")
    validate_parser.add_argument(
        "--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})"
    )

    preview_parser = subparsers.add_parser("preview", help="Synthesize a plan without persisting it")
    preview_parser.add_argument(
        "--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})"
    )
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Entries to list")

    status_parser = subparsers.add_parser("status", help="Show persisted execution state")
    status_parser.add_argument(
        "--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})"
    )

    run_parser = subparsers.add_parser("run", help="Run the dispatch loop until the plan completes")
    run_parser.add_argument(
        "--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})"
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise PacerError("--count must be >= 1")
            return command_preview(config_path, count=args.count)
        if args.command == "status":
            return command_status(config_path)
        if args.command == "run":
            return command_run(config_path)
        raise PacerError(f"Unsupported command: {args.command}")
    except PacerError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
