#!/usr/bin/env python3
"""Telegram bot for the Odyssey film club.

Architecture:
- Poller loop: long-poll Telegram for updates and hand each one to the bot,
  serialized per chat so a slow admin action never stalls other chats.
- Rating workflow: admins open a rating round for the announced meeting, tap
  scores, finish the round and archive it. Archival pushes the full history to
  the GitHub contents API and one row to Google Sheets; local state is only
  advanced after both mirrors accepted the write.
- Weekly notifier: APScheduler cron job that sends the meeting card to every
  subscriber and prunes chats that blocked the bot.

Club state lives in four JSON documents under runtime.data_dir. Secrets come
from the environment (optionally a .env file), everything else from config.json.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import copy
import dataclasses
import datetime as dt
import email.utils
import html
import json
import logging
import os
import random
import re
import signal
import socket
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import requests
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import dotenv_values
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account
from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


LOGGER = logging.getLogger("filmclub-bot")


DEFAULT_CONFIG: Dict[str, Any] = {
    "runtime": {
        "data_dir": "data",
        "env_file": ".env",
        "log_file_path": "logs/filmclub_bot.log",
        "log_file_max_bytes": 10485760,
        "log_file_backup_count": 5,
        "log_level": "INFO",
        "console_mode": "dashboard",
        "dashboard_event_lines": 8,
        "dashboard_event_dedupe_window_seconds": 30,
        "dashboard_event_max_message_length": 160,
        "max_scores_per_round": 0,
        "history_display_count": 2,
        "prompt_ttl_seconds": 900,
        "staged_post_ttl_seconds": 1800,
    },
    "telegram": {
        "base_url": "https://api.telegram.org",
        "timeout_seconds": 15,
        "max_retries": 3,
        "poll_timeout_seconds": 25,
        "broadcast_rate_limit": {
            "requests": 25,
            "per_seconds": 1,
        },
    },
    "github": {
        "base_url": "https://api.github.com",
        "repository": "ulysses-club/odissea",
        "branch": "",
        "films_path": "assets/data/films.json",
        "next_meeting_path": "assets/data/next-meeting.json",
        "timeout_seconds": 15,
        "max_retries": 3,
        "retry_delay_seconds": 2,
        "user_agent": "Ulysses-Bot",
    },
    "sheets": {
        "enabled": True,
        "base_url": "https://sheets.googleapis.com/v4/spreadsheets",
        "spreadsheet_id": "",
        "sheet_name": "Films",
        "credentials_path": "config/credentials.json",
        "timeout_seconds": 15,
        "max_retries": 3,
    },
    "vk": {
        "base_url": "https://api.vk.com/method",
        "api_version": "5.131",
        "group_id": 0,
        "group_url": "https://vk.com/ulysses_club",
        "timeout_seconds": 10,
        "max_retries": 2,
    },
    "notifications": {
        "enabled": True,
        "day_of_week": "fri",
        "hour": 14,
        "minute": 0,
        "timezone": "Europe/Moscow",
    },
    "club": {
        "name": "Odyssey",
        "site_url": "https://ulysses-club.github.io/odissea/",
        "vk_url": "https://vk.com/ulysses_club",
        "bot_admin_url": "https://t.me/GeekLS",
        "organizer_url": "https://vk.com/id8771550",
        "default_requirements": "We recommend watching the film in advance",
    },
}


SUPPORTED_CONSOLE_MODES: Set[str] = {
    "dashboard",
    "raw",
}

SUPPORTED_WEEKDAYS: Set[str] = {"mon", "tue", "wed", "thu", "fri", "sat", "sun"}

REQUIRED_ENV_VARS: Tuple[str, ...] = ("BOT_TOKEN", "ADMIN_IDS")

PLACEHOLDER_MARKERS: Tuple[str, ...] = (
    "YOUR_",
    "YOUR-",
    "CHANGEME",
    "REPLACE_ME",
)

REMOTE_TIMEOUT_BOUNDS: Tuple[int, int] = (5, 30)


def now_epoch() -> int:
    return int(time.time())


def to_iso(ts: int) -> str:
    return dt.datetime.fromtimestamp(ts, dt.timezone.utc).astimezone().strftime(
        "%d-%m-%y %H:%M:%S"
    )


def parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_retry_after(value: Optional[str], default_seconds: int = 5) -> int:
    if not value:
        return default_seconds

    stripped = value.strip()
    as_int = parse_int(stripped)
    if as_int is not None:
        return max(1, as_int)

    try:
        dt_value = email.utils.parsedate_to_datetime(stripped)
        if dt_value.tzinfo is None:
            dt_value = dt_value.replace(tzinfo=dt.timezone.utc)
        delta = int((dt_value - dt.datetime.now(dt.timezone.utc)).total_seconds())
        return max(1, delta)
    except (TypeError, ValueError):
        return default_seconds


_BOT_TOKEN_PATH = re.compile(r"/bot[^/\s]+")
_SECRET_QUERY = re.compile(r"(access_token|token|key)=[^&\s]+", re.IGNORECASE)


def redact_secrets(text: str) -> str:
    """Mask Telegram bot tokens in URL paths and credential query params."""
    masked = _BOT_TOKEN_PATH.sub("/bot***", str(text or ""))
    return _SECRET_QUERY.sub(lambda m: f"{m.group(1)}=***", masked)


def sanitize_url_for_logs(url: str) -> str:
    sensitive_keys = {
        "access_token",
        "token",
        "key",
        "auth",
        "authorization",
    }
    try:
        parts = urlsplit(url)
        path = _BOT_TOKEN_PATH.sub("/bot***", parts.path)
        sanitized_query = []
        for key, value in parse_qsl(parts.query, keep_blank_values=True):
            if key.lower() in sensitive_keys:
                sanitized_query.append((key, "***"))
            else:
                sanitized_query.append((key, value))
        return urlunsplit(
            (
                parts.scheme,
                parts.netloc,
                path,
                urlencode(sanitized_query, doseq=True),
                parts.fragment,
            )
        )
    except ValueError:
        return redact_secrets(url)


def is_network_unavailable_error(exc: requests.RequestException) -> bool:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    marker_text = str(exc).lower()
    markers = (
        "failed to resolve",
        "temporary failure in name resolution",
        "network is unreachable",
        "no route to host",
        "connection refused",
    )
    if any(marker in marker_text for marker in markers):
        return True
    cause = getattr(exc, "__cause__", None)
    return isinstance(cause, (socket.gaierror, TimeoutError, OSError))


def merge_dict(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def _clamp(value: Any, low: float, high: float) -> float:
    return max(low, min(high, float(value)))


def normalize_config(loaded: Dict[str, Any]) -> Dict[str, Any]:
    config = merge_dict(DEFAULT_CONFIG, loaded)
    runtime = config["runtime"]

    runtime["data_dir"] = str(runtime.get("data_dir", "data")).strip() or "data"
    log_file_path = str(runtime.get("log_file_path", "logs/filmclub_bot.log")).strip()
    runtime["log_file_path"] = log_file_path or "logs/filmclub_bot.log"
    runtime["log_file_max_bytes"] = max(1024, int(runtime.get("log_file_max_bytes", 10485760)))
    runtime["log_file_backup_count"] = max(0, int(runtime.get("log_file_backup_count", 5)))
    runtime["dashboard_event_lines"] = max(
        3, min(20, int(runtime.get("dashboard_event_lines", 8)))
    )
    runtime["dashboard_event_dedupe_window_seconds"] = max(
        1, int(runtime.get("dashboard_event_dedupe_window_seconds", 30))
    )
    runtime["dashboard_event_max_message_length"] = max(
        60, int(runtime.get("dashboard_event_max_message_length", 160))
    )
    runtime["max_scores_per_round"] = max(0, int(runtime.get("max_scores_per_round", 0)))
    runtime["history_display_count"] = max(1, int(runtime.get("history_display_count", 2)))
    runtime["prompt_ttl_seconds"] = max(30, int(runtime.get("prompt_ttl_seconds", 900)))
    runtime["staged_post_ttl_seconds"] = max(
        60, int(runtime.get("staged_post_ttl_seconds", 1800))
    )

    console_mode = str(runtime.get("console_mode", "dashboard")).strip().lower()
    if console_mode not in SUPPORTED_CONSOLE_MODES:
        raise ValueError(
            "Invalid runtime.console_mode. Expected one of: "
            + ", ".join(sorted(SUPPORTED_CONSOLE_MODES))
        )
    runtime["console_mode"] = console_mode

    for section in ("telegram", "github", "sheets", "vk"):
        config[section]["timeout_seconds"] = _clamp(
            config[section]["timeout_seconds"], *REMOTE_TIMEOUT_BOUNDS
        )
        config[section]["max_retries"] = max(1, int(config[section]["max_retries"]))

    # Content pushes must retry at least once but stay bounded.
    config["github"]["max_retries"] = max(2, min(3, config["github"]["max_retries"]))
    config["github"]["retry_delay_seconds"] = max(
        0.0, float(config["github"].get("retry_delay_seconds", 2))
    )
    if not str(config["github"].get("repository", "")).strip():
        raise ValueError("github.repository must be set (owner/name)")

    config["telegram"]["poll_timeout_seconds"] = max(
        0, min(50, int(config["telegram"]["poll_timeout_seconds"]))
    )
    rate_cfg = config["telegram"]["broadcast_rate_limit"]
    rate_cfg["requests"] = max(1, int(rate_cfg["requests"]))
    rate_cfg["per_seconds"] = max(0.001, float(rate_cfg["per_seconds"]))

    config["sheets"]["enabled"] = bool(config["sheets"].get("enabled", True))
    if config["sheets"]["enabled"] and is_placeholder(config["sheets"].get("spreadsheet_id", "")):
        raise ValueError(
            "sheets.spreadsheet_id still holds a placeholder. Set it or disable sheets."
        )
    config["vk"]["group_id"] = parse_int(config["vk"].get("group_id")) or 0

    notifications = config["notifications"]
    notifications["enabled"] = bool(notifications.get("enabled", True))
    day_of_week = str(notifications.get("day_of_week", "fri")).strip().lower()
    if day_of_week not in SUPPORTED_WEEKDAYS:
        raise ValueError(
            "Invalid notifications.day_of_week. Expected one of: "
            + ", ".join(sorted(SUPPORTED_WEEKDAYS))
        )
    notifications["day_of_week"] = day_of_week
    hour = int(notifications.get("hour", 14))
    minute = int(notifications.get("minute", 0))
    if not 0 <= hour <= 23:
        raise ValueError("notifications.hour must be within 0..23")
    if not 0 <= minute <= 59:
        raise ValueError("notifications.minute must be within 0..59")
    notifications["hour"] = hour
    notifications["minute"] = minute

    return config


def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found at {path}. Create one (for example from config.example.json)."
        )

    with path.open("r", encoding="utf-8") as handle:
        loaded = json.load(handle)

    if not isinstance(loaded, dict):
        raise ValueError("Config root must be a JSON object")
    return normalize_config(loaded)


def is_placeholder(value: str) -> bool:
    upper = str(value or "").upper()
    return any(marker in upper for marker in PLACEHOLDER_MARKERS)


def read_env(env_file: Optional[Path]) -> Dict[str, str]:
    """Process environment overlaid with the .env file, which wins on reload."""
    values: Dict[str, str] = dict(os.environ)
    if env_file is not None and env_file.exists():
        for key, value in dotenv_values(env_file).items():
            if value is not None:
                values[key] = value
    return values


def parse_admin_ids(raw: str) -> frozenset:
    return frozenset(part.strip() for part in str(raw or "").split(",") if part.strip())


@dataclass(frozen=True)
class Secrets:
    bot_token: str
    admin_ids: frozenset
    github_token: str = ""
    vk_access_token: str = ""


def load_secrets(env_file: Optional[Path]) -> Secrets:
    env = read_env(env_file)
    missing = [
        name
        for name in REQUIRED_ENV_VARS
        if not str(env.get(name, "")).strip() or is_placeholder(env.get(name, ""))
    ]
    if missing:
        raise ValueError("Missing required environment variables: " + ", ".join(missing))

    github_token = str(env.get("GITHUB_TOKEN", "")).strip()
    vk_token = str(env.get("VK_ACCESS_TOKEN", "")).strip()
    return Secrets(
        bot_token=str(env["BOT_TOKEN"]).strip(),
        admin_ids=parse_admin_ids(env["ADMIN_IDS"]),
        github_token="" if is_placeholder(github_token) else github_token,
        vk_access_token="" if is_placeholder(vk_token) else vk_token,
    )


class AdminRegistry:
    """Admin ids as an immutable snapshot, swapped atomically on reload()."""

    def __init__(self, env_file: Optional[Path], initial: Optional[Iterable[Any]] = None):
        self.env_file = env_file
        self._lock = threading.Lock()
        self._ids: frozenset = frozenset()
        if initial is not None:
            self._ids = frozenset(str(item).strip() for item in initial if str(item).strip())
        else:
            self.reload()

    def snapshot(self) -> frozenset:
        return self._ids

    def is_admin(self, user_id: Any) -> bool:
        return str(user_id) in self._ids

    def reload(self) -> frozenset:
        ids = parse_admin_ids(read_env(self.env_file).get("ADMIN_IDS", ""))
        with self._lock:
            if not ids:
                LOGGER.warning(
                    "[Admins] Reload found no ADMIN_IDS; keeping %s existing admin(s).",
                    len(self._ids),
                )
                return self._ids
            self._ids = ids
        LOGGER.info("[Admins] Admin list reloaded: %s admin(s).", len(ids))
        return ids


class FilmClubError(Exception):
    """Base class for errors surfaced to club admins and users."""


class ValidationError(FilmClubError):
    pass


class WorkflowError(FilmClubError):
    """An action that is not legal in the current rating state."""


STATUS_GUIDANCE: Dict[int, str] = {
    0: "The service could not be reached. Check the network connection and retry.",
    401: "The access token is missing, expired or invalid. Update it and reload the bot.",
    403: "The token has no permission for this resource. Check its scopes and repository access.",
    404: "The target was not found. Check the repository, path or spreadsheet id in config.",
}


class MirrorError(FilmClubError):
    service = "mirror"

    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        attempts: int = 0,
        last_error: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = int(status or 0)
        self.attempts = int(attempts or 0)
        self.last_error = last_error or message

    @property
    def guidance(self) -> str:
        return STATUS_GUIDANCE.get(self.status, "")

    def user_message(self) -> str:
        parts = [str(self)]
        if self.attempts > 1:
            parts.append(f"Attempts: {self.attempts}.")
        if self.guidance:
            parts.append(self.guidance)
        return "\n".join(parts)


class ContentPushError(MirrorError):
    service = "github"

    def __init__(self, message: str, *, path: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.path = path


class SpreadsheetError(MirrorError):
    service = "sheets"


class SocialPostError(MirrorError):
    service = "vk"

    def __init__(self, message: str, *, code: int = 0, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.code = int(code or 0)


BLOCKED_MARKERS: Tuple[str, ...] = (
    "bot was blocked",
    "bot was kicked",
    "user is deactivated",
    "chat not found",
    "bot can't initiate conversation",
)


class TransportError(FilmClubError):
    def __init__(self, method: str, status: int, description: str):
        super().__init__(f"Telegram {method} failed ({status}): {description}")
        self.method = method
        self.status = int(status or 0)
        self.description = description

    @property
    def blocked(self) -> bool:
        """True only for a definitive 'this chat is unreachable' answer."""
        if self.status not in (400, 403):
            return False
        text = self.description.lower()
        return any(marker in text for marker in BLOCKED_MARKERS)


PLACEHOLDER_FILM = "Film not chosen yet"
NOT_ANNOUNCED = "To be announced"


@dataclass
class MeetingRecord:
    date: str = ""
    time: str = ""
    place: str = ""
    film: str = ""
    director: str = ""
    genre: str = ""
    country: str = ""
    year: Any = ""
    poster: str = ""
    discussion_number: Optional[int] = None
    cast: str = ""
    requirements: str = ""

    @classmethod
    def placeholder(cls, requirements: str = "") -> "MeetingRecord":
        return cls(
            date=NOT_ANNOUNCED,
            time=NOT_ANNOUNCED,
            place=NOT_ANNOUNCED,
            film=PLACEHOLDER_FILM,
            director=NOT_ANNOUNCED,
            genre=NOT_ANNOUNCED,
            country=NOT_ANNOUNCED,
            year=NOT_ANNOUNCED,
            requirements=requirements,
        )

    def is_announced(self) -> bool:
        return bool(self.film) and self.film != PLACEHOLDER_FILM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "time": self.time,
            "place": self.place,
            "film": self.film,
            "director": self.director,
            "genre": self.genre,
            "country": self.country,
            "year": self.year,
            "poster": self.poster,
            "discussionNumber": self.discussion_number,
            "cast": self.cast,
            "requirements": self.requirements,
        }

    def to_remote_dict(self, default_requirements: str) -> Dict[str, Any]:
        payload = {key: ("" if value is None else value) for key, value in self.to_dict().items()}
        payload["requirements"] = self.requirements or default_requirements
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "MeetingRecord":
        return cls(
            date=str(payload.get("date") or ""),
            time=str(payload.get("time") or ""),
            place=str(payload.get("place") or ""),
            film=str(payload.get("film") or ""),
            director=str(payload.get("director") or ""),
            genre=str(payload.get("genre") or ""),
            country=str(payload.get("country") or ""),
            year=payload.get("year") if payload.get("year") is not None else "",
            poster=str(payload.get("poster") or ""),
            discussion_number=parse_int(payload.get("discussionNumber")),
            cast=str(payload.get("cast") or ""),
            requirements=str(payload.get("requirements") or ""),
        )


RATING_IDLE = "Idle"
RATING_OPEN = "RatingOpen"
RATING_CLOSED = "RatingClosed"


@dataclass
class VotingRecord:
    film: Optional[str] = None
    director: Optional[str] = None
    genre: Optional[str] = None
    country: Optional[str] = None
    year: Any = None
    poster: Optional[str] = None
    discussion_number: Optional[int] = None
    date: Optional[str] = None
    description: Optional[str] = None
    ratings: Dict[str, int] = field(default_factory=dict)
    average: Optional[float] = None
    closed: bool = False

    @property
    def state(self) -> str:
        if not self.film:
            return RATING_IDLE
        return RATING_CLOSED if self.closed else RATING_OPEN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ratings": dict(self.ratings),
            "average": self.average,
            "film": self.film,
            "director": self.director,
            "genre": self.genre,
            "country": self.country,
            "year": self.year,
            "poster": self.poster,
            "discussionNumber": self.discussion_number,
            "date": self.date,
            "description": self.description,
            "closed": self.closed,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "VotingRecord":
        ratings: Dict[str, int] = {}
        raw_ratings = payload.get("ratings")
        if isinstance(raw_ratings, dict):
            for key, value in raw_ratings.items():
                score = parse_int(value)
                if score is not None:
                    ratings[str(key)] = score
        average = payload.get("average")
        return cls(
            film=payload.get("film") or None,
            director=payload.get("director"),
            genre=payload.get("genre"),
            country=payload.get("country"),
            year=payload.get("year"),
            poster=payload.get("poster"),
            discussion_number=parse_int(payload.get("discussionNumber")),
            date=payload.get("date"),
            description=payload.get("description"),
            ratings=ratings,
            average=float(average) if isinstance(average, (int, float)) else None,
            closed=bool(payload.get("closed", False)),
        )


SHEET_HEADERS: List[str] = [
    "Film",
    "Director",
    "Genre",
    "Country",
    "Year",
    "Rating",
    "Discussion number",
    "Date",
    "Poster URL",
    "Description",
    "Participants",
]


@dataclass
class HistoryEntry:
    film: str
    director: Optional[str] = None
    genre: Optional[str] = None
    country: Optional[str] = None
    year: Any = None
    description: str = ""
    average: Optional[float] = None
    participants: int = 0
    date: Optional[str] = None
    poster: Optional[str] = None
    discussion_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "film": self.film,
            "director": self.director,
            "genre": self.genre,
            "country": self.country,
            "year": self.year,
            "description": self.description,
            "average": self.average,
            "participants": self.participants,
            "date": self.date,
            "poster": self.poster,
            "discussionNumber": self.discussion_number,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "HistoryEntry":
        average = payload.get("average")
        return cls(
            film=str(payload.get("film") or ""),
            director=payload.get("director"),
            genre=payload.get("genre"),
            country=payload.get("country"),
            year=payload.get("year"),
            description=str(payload.get("description") or ""),
            average=float(average) if isinstance(average, (int, float)) else None,
            participants=parse_int(payload.get("participants")) or 0,
            date=payload.get("date"),
            poster=payload.get("poster"),
            discussion_number=parse_int(payload.get("discussionNumber")),
        )

    def to_sheet_row(self) -> List[Any]:
        return [
            self.film,
            self.director or "",
            self.genre or "",
            self.country or "",
            self.year if self.year is not None else "",
            f"{self.average:.1f}" if self.average is not None else "N/A",
            self.discussion_number if self.discussion_number is not None else "",
            self.date or "",
            self.poster or "",
            self.description or " ",
            self.participants,
        ]


def calculate_average(ratings: Dict[str, int]) -> Optional[float]:
    # Always the full mean; never maintained incrementally.
    values = list(ratings.values())
    if not values:
        return None
    return sum(values) / len(values)


SUBSCRIPTIONS = "subscriptions"
VOTING = "voting"
HISTORY = "history"
NEXT_MEETING = "next_meeting"

RECORD_FILES: Dict[str, str] = {
    SUBSCRIPTIONS: "subscriptions.json",
    VOTING: "voting.json",
    HISTORY: "films.json",
    NEXT_MEETING: "next_meeting.json",
}


class LocalRecordStore:
    """Whole-document JSON persistence. Never raises I/O errors to callers."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir

    def path_for(self, key: str) -> Path:
        if key not in RECORD_FILES:
            raise KeyError(f"Unknown record key: {key}")
        return self.data_dir / RECORD_FILES[key]

    def load(self, key: str, default: Any) -> Any:
        path = self.path_for(key)
        try:
            if not path.exists():
                self._write(path, default)
                return copy.deepcopy(default)
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, ValueError):
            LOGGER.exception("[Store] Could not load %s from %s; using default.", key, path)
            return copy.deepcopy(default)

    def save(self, key: str, value: Any) -> None:
        path = self.path_for(key)
        try:
            self._write(path, value)
        except (OSError, TypeError, ValueError):
            LOGGER.exception("[Store] Could not save %s to %s.", key, path)

    @staticmethod
    def _write(path: Path, value: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(value, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise


class SubscriptionBook:
    def __init__(self, store: LocalRecordStore):
        self.store = store

    def load(self) -> Set[str]:
        raw = self.store.load(SUBSCRIPTIONS, [])
        if not isinstance(raw, list):
            LOGGER.warning("[Store] Subscriptions document is not a list; treating as empty.")
            return set()
        return {str(item) for item in raw}

    def save(self, subscriptions: Set[str]) -> None:
        self.store.save(SUBSCRIPTIONS, sorted(subscriptions))

    def is_subscribed(self, chat_id: Any) -> bool:
        return str(chat_id) in self.load()

    def count(self) -> int:
        return len(self.load())

    def subscribe(self, chat_id: Any) -> bool:
        subscriptions = self.load()
        key = str(chat_id)
        if key in subscriptions:
            return False
        subscriptions.add(key)
        self.save(subscriptions)
        return True

    def unsubscribe(self, chat_id: Any) -> bool:
        subscriptions = self.load()
        key = str(chat_id)
        if key not in subscriptions:
            return False
        subscriptions.discard(key)
        self.save(subscriptions)
        return True

    def remove_many(self, chat_ids: Iterable[Any]) -> int:
        subscriptions = self.load()
        doomed = {str(chat_id) for chat_id in chat_ids} & subscriptions
        if doomed:
            self.save(subscriptions - doomed)
        return len(doomed)


class MeetingBook:
    def __init__(self, store: LocalRecordStore, default_requirements: str = ""):
        self.store = store
        self.default_requirements = default_requirements

    def placeholder(self) -> MeetingRecord:
        return MeetingRecord.placeholder(self.default_requirements)

    def current(self) -> MeetingRecord:
        raw = self.store.load(NEXT_MEETING, self.placeholder().to_dict())
        if not isinstance(raw, dict):
            return self.placeholder()
        return MeetingRecord.from_dict(raw)

    def replace(self, meeting: MeetingRecord) -> None:
        self.store.save(NEXT_MEETING, meeting.to_dict())

    def reset(self) -> None:
        self.replace(self.placeholder())


class HistoryBook:
    def __init__(self, store: LocalRecordStore):
        self.store = store

    def load(self) -> List[HistoryEntry]:
        raw = self.store.load(HISTORY, [])
        if not isinstance(raw, list):
            LOGGER.warning("[Store] History document is not a list; treating as empty.")
            return []
        entries = []
        for item in raw:
            if isinstance(item, dict):
                entries.append(HistoryEntry.from_dict(item))
            else:
                LOGGER.warning("[Store] Skipping malformed history item: %r", item)
        return entries

    def save(self, entries: List[HistoryEntry]) -> None:
        self.store.save(HISTORY, [entry.to_dict() for entry in entries])

    def recent(self, count: int) -> List[HistoryEntry]:
        entries = self.load()
        return entries[-count:] if count > 0 else []


class VotingBook:
    """Rating round state machine persisted as the voting document.

    Idle (no film) -> RatingOpen (film copied, scores growing) -> RatingClosed
    (admin finished) -> Idle again once the round is archived.
    """

    def __init__(self, store: LocalRecordStore, max_scores: int = 0):
        self.store = store
        self.max_scores = max(0, int(max_scores))

    def load(self) -> VotingRecord:
        raw = self.store.load(VOTING, VotingRecord().to_dict())
        if not isinstance(raw, dict):
            return VotingRecord()
        return VotingRecord.from_dict(raw)

    def save(self, voting: VotingRecord) -> None:
        self.store.save(VOTING, voting.to_dict())

    def open_rating(self, meeting: MeetingRecord) -> VotingRecord:
        voting = self.load()
        if voting.film:
            if voting.closed:
                voting.closed = False
                self.save(voting)
                LOGGER.info("[Voting] Rating reopened for '%s'.", voting.film)
            return voting

        if not meeting.is_announced():
            raise WorkflowError("There is no announced meeting to rate yet.")

        voting.film = meeting.film
        voting.director = meeting.director
        voting.genre = meeting.genre
        voting.country = meeting.country
        voting.year = meeting.year
        voting.poster = meeting.poster
        voting.discussion_number = meeting.discussion_number
        voting.date = meeting.date
        voting.description = meeting.cast
        voting.closed = False
        self.save(voting)
        LOGGER.info("[Voting] Rating opened for '%s'.", voting.film)
        return voting

    def record_score(self, rating: Any) -> VotingRecord:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 10:
            raise ValidationError("A score must be a whole number from 1 to 10.")

        voting = self.load()
        if not voting.film:
            raise WorkflowError("Rating is not open. Start it from the admin panel first.")
        if voting.closed:
            raise WorkflowError("Rating is finished. Choose 'Continue rating' to add scores.")
        if self.max_scores and len(voting.ratings) >= self.max_scores:
            raise WorkflowError(
                f"This round already has the maximum of {self.max_scores} scores."
            )

        index = len(voting.ratings) + 1
        while f"participant_{index}" in voting.ratings:
            index += 1
        voting.ratings[f"participant_{index}"] = rating
        voting.average = calculate_average(voting.ratings)
        self.save(voting)
        return voting

    def finish(self) -> VotingRecord:
        voting = self.load()
        if not voting.film:
            raise WorkflowError("Rating is not open.")
        if not voting.ratings:
            raise WorkflowError("You have not recorded a single score yet!")
        if not voting.closed:
            voting.closed = True
            self.save(voting)
        return voting

    def clear(self) -> VotingRecord:
        voting = self.load()
        voting.ratings = {}
        voting.average = calculate_average(voting.ratings)
        voting.closed = False
        self.save(voting)
        return voting

    def reset(self) -> None:
        self.save(VotingRecord())


@dataclass
class APIResponse:
    status: int
    headers: Dict[str, str]
    data: Any
    text: str
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def describe_response(response: APIResponse) -> str:
    if isinstance(response.data, dict):
        for key in ("message", "description", "error_description"):
            value = response.data.get(key)
            if value:
                return redact_secrets(str(value))
        error = response.data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return redact_secrets(str(error["message"]))
        if isinstance(error, str) and error:
            return redact_secrets(error)
    compact = " ".join(str(response.text or "").split())[:200]
    return redact_secrets(compact) or f"HTTP {response.status}"


class AsyncWindowLimiter:
    """Simple async sliding-window limiter."""

    def __init__(self, max_requests: int, period_seconds: float, name: str):
        self.max_requests = max_requests
        self.period_seconds = period_seconds
        self.name = name
        self._events: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                now = time.monotonic()
                while self._events and now - self._events[0] >= self.period_seconds:
                    self._events.popleft()

                if len(self._events) < self.max_requests:
                    self._events.append(now)
                    return

                wait_for = max(0.001, self.period_seconds - (now - self._events[0]))

            await asyncio.sleep(wait_for)


class HTTPClient:
    """requests wrapper run off the event loop, with bounded fixed-delay retries.

    Network errors, 429 and 5xx responses are retried; anything else is handed
    back to the caller, which owns the service-specific interpretation.
    """

    def __init__(
        self,
        timeout_seconds: float,
        max_retries: int,
        retry_delay_seconds: float = 2.0,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, int(max_retries))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))

    async def request_json(
        self,
        *,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        json_body: Optional[Any] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> APIResponse:
        last_response: Optional[APIResponse] = None
        safe_url = sanitize_url_for_logs(url)

        for attempt in range(self.max_retries):
            try:
                raw_resp = await asyncio.to_thread(
                    requests.request,
                    method,
                    url,
                    params=params,
                    headers=headers,
                    json=json_body,
                    data=data,
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                error_text = redact_secrets(str(exc))
                label = (
                    "Network unavailable for"
                    if is_network_unavailable_error(exc)
                    else "HTTP error calling"
                )
                LOGGER.warning(
                    "%s %s %s (attempt %s/%s): %s",
                    label,
                    method,
                    safe_url,
                    attempt + 1,
                    self.max_retries,
                    error_text,
                )
                if attempt == self.max_retries - 1:
                    return APIResponse(
                        status=0,
                        headers={},
                        data={"error": error_text},
                        text=error_text,
                        attempts=attempt + 1,
                    )
                await asyncio.sleep(self.retry_delay_seconds)
                continue

            normalized_headers = {
                str(k).lower(): str(v) for k, v in raw_resp.headers.items()
            }
            body: Any = None
            text = raw_resp.text or ""
            if text:
                try:
                    body = raw_resp.json()
                except ValueError:
                    body = None

            response = APIResponse(
                status=raw_resp.status_code,
                headers=normalized_headers,
                data=body,
                text=text,
                attempts=attempt + 1,
            )
            last_response = response

            if response.status == 429:
                retry_after = parse_retry_after(response.headers.get("retry-after"), 5)
                LOGGER.warning(
                    "429 from %s %s. Retry-After=%ss (attempt %s/%s)",
                    method,
                    safe_url,
                    retry_after,
                    attempt + 1,
                    self.max_retries,
                )
                if attempt == self.max_retries - 1:
                    return response
                await asyncio.sleep(min(30, retry_after))
                continue

            if response.status in (500, 502, 503, 504):
                LOGGER.warning(
                    "%s from %s %s. Retrying in %.1fs (attempt %s/%s)",
                    response.status,
                    method,
                    safe_url,
                    self.retry_delay_seconds,
                    attempt + 1,
                    self.max_retries,
                )
                if attempt == self.max_retries - 1:
                    return response
                await asyncio.sleep(self.retry_delay_seconds)
                continue

            return response

        if last_response is not None:
            return last_response

        return APIResponse(
            status=0, headers={}, data=None, text="unknown error", attempts=self.max_retries
        )


class GitHubContentClient:
    """Whole-file writes through the GitHub contents API.

    Every write re-reads the current blob sha (the version token) right before
    the PUT; a 409/422 answer means the token went stale and the pair is retried.
    """

    def __init__(
        self,
        *,
        token: str,
        config: Dict[str, Any],
        http: Optional[HTTPClient] = None,
    ):
        self.token = token
        self.base_url = str(config["base_url"]).rstrip("/")
        self.repository = str(config["repository"]).strip("/")
        self.branch = str(config.get("branch") or "").strip()
        self.films_path = str(config["films_path"])
        self.next_meeting_path = str(config["next_meeting_path"])
        self.user_agent = str(config.get("user_agent") or "filmclub-bot")
        self.max_retries = max(1, int(config["max_retries"]))
        self.retry_delay_seconds = float(config.get("retry_delay_seconds", 2))
        self.http = http or HTTPClient(
            timeout_seconds=config["timeout_seconds"],
            max_retries=config["max_retries"],
            retry_delay_seconds=self.retry_delay_seconds,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": self.user_agent,
        }

    def _contents_url(self, path: str) -> str:
        return f"{self.base_url}/repos/{self.repository}/contents/{quote(path.lstrip('/'))}"

    def _require_token(self, path: str) -> None:
        if not self.token:
            raise ContentPushError(
                "GitHub token is not configured (GITHUB_TOKEN).",
                path=path,
                status=401,
            )

    async def get_version_token(self, path: str) -> Optional[str]:
        """Current blob sha of path, or None when the file does not exist yet."""
        self._require_token(path)
        response = await self.http.request_json(
            method="GET",
            url=self._contents_url(path),
            headers=self._headers(),
            params={"ref": self.branch} if self.branch else None,
        )
        if response.status == 404:
            LOGGER.info("[GitHub] %s does not exist yet; it will be created.", path)
            return None
        if not response.ok:
            raise ContentPushError(
                f"Could not read the current version of {path}: {describe_response(response)}",
                path=path,
                status=response.status,
                attempts=response.attempts,
            )
        sha = response.data.get("sha") if isinstance(response.data, dict) else None
        if not sha:
            raise ContentPushError(
                f"GitHub returned no version token for {path}.",
                path=path,
                status=response.status,
                attempts=response.attempts,
            )
        return str(sha)

    async def put_json(self, path: str, payload: Any, message: str) -> Dict[str, Any]:
        encoded = base64.b64encode(
            json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")
        ).decode("ascii")

        attempts = 0
        last_status = 0
        last_error = ""
        for attempt in range(1, self.max_retries + 1):
            sha = await self.get_version_token(path)
            body: Dict[str, Any] = {"message": message, "content": encoded}
            if sha:
                body["sha"] = sha
            if self.branch:
                body["branch"] = self.branch

            response = await self.http.request_json(
                method="PUT",
                url=self._contents_url(path),
                headers=self._headers(),
                json_body=body,
            )
            attempts += response.attempts
            if response.ok:
                LOGGER.info("[GitHub] %s updated: %s", path, message)
                return response.data if isinstance(response.data, dict) else {}

            last_status = response.status
            last_error = describe_response(response)
            if response.status in (409, 422) and attempt < self.max_retries:
                LOGGER.warning(
                    "[GitHub] Version token for %s went stale (%s); retrying (attempt %s/%s)",
                    path,
                    last_error,
                    attempt,
                    self.max_retries,
                )
                await asyncio.sleep(self.retry_delay_seconds)
                continue
            break

        raise ContentPushError(
            f"GitHub API error {last_status} while writing {path}: {last_error}",
            path=path,
            status=last_status,
            attempts=attempts,
            last_error=last_error,
        )

    async def push_history(self, entries: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self.put_json(
            self.films_path,
            entries,
            f"Bot: update films.json ({len(entries)} films)",
        )

    async def push_next_meeting(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.put_json(
            self.next_meeting_path,
            payload,
            "Bot: update next meeting",
        )


SHEETS_SCOPES: List[str] = ["https://www.googleapis.com/auth/spreadsheets"]


class SheetsClient:
    """Append-only history mirror in a Google spreadsheet."""

    def __init__(
        self,
        *,
        config: Dict[str, Any],
        credentials: Any = None,
        http: Optional[HTTPClient] = None,
    ):
        self.base_url = str(config["base_url"]).rstrip("/")
        self.spreadsheet_id = str(config.get("spreadsheet_id") or "").strip()
        self.sheet_name = str(config.get("sheet_name") or "Films")
        self.credentials_path = str(config.get("credentials_path") or "")
        self._credentials = credentials
        self.http = http or HTTPClient(
            timeout_seconds=config["timeout_seconds"],
            max_retries=config["max_retries"],
        )

    def _load_credentials(self) -> Any:
        if self._credentials is None:
            path = Path(self.credentials_path).expanduser()
            if not path.exists():
                raise SpreadsheetError(
                    f"Google service account file not found at {path}.",
                    status=401,
                )
            try:
                self._credentials = service_account.Credentials.from_service_account_file(
                    str(path), scopes=SHEETS_SCOPES
                )
            except (ValueError, KeyError, OSError) as exc:
                raise SpreadsheetError(
                    f"Google service account file at {path} is unusable: {exc}",
                    status=401,
                ) from exc
        return self._credentials

    async def _access_token(self) -> str:
        credentials = self._load_credentials()
        if not credentials.valid:
            try:
                await asyncio.to_thread(credentials.refresh, GoogleAuthRequest())
            except google_auth_exceptions.GoogleAuthError as exc:
                raise SpreadsheetError(
                    f"Could not obtain a Google access token: {exc}",
                    status=401,
                ) from exc
        return str(credentials.token)

    def _values_url(self, a1_range: str, suffix: str = "") -> str:
        return (
            f"{self.base_url}/{self.spreadsheet_id}/values/"
            f"{quote(a1_range, safe='!:')}{suffix}"
        )

    async def _request(
        self,
        method: str,
        a1_range: str,
        *,
        suffix: str = "",
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
    ) -> APIResponse:
        token = await self._access_token()
        return await self.http.request_json(
            method=method,
            url=self._values_url(a1_range, suffix),
            headers={"Authorization": f"Bearer {token}"},
            params=params,
            json_body=json_body,
        )

    async def ensure_header(self) -> bool:
        header_range = f"{self.sheet_name}!A1:K1"
        probe = await self._request("GET", header_range)
        if probe.ok and isinstance(probe.data, dict) and probe.data.get("values"):
            return False
        if not probe.ok:
            LOGGER.warning(
                "[Sheets] Header probe failed (%s); writing the header row.",
                describe_response(probe),
            )

        written = await self._request(
            "PUT",
            header_range,
            params={"valueInputOption": "RAW"},
            json_body={"range": header_range, "majorDimension": "ROWS", "values": [SHEET_HEADERS]},
        )
        if not written.ok:
            raise SpreadsheetError(
                f"Could not write the spreadsheet header: {describe_response(written)}",
                status=written.status,
                attempts=written.attempts,
            )
        LOGGER.info("[Sheets] Header row written to %s.", header_range)
        return True

    async def append_history_entry(self, entry: HistoryEntry) -> None:
        if not self.spreadsheet_id:
            raise SpreadsheetError("Spreadsheet id is not configured (sheets.spreadsheet_id).", status=404)

        await self.ensure_header()
        response = await self._request(
            "POST",
            f"{self.sheet_name}!A:K",
            suffix=":append",
            params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
            json_body={"values": [entry.to_sheet_row()]},
        )
        if not response.ok:
            raise SpreadsheetError(
                f"Google Sheets API error {response.status}: {describe_response(response)}",
                status=response.status,
                attempts=response.attempts,
            )
        LOGGER.info("[Sheets] Appended '%s' (#%s).", entry.film, entry.discussion_number)


class VKClient:
    def __init__(
        self,
        *,
        access_token: str,
        config: Dict[str, Any],
        http: Optional[HTTPClient] = None,
    ):
        self.access_token = access_token
        self.base_url = str(config["base_url"]).rstrip("/")
        self.api_version = str(config["api_version"])
        self.group_id = abs(int(config.get("group_id") or 0))
        self.group_url = str(config.get("group_url") or "")
        self.http = http or HTTPClient(
            timeout_seconds=config["timeout_seconds"],
            max_retries=config["max_retries"],
        )

    @property
    def owner_id(self) -> int:
        # Community walls are addressed with a negative owner id.
        return -self.group_id

    async def _call(self, method: str, params: Dict[str, Any]) -> Any:
        if not self.access_token:
            raise SocialPostError("VK access token is not configured (VK_ACCESS_TOKEN).", status=401)
        if not self.group_id:
            raise SocialPostError("VK group id is not configured (vk.group_id).", status=404)

        payload = dict(params)
        payload["access_token"] = self.access_token
        payload["v"] = self.api_version
        response = await self.http.request_json(
            method="POST",
            url=f"{self.base_url}/{method}",
            data=payload,
        )
        if not response.ok:
            raise SocialPostError(
                f"VK API HTTP error {response.status}: {describe_response(response)}",
                status=response.status,
                attempts=response.attempts,
            )
        if not isinstance(response.data, dict):
            raise SocialPostError(
                "Could not parse the VK API response.",
                status=response.status,
                attempts=response.attempts,
            )
        error = response.data.get("error")
        if error:
            code = parse_int(error.get("error_code")) if isinstance(error, dict) else None
            message = error.get("error_msg") if isinstance(error, dict) else error
            raise SocialPostError(
                f"VK API error: {message or 'unknown error'} (code: {code or 0})",
                code=code or 0,
                status=response.status,
                attempts=response.attempts,
            )
        return response.data.get("response")

    async def publish_post(self, message: str, attachments: Optional[List[str]] = None) -> Optional[int]:
        result = await self._call(
            "wall.post",
            {
                "owner_id": self.owner_id,
                "from_group": 1,
                "message": message,
                "attachments": ",".join(attachments or []),
            },
        )
        post_id = parse_int(result.get("post_id")) if isinstance(result, dict) else None
        LOGGER.info("[VK] Published post %s on wall %s.", post_id, self.owner_id)
        return post_id

    def post_url(self, post_id: Optional[int]) -> str:
        if post_id:
            return f"https://vk.com/wall{self.owner_id}_{post_id}"
        return self.group_url


class TelegramClient:
    """Bot API calls used by the club bot; every failure becomes TransportError."""

    def __init__(
        self,
        *,
        token: str,
        config: Dict[str, Any],
        http: Optional[HTTPClient] = None,
        poll_http: Optional[HTTPClient] = None,
    ):
        self.base_url = f"{str(config['base_url']).rstrip('/')}/bot{token}"
        self.poll_timeout_seconds = int(config.get("poll_timeout_seconds", 25))
        self.http = http or HTTPClient(
            timeout_seconds=config["timeout_seconds"],
            max_retries=config["max_retries"],
            retry_delay_seconds=1,
        )
        # getUpdates holds the connection open for the whole long-poll window.
        self.poll_http = poll_http or HTTPClient(
            timeout_seconds=self.poll_timeout_seconds + config["timeout_seconds"],
            max_retries=1,
        )

    async def _call(
        self,
        method: str,
        payload: Dict[str, Any],
        *,
        http: Optional[HTTPClient] = None,
    ) -> Any:
        body = {key: value for key, value in payload.items() if value is not None}
        response = await (http or self.http).request_json(
            method="POST",
            url=f"{self.base_url}/{method}",
            json_body=body,
        )
        data = response.data if isinstance(response.data, dict) else {}
        if response.ok and data.get("ok"):
            return data.get("result")
        status = parse_int(data.get("error_code")) or response.status
        raise TransportError(method, status, str(data.get("description") or describe_response(response)))

    async def send_message(
        self,
        chat_id: Any,
        text: str,
        *,
        reply_markup: Optional[Dict[str, Any]] = None,
        parse_mode: Optional[str] = "HTML",
    ) -> Any:
        return await self._call(
            "sendMessage",
            {
                "chat_id": chat_id,
                "text": text,
                "parse_mode": parse_mode,
                "reply_markup": reply_markup,
                "disable_web_page_preview": True,
            },
        )

    async def send_photo(
        self,
        chat_id: Any,
        photo: str,
        *,
        caption: Optional[str] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
        parse_mode: Optional[str] = "HTML",
    ) -> Any:
        return await self._call(
            "sendPhoto",
            {
                "chat_id": chat_id,
                "photo": photo,
                "caption": caption,
                "parse_mode": parse_mode,
                "reply_markup": reply_markup,
            },
        )

    async def send_animation(
        self,
        chat_id: Any,
        animation: str,
        *,
        caption: Optional[str] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
        parse_mode: Optional[str] = "HTML",
    ) -> Any:
        return await self._call(
            "sendAnimation",
            {
                "chat_id": chat_id,
                "animation": animation,
                "caption": caption,
                "parse_mode": parse_mode,
                "reply_markup": reply_markup,
            },
        )

    async def edit_message_text(
        self,
        chat_id: Any,
        message_id: int,
        text: str,
        *,
        reply_markup: Optional[Dict[str, Any]] = None,
        parse_mode: Optional[str] = "HTML",
    ) -> Any:
        return await self._call(
            "editMessageText",
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "text": text,
                "parse_mode": parse_mode,
                "reply_markup": reply_markup,
                "disable_web_page_preview": True,
            },
        )

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: Optional[str] = None,
        *,
        show_alert: bool = False,
    ) -> Any:
        return await self._call(
            "answerCallbackQuery",
            {
                "callback_query_id": callback_query_id,
                "text": text,
                "show_alert": show_alert or None,
            },
        )

    async def delete_message(self, chat_id: Any, message_id: int) -> Any:
        return await self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    async def send_chat_action(self, chat_id: Any, action: str) -> Any:
        return await self._call("sendChatAction", {"chat_id": chat_id, "action": action})

    async def get_updates(self, offset: Optional[int], timeout: int) -> List[Dict[str, Any]]:
        result = await self._call(
            "getUpdates",
            {
                "offset": offset,
                "timeout": timeout,
                "allowed_updates": ["message", "callback_query"],
            },
            http=self.poll_http,
        )
        return [item for item in (result or []) if isinstance(item, dict)]


def escape_html(value: Any) -> str:
    if value is None:
        return ""
    return html.escape(str(value), quote=False)


def format_average(average: Optional[float]) -> str:
    return f"{average:.1f}" if average is not None else "-"


CARD_KEYS: Tuple[str, ...] = (
    "film",
    "director",
    "genre",
    "country",
    "year",
    "poster",
    "discussionNumber",
    "date",
    "description",
)


def merged_card_fields(meeting: MeetingRecord, voting: VotingRecord) -> Dict[str, Any]:
    """Meeting fields overlaid with the film being rated, if a round is active."""
    fields = meeting.to_dict()
    fields["description"] = meeting.cast
    if voting.film:
        for key, value in voting.to_dict().items():
            if key in CARD_KEYS and value not in (None, ""):
                fields[key] = value
    return fields


def format_movie_card(meeting: MeetingRecord, voting: VotingRecord) -> str:
    fields = merged_card_fields(meeting, voting)
    rating_block = ""
    if voting.film and voting.average is not None:
        rating_block = (
            f"│ ⭐ <b>Rating:</b> {format_average(voting.average)}/10\n"
            f"│ 👥 <b>Scores:</b> {len(voting.ratings)}\n"
            "├──────────────────\n"
        )
    description = fields.get("description") or ""
    description_block = f"│ 📝 <b>About:</b> {escape_html(description)}\n" if description else ""
    return (
        f"🎬 <b>Discussion #{escape_html(fields.get('discussionNumber') or '?')}</b>\n\n"
        f"╭──────────────────\n"
        f"│ 📅 <b>Date:</b> {escape_html(fields.get('date'))}\n"
        f"│ ⏰ <b>Time:</b> {escape_html(fields.get('time'))}\n"
        f"│ 📍 <b>Place:</b> {escape_html(fields.get('place'))}\n"
        f"├──────────────────\n"
        f"│ 🎥 <b>{escape_html(fields.get('film'))}</b> ({escape_html(fields.get('year'))})\n"
        f"│ 🎬 <b>Director:</b> {escape_html(fields.get('director'))}\n"
        f"│ 🎭 <b>Genre:</b> {escape_html(fields.get('genre'))}\n"
        f"│ 🌎 <b>Country:</b> {escape_html(fields.get('country'))}\n"
        f"{description_block}"
        f"├──────────────────\n"
        f"{rating_block}"
        f"╰──────────────────"
    )


def format_history_entry(entry: HistoryEntry) -> str:
    lines = [f"🎥 <b>{escape_html(entry.film)}</b>"]
    if entry.description.strip():
        lines.append(f"📝 <b>Description:</b> {escape_html(entry.description)}")
    lines.extend(
        [
            f"🎭 <b>Genre:</b> {escape_html(entry.genre or '-')}",
            f"🌎 <b>Country:</b> {escape_html(entry.country or '-')}",
            f"📅 <b>Year:</b> {escape_html(entry.year if entry.year is not None else '-')}",
            f"🎬 <b>Director:</b> {escape_html(entry.director or '-')}",
            f"🔢 <b>Discussion:</b> #{escape_html(entry.discussion_number or '?')}",
            f"🗓 <b>Date:</b> {escape_html(entry.date or '-')}",
            f"⭐ <b>Average score:</b> {format_average(entry.average)}/10",
            f"👥 <b>Participants:</b> {entry.participants}",
        ]
    )
    return "\n".join(lines)


WEEKDAY_NAMES: Tuple[str, ...] = (
    "MONDAY",
    "TUESDAY",
    "WEDNESDAY",
    "THURSDAY",
    "FRIDAY",
    "SATURDAY",
    "SUNDAY",
)


def day_of_week(date_text: str) -> str:
    """Weekday name for a dd.mm.yyyy date, or the generic 'DAY'."""
    try:
        parsed = dt.datetime.strptime(str(date_text or "").strip(), "%d.%m.%Y")
    except ValueError:
        return "DAY"
    return WEEKDAY_NAMES[parsed.weekday()]


SOCIAL_REQUIRED_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("film", "film"),
    ("director", "director"),
    ("date", "date"),
    ("time", "time"),
    ("place", "place"),
    ("discussion_number", "discussion number"),
)


def missing_post_fields(meeting: MeetingRecord) -> List[str]:
    return [
        label
        for attr, label in SOCIAL_REQUIRED_FIELDS
        if getattr(meeting, attr) in (None, "")
    ]


def format_social_post(meeting: MeetingRecord, club_name: str) -> str:
    def text(value: Any) -> str:
        return str(value) if value not in (None, "") else "not specified"

    cast_block = f"🌟 Starring: {meeting.cast}\n\n" if meeting.cast else ""
    return (
        f"🎬 Discussion #{text(meeting.discussion_number)}\n\n"
        f"📅 {text(meeting.date)} ({day_of_week(meeting.date)})\n\n"
        f"🎥 «{text(meeting.film)}» ({text(meeting.year)})\n"
        f"🎬 Director: {text(meeting.director)}\n"
        f"🎭 Genre: {text(meeting.genre)}\n"
        f"🌎 Country: {text(meeting.country)}\n\n"
        f"{cast_block}"
        f"📍 Place: {text(meeting.place)}\n"
        f"⏰ Time: {text(meeting.time)}\n\n"
        f"Join the {club_name} film club to watch and discuss! 🍿"
    )


NEXT_MEETING_FIELDS: Tuple[str, ...] = (
    "date",
    "time",
    "place",
    "film",
    "director",
    "genre",
    "country",
    "year",
    "poster",
    "discussionNumber",
    "cast",
)

NEXT_MEETING_FORMAT = "|".join(NEXT_MEETING_FIELDS)


def parse_next_meeting(text: str, requirements: str = "") -> MeetingRecord:
    parts = [part.strip() for part in str(text or "").split("|")]
    if len(parts) != len(NEXT_MEETING_FIELDS):
        raise ValidationError(
            f"Invalid format: expected {len(NEXT_MEETING_FIELDS)} fields separated by |, "
            f"received {len(parts)}.\nFormat: {NEXT_MEETING_FORMAT}"
        )

    values = dict(zip(NEXT_MEETING_FIELDS, parts))
    if not values["film"]:
        raise ValidationError("The film title must not be empty.")
    discussion_number = parse_int(values["discussionNumber"])
    if discussion_number is None or discussion_number < 1:
        raise ValidationError(
            f"The discussion number must be a positive whole number, got '{values['discussionNumber']}'."
        )
    year = parse_int(values["year"])

    return MeetingRecord(
        date=values["date"],
        time=values["time"],
        place=values["place"],
        film=values["film"],
        director=values["director"],
        genre=values["genre"],
        country=values["country"],
        year=year if year is not None else values["year"],
        poster=values["poster"],
        discussion_number=discussion_number,
        cast=values["cast"],
        requirements=requirements,
    )


MENU_MEETING = "ℹ️ Meeting info"
MENU_SUBSCRIPTION = "📅 My subscription"
MENU_SOCIALS = "🌐 Our socials"
MENU_HISTORY = "📜 Rating history"
MENU_ADMIN = "👑 Admin panel"

MENU_TEXTS: Set[str] = {MENU_MEETING, MENU_SUBSCRIPTION, MENU_SOCIALS, MENU_HISTORY, MENU_ADMIN}

CB_SUBSCRIBE = "subscribe"
CB_UNSUBSCRIBE = "unsubscribe"
CB_BACK_TO_MAIN = "back_to_main"
CB_RELOAD_ADMINS = "reload_env"
CB_RATE_MOVIE = "admin_rate_movie"
CB_RATE_PREFIX = "admin_rate_"
CB_FINISH_RATING = "admin_finish_rating"
CB_CLEAR_VOTES = "admin_clear_votes"
CB_SAVE_HISTORY = "admin_save_to_history"
CB_ADD_NEXT_MEETING = "admin_add_next_movie"
CB_BROADCAST_NEWS = "admin_broadcast_news"
CB_ADMIN_PANEL = "admin_panel"
CB_PUBLISH_VK = "admin_publish_vk"
CB_PREVIEW_VK = "admin_preview_vk_post"
CB_CONFIRM_VK = "admin_confirm_vk_publish"
CB_EDIT_VK = "admin_edit_vk_post"


def inline_keyboard(rows: List[List[Tuple[str, str]]]) -> Dict[str, Any]:
    return {
        "inline_keyboard": [
            [{"text": label, "callback_data": data} for label, data in row] for row in rows
        ]
    }


def main_menu(is_admin: bool) -> Dict[str, Any]:
    rows = [
        [{"text": MENU_MEETING}, {"text": MENU_SUBSCRIPTION}],
        [{"text": MENU_SOCIALS}, {"text": MENU_HISTORY}],
    ]
    if is_admin:
        rows.append([{"text": MENU_ADMIN}])
    return {"keyboard": rows, "resize_keyboard": True}


def admin_panel_keyboard() -> Dict[str, Any]:
    return inline_keyboard(
        [
            [("⭐ Rate the film", CB_RATE_MOVIE), ("🧹 Clear votes", CB_CLEAR_VOTES)],
            [("💾 Save to history", CB_SAVE_HISTORY)],
            [("🎬 Add next meeting", CB_ADD_NEXT_MEETING)],
            [("📢 Broadcast news", CB_BROADCAST_NEWS), ("📣 Publish to VK", CB_PUBLISH_VK)],
            [("🔙 Back", CB_BACK_TO_MAIN)],
        ]
    )


def rating_keyboard() -> Dict[str, Any]:
    scores = [(str(score), f"{CB_RATE_PREFIX}{score}") for score in range(1, 11)]
    rows = [scores[index : index + 5] for index in range(0, len(scores), 5)]
    rows.append([("✅ Finish rating", CB_FINISH_RATING)])
    rows.append([("🔙 Admin panel", CB_ADMIN_PANEL)])
    return inline_keyboard(rows)


def finished_rating_keyboard() -> Dict[str, Any]:
    return inline_keyboard(
        [
            [("💾 Save to history", CB_SAVE_HISTORY)],
            [("⭐ Continue rating", CB_RATE_MOVIE)],
            [("🔙 Admin panel", CB_ADMIN_PANEL)],
        ]
    )


def archive_retry_keyboard() -> Dict[str, Any]:
    return inline_keyboard(
        [
            [("🔄 Try again", CB_SAVE_HISTORY)],
            [("🔙 Admin panel", CB_ADMIN_PANEL)],
        ]
    )


def subscription_keyboard(subscribed: bool) -> Dict[str, Any]:
    action = ("🔕 Unsubscribe", CB_UNSUBSCRIBE) if subscribed else ("🔔 Subscribe", CB_SUBSCRIBE)
    return inline_keyboard([[action], [("🔙 Back", CB_BACK_TO_MAIN)]])


def social_preview_keyboard() -> Dict[str, Any]:
    return inline_keyboard(
        [
            [("✅ Publish", CB_CONFIRM_VK), ("✏️ Edit", CB_EDIT_VK)],
            [("🔙 Admin panel", CB_ADMIN_PANEL)],
        ]
    )


def social_edited_keyboard() -> Dict[str, Any]:
    return inline_keyboard(
        [
            [("✅ Publish", CB_CONFIRM_VK), ("👀 Preview", CB_PREVIEW_VK)],
            [("🔙 Admin panel", CB_ADMIN_PANEL)],
        ]
    )


def socials_keyboard(club: Dict[str, Any]) -> Dict[str, Any]:
    links = [
        ("🌐 Website", club.get("site_url")),
        ("📘 VK community", club.get("vk_url")),
        ("👨‍💻 Bot admin", club.get("bot_admin_url")),
        ("🎬 Club organizer", club.get("organizer_url")),
    ]
    rows: List[List[Dict[str, Any]]] = [
        [{"text": label, "url": url}] for label, url in links if url
    ]
    rows.append([{"text": "🔙 Back", "callback_data": CB_BACK_TO_MAIN}])
    return {"inline_keyboard": rows}


class ExpiringSlots:
    """Keyed values that silently disappear after ttl_seconds."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self.clock = clock
        self._items: Dict[Any, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def put(self, key: Any, value: Any) -> None:
        with self._lock:
            self._items[key] = (self.clock() + self.ttl_seconds, value)

    def get(self, key: Any) -> Any:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            if item[0] <= self.clock():
                del self._items[key]
                return None
            return item[1]

    def pop(self, key: Any) -> Any:
        value = self.get(key)
        with self._lock:
            self._items.pop(key, None)
        return value

    def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [key for key, (deadline, _) in self._items.items() if deadline <= now]
            for key in expired:
                del self._items[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


PROMPT_NEXT_MEETING = "next_meeting"
PROMPT_BROADCAST = "broadcast_news"
PROMPT_EDIT_POST = "edit_social_post"


def staged_post_key(chat_id: Any, user_id: Any) -> Tuple[str, str]:
    """Staged posts belong to one admin in one chat."""
    return (str(chat_id), str(user_id))


@dataclass
class PendingPrompt:
    kind: str
    prompt_message_id: Optional[int] = None


class PendingPrompts:
    """'The next text from this admin in this chat answers prompt X'."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._slots = ExpiringSlots(ttl_seconds, clock)

    def expect(self, chat_id: Any, user_id: Any, kind: str, prompt_message_id: Optional[int] = None) -> None:
        self._slots.put((str(chat_id), str(user_id)), PendingPrompt(kind, prompt_message_id))

    def take(self, chat_id: Any, user_id: Any) -> Optional[PendingPrompt]:
        return self._slots.pop((str(chat_id), str(user_id)))

    def cancel(self, chat_id: Any, user_id: Any) -> bool:
        return self.take(chat_id, user_id) is not None

    def purge_expired(self) -> int:
        return self._slots.purge_expired()

    def __len__(self) -> int:
        return len(self._slots)


REQUIRED_ARCHIVE_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("film", "film"),
    ("director", "director"),
    ("discussion_number", "discussion number"),
    ("date", "date"),
)

EDITABLE_HISTORY_FIELDS: Tuple[str, ...] = (
    "film",
    "director",
    "genre",
    "country",
    "year",
    "description",
    "date",
    "poster",
)


class ArchiveWorkflow:
    """Move a finished rating round into the history and both remote mirrors.

    Local documents are only touched after every mirror accepted the write, so
    a failure anywhere leaves voting, meeting and history exactly as they were
    and the admin can simply retry. Remote writes already done are not undone.
    """

    def __init__(
        self,
        *,
        voting_book: VotingBook,
        meeting_book: MeetingBook,
        history_book: HistoryBook,
        content_client: Any,
        sheets_client: Any = None,
    ):
        self.voting_book = voting_book
        self.meeting_book = meeting_book
        self.history_book = history_book
        self.content_client = content_client
        self.sheets_client = sheets_client

    def prepare(self) -> HistoryEntry:
        voting = self.voting_book.load()
        if not voting.film or voting.average is None:
            raise WorkflowError("Nothing to save: no scores have been recorded.")
        missing = [
            label
            for attr, label in REQUIRED_ARCHIVE_FIELDS
            if getattr(voting, attr) in (None, "")
        ]
        if missing:
            raise ValidationError("Cannot save to history, missing: " + ", ".join(missing))

        return HistoryEntry(
            film=voting.film,
            director=voting.director,
            genre=voting.genre,
            country=voting.country,
            year=voting.year,
            description=voting.description or "",
            average=voting.average,
            participants=len(voting.ratings),
            date=voting.date,
            poster=voting.poster,
            discussion_number=voting.discussion_number,
        )

    async def archive(self, entry: Optional[HistoryEntry] = None) -> HistoryEntry:
        entry = entry or self.prepare()
        updated = self.history_book.load() + [entry]

        await self.content_client.push_history([item.to_dict() for item in updated])
        if self.sheets_client is not None:
            await self.sheets_client.append_history_entry(entry)

        self.history_book.save(updated)
        self.voting_book.reset()
        current = self.meeting_book.current()
        if current.film == entry.film and current.discussion_number == entry.discussion_number:
            self.meeting_book.reset()
        else:
            LOGGER.info(
                "[Archive] Keeping the announced meeting '%s' (#%s).",
                current.film,
                current.discussion_number,
            )
        LOGGER.info(
            "[Archive] '%s' (#%s) archived with average %s from %s score(s).",
            entry.film,
            entry.discussion_number,
            format_average(entry.average),
            entry.participants,
        )
        return entry

    async def edit_entry(self, discussion_number: int, field_name: str, value: str) -> HistoryEntry:
        if field_name not in EDITABLE_HISTORY_FIELDS:
            raise ValidationError(
                f"Field '{field_name}' cannot be edited. Editable: {', '.join(EDITABLE_HISTORY_FIELDS)}"
            )
        entries = self.history_book.load()
        for index, entry in enumerate(entries):
            if entry.discussion_number == discussion_number:
                break
        else:
            raise ValidationError(f"No archived film with discussion number {discussion_number}.")

        new_value: Any = value.strip()
        if field_name == "year" and parse_int(new_value) is not None:
            new_value = parse_int(new_value)
        edited = dataclasses.replace(entries[index], **{field_name: new_value})
        updated = entries[:index] + [edited] + entries[index + 1 :]

        await self.content_client.push_history([item.to_dict() for item in updated])
        self.history_book.save(updated)
        LOGGER.info("[Archive] History entry #%s: %s updated.", discussion_number, field_name)
        return edited


@dataclass
class BroadcastResult:
    sent: int = 0
    failed: int = 0
    pruned: int = 0

    def summary(self) -> str:
        return f"sent={self.sent} failed={self.failed} pruned={self.pruned}"


class Broadcaster:
    """Deliver one message per subscriber; one failure never stops the batch."""

    def __init__(
        self,
        *,
        subscriptions: SubscriptionBook,
        limiter: Optional[AsyncWindowLimiter] = None,
    ):
        self.subscriptions = subscriptions
        self.limiter = limiter

    async def broadcast(self, send: Callable[[str], Awaitable[Any]], label: str) -> BroadcastResult:
        result = BroadcastResult()
        blocked: List[str] = []
        recipients = sorted(self.subscriptions.load())
        LOGGER.info("[Broadcast] %s: delivering to %s subscriber(s).", label, len(recipients))

        for chat_id in recipients:
            if self.limiter is not None:
                await self.limiter.acquire()
            try:
                await send(chat_id)
                result.sent += 1
            except TransportError as exc:
                result.failed += 1
                if exc.blocked:
                    blocked.append(chat_id)
                    LOGGER.info("[Broadcast] %s is unreachable (%s); unsubscribing.", chat_id, exc.description)
                else:
                    LOGGER.warning("[Broadcast] %s to %s failed: %s", label, chat_id, exc)
            except Exception:
                result.failed += 1
                LOGGER.exception("[Broadcast] %s to %s failed unexpectedly.", label, chat_id)

        if blocked:
            result.pruned = self.subscriptions.remove_many(blocked)
        LOGGER.info("[Broadcast] %s finished: %s", label, result.summary())
        return result


WELCOME_ANIMATIONS: Tuple[str, ...] = (
    "https://media.giphy.com/media/l0HU20BZ6LbSEITza/giphy.gif",
    "https://media.giphy.com/media/xT5LMGupUKCHm7DdFu/giphy.gif",
    "https://media.giphy.com/media/3o7abKhOpu0NwenH3O/giphy.gif",
)

NEXT_MEETING_EXAMPLE = (
    "20.06.2025|19:00|Cafe Odyssey|Stalker|Andrei Tarkovsky|Drama|USSR|1979|"
    "https://example.com/stalker.jpg|42|Alexander Kaidanovsky, Anatoly Solonitsyn"
)


@dataclass
class IncomingMessage:
    chat_id: int
    user_id: int
    message_id: int
    text: str
    first_name: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> Optional["IncomingMessage"]:
        chat = payload.get("chat") or {}
        sender = payload.get("from") or {}
        chat_id = parse_int(chat.get("id"))
        text = payload.get("text")
        if chat_id is None or not isinstance(text, str):
            return None
        return cls(
            chat_id=chat_id,
            user_id=parse_int(sender.get("id")) or chat_id,
            message_id=parse_int(payload.get("message_id")) or 0,
            text=text,
            first_name=str(sender.get("first_name") or ""),
        )


@dataclass
class IncomingCallback:
    query_id: str
    chat_id: int
    user_id: int
    message_id: int
    data: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> Optional["IncomingCallback"]:
        message = payload.get("message") or {}
        chat_id = parse_int((message.get("chat") or {}).get("id"))
        user_id = parse_int((payload.get("from") or {}).get("id"))
        if chat_id is None or user_id is None:
            return None
        return cls(
            query_id=str(payload.get("id") or ""),
            chat_id=chat_id,
            user_id=user_id,
            message_id=parse_int(message.get("message_id")) or 0,
            data=str(payload.get("data") or ""),
        )


def update_chat_id(update: Dict[str, Any]) -> Optional[int]:
    if isinstance(update.get("callback_query"), dict):
        message = update["callback_query"].get("message") or {}
        return parse_int((message.get("chat") or {}).get("id"))
    if isinstance(update.get("message"), dict):
        return parse_int((update["message"].get("chat") or {}).get("id"))
    return None


@dataclass
class BotStats:
    started_at: int
    updates_handled: int = 0
    handler_errors: int = 0
    last_archive: str = "-"
    last_archive_at: int = 0
    last_broadcast: str = "-"
    last_broadcast_at: int = 0

    def record_archive(self, outcome: str) -> None:
        self.last_archive = outcome
        self.last_archive_at = now_epoch()

    def record_broadcast(self, label: str, result: BroadcastResult) -> None:
        self.last_broadcast = f"{label}: {result.summary()}"
        self.last_broadcast_at = now_epoch()


class FilmClubBot:
    def __init__(
        self,
        *,
        config: Dict[str, Any],
        transport: Any,
        store: LocalRecordStore,
        admins: AdminRegistry,
        content_client: Any,
        sheets_client: Any = None,
        social_client: Any = None,
    ):
        runtime = config["runtime"]
        self.club = config["club"]
        self.transport = transport
        self.admins = admins
        self.content_client = content_client
        self.social_client = social_client

        self.subscriptions = SubscriptionBook(store)
        self.meetings = MeetingBook(store, self.club.get("default_requirements", ""))
        self.history = HistoryBook(store)
        self.voting = VotingBook(store, runtime["max_scores_per_round"])
        self.archive = ArchiveWorkflow(
            voting_book=self.voting,
            meeting_book=self.meetings,
            history_book=self.history,
            content_client=content_client,
            sheets_client=sheets_client,
        )
        self.prompts = PendingPrompts(runtime["prompt_ttl_seconds"])
        self.staged_posts = ExpiringSlots(runtime["staged_post_ttl_seconds"])

        rate_cfg = config["telegram"]["broadcast_rate_limit"]
        self.broadcaster = Broadcaster(
            subscriptions=self.subscriptions,
            limiter=AsyncWindowLimiter(
                max_requests=int(rate_cfg["requests"]),
                period_seconds=float(rate_cfg["per_seconds"]),
                name="telegram_broadcast",
            ),
        )
        self.history_display_count = int(runtime["history_display_count"])
        self.stats = BotStats(started_at=now_epoch())
        self._chat_locks: Dict[Optional[int], asyncio.Lock] = {}
        self._chat_lock_users: Dict[Optional[int], int] = {}

    def menu_for(self, user_id: Any) -> Dict[str, Any]:
        return main_menu(self.admins.is_admin(user_id))

    def housekeeping(self) -> None:
        expired = self.prompts.purge_expired() + self.staged_posts.purge_expired()
        if expired:
            LOGGER.debug("[Telegram] Dropped %s expired prompt(s)/staged post(s).", expired)

    async def dispatch(self, update: Dict[str, Any]) -> None:
        """Handle one update; updates from the same chat run one at a time."""
        chat_id = update_chat_id(update)
        lock = self._chat_locks.setdefault(chat_id, asyncio.Lock())
        self._chat_lock_users[chat_id] = self._chat_lock_users.get(chat_id, 0) + 1
        try:
            async with lock:
                try:
                    await self.handle_update(update)
                except Exception:
                    self.stats.handler_errors += 1
                    LOGGER.exception("[Telegram] Update %s failed.", update.get("update_id"))
                    if chat_id is not None:
                        await self._report_failure(chat_id)
                finally:
                    self.stats.updates_handled += 1
        finally:
            self._release_chat_lock(chat_id)

    def _release_chat_lock(self, chat_id: Optional[int]) -> None:
        remaining = self._chat_lock_users.get(chat_id, 1) - 1
        if remaining > 0:
            self._chat_lock_users[chat_id] = remaining
            return
        # Nobody holds or waits for this lock any more.
        self._chat_lock_users.pop(chat_id, None)
        self._chat_locks.pop(chat_id, None)

    async def _show_typing(self, chat_id: Any) -> None:
        try:
            await self.transport.send_chat_action(chat_id, "typing")
        except TransportError as exc:
            LOGGER.debug("[Telegram] Chat action for %s failed: %s", chat_id, exc)

    async def _report_failure(self, chat_id: int) -> None:
        try:
            await self.transport.send_message(
                chat_id, "❌ Something went wrong. Please try again a bit later."
            )
        except TransportError as exc:
            LOGGER.warning("[Telegram] Could not report the failure to %s: %s", chat_id, exc)

    async def handle_update(self, update: Dict[str, Any]) -> None:
        if isinstance(update.get("callback_query"), dict):
            query = IncomingCallback.from_payload(update["callback_query"])
            if query is not None:
                await self.handle_callback(query)
        elif isinstance(update.get("message"), dict):
            message = IncomingMessage.from_payload(update["message"])
            if message is not None:
                await self.handle_message(message)

    async def handle_message(self, message: IncomingMessage) -> None:
        text = message.text.strip()
        if text.startswith("/"):
            self.prompts.cancel(message.chat_id, message.user_id)
            await self.handle_command(message)
            return
        if text in MENU_TEXTS:
            self.prompts.cancel(message.chat_id, message.user_id)
            await self.handle_menu(message, text)
            return

        prompt = self.prompts.take(message.chat_id, message.user_id)
        if prompt is not None and self.admins.is_admin(message.user_id):
            await self.resolve_prompt(prompt, message)
            return

        await self.transport.send_message(
            message.chat_id,
            "Use the menu below to navigate 😉",
            reply_markup=self.menu_for(message.user_id),
        )

    async def handle_command(self, message: IncomingMessage) -> None:
        command, _, argument = message.text.strip().partition(" ")
        command = command.split("@", 1)[0].lower()
        handlers = {
            "/start": (self.cmd_start, False),
            "/checkadmin": (self.cmd_checkadmin, False),
            "/notify": (self.cmd_notify, True),
            "/subscribers": (self.cmd_subscribers, True),
            "/reload": (self.cmd_reload, True),
            "/history_edit": (self.cmd_history_edit, True),
        }
        if command not in handlers:
            await self.transport.send_message(
                message.chat_id,
                "Unknown command. Use the menu below 😉",
                reply_markup=self.menu_for(message.user_id),
            )
            return

        handler, admin_only = handlers[command]
        if admin_only and not self.admins.is_admin(message.user_id):
            LOGGER.warning("[Telegram] Non-admin %s tried %s.", message.user_id, command)
            await self.transport.send_message(
                message.chat_id, "⛔ This command is only for administrators."
            )
            return
        await handler(message, argument.strip())

    async def cmd_start(self, message: IncomingMessage, argument: str) -> None:
        is_admin = self.admins.is_admin(message.user_id)
        try:
            await self.transport.send_animation(
                message.chat_id,
                random.choice(WELCOME_ANIMATIONS),
                caption=(
                    f"🎬 <b>Hi, {escape_html(message.first_name or 'friend')}!</b> 👋\n"
                    f"I am the bot of the <b>{escape_html(self.club['name'])}</b> film club."
                ),
            )
        except TransportError as exc:
            if exc.blocked:
                raise
            LOGGER.warning("[Telegram] Welcome animation failed: %s", exc)

        lines = [
            "Here is what I can do:",
            "• show the next meeting and the film we discuss",
            "• remind you about meetings every week",
            "• show the ratings of films we already discussed",
        ]
        if is_admin:
            lines.append("• 👑 run ratings, announcements and posts from the admin panel")
        await self.transport.send_message(
            message.chat_id, "\n".join(lines), reply_markup=main_menu(is_admin)
        )

    async def cmd_checkadmin(self, message: IncomingMessage, argument: str) -> None:
        is_admin = self.admins.is_admin(message.user_id)
        text = (
            "🔍 <b>Admin check</b>\n\n"
            f"Your id: <code>{message.user_id}</code>\n"
            f"Administrator: {'yes ✅' if is_admin else 'no ❌'}\n"
            f"Configured admins: {len(self.admins.snapshot())}"
        )
        await self.transport.send_message(
            message.chat_id,
            text,
            reply_markup=inline_keyboard([[("🔄 Reload admin list", CB_RELOAD_ADMINS)]]),
        )

    async def cmd_notify(self, message: IncomingMessage, argument: str) -> None:
        if not argument:
            await self.transport.send_message(message.chat_id, "Usage: /notify &lt;text&gt;")
            return
        await self._show_typing(message.chat_id)
        result = await self.broadcast_text(
            f"📢 <b>Announcement from the {escape_html(self.club['name'])} film club:</b>\n\n{argument}",
            "notify",
        )
        await self.transport.send_message(message.chat_id, self.broadcast_report(result))

    async def cmd_subscribers(self, message: IncomingMessage, argument: str) -> None:
        await self.transport.send_message(
            message.chat_id, f"📊 Subscribers: <b>{self.subscriptions.count()}</b>"
        )

    async def cmd_reload(self, message: IncomingMessage, argument: str) -> None:
        ids = await asyncio.to_thread(self.admins.reload)
        await self.transport.send_message(
            message.chat_id,
            f"✅ Admin list reloaded: {len(ids)} admin(s).",
            reply_markup=self.menu_for(message.user_id),
        )

    async def cmd_history_edit(self, message: IncomingMessage, argument: str) -> None:
        parts = [part.strip() for part in argument.split("|", 2)]
        number = parse_int(parts[0])
        if len(parts) != 3 or number is None:
            await self.transport.send_message(
                message.chat_id,
                "Usage: /history_edit number|field|value\n"
                f"Editable fields: {', '.join(EDITABLE_HISTORY_FIELDS)}",
            )
            return
        try:
            entry = await self.archive.edit_entry(number, parts[1].lower(), parts[2])
        except ValidationError as exc:
            await self.transport.send_message(message.chat_id, f"❌ {escape_html(exc)}")
            return
        except ContentPushError as exc:
            LOGGER.error("[GitHub] History edit for #%s failed: %s", number, exc)
            await self.transport.send_message(
                message.chat_id,
                f"❌ History was not changed.\n{escape_html(exc.user_message())}",
            )
            return
        await self.transport.send_message(
            message.chat_id, "✅ History updated:\n\n" + format_history_entry(entry)
        )

    async def handle_menu(self, message: IncomingMessage, text: str) -> None:
        chat_id = message.chat_id
        if text == MENU_MEETING:
            await self.show_meeting(chat_id, message.user_id)
        elif text == MENU_SUBSCRIPTION:
            subscribed = self.subscriptions.is_subscribed(chat_id)
            await self.transport.send_message(
                chat_id,
                self.subscription_text(subscribed),
                reply_markup=subscription_keyboard(subscribed),
            )
        elif text == MENU_SOCIALS:
            await self.transport.send_message(
                chat_id,
                f"🌐 <b>{escape_html(self.club['name'])} film club online</b>\n\n"
                "News, announcements and the full rating history:",
                reply_markup=socials_keyboard(self.club),
            )
        elif text == MENU_HISTORY:
            await self.show_history(chat_id, message.user_id)
        elif text == MENU_ADMIN:
            if not self.admins.is_admin(message.user_id):
                await self.transport.send_message(
                    chat_id,
                    "⛔ This section is only for administrators.",
                    reply_markup=self.menu_for(message.user_id),
                )
                return
            await self.transport.send_message(
                chat_id, "👑 <b>Admin panel</b>\n\nChoose an action:", reply_markup=admin_panel_keyboard()
            )

    @staticmethod
    def subscription_text(subscribed: bool) -> str:
        if subscribed:
            return "🔔 You are subscribed to weekly meeting reminders."
        return "🔕 You are not subscribed. Subscribe to get a reminder before each meeting."

    async def show_meeting(self, chat_id: Any, user_id: Any) -> None:
        if not self.meetings.current().is_announced():
            await self.transport.send_message(
                chat_id,
                f"🎬 <b>{escape_html(self.club['name'])} film club</b>\n\n"
                "The next meeting has not been announced yet. "
                "Subscribe to get notified as soon as it is.",
                reply_markup=self.menu_for(user_id),
            )
            return
        await self.send_meeting_card(chat_id, self.menu_for(user_id))

    async def send_meeting_card(self, chat_id: Any, reply_markup: Optional[Dict[str, Any]] = None) -> None:
        meeting = self.meetings.current()
        voting = self.voting.load()
        caption = format_movie_card(meeting, voting)
        poster = (voting.poster if voting.film else None) or meeting.poster
        if poster:
            try:
                await self.transport.send_photo(chat_id, poster, caption=caption, reply_markup=reply_markup)
                return
            except TransportError as exc:
                if exc.blocked:
                    raise
                LOGGER.warning(
                    "[Telegram] Poster for %s failed (%s); sending the text card.",
                    chat_id,
                    exc.description,
                )
        await self.transport.send_message(chat_id, caption, reply_markup=reply_markup)

    async def show_history(self, chat_id: Any, user_id: Any) -> None:
        entries = self.history.recent(self.history_display_count)
        if not entries:
            await self.transport.send_message(
                chat_id, "📜 The rating history is empty so far.", reply_markup=self.menu_for(user_id)
            )
            return

        await self.transport.send_message(
            chat_id, f"📜 <b>Rating history</b>\n\nThe last {len(entries)} rated film(s):"
        )
        for entry in entries:
            text = format_history_entry(entry)
            if entry.poster:
                try:
                    await self.transport.send_photo(chat_id, entry.poster, caption=text)
                    continue
                except TransportError as exc:
                    if exc.blocked:
                        raise
                    LOGGER.warning("[Telegram] History poster failed: %s", exc.description)
            await self.transport.send_message(chat_id, text)
        await self.transport.send_message(
            chat_id,
            f"The full history is on our website: {escape_html(self.club.get('site_url', ''))}",
            reply_markup=self.menu_for(user_id),
        )

    async def _answer(self, query: IncomingCallback, text: Optional[str] = None, alert: bool = False) -> None:
        await self.transport.answer_callback_query(query.query_id, text, show_alert=alert)

    async def _edit(
        self,
        query: IncomingCallback,
        text: str,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            await self.transport.edit_message_text(
                query.chat_id, query.message_id, text, reply_markup=reply_markup
            )
        except TransportError as exc:
            if "message is not modified" in exc.description.lower():
                return
            if exc.status != 400 or exc.blocked:
                raise
            # Photo cards and old messages cannot be edited; answer with a new one.
            await self.transport.send_message(query.chat_id, text, reply_markup=reply_markup)

    async def handle_callback(self, query: IncomingCallback) -> None:
        data = query.data
        if data.startswith("admin_"):
            if not self.admins.is_admin(query.user_id):
                LOGGER.warning("[Telegram] Non-admin %s tried %s.", query.user_id, data)
                await self._answer(query, "⛔ This action is only for administrators.", alert=True)
                return
            await self.handle_admin_callback(query)
            return

        if data in (CB_SUBSCRIBE, CB_UNSUBSCRIBE):
            subscribe = data == CB_SUBSCRIBE
            if subscribe:
                changed = self.subscriptions.subscribe(query.chat_id)
                notice = "🔔 Subscribed!" if changed else "You are already subscribed."
            else:
                changed = self.subscriptions.unsubscribe(query.chat_id)
                notice = "🔕 Unsubscribed." if changed else "You are not subscribed."
            await self._answer(query, notice)
            if changed:
                await self._edit(
                    query, self.subscription_text(subscribe), subscription_keyboard(subscribe)
                )
        elif data == CB_BACK_TO_MAIN:
            await self._answer(query)
            await self.transport.send_message(
                query.chat_id, "Main menu:", reply_markup=self.menu_for(query.user_id)
            )
        elif data == CB_RELOAD_ADMINS:
            ids = await asyncio.to_thread(self.admins.reload)
            await self._answer(query, f"✅ Admin list reloaded: {len(ids)} admin(s).", alert=True)
        else:
            await self._answer(query)

    async def handle_admin_callback(self, query: IncomingCallback) -> None:
        data = query.data
        exact = {
            CB_RATE_MOVIE: self.on_open_rating,
            CB_FINISH_RATING: self.on_finish_rating,
            CB_CLEAR_VOTES: self.on_clear_votes,
            CB_SAVE_HISTORY: self.on_save_history,
            CB_ADD_NEXT_MEETING: self.on_add_next_meeting,
            CB_BROADCAST_NEWS: self.on_broadcast_news,
            CB_ADMIN_PANEL: self.on_admin_panel,
            CB_PUBLISH_VK: self.on_publish_social,
            CB_PREVIEW_VK: self.on_preview_social,
            CB_CONFIRM_VK: self.on_confirm_social,
            CB_EDIT_VK: self.on_edit_social,
        }
        handler = exact.get(data)
        if handler is not None:
            await handler(query)
            return
        if data.startswith(CB_RATE_PREFIX):
            score = parse_int(data[len(CB_RATE_PREFIX) :])
            if score is not None:
                await self.on_score(query, score)
                return
        await self._answer(query)

    @staticmethod
    def rating_status_text(voting: VotingRecord, title: str) -> str:
        return (
            f"{title}\n\n"
            f"🎥 <b>{escape_html(voting.film)}</b>\n"
            f"⭐ Current average: {format_average(voting.average)}/10\n"
            f"👥 Scores: {len(voting.ratings)}\n\n"
            "Tap a score for each participant, then finish the rating:"
        )

    async def on_admin_panel(self, query: IncomingCallback) -> None:
        await self._answer(query)
        await self._edit(query, "👑 <b>Admin panel</b>\n\nChoose an action:", admin_panel_keyboard())

    async def on_open_rating(self, query: IncomingCallback) -> None:
        try:
            voting = self.voting.open_rating(self.meetings.current())
        except WorkflowError as exc:
            await self._answer(query, str(exc), alert=True)
            return
        await self._answer(query, "⭐ Rating is open")
        await self._edit(query, self.rating_status_text(voting, "⭐ <b>Rating the film</b>"), rating_keyboard())

    async def on_score(self, query: IncomingCallback, score: int) -> None:
        try:
            voting = self.voting.record_score(score)
        except FilmClubError as exc:
            await self._answer(query, str(exc), alert=True)
            return
        await self._answer(query, f"Score {score} saved!")
        await self._edit(
            query, self.rating_status_text(voting, f"✅ <b>Score {score} added</b>"), rating_keyboard()
        )

    async def on_finish_rating(self, query: IncomingCallback) -> None:
        try:
            voting = self.voting.finish()
        except WorkflowError as exc:
            await self._answer(query, str(exc), alert=True)
            return
        await self._answer(query, "Rating finished")
        await self._edit(
            query,
            "✅ <b>Rating finished</b>\n\n"
            f"{format_movie_card(self.meetings.current(), voting)}\n\n"
            "Save the result to history or continue rating:",
            finished_rating_keyboard(),
        )

    async def on_clear_votes(self, query: IncomingCallback) -> None:
        self.voting.clear()
        await self._answer(query, "🧹 Votes cleared")
        await self._edit(query, "🧹 <b>All votes cleared.</b>\n\nChoose an action:", admin_panel_keyboard())

    async def on_save_history(self, query: IncomingCallback) -> None:
        try:
            entry = self.archive.prepare()
        except FilmClubError as exc:
            await self._answer(query, str(exc), alert=True)
            return

        await self._answer(query, "💾 Saving to history...")
        await self._edit(query, "⏳ <b>Saving the results...</b>")
        try:
            entry = await self.archive.archive(entry)
        except MirrorError as exc:
            LOGGER.error("[Archive] Saving '%s' failed at %s: %s", entry.film, exc.service, exc)
            self.stats.record_archive(f"failed ({exc.service})")
            await self._edit(
                query,
                "❌ <b>Saving failed</b>\n\n"
                f"{escape_html(exc.user_message())}\n\n"
                "Nothing was reset; you can try again.",
                archive_retry_keyboard(),
            )
            return

        self.stats.record_archive(f"ok: {entry.film}")
        await self._edit(
            query,
            "✅ <b>Saved to history!</b>\n\n"
            f"🎥 {escape_html(entry.film)}\n"
            f"⭐ {format_average(entry.average)}/10 from {entry.participants} participant(s)\n\n"
            "The rating round was reset.",
            admin_panel_keyboard(),
        )

    async def on_add_next_meeting(self, query: IncomingCallback) -> None:
        await self._answer(query)
        self.prompts.expect(query.chat_id, query.user_id, PROMPT_NEXT_MEETING, query.message_id)
        await self._edit(
            query,
            "🎬 <b>Add the next meeting</b>\n\n"
            f"Send one message with {len(NEXT_MEETING_FIELDS)} fields separated by |:\n"
            f"<code>{escape_html(NEXT_MEETING_FORMAT)}</code>\n\n"
            f"Example:\n<code>{escape_html(NEXT_MEETING_EXAMPLE)}</code>",
        )

    async def on_broadcast_news(self, query: IncomingCallback) -> None:
        await self._answer(query)
        self.prompts.expect(query.chat_id, query.user_id, PROMPT_BROADCAST, query.message_id)
        await self._edit(
            query,
            "📢 <b>Broadcast news</b>\n\n"
            f"Send the news text. It goes to all {self.subscriptions.count()} subscriber(s).",
        )

    @staticmethod
    def social_preview_text(post: str) -> str:
        return f"📣 <b>VK post preview</b>\n\n<pre>{escape_html(post)}</pre>"

    async def on_publish_social(self, query: IncomingCallback) -> None:
        meeting = self.meetings.current()
        if not meeting.is_announced():
            await self._answer(query, "No meeting to publish. Add the next meeting first.", alert=True)
            return
        missing = missing_post_fields(meeting)
        if missing:
            await self._answer(query, "Missing fields: " + ", ".join(missing), alert=True)
            return

        post = format_social_post(meeting, self.club["name"])
        self.staged_posts.put(staged_post_key(query.chat_id, query.user_id), post)
        await self._answer(query)
        await self._edit(query, self.social_preview_text(post), social_preview_keyboard())

    async def on_preview_social(self, query: IncomingCallback) -> None:
        post = self.staged_posts.get(staged_post_key(query.chat_id, query.user_id))
        if post is None:
            await self._answer(query, "The prepared post expired. Prepare it again.", alert=True)
            return
        await self._answer(query)
        await self._edit(query, self.social_preview_text(post), social_preview_keyboard())

    async def on_edit_social(self, query: IncomingCallback) -> None:
        post = self.staged_posts.get(staged_post_key(query.chat_id, query.user_id))
        if post is None:
            await self._answer(query, "The prepared post expired. Prepare it again.", alert=True)
            return
        await self._answer(query)
        self.prompts.expect(query.chat_id, query.user_id, PROMPT_EDIT_POST, query.message_id)
        await self._edit(
            query,
            "✏️ <b>Send the new post text.</b>\n\nCurrent text:\n\n"
            f"<pre>{escape_html(post)}</pre>",
        )

    async def on_confirm_social(self, query: IncomingCallback) -> None:
        post = self.staged_posts.get(staged_post_key(query.chat_id, query.user_id))
        if post is None:
            await self._answer(query, "The prepared post expired. Prepare it again.", alert=True)
            return
        if self.social_client is None:
            await self._answer(query, "VK publishing is not configured.", alert=True)
            return

        await self._answer(query, "📣 Publishing to VK...")
        try:
            post_id = await self.social_client.publish_post(post)
        except SocialPostError as exc:
            LOGGER.error("[VK] Publishing failed: %s", exc)
            await self._edit(
                query,
                "❌ <b>VK publishing failed</b>\n\n"
                f"{escape_html(exc.user_message())}\n\n"
                "The post is kept; you can try again.",
                social_preview_keyboard(),
            )
            return

        self.staged_posts.pop(staged_post_key(query.chat_id, query.user_id))
        await self._edit(
            query,
            f"✅ <b>Post published!</b>\n\n{escape_html(self.social_client.post_url(post_id))}",
            admin_panel_keyboard(),
        )

    async def resolve_prompt(self, prompt: PendingPrompt, message: IncomingMessage) -> None:
        if prompt.prompt_message_id:
            try:
                await self.transport.delete_message(message.chat_id, prompt.prompt_message_id)
            except TransportError as exc:
                LOGGER.debug("[Telegram] Could not delete prompt message: %s", exc)

        if prompt.kind == PROMPT_NEXT_MEETING:
            await self.on_next_meeting_text(message)
        elif prompt.kind == PROMPT_BROADCAST:
            await self.on_news_text(message)
        elif prompt.kind == PROMPT_EDIT_POST:
            await self.on_social_text(message)

    async def on_next_meeting_text(self, message: IncomingMessage) -> None:
        menu = self.menu_for(message.user_id)
        try:
            meeting = parse_next_meeting(message.text)
        except ValidationError as exc:
            await self.transport.send_message(
                message.chat_id,
                f"❌ {escape_html(exc)}\n\nOpen the admin panel and try again.",
                reply_markup=menu,
            )
            return

        self.meetings.replace(meeting)
        LOGGER.info("[Telegram] Next meeting set: '%s' (#%s).", meeting.film, meeting.discussion_number)
        try:
            await self.content_client.push_next_meeting(
                meeting.to_remote_dict(self.club.get("default_requirements", ""))
            )
            note = "✅ Next meeting saved and published to the website!"
        except ContentPushError as exc:
            LOGGER.error("[GitHub] Next meeting sync failed: %s", exc)
            note = (
                "✅ Next meeting saved.\n"
                f"⚠️ Website sync failed: {escape_html(exc.user_message())}"
            )
        await self.transport.send_message(message.chat_id, note)
        await self.send_meeting_card(message.chat_id, menu)

    async def on_news_text(self, message: IncomingMessage) -> None:
        text = message.text.strip()
        await self._show_typing(message.chat_id)
        result = await self.broadcast_text(
            f"📢 <b>News from the {escape_html(self.club['name'])} film club:</b>\n\n{text}",
            "news",
        )
        await self.transport.send_message(
            message.chat_id, self.broadcast_report(result), reply_markup=admin_panel_keyboard()
        )

    async def on_social_text(self, message: IncomingMessage) -> None:
        self.staged_posts.put(staged_post_key(message.chat_id, message.user_id), message.text.strip())
        await self.transport.send_message(
            message.chat_id,
            "✅ Post text updated. Publish it now?",
            reply_markup=social_edited_keyboard(),
        )

    async def broadcast_text(self, text: str, label: str) -> BroadcastResult:
        async def deliver(chat_id: str) -> None:
            await self.transport.send_message(chat_id, text)

        result = await self.broadcaster.broadcast(deliver, label)
        self.stats.record_broadcast(label, result)
        return result

    @staticmethod
    def broadcast_report(result: BroadcastResult) -> str:
        lines = [f"✅ Delivered to {result.sent} subscriber(s)."]
        if result.failed:
            lines.append(f"⚠️ Failed: {result.failed}.")
        if result.pruned:
            lines.append(f"🧹 Removed {result.pruned} chat(s) that blocked the bot.")
        return "\n".join(lines)

    async def send_weekly_notification(self) -> Optional[BroadcastResult]:
        if not self.meetings.current().is_announced():
            LOGGER.info("[Scheduler] No meeting announced; weekly notification skipped.")
            return None

        async def deliver(chat_id: str) -> None:
            await self.send_meeting_card(chat_id, self.menu_for(chat_id))

        result = await self.broadcaster.broadcast(deliver, "weekly")
        self.stats.record_broadcast("weekly", result)
        return result


class UpdatePoller:
    """Long-poll getUpdates and spawn one dispatch task per update."""

    def __init__(
        self,
        *,
        transport: Any,
        bot: FilmClubBot,
        poll_timeout_seconds: int,
        error_backoff_seconds: float = 5.0,
    ):
        self.transport = transport
        self.bot = bot
        self.poll_timeout_seconds = int(poll_timeout_seconds)
        self.error_backoff_seconds = float(error_backoff_seconds)
        self._tasks: Set[asyncio.Task] = set()

    async def run(self, stop_event: asyncio.Event) -> None:
        offset: Optional[int] = None
        LOGGER.info("[Telegram] Polling for updates (timeout=%ss).", self.poll_timeout_seconds)
        try:
            while not stop_event.is_set():
                try:
                    updates = await self.transport.get_updates(offset, self.poll_timeout_seconds)
                except TransportError as exc:
                    LOGGER.warning(
                        "[Telegram] getUpdates failed: %s. Retrying in %.0fs",
                        exc,
                        self.error_backoff_seconds,
                    )
                    try:
                        await asyncio.wait_for(stop_event.wait(), timeout=self.error_backoff_seconds)
                    except asyncio.TimeoutError:
                        pass
                    continue

                for update in updates:
                    update_id = parse_int(update.get("update_id"))
                    if update_id is not None:
                        offset = update_id + 1
                    task = asyncio.create_task(self.bot.dispatch(update))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                self.bot.housekeeping()
        finally:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)


WEEKLY_JOB_ID = "weekly_meeting_notification"


class WeeklyNotifier:
    """Cron-style weekly reminder on top of APScheduler's asyncio scheduler."""

    def __init__(self, *, bot: FilmClubBot, config: Dict[str, Any]):
        self.bot = bot
        self.timezone = str(config["timezone"])
        self.trigger = CronTrigger(
            day_of_week=config["day_of_week"],
            hour=config["hour"],
            minute=config["minute"],
            timezone=self.timezone,
        )
        self._scheduler = AsyncIOScheduler(timezone=self.timezone)

    async def _run_job(self) -> None:
        LOGGER.info("[Scheduler] Weekly notification started.")
        try:
            result = await self.bot.send_weekly_notification()
        except Exception:
            LOGGER.exception("[Scheduler] Weekly notification failed.")
            return
        if result is not None:
            LOGGER.info("[Scheduler] Weekly notification done: %s", result.summary())

    def start(self) -> None:
        self._scheduler.add_job(
            self._run_job,
            trigger=self.trigger,
            id=WEEKLY_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=3600,
        )
        self._scheduler.start()
        LOGGER.info("[Scheduler] Weekly notification scheduled; next run %s.", self.next_run_time())

    def next_run_time(self) -> Optional[dt.datetime]:
        job = self._scheduler.get_job(WEEKLY_JOB_ID)
        return job.next_run_time if job is not None else None

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            LOGGER.info("[Scheduler] Stopped.")


@dataclass
class DashboardEvent:
    timestamp: int
    level: str
    message: str
    count: int = 1
    signature: str = ""


class DashboardEventBuffer:
    def __init__(
        self,
        *,
        max_lines: int,
        dedupe_window_seconds: int,
        max_message_length: int,
    ):
        self.max_lines = max(1, int(max_lines))
        self.dedupe_window_seconds = max(1, int(dedupe_window_seconds))
        self.max_message_length = max(40, int(max_message_length))
        self._events: deque[DashboardEvent] = deque(maxlen=self.max_lines)
        self._lock = threading.Lock()

    def _normalize_message(self, message: str) -> str:
        collapsed = " ".join(redact_secrets(str(message or "")).split())
        if not collapsed:
            return "-"
        if len(collapsed) <= self.max_message_length:
            return collapsed
        return f"{collapsed[: max(1, self.max_message_length - 3)]}..."

    def add(self, *, level: str, message: str, now_ts: Optional[int] = None) -> None:
        ts = now_epoch() if now_ts is None else int(now_ts)
        level_name = str(level or "INFO").upper()
        normalized = self._normalize_message(message)
        signature = f"{level_name}:{normalized}"

        with self._lock:
            if self._events:
                last = self._events[-1]
                if last.signature == signature and ts - last.timestamp <= self.dedupe_window_seconds:
                    last.count += 1
                    last.timestamp = ts
                    return
            self._events.append(
                DashboardEvent(timestamp=ts, level=level_name, message=normalized, signature=signature)
            )

    def snapshot(self) -> List[DashboardEvent]:
        with self._lock:
            return list(self._events)


class LiveLogState:
    def __init__(self):
        self._live_active = False
        self._lock = threading.Lock()

    def set_live_active(self, active: bool) -> None:
        with self._lock:
            self._live_active = bool(active)

    def is_live_active(self) -> bool:
        with self._lock:
            return self._live_active


class LiveAwareConsoleHandler(logging.StreamHandler):
    def __init__(self, *, live_state: LiveLogState, allow_while_live: bool):
        super().__init__()
        self.live_state = live_state
        self.allow_while_live = bool(allow_while_live)

    def emit(self, record: logging.LogRecord) -> None:
        if self.live_state.is_live_active() and not self.allow_while_live:
            return
        clean_record = logging.makeLogRecord(record.__dict__.copy())
        # Tracebacks go to the log file only.
        clean_record.exc_info = None
        clean_record.exc_text = None
        clean_record.stack_info = None
        super().emit(clean_record)


class DashboardEventHandler(logging.Handler):
    def __init__(self, *, buffer: DashboardEventBuffer, min_level: int = logging.WARNING):
        super().__init__(level=min_level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
            if record.exc_info and record.exc_info[1] is not None:
                exc_type = type(record.exc_info[1]).__name__
                exc_value = str(record.exc_info[1]).strip()
                message = f"{message} ({exc_type}: {exc_value})" if exc_value else f"{message} ({exc_type})"
            self.buffer.add(level=record.levelname, message=message)
        except Exception:
            self.handleError(record)


@dataclass
class LoggingRuntime:
    live_state: LiveLogState
    event_buffer: DashboardEventBuffer
    log_file_path: Path


class BotDashboard:
    """Terminal status screen rendered with rich."""

    LABEL_WIDTH = 22

    def __init__(
        self,
        *,
        bot: FilmClubBot,
        event_buffer: DashboardEventBuffer,
        notifier: Optional[WeeklyNotifier] = None,
        event_lines: int = 8,
        refresh_seconds: float = 0.5,
    ):
        self.bot = bot
        self.event_buffer = event_buffer
        self.notifier = notifier
        self.event_lines = max(3, int(event_lines))
        self.refresh_seconds = max(0.1, float(refresh_seconds))

        # Club documents are re-read from disk at most every couple of seconds.
        self._last_refresh = 0.0
        self._refresh_interval = 2.0
        self.club_snapshot: Dict[str, Any] = {}

    @staticmethod
    def _format_iso(ts: int) -> str:
        if not ts:
            return "-"
        return to_iso(int(ts))

    @staticmethod
    def _format_duration(seconds: int) -> str:
        seconds = max(0, int(seconds))
        hours, rem = divmod(seconds, 3600)
        minutes, secs = divmod(rem, 60)
        if hours:
            return f"{hours}h{minutes:02d}m"
        return f"{minutes}m{secs:02d}s"

    def _refresh_snapshot(self, force: bool = False) -> None:
        now = time.monotonic()
        if not force and now - self._last_refresh < self._refresh_interval:
            return
        self._last_refresh = now
        meeting = self.bot.meetings.current()
        voting = self.bot.voting.load()
        self.club_snapshot = {
            "meeting": (
                f"#{meeting.discussion_number} {meeting.film} ({meeting.date} {meeting.time})"
                if meeting.is_announced()
                else "not announced"
            ),
            "state": voting.state,
            "rating": (
                f"film={voting.film or '-'} scores={len(voting.ratings)} "
                f"avg={format_average(voting.average)}"
            ),
            "subscribers": self.bot.subscriptions.count(),
            "history": len(self.bot.history.load()),
        }

    def _label_table(self, style: str) -> Table:
        table = Table.grid(expand=True, padding=(0, 0))
        table.add_column(
            style=style,
            no_wrap=True,
            width=self.LABEL_WIDTH,
            min_width=self.LABEL_WIDTH,
            max_width=self.LABEL_WIDTH,
        )
        table.add_column(style="white", no_wrap=True, overflow="crop", ratio=1)
        return table

    def _render_club_panel(self) -> Panel:
        table = self._label_table("bold cyan")
        table.add_row("Next meeting", str(self.club_snapshot.get("meeting", "-")))
        table.add_row("Rating round", str(self.club_snapshot.get("rating", "-")))
        table.add_row("Subscribers", str(self.club_snapshot.get("subscribers", 0)))
        table.add_row("Archived films", str(self.club_snapshot.get("history", 0)))
        return Panel(table, title="Club", border_style="cyan", title_align="left")

    def _render_activity_panel(self) -> Panel:
        stats = self.bot.stats
        next_run = self.notifier.next_run_time() if self.notifier is not None else None
        table = self._label_table("bold green")
        table.add_row("Updates", f"handled={stats.updates_handled} errors={stats.handler_errors}")
        table.add_row("Pending prompts", str(len(self.bot.prompts)))
        table.add_row("Last archive", f"{stats.last_archive} at {self._format_iso(stats.last_archive_at)}")
        table.add_row(
            "Last broadcast", f"{stats.last_broadcast} at {self._format_iso(stats.last_broadcast_at)}"
        )
        table.add_row("Next reminder", next_run.strftime("%d-%m-%y %H:%M %Z") if next_run else "disabled")
        return Panel(table, title="Activity", border_style="green", title_align="left")

    def _render_events_panel(self) -> Panel:
        table = self._label_table("bold yellow")
        rendered = []
        for entry in reversed(self.event_buffer.snapshot()[-self.event_lines :]):
            level = "WARN" if entry.level == "WARNING" else entry.level
            suffix = f" x{entry.count}" if entry.count > 1 else ""
            rendered.append((f"{self._format_iso(entry.timestamp)} {level}", f"{entry.message}{suffix}"))
        while len(rendered) < self.event_lines:
            rendered.append(("-", "-"))
        for when, message in rendered:
            table.add_row(when, message)
        return Panel(table, title="Events", border_style="yellow", title_align="left")

    def render(self) -> Group:
        uptime = self._format_duration(now_epoch() - self.bot.stats.started_at)
        header = Text(
            f"{self.bot.club['name']} film club bot | uptime={uptime} "
            f"| state={self.club_snapshot.get('state', '-')}",
            style="bold",
        )
        return Group(
            header,
            self._render_club_panel(),
            self._render_activity_panel(),
            self._render_events_panel(),
        )

    async def run(self, stop_event: asyncio.Event) -> None:
        self._refresh_snapshot(force=True)
        with Live(
            self.render(),
            auto_refresh=False,
            transient=False,
            screen=False,
        ) as live:
            while not stop_event.is_set():
                self._refresh_snapshot()
                live.update(self.render(), refresh=True)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.refresh_seconds)
                except asyncio.TimeoutError:
                    pass


def configure_logging(config: Dict[str, Any]) -> LoggingRuntime:
    runtime_cfg = config.get("runtime", {})
    level = getattr(logging, str(runtime_cfg.get("log_level", "INFO")).upper(), logging.INFO)

    log_path = Path(str(runtime_cfg.get("log_file_path", "logs/filmclub_bot.log"))).expanduser()
    if not log_path.is_absolute():
        log_path = (Path.cwd() / log_path).resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    console_mode = str(runtime_cfg.get("console_mode", "dashboard")).strip().lower()

    event_buffer = DashboardEventBuffer(
        max_lines=int(runtime_cfg.get("dashboard_event_lines", 8)),
        dedupe_window_seconds=int(runtime_cfg.get("dashboard_event_dedupe_window_seconds", 30)),
        max_message_length=int(runtime_cfg.get("dashboard_event_max_message_length", 160)),
    )
    live_state = LiveLogState()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=int(runtime_cfg.get("log_file_max_bytes", 10485760)),
        backupCount=int(runtime_cfg.get("log_file_backup_count", 5)),
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    console_handler = LiveAwareConsoleHandler(
        live_state=live_state,
        allow_while_live=console_mode == "raw",
    )
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    event_handler = DashboardEventHandler(buffer=event_buffer, min_level=logging.WARNING)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(event_handler)

    logging.captureWarnings(True)

    # Keep third-party debug noise out of terminal output.
    for noisy in ("urllib3", "requests", "asyncio", "apscheduler", "google", "py.warnings"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return LoggingRuntime(live_state=live_state, event_buffer=event_buffer, log_file_path=log_path)


async def run_app(
    config: Dict[str, Any],
    secrets: Secrets,
    logging_runtime: LoggingRuntime,
    env_file: Optional[Path] = None,
) -> None:
    data_dir = Path(config["runtime"]["data_dir"]).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    store = LocalRecordStore(data_dir)
    admins = AdminRegistry(env_file=env_file, initial=secrets.admin_ids)
    transport = TelegramClient(token=secrets.bot_token, config=config["telegram"])
    content_client = GitHubContentClient(token=secrets.github_token, config=config["github"])
    sheets_client = SheetsClient(config=config["sheets"]) if config["sheets"]["enabled"] else None
    social_client = VKClient(access_token=secrets.vk_access_token, config=config["vk"])

    if not secrets.github_token:
        LOGGER.warning("[GitHub] GITHUB_TOKEN is not set; archiving and website sync will fail.")
    if sheets_client is None:
        LOGGER.warning("[Sheets] Spreadsheet mirror disabled (sheets.enabled=false).")
    if not secrets.vk_access_token:
        LOGGER.warning("[VK] VK_ACCESS_TOKEN is not set; VK publishing is unavailable.")

    bot = FilmClubBot(
        config=config,
        transport=transport,
        store=store,
        admins=admins,
        content_client=content_client,
        sheets_client=sheets_client,
        social_client=social_client,
    )
    poller = UpdatePoller(
        transport=transport,
        bot=bot,
        poll_timeout_seconds=config["telegram"]["poll_timeout_seconds"],
    )
    notifier = WeeklyNotifier(bot=bot, config=config["notifications"]) if config["notifications"]["enabled"] else None

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_stop() -> None:
        if not stop_event.is_set():
            LOGGER.info("Stop signal received. Beginning graceful shutdown...")
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_stop)
        except NotImplementedError:
            # Windows event loops may not support this.
            pass

    LOGGER.info("Data directory: %s", data_dir)
    LOGGER.info("Log file: %s", logging_runtime.log_file_path)
    LOGGER.info(
        "Starting bot: admins=%s, subscribers=%s, github=%s, sheets=%s",
        len(admins.snapshot()),
        bot.subscriptions.count(),
        config["github"]["repository"],
        "on" if sheets_client is not None else "off",
    )

    live_active = False
    try:
        if notifier is not None:
            notifier.start()

        tasks = [asyncio.create_task(poller.run(stop_event), name="poller")]
        if config["runtime"]["console_mode"] == "dashboard":
            dashboard = BotDashboard(
                bot=bot,
                event_buffer=logging_runtime.event_buffer,
                notifier=notifier,
                event_lines=config["runtime"]["dashboard_event_lines"],
            )
            logging_runtime.live_state.set_live_active(True)
            live_active = True
            tasks.append(asyncio.create_task(dashboard.run(stop_event), name="dashboard"))
        tasks.append(asyncio.create_task(stop_event.wait(), name="stop"))

        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        stop_event.set()

        for finished in done:
            exc = finished.exception()
            if exc is not None:
                LOGGER.error("Task %s failed: %s. Initiating shutdown.", finished.get_name(), exc)
                for p in pending:
                    p.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                raise exc

        LOGGER.info("Shutdown: stop requested, waiting for remaining tasks.")
        for p in pending:
            p.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        LOGGER.info("Shutdown complete.")
    finally:
        if notifier is not None:
            notifier.shutdown()
        if live_active:
            logging_runtime.live_state.set_live_active(False)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Telegram bot for the Odyssey film club",
    )
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to config JSON file (default: config.json)",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to the .env file with secrets (default: runtime.env_file from config)",
    )
    return parser


def main() -> int:
    parser = build_arg_parser()
    args = parser.parse_args()

    config_path = Path(args.config).expanduser().resolve()

    try:
        config = load_config(config_path)
        env_file = Path(args.env_file or config["runtime"]["env_file"]).expanduser().resolve()
        secrets = load_secrets(env_file)
    except Exception as exc:
        print(f"[FATAL] Could not load config: {exc}")
        return 1

    logging_runtime = configure_logging(config)

    try:
        asyncio.run(run_app(config, secrets, logging_runtime, env_file=env_file))
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user")
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        return 0
    except Exception:
        LOGGER.exception("Fatal runtime error")
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
