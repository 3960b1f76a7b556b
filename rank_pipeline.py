#!/usr/bin/env python3
"""
SERP Rank Tracker - Preflight / Takeoff / Landing pipeline

Production Features:
- Keyword queries expanded from service keyword lists and placeholder templates
- One DataForSEO task per keyword, failures recorded per keyword
- Bounded polling with a fixed interval for every submitted task
- Checkpointed landing phase that resumes without re-polling finished keywords
- Append-only audit trail of every submission and every raw result
- Phases decoupled through JSON artifacts so any phase can be re-run alone

Phases:
1. Preflight: join the tracked locations, the per-office service/location data
   and the placeholder templates into work items (pre-flight-output.json).
2. Takeoff: submit every keyword of every work item to the SERP task API and
   record the returned task ids (takeoff-output.json).
3. Landing: poll every submitted task until results are ready, keep the organic
   results that belong to the tracked site and checkpoint progress every 20
   keywords (landing-results.json).

Environment variables configure credentials, device profile and match rule.
Run with `python rank_pipeline.py preflight`, then `takeoff`, then `landing`,
or `python rank_pipeline.py all` to run the three phases back to back.
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import os
import random
import re
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
from base64 import b64encode
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from audit_log import AuditLog
from keyword_templates import expand_keywords

RANKING_PAGES_FILE = "ranking_pages.json"
SERVICE_LOCATION_FILE = "service_location_data.json"
PLACEHOLDER_FILE = "placeholder.json"
PREFLIGHT_FILE = "pre-flight-output.json"
TAKEOFF_FILE = "takeoff-output.json"
LANDING_FILE = "landing-results.json"
PROGRESS_FILE = "landing-progress.json"
LEGACY_CREDENTIALS_FILE = "data_for_seo.json"
LOG_FILE = "pipeline.log"

STATUS_SUBMITTED = "submitted"
STATUS_ERROR = "error"
STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"

MATCH_DOMAIN = "domain"
MATCH_EXACT = "exact"
MATCH_MODES = {MATCH_DOMAIN, MATCH_EXACT}

DEVICE_OS_DEFAULTS: Dict[str, str] = {
    "mobile": "android",
    "desktop": "windows",
}

ORGANIC_TYPE = "organic"
NOT_FOUND_VALUE = "Not Found"

# Rank-monitor table layout: office, target location, service, lat, long, prime URL
ROW_OFFICE = 0
ROW_TARGET = 1
ROW_SERVICE = 2
ROW_LAT = 3
ROW_LONG = 4
ROW_PRIME_URL = 5

PHASES = ["preflight", "takeoff", "landing", "all", "daily", "status", "report", "reset", "check"]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RankPipelineError(Exception):
    """Base class for pipeline failures."""


class MissingArtifactError(RankPipelineError):
    """A phase was started without the file its predecessor writes."""

    def __init__(self, phase: str, path: Path, predecessor: Optional[str] = None):
        self.phase = phase
        self.path = Path(path)
        self.predecessor = predecessor
        hint = f" Please run the {predecessor} phase first." if predecessor else ""
        super().__init__(f"Cannot start {phase}: {self.path.name} not found in {self.path.parent}.{hint}")


class ProviderResponseError(RankPipelineError):
    """The SERP API answered with something other than a usable task."""


class SubmissionError(ProviderResponseError):
    """Task creation was rejected or returned no task id."""


class PollTimeoutError(RankPipelineError):
    """A task never produced results within the poll budget."""

    def __init__(self, task_id: str, attempts: int):
        self.task_id = task_id
        self.attempts = attempts
        super().__init__(f"Task {task_id} did not complete within {attempts} poll attempts")


# ---------------------------------------------------------------------------
# HTTP utilities
# ---------------------------------------------------------------------------

def _http_request(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    json_body: Any = None,
    timeout: float = 60.0,
    max_retries: int = 1,
    retry_backoff: float = 2.0,
) -> Any:
    """
    Send one DataForSEO request and decode its JSON answer.

    Args:
        method: HTTP method (GET/POST)
        url: Full endpoint URL
        headers: Request headers, usually just Authorization
        json_body: Payload serialized to JSON when given (task_post takes a list)
        timeout: Request timeout in seconds
        max_retries: Total attempts; 429, 5xx and network errors are retried
        retry_backoff: Base wait in seconds, scaled by attempt and jittered

    Returns:
        Parsed JSON when the body is JSON, the decoded text otherwise, {} when empty.

    Raises:
        urllib.error.HTTPError / urllib.error.URLError from the last attempt.
    """
    request_headers = dict(headers or {})
    body: Optional[bytes] = None
    if json_body is not None:
        request_headers.setdefault("Content-Type", "application/json")
        body = json.dumps(json_body).encode("utf-8")

    for attempt in range(1, max(1, max_retries) + 1):
        request = urllib.request.Request(url, data=body, headers=request_headers, method=method.upper())
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                text = response.read().decode("utf-8", errors="ignore")
        except urllib.error.HTTPError as exc:
            retryable = exc.code == 429 or exc.code >= 500
            if not retryable or attempt >= max_retries:
                raise
            wait_for = (_retry_after_delay(exc) or retry_backoff * attempt) * (0.5 + random.random())
            logging.warning("%s %s answered HTTP %s; retry %d/%d in %.1fs", method, url, exc.code, attempt, max_retries, wait_for)
        except urllib.error.URLError as exc:
            if attempt >= max_retries:
                raise
            wait_for = retry_backoff * attempt * (0.5 + random.random())
            logging.warning("%s %s failed (%s); retry %d/%d in %.1fs", method, url, exc.reason, attempt, max_retries, wait_for)
        else:
            if not text:
                return {}
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                logging.debug("Response from %s is not JSON; returning text", url)
                return text
        time.sleep(wait_for)
    raise RankPipelineError(f"No attempt made for {url}")


def _retry_after_delay(error: urllib.error.HTTPError) -> Optional[float]:
    """Helper to parse a numeric Retry-After header."""
    retry_after = error.headers.get("Retry-After") if getattr(error, "headers", None) else None
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        return None


def _describe_error(exc: BaseException) -> str:
    """Human-readable cause for a failed API call, preferring the provider's message."""
    if isinstance(exc, urllib.error.HTTPError):
        message = ""
        try:
            body = exc.read()
            if body:
                payload = json.loads(body.decode("utf-8", errors="ignore"))
                if isinstance(payload, dict):
                    message = str(payload.get("status_message") or payload.get("message") or "")
        except Exception:  # noqa: BLE001
            message = ""
        return f"HTTP {exc.code}: {message or exc.reason}"
    if isinstance(exc, urllib.error.URLError):
        return f"Network error: {exc.reason}"
    return str(exc) or exc.__class__.__name__


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class WorkItem:
    """One tracked (location, service) unit of an office."""

    location: str
    service: str
    intended_url: Optional[str] = None
    geo_coordinate: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
    prime_url: Optional[str] = None

    @property
    def tracked_url(self) -> Optional[str]:
        return self.prime_url or self.intended_url

    def same_unit(self, other: "WorkItem") -> bool:
        return (
            self.location == other.location
            and self.service == other.service
            and self.intended_url == other.intended_url
            and self.prime_url == other.prime_url
        )

    def header(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "location": self.location,
            "service": self.service,
            "intended_url": self.intended_url,
            "geo_coordinate": self.geo_coordinate,
        }
        if self.prime_url is not None:
            data["prime_url"] = self.prime_url
        return data

    def to_dict(self) -> Dict[str, Any]:
        data = self.header()
        data["keywords"] = list(self.keywords)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        raw_keywords = data.get("keywords") or []
        if isinstance(raw_keywords, dict):
            raw_keywords = list(raw_keywords.keys())
        return cls(
            location=str(data.get("location") or ""),
            service=str(data.get("service") or ""),
            intended_url=data.get("intended_url"),
            geo_coordinate=data.get("geo_coordinate"),
            keywords=[str(kw) for kw in raw_keywords if isinstance(kw, str)],
            prime_url=data.get("prime_url"),
        )


@dataclass
class SubmittedTask:
    """Outcome of submitting one keyword. Submitted iff a task id exists."""

    keyword: str
    status: str
    task_id: Optional[str] = None
    error_description: Optional[str] = None

    @classmethod
    def submitted(cls, keyword: str, task_id: str) -> "SubmittedTask":
        return cls(keyword=keyword, status=STATUS_SUBMITTED, task_id=task_id)

    @classmethod
    def failed(cls, keyword: str, description: str) -> "SubmittedTask":
        return cls(keyword=keyword, status=STATUS_ERROR, error_description=description)

    @property
    def is_submitted(self) -> bool:
        return self.status == STATUS_SUBMITTED and bool(self.task_id)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"task_id": self.task_id or "", "status": self.status}
        if self.status == STATUS_ERROR:
            data["error_description"] = self.error_description or ""
        return data

    @classmethod
    def from_dict(cls, keyword: str, data: Any) -> "SubmittedTask":
        if not isinstance(data, dict):
            return cls.failed(keyword, "Malformed takeoff entry")
        task_id = str(data.get("task_id") or "").strip()
        status = str(data.get("status") or "")
        if status == STATUS_SUBMITTED and task_id:
            return cls.submitted(keyword, task_id)
        if status == STATUS_SUBMITTED:
            return cls.failed(keyword, "Submitted without a task id")
        return cls(
            keyword=keyword,
            status=status or STATUS_ERROR,
            error_description=data.get("error_description"),
        )


@dataclass
class RankingEntry:
    rank: int
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return {"rank": self.rank, "url": self.url}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RankingEntry":
        return cls(rank=int(data["rank"]), url=str(data["url"]))


@dataclass
class LandingResult:
    """Terminal state of one keyword after the landing phase."""

    keyword: str
    status: str
    rankings: List[RankingEntry] = field(default_factory=list)
    task_id: Optional[str] = None
    error_description: Optional[str] = None

    @property
    def best(self) -> Optional[RankingEntry]:
        return select_best_ranking(self.rankings)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": self.status,
            "rankings": [entry.to_dict() for entry in self.rankings],
        }
        if self.task_id:
            data["task_id"] = self.task_id
        if self.error_description:
            data["error_description"] = self.error_description
        return data

    @classmethod
    def from_dict(cls, keyword: str, data: Dict[str, Any]) -> "LandingResult":
        if not isinstance(data, dict):
            raise ValueError(f"Landing entry for {keyword!r} is not an object")
        raw_rankings = data.get("rankings") or []
        if not isinstance(raw_rankings, list):
            raise ValueError(f"Rankings for {keyword!r} are not a list")
        return cls(
            keyword=keyword,
            status=str(data.get("status") or ""),
            rankings=[RankingEntry.from_dict(entry) for entry in raw_rankings],
            task_id=data.get("task_id") or None,
            error_description=data.get("error_description") or None,
        )


@dataclass
class TakeoffItem:
    item: WorkItem
    tasks: Dict[str, SubmittedTask] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = self.item.header()
        data["keywords"] = {keyword: task.to_dict() for keyword, task in self.tasks.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TakeoffItem":
        raw = data.get("keywords") or {}
        tasks: Dict[str, SubmittedTask] = {}
        if isinstance(raw, dict):
            for keyword, entry in raw.items():
                tasks[keyword] = SubmittedTask.from_dict(keyword, entry)
        return cls(item=WorkItem.from_dict(data), tasks=tasks)


@dataclass
class LandingItem:
    item: WorkItem
    results: Dict[str, LandingResult] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = self.item.header()
        data["keywords"] = {keyword: result.to_dict() for keyword, result in self.results.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LandingItem":
        if not isinstance(data, dict):
            raise ValueError("Landing item is not an object")
        raw = data.get("keywords")
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValueError("Landing item keywords are not an object")
        results = {keyword: LandingResult.from_dict(keyword, entry) for keyword, entry in raw.items()}
        return cls(item=WorkItem.from_dict(data), results=results)


PreflightDocument = Dict[str, List[WorkItem]]
TakeoffDocument = Dict[str, List[TakeoffItem]]
LandingDocument = Dict[str, List[LandingItem]]


def _require_grouped(raw: Any, name: str) -> Dict[str, List[Any]]:
    if not isinstance(raw, dict):
        raise ValueError(f"{name} document must be an object keyed by office")
    for office, items in raw.items():
        if not isinstance(items, list):
            raise ValueError(f"{name} entry for {office!r} must be a list")
    return raw


def parse_preflight(raw: Any) -> PreflightDocument:
    grouped = _require_grouped(raw, "Preflight")
    return {office: [WorkItem.from_dict(item) for item in items if isinstance(item, dict)] for office, items in grouped.items()}


def dump_preflight(document: PreflightDocument) -> Dict[str, Any]:
    return {office: [item.to_dict() for item in items] for office, items in document.items()}


def parse_takeoff(raw: Any) -> TakeoffDocument:
    grouped = _require_grouped(raw, "Takeoff")
    return {office: [TakeoffItem.from_dict(item) for item in items if isinstance(item, dict)] for office, items in grouped.items()}


def dump_takeoff(document: TakeoffDocument) -> Dict[str, Any]:
    return {office: [item.to_dict() for item in items] for office, items in document.items()}


def parse_landing(raw: Any) -> LandingDocument:
    grouped = _require_grouped(raw, "Landing")
    return {office: [LandingItem.from_dict(item) for item in items] for office, items in grouped.items()}


def dump_landing(document: LandingDocument) -> Dict[str, Any]:
    return {office: [item.to_dict() for item in items] for office, items in document.items()}


def read_json(path: Path) -> Any:
    with Path(path).open("r", encoding="utf-8") as handle:
        return json.load(handle)


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON through a temp file so a crash never leaves half a document."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = path.with_suffix(path.suffix + ".tmp")
    temp_file.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    temp_file.replace(path)


def count_keywords(document: TakeoffDocument) -> int:
    return sum(len(item.tasks) for items in document.values() for item in items)


def is_landed(existing: Optional[LandingResult], submitted: SubmittedTask) -> bool:
    """A keyword is done only when it completed for the task that was submitted this time."""
    return (
        existing is not None
        and existing.status == STATUS_COMPLETED
        and submitted.is_submitted
        and existing.task_id == submitted.task_id
    )


def _format_percent(processed: int, total: int) -> str:
    if total <= 0:
        return "100.0%"
    return f"{(processed / total) * 100:.1f}%"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _load_env_file(path: str = ".env.local") -> None:
    """
    Export KEY=VALUE lines from the first env file found, without overriding
    variables already set. RANK_PIPELINE_ENV_FILE wins over `path`, which is
    looked up in the working directory and then beside this script.
    """
    override = os.getenv("RANK_PIPELINE_ENV_FILE")
    candidates = [Path(override).expanduser()] if override else []
    if path:
        relative = Path(path)
        candidates.extend([relative] if relative.is_absolute() else [Path.cwd() / relative, Path(__file__).resolve().parent / relative])

    env_file = next((candidate for candidate in candidates if candidate.is_file()), None)
    if env_file is None:
        return
    try:
        lines = env_file.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        print(f"Warning: failed to load environment file {env_file}: {exc}", file=sys.stderr)
        return

    for line in lines:
        key, sep, value = line.strip().partition("=")
        key = key.strip()
        if not sep or not key or key.startswith("#"):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _authorization_from_env() -> str:
    explicit = os.getenv("DATAFORSEO_AUTHORIZATION", "").strip()
    if explicit:
        return explicit
    basic = os.getenv("DATAFORSEO_BASIC", "").strip()
    if basic:
        return f"Basic {basic}"
    login = os.getenv("DATAFORSEO_LOGIN", "").strip()
    password = os.getenv("DATAFORSEO_PASSWORD", "").strip()
    if login and password:
        token = b64encode(f"{login}:{password}".encode("utf-8")).decode("ascii")
        return f"Basic {token}"
    return ""


@dataclass(frozen=True)
class MatchRule:
    """Decides whether a ranking URL belongs to the tracked site.

    domain: the URL contains the configured domain (any subdomain or page).
    exact: the URL equals the configured prime URL, or the work item's own
    prime/intended URL when no prime URL is configured.
    """

    mode: str = MATCH_DOMAIN
    target: str = ""

    def matches(self, url: Optional[str], tracked_url: Optional[str] = None) -> bool:
        if not url:
            return False
        if self.mode == MATCH_EXACT:
            expected = self.target or tracked_url
            return bool(expected) and url == expected
        return bool(self.target) and self.target in url

    def describe(self) -> str:
        return f"{self.mode}:{self.target or 'item URL'}"


@dataclass
class Config:
    """Environment-driven configuration container with validation."""

    data_dir: Path = field(default_factory=lambda: Path(os.getenv("RANK_DATA_DIR", ".")))
    dataforseo_base_url: str = field(
        default_factory=lambda: os.getenv(
            "DATAFORSEO_BASE_URL",
            "https://api.dataforseo.com/v3/serp/google/organic",
        )
    )
    dataforseo_authorization: str = field(default_factory=_authorization_from_env)

    # Device profile sent with every task
    device: str = field(default_factory=lambda: os.getenv("SERP_DEVICE", "mobile"))
    os_name: str = field(default_factory=lambda: os.getenv("SERP_OS", ""))
    language_code: str = field(default_factory=lambda: os.getenv("SERP_LANGUAGE_CODE", "en"))

    # Which ranking URLs count as ours
    match_mode: str = field(default_factory=lambda: os.getenv("RANK_MATCH_MODE", MATCH_DOMAIN))
    match_target: str = field(default_factory=lambda: os.getenv("RANK_MATCH_TARGET", ""))
    site_domain: str = field(default_factory=lambda: os.getenv("SITE_DOMAIN", ""))

    poll_interval: float = field(default_factory=lambda: float(os.getenv("POLL_INTERVAL_SECONDS", "10")))
    poll_max_attempts: int = field(default_factory=lambda: int(os.getenv("POLL_MAX_ATTEMPTS", "30")))
    checkpoint_every: int = field(default_factory=lambda: int(os.getenv("CHECKPOINT_EVERY", "20")))
    landing_delay: float = field(default_factory=lambda: float(os.getenv("LANDING_DELAY_SECONDS", "300")))
    http_timeout: float = field(default_factory=lambda: float(os.getenv("HTTP_TIMEOUT", "60")))
    http_max_retries: int = field(default_factory=lambda: int(os.getenv("HTTP_MAX_RETRIES", "1")))

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir)
        self.device = (self.device or "mobile").strip().lower()
        self.os_name = (self.os_name or DEVICE_OS_DEFAULTS.get(self.device, "")).strip().lower()
        self.match_mode = (self.match_mode or MATCH_DOMAIN).strip().lower()
        self.match_target = (self.match_target or "").strip()
        self.site_domain = (self.site_domain or "").strip()
        if not self.dataforseo_authorization:
            self.dataforseo_authorization = self._legacy_authorization()

    def _legacy_authorization(self) -> str:
        """Read {"Authorization": ...} from data_for_seo.json in the data directory."""
        legacy = self.data_dir / LEGACY_CREDENTIALS_FILE
        if not legacy.exists():
            return ""
        try:
            payload = read_json(legacy)
        except (OSError, ValueError) as exc:
            logging.warning("Could not read %s: %s", legacy, exc)
            return ""
        if isinstance(payload, dict):
            return str(payload.get("Authorization") or "").strip()
        return ""

    @property
    def match_rule(self) -> MatchRule:
        return MatchRule(mode=self.match_mode, target=self.match_target)

    @property
    def task_post_url(self) -> str:
        return f"{self.dataforseo_base_url.rstrip('/')}/task_post"

    def task_get_url(self, task_id: str) -> str:
        return f"{self.dataforseo_base_url.rstrip('/')}/task_get/regular/{urllib.parse.quote(str(task_id), safe='')}"

    def validate(self) -> None:
        """Ensure credentials and the device/match settings are usable."""
        missing = []
        invalid = []

        if not self.dataforseo_authorization:
            missing.append("DATAFORSEO_AUTHORIZATION, DATAFORSEO_BASIC or DATAFORSEO_LOGIN/DATAFORSEO_PASSWORD")
        if not self.dataforseo_base_url:
            missing.append("DATAFORSEO_BASE_URL")

        if not self.os_name:
            invalid.append(f"SERP_OS required for device {self.device!r}")
        if not self.language_code:
            invalid.append("SERP_LANGUAGE_CODE cannot be empty")
        if self.match_mode not in MATCH_MODES:
            invalid.append(f"RANK_MATCH_MODE must be one of {sorted(MATCH_MODES)} (got {self.match_mode!r})")
        elif self.match_mode == MATCH_DOMAIN and not self.match_target:
            missing.append("RANK_MATCH_TARGET (domain to look for)")

        if self.poll_max_attempts < 1:
            invalid.append(f"POLL_MAX_ATTEMPTS too low: {self.poll_max_attempts}")
        if self.poll_interval < 0:
            invalid.append(f"POLL_INTERVAL_SECONDS cannot be negative (got {self.poll_interval})")
        if self.checkpoint_every < 1:
            invalid.append(f"CHECKPOINT_EVERY too low: {self.checkpoint_every}")
        if self.landing_delay < 0:
            invalid.append(f"LANDING_DELAY_SECONDS cannot be negative (got {self.landing_delay})")
        if self.http_max_retries < 1:
            invalid.append(f"HTTP_MAX_RETRIES too low: {self.http_max_retries}")

        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")
        if invalid:
            raise ValueError(f"Invalid configuration: {'; '.join(invalid)}")


# ---------------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------------

def _find_named(entries: Any, name: str) -> Optional[Dict[str, Any]]:
    """First entry whose name matches exactly."""
    if not isinstance(entries, list):
        return None
    for entry in entries:
        if isinstance(entry, dict) and entry.get("name") == name:
            return entry
    return None


def build_preflight(
    location_targets: Dict[str, Any],
    service_location_data: Dict[str, Any],
    placeholders: Sequence[str],
) -> PreflightDocument:
    """
    Join tracked locations, per-office metadata and placeholder templates.

    Offices without service/location data are left out. Within an office every
    tracked (location, service) pair becomes a WorkItem, even when its geo
    coordinate or service definition is missing; those degrade to None and an
    empty keyword list so gaps stay visible downstream.
    """
    output: PreflightDocument = {}
    templates = [tpl for tpl in (placeholders or []) if isinstance(tpl, str)]

    for office, descriptors in (location_targets or {}).items():
        office_data = (service_location_data or {}).get(office)
        if not isinstance(office_data, dict):
            logging.warning("No service/location data for %s; office skipped", office)
            continue

        brand = office_data.get("brand")
        items: List[WorkItem] = []
        for descriptor in descriptors or []:
            if not isinstance(descriptor, dict):
                continue
            location = str(descriptor.get("location") or "")
            service = str(descriptor.get("service") or "")

            location_entry = _find_named(office_data.get("locations"), location)
            geo_coordinate = location_entry.get("geo_coordinate") if location_entry else None
            if geo_coordinate is None:
                logging.warning("No geo coordinate for %s (%s); keeping item with null coordinate", location, office)

            keywords: List[str] = []
            service_entry = _find_named(office_data.get("services"), service)
            if service_entry and service_entry.get("keyword_list"):
                keyword_list = service_entry["keyword_list"]
                if isinstance(keyword_list, str):
                    keyword_list = [keyword_list]
                keywords = expand_keywords(keyword_list, templates, location, brand)
            elif service_entry is None:
                logging.warning("No service definition for %r in %s", service, office)

            items.append(
                WorkItem(
                    location=location,
                    service=service,
                    intended_url=descriptor.get("intended_url"),
                    geo_coordinate=geo_coordinate,
                    keywords=keywords,
                    prime_url=descriptor.get("prime_url"),
                )
            )
        output[office] = items

    return output


def _cell(row: Sequence[Any], index: int) -> str:
    if index >= len(row) or row[index] is None:
        return ""
    return str(row[index]).strip()


def _parse_coordinate(value: str) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return number


def _format_coordinate(value: float) -> str:
    text = repr(value)
    return text[:-2] if text.endswith(".0") else text


def derive_intended_url(office: str, location: str, site_domain: str) -> Optional[str]:
    """Service-area page of an office subdomain, e.g. https://dallas.example.com/service-area/garland/."""
    if not site_domain:
        return None
    slug = re.sub(r"\s+", "-", location.strip().lower())
    return f"https://{office.strip().lower()}.{site_domain}/service-area/{slug}/"


def build_preflight_from_rows(rows: Iterable[Sequence[Any]], site_domain: str = "") -> PreflightDocument:
    """
    Build work items from the rank-monitor table (office, target, service, lat, long, prime URL).

    The first row is the header. Each row tracks the service name itself as
    the only keyword. Rows without office, target or service are skipped;
    rows without usable coordinates keep a null geo coordinate.
    """
    output: PreflightDocument = {}
    for index, row in enumerate(rows):
        if index == 0:
            continue
        office = _cell(row, ROW_OFFICE)
        target = _cell(row, ROW_TARGET)
        service = _cell(row, ROW_SERVICE)
        if not office or not target or not service:
            logging.debug("Skipping incomplete rank-monitor row %d", index)
            continue

        lat = _parse_coordinate(_cell(row, ROW_LAT))
        lng = _parse_coordinate(_cell(row, ROW_LONG))
        geo_coordinate = None
        if lat is not None and lng is not None:
            geo_coordinate = f"{_format_coordinate(lat)},{_format_coordinate(lng)}"
        else:
            logging.warning("Row %d (%s / %s) has no usable coordinates", index, office, target)

        output.setdefault(office, []).append(
            WorkItem(
                location=target,
                service=service,
                intended_url=derive_intended_url(office, target, site_domain),
                geo_coordinate=geo_coordinate,
                keywords=[service],
                prime_url=_cell(row, ROW_PRIME_URL) or None,
            )
        )
    return output


# ---------------------------------------------------------------------------
# SERP API client
# ---------------------------------------------------------------------------

class DataForSEOClient:
    """Thin REST client for the DataForSEO SERP task_post / task_get endpoints."""

    def __init__(self, config: Config):
        self.config = config
        self.authorization = config.dataforseo_authorization
        self.timeout = max(1.0, config.http_timeout)
        self.max_retries = max(1, config.http_max_retries)

    def post_task(self, payload: List[Dict[str, Any]]) -> str:
        """Create a task and return its id; raises on any failure."""
        response = _http_request(
            "POST",
            self.config.task_post_url,
            headers={"Authorization": self.authorization},
            json_body=payload,
            timeout=self.timeout,
            max_retries=self.max_retries,
        )
        task = self._first_task(response)
        status_code = task.get("status_code")
        if isinstance(status_code, int) and status_code >= 40000:
            raise SubmissionError(str(task.get("status_message") or f"Task rejected with status {status_code}"))
        task_id = str(task.get("id") or "").strip()
        if not task_id:
            raise SubmissionError("Response did not include a task id")
        return task_id

    def get_task(self, task_id: str) -> Dict[str, Any]:
        """Fetch the first task object for a task id, ready or not."""
        response = _http_request(
            "GET",
            self.config.task_get_url(task_id),
            headers={"Authorization": self.authorization},
            timeout=self.timeout,
            max_retries=self.max_retries,
        )
        return self._first_task(response)

    @staticmethod
    def _first_task(response: Any) -> Dict[str, Any]:
        if not isinstance(response, dict):
            raise ProviderResponseError(f"Unexpected response: {str(response)[:200]}")
        tasks = response.get("tasks")
        if not isinstance(tasks, list) or not tasks or not isinstance(tasks[0], dict):
            raise ProviderResponseError(str(response.get("status_message") or "Response did not include any tasks"))
        return tasks[0]


class HealthCheck:
    """Validate credentials and API reachability before a run."""

    def __init__(self, config: Config):
        self.config = config

    def check_all(self) -> Tuple[bool, List[str]]:
        errors: List[str] = []
        if not self.config.dataforseo_authorization:
            errors.append("Missing DataForSEO credentials")
            return False, errors

        url = f"{self.config.dataforseo_base_url.rstrip('/')}/task_get"
        try:
            _http_request(
                "GET",
                url,
                headers={"Authorization": self.config.dataforseo_authorization},
                timeout=min(self.config.http_timeout, 15.0),
                max_retries=1,
            )
        except urllib.error.HTTPError as exc:
            if exc.code in (401, 403):
                errors.append(f"DataForSEO rejected the credentials (HTTP {exc.code})")
            elif exc.code >= 500:
                errors.append(f"DataForSEO unavailable at {url} (HTTP {exc.code})")
            else:
                logging.debug("Connectivity check for %s returned HTTP %s, treating as reachable", url, exc.code)
        except Exception as exc:  # noqa: BLE001
            errors.append(f"DataForSEO unreachable at {url}: {exc}")

        return len(errors) == 0, errors


# ---------------------------------------------------------------------------
# Takeoff
# ---------------------------------------------------------------------------

class TakeoffSubmitter:
    """Submits one SERP task per keyword, one call at a time.

    A failed submission is recorded on that keyword and the batch moves on.
    """

    def __init__(self, config: Config, client: Any = None, audit: Optional[AuditLog] = None):
        self.config = config
        self.client = client or DataForSEOClient(config)
        self.audit = audit or AuditLog(config.data_dir)
        self.metrics = {"submitted": 0, "errors": 0}

    def build_payload(self, keyword: str, geo_coordinate: Optional[str]) -> List[Dict[str, Any]]:
        return [
            {
                "keyword": keyword,
                "location_coordinate": geo_coordinate,
                "language_code": self.config.language_code,
                "device": self.config.device,
                "os": self.config.os_name,
            }
        ]

    def submit_keyword(self, item: WorkItem, keyword: str) -> SubmittedTask:
        payload = self.build_payload(keyword, item.geo_coordinate)
        try:
            self.audit.record_submission(self.config.task_post_url, payload, item.tracked_url)
        except OSError as exc:
            logging.warning("Failed to write submit audit record for %r: %s", keyword, exc)

        try:
            task_id = self.client.post_task(payload)
        except Exception as exc:  # pylint: disable=broad-except
            description = _describe_error(exc)
            self.metrics["errors"] += 1
            logging.error('Error for keyword "%s": %s', keyword, description)
            return SubmittedTask.failed(keyword, description)

        self.metrics["submitted"] += 1
        logging.info('Task %s created for keyword "%s"', task_id, keyword)
        return SubmittedTask.submitted(keyword, task_id)

    def submit_item(self, item: WorkItem) -> TakeoffItem:
        logging.info(
            "Processing %s in %s (geo %s, %d keywords)",
            item.service,
            item.location,
            item.geo_coordinate,
            len(item.keywords),
        )
        takeoff = TakeoffItem(item=item)
        for keyword in item.keywords:
            if keyword in takeoff.tasks:
                logging.debug('Duplicate keyword "%s" already submitted', keyword)
                continue
            takeoff.tasks[keyword] = self.submit_keyword(item, keyword)
        return takeoff

    def run(self, preflight: PreflightDocument) -> TakeoffDocument:
        output: TakeoffDocument = {}
        for office, items in preflight.items():
            logging.info("Processing office: %s", office)
            output[office] = [self.submit_item(item) for item in items]
        logging.info(
            "Takeoff finished: %d submitted, %d failed",
            self.metrics["submitted"],
            self.metrics["errors"],
        )
        return output


# ---------------------------------------------------------------------------
# Landing
# ---------------------------------------------------------------------------

def extract_ranking_data(
    serp_results: Any,
    rule: MatchRule,
    tracked_url: Optional[str] = None,
) -> List[RankingEntry]:
    """
    Keep the organic results that belong to the tracked site.

    Args:
        serp_results: The task's `result` list; each page carries `items`.
        rule: Domain or exact-URL match rule.
        tracked_url: The work item's prime/intended URL, used by exact
            matching when the rule has no URL of its own.

    Returns:
        RankingEntry per matching organic item, in page order.
    """
    rankings: List[RankingEntry] = []
    total_organic = 0
    for page in serp_results or []:
        if not isinstance(page, dict) or not isinstance(page.get("items"), list):
            continue
        for item in page["items"]:
            if not isinstance(item, dict) or item.get("type") != ORGANIC_TYPE:
                continue
            rank = item.get("rank_group")
            url = item.get("url")
            if not rank or not url:
                continue
            total_organic += 1
            if not rule.matches(url, tracked_url):
                continue
            try:
                rankings.append(RankingEntry(rank=int(rank), url=str(url)))
            except (TypeError, ValueError):
                logging.debug("Ignoring result with non-numeric rank %r", rank)

    logging.info("Found %d organic results, %d matching %s", total_organic, len(rankings), rule.describe())
    return rankings


def select_best_ranking(rankings: Iterable[RankingEntry]) -> Optional[RankingEntry]:
    """Lowest rank wins; on a tie the first entry is kept."""
    best: Optional[RankingEntry] = None
    for entry in rankings:
        if best is None or entry.rank < best.rank:
            best = entry
    return best


class CheckpointStore:
    """Persist landing results so an interrupted run can resume."""

    def __init__(self, directory: Path, filename: str = LANDING_FILE, progress_filename: str = PROGRESS_FILE):
        self.directory = Path(directory)
        self.checkpoint_file = self.directory / filename
        self.progress_file = self.directory / progress_filename
        self.save_count = 0

    def load(self) -> Optional[LandingDocument]:
        """Latest snapshot, or None when absent or unreadable."""
        if not self.checkpoint_file.exists():
            return None
        try:
            document = parse_landing(read_json(self.checkpoint_file))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logging.warning("Error reading checkpoint %s (%s); starting fresh", self.checkpoint_file, exc)
            return None
        logging.info("Found existing checkpoint - resuming from previous state")
        return document

    def save(self, document: LandingDocument, processed: int, total: int) -> bool:
        percent = _format_percent(processed, total)
        try:
            write_json_atomic(self.checkpoint_file, dump_landing(document))
            write_json_atomic(
                self.progress_file,
                {
                    "processed": processed,
                    "total": total,
                    "percent": percent,
                    "checkpoint_time": datetime.now(timezone.utc).isoformat(),
                },
            )
        except OSError as exc:
            logging.error("Failed to save checkpoint: %s", exc)
            return False
        self.save_count += 1
        logging.info("Checkpoint saved: %d/%d keywords (%s)", processed, total, percent)
        return True

    def clear(self) -> List[Path]:
        removed: List[Path] = []
        for path in (self.checkpoint_file, self.progress_file):
            if path.exists():
                path.unlink()
                removed.append(path)
        return removed


class LandingPoller:
    """Polls submitted tasks, extracts rankings and checkpoints progress."""

    def __init__(
        self,
        config: Config,
        client: Any = None,
        store: Optional[CheckpointStore] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.config = config
        self.client = client or DataForSEOClient(config)
        self.store = store or CheckpointStore(config.data_dir)
        self.audit = audit or AuditLog(config.data_dir)
        self.rule = config.match_rule

    def poll_task(self, task_id: str) -> Dict[str, Any]:
        """
        Poll a task until its result list is non-empty.

        Errors while polling use up an attempt like an unready answer does.
        Raises PollTimeoutError once the attempt budget is spent.
        """
        max_attempts = self.config.poll_max_attempts
        attempts = 0
        while attempts < max_attempts:
            attempts += 1
            try:
                task = self.client.get_task(task_id)
            except Exception as exc:  # pylint: disable=broad-except
                logging.warning("Error polling task %s (attempt %d/%d): %s", task_id, attempts, max_attempts, _describe_error(exc))
            else:
                result = task.get("result") if isinstance(task, dict) else None
                if isinstance(result, list) and result:
                    logging.info("Task %s completed successfully", task_id)
                    return task
                logging.info("Task %s not ready yet (attempt %d/%d)", task_id, attempts, max_attempts)
            if attempts < max_attempts:
                time.sleep(self.config.poll_interval)
        raise PollTimeoutError(task_id, attempts)

    def land_keyword(self, item: WorkItem, submitted: SubmittedTask) -> LandingResult:
        keyword = submitted.keyword
        if not submitted.is_submitted:
            logging.info('Skipping keyword "%s" - status: %s', keyword, submitted.status)
            return LandingResult(
                keyword=keyword,
                status=STATUS_SKIPPED,
                error_description=submitted.error_description,
            )

        logging.info('Checking results for keyword "%s" (task %s)', keyword, submitted.task_id)
        try:
            task = self.poll_task(submitted.task_id)
            try:
                self.audit.record_result(submitted.task_id, task, item.tracked_url)
            except OSError as exc:
                logging.warning("Failed to write results dump for %s: %s", submitted.task_id, exc)
            rankings = extract_ranking_data(task.get("result"), self.rule, item.tracked_url)
        except Exception as exc:  # pylint: disable=broad-except
            logging.error('Error processing keyword "%s": %s', keyword, exc)
            return LandingResult(
                keyword=keyword,
                status=STATUS_ERROR,
                task_id=submitted.task_id,
                error_description=str(exc),
            )

        logging.info('Processed "%s" - %d matching results', keyword, len(rankings))
        return LandingResult(
            keyword=keyword,
            status=STATUS_COMPLETED,
            rankings=rankings,
            task_id=submitted.task_id,
        )

    @staticmethod
    def _pair(snapshot: LandingDocument, takeoff: TakeoffDocument) -> List[Tuple[str, TakeoffItem, LandingItem]]:
        """
        Give every takeoff item its own landing container, in takeoff order.

        A snapshot container is claimed at most once, so duplicate tracking
        rows keep separate results. Unmatched takeoff items get a fresh
        container; snapshot items no longer in the takeoff are dropped, as are
        their keywords that the current takeoff did not submit.
        """
        pairs: List[Tuple[str, TakeoffItem, LandingItem]] = []
        for office, items in takeoff.items():
            available = list(snapshot.get(office, []))
            for takeoff_item in items:
                index = next(
                    (i for i, candidate in enumerate(available) if candidate.item.same_unit(takeoff_item.item)),
                    None,
                )
                if index is None:
                    landed = LandingItem(item=takeoff_item.item)
                else:
                    landed = available.pop(index)
                    landed.item = takeoff_item.item
                    landed.results = {
                        keyword: result for keyword, result in landed.results.items() if keyword in takeoff_item.tasks
                    }
                pairs.append((office, takeoff_item, landed))
            if available:
                logging.info("Dropping %d stale landing item(s) for %s", len(available), office)
        return pairs

    def run(self, takeoff: TakeoffDocument) -> LandingDocument:
        pairs = self._pair(self.store.load() or {}, takeoff)
        results: LandingDocument = {office: [] for office in takeoff}
        for office, _takeoff_item, landed in pairs:
            results[office].append(landed)

        total = count_keywords(takeoff)
        processed = sum(
            1
            for _office, takeoff_item, landed in pairs
            for keyword, submitted in takeoff_item.tasks.items()
            if is_landed(landed.results.get(keyword), submitted)
        )
        every = max(1, self.config.checkpoint_every)
        logging.info("Starting landing phase - %d/%d keywords already processed", processed, total)

        current_office = None
        for office, takeoff_item, landed in pairs:
            if office != current_office:
                logging.info("Processing results for office: %s", office)
                current_office = office
            for keyword, submitted in takeoff_item.tasks.items():
                if is_landed(landed.results.get(keyword), submitted):
                    continue

                landed.results[keyword] = self.land_keyword(takeoff_item.item, submitted)
                processed += 1
                logging.info("Progress: %d/%d keywords (%s)", processed, total, _format_percent(processed, total))
                if processed % every == 0:
                    self.store.save(results, processed, total)

        self.store.save(results, processed, total)
        logging.info("Landing complete! Processed %d/%d keywords", processed, total)
        return results


# ---------------------------------------------------------------------------
# Governor
# ---------------------------------------------------------------------------

def _status_counts(statuses: Iterable[str]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for status in statuses:
        counts[status] = counts.get(status, 0) + 1
    return counts


class PipelineGovernor:
    """Runs the phases in order, handing data over through files in the data directory."""

    def __init__(self, config: Config, client: Any = None, audit: Optional[AuditLog] = None):
        self.config = config
        self.data_dir = config.data_dir
        self._client = client
        self.audit = audit or AuditLog(self.data_dir)
        self.store = CheckpointStore(self.data_dir)

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = DataForSEOClient(self.config)
        return self._client

    @property
    def preflight_path(self) -> Path:
        return self.data_dir / PREFLIGHT_FILE

    @property
    def takeoff_path(self) -> Path:
        return self.data_dir / TAKEOFF_FILE

    @property
    def landing_path(self) -> Path:
        return self.store.checkpoint_file

    def _require(self, path: Path, phase: str, predecessor: Optional[str] = None) -> None:
        if not path.exists():
            raise MissingArtifactError(phase, path, predecessor)

    def _read_rows(self, rows_path: Path) -> List[List[str]]:
        with Path(rows_path).open("r", encoding="utf-8", newline="") as handle:
            return [row for row in csv.reader(handle)]

    def preflight(self, rows_path: Optional[Path] = None) -> PreflightDocument:
        logging.info("Starting PREFLIGHT phase...")
        if rows_path is not None:
            self._require(Path(rows_path), "preflight")
            document = build_preflight_from_rows(self._read_rows(Path(rows_path)), self.config.site_domain)
        else:
            inputs = {}
            for name in (RANKING_PAGES_FILE, SERVICE_LOCATION_FILE, PLACEHOLDER_FILE):
                path = self.data_dir / name
                self._require(path, "preflight")
                inputs[name] = read_json(path)
            document = build_preflight(
                inputs[RANKING_PAGES_FILE],
                inputs[SERVICE_LOCATION_FILE],
                inputs[PLACEHOLDER_FILE],
            )

        write_json_atomic(self.preflight_path, dump_preflight(document))
        item_count = sum(len(items) for items in document.values())
        logging.info("PREFLIGHT COMPLETE! %d work items written to %s", item_count, self.preflight_path)
        return document

    def takeoff(self) -> TakeoffDocument:
        logging.info("Starting TAKEOFF phase...")
        self._require(self.preflight_path, "takeoff", "preflight")
        self.config.validate()

        preflight = parse_preflight(read_json(self.preflight_path))
        logging.info("Loaded preflight data from %s", self.preflight_path)
        document = TakeoffSubmitter(self.config, self.client, self.audit).run(preflight)

        write_json_atomic(self.takeoff_path, dump_takeoff(document))
        logging.info("TAKEOFF COMPLETE! Task ids written to %s", self.takeoff_path)
        logging.info("Tasks submitted. Wait for completion before running the landing phase.")
        return document

    def landing(self) -> LandingDocument:
        logging.info("Starting LANDING phase...")
        self._require(self.takeoff_path, "landing", "takeoff")
        self.config.validate()

        takeoff = parse_takeoff(read_json(self.takeoff_path))
        logging.info("Loaded takeoff data from %s", self.takeoff_path)
        document = LandingPoller(self.config, self.client, self.store, self.audit).run(takeoff)
        logging.info("LANDING COMPLETE! SERP results written to %s", self.landing_path)
        return document

    def run_all(self, rows_path: Optional[Path] = None) -> LandingDocument:
        self.preflight(rows_path)
        self.takeoff()
        return self.landing()

    def daily_check(self, rows_path: Optional[Path] = None) -> LandingDocument:
        """Submit, give the provider time to process, then collect results."""
        self.preflight(rows_path)
        self.takeoff()
        if self.config.landing_delay > 0:
            logging.info("Waiting %.0f seconds for the provider to process tasks...", self.config.landing_delay)
            time.sleep(self.config.landing_delay)
        return self.landing()

    def status(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {"preflight": None, "takeoff": None, "landing": None}
        if self.preflight_path.exists():
            preflight = parse_preflight(read_json(self.preflight_path))
            summary["preflight"] = {
                "items": sum(len(items) for items in preflight.values()),
                "keywords": sum(len(item.keywords) for items in preflight.values() for item in items),
            }
        if self.takeoff_path.exists():
            takeoff = parse_takeoff(read_json(self.takeoff_path))
            summary["takeoff"] = _status_counts(
                task.status for items in takeoff.values() for item in items for task in item.tasks.values()
            )
        landing = self.store.load()
        if landing is not None:
            summary["landing"] = _status_counts(
                result.status for items in landing.values() for item in items for result in item.results.values()
            )
        return summary

    def report(self, output: Optional[Path] = None) -> List[Dict[str, Any]]:
        """Best rank and URL per keyword, 'Not Found' where nothing matched."""
        self._require(self.landing_path, "report", "landing")
        landing = self.store.load()
        if landing is None:
            raise RankPipelineError(f"Landing results in {self.landing_path} could not be read")

        rows: List[Dict[str, Any]] = []
        for office, items in landing.items():
            for landed in items:
                for keyword, result in landed.results.items():
                    best = result.best
                    rows.append(
                        {
                            "office": office,
                            "location": landed.item.location,
                            "service": landed.item.service,
                            "keyword": keyword,
                            "status": result.status,
                            "rank": best.rank if best else NOT_FOUND_VALUE,
                            "url": best.url if best else NOT_FOUND_VALUE,
                            "tracked_url": landed.item.tracked_url or "",
                        }
                    )

        if output is not None:
            fieldnames = ["office", "location", "service", "keyword", "status", "rank", "url", "tracked_url"]
            with Path(output).open("w", encoding="utf-8", newline="") as handle:
                writer = csv.DictWriter(handle, fieldnames=fieldnames)
                writer.writeheader()
                writer.writerows(rows)
            logging.info("Wrote %d report rows to %s", len(rows), output)
        return rows

    def reset(self) -> List[Path]:
        """Remove task ids and landing state so the next run starts clean."""
        removed = self.store.clear()
        if self.takeoff_path.exists():
            self.takeoff_path.unlink()
            removed.append(self.takeoff_path)
        logging.info("Cleared %d pipeline artifacts", len(removed))
        return removed

    def check(self) -> Tuple[bool, List[str]]:
        healthy, errors = HealthCheck(self.config).check_all()
        if healthy:
            logging.info("DataForSEO API connection is working")
        else:
            logging.error("Health check failed: %s", "; ".join(errors))
        return healthy, errors

    def run_phase(self, phase: str, rows_path: Optional[Path] = None, output: Optional[Path] = None) -> Any:
        """
        Run one named phase.

        Returns the phase result, or None after logging a missing-artifact
        error. Other exceptions propagate.
        """
        try:
            if phase == "preflight":
                return self.preflight(rows_path)
            if phase == "takeoff":
                return self.takeoff()
            if phase == "landing":
                return self.landing()
            if phase == "all":
                return self.run_all(rows_path)
            if phase == "daily":
                return self.daily_check(rows_path)
            if phase == "status":
                return self.status()
            if phase == "report":
                return self.report(output)
            if phase == "reset":
                return self.reset()
            if phase == "check":
                return self.check()
        except MissingArtifactError as exc:
            logging.error("%s", exc)
            return None
        raise ValueError(f"Unknown phase: {phase}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SERP rank tracking pipeline")
    parser.add_argument("phase", choices=PHASES, help="Pipeline phase to run")
    parser.add_argument(
        "--data-dir",
        dest="data_dir",
        help="Directory holding input tables and phase artifacts (defaults to RANK_DATA_DIR or .)",
    )
    parser.add_argument(
        "--rows",
        help="Rank-monitor CSV to build preflight from instead of the JSON input tables",
    )
    parser.add_argument("--output", help="CSV path for the report phase")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    return parser


def _attach_log_file(directory: Path) -> logging.Handler:
    directory.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(str(directory / LOG_FILE))
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
    logging.getLogger().addHandler(handler)
    return handler


def main(argv: Optional[List[str]] = None) -> int:
    _load_env_file()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    handler: Optional[logging.Handler] = None
    try:
        config = Config(data_dir=Path(args.data_dir)) if args.data_dir else Config()
        handler = _attach_log_file(config.data_dir)
        governor = PipelineGovernor(config)
        result = governor.run_phase(
            args.phase,
            rows_path=Path(args.rows) if args.rows else None,
            output=Path(args.output) if args.output else None,
        )
    except Exception as exc:  # pylint: disable=broad-except
        logging.error("Fatal error: %s", exc)
        return 1
    finally:
        if handler is not None:
            logging.getLogger().removeHandler(handler)
            handler.close()

    if result is None:
        return 1
    if args.phase == "check":
        healthy, _errors = result
        return 0 if healthy else 1
    if args.phase in ("status", "report"):
        print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
