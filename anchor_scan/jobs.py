#
# anchor-scan - BLE anchor that runs server-issued beacon scan jobs
#

"""Scan job model, deadline arithmetic, tag roster and observation merging."""

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import ApiError

logger = logging.getLogger(__name__)

DEFAULT_SCAN_SECONDS = 120.0
DEFAULT_MIN_RSSI = -100
# Guards against transport delay and skew between server and anchor clocks
EXPIRY_MARGIN = 5.0
SERVER_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Wire names used by the job and tag endpoints
_JOB_FIELDS = {
    "scan_id": "jet_cct_scan._ID",
    "anchor_velavu_id": "jet_cct_anchorscct.anchor_velavu_id",
    "scan_duration": "jet_cct_scan.scan_duration",
    "scan_min_rssi": "jet_cct_scan.scan_min_rssi",
    "cct_created": "jet_cct_scan.cct_created",
    "event_id": "jet_rel_228.parent_object_id",
    "anchor_db_id": "jet_cct_anchorscct._ID",
    "server_time": "server_time",
}
_JOB_TIMEOUT_FIELD = "jet_cct_scan.scan_timeout"

_TAG_FIELDS = {
    "db_id": "jet_cct_tagscct._ID",
    "uuid": "jet_cct_tagscct.tag_uuid",
    "tag_id": "jet_cct_tagscct.tag_velavu_id",
}

_INSTANCE_SUFFIX_LEN = 6


def _required_fields(payload, fields: Mapping[str, str], kind: str) -> Dict[str, str]:
    if not isinstance(payload, Mapping):
        raise ApiError(f"{kind} payload is not an object: {payload!r}")
    missing = [key for key in fields.values() if payload.get(key) is None]
    if missing:
        raise ApiError(f"{kind} payload missing field(s): {', '.join(missing)}")
    return {attr: str(payload[key]) for attr, key in fields.items()}


@dataclass(frozen=True)
class Job:
    scan_id: str
    anchor_velavu_id: str
    anchor_db_id: str
    scan_duration: str
    scan_min_rssi: str
    cct_created: str
    event_id: str
    server_time: str
    scan_timeout: Optional[str] = None

    @classmethod
    def from_payload(cls, payload) -> "Job":
        """Build a Job from one element of the scan-by-anchor response."""
        values = _required_fields(payload, _JOB_FIELDS, "Job")
        timeout = payload.get(_JOB_TIMEOUT_FIELD)
        return cls(scan_timeout=None if timeout is None else str(timeout), **values)

    @property
    def min_rssi(self) -> int:
        return parse_min_rssi(self.scan_min_rssi)

    def effective_duration(self) -> float:
        return effective_scan_duration(self.scan_duration, self.scan_timeout,
                                       self.cct_created, self.server_time)


@dataclass(frozen=True)
class TagRecord:
    tag_id: str
    uuid: str
    db_id: str

    @classmethod
    def from_payload(cls, payload) -> "TagRecord":
        return cls(**_required_fields(payload, _TAG_FIELDS, "Tag"))


@dataclass
class MatchedTag:
    tag_id: str
    uuid: str
    db_id: str
    rssi: int
    last_seen: datetime

    def as_dict(self) -> dict:
        return {
            "tag_id": self.tag_id,
            "uuid": self.uuid,
            "db_id": self.db_id,
            "rssi": self.rssi,
            "last_seen": self.last_seen.strftime("%H:%M:%S"),
        }


@dataclass
class DeviceSighting:
    """Any advertiser seen during a scan, kept for the operator only."""
    address: str
    name: str
    rssi: int
    details: str
    last_seen: datetime

    def as_dict(self) -> dict:
        return {
            "address": self.address,
            "name": self.name,
            "rssi": self.rssi,
            "details": self.details,
            "last_seen": self.last_seen.strftime("%H:%M:%S"),
        }


# ------------------------------------------------------------------
# Field parsing
# ------------------------------------------------------------------

def parse_seconds(value, field: str = "duration") -> float:
    """Parse a duration string as seconds, falling back to 120s."""
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        seconds = None
    if seconds is None or not math.isfinite(seconds) or seconds < 0:
        logger.warning("Invalid scan %s %r, defaulting to %.0fs",
                       field, value, DEFAULT_SCAN_SECONDS)
        return DEFAULT_SCAN_SECONDS
    return seconds


def parse_min_rssi(value) -> int:
    try:
        rssi = int(value)
    except (TypeError, ValueError):
        rssi = None
    if rssi is None or rssi >= 0:
        logger.warning("Invalid 'scan_min_rssi' value %r, defaulting to %d",
                       value, DEFAULT_MIN_RSSI)
        return DEFAULT_MIN_RSSI
    return rssi


def parse_server_time(value) -> Optional[datetime]:
    """Parse a server timestamp (UTC, no zone suffix)."""
    try:
        return datetime.strptime(value, SERVER_TIME_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


def effective_scan_duration(duration, timeout, created, server_now) -> float:
    """Return how long a job may scan for, in seconds.

    The job expires *timeout* seconds after *created*; the scan must end
    EXPIRY_MARGIN seconds before that, measured on the server clock
    (*server_now*), and never run longer than *duration*.  0 means the
    job is already stale.  If either timestamp cannot be parsed the plain
    duration is returned.
    """
    job_duration = parse_seconds(duration, "duration")
    job_timeout = job_duration if timeout is None else parse_seconds(timeout, "timeout")

    created_at = parse_server_time(created)
    now = parse_server_time(server_now)
    if created_at is None or now is None:
        logger.warning("Could not parse job/server dates (%r, %r), "
                       "using job duration as fallback", created, server_now)
        return job_duration

    remaining = (created_at.timestamp() + job_timeout) - now.timestamp()
    effective = min(job_duration, remaining - EXPIRY_MARGIN)
    logger.info("Job duration: %.1fs, time until expiry: %.1fs, "
                "effective scan duration: %.1fs",
                job_duration, remaining, effective)
    return max(0.0, effective)


# ------------------------------------------------------------------
# Roster and merging
# ------------------------------------------------------------------

def build_roster(tags: Iterable[TagRecord]) -> Mapping[str, TagRecord]:
    """Key tags by upper-cased UUID.  Later duplicates replace earlier ones."""
    roster: Dict[str, TagRecord] = {}
    for tag in tags:
        roster[tag.uuid.upper()] = tag

    seen: Dict[str, str] = {}
    for key in roster:
        suffix = key[-_INSTANCE_SUFFIX_LEN:]
        if suffix in seen:
            logger.warning("Tags %s and %s share instance suffix %s; "
                           "the first one will win every match",
                           seen[suffix], key, suffix)
        else:
            seen[suffix] = key
    return MappingProxyType(roster)


class ObservationMerger:
    """Best RSSI per matched roster tag for the duration of one job."""

    def __init__(self, roster: Mapping[str, TagRecord]):
        self.roster = roster
        self.matched: List[MatchedTag] = []
        self._by_tag: Dict[str, MatchedTag] = {}
        self._completed = False

    @property
    def complete(self) -> bool:
        return self._completed

    def match(self, instance: str) -> Optional[TagRecord]:
        suffix = instance[-_INSTANCE_SUFFIX_LEN:].upper()
        if not suffix:
            return None
        for key, tag in self.roster.items():
            if key.endswith(suffix):
                return tag
        return None

    def observe(self, instance: str, rssi: int,
                now: Optional[datetime] = None) -> bool:
        """Merge one sighting.  Returns True once, when the roster is complete."""
        tag = self.match(instance)
        if tag is None:
            return False

        now = now or datetime.now().astimezone()
        existing = self._by_tag.get(tag.tag_id)
        is_new = existing is None
        if is_new:
            record = MatchedTag(tag_id=tag.tag_id, uuid=tag.uuid, db_id=tag.db_id,
                                rssi=rssi, last_seen=now)
            self._by_tag[tag.tag_id] = record
            self.matched.append(record)
            logger.debug("Matched tag %s (instance %s) at %d dBm",
                         tag.tag_id, instance, rssi)
        elif rssi > existing.rssi:
            existing.rssi = rssi
            existing.last_seen = now

        self.matched.sort(key=lambda m: m.rssi, reverse=True)

        if (is_new and not self._completed and self.roster
                and len(self.matched) == len(self.roster)):
            self._completed = True
            return True
        return False

    def results(self) -> List[MatchedTag]:
        return [replace(m) for m in self.matched]

    def clear(self):
        self.matched.clear()
        self._by_tag.clear()
        self._completed = False


def scan_data_payload(job: Job, matched: Iterable[MatchedTag]) -> List[dict]:
    return [
        {
            "scan_id": job.scan_id,
            "scan_data_tag_id": tag.db_id,
            "scan_data_tag_rssi": tag.rssi,
            "scan_data_anchor_id": job.anchor_db_id,
        }
        for tag in matched
    ]


def relation_payload(job: Job) -> dict:
    return {
        "parent_id": job.scan_id,
        "child_id": job.anchor_db_id,
        "context": "parent",
        "store_items_type": "update",
    }
