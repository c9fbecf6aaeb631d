#
# anchor-scan - BLE anchor that runs server-issued beacon scan jobs
#

"""Append-only CSV log of finished job results."""

import csv
import logging
import os
from datetime import datetime
from typing import Iterable

from .jobs import Job, MatchedTag

logger = logging.getLogger(__name__)

_FIELDNAMES = [
    "timestamp", "scan_id", "tag_id", "uuid", "db_id", "rssi",
    "last_seen", "uploaded",
]


def _timestamp() -> str:
    """Return an ISO 8601 timestamp with timezone offset."""
    return datetime.now().astimezone().strftime("%Y-%m-%dT%H:%M:%S%z")


class ResultLog:
    def __init__(self, path: str):
        self.path = path

    def write(self, job: Job, matched: Iterable[MatchedTag], uploaded: bool):
        """Append one row per matched tag; the header goes into new files only."""
        ts = _timestamp()
        rows = [
            {
                "timestamp": ts,
                "scan_id": job.scan_id,
                "tag_id": tag.tag_id,
                "uuid": tag.uuid,
                "db_id": tag.db_id,
                "rssi": tag.rssi,
                "last_seen": tag.last_seen.isoformat(timespec="seconds"),
                "uploaded": uploaded,
            }
            for tag in matched
        ]
        if not rows:
            return
        try:
            new_file = not os.path.exists(self.path) or os.path.getsize(self.path) == 0
            with open(self.path, "a", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=_FIELDNAMES)
                if new_file:
                    writer.writeheader()
                writer.writerows(rows)
        except OSError as e:
            logger.warning("Cannot write result log %s: %s", self.path, e)
