#
# anchor-scan - BLE anchor that runs server-issued beacon scan jobs
#

"""Client for the job server's JSON API."""

import json
import logging
from typing import List, Optional

import httpx

from .errors import ApiError
from .jobs import Job, TagRecord

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://app.badgeit.io/wp-json"
DEFAULT_TIMEOUT = 10.0

_JOB_PATH = "/badgeit/scan-by-anchor/"
_TAGS_PATH = "/badgeit/get-tags-by-event/"
_SCAN_DATA_PATH = "/jetenginecctbulk/v1/scan_data"
_RELATION_PATH = "/jet-rel/230"


class JobApi:
    """Polls for jobs, fetches rosters and reports results.

    Every call sends the bearer token.  Failures of any kind (transport,
    HTTP status, undecodable body) surface as ApiError.
    """

    def __init__(self, token: str, base_url: str = DEFAULT_BASE_URL,
                 timeout: float = DEFAULT_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._token = token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self):
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self._token}"},
            transport=self._transport,
        )

    async def stop(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if self._client is None:
            raise ApiError("API client is not started")
        logger.debug("%s %s%s params=%s", method, self.base_url, path,
                     kwargs.get("params"))
        if "json" in kwargs:
            logger.debug("Request payload: %s", json.dumps(kwargs["json"]))
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ApiError(f"{method} {path} failed: {e}") from e
        logger.debug("Response %d: %s", resp.status_code, resp.text)
        if resp.is_error:
            raise ApiError(f"{method} {path} returned HTTP {resp.status_code}",
                           status_code=resp.status_code)
        return resp

    async def _get_list(self, path: str, params: dict) -> list:
        resp = await self._request("GET", path, params=params)
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(f"GET {path} returned invalid JSON: {e}") from e
        if not isinstance(data, list):
            raise ApiError(f"GET {path} returned {type(data).__name__}, expected a list")
        return data

    async def fetch_job(self, anchor_id: str) -> Optional[Job]:
        """Return the first pending job for this anchor, or None."""
        jobs = await self._get_list(_JOB_PATH, {"anchor_id": anchor_id})
        if not jobs:
            return None
        return Job.from_payload(jobs[0])

    async def fetch_tags(self, event_id: str) -> List[TagRecord]:
        tags = await self._get_list(_TAGS_PATH, {"event_id": event_id})
        return [TagRecord.from_payload(t) for t in tags]

    async def upload_scan_data(self, payload: List[dict]):
        resp = await self._request("POST", _SCAN_DATA_PATH, json=payload)
        logger.info("Scan data upload: HTTP %d", resp.status_code)

    async def update_job_anchor_relation(self, payload: dict):
        resp = await self._request("POST", _RELATION_PATH, json=payload)
        logger.info("Job relationship update: HTTP %d", resp.status_code)
