#
# anchor-scan - BLE anchor that runs server-issued beacon scan jobs
#

"""Job lifecycle: poll for a job, scan for its tags, upload, repeat."""

import asyncio
import enum
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .errors import ApiError, RadioUnavailableError
from .frames import DEFAULT_NAMESPACE, Observation, decode_frame
from .jobs import (DEFAULT_MIN_RSSI, DeviceSighting, Job, ObservationMerger,
                   build_roster, relation_payload, scan_data_payload)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 3.0
DEBUG_SCAN_SECONDS = 15.0
_PROGRESS_INTERVAL = 1.0
_RADIO_RETRY_INTERVAL = 10.0

# Scan end reasons that drop the job without uploading
_ABORT_REASONS = ("shutdown", "radio")

Snapshot = Dict[str, object]


class JobState(enum.Enum):
    IDLE = "idle"
    JOB_RECEIVED = "job_received"
    FETCHING_ROSTER = "fetching_roster"
    SCANNING = "scanning"
    UPLOADING = "uploading"


class Orchestrator:
    """Owns every piece of job state and runs it on a single event loop.

    *api* needs fetch_job / fetch_tags / upload_scan_data /
    update_job_anchor_relation coroutines; *radio* needs set_callback,
    start, stop and probe.  Radio callbacks must arrive on the loop that
    runs the orchestrator.
    """

    def __init__(self, api, radio, anchor_id: str,
                 namespace: str = DEFAULT_NAMESPACE,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 result_log=None,
                 radio_retry_interval: float = _RADIO_RETRY_INTERVAL):
        self.api = api
        self.radio = radio
        self.anchor_id = anchor_id
        self.namespace = namespace.upper()
        self.poll_interval = poll_interval
        self.result_log = result_log
        self.radio_retry_interval = radio_retry_interval

        self.state = JobState.IDLE
        self.status_message = "Initializing..."
        self.scan_progress = 0.0
        self.debug_scanning = False
        self.radio_ready = True
        self.running = False

        # Current job
        self.current_job: Optional[Job] = None
        self.min_rssi = DEFAULT_MIN_RSSI
        self.merger: Optional[ObservationMerger] = None
        self._scan_done: Optional[asyncio.Event] = None
        self._end_reason: Optional[str] = None
        self._deadline_handle: Optional[asyncio.TimerHandle] = None
        self._progress_task: Optional[asyncio.Task] = None

        self.sightings: Dict[str, DeviceSighting] = {}
        self._poll_in_flight = False
        self._stop_event = asyncio.Event()
        self._subscribers: List[Callable[[Snapshot], None]] = []

        radio.set_callback(self.handle_observation)

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def job_scanning(self) -> bool:
        return self.state is JobState.SCANNING

    def snapshot(self) -> Snapshot:
        return {
            "anchor_id": self.anchor_id,
            "status": self.status_message,
            "state": self.state.value,
            "scan_id": self.current_job.scan_id if self.current_job else None,
            "progress": round(self.scan_progress, 3),
            "job_scanning": self.job_scanning,
            "debug_scanning": self.debug_scanning,
            "radio_ready": self.radio_ready,
            "matched_tags": [m.as_dict() for m in self.merger.matched] if self.merger else [],
            "devices": [s.as_dict() for s in
                        sorted(self.sightings.values(), key=lambda s: s.rssi, reverse=True)],
        }

    def subscribe(self, callback: Callable[[Snapshot], None]) -> Callable[[], None]:
        """Call *callback* with a fresh snapshot on every change."""
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    def _publish(self):
        if not self._subscribers:
            return
        snap = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snap)
            except Exception:
                logger.exception("State subscriber %r failed", callback)

    def _set_status(self, message: str, level: int = logging.INFO):
        self.status_message = message
        logger.log(level, message)
        self._publish()

    def _set_state(self, state: JobState):
        logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state
        self._publish()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self):
        """Poll for jobs until stop() is called."""
        self.running = True
        self._stop_event.clear()
        if self.radio_ready:
            self._set_status("Idle. Polling for new job...")
        try:
            while self.running:
                if not self.radio_ready:
                    await self._wait_for_radio()
                    continue
                if self.state is JobState.IDLE and not self.debug_scanning:
                    await self.poll_once()
                await self._sleep(self.poll_interval)
        finally:
            await self.radio.stop()

    def stop(self):
        self.running = False
        self._stop_event.set()
        self.end_scan("shutdown")

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._stop_event.wait(), seconds)
        except asyncio.TimeoutError:
            pass

    async def _wait_for_radio(self):
        while self.running and not self.radio_ready:
            if await self.radio.probe():
                self.radio_state_changed(True)
                return
            await self._sleep(self.radio_retry_interval)

    def radio_state_changed(self, ready: bool):
        """Adapter availability changed.  Losing it mid-job drops the job."""
        self.radio_ready = ready
        if ready:
            self._set_status("Bluetooth is ON.")
        else:
            self.end_scan("radio")
            self._set_status("Bluetooth is not available. Please turn it on.",
                             logging.WARNING)

    async def poll_once(self) -> Optional[Job]:
        """Ask the server for a job and run it to completion if there is one."""
        if self.state is not JobState.IDLE or self.debug_scanning:
            return None
        self._poll_in_flight = True
        try:
            job = await self.api.fetch_job(self.anchor_id)
        except ApiError as e:
            logger.warning("Job fetch failed: %s", e)
            self._set_status("Error checking for job. Retrying...", logging.WARNING)
            return None
        finally:
            self._poll_in_flight = False

        if job is None:
            self._set_status("Idle. No job found. Polling...", logging.DEBUG)
            return None
        await self.execute_job(job)
        return job

    # ------------------------------------------------------------------
    # Job phases
    # ------------------------------------------------------------------

    async def execute_job(self, job: Job):
        logger.info(">>> EXECUTING NEW JOB: %s <<<", job.scan_id)
        self.current_job = job
        self._set_state(JobState.JOB_RECEIVED)
        self.min_rssi = job.min_rssi

        duration = job.effective_duration()
        if duration <= 0:
            logger.info("Job %s has already expired. Ignoring and restarting poll.",
                        job.scan_id)
            self._reset()
            return

        self._set_state(JobState.FETCHING_ROSTER)
        self._set_status(f"Received job {job.scan_id}. Fetching tags...")
        try:
            tags = await self.api.fetch_tags(job.event_id)
        except ApiError as e:
            logger.warning("Failed to fetch tags for event %s: %s", job.event_id, e)
            self._set_status(f"Failed to prepare job {job.scan_id}. Retrying...",
                             logging.WARNING)
            self._reset()
            return

        self.merger = ObservationMerger(build_roster(tags))
        if not await self._start_scan(job, duration):
            self._reset()
            return

        await self._scan_done.wait()
        await self._finish_job(job)

    async def _start_scan(self, job: Job, duration: float) -> bool:
        if self._stop_event.is_set():
            return False
        self.sightings.clear()
        try:
            await self.radio.start(allow_duplicates=True)
        except RadioUnavailableError as e:
            logger.warning("Cannot start scan for job %s: %s", job.scan_id, e)
            self.radio_state_changed(False)
            return False

        loop = asyncio.get_running_loop()
        self._scan_done = asyncio.Event()
        self._end_reason = None
        self.scan_progress = 0.0
        self._set_state(JobState.SCANNING)
        self._deadline_handle = loop.call_later(duration, self.end_scan, "deadline")
        self._progress_task = asyncio.create_task(self._run_progress(duration))
        self._set_status(f"Scanning for {round(duration)}s (Job: {job.scan_id})...")
        return True

    async def _run_progress(self, duration: float):
        step = _PROGRESS_INTERVAL / duration if duration > 0 else 1.0
        while self.scan_progress < 1.0:
            await asyncio.sleep(_PROGRESS_INTERVAL)
            self.scan_progress = min(1.0, self.scan_progress + step)
            self._publish()

    def end_scan(self, reason: str) -> bool:
        """Leave SCANNING.

        The deadline timer and roster completion both land here; only the
        first caller moves the job on, later calls return False.
        """
        if self.state is not JobState.SCANNING:
            return False
        self._end_reason = reason
        self._set_state(JobState.UPLOADING)
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None
        if self._progress_task is not None:
            self._progress_task.cancel()
            self._progress_task = None
        self._scan_done.set()
        logger.debug("Scan ended: %s", reason)
        return True

    async def _finish_job(self, job: Job):
        await self.radio.stop()
        self.scan_progress = 0.0
        matched = self.merger.results()

        if self._end_reason in _ABORT_REASONS:
            logger.warning("Job %s interrupted (%s), %d result(s) discarded",
                           job.scan_id, self._end_reason, len(matched))
            self._reset()
            return

        logger.info(">>> FINISHING JOB: %s <<<", job.scan_id)
        self._set_status(f"Scan complete. Uploading {len(matched)} results...")
        uploaded = False
        try:
            payload = scan_data_payload(job, matched)
            if payload:
                await self.api.upload_scan_data(payload)
            else:
                logger.info("No matching tags found to upload.")
            await self.api.update_job_anchor_relation(relation_payload(job))
            uploaded = True
            self._set_status(f"Upload complete for job {job.scan_id}.")
        except ApiError as e:
            logger.warning("Upload failed: %s", e)
            self._set_status(f"Upload failed for job {job.scan_id}.", logging.WARNING)

        if self.result_log is not None:
            self.result_log.write(job, matched, uploaded)
        self._reset()

    def _reset(self):
        self.current_job = None
        if self.merger is not None:
            self.merger.clear()
        self.merger = None
        self.min_rssi = DEFAULT_MIN_RSSI
        self._scan_done = None
        self._end_reason = None
        self._set_state(JobState.IDLE)

    # ------------------------------------------------------------------
    # Radio events
    # ------------------------------------------------------------------

    def handle_observation(self, obs: Observation):
        """Decode, filter and merge one advertisement."""
        job_scanning = self.job_scanning
        if not job_scanning and not self.debug_scanning:
            return
        if job_scanning and obs.rssi < self.min_rssi:
            return

        frame = decode_frame(obs.service_data, obs.manufacturer_data, self.namespace)
        if frame.is_eddystone or not self.debug_scanning:
            self._record_sighting(obs, frame.details)

        if job_scanning and frame.instance is not None:
            if self.merger.observe(frame.instance, obs.rssi):
                logger.info(">>> All %d job tags found! Finishing scan early. <<<",
                            len(self.merger.roster))
                self.end_scan("complete")
        self._publish()

    def _record_sighting(self, obs: Observation, details: str):
        now = datetime.now().astimezone()
        sighting = self.sightings.get(obs.address)
        if sighting is None:
            self.sightings[obs.address] = DeviceSighting(
                address=obs.address, name=obs.name or "Unknown Device",
                rssi=obs.rssi, details=details, last_seen=now)
        else:
            sighting.rssi = obs.rssi
            sighting.details = details
            sighting.last_seen = now

    # ------------------------------------------------------------------
    # Debug scan
    # ------------------------------------------------------------------

    def can_start_debug_scan(self) -> bool:
        return (self.state is JobState.IDLE and not self.debug_scanning
                and not self._poll_in_flight and self.radio_ready)

    async def run_debug_scan(self, duration: float = DEBUG_SCAN_SECONDS) -> bool:
        """Scan for *duration* seconds to fill the sightings list only.

        Returns False without scanning if a job, poll or another debug scan
        is in progress.
        """
        if not self.can_start_debug_scan():
            return False
        self.debug_scanning = True
        self.sightings.clear()
        self._set_status(f"Starting {duration:.0f}s debug scan...")
        try:
            await self.radio.start(allow_duplicates=True)
        except RadioUnavailableError as e:
            logger.warning("Cannot start debug scan: %s", e)
            self.debug_scanning = False
            self.radio_state_changed(False)
            return False
        try:
            await self._sleep(duration)
        finally:
            await self.radio.stop()
            self.debug_scanning = False
            self._set_status(f"Debug scan complete. {len(self.sightings)} device(s) seen.")
        return True
