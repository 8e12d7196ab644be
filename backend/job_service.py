"""
Job Service for Wilma scrapes

Runs each scrape in a background thread and fans its progress events out to
any number of subscribers. New subscribers get the latest event first, so a
late joiner always sees the current state. Finished jobs are forgotten after
a retention window.
"""

import json
import os
import queue
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterator, Optional
import logging

from dotenv import load_dotenv

from wilma.errors import ScrapeError
from wilma.models import DoneEvent, ErrorEvent, ProgressEvent, StreamEvent
from wilma.pipeline import normalize_mode, run_scrape

load_dotenv()

logger = logging.getLogger(__name__)

JOB_TTL_SECONDS = float(os.getenv("SCRAPE_JOB_TTL_SECONDS", "300"))
HEARTBEAT_SECONDS = float(os.getenv("SCRAPE_HEARTBEAT_SECONDS", "15"))

GENERIC_ERROR = "Failed to connect to Wilma"


class JobState(str, Enum):
    """Lifecycle states of a scrape job."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class JobNotFound(KeyError):
    """No job with this id (never created or already cleaned up)."""


class ChannelClosed(Exception):
    """Delivery to a subscriber that has gone away."""


class Subscription:
    """One subscriber's view of a job: a queue of events ending in None."""

    _END = None

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._queue: queue.Queue = queue.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: StreamEvent):
        if self._closed:
            raise ChannelClosed(self.job_id)
        self._queue.put(event)

    def close(self):
        if not self._closed:
            self._closed = True
            self._queue.put(self._END)

    def next_event(self, timeout: Optional[float] = None) -> Optional[StreamEvent]:
        """Next event, None at end of stream. Raises queue.Empty on timeout."""
        return self._queue.get(timeout=timeout)

    def events(self) -> Iterator[StreamEvent]:
        """Iterate events until the stream ends (blocking)."""
        while True:
            event = self.next_event()
            if event is None:
                return
            yield event


class ScrapeJob:
    """A single scrape job with its latest event and subscribers."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.state = JobState.QUEUED
        self.last_event: StreamEvent = ProgressEvent(
            progress=2, phase="queued", message="Starting scrape..."
        )
        self.subscribers: set[Subscription] = set()
        self.created_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None
        self.cleanup_timer: Optional[threading.Timer] = None
        self.lock = threading.Lock()

    @property
    def finished(self) -> bool:
        return self.state in (JobState.DONE, JobState.ERROR)


class JobService:
    """Process-wide registry of scrape jobs."""

    def __init__(self, scrape: Callable = run_scrape, retention_seconds: float = JOB_TTL_SECONDS):
        self._scrape = scrape
        self.retention_seconds = retention_seconds
        self._jobs: dict[str, ScrapeJob] = {}
        self._jobs_lock = threading.Lock()

    def _get_job(self, job_id: str) -> ScrapeJob:
        with self._jobs_lock:
            job = self._jobs.get(job_id)
        if not job:
            raise JobNotFound(job_id)
        return job

    def create_job(self) -> str:
        """Register a new queued job and return its id."""
        job_id = f"job-{uuid.uuid4().hex}"
        with self._jobs_lock:
            self._jobs[job_id] = ScrapeJob(job_id)
        logger.info(f"Job [{job_id[4:12]}]: created")
        return job_id

    def run_job(self, job_id: str, username: str, password: str, mode: str = "all"):
        """Start the scrape for an existing job in a background thread."""
        job = self._get_job(job_id)
        with job.lock:
            job.state = JobState.RUNNING
        thread = threading.Thread(
            target=self._run_scrape,
            args=(job_id, username, password, normalize_mode(mode)),
            daemon=True,
        )
        thread.start()

    def start_job(self, username: str, password: str, mode: str = "all") -> str:
        """Create a job and start it. Returns immediately with the job id."""
        job_id = self.create_job()
        self.run_job(job_id, username, password, mode)
        return job_id

    def push_event(self, job_id: str, event: StreamEvent):
        """Record the event as the job's latest and deliver it to every subscriber."""
        try:
            job = self._get_job(job_id)
        except JobNotFound:
            logger.warning(f"Job [{job_id[4:12]}]: event for unknown job dropped")
            return

        with job.lock:
            if job.finished:
                logger.warning(f"Job [{job_id[4:12]}]: event after terminal state ignored")
                return

            job.last_event = event
            for subscriber in list(job.subscribers):
                try:
                    subscriber.deliver(event)
                except ChannelClosed:
                    job.subscribers.discard(subscriber)

            if event.is_terminal:
                for subscriber in job.subscribers:
                    subscriber.close()
                job.subscribers.clear()
                job.state = JobState.DONE if event.type == "done" else JobState.ERROR
                job.finished_at = datetime.now(timezone.utc)
                self._schedule_cleanup(job)

        logger.info(f"Job [{job_id[4:12]}]: {event.type} {event.progress}% {event.phase} - {event.message}")

    def attach(self, job_id: str) -> Subscription:
        """Subscribe to a job. The latest event is delivered immediately.

        Raises:
            JobNotFound: unknown or cleaned-up job id
        """
        job = self._get_job(job_id)
        subscription = Subscription(job_id)
        with job.lock:
            subscription.deliver(job.last_event)
            if job.finished:
                subscription.close()
            else:
                job.subscribers.add(subscription)
        return subscription

    def detach(self, subscription: Subscription):
        """Remove a subscriber, e.g. after the remote side disconnected."""
        subscription.close()
        try:
            job = self._get_job(subscription.job_id)
        except JobNotFound:
            return
        with job.lock:
            job.subscribers.discard(subscription)

    def get_status(self, job_id: str) -> Optional[dict]:
        """Get a polling snapshot of a job, or None if not found."""
        try:
            job = self._get_job(job_id)
        except JobNotFound:
            return None
        with job.lock:
            return {
                "job_id": job.job_id,
                "state": job.state.value,
                "event": job.last_event.to_wire(),
                "created_at": job.created_at.isoformat(),
                "finished_at": job.finished_at.isoformat() if job.finished_at else None,
                "subscribers": len(job.subscribers),
            }

    def shutdown(self):
        """Cancel pending cleanup timers and forget all jobs."""
        with self._jobs_lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
        for job in jobs:
            with job.lock:
                if job.cleanup_timer:
                    job.cleanup_timer.cancel()
                for subscriber in job.subscribers:
                    subscriber.close()
                job.subscribers.clear()

    def _schedule_cleanup(self, job: ScrapeJob):
        """Delete the job after the retention window. Caller holds job.lock."""
        if job.cleanup_timer:
            job.cleanup_timer.cancel()
        timer = threading.Timer(self.retention_seconds, self._remove_job, args=(job.job_id,))
        timer.daemon = True
        job.cleanup_timer = timer
        timer.start()

    def _remove_job(self, job_id: str):
        with self._jobs_lock:
            self._jobs.pop(job_id, None)
        logger.info(f"Job [{job_id[4:12]}]: removed")

    def _run_scrape(self, job_id: str, username: str, password: str, mode: str):
        """Run the pipeline in a background thread and push its terminal event."""
        def on_progress(percent: int, phase: str, message: str):
            self.push_event(job_id, ProgressEvent(progress=percent, phase=phase, message=message))

        try:
            result = self._scrape(
                username, password, mode,
                on_progress=on_progress,
                request_id=job_id[4:12],
            )
            self.push_event(job_id, DoneEvent(
                progress=100, phase="done", message="Wrapped is ready.", result=result,
            ))
        except Exception as e:
            logger.error(f"Job [{job_id[4:12]}] failed: {e}")
            self.push_event(job_id, error_event(e))


def error_event(error: Exception) -> ErrorEvent:
    """Build the terminal error event for an exception raised by a scrape."""
    if isinstance(error, ScrapeError):
        return ErrorEvent(
            progress=100, phase="error", message="Scraping failed.",
            error=error.message, error_kind=error.kind,
            details=error.details or error.message, status=error.status,
        )
    return ErrorEvent(
        progress=100, phase="error", message="Scraping failed.",
        error=GENERIC_ERROR, error_kind="internal", details=str(error), status=500,
    )


def to_sse_message(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_wire())}\n\n"


def sse_stream(service: JobService, subscription: Subscription,
               heartbeat_seconds: float = HEARTBEAT_SECONDS) -> Iterator[str]:
    """Server-sent event frames for one subscriber.

    Emits a keepalive comment whenever no event arrives within the heartbeat
    interval and stops after the terminal event. Closing the generator early
    (client disconnect) detaches the subscriber; the job keeps running.
    """
    try:
        while True:
            try:
                event = subscription.next_event(timeout=heartbeat_seconds)
            except queue.Empty:
                yield ": keepalive\n\n"
                continue
            if event is None:
                return
            yield to_sse_message(event)
    finally:
        service.detach(subscription)
