"""Tests for job lifecycle, event fan-out, late-join replay and cleanup."""

import queue
import threading
import time
from functools import partial

import pytest

from conftest import FakeSession
from job_service import (
    ChannelClosed,
    JobNotFound,
    JobService,
    JobState,
    Subscription,
    sse_stream,
)
from wilma.errors import LoginFailed
from wilma.models import DoneEvent, ProgressEvent, WrappedData
from wilma.pipeline import run_scrape


def collect(subscription, timeout=5):
    """Drain a subscription until its stream ends."""
    events = []
    while True:
        event = subscription.next_event(timeout=timeout)
        if event is None:
            return events
        events.append(event)


def wait_finished(service, job_id, timeout=5):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = service.get_status(job_id)
        if status and status["state"] in ("done", "error"):
            return status
        time.sleep(0.01)
    raise AssertionError("job did not finish")


class BlockingScrape:
    """Scrape stand-in that reports one checkpoint and waits to be released."""

    def __init__(self, result=None, error=None):
        self.release = threading.Event()
        self.started = threading.Event()
        self.result = result or WrappedData(unread_messages=3)
        self.error = error

    def __call__(self, username, password, mode, on_progress=None, request_id=""):
        on_progress(8, "login", "Connecting to Wilma...")
        self.started.set()
        self.release.wait(5)
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def make_service():
    services = []

    def factory(**kwargs):
        service = JobService(**kwargs)
        services.append(service)
        return service

    yield factory
    for service in services:
        service.shutdown()


def test_create_job_starts_queued(make_service):
    service = make_service()
    job_id = service.create_job()

    status = service.get_status(job_id)
    assert status["state"] == JobState.QUEUED.value
    assert status["event"] == {"type": "progress", "progress": 2, "phase": "queued", "message": "Starting scrape..."}


def test_attach_unknown_job_raises(make_service):
    service = make_service()
    with pytest.raises(JobNotFound):
        service.attach("job-missing")


def test_attach_replays_latest_event_then_streams(make_service):
    scrape = BlockingScrape()
    service = make_service(scrape=scrape)
    job_id = service.start_job("maija", "salasana", "unread")
    assert scrape.started.wait(5)

    subscription = service.attach(job_id)
    scrape.release.set()
    events = collect(subscription)

    assert [event.phase for event in events] == ["login", "done"]
    assert events[-1].result.unread_messages == 3


def test_late_joiner_gets_only_terminal_event(make_service):
    scrape = BlockingScrape()
    scrape.release.set()
    service = make_service(scrape=scrape)
    job_id = service.start_job("maija", "salasana", "unread")
    wait_finished(service, job_id)

    subscription = service.attach(job_id)

    assert subscription.closed
    events = collect(subscription)
    assert len(events) == 1
    assert events[0].type == "done"


def test_every_subscriber_gets_its_own_copy(make_service):
    scrape = BlockingScrape()
    service = make_service(scrape=scrape)
    job_id = service.start_job("maija", "salasana", "all")
    assert scrape.started.wait(5)

    first = service.attach(job_id)
    second = service.attach(job_id)
    scrape.release.set()

    assert [e.type for e in collect(first)] == ["progress", "done"]
    assert [e.type for e in collect(second)] == ["progress", "done"]


def test_broken_subscriber_is_dropped(make_service):
    service = make_service()
    job_id = service.create_job()
    broken = service.attach(job_id)
    healthy = service.attach(job_id)
    broken.close()

    service.push_event(job_id, ProgressEvent(progress=24, phase="login-success", message="Logged in."))

    assert service.get_status(job_id)["subscribers"] == 1
    assert healthy.next_event(timeout=1).phase == "queued"
    assert healthy.next_event(timeout=1).phase == "login-success"


def test_login_failure_ends_with_single_error_event(make_service):
    scrape = BlockingScrape(error=LoginFailed("Invalid Wilma credentials"))
    service = make_service(scrape=scrape)
    job_id = service.start_job("maija", "wrong", "all")
    assert scrape.started.wait(5)

    subscription = service.attach(job_id)
    scrape.release.set()
    events = collect(subscription)

    terminal = [event for event in events if event.is_terminal]
    assert len(terminal) == 1
    assert terminal[0].type == "error"
    assert terminal[0].status == 401
    assert terminal[0].error_kind == "login_failed"
    assert "wrong" not in str(terminal[0].to_wire())


def test_unexpected_error_maps_to_generic_failure(make_service):
    scrape = BlockingScrape(error=RuntimeError("chrome crashed"))
    scrape.release.set()
    service = make_service(scrape=scrape)
    job_id = service.start_job("maija", "salasana", "all")

    status = wait_finished(service, job_id)

    assert status["event"]["status"] == 500
    assert status["event"]["error"] == "Failed to connect to Wilma"
    assert status["event"]["details"] == "chrome crashed"


def test_events_after_terminal_are_ignored(make_service):
    service = make_service()
    job_id = service.create_job()
    service.push_event(job_id, DoneEvent(progress=100, phase="done", message="Wrapped is ready.", result=WrappedData()))
    service.push_event(job_id, ProgressEvent(progress=50, phase="grades", message="late"))

    assert service.get_status(job_id)["event"]["type"] == "done"


def test_job_is_removed_after_retention_window(make_service):
    service = make_service(retention_seconds=0.2)
    job_id = service.create_job()
    service.push_event(job_id, DoneEvent(progress=100, phase="done", message="Wrapped is ready.", result=WrappedData()))

    # Still there right after finishing
    service.attach(job_id)
    time.sleep(0.6)

    with pytest.raises(JobNotFound):
        service.attach(job_id)
    assert service.get_status(job_id) is None


def test_subscription_rejects_delivery_after_close():
    subscription = Subscription("job-x")
    subscription.close()
    with pytest.raises(ChannelClosed):
        subscription.deliver(ProgressEvent(progress=2, phase="queued", message=""))


def test_sse_stream_sends_heartbeats_and_detaches(make_service):
    service = make_service()
    job_id = service.create_job()
    subscription = service.attach(job_id)
    stream = sse_stream(service, subscription, heartbeat_seconds=0.05)

    first = next(stream)
    assert first.startswith("data: ")
    assert '"phase": "queued"' in first
    assert next(stream) == ": keepalive\n\n"

    stream.close()

    assert service.get_status(job_id)["subscribers"] == 0
    assert subscription.closed


def test_sse_stream_ends_after_terminal_frame(make_service):
    service = make_service()
    job_id = service.create_job()
    subscription = service.attach(job_id)
    service.push_event(job_id, DoneEvent(progress=100, phase="done", message="Wrapped is ready.", result=WrappedData(unread_messages=1)))

    frames = list(sse_stream(service, subscription, heartbeat_seconds=1))

    assert len(frames) == 2
    assert frames[-1].endswith("\n\n")
    assert '"type": "done"' in frames[-1]
    assert '"unreadMessages": 1' in frames[-1]


def test_unread_job_end_to_end(make_service):
    session = FakeSession()
    service = make_service(scrape=partial(run_scrape, session_factory=lambda: session))
    job_id = service.create_job()
    subscription = service.attach(job_id)
    service.run_job(job_id, FakeSession.VALID_USERNAME, FakeSession.VALID_PASSWORD, "unread")

    events = collect(subscription)

    assert [(e.type, e.phase) for e in events] == [
        ("progress", "queued"),
        ("progress", "login"),
        ("progress", "login-success"),
        ("progress", "unread"),
        ("done", "done"),
    ]
    assert events[-1].to_wire()["result"] == {"success": True, "unreadMessages": 12}
    assert session.close_count == 1


def test_rescheduling_cleanup_replaces_pending_timer(make_service):
    service = make_service(retention_seconds=0.5)
    job_id = service.create_job()
    service.push_event(job_id, DoneEvent(progress=100, phase="done", message="Wrapped is ready.", result=WrappedData()))
    job = service._get_job(job_id)
    first_timer = job.cleanup_timer

    time.sleep(0.25)
    with job.lock:
        service._schedule_cleanup(job)

    assert first_timer.finished.is_set()
    assert job.cleanup_timer is not first_timer

    # Past the first deadline, before the second
    time.sleep(0.35)
    assert service.get_status(job_id) is not None

    time.sleep(0.6)
    assert service.get_status(job_id) is None
