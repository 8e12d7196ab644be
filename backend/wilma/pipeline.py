"""
Scrape pipeline for Wilma.

Sequences one browser session through login and the views a mode asks for,
reports progress checkpoints, and folds the views into a WrappedData result.
Only login and session-level failures end the run; a view that cannot be
read degrades to its empty value.
"""

import logging
import time
from typing import Callable, Optional

from wilma import extractors
from wilma.models import AttendanceRecord, GradebookCourse, WrappedData
from wilma.session import WilmaSession

logger = logging.getLogger(__name__)

MODES = ("all", "unread", "grades", "attendance")

ProgressCallback = Callable[[int, str, str], None]


def normalize_mode(value) -> str:
    """Return a known scrape mode; anything unrecognised means all."""
    return value if value in MODES else "all"


def merge_attendance(courses: list[GradebookCourse],
                     attendance: list[AttendanceRecord]) -> list[GradebookCourse]:
    """Attach attendance marks to gradebook courses by normalized course code."""
    marks_by_code: dict[str, dict[str, int]] = {}
    for record in attendance:
        marks = marks_by_code.setdefault(extractors.normalize_course_code(record.course_code), {})
        for label, count in record.marks.items():
            marks[label] = marks.get(label, 0) + count

    merged = []
    for course in courses:
        marks = dict(marks_by_code.get(extractors.normalize_course_code(course.course_code), {}))
        merged.append(course.model_copy(update={
            "attendance_marks": marks,
            "attendance_total": sum(marks.values()),
        }))
    return merged


def _degraded(request_id: str, value, error: Optional[str]):
    """Keep the view's value; log which view fell back to empty data."""
    if error:
        logger.warning(f"[{request_id}] View degraded to empty data - {error}")
    return value


def _fetch_grades(session, request_id: str):
    session.navigate(extractors.GRADEBOOK_PATH)
    gradebook = _degraded(request_id, *extractors.extract_gradebook(session))
    session.navigate(extractors.ECTS_SUMMARY_PATH)
    ects_summary = _degraded(request_id, *extractors.extract_ects_summary(session))
    return gradebook, ects_summary


def _fetch_attendance(session, request_id: str):
    session.navigate(extractors.ATTENDANCE_PATH)
    return _degraded(request_id, *extractors.extract_attendance(session))


def run_scrape(username: str, password: str, mode: str = "all",
               on_progress: Optional[ProgressCallback] = None,
               session_factory: Callable = WilmaSession,
               request_id: str = "wilma") -> WrappedData:
    """Run one scrape attempt.

    Args:
        username: Wilma username
        password: Wilma password
        mode: one of MODES
        on_progress: called as on_progress(percent, phase, message)
        session_factory: builds the browser session (a context manager)
        request_id: prefix for log lines

    Returns:
        WrappedData with the fields the mode fetched

    Raises:
        LoginFailed: credentials rejected
        SessionFailure: browser or navigation failure outside a view
    """
    def progress(percent: int, phase: str, message: str):
        if on_progress:
            on_progress(percent, phase, message)

    mode = normalize_mode(mode)
    started_at = time.monotonic()
    logger.info(f"[{request_id}] Starting {mode} scrape")

    try:
        progress(8, "login", "Connecting to Wilma...")
        with session_factory() as session:
            session.login(username, password)
            progress(24, "login-success", "Logged in.")

            if mode == "unread":
                progress(55, "unread", "Fetching messages...")
                unread = _degraded(request_id, *extractors.extract_unread_count(session))
                return WrappedData(unread_messages=unread)

            if mode == "grades":
                progress(52, "grades", "Fetching grades...")
                gradebook, ects_summary = _fetch_grades(session, request_id)
                return WrappedData(
                    subjects=gradebook.subjects,
                    grades=gradebook.grades,
                    gradebook_courses=gradebook.gradebook_courses,
                    ects_summary=ects_summary,
                )

            if mode == "attendance":
                progress(52, "attendance", "Fetching attendance...")
                attendance = _fetch_attendance(session, request_id)
                return WrappedData(attendance=attendance)

            user_profile = _degraded(request_id, *extractors.extract_profile(session))

            progress(40, "unread", "Fetching messages...")
            unread = _degraded(request_id, *extractors.extract_unread_count(session))

            progress(58, "grades", "Fetching grades...")
            gradebook, ects_summary = _fetch_grades(session, request_id)

            progress(82, "attendance", "Fetching attendance...")
            attendance = _fetch_attendance(session, request_id)

            progress(96, "finalizing", "Finalizing wrapped...")
            return WrappedData(
                unread_messages=unread,
                subjects=gradebook.subjects,
                grades=gradebook.grades,
                gradebook_courses=merge_attendance(gradebook.gradebook_courses, attendance),
                ects_summary=ects_summary,
                attendance=attendance,
                user_profile=user_profile,
            )
    finally:
        duration_ms = int((time.monotonic() - started_at) * 1000)
        logger.info(f"[{request_id}] Finished {mode} scrape in {duration_ms}ms")
