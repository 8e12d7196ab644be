"""
View extractors for Wilma pages.

Each view has a parse_* function that turns a BeautifulSoup tree into typed
records, and an extract_* function that waits for the view on a live session
and then parses it. extract_* never raises: it returns (value, error) where
error is None on success, or a short reason and the view's empty value when
the view could not be read.
"""

import copy
import logging
import re
from datetime import date
from typing import Optional

from bs4 import BeautifulSoup, Tag

from wilma.models import (
    AttendanceRecord,
    EctsSummary,
    EctsSummaryRow,
    GradebookCourse,
    GradebookData,
    UserProfile,
)

logger = logging.getLogger(__name__)

# Portal paths for each view
GRADEBOOK_PATH = "/choices?view=gradebook"
ECTS_SUMMARY_PATH = "/choices?view=summary"
ATTENDANCE_PATH = "/attendance/view?range=-3&first=1.1.2000&last=1.1.2040"

UNREAD_BADGE = 'a[href="/messages"] .badge'
PROFILE_CONTAINER = ".dropdown-toggle.profile .name-container"
GRADEBOOK_TABLE = "#gradebook"
GRADEBOOK_COLLAPSED_ROWS = "#gradebook tbody tr[style*='display: none']"
EXPAND_ALL = "#expand-all"
ATTENDANCE_TABLE = ".datatable.attendance-single"
ECTS_TABLE = "#credits-summary-table"

WAIT_TIMEOUT = 10
EXPAND_TIMEOUT = 5

# Only these attendance marks are counted. Everything else is ignored.
RELEVANT_MARKS = frozenset({
    "Terveydellisiin syihin liittyvä poissaolo",
    "Luvaton poissaolo (selvitetty)",
    "Myöhässä alle 15 min",
})

# Grouping label for graded courses with no subject, track or curriculum
FALLBACK_SUBJECT = "Muu aine"

_LEVEL_RE = re.compile(r'level(\d+)')
_LEADING_NUMBER_RE = re.compile(r'^[+-]?(?:\d+(?:\.\d*)?|\.\d+)')
_DATE_RE = re.compile(r'^(\d{1,2})\.(\d{1,2})\.(\d{4})$')
_DIGITS_RE = re.compile(r'(\d+)')


# ============== TEXT HELPERS ==============

def to_text(element: Optional[Tag]) -> str:
    """Element text with whitespace collapsed, or "" for a missing element."""
    if element is None:
        return ""
    return re.sub(r'\s+', ' ', element.get_text()).strip()


def parse_number(value: str) -> Optional[float]:
    """Parse a leading number, accepting comma as the decimal separator.

    "8,5" -> 8.5, "9-" -> 9.0, "S" -> None, "" -> None
    """
    if not value:
        return None
    match = _LEADING_NUMBER_RE.match(value.replace(",", ".", 1).strip())
    if not match:
        return None
    return float(match.group(0))


def parse_grade(value: str) -> tuple[float | str | None, Optional[float]]:
    """Split grade text into (grade, numeric value).

    Numeric grades come back as floats, literal marks such as "S" or "H"
    are kept as strings with no numeric value.
    """
    numeric = parse_number(value)
    if not value:
        return None, None
    if numeric is None:
        return value, None
    return numeric, numeric


def parse_date_iso(value: str) -> Optional[str]:
    """Convert D.M.YYYY to YYYY-MM-DD. Invalid or other formats give None."""
    match = _DATE_RE.match(value.strip()) if value else None
    if not match:
        return None
    day, month, year = (int(part) for part in match.groups())
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def normalize_course_code(course_code: str) -> str:
    """Join key for course codes across views: no whitespace, lower case."""
    return re.sub(r'\s+', '', course_code).lower()


def _row_level(row: Tag) -> int:
    match = _LEVEL_RE.search(" ".join(row.get("class") or []))
    return int(match.group(1)) if match else 0


def _row_label(name_cell: Tag) -> str:
    """Row label without the course code that is nested inside the same span."""
    label = ""
    root_span = name_cell.find("span")
    if root_span is not None:
        clone = copy.copy(root_span)
        for code in clone.select(".secondary-text"):
            code.decompose()
        label = to_text(clone)
    return label or to_text(name_cell)


# ============== PARSERS ==============

def parse_unread_count(soup: BeautifulSoup) -> int:
    badge = soup.select_one(UNREAD_BADGE)
    if badge is None:
        return 0
    match = _DIGITS_RE.search(badge.get_text())
    return int(match.group(1)) if match else 0


def parse_profile(soup: BeautifulSoup) -> UserProfile:
    container = soup.select_one(PROFILE_CONTAINER)
    if container is None:
        return UserProfile()
    return UserProfile(
        name=to_text(container.select_one(".teacher")) or None,
        school=to_text(container.select_one(".school")) or None,
    )


def parse_gradebook(soup: BeautifulSoup) -> GradebookData:
    """Walk the gradebook tree and return finished courses.

    Rows carry their depth as a levelN class. labels[n] holds the most recent
    label seen at depth n; a new label at depth n clears every deeper entry.
    """
    labels: list[Optional[str]] = [None]
    courses: list[GradebookCourse] = []

    for row in soup.select(f"{GRADEBOOK_TABLE} tbody tr"):
        level = _row_level(row)
        if not level:
            continue

        cells = row.find_all("td")
        if not cells:
            continue

        name_cell = cells[0]
        code_text = to_text(name_cell.select_one(".secondary-text"))
        label_text = _row_label(name_cell)

        if label_text:
            del labels[level:]
            labels.extend([None] * (level - len(labels)))
            labels.append(label_text)

        if not code_text:
            continue

        cell_text = [to_text(cell) for cell in cells]
        cell_text.extend([""] * (5 - len(cell_text)))
        grade_text, ects_text, completed_text, teacher_text = cell_text[1:5]

        # Enrolled but unfinished courses have neither grade nor date
        if not grade_text and not completed_text:
            continue

        def label_at(depth: int) -> Optional[str]:
            return labels[depth] if 0 < depth < len(labels) else None

        hierarchy = [label_at(depth) for depth in range(1, level)]
        hierarchy = [label for label in hierarchy if label]

        immediate_parent = label_at(level - 1)
        curriculum = label_at(1)
        if level >= 3:
            subject = label_at(2) or immediate_parent
        else:
            subject = immediate_parent or curriculum

        grade, grade_value = parse_grade(grade_text)
        courses.append(GradebookCourse(
            course_code=code_text,
            course_name=label_text,
            curriculum=curriculum,
            subject=subject,
            track=immediate_parent,
            hierarchy=hierarchy,
            level=level,
            grade=grade,
            grade_value=grade_value,
            ects=parse_number(ects_text),
            completion_date=completed_text or None,
            completion_date_iso=parse_date_iso(completed_text),
            teacher=teacher_text or None,
        ))

    return summarize_gradebook(courses)


def summarize_gradebook(courses: list[GradebookCourse]) -> GradebookData:
    """Group numeric grades by subject in first-seen order."""
    by_subject: dict[str, list[float]] = {}
    for course in courses:
        if course.grade_value is None:
            continue
        subject = course.subject or course.track or course.curriculum or FALLBACK_SUBJECT
        by_subject.setdefault(subject, []).append(course.grade_value)

    return GradebookData(
        subjects=list(by_subject),
        grades=list(by_subject.values()),
        gradebook_courses=courses,
    )


def parse_attendance(soup: BeautifulSoup) -> list[AttendanceRecord]:
    """Count allow-listed marks per course from event cell titles.

    Titles look like "BG04; Myöhässä alle 15 min / 8:15-9:30".
    """
    counts: dict[str, dict[str, int]] = {}
    for cell in soup.select("td.event"):
        title = cell.get("title")
        if not title:
            continue

        course_part, _, rest = title.partition(";")
        course_code = course_part.strip()
        mark = rest.split("/")[0].strip()

        if mark not in RELEVANT_MARKS:
            continue
        marks = counts.setdefault(course_code, {})
        marks[mark] = marks.get(mark, 0) + 1

    return [AttendanceRecord(course_code=code, marks=marks) for code, marks in counts.items()]


def parse_ects_summary(soup: BeautifulSoup) -> EctsSummary:
    """Read the per-year credit table. A footer totals row wins over computed sums."""
    table = soup.select_one(ECTS_TABLE)
    if table is None:
        return EctsSummary()

    def number(element: Optional[Tag]) -> float:
        return parse_number(to_text(element)) or 0

    header = [to_text(cell) for cell in table.select("thead th")]
    years = [label for label in header[1:-1] if label]

    rows = []
    for row in table.select("tbody tr"):
        cells = row.find_all("td")
        if len(cells) < 2:
            continue
        course_type = to_text(cells[0])
        if not course_type:
            continue
        by_year = {
            year: number(cells[index + 1]) if index + 1 < len(cells) else 0
            for index, year in enumerate(years)
        }
        rows.append(EctsSummaryRow(course_type=course_type, by_year=by_year, total=number(cells[-1])))

    totals_row = table.select_one("tfoot tr.total")
    if totals_row is not None:
        total_cells = totals_row.find_all("td")
        by_year = {
            year: number(total_cells[index + 1]) if index + 1 < len(total_cells) else 0
            for index, year in enumerate(years)
        }
        total = number(total_cells[-1]) if total_cells else 0
    else:
        by_year = {year: sum(row.by_year.get(year, 0) for row in rows) for year in years}
        total = sum(row.total for row in rows)

    return EctsSummary(years=years, by_year=by_year, total=total, rows=rows)


# ============== LIVE EXTRACTION ==============

def extract_unread_count(session) -> tuple[int, Optional[str]]:
    try:
        return parse_unread_count(session.soup()), None
    except Exception as e:
        return 0, f"unread count: {e}"


def extract_profile(session) -> tuple[UserProfile, Optional[str]]:
    try:
        session.wait_for(PROFILE_CONTAINER, timeout=WAIT_TIMEOUT)
        return parse_profile(session.soup()), None
    except Exception as e:
        return UserProfile(), f"profile: {e}"


def extract_gradebook(session) -> tuple[GradebookData, Optional[str]]:
    try:
        session.wait_for(GRADEBOOK_TABLE, timeout=WAIT_TIMEOUT)

        if session.is_visible(EXPAND_ALL):
            session.click(f"{EXPAND_ALL} a")
            try:
                session.wait_until_gone(GRADEBOOK_COLLAPSED_ROWS, timeout=EXPAND_TIMEOUT)
            except Exception as e:
                logger.debug(f"Gradebook rows still collapsed after expand: {e}")
            session.pause(0.3)

        return parse_gradebook(session.soup()), None
    except Exception as e:
        return GradebookData(), f"gradebook: {e}"


def extract_attendance(session) -> tuple[list[AttendanceRecord], Optional[str]]:
    try:
        session.wait_for(ATTENDANCE_TABLE, timeout=WAIT_TIMEOUT)
        return parse_attendance(session.soup()), None
    except Exception as e:
        return [], f"attendance: {e}"


def extract_ects_summary(session) -> tuple[EctsSummary, Optional[str]]:
    try:
        session.wait_for(ECTS_TABLE, timeout=WAIT_TIMEOUT)
        return parse_ects_summary(session.soup()), None
    except Exception as e:
        return EctsSummary(), f"ECTS summary: {e}"
