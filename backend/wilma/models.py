"""
Typed records produced by a Wilma scrape, and the progress events that carry them.

Field names are snake_case in Python and camelCase on the wire.
"""

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class UserProfile(WireModel):
    name: Optional[str] = None
    school: Optional[str] = None


class GradebookCourse(WireModel):
    course_code: str
    course_name: str
    curriculum: Optional[str] = None
    subject: Optional[str] = None
    track: Optional[str] = None
    hierarchy: list[str] = Field(default_factory=list)
    level: int
    grade: Union[float, str, None] = None
    grade_value: Optional[float] = None
    ects: Optional[float] = None
    completion_date: Optional[str] = None
    completion_date_iso: Optional[str] = None
    teacher: Optional[str] = None
    attendance_marks: Optional[dict[str, int]] = None
    attendance_total: Optional[int] = None

    def to_wire(self) -> dict:
        data = self.model_dump(by_alias=True)
        # Attendance keys only exist once attendance was merged in
        for key in ("attendanceMarks", "attendanceTotal"):
            if data[key] is None:
                del data[key]
        return data


class GradebookData(WireModel):
    """Gradebook rows plus the per-subject numeric grade summary."""
    subjects: list[str] = Field(default_factory=list)
    grades: list[list[float]] = Field(default_factory=list)
    gradebook_courses: list[GradebookCourse] = Field(default_factory=list)


class EctsSummaryRow(WireModel):
    course_type: str
    by_year: dict[str, float] = Field(default_factory=dict)
    total: float = 0


class EctsSummary(WireModel):
    years: list[str] = Field(default_factory=list)
    by_year: dict[str, float] = Field(default_factory=dict)
    total: float = 0
    rows: list[EctsSummaryRow] = Field(default_factory=list)


class AttendanceRecord(WireModel):
    course_code: str
    marks: dict[str, int] = Field(default_factory=dict)


class WrappedData(WireModel):
    """Aggregate result of one scrape. Fields a mode did not fetch stay None."""
    success: bool = True
    unread_messages: Optional[int] = None
    subjects: Optional[list[str]] = None
    grades: Optional[list[list[float]]] = None
    gradebook_courses: Optional[list[GradebookCourse]] = None
    ects_summary: Optional[EctsSummary] = None
    attendance: Optional[list[AttendanceRecord]] = None
    user_profile: Optional[UserProfile] = None

    def to_wire(self) -> dict:
        data = self.model_dump(by_alias=True, exclude={"gradebook_courses"})
        if self.gradebook_courses is not None:
            data["gradebookCourses"] = [course.to_wire() for course in self.gradebook_courses]
        return {key: value for key, value in data.items() if value is not None}


# ============== PROGRESS EVENTS ==============

class ProgressEvent(WireModel):
    type: Literal["progress"] = "progress"
    progress: int
    phase: str
    message: str

    @property
    def is_terminal(self) -> bool:
        return self.type != "progress"


class DoneEvent(ProgressEvent):
    type: Literal["done"] = "done"
    result: WrappedData

    def to_wire(self) -> dict:
        data = self.model_dump(by_alias=True, exclude={"result"})
        data["result"] = self.result.to_wire()
        return data


class ErrorEvent(ProgressEvent):
    type: Literal["error"] = "error"
    error: str
    error_kind: str
    details: Optional[str] = None
    status: int = 500


StreamEvent = Union[ProgressEvent, DoneEvent, ErrorEvent]
