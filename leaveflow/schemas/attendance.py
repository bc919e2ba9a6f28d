"""
Pydantic schemas for course attendance sessions and per-student aggregates.
"""

from datetime import date
from typing import List, Optional, Set

from pydantic import BaseModel, Field, model_validator


class CourseAttendanceSession(BaseModel):
    course_id: str
    date: date
    present: Set[str] = Field(default_factory=set)
    absent: Set[str] = Field(default_factory=set)
    excused: Set[str] = Field(default_factory=set)

    @model_validator(mode="after")
    def _sets_are_disjoint(self):
        if (self.present & self.absent) or (self.present & self.excused) or (self.absent & self.excused):
            raise ValueError("a student can appear in only one of present/absent/excused per session")
        return self

    def status_of(self, student_id: str) -> Optional[str]:
        if student_id in self.present:
            return "present"
        if student_id in self.absent:
            return "absent"
        if student_id in self.excused:
            return "excused"
        return None


class StudentAttendanceAggregate(BaseModel):
    student_id: str
    course_id: str
    present: int = 0
    absent: int = 0
    excused: int = 0
    total: int = 0

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return round((self.present + self.excused) / self.total * 100, 2)


# ---- Attendance marking ----
class AttendanceMark(BaseModel):
    date: date
    present: List[str] = []
    absent: List[str] = []


class CourseAttendanceSummary(BaseModel):
    course_id: str
    present: int
    absent: int
    excused: int
    total: int
    percentage: float
    flagged: bool
