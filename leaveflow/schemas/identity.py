"""
People known to the core: students and teaching staff.
"""

from typing import List, Optional

from pydantic import BaseModel


class StudentProfile(BaseModel):
    id: str
    name: str
    email: str = ""
    department: str
    division: str
    year: Optional[int] = None
    course_ids: List[str] = []


class StaffProfile(BaseModel):
    id: str
    name: str
    email: str = ""
    department: str
    is_class_teacher: bool = False
    class_division: Optional[str] = None
    is_hod: bool = False
    course_ids: List[str] = []

    def is_class_teacher_of(self, student: StudentProfile) -> bool:
        return self.is_class_teacher and self.class_division == student.division

    def is_hod_of(self, student: StudentProfile) -> bool:
        return self.is_hod and self.department == student.department
