"""
Dashboard aggregates and the registration report.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from database import ProfileStore
from schemas import AcademicSession, GradeRecord, Student

AT_RISK_ATTENDANCE = 75


def active_session(sessions: List[AcademicSession]) -> Optional[AcademicSession]:
    """The current session, falling back to the first one."""
    return next((s for s in sessions if s.is_current), sessions[0] if sessions else None)


class SessionSummary(BaseModel):
    session: AcademicSession
    students: List[Student]
    grades: List[GradeRecord]
    session_students: int
    active_teachers: int
    average_gpa: str
    at_risk_students: int


def session_summary(store: ProfileStore, session: AcademicSession) -> SessionSummary:
    # students admitted before or during the session count toward it
    students = [s for s in store.get_students() if s.admission_date <= session.end_date]
    grades = [g for g in store.get_grades() if session.start_date <= g.date <= session.end_date]
    if students:
        average_gpa = f"{sum(s.gpa for s in students) / len(students):.2f}"
    else:
        average_gpa = "0.00"
    return SessionSummary(
        session=session,
        students=students,
        grades=grades,
        session_students=len(students),
        active_teachers=len(store.get_teachers()),
        average_gpa=average_gpa,
        at_risk_students=sum(1 for s in students if s.attendance < AT_RISK_ATTENDANCE),
    )


class RegistrationFilter(str, Enum):
    ALL = "all"
    REGISTERED = "registered"
    PENDING = "pending"


class RegistrationReport(BaseModel):
    total: int
    registered: int
    pending: int
    percent: float
    students: List[Student]


def registration_report(
    store: ProfileStore,
    status: RegistrationFilter = RegistrationFilter.ALL,
    search: str = "",
) -> RegistrationReport:
    students = store.get_students()
    registered = sum(1 for s in students if s.is_registered)
    query = search.lower()

    def matches(s: Student) -> bool:
        if query and query not in s.full_name.lower() and query not in s.id.lower():
            return False
        if status == RegistrationFilter.REGISTERED:
            return s.is_registered
        if status == RegistrationFilter.PENDING:
            return not s.is_registered
        return True

    return RegistrationReport(
        total=len(students),
        registered=registered,
        pending=len(students) - registered,
        percent=(registered / len(students) * 100) if students else 0.0,
        students=[s for s in students if matches(s)],
    )
