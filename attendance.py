"""
Attendance taking.

An AttendanceSession holds the ephemeral state of one "take attendance"
screen: the roster filters and the present/absent marks. Saving it notifies
the guardians of absent students one by one, appends an AttendanceRecord to
the log and nudges every marked student's rolling attendance percentage.
"""

import logging
from datetime import date
from typing import Dict, List, Optional, Tuple, Union

from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from database import ProfileStore
from errors import ConfirmationRequiredError, IncompleteInputError
from notifications import DispatchQueue, DispatchResult, ProgressFn
from schemas import ALL, AttendanceRecord, GradeLevel, Student, new_log_id

logger = logging.getLogger(__name__)

PRESENT_INCREMENT = 0.1
ABSENT_DECREMENT = 0.5


def display_date(day: date) -> str:
    """e.g. 'Saturday, October 17, 2026'"""
    return f"{day:%A}, {day:%B} {day.day}, {day.year}"


def apply_attendance_deltas(students: List[Student], present_ids: List[str], absent_ids: List[str]) -> None:
    present = set(present_ids)
    absent = set(absent_ids)
    for s in students:
        if s.id in present:
            s.attendance = min(100.0, s.attendance + PRESENT_INCREMENT)
        elif s.id in absent:
            s.attendance = max(0.0, s.attendance - ABSENT_DECREMENT)


def record_attendance(store: ProfileStore, record: AttendanceRecord) -> None:
    """Append the record and update attendance percentages in one locked step."""
    with store.locked():
        store.add_attendance_record(record)
        store.update_students(lambda students: apply_attendance_deltas(students, record.present_ids, record.absent_ids))


def attendance_logs(store: ProfileStore) -> List[AttendanceRecord]:
    """All records, newest first."""
    return sorted(store.get_attendance_logs(), key=lambda r: r.id, reverse=True)


def attendance_ratio_from_log(store: ProfileStore, student_id: str) -> Optional[float]:
    """Percentage of logged sessions the student was present for.

    Computed from the full log; None when the student never appears in it.
    """
    present = absent = 0
    for record in store.get_attendance_logs():
        if student_id in record.present_ids:
            present += 1
        elif student_id in record.absent_ids:
            absent += 1
    if present + absent == 0:
        return None
    return round(100 * present / (present + absent), 2)


class AttendanceSaveResult(BaseModel):
    record: AttendanceRecord
    notifications: List[DispatchResult]
    failed: List[DispatchResult]


class AttendanceSession:
    def __init__(self, students: List[Student]):
        self.students = students
        self._grade = ALL
        self._course = ALL
        self.search = ""
        self.marks: Dict[str, bool] = {}

    # filters; changing grade or course discards the marks
    @property
    def grade(self) -> str:
        return self._grade

    @grade.setter
    def grade(self, value: Union[GradeLevel, str]) -> None:
        self._grade = value.value if isinstance(value, GradeLevel) else value
        self.marks = {}

    @property
    def course(self) -> str:
        return self._course

    @course.setter
    def course(self, value: str) -> None:
        self._course = value
        self.marks = {}

    def available_courses(self) -> List[str]:
        courses = {c for s in self.students for c in s.enrolled_courses}
        return sorted([ALL, *courses])

    def roster(self) -> List[Student]:
        query = self.search.lower()
        return [
            s for s in self.students
            if (self._grade == ALL or s.grade.value == self._grade)
            and (self._course == ALL or self._course in s.enrolled_courses)
            and (query in s.full_name.lower() or self.search in s.id)
        ]

    # marking
    def mark(self, student_id: str, present: bool) -> None:
        self.marks[student_id] = present

    def mark_all_present(self) -> None:
        for s in self.roster():
            self.marks[s.id] = True

    def reset(self) -> None:
        self.marks = {}

    def missing_marks(self) -> List[Student]:
        return [s for s in self.roster() if s.id not in self.marks]

    def plan(self) -> Tuple[List[str], List[str]]:
        """Split the roster into present and absent ids.

        Raises IncompleteInputError if any rostered student is unmarked.
        """
        roster = self.roster()
        missing = [s for s in roster if s.id not in self.marks]
        if missing:
            raise IncompleteInputError(
                f"Please mark attendance for all {len(missing)} students in the list first.",
                missing=len(missing),
            )
        present_ids = [s.id for s in roster if self.marks[s.id]]
        absent_ids = [s.id for s in roster if not self.marks[s.id]]
        return present_ids, absent_ids

    async def save(
        self,
        store: ProfileStore,
        staff_name: str,
        confirm: bool = False,
        dispatcher: Optional[DispatchQueue] = None,
        on_progress: Optional[ProgressFn] = None,
        today: Optional[date] = None,
    ) -> AttendanceSaveResult:
        present_ids, absent_ids = self.plan()
        if absent_ids and not confirm:
            raise ConfirmationRequiredError(len(absent_ids))

        today = today or date.today()
        by_id = {s.id: s for s in self.students}
        absentees = [by_id[i] for i in absent_ids]

        notifications: List[DispatchResult] = []
        if absentees:
            dispatcher = dispatcher or DispatchQueue()
            notifications = await dispatcher.dispatch_all(absentees, display_date(today), on_progress)

        record = AttendanceRecord(
            id=new_log_id(),
            date=today,
            grade=self._grade,
            course=self._course,
            present_ids=present_ids,
            absent_ids=absent_ids,
            taken_by=staff_name,
        )
        await run_in_threadpool(record_attendance, store, record)
        self.reset()

        failed = [n for n in notifications if not n.delivered]
        logger.info(
            "Attendance saved by %s: %d present, %d absent, %d alerts not delivered",
            staff_name, len(present_ids), len(absent_ids), len(failed),
        )
        return AttendanceSaveResult(record=record, notifications=notifications, failed=failed)
