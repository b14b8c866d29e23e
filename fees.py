"""
Fee computation: admission totals, fee collection and balances.

A student's assessed fee is the grade's base amount plus the fees of the
courses they enrolled in. Paid and outstanding amounts are always derived
from the fee ledger and never stored.
"""

import logging
import random
from datetime import date
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field

from database import ProfileStore
from errors import IncompleteInputError, NotFoundError, ValidationError
from schemas import (
    FeeRecord, FeeStructure, FeeType, GradeLevel, PaymentMethod, Student,
    StudentStatus, new_id,
)

logger = logging.getLogger(__name__)

AVATAR_URL = "https://api.dicebear.com/7.x/avataaars/svg?seed={seed}"


def find_fee_structure(structures: Iterable[FeeStructure], grade: GradeLevel) -> Optional[FeeStructure]:
    return next((s for s in structures if s.grade == grade), None)


def compute_total_fee(structure: FeeStructure, enrolled_courses: Iterable[str]) -> float:
    selected = set(enrolled_courses)
    course_total = sum(cf.amount for cf in structure.course_fees if cf.name in selected)
    return structure.base_amount + course_total


def missing_structure_notice(grade: GradeLevel) -> str:
    return f"No fee structure configured for {grade.value} Standard. Enter the total fee manually."


class FeeQuote(BaseModel):
    grade: GradeLevel
    courses: List[str]
    total_fees: Optional[float] = None
    notice: Optional[str] = None


def quote_total_fee(store: ProfileStore, grade: GradeLevel, courses: List[str]) -> FeeQuote:
    structure = find_fee_structure(store.get_fee_structures(), grade)
    if structure is None:
        return FeeQuote(grade=grade, courses=courses, notice=missing_structure_notice(grade))
    return FeeQuote(grade=grade, courses=courses, total_fees=compute_total_fee(structure, courses))


# -------------------- Admission -------------------- #

class AdmissionDraft(BaseModel):
    first_name: str
    last_name: str
    email: str
    grade: GradeLevel = GradeLevel.FIFTH
    address: Optional[str] = None
    parent_mobile: Optional[str] = None
    whatsapp_no: Optional[str] = None
    enrolled_courses: List[str] = Field(default_factory=list)
    admission_date: date = Field(default_factory=date.today)
    total_fees: float = 0
    photo_url: Optional[str] = None


class FeeCalculator:
    """Keeps an admission draft's total fee in step with its grade and courses.

    The total is recomputed whenever the grade or course selection changes.
    A manual override sticks until the next such change. When the grade has
    no fee structure the total is left alone and `notice` explains why.
    """

    def __init__(self, structures: List[FeeStructure], draft: AdmissionDraft):
        self.structures = structures
        self.draft = draft
        self.notice: Optional[str] = None
        self._recompute()

    def _recompute(self) -> None:
        structure = find_fee_structure(self.structures, self.draft.grade)
        if structure is None:
            self.notice = missing_structure_notice(self.draft.grade)
            logger.info("No fee structure for grade %s; total left unchanged", self.draft.grade.value)
            return
        self.notice = None
        self.draft.total_fees = compute_total_fee(structure, self.draft.enrolled_courses)

    def set_grade(self, grade: GradeLevel) -> None:
        self.draft.grade = grade
        self._recompute()

    def set_courses(self, courses: List[str]) -> None:
        self.draft.enrolled_courses = list(courses)
        self._recompute()

    def toggle_course(self, course: str) -> None:
        courses = self.draft.enrolled_courses
        if course in courses:
            self.set_courses([c for c in courses if c != course])
        else:
            self.set_courses(courses + [course])

    def override_total(self, amount: float) -> None:
        self.draft.total_fees = amount


def admit_student(store: ProfileStore, draft: AdmissionDraft) -> Student:
    if not draft.enrolled_courses:
        raise IncompleteInputError("Please select at least one course.")
    if draft.total_fees < 0:
        raise ValidationError("Total fee cannot be negative", field="total_fees")

    student = Student(
        id=new_id().upper(),
        first_name=draft.first_name,
        last_name=draft.last_name,
        email=draft.email,
        grade=draft.grade,
        status=StudentStatus.ACTIVE,
        attendance=100,
        gpa=0,
        total_fees=draft.total_fees,
        photo_url=draft.photo_url or AVATAR_URL.format(seed=draft.first_name),
        address=draft.address,
        parent_mobile=draft.parent_mobile,
        whatsapp_no=draft.whatsapp_no,
        enrolled_courses=draft.enrolled_courses,
        admission_date=draft.admission_date,
    )
    store.save_student(student)
    logger.info("Admitted student %s to grade %s (total fee %s)", student.id, student.grade.value, student.total_fees)
    return student


# -------------------- Collection & balances -------------------- #

def generate_receipt_no() -> str:
    # not globally unique
    return f"RCP-{random.randint(1000, 9999)}"


def collect_fee(
    store: ProfileStore,
    student_id: str,
    amount: float,
    staff_name: str,
    payment_method: PaymentMethod = PaymentMethod.UPI,
    fee_type: FeeType = FeeType.TUITION,
    payment_date: Optional[date] = None,
    collected_by: Optional[str] = None,
) -> FeeRecord:
    if store.get_student(student_id) is None:
        raise NotFoundError("Student", student_id)
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero", field="amount")

    record = FeeRecord(
        id=new_id(),
        student_id=student_id,
        amount=amount,
        payment_date=payment_date or date.today(),
        payment_method=payment_method,
        fee_type=fee_type,
        receipt_no=generate_receipt_no(),
        collected_by=collected_by or staff_name,
    )
    store.add_fee_record(record)
    logger.info("Collected %s from student %s (receipt %s)", amount, student_id, record.receipt_no)
    return record


def total_paid(fees: Iterable[FeeRecord], student_id: str) -> float:
    return sum(f.amount for f in fees if f.student_id == student_id)


def outstanding_balance(student: Student, fees: Iterable[FeeRecord]) -> float:
    """Assigned total minus paid. Negative when overpaid."""
    return student.total_fees - total_paid(fees, student.id)


def is_fully_paid(student: Student, fees: Iterable[FeeRecord]) -> bool:
    return total_paid(fees, student.id) >= student.total_fees


class FeeBalance(BaseModel):
    student_id: str
    total_fees: float
    paid: float
    outstanding: float
    fully_paid: bool


def student_balance(store: ProfileStore, student_id: str) -> FeeBalance:
    student = store.get_student(student_id)
    if student is None:
        raise NotFoundError("Student", student_id)
    fees = store.get_fees()
    paid = total_paid(fees, student_id)
    return FeeBalance(
        student_id=student_id,
        total_fees=student.total_fees,
        paid=paid,
        outstanding=student.total_fees - paid,
        fully_paid=paid >= student.total_fees,
    )


class LedgerRow(BaseModel):
    index: int
    name: str
    courses: str
    paid: float
    remaining: float
    parent_mobile: str


def class_fee_ledger(store: ProfileStore, grade: GradeLevel) -> List[LedgerRow]:
    students = [s for s in store.get_students() if s.grade == grade]
    if not students:
        raise NotFoundError(f"Students in {grade.value} Standard")
    fees = store.get_fees()
    rows = []
    for index, s in enumerate(students, start=1):
        paid = total_paid(fees, s.id)
        rows.append(LedgerRow(
            index=index,
            name=s.full_name,
            courses=", ".join(s.enrolled_courses) or "General",
            paid=paid,
            remaining=s.total_fees - paid,
            parent_mobile=s.parent_mobile or "N/A",
        ))
    return rows


# -------------------- Fee structure administration -------------------- #

def update_base_fee(structures: List[FeeStructure], grade: GradeLevel, base_amount: float) -> List[FeeStructure]:
    return [
        s.model_copy(update={"base_amount": base_amount}) if s.grade == grade else s
        for s in structures
    ]


def update_course_fee(structures: List[FeeStructure], grade: GradeLevel, course: str, amount: float) -> List[FeeStructure]:
    updated = []
    for s in structures:
        if s.grade == grade:
            course_fees = [
                cf.model_copy(update={"amount": amount}) if cf.name == course else cf
                for cf in s.course_fees
            ]
            s = s.model_copy(update={"course_fees": course_fees})
        updated.append(s)
    return updated
