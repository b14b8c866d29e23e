"""
Data Schemas for the School Portal

Each Pydantic model below is stored as one element of a JSON collection in the
profile store (see database.py). Use these to validate data and as the source
of truth for the application domain.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def new_id(length: int = 9) -> str:
    return uuid.uuid4().hex[:length]


def new_log_id() -> str:
    """Time-ordered id so that sorting by id sorts by creation time."""
    return f"{datetime.utcnow().strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:4]}"


# Closed enumerations
class UserRole(str, Enum):
    OWNER = "owner"
    TEACHER = "teacher"
    STUDENT = "student"


class GradeLevel(str, Enum):
    FIFTH = "5th"
    SIXTH = "6th"
    SEVENTH = "7th"
    EIGHTH = "8th"
    NINTH = "9th"
    TENTH = "10th"


class StudentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PaymentMethod(str, Enum):
    CASH = "Cash"
    UPI = "UPI"
    BANK_TRANSFER = "Bank Transfer"
    CHEQUE = "Cheque"


class FeeType(str, Enum):
    TUITION = "Tuition Fee"
    ADMISSION = "Admission Fee"
    EXAM = "Exam Fee"
    OTHER = "Other"


ALL = "All"


# Core identities
class Student(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: str
    grade: GradeLevel
    status: StudentStatus = StudentStatus.ACTIVE
    attendance: float = Field(100, ge=0, le=100, description="Rolling attendance percentage")
    gpa: float = Field(0, ge=0)
    total_fees: float = Field(0, ge=0, description="Base fee plus selected course fees")
    photo_url: Optional[str] = Field(None, description="URL or data URL of the student photo")
    address: Optional[str] = None
    parent_mobile: Optional[str] = None
    whatsapp_no: Optional[str] = None
    enrolled_courses: List[str] = Field(default_factory=list)
    is_registered: bool = False
    registration_date: Optional[date] = None
    admission_date: date

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Teacher(BaseModel):
    id: str
    name: str
    subject: str
    email: str
    join_date: date


class User(BaseModel):
    id: str
    username: str
    role: UserRole
    name: str
    linked_id: Optional[str] = Field(None, description="Student or teacher id this principal belongs to")
    password_hash: Optional[str] = None
    is_registered: Optional[bool] = None


# Fees
class CourseFee(BaseModel):
    name: str
    amount: float = Field(..., ge=0)


class FeeStructure(BaseModel):
    grade: GradeLevel
    base_amount: float = Field(..., ge=0, description="Registration/admin fee")
    course_fees: List[CourseFee] = Field(default_factory=list)


class FeeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    student_id: str
    amount: float = Field(..., gt=0)
    payment_date: date
    payment_method: PaymentMethod = PaymentMethod.UPI
    fee_type: FeeType = FeeType.TUITION
    receipt_no: str
    collected_by: str


# Attendance and academics
class AttendanceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    date: date
    grade: str = Field(ALL, description="Grade filter active at save time")
    course: str = Field(ALL, description="Course filter active at save time")
    present_ids: List[str] = Field(default_factory=list)
    absent_ids: List[str] = Field(default_factory=list)
    taken_by: str


class GradeRecord(BaseModel):
    id: str
    student_id: str
    subject: str
    test_name: str
    score: float = Field(..., ge=0)
    max_score: float = Field(100, gt=0)
    date: date
    feedback: Optional[str] = None


class AcademicSession(BaseModel):
    id: str
    name: str = Field(..., description="e.g., 2024-25")
    start_date: date
    end_date: date
    is_current: bool = False


class Note(BaseModel):
    id: str
    user_id: str
    title: str
    content: str
    date: date
    color: Optional[str] = None
    is_class_note: bool = False
    target_grade: Optional[GradeLevel] = None
    author_name: Optional[str] = None


class SchoolProfile(BaseModel):
    name: str
    logo_url: Optional[str] = Field(None, description="Data URL of the institution logo")
    contact_numbers: List[str] = Field(default_factory=list)
