"""
Profile store

A flat key/value store where every collection (students, teachers, fee
records, ...) is serialized as one JSON document under a fixed key. Reads
always deserialize a fresh copy, writes always replace the whole collection.

Backends:
- MemoryBackend: process-local dict (default, used by the tests)
- JsonFileBackend: one JSON file on disk holding the whole key/value map
- MongoBackend: one MongoDB document per key, used when DATABASE_URL is set
"""

import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pymongo import MongoClient

from errors import ValidationError
from schemas import (
    AcademicSession, AttendanceRecord, CourseFee, FeeRecord, FeeStructure,
    FeeType, GradeLevel, GradeRecord, Note, PaymentMethod, SchoolProfile,
    Student, Teacher, User, UserRole,
)

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "school_portal")
STORE_PATH = os.getenv("STORE_PATH")

KEYS = {
    "students": "edusync_students",
    "teachers": "edusync_teachers",
    "grades": "edusync_grades",
    "fees": "edusync_fees",
    "notes": "edusync_notes",
    "attendance": "edusync_attendance_logs",
    "users": "edusync_registered_users",
    "sessions": "edusync_sessions",
    "fee_structure": "edusync_fee_structure",
    "school_profile": "edusync_school_profile",
    "current_user": "edusync_user",
    "revoked_tokens": "edusync_revoked_tokens",
}

M = TypeVar("M", bound=BaseModel)


# -------------------- Seed data -------------------- #

INITIAL_PROFILE = SchoolProfile(
    name="Manikgad Cbse classes",
    contact_numbers=["9309521598", "7666254983", "9561334669"],
)

INITIAL_SESSIONS = [
    AcademicSession(id="s1", name="2023-24", start_date=date(2023, 4, 1), end_date=date(2024, 3, 31), is_current=False),
    AcademicSession(id="s2", name="2024-25", start_date=date(2024, 4, 1), end_date=date(2025, 3, 31), is_current=True),
]


def _grade_fees(grade: GradeLevel, base: float, core: float, english: float) -> FeeStructure:
    return FeeStructure(
        grade=grade,
        base_amount=base,
        course_fees=[
            CourseFee(name="Mathematics", amount=core),
            CourseFee(name="Science", amount=core),
            CourseFee(name="English", amount=english),
        ],
    )


INITIAL_FEE_STRUCTURE = [
    _grade_fees(GradeLevel.FIFTH, 2000, 3000, 2000),
    _grade_fees(GradeLevel.SIXTH, 2500, 4000, 2500),
    _grade_fees(GradeLevel.SEVENTH, 3000, 5000, 3000),
    _grade_fees(GradeLevel.EIGHTH, 3500, 5500, 3500),
    _grade_fees(GradeLevel.NINTH, 4000, 6000, 4000),
    _grade_fees(GradeLevel.TENTH, 5000, 7000, 5000),
]

INITIAL_STUDENTS = [
    Student(
        id="1", first_name="Alice", last_name="Johnson", email="alice.j@school.edu",
        grade=GradeLevel.TENTH, attendance=95, gpa=3.8, total_fees=24000,
        photo_url="https://api.dicebear.com/7.x/avataaars/svg?seed=Alice",
        enrolled_courses=["Mathematics", "Science", "English"],
        is_registered=True, registration_date=date(2023, 1, 15), admission_date=date(2023, 4, 10),
    ),
    Student(
        id="2", first_name="Bob", last_name="Smith", email="bob.s@school.edu",
        grade=GradeLevel.TENTH, attendance=82, gpa=2.9, total_fees=12000,
        photo_url="https://api.dicebear.com/7.x/avataaars/svg?seed=Bob",
        enrolled_courses=["English"], admission_date=date(2023, 5, 12),
    ),
    Student(
        id="3", first_name="Charlie", last_name="Davis", email="charlie.d@school.edu",
        grade=GradeLevel.SEVENTH, attendance=91, gpa=3.5, total_fees=13000,
        photo_url="https://api.dicebear.com/7.x/avataaars/svg?seed=Charlie",
        enrolled_courses=["Mathematics", "English"], admission_date=date(2024, 4, 15),
    ),
]

INITIAL_TEACHERS = [
    Teacher(id="T1", name="Dr. Sarah Wilson", subject="Science", email="s.wilson@school.edu", join_date=date(2020, 8, 15)),
    Teacher(id="T2", name="Mr. John Miller", subject="Mathematics", email="j.miller@school.edu", join_date=date(2019, 1, 10)),
]

INITIAL_GRADES = [
    GradeRecord(
        id="g1", student_id="1", subject="Science", test_name="Unit Test 1", score=92, max_score=100,
        date=date(2023, 10, 1), feedback="Excellent work on the biology unit.",
    ),
]

INITIAL_FEES = [
    FeeRecord(
        id="f1", student_id="1", amount=5000, payment_date=date(2023, 9, 15),
        payment_method=PaymentMethod.UPI, fee_type=FeeType.TUITION,
        receipt_no="RCP-8821", collected_by="Super Admin",
    ),
]


# -------------------- Backends -------------------- #

class MemoryBackend:
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileBackend:
    """Whole key/value map in one JSON file, rewritten on every change."""

    def __init__(self, path):
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        return json.loads(self.path.read_text(encoding="utf-8"))

    def _dump(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        tmp.replace(self.path)

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._dump(data)


class MongoBackend:
    """One document per key: {_id: key, value: <json string>}."""

    def __init__(self, collection):
        self.collection = collection

    @classmethod
    def from_url(cls, url: str, database_name: str, collection_name: str = "profile_store") -> "MongoBackend":
        client = MongoClient(url)
        return cls(client[database_name][collection_name])

    def get(self, key: str) -> Optional[str]:
        doc = self.collection.find_one({"_id": key})
        return doc.get("value") if doc else None

    def set(self, key: str, value: str) -> None:
        self.collection.replace_one(
            {"_id": key},
            {"_id": key, "value": value, "updated_at": datetime.utcnow()},
            upsert=True,
        )

    def delete(self, key: str) -> None:
        self.collection.delete_one({"_id": key})


# -------------------- Store -------------------- #

def _dump_all(items: List[BaseModel]) -> List[Dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


class ProfileStore:
    def __init__(self, backend=None):
        self.backend = backend if backend is not None else MemoryBackend()
        self._lock = threading.RLock()

    @contextmanager
    def locked(self) -> Iterator["ProfileStore"]:
        """Hold the single-writer lock across a read-modify-write sequence."""
        with self._lock:
            yield self

    # raw JSON access
    def _read(self, key: str, default: Any = None) -> Any:
        data = self.backend.get(key)
        if data is None:
            if default is None:
                return None
            self._write(key, default)
            data = json.dumps(default)
        return json.loads(data)

    def _write(self, key: str, value: Any) -> None:
        self.backend.set(key, json.dumps(value))

    def _read_list(self, key: str, model: Type[M], defaults: Optional[List[BaseModel]] = None) -> List[M]:
        raw = self._read(key, _dump_all(defaults) if defaults is not None else None)
        return [model.model_validate(item) for item in raw or []]

    def _write_list(self, key: str, items: List[BaseModel]) -> None:
        self._write(key, _dump_all(items))

    def _upsert(self, key: str, model: Type[M], item: M, defaults: Optional[List[BaseModel]] = None) -> None:
        with self._lock:
            items = self._read_list(key, model, defaults)
            for index, existing in enumerate(items):
                if existing.id == item.id:
                    items[index] = item
                    break
            else:
                items.append(item)
            self._write_list(key, items)

    def _append(self, key: str, model: Type[M], item: M, defaults: Optional[List[BaseModel]] = None) -> None:
        with self._lock:
            items = self._read_list(key, model, defaults)
            items.append(item)
            self._write_list(key, items)

    # school profile
    def get_school_profile(self) -> SchoolProfile:
        return SchoolProfile.model_validate(self._read(KEYS["school_profile"], INITIAL_PROFILE.model_dump(mode="json")))

    def save_school_profile(self, profile: SchoolProfile) -> None:
        self._write(KEYS["school_profile"], profile.model_dump(mode="json"))

    # academic sessions
    def get_sessions(self) -> List[AcademicSession]:
        return self._read_list(KEYS["sessions"], AcademicSession, INITIAL_SESSIONS)

    def save_session(self, session: AcademicSession) -> None:
        with self._lock:
            sessions = self.get_sessions()
            if session.is_current:
                for existing in sessions:
                    existing.is_current = False
            for index, existing in enumerate(sessions):
                if existing.id == session.id:
                    sessions[index] = session
                    break
            else:
                sessions.append(session)
            self._write_list(KEYS["sessions"], sessions)

    # fee structures
    def get_fee_structures(self) -> List[FeeStructure]:
        return self._read_list(KEYS["fee_structure"], FeeStructure, INITIAL_FEE_STRUCTURE)

    def save_fee_structures(self, structures: List[FeeStructure]) -> None:
        """Replace all fee structures. Each grade may appear at most once."""
        seen = set()
        for structure in structures:
            if structure.grade in seen:
                raise ValidationError(f"Duplicate fee structure for grade {structure.grade.value}", field="grade")
            seen.add(structure.grade)
        self._write_list(KEYS["fee_structure"], structures)

    def upsert_fee_structure(self, structure: FeeStructure) -> None:
        with self._lock:
            structures = [s for s in self.get_fee_structures() if s.grade != structure.grade]
            structures.append(structure)
            self.save_fee_structures(structures)

    # students
    def get_students(self) -> List[Student]:
        return self._read_list(KEYS["students"], Student, INITIAL_STUDENTS)

    def get_student(self, student_id: str) -> Optional[Student]:
        return next((s for s in self.get_students() if s.id == student_id), None)

    def save_student(self, student: Student) -> None:
        self._upsert(KEYS["students"], Student, student, INITIAL_STUDENTS)

    def save_students(self, students: List[Student]) -> None:
        self._write_list(KEYS["students"], students)

    def update_students(self, mutate: Callable[[List[Student]], None]) -> List[Student]:
        with self._lock:
            students = self.get_students()
            mutate(students)
            self.save_students(students)
            return students

    # teachers
    def get_teachers(self) -> List[Teacher]:
        return self._read_list(KEYS["teachers"], Teacher, INITIAL_TEACHERS)

    def save_teacher(self, teacher: Teacher) -> None:
        self._upsert(KEYS["teachers"], Teacher, teacher, INITIAL_TEACHERS)

    # gradebook
    def get_grades(self) -> List[GradeRecord]:
        return self._read_list(KEYS["grades"], GradeRecord, INITIAL_GRADES)

    def add_grade(self, grade: GradeRecord) -> None:
        self._append(KEYS["grades"], GradeRecord, grade, INITIAL_GRADES)

    # fee ledger
    def get_fees(self) -> List[FeeRecord]:
        return self._read_list(KEYS["fees"], FeeRecord, INITIAL_FEES)

    def add_fee_record(self, fee: FeeRecord) -> None:
        self._append(KEYS["fees"], FeeRecord, fee, INITIAL_FEES)

    # notes
    def get_notes(self, user_id: str, role: Optional[UserRole] = None, grade: Optional[str] = None) -> List[Note]:
        notes = self._read_list(KEYS["notes"], Note)
        if role == UserRole.STUDENT and grade:
            return [
                n for n in notes
                if n.user_id == user_id or (n.is_class_note and n.target_grade is not None and n.target_grade.value == grade)
            ]
        return [n for n in notes if n.user_id == user_id]

    def get_note(self, note_id: str) -> Optional[Note]:
        return next((n for n in self._read_list(KEYS["notes"], Note) if n.id == note_id), None)

    def save_note(self, note: Note) -> None:
        self._upsert(KEYS["notes"], Note, note)

    def delete_note(self, note_id: str) -> None:
        with self._lock:
            notes = [n for n in self._read_list(KEYS["notes"], Note) if n.id != note_id]
            self._write_list(KEYS["notes"], notes)

    # attendance log
    def get_attendance_logs(self) -> List[AttendanceRecord]:
        return self._read_list(KEYS["attendance"], AttendanceRecord)

    def add_attendance_record(self, record: AttendanceRecord) -> None:
        self._append(KEYS["attendance"], AttendanceRecord, record)

    # principals
    def get_registered_users(self) -> List[User]:
        return self._read_list(KEYS["users"], User)

    def save_registered_user(self, user: User) -> None:
        self._upsert(KEYS["users"], User, user)

    # current session slot
    def get_current_user(self) -> Optional[User]:
        raw = self._read(KEYS["current_user"])
        return User.model_validate(raw) if raw else None

    def set_current_user(self, user: User) -> None:
        self._write(KEYS["current_user"], user.model_dump(mode="json"))

    def clear_current_user(self) -> None:
        self.backend.delete(KEYS["current_user"])

    # revoked session tokens
    def revoke_token(self, token_id: str) -> None:
        with self._lock:
            revoked = self._read(KEYS["revoked_tokens"], [])
            if token_id not in revoked:
                revoked.append(token_id)
                self._write(KEYS["revoked_tokens"], revoked)

    def is_token_revoked(self, token_id: str) -> bool:
        return token_id in self._read(KEYS["revoked_tokens"], [])


def build_store() -> ProfileStore:
    if DATABASE_URL:
        logger.info("Using MongoDB profile store (database=%s)", DATABASE_NAME)
        return ProfileStore(MongoBackend.from_url(DATABASE_URL, DATABASE_NAME))
    if STORE_PATH:
        logger.info("Using JSON file profile store at %s", STORE_PATH)
        return ProfileStore(JsonFileBackend(STORE_PATH))
    logger.info("Using in-memory profile store")
    return ProfileStore()


_store: Optional[ProfileStore] = None


def get_store() -> ProfileStore:
    global _store
    if _store is None:
        _store = build_store()
    return _store
