import base64
import logging
import os
from datetime import date, datetime
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator

import auth
from attendance import AttendanceSaveResult, AttendanceSession, attendance_logs
from dashboard import (
    RegistrationFilter, RegistrationReport, SessionSummary, active_session,
    registration_report, session_summary,
)
from database import ProfileStore, get_store
from errors import AuthorizationError, NotFoundError, PortalError
from fees import (
    AdmissionDraft, FeeBalance, FeeCalculator, FeeQuote, LedgerRow, admit_student,
    class_fee_ledger, collect_fee, quote_total_fee, student_balance,
)
from gradebook import BatchScore, record_batch_grades, student_grades
from notifications import DispatchProgress, DispatchQueue
from schemas import (
    ALL, AcademicSession, AttendanceRecord, FeeRecord, FeeStructure, FeeType,
    GradeLevel, GradeRecord, Note, PaymentMethod, SchoolProfile, Student,
    StudentStatus, Teacher, User, UserRole, new_id,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="School Portal API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STAFF = (UserRole.OWNER, UserRole.TEACHER)


# -------------------- Dependencies -------------------- #

def get_db() -> ProfileStore:
    return get_store()


def get_dispatcher() -> DispatchQueue:
    return DispatchQueue()


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if not header or not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1]


def get_current_user(request: Request, store: ProfileStore = Depends(get_db)) -> Optional[User]:
    """Return the session user from the bearer token, or None."""
    token = bearer_token(request)
    if token is None:
        return None
    return auth.decode_access_token(token, store)


async def get_session_user(user: Optional[User] = Depends(get_current_user)) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_roles(*roles: UserRole):
    async def _dep(user: User = Depends(get_session_user)):
        if user.role == UserRole.STUDENT and user.is_registered is False:
            raise HTTPException(status_code=403, detail="Complete registration first")
        if roles and user.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden for role")
        return user
    return _dep


def ensure_student_access(user: User, student_id: str) -> None:
    if user.role == UserRole.STUDENT and user.linked_id != student_id:
        raise HTTPException(status_code=403, detail="Students may only view their own records")


# -------------------- Error handling & request log -------------------- #

@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, **exc.to_dict()})


@app.middleware("http")
async def request_log_middleware(request: Request, call_next):
    start = datetime.utcnow()
    response = await call_next(request)
    elapsed_ms = (datetime.utcnow() - start).total_seconds() * 1000
    logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# -------------------- Meta endpoints -------------------- #

@app.get("/")
def read_root():
    return {"message": "School Portal backend is running"}


@app.get("/schema")
def get_schema():
    models = [
        Student, Teacher, User, FeeStructure, FeeRecord, AttendanceRecord,
        AcademicSession, SchoolProfile, Note, GradeRecord,
    ]
    return {m.__name__: m.model_json_schema() for m in models}


@app.get("/test")
def test_store(store: ProfileStore = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "store": type(store.backend).__name__,
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "students": None,
    }
    try:
        response["students"] = len(store.get_students())
    except Exception as e:
        response["store"] = f"❌ Error: {str(e)[:80]}"
    return response


# -------------------- Auth endpoints -------------------- #

class LoginPayload(BaseModel):
    username: str
    password: str = ""
    role: UserRole = UserRole.OWNER
    grade: Optional[GradeLevel] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: User


class StudentRegistrationPayload(BaseModel):
    password: str = Field(..., min_length=auth.MIN_PASSWORD_LENGTH)
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match.")
        return self


class TeacherRegistrationPayload(BaseModel):
    name: str
    subject: str
    email: str
    password: Optional[str] = None


class TeacherRegistrationResponse(BaseModel):
    teacher: Teacher
    user: User
    password: str


def _token_response(user: User) -> TokenResponse:
    return TokenResponse(access_token=auth.create_access_token(user), user=user)


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginPayload, store: ProfileStore = Depends(get_db)):
    user = auth.login(store, payload.username, payload.password, payload.role, payload.grade)
    return _token_response(user)


@app.post("/auth/logout")
def logout(request: Request, user: User = Depends(get_session_user), store: ProfileStore = Depends(get_db)):
    auth.logout(store, bearer_token(request))
    return {"status": "logged out"}


@app.get("/auth/me", response_model=User)
def me(user: User = Depends(get_session_user)):
    return user


@app.post("/auth/register/student", response_model=TokenResponse)
def register_student(payload: StudentRegistrationPayload, user: User = Depends(get_session_user),
                     store: ProfileStore = Depends(get_db)):
    if user.role != UserRole.STUDENT or not user.linked_id:
        raise HTTPException(status_code=403, detail="Only students can complete student registration")
    registered = auth.register_student(store, user.linked_id, payload.password)
    if registered is None:
        raise NotFoundError("Student", user.linked_id)
    return _token_response(registered)


@app.post("/auth/register/teacher", response_model=TeacherRegistrationResponse)
def register_teacher(payload: TeacherRegistrationPayload, user: User = Depends(require_roles(UserRole.OWNER)),
                     store: ProfileStore = Depends(get_db)):
    teacher, teacher_user, password = auth.onboard_teacher(
        store, payload.name, payload.subject, payload.email, payload.password
    )
    return TeacherRegistrationResponse(teacher=teacher, user=teacher_user, password=password)


# -------------------- Students & teachers -------------------- #

@app.get("/students", response_model=List[Student])
def list_students(grade: Optional[GradeLevel] = None, status: Optional[StudentStatus] = None,
                  user: User = Depends(require_roles(*STAFF)), store: ProfileStore = Depends(get_db)):
    students = store.get_students()
    if grade:
        students = [s for s in students if s.grade == grade]
    if status:
        students = [s for s in students if s.status == status]
    return students


class AdmissionResponse(BaseModel):
    student: Student
    notice: Optional[str] = Field(None, description="Set when the total could not be calculated automatically")


@app.post("/students", response_model=AdmissionResponse)
def add_student(payload: AdmissionDraft, user: User = Depends(require_roles(*STAFF)),
                store: ProfileStore = Depends(get_db)):
    notice = None
    if "total_fees" not in payload.model_fields_set:
        notice = FeeCalculator(store.get_fee_structures(), payload).notice
    return AdmissionResponse(student=admit_student(store, payload), notice=notice)


@app.get("/students/{student_id}", response_model=Student)
def get_student(student_id: str, user: User = Depends(require_roles()), store: ProfileStore = Depends(get_db)):
    ensure_student_access(user, student_id)
    student = store.get_student(student_id)
    if student is None:
        raise NotFoundError("Student", student_id)
    return student


@app.get("/students/{student_id}/balance", response_model=FeeBalance)
def get_student_balance(student_id: str, user: User = Depends(require_roles()),
                        store: ProfileStore = Depends(get_db)):
    ensure_student_access(user, student_id)
    return student_balance(store, student_id)


@app.get("/teachers", response_model=List[Teacher])
def list_teachers(user: User = Depends(require_roles(*STAFF)), store: ProfileStore = Depends(get_db)):
    return store.get_teachers()


# -------------------- Fees -------------------- #

class FeeCollectionPayload(BaseModel):
    student_id: str
    amount: float
    payment_method: PaymentMethod = PaymentMethod.UPI
    fee_type: FeeType = FeeType.TUITION
    payment_date: Optional[date] = None
    collected_by: Optional[str] = None


@app.get("/fees", response_model=List[FeeRecord])
def list_fees(student_id: Optional[str] = None, search: Optional[str] = None,
              user: User = Depends(require_roles()), store: ProfileStore = Depends(get_db)):
    if user.role == UserRole.STUDENT:
        student_id = user.linked_id
    fees = store.get_fees()
    if student_id:
        fees = [f for f in fees if f.student_id == student_id]
    if search:
        names = {s.id: s.full_name.lower() for s in store.get_students()}
        fees = [f for f in fees if search.lower() in names.get(f.student_id, "") or search in f.receipt_no]
    return fees


@app.post("/fees", response_model=FeeRecord)
def add_fee(payload: FeeCollectionPayload, user: User = Depends(require_roles(*STAFF)),
            store: ProfileStore = Depends(get_db)):
    return collect_fee(
        store,
        payload.student_id,
        payload.amount,
        staff_name=user.name,
        payment_method=payload.payment_method,
        fee_type=payload.fee_type,
        payment_date=payload.payment_date,
        collected_by=payload.collected_by,
    )


@app.get("/fees/structure", response_model=List[FeeStructure])
def get_fee_structure(user: User = Depends(require_roles()), store: ProfileStore = Depends(get_db)):
    return store.get_fee_structures()


@app.put("/fees/structure", response_model=List[FeeStructure])
def save_fee_structure(payload: List[FeeStructure], user: User = Depends(require_roles(UserRole.OWNER)),
                       store: ProfileStore = Depends(get_db)):
    store.save_fee_structures(payload)
    return store.get_fee_structures()


@app.get("/fees/quote", response_model=FeeQuote)
def get_fee_quote(grade: GradeLevel, courses: str = "", user: User = Depends(require_roles(*STAFF)),
                  store: ProfileStore = Depends(get_db)):
    selected = [c.strip() for c in courses.split(",") if c.strip()]
    return quote_total_fee(store, grade, selected)


@app.get("/fees/ledger/{grade}", response_model=List[LedgerRow])
def get_fee_ledger(grade: GradeLevel, user: User = Depends(require_roles(*STAFF)),
                   store: ProfileStore = Depends(get_db)):
    return class_fee_ledger(store, grade)


# -------------------- Attendance -------------------- #

class AttendancePayload(BaseModel):
    grade: str = ALL
    course: str = ALL
    search: str = ""
    marks: Dict[str, bool] = Field(default_factory=dict)
    confirm: bool = False


@app.post("/attendance", response_model=AttendanceSaveResult)
async def save_attendance(payload: AttendancePayload, user: User = Depends(require_roles(*STAFF)),
                          store: ProfileStore = Depends(get_db),
                          dispatcher: DispatchQueue = Depends(get_dispatcher)):
    session = AttendanceSession(await run_in_threadpool(store.get_students))
    session.grade = payload.grade
    session.course = payload.course
    session.search = payload.search
    for student_id, present in payload.marks.items():
        session.mark(student_id, present)

    def on_progress(progress: DispatchProgress):
        logger.info("Alert %d/%d sent for %s", progress.current, progress.total, progress.current_name)

    return await session.save(store, user.name, confirm=payload.confirm, dispatcher=dispatcher,
                              on_progress=on_progress)


@app.get("/attendance/logs", response_model=List[AttendanceRecord])
def list_attendance_logs(user: User = Depends(require_roles(*STAFF)), store: ProfileStore = Depends(get_db)):
    return attendance_logs(store)


# -------------------- Gradebook -------------------- #

class GradeBatchPayload(BaseModel):
    subject: str
    test_name: str
    date: date
    max_score: float = 100
    scores: List[BatchScore]


@app.get("/grades", response_model=List[GradeRecord])
def list_grades(student_id: Optional[str] = None, user: User = Depends(require_roles()),
                store: ProfileStore = Depends(get_db)):
    if user.role == UserRole.STUDENT:
        return student_grades(store, user.linked_id)
    if student_id:
        return student_grades(store, student_id)
    return store.get_grades()


@app.post("/grades/batch", response_model=List[GradeRecord])
def add_grade_batch(payload: GradeBatchPayload, user: User = Depends(require_roles(*STAFF)),
                    store: ProfileStore = Depends(get_db)):
    return record_batch_grades(store, payload.subject, payload.test_name, payload.date, payload.scores,
                               max_score=payload.max_score)


# -------------------- Notes -------------------- #

class NotePayload(BaseModel):
    id: Optional[str] = None
    title: str
    content: str
    color: Optional[str] = None
    is_class_note: bool = False
    target_grade: Optional[GradeLevel] = None


@app.get("/notes", response_model=List[Note])
def list_notes(user: User = Depends(require_roles()), store: ProfileStore = Depends(get_db)):
    grade = None
    if user.role == UserRole.STUDENT and user.linked_id:
        student = store.get_student(user.linked_id)
        grade = student.grade.value if student else None
    return store.get_notes(user.id, user.role, grade)


@app.post("/notes", response_model=Note)
def save_note(payload: NotePayload, user: User = Depends(require_roles()), store: ProfileStore = Depends(get_db)):
    if payload.id:
        existing = store.get_note(payload.id)
        if existing is not None and existing.user_id != user.id:
            raise AuthorizationError("Notes can only be edited by their author")
    is_class_note = payload.is_class_note and user.role in STAFF
    note = Note(
        id=payload.id or new_id(),
        user_id=user.id,
        title=payload.title,
        content=payload.content,
        date=date.today(),
        color=payload.color,
        is_class_note=is_class_note,
        target_grade=payload.target_grade if is_class_note else None,
        author_name=user.name,
    )
    store.save_note(note)
    return note


@app.delete("/notes/{note_id}")
def delete_note(note_id: str, user: User = Depends(require_roles()), store: ProfileStore = Depends(get_db)):
    existing = store.get_note(note_id)
    if existing is None:
        raise NotFoundError("Note", note_id)
    if existing.user_id != user.id:
        raise AuthorizationError("Notes can only be deleted by their author")
    store.delete_note(note_id)
    return {"status": "deleted", "id": note_id}


# -------------------- Sessions & dashboard -------------------- #

class SessionPayload(BaseModel):
    name: str
    start_date: date
    end_date: date
    is_current: bool = True


@app.get("/sessions", response_model=List[AcademicSession])
def list_sessions(user: User = Depends(require_roles()), store: ProfileStore = Depends(get_db)):
    return store.get_sessions()


@app.post("/sessions", response_model=AcademicSession)
def add_session(payload: SessionPayload, user: User = Depends(require_roles(UserRole.OWNER)),
                store: ProfileStore = Depends(get_db)):
    session = AcademicSession(id=new_id(), **payload.model_dump())
    store.save_session(session)
    return session


@app.get("/dashboard", response_model=SessionSummary)
def get_dashboard(session_id: Optional[str] = None, user: User = Depends(require_roles(*STAFF)),
                  store: ProfileStore = Depends(get_db)):
    sessions = store.get_sessions()
    if session_id:
        session = next((s for s in sessions if s.id == session_id), None)
    else:
        session = active_session(sessions)
    if session is None:
        raise NotFoundError("Academic session", session_id or "")
    return session_summary(store, session)


@app.get("/reports/registration", response_model=RegistrationReport)
def get_registration_report(status: RegistrationFilter = RegistrationFilter.ALL, search: str = "",
                            user: User = Depends(require_roles(*STAFF)), store: ProfileStore = Depends(get_db)):
    return registration_report(store, status, search)


# -------------------- School profile -------------------- #

@app.get("/school-profile", response_model=SchoolProfile)
def get_school_profile(store: ProfileStore = Depends(get_db)):
    return store.get_school_profile()


@app.put("/school-profile", response_model=SchoolProfile)
def save_school_profile(payload: SchoolProfile, user: User = Depends(require_roles(UserRole.OWNER)),
                        store: ProfileStore = Depends(get_db)):
    store.save_school_profile(payload)
    return payload


@app.post("/school-profile/logo", response_model=SchoolProfile)
async def upload_logo(file: UploadFile = File(...), user: User = Depends(require_roles(UserRole.OWNER)),
                      store: ProfileStore = Depends(get_db)):
    if not file.filename:
        raise HTTPException(status_code=400, detail="Filename required")
    content = await file.read()
    media_type = file.content_type or "application/octet-stream"
    data_url = f"data:{media_type};base64,{base64.b64encode(content).decode('ascii')}"
    profile = store.get_school_profile().model_copy(update={"logo_url": data_url})
    store.save_school_profile(profile)
    return profile


# -------------------- Run -------------------- #

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
