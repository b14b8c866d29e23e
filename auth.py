"""
Session/auth resolver.

Staff log in with a username and password, either as the built-in
administrator or as a registered teacher/owner. Students log in with their
full name and grade; a student who has not registered yet gets an
unregistered session that is only good for completing registration.
"""

import logging
import os
import re
import secrets
from datetime import date, datetime, timedelta
from typing import Optional, Tuple, Union

from jose import JWTError, jwt
from passlib.context import CryptContext

from database import ProfileStore
from errors import AuthenticationError
from schemas import GradeLevel, Teacher, User, UserRole, new_id

logger = logging.getLogger(__name__)

# -------------------- Security -------------------- #
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "Manikgad-Classess")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "Manikgad@123")

PASSWORD_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
MIN_PASSWORD_LENGTH = 6


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def generate_password(length: int = 8) -> str:
    return "".join(secrets.choice(PASSWORD_CHARS) for _ in range(length))


HARDCODED_USERS = [
    User(
        id="u1",
        username=ADMIN_USERNAME,
        role=UserRole.OWNER,
        name="Manikgad Cbse classes",
        password_hash=hash_password(ADMIN_PASSWORD),
    ),
]


def public_user(user: User) -> User:
    """Copy of the user without its password hash."""
    return user.model_copy(update={"password_hash": None})


def _grade_value(grade: Union[GradeLevel, str, None]) -> Optional[str]:
    if isinstance(grade, GradeLevel):
        return grade.value
    return grade


def _start_session(store: ProfileStore, user: User) -> User:
    session_user = public_user(user)
    store.set_current_user(session_user)
    return session_user


# -------------------- Login / logout -------------------- #

def login(
    store: ProfileStore,
    username: str,
    password: str,
    role: UserRole = UserRole.OWNER,
    grade: Union[GradeLevel, str, None] = None,
) -> User:
    """Resolve a login attempt and persist the resulting session.

    Raises AuthenticationError when no principal matches.
    """
    trimmed = username.strip()

    if role != UserRole.STUDENT:
        # administrator username is case-sensitive
        admin = next((u for u in HARDCODED_USERS if u.username == trimmed), None)
        if admin and verify_password(password, admin.password_hash):
            logger.info("Administrator %s logged in", admin.username)
            return _start_session(store, admin)

        normalized = trimmed.lower()
        staff = next(
            (
                u for u in store.get_registered_users()
                if u.username.lower() == normalized and u.role in (UserRole.TEACHER, UserRole.OWNER)
            ),
            None,
        )
        if staff and verify_password(password, staff.password_hash):
            logger.info("Staff user %s logged in", staff.username)
            return _start_session(store, staff)

        logger.info("Rejected staff login for %r", trimmed)
        raise AuthenticationError("Invalid username or password")

    wanted_grade = _grade_value(grade)
    normalized_name = trimmed.lower()
    student = next(
        (
            s for s in store.get_students()
            if s.full_name.lower() == normalized_name and s.grade.value == wanted_grade
        ),
        None,
    )
    if student is None:
        logger.info("Rejected student login for %r (grade %s)", trimmed, wanted_grade)
        raise AuthenticationError("Student not found in this class")

    if not student.is_registered:
        # first login: no password yet, session only allows registration
        logger.info("First-time login for unregistered student %s", student.id)
        bootstrap = User(
            id=f"usr_{student.id}",
            username=student.id,
            role=UserRole.STUDENT,
            name=student.full_name,
            linked_id=student.id,
            is_registered=False,
        )
        return _start_session(store, bootstrap)

    registered = next((u for u in store.get_registered_users() if u.linked_id == student.id), None)
    if registered and verify_password(password, registered.password_hash):
        logger.info("Student %s logged in", student.id)
        return _start_session(store, registered)

    logger.info("Rejected password for registered student %s", student.id)
    raise AuthenticationError("Invalid password")


def logout(store: ProfileStore, token: Optional[str] = None) -> None:
    """End the session. A given token is revoked so it cannot be reused."""
    store.clear_current_user()
    token_id = _token_id(token) if token else None
    if token_id:
        store.revoke_token(token_id)
        logger.info("Revoked session token %s", token_id)


def get_current_user(store: ProfileStore) -> Optional[User]:
    return store.get_current_user()


# -------------------- Registration -------------------- #

def teacher_username(name: str) -> str:
    username = re.sub(r"\s+", "_", name.lower())
    return re.sub(r"[^\w]", "", username)


def _unique_username(store: ProfileStore, base: str) -> str:
    taken = {u.username.lower() for u in store.get_registered_users()}
    taken.update(u.username.lower() for u in HARDCODED_USERS)
    username, suffix = base, 2
    while username in taken:
        username = f"{base}{suffix}"
        suffix += 1
    return username


def register_teacher(store: ProfileStore, teacher: Teacher, password: str) -> User:
    """Create a login for a teacher. Does not start a session.

    A numeric suffix is added when the derived username is already taken.
    """
    with store.locked():
        user = User(
            id=f"usr_{teacher.id}",
            username=_unique_username(store, teacher_username(teacher.name)),
            role=UserRole.TEACHER,
            name=teacher.name,
            linked_id=teacher.id,
            password_hash=hash_password(password),
            is_registered=True,
        )
        store.save_registered_user(user)
    logger.info("Registered teacher %s as %s", teacher.id, user.username)
    return public_user(user)


def onboard_teacher(
    store: ProfileStore,
    name: str,
    subject: str,
    email: str,
    password: Optional[str] = None,
) -> Tuple[Teacher, User, str]:
    """Add a teacher to the directory and create their login.

    Returns the teacher, the new user and the (possibly generated) password,
    which is not recoverable afterwards.
    """
    password = password or generate_password()
    teacher = Teacher(id=f"T{new_id(6).upper()}", name=name, subject=subject, email=email, join_date=date.today())
    user = register_teacher(store, teacher, password)
    store.save_teacher(teacher)
    return teacher, user, password


def register_student(store: ProfileStore, student_id: str, password: str) -> Optional[User]:
    """Complete a student's registration and log them in.

    Returns None when no student has the given id.
    """
    with store.locked():
        student = store.get_student(student_id)
        if student is None:
            return None
        student.is_registered = True
        student.registration_date = date.today()
        store.save_student(student)

        user = User(
            id=f"usr_{student.id}",
            username=student.id,
            role=UserRole.STUDENT,
            name=student.full_name,
            linked_id=student.id,
            password_hash=hash_password(password),
            is_registered=True,
        )
        store.save_registered_user(user)
    logger.info("Student %s completed registration", student_id)
    return _start_session(store, user)


# -------------------- Session tokens -------------------- #

def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = public_user(user).model_dump(mode="json", exclude={"password_hash"})
    to_encode["sub"] = user.id
    to_encode["jti"] = new_id(16)
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _token_id(token: str) -> Optional[str]:
    try:
        return jwt.get_unverified_claims(token).get("jti")
    except JWTError:
        return None


def decode_access_token(token: str, store: Optional[ProfileStore] = None) -> Optional[User]:
    """Return the session user carried by the token, or None if it is invalid.

    With a store, tokens revoked at logout are rejected too.
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    payload.pop("sub", None)
    token_id = payload.pop("jti", None)
    if store is not None and token_id and store.is_token_revoked(token_id):
        return None
    payload.pop("exp", None)
    return User.model_validate(payload)
