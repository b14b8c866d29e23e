"""
Absentee SMS notifications.

Sending is simulated: the message is logged and a fixed delay stands in for
the SMS gateway. A send "succeeds" only when the student has a guardian
mobile number on file.
"""

import asyncio
import logging
import os
from functools import partial
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel

from schemas import Student

logger = logging.getLogger(__name__)

SMS_DELAY_SECONDS = float(os.getenv("SMS_DELAY_SECONDS", "0.6"))
SCHOOL_NAME = os.getenv("SCHOOL_NAME", "Manikgad CBSE Classes Buldana")

MESSAGE_TEMPLATE = (
    "Alert: Your ward {name} was marked ABSENT today ({date}) at {school}. "
    "Please contact the office for any queries."
)


def build_absentee_message(student: Student, date_display: str, school_name: str = SCHOOL_NAME) -> str:
    return MESSAGE_TEMPLATE.format(name=student.full_name, date=date_display, school=school_name)


async def send_absentee_sms(student: Student, date_display: str, delay: Optional[float] = None) -> bool:
    message = build_absentee_message(student, date_display)
    if student.parent_mobile:
        logger.info("SMS dispatch to %s (%s's parent): %s", student.parent_mobile, student.first_name, message)
    else:
        logger.warning("No guardian mobile registered for student %s; SMS not delivered", student.id)

    await asyncio.sleep(SMS_DELAY_SECONDS if delay is None else delay)
    return bool(student.parent_mobile)


class DispatchProgress(BaseModel):
    current: int
    total: int
    current_name: str


class DispatchResult(BaseModel):
    student_id: str
    student_name: str
    delivered: bool


SendFn = Callable[[Student, str], Awaitable[bool]]
ProgressFn = Callable[[DispatchProgress], None]


class DispatchQueue:
    """Ordered notification queue drained by exactly one worker.

    Sends never overlap: each one is awaited before the next starts, so the
    total wait is roughly len(students) * delay. An optional timeout bounds
    a single send; a timed-out send counts as not delivered.
    """

    def __init__(self, send: Optional[SendFn] = None, delay: Optional[float] = None, timeout: Optional[float] = None):
        self.send = send or partial(send_absentee_sms, delay=delay)
        self.timeout = timeout

    async def _send_one(self, student: Student, date_display: str) -> bool:
        if self.timeout is None:
            return await self.send(student, date_display)
        try:
            return await asyncio.wait_for(self.send(student, date_display), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("SMS dispatch for student %s timed out after %ss", student.id, self.timeout)
            return False

    async def _worker(self, queue: asyncio.Queue, total: int, date_display: str,
                      on_progress: Optional[ProgressFn]) -> List[DispatchResult]:
        results: List[DispatchResult] = []
        while True:
            item = await queue.get()
            if item is None:
                return results
            index, student = item
            delivered = await self._send_one(student, date_display)
            results.append(DispatchResult(student_id=student.id, student_name=student.full_name, delivered=delivered))
            if on_progress is not None:
                on_progress(DispatchProgress(current=index, total=total, current_name=student.full_name))

    async def dispatch_all(self, students: List[Student], date_display: str,
                           on_progress: Optional[ProgressFn] = None) -> List[DispatchResult]:
        queue: asyncio.Queue = asyncio.Queue()
        for index, student in enumerate(students, start=1):
            queue.put_nowait((index, student))
        queue.put_nowait(None)

        worker = asyncio.create_task(self._worker(queue, len(students), date_display, on_progress))
        return await worker
