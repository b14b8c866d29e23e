import asyncio
from datetime import date

import pytest

from notifications import DispatchQueue, build_absentee_message, send_absentee_sms
from schemas import GradeLevel, Student


def _student(student_id: str, mobile=None) -> Student:
    return Student(id=student_id, first_name=f"Kid{student_id}", last_name="Test", email=f"{student_id}@x.edu",
                   grade=GradeLevel.EIGHTH, admission_date=date(2024, 4, 1), parent_mobile=mobile)


def test_message_template():
    message = build_absentee_message(_student("1"), "Monday, June 3, 2024", school_name="Test School")

    assert message == (
        "Alert: Your ward Kid1 Test was marked ABSENT today (Monday, June 3, 2024) at Test School. "
        "Please contact the office for any queries."
    )


@pytest.mark.asyncio
async def test_send_succeeds_only_with_guardian_number():
    assert await send_absentee_sms(_student("1", "9000000001"), "today", delay=0) is True
    assert await send_absentee_sms(_student("2"), "today", delay=0) is False
    assert await send_absentee_sms(_student("3", ""), "today", delay=0) is False


@pytest.mark.asyncio
async def test_queue_dispatches_in_order_one_at_a_time():
    in_flight = 0
    max_in_flight = 0
    sent = []

    async def send(student, date_display):
        nonlocal in_flight, max_in_flight
        in_flight += 1
        max_in_flight = max(max_in_flight, in_flight)
        # later students finish faster; order must still hold
        await asyncio.sleep(0.01 / int(student.id))
        sent.append(student.id)
        in_flight -= 1
        return True

    progress = []
    students = [_student(str(i), "9") for i in range(1, 5)]
    results = await DispatchQueue(send=send).dispatch_all(students, "today", progress.append)

    assert sent == ["1", "2", "3", "4"]
    assert max_in_flight == 1
    assert [r.student_id for r in results] == ["1", "2", "3", "4"]
    assert [(p.current, p.total) for p in progress] == [(1, 4), (2, 4), (3, 4), (4, 4)]
    assert progress[-1].current_name == "Kid4 Test"


@pytest.mark.asyncio
async def test_queue_reports_undelivered():
    students = [_student("1", "9000000001"), _student("2")]
    results = await DispatchQueue(delay=0).dispatch_all(students, "today")

    assert [r.delivered for r in results] == [True, False]


@pytest.mark.asyncio
async def test_queue_timeout_counts_as_failure():
    async def slow_send(student, date_display):
        await asyncio.sleep(1)
        return True

    results = await DispatchQueue(send=slow_send, timeout=0.01).dispatch_all([_student("1", "9")], "today")

    assert results[0].delivered is False


@pytest.mark.asyncio
async def test_empty_queue_returns_no_results():
    assert await DispatchQueue(delay=0).dispatch_all([], "today") == []
