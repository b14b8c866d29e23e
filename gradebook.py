import logging
from datetime import date
from typing import List, Optional

from pydantic import BaseModel

from database import ProfileStore
from errors import IncompleteInputError
from schemas import GradeRecord, new_id

logger = logging.getLogger(__name__)


class BatchScore(BaseModel):
    student_id: str
    score: Optional[float] = None
    feedback: Optional[str] = None


def record_batch_grades(
    store: ProfileStore,
    subject: str,
    test_name: str,
    test_date: date,
    scores: List[BatchScore],
    max_score: float = 100,
) -> List[GradeRecord]:
    """Save one test's marks; entries without a score are skipped."""
    records = [
        GradeRecord(
            id=new_id(),
            student_id=entry.student_id,
            subject=subject,
            test_name=test_name,
            score=entry.score,
            max_score=max_score,
            date=test_date,
            feedback=entry.feedback,
        )
        for entry in scores
        if entry.score is not None
    ]
    if not records:
        raise IncompleteInputError("Please enter at least one student's marks.")
    for record in records:
        store.add_grade(record)
    logger.info("Saved %d grade records for %r", len(records), test_name)
    return records


def student_grades(store: ProfileStore, student_id: str) -> List[GradeRecord]:
    return [g for g in store.get_grades() if g.student_id == student_id]
