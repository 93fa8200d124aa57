from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from educonnect.models import StudentGrade, Subject

MIDTERM_WEIGHT = 2
FINAL_WEIGHT = 3
ONE_DECIMAL = Decimal("0.1")


def _score(value: float) -> Decimal:
    # str() keeps the entered 0.1-step value instead of its binary approximation
    return Decimal(str(value))


def round_grade(value) -> float:
    """Round to one decimal place, halves away from zero (8.25 -> 8.3)."""
    if not isinstance(value, Decimal):
        value = _score(value)
    return float(value.quantize(ONE_DECIMAL, rounding=ROUND_HALF_UP))


def weighted_average(regular: Iterable[Optional[float]], midterm: Optional[float] = None, final: Optional[float] = None) -> Optional[float]:
    """Term average: regular scores weigh 1, the midterm 2 and the final 3.

    Missing components are left out of both the sum and the weight; with nothing
    present there is no average. The sum and division are exact decimals, so a
    mean of 6.35 rounds to 6.4.
    """
    scores = [_score(r) for r in regular if r is not None]
    total = sum(scores, Decimal(0))
    weight = len(scores)
    if midterm is not None:
        total += MIDTERM_WEIGHT * _score(midterm)
        weight += MIDTERM_WEIGHT
    if final is not None:
        total += FINAL_WEIGHT * _score(final)
        weight += FINAL_WEIGHT
    if weight == 0:
        return None
    return round_grade(total / weight)


def subject_average(components: dict[str, Optional[float]]) -> Optional[float]:
    if components.get("summary") is not None:
        return round_grade(components["summary"])
    regular = [v for k, v in sorted(components.items()) if k.startswith("regular")]
    return weighted_average(regular, components.get("midterm"), components.get("final"))


def student_subject_averages(db: Session, student_id: str, academic_term_id: str) -> list[dict]:
    rows = db.execute(
        select(StudentGrade, Subject)
        .join(Subject, Subject.id == StudentGrade.subject_id)
        .where(StudentGrade.student_id == student_id, StudentGrade.academic_term_id == academic_term_id)
        .order_by(Subject.name.asc(), StudentGrade.component_type.asc())
    ).all()
    by_subject: dict[str, dict] = {}
    for grade, subject in rows:
        entry = by_subject.setdefault(
            subject.id,
            {"subject_id": subject.id, "subject_name": subject.name, "subject_code": subject.code, "components": {}},
        )
        entry["components"][grade.component_type] = grade.grade_value
    for entry in by_subject.values():
        entry["average"] = subject_average(entry["components"])
    return list(by_subject.values())
