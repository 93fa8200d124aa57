from __future__ import annotations

import json
import random
from datetime import date
from typing import Any, Optional, Sequence, TypeVar

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from educonnect.config import get_settings
from educonnect.logging import get_logger
from educonnect.models import AcademicYear, GradeLevel, SchoolClass, StudentEnrollment, User

log = get_logger(__name__)

T = TypeVar("T")

# Elective combinations of the 2018 general education curriculum (grades 10-12).
SUBJECT_GROUPS: list[dict[str, Any]] = [
    {
        "code": "KHTN1",
        "name": "Khoa học tự nhiên 1",
        "type": "natural_sciences",
        "description": "Physics, chemistry, biology with informatics",
        "subject_codes": ["LY", "HOA", "SINH", "TIN"],
        "specialization_subjects": ["LY", "HOA", "SINH"],
    },
    {
        "code": "KHTN2",
        "name": "Khoa học tự nhiên 2",
        "type": "natural_sciences",
        "description": "Physics, chemistry, informatics with technology",
        "subject_codes": ["LY", "HOA", "TIN", "CN"],
        "specialization_subjects": ["LY", "HOA", "TIN"],
    },
    {
        "code": "KHXH1",
        "name": "Khoa học xã hội 1",
        "type": "social_sciences",
        "description": "History, geography, economics and law with informatics",
        "subject_codes": ["SU", "DIA", "GDKTPL", "TIN"],
        "specialization_subjects": ["SU", "DIA", "GDKTPL"],
    },
    {
        "code": "KHXH2",
        "name": "Khoa học xã hội 2",
        "type": "social_sciences",
        "description": "History, geography, economics and law with technology",
        "subject_codes": ["SU", "DIA", "GDKTPL", "CN"],
        "specialization_subjects": ["SU", "DIA", "GDKTPL"],
    },
]


def find_subject_group(code: Optional[str]) -> Optional[dict[str, Any]]:
    return next((g for g in SUBJECT_GROUPS if g["code"] == code), None)


def selected_group_code(metadata: Any) -> Optional[str]:
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            return None
    if not isinstance(metadata, dict):
        return None
    for key in ("selected_subject_group_code", "subject_group_code", "subjectGroupCode"):
        if metadata.get(key):
            return metadata[key]
    return None


def distribute_students(students: Sequence[T], max_per_class: int = 35, rng: Optional[random.Random] = None) -> list[list[T]]:
    if not students:
        return []
    if max_per_class < 1:
        raise ValueError("max_per_class must be at least 1")
    shuffled = list(students)
    (rng or random).shuffle(shuffled)
    return [shuffled[i : i + max_per_class] for i in range(0, len(shuffled), max_per_class)]


def _enrollment_rows(db: Session, academic_year_id: str, source_class_ids: Optional[list[str]] = None):
    stmt = (
        select(StudentEnrollment, User, SchoolClass)
        .join(User, User.id == StudentEnrollment.student_id)
        .join(SchoolClass, SchoolClass.id == StudentEnrollment.class_id)
        .where(StudentEnrollment.academic_year_id == academic_year_id, StudentEnrollment.is_active.is_(True))
        .order_by(User.full_name.asc(), StudentEnrollment.id.asc())
    )
    if source_class_ids:
        stmt = stmt.where(StudentEnrollment.class_id.in_(source_class_ids))
    return db.execute(stmt).all()


def subject_group_statistics(
    db: Session, academic_year_id: str, grade_level_id: Optional[str] = None, subject_group_code: Optional[str] = None
) -> dict:
    rows = _enrollment_rows(db, academic_year_id)
    if grade_level_id:
        rows = [r for r in rows if r[2].grade_level_id == grade_level_id]

    students = []
    for enrollment, student, school_class in rows:
        code = selected_group_code(student.metadata_json)
        students.append(
            {
                "enrollment_id": enrollment.id,
                "student_id": student.id,
                "student_name": student.full_name,
                "class_name": school_class.name,
                "class_is_combined": school_class.is_combined,
                "selected_subject_group_code": code,
                "is_eligible_for_combined": not school_class.is_combined and bool(code),
            }
        )

    distribution: dict[str, int] = {}
    for s in students:
        if s["selected_subject_group_code"]:
            distribution[s["selected_subject_group_code"]] = distribution.get(s["selected_subject_group_code"], 0) + 1
    with_selection = sum(distribution.values())
    return {
        "total_students": len(students),
        "with_selection": with_selection,
        "without_selection": len(students) - with_selection,
        "selections_by_group": [{"subject_group": g, "student_count": distribution.get(g["code"], 0)} for g in SUBJECT_GROUPS],
        "subject_group_distribution": distribution,
        "students": [s for s in students if s["selected_subject_group_code"] == subject_group_code] if subject_group_code else students,
    }


def create_combined_classes(
    db: Session,
    user: User,
    academic_year_id: Optional[str],
    grade_level_id: Optional[str],
    subject_group_code: Optional[str],
    class_name_prefix: Optional[str] = None,
    max_students_per_class: Optional[int] = None,
    source_class_ids: Optional[list[str]] = None,
    rng: Optional[random.Random] = None,
) -> dict:
    if not academic_year_id or not grade_level_id or not subject_group_code:
        raise HTTPException(status_code=400, detail="Academic year, grade level, and subject group are required")
    group = find_subject_group(subject_group_code)
    if not group:
        raise HTTPException(status_code=400, detail="Invalid subject group code")
    year = db.get(AcademicYear, academic_year_id)
    if not year:
        raise HTTPException(status_code=400, detail="Invalid academic year")
    grade = db.get(GradeLevel, grade_level_id)
    if not grade:
        raise HTTPException(status_code=400, detail="Invalid grade level")
    max_per_class = max_students_per_class or get_settings().max_students_per_combined_class
    if max_per_class < 1:
        raise HTTPException(status_code=400, detail="max_students_per_class must be at least 1")

    eligible = [
        enrollment
        for enrollment, student, school_class in _enrollment_rows(db, academic_year_id, source_class_ids)
        if school_class.grade_level_id == grade_level_id
        and not school_class.is_combined
        and selected_group_code(student.metadata_json) == subject_group_code
    ]
    groups = distribute_students(eligible, max_per_class, rng=rng) or [[]]

    year_code = "".join(year.name.split())
    group_metadata = {
        "class_type": "combined_class",
        "subject_group_code": subject_group_code,
        "subject_group_name": group["name"],
        "subject_group_type": group["type"],
        "subject_codes": group["subject_codes"],
        "specialization_subjects": group["specialization_subjects"],
        "created_from_selection": True,
    }

    created_classes = []
    enrollment_results = []
    for number, members in enumerate(groups, start=1):
        name = f"{class_name_prefix}-{number}" if class_name_prefix else f"{subject_group_code}-{grade.level}-{number}"
        metadata = dict(group_metadata)
        if members:
            metadata["source_classes"] = sorted({m.class_id for m in members})
        else:
            metadata["created_empty"] = True
        combined = SchoolClass(
            academic_year_id=academic_year_id,
            grade_level_id=grade_level_id,
            name=name,
            code=f"{subject_group_code}-{year_code}-{number}",
            capacity=max_per_class,
            is_combined=True,
            metadata_json=json.dumps(metadata, ensure_ascii=False),
            created_by=user.id,
        )
        db.add(combined)
        db.flush()
        # Students keep their base class enrollment and gain the combined one.
        for m in members:
            db.add(
                StudentEnrollment(
                    student_id=m.student_id,
                    class_id=combined.id,
                    academic_year_id=academic_year_id,
                    enrollment_date=date.today(),
                    is_active=True,
                )
            )
        created_classes.append(combined)
        enrollment_results.append({"class_id": combined.id, "class_name": name, "student_count": len(members)})
        log.info("combined_class_created", class_name=name, students=len(members), subject_group=subject_group_code)

    db.flush()
    total = sum(r["student_count"] for r in enrollment_results)
    return {
        "created_classes": created_classes,
        "enrollment_results": enrollment_results,
        "statistics": {
            "total_classes_created": len(created_classes),
            "total_students_enrolled": total,
            "subject_group": group,
            "academic_year": {"id": year.id, "name": year.name},
            "grade_level": {"id": grade.id, "name": grade.name, "level": grade.level},
        },
        "message": (
            f"Successfully created {len(created_classes)} combined classes for {subject_group_code} with {total} students"
            if total
            else "Combined class created successfully (empty - add students later)"
        ),
    }
