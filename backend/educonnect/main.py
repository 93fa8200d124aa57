from __future__ import annotations

import io
import json
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from itsdangerous import BadSignature, URLSafeSerializer
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.inspection import inspect
from sqlalchemy.orm import Session

from educonnect.combined_classes import SUBJECT_GROUPS, create_combined_classes, subject_group_statistics
from educonnect.config import get_settings
from educonnect.errors import WorkbookError
from educonnect.excel_template import build_timetable_template, template_filename
from educonnect.grades import student_subject_averages
from educonnect.logging import get_logger, setup_logging
from educonnect.models import (
    TEACHER_ROLES,
    AcademicTerm,
    AcademicYear,
    AuditLog,
    Base,
    GradeLevel,
    SchoolClass,
    SessionLocal,
    StudentEnrollment,
    Subject,
    TeacherAssignment,
    TeachingSchedule,
    TimeSlot,
    User,
    engine,
)
from educonnect.timetable_import import TimetableImporter

settings = get_settings()
serializer = URLSafeSerializer(settings.session_secret, salt="educonnect")
log = get_logger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

app = FastAPI(title="EduConnect school management API")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])


class LoginIn(BaseModel):
    username: str
    password: str


class TimeSlotIn(BaseModel):
    name: str
    start_time: str = Field(pattern=r"^\d{2}:\d{2}$")
    end_time: str = Field(pattern=r"^\d{2}:\d{2}$")
    order_index: int
    is_break: bool = False


class SubjectIn(BaseModel):
    name: str
    code: str
    description: Optional[str] = None
    periods_per_week: Optional[int] = None


class TeacherAssignmentIn(BaseModel):
    teacher_id: str
    class_id: str
    subject_id: str
    academic_term_id: str


class CombinedClassIn(BaseModel):
    academic_year_id: Optional[str] = None
    grade_level_id: Optional[str] = None
    subject_group_code: Optional[str] = None
    class_name_prefix: Optional[str] = None
    max_students_per_class: Optional[int] = None
    source_class_ids: list[str] = Field(default_factory=list)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(session_token: Optional[str] = Query(None), db: Session = Depends(get_db)) -> User:
    if not session_token:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        payload = serializer.loads(session_token)
    except BadSignature as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    user = db.get(User, payload["user_id"])
    if not user or user.status != "active":
        raise HTTPException(status_code=401, detail="Invalid user")
    return user


def require_admin(user: User = Depends(current_user)) -> User:
    if user.role != "school_administrator":
        raise HTTPException(status_code=403, detail="school_administrator role required")
    return user


def write_audit(db: Session, user: User, action: str, entity: str, entity_id: str, payload: Optional[str] = None) -> None:
    db.add(AuditLog(actor_user_id=user.id, action=action, entity_type=entity, entity_id=entity_id, payload=payload))
    db.commit()


def serialize(instance):
    return {c.key: getattr(instance, c.key) for c in inspect(instance).mapper.column_attrs}


def get_or_create(db: Session, model, defaults: Optional[dict] = None, **filters):
    row = db.scalar(select(model).filter_by(**filters))
    if row:
        return row, False
    row = model(**filters, **(defaults or {}))
    db.add(row)
    db.flush()
    return row, True


def seed_demo_data(db: Session, actor_user_id: Optional[str] = None) -> dict:
    """Load a small school year: slots, subjects, teachers, two grade 10 classes and students."""
    created: dict[str, int] = {}

    def track(kind: str, was_created: bool) -> None:
        if was_created:
            created[kind] = created.get(kind, 0) + 1

    year, was_created = get_or_create(db, AcademicYear, name="2025-2026", defaults={"start_date": date(2025, 9, 5), "end_date": date(2026, 5, 31), "is_current": True})
    track("academic_years", was_created)
    term, was_created = get_or_create(db, AcademicTerm, academic_year_id=year.id, name="Học kỳ 1", defaults={"start_date": date(2025, 9, 5), "end_date": date(2026, 1, 15)})
    track("academic_terms", was_created)
    _, was_created = get_or_create(db, AcademicTerm, academic_year_id=year.id, name="Học kỳ 2", defaults={"start_date": date(2026, 1, 19), "end_date": date(2026, 5, 31)})
    track("academic_terms", was_created)

    grades = {}
    for level in (10, 11, 12):
        grades[level], was_created = get_or_create(db, GradeLevel, level=level, defaults={"name": f"Khối {level}"})
        track("grade_levels", was_created)

    slot_rows = [
        ("Tiết 1", "07:00", "07:45", False),
        ("Tiết 2", "07:50", "08:35", False),
        ("Ra chơi", "08:35", "08:55", True),
        ("Tiết 3", "08:55", "09:40", False),
        ("Tiết 4", "09:45", "10:30", False),
        ("Tiết 5", "10:35", "11:20", False),
    ]
    for order_index, (name, start, end, is_break) in enumerate(slot_rows, start=1):
        _, was_created = get_or_create(db, TimeSlot, name=name, defaults={"start_time": start, "end_time": end, "order_index": order_index, "is_break": is_break})
        track("time_slots", was_created)

    subject_rows = [
        ("Toán", "TOAN"),
        ("Ngữ văn", "VAN"),
        ("Tiếng Anh", "ANH"),
        ("Vật lý", "LY"),
        ("Hóa học", "HOA"),
        ("Sinh học", "SINH"),
        ("Tin học", "TIN"),
        ("Lịch sử", "SU"),
        ("Địa lý", "DIA"),
        ("Giáo dục kinh tế và pháp luật", "GDKTPL"),
        ("Công nghệ", "CN"),
    ]
    subjects = {}
    for name, code in subject_rows:
        subjects[code], was_created = get_or_create(db, Subject, code=code, defaults={"name": name, "periods_per_week": 3})
        track("subjects", was_created)

    teacher_rows = [
        ("gv_toan", "Nguyễn Văn An", "homeroom_teacher", "TOAN"),
        ("gv_van", "Trần Thị Bình", "homeroom_teacher", "VAN"),
        ("gv_anh", "Lê Minh Châu", "subject_teacher", "ANH"),
        ("gv_ly", "Phạm Quốc Dũng", "subject_teacher", "LY"),
        ("gv_hoa", "Hoàng Thu Hà", "subject_teacher", "HOA"),
    ]
    teachers = []
    for username, full_name, role, subject_code in teacher_rows:
        teacher, was_created = get_or_create(db, User, username=username, defaults={"password": username, "full_name": full_name, "role": role})
        track("teachers", was_created)
        teachers.append((teacher, subjects[subject_code]))

    groups = [g["code"] for g in SUBJECT_GROUPS]
    for class_index, class_name in enumerate(("10A1", "10A2"), start=1):
        school_class, was_created = get_or_create(
            db,
            SchoolClass,
            academic_year_id=year.id,
            name=class_name,
            defaults={"grade_level_id": grades[10].id, "code": class_name, "capacity": 40, "created_by": actor_user_id},
        )
        track("classes", was_created)
        for teacher, subject in teachers:
            _, was_created = get_or_create(
                db, TeacherAssignment, teacher_id=teacher.id, class_id=school_class.id, subject_id=subject.id, academic_term_id=term.id
            )
            track("teacher_assignments", was_created)
        for n in range(1, 9):
            username = f"hs_{class_name.lower()}_{n:02d}"
            metadata = {"selected_subject_group_code": groups[(n + class_index) % len(groups)]}
            student, was_created = get_or_create(
                db,
                User,
                username=username,
                defaults={"password": username, "full_name": f"Học sinh {class_name} {n:02d}", "role": "student", "metadata_json": json.dumps(metadata)},
            )
            track("students", was_created)
            _, was_created = get_or_create(
                db,
                StudentEnrollment,
                student_id=student.id,
                class_id=school_class.id,
                academic_year_id=year.id,
                defaults={"enrollment_date": year.start_date},
            )
            track("enrollments", was_created)
    return created


@app.on_event("startup")
def startup():
    setup_logging(json_output=settings.log_json, log_level=settings.log_level, log_sql=settings.log_sql)
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        if not db.scalar(select(User).where(User.username == "school_admin")):
            db.add(User(username="school_admin", password="school_admin", full_name="School Administrator", role="school_administrator"))
        db.commit()
    log.info("startup_complete", database_url=settings.database_url)


@app.exception_handler(Exception)
def unhandled_exception(request: Request, exc: Exception):
    log.exception("unhandled_exception", path=request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/demo/load-data")
def load_demo_data(db: Session = Depends(get_db), user: User = Depends(require_admin)):
    summary = seed_demo_data(db, actor_user_id=user.id)
    db.commit()
    write_audit(db, user, "SEED_DEMO_DATA", "System", "demo", json.dumps(summary))
    return {"status": "ok", "summary": summary}


@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    user = db.scalar(select(User).where(User.username == payload.username))
    if not user or user.password != payload.password or user.status != "active":
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"session_token": serializer.dumps({"user_id": user.id}), "role": user.role, "full_name": user.full_name}


@app.get("/api/time-slots")
def list_time_slots(db: Session = Depends(get_db), _: User = Depends(current_user)):
    return [serialize(s) for s in db.scalars(select(TimeSlot).order_by(TimeSlot.order_index.asc())).all()]


@app.post("/api/time-slots")
def create_time_slot(payload: TimeSlotIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    if payload.start_time >= payload.end_time:
        raise HTTPException(status_code=400, detail="start_time must be before end_time")
    if db.scalar(select(TimeSlot).where(TimeSlot.order_index == payload.order_index)):
        raise HTTPException(status_code=400, detail=f"A time slot with order_index {payload.order_index} already exists")
    slot = TimeSlot(**payload.model_dump())
    db.add(slot)
    db.commit()
    db.refresh(slot)
    write_audit(db, user, "CREATE", "TimeSlot", slot.id, json.dumps(payload.model_dump()))
    return serialize(slot)


@app.get("/api/subjects")
def list_subjects(db: Session = Depends(get_db), _: User = Depends(current_user)):
    return [serialize(s) for s in db.scalars(select(Subject).order_by(Subject.name.asc())).all()]


@app.post("/api/subjects")
def create_subject(payload: SubjectIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    code = payload.code.strip().upper()
    if not code or not payload.name.strip():
        raise HTTPException(status_code=400, detail="Subject name and code are required")
    if db.scalar(select(Subject).where(Subject.code == code)):
        raise HTTPException(status_code=400, detail=f"Subject code {code} already exists")
    subject = Subject(**{**payload.model_dump(), "name": payload.name.strip(), "code": code})
    db.add(subject)
    db.commit()
    db.refresh(subject)
    write_audit(db, user, "CREATE", "Subject", subject.id, json.dumps(payload.model_dump(), ensure_ascii=False))
    return serialize(subject)


@app.get("/api/classes")
def list_classes(
    academic_year_id: Optional[str] = None,
    grade_level_id: Optional[str] = None,
    is_combined: Optional[bool] = None,
    db: Session = Depends(get_db),
    _: User = Depends(current_user),
):
    stmt = select(SchoolClass)
    if academic_year_id:
        stmt = stmt.where(SchoolClass.academic_year_id == academic_year_id)
    if grade_level_id:
        stmt = stmt.where(SchoolClass.grade_level_id == grade_level_id)
    if is_combined is not None:
        stmt = stmt.where(SchoolClass.is_combined.is_(is_combined))
    return [serialize(c) for c in db.scalars(stmt.order_by(SchoolClass.name.asc())).all()]


@app.get("/api/teacher-assignments")
def list_teacher_assignments(
    academic_term_id: Optional[str] = None,
    class_id: Optional[str] = None,
    teacher_id: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(current_user),
):
    stmt = select(TeacherAssignment).where(TeacherAssignment.is_active.is_(True))
    if academic_term_id:
        stmt = stmt.where(TeacherAssignment.academic_term_id == academic_term_id)
    if class_id:
        stmt = stmt.where(TeacherAssignment.class_id == class_id)
    if teacher_id:
        stmt = stmt.where(TeacherAssignment.teacher_id == teacher_id)
    return [serialize(a) for a in db.scalars(stmt).all()]


@app.post("/api/teacher-assignments")
def create_teacher_assignment(payload: TeacherAssignmentIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    teacher = db.get(User, payload.teacher_id)
    if not teacher or teacher.role not in TEACHER_ROLES:
        raise HTTPException(status_code=404, detail="Teacher not found")
    if not db.get(SchoolClass, payload.class_id):
        raise HTTPException(status_code=404, detail="Class not found")
    if not db.get(Subject, payload.subject_id):
        raise HTTPException(status_code=404, detail="Subject not found")
    if not db.get(AcademicTerm, payload.academic_term_id):
        raise HTTPException(status_code=404, detail="Academic term not found")
    existing = db.scalar(
        select(TeacherAssignment).where(
            TeacherAssignment.teacher_id == payload.teacher_id,
            TeacherAssignment.class_id == payload.class_id,
            TeacherAssignment.subject_id == payload.subject_id,
            TeacherAssignment.academic_term_id == payload.academic_term_id,
        )
    )
    if existing and existing.is_active:
        raise HTTPException(status_code=400, detail="Teacher is already assigned to this class and subject")
    if existing:
        existing.is_active = True
        assignment = existing
    else:
        assignment = TeacherAssignment(**payload.model_dump())
        db.add(assignment)
    db.commit()
    db.refresh(assignment)
    write_audit(db, user, "CREATE", "TeacherAssignment", assignment.id, json.dumps(payload.model_dump()))
    return serialize(assignment)


@app.get("/api/teaching-schedules")
def list_teaching_schedules(
    academic_term_id: str,
    class_id: Optional[str] = None,
    teacher_id: Optional[str] = None,
    week_number: Optional[int] = None,
    db: Session = Depends(get_db),
    _: User = Depends(current_user),
):
    stmt = (
        select(TeachingSchedule, TimeSlot)
        .join(TimeSlot, TimeSlot.id == TeachingSchedule.time_slot_id)
        .where(TeachingSchedule.academic_term_id == academic_term_id, TeachingSchedule.is_active.is_(True))
    )
    if class_id:
        stmt = stmt.where(TeachingSchedule.class_id == class_id)
    if teacher_id:
        stmt = stmt.where(TeachingSchedule.teacher_id == teacher_id)
    if week_number is not None:
        stmt = stmt.where(TeachingSchedule.week_number == week_number)
    rows = db.execute(stmt.order_by(TeachingSchedule.day_of_week.asc(), TimeSlot.order_index.asc())).all()
    return [{**serialize(schedule), "time_slot_name": slot.name, "start_time": slot.start_time, "end_time": slot.end_time} for schedule, slot in rows]


@app.get("/api/teaching-schedules/excel-template")
def download_timetable_template(
    academic_term_id: str,
    week_number: int = Query(1, ge=1),
    class_type: str = Query("all", pattern="^(all|base|combined)$"),
    class_id: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(current_user),
):
    term = db.get(AcademicTerm, academic_term_id)
    if not term:
        raise HTTPException(status_code=404, detail="Academic term not found")
    content = build_timetable_template(db, term, week_number=week_number, class_type=class_type, class_id=class_id, settings=settings)
    filename = template_filename(term, week_number)
    return StreamingResponse(io.BytesIO(content), media_type=XLSX_MEDIA_TYPE, headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@app.post("/api/teaching-schedules/import-excel")
def import_timetable_excel(
    file: Optional[UploadFile] = File(None),
    academic_term_id: Optional[str] = Form(None),
    week_number: Optional[str] = Form(None),
    replace_existing: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_admin),
):
    if file is None:
        raise HTTPException(status_code=400, detail="No file provided")
    if not academic_term_id:
        raise HTTPException(status_code=400, detail="Academic term ID is required")
    try:
        week = int(week_number) if week_number not in (None, "") else 1
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="week_number must be an integer") from exc
    if week < 1:
        raise HTTPException(status_code=400, detail="week_number must be at least 1")
    replace = (replace_existing or "").strip().lower() in ("true", "1", "yes", "on")

    term = db.get(AcademicTerm, academic_term_id)
    if not term:
        raise HTTPException(status_code=404, detail="Academic term not found")

    try:
        importer = TimetableImporter(db, term, user, week_number=week, replace_existing=replace, settings=settings)
        result = importer.run(file.file.read())
    except WorkbookError as exc:
        db.rollback()
        log.warning("timetable_workbook_rejected", term_id=term.id, error=str(exc))
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})
    except Exception as exc:
        db.rollback()
        log.exception("timetable_import_failed", term_id=term.id)
        return JSONResponse(status_code=500, content={"success": False, "error": f"Failed to import timetable: {exc}"})

    if not result["success"]:
        return JSONResponse(status_code=400, content=result)
    return result


@app.get("/api/subject-groups")
def list_subject_groups(_: User = Depends(current_user)):
    return SUBJECT_GROUPS


@app.get("/api/classes/create-combined")
def combined_class_statistics(
    academic_year_id: Optional[str] = None,
    grade_level_id: Optional[str] = None,
    subject_group_code: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(current_user),
):
    if not academic_year_id:
        raise HTTPException(status_code=400, detail="academic_year_id is required")
    return {"success": True, "data": subject_group_statistics(db, academic_year_id, grade_level_id, subject_group_code)}


@app.post("/api/classes/create-combined")
def create_combined(payload: CombinedClassIn, db: Session = Depends(get_db), user: User = Depends(require_admin)):
    try:
        outcome = create_combined_classes(
            db,
            user,
            payload.academic_year_id,
            payload.grade_level_id,
            payload.subject_group_code,
            class_name_prefix=payload.class_name_prefix,
            max_students_per_class=payload.max_students_per_class,
            source_class_ids=payload.source_class_ids,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    write_audit(db, user, "CREATE_COMBINED", "SchoolClass", payload.subject_group_code, json.dumps(payload.model_dump()))
    return {
        "success": True,
        "data": {
            "created_classes": [serialize(c) for c in outcome["created_classes"]],
            "enrollment_results": outcome["enrollment_results"],
            "statistics": outcome["statistics"],
        },
        "message": outcome["message"],
    }


@app.get("/api/grades/students/{student_id}/averages")
def student_averages(student_id: str, academic_term_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    student = db.get(User, student_id)
    if not student or student.role != "student":
        raise HTTPException(status_code=404, detail="Student not found")
    if user.role == "student" and user.id != student_id:
        raise HTTPException(status_code=403, detail="Cannot view another student's grades")
    if not db.get(AcademicTerm, academic_term_id):
        raise HTTPException(status_code=404, detail="Academic term not found")
    subjects = student_subject_averages(db, student_id, academic_term_id)
    return {"student_id": student_id, "academic_term_id": academic_term_id, "subjects": subjects}
