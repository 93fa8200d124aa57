from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from educonnect.config import get_settings


# roles that may be timetabled or assigned to teach
TEACHER_ROLES = ("subject_teacher", "homeroom_teacher", "school_administrator")


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    username: Mapped[str] = mapped_column(String, unique=True, index=True)
    password: Mapped[str] = mapped_column(String)
    full_name: Mapped[str] = mapped_column(String, default="")
    # school_administrator, subject_teacher, homeroom_teacher, student, parent
    role: Mapped[str] = mapped_column(String, default="student")
    status: Mapped[str] = mapped_column(String, default="active")
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    actor_user_id: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class AcademicYear(Base):
    __tablename__ = "academic_years"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, unique=True)
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, default=False)


class AcademicTerm(Base):
    __tablename__ = "academic_terms"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    academic_year_id: Mapped[str] = mapped_column(String, ForeignKey("academic_years.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)


class GradeLevel(Base):
    __tablename__ = "grade_levels"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String)
    level: Mapped[int] = mapped_column(Integer, index=True)


class SchoolClass(Base):
    __tablename__ = "classes"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    academic_year_id: Mapped[str] = mapped_column(String, ForeignKey("academic_years.id"), index=True)
    grade_level_id: Mapped[str] = mapped_column(String, ForeignKey("grade_levels.id"), index=True)
    name: Mapped[str] = mapped_column(String, index=True)
    code: Mapped[str] = mapped_column(String, index=True)
    capacity: Mapped[int] = mapped_column(Integer, default=30)
    is_combined: Mapped[bool] = mapped_column(Boolean, default=False)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Subject(Base):
    __tablename__ = "subjects"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, index=True)
    code: Mapped[str] = mapped_column(String, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    periods_per_week: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class TimeSlot(Base):
    __tablename__ = "time_slots"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String)
    start_time: Mapped[str] = mapped_column(String)  # "07:00"
    end_time: Mapped[str] = mapped_column(String)
    order_index: Mapped[int] = mapped_column(Integer, index=True)
    is_break: Mapped[bool] = mapped_column(Boolean, default=False)


class TeacherAssignment(Base):
    __tablename__ = "teacher_assignments"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    teacher_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    class_id: Mapped[str] = mapped_column(String, ForeignKey("classes.id"), index=True)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    academic_term_id: Mapped[str] = mapped_column(String, ForeignKey("academic_terms.id"), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class TeachingSchedule(Base):
    __tablename__ = "teaching_schedules"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    academic_term_id: Mapped[str] = mapped_column(String, ForeignKey("academic_terms.id"), index=True)
    class_id: Mapped[str] = mapped_column(String, ForeignKey("classes.id"), index=True)
    teacher_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("users.id"), nullable=True, index=True)
    subject_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("subjects.id"), nullable=True)
    day_of_week: Mapped[int] = mapped_column(Integer)  # 1 = Monday ... 7 = Sunday
    time_slot_id: Mapped[str] = mapped_column(String, ForeignKey("time_slots.id"))
    week_number: Mapped[int] = mapped_column(Integer, default=1)
    room_number: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_special_activity: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[Optional[str]] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class StudentEnrollment(Base):
    __tablename__ = "student_enrollments"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    class_id: Mapped[str] = mapped_column(String, ForeignKey("classes.id"), index=True)
    academic_year_id: Mapped[str] = mapped_column(String, ForeignKey("academic_years.id"), index=True)
    enrollment_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class StudentGrade(Base):
    __tablename__ = "student_grades"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    academic_term_id: Mapped[str] = mapped_column(String, ForeignKey("academic_terms.id"), index=True)
    # regular_1, regular_2, ..., midterm, final, summary
    component_type: Mapped[str] = mapped_column(String)
    grade_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


engine = create_engine(get_settings().database_url, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
