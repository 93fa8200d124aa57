import io
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from educonnect.main import app, get_db, serializer
from educonnect.models import (
    AcademicTerm,
    AcademicYear,
    Base,
    GradeLevel,
    SchoolClass,
    Subject,
    TeacherAssignment,
    TimeSlot,
    User,
)

XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    # No context manager: startup would create tables in the configured database.
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seed(db):
    """Two grade 10 classes, three teaching periods around a break, three subjects."""
    db.add_all(
        [
            User(id="ADMIN", username="admin", password="admin", full_name="Admin", role="school_administrator"),
            User(id="T01", username="an", password="an", full_name="Nguyễn Văn An", role="subject_teacher"),
            User(id="T02", username="binh", password="binh", full_name="Trần Thị Bình", role="homeroom_teacher"),
            User(id="ST01", username="hs01", password="hs01", full_name="Học sinh 01", role="student"),
            AcademicYear(id="Y2025", name="2025-2026", is_current=True),
            AcademicTerm(id="TERM1", academic_year_id="Y2025", name="Học kỳ 1"),
            AcademicTerm(id="TERM2", academic_year_id="Y2025", name="Học kỳ 2"),
            GradeLevel(id="G10", name="Khối 10", level=10),
            GradeLevel(id="G11", name="Khối 11", level=11),
            TimeSlot(id="SL1", name="Tiết 1", start_time="07:00", end_time="07:45", order_index=1),
            TimeSlot(id="SL2", name="Tiết 2", start_time="07:50", end_time="08:35", order_index=2),
            TimeSlot(id="BRK", name="Ra chơi", start_time="08:35", end_time="08:55", order_index=3, is_break=True),
            TimeSlot(id="SL3", name="Tiết 3", start_time="08:55", end_time="09:40", order_index=4),
            Subject(id="S01", name="Toán", code="TOAN"),
            Subject(id="S02", name="Ngữ văn", code="VAN"),
            Subject(id="S03", name="Vật lý", code="LY"),
            SchoolClass(id="C1", academic_year_id="Y2025", grade_level_id="G10", name="10A1", code="10A1"),
            SchoolClass(id="C2", academic_year_id="Y2025", grade_level_id="G10", name="10A2", code="10A2"),
        ]
    )
    db.flush()
    db.add_all(
        [
            TeacherAssignment(teacher_id="T01", class_id="C1", subject_id="S01", academic_term_id="TERM1"),
            TeacherAssignment(teacher_id="T01", class_id="C2", subject_id="S01", academic_term_id="TERM1"),
            TeacherAssignment(teacher_id="T02", class_id="C1", subject_id="S02", academic_term_id="TERM1"),
        ]
    )
    db.commit()
    return SimpleNamespace(admin_id="ADMIN", term_id="TERM1", year_id="Y2025", grade_id="G10")


@pytest.fixture
def token(seed):
    return serializer.dumps({"user_id": seed.admin_id})


@pytest.fixture
def teacher_token(seed):
    return serializer.dumps({"user_id": "T01"})


def grid_cell(day: int, period: int) -> tuple[int, int]:
    """(row, column) of a weekday (1 = Monday) and teaching period (1-based) in a class sheet."""
    return 9 + period, 1 + day


@pytest.fixture
def make_workbook():
    def build(sheets: dict, extra_sheets: tuple = (), class_labels: dict = None) -> bytes:
        wb = Workbook()
        wb.remove(wb.active)
        for title in extra_sheets:
            ws = wb.create_sheet(title)
            ws.cell(row=10, column=2, value="not a lesson")
        for title, cells in sheets.items():
            ws = wb.create_sheet(title)
            if class_labels and title in class_labels:
                ws.cell(row=2, column=1, value="Tên lớp:")
                ws.cell(row=2, column=2, value=class_labels[title])
            for (day, period), value in cells.items():
                row, col = grid_cell(day, period)
                ws.cell(row=row, column=col, value=value)
        buf = io.BytesIO()
        wb.save(buf)
        return buf.getvalue()

    return build


@pytest.fixture
def upload(client, token):
    def post(content: bytes, term_id: str = "TERM1", session_token: str = None, **form):
        data = {"academic_term_id": term_id, **{k: str(v) for k, v in form.items()}}
        return client.post(
            "/api/teaching-schedules/import-excel",
            params={"session_token": session_token or token},
            data=data,
            files={"file": ("tkb.xlsx", content, XLSX)},
        )

    return post
