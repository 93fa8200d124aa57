from __future__ import annotations

import io
import re
from datetime import datetime
from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.datavalidation import DataValidation
from sqlalchemy import select
from sqlalchemy.orm import Session

from educonnect.config import Settings, get_settings
from educonnect.models import TEACHER_ROLES, AcademicTerm, AcademicYear, GradeLevel, SchoolClass, Subject, TeacherAssignment, TimeSlot, User

DAY_LABELS = ["Thứ 2", "Thứ 3", "Thứ 4", "Thứ 5", "Thứ 6", "Thứ 7"]
OPTIONS_SHEET = "Danh sách giáo viên"
SUBJECTS_SHEET = "Danh sách môn học"
SLOTS_SHEET = "Khung giờ học"
GUIDE_SHEET = "Hướng dẫn sử dụng"
FLAG_CEREMONY = "Chào cờ"
CLASS_MEETING = "Sinh hoạt lớp"

HEADER_FONT = Font(bold=True)
HEADER_FILL = PatternFill("solid", fgColor="E6F3FF")
SLOT_FILL = PatternFill("solid", fgColor="F0F0F0")
THIN = Side(style="thin")
BORDER = Border(left=THIN, right=THIN, top=THIN, bottom=THIN)

GUIDE_LINES = [
    "Each class has its own sheet; the sheet (or the 'Tên lớp:' cell) names the class.",
    "Pick 'Teacher - Subject (teacher_id|subject_id)' from the drop-down in each cell.",
    "A room can be appended as ' - Room', e.g. 'Nguyen Van A - Toan (T01|S02) - P101'.",
    f"'{FLAG_CEREMONY}' and '{CLASS_MEETING}' are imported as fixed activities.",
    "Free text that is not in the list is matched against subject names and codes.",
    "Leave a cell empty for a free period.",
]


def slot_label(slot: TimeSlot) -> str:
    return f"{slot.name} ({slot.start_time} - {slot.end_time})"


def assignment_option(teacher: User, subject: Subject) -> str:
    # blank display names fall back to the login name
    teacher_name = (teacher.full_name or "").strip() or teacher.username or teacher.id
    return f"{teacher_name} - {subject.name} ({teacher.id}|{subject.id})"


def safe_sheet_title(name: str, taken: set[str]) -> str:
    base = re.sub(r"[\[\]:*?/\\]", "-", name).strip()[:31] or "Class"
    title = base
    n = 1
    while title in taken:
        n += 1
        suffix = f" ({n})"
        title = base[: 31 - len(suffix)] + suffix
    taken.add(title)
    return title


def template_filename(term: AcademicTerm, week_number: int) -> str:
    safe_term = re.sub(r"[^A-Za-z0-9]+", "-", term.name or "term").strip("-").lower() or "term"
    return f"timetable_template_{safe_term}_week{week_number}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.xlsx"


def _style_header(ws, row: int, columns: int) -> None:
    for col in range(1, columns + 1):
        cell = ws.cell(row=row, column=col)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.border = BORDER
        cell.alignment = Alignment(horizontal="center", vertical="center")


def _set_grid_widths(ws) -> None:
    ws.column_dimensions["A"].width = 25
    for col in range(2, 2 + len(DAY_LABELS)):
        ws.column_dimensions[get_column_letter(col)].width = 30


def _class_options(db: Session, classes: list[SchoolClass], term: AcademicTerm) -> dict[str, list[str]]:
    rows = db.execute(
        select(TeacherAssignment, User, Subject)
        .join(User, User.id == TeacherAssignment.teacher_id)
        .join(Subject, Subject.id == TeacherAssignment.subject_id)
        .where(TeacherAssignment.academic_term_id == term.id, TeacherAssignment.is_active.is_(True))
        .order_by(User.full_name.asc(), Subject.name.asc())
    ).all()
    by_class: dict[str, list[str]] = {}
    for assignment, teacher, subject in rows:
        by_class.setdefault(assignment.class_id, []).append(assignment_option(teacher, subject))

    fallback: Optional[list[str]] = None
    options: dict[str, list[str]] = {}
    for c in classes:
        if by_class.get(c.id):
            options[c.id] = by_class[c.id]
            continue
        if fallback is None:
            teachers = db.scalars(
                select(User).where(User.role.in_(TEACHER_ROLES), User.status == "active").order_by(User.full_name.asc())
            ).all()
            subjects = db.scalars(select(Subject).order_by(Subject.name.asc())).all()
            fallback = [assignment_option(t, s) for t in teachers for s in subjects]
        options[c.id] = fallback
    return options


def build_timetable_template(
    db: Session,
    term: AcademicTerm,
    week_number: int = 1,
    class_type: str = "all",
    class_id: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> bytes:
    settings = settings or get_settings()
    year = db.get(AcademicYear, term.academic_year_id)
    stmt = select(SchoolClass).where(SchoolClass.academic_year_id == term.academic_year_id)
    if class_type == "base":
        stmt = stmt.where(SchoolClass.is_combined.is_(False))
    elif class_type == "combined":
        stmt = stmt.where(SchoolClass.is_combined.is_(True))
    if class_id:
        stmt = stmt.where(SchoolClass.id == class_id)
    classes = db.scalars(stmt.order_by(SchoolClass.name.asc())).all()
    grade_levels = {g.id: g for g in db.scalars(select(GradeLevel)).all()}
    slots = db.scalars(select(TimeSlot).order_by(TimeSlot.order_index.asc())).all()
    teaching_slots = [s for s in slots if not s.is_break]
    options = _class_options(db, classes, term)

    wb = Workbook()
    main = wb.active
    main.title = "Timetable"
    main.append(["Tiết học", *DAY_LABELS])
    _style_header(main, 1, 1 + len(DAY_LABELS))
    for slot in teaching_slots:
        main.append([slot_label(slot), *([""] * len(DAY_LABELS))])
        main.cell(row=main.max_row, column=1).fill = SLOT_FILL
    _set_grid_widths(main)

    options_ws = wb.create_sheet(OPTIONS_SHEET)
    taken = {"Timetable", OPTIONS_SHEET, SUBJECTS_SHEET, SLOTS_SHEET, GUIDE_SHEET}
    start_row = settings.import_start_row
    first_col = settings.import_first_day_column

    for index, c in enumerate(classes, start=1):
        ws = wb.create_sheet(safe_sheet_title(c.name, taken))
        grade = grade_levels.get(c.grade_level_id)
        ws.append(["Thông tin lớp"])
        ws.append(["Tên lớp:", c.name])
        ws.append(["Khối:", grade.name if grade else ""])
        ws.append(["Loại lớp:", "Lớp ghép" if c.is_combined else "Lớp tách"])
        ws.append(["Năm học:", year.name if year else ""])
        ws.append(["Học kỳ:", term.name])
        ws.append(["Tuần:", week_number])
        ws.cell(row=1, column=1).font = HEADER_FONT

        header_row = start_row - 1
        for col, label in enumerate(["Tiết học", *DAY_LABELS], start=first_col - 1):
            ws.cell(row=header_row, column=col, value=label)
        _style_header(ws, header_row, first_col - 1 + len(DAY_LABELS))

        class_options = options.get(c.id) or []
        validation = None
        if class_options:
            letter = get_column_letter(index)
            options_ws.cell(row=1, column=index, value=c.name).font = HEADER_FONT
            for i, option in enumerate(class_options, start=2):
                options_ws.cell(row=i, column=index, value=option)
            validation = DataValidation(
                type="list",
                formula1=f"'{OPTIONS_SHEET}'!${letter}$2:${letter}${len(class_options) + 1}",
                allow_blank=True,
                showErrorMessage=False,
                showInputMessage=True,
            )
            validation.promptTitle = "Teacher and subject"
            validation.prompt = "Pick from the list or type a subject name"
            ws.add_data_validation(validation)

        last = len(teaching_slots) - 1
        for slot_index, slot in enumerate(teaching_slots):
            row = start_row + slot_index
            label_cell = ws.cell(row=row, column=first_col - 1, value=slot_label(slot))
            label_cell.fill = SLOT_FILL
            label_cell.border = BORDER
            for day_index in range(len(DAY_LABELS)):
                cell = ws.cell(row=row, column=first_col + day_index)
                cell.border = BORDER
                if day_index == 0 and slot_index == 0:
                    cell.value = FLAG_CEREMONY
                elif day_index == len(DAY_LABELS) - 1 and slot_index == last:
                    cell.value = CLASS_MEETING
                elif validation is not None:
                    validation.add(cell.coordinate)
        _set_grid_widths(ws)

    subjects_ws = wb.create_sheet(SUBJECTS_SHEET)
    subjects_ws.append(["Tên môn", "Mã môn", "ID"])
    _style_header(subjects_ws, 1, 3)
    for s in db.scalars(select(Subject).order_by(Subject.name.asc())).all():
        subjects_ws.append([s.name, s.code, s.id])

    slots_ws = wb.create_sheet(SLOTS_SHEET)
    slots_ws.append(["Tiết", "Bắt đầu", "Kết thúc", "Nghỉ giải lao"])
    _style_header(slots_ws, 1, 4)
    for slot in slots:
        slots_ws.append([slot.name, slot.start_time, slot.end_time, "x" if slot.is_break else ""])

    guide_ws = wb.create_sheet(GUIDE_SHEET)
    for line in GUIDE_LINES:
        guide_ws.append([line])
    guide_ws.column_dimensions["A"].width = 90

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()
