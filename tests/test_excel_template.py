import io

from openpyxl import load_workbook

from educonnect.excel_template import build_timetable_template, safe_sheet_title
from educonnect.models import AcademicTerm, SchoolClass, TeacherAssignment, User
from educonnect.timetable_import import TimetableImporter, parse_teacher_cell


def load(content: bytes):
    return load_workbook(io.BytesIO(content))


def test_template_layout(db, seed):
    wb = load(build_timetable_template(db, db.get(AcademicTerm, "TERM1"), week_number=3))
    assert wb.sheetnames == ["Timetable", "Danh sách giáo viên", "10A1", "10A2", "Danh sách môn học", "Khung giờ học", "Hướng dẫn sử dụng"]

    ws = wb["10A1"]
    assert ws["A2"].value == "Tên lớp:"
    assert ws["B2"].value == "10A1"
    assert ws["B7"].value == 3
    assert [ws.cell(row=9, column=c).value for c in range(1, 8)] == ["Tiết học", "Thứ 2", "Thứ 3", "Thứ 4", "Thứ 5", "Thứ 6", "Thứ 7"]
    # the break is not a grid row
    assert [ws.cell(row=r, column=1).value for r in range(10, 13)] == ["Tiết 1 (07:00 - 07:45)", "Tiết 2 (07:50 - 08:35)", "Tiết 3 (08:55 - 09:40)"]
    assert ws["B10"].value == "Chào cờ"
    assert ws["G12"].value == "Sinh hoạt lớp"
    assert len(ws.data_validations.dataValidation) == 1


def test_options_come_from_assignments(db, seed):
    wb = load(build_timetable_template(db, db.get(AcademicTerm, "TERM1")))
    options = wb["Danh sách giáo viên"]
    column = [c.value for c in options["A"] if c.value]
    assert column == ["10A1", "Nguyễn Văn An - Toán (T01|S01)", "Trần Thị Bình - Ngữ văn (T02|S02)"]


def test_teacher_without_display_name_uses_username(db, seed):
    db.add(User(id="T03", username="cuong", password="cuong", full_name="", role="subject_teacher"))
    db.flush()
    db.add(TeacherAssignment(teacher_id="T03", class_id="C2", subject_id="S03", academic_term_id="TERM1"))
    db.commit()
    wb = load(build_timetable_template(db, db.get(AcademicTerm, "TERM1"), class_id="C2"))
    options = [c.value for c in wb["Danh sách giáo viên"]["A"] if c.value]
    assert "cuong - Vật lý (T03|S03)" in options
    parsed = parse_teacher_cell("cuong - Vật lý (T03|S03)")
    assert (parsed.teacher_id, parsed.subject_id) == ("T03", "S03")


def test_classes_without_assignments_offer_every_teacher_and_subject(db, seed):
    db.add(SchoolClass(id="C3", academic_year_id="Y2025", grade_level_id="G10", name="10A3", code="10A3"))
    db.commit()
    wb = load(build_timetable_template(db, db.get(AcademicTerm, "TERM1"), class_id="C3"))
    options = [c.value for c in wb["Danh sách giáo viên"]["A"] if c.value]
    # admin, two teachers, three subjects
    assert len(options) == 1 + 3 * 3


def test_class_type_filter(db, seed):
    db.add(SchoolClass(id="CC", academic_year_id="Y2025", grade_level_id="G10", name="KHTN1-10-1", code="KHTN1-1", is_combined=True))
    db.commit()
    term = db.get(AcademicTerm, "TERM1")
    assert "KHTN1-10-1" not in load(build_timetable_template(db, term, class_type="base")).sheetnames
    combined = load(build_timetable_template(db, term, class_type="combined")).sheetnames
    assert "KHTN1-10-1" in combined
    assert "10A1" not in combined


def test_untouched_template_imports_fixed_activities(db, seed):
    term = db.get(AcademicTerm, "TERM1")
    content = build_timetable_template(db, term)
    result = TimetableImporter(db, term, db.get(User, "ADMIN")).run(content)
    assert result["success"] is True
    assert result["summary"]["total_classes"] == 2
    assert result["summary"]["total_schedules"] == 4


def test_safe_sheet_title():
    taken = {"Timetable"}
    assert safe_sheet_title("10/A1", taken) == "10-A1"
    assert safe_sheet_title("10/A1", taken) == "10-A1 (2)"
    assert len(safe_sheet_title("x" * 40, taken)) == 31


def test_template_endpoint(client, token):
    res = client.get("/api/teaching-schedules/excel-template", params={"session_token": token, "academic_term_id": "TERM1"})
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")
    assert res.headers["content-disposition"].startswith('attachment; filename="timetable_template_')
    assert "10A1" in load(res.content).sheetnames
    assert client.get("/api/teaching-schedules/excel-template", params={"session_token": token, "academic_term_id": "NOPE"}).status_code == 404
