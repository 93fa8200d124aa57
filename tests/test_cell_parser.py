import unicodedata

import pytest

from educonnect.timetable_import import cell_text, is_special_activity, parse_teacher_cell


def test_assignment_cell_with_room():
    parsed = parse_teacher_cell("Nguyen Van A - Toan (T01|S02) - P101")
    assert parsed.model_dump() == {"teacher_id": "T01", "subject_id": "S02", "subject_name": "Toan", "room_number": "P101"}


def test_assignment_cell_without_room():
    parsed = parse_teacher_cell("Trần Thị Bình - Ngữ văn (T02|S02)")
    assert parsed.teacher_id == "T02"
    assert parsed.subject_id == "S02"
    assert parsed.subject_name == "Ngữ văn"
    assert parsed.room_number is None


def test_assignment_cell_tolerates_surrounding_whitespace():
    parsed = parse_teacher_cell("  Nguyen Van A -  Toan ( T01 | S02 )  ")
    assert (parsed.teacher_id, parsed.subject_id, parsed.subject_name) == ("T01", "S02", "Toan")


def test_legacy_teacher_format():
    parsed = parse_teacher_cell("Nguyen Van A (T01) - Toan - P12")
    assert parsed.teacher_id == "T01"
    assert parsed.subject_id is None
    assert parsed.subject_name == "Toan"
    assert parsed.room_number == "P12"


def test_legacy_teacher_format_without_room():
    parsed = parse_teacher_cell("Nguyen Van A (T01) - Toan")
    assert parsed.teacher_id == "T01"
    assert parsed.room_number is None


@pytest.mark.parametrize("value", ["Chào cờ", "Sinh hoạt lớp", "  chào cờ  ", "Class meeting"])
def test_special_activities_parse_to_nothing(value):
    assert is_special_activity(value)
    assert parse_teacher_cell(value).is_empty


def test_free_text_is_a_subject_name():
    parsed = parse_teacher_cell("Hóa học")
    assert parsed.subject_name == "Hóa học"
    assert parsed.teacher_id is None
    assert parsed.subject_id is None


def test_dash_text_without_teacher_id_is_a_subject_name():
    parsed = parse_teacher_cell("Toan - Dai so")
    assert parsed.teacher_id is None
    assert parsed.subject_name == "Toan - Dai so"


@pytest.mark.parametrize("value", [None, "", "   "])
def test_blank_cells(value):
    assert parse_teacher_cell(value).is_empty


def test_cell_text_normalizes_spreadsheet_values():
    assert cell_text(None) == ""
    assert cell_text("  Toán ") == "Toán"
    assert cell_text(101.0) == "101"
    assert cell_text(2.5) == "2.5"


def test_decomposed_text_is_normalized():
    nfd = unicodedata.normalize("NFD", "Chào cờ")
    assert nfd != "Chào cờ"
    assert is_special_activity(nfd)
    assert cell_text(nfd) == "Chào cờ"
    parsed = parse_teacher_cell(unicodedata.normalize("NFD", "Trần Thị Bình - Ngữ văn (T02|S02)"))
    assert parsed.subject_name == "Ngữ văn"
