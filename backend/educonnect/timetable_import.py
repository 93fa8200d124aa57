from __future__ import annotations

import io
import json
import re
import unicodedata
from typing import Any, Optional

from openpyxl import load_workbook
from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from educonnect.config import Settings, get_settings
from educonnect.errors import SheetError, WorkbookError
from educonnect.logging import get_logger, import_context
from educonnect.models import (
    TEACHER_ROLES,
    AcademicTerm,
    AuditLog,
    GradeLevel,
    SchoolClass,
    Subject,
    TeacherAssignment,
    TeachingSchedule,
    TimeSlot,
    User,
)

log = get_logger(__name__)

# Fixed activities written verbatim into the grid; compared case-insensitively after NFC.
SPECIAL_ACTIVITIES = ("Chào cờ", "Sinh hoạt lớp", "Flag ceremony", "Class meeting")
_SPECIAL_ACTIVITY_KEYS = frozenset(s.casefold() for s in SPECIAL_ACTIVITIES)

# "Teacher Name - Subject Name (teacher_id|subject_id)" with an optional " - Room" tail.
ASSIGNMENT_CELL_RE = re.compile(r"^(.+?)\s*-\s*(.+?)\s*\(([^|()]+)\|([^)]+)\)\s*(?:-\s*(.+?))?$")
# Legacy teacher part: "Teacher Name (teacher_id)"
LEGACY_TEACHER_RE = re.compile(r"^(.+?)\s*\(([^)]+)\)$")
CLASS_NAME_LABELS = ("Tên lớp:", "Class name:")


def normalize_text(value: str) -> str:
    # diacritics may arrive decomposed (NFD)
    return unicodedata.normalize("NFC", value).strip()


def fold(value: Optional[str]) -> str:
    return normalize_text(value or "").casefold()


class ParsedCell(BaseModel):
    teacher_id: Optional[str] = None
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None
    room_number: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.teacher_id or self.subject_id or self.subject_name or self.room_number)


class ImportedSchedule(BaseModel):
    class_id: str
    teacher_id: Optional[str] = None
    subject_id: Optional[str] = None
    day_of_week: int = Field(ge=1, le=7)
    time_slot_id: str
    week_number: int = 1
    room_number: Optional[str] = None
    notes: Optional[str] = None
    is_special_activity: bool = False


class SheetResult(BaseModel):
    success: bool = True
    class_name: str
    schedules_created: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


def is_special_activity(value: Optional[str]) -> bool:
    return bool(value) and fold(value) in _SPECIAL_ACTIVITY_KEYS


def parse_teacher_cell(value: Optional[str]) -> ParsedCell:
    if not value or not value.strip():
        return ParsedCell()
    clean = normalize_text(value)
    if is_special_activity(clean):
        return ParsedCell()

    m = ASSIGNMENT_CELL_RE.match(clean)
    if m:
        room = m.group(5).strip() if m.group(5) else None
        return ParsedCell(
            teacher_id=m.group(3).strip(),
            subject_id=m.group(4).strip(),
            subject_name=m.group(2).strip(),
            room_number=room or None,
        )

    parts = clean.split(" - ")
    if len(parts) >= 2:
        teacher_match = LEGACY_TEACHER_RE.match(parts[0].strip())
        if teacher_match:
            room = parts[2].strip() if len(parts) > 2 else None
            return ParsedCell(
                teacher_id=teacher_match.group(2).strip(),
                subject_name=parts[1].strip() or None,
                room_number=room or None,
            )

    return ParsedCell(subject_name=clean)


class SubjectResolver:
    """Maps free-text subject names to subject ids for one import run.

    Tries exact name/code, then case-insensitive, then substring matches.
    Several candidates at the same stage resolve to the shortest name, then
    alphabetical name, then id.
    """

    def __init__(self, db: Session):
        self.db = db
        self._subjects: Optional[list[Subject]] = None
        self._memo: dict[str, Optional[str]] = {}

    @property
    def subjects(self) -> list[Subject]:
        if self._subjects is None:
            self._subjects = list(self.db.scalars(select(Subject)).all())
        return self._subjects

    def exists(self, subject_id: str) -> bool:
        return any(s.id == subject_id for s in self.subjects)

    def resolve(self, subject_name: Optional[str]) -> Optional[str]:
        if not subject_name or not subject_name.strip():
            return None
        clean = normalize_text(subject_name)
        if clean not in self._memo:
            self._memo[clean] = self._lookup(clean)
        return self._memo[clean]

    def _lookup(self, clean: str) -> Optional[str]:
        folded = clean.casefold()
        stages = (
            lambda s: normalize_text(s.name) == clean or normalize_text(s.code or "") == clean,
            lambda s: fold(s.name) == folded or fold(s.code) == folded,
            lambda s: folded in fold(s.name) or (bool(s.code) and folded in fold(s.code)),
        )
        for matches in stages:
            candidates = [s for s in self.subjects if matches(s)]
            if candidates:
                best = min(candidates, key=lambda s: (len(s.name), s.name, s.id))
                return best.id
        return None


def validate_teacher_assignment(db: Session, teacher_id: str, class_id: str, subject_id: str, academic_term_id: str) -> bool:
    row = db.scalar(
        select(TeacherAssignment.id)
        .where(TeacherAssignment.teacher_id == teacher_id)
        .where(TeacherAssignment.class_id == class_id)
        .where(TeacherAssignment.subject_id == subject_id)
        .where(TeacherAssignment.academic_term_id == academic_term_id)
        .where(TeacherAssignment.is_active.is_(True))
        .limit(1)
    )
    return row is not None


def check_schedule_conflicts(
    db: Session,
    teacher_id: Optional[str],
    class_id: str,
    day_of_week: int,
    time_slot_id: str,
    academic_term_id: str,
    ignore_class_ids: frozenset[str] = frozenset(),
) -> list[str]:
    conflicts: list[str] = []
    slot_filter = (
        TeachingSchedule.day_of_week == day_of_week,
        TeachingSchedule.time_slot_id == time_slot_id,
        TeachingSchedule.academic_term_id == academic_term_id,
        TeachingSchedule.is_active.is_(True),
    )

    if teacher_id:
        stmt = (
            select(TeachingSchedule, SchoolClass)
            .join(SchoolClass, SchoolClass.id == TeachingSchedule.class_id)
            .where(TeachingSchedule.teacher_id == teacher_id, *slot_filter)
        )
        if ignore_class_ids:
            stmt = stmt.where(TeachingSchedule.class_id.not_in(sorted(ignore_class_ids)))
        hit = db.execute(stmt.limit(1)).first()
        if hit:
            conflicts.append(f"Teacher already teaches class {hit[1].name} at this time")

    if class_id not in ignore_class_ids:
        hit = db.scalar(select(TeachingSchedule).where(TeachingSchedule.class_id == class_id, *slot_filter).limit(1))
        if hit:
            conflicts.append(f"Class already has {_describe_lesson(db, hit)} at this time")

    return conflicts


def _describe_lesson(db: Session, row: TeachingSchedule) -> str:
    teacher = db.get(User, row.teacher_id) if row.teacher_id else None
    if teacher:
        return f"a lesson with teacher {teacher.full_name or teacher.username}"
    return f"'{row.notes}'" if row.notes else "a lesson"


def sheet_class_name(ws) -> str:
    label = ws.cell(row=2, column=1).value
    value = ws.cell(row=2, column=2).value
    if isinstance(label, str) and normalize_text(label) in CLASS_NAME_LABELS and value is not None and str(value).strip():
        return normalize_text(str(value))
    return normalize_text(ws.title)


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return normalize_text(str(value))


class TimetableImporter:
    """Scans a timetable workbook and writes its schedule rows all-or-nothing.

    Each non-reference worksheet is one class. Rows from ``import_start_row``
    map to the non-break time slots in order; the day columns map to Monday
    onwards. Conflicts, unknown teachers and unusable class sheets are errors
    that reject the whole workbook. Unresolved subjects and missing teaching
    assignments are warnings and the cell is still imported.
    """

    def __init__(
        self,
        db: Session,
        term: AcademicTerm,
        user: User,
        week_number: int = 1,
        replace_existing: bool = False,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.term = term
        self.user = user
        self.week_number = week_number
        self.replace_existing = replace_existing
        self.settings = settings or get_settings()
        self.subjects = SubjectResolver(db)
        self._teacher_exists: dict[str, bool] = {}
        # (teacher_id | class_id, day, slot) -> description, for entries accepted in this run
        self._booked_teachers: dict[tuple[str, int, str], str] = {}
        self._booked_classes: dict[tuple[str, int, str], str] = {}

    def run(self, content: bytes) -> dict:
        with import_context(self.term.id, self.user.id, week_number=self.week_number):
            return self._run(content)

    def _run(self, content: bytes) -> dict:
        workbook = self._load_workbook(content)
        teaching_slots = self.db.scalars(select(TimeSlot).where(TimeSlot.is_break.is_(False)).order_by(TimeSlot.order_index.asc())).all()
        if not teaching_slots:
            raise WorkbookError("No teaching time slots are configured")

        reference = set(self.settings.reference_sheet_names)
        sheets = [ws for ws in workbook.worksheets if ws.title not in reference]
        if not sheets:
            raise WorkbookError("Workbook contains no class sheets")

        log.info("timetable_import_started", sheets=len(sheets), replace_existing=self.replace_existing)

        results: list[SheetResult] = []
        resolved: list[tuple[Any, SheetResult, Optional[SchoolClass]]] = []
        for ws in sheets:
            result = SheetResult(class_name=sheet_class_name(ws))
            try:
                school_class = self._resolve_class(result.class_name)
            except SheetError as exc:
                result.errors.append(str(exc))
                school_class = None
            results.append(result)
            resolved.append((ws, result, school_class))

        class_ids = frozenset(c.id for _, _, c in resolved if c is not None)
        ignore_class_ids = class_ids if self.replace_existing else frozenset()

        entries: list[ImportedSchedule] = []
        for ws, result, school_class in resolved:
            if school_class is None:
                continue
            sheet_entries = self._scan_sheet(ws, school_class, teaching_slots, result, ignore_class_ids)
            entries.extend(sheet_entries)
            result.schedules_created = len(sheet_entries)

        for result in results:
            result.success = not result.errors

        if any(r.errors for r in results):
            self.db.rollback()
            for result in results:
                result.schedules_created = 0
            payload = self._payload(False, "Import failed due to validation errors", results, 0)
            log.warning("timetable_import_rejected", **payload["summary"])
            return payload

        created = self._write(entries, class_ids)
        payload = self._payload(True, "Timetable imported successfully", results, created)
        log.info("timetable_import_completed", **payload["summary"])
        return payload

    def _load_workbook(self, content: bytes):
        if not content:
            raise WorkbookError("Uploaded file is empty")
        try:
            return load_workbook(io.BytesIO(content), data_only=True)
        except Exception as exc:
            raise WorkbookError(f"Invalid Excel file: {exc}") from exc

    def _resolve_class(self, class_name: str) -> SchoolClass:
        if not class_name:
            raise SheetError("Sheet has no class name")
        year_id = self.term.academic_year_id
        existing = self.db.scalar(
            select(SchoolClass)
            .where(SchoolClass.name == class_name, SchoolClass.academic_year_id == year_id)
            .order_by(SchoolClass.created_at.asc(), SchoolClass.id.asc())
            .limit(1)
        )
        if existing:
            return existing

        grade_level = self.db.scalar(select(GradeLevel).order_by(GradeLevel.level.asc()).limit(1))
        if not grade_level:
            raise SheetError(f"Class {class_name} not found and no grade level exists to create it")

        base_code = re.sub(r"\s+", "", class_name).upper()
        code = base_code
        suffix = 1
        while self.db.scalar(select(SchoolClass.id).where(SchoolClass.code == code, SchoolClass.academic_year_id == year_id).limit(1)):
            suffix += 1
            code = f"{base_code}{suffix}"

        created = SchoolClass(
            academic_year_id=year_id,
            grade_level_id=grade_level.id,
            name=class_name,
            code=code,
            capacity=self.settings.default_class_capacity,
            is_combined=False,
            metadata_json=json.dumps({"created_by_import": True}),
            created_by=self.user.id,
        )
        self.db.add(created)
        self.db.flush()
        log.info("class_created_by_import", class_name=class_name, code=code)
        return created

    def _scan_sheet(
        self,
        ws,
        school_class: SchoolClass,
        teaching_slots: list[TimeSlot],
        result: SheetResult,
        ignore_class_ids: frozenset[str],
    ) -> list[ImportedSchedule]:
        start_row = self.settings.import_start_row
        first_col = self.settings.import_first_day_column
        entries: list[ImportedSchedule] = []
        for slot_index, slot in enumerate(teaching_slots):
            row = start_row + slot_index
            for col in range(first_col, first_col + self.settings.import_day_count):
                value = cell_text(ws.cell(row=row, column=col).value)
                if not value:
                    continue
                day_of_week = col - first_col + 1
                entry = self._import_cell(value, f"Row {row}, column {col}", school_class, day_of_week, slot, result, ignore_class_ids)
                if entry:
                    entries.append(entry)
        return entries

    def _import_cell(
        self,
        value: str,
        where: str,
        school_class: SchoolClass,
        day_of_week: int,
        slot: TimeSlot,
        result: SheetResult,
        ignore_class_ids: frozenset[str],
    ) -> Optional[ImportedSchedule]:
        if is_special_activity(value):
            if self._record_conflicts(where, None, school_class, day_of_week, slot, result, ignore_class_ids):
                return None
            entry = ImportedSchedule(
                class_id=school_class.id,
                day_of_week=day_of_week,
                time_slot_id=slot.id,
                week_number=self.week_number,
                notes=value,
                is_special_activity=True,
            )
            self._book(entry, school_class, value)
            return entry

        parsed = parse_teacher_cell(value)
        if parsed.is_empty:
            result.warnings.append(f'{where}: Could not parse "{value}"')
            return None

        if parsed.teacher_id and not self._known_teacher(parsed.teacher_id):
            result.errors.append(f"{where}: Unknown teacher id {parsed.teacher_id}")
            return None

        subject_id = parsed.subject_id
        if subject_id and not self.subjects.exists(subject_id):
            result.warnings.append(f"{where}: Unknown subject id {subject_id}, matching by name instead")
            subject_id = None
        if not subject_id and parsed.subject_name:
            subject_id = self.subjects.resolve(parsed.subject_name)
            if not subject_id:
                result.warnings.append(f'{where}: Subject "{parsed.subject_name}" not found; imported as a note')

        teacher_id = parsed.teacher_id if subject_id else None
        if parsed.teacher_id and not subject_id:
            result.warnings.append(f"{where}: Teacher dropped because the subject could not be determined")

        if teacher_id and subject_id:
            if not validate_teacher_assignment(self.db, teacher_id, school_class.id, subject_id, self.term.id):
                result.warnings.append(f"{where}: Teacher is not assigned to teach this subject for class {school_class.name}")

        if self._record_conflicts(where, teacher_id, school_class, day_of_week, slot, result, ignore_class_ids):
            return None

        entry = ImportedSchedule(
            class_id=school_class.id,
            teacher_id=teacher_id,
            subject_id=subject_id,
            day_of_week=day_of_week,
            time_slot_id=slot.id,
            week_number=self.week_number,
            room_number=parsed.room_number,
            notes=None if subject_id else parsed.subject_name,
        )
        self._book(entry, school_class, parsed.subject_name or value)
        return entry

    def _record_conflicts(
        self,
        where: str,
        teacher_id: Optional[str],
        school_class: SchoolClass,
        day_of_week: int,
        slot: TimeSlot,
        result: SheetResult,
        ignore_class_ids: frozenset[str],
    ) -> bool:
        conflicts = check_schedule_conflicts(self.db, teacher_id, school_class.id, day_of_week, slot.id, self.term.id, ignore_class_ids)
        if teacher_id and (teacher_id, day_of_week, slot.id) in self._booked_teachers:
            conflicts.append(f"Teacher is also scheduled for class {self._booked_teachers[(teacher_id, day_of_week, slot.id)]} in this file")
        if (school_class.id, day_of_week, slot.id) in self._booked_classes:
            conflicts.append(f"Class already has {self._booked_classes[(school_class.id, day_of_week, slot.id)]} in this file")
        if conflicts:
            result.errors.append(f"{where}: {', '.join(conflicts)}")
            return True
        return False

    def _book(self, entry: ImportedSchedule, school_class: SchoolClass, label: str) -> None:
        if entry.teacher_id:
            self._booked_teachers[(entry.teacher_id, entry.day_of_week, entry.time_slot_id)] = school_class.name
        self._booked_classes[(school_class.id, entry.day_of_week, entry.time_slot_id)] = f"'{label}'"

    def _known_teacher(self, teacher_id: str) -> bool:
        if teacher_id not in self._teacher_exists:
            teacher = self.db.get(User, teacher_id)
            self._teacher_exists[teacher_id] = teacher is not None and teacher.role in TEACHER_ROLES
        return self._teacher_exists[teacher_id]

    def _write(self, entries: list[ImportedSchedule], class_ids: frozenset[str]) -> int:
        try:
            if self.replace_existing and class_ids:
                self.db.execute(
                    delete(TeachingSchedule)
                    .where(TeachingSchedule.academic_term_id == self.term.id)
                    .where(TeachingSchedule.class_id.in_(sorted(class_ids)))
                )
            for entry in entries:
                self.db.add(TeachingSchedule(academic_term_id=self.term.id, created_by=self.user.id, is_active=True, **entry.model_dump()))
            self.db.add(
                AuditLog(
                    actor_user_id=self.user.id,
                    action="TIMETABLE_IMPORT",
                    entity_type="AcademicTerm",
                    entity_id=self.term.id,
                    payload=json.dumps(
                        {
                            "week_number": self.week_number,
                            "replace_existing": self.replace_existing,
                            "class_ids": sorted(class_ids),
                            "schedules_created": len(entries),
                        }
                    ),
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return len(entries)

    def _payload(self, success: bool, message: str, results: list[SheetResult], total_schedules: int) -> dict:
        return {
            "success": success,
            "message": message,
            "results": [r.model_dump() for r in results],
            "summary": {
                "total_classes": len(results),
                "successful_classes": sum(1 for r in results if r.success),
                "total_schedules": total_schedules,
                "total_errors": sum(len(r.errors) for r in results),
                "total_warnings": sum(len(r.warnings) for r in results),
            },
        }
