from structlog.contextvars import get_contextvars
from structlog.testing import capture_logs

from educonnect.logging import add_service, import_context
from educonnect.models import AcademicTerm, User
from educonnect.timetable_import import TimetableImporter


def test_service_is_added_to_every_event():
    assert add_service(None, "info", {"event": "startup_complete"}) == {"event": "startup_complete", "service": "educonnect"}


def test_import_context_is_cleared_after_the_block():
    with import_context("TERM1", "ADMIN", week_number=2):
        assert get_contextvars() == {"term_id": "TERM1", "user_id": "ADMIN", "week_number": 2}
    assert get_contextvars() == {}


def test_import_events(db, seed, make_workbook):
    content = make_workbook({"10A1": {(1, 1): "Ghost - Toán (T99|S01)"}})
    with capture_logs() as logs:
        result = TimetableImporter(db, db.get(AcademicTerm, "TERM1"), db.get(User, "ADMIN")).run(content)
    assert result["success"] is False
    events = {e["event"]: e for e in logs}
    assert events["timetable_import_started"]["sheets"] == 1
    assert events["timetable_import_rejected"]["log_level"] == "warning"
    assert events["timetable_import_rejected"]["total_errors"] == 1
