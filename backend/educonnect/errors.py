"""Error hierarchy for timetable import and class management.

Request validation problems are raised as FastAPI ``HTTPException`` directly in
the routes. These classes cover failures raised from the domain modules, which
the routes translate into per-sheet diagnostics or HTTP status codes.
"""


class EduConnectError(Exception):
    """Base exception for all domain errors."""

    pass


class WorkbookError(EduConnectError):
    """The uploaded file cannot be read as a workbook.

    Aborts the whole import with a 400 response.
    """

    pass


class SheetError(EduConnectError):
    """A class sheet cannot be imported (unknown class that cannot be created).

    Recorded as a blocking error for that sheet only; the import continues
    scanning the remaining sheets so every problem is reported at once.
    """

    pass
