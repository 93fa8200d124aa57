"""Service configuration loaded from environment variables.

Every setting can be overridden with an ``EDUCONNECT_`` prefixed variable or a
``.env`` file in the working directory.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """EduConnect backend settings.

    Defaults target local development against a SQLite file. Production points
    ``database_url`` at Postgres.
    """

    database_url: str = Field(
        default="sqlite:///./educonnect.db",
        description="SQLAlchemy database URL",
    )
    session_secret: str = Field(
        default="change-me",
        description="Secret used to sign session tokens",
    )

    # Logging
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (for production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_sql: bool = Field(
        default=False,
        description="Log SQL statements issued by SQLAlchemy",
    )

    # Timetable workbook layout
    import_start_row: int = Field(
        default=10,
        description="First grid row of a class sheet; row above it holds the weekday header",
    )
    import_first_day_column: int = Field(
        default=2,
        description="Column holding Monday; the following columns hold the next weekdays",
    )
    import_day_count: int = Field(
        default=6,
        description="Number of weekday columns in the grid (Monday-Saturday)",
    )
    reference_sheet_names: list[str] = Field(
        default=[
            "Timetable",
            "Danh sách giáo viên",
            "Danh sách môn học",
            "Khung giờ học",
            "Hướng dẫn sử dụng",
        ],
        description="Worksheets that are not class timetables",
    )

    # Classes
    default_class_capacity: int = Field(
        default=30,
        description="Capacity given to classes auto-created by the timetable import",
    )
    max_students_per_combined_class: int = Field(
        default=35,
        description="Upper bound on students per generated combined class",
    )

    model_config = {
        "env_prefix": "EDUCONNECT_",
        "case_sensitive": False,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get the settings singleton.

    Returns:
        Settings: Settings instance
    """
    return Settings()
