from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Candidate(BaseModel):
    """A student/course pair eligible for certificate issuance.

    Built from one row of the candidate query; rows that do not validate are
    rejected at this boundary instead of flowing into the pipeline.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    student_id: int = Field(gt=0)
    full_name: str = Field(min_length=1, max_length=100)
    dni: str | None = Field(default=None, max_length=20)
    course_id: int = Field(gt=0)
    course_name: str = Field(min_length=1, max_length=255)
    grade: float
    attempt_date: datetime | None = None

    @field_validator("full_name", "course_name", mode="before")
    @classmethod
    def strip_text(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("dni", mode="before")
    @classmethod
    def blank_dni_is_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    def ledger_details(self) -> dict[str, Any]:
        """Descriptive columns copied onto the ledger row."""
        return {
            "full_name": self.full_name,
            "dni": self.dni,
            "course_name": self.course_name,
            "grade": self.grade,
        }
