import enum
from datetime import UTC, date, datetime

from sqlalchemy import BigInteger, DateTime, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.session import Base


class CertificateStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class CertificateRecord(Base):
    """Ledger row: one issuance attempt history per (student, course) pair."""

    __tablename__ = "issued_certificates"
    __table_args__ = (
        Index("ix_issued_certificates_student_course", "student_id", "course_id"),
        # At most one non-error row per pair
        Index(
            "uq_issued_certificates_active_student_course",
            "student_id",
            "course_id",
            unique=True,
            postgresql_where=text("status != 'error'"),
            sqlite_where=text("status != 'error'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    dni: Mapped[str | None] = mapped_column(String(20), default=None)
    unique_code: Mapped[str | None] = mapped_column(String(100), unique=True, default=None)
    student_id: Mapped[int] = mapped_column(BigInteger)
    full_name: Mapped[str] = mapped_column(String(100))
    course_id: Mapped[int] = mapped_column(BigInteger)
    course_name: Mapped[str] = mapped_column(String(255))
    grade: Mapped[float | None] = mapped_column(default=None)
    issued_date: Mapped[date | None] = mapped_column(default=None)
    issuer_name: Mapped[str | None] = mapped_column(String(100), default=None)
    drive_link: Mapped[str | None] = mapped_column(Text, default=None)
    status: Mapped[str] = mapped_column(
        String(20), default=CertificateStatus.PENDING.value, index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    attempt_count: Mapped[int] = mapped_column(default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return f"<CertificateRecord(id={self.id}, student_id={self.student_id}, course_id={self.course_id}, status={self.status})>"  # noqa: E501
