"""Certificate models."""

from app.certificates.models.certificate import CertificateRecord, CertificateStatus
from app.certificates.models.source import HostCourse, HostUser, HostUserMeta, QuizAttempt

__all__ = [
    "CertificateRecord",
    "CertificateStatus",
    "HostCourse",
    "HostUser",
    "HostUserMeta",
    "QuizAttempt",
]
