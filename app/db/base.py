"""
Database base module - imports all models for Alembic migration detection.

The host tables are imported too so the candidate query can resolve them,
but migrations only ever touch the ledger table (see alembic/env.py).
"""

from app.certificates.models.certificate import CertificateRecord
from app.certificates.models.source import HostCourse, HostUser, HostUserMeta, QuizAttempt
from app.db.session import Base

# Tables owned by this service; everything else in Base.metadata is read-only
OWNED_TABLES = frozenset({CertificateRecord.__tablename__})

__all__ = [
    "Base",
    "CertificateRecord",
    "HostCourse",
    "HostUser",
    "HostUserMeta",
    "QuizAttempt",
    "OWNED_TABLES",
]
