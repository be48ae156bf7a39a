from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.certificates.models import CertificateStatus
from app.certificates.repositories import CertificateLedger
from app.certificates.schemas import CertificateVerifyResponse
from app.core.config import Settings, get_settings
from app.db.session import get_db

router = APIRouter()


@router.get(
    "/certificates/{certificate_code}/verify",
    response_model=CertificateVerifyResponse,
)
async def verify_certificate(
    certificate_code: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> CertificateVerifyResponse:
    """Public lookup of the code printed in a certificate's QR code."""
    record = CertificateLedger(db, settings).find_by_code(certificate_code)

    if record is None:
        return CertificateVerifyResponse(
            valid=False,
            certificate_code=certificate_code,
            message="Certificate not found",
        )

    if record.status != CertificateStatus.COMPLETED.value:
        return CertificateVerifyResponse(
            valid=False,
            certificate_code=certificate_code,
            message=f"Certificate is not issued (status: {record.status})",
        )

    return CertificateVerifyResponse(
        valid=True,
        certificate_code=certificate_code,
        full_name=record.full_name,
        course_name=record.course_name,
        issued_date=record.issued_date,
        issuer_name=record.issuer_name,
        drive_link=record.drive_link,
        message="Certificate is valid",
    )
