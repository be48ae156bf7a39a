from app.certificates.schemas.candidate import Candidate
from app.certificates.schemas.certificate import CertificateVerifyResponse

__all__ = [
    "Candidate",
    "CertificateVerifyResponse",
]
