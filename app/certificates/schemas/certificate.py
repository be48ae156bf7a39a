from datetime import date

from pydantic import BaseModel


class CertificateVerifyResponse(BaseModel):
    valid: bool
    certificate_code: str
    full_name: str | None = None
    course_name: str | None = None
    issued_date: date | None = None
    issuer_name: str | None = None
    drive_link: str | None = None
    message: str
