import re
from functools import lru_cache

from pydantic_settings import BaseSettings
from reportlab.lib import pagesizes, units

_EXPLICIT_SIZE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*X\s*(\d+(?:\.\d+)?)\s*$")


class Settings(BaseSettings):
    DATABASE_URL: str

    REDIS_URL: str = "redis://redis:6379/0"

    API_V1_PREFIX: str = "/api/v1"
    PROJECT_NAME: str = "Certificados API"
    DEBUG: bool = False

    BACKEND_URL: str = "http://localhost:8000"
    UPLOAD_DIR: str = "./uploads"

    # Timeout applied to every call leaving the process (Drive, R2, Postgres connect)
    EXTERNAL_CALL_TIMEOUT_SECONDS: int = 60

    # Certificate pipeline
    CERTIFICATE_MINIMUM_GRADE: int = 15
    CERTIFICATE_ISSUER_NAME: str = ""
    CERTIFICATE_TEMPLATES_PATH: str = "./assets/templates"
    CERTIFICATE_FONTS_PATH: str = "./assets/fonts"
    CERTIFICATE_FILENAME_TEMPLATE: str = "certificado_{name}_{date}.pdf"
    CERTIFICATE_BATCH_WORKERS: int = 1
    CERTIFICATE_BATCH_LOCK_TTL_SECONDS: int = 2 * 60 * 60  # Upper bound for one batch run
    CERTIFICATE_MAX_ATTEMPTS: int = 5
    CERTIFICATE_RETRY_BACKOFF_MINUTES: int = 60
    CERTIFICATE_RETRY_BACKOFF_MAX_MINUTES: int = 24 * 60
    CERTIFICATE_STALE_PROCESSING_MINUTES: int = 120
    TIMEZONE: str = "America/Lima"  # Issuance dates and the beat schedule

    # PDF layout
    PDF_ORIENTATION: str = "L"  # "L" landscape, "P" portrait
    PDF_UNIT: str = "mm"
    PDF_FORMAT: str = "A4"

    # Digital signature (PEM key + certificate)
    SIGNATURE_CERT_PATH: str = "./assets/digital-signature/public.crt"
    SIGNATURE_KEY_PATH: str = "./assets/digital-signature/private.key"
    SIGNATURE_PASSWORD: str = ""
    SIGNATURE_NAME: str = ""
    SIGNATURE_LOCATION: str = ""
    SIGNATURE_REASON: str = ""
    SIGNATURE_CONTACT_INFO: str = ""

    # Storage backend: "drive" (Google Drive), "r2" (Cloudflare R2) or "local" for development
    STORAGE_BACKEND: str = "local"

    # Google Drive
    GOOGLE_CREDENTIALS_PATH: str = "./credentials.json"
    CERTIFICATE_ROOT_FOLDER_ID: str = ""
    DRIVE_DOWNLOAD_URL: str = "https://drive.google.com/uc?export=download&id={file_id}"

    # Cloudflare R2 storage (S3-compatible)
    R2_ACCOUNT_ID: str = ""
    R2_ACCESS_KEY_ID: str = ""
    R2_SECRET_ACCESS_KEY: str = ""
    R2_BUCKET_NAME: str = "certificados"
    R2_PUBLIC_URL: str = ""  # e.g. https://files.example.org

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def r2_endpoint_url(self) -> str:
        return f"https://{self.R2_ACCOUNT_ID}.r2.cloudflarestorage.com"

    @property
    def signature_info(self) -> dict[str, str]:
        return {
            "Name": self.SIGNATURE_NAME,
            "Location": self.SIGNATURE_LOCATION,
            "Reason": self.SIGNATURE_REASON,
            "ContactInfo": self.SIGNATURE_CONTACT_INFO,
        }

    @property
    def pdf_unit_points(self) -> float:
        """Size of one PDF_UNIT in points."""
        if self.PDF_UNIT.lower() == "pt":
            return 1.0
        factor = getattr(units, self.PDF_UNIT.lower(), None)
        if not isinstance(factor, int | float):
            raise ValueError(f"Unknown PDF unit: {self.PDF_UNIT}")
        return float(factor)

    @property
    def pdf_page_size(self) -> tuple[float, float]:
        """Page size in PDF points.

        PDF_FORMAT is either a reportlab page name ("A4", "LETTER") or an
        explicit "<width>x<height>" measured in PDF_UNIT.
        """
        fmt = self.PDF_FORMAT.upper()
        explicit = _EXPLICIT_SIZE.match(fmt)
        if explicit:
            width, height = (float(part) for part in explicit.groups())
            size = (width * self.pdf_unit_points, height * self.pdf_unit_points)
        else:
            named = getattr(pagesizes, fmt, None)
            if not isinstance(named, tuple):
                raise ValueError(f"Unknown PDF format: {self.PDF_FORMAT}")
            size = named
        if self.PDF_ORIENTATION.upper().startswith("L"):
            return pagesizes.landscape(size)
        return pagesizes.portrait(size)


@lru_cache
def get_settings() -> Settings:
    """Build the settings once per process; entry points pass the result along."""
    return Settings()  # type: ignore[call-arg]
