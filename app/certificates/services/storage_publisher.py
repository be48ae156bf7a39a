"""Publishing of signed certificates to the storage backend."""

import logging
import threading
from datetime import date

from app.certificates.schemas import Candidate
from app.certificates.services.certificate_renderer import RenderedCertificate
from app.certificates.utils.slugs import slugify
from app.core.config import Settings
from app.core.exceptions import PublishError
from app.core.storage import StorageBackend, get_storage

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"


def compute_folder_path(year: int, course_name: str, full_name: str) -> str:
    """Folder path of a certificate: "{year}/{course slug}/{student slug}"."""
    return "/".join([str(year), slugify(course_name), slugify(full_name)])


def build_filename(template: str, full_name: str, issued_on: date) -> str:
    return template.format(name=slugify(full_name), date=issued_on.isoformat())


class StoragePublisher:
    """Uploads certificates under a deterministic folder tree and shares them.

    Folder ids resolved during the publisher's lifetime are cached, and the
    lookup-then-create of each folder path is serialized by a per-path lock
    so workers of one batch never create the same folder twice.
    """

    def __init__(self, settings: Settings, storage: StorageBackend | None = None):
        self.settings = settings
        self.storage = storage if storage is not None else get_storage(settings)
        self.root_folder_id = settings.CERTIFICATE_ROOT_FOLDER_ID
        self._folder_ids: dict[str, str] = {}
        self._path_locks: dict[str, threading.Lock] = {}
        self._path_locks_guard = threading.Lock()

    def publish(
        self, rendered: RenderedCertificate, candidate: Candidate, issued_on: date
    ) -> str:
        """Upload the signed PDF, make it public and return its download URL.

        Raises:
            PublishError: when any storage call fails. The ledger is left alone.
        """
        try:
            folder_path = compute_folder_path(
                issued_on.year, candidate.course_name, candidate.full_name
            )
            filename = build_filename(
                self.settings.CERTIFICATE_FILENAME_TEMPLATE, candidate.full_name, issued_on
            )
            folder_id = self.ensure_folder_structure(folder_path)
            file_id = self.storage.upload(rendered.pdf_bytes, folder_id, filename, PDF_MIME_TYPE)
            self.storage.grant_public_read(file_id)
            url = self.storage.download_url(file_id)
        except PublishError:
            raise
        except Exception as e:
            raise PublishError(
                f"Error uploading certificate to {self.storage.name}: {e}",
                service=self.storage.name,
            ) from e

        logger.info(
            "Published certificate %s to %s/%s",
            rendered.certificate_id,
            folder_path,
            filename,
        )
        return url

    def ensure_folder_structure(self, folder_path: str) -> str:
        """Walk folder_path below the root folder, creating missing folders.

        Returns the id of the deepest folder.
        """
        parent_id = self.root_folder_id
        walked: list[str] = []
        for folder_name in folder_path.split("/"):
            walked.append(folder_name)
            path_key = "/".join(walked)
            with self._lock_for(path_key):
                cached = self._folder_ids.get(path_key)
                if cached is None:
                    cached = self._get_or_create_folder(folder_name, parent_id)
                    self._folder_ids[path_key] = cached
            parent_id = cached
        return parent_id

    def _lock_for(self, path_key: str) -> threading.Lock:
        with self._path_locks_guard:
            return self._path_locks.setdefault(path_key, threading.Lock())

    def _get_or_create_folder(self, folder_name: str, parent_id: str) -> str:
        folder_id = self.storage.find_folder(folder_name, parent_id)
        if folder_id is None:
            folder_id = self.storage.create_folder(folder_name, parent_id)
            logger.info("Created folder %s under %s", folder_name, parent_id or "<root>")
        return folder_id
