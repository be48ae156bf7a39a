"""Storage backends holding published certificates.

Every backend exposes the same folder-tree view: folders are found by exact
name under a parent, files are uploaded into a folder, made publicly
readable and addressed by a stable download URL. Backends raise their
library's own errors; callers decide how to classify them.
"""

import io
import os
import threading
import uuid
from pathlib import Path, PurePosixPath
from typing import Any, Protocol

import boto3
import httplib2
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from google.oauth2 import service_account
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.http import MediaIoBaseUpload

from app.core.config import Settings

DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive"]
DRIVE_FOLDER_MIME = "application/vnd.google-apps.folder"
DRIVE_NUM_RETRIES = 3


class StorageBackend(Protocol):
    name: str

    def find_folder(self, folder_name: str, parent_id: str) -> str | None:
        """Return the id of the folder named exactly folder_name under parent_id."""
        ...

    def create_folder(self, folder_name: str, parent_id: str) -> str:
        """Create a folder under parent_id and return its id."""
        ...

    def upload(self, file_content: bytes, parent_id: str, filename: str, mime_type: str) -> str:
        """Store a new file in the folder and return its id. Never overwrites."""
        ...

    def grant_public_read(self, file_id: str) -> None:
        """Allow anonymous read access to the file."""
        ...

    def download_url(self, file_id: str) -> str:
        """Return a stable public URL to download the file."""
        ...


class LocalStorage:
    """Local filesystem storage for development.

    Folder and file ids are paths relative to the base directory.
    """

    name = "local"

    def __init__(self, base_dir: str, base_url: str) -> None:
        self._base_dir = Path(base_dir)
        self._base_url = base_url.rstrip("/")

    def _resolve_safe_path(self, path: str) -> Path:
        """Resolve path and validate it stays within base directory."""
        base_resolved = self._base_dir.resolve()
        full_path = (self._base_dir / path).resolve()
        if (
            not str(full_path).startswith(str(base_resolved) + os.sep)
            and full_path != base_resolved
        ):
            raise ValueError(f"Path traversal attempt detected: {path}")
        return full_path

    @staticmethod
    def _join(parent_id: str, name: str) -> str:
        return str(PurePosixPath(parent_id, name)) if parent_id else name

    def find_folder(self, folder_name: str, parent_id: str) -> str | None:
        folder_id = self._join(parent_id, folder_name)
        return folder_id if self._resolve_safe_path(folder_id).is_dir() else None

    def create_folder(self, folder_name: str, parent_id: str) -> str:
        folder_id = self._join(parent_id, folder_name)
        self._resolve_safe_path(folder_id).mkdir(parents=True, exist_ok=True)
        return folder_id

    def upload(self, file_content: bytes, parent_id: str, filename: str, mime_type: str) -> str:
        file_id = self._join(parent_id, filename)
        full_path = self._resolve_safe_path(file_id)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(full_path, "xb") as f:
                f.write(file_content)
        except FileExistsError:
            # Same-named files coexist, as they do in Drive
            stem, suffix = full_path.stem, full_path.suffix
            file_id = self._join(parent_id, f"{stem}-{uuid.uuid4().hex[:8]}{suffix}")
            with open(self._resolve_safe_path(file_id), "xb") as f:
                f.write(file_content)
        return file_id

    def grant_public_read(self, file_id: str) -> None:
        # Served as static files; only check the upload is there.
        if not self._resolve_safe_path(file_id).is_file():
            raise FileNotFoundError(file_id)

    def download_url(self, file_id: str) -> str:
        return f"{self._base_url}/uploads/{file_id}"


class GoogleDriveStorage:
    """Google Drive v3 storage authenticated with a service account."""

    name = "google_drive"

    def __init__(self, settings: Settings) -> None:
        self._credentials_path = settings.GOOGLE_CREDENTIALS_PATH
        self._timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        self._download_url = settings.DRIVE_DOWNLOAD_URL
        # httplib2 connections are not thread-safe: one client per worker thread
        self._local = threading.local()

    @property
    def _service(self) -> Any:
        service = getattr(self._local, "service", None)
        if service is None:
            credentials = service_account.Credentials.from_service_account_file(
                self._credentials_path, scopes=DRIVE_SCOPES
            )
            http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=self._timeout))
            service = build("drive", "v3", http=http, cache_discovery=False)
            self._local.service = service
        return service

    @staticmethod
    def _quote(value: str) -> str:
        return value.replace("\\", "\\\\").replace("'", "\\'")

    @staticmethod
    def _parent(parent_id: str) -> str:
        # "root" is the Drive alias of the service account's own top folder
        return parent_id or "root"

    def find_folder(self, folder_name: str, parent_id: str) -> str | None:
        query = (
            f"name = '{self._quote(folder_name)}' and mimeType = '{DRIVE_FOLDER_MIME}' "
            f"and '{self._quote(self._parent(parent_id))}' in parents and trashed = false"
        )
        response = (
            self._service.files()
            .list(
                q=query,
                spaces="drive",
                fields="files(id, name)",
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            )
            .execute(num_retries=DRIVE_NUM_RETRIES)
        )
        files = response.get("files", [])
        return files[0]["id"] if files else None

    def create_folder(self, folder_name: str, parent_id: str) -> str:
        metadata = {
            "name": folder_name,
            "mimeType": DRIVE_FOLDER_MIME,
            "parents": [self._parent(parent_id)],
        }
        folder = (
            self._service.files()
            .create(body=metadata, fields="id", supportsAllDrives=True)
            .execute(num_retries=DRIVE_NUM_RETRIES)
        )
        return str(folder["id"])

    def upload(self, file_content: bytes, parent_id: str, filename: str, mime_type: str) -> str:
        media = MediaIoBaseUpload(io.BytesIO(file_content), mimetype=mime_type, resumable=False)
        created = (
            self._service.files()
            .create(
                body={"name": filename, "parents": [parent_id]},
                media_body=media,
                fields="id",
                supportsAllDrives=True,
            )
            .execute(num_retries=DRIVE_NUM_RETRIES)
        )
        return str(created["id"])

    def grant_public_read(self, file_id: str) -> None:
        (
            self._service.permissions()
            .create(
                fileId=file_id,
                body={"type": "anyone", "role": "reader"},
                fields="id",
                supportsAllDrives=True,
            )
            .execute(num_retries=DRIVE_NUM_RETRIES)
        )

    def download_url(self, file_id: str) -> str:
        return self._download_url.format(file_id=file_id)


class R2Storage:
    """Cloudflare R2 storage (S3-compatible).

    Object stores have no folders: a folder id is the key prefix, and public
    read access comes from the bucket being exposed under R2_PUBLIC_URL.
    """

    name = "r2"

    def __init__(self, settings: Settings) -> None:
        self._client = boto3.client(
            "s3",
            endpoint_url=settings.r2_endpoint_url,
            aws_access_key_id=settings.R2_ACCESS_KEY_ID,
            aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
            config=BotoConfig(
                signature_version="s3v4",
                connect_timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
                read_timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
            region_name="auto",
        )
        self._bucket = settings.R2_BUCKET_NAME
        self._public_url = settings.R2_PUBLIC_URL.rstrip("/")

    @staticmethod
    def _join(parent_id: str, name: str) -> str:
        return f"{parent_id}/{name}" if parent_id else name

    def _exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self._bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def find_folder(self, folder_name: str, parent_id: str) -> str | None:
        return self._join(parent_id, folder_name)

    def create_folder(self, folder_name: str, parent_id: str) -> str:
        return self._join(parent_id, folder_name)

    def upload(self, file_content: bytes, parent_id: str, filename: str, mime_type: str) -> str:
        key = self._join(parent_id, filename)
        if self._exists(key):
            stem, _, suffix = filename.rpartition(".")
            key = self._join(parent_id, f"{stem}-{uuid.uuid4().hex[:8]}.{suffix}")
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=file_content,
            ContentType=mime_type,
        )
        return key

    def grant_public_read(self, file_id: str) -> None:
        if not self._public_url:
            raise RuntimeError("R2_PUBLIC_URL is not configured; certificates cannot be public")

    def download_url(self, file_id: str) -> str:
        return f"{self._public_url}/{file_id}"


def get_storage(settings: Settings) -> StorageBackend:
    if settings.STORAGE_BACKEND == "drive":
        return GoogleDriveStorage(settings)
    if settings.STORAGE_BACKEND == "r2":
        return R2Storage(settings)
    return LocalStorage(settings.UPLOAD_DIR, settings.BACKEND_URL)
