from __future__ import annotations

import base64
import json
from pathlib import Path
from typing import Optional, Protocol

import structlog
from google.api_core import exceptions as gcloud_exceptions
from google.cloud import storage
from google.oauth2 import service_account

from customs_backend.config import Settings
from customs_backend.errors import StorageError

logger = structlog.get_logger(__name__)


class DocumentStore(Protocol):
    def download(self, path: str) -> Optional[str]: ...

    def upload(self, path: str, content: str) -> None: ...


class LocalDocumentStore:
    def __init__(self, root: Path):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise StorageError(f"Path escapes document root: {path}")
        return target

    def download(self, path: str) -> Optional[str]:
        target = self._resolve(path)
        if not target.exists():
            return None
        try:
            return target.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(str(exc)) from exc

    def upload(self, path: str, content: str) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(target.suffix + ".tmp")
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(target)
        except OSError as exc:
            raise StorageError(str(exc)) from exc
        logger.info("document_uploaded", backend="local", path=path, size=len(content))


def _load_credentials(settings: Settings):
    if settings.gcs_key_json:
        try:
            key_dict = json.loads(settings.gcs_key_json)
        except json.JSONDecodeError:
            key_dict = json.loads(base64.b64decode(settings.gcs_key_json))
        return service_account.Credentials.from_service_account_info(key_dict)
    key_path = settings.gcs_key_path
    if key_path and Path(key_path).exists():
        return service_account.Credentials.from_service_account_file(str(key_path))
    return None


class GCSDocumentStore:
    def __init__(self, bucket_name: str, client: storage.Client):
        self.bucket = client.bucket(bucket_name)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GCSDocumentStore":
        if not settings.gcs_bucket:
            raise StorageError("gcs_bucket is not configured")
        credentials = _load_credentials(settings)
        if credentials:
            client = storage.Client(credentials=credentials, project=credentials.project_id)
        else:
            client = storage.Client()
        return cls(settings.gcs_bucket, client)

    def download(self, path: str) -> Optional[str]:
        try:
            return self.bucket.blob(path).download_as_text(encoding="utf-8")
        except gcloud_exceptions.NotFound:
            return None
        except gcloud_exceptions.GoogleAPIError as exc:
            raise StorageError(str(exc)) from exc

    def upload(self, path: str, content: str) -> None:
        try:
            self.bucket.blob(path).upload_from_string(content, content_type="application/json")
        except gcloud_exceptions.GoogleAPIError as exc:
            raise StorageError(str(exc)) from exc
        logger.info("document_uploaded", backend="gcs", path=path, size=len(content))


def build_document_store(settings: Settings) -> DocumentStore:
    if settings.document_backend == "gcs":
        return GCSDocumentStore.from_settings(settings)
    return LocalDocumentStore(settings.documents_dir)


def read_json(store: DocumentStore, path: str, default: dict) -> dict:
    content = store.download(path)
    if content is None or not content.strip():
        return default
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        raise StorageError(f"Document {path} is not valid JSON") from exc


def write_json(store: DocumentStore, path: str, data: dict) -> None:
    store.upload(path, json.dumps(data, indent=2, ensure_ascii=False))
