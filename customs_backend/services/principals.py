from __future__ import annotations

import threading
from typing import Optional

import structlog

from customs_backend.errors import ConflictError, NotFoundError, ValidationError
from customs_backend.services.documents import DocumentStore, read_json, write_json

logger = structlog.get_logger(__name__)


def _sort(names: list[str]) -> list[str]:
    return sorted(names, key=str.lower)


class PrincipalRegistry:
    """Fiscal-representation principals kept as one JSON document.

    Names are unique ignoring case and kept in case-insensitive alphabetical
    order after every insert or rename.
    """

    def __init__(self, documents: DocumentStore, path: str):
        self.documents = documents
        self.path = path
        # read-modify-write of a single document
        self._lock = threading.Lock()

    def names(self) -> list[str]:
        return list(read_json(self.documents, self.path, {"principals": []}).get("principals", []))

    def _save(self, principals: list[str]) -> None:
        write_json(self.documents, self.path, {"principals": principals})

    def add(self, name: Optional[str]) -> list[str]:
        trimmed = (name or "").strip()
        if not trimmed:
            raise ValidationError("Principal name is required")
        with self._lock:
            principals = self.names()
            if any(p.lower() == trimmed.lower() for p in principals):
                raise ConflictError("Principal already exists", code="AlreadyExists")
            principals = _sort(principals + [trimmed])
            self._save(principals)
        logger.info("principal_added", name=trimmed)
        return principals

    def rename(self, old_name: Optional[str], new_name: Optional[str]) -> list[str]:
        trimmed = (new_name or "").strip()
        if not old_name or not trimmed:
            raise ValidationError("Both oldName and newName are required")
        with self._lock:
            principals = self.names()
            if old_name not in principals:
                raise NotFoundError("Principal not found")
            if any(p.lower() == trimmed.lower() and p != old_name for p in principals):
                raise ConflictError(
                    "A principal with this name already exists", code="AlreadyExists"
                )
            principals[principals.index(old_name)] = trimmed
            principals = _sort(principals)
            self._save(principals)
        logger.info("principal_renamed", old_name=old_name, new_name=trimmed)
        return principals

    def remove(self, name: Optional[str]) -> list[str]:
        if not name:
            raise ValidationError("Principal name is required")
        with self._lock:
            principals = self.names()
            if name not in principals:
                raise NotFoundError("Principal not found")
            principals.remove(name)
            self._save(principals)
        logger.info("principal_removed", name=name)
        return principals
