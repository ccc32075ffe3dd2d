from __future__ import annotations

import hmac
import json
import re
from typing import TYPE_CHECKING, Any, Optional

import pydantic
import structlog

from customs_backend.errors import AuthError, ValidationError
from customs_backend.schemas import DeclarationIn, SyncBatch

if TYPE_CHECKING:
    from customs_backend.services.data_layer import DeclarationStore

logger = structlog.get_logger(__name__)

UNKNOWN_GUID = "UNKNOWN"
_GUID_RE = re.compile(r"[A-F0-9]{32}", re.IGNORECASE)


def extract_guid(link_string: Optional[str]) -> str:
    """First run of 32 hex digits in the link string, or ``UNKNOWN``."""
    if not link_string:
        return UNKNOWN_GUID
    match = _GUID_RE.search(link_string)
    return match.group(0) if match else UNKNOWN_GUID


def authorize(provided: Optional[str], secret: str) -> None:
    if provided is None or not hmac.compare_digest(provided.encode(), secret.encode()):
        raise AuthError("Unauthorized Sync")


def decode_body(body: bytes | str) -> Any:
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid payload: body is not valid JSON ({exc.msg})") from exc


def parse_batch(payload: Any) -> list[DeclarationIn]:
    if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
        raise ValidationError("Invalid payload: expected an object with an items array")
    if not payload["items"]:
        raise ValidationError("Invalid payload: items must not be empty")
    try:
        return SyncBatch.model_validate(payload).items
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(f"Invalid payload: {problems}") from exc


def ingest(
    store: "DeclarationStore", payload: Any, provided_secret: Optional[str], secret: str
) -> dict[str, int]:
    """Authorize, validate and apply one sync batch.

    ``payload`` is either the raw request body or an already decoded object;
    a raw body is only decoded once the secret has been accepted.
    """
    authorize(provided_secret, secret)
    if isinstance(payload, (bytes, str)):
        payload = decode_body(payload)
    records = parse_batch(payload)
    stats = store.upsert_batch(records)
    logger.info("sync_batch_applied", **stats)
    return stats
