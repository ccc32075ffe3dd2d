from __future__ import annotations

import math
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Sequence

import pandas as pd
import structlog

from customs_backend.errors import ConflictError, NotFoundError, StorageError, ValidationError
from customs_backend.schemas import (
    Declaration,
    DeclarationFilters,
    DeclarationIn,
    Page,
    TicketStatus,
)
from customs_backend.services.sync import extract_guid

logger = structlog.get_logger(__name__)

TABLE = "declarations"

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
    declaration_id        INTEGER PRIMARY KEY,
    declaration_guid      TEXT NOT NULL,
    subject               TEXT NOT NULL DEFAULT '',
    body                  TEXT NOT NULL DEFAULT '',
    link_string           TEXT NOT NULL DEFAULT '',
    commercial_reference  TEXT,
    principal             TEXT,
    importer_code         TEXT,
    mrn                   TEXT,
    traces_identification TEXT,
    link_id_erp2          TEXT,
    link_id_erp4          TEXT,
    date_of_acceptance    TEXT,
    first_seen_at         TEXT NOT NULL,
    last_seen_at          TEXT NOT NULL,
    ticket_status         TEXT NOT NULL DEFAULT 'NEW'
        CHECK (ticket_status IN ('NEW', 'PENDING', 'CREATED', 'FAILED')),
    ticket_id             INTEGER,
    ticket_error          TEXT,
    ticket_updated_at     TEXT
);
CREATE INDEX IF NOT EXISTS ix_{TABLE}_acceptance ON {TABLE} (date_of_acceptance);
CREATE INDEX IF NOT EXISTS ix_{TABLE}_status ON {TABLE} (ticket_status);
"""

UPSERT = f"""
INSERT INTO {TABLE} (
    declaration_id, declaration_guid, subject, body, link_string,
    commercial_reference, principal, importer_code, mrn,
    traces_identification, link_id_erp2, link_id_erp4, date_of_acceptance,
    first_seen_at, last_seen_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (declaration_id) DO UPDATE SET last_seen_at = excluded.last_seen_at
"""


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat(timespec="microseconds")


@dataclass
class FilterBuilder:
    """Ordered list of SQL predicates and their bind values."""

    clauses: list[tuple[str, Any]] = field(default_factory=list)

    def add(self, predicate: str, value: Any) -> "FilterBuilder":
        self.clauses.append((predicate, value))
        return self

    def add_if(self, value: Any, predicate: str, bind: Any = None) -> "FilterBuilder":
        if value is None or value == "":
            return self
        return self.add(predicate, value if bind is None else bind)

    @property
    def where(self) -> str:
        if not self.clauses:
            return ""
        return " WHERE " + " AND ".join(p for p, _ in self.clauses)

    @property
    def params(self) -> list[Any]:
        return [v for _, v in self.clauses]

    @classmethod
    def for_declarations(cls, filters: DeclarationFilters) -> "FilterBuilder":
        builder = cls()
        builder.add_if(
            filters.date_from,
            "substr(date_of_acceptance, 1, 10) >= ?",
            filters.date_from.isoformat() if filters.date_from else None,
        )
        builder.add_if(
            filters.date_to,
            "substr(date_of_acceptance, 1, 10) <= ?",
            filters.date_to.isoformat() if filters.date_to else None,
        )
        builder.add_if(
            filters.status,
            "ticket_status = ?",
            filters.status.value if filters.status else None,
        )
        builder.add_if(
            filters.principal,
            "principal LIKE ? ESCAPE '\\'",
            f"%{_escape_like(filters.principal)}%" if filters.principal else None,
        )
        builder.add_if(
            filters.importer,
            "importer_code LIKE ? ESCAPE '\\'",
            f"%{_escape_like(filters.importer)}%" if filters.importer else None,
        )
        return builder


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class DeclarationStore:
    def __init__(self, db_path: Path, clock: Callable[[], str] = utc_now):
        self.db_path = Path(db_path)
        self.clock = clock

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection; sqlite errors leave as StorageError."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with closing(sqlite3.connect(self.db_path, timeout=10)) as con:
                con.row_factory = sqlite3.Row
                yield con
        except sqlite3.Error as exc:
            logger.error("storage_error", db_path=str(self.db_path), error=str(exc))
            raise StorageError(str(exc)) from exc
        except OSError as exc:
            raise StorageError(str(exc)) from exc

    def init_schema(self) -> None:
        with self.connect() as con:
            con.executescript(SCHEMA)

    def has_data(self) -> bool:
        if not self.db_path.exists():
            return False
        with self.connect() as con:
            row = con.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (TABLE,)
            ).fetchone()
            if row is None:
                return False
            return con.execute(f"SELECT 1 FROM {TABLE} LIMIT 1").fetchone() is not None

    def upsert_batch(self, records: Sequence[DeclarationIn]) -> dict[str, int]:
        if not records:
            raise ValidationError("Batch must contain at least one declaration")
        missing = [i for i, r in enumerate(records) if getattr(r, "declaration_id", None) is None]
        if missing:
            raise ValidationError(f"Items without declarationId at positions {missing}")

        now = self.clock()
        values = [
            (
                r.declaration_id,
                extract_guid(r.link_string),
                r.subject,
                r.body,
                r.link_string,
                r.commercial_reference,
                r.principal,
                r.importer_code,
                r.mrn,
                r.traces_identification,
                r.link_id_erp2,
                r.link_id_erp4,
                r.acceptance_iso(),
                now,
                now,
            )
            for r in records
        ]

        with self.connect() as con:
            with con:
                before = con.total_changes
                con.executemany(UPSERT, values)
                upserted = con.total_changes - before

        stats = {"received": len(records), "upserted": upserted}
        logger.info("declarations_upserted", **stats)
        return stats

    def query(self, filters: DeclarationFilters, page: int = 1, page_size: int = 50) -> Page:
        if page < 1 or page_size < 1:
            raise ValidationError("page and pageSize must be positive")
        builder = FilterBuilder.for_declarations(filters)
        offset = (page - 1) * page_size

        with self.connect() as con:
            total = con.execute(
                f"SELECT COUNT(*) FROM {TABLE}{builder.where}", builder.params
            ).fetchone()[0]
            rows = con.execute(
                f"SELECT * FROM {TABLE}{builder.where} "
                "ORDER BY date_of_acceptance DESC, declaration_id DESC LIMIT ? OFFSET ?",
                [*builder.params, page_size, offset],
            ).fetchall()

        return Page(
            rows=[Declaration(**dict(row)) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size),
        )

    def get_by_id(self, declaration_id: int) -> Declaration:
        with self.connect() as con:
            row = con.execute(
                f"SELECT * FROM {TABLE} WHERE declaration_id = ?", (declaration_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Declaration {declaration_id} not found")
        return Declaration(**dict(row))

    def update_ticket_status(
        self,
        declaration_id: int,
        status: TicketStatus,
        ticket_id: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Resolve a PENDING claim to CREATED or FAILED.

        Only a row that is still PENDING is touched; anything else raises
        ``ConflictError`` (code ``NotPending``) so a late outcome can never
        overwrite a newer one.
        """
        if status not in (TicketStatus.CREATED, TicketStatus.FAILED):
            raise ValidationError("A ticket claim resolves to CREATED or FAILED")
        if status is TicketStatus.CREATED and ticket_id is None:
            raise ValidationError("CREATED requires a ticket id")
        if status is TicketStatus.FAILED and not error:
            raise ValidationError("FAILED requires an error message")

        # ticket_id only survives on CREATED, ticket_error only on FAILED
        ticket_id = ticket_id if status is TicketStatus.CREATED else None
        error = error if status is TicketStatus.FAILED else None

        with self.connect() as con:
            with con:
                cur = con.execute(
                    f"UPDATE {TABLE} SET ticket_status = ?, ticket_id = ?, ticket_error = ?, "
                    "ticket_updated_at = ? WHERE declaration_id = ? AND ticket_status = 'PENDING'",
                    (status.value, ticket_id, error, self.clock(), declaration_id),
                )
                updated = cur.rowcount
        if updated == 0:
            current = self.get_by_id(declaration_id)
            raise ConflictError(
                f"Declaration {declaration_id} is {current.ticket_status.value}, not PENDING",
                code="NotPending",
            )

    def claim_for_ticket(self, declaration_id: int) -> bool:
        """Move a NEW or FAILED declaration to PENDING.

        A PENDING row is never claimed again, however old: a request that
        died after the helpdesk accepted it may already own a ticket.
        """
        with self.connect() as con:
            with con:
                cur = con.execute(
                    f"UPDATE {TABLE} SET ticket_status = 'PENDING', ticket_id = NULL, "
                    "ticket_error = NULL, ticket_updated_at = ? "
                    "WHERE declaration_id = ? AND ticket_status IN ('NEW', 'FAILED')",
                    (self.clock(), declaration_id),
                )
                claimed = cur.rowcount == 1
        return claimed

    def load_frame(self) -> pd.DataFrame:
        with self.connect() as con:
            df = pd.read_sql_query(
                f"SELECT declaration_id, principal, importer_code, date_of_acceptance, "
                f"last_seen_at, ticket_status FROM {TABLE}",
                con,
            )
        if not df.empty:
            df["date_of_acceptance"] = pd.to_datetime(df["date_of_acceptance"], errors="coerce")
            df["last_seen_at"] = pd.to_datetime(df["last_seen_at"], errors="coerce")
        return df
