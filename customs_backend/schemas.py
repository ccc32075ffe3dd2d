from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class TicketStatus(str, Enum):
    NEW = "NEW"
    PENDING = "PENDING"
    CREATED = "CREATED"
    FAILED = "FAILED"


class DeclarationIn(BaseModel):
    """One item of a sync batch.

    Keys are accepted in camelCase, snake_case or the UPPERCASE column names
    the upstream export uses. Defaults are applied here once so the store only
    ever sees fully-populated records.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    declaration_id: int = Field(
        validation_alias=AliasChoices("declarationId", "DECLARATIONID", "declaration_id")
    )
    link_string: str = Field(
        default="",
        validation_alias=AliasChoices("linkString", "ODOO_LINKSTRING_STREAMSOFTWARE", "link_string"),
    )
    subject: str = Field(default="", validation_alias=AliasChoices("subject", "MAIL_SUBJECT"))
    body: str = Field(default="", validation_alias=AliasChoices("body", "ODOO_BODY"))
    commercial_reference: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("commercialReference", "COMMERCIALREFERENCE", "commercial_reference"),
    )
    principal: Optional[str] = Field(default=None, validation_alias=AliasChoices("principal", "PRINCIPAL"))
    importer_code: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("importerCode", "IMPORTERCODE", "importer_code")
    )
    mrn: Optional[str] = Field(default=None, validation_alias=AliasChoices("mrn", "MRN"))
    traces_identification: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("traces", "TRACESIDENTIFICATION", "traces_identification"),
    )
    link_id_erp2: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("link2", "LINKIDERP2", "link_id_erp2")
    )
    link_id_erp4: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("link4", "LINKIDERP4", "link_id_erp4")
    )
    date_of_acceptance: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("acceptanceDate", "DATEOFACCEPTANCE", "date_of_acceptance"),
    )

    @field_validator("link_string", "subject", "body", mode="before")
    @classmethod
    def _text_or_empty(cls, v):
        return "" if v is None else str(v)

    @field_validator("commercial_reference", "principal", "importer_code", "mrn", mode="before")
    @classmethod
    def _empty_to_none(cls, v):
        if v is None or v == "":
            return None
        return str(v)

    @field_validator("traces_identification", "link_id_erp2", "link_id_erp4", mode="before")
    @classmethod
    def _strip_to_none(cls, v):
        if v is None:
            return None
        return str(v).strip() or None

    @field_validator("date_of_acceptance", mode="before")
    @classmethod
    def _blank_date(cls, v):
        return v or None

    def acceptance_iso(self) -> Optional[str]:
        value = self.date_of_acceptance
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat()


class SyncBatch(BaseModel):
    items: list[DeclarationIn] = Field(min_length=1)


class Declaration(BaseModel):
    declaration_id: int
    declaration_guid: str
    subject: str = ""
    body: str = ""
    link_string: str = ""
    commercial_reference: Optional[str] = None
    principal: Optional[str] = None
    importer_code: Optional[str] = None
    mrn: Optional[str] = None
    traces_identification: Optional[str] = None
    link_id_erp2: Optional[str] = None
    link_id_erp4: Optional[str] = None
    date_of_acceptance: Optional[datetime] = None
    first_seen_at: datetime
    last_seen_at: datetime
    ticket_status: TicketStatus = TicketStatus.NEW
    ticket_id: Optional[int] = None
    ticket_error: Optional[str] = None
    ticket_updated_at: Optional[datetime] = None


class DeclarationFilters(BaseModel):
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    status: Optional[TicketStatus] = None
    principal: Optional[str] = None
    importer: Optional[str] = None


class Page(BaseModel):
    rows: list[Declaration]
    total: int
    page: int
    page_size: int
    total_pages: int


class TicketReconcile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ticket_id: Optional[int] = Field(default=None, alias="ticketId")


# Principals


class PrincipalName(BaseModel):
    name: Optional[str] = None


class PrincipalRename(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    old_name: Optional[str] = Field(default=None, alias="oldName")
    new_name: Optional[str] = Field(default=None, alias="newName")


# MRN tracking


class TrackingEntry(BaseModel):
    mrn: str = Field(min_length=1)
    tracking_data: dict[str, Any]


class TrackingBulk(BaseModel):
    records: list[TrackingEntry]


# Analytics inputs. These mirror the metrics an external job computes per user.


class UserDailyCreations(BaseModel):
    user: str
    team: str = ""
    daily_file_creations: dict[date, int] = Field(default_factory=dict)


class LeaderboardRequest(BaseModel):
    users: list[UserDailyCreations]
    window_days: int = Field(default=10, ge=1, le=366)


class DailyMetric(BaseModel):
    day: date = Field(validation_alias=AliasChoices("date", "day"))
    manual_files_created: int = 0
    automatic_files_created: int = 0
    total_files_handled: int = 0
    modification_count: int = 0
    avg_creation_time: Optional[float] = None
    sending_count: int = 0


class ManualAutoRatio(BaseModel):
    manual_percent: float = 0.0
    automatic_percent: float = 0.0


class PerformanceSummary(BaseModel):
    total_files_handled: int = 0
    total_modifications: int = 0
    avg_files_per_day: float = 0.0
    modifications_per_file: float = 0.0
    days_active: int = 0
    avg_creation_time: Optional[float] = None
    manual_vs_auto_ratio: ManualAutoRatio = Field(default_factory=ManualAutoRatio)
    company_specialization: dict[str, int] = Field(default_factory=dict)
    activity_by_hour: dict[int, int] = Field(default_factory=dict)
    activity_days: dict[date, int] = Field(default_factory=dict)
    file_type_counts: dict[str, int] = Field(default_factory=dict)
    hour_with_most_activity: Optional[int] = None
    most_productive_day: Optional[date] = None


class UserPerformance(BaseModel):
    user: str
    summary: PerformanceSummary = Field(default_factory=PerformanceSummary)
    daily_metrics: list[DailyMetric] = Field(default_factory=list)


class CompareRequest(BaseModel):
    users: list[UserPerformance]
