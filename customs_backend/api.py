from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from customs_backend import __version__, core
from customs_backend.config import Settings, get_settings
from customs_backend.errors import DeskError
from customs_backend.log_config import RequestLoggingMiddleware, configure_structlog
from customs_backend.schemas import (
    CompareRequest,
    DeclarationFilters,
    LeaderboardRequest,
    PrincipalName,
    PrincipalRename,
    TicketReconcile,
    TicketStatus,
    TrackingBulk,
    TrackingEntry,
    UserPerformance,
)
from customs_backend.services import reporting, sync
from customs_backend.services.data_layer import DeclarationStore
from customs_backend.services.documents import DocumentStore, build_document_store
from customs_backend.services.odoo import Ticketing, build_ticketing
from customs_backend.services.principals import PrincipalRegistry
from customs_backend.services.tickets import TicketLifecycle
from customs_backend.services.tracking import TrackingLog

logger = structlog.get_logger(__name__)


def _error_response(exc: DeskError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.code, "details": exc.details},
    )


def create_app(
    settings: Optional[Settings] = None,
    ticketing: Optional[Ticketing] = None,
    documents: Optional[DocumentStore] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_structlog(settings)

    store = DeclarationStore(settings.database_path)
    documents = documents or build_document_store(settings)
    lifecycle = TicketLifecycle(store, ticketing or build_ticketing(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.init_schema()
        logger.info("startup", db_path=str(settings.database_path), documents=settings.document_backend)
        yield

    app = FastAPI(
        title="Customs Desk backend",
        version=__version__,
        description="Declaration sync, helpdesk tickets and dashboard analytics",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.lifecycle = lifecycle
    app.state.principals = PrincipalRegistry(documents, settings.principals_path)
    app.state.tracking = TrackingLog(documents, settings.tracking_path)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(DeskError)
    async def desk_error_handler(request: Request, exc: DeskError):
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "ValidationError", "details": problems},
        )

    _register_routes(app)
    return app


def get_store(request: Request) -> DeclarationStore:
    return request.app.state.store


def get_lifecycle(request: Request) -> TicketLifecycle:
    return request.app.state.lifecycle


def get_principals(request: Request) -> PrincipalRegistry:
    return request.app.state.principals


def get_tracking(request: Request) -> TrackingLog:
    return request.app.state.tracking


def _register_routes(app: FastAPI) -> None:
    @app.get("/healthz")
    def healthcheck(store: DeclarationStore = Depends(get_store)):
        return {
            "status": "ok",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "has_data": store.has_data(),
        }

    @app.get("/kpi")
    def kpi(store: DeclarationStore = Depends(get_store)):
        return core.get_kpis(store)

    # Sync ingest

    @app.post("/sync/upsert")
    async def sync_upsert(
        request: Request,
        x_sync_secret: Optional[str] = Header(None),
        store: DeclarationStore = Depends(get_store),
    ):
        # raw bytes: the secret is checked before the body is decoded
        body = await request.body()
        stats = await run_in_threadpool(
            sync.ingest, store, body, x_sync_secret, request.app.state.settings.sync_secret
        )
        return {"success": True, "stats": stats}

    # Declarations

    @app.get("/declarations")
    def list_declarations(
        page: int = Query(1, ge=1),
        page_size: int = Query(50, ge=1, le=500, alias="pageSize"),
        date_from: Optional[date] = Query(None, alias="from"),
        date_to: Optional[date] = Query(None, alias="to"),
        status: Optional[TicketStatus] = None,
        principal: Optional[str] = None,
        importer: Optional[str] = None,
        store: DeclarationStore = Depends(get_store),
    ):
        filters = DeclarationFilters(
            date_from=date_from,
            date_to=date_to,
            status=status,
            principal=principal,
            importer=importer,
        )
        result = store.query(filters, page=page, page_size=page_size)
        return {
            "data": [row.model_dump(mode="json") for row in result.rows],
            "pagination": {
                "page": result.page,
                "pageSize": result.page_size,
                "total": result.total,
                "totalPages": result.total_pages,
            },
        }

    @app.get("/declarations/{declaration_id}")
    def get_declaration(declaration_id: int, store: DeclarationStore = Depends(get_store)):
        return store.get_by_id(declaration_id).model_dump(mode="json")

    @app.post("/declarations/{declaration_id}/create-project")
    def create_project(declaration_id: int, lifecycle: TicketLifecycle = Depends(get_lifecycle)):
        outcome = lifecycle.request_ticket(declaration_id)
        return {"success": True, "ticketId": outcome.ticket_id, "status": outcome.status.value}

    @app.post("/declarations/{declaration_id}/reconcile-ticket")
    def reconcile_ticket(
        declaration_id: int,
        body: Optional[TicketReconcile] = None,
        lifecycle: TicketLifecycle = Depends(get_lifecycle),
    ):
        outcome = lifecycle.reconcile(declaration_id, ticket_id=body.ticket_id if body else None)
        return {"success": True, "ticketId": outcome.ticket_id, "status": outcome.status.value}

    # Fiscal representation principals

    @app.get("/fiscal/principals")
    def list_principals(registry: PrincipalRegistry = Depends(get_principals)):
        return {"principals": registry.names()}

    @app.post("/fiscal/principals")
    def add_principal(body: PrincipalName, registry: PrincipalRegistry = Depends(get_principals)):
        principals = registry.add(body.name)
        return {"success": True, "message": f'"{body.name.strip()}" added', "principals": principals}

    @app.put("/fiscal/principals")
    def rename_principal(body: PrincipalRename, registry: PrincipalRegistry = Depends(get_principals)):
        principals = registry.rename(body.old_name, body.new_name)
        return {
            "success": True,
            "message": f'"{body.old_name}" renamed to "{body.new_name.strip()}"',
            "principals": principals,
        }

    @app.delete("/fiscal/principals")
    def delete_principal(body: PrincipalName, registry: PrincipalRegistry = Depends(get_principals)):
        principals = registry.remove(body.name)
        return {"success": True, "message": f'"{body.name}" removed', "principals": principals}

    # MRN tracking

    @app.get("/tracking")
    def tracking_records(tracking: TrackingLog = Depends(get_tracking)):
        return {"records": tracking.all_records()}

    @app.get("/tracking/{mrn}")
    def tracking_history(mrn: str, tracking: TrackingLog = Depends(get_tracking)):
        return {"tracking_records": tracking.history(mrn)}

    @app.post("/tracking")
    def add_tracking(entry: TrackingEntry, tracking: TrackingLog = Depends(get_tracking)):
        tracking.record(entry.mrn, entry.tracking_data)
        return {"success": True, "message": "Tracking recorded"}

    @app.post("/tracking/bulk")
    def add_tracking_bulk(payload: TrackingBulk, tracking: TrackingLog = Depends(get_tracking)):
        count = tracking.record_bulk(payload.records)
        return {"success": True, "message": f"{count} records updated successfully"}

    # Analytics

    @app.post("/analytics/leaderboard")
    def analytics_leaderboard(payload: LeaderboardRequest):
        return reporting.build_leaderboard(payload.users, window_days=payload.window_days)

    @app.post("/analytics/performance")
    def analytics_performance(performance: UserPerformance, today: Optional[date] = None):
        return reporting.build_user_profile(performance, today or date.today())

    @app.post("/analytics/compare")
    def analytics_compare(payload: CompareRequest):
        return reporting.compare_users(payload.users)


app = create_app()
