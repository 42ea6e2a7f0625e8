from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Body,
    Depends,
    FastAPI,
    HTTPException,
    Request,
    Response,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from leadlock.auth import AuthContext, require_admin
from leadlock.models import (
    LeadsSheetsResponse,
    RefreshIndexRequest,
    RefreshIndexResponse,
    SettingsUpdateRequest,
    SettingsUpdateResponse,
    StatusResponse,
    to_iso,
    utc_now,
)
from leadlock.observability import MetricsRegistry, configure_logging, observe_request
from leadlock.persistence import open_workbook
from leadlock.services.dedupe import EventDedupeCache
from leadlock.services.hold_settings import HoldSettingsStore
from leadlock.services.leads_index import LeadsIndex, LeadsIndexError
from leadlock.services.locks import LockTable
from leadlock.services.reconciler import Reconciler
from leadlock.services.scheduler import Scheduler, warm_up
from leadlock.services.sheets import GoogleSheetsClient, SpreadsheetClient, SpreadsheetError
from leadlock.services.telephony import CallEventIntake
from leadlock.services.webhooks import (
    VALIDATION_TOKEN_HEADER,
    WebhookAuthError,
    validation_token,
    verify_webhook_secret,
)
from leadlock.settings import Settings, load_settings
from leadlock.store import (
    HoldMinutesError,
    HoldMinutesOverlay,
    ServiceState,
    validate_hold_minutes,
)


def build_spreadsheet_client(settings: Settings) -> SpreadsheetClient:
    if settings.sheets_backend == "sqlite":
        return open_workbook(
            settings.sheets_database_url,
            [
                *settings.leads_sheet_names,
                settings.locks_sheet_name,
                settings.settings_sheet_name,
            ],
        )
    return GoogleSheetsClient(settings.sheet_id, settings.google_service_account_json)


def create_app(
    settings: Optional[Settings] = None,
    client: Optional[SpreadsheetClient] = None,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    configure_logging()
    settings = settings or load_settings()
    client = client or build_spreadsheet_client(settings)

    leads_index = LeadsIndex(
        client,
        settings.leads_sheet_names,
        phone_label=settings.label_phone,
        default_country_code=settings.default_country_code,
    )
    state = ServiceState(
        leads_index=leads_index,
        holds=HoldMinutesOverlay(settings.default_hold_minutes),
        dedupe=EventDedupeCache(settings.dedupe_ttl_seconds),
    )
    hold_settings = HoldSettingsStore(client, settings.settings_sheet_name, state.holds)
    lock_table = LockTable(
        client,
        settings.locks_sheet_name,
        settings.leads_sheet_names,
        default_country_code=settings.default_country_code,
    )
    reconciler = Reconciler(
        state,
        client,
        lock_table,
        lock_after_calls=settings.lock_after_calls,
        clock=clock,
    )
    intake = CallEventIntake(
        state,
        count_outbound=settings.count_outbound,
        count_inbound=settings.count_inbound,
        default_country_code=settings.default_country_code,
    )
    scheduler = Scheduler(
        state,
        reconciler,
        flush_interval_ms=settings.flush_interval_ms,
        unlock_sweep_interval_ms=settings.unlock_sweep_interval_ms,
        index_refresh_interval_ms=settings.cache_refresh_interval_ms,
        warm_up=lambda: warm_up(state, hold_settings),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.scheduler_enabled:
            scheduler.start()
        yield
        await scheduler.stop()

    app = FastAPI(title="Lead Lock", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.client = client
    app.state.service = state
    app.state.metrics = state.metrics
    app.state.hold_settings = hold_settings
    app.state.reconciler = reconciler
    app.state.intake = intake
    app.state.scheduler = scheduler

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_service(request: Request) -> ServiceState:
    return request.app.state.service


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def _process_webhook_body(intake: CallEventIntake, raw_body: bytes) -> None:
    try:
        payload = json.loads(raw_body.decode("utf-8")) if raw_body else None
    except (UnicodeDecodeError, json.JSONDecodeError):
        payload = None
    intake.process_safely(payload)


def _known_sheet(settings: Settings, sheet: Optional[str]) -> Optional[str]:
    name = (sheet or "").strip()
    if not name:
        return None
    if name not in settings.leads_sheet_names:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"unknown leads sheet: {name}",
        )
    return name


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, bool]:
        return {"ok": True}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        service = get_service(request)
        if not service.leads_index.is_loaded:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="leads index not loaded",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        pending = len(get_service(request).pending)
        return PlainTextResponse(registry.to_prometheus(pending_phones=pending))

    async def telephony_webhook(request: Request, background_tasks: BackgroundTasks) -> Response:
        settings = get_settings(request)
        try:
            verify_webhook_secret(
                request.headers, request.query_params, settings.webhook_shared_secret
            )
        except WebhookAuthError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

        token = validation_token(request.headers)
        if token:
            return PlainTextResponse(token, headers={VALIDATION_TOKEN_HEADER: token})

        raw_body = await request.body()
        background_tasks.add_task(_process_webhook_body, request.app.state.intake, raw_body)
        return PlainTextResponse("OK")

    router.add_api_route("/webhook", telephony_webhook, methods=["POST"])
    router.add_api_route("/ringcentral/webhook", telephony_webhook, methods=["POST"])

    @router.get("/api/status", response_model=StatusResponse)
    def api_status(
        request: Request,
        sheet: Optional[str] = None,
        _: AuthContext = Depends(require_admin),
    ) -> StatusResponse:
        service = get_service(request)
        settings = get_settings(request)
        name = (sheet or "").strip()
        index = service.leads_index
        return StatusResponse(
            hold_minutes=service.holds.for_sheet(name or None),
            default_hold_minutes=service.holds.default_minutes,
            hold_minutes_by_sheet=service.holds.by_sheet(),
            leads_sheets=list(settings.leads_sheet_names),
            pending_phones=len(service.pending),
            index_loaded_at=(
                to_iso(datetime.fromtimestamp(index.loaded_at, tz=timezone.utc))
                if index.is_loaded
                else None
            ),
            indexed_phones=len(index),
            metrics=service.metrics.service_snapshot(),
        )

    @router.get("/api/leads-sheets", response_model=LeadsSheetsResponse)
    def api_leads_sheets(
        request: Request,
        _: AuthContext = Depends(require_admin),
    ) -> LeadsSheetsResponse:
        service = get_service(request)
        settings = get_settings(request)
        return LeadsSheetsResponse(
            leads_sheets=list(settings.leads_sheet_names),
            default_hold_minutes=service.holds.default_minutes,
            hold_minutes_by_sheet=service.holds.by_sheet(),
        )

    @router.post("/api/settings", response_model=SettingsUpdateResponse)
    def api_settings(
        payload: SettingsUpdateRequest,
        request: Request,
        _: AuthContext = Depends(require_admin),
    ) -> SettingsUpdateResponse:
        service = get_service(request)
        sheet = _known_sheet(get_settings(request), payload.lead_sheet)
        hold_settings: HoldSettingsStore = request.app.state.hold_settings
        try:
            minutes = validate_hold_minutes(payload.hold_minutes)
            persisted = hold_settings.save(minutes, sheet)
        except HoldMinutesError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except SpreadsheetError as exc:
            service.metrics.record_error("settings", exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
            ) from exc
        return SettingsUpdateResponse(
            hold_minutes=minutes,
            lead_sheet=sheet,
            persisted=persisted,
        )

    @router.post("/api/refresh-index", response_model=RefreshIndexResponse)
    def api_refresh_index(
        request: Request,
        sheet: Optional[str] = None,
        payload: Optional[RefreshIndexRequest] = Body(default=None),
        _: AuthContext = Depends(require_admin),
    ) -> RefreshIndexResponse:
        service = get_service(request)
        name = _known_sheet(get_settings(request), sheet or (payload.sheet if payload else None))
        try:
            indexed = service.leads_index.refresh(name)
        except (LeadsIndexError, SpreadsheetError) as exc:
            service.metrics.record_error("index", exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
            ) from exc
        return RefreshIndexResponse(sheet=name, indexed_phones=indexed)

    return router
