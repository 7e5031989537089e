"""FastAPI action endpoints for the work-order tracker."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, List, Optional

from fastapi import FastAPI, Form, Request
from fastapi.responses import JSONResponse, RedirectResponse

from ..config import AppConfig, load_config
from ..domain import (
    ActualUsage,
    ConflictError,
    MaterialUsage,
    PrintStageActual,
    SimpleStageActual,
    StageKind,
    StageStatus,
    ValidationError,
)
from ..repository import DataStoreError, RecordNotFoundError
from ..services import FabricationService
from ..settings import ensure_lead_time_settings
from ..storage import ShopDatabase
from ..store import SettingsStore, WorkOrderStore

logger = logging.getLogger(__name__)


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    config = config or load_config()
    logging.basicConfig(level=config.log_level)

    database: Optional[ShopDatabase] = None
    if config.database_path:
        database = ShopDatabase(config.database_path, timeout=config.database_timeout)
        store = WorkOrderStore.from_database(database)
        settings = SettingsStore.from_database(database)
    else:
        store = WorkOrderStore()
        settings = SettingsStore()
    service = FabricationService(
        store,
        settings,
        note_timezone=config.timezone,
        note_timestamp_format=config.note_timestamp_format,
    )
    if config.seed_demo_data:
        ensure_demo_data(service)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if database is not None:
            database.close()

    app = FastAPI(title="Fabrication Work Orders", lifespan=lifespan)
    app.state.service = service
    app.state.database = database

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse({"detail": str(exc)}, status_code=422)

    @app.exception_handler(ConflictError)
    async def conflict_error(request: Request, exc: ConflictError):
        return JSONResponse({"detail": str(exc)}, status_code=409)

    @app.exception_handler(RecordNotFoundError)
    async def not_found_error(request: Request, exc: RecordNotFoundError):
        return JSONResponse({"detail": str(exc)}, status_code=404)

    @app.exception_handler(DataStoreError)
    async def data_store_error(request: Request, exc: DataStoreError):
        logger.error("Data store failure on %s: %s", request.url.path, exc)
        return JSONResponse({"detail": str(exc)}, status_code=503)

    @app.get("/")
    async def open_work_orders(request: Request):
        service: FabricationService = request.app.state.service
        return [
            {
                "work_order": order,
                "progress": service.progress_label(order.id),
            }
            for order in service.store.list_open_work_orders()
        ]

    @app.post("/work-orders")
    async def create_work_order(
        request: Request,
        customer_name: str = Form(""),
        project_details: str = Form(""),
        services: str = Form(""),
        quote_id: Optional[str] = Form(None),
    ):
        service: FabricationService = request.app.state.service
        work_order = service.create_work_order(
            customer_name,
            project_details,
            split_csv(services),
            quote_id=quote_id,
        )
        return RedirectResponse(f"/work-orders/{work_order.id}", status_code=303)

    @app.get("/work-orders/{work_order_id}")
    async def work_order_detail(work_order_id: str, request: Request):
        service: FabricationService = request.app.state.service
        work_order = service.store.get_work_order(work_order_id)
        stages = service.store.list_stages_for_work_order(work_order_id)
        actuals = service.store.list_stage_actuals(stage.id for stage in stages)
        return {
            "work_order": work_order,
            "progress": service.progress_label(work_order_id),
            "stages": stages,
            "actuals": [actuals[stage.id] for stage in stages if stage.id in actuals],
        }

    @app.post("/work-orders/{work_order_id}/quote")
    async def link_quote(
        work_order_id: str,
        request: Request,
        quote_id: str = Form(""),
    ):
        service: FabricationService = request.app.state.service
        service.link_quote(work_order_id, quote_id.strip() or None)
        return RedirectResponse(f"/work-orders/{work_order_id}", status_code=303)

    @app.get("/work-orders/{work_order_id}/variance")
    async def work_order_variance(work_order_id: str, request: Request):
        service: FabricationService = request.app.state.service
        return service.reconcile_hours(work_order_id)

    @app.post("/stages/{stage_id}/status")
    async def change_stage_status(
        stage_id: str,
        request: Request,
        status: str = Form(...),
        note: str = Form(""),
    ):
        service: FabricationService = request.app.state.service
        service.transition_stage(stage_id, status, note)
        stage = service.store.get_stage(stage_id)
        return RedirectResponse(f"/work-orders/{stage.work_order_id}", status_code=303)

    @app.post("/stages/{stage_id}/actuals")
    async def record_stage_actuals(
        stage_id: str,
        request: Request,
        actual_hours: Optional[float] = Form(None),
        restarted: Optional[str] = Form(None),
        extra_machine_hours: float = Form(0.0),
        extra_setup_hours: float = Form(0.0),
        extra_support_hours: float = Form(0.0),
        materials: str = Form(""),
        notes: str = Form(""),
    ):
        service: FabricationService = request.app.state.service
        try:
            stage = service.store.get_stage(stage_id)
        except RecordNotFoundError as exc:
            raise ValidationError(str(exc)) from exc
        usage: ActualUsage
        if stage.kind == StageKind.PRINT:
            usage = PrintStageActual(
                restarted=restarted is not None,
                extra_machine_hours=extra_machine_hours,
                extra_setup_hours=extra_setup_hours,
                extra_support_hours=extra_support_hours,
                extra_material_usage=parse_material_usage(materials),
            )
        else:
            usage = SimpleStageActual(actual_hours=actual_hours)
        service.record_stage_actual(stage_id, usage, notes=notes)
        return RedirectResponse(f"/work-orders/{stage.work_order_id}", status_code=303)

    @app.post("/lead-times/recompute")
    async def recompute_lead_times(request: Request):
        service: FabricationService = request.app.state.service
        service.recompute_lead_times()
        return RedirectResponse("/", status_code=303)

    @app.get("/settings")
    async def settings_overview(request: Request):
        service: FabricationService = request.app.state.service
        ensure_lead_time_settings(service.settings)
        return service.settings.list()

    @app.post("/settings/{key}")
    async def update_setting(key: str, request: Request, value: str = Form(...)):
        service: FabricationService = request.app.state.service
        service.update_setting(key, value)
        return RedirectResponse("/settings", status_code=303)

    return app


def split_csv(values: str) -> List[str]:
    return [value.strip() for value in values.split(",") if value.strip()]


def parse_material_usage(value: str) -> List[MaterialUsage]:
    """Parse ``material_id:grams`` pairs separated by commas."""

    usage: List[MaterialUsage] = []
    for token in split_csv(value):
        material_id, _, grams = token.partition(":")
        try:
            amount = float(grams)
        except ValueError as exc:
            raise ValidationError(f"Invalid material usage {token!r}") from exc
        usage.append(MaterialUsage(material_id=material_id.strip(), grams=amount))
    return usage


def ensure_demo_data(service: FabricationService) -> None:
    if service.store.list_open_work_orders():
        return

    scan_quote = "Q-DEMO-1"
    service.add_quote_line_item(scan_quote, StageKind.SCANNING, labor_hours=6)
    service.add_quote_line_item(scan_quote, StageKind.DESIGN, labor_hours=40)
    service.add_quote_line_item(
        scan_quote,
        StageKind.PRINT,
        print_time_hours=52,
        support_removal_hours=3,
        setup_hours=1.5,
        admin_hours=0.5,
    )
    print_quote = "Q-DEMO-2"
    service.add_quote_line_item(
        print_quote, StageKind.PRINT, print_time_hours=20, setup_hours=1
    )

    first = service.create_work_order(
        "Northwind Robotics",
        "Scan, redesign and print a replacement gripper housing",
        [StageKind.SCANNING, StageKind.DESIGN, StageKind.PRINT],
        quote_id=scan_quote,
    )
    service.create_work_order(
        "Harbor Marine Supply",
        "Print twelve impeller covers in PETG",
        [StageKind.PRINT],
        quote_id=print_quote,
        created_at=first.created_at + timedelta(hours=2),
    )
    first_stage = service.store.list_stages_for_work_order(first.id)[0]
    service.transition_stage(first_stage.id, StageStatus.IN_PROGRESS, "Part received")
    service.recompute_lead_times()
