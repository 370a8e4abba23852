import hashlib
import json
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from . import models, schemas
from .config import settings
from .db import SessionLocal
from .errors import (
    ConcurrentModificationError,
    DeadlineExceededError,
    DuplicateKeyError,
    InvalidStateError,
    LedgerError,
    MixingNotAllowedError,
    NotFoundError,
    RecordInUseError,
    ValidationError,
)
from .logging_config import configure_logging, get_logger
from .models import MovementStatus, MovementType, ReferenceType, ReservationStatus
from .orchestrator import InventoryOrchestrator
from .sweeper import ExpirySweeper

logger = get_logger(__name__)

ERROR_STATUS = [
    (NotFoundError, 404),
    (ValidationError, 422),
    (DeadlineExceededError, 504),
    (
        (ConcurrentModificationError, DuplicateKeyError, InvalidStateError, MixingNotAllowedError, RecordInUseError),
        409,
    ),
]


def status_for(exc: LedgerError) -> int:
    for types, status in ERROR_STATUS:
        if isinstance(exc, types):
            return status
    return 400


def request_hash(payload: dict | None) -> str:
    normalized = json.dumps(payload or {}, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _idempotency_lookup(operator: str, method: str, path: str, key: str):
    return select(models.IdempotencyRecord).where(
        models.IdempotencyRecord.operator == operator,
        models.IdempotencyRecord.method == method,
        models.IdempotencyRecord.path == path,
        models.IdempotencyRecord.idempotency_key == key,
    )


def replay_or_lock_idempotency(
    session_factory: sessionmaker,
    operator: str,
    method: str,
    path: str,
    key: str | None,
    payload: dict | None,
):
    if not key:
        return None, None
    r_hash = request_hash(payload)
    with session_factory() as idb:
        existing = idb.scalar(_idempotency_lookup(operator, method, path, key))
        if existing:
            if existing.request_hash != r_hash:
                raise HTTPException(409, "idempotency key was already used for a different request")
            if existing.status_code <= 0:
                raise HTTPException(409, "request is still being processed, retry later")
            return json.loads(existing.response_body or "{}"), None
        idb.add(
            models.IdempotencyRecord(
                operator=operator,
                method=method,
                path=path,
                idempotency_key=key,
                request_hash=r_hash,
                status_code=0,
                response_body=None,
            )
        )
        try:
            idb.commit()
        except IntegrityError:
            idb.rollback()
            raced = idb.scalar(_idempotency_lookup(operator, method, path, key))
            if raced and raced.request_hash == r_hash and raced.status_code > 0:
                return json.loads(raced.response_body or "{}"), None
            raise HTTPException(409, "duplicate request, retry later")
    return None, r_hash


def finalize_idempotency(
    session_factory: sessionmaker,
    operator: str,
    method: str,
    path: str,
    key: str | None,
    payload_hash: str | None,
    response_body: dict | None = None,
):
    if not key or not payload_hash:
        return
    with session_factory() as idb:
        rec = idb.scalar(_idempotency_lookup(operator, method, path, key))
        if not rec:
            return
        rec.request_hash = payload_hash
        rec.status_code = 200
        rec.response_body = json.dumps(response_body or {}, ensure_ascii=False)
        idb.commit()


def release_idempotency_lock(session_factory: sessionmaker, operator: str, method: str, path: str, key: str | None):
    if not key:
        return
    with session_factory() as idb:
        rec = idb.scalar(
            _idempotency_lookup(operator, method, path, key).where(models.IdempotencyRecord.status_code == 0)
        )
        if rec:
            idb.delete(rec)
            idb.commit()


def get_orchestrator(request: Request) -> InventoryOrchestrator:
    return request.app.state.orchestrator


def get_operator(x_operator: str | None = Header(default=None, alias="X-Operator")) -> str:
    return x_operator or "anonymous"


def run_idempotent(
    request: Request,
    operator: str,
    key: str | None,
    payload: dict | None,
    action: Callable[[], dict],
) -> dict:
    """Run ``action`` once per (operator, method, path, Idempotency-Key)."""
    session_factory = request.app.state.session_factory
    method, path = request.method, request.url.path
    replay, p_hash = replay_or_lock_idempotency(session_factory, operator, method, path, key, payload)
    if replay is not None:
        logger.info("idempotency.replayed", path=path, key=key)
        return replay
    try:
        response = action()
    except Exception:
        release_idempotency_lock(session_factory, operator, method, path, key)
        raise
    finalize_idempotency(session_factory, operator, method, path, key, p_hash, response)
    return response


def create_app(
    orchestrator: InventoryOrchestrator | None = None,
    session_factory: sessionmaker | None = None,
    start_sweeper: bool | None = None,
) -> FastAPI:
    session_factory = session_factory or (orchestrator.session_factory if orchestrator else SessionLocal)
    orchestrator = orchestrator or InventoryOrchestrator.from_settings(settings, session_factory)
    start_sweeper = settings.sweep_enabled if start_sweeper is None else start_sweeper

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        with session_factory() as db:
            try:
                db.execute(text("SELECT 1 FROM stock_records LIMIT 1"))
            except OperationalError as exc:
                raise RuntimeError("database schema is missing, run: alembic upgrade head") from exc
        sweeper = None
        if start_sweeper:
            sweeper = ExpirySweeper(orchestrator, settings.sweep_interval_seconds, settings.sweep_batch_size)
            sweeper.start()
        app.state.sweeper = sweeper
        yield
        if sweeper is not None:
            sweeper.stop()

    app = FastAPI(title="Stock Ledger", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.session_factory = session_factory
    app.state.sweeper = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def audit_trace_middleware(request: Request, call_next):
        trace_id = request.headers.get("X-Trace-Id") or secrets.token_hex(8)
        request_source = request.headers.get("X-Request-Source")
        if not request_source:
            request_source = request.client.host if request.client else "unknown"
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(trace_id=trace_id, request_source=request_source)
        response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=status_for(exc), content={"detail": exc.to_dict()})

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health():
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # stock
    # ------------------------------------------------------------------
    @app.get("/stock")
    def list_stock(
        item_id: str | None = None,
        location_id: str | None = None,
        sku: str | None = None,
        limit: int = Query(100, gt=0, le=1000),
        offset: int = Query(0, ge=0),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
    ):
        rows = orchestrator.list_stock(item_id, location_id, sku, limit, offset)
        return [row.model_dump(mode="json") for row in rows]

    @app.get("/stock/{stock_record_id}")
    def get_stock(stock_record_id: int, orchestrator: InventoryOrchestrator = Depends(get_orchestrator)):
        return orchestrator.get_stock(stock_record_id).model_dump(mode="json")

    @app.delete("/stock/{stock_record_id}")
    def delete_stock(stock_record_id: int, orchestrator: InventoryOrchestrator = Depends(get_orchestrator)):
        orchestrator.delete_stock_record(stock_record_id)
        return {"status": "ok"}

    @app.get("/stock/{stock_record_id}/reservations/summary")
    def reservation_summary(stock_record_id: int, orchestrator: InventoryOrchestrator = Depends(get_orchestrator)):
        return orchestrator.reservation_summary(stock_record_id).model_dump(mode="json")

    @app.get("/stock/{stock_record_id}/reconcile")
    def reconcile(stock_record_id: int, orchestrator: InventoryOrchestrator = Depends(get_orchestrator)):
        report = orchestrator.reconcile(stock_record_id)
        return {**report.model_dump(mode="json"), "balanced": report.balanced}

    @app.post("/stock/receive")
    def receive(
        payload: schemas.ReceiveRequest,
        request: Request,
        operator: str = Depends(get_operator),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
    ):
        def action():
            return orchestrator.receive(
                payload.item_id,
                payload.location_id,
                payload.quantity,
                movement_type=payload.movement_type,
                reference_type=payload.reference_type,
                reference_id=payload.reference_id,
                reason=payload.reason,
                performed_by=operator,
                lot_number=payload.lot_number,
                serial_number=payload.serial_number,
                expiration_date=payload.expiration_date,
                meta=payload.meta,
            ).model_dump(mode="json")

        return run_idempotent(request, operator, idempotency_key, payload.model_dump(mode="json"), action)

    @app.post("/stock/ship")
    def ship(
        payload: schemas.ShipRequest,
        request: Request,
        operator: str = Depends(get_operator),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
    ):
        def action():
            return orchestrator.ship(
                payload.item_id,
                payload.location_id,
                payload.quantity,
                movement_type=payload.movement_type,
                reference_type=payload.reference_type,
                reference_id=payload.reference_id,
                reason=payload.reason,
                performed_by=operator,
                lot_number=payload.lot_number,
                serial_number=payload.serial_number,
            ).model_dump(mode="json")

        return run_idempotent(request, operator, idempotency_key, payload.model_dump(mode="json"), action)

    @app.post("/stock/transfer")
    def transfer(
        payload: schemas.TransferRequest,
        request: Request,
        operator: str = Depends(get_operator),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
    ):
        def action():
            return orchestrator.transfer(
                payload.item_id,
                payload.from_location_id,
                payload.to_location_id,
                payload.quantity,
                lot_number=payload.lot_number,
                serial_number=payload.serial_number,
                reason=payload.reason,
                performed_by=operator,
            ).model_dump(mode="json")

        return run_idempotent(request, operator, idempotency_key, payload.model_dump(mode="json"), action)

    @app.post("/stock/adjust")
    def adjust(
        payload: schemas.AdjustRequest,
        request: Request,
        operator: str = Depends(get_operator),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
    ):
        def action():
            return orchestrator.adjust(
                payload.item_id,
                payload.location_id,
                payload.delta,
                payload.reason,
                lot_number=payload.lot_number,
                serial_number=payload.serial_number,
                performed_by=operator,
            ).model_dump(mode="json")

        return run_idempotent(request, operator, idempotency_key, payload.model_dump(mode="json"), action)

    @app.post("/stock/count")
    def count(
        payload: schemas.CountRequest,
        request: Request,
        operator: str = Depends(get_operator),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
    ):
        def action():
            return orchestrator.count(
                payload.item_id,
                payload.location_id,
                payload.counted_quantity,
                reason=payload.reason,
                lot_number=payload.lot_number,
                serial_number=payload.serial_number,
                performed_by=operator,
            ).model_dump(mode="json")

        return run_idempotent(request, operator, idempotency_key, payload.model_dump(mode="json"), action)

    # ------------------------------------------------------------------
    # reservations
    # ------------------------------------------------------------------
    @app.post("/reservations")
    def create_reservation(
        payload: schemas.ReserveRequest,
        request: Request,
        operator: str = Depends(get_operator),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
    ):
        opts = schemas.ReservationOptions(
            reference_type=payload.reference_type,
            reference_id=payload.reference_id,
            reference_name=payload.reference_name,
            expires_at=payload.expires_at,
            notes=payload.notes,
        )

        def action():
            return orchestrator.reserve(
                payload.stock_record_id, payload.quantity, payload.requested_by, opts
            ).model_dump(mode="json")

        return run_idempotent(request, operator, idempotency_key, payload.model_dump(mode="json"), action)

    @app.get("/reservations")
    def list_reservations(
        stock_record_id: int | None = None,
        location_id: str | None = None,
        reserved_by: str | None = None,
        reference_type: ReferenceType | None = None,
        reference_id: str | None = None,
        status: list[ReservationStatus] = Query(default=[]),
        active_only: bool = False,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int = Query(100, gt=0, le=1000),
        offset: int = Query(0, ge=0),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
    ):
        filters = schemas.ReservationFilter(
            stock_record_id=stock_record_id,
            location_id=location_id,
            reserved_by=reserved_by,
            reference_type=reference_type,
            reference_id=reference_id,
            statuses=status,
            active_only=active_only,
            created_from=created_from,
            created_to=created_to,
            limit=limit,
            offset=offset,
        )
        return [row.model_dump(mode="json") for row in orchestrator.list_reservations(filters)]

    @app.get("/reservations/{reservation_id}")
    def get_reservation(reservation_id: int, orchestrator: InventoryOrchestrator = Depends(get_orchestrator)):
        return orchestrator.get_reservation(reservation_id).model_dump(mode="json")

    @app.post("/reservations/{reservation_id}/approve")
    def approve_reservation(
        reservation_id: int,
        request: Request,
        operator: str = Depends(get_operator),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
    ):
        def action():
            return orchestrator.approve_reservation(reservation_id, performed_by=operator).model_dump(mode="json")

        return run_idempotent(request, operator, idempotency_key, {"reservation_id": reservation_id}, action)

    @app.post("/reservations/{reservation_id}/reject")
    def reject_reservation(
        reservation_id: int,
        request: Request,
        operator: str = Depends(get_operator),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
        payload: schemas.ReasonRequest | None = None,
    ):
        payload = payload or schemas.ReasonRequest()

        def action():
            return orchestrator.reject_reservation(reservation_id, payload.reason).model_dump(mode="json")

        return run_idempotent(request, operator, idempotency_key, payload.model_dump(mode="json"), action)

    @app.post("/reservations/{reservation_id}/release")
    def release_reservation(
        reservation_id: int,
        request: Request,
        operator: str = Depends(get_operator),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
        payload: schemas.ReleaseRequest | None = None,
    ):
        payload = payload or schemas.ReleaseRequest()

        def action():
            return orchestrator.release_reservation(
                reservation_id, payload.quantity, reason=payload.reason, performed_by=operator
            ).model_dump(mode="json")

        return run_idempotent(request, operator, idempotency_key, payload.model_dump(mode="json"), action)

    @app.post("/reservations/{reservation_id}/cancel")
    def cancel_reservation(
        reservation_id: int,
        request: Request,
        operator: str = Depends(get_operator),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
        payload: schemas.ReasonRequest | None = None,
    ):
        payload = payload or schemas.ReasonRequest()

        def action():
            return orchestrator.cancel_reservation(
                reservation_id, payload.reason, performed_by=operator
            ).model_dump(mode="json")

        return run_idempotent(request, operator, idempotency_key, payload.model_dump(mode="json"), action)

    @app.post("/reservations/{reservation_id}/consume")
    def consume_reservation(
        reservation_id: int,
        request: Request,
        operator: str = Depends(get_operator),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
    ):
        def action():
            return orchestrator.consume_reservation(reservation_id, performed_by=operator).model_dump(mode="json")

        return run_idempotent(request, operator, idempotency_key, {"reservation_id": reservation_id}, action)

    # ------------------------------------------------------------------
    # maintenance & journal
    # ------------------------------------------------------------------
    @app.post("/maintenance/expire-reservations")
    def expire_reservations(
        payload: schemas.ExpireRequest | None = None,
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
    ):
        limit = payload.limit if payload else None
        return {"expired": orchestrator.expire_reservations(limit=limit)}

    @app.get("/movements")
    def list_movements(
        item_id: str | None = None,
        location_id: str | None = None,
        movement_type: MovementType | None = None,
        status: MovementStatus | None = None,
        reference_type: str | None = None,
        reference_id: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int = Query(100, gt=0, le=1000),
        offset: int = Query(0, ge=0),
        orchestrator: InventoryOrchestrator = Depends(get_orchestrator),
    ):
        filters = schemas.MovementFilter(
            item_id=item_id,
            location_id=location_id,
            movement_type=movement_type,
            status=status,
            reference_type=reference_type,
            reference_id=reference_id,
            created_from=created_from,
            created_to=created_to,
            limit=limit,
            offset=offset,
        )
        return [row.model_dump(mode="json") for row in orchestrator.search_movements(filters)]


configure_logging(settings.log_level, settings.log_json)
app = create_app()
