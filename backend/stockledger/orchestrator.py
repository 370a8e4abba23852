import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, timedelta
from threading import Event
from typing import Callable, Hashable, Iterable, Iterator
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from . import models
from .config import Settings
from .db import tx
from .errors import (
    CapacityExceededError,
    ConcurrentModificationError,
    DeadlineExceededError,
    InsufficientStockError,
    InvalidStateError,
    LedgerError,
    MixingNotAllowedError,
    NotFoundError,
    ValidationError,
)
from .journal import TRANSFER_REFERENCE, MovementJournal
from .locks import RecordLocks
from .logging_config import get_logger
from .models import MovementType
from .ports import (
    CatalogLookup,
    Clock,
    ItemInfo,
    LocationInfo,
    LocationLookup,
    OpenCatalog,
    OpenLocations,
    SystemClock,
)
from .reservations import ReservationLedger, Transition
from .schemas import (
    MovementDraft,
    MovementFilter,
    MovementView,
    ReconciliationView,
    ReservationFilter,
    ReservationOptions,
    ReservationSummary,
    ReservationView,
    StockMeta,
    StockView,
    TransferView,
)
from .stock import StockRecordStore

logger = get_logger(__name__)

RECEIVE_TYPES = frozenset({MovementType.RECEIPT, MovementType.RETURN, MovementType.PRODUCTION})
SHIP_TYPES = frozenset(
    {
        MovementType.SHIPMENT,
        MovementType.CONSUMPTION,
        MovementType.DAMAGE,
        MovementType.EXPIRATION,
        MovementType.INSTALLATION,
    }
)
RESERVATION_REFERENCE = "reservation"


def stock_key(
    item_id: str, location_id: str, lot_number: str | None = None, serial_number: str | None = None
) -> tuple[str, str, str, str, str]:
    return ("stock", item_id, location_id, lot_number or "", serial_number or "")


@dataclass
class UnitOfWork:
    db: Session
    store: StockRecordStore
    ledger: ReservationLedger
    journal: MovementJournal


class InventoryOrchestrator:
    """Public entry point for every stock and reservation change.

    Each operation runs in its own session: it takes the per-record locks in
    key order, validates, writes the stock record(s), reservation and journal
    rows, and commits once. Any error rolls the whole session back, so the
    leaves never leave a partial multi-record effect behind.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        catalog: CatalogLookup | None = None,
        locations: LocationLookup | None = None,
        clock: Clock | None = None,
        *,
        approval_required: bool = False,
        default_reservation_ttl: timedelta | None = None,
        lock_timeout: float = 10.0,
        locks: RecordLocks | None = None,
    ):
        self.session_factory = session_factory
        self.catalog = catalog or OpenCatalog()
        self.locations = locations or OpenLocations()
        self.clock = clock or SystemClock()
        self.approval_required = approval_required
        self.default_reservation_ttl = default_reservation_ttl
        self.lock_timeout = lock_timeout
        self.locks = locks or RecordLocks()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: sessionmaker,
        catalog: CatalogLookup | None = None,
        locations: LocationLookup | None = None,
        clock: Clock | None = None,
    ) -> "InventoryOrchestrator":
        ttl = settings.default_reservation_ttl_minutes
        return cls(
            session_factory,
            catalog,
            locations,
            clock,
            approval_required=settings.approval_required,
            default_reservation_ttl=timedelta(minutes=ttl) if ttl else None,
            lock_timeout=settings.lock_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------
    def _unit(self, db: Session) -> UnitOfWork:
        store = StockRecordStore(db, self.clock)
        return UnitOfWork(db, store, ReservationLedger(db, store, self.clock), MovementJournal(db, self.clock))

    @contextmanager
    def _transaction(
        self,
        operation: str,
        keys: Iterable[Hashable] | Callable[[], Iterable[Hashable]],
        timeout: float | None = None,
        reservation_id: int | None = None,
    ) -> Iterator[UnitOfWork]:
        started = time.monotonic()
        deadline = started + timeout if timeout is not None else None
        lock_timeout = timeout if timeout is not None else self.lock_timeout
        try:
            if callable(keys):
                keys = keys()
            with self.locks.hold(keys, started + lock_timeout, operation, lock_timeout):
                db = self.session_factory()
                try:
                    with tx(db):
                        yield self._unit(db)
                        if deadline is not None and time.monotonic() > deadline:
                            raise DeadlineExceededError(operation, timeout)
                    db.commit()
                except StaleDataError as exc:
                    raise self._stale_reservation(reservation_id) from exc
                finally:
                    db.close()
        except LedgerError as exc:
            logger.warning(f"{operation}.rejected", code=exc.code, **exc.details)
            raise

    def _stale_reservation(self, reservation_id: int | None) -> ConcurrentModificationError:
        actual = None
        if reservation_id is not None:
            with self.session_factory() as db:
                reservation = db.get(models.Reservation, reservation_id)
                actual = reservation.version if reservation is not None else None
        return ConcurrentModificationError("reservation", reservation_id, actual_version=actual)

    @contextmanager
    def _reading(self) -> Iterator[UnitOfWork]:
        db = self.session_factory()
        try:
            yield self._unit(db)
        finally:
            db.close()

    def _record_key(self, stock_record_id: int) -> tuple:
        with self.session_factory() as db:
            record = db.get(models.StockRecord, stock_record_id)
            if record is None:
                raise NotFoundError("stock_record", stock_record_id)
            return stock_key(*record.natural_key)

    def _reservation_key(self, reservation_id: int) -> tuple:
        with self.session_factory() as db:
            reservation = db.get(models.Reservation, reservation_id)
            if reservation is None:
                raise NotFoundError("reservation", reservation_id)
            record = db.get(models.StockRecord, reservation.stock_record_id)
            if record is None:
                raise NotFoundError("stock_record", reservation.stock_record_id)
            return stock_key(*record.natural_key)

    def _item(self, item_id: str) -> ItemInfo:
        item = self.catalog.resolve_item(item_id)
        if not item.exists:
            raise NotFoundError("item", item_id)
        return item

    def _location(self, location_id: str) -> LocationInfo:
        location = self.locations.resolve_location(location_id)
        if not location.exists:
            raise NotFoundError("location", location_id)
        return location

    def _existing(
        self,
        unit: UnitOfWork,
        item_id: str,
        location_id: str,
        lot_number: str | None,
        serial_number: str | None,
    ) -> models.StockRecord:
        record = unit.store.get(item_id, location_id, lot_number, serial_number, for_update=True)
        if record is None:
            raise NotFoundError("stock_record", f"{item_id}@{location_id}")
        return record

    @staticmethod
    def _require_positive(quantity: int, field: str = "quantity") -> None:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError(f"{field} must be a positive integer", field=field)

    @staticmethod
    def _movement_type(value, allowed: frozenset) -> MovementType:
        try:
            kind = MovementType(value)
        except ValueError:
            kind = None
        if kind not in allowed:
            names = ", ".join(sorted(k.value for k in allowed))
            raise ValidationError(f"movement type must be one of {names}", field="movement_type")
        return kind

    @staticmethod
    def _check_capacity(unit: UnitOfWork, location_id: str, location: LocationInfo, quantity: int) -> None:
        if location.max_quantity is None:
            return
        current = unit.store.location_total(location_id)
        if current + quantity > location.max_quantity:
            raise CapacityExceededError(location_id, location.max_quantity, current, quantity)

    @staticmethod
    def _check_mixing(unit: UnitOfWork, record: models.StockRecord, location: LocationInfo) -> None:
        if location.allow_mixed_skus and location.allow_mixed_lots:
            return
        for occupant in unit.store.occupants(record.location_id):
            if occupant.id == record.id:
                continue
            if occupant.item_id != record.item_id:
                if not location.allow_mixed_skus:
                    raise MixingNotAllowedError(record.location_id, "sku", occupant.id)
            elif occupant.lot_number != record.lot_number and not location.allow_mixed_lots:
                raise MixingNotAllowedError(record.location_id, "lot", occupant.id)

    @staticmethod
    def _check_claims(unit: UnitOfWork, record: models.StockRecord, quantity: int, location: LocationInfo) -> None:
        # on_hand must still cover reserved plus pending after the debit
        if location.allows_negative_stock:
            return
        pending = unit.ledger.pending_quantity(record.id)
        if pending and record.quantity_on_hand - quantity < record.quantity_reserved + pending:
            raise InsufficientStockError(
                record.id, record.quantity_on_hand, record.quantity_reserved, quantity, pending
            )

    def _journal_transition(
        self,
        unit: UnitOfWork,
        transition: Transition,
        kind: MovementType,
        performed_by: str | None = None,
        reason: str | None = None,
    ) -> models.Movement | None:
        if not transition.applied or not transition.reserved_delta:
            return None
        reservation = transition.reservation
        record = unit.store.get_by_id(reservation.stock_record_id)
        quantity = abs(transition.reserved_delta)
        return unit.journal.append(
            MovementDraft(
                movement_type=kind,
                item_id=record.item_id,
                location_id=record.location_id,
                quantity=-quantity if kind == MovementType.CONSUMPTION else quantity,
                stock_record_id=record.id,
                reservation_id=reservation.id,
                reference_type=RESERVATION_REFERENCE,
                reference_id=str(reservation.id),
                reason=reason,
                performed_by=performed_by,
            )
        )

    # ------------------------------------------------------------------
    # stock movements
    # ------------------------------------------------------------------
    def receive(
        self,
        item_id: str,
        location_id: str,
        quantity: int,
        *,
        movement_type: MovementType | str = MovementType.RECEIPT,
        reference_type: str | None = None,
        reference_id: str | None = None,
        reason: str | None = None,
        performed_by: str | None = None,
        lot_number: str | None = None,
        serial_number: str | None = None,
        expiration_date: date | None = None,
        meta: StockMeta | dict | None = None,
        timeout: float | None = None,
    ) -> StockView:
        key = stock_key(item_id, location_id, lot_number, serial_number)
        with self._transaction("stock.receive", [key], timeout) as unit:
            self._require_positive(quantity)
            kind = self._movement_type(movement_type, RECEIVE_TYPES)
            item = self._item(item_id)
            location = self._location(location_id)
            record = unit.store.create_if_absent(
                item_id,
                location_id,
                sku=item.sku,
                lot_number=lot_number,
                serial_number=serial_number,
                expiration_date=expiration_date,
                meta=meta,
            )
            self._check_mixing(unit, record, location)
            self._check_capacity(unit, location_id, location, quantity)
            record = unit.store.apply_delta(
                record.id, quantity, record.version, allow_negative=location.allows_negative_stock
            )
            movement = unit.journal.append(
                MovementDraft(
                    movement_type=kind,
                    item_id=item_id,
                    location_id=location_id,
                    quantity=quantity,
                    stock_record_id=record.id,
                    destination_location_id=location_id,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    reason=reason,
                    performed_by=performed_by,
                )
            )
            view = StockView.model_validate(record)
        logger.info(
            "stock.received",
            record_id=view.id,
            movement_id=movement.id,
            movement_type=kind.value,
            quantity=quantity,
            on_hand=view.quantity_on_hand,
        )
        return view

    def ship(
        self,
        item_id: str,
        location_id: str,
        quantity: int,
        *,
        movement_type: MovementType | str = MovementType.SHIPMENT,
        reference_type: str | None = None,
        reference_id: str | None = None,
        reason: str | None = None,
        performed_by: str | None = None,
        lot_number: str | None = None,
        serial_number: str | None = None,
        timeout: float | None = None,
    ) -> StockView:
        key = stock_key(item_id, location_id, lot_number, serial_number)
        with self._transaction("stock.ship", [key], timeout) as unit:
            self._require_positive(quantity)
            kind = self._movement_type(movement_type, SHIP_TYPES)
            location = self._location(location_id)
            record = self._existing(unit, item_id, location_id, lot_number, serial_number)
            self._check_claims(unit, record, quantity, location)
            record = unit.store.apply_delta(
                record.id, -quantity, record.version, allow_negative=location.allows_negative_stock
            )
            movement = unit.journal.append(
                MovementDraft(
                    movement_type=kind,
                    item_id=item_id,
                    location_id=location_id,
                    quantity=-quantity,
                    stock_record_id=record.id,
                    source_location_id=location_id,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    reason=reason,
                    performed_by=performed_by,
                )
            )
            view = StockView.model_validate(record)
        logger.info(
            "stock.shipped",
            record_id=view.id,
            movement_id=movement.id,
            movement_type=kind.value,
            quantity=quantity,
            on_hand=view.quantity_on_hand,
        )
        return view

    def transfer(
        self,
        item_id: str,
        from_location_id: str,
        to_location_id: str,
        quantity: int,
        *,
        lot_number: str | None = None,
        serial_number: str | None = None,
        reason: str | None = None,
        performed_by: str | None = None,
        timeout: float | None = None,
    ) -> TransferView:
        keys = [
            stock_key(item_id, from_location_id, lot_number, serial_number),
            stock_key(item_id, to_location_id, lot_number, serial_number),
        ]
        with self._transaction("stock.transfer", keys, timeout) as unit:
            self._require_positive(quantity)
            if from_location_id == to_location_id:
                raise ValidationError("source and destination must differ", field="to_location_id")
            source_location = self._location(from_location_id)
            destination_location = self._location(to_location_id)
            source = self._existing(unit, item_id, from_location_id, lot_number, serial_number)
            self._check_claims(unit, source, quantity, source_location)
            reference_id = uuid4().hex

            source = unit.store.apply_delta(
                source.id, -quantity, source.version, allow_negative=source_location.allows_negative_stock
            )
            destination = unit.store.create_if_absent(
                item_id,
                to_location_id,
                sku=source.sku,
                lot_number=lot_number,
                serial_number=serial_number,
                expiration_date=source.expiration_date,
                meta=source.meta,
            )
            self._check_mixing(unit, destination, destination_location)
            self._check_capacity(unit, to_location_id, destination_location, quantity)
            destination = unit.store.apply_delta(
                destination.id,
                quantity,
                destination.version,
                allow_negative=destination_location.allows_negative_stock,
            )

            legs = {
                "source_location_id": from_location_id,
                "destination_location_id": to_location_id,
                "reference_type": TRANSFER_REFERENCE,
                "reference_id": reference_id,
                "reason": reason,
                "performed_by": performed_by,
            }
            out_leg, in_leg = unit.journal.append_transfer(
                MovementDraft(
                    movement_type=MovementType.TRANSFER_OUT,
                    item_id=item_id,
                    location_id=from_location_id,
                    quantity=-quantity,
                    stock_record_id=source.id,
                    **legs,
                ),
                MovementDraft(
                    movement_type=MovementType.TRANSFER_IN,
                    item_id=item_id,
                    location_id=to_location_id,
                    quantity=quantity,
                    stock_record_id=destination.id,
                    **legs,
                ),
            )
            view = TransferView(
                reference_id=reference_id,
                source=StockView.model_validate(source),
                destination=StockView.model_validate(destination),
                movements=[MovementView.model_validate(out_leg), MovementView.model_validate(in_leg)],
            )
        logger.info(
            "stock.transferred",
            reference_id=reference_id,
            item_id=item_id,
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            quantity=quantity,
        )
        return view

    def adjust(
        self,
        item_id: str,
        location_id: str,
        signed_quantity: int,
        reason: str,
        *,
        lot_number: str | None = None,
        serial_number: str | None = None,
        performed_by: str | None = None,
        timeout: float | None = None,
    ) -> StockView:
        key = stock_key(item_id, location_id, lot_number, serial_number)
        with self._transaction("stock.adjust", [key], timeout) as unit:
            if not isinstance(signed_quantity, int) or signed_quantity == 0:
                raise ValidationError("adjustment must be a non-zero integer", field="signed_quantity")
            if not reason:
                raise ValidationError("adjustments need a reason", field="reason")
            location = self._location(location_id)
            if signed_quantity > 0:
                item = self._item(item_id)
                record = unit.store.create_if_absent(
                    item_id, location_id, sku=item.sku, lot_number=lot_number, serial_number=serial_number
                )
                self._check_mixing(unit, record, location)
                self._check_capacity(unit, location_id, location, signed_quantity)
            else:
                record = self._existing(unit, item_id, location_id, lot_number, serial_number)
                self._check_claims(unit, record, -signed_quantity, location)
            before = record.quantity_on_hand
            record = unit.store.apply_delta(
                record.id, signed_quantity, record.version, allow_negative=location.allows_negative_stock
            )
            kind = MovementType.ADJUSTMENT_IN if signed_quantity > 0 else MovementType.ADJUSTMENT_OUT
            movement = unit.journal.append(
                MovementDraft(
                    movement_type=kind,
                    item_id=item_id,
                    location_id=location_id,
                    quantity=signed_quantity,
                    stock_record_id=record.id,
                    reason=reason,
                    performed_by=performed_by,
                )
            )
            view = StockView.model_validate(record)
        logger.info(
            "stock.adjusted",
            record_id=view.id,
            movement_id=movement.id,
            before=before,
            after=view.quantity_on_hand,
            reason=reason,
        )
        return view

    def count(
        self,
        item_id: str,
        location_id: str,
        counted_quantity: int,
        *,
        reason: str | None = None,
        lot_number: str | None = None,
        serial_number: str | None = None,
        performed_by: str | None = None,
        timeout: float | None = None,
    ) -> StockView:
        """Bring on-hand to a physically counted figure.

        The difference is journalled as a single ``count`` movement; a count
        that matches the books records nothing.
        """
        key = stock_key(item_id, location_id, lot_number, serial_number)
        with self._transaction("stock.count", [key], timeout) as unit:
            if not isinstance(counted_quantity, int) or counted_quantity < 0:
                raise ValidationError("counted quantity must be a non-negative integer", field="counted_quantity")
            location = self._location(location_id)
            record = unit.store.get(item_id, location_id, lot_number, serial_number, for_update=True)
            if record is None:
                if counted_quantity == 0:
                    raise NotFoundError("stock_record", f"{item_id}@{location_id}")
                item = self._item(item_id)
                record = unit.store.create_if_absent(
                    item_id, location_id, sku=item.sku, lot_number=lot_number, serial_number=serial_number
                )
            delta = counted_quantity - record.quantity_on_hand
            if delta:
                if delta > 0:
                    self._check_capacity(unit, location_id, location, delta)
                    self._check_mixing(unit, record, location)
                else:
                    self._check_claims(unit, record, -delta, location)
                record = unit.store.apply_delta(
                    record.id, delta, record.version, allow_negative=location.allows_negative_stock
                )
                unit.journal.append(
                    MovementDraft(
                        movement_type=MovementType.COUNT,
                        item_id=item_id,
                        location_id=location_id,
                        quantity=delta,
                        stock_record_id=record.id,
                        reason=reason or "physical count",
                        performed_by=performed_by,
                    )
                )
            view = StockView.model_validate(record)
        logger.info("stock.counted", record_id=view.id, counted=counted_quantity, difference=delta)
        return view

    def delete_stock_record(self, stock_record_id: int, *, timeout: float | None = None) -> None:
        with self._transaction("stock.delete", lambda: [self._record_key(stock_record_id)], timeout) as unit:
            unit.store.delete(stock_record_id)
        logger.info("stock.deleted", record_id=stock_record_id)

    # ------------------------------------------------------------------
    # reservations
    # ------------------------------------------------------------------
    def reserve(
        self,
        stock_record_id: int,
        quantity: int,
        requested_by: str,
        opts: ReservationOptions | None = None,
        *,
        timeout: float | None = None,
    ) -> ReservationView:
        opts = opts or ReservationOptions()
        with self._transaction("reservation.create", lambda: [self._record_key(stock_record_id)], timeout) as unit:
            self._require_positive(quantity)
            record = unit.store.get_by_id(stock_record_id, for_update=True)
            location = self._location(record.location_id)
            if opts.expires_at is None and self.default_reservation_ttl is not None:
                opts = opts.model_copy(update={"expires_at": self.clock.now() + self.default_reservation_ttl})
            transition = unit.ledger.create(
                record,
                quantity,
                requested_by,
                opts,
                location=location,
                approval_required=self.approval_required,
            )
            self._journal_transition(unit, transition, MovementType.RESERVE, requested_by)
            view = ReservationView.model_validate(transition.reservation)
        logger.info(
            "reservation.created",
            reservation_id=view.id,
            record_id=stock_record_id,
            quantity=quantity,
            status=view.status.value,
        )
        return view

    def approve_reservation(
        self, reservation_id: int, *, performed_by: str | None = None, timeout: float | None = None
    ) -> ReservationView:
        with self._transaction(
            "reservation.approve",
            lambda: [self._reservation_key(reservation_id)],
            timeout,
            reservation_id=reservation_id,
        ) as unit:
            reservation = unit.ledger.get(reservation_id)
            location = self._location(reservation.location_id)
            transition = unit.ledger.approve(reservation, location=location)
            self._journal_transition(unit, transition, MovementType.RESERVE, performed_by)
            view = ReservationView.model_validate(reservation)
        logger.info("reservation.approved", reservation_id=reservation_id, applied=transition.applied)
        return view

    def reject_reservation(
        self, reservation_id: int, reason: str | None = None, *, timeout: float | None = None
    ) -> ReservationView:
        with self._transaction(
            "reservation.reject",
            lambda: [self._reservation_key(reservation_id)],
            timeout,
            reservation_id=reservation_id,
        ) as unit:
            transition = unit.ledger.reject(unit.ledger.get(reservation_id), reason)
            view = ReservationView.model_validate(transition.reservation)
        logger.info("reservation.rejected", reservation_id=reservation_id, applied=transition.applied)
        return view

    def release_reservation(
        self,
        reservation_id: int,
        quantity: int | None = None,
        *,
        reason: str | None = None,
        performed_by: str | None = None,
        timeout: float | None = None,
    ) -> ReservationView:
        """Hand back all of an active reservation, or ``quantity`` of it.

        A partial release is not idempotent: each call takes another
        ``quantity`` off the hold, so a client that may retry should send an
        Idempotency-Key. Releasing the whole remainder finishes the
        reservation, and releasing one already released is a no-op.
        """
        with self._transaction(
            "reservation.release",
            lambda: [self._reservation_key(reservation_id)],
            timeout,
            reservation_id=reservation_id,
        ) as unit:
            transition = unit.ledger.release(unit.ledger.get(reservation_id), quantity, reason)
            self._journal_transition(unit, transition, MovementType.RELEASE, performed_by, reason)
            view = ReservationView.model_validate(transition.reservation)
        logger.info(
            "reservation.released",
            reservation_id=reservation_id,
            released=-transition.reserved_delta,
            status=view.status.value,
        )
        return view

    def cancel_reservation(
        self,
        reservation_id: int,
        reason: str | None = None,
        *,
        performed_by: str | None = None,
        timeout: float | None = None,
    ) -> ReservationView:
        with self._transaction(
            "reservation.cancel",
            lambda: [self._reservation_key(reservation_id)],
            timeout,
            reservation_id=reservation_id,
        ) as unit:
            transition = unit.ledger.cancel(unit.ledger.get(reservation_id), reason)
            self._journal_transition(unit, transition, MovementType.RELEASE, performed_by, reason or "cancelled")
            view = ReservationView.model_validate(transition.reservation)
        logger.info("reservation.cancelled", reservation_id=reservation_id, applied=transition.applied)
        return view

    def consume_reservation(
        self, reservation_id: int, *, performed_by: str | None = None, timeout: float | None = None
    ) -> ReservationView:
        with self._transaction(
            "reservation.consume",
            lambda: [self._reservation_key(reservation_id)],
            timeout,
            reservation_id=reservation_id,
        ) as unit:
            reservation = unit.ledger.get(reservation_id)
            location = self._location(reservation.location_id)
            transition = unit.ledger.consume(reservation, location=location)
            self._journal_transition(unit, transition, MovementType.CONSUMPTION, performed_by)
            view = ReservationView.model_validate(reservation)
        logger.info("reservation.consumed", reservation_id=reservation_id, applied=transition.applied)
        return view

    def expire_reservations(self, limit: int | None = None, stop_event: Event | None = None) -> int:
        """Expire every live reservation whose ``expires_at`` has passed.

        Each reservation is its own transaction, so stopping the sweep between
        two of them never leaves one half-transitioned.
        """
        now = self.clock.now()
        with self._reading() as unit:
            due = unit.ledger.due_for_expiry(now, limit)

        expired = 0
        for reservation_id in due:
            if stop_event is not None and stop_event.is_set():
                logger.info("reservation.sweep_cancelled", expired=expired, remaining=len(due) - expired)
                break
            try:
                with self._transaction(
                    "reservation.expire",
                    lambda rid=reservation_id: [self._reservation_key(rid)],
                    reservation_id=reservation_id,
                ) as unit:
                    transition = unit.ledger.expire(unit.ledger.get(reservation_id), now)
                    self._journal_transition(unit, transition, MovementType.RELEASE, reason="expired")
            except (InvalidStateError, ConcurrentModificationError, NotFoundError, DeadlineExceededError):
                # a caller moved it first; it is picked up again next sweep if still due
                continue
            if transition.applied:
                expired += 1
        logger.info("reservation.sweep_finished", due=len(due), expired=expired)
        return expired

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def get_stock(self, stock_record_id: int) -> StockView:
        with self._reading() as unit:
            return StockView.model_validate(unit.store.get_by_id(stock_record_id))

    def find_stock(
        self, item_id: str, location_id: str, lot_number: str | None = None, serial_number: str | None = None
    ) -> StockView | None:
        with self._reading() as unit:
            record = unit.store.get(item_id, location_id, lot_number, serial_number)
            return StockView.model_validate(record) if record is not None else None

    def list_stock(
        self,
        item_id: str | None = None,
        location_id: str | None = None,
        sku: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[StockView]:
        with self._reading() as unit:
            records = unit.store.list_by_filter(item_id, location_id, sku, limit, offset)
            return [StockView.model_validate(record) for record in records]

    def get_reservation(self, reservation_id: int) -> ReservationView:
        with self._reading() as unit:
            return ReservationView.model_validate(unit.ledger.get(reservation_id))

    def list_reservations(self, filters: ReservationFilter | None = None) -> list[ReservationView]:
        with self._reading() as unit:
            rows = unit.ledger.find(filters or ReservationFilter())
            return [ReservationView.model_validate(row) for row in rows]

    def reservation_summary(self, stock_record_id: int) -> ReservationSummary:
        with self._reading() as unit:
            unit.store.get_by_id(stock_record_id)
            return unit.ledger.summary(stock_record_id)

    def movements_for_item(self, item_id: str, limit: int = 50, offset: int = 0) -> list[MovementView]:
        with self._reading() as unit:
            return [MovementView.model_validate(m) for m in unit.journal.list_by_item(item_id, limit, offset)]

    def movements_for_location(self, location_id: str, limit: int = 50, offset: int = 0) -> list[MovementView]:
        with self._reading() as unit:
            return [
                MovementView.model_validate(m) for m in unit.journal.list_by_location(location_id, limit, offset)
            ]

    def search_movements(self, filters: MovementFilter | None = None) -> list[MovementView]:
        with self._reading() as unit:
            return [MovementView.model_validate(m) for m in unit.journal.search(filters or MovementFilter())]

    def reconcile(self, stock_record_id: int) -> ReconciliationView:
        with self._reading() as unit:
            record = unit.store.get_by_id(stock_record_id)
            balance = unit.journal.balance(record.id)
            return ReconciliationView(
                stock_record_id=record.id,
                quantity_on_hand=record.quantity_on_hand,
                journal_balance=balance,
                difference=record.quantity_on_hand - balance,
            )
