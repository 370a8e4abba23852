"""Reservation state machine.

    pending --approve--> active --release/consume/expire/cancel--> terminal
    pending --reject/cancel/expire--> terminal

Only ``active`` reservations hold capacity in ``quantity_reserved``. A
pending reservation is a claim: it is counted when checking whether a new
reservation fits, but it only moves ``quantity_reserved`` once approved.
Asking for the state a reservation is already in is a successful no-op, so
callers may retry a transition safely.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import models
from .errors import (
    InsufficientAvailableError,
    InvalidStateError,
    NotFoundError,
    ReservationsNotAllowedError,
    ValidationError,
)
from .models import ReservationStatus
from .ports import Clock, LocationInfo, to_naive_utc
from .schemas import ReservationFilter, ReservationOptions, ReservationSummary
from .stock import StockRecordStore

LIVE_STATUSES = frozenset({ReservationStatus.PENDING, ReservationStatus.ACTIVE})
TERMINAL_STATUSES = frozenset(
    {
        ReservationStatus.RELEASED,
        ReservationStatus.CONSUMED,
        ReservationStatus.EXPIRED,
        ReservationStatus.CANCELLED,
        ReservationStatus.REJECTED,
    }
)
TRANSITIONS = {
    ReservationStatus.PENDING: frozenset(
        {
            ReservationStatus.ACTIVE,
            ReservationStatus.REJECTED,
            ReservationStatus.CANCELLED,
            ReservationStatus.EXPIRED,
        }
    ),
    ReservationStatus.ACTIVE: frozenset(
        {
            ReservationStatus.RELEASED,
            ReservationStatus.CONSUMED,
            ReservationStatus.EXPIRED,
            ReservationStatus.CANCELLED,
        }
    ),
}


@dataclass
class Transition:
    reservation: models.Reservation
    applied: bool
    # quantity that left quantity_reserved (negative) or entered it (positive)
    reserved_delta: int = 0


class ReservationLedger:
    def __init__(self, db: Session, store: StockRecordStore, clock: Clock):
        self.db = db
        self.store = store
        self.clock = clock

    def get(self, reservation_id: int) -> models.Reservation:
        reservation = self.db.get(models.Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError("reservation", reservation_id)
        return reservation

    def pending_quantity(self, stock_record_id: int) -> int:
        stmt = select(func.coalesce(func.sum(models.Reservation.quantity), 0)).where(
            models.Reservation.stock_record_id == stock_record_id,
            models.Reservation.status == ReservationStatus.PENDING.value,
        )
        return int(self.db.scalar(stmt) or 0)

    def create(
        self,
        record: models.StockRecord,
        quantity: int,
        requested_by: str,
        opts: ReservationOptions | None = None,
        *,
        location: LocationInfo,
        approval_required: bool = False,
    ) -> Transition:
        opts = opts or ReservationOptions()
        if quantity <= 0:
            raise ValidationError("reservation quantity must be positive", field="quantity")
        if not requested_by:
            raise ValidationError("a reservation needs a requester", field="requested_by")
        if not location.allow_reservations:
            raise ReservationsNotAllowedError(record.location_id)

        now = self.clock.now()
        expires_at = to_naive_utc(opts.expires_at)
        if expires_at is not None and expires_at <= now:
            raise ValidationError("expiry must be in the future", field="expires_at")

        self._check_capacity(record, quantity, location, self.pending_quantity(record.id))

        status = ReservationStatus.PENDING if approval_required else ReservationStatus.ACTIVE
        reservation = models.Reservation(
            stock_record_id=record.id,
            location_id=record.location_id,
            quantity=quantity,
            reserved_by=requested_by,
            reference_type=opts.reference_type.value if opts.reference_type else None,
            reference_id=opts.reference_id,
            reference_name=opts.reference_name,
            expires_at=expires_at,
            notes=opts.notes,
            status=status.value,
            created_at=now,
            updated_at=now,
        )
        if status == ReservationStatus.ACTIVE:
            self._hold(record, quantity, location)
        self.db.add(reservation)
        self.db.flush()
        return Transition(reservation, True, quantity if status == ReservationStatus.ACTIVE else 0)

    def approve(self, reservation: models.Reservation, *, location: LocationInfo) -> Transition:
        if not self._begin(reservation, ReservationStatus.ACTIVE):
            return Transition(reservation, False)
        record = self.store.get_by_id(reservation.stock_record_id)
        # the claim is already part of the pending total; only active holds compete with it here
        self._check_capacity(record, reservation.quantity, location, 0)
        self._hold(record, reservation.quantity, location)
        self._finish(reservation, ReservationStatus.ACTIVE)
        return Transition(reservation, True, reservation.quantity)

    def reject(self, reservation: models.Reservation, reason: str | None = None) -> Transition:
        if not self._begin(reservation, ReservationStatus.REJECTED, sources={ReservationStatus.PENDING}):
            return Transition(reservation, False)
        self._finish(reservation, ReservationStatus.REJECTED, reason)
        return Transition(reservation, True)

    def release(
        self, reservation: models.Reservation, quantity: int | None = None, reason: str | None = None
    ) -> Transition:
        if not self._begin(reservation, ReservationStatus.RELEASED, sources={ReservationStatus.ACTIVE}):
            return Transition(reservation, False)
        if quantity is not None and quantity <= 0:
            raise ValidationError("release quantity must be positive", field="quantity")
        amount = reservation.quantity if quantity is None else min(quantity, reservation.quantity)
        self._unhold(reservation, amount)
        if amount < reservation.quantity:
            reservation.quantity -= amount
            reservation.status_reason = reason
            reservation.updated_at = self.clock.now()
            self.db.flush()
        else:
            self._finish(reservation, ReservationStatus.RELEASED, reason, released=True)
        return Transition(reservation, True, -amount)

    def cancel(self, reservation: models.Reservation, reason: str | None = None) -> Transition:
        if not self._begin(reservation, ReservationStatus.CANCELLED):
            return Transition(reservation, False)
        held = reservation.status == ReservationStatus.ACTIVE.value
        if held:
            self._unhold(reservation, reservation.quantity)
        self._finish(reservation, ReservationStatus.CANCELLED, reason, released=held)
        return Transition(reservation, True, -reservation.quantity if held else 0)

    def consume(self, reservation: models.Reservation, *, location: LocationInfo) -> Transition:
        if not self._begin(reservation, ReservationStatus.CONSUMED, sources={ReservationStatus.ACTIVE}):
            return Transition(reservation, False)
        record = self._unhold(reservation, reservation.quantity)
        self.store.apply_delta(
            record.id, -reservation.quantity, record.version, allow_negative=location.allows_negative_stock
        )
        self._finish(reservation, ReservationStatus.CONSUMED)
        return Transition(reservation, True, -reservation.quantity)

    def expire(self, reservation: models.Reservation, now: datetime | None = None) -> Transition:
        now = now or self.clock.now()
        if not self._begin(reservation, ReservationStatus.EXPIRED):
            return Transition(reservation, False)
        if reservation.expires_at is None or reservation.expires_at >= now:
            raise InvalidStateError(reservation.id, reservation.status, ReservationStatus.EXPIRED.value)
        held = reservation.status == ReservationStatus.ACTIVE.value
        if held:
            self._unhold(reservation, reservation.quantity)
        self._finish(reservation, ReservationStatus.EXPIRED, "expired", released=held)
        return Transition(reservation, True, -reservation.quantity if held else 0)

    def find(self, filters: ReservationFilter) -> list[models.Reservation]:
        stmt = select(models.Reservation)
        if filters.stock_record_id is not None:
            stmt = stmt.where(models.Reservation.stock_record_id == filters.stock_record_id)
        if filters.location_id is not None:
            stmt = stmt.where(models.Reservation.location_id == filters.location_id)
        if filters.reserved_by is not None:
            stmt = stmt.where(models.Reservation.reserved_by == filters.reserved_by)
        if filters.reference_type is not None:
            stmt = stmt.where(models.Reservation.reference_type == filters.reference_type.value)
        if filters.reference_id is not None:
            stmt = stmt.where(models.Reservation.reference_id == filters.reference_id)
        statuses = [status.value for status in filters.statuses]
        if filters.active_only:
            statuses = [ReservationStatus.ACTIVE.value]
        if statuses:
            stmt = stmt.where(models.Reservation.status.in_(statuses))
        if filters.created_from is not None:
            stmt = stmt.where(models.Reservation.created_at >= to_naive_utc(filters.created_from))
        if filters.created_to is not None:
            stmt = stmt.where(models.Reservation.created_at <= to_naive_utc(filters.created_to))
        stmt = stmt.order_by(models.Reservation.created_at.desc(), models.Reservation.id.desc())
        return list(self.db.scalars(stmt.offset(filters.offset).limit(filters.limit)).all())

    def summary(self, stock_record_id: int) -> ReservationSummary:
        rows = self.db.scalars(
            select(models.Reservation).where(models.Reservation.stock_record_id == stock_record_id)
        ).all()
        active = [r for r in rows if r.status == ReservationStatus.ACTIVE.value]
        pending = [r for r in rows if r.status == ReservationStatus.PENDING.value]
        expiries = sorted(r.expires_at for r in active if r.expires_at is not None)
        return ReservationSummary(
            stock_record_id=stock_record_id,
            total_reservations=len(rows),
            quantity_reserved=sum(r.quantity for r in active),
            active_reservations=len(active),
            pending_reservations=len(pending),
            pending_quantity=sum(r.quantity for r in pending),
            next_expiry=expiries[0] if expiries else None,
        )

    def due_for_expiry(self, now: datetime, limit: int | None = None) -> list[int]:
        stmt = (
            select(models.Reservation.id)
            .where(
                models.Reservation.status.in_([status.value for status in LIVE_STATUSES]),
                models.Reservation.expires_at.is_not(None),
                models.Reservation.expires_at < now,
            )
            .order_by(models.Reservation.expires_at, models.Reservation.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.scalars(stmt).all())

    def _begin(
        self,
        reservation: models.Reservation,
        target: ReservationStatus,
        sources: set[ReservationStatus] | None = None,
    ) -> bool:
        current = ReservationStatus(reservation.status)
        if current == target:
            return False
        allowed = TRANSITIONS.get(current, frozenset())
        if target not in allowed or (sources is not None and current not in sources):
            raise InvalidStateError(reservation.id, current.value, target.value)
        return True

    def _finish(
        self,
        reservation: models.Reservation,
        target: ReservationStatus,
        reason: str | None = None,
        released: bool = False,
    ) -> None:
        now = self.clock.now()
        reservation.status = target.value
        if reason is not None:
            reservation.status_reason = reason
        if released:
            reservation.released_at = now
        reservation.updated_at = now
        self.db.flush()

    def _check_capacity(
        self, record: models.StockRecord, quantity: int, location: LocationInfo, pending: int
    ) -> None:
        if location.allows_negative_stock:
            return
        available = record.quantity_available - pending
        if location.max_reservation_percentage is not None:
            ceiling = int(record.quantity_on_hand * location.max_reservation_percentage / 100)
            available = min(available, ceiling - record.quantity_reserved - pending)
        if quantity > available:
            raise InsufficientAvailableError(record.id, max(available, 0), quantity)

    def _hold(self, record: models.StockRecord, quantity: int, location: LocationInfo) -> models.StockRecord:
        return self.store.set_reserved(
            record.id,
            record.quantity_reserved + quantity,
            record.version,
            allow_negative=location.allows_negative_stock,
        )

    def _unhold(self, reservation: models.Reservation, quantity: int) -> models.StockRecord:
        record = self.store.get_by_id(reservation.stock_record_id)
        return self.store.set_reserved(record.id, record.quantity_reserved - quantity, record.version)
