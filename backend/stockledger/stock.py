from datetime import date

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .errors import (
    ConcurrentModificationError,
    DuplicateKeyError,
    InsufficientStockError,
    NotFoundError,
    OverReservationError,
    RecordInUseError,
    ValidationError,
)
from .ports import Clock
from .schemas import StockMeta

LIVE_RESERVATION_STATUSES = (models.ReservationStatus.PENDING.value, models.ReservationStatus.ACTIVE.value)


def normalize_meta(meta: StockMeta | dict | None) -> dict:
    if meta is None:
        return StockMeta().model_dump()
    if isinstance(meta, StockMeta):
        return meta.model_dump()
    try:
        return StockMeta.model_validate(meta).model_dump()
    except SchemaValidationError as exc:
        raise ValidationError(f"invalid stock metadata: {exc.errors()[0]['msg']}", field="meta") from exc


class StockRecordStore:
    """Quantity state per (item, location, lot, serial).

    Works inside the caller's session and never commits. Every write is an
    ``UPDATE ... WHERE version = :expected`` so a stale read surfaces as
    ``ConcurrentModificationError`` instead of a lost update.
    """

    def __init__(self, db: Session, clock: Clock):
        self.db = db
        self.clock = clock

    def get(
        self,
        item_id: str,
        location_id: str,
        lot_number: str | None = None,
        serial_number: str | None = None,
        *,
        for_update: bool = False,
    ) -> models.StockRecord | None:
        stmt = select(models.StockRecord).where(
            models.StockRecord.item_id == item_id,
            models.StockRecord.location_id == location_id,
            models.StockRecord.lot_number == (lot_number or ""),
            models.StockRecord.serial_number == (serial_number or ""),
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.scalar(stmt)

    def get_by_id(self, record_id: int, *, for_update: bool = False) -> models.StockRecord:
        stmt = select(models.StockRecord).where(models.StockRecord.id == record_id)
        if for_update:
            stmt = stmt.with_for_update()
        record = self.db.scalar(stmt)
        if record is None:
            raise NotFoundError("stock_record", record_id)
        return record

    def list_by_filter(
        self,
        item_id: str | None = None,
        location_id: str | None = None,
        sku: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[models.StockRecord]:
        stmt = select(models.StockRecord)
        if item_id is not None:
            stmt = stmt.where(models.StockRecord.item_id == item_id)
        if location_id is not None:
            stmt = stmt.where(models.StockRecord.location_id == location_id)
        if sku is not None:
            stmt = stmt.where(models.StockRecord.sku == sku)
        stmt = stmt.order_by(models.StockRecord.id).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.db.scalars(stmt).all())

    def location_total(self, location_id: str) -> int:
        total = self.db.scalar(
            select(func.coalesce(func.sum(models.StockRecord.quantity_on_hand), 0)).where(
                models.StockRecord.location_id == location_id
            )
        )
        return int(total or 0)

    def occupants(self, location_id: str) -> list[models.StockRecord]:
        """Records at a location that currently hold stock."""
        stmt = (
            select(models.StockRecord)
            .where(
                models.StockRecord.location_id == location_id,
                models.StockRecord.quantity_on_hand != 0,
            )
            .order_by(models.StockRecord.id)
        )
        return list(self.db.scalars(stmt).all())

    def create_if_absent(
        self,
        item_id: str,
        location_id: str,
        initial_quantity: int = 0,
        *,
        sku: str | None = None,
        lot_number: str | None = None,
        serial_number: str | None = None,
        expiration_date: date | None = None,
        meta: StockMeta | dict | None = None,
    ) -> models.StockRecord:
        if initial_quantity < 0:
            raise ValidationError("initial quantity cannot be negative", field="initial_quantity")
        existing = self.get(item_id, location_id, lot_number, serial_number, for_update=True)
        if existing is not None:
            if initial_quantity and initial_quantity != existing.quantity_on_hand:
                raise DuplicateKeyError(
                    item_id,
                    location_id,
                    existing.lot_number,
                    existing.serial_number,
                    record_id=existing.id,
                    on_hand=existing.quantity_on_hand,
                    requested=initial_quantity,
                )
            return existing

        now = self.clock.now()
        record = models.StockRecord(
            item_id=item_id,
            location_id=location_id,
            sku=sku,
            lot_number=lot_number or "",
            serial_number=serial_number or "",
            expiration_date=expiration_date,
            quantity_on_hand=initial_quantity,
            quantity_reserved=0,
            meta=normalize_meta(meta),
            version=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(record)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise DuplicateKeyError(item_id, location_id, lot_number or "", serial_number or "") from exc
        return record

    def apply_delta(
        self,
        record_id: int,
        delta: int,
        expected_version: int,
        *,
        allow_negative: bool = False,
    ) -> models.StockRecord:
        record = self.get_by_id(record_id)
        new_on_hand = record.quantity_on_hand + delta
        if delta < 0 and not allow_negative and (new_on_hand < 0 or new_on_hand < record.quantity_reserved):
            raise InsufficientStockError(record.id, record.quantity_on_hand, record.quantity_reserved, -delta)
        return self._write(record, expected_version, quantity_on_hand=new_on_hand)

    def set_reserved(
        self,
        record_id: int,
        new_reserved_total: int,
        expected_version: int,
        *,
        allow_negative: bool = False,
    ) -> models.StockRecord:
        if new_reserved_total < 0:
            raise ValidationError("reserved total cannot be negative", field="quantity_reserved")
        record = self.get_by_id(record_id)
        growing = new_reserved_total > record.quantity_reserved
        if growing and not allow_negative and new_reserved_total > record.quantity_on_hand:
            raise OverReservationError(record.id, record.quantity_on_hand, new_reserved_total)
        return self._write(record, expected_version, quantity_reserved=new_reserved_total)

    def delete(self, record_id: int) -> None:
        record = self.get_by_id(record_id, for_update=True)
        live = self.db.scalar(
            select(func.count(models.Reservation.id)).where(
                models.Reservation.stock_record_id == record.id,
                models.Reservation.status.in_(LIVE_RESERVATION_STATUSES),
            )
        )
        if record.quantity_on_hand > 0 or live:
            raise RecordInUseError(record.id, record.quantity_on_hand, int(live or 0))
        self.db.execute(delete(models.Reservation).where(models.Reservation.stock_record_id == record.id))
        self.db.delete(record)
        self.db.flush()

    def _write(self, record: models.StockRecord, expected_version: int, **values) -> models.StockRecord:
        table = models.StockRecord.__table__
        result = self.db.execute(
            update(table)
            .where(table.c.id == record.id, table.c.version == expected_version)
            .values(version=expected_version + 1, updated_at=self.clock.now(), **values)
        )
        if result.rowcount != 1:
            actual = self.db.scalar(select(table.c.version).where(table.c.id == record.id))
            raise ConcurrentModificationError("stock_record", record.id, expected_version, actual)
        self.db.refresh(record)
        return record
