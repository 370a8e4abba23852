from datetime import date, datetime
from enum import Enum

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class ReservationStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    RELEASED = "released"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class ReferenceType(str, Enum):
    PROJECT = "project"
    ORDER = "order"
    CUSTOMER = "customer"
    OTHER = "other"


class MovementType(str, Enum):
    RECEIPT = "receipt"
    RETURN = "return"
    ADJUSTMENT_IN = "adjustment_in"
    TRANSFER_IN = "transfer_in"
    PRODUCTION = "production"
    SHIPMENT = "shipment"
    CONSUMPTION = "consumption"
    ADJUSTMENT_OUT = "adjustment_out"
    TRANSFER_OUT = "transfer_out"
    DAMAGE = "damage"
    EXPIRATION = "expiration"
    INSTALLATION = "installation"
    RESERVE = "reserve"
    RELEASE = "release"
    COUNT = "count"
    RELOCATION = "relocation"


class MovementStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class StockRecord(Base):
    __tablename__ = "stock_records"
    __table_args__ = (
        UniqueConstraint("item_id", "location_id", "lot_number", "serial_number", name="uq_stock_record_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[str] = mapped_column(String(64), index=True)
    location_id: Mapped[str] = mapped_column(String(64), index=True)
    sku: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    # empty string rather than NULL so the natural key stays unique on every backend
    lot_number: Mapped[str] = mapped_column(String(64), default="")
    serial_number: Mapped[str] = mapped_column(String(64), default="")
    expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    quantity_on_hand: Mapped[int] = mapped_column(Integer, default=0)
    quantity_reserved: Mapped[int] = mapped_column(Integer, default=0)
    meta: Mapped[dict] = mapped_column(JSON, default=dict)
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)

    @property
    def quantity_available(self) -> int:
        return self.quantity_on_hand - self.quantity_reserved

    @property
    def natural_key(self) -> tuple[str, str, str, str]:
        return (self.item_id, self.location_id, self.lot_number, self.serial_number)


class Reservation(Base):
    __tablename__ = "reservations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stock_record_id: Mapped[int] = mapped_column(ForeignKey("stock_records.id", ondelete="CASCADE"), index=True)
    location_id: Mapped[str] = mapped_column(String(64), index=True)
    quantity: Mapped[int] = mapped_column(Integer)
    reserved_by: Mapped[str] = mapped_column(String(64), index=True)
    reference_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reference_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=ReservationStatus.PENDING.value, index=True)
    status_reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)

    stock_record: Mapped[StockRecord] = relationship()

    __mapper_args__ = {"version_id_col": version}


class Movement(Base):
    __tablename__ = "movements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    movement_type: Mapped[str] = mapped_column(String(32), index=True)
    status: Mapped[str] = mapped_column(String(16), default=MovementStatus.COMPLETED.value, index=True)
    item_id: Mapped[str] = mapped_column(String(64), index=True)
    location_id: Mapped[str] = mapped_column(String(64), index=True)
    # plain ids: the journal outlives the rows it describes and is never rewritten
    stock_record_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    reservation_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    quantity: Mapped[int] = mapped_column(Integer)
    source_location_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    destination_location_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reason: Mapped[str | None] = mapped_column(String(256), nullable=True)
    performed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("operator", "method", "path", "idempotency_key", name="uq_idempotency_scope"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operator: Mapped[str] = mapped_column(String(64), default="")
    method: Mapped[str] = mapped_column(String(16))
    path: Mapped[str] = mapped_column(String(128))
    idempotency_key: Mapped[str] = mapped_column(String(128), index=True)
    request_hash: Mapped[str] = mapped_column(String(128))
    status_code: Mapped[int] = mapped_column(Integer, default=0)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
