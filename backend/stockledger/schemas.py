from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import MovementStatus, MovementType, ReferenceType, ReservationStatus


class StockMeta(BaseModel):
    """Versioned replacement for the free-form metadata bag on stock records."""

    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = 1
    bin_code: str | None = Field(default=None, max_length=64)
    notes: str | None = Field(default=None, max_length=512)
    attributes: dict[str, str] = {}


class StockView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    item_id: str
    location_id: str
    sku: str | None
    lot_number: str
    serial_number: str
    expiration_date: date | None
    quantity_on_hand: int
    quantity_reserved: int
    quantity_available: int
    meta: StockMeta
    version: int
    created_at: datetime
    updated_at: datetime


class ReservationView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    stock_record_id: int
    location_id: str
    quantity: int
    reserved_by: str
    reference_type: ReferenceType | None
    reference_id: str | None
    reference_name: str | None
    expires_at: datetime | None
    notes: str | None
    status: ReservationStatus
    status_reason: str | None
    released_at: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime


class MovementView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    movement_type: MovementType
    status: MovementStatus
    item_id: str
    location_id: str
    stock_record_id: int | None
    reservation_id: int | None
    quantity: int
    source_location_id: str | None
    destination_location_id: str | None
    reference_type: str | None
    reference_id: str | None
    reason: str | None
    performed_by: str | None
    created_at: datetime
    processed_at: datetime | None


class TransferView(BaseModel):
    reference_id: str
    source: StockView
    destination: StockView
    movements: list[MovementView]


class ReservationSummary(BaseModel):
    stock_record_id: int
    total_reservations: int
    quantity_reserved: int
    active_reservations: int
    pending_reservations: int
    pending_quantity: int
    next_expiry: datetime | None


class ReconciliationView(BaseModel):
    stock_record_id: int
    quantity_on_hand: int
    journal_balance: int
    difference: int

    @property
    def balanced(self) -> bool:
        return self.difference == 0


class MovementDraft(BaseModel):
    movement_type: MovementType
    item_id: str
    location_id: str
    quantity: int
    status: MovementStatus = MovementStatus.COMPLETED
    stock_record_id: int | None = None
    reservation_id: int | None = None
    source_location_id: str | None = None
    destination_location_id: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    reason: str | None = None
    performed_by: str | None = None


class ReservationOptions(BaseModel):
    reference_type: ReferenceType | None = None
    reference_id: str | None = Field(default=None, max_length=64)
    reference_name: str | None = Field(default=None, max_length=128)
    expires_at: datetime | None = None
    notes: str | None = None


class ReservationFilter(BaseModel):
    stock_record_id: int | None = None
    location_id: str | None = None
    reserved_by: str | None = None
    reference_type: ReferenceType | None = None
    reference_id: str | None = None
    statuses: list[ReservationStatus] = []
    active_only: bool = False
    created_from: datetime | None = None
    created_to: datetime | None = None
    limit: int = Field(100, gt=0, le=1000)
    offset: int = Field(0, ge=0)


class MovementFilter(BaseModel):
    item_id: str | None = None
    location_id: str | None = None
    movement_type: MovementType | None = None
    status: MovementStatus | None = None
    reference_type: str | None = None
    reference_id: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    limit: int = Field(100, gt=0, le=1000)
    offset: int = Field(0, ge=0)


class StockKey(BaseModel):
    item_id: str = Field(..., min_length=1, max_length=64)
    location_id: str = Field(..., min_length=1, max_length=64)
    lot_number: str | None = Field(default=None, max_length=64)
    serial_number: str | None = Field(default=None, max_length=64)


class ReceiveRequest(StockKey):
    quantity: int = Field(..., gt=0)
    movement_type: Literal["receipt", "return", "production"] = "receipt"
    reference_type: str | None = None
    reference_id: str | None = None
    reason: str | None = None
    expiration_date: date | None = None
    meta: StockMeta | None = None


class ShipRequest(StockKey):
    quantity: int = Field(..., gt=0)
    movement_type: Literal["shipment", "consumption", "damage", "expiration", "installation"] = "shipment"
    reference_type: str | None = None
    reference_id: str | None = None
    reason: str | None = None


class TransferRequest(BaseModel):
    item_id: str = Field(..., min_length=1, max_length=64)
    from_location_id: str = Field(..., min_length=1, max_length=64)
    to_location_id: str = Field(..., min_length=1, max_length=64)
    quantity: int = Field(..., gt=0)
    lot_number: str | None = None
    serial_number: str | None = None
    reason: str | None = None


class AdjustRequest(StockKey):
    delta: int
    reason: str = Field(..., min_length=1, max_length=256)

    @field_validator("delta")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("delta must be non-zero")
        return value


class CountRequest(StockKey):
    counted_quantity: int = Field(..., ge=0)
    reason: str | None = None


class ReserveRequest(ReservationOptions):
    stock_record_id: int = Field(..., gt=0)
    quantity: int = Field(..., gt=0)
    requested_by: str = Field(..., min_length=1, max_length=64)


class ReleaseRequest(BaseModel):
    quantity: int | None = Field(default=None, gt=0)
    reason: str | None = None


class ReasonRequest(BaseModel):
    reason: str | None = None


class ExpireRequest(BaseModel):
    limit: int | None = Field(default=None, gt=0)
