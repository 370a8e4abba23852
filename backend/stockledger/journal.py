from typing import Iterator

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import models
from .errors import ValidationError
from .models import MovementStatus, MovementType
from .ports import Clock, to_naive_utc
from .schemas import MovementDraft, MovementFilter

ENTRANCE_TYPES = frozenset(
    {
        MovementType.RECEIPT,
        MovementType.RETURN,
        MovementType.ADJUSTMENT_IN,
        MovementType.TRANSFER_IN,
        MovementType.PRODUCTION,
    }
)
EXIT_TYPES = frozenset(
    {
        MovementType.SHIPMENT,
        MovementType.CONSUMPTION,
        MovementType.ADJUSTMENT_OUT,
        MovementType.TRANSFER_OUT,
        MovementType.DAMAGE,
        MovementType.EXPIRATION,
        MovementType.INSTALLATION,
    }
)
RESERVATION_TYPES = frozenset({MovementType.RESERVE, MovementType.RELEASE})
# count carries the signed difference it applied to on-hand
ON_HAND_TYPES = ENTRANCE_TYPES | EXIT_TYPES | {MovementType.COUNT}
TRANSFER_TYPES = frozenset({MovementType.TRANSFER_IN, MovementType.TRANSFER_OUT})
TRANSFER_REFERENCE = "transfer"


class MovementJournal:
    """Append-only Kardex. Rows are inserted, never updated."""

    page_size = 100

    def __init__(self, db: Session, clock: Clock):
        self.db = db
        self.clock = clock

    def validate(self, draft: MovementDraft) -> None:
        kind = draft.movement_type
        if draft.quantity == 0:
            raise ValidationError("movement quantity must be non-zero", field="quantity")
        if kind in ENTRANCE_TYPES and draft.quantity < 0:
            raise ValidationError(f"{kind.value} movements credit stock and must be positive", field="quantity")
        if kind in EXIT_TYPES and draft.quantity > 0:
            raise ValidationError(f"{kind.value} movements debit stock and must be negative", field="quantity")
        if kind in RESERVATION_TYPES | {MovementType.RELOCATION} and draft.quantity < 0:
            raise ValidationError(f"{kind.value} movements record a positive magnitude", field="quantity")
        if kind in TRANSFER_TYPES and (draft.reference_type != TRANSFER_REFERENCE or not draft.reference_id):
            raise ValidationError("transfer legs must reference their transfer", field="reference_id")

    def append(self, draft: MovementDraft) -> models.Movement:
        self.validate(draft)
        now = self.clock.now()
        completed = draft.status == MovementStatus.COMPLETED
        movement = models.Movement(
            movement_type=draft.movement_type.value,
            status=draft.status.value,
            item_id=draft.item_id,
            location_id=draft.location_id,
            stock_record_id=draft.stock_record_id,
            reservation_id=draft.reservation_id,
            quantity=draft.quantity,
            source_location_id=draft.source_location_id,
            destination_location_id=draft.destination_location_id,
            reference_type=draft.reference_type,
            reference_id=draft.reference_id,
            reason=draft.reason,
            performed_by=draft.performed_by,
            created_at=now,
            processed_at=now if completed else None,
        )
        self.db.add(movement)
        self.db.flush()
        return movement

    def append_transfer(self, out_leg: MovementDraft, in_leg: MovementDraft) -> tuple[models.Movement, models.Movement]:
        if out_leg.movement_type != MovementType.TRANSFER_OUT or in_leg.movement_type != MovementType.TRANSFER_IN:
            raise ValidationError("a transfer is one transfer_out leg and one transfer_in leg", field="movement_type")
        if out_leg.reference_id != in_leg.reference_id:
            raise ValidationError("transfer legs must share a reference id", field="reference_id")
        if out_leg.item_id != in_leg.item_id or out_leg.quantity != -in_leg.quantity:
            raise ValidationError("transfer legs must move the same quantity of the same item", field="quantity")
        return self.append(out_leg), self.append(in_leg)

    def list_by_item(self, item_id: str, limit: int | None = None, offset: int = 0) -> Iterator[models.Movement]:
        return self._iterate([models.Movement.item_id == item_id], limit, offset)

    def list_by_location(
        self, location_id: str, limit: int | None = None, offset: int = 0
    ) -> Iterator[models.Movement]:
        return self._iterate([models.Movement.location_id == location_id], limit, offset)

    def search(self, filters: MovementFilter) -> list[models.Movement]:
        criteria = []
        if filters.item_id is not None:
            criteria.append(models.Movement.item_id == filters.item_id)
        if filters.location_id is not None:
            criteria.append(models.Movement.location_id == filters.location_id)
        if filters.movement_type is not None:
            criteria.append(models.Movement.movement_type == filters.movement_type.value)
        if filters.status is not None:
            criteria.append(models.Movement.status == filters.status.value)
        if filters.reference_type is not None:
            criteria.append(models.Movement.reference_type == filters.reference_type)
        if filters.reference_id is not None:
            criteria.append(models.Movement.reference_id == filters.reference_id)
        if filters.created_from is not None:
            criteria.append(models.Movement.created_at >= to_naive_utc(filters.created_from))
        if filters.created_to is not None:
            criteria.append(models.Movement.created_at <= to_naive_utc(filters.created_to))
        return list(self._iterate(criteria, filters.limit, filters.offset))

    def balance(self, stock_record_id: int) -> int:
        total = self.db.scalar(
            select(func.coalesce(func.sum(models.Movement.quantity), 0)).where(
                models.Movement.stock_record_id == stock_record_id,
                models.Movement.status == MovementStatus.COMPLETED.value,
                models.Movement.movement_type.in_([kind.value for kind in ON_HAND_TYPES]),
            )
        )
        return int(total or 0)

    def _iterate(self, criteria: list, limit: int | None, offset: int) -> Iterator[models.Movement]:
        position = offset
        remaining = limit
        while remaining is None or remaining > 0:
            size = self.page_size if remaining is None else min(self.page_size, remaining)
            stmt = (
                select(models.Movement)
                .where(*criteria)
                .order_by(models.Movement.created_at.desc(), models.Movement.id.desc())
                .offset(position)
                .limit(size)
            )
            page = self.db.scalars(stmt).all()
            yield from page
            if len(page) < size:
                return
            position += len(page)
            if remaining is not None:
                remaining -= len(page)
