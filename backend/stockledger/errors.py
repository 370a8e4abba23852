"""Typed errors raised by the stock ledger.

Every error carries a machine-readable ``code`` plus the quantities involved,
so a presentation layer can render a precise message without re-reading
state. The HTTP layer maps them to status codes in ``main.py``.
"""


class LedgerError(Exception):
    code = "ledger_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.details}


class ValidationError(LedgerError):
    code = "validation_error"

    def __init__(self, message: str, field: str | None = None, **details):
        super().__init__(message, field=field, **details)


class NotFoundError(LedgerError):
    code = "not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class DuplicateKeyError(LedgerError):
    code = "duplicate_key"

    def __init__(self, item_id: str, location_id: str, lot_number: str = "", serial_number: str = "", **details):
        super().__init__(
            f"stock record for item {item_id} at {location_id} already exists",
            item_id=item_id,
            location_id=location_id,
            lot_number=lot_number,
            serial_number=serial_number,
            **details,
        )


class InsufficientStockError(LedgerError):
    code = "insufficient_stock"

    def __init__(self, record_id: int, on_hand: int, reserved: int, requested: int, pending: int = 0):
        available = on_hand - reserved - pending
        super().__init__(
            f"stock record {record_id} has {available} available, {requested} requested",
            record_id=record_id,
            on_hand=on_hand,
            reserved=reserved,
            pending=pending,
            available=available,
            requested=requested,
        )


class InsufficientAvailableError(LedgerError):
    code = "insufficient_available"

    def __init__(self, record_id: int, available: int, requested: int):
        super().__init__(
            f"cannot reserve {requested} on stock record {record_id}: only {available} available",
            record_id=record_id,
            available=available,
            requested=requested,
        )


class OverReservationError(LedgerError):
    code = "over_reservation"

    def __init__(self, record_id: int, on_hand: int, requested_reserved: int):
        super().__init__(
            f"reserved total {requested_reserved} would exceed on hand {on_hand} for stock record {record_id}",
            record_id=record_id,
            on_hand=on_hand,
            requested_reserved=requested_reserved,
        )


class ConcurrentModificationError(LedgerError):
    code = "concurrent_modification"

    def __init__(self, entity: str, entity_id, expected_version: int | None = None, actual_version: int | None = None):
        super().__init__(
            f"{entity} {entity_id} was modified concurrently; re-read and retry",
            entity=entity,
            entity_id=entity_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )


class InvalidStateError(LedgerError):
    code = "invalid_state"

    def __init__(self, reservation_id: int, current: str, target: str):
        super().__init__(
            f"reservation {reservation_id} cannot go from {current} to {target}",
            reservation_id=reservation_id,
            current=current,
            target=target,
        )


class CapacityExceededError(LedgerError):
    code = "capacity_exceeded"

    def __init__(self, location_id: str, max_quantity: int, current: int, requested: int):
        super().__init__(
            f"location {location_id} holds {current} of {max_quantity}, cannot add {requested}",
            location_id=location_id,
            max_quantity=max_quantity,
            current=current,
            requested=requested,
        )


class ReservationsNotAllowedError(LedgerError):
    code = "reservations_not_allowed"

    def __init__(self, location_id: str):
        super().__init__(f"location {location_id} does not accept reservations", location_id=location_id)


class RecordInUseError(LedgerError):
    code = "record_in_use"

    def __init__(self, record_id: int, on_hand: int, live_reservations: int):
        super().__init__(
            f"stock record {record_id} still holds stock or reservations",
            record_id=record_id,
            on_hand=on_hand,
            live_reservations=live_reservations,
        )


class DeadlineExceededError(LedgerError):
    code = "deadline_exceeded"

    def __init__(self, operation: str, timeout: float | None):
        super().__init__(f"{operation} did not finish within {timeout}s", operation=operation, timeout=timeout)


class MixingNotAllowedError(LedgerError):
    code = "mixing_not_allowed"

    def __init__(self, location_id: str, rule: str, occupant_id: int):
        super().__init__(
            f"location {location_id} does not allow mixed {rule}s",
            location_id=location_id,
            rule=rule,
            occupant_id=occupant_id,
        )
