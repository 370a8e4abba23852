import pytest
from structlog.testing import capture_logs

from stockledger.errors import (
    CapacityExceededError,
    DeadlineExceededError,
    InsufficientAvailableError,
    InsufficientStockError,
    MixingNotAllowedError,
    NotFoundError,
    RecordInUseError,
    ValidationError,
)
from stockledger.models import MovementType, ReservationStatus
from stockledger.orchestrator import stock_key
from stockledger.schemas import MovementFilter


def test_receive_reserve_release_consume_walkthrough(orchestrator):
    record = orchestrator.receive("ITEM-A", "WH-1", 100)
    assert (record.quantity_on_hand, record.quantity_reserved, record.quantity_available) == (100, 0, 100)
    assert record.sku == "SKU-A"
    [receipt] = orchestrator.movements_for_item("ITEM-A")
    assert (receipt.movement_type, receipt.quantity) == (MovementType.RECEIPT, 100)

    reservation = orchestrator.reserve(record.id, 20, "alice")
    assert reservation.status == ReservationStatus.ACTIVE
    stock = orchestrator.get_stock(record.id)
    assert (stock.quantity_reserved, stock.quantity_available) == (20, 80)

    released = orchestrator.release_reservation(reservation.id)
    assert released.status == ReservationStatus.RELEASED
    stock = orchestrator.get_stock(record.id)
    assert (stock.quantity_reserved, stock.quantity_available) == (0, 100)

    again = orchestrator.reserve(record.id, 20, "alice")
    consumed = orchestrator.consume_reservation(again.id)
    assert consumed.status == ReservationStatus.CONSUMED
    stock = orchestrator.get_stock(record.id)
    assert (stock.quantity_on_hand, stock.quantity_reserved) == (80, 0)
    consumption = orchestrator.search_movements(MovementFilter(movement_type=MovementType.CONSUMPTION))
    assert [m.quantity for m in consumption] == [-20]


def test_over_reservation_changes_nothing(orchestrator):
    record = orchestrator.receive("ITEM-A", "WH-1", 100)
    before = orchestrator.movements_for_item("ITEM-A")

    with pytest.raises(InsufficientAvailableError) as exc:
        orchestrator.reserve(record.id, 150, "alice")

    assert exc.value.details == {"record_id": record.id, "available": 100, "requested": 150}
    assert orchestrator.get_stock(record.id) == record
    assert orchestrator.movements_for_item("ITEM-A") == before
    assert orchestrator.list_reservations() == []


def test_transfer_moves_stock_with_linked_legs(orchestrator):
    orchestrator.receive("ITEM-A", "WH-1", 80)
    result = orchestrator.transfer("ITEM-A", "WH-1", "WH-2", 30, reason="rebalance")

    assert result.source.quantity_on_hand == 50
    assert result.destination.quantity_on_hand == 30
    assert result.destination.sku == "SKU-A"
    out_leg, in_leg = result.movements
    assert (out_leg.movement_type, out_leg.quantity) == (MovementType.TRANSFER_OUT, -30)
    assert (in_leg.movement_type, in_leg.quantity) == (MovementType.TRANSFER_IN, 30)
    assert out_leg.reference_id == in_leg.reference_id == result.reference_id
    assert out_leg.reference_type == "transfer"
    assert (in_leg.source_location_id, in_leg.destination_location_id) == ("WH-1", "WH-2")


def test_transfer_conserves_total(orchestrator):
    orchestrator.receive("ITEM-A", "WH-1", 80)
    orchestrator.receive("ITEM-A", "WH-2", 15)
    orchestrator.transfer("ITEM-A", "WH-1", "WH-2", 25)
    orchestrator.transfer("ITEM-A", "WH-2", "WH-1", 10)

    total = sum(s.quantity_on_hand for s in orchestrator.list_stock(item_id="ITEM-A"))
    assert total == 95


def test_failed_destination_leg_leaves_source_untouched(orchestrator):
    orchestrator.receive("ITEM-A", "WH-1", 100)
    orchestrator.receive("ITEM-B", "SMALL", 40)

    with pytest.raises(CapacityExceededError) as exc:
        orchestrator.transfer("ITEM-A", "WH-1", "SMALL", 30)

    assert exc.value.details["current"] == 40
    assert orchestrator.find_stock("ITEM-A", "WH-1").quantity_on_hand == 100
    assert orchestrator.find_stock("ITEM-A", "SMALL") is None
    assert orchestrator.search_movements(MovementFilter(movement_type=MovementType.TRANSFER_OUT)) == []


def test_transfer_cannot_take_reserved_stock(orchestrator):
    record = orchestrator.receive("ITEM-A", "WH-1", 50)
    orchestrator.reserve(record.id, 40, "alice")
    with pytest.raises(InsufficientStockError):
        orchestrator.transfer("ITEM-A", "WH-1", "WH-2", 20)


def test_transfer_needs_two_locations(orchestrator):
    orchestrator.receive("ITEM-A", "WH-1", 50)
    with pytest.raises(ValidationError):
        orchestrator.transfer("ITEM-A", "WH-1", "WH-1", 5)


def test_ship_respects_reservations(orchestrator):
    record = orchestrator.receive("ITEM-A", "WH-1", 10)
    orchestrator.reserve(record.id, 8, "alice")

    with pytest.raises(InsufficientStockError) as exc:
        orchestrator.ship("ITEM-A", "WH-1", 3)
    assert exc.value.details["available"] == 2

    shipped = orchestrator.ship("ITEM-A", "WH-1", 2, movement_type="damage", reason="crushed pallet")
    assert shipped.quantity_on_hand == 8
    [damage] = orchestrator.search_movements(MovementFilter(movement_type=MovementType.DAMAGE))
    assert damage.reason == "crushed pallet"


def test_override_location_goes_negative(orchestrator):
    orchestrator.receive("ITEM-A", "NEG", 5)
    assert orchestrator.ship("ITEM-A", "NEG", 12).quantity_on_hand == -7


def test_receive_rejects_bad_input(orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.receive("ITEM-Z", "WH-1", 5)
    with pytest.raises(NotFoundError):
        orchestrator.receive("ITEM-A", "WH-404", 5)
    with pytest.raises(ValidationError):
        orchestrator.receive("ITEM-A", "WH-1", 0)
    with pytest.raises(ValidationError):
        orchestrator.receive("ITEM-A", "WH-1", 5, movement_type="shipment")
    assert orchestrator.list_stock() == []


def test_receive_kinds_and_lots(orchestrator):
    returned = orchestrator.receive("ITEM-A", "WH-1", 4, movement_type="return", lot_number="L-1")
    produced = orchestrator.receive("ITEM-A", "WH-1", 6, movement_type=MovementType.PRODUCTION, lot_number="L-2")

    assert returned.id != produced.id
    assert returned.lot_number == "L-1"
    kinds = sorted(m.movement_type.value for m in orchestrator.movements_for_location("WH-1"))
    assert kinds == ["production", "return"]


def test_location_capacity(orchestrator):
    orchestrator.receive("ITEM-A", "SMALL", 45)
    with pytest.raises(CapacityExceededError):
        orchestrator.receive("ITEM-B", "SMALL", 6)
    assert orchestrator.receive("ITEM-B", "SMALL", 5).quantity_on_hand == 5


def test_single_sku_location(orchestrator):
    orchestrator.receive("ITEM-A", "BIN-SKU", 10)
    with pytest.raises(MixingNotAllowedError) as caught:
        orchestrator.receive("ITEM-B", "BIN-SKU", 5)
    assert caught.value.details["rule"] == "sku"
    assert orchestrator.find_stock("ITEM-B", "BIN-SKU") is None

    # lots of the same item may share the bin
    orchestrator.receive("ITEM-A", "BIN-SKU", 5, lot_number="L2")
    orchestrator.receive("ITEM-B", "WH-1", 5)
    with pytest.raises(MixingNotAllowedError):
        orchestrator.transfer("ITEM-B", "WH-1", "BIN-SKU", 5)
    assert orchestrator.find_stock("ITEM-B", "WH-1").quantity_on_hand == 5

    orchestrator.ship("ITEM-A", "BIN-SKU", 10)
    orchestrator.ship("ITEM-A", "BIN-SKU", 5, lot_number="L2")
    moved = orchestrator.transfer("ITEM-B", "WH-1", "BIN-SKU", 5)
    assert moved.destination.quantity_on_hand == 5


def test_single_lot_location(orchestrator):
    orchestrator.receive("ITEM-A", "BIN-LOT", 10, lot_number="L1")
    with pytest.raises(MixingNotAllowedError) as caught:
        orchestrator.adjust("ITEM-A", "BIN-LOT", 3, "found on shelf", lot_number="L2")
    assert caught.value.details["rule"] == "lot"
    with pytest.raises(MixingNotAllowedError):
        orchestrator.count("ITEM-A", "BIN-LOT", 4, lot_number="L2")
    assert orchestrator.find_stock("ITEM-A", "BIN-LOT", lot_number="L2") is None

    orchestrator.receive("ITEM-B", "BIN-LOT", 2)
    assert orchestrator.receive("ITEM-A", "BIN-LOT", 5, lot_number="L1").quantity_on_hand == 15


def test_adjust(orchestrator):
    created = orchestrator.adjust("ITEM-A", "WH-1", 12, "found in returns cage")
    assert created.quantity_on_hand == 12

    with pytest.raises(InsufficientStockError):
        orchestrator.adjust("ITEM-A", "WH-1", -20, "shrinkage")
    with pytest.raises(ValidationError):
        orchestrator.adjust("ITEM-A", "WH-1", -2, "")
    with pytest.raises(ValidationError):
        orchestrator.adjust("ITEM-A", "WH-1", 0, "noop")

    assert orchestrator.adjust("ITEM-A", "WH-1", -2, "shrinkage").quantity_on_hand == 10
    kinds = [m.movement_type for m in orchestrator.movements_for_item("ITEM-A")]
    assert kinds == [MovementType.ADJUSTMENT_OUT, MovementType.ADJUSTMENT_IN]


def test_count_records_the_difference(orchestrator, clock):
    record = orchestrator.receive("ITEM-A", "WH-1", 100)
    clock.advance(minutes=5)

    counted = orchestrator.count("ITEM-A", "WH-1", 93, reason="cycle count")
    assert counted.quantity_on_hand == 93
    latest = orchestrator.movements_for_item("ITEM-A")[0]
    assert (latest.movement_type, latest.quantity) == (MovementType.COUNT, -7)

    orchestrator.count("ITEM-A", "WH-1", 93)
    assert len(orchestrator.movements_for_item("ITEM-A")) == 2
    assert orchestrator.reconcile(record.id).balanced


def test_count_below_reserved_is_refused(orchestrator):
    record = orchestrator.receive("ITEM-A", "WH-1", 10)
    orchestrator.reserve(record.id, 6, "alice")
    with pytest.raises(InsufficientStockError):
        orchestrator.count("ITEM-A", "WH-1", 5)


def test_reconcile_matches_journal(orchestrator):
    record = orchestrator.receive("ITEM-A", "WH-1", 100)
    orchestrator.ship("ITEM-A", "WH-1", 30)
    orchestrator.transfer("ITEM-A", "WH-1", "WH-2", 20)
    reservation = orchestrator.reserve(record.id, 10, "alice")
    orchestrator.consume_reservation(reservation.id)
    orchestrator.adjust("ITEM-A", "WH-1", 3, "recount")

    report = orchestrator.reconcile(record.id)
    assert report.quantity_on_hand == 43
    assert report.journal_balance == 43
    assert report.difference == 0


def test_delete_stock_record(orchestrator):
    record = orchestrator.receive("ITEM-A", "WH-1", 10)
    reservation = orchestrator.reserve(record.id, 10, "alice")

    with pytest.raises(RecordInUseError):
        orchestrator.delete_stock_record(record.id)

    orchestrator.consume_reservation(reservation.id)
    orchestrator.delete_stock_record(record.id)

    with pytest.raises(NotFoundError):
        orchestrator.get_stock(record.id)
    # the journal keeps the history of a deleted record
    assert len(orchestrator.movements_for_item("ITEM-A")) == 3


def test_movement_queries_are_newest_first(orchestrator, clock):
    orchestrator.receive("ITEM-A", "WH-1", 10)
    clock.advance(minutes=1)
    orchestrator.ship("ITEM-A", "WH-1", 4)
    clock.advance(minutes=1)
    orchestrator.receive("ITEM-B", "WH-1", 1)

    assert [m.quantity for m in orchestrator.movements_for_item("ITEM-A")] == [-4, 10]
    assert [m.item_id for m in orchestrator.movements_for_location("WH-1", limit=2)] == ["ITEM-B", "ITEM-A"]
    assert [m.quantity for m in orchestrator.movements_for_location("WH-1", offset=2)] == [10]


def test_performed_by_is_journalled(orchestrator):
    orchestrator.receive("ITEM-A", "WH-1", 10, performed_by="dock-2", reference_type="po", reference_id="PO-77")
    [movement] = orchestrator.search_movements(MovementFilter(reference_id="PO-77"))
    assert movement.performed_by == "dock-2"


def test_zero_timeout_is_a_deadline(orchestrator):
    with pytest.raises(DeadlineExceededError) as exc:
        orchestrator.receive("ITEM-A", "WH-1", 10, timeout=0)
    assert exc.value.details["operation"] == "stock.receive"
    assert orchestrator.list_stock() == []


def test_held_record_times_out(orchestrator):
    record = orchestrator.receive("ITEM-A", "WH-1", 10)
    with orchestrator.locks.hold([stock_key("ITEM-A", "WH-1")]):
        with pytest.raises(DeadlineExceededError):
            orchestrator.ship("ITEM-A", "WH-1", 1, timeout=0.1)
        # other records are not blocked
        orchestrator.receive("ITEM-A", "WH-2", 1, timeout=0.1)
    assert orchestrator.get_stock(record.id).quantity_on_hand == 10


def test_rejections_are_logged(orchestrator):
    orchestrator.receive("ITEM-A", "WH-1", 5)
    with capture_logs() as logs:
        with pytest.raises(InsufficientStockError):
            orchestrator.ship("ITEM-A", "WH-1", 9)
        orchestrator.ship("ITEM-A", "WH-1", 1)

    events = [entry["event"] for entry in logs]
    assert events == ["stock.ship.rejected", "stock.shipped"]
    assert logs[0]["code"] == "insufficient_stock"
    assert logs[0]["log_level"] == "warning"


def test_invariants_hold_after_mixed_operations(orchestrator):
    a = orchestrator.receive("ITEM-A", "WH-1", 60)
    b = orchestrator.receive("ITEM-B", "WH-1", 25)
    first = orchestrator.reserve(a.id, 30, "alice")
    orchestrator.reserve(b.id, 25, "bob")
    orchestrator.transfer("ITEM-A", "WH-1", "WH-2", 20)
    orchestrator.release_reservation(first.id, 10)
    orchestrator.ship("ITEM-A", "WH-1", 15)
    for failing in (
        lambda: orchestrator.ship("ITEM-B", "WH-1", 1),
        lambda: orchestrator.reserve(a.id, 50, "carol"),
        lambda: orchestrator.transfer("ITEM-A", "WH-1", "WH-2", 30),
    ):
        with pytest.raises((InsufficientStockError, InsufficientAvailableError)):
            failing()

    for stock in orchestrator.list_stock():
        assert 0 <= stock.quantity_reserved <= stock.quantity_on_hand
        assert stock.quantity_available == stock.quantity_on_hand - stock.quantity_reserved
        assert orchestrator.reconcile(stock.id).balanced
