"""
Transaction ledger tests.

Verifies:
- Location rules per transaction type
- PENDING -> APPROVED -> COMPLETED, PENDING -> REJECTED
- A transaction is processed at most once
- Failed effects cancel the transaction and leave levels untouched
- TRANSFER moves stock atomically across both legs
- DAMAGE, ASSIGN and UNASSIGN side effects
- Listing and statistics
"""

from datetime import timedelta

import pytest
from sqlalchemy.orm.exc import StaleDataError

from stockledger.errors import (
    AlreadyCompleted,
    InsufficientStock,
    ItemNotFound,
    LevelNotFound,
    MustBeApproved,
    NotPending,
    TransactionNotFound,
    ValidationError,
)
from stockledger.models import InventoryItem
from stockledger.models.transactions import (
    TXN_STATUS_APPROVED,
    TXN_STATUS_CANCELLED,
    TXN_STATUS_COMPLETED,
    TXN_STATUS_PENDING,
    TXN_STATUS_REJECTED,
    TXN_TYPE_ADJUST,
    TXN_TYPE_ASSIGN,
    TXN_TYPE_CONSUME,
    TXN_TYPE_DAMAGE,
    TXN_TYPE_DISPOSE,
    TXN_TYPE_RECEIVE,
    TXN_TYPE_TRANSFER,
    TXN_TYPE_UNASSIGN,
)
from stockledger.services import inventory_level_service as levels
from stockledger.services import transaction_service as ledger
from stockledger.services.location import LocationKey
from stockledger.time_utils import utcnow

from conftest import consume, receive


def level_at(item_id, location):
    return levels.get_level_by_location(item_id, location)


# =============================================================================
# VALIDATION
# =============================================================================


class TestValidation:

    @pytest.mark.parametrize(
        "txn_type,source,destination",
        [
            (TXN_TYPE_RECEIVE, LocationKey("P1"), None),
            (TXN_TYPE_UNASSIGN, LocationKey("P1"), None),
            (TXN_TYPE_CONSUME, None, LocationKey("P1")),
            (TXN_TYPE_DAMAGE, None, None),
            (TXN_TYPE_DISPOSE, None, LocationKey("P1")),
            (TXN_TYPE_TRANSFER, LocationKey("P1"), None),
            (TXN_TYPE_TRANSFER, LocationKey("P1", "U1"), LocationKey("P1", "U1")),
            (TXN_TYPE_ADJUST, None, None),
            (TXN_TYPE_ADJUST, LocationKey("P1"), LocationKey("P2")),
        ],
    )
    def test_location_rules(self, db_session, towels, txn_type, source, destination):
        with pytest.raises(ValidationError):
            ledger.record_transaction(
                txn_type=txn_type,
                item_id=towels.id,
                quantity=1,
                source=source,
                destination=destination,
            )

    def test_assign_needs_staging_design(self, db_session, towels, unit_a):
        with pytest.raises(ValidationError):
            ledger.record_transaction(txn_type=TXN_TYPE_ASSIGN, item_id=towels.id, quantity=1, source=unit_a)

    def test_unknown_type(self, db_session, towels, unit_a):
        with pytest.raises(ValidationError):
            ledger.record_transaction(txn_type="LEND", item_id=towels.id, quantity=1, destination=unit_a)

    @pytest.mark.parametrize("quantity", [0, -3])
    def test_quantity_must_be_positive(self, db_session, towels, unit_a, quantity):
        with pytest.raises(ValidationError):
            ledger.record_transaction(txn_type=TXN_TYPE_RECEIVE, item_id=towels.id, quantity=quantity, destination=unit_a)

    def test_unknown_item(self, db_session, unit_a):
        with pytest.raises(ItemNotFound):
            ledger.record_transaction(txn_type=TXN_TYPE_RECEIVE, item_id=424242, quantity=1, destination=unit_a)

    def test_total_cost_derived(self, db_session, towels, unit_a):
        tx = ledger.record_transaction(
            txn_type=TXN_TYPE_RECEIVE,
            item_id=towels.id,
            quantity=4,
            destination=unit_a,
            unit_cost_cents=850,
        )
        assert tx.total_cost_cents == 3400
        assert tx.status == TXN_STATUS_APPROVED
        assert tx.to_location == "P1/U1"
        # recording alone does not touch levels
        assert level_at(towels.id, unit_a) is None


# =============================================================================
# LIFECYCLE
# =============================================================================


class TestLifecycle:

    def test_receive_auto_processes(self, db_session, towels, unit_a):
        tx = receive(towels.id, unit_a, 24)
        assert tx.status == TXN_STATUS_COMPLETED
        assert tx.completed_at is not None
        assert level_at(towels.id, unit_a).quantity_on_hand == 24

    def test_pending_then_approve_processes(self, db_session, towels, unit_a):
        tx = receive(towels.id, unit_a, 10, requires_approval=True)
        assert tx.status == TXN_STATUS_PENDING
        assert level_at(towels.id, unit_a) is None

        approved = ledger.approve_transaction(tx.id, "manager-1", "Checked invoice")
        assert approved.status == TXN_STATUS_COMPLETED
        assert approved.approved_by == "manager-1"
        assert approved.approved_at is not None
        assert "Approval: Checked invoice" in approved.notes
        assert level_at(towels.id, unit_a).quantity_on_hand == 10

    def test_approve_without_processing(self, db_session, towels, unit_a):
        tx = receive(towels.id, unit_a, 10, requires_approval=True)
        approved = ledger.approve_transaction(tx.id, "manager-1", process=False)
        assert approved.status == TXN_STATUS_APPROVED
        assert level_at(towels.id, unit_a) is None

        done = ledger.process_transaction(tx.id)
        assert done.status == TXN_STATUS_COMPLETED

    def test_reject_pending(self, db_session, towels, unit_a):
        tx = receive(towels.id, unit_a, 10, requires_approval=True)
        rejected = ledger.reject_transaction(tx.id, "manager-1", "Wrong vendor")
        assert rejected.status == TXN_STATUS_REJECTED
        assert rejected.rejection_reason == "Wrong vendor"

        with pytest.raises(NotPending):
            ledger.approve_transaction(tx.id, "manager-1")
        with pytest.raises(MustBeApproved):
            ledger.process_transaction(tx.id)

    def test_approve_completed_is_not_pending(self, db_session, towels, unit_a):
        tx = receive(towels.id, unit_a, 10)
        with pytest.raises(NotPending):
            ledger.approve_transaction(tx.id, "manager-1")
        with pytest.raises(NotPending):
            ledger.reject_transaction(tx.id, "manager-1", "late")

    def test_process_pending_requires_approval(self, db_session, towels, unit_a):
        tx = receive(towels.id, unit_a, 10, requires_approval=True)
        with pytest.raises(MustBeApproved):
            ledger.process_transaction(tx.id)

    def test_double_process_rejected(self, db_session, towels, unit_a):
        tx = receive(towels.id, unit_a, 10)
        with pytest.raises(AlreadyCompleted):
            ledger.process_transaction(tx.id)
        assert level_at(towels.id, unit_a).quantity_on_hand == 10

    def test_missing_transaction(self, db_session):
        with pytest.raises(TransactionNotFound):
            ledger.process_transaction(999)
        with pytest.raises(TransactionNotFound):
            ledger.get_transaction(999)


# =============================================================================
# EFFECT FAILURES
# =============================================================================


class TestFailedEffects:

    def test_consume_more_than_on_hand_cancels(self, db_session, towels, unit_a):
        receive(towels.id, unit_a, 5)
        with pytest.raises(InsufficientStock):
            consume(towels.id, unit_a, 6)

        level = level_at(towels.id, unit_a)
        assert level.quantity_on_hand == 5

        failed = ledger.list_transactions(txn_type=TXN_TYPE_CONSUME)["data"][0]
        assert failed.status == TXN_STATUS_CANCELLED
        assert "Processing failed" in failed.notes

    def test_consume_at_unknown_location_leaves_no_level(self, db_session, towels, unit_a):
        with pytest.raises(InsufficientStock):
            consume(towels.id, unit_a, 1)
        assert level_at(towels.id, unit_a) is None

    def test_cancelled_is_terminal(self, db_session, towels, unit_a):
        with pytest.raises(InsufficientStock):
            consume(towels.id, unit_a, 1)
        failed = ledger.list_transactions(status=TXN_STATUS_CANCELLED)["data"][0]
        with pytest.raises(MustBeApproved):
            ledger.process_transaction(failed.id)

    def test_persistent_conflict_leaves_approved(self, db_session, towels, unit_a, monkeypatch, caplog):
        tx = receive(towels.id, unit_a, 10, requires_approval=True)
        ledger.approve_transaction(tx.id, "manager-1", process=False)

        def conflicting(txn):
            raise StaleDataError("version mismatch")

        monkeypatch.setitem(ledger.EFFECT_HANDLERS, TXN_TYPE_RECEIVE, conflicting)
        with pytest.raises(StaleDataError):
            ledger.process_transaction(tx.id)

        stuck = ledger.get_transaction(tx.id)
        assert stuck.status == TXN_STATUS_APPROVED
        assert not stuck.notes
        assert level_at(towels.id, unit_a) is None
        assert "left APPROVED" in caplog.text

        monkeypatch.undo()
        assert ledger.process_transaction(tx.id).status == TXN_STATUS_COMPLETED
        assert level_at(towels.id, unit_a).quantity_on_hand == 10


# =============================================================================
# TRANSFER
# =============================================================================


class TestTransfer:

    def test_transfer_moves_stock(self, db_session, towels, unit_a, unit_b):
        receive(towels.id, unit_a, 20)
        tx = ledger.transfer_inventory(item_id=towels.id, quantity=8, source=unit_a, destination=unit_b, created_by="u-1")

        assert tx.type == TXN_TYPE_TRANSFER
        assert tx.status == TXN_STATUS_COMPLETED
        assert level_at(towels.id, unit_a).quantity_on_hand == 12
        assert level_at(towels.id, unit_b).quantity_on_hand == 8

    def test_transfer_conserves_total(self, db_session, towels, unit_a, unit_b):
        receive(towels.id, unit_a, 20)
        receive(towels.id, unit_b, 3)
        ledger.transfer_inventory(item_id=towels.id, quantity=5, source=unit_a, destination=unit_b)

        total = level_at(towels.id, unit_a).quantity_on_hand + level_at(towels.id, unit_b).quantity_on_hand
        assert total == 23

    def test_transfer_preflight(self, db_session, towels, unit_a, unit_b):
        with pytest.raises(LevelNotFound):
            ledger.transfer_inventory(item_id=towels.id, quantity=1, source=unit_a, destination=unit_b)

        receive(towels.id, unit_a, 4)
        with pytest.raises(InsufficientStock):
            ledger.transfer_inventory(item_id=towels.id, quantity=5, source=unit_a, destination=unit_b)
        assert ledger.list_transactions(txn_type=TXN_TYPE_TRANSFER)["pagination"]["total"] == 0

    def test_failed_second_leg_rolls_back_first(self, db_session, towels, unit_a, unit_b, monkeypatch):
        receive(towels.id, unit_a, 20)
        real_apply_delta = levels.apply_delta
        calls = []

        def flaky_apply_delta(item_id, location, delta, **kwargs):
            calls.append((location, delta))
            if len(calls) == 2:
                raise InsufficientStock("destination rejected the stock")
            return real_apply_delta(item_id, location, delta, **kwargs)

        monkeypatch.setattr(levels, "apply_delta", flaky_apply_delta)

        with pytest.raises(InsufficientStock):
            ledger.transfer_inventory(item_id=towels.id, quantity=8, source=unit_a, destination=unit_b)

        assert calls == [(unit_a, -8), (unit_b, 8)]
        assert level_at(towels.id, unit_a).quantity_on_hand == 20
        assert level_at(towels.id, unit_b) is None

        failed = ledger.list_transactions(txn_type=TXN_TYPE_TRANSFER)["data"][0]
        assert failed.status == TXN_STATUS_CANCELLED
        assert "destination rejected the stock" in failed.notes


# =============================================================================
# OTHER TYPES
# =============================================================================


class TestTypeEffects:

    def test_adjust_sign_from_side(self, db_session, towels, unit_a):
        ledger.create_transaction(txn_type=TXN_TYPE_ADJUST, item_id=towels.id, quantity=9, destination=unit_a)
        ledger.create_transaction(txn_type=TXN_TYPE_ADJUST, item_id=towels.id, quantity=2, source=unit_a)
        assert level_at(towels.id, unit_a).quantity_on_hand == 7

    def test_damage_marks_item_damaged(self, db_session, towels, unit_a):
        receive(towels.id, unit_a, 10)
        ledger.create_transaction(txn_type=TXN_TYPE_DAMAGE, item_id=towels.id, quantity=1, source=unit_a)

        assert level_at(towels.id, unit_a).quantity_on_hand == 9
        assert db_session.get(InventoryItem, towels.id).condition == "DAMAGED"

    def test_dispose_keeps_condition(self, db_session, towels, unit_a):
        receive(towels.id, unit_a, 10)
        ledger.create_transaction(txn_type=TXN_TYPE_DISPOSE, item_id=towels.id, quantity=2, source=unit_a)

        assert level_at(towels.id, unit_a).quantity_on_hand == 8
        assert db_session.get(InventoryItem, towels.id).condition == "NEW"

    def test_assign_and_unassign_move_reservations(self, db_session, towels, unit_a):
        receive(towels.id, unit_a, 10)
        ledger.create_transaction(
            txn_type=TXN_TYPE_ASSIGN, item_id=towels.id, quantity=4, source=unit_a, staging_design_id="design-7"
        )
        level = level_at(towels.id, unit_a)
        assert (level.quantity_on_hand, level.quantity_reserved, level.quantity_available) == (10, 4, 6)

        ledger.create_transaction(txn_type=TXN_TYPE_UNASSIGN, item_id=towels.id, quantity=4, destination=unit_a)
        level = level_at(towels.id, unit_a)
        assert (level.quantity_on_hand, level.quantity_reserved, level.quantity_available) == (10, 0, 10)


# =============================================================================
# QUERIES
# =============================================================================


class TestQueries:

    def test_list_by_property_matches_either_side(self, db_session, towels, unit_a):
        other = LocationKey("P2", "U9")
        receive(towels.id, unit_a, 10)
        ledger.transfer_inventory(item_id=towels.id, quantity=3, source=unit_a, destination=other)

        assert ledger.list_transactions(property_id="P2")["pagination"]["total"] == 1
        assert ledger.list_transactions(property_id="P1")["pagination"]["total"] == 2

    def test_date_window(self, db_session, towels, unit_a):
        receive(towels.id, unit_a, 10, transaction_date=utcnow() - timedelta(days=10))
        receive(towels.id, unit_a, 10)

        recent = ledger.list_transactions(start_date=utcnow() - timedelta(days=1))
        assert recent["pagination"]["total"] == 1

    def test_item_history_newest_first(self, db_session, towels, unit_a):
        receive(towels.id, unit_a, 10, transaction_date=utcnow() - timedelta(days=2))
        consume(towels.id, unit_a, 1)

        history = ledger.get_item_transaction_history(towels.id)
        assert [tx.type for tx in history] == [TXN_TYPE_CONSUME, TXN_TYPE_RECEIVE]

    def test_statistics(self, db_session, towels, unit_a):
        receive(towels.id, unit_a, 10, unit_cost_cents=100)
        receive(towels.id, unit_a, 5, unit_cost_cents=200)
        consume(towels.id, unit_a, 2)
        receive(towels.id, unit_a, 1, requires_approval=True)

        stats = ledger.get_transaction_statistics()
        assert stats["total_transactions"] == 4
        assert {"type": TXN_TYPE_RECEIVE, "count": 3} in stats["by_type"]
        assert {"status": TXN_STATUS_PENDING, "count": 1} in stats["by_status"]
        assert {"status": TXN_STATUS_COMPLETED, "count": 3} in stats["by_status"]
        assert stats["total_value_cents"] == 2000
