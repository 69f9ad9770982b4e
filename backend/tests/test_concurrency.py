"""
Concurrency helper tests.

Verifies:
- Level locks are taken in canonical key order regardless of argument order
- Opposite-direction transfers between the same pair do not deadlock
- Locks are re-entrant for nested engine calls
- run_with_retry retries optimistic conflicts and gives up after the limit
- Lock entries are dropped once nobody holds or waits for them
- Concurrent level and ledger calls on a file database keep stock invariants
"""

import threading

import pytest
from sqlalchemy.orm.exc import StaleDataError

from stockledger import create_app
from stockledger.errors import AlreadyCompleted, InsufficientStock
from stockledger.extensions import db
from stockledger.models.transactions import TXN_STATUS_COMPLETED, TXN_TYPE_ADJUST
from stockledger.services import alert_service, item_service
from stockledger.services import inventory_level_service as levels
from stockledger.services import transaction_service as ledger
from stockledger.services.concurrency import LevelLockRegistry, run_with_retry
from stockledger.services.location import LocationKey

from conftest import receive


A = LocationKey("P1", "U1")
B = LocationKey("P1", "U2")


class TestLevelLocks:

    def test_keys_sorted_and_deduplicated(self):
        registry = LevelLockRegistry()
        with registry.acquire(7, [B, A, None, B]) as keys:
            assert keys == sorted([(7, A.identity()), (7, B.identity())])

    def test_reentrant(self):
        registry = LevelLockRegistry()
        with registry.acquire(1, [A]):
            with registry.acquire(1, [A, B]) as keys:
                assert len(keys) == 2

    def test_opposite_transfers_do_not_deadlock(self):
        registry = LevelLockRegistry()
        counter = {"moves": 0}
        errors = []

        def mover(source, destination):
            try:
                for _ in range(200):
                    with registry.acquire(1, [source, destination]):
                        counter["moves"] += 1
            except Exception as exc:  # pragma: no cover
                errors.append(exc)

        threads = [
            threading.Thread(target=mover, args=(A, B)),
            threading.Thread(target=mover, args=(B, A)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert not any(t.is_alive() for t in threads)
        assert errors == []
        assert counter["moves"] == 400

    def test_serializes_same_level(self):
        registry = LevelLockRegistry()
        state = {"inside": 0, "max_inside": 0}
        guard = threading.Lock()

        def worker():
            for _ in range(100):
                with registry.acquire(3, [A]):
                    with guard:
                        state["inside"] += 1
                        state["max_inside"] = max(state["max_inside"], state["inside"])
                    with guard:
                        state["inside"] -= 1

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert state["max_inside"] == 1

    def test_entries_dropped_after_release(self):
        registry = LevelLockRegistry()
        with registry.acquire(1, [A, B]):
            with registry.acquire(1, [A]):
                assert len(registry) == 2
            assert len(registry) == 2
        assert len(registry) == 0

    def test_entries_dropped_after_contention(self):
        registry = LevelLockRegistry()

        def worker(n):
            for _ in range(50):
                with registry.acquire(n % 2, [A, B]):
                    pass

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(registry) == 0

    def test_failed_body_still_releases(self):
        registry = LevelLockRegistry()
        with pytest.raises(KeyError):
            with registry.acquire(1, [A]):
                raise KeyError("boom")
        assert len(registry) == 0


class TestRunWithRetry:

    def test_retries_stale_data(self, app):
        attempts = []

        def op():
            attempts.append(1)
            if len(attempts) < 3:
                raise StaleDataError("version mismatch")
            return "ok"

        with app.app_context():
            assert run_with_retry(op, backoff_base=0) == "ok"
        assert len(attempts) == 3

    def test_gives_up_after_limit(self, app):
        def op():
            raise StaleDataError("version mismatch")

        with app.app_context():
            with pytest.raises(StaleDataError):
                run_with_retry(op, attempts=2, backoff_base=0)

    def test_other_errors_propagate_immediately(self, app):
        attempts = []

        def op():
            attempts.append(1)
            raise KeyError("boom")

        with app.app_context():
            with pytest.raises(KeyError):
                run_with_retry(op, backoff_base=0)
        assert len(attempts) == 1


# =============================================================================
# SERVICES UNDER CONCURRENCY
# =============================================================================


@pytest.fixture
def file_app(tmp_path):
    """App on a file-backed sqlite database so worker threads get their own connections."""
    file_app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.sqlite3'}",
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'USAGE_TRACKING_ENABLED': False,
    })

    with file_app.app_context():
        db.create_all()
        yield file_app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def soap(file_app):
    return item_service.create_item(sku="SOAP-01", name="Hand Soap", reorder_point=4, reorder_quantity=12)


def run_in_threads(app, count, fn):
    """Start `count` threads together, each calling fn() in its own app context."""
    results = []
    guard = threading.Lock()
    barrier = threading.Barrier(count)

    def worker():
        with app.app_context():
            barrier.wait()
            try:
                outcome = fn()
            except Exception as exc:
                outcome = exc
        with guard:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert not any(t.is_alive() for t in threads)
    return results


class TestServicesUnderConcurrency:

    def test_concurrent_decrements_never_go_negative(self, file_app, soap):
        receive(soap.id, A, 3)
        item_id = soap.id

        def take_one():
            levels.adjust(item_id, A, -1, "Guest use")
            return "ok"

        results = run_in_threads(file_app, 8, take_one)

        failed = [r for r in results if isinstance(r, Exception)]
        assert results.count("ok") == 3
        assert len(failed) == 5
        assert all(isinstance(exc, InsufficientStock) for exc in failed)

        db.session.expire_all()
        level = levels.get_level_by_location(item_id, A)
        assert level.quantity_on_hand == 0
        assert level.quantity_available == 0
        assert ledger.list_transactions(txn_type=TXN_TYPE_ADJUST)["pagination"]["total"] == 3
        assert len(alert_service.list_open_alerts(item_id)) == 1

    def test_transaction_processed_once(self, file_app, soap):
        tx = receive(soap.id, A, 6, requires_approval=True)
        ledger.approve_transaction(tx.id, "manager-1", process=False)
        tx_id, item_id = tx.id, soap.id

        def process():
            return ledger.process_transaction(tx_id).status

        results = run_in_threads(file_app, 4, process)

        assert results.count(TXN_STATUS_COMPLETED) == 1
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 3
        assert all(isinstance(exc, AlreadyCompleted) for exc in errors)

        db.session.expire_all()
        assert levels.get_level_by_location(item_id, A).quantity_on_hand == 6

    def test_opposite_transfers_conserve_stock(self, file_app, soap):
        receive(soap.id, A, 20)
        receive(soap.id, B, 20)
        item_id = soap.id
        turn = iter([(A, B), (B, A)])
        turn_guard = threading.Lock()

        def shuttle():
            with turn_guard:
                source, destination = next(turn)
            for _ in range(5):
                ledger.transfer_inventory(item_id=item_id, quantity=1, source=source, destination=destination)
            return "done"

        results = run_in_threads(file_app, 2, shuttle)
        assert results == ["done", "done"]

        db.session.expire_all()
        assert levels.get_level_by_location(item_id, A).quantity_on_hand == 20
        assert levels.get_level_by_location(item_id, B).quantity_on_hand == 20
