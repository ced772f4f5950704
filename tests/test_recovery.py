"""Crash windows: orphaned reservations, interrupted settlement, expired pending work."""

import pytest

from meterd.daemon.ledger import (
    EntryReason,
    Ledger,
    MemoryBalanceStore,
    MemoryOperationStore,
    OperationStatus,
    UsageOperation,
)
from meterd.daemon.ledger.models import iso_seconds_ago
from meterd.daemon.runtime import MemoryJobStore, new_job, reconcile
from meterd.daemon.utils.config_loader import RecoverySettings, SettlementSettings

NO_GRACE = RecoverySettings(orphan_grace_seconds=0, pending_ttl_seconds=60)


class FlakyBalanceStore(MemoryBalanceStore):
    """Fails the next ``failures`` increments as if the store were unreachable."""

    def __init__(self):
        super().__init__()
        self.failures = 0

    def increment(self, *args, **kwargs):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("store unavailable")
        return super().increment(*args, **kwargs)


class BrokenCreateStore(MemoryOperationStore):
    """Loses the operation write, as a crash between decrement and create would."""

    def __init__(self):
        super().__init__()
        self.broken = True

    def create(self, operation):
        if self.broken:
            raise ConnectionError("write lost")
        return super().create(operation)


def _ledger(balances=None, operations=None, attempts=3):
    return Ledger(
        balances or MemoryBalanceStore(),
        operations or MemoryOperationStore(),
        SettlementSettings(attempts=attempts, backoff_seconds=0.0),
    )


class TestSettlementRetry:
    def test_transient_settlement_failure_is_retried(self):
        balances = FlakyBalanceStore()
        ledger = _ledger(balances)
        ledger.grant("alice", 10)
        op_id = ledger.start("alice", "analyze", 5)

        balances.failures = 2
        assert ledger.finalize(op_id, actual_cost=1) is True
        assert ledger.balance("alice") == 9
        assert ledger.get_operation(op_id).settled_at is not None

    def test_exhausted_settlement_keeps_status_and_is_swept(self):
        balances = FlakyBalanceStore()
        ledger = _ledger(balances, attempts=2)
        ledger.grant("alice", 10)
        op_id = ledger.start("alice", "analyze", 5)

        balances.failures = 5
        assert ledger.finalize(op_id, is_refund=True) is True
        op = ledger.get_operation(op_id)
        assert op.status == OperationStatus.FAILED
        assert op.settled_at is None
        assert ledger.balance("alice") == 5

        balances.failures = 0
        summary = reconcile(ledger, settings=NO_GRACE)
        assert summary["resettled"] == 1
        assert ledger.balance("alice") == 10
        assert ledger.get_operation(op_id).settled_at is not None

    def test_repeated_finalize_completes_unsettled_operation(self):
        balances = FlakyBalanceStore()
        ledger = _ledger(balances, attempts=1)
        ledger.grant("alice", 10)
        op_id = ledger.start("alice", "analyze", 5)

        balances.failures = 1
        ledger.finalize(op_id, actual_cost=2)
        assert ledger.balance("alice") == 5

        assert ledger.finalize(op_id, actual_cost=2) is False
        assert ledger.balance("alice") == 8
        assert ledger.finalize(op_id, actual_cost=2) is False
        assert ledger.balance("alice") == 8

    def test_resettle_never_pays_twice(self):
        ledger = _ledger()
        ledger.grant("alice", 10)
        op_id = ledger.start("alice", "analyze", 5)
        ledger.finalize(op_id, is_refund=True)
        # Simulate a lost acknowledgement of mark_settled.
        ledger.operations._operations[op_id].settled_at = None

        assert ledger.resettle(op_id) is True
        assert ledger.balance("alice") == 10
        refunds = ledger.balances.list_entries("alice", reason=EntryReason.FAILURE_REFUND)
        assert len(refunds) == 1


class TestOrphanedReservations:
    def test_orphan_is_refunded_once(self):
        operations = BrokenCreateStore()
        ledger = _ledger(operations=operations)
        ledger.grant("bob", 10)

        with pytest.raises(ConnectionError):
            ledger.start("bob", "generate", 4)
        assert ledger.balance("bob") == 6

        operations.broken = False
        summary = reconcile(ledger, settings=NO_GRACE)
        assert summary["orphans_refunded"] == 1
        assert ledger.balance("bob") == 10

        (entry,) = ledger.balances.list_entries("bob", reason=EntryReason.RECONCILE_ORPHAN)
        tombstone = ledger.get_operation(entry.operation_id)
        assert tombstone.status == OperationStatus.FAILED
        assert tombstone.refund is True
        assert tombstone.cost == 0
        assert tombstone.feature == "generate"
        assert tombstone.settled_at is not None

        again = reconcile(ledger, settings=NO_GRACE)
        assert again["orphans_refunded"] == 0
        assert ledger.balance("bob") == 10

    def test_reservation_inside_grace_window_is_left_alone(self):
        ledger = _ledger()
        ledger.grant("bob", 10)
        ledger.balances.decrement("bob", 4, reason=EntryReason.RESERVE, operation_id="in-flight")

        summary = reconcile(ledger, settings=RecoverySettings(orphan_grace_seconds=600))
        assert summary["orphans_refunded"] == 0
        assert ledger.balance("bob") == 6

    def test_start_that_won_the_race_is_not_refunded(self):
        ledger = _ledger()
        ledger.grant("bob", 10)
        op_id = ledger.start("bob", "generate", 4)

        summary = reconcile(ledger, settings=NO_GRACE)
        assert summary["orphans_refunded"] == 0
        assert ledger.get_operation(op_id).status == OperationStatus.PENDING
        assert ledger.balance("bob") == 6

    def test_interrupted_orphan_refund_finishes_with_same_reason(self):
        balances = FlakyBalanceStore()
        ledger = _ledger(balances, attempts=1)
        ledger.grant("bob", 10)
        balances.decrement("bob", 4, reason=EntryReason.RESERVE, operation_id="lost", metadata={"feature": "x"})

        # One failure for the orphan step, one for the resettle step of the same sweep.
        balances.failures = 2
        first = reconcile(ledger, settings=NO_GRACE)
        assert first["orphans_refunded"] == 0
        assert first["resettled"] == 0
        assert ledger.balance("bob") == 6

        second = reconcile(ledger, settings=NO_GRACE)
        assert second["resettled"] == 1
        assert ledger.balance("bob") == 10
        assert len(ledger.balances.list_entries("bob", reason=EntryReason.RECONCILE_ORPHAN)) == 1
        assert ledger.balances.list_entries("bob", reason=EntryReason.FAILURE_REFUND) == []


class TestExpiredPending:
    def _stale_operation(self, ledger, op_id="stale", user_id="carol", estimate=3):
        ledger.balances.decrement(user_id, estimate, reason=EntryReason.RESERVE, operation_id=op_id)
        ledger.operations.create(
            UsageOperation(
                id=op_id,
                user_id=user_id,
                feature="analyze",
                estimate=estimate,
                created_at=iso_seconds_ago(3600),
            )
        )

    def test_expired_pending_is_refunded(self):
        ledger = _ledger()
        ledger.grant("carol", 10)
        self._stale_operation(ledger)

        summary = reconcile(ledger, settings=NO_GRACE)
        assert summary["expired"] == 1
        op = ledger.get_operation("stale")
        assert op.status == OperationStatus.FAILED
        assert op.error_message == "reservation expired"
        assert ledger.balance("carol") == 10

    def test_pending_with_queued_job_is_not_expired(self):
        ledger = _ledger()
        jobs = MemoryJobStore()
        ledger.grant("carol", 10)
        self._stale_operation(ledger)
        jobs.create_job(new_job("carol", "analyze", "stale"))

        summary = reconcile(ledger, jobs, settings=NO_GRACE)
        assert summary["expired"] == 0
        assert ledger.get_operation("stale").status == OperationStatus.PENDING
