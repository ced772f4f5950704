"""Two-phase usage accounting: reserve an estimate, then settle to actual cost."""

from __future__ import annotations

import uuid
from typing import Any

from ..errors import DuplicateOperation, LedgerError
from ..utils.config_loader import SettlementSettings
from ..utils.logging_config import StructuredLogger
from ..utils.retry import retry_with_backoff
from .models import CreditEntry, EntryReason, EntryType, OperationStatus, UsageOperation
from .stores import BalanceStore, OperationStore

logger = StructuredLogger(__name__)

ORPHAN_MARKER = "reconciled_orphan"


def _require_amount(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value!r}")
    return value


def _require_text(name: str, value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value


class Ledger:
    """Reservation/settlement protocol over a BalanceStore and an OperationStore.

    ``start`` reserves credits and records a pending operation. ``finalize``
    flips the operation to a terminal status (the idempotency guard) and then
    settles the balance against the reservation. The two steps touch
    different records and are not one transaction: the status transition is
    committed first, and settlement is keyed by ``(operation_id, reason)`` so
    repeating it never moves credits twice.
    """

    def __init__(
        self,
        balances: BalanceStore,
        operations: OperationStore,
        settings: SettlementSettings | None = None,
    ):
        self.balances = balances
        self.operations = operations
        self.settings = settings or SettlementSettings()

    # ── Reads ───────────────────────────────────────────────────────────────

    def balance(self, user_id: str) -> int:
        return self.balances.get_balance(user_id)

    def get_operation(self, operation_id: str) -> UsageOperation:
        return self.operations.get(operation_id)

    # ── Start ───────────────────────────────────────────────────────────────

    def start(self, user_id: str, feature: str, estimate: int, metadata: Any = None) -> str:
        """Reserve ``estimate`` credits and create a pending operation.

        Raises InsufficientCredits, leaving neither a balance change nor a
        record behind. Returns the operation id.
        """
        _require_text("user_id", user_id)
        _require_text("feature", feature)
        _require_amount("estimate", estimate)

        operation_id = uuid.uuid4().hex
        try:
            self.balances.decrement(
                user_id,
                estimate,
                reason=EntryReason.RESERVE,
                operation_id=operation_id,
                entry_type=EntryType.DEBIT,
                metadata={"feature": feature},
            )
        except LedgerError as exc:
            logger.warning(
                "Reservation denied",
                user_id=user_id,
                feature=feature,
                estimate=estimate,
                error=str(exc),
            )
            raise

        operation = UsageOperation(
            id=operation_id,
            user_id=user_id,
            feature=feature,
            estimate=estimate,
            metadata=metadata,
        )
        try:
            self.operations.create(operation)
        except Exception as exc:
            # Credits are held with no record; the reconciliation sweep returns them.
            logger.critical(
                "Reserved credits without an operation record",
                operation_id=operation_id,
                user_id=user_id,
                estimate=estimate,
                error=str(exc),
            )
            raise

        logger.info(
            "Credits reserved",
            operation_id=operation_id,
            user_id=user_id,
            feature=feature,
            estimate=estimate,
        )
        return operation_id

    # ── Finalize ────────────────────────────────────────────────────────────

    def finalize(
        self,
        operation_id: str,
        actual_cost: int = 0,
        is_refund: bool = False,
        result: Any = None,
        error_message: str | None = None,
    ) -> bool:
        """Settle an operation. Safe to call any number of times.

        Only the first call that finds the operation pending has effect; it
        returns True. Later calls return False and only complete a settlement
        left unfinished by an earlier call. Raises OperationNotFound.
        """
        if not is_refund:
            _require_amount("actual_cost", actual_cost)

        new_status = OperationStatus.FAILED if is_refund else OperationStatus.SUCCESS
        updates = {
            "cost": 0 if is_refund else actual_cost,
            "refund": bool(is_refund),
            "result": result,
            "error_message": error_message,
        }
        applied = self.operations.compare_and_transition(
            operation_id, OperationStatus.PENDING, new_status, updates
        )
        operation = self.operations.get(operation_id)

        if not applied:
            if operation.settled_at is None:
                self._settle_with_retry(operation)
            else:
                logger.info("Finalize ignored; operation already settled", operation_id=operation_id)
            return False

        logger.info(
            "Operation finalized",
            operation_id=operation_id,
            user_id=operation.user_id,
            status=str(new_status),
            estimate=operation.estimate,
            cost=operation.cost,
        )
        self._settle_with_retry(operation)
        return True

    def resettle(self, operation_id: str) -> bool:
        """Apply settlement for a terminal operation whose settlement was not recorded."""
        operation = self.operations.get(operation_id)
        if not operation.is_terminal or operation.settled_at is not None:
            return False
        return self._settle_with_retry(operation)

    def _settle_with_retry(self, operation: UsageOperation) -> bool:
        try:
            retry_with_backoff(
                lambda: self._settle(operation),
                attempts=self.settings.attempts,
                backoff=self.settings.backoff_seconds,
                retry_on=(Exception,),
                label="ledger.settle",
            )
            return True
        except Exception as exc:
            # Status is committed and must not be reverted; the sweep finishes this.
            logger.critical(
                "Settlement incomplete after retries",
                operation_id=operation.id,
                user_id=operation.user_id,
                error=str(exc),
            )
            return False

    def refund_orphan(self, entry: CreditEntry) -> bool:
        """Return a reservation whose operation record was never created.

        Claims the id with a ``failed`` tombstone first; if the id already
        exists, ``start`` created the record after all and nothing is done.
        """
        metadata = entry.metadata if isinstance(entry.metadata, dict) else {}
        tombstone = UsageOperation(
            id=entry.operation_id,
            user_id=entry.user_id,
            feature=metadata.get("feature") or "unknown",
            estimate=-entry.delta,
            status=OperationStatus.FAILED,
            cost=0,
            refund=True,
            metadata={ORPHAN_MARKER: True, "reserved_at": entry.created_at},
            error_message="reservation without operation record",
        )
        try:
            self.operations.create(tombstone)
        except DuplicateOperation:
            return False
        logger.warning(
            "Refunding orphaned reservation",
            operation_id=tombstone.id,
            user_id=tombstone.user_id,
            estimate=tombstone.estimate,
        )
        return self._settle_with_retry(tombstone)

    def _settle(self, operation: UsageOperation) -> None:
        user_id = operation.user_id
        if operation.refund:
            orphan = isinstance(operation.metadata, dict) and operation.metadata.get(ORPHAN_MARKER)
            self.balances.increment(
                user_id,
                operation.estimate,
                reason=EntryReason.RECONCILE_ORPHAN if orphan else EntryReason.FAILURE_REFUND,
                operation_id=operation.id,
                entry_type=EntryType.REFUND,
            )
        else:
            diff = operation.estimate - (operation.cost or 0)
            if diff > 0:
                self.balances.increment(
                    user_id,
                    diff,
                    reason=EntryReason.SETTLE_REFUND,
                    operation_id=operation.id,
                    entry_type=EntryType.REFUND,
                )
            elif diff < 0:
                charged = self.balances.decrement(
                    user_id,
                    -diff,
                    reason=EntryReason.SETTLE_EXTRA,
                    operation_id=operation.id,
                    entry_type=EntryType.DEBIT,
                    allow_partial=True,
                )
                if charged < -diff:
                    logger.warning(
                        "Extra charge exceeded balance",
                        operation_id=operation.id,
                        user_id=user_id,
                        requested=-diff,
                        charged=charged,
                    )
        self.operations.mark_settled(operation.id)

    # ── Direct balance changes ─────────────────────────────────────────────

    def grant(self, user_id: str, amount: int, reason: str = EntryReason.GRANT, metadata: Any = None) -> int:
        """Add purchased or bonus credits. Returns the new balance."""
        _require_text("user_id", user_id)
        _require_amount("amount", amount)
        self.balances.increment(
            user_id,
            amount,
            reason=reason,
            entry_type=EntryType.CREDIT,
            metadata=metadata,
        )
        logger.info("Credits granted", user_id=user_id, amount=amount, reason=str(reason))
        return self.balances.get_balance(user_id)

    def adjust(self, user_id: str, amount: int, reason: str, actor: str | None = None) -> int:
        """Operator correction. Negative amounts are conditional and may raise InsufficientCredits."""
        _require_text("user_id", user_id)
        _require_text("reason", reason)
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValueError(f"amount must be an integer, got {amount!r}")

        metadata = {"note": reason, "actor": actor}
        if amount >= 0:
            self.balances.increment(
                user_id, amount, reason=EntryReason.ADMIN_ADJUST, entry_type=EntryType.ADJUST, metadata=metadata
            )
        else:
            self.balances.decrement(
                user_id, -amount, reason=EntryReason.ADMIN_ADJUST, entry_type=EntryType.ADJUST, metadata=metadata
            )
        logger.info("Credits adjusted", user_id=user_id, amount=amount, actor=actor, note=reason)
        return self.balances.get_balance(user_id)
