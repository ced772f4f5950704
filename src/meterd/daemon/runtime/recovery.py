"""Reconciliation sweep for reservations and settlements left behind by crashes."""

from __future__ import annotations

from ..ledger.models import EntryReason, iso_seconds_ago
from ..ledger.usage import Ledger
from ..utils.config_loader import RecoverySettings
from ..utils.logging_config import StructuredLogger
from .jobs import JobStore

logger = StructuredLogger(__name__)


def reconcile(
    ledger: Ledger,
    jobs: JobStore | None = None,
    settings: RecoverySettings | None = None,
) -> dict[str, int]:
    """Refund orphaned reservations, finish unsettled finalizes, expire stale pending work.

    Safe to run concurrently with live traffic and with itself.
    """
    settings = settings or RecoverySettings()
    orphans_refunded = 0
    resettled = 0
    expired = 0

    reserves = ledger.balances.list_entries(
        reason=EntryReason.RESERVE,
        since=iso_seconds_ago(settings.orphan_lookback_seconds),
        before=iso_seconds_ago(settings.orphan_grace_seconds),
    )
    reserves = [e for e in reserves if e.operation_id]
    known = ledger.operations.existing_ids(e.operation_id for e in reserves)
    for entry in reserves:
        if entry.operation_id in known:
            continue
        if ledger.refund_orphan(entry):
            orphans_refunded += 1

    # Grace window lets an in-flight finalize complete its own settlement.
    unsettled = ledger.operations.list_unsettled(iso_seconds_ago(settings.orphan_grace_seconds))
    for operation in unsettled:
        if ledger.resettle(operation.id):
            resettled += 1

    pending = ledger.operations.list_pending(iso_seconds_ago(settings.pending_ttl_seconds))
    for operation in pending:
        if jobs is not None and jobs.get_by_operation(operation.id) is not None:
            continue
        if ledger.finalize(operation.id, is_refund=True, error_message="reservation expired"):
            expired += 1

    summary = {
        "orphans_refunded": orphans_refunded,
        "resettled": resettled,
        "expired": expired,
        "scanned": len(reserves) + len(unsettled) + len(pending),
    }
    if orphans_refunded or resettled or expired:
        logger.warning("Reconciliation sweep applied", **summary)
    return summary
