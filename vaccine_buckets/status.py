"""Child-level compliance status."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from .enums import BucketState, ComplianceStatus

if TYPE_CHECKING:
    from .store import BucketStore

LOG = logging.getLogger(__name__)


def aggregate_status(late_count: int, overdue_count: int) -> ComplianceStatus:
    """A child is up to date (A_JOUR) iff it has no late and no overdue dose."""
    if late_count > 0 or overdue_count > 0:
        return ComplianceStatus.PAS_A_JOUR
    return ComplianceStatus.A_JOUR


def refresh_status(store: "BucketStore", child_id: Any) -> Optional[ComplianceStatus]:
    """Recompute and persist a child's status from its stored records.

    Used by flows that change Late/Overdue rows (e.g. marking a dose as
    completed) without running a full rebuild.

    Parameters
    ----------
    store : BucketStore
        Backing store.
    child_id : Any
        Child to refresh.

    Returns
    -------
    Optional[ComplianceStatus]
        The persisted status, or None if the child does not exist.
    """
    with store.transaction():
        snapshot = store.get_child(child_id)
        if snapshot is None:
            LOG.debug("Status refresh skipped: child %s not found", child_id)
            return None

        status = aggregate_status(
            store.count_records(child_id, BucketState.LATE),
            store.count_records(child_id, BucketState.OVERDUE),
        )
        store.set_status(child_id, status)
    return status
