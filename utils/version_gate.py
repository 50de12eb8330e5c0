"""
Version gate: decides whether an incoming order update supersedes the local copy.

order_version is incremented exactly once per accepted mutation by the
authoritative store, so it gives a total order over updates for one order id.
Applying only strictly newer versions makes every client projection converge
on the highest version observed, whatever the delivery order or duplication.
"""

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

REASON_NO_LOCAL = "no_local_record"
REASON_UNVERSIONED_SNAPSHOT = "unversioned_full_snapshot"
REASON_UNVERSIONED_PARTIAL = "unversioned_partial_requires_refetch"
REASON_NEWER = "newer_version"
REASON_SNAPSHOT_UPGRADE = "full_snapshot_replaces_partial"
REASON_STALE = "stale_or_duplicate"


@dataclass(frozen=True)
class GateDecision:
    accept: bool
    reason: str
    refetch: bool = False


def should_accept_update(
    incoming_version: Optional[int],
    current_version: Optional[int],
    has_full_snapshot: bool = False,
    current_is_partial: bool = False,
) -> GateDecision:
    """
    Decide whether to apply an incoming update.

    Args:
        incoming_version: order_version carried by the update, None when absent
        current_version: order_version of the local record, None when there is none
        has_full_snapshot: the update carries a complete order record
        current_is_partial: the local record was last written from a partial update

    Returns:
        GateDecision with accept/reason; refetch is set when the caller
        must reload the order instead of applying anything.
    """
    if current_version is None:
        return GateDecision(True, REASON_NO_LOCAL)

    if incoming_version is None:
        if has_full_snapshot:
            return GateDecision(True, REASON_UNVERSIONED_SNAPSHOT)
        return GateDecision(False, REASON_UNVERSIONED_PARTIAL, refetch=True)

    if incoming_version > current_version:
        return GateDecision(True, REASON_NEWER)

    # Same version seen through two transports: the complete payload wins
    if incoming_version == current_version and has_full_snapshot and current_is_partial:
        return GateDecision(True, REASON_SNAPSHOT_UPGRADE)

    return GateDecision(False, REASON_STALE)
