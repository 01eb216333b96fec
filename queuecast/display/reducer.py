"""
queuecast/display/reducer.py — Pure derivation of the "now serving" view.

``reduce`` maps one complete feed delivery plus a scope to a
:class:`DerivedQueueView`. It has no side effects and returns equal views for
equal inputs, so the engine calls it on every feed tick.

Tie-break: when several scoped entries are Called/Served at once, the one
appearing last in the delivery is current. The data store appends the most
recent status change last; no ``called_at`` field is reliably present.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from queuecast.core.constants import C, SERVING_STATUSES, DisplayKind, EntryStatus
from queuecast.core.models import DerivedQueueView, QueueEntry


def in_scope(entry: QueueEntry, scope: Optional[str]) -> bool:
    """Return True if ``entry`` belongs to ``scope`` (``None``/``"all"`` match everything)."""
    if scope is None or scope == C.ALL_SCOPE:
        return True
    return entry.department == scope


def reduce(
    entries: Sequence[QueueEntry],
    scope: Optional[str] = None,
    upcoming_limit: int = C.UPCOMING_LIMITS[DisplayKind.DEPARTMENTAL],
) -> DerivedQueueView:
    """
    Derive the display view for ``scope`` from a complete feed delivery.

    Steps:

    1. Keep entries in ``scope`` (department name; ``None``/``"all"`` keeps all).
    2. Split into serving (Called/Served) and waiting (Waiting).
    3. ``current_serving`` = last serving entry in feed order.
    4. ``upcoming`` = waiting sorted by ``created_at`` (stable), truncated.
    5. ``counts_by_status`` = tally of all five statuses.

    Args:
        entries: Entries in feed order.
        scope: Department name, ``"all"`` or ``None``.
        upcoming_limit: Maximum length of ``upcoming``.

    Returns:
        The derived view.
    """
    if upcoming_limit < 0:
        raise ValueError(f"upcoming_limit must be ≥ 0, got {upcoming_limit}")

    scoped = [e for e in entries if in_scope(e, scope)]

    current: Optional[QueueEntry] = None
    waiting: list[QueueEntry] = []
    counts = {status: 0 for status in EntryStatus}
    for entry in scoped:
        counts[entry.status] += 1
        if entry.status in SERVING_STATUSES:
            current = entry
        elif entry.status is EntryStatus.WAITING:
            waiting.append(entry)

    waiting.sort(key=lambda e: e.created_at)

    return DerivedQueueView(
        scope=scope if scope is not None else C.ALL_SCOPE,
        current_serving=current,
        upcoming=tuple(waiting[:upcoming_limit]),
        counts_by_status=counts,
        total_waiting=len(waiting),
    )


def reduce_by_department(
    entries: Sequence[QueueEntry],
    departments: Iterable[str],
    upcoming_limit: int,
) -> dict[str, DerivedQueueView]:
    """
    Build one view per department for multi-department displays.

    Departments are returned in the order given, whether or not they have
    entries, so the display layout stays stable.
    """
    return {
        dept: reduce(entries, dept, upcoming_limit)
        for dept in departments
    }
