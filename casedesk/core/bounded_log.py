"""
Bounded, append-only case history.

When an append pushes a log past its cap the oldest entries are dropped so
exactly `cap` of the most recent remain, in their original order. Eviction is
silent: no error and no extra audit entry.

None of these functions lock anything. Callers must hold the case's
serialization point (CaseStore.transaction) around load, append and save.
"""

from typing import List, Optional, Tuple, TypeVar

from .config import CASE_AUDIT_TRAIL_CAP, CASE_OUTPUTS_CAP
from .schema import AuditEntry, Case, OutputEntry

T = TypeVar('T')


def append_bounded(entries: List[T], entry: T, cap: int) -> Tuple[List[T], int]:
    """Return (retained entries, index of the new entry within them)."""
    if cap < 1:
        raise ValueError(f"cap must be >= 1, got {cap}")
    retained = list(entries)
    retained.append(entry)
    if len(retained) > cap:
        retained = retained[-cap:]
    return retained, len(retained) - 1


def append_output(case: Case, entry: OutputEntry, cap: Optional[int] = None) -> int:
    """Append to the case output log; returns the entry's index after eviction."""
    case.outputs, index = append_bounded(case.outputs, entry, CASE_OUTPUTS_CAP if cap is None else cap)
    return index


def append_audit(case: Case, entry: AuditEntry, cap: Optional[int] = None) -> int:
    case.audit_trail, index = append_bounded(case.audit_trail, entry, CASE_AUDIT_TRAIL_CAP if cap is None else cap)
    return index
