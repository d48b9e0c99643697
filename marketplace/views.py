"""
views.py - Read-only projections over item records

Linear scans over the full record set, recomputed on every call. Each view
returns records in ascending item_id order and never mutates anything.
"""

from __future__ import annotations
from typing import Callable, Iterable, List

from .core import ItemRecord, ItemState


def _select(records: Iterable[ItemRecord], keep: Callable[[ItemRecord], bool]) -> List[ItemRecord]:
    return sorted((r for r in records if keep(r)), key=lambda r: r.item_id)


def unsold_items(records: Iterable[ItemRecord]) -> List[ItemRecord]:
    """Records still in LISTED state."""
    return _select(records, lambda r: r.state is ItemState.LISTED)


def owned_by(records: Iterable[ItemRecord], identity: str) -> List[ItemRecord]:
    """Records whose current_owner is identity (bought, or returned on cancel)."""
    return _select(records, lambda r: r.current_owner == identity)


def listed_by(records: Iterable[ItemRecord], identity: str) -> List[ItemRecord]:
    """Records listed by identity, in any state."""
    return _select(records, lambda r: r.seller == identity)
