"""Merge reconciled candidates into an existing trade ledger.

Replace-on-conflict, never append-on-conflict: a candidate whose identity
already exists in the ledger takes over that slot. Everything else is
appended in candidate order. Manual trades (identity None) pass through
untouched.

Running the same reconciliation twice yields the same ledger.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable

from loguru import logger

from tradejournal.ledger import Identity, Trade, TradeStatus


def refresh(existing: Trade, candidate: Trade) -> Trade:
    """Build the replacement for 'existing' from 'candidate'.

    User annotations survive the refresh. A live position keeps the earliest
    open time we have seen for it, since a snapshot without fill history
    only knows "now".
    """
    updated = candidate.annotated_from(existing)

    if (
        existing.status is TradeStatus.OPEN
        and updated.status is TradeStatus.OPEN
        and existing.opened_at < updated.opened_at
    ):
        updated.opened_at = existing.opened_at

    return updated


def merge(existing: Iterable[Trade], candidates: Iterable[Trade]) -> list[Trade]:
    """Return a new ledger with 'candidates' merged into 'existing'.

    Neither input is modified. Duplicate identities already in 'existing'
    collapse into their first slot, and a later candidate wins over an
    earlier one with the same identity.
    """
    ledger: list[Trade] = []
    slots: dict[Identity, int] = {}

    for trade in existing:
        if trade.identity is None:
            ledger.append(trade)
            continue

        if trade.identity in slots:
            logger.warning("Collapsing duplicate ledger identity {}", trade.identity)
            ledger[slots[trade.identity]] = trade
            continue

        slots[trade.identity] = len(ledger)
        ledger.append(trade)

    replaced = 0
    inserted = 0

    for candidate in candidates:
        if candidate.identity is None:
            # nothing to key on; reconciliation never emits these
            logger.debug("Ignoring candidate without identity: {}", candidate)
            continue

        # copy so the caller's candidate objects are never mutated
        candidate = dataclasses.replace(candidate, notes=list(candidate.notes))

        if (slot := slots.get(candidate.identity)) is not None:
            ledger[slot] = refresh(ledger[slot], candidate)
            replaced += 1
            continue

        slots[candidate.identity] = len(ledger)
        ledger.append(candidate)
        inserted += 1

    logger.debug("Merged ledger: {} replaced, {} inserted", replaced, inserted)

    return ledger
