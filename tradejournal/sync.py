"""Per-wallet sync passes: fetch, reconcile, merge.

Each wallet's ledger is independent, so different wallets sync in parallel.
The same wallet never runs two passes at once: merge is a read-modify-write
of that wallet's ledger, and interleaved passes could lose an update. A
per-wallet asyncio.Lock serializes them.

A pass is all-or-nothing. If the fetch fails, the pass raises FetchError
before reconciliation starts and the stored ledger is left exactly as it
was.

Usage:
    async with aiohttp.ClientSession() as session:
        ws = WalletSync(HyperliquidInfo(session), ledgers={})
        result = await ws.sync(Wallet("main", "0xabc..."))
"""

from __future__ import annotations

import asyncio
import datetime
import os
from collections import defaultdict
from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp
import arrow  # type: ignore
from dotenv import dotenv_values
from loguru import logger

from tradejournal.hyperliquid import AccountSnapshot, HyperliquidInfo
from tradejournal.ledger import Trade
from tradejournal.merger import merge
from tradejournal.reconcile import ReconcileReport, reconcile
from tradejournal.roundtrip import SIZE_EPSILON

CONFIG = {**dotenv_values(".env.tradejournal"), **os.environ}

DEFAULT_HISTORY_DAYS = 30
DEFAULT_FETCH_TIMEOUT = 30.0


@dataclass(slots=True, frozen=True)
class SyncSettings:
    # default cutoff lookback when a wallet has no history start of its own
    historyDays: int = DEFAULT_HISTORY_DAYS

    # zero-crossing tolerance in size units
    sizeEpsilon: float = SIZE_EPSILON

    fetchTimeout: float = DEFAULT_FETCH_TIMEOUT

    @classmethod
    def fromConfig(cls, config: Mapping[str, Any] | None = None) -> SyncSettings:
        """Read TRADEJOURNAL_* settings, falling back to defaults for missing keys."""
        if config is None:
            config = CONFIG

        def get(key, convert, default):
            value = config.get(key)
            if value is None or value == "":
                return default

            try:
                return convert(value)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid {key}: {value!r}") from e

        settings = cls(
            historyDays=get("TRADEJOURNAL_HISTORY_DAYS", int, DEFAULT_HISTORY_DAYS),
            sizeEpsilon=get("TRADEJOURNAL_SIZE_EPSILON", float, SIZE_EPSILON),
            fetchTimeout=get("TRADEJOURNAL_FETCH_TIMEOUT", float, DEFAULT_FETCH_TIMEOUT),
        )

        if settings.historyDays < 0:
            raise ValueError(f"Invalid TRADEJOURNAL_HISTORY_DAYS: {settings.historyDays}")

        if settings.sizeEpsilon <= 0:
            raise ValueError(f"Invalid TRADEJOURNAL_SIZE_EPSILON: {settings.sizeEpsilon}")

        return settings


class SnapshotSource(Protocol):
    async def snapshot(self, address: str) -> AccountSnapshot: ...


@dataclass(slots=True, frozen=True)
class Wallet:
    id: str
    address: str

    # overrides the default lookback cutoff when set
    history_start: datetime.datetime | None = None


@dataclass(slots=True)
class SyncResult:
    wallet_id: str
    ledger: list[Trade]
    report: ReconcileReport
    equity: float
    synced_at: datetime.datetime


def default_cutoff(now: datetime.datetime, days: int) -> datetime.datetime:
    return arrow.get(now).shift(days=-days).datetime


@dataclass
class WalletSync:
    """Run sync passes for wallets whose ledgers live in 'ledgers'.

    'ledgers' is owned by the caller (a dict, or any persistent mapping) and
    is only written after a pass completes.
    """

    source: SnapshotSource
    ledgers: MutableMapping[str, list[Trade]]
    settings: SyncSettings = field(default_factory=SyncSettings)
    locks: dict[str, asyncio.Lock] = field(
        default_factory=lambda: defaultdict(asyncio.Lock)
    )

    def cutoff(self, wallet: Wallet, now: datetime.datetime) -> datetime.datetime:
        if wallet.history_start is not None:
            return arrow.get(wallet.history_start).to("UTC").datetime

        return default_cutoff(now, self.settings.historyDays)

    async def sync(
        self, wallet: Wallet, now: datetime.datetime | None = None
    ) -> SyncResult:
        """One fetch/reconcile/merge pass for 'wallet'.

        Raises FetchError (ledger untouched) when the exchange can't be read.
        """
        async with self.locks[wallet.id]:
            if now is None:
                now = datetime.datetime.now(datetime.timezone.utc)

            try:
                snap = await self.source.snapshot(wallet.address)
            except Exception:
                logger.exception("Sync for wallet {} failed during fetch", wallet.id)
                raise

            rec = reconcile(
                snap.fills,
                snap.positions,
                cutoff=self.cutoff(wallet, now),
                now=now,
                epsilon=self.settings.sizeEpsilon,
            )

            ledger = merge(self.ledgers.get(wallet.id, []), rec.trades)
            self.ledgers[wallet.id] = ledger

            logger.info(
                "Synced wallet {}: {} trade(s) in ledger", wallet.id, len(ledger)
            )

            return SyncResult(
                wallet_id=wallet.id,
                ledger=ledger,
                report=rec.report,
                equity=snap.equity,
                synced_at=now,
            )

    async def sync_all(
        self, wallets: Iterable[Wallet], now: datetime.datetime | None = None
    ) -> dict[str, SyncResult | BaseException]:
        """Sync every wallet concurrently. One wallet failing doesn't stop the rest."""
        wallets = list(wallets)
        results = await asyncio.gather(
            *[self.sync(w, now) for w in wallets], return_exceptions=True
        )

        return {w.id: r for w, r in zip(wallets, results)}


async def run(
    wallets: Iterable[Wallet],
    ledgers: MutableMapping[str, list[Trade]],
    settings: SyncSettings | None = None,
) -> dict[str, SyncResult | BaseException]:
    """Open a session against the exchange and sync every wallet once."""
    if settings is None:
        settings = SyncSettings.fromConfig()

    async with aiohttp.ClientSession() as session:
        source = HyperliquidInfo(session, timeout=settings.fetchTimeout)
        return await WalletSync(source, ledgers, settings).sync_all(wallets)
