"""Fetch fills and open positions from the Hyperliquid info API.

This is the only I/O the journal core depends on, and it is kept apart from
the reconciliation math: we fetch complete responses first, then hand plain
records to tradejournal.reconcile. Any failure raises FetchError and nothing
downstream runs.

Docs at:
https://hyperliquid.gitbook.io/hyperliquid-docs/for-developers/api/info-endpoint
"""

import asyncio
import os
from dataclasses import dataclass, field
from typing import Any

import aiohttp
import orjson
from dotenv import dotenv_values
from loguru import logger

CONFIG = {**dotenv_values(".env.tradejournal"), **os.environ}

INFO_URL = CONFIG.get("TRADEJOURNAL_HYPERLIQUID_URL") or "https://api.hyperliquid.xyz/info"


class FetchError(Exception):
    """Exchange data could not be fetched completely."""


@dataclass(slots=True)
class AccountSnapshot:
    """Everything one reconciliation pass needs for a wallet, already fetched."""

    fills: list[dict[str, Any]] = field(default_factory=list)
    positions: list[dict[str, Any]] = field(default_factory=list)
    equity: float = 0.0


def flattenPositions(state: dict[str, Any]) -> list[dict[str, Any]]:
    """Pull position records out of a clearinghouseState response.

    The API nests each position as {"type": "oneWay", "position": {...}}.
    """
    return [
        entry["position"]
        for entry in state.get("assetPositions") or []
        if isinstance(entry, dict) and isinstance(entry.get("position"), dict)
    ]


def accountEquity(state: dict[str, Any]) -> float:
    summary = state.get("marginSummary") or {}
    try:
        return float(summary.get("accountValue", 0))
    except (TypeError, ValueError) as e:
        raise FetchError(f"Unreadable account value: {summary!r}") from e


@dataclass(slots=True)
class HyperliquidInfo:
    session: aiohttp.ClientSession
    url: str = INFO_URL
    timeout: float = 30.0

    async def request(self, body: dict[str, Any]) -> Any:
        """POST one info request and return the decoded JSON body."""
        try:
            async with self.session.post(
                self.url,
                data=orjson.dumps(body),
                headers={"Content-Type": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                payload = await resp.read()
                if resp.status // 100 != 2:
                    raise FetchError(
                        f"{body['type']} failed with HTTP {resp.status}: {payload[:200]!r}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(f"{body['type']} request failed: {e}") from e

        try:
            return orjson.loads(payload)
        except orjson.JSONDecodeError as e:
            raise FetchError(f"{body['type']} returned invalid JSON") from e

    async def userFills(self, address: str) -> list[dict[str, Any]]:
        got = await self.request({"type": "userFills", "user": address})
        if not isinstance(got, list):
            raise FetchError(f"userFills returned {type(got).__name__}, not a list")

        return got

    async def clearinghouseState(self, address: str) -> dict[str, Any]:
        got = await self.request({"type": "clearinghouseState", "user": address})
        if not isinstance(got, dict):
            raise FetchError(
                f"clearinghouseState returned {type(got).__name__}, not an object"
            )

        return got

    async def snapshot(self, address: str) -> AccountSnapshot:
        """Fetch fills and positions together; either both succeed or FetchError."""
        logger.info("Fetching fills and positions for {}...", address[:10])
        fills, state = await asyncio.gather(
            self.userFills(address), self.clearinghouseState(address)
        )

        snap = AccountSnapshot(
            fills=fills, positions=flattenPositions(state), equity=accountEquity(state)
        )

        logger.info(
            "Fetched {} fill(s), {} position(s) for {}",
            len(snap.fills),
            len(snap.positions),
            address[:10],
        )

        return snap
