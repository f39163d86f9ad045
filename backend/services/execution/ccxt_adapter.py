"""
CCXTExchangeAdapter — Real exchange execution via CCXT.
======================================================
Implements the ExchangeAdapter interface against OKX (spot + USDT swaps)
through the CCXT library.

Supports:
  • Market / limit orders
  • Leverage + margin-mode configuration per instrument
  • Position listing and market close
  • USDT balance read (used for live-mode toggle and balance sync)
  • Demo-trading toggle via constructor flag

Architecture decisions:
  - Request signing (HMAC-SHA256 over timestamp + method + path + body,
    base64, request-time ISO timestamp) is done by CCXT's OKX driver.
  - CCXT async exchange is used internally; sync bridge via a private event
    loop because callers run in scheduler / request worker threads.
  - All exchange errors are caught and returned as ``success=False`` results
    so the caller never sees raw CCXT exceptions.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, Optional

import ccxt.async_support as ccxt_async

from backend.models.types import to_decimal
from backend.services.execution.exchange_adapter import (
    ExchangeAdapter,
    OrderRequest,
    OrderResult,
    PositionInfo,
    BalanceResult,
    PositionsResult,
    ActionResult,
)

logger = logging.getLogger(__name__)


# ── Symbol mapping (OKX instId → CCXT unified symbol) ──────────────────────

def _ccxt_symbol(inst_id: str) -> str:
    """``BTC-USDT-SWAP`` → ``BTC/USDT:USDT``; ``BTC-USDT`` → ``BTC/USDT``."""
    parts = inst_id.split("-")
    if len(parts) == 3 and parts[2] == "SWAP":
        return f"{parts[0]}/{parts[1]}:{parts[1]}"
    if len(parts) == 2:
        return f"{parts[0]}/{parts[1]}"
    return inst_id


def _inst_id(symbol: str) -> str:
    """Inverse of :func:`_ccxt_symbol`."""
    if ":" in symbol:
        pair, _settle = symbol.split(":", 1)
        base, quote = pair.split("/")
        return f"{base}-{quote}-SWAP"
    return symbol.replace("/", "-")


# ── Async-to-sync bridge ────────────────────────────────────────────────────

def _run_sync(coro):
    """Run an async coroutine from a sync context (scheduler thread).

    Creates a dedicated event loop per call to avoid conflicts with
    the application's running loop.
    """
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ── Adapter ─────────────────────────────────────────────────────────────────


class CCXTExchangeAdapter(ExchangeAdapter):
    """OKX execution via CCXT.

    Parameters
    ----------
    api_key, secret_key, passphrase : str
        OKX API credentials.
    sandbox : bool
        If True, route to OKX demo trading.
    """

    def __init__(self, api_key: str, secret_key: str, passphrase: str, *, sandbox: bool = False):
        self._api_key = api_key
        self._secret_key = secret_key
        self._passphrase = passphrase
        self._sandbox = sandbox
        # Guard against concurrent exchange calls from different scheduler threads
        self._lock = threading.Lock()
        # Leverage cache to avoid redundant set_leverage calls
        self._leverage_cache: Dict[str, int] = {}

    # ── Exchange instance (created per-call, closed after) ──────────────

    def _create_exchange(self) -> ccxt_async.okx:
        exchange = ccxt_async.okx({
            "apiKey": self._api_key,
            "secret": self._secret_key,
            "password": self._passphrase,
            "enableRateLimit": True,
        })
        if self._sandbox:
            exchange.set_sandbox_mode(True)
        return exchange

    async def _execute(self, coro_factory):
        """Create exchange → run coroutine → close exchange."""
        exchange = self._create_exchange()
        try:
            return await coro_factory(exchange)
        finally:
            await exchange.close()

    def _call(self, coro_factory):
        with self._lock:
            return _run_sync(self._execute(coro_factory))

    # ── Core execution ──────────────────────────────────────────────────

    def place_order(self, request: OrderRequest) -> OrderResult:
        symbol = _ccxt_symbol(request.inst_id)
        price = float(request.price) if request.order_type == "limit" and request.price is not None else None
        params = {"tdMode": "cash"} if ":" not in symbol else {"tdMode": "isolated"}

        async def _run(exchange):
            return await exchange.create_order(
                symbol=symbol,
                type=request.order_type,
                side=request.side,
                amount=float(request.quantity),
                price=price,
                params=params,
            )

        try:
            order = self._call(_run)
        except Exception as exc:
            logger.error(f"CCXT place_order error for {request.inst_id}: {exc}", exc_info=True)
            return OrderResult(success=False, error=str(exc))

        avg = order.get("average") or order.get("price")
        filled = order.get("filled")
        return OrderResult(
            success=True,
            filled=True,
            order_id=str(order.get("id", "")),
            fill_price=to_decimal(avg) if avg else request.price,
            filled_qty=to_decimal(filled) if filled else request.quantity,
            raw_response=order.get("info"),
        )

    def close_position(self, inst_id: str, pos_side: str) -> ActionResult:
        symbol = _ccxt_symbol(inst_id)

        async def _run(exchange):
            return await exchange.close_position(symbol, pos_side, {"mgnMode": "isolated"})

        try:
            self._call(_run)
        except Exception as exc:
            logger.error(f"CCXT close_position error for {inst_id}: {exc}", exc_info=True)
            return ActionResult(success=False, error=str(exc))
        return ActionResult(success=True)

    # ── Queries ─────────────────────────────────────────────────────────

    def get_account_balance(self) -> BalanceResult:
        async def _run(exchange):
            return await exchange.fetch_balance()

        try:
            balance = self._call(_run)
        except Exception as exc:
            logger.error(f"CCXT get_account_balance error: {exc}", exc_info=True)
            return BalanceResult(success=False, error=str(exc))

        usdt = balance.get("USDT", {}) or {}
        available = to_decimal(usdt.get("free") or 0)
        logger.info(f"OKX live balance: {available} USDT")
        return BalanceResult(success=True, usdt_balance=available)

    def get_positions(self) -> PositionsResult:
        async def _run(exchange):
            return await exchange.fetch_positions()

        try:
            raw = self._call(_run)
        except Exception as exc:
            logger.error(f"CCXT get_positions error: {exc}", exc_info=True)
            return PositionsResult(success=False, error=str(exc))

        positions = []
        for p in raw:
            contracts = to_decimal(p.get("contracts") or 0)
            if contracts == 0:
                continue
            positions.append(PositionInfo(
                inst_id=_inst_id(p.get("symbol", "")),
                side=(p.get("side") or "").lower(),
                size=abs(contracts),
                entry_price=to_decimal(p.get("entryPrice") or 0),
                mark_price=to_decimal(p.get("markPrice") or 0),
                unrealized_pnl=to_decimal(p.get("unrealizedPnl") or 0),
                leverage=int(p.get("leverage") or 1),
            ))
        return PositionsResult(success=True, positions=positions)

    # ── Configuration ───────────────────────────────────────────────────

    def set_leverage(self, inst_id: str, leverage: int, margin_mode: str = "isolated") -> ActionResult:
        """Set leverage for an instrument; cached to skip redundant calls."""
        symbol = _ccxt_symbol(inst_id)
        if self._leverage_cache.get(symbol) == leverage:
            return ActionResult(success=True)

        async def _run(exchange):
            return await exchange.set_leverage(leverage, symbol, {"mgnMode": margin_mode})

        try:
            self._call(_run)
        except Exception as exc:
            logger.error(f"CCXT set_leverage error ({symbol}, {leverage}x): {exc}")
            return ActionResult(success=False, error=str(exc))
        self._leverage_cache[symbol] = leverage
        return ActionResult(success=True)

    # ── Metadata ────────────────────────────────────────────────────────

    @property
    def mode(self) -> str:
        return "sandbox" if self._sandbox else "live"


def build_live_adapter(api_key: Optional[str], secret_key: Optional[str],
                       passphrase: Optional[str], *, sandbox: bool = False) -> Optional[CCXTExchangeAdapter]:
    """Return an adapter when all three credentials are present, else None."""
    if not (api_key and secret_key and passphrase):
        return None
    return CCXTExchangeAdapter(api_key, secret_key, passphrase, sandbox=sandbox)


