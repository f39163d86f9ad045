"""
ExchangeAdapter — Abstract interface for order execution.
=========================================================
Strategy Pattern: the OrderExecutionEngine and the VIPER engine delegate
venue interaction to an adapter.  Concrete implementations:

  • PaperExchangeAdapter  — local fill simulation (fill probability + slippage)
  • CCXTExchangeAdapter   — real orders on OKX via CCXT

The engines own validation, ledger and position accounting; the adapter
only *executes* and reports.  Adapters never raise past this boundary:
every failure comes back as ``success=False`` with an ``error`` message.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional


# ── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class OrderRequest:
    """Venue-agnostic order ticket."""
    inst_id: str                    # e.g. "BTC-USDT-SWAP"
    side: str                       # "buy" | "sell"
    order_type: str                 # "market" | "limit"
    quantity: Decimal
    price: Optional[Decimal] = None
    leverage: Optional[int] = None


@dataclass
class OrderResult:
    """Standardised result returned by every adapter after execution."""
    success: bool
    filled: bool = False            # False = accepted but resting
    order_id: Optional[str] = None
    fill_price: Optional[Decimal] = None
    filled_qty: Optional[Decimal] = None
    error: Optional[str] = None
    raw_response: Optional[Dict] = None


@dataclass
class PositionInfo:
    """Exchange-agnostic representation of an open position."""
    inst_id: str
    side: str                       # "long" | "short"
    size: Decimal
    entry_price: Decimal
    mark_price: Decimal
    unrealized_pnl: Decimal
    leverage: int


@dataclass
class BalanceResult:
    success: bool
    usdt_balance: Decimal = Decimal("0")
    error: Optional[str] = None


@dataclass
class PositionsResult:
    success: bool
    positions: List[PositionInfo] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ActionResult:
    success: bool
    error: Optional[str] = None


# ── Abstract Base Class ─────────────────────────────────────────────────────


class ExchangeAdapter(ABC):
    """Interface every execution adapter must implement.

    All methods are **synchronous**; they run in scheduler / request worker
    threads.  The CCXT adapter bridges to async internally.
    """

    @abstractmethod
    def get_account_balance(self) -> BalanceResult:
        """Available USDT balance on the venue."""
        ...

    @abstractmethod
    def place_order(self, request: OrderRequest) -> OrderResult:
        """Submit an order; ``filled`` tells whether it executed now."""
        ...

    @abstractmethod
    def get_positions(self) -> PositionsResult:
        ...

    @abstractmethod
    def close_position(self, inst_id: str, pos_side: str) -> ActionResult:
        ...

    @abstractmethod
    def set_leverage(self, inst_id: str, leverage: int, margin_mode: str = "isolated") -> ActionResult:
        ...

    @property
    @abstractmethod
    def mode(self) -> str:
        """Return ``'paper'``, ``'sandbox'``, or ``'live'``."""
        ...
