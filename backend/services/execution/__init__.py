"""Execution Package — exchange adapters used by order execution and VIPER."""
from __future__ import annotations

__all__ = [
    "ExchangeAdapter", "PaperExchangeAdapter", "CCXTExchangeAdapter",
    "OrderRequest", "OrderResult", "PositionInfo",
    "BalanceResult", "PositionsResult", "ActionResult",
    "build_live_adapter",
]

from backend.services.execution.exchange_adapter import (
    ExchangeAdapter,
    OrderRequest,
    OrderResult,
    PositionInfo,
    BalanceResult,
    PositionsResult,
    ActionResult,
)
from backend.services.execution.paper_adapter import PaperExchangeAdapter
from backend.services.execution.ccxt_adapter import CCXTExchangeAdapter, build_live_adapter
