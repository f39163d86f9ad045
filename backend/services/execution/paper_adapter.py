"""
PaperExchangeAdapter — Simulated execution, no venue interaction.
=================================================================
Models a liquid market with two independent draws per order:

  • fill draw — market orders fill with probability 0.95, limit orders 0.75;
    a miss leaves the order resting (``filled=False``), never retried
  • slippage  — uniform in [-0.1%, +0.1%] applied to the requested price

The random source is injectable so tests can pin both draws.
"""
from __future__ import annotations

import logging
import random
import uuid
from decimal import Decimal
from typing import Optional

from backend.models.types import quantize, to_decimal
from backend.services.execution.exchange_adapter import (
    ExchangeAdapter,
    OrderRequest,
    OrderResult,
    BalanceResult,
    PositionsResult,
    ActionResult,
)

logger = logging.getLogger(__name__)

FILL_PROBABILITY = {"market": 0.95, "limit": 0.75}
MAX_SLIPPAGE = 0.001  # ±0.1%


class PaperExchangeAdapter(ExchangeAdapter):
    """Local paper trading — the ledger is the single source of truth."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def draw_slippage(self) -> Decimal:
        return to_decimal((self._rng.random() - 0.5) * 2 * MAX_SLIPPAGE)

    # ── Core execution ──────────────────────────────────────────────────

    def place_order(self, request: OrderRequest) -> OrderResult:
        fill_probability = FILL_PROBABILITY.get(request.order_type, FILL_PROBABILITY["limit"])
        order_id = f"paper-{uuid.uuid4().hex[:12]}"

        if self._rng.random() > fill_probability:
            logger.info(
                f"Paper: {request.side.upper()} {request.quantity} {request.inst_id} "
                f"resting (fill draw missed {fill_probability:.0%})"
            )
            return OrderResult(success=True, filled=False, order_id=order_id,
                               error="Order placed but not executed due to market conditions")

        slippage = self.draw_slippage()
        fill_price = quantize(request.price * (1 + slippage))
        return OrderResult(
            success=True,
            filled=True,
            order_id=order_id,
            fill_price=fill_price,
            filled_qty=request.quantity,
        )

    # ── Queries ─────────────────────────────────────────────────────────

    def get_account_balance(self) -> BalanceResult:
        return BalanceResult(success=False, error="Paper adapter has no exchange balance")

    def get_positions(self) -> PositionsResult:
        return PositionsResult(success=True)  # positions live in the local DB

    # ── Config ──────────────────────────────────────────────────────────

    def close_position(self, inst_id: str, pos_side: str) -> ActionResult:
        return ActionResult(success=True)  # no-op in paper mode

    def set_leverage(self, inst_id: str, leverage: int, margin_mode: str = "isolated") -> ActionResult:
        return ActionResult(success=True)  # no-op in paper mode

    # ── Metadata ────────────────────────────────────────────────────────

    @property
    def mode(self) -> str:
        return "paper"
