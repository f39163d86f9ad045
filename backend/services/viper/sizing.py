"""
Position sizing and exit levels for VIPER strikes.
"""
from decimal import Decimal, ROUND_FLOOR
from typing import Optional, Tuple

from backend.models.types import quantize, to_decimal
from backend.services.viper.config import ViperConfig
from backend.services.viper.models import SizedPosition

BASE_FRACTION = Decimal("0.02")     # 2% of balance before scaling
MIN_LEVERAGE = 2


def optimal_leverage(balance: Decimal, max_leverage: int) -> int:
    """floor(min(max_leverage, max(2, balance / 100)))."""
    balance_based = max(Decimal(MIN_LEVERAGE), to_decimal(balance) / 100)
    lev = min(Decimal(max_leverage), balance_based)
    return max(1, int(lev.to_integral_value(rounding=ROUND_FLOOR)))


def size_position(balance, price, config: ViperConfig,
                  risk_score: float, opportunity_rating: float) -> Optional[SizedPosition]:
    """Margin-based size, capped at ``balance * multiplier * max_leverage``.

    Returns None when the resulting quantity rounds to zero.
    """
    balance = to_decimal(balance)
    price = to_decimal(price)
    if balance <= 0 or price <= 0:
        return None

    fraction = (
        BASE_FRACTION
        * to_decimal(config.balance_multiplier)
        * to_decimal(config.position_scaling)
        * to_decimal(max(0.0, 1 - risk_score))
        * to_decimal(max(0.0, opportunity_rating))
    )
    margin = balance * fraction
    leverage = optimal_leverage(balance, config.max_leverage)

    quantity = margin * leverage / price
    cap = balance * to_decimal(config.balance_multiplier) * config.max_leverage / price
    quantity = quantize(min(quantity, cap))
    if quantity <= 0:
        return None

    notional = quantize(quantity * price)
    return SizedPosition(
        quantity=quantity,
        leverage=leverage,
        notional=notional,
        margin=quantize(notional / leverage),
    )


def exit_levels(entry_price, side: str, config: ViperConfig) -> Tuple[Decimal, Decimal]:
    """(take_profit, stop_loss) applied directionally from the entry price."""
    entry = to_decimal(entry_price)
    tp = to_decimal(config.profit_target) / 100
    sl = to_decimal(config.stop_loss) / 100
    if side == "buy":
        return quantize(entry * (1 + tp)), quantize(entry * (1 - sl))
    return quantize(entry * (1 - tp)), quantize(entry * (1 + sl))


def unrealized_pnl(side: str, entry_price, current_price, quantity) -> Decimal:
    diff = to_decimal(current_price) - to_decimal(entry_price)
    if side == "sell":
        diff = -diff
    return quantize(diff * to_decimal(quantity))
