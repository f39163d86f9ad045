"""
VIPER indicator library.
Stateless computations over a price history, combined into a ProfitSignal.

Combination rules (all outputs clamped to [0, 1]):

    m            = clamp(momentum * 500, -0.5, 0.5)
    trend_bias   = +strength (bullish) | -strength (bearish) | 0
    entry        = 0.4 + 0.2*trend_bias + m + 0.2*support_proximity
    exit         = 0.4 - 0.2*trend_bias - m + 0.2*resistance_proximity
    risk         = 0.7*volatility/100 + 0.3*(1 - strength)
    opportunity  = max(entry, exit) * (1 - 0.5*risk) + 0.5*|m|
"""
import math
from typing import List, Optional, Tuple

from backend.services.viper.models import ProfitSignal, VolatilityMetrics

TREND_WINDOW = 20
TREND_THRESHOLD = 0.001
MOMENTUM_WINDOW = 10
PIVOT_LOOKBACK = 50
PIVOT_RADIUS = 2            # 5-point local extremum
PROXIMITY_BAND = 0.02       # 2% of price
SIGNAL_THRESHOLD = 0.7


def clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


class ViperIndicators:
    """Stateless indicator computations used by the scanner and the engine."""

    # ── Series helpers ──────────────────────────────────────────────────

    @staticmethod
    def returns(prices: List[float]) -> List[float]:
        return [(prices[i] - prices[i - 1]) / prices[i - 1]
                for i in range(1, len(prices)) if prices[i - 1]]

    @staticmethod
    def mean(values: List[float]) -> float:
        return sum(values) / len(values) if values else 0.0

    # ── Point-value indicators ──────────────────────────────────────────

    @staticmethod
    def volatility_index(prices: List[float]) -> float:
        """Population std-dev of returns ×10000, clamped to [0, 100]."""
        rets = ViperIndicators.returns(prices)
        if len(rets) < 2:
            return 0.0
        mu = ViperIndicators.mean(rets)
        variance = sum((r - mu) ** 2 for r in rets) / len(rets)
        return clamp(math.sqrt(variance) * 10000, 0.0, 100.0)

    @staticmethod
    def trend(prices: List[float], window: int = TREND_WINDOW) -> Tuple[str, float]:
        """Classify the windowed mean return; strength saturates at 2×threshold."""
        rets = ViperIndicators.returns(prices)[-window:]
        mu = ViperIndicators.mean(rets)
        if mu > TREND_THRESHOLD:
            label = "bullish"
        elif mu < -TREND_THRESHOLD:
            label = "bearish"
        else:
            label = "neutral"
        return label, clamp(abs(mu) / (2 * TREND_THRESHOLD))

    @staticmethod
    def momentum(prices: List[float], window: int = MOMENTUM_WINDOW) -> float:
        """Mean of the latest ``window`` returns minus mean of the prior ``window``."""
        rets = ViperIndicators.returns(prices)
        if len(rets) < 2 * window:
            return 0.0
        latest = rets[-window:]
        prior = rets[-2 * window:-window]
        return ViperIndicators.mean(latest) - ViperIndicators.mean(prior)

    @staticmethod
    def pivots(prices: List[float], lookback: int = PIVOT_LOOKBACK) -> Tuple[List[float], List[float]]:
        """Local minima (supports) and maxima (resistances) over the lookback."""
        window = prices[-lookback:]
        supports, resistances = [], []
        for i in range(PIVOT_RADIUS, len(window) - PIVOT_RADIUS):
            neighbourhood = window[i - PIVOT_RADIUS:i + PIVOT_RADIUS + 1]
            lo, hi = min(neighbourhood), max(neighbourhood)
            if lo == hi:
                continue
            if window[i] == lo:
                supports.append(window[i])
            elif window[i] == hi:
                resistances.append(window[i])
        return supports, resistances

    @staticmethod
    def proximity(price: float, levels: List[float], band: float = PROXIMITY_BAND) -> float:
        """1.0 at a level, falling linearly to 0 at ``band`` relative distance."""
        if not levels or price <= 0:
            return 0.0
        nearest = min(abs(price - level) / price for level in levels)
        if nearest > band:
            return 0.0
        return 1.0 - nearest / band

    # ── Composite ───────────────────────────────────────────────────────

    @staticmethod
    def analyze(prices: List[float]) -> VolatilityMetrics:
        label, strength = ViperIndicators.trend(prices)
        return VolatilityMetrics(
            volatility_index=ViperIndicators.volatility_index(prices),
            trend=label,
            trend_strength=strength,
            momentum=ViperIndicators.momentum(prices),
        )

    @staticmethod
    def score(inst_id: str, prices: List[float],
              current_price: Optional[float] = None) -> ProfitSignal:
        price = current_price if current_price is not None else (prices[-1] if prices else 0.0)
        metrics = ViperIndicators.analyze(prices)
        supports, resistances = ViperIndicators.pivots(prices)

        m = clamp(metrics.momentum * 500, -0.5, 0.5)
        if metrics.trend == "bullish":
            bias = metrics.trend_strength
        elif metrics.trend == "bearish":
            bias = -metrics.trend_strength
        else:
            bias = 0.0

        entry = clamp(0.4 + 0.2 * bias + m + 0.2 * ViperIndicators.proximity(price, supports))
        exit_ = clamp(0.4 - 0.2 * bias - m + 0.2 * ViperIndicators.proximity(price, resistances))
        risk = clamp(0.7 * metrics.volatility_index / 100 + 0.3 * (1 - metrics.trend_strength))
        opportunity = clamp(max(entry, exit_) * (1 - 0.5 * risk) + 0.5 * abs(m))

        side = None
        if entry >= SIGNAL_THRESHOLD or exit_ >= SIGNAL_THRESHOLD:
            side = "buy" if entry >= exit_ else "sell"

        return ProfitSignal(
            inst_id=inst_id,
            current_price=price,
            entry_signal=entry,
            exit_signal=exit_,
            risk_score=risk,
            opportunity_rating=opportunity,
            metrics=metrics,
            side=side,
        )
