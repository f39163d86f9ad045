"""
Data models for the VIPER strategy.
Market samples, indicator snapshots, scored signals and sized positions.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional


# ── Market activity ─────────────────────────────────────────────────────────

@dataclass
class MarketSample:
    """One print on the tape: price, size (base units) and aggressor side."""
    inst_id: str
    price: float
    size: float
    side: str               # "buy" or "sell"
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class DetectedCluster:
    """A price window whose forced-closure activity crossed the threshold."""
    inst_id: str
    price: float            # size-weighted mean price of the window
    size: float
    side: str               # "long" or "short": the side being liquidated
    sample_count: int

    @property
    def volume(self) -> float:
        return self.size * self.price


# ── Scoring ─────────────────────────────────────────────────────────────────

@dataclass
class VolatilityMetrics:
    volatility_index: float     # 0 – 100
    trend: str                  # bullish, bearish, neutral
    trend_strength: float       # 0.0 – 1.0
    momentum: float


@dataclass
class ProfitSignal:
    """Output of ``optimize_profit_strategy`` for one instrument."""
    inst_id: str
    current_price: float
    entry_signal: float         # 0.0 – 1.0
    exit_signal: float          # 0.0 – 1.0
    risk_score: float           # 0.0 – 1.0
    opportunity_rating: float   # 0.0 – 1.0
    metrics: Optional[VolatilityMetrics] = None
    side: Optional[str] = None  # "buy" / "sell" when a threshold fired

    @property
    def profit_potential(self) -> float:
        return self.opportunity_rating * (1 - self.risk_score)

    def to_dict(self) -> Dict:
        return {
            "inst_id": self.inst_id,
            "current_price": self.current_price,
            "entry_signal": round(self.entry_signal, 4),
            "exit_signal": round(self.exit_signal, 4),
            "risk_score": round(self.risk_score, 4),
            "opportunity_rating": round(self.opportunity_rating, 4),
            "profit_potential": round(self.profit_potential, 4),
            "side": self.side,
        }


# ── Sizing ──────────────────────────────────────────────────────────────────

@dataclass
class SizedPosition:
    quantity: Decimal
    leverage: int
    notional: Decimal
    margin: Decimal             # notional / leverage, debited on open


# ── Controller state ────────────────────────────────────────────────────────

@dataclass
class AutoTradingState:
    is_running: bool = False
    cycle_count: int = 0
    last_execution: Optional[datetime] = None
    profitability: Decimal = Decimal("0")
    success_rate: float = 0.0
    degraded: bool = False
    consecutive_failures: int = 0

    def to_dict(self) -> Dict:
        return {
            "is_running": self.is_running,
            "cycle_count": self.cycle_count,
            "last_execution": self.last_execution.isoformat() if self.last_execution else None,
            "profitability": format(self.profitability, "f"),
            "success_rate": self.success_rate,
            "degraded": self.degraded,
            "consecutive_failures": self.consecutive_failures,
        }
