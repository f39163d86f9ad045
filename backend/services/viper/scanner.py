"""
Opportunity scanner — liquidation-cluster detection over a sample source.

The engine consumes activity through ``MarketSampleSource``; the shipped
``RandomMarketSampleSource`` is a seeded random walk standing in for a
live trade tape.  Detection itself is deterministic given the samples:

  1. skip the instrument when its volatility index < ``vol_threshold``
  2. bucket samples into price windows ``strike_window`` % of price wide
  3. a window with ≥3 samples whose notional / balance ≥
     ``cluster_threshold`` becomes a cluster; sell-dominated windows are
     long liquidations, buy-dominated ones short liquidations
  4. clusters are returned by volume (size × price) descending
"""
import logging
import math
import random
import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional

from backend.services.viper.config import ViperConfig
from backend.services.viper.indicators import ViperIndicators
from backend.services.viper.models import DetectedCluster, MarketSample

logger = logging.getLogger(__name__)

MIN_CLUSTER_SAMPLES = 3

BASE_PRICES: Dict[str, float] = {
    "BTC-USDT-SWAP": 43000,
    "ETH-USDT-SWAP": 2600,
    "SOL-USDT-SWAP": 95,
    "ADA-USDT-SWAP": 0.48,
    "DOGE-USDT-SWAP": 0.085,
    "LINK-USDT-SWAP": 14.5,
    "MATIC-USDT-SWAP": 0.85,
    "AVAX-USDT-SWAP": 24,
}


# ── Sample sources ──────────────────────────────────────────────────────────

class MarketSampleSource(ABC):
    """Where the engine reads prices, price history and tape activity."""

    @property
    @abstractmethod
    def instruments(self) -> List[str]:
        ...

    def advance(self, inst_ids: List[str]) -> None:
        """Move the market one step for ``inst_ids``; no-op for static sources."""

    @abstractmethod
    def get_samples(self, inst_id: str) -> List[MarketSample]:
        """Recent activity for one instrument (one scan's worth); read-only."""
        ...

    @abstractmethod
    def get_price(self, inst_id: str) -> float:
        ...

    @abstractmethod
    def get_price_history(self, inst_id: str) -> List[float]:
        """Oldest → newest closes used by the indicator pipeline."""
        ...


class RandomMarketSampleSource(MarketSampleSource):
    """Random-walk prices with uniformly drawn tape prints.

    ``advance`` moves each instrument's price one step (±0.5%).
    ``get_samples`` leaves prices alone and emits ``sample_count`` prints
    within ±1% of the current price, each with a notional drawn uniformly
    below ``sample_notional`` USDT.
    """

    def __init__(self, rng: Optional[random.Random] = None,
                 base_prices: Optional[Dict[str, float]] = None,
                 sample_count: int = 100, sample_notional: float = 5000.0,
                 history_length: int = 100):
        self._rng = rng or random.Random()
        self._prices = dict(base_prices or BASE_PRICES)
        self._history: Dict[str, Deque[float]] = {
            inst: deque([p], maxlen=history_length) for inst, p in self._prices.items()
        }
        self._sample_count = sample_count
        self._sample_notional = sample_notional
        self._lock = threading.Lock()
        for inst in self._prices:
            for _ in range(history_length - 1):
                self._step(inst)

    @property
    def instruments(self) -> List[str]:
        return list(self._prices)

    def _step(self, inst_id: str) -> float:
        price = self._prices[inst_id] * (1 + (self._rng.random() - 0.5) * 0.01)
        self._prices[inst_id] = price
        self._history[inst_id].append(price)
        return price

    def advance(self, inst_ids: List[str]) -> None:
        with self._lock:
            for inst_id in inst_ids:
                if inst_id in self._prices:
                    self._step(inst_id)

    def get_samples(self, inst_id: str) -> List[MarketSample]:
        with self._lock:
            price = self._prices[inst_id]
            samples = []
            for _ in range(self._sample_count):
                p = price * (1 + (self._rng.random() * 0.02 - 0.01))
                samples.append(MarketSample(
                    inst_id=inst_id,
                    price=p,
                    size=self._rng.random() * self._sample_notional / p,
                    side="buy" if self._rng.random() > 0.5 else "sell",
                ))
            return samples

    def get_price(self, inst_id: str) -> float:
        with self._lock:
            if inst_id not in self._prices:
                raise KeyError(f"Unknown instrument: {inst_id}")
            return self._prices[inst_id]

    def get_price_history(self, inst_id: str) -> List[float]:
        with self._lock:
            return list(self._history.get(inst_id, []))


# ── Detector ────────────────────────────────────────────────────────────────

class OpportunityScanner:
    """Turns tape samples into scored LiquidationCluster candidates."""

    def __init__(self, source: MarketSampleSource):
        self.source = source

    def detect_clusters(self, inst_id: str, balance: float,
                        config: ViperConfig) -> List[DetectedCluster]:
        history = self.source.get_price_history(inst_id)
        vol = ViperIndicators.volatility_index(history)
        if vol < config.vol_threshold:
            logger.debug(f"VIPER scan: {inst_id} volatility {vol:.2f} < {config.vol_threshold} — skipped")
            return []

        samples = self.source.get_samples(inst_id)
        if not samples or balance <= 0:
            return []

        reference = samples[0].price
        width = reference * config.strike_window / 100
        if width <= 0:
            return []

        windows: Dict[int, List[MarketSample]] = defaultdict(list)
        for s in samples:
            windows[math.floor(s.price / width)].append(s)

        clusters = []
        for bucket in windows.values():
            if len(bucket) < MIN_CLUSTER_SAMPLES:
                continue
            notional = sum(s.size * s.price for s in bucket)
            if notional / balance < config.cluster_threshold:
                continue
            size = sum(s.size for s in bucket)
            sell_size = sum(s.size for s in bucket if s.side == "sell")
            clusters.append(DetectedCluster(
                inst_id=inst_id,
                price=notional / size,
                size=size,
                side="long" if sell_size > size - sell_size else "short",
                sample_count=len(bucket),
            ))

        clusters.sort(key=lambda c: c.volume, reverse=True)
        return clusters

    def scan(self, instruments: List[str], balance: float,
             config: ViperConfig) -> List[DetectedCluster]:
        found: List[DetectedCluster] = []
        for inst_id in instruments:
            found.extend(self.detect_clusters(inst_id, balance, config))
        found.sort(key=lambda c: c.volume, reverse=True)
        if found:
            logger.info(f"VIPER scan: {len(found)} cluster(s) across {len(instruments)} instruments")
        return found
