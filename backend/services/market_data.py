"""
Market data service - asset price ticks pushed to the dashboard.

Two feeds share one contract, ``tick(db) -> List[Dict]``:
  • PriceSimulator — ±1% random walk per asset (default)
  • OKXTickerFeed  — public OKX swap tickers over REST, rate-limited + cached
"""
import requests
import logging
import random
import time
from typing import Callable, Dict, List, Optional, Tuple
from datetime import datetime, timedelta
from decimal import Decimal
from threading import Lock

from sqlalchemy.orm import Session

from backend.models.database import Asset
from backend.models.types import quantize, to_decimal
from backend.services.events import EventPublisher, PRICE_UPDATE

logger = logging.getLogger(__name__)


def asset_to_dict(asset: Asset) -> Dict:
    return {
        "id": asset.id,
        "symbol": asset.symbol,
        "name": asset.name,
        "inst_id": asset.inst_id,
        "current_price": asset.current_price,
        "change_24h": asset.change_24h,
        "volume_24h": asset.volume_24h,
        "updated_at": asset.updated_at,
    }


class RateLimiter:
    """Simple rate limiter for API calls"""

    def __init__(self, max_calls: int = 10, period: float = 2.0):
        self.max_calls = max_calls
        self.period = period
        self._calls: List[float] = []
        self._lock = Lock()

    def wait_if_needed(self):
        """Block until we can make another API call"""
        with self._lock:
            now = time.time()
            self._calls = [t for t in self._calls if now - t < self.period]

            if len(self._calls) >= self.max_calls:
                sleep_time = self.period - (now - self._calls[0]) + 0.1
                if sleep_time > 0:
                    logger.info(f"Rate limit reached, waiting {sleep_time:.1f}s")
                    time.sleep(sleep_time)

            self._calls.append(time.time())


class CacheEntry:
    """Cache entry with TTL"""

    def __init__(self, data, ttl_seconds: float):
        self.data = data
        self.expires_at = datetime.now() + timedelta(seconds=ttl_seconds)

    @property
    def is_valid(self) -> bool:
        return datetime.now() < self.expires_at


# ── Simulated feed ──────────────────────────────────────────────────────────

class PriceSimulator:
    """Random-walk price tick: each asset moves uniformly within ±1%.

    ``change_24h`` is measured against the asset's opening price for the
    current 24h window.  The first open is backed out of the seeded
    ``change_24h``; once the window has elapsed the open resets to the
    last price.
    """

    MAX_MOVE = 0.01
    WINDOW = timedelta(hours=24)

    def __init__(self, rng: Optional[random.Random] = None, publisher: Optional[EventPublisher] = None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self._rng = rng or random.Random()
        self._publisher = publisher or EventPublisher()
        self._clock = clock
        self._opens: Dict[int, Tuple[datetime, Decimal]] = {}  # asset id → (window start, open price)

    def _open_price(self, asset: Asset, now: datetime) -> Decimal:
        opened = self._opens.get(asset.id)
        if opened is None:
            factor = 1 + (asset.change_24h or Decimal("0")) / 100
            open_price = asset.current_price / factor if factor > 0 else asset.current_price
            opened = self._opens[asset.id] = (now, open_price)
        elif now - opened[0] >= self.WINDOW:
            opened = self._opens[asset.id] = (now, asset.current_price)
        return opened[1]

    def tick(self, db: Session) -> List[Dict]:
        now = self._clock()
        assets = db.query(Asset).all()
        for asset in assets:
            open_price = self._open_price(asset, now)
            move = to_decimal((self._rng.random() - 0.5) * 2 * self.MAX_MOVE)
            asset.current_price = quantize(asset.current_price * (1 + move))
            if open_price > 0:
                asset.change_24h = quantize((asset.current_price - open_price) / open_price * 100)
            asset.updated_at = now
        db.commit()

        updated = [asset_to_dict(a) for a in assets]
        self._publisher.publish(PRICE_UPDATE, updated)
        return updated

    def health_check(self) -> Dict:
        return {"status": "ok", "feed": "simulated"}


# ── OKX public tickers ──────────────────────────────────────────────────────

class OKXTickerFeed:
    """Real prices from OKX ``/api/v5/market/tickers`` (no auth needed)."""

    TICKERS_TTL = 2

    def __init__(self, publisher: Optional[EventPublisher] = None,
                 base_url: str = "https://www.okx.com"):
        self.base_url = base_url
        self._publisher = publisher or EventPublisher()
        self._cache: Dict[str, CacheEntry] = {}
        self._rate_limiter = RateLimiter(max_calls=10, period=2.0)
        self._session = requests.Session()
        self._session.headers.update({
            "Accept": "application/json",
            "User-Agent": "ViperTrader/1.0"
        })
        self._consecutive_failures = 0

    def _api_request(self, endpoint: str, params: dict = None, timeout: int = 10) -> Optional[dict]:
        url = f"{self.base_url}{endpoint}"
        try:
            self._rate_limiter.wait_if_needed()
            response = self._session.get(url, params=params, timeout=timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.RequestException as e:
            self._consecutive_failures += 1
            logger.warning(f"OKX ticker request failed: {e} (consecutive failures: {self._consecutive_failures})")
            return None

        if payload.get("code") not in ("0", 0):
            self._consecutive_failures += 1
            logger.warning(f"OKX ticker error {payload.get('code')}: {payload.get('msg')}")
            return None
        self._consecutive_failures = 0
        return payload

    def fetch_tickers(self) -> Dict[str, Dict]:
        """instId → {last, change_24h (%), volume_24h}; cached for TICKERS_TTL."""
        entry = self._cache.get("tickers")
        if entry and entry.is_valid:
            return entry.data

        payload = self._api_request("/api/v5/market/tickers", params={"instType": "SWAP"})
        if not payload:
            return entry.data if entry else {}

        tickers = {}
        for t in payload.get("data", []):
            try:
                last = to_decimal(t["last"])
                open_24h = to_decimal(t.get("open24h") or t["last"])
                volume = to_decimal(t.get("volCcy24h") or 0)
            except (KeyError, ValueError):
                continue
            change = (last - open_24h) / open_24h * 100 if open_24h else to_decimal(0)
            tickers[t.get("instId")] = {
                "last": last,
                "change_24h": quantize(change),
                "volume_24h": volume,
            }
        self._cache["tickers"] = CacheEntry(tickers, self.TICKERS_TTL)
        return tickers

    def tick(self, db: Session) -> List[Dict]:
        tickers = self.fetch_tickers()
        assets = db.query(Asset).all()
        for asset in assets:
            t = tickers.get(asset.inst_id)
            if not t:
                continue
            asset.current_price = quantize(t["last"])
            asset.change_24h = t["change_24h"]
            asset.volume_24h = quantize(t["volume_24h"])
            asset.updated_at = datetime.utcnow()
        db.commit()

        updated = [asset_to_dict(a) for a in assets]
        self._publisher.publish(PRICE_UPDATE, updated)
        return updated

    def health_check(self) -> Dict:
        return {
            "status": "ok" if self._consecutive_failures == 0 else "degraded",
            "feed": "okx",
            "consecutive_failures": self._consecutive_failures,
            "cache_entries": len(self._cache),
        }
