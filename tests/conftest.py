"""Shared fixtures: in-memory database, deterministic randomness and fakes."""

from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from apscheduler.jobstores.base import JobLookupError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.database import seed_defaults
from backend.models.database import Asset, Base, User
from backend.services.events import EventPublisher
from backend.services.execution import (
    ActionResult,
    BalanceResult,
    ExchangeAdapter,
    OrderResult,
    PaperExchangeAdapter,
    PositionsResult,
)
from backend.services.ledger import LedgerService
from backend.services.order_execution import OrderExecutionEngine
from backend.services.viper.scanner import MarketSampleSource


# ---------------------------------------------------------------------------
# Deterministic randomness
# ---------------------------------------------------------------------------


class FixedRandom:
    """Returns the given values in order, repeating the last one."""

    def __init__(self, *values: float):
        self._values = list(values) or [0.5]
        self._i = 0

    def random(self) -> float:
        value = self._values[min(self._i, len(self._values) - 1)]
        self._i += 1
        return value


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingPublisher(EventPublisher):
    def __init__(self):
        super().__init__()
        self.events: List[tuple] = []

    def publish(self, event_type, data):
        self.events.append((event_type, data))

    def of_type(self, event_type):
        return [d for t, d in self.events if t == event_type]


class FakeScheduler:
    """Records APScheduler add_job/remove_job calls without running anything."""

    def __init__(self):
        self.jobs: Dict[str, dict] = {}
        self.added: List[str] = []
        self.running = True

    def add_job(self, func, trigger, run_date=None, args=None, id=None, replace_existing=False, **kwargs):
        if id in self.jobs and not replace_existing:
            raise ValueError(f"duplicate job {id}")
        self.jobs[id] = {"func": func, "trigger": trigger, "run_date": run_date, "args": args or []}
        self.added.append(id)

    def remove_job(self, job_id):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]


class FakeSource(MarketSampleSource):
    """Price source with explicit prices, histories and tape samples."""

    def __init__(self, prices: Dict[str, float], history: Optional[Dict[str, List[float]]] = None):
        self.prices = dict(prices)
        self.history = history or {inst: [p] * 30 for inst, p in prices.items()}
        self.samples: Dict[str, list] = {}

    @property
    def instruments(self) -> List[str]:
        return list(self.prices)

    def get_samples(self, inst_id):
        return list(self.samples.get(inst_id, []))

    def get_price(self, inst_id):
        if inst_id not in self.prices:
            raise KeyError(inst_id)
        return self.prices[inst_id]

    def get_price_history(self, inst_id):
        return list(self.history.get(inst_id, []))


class FakeLiveAdapter(ExchangeAdapter):
    """Scriptable exchange: every call succeeds unless told otherwise."""

    def __init__(self, balance: str = "500", fail_with: Optional[str] = None):
        self.balance = Decimal(balance)
        self.fail_with = fail_with
        self.orders = []
        self.closed = []
        self.leverage_calls = []

    def get_account_balance(self):
        if self.fail_with:
            return BalanceResult(success=False, error=self.fail_with)
        return BalanceResult(success=True, usdt_balance=self.balance)

    def place_order(self, request):
        self.orders.append(request)
        if self.fail_with:
            return OrderResult(success=False, error=self.fail_with)
        return OrderResult(success=True, filled=True, order_id="okx-1",
                           fill_price=request.price, filled_qty=request.quantity)

    def get_positions(self):
        return PositionsResult(success=True)

    def close_position(self, inst_id, pos_side):
        self.closed.append((inst_id, pos_side))
        if self.fail_with:
            return ActionResult(success=False, error=self.fail_with)
        return ActionResult(success=True)

    def set_leverage(self, inst_id, leverage, margin_mode="isolated"):
        self.leverage_calls.append((inst_id, leverage))
        if self.fail_with:
            return ActionResult(success=False, error=self.fail_with)
        return ActionResult(success=True)

    @property
    def mode(self):
        return "live"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db) -> User:
    """Demo user with 1000 USDT paper balance plus the seeded assets."""
    return seed_defaults(db, paper_balance="1000")


@pytest.fixture
def btc(db, user) -> Asset:
    return db.query(Asset).filter(Asset.symbol == "BTC").one()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def ledger():
    return LedgerService()


@pytest.fixture
def live_adapter():
    return FakeLiveAdapter()


@pytest.fixture
def order_engine(ledger, publisher, live_adapter):
    """Paper fills always succeed with zero slippage (draws of 0.5)."""
    return OrderExecutionEngine(
        ledger,
        paper_adapter=PaperExchangeAdapter(rng=FixedRandom(0.5)),
        live_adapter_factory=lambda u: live_adapter,
        publisher=publisher,
    )
