"""Order execution: validation, simulated fills, live delegation, idempotent apply."""

from decimal import Decimal

import pytest

from backend.models.database import Order, Trade
from backend.services.errors import InsufficientBalance, InvalidInput, NotFound
from backend.services.events import BALANCE_UPDATE
from backend.services.execution import PaperExchangeAdapter
from backend.services.order_execution import OrderExecutionEngine, OrderTicket
from tests.conftest import FakeLiveAdapter, FixedRandom


def _buy(user, asset, qty, **kwargs):
    return OrderTicket(user_id=user.id, asset_id=asset.id, side="buy", quantity=Decimal(qty), **kwargs)


def _sell(user, asset, qty, **kwargs):
    return OrderTicket(user_id=user.id, asset_id=asset.id, side="sell", quantity=Decimal(qty), **kwargs)


def test_market_buy_debits_balance_and_opens_position(db, order_engine, ledger, user, btc, publisher):
    result = order_engine.place_order(db, _buy(user, btc, "0.01"))

    assert result.success and result.executed
    assert result.executed_price == Decimal("43250")
    db.refresh(user)
    assert user.paper_balance == Decimal("567.50000000")

    pos = ledger.get_position(db, user.id, btc.id)
    assert pos.quantity == Decimal("0.01")
    assert pos.average_price == Decimal("43250")

    order = db.get(Order, result.order_id)
    assert order.status == "filled"
    assert order.filled_at is not None
    trade = db.query(Trade).filter(Trade.order_id == order.id).one()
    assert trade.total == Decimal("432.5")
    assert trade.pnl == Decimal("0")
    assert publisher.of_type(BALANCE_UPDATE)[-1]["balance"] == Decimal("567.5")


def test_partial_sell_keeps_average_price(db, order_engine, ledger, user, btc):
    order_engine.place_order(db, _buy(user, btc, "0.01"))
    btc.current_price = Decimal("44000")
    db.commit()

    result = order_engine.place_order(db, _sell(user, btc, "0.005"))

    assert result.executed
    pos = ledger.get_position(db, user.id, btc.id)
    assert pos.quantity == Decimal("0.005")
    assert pos.total_invested == Decimal("216.25")
    assert pos.average_price == Decimal("43250")
    db.refresh(user)
    assert user.paper_balance == Decimal("787.5")


def test_zero_quantity_rejected_without_order_row(db, order_engine, user, btc):
    with pytest.raises(InvalidInput):
        order_engine.place_order(db, _buy(user, btc, "0"))
    assert db.query(Order).count() == 0


def test_limit_order_requires_price(db, order_engine, user, btc):
    with pytest.raises(InvalidInput):
        order_engine.place_order(db, _buy(user, btc, "0.01", order_type="limit"))


def test_unknown_asset_and_user(db, order_engine, user, btc):
    with pytest.raises(NotFound):
        order_engine.place_order(db, OrderTicket(user_id=user.id, asset_id=999, side="buy",
                                                 quantity=Decimal("1")))
    with pytest.raises(NotFound):
        order_engine.place_order(db, OrderTicket(user_id=999, asset_id=btc.id, side="buy",
                                                 quantity=Decimal("1")))


def test_insufficient_balance_reports_required_and_available(db, order_engine, user, btc):
    with pytest.raises(InsufficientBalance) as exc:
        order_engine.place_order(db, _buy(user, btc, "1"))

    assert exc.value.required == Decimal("43250")
    assert exc.value.available == Decimal("1000")
    assert exc.value.shortfall == Decimal("42250")
    assert db.query(Order).count() == 0


def test_oversell_is_rejected_not_clamped(db, order_engine, ledger, user, btc):
    order_engine.place_order(db, _buy(user, btc, "0.01"))

    with pytest.raises(InvalidInput):
        order_engine.place_order(db, _sell(user, btc, "0.02"))

    assert ledger.get_position(db, user.id, btc.id).quantity == Decimal("0.01")


def test_selling_entire_position_deletes_it(db, order_engine, ledger, user, btc):
    order_engine.place_order(db, _buy(user, btc, "0.01"))
    order_engine.place_order(db, _sell(user, btc, "0.01"))
    assert ledger.get_position(db, user.id, btc.id) is None


def test_missed_fill_draw_leaves_order_resting(db, ledger, user, btc):
    engine = OrderExecutionEngine(ledger, paper_adapter=PaperExchangeAdapter(rng=FixedRandom(0.99)))

    result = engine.place_order(db, _buy(user, btc, "0.01"))

    assert result.success and not result.executed
    assert db.get(Order, result.order_id).status == "pending"
    db.refresh(user)
    assert user.paper_balance == Decimal("1000")
    assert db.query(Trade).count() == 0


def test_limit_order_fill_probability_is_lower(db, ledger, user, btc):
    # 0.8 clears a market order (0.95) but not a limit order (0.75)
    engine = OrderExecutionEngine(ledger, paper_adapter=PaperExchangeAdapter(rng=FixedRandom(0.8, 0.5)))
    result = engine.place_order(db, _buy(user, btc, "0.01", order_type="limit", price=Decimal("43000")))
    assert not result.executed


def test_slippage_applies_to_simulated_fill(db, ledger, user, btc):
    # fill draw 0.5, slippage draw 1.0 → +0.1%
    engine = OrderExecutionEngine(ledger, paper_adapter=PaperExchangeAdapter(rng=FixedRandom(0.5, 1.0)))
    result = engine.place_order(db, _buy(user, btc, "0.01"))
    assert result.executed_price == Decimal("43293.25")


def test_cancel_resting_order(db, ledger, user, btc):
    engine = OrderExecutionEngine(ledger, paper_adapter=PaperExchangeAdapter(rng=FixedRandom(0.99)))
    result = engine.place_order(db, _buy(user, btc, "0.01"))

    order = engine.cancel_order(db, result.order_id, user.id)
    assert order.status == "cancelled"

    with pytest.raises(InvalidInput):
        engine.cancel_order(db, result.order_id, user.id)


def test_cancel_other_users_order_is_not_found(db, ledger, user, btc):
    engine = OrderExecutionEngine(ledger, paper_adapter=PaperExchangeAdapter(rng=FixedRandom(0.99)))
    result = engine.place_order(db, _buy(user, btc, "0.01"))
    with pytest.raises(NotFound):
        engine.cancel_order(db, result.order_id, user.id + 1)


def test_apply_fill_replay_does_not_double_apply(db, ledger, user, btc):
    engine = OrderExecutionEngine(ledger, paper_adapter=PaperExchangeAdapter(rng=FixedRandom(0.99)))
    result = engine.place_order(db, _buy(user, btc, "0.01"))

    first = engine.apply_fill(db, result.order_id, Decimal("43250"), Decimal("0.01"))
    second = engine.apply_fill(db, result.order_id, Decimal("43250"), Decimal("0.01"))

    assert first.id == second.id
    assert db.query(Trade).count() == 1
    db.refresh(user)
    assert user.paper_balance == Decimal("567.5")
    assert ledger.get_position(db, user.id, btc.id).quantity == Decimal("0.01")


def test_cancelled_order_cannot_fill(db, ledger, user, btc):
    engine = OrderExecutionEngine(ledger, paper_adapter=PaperExchangeAdapter(rng=FixedRandom(0.99)))
    result = engine.place_order(db, _buy(user, btc, "0.01"))
    engine.cancel_order(db, result.order_id, user.id)

    with pytest.raises(InvalidInput):
        engine.apply_fill(db, result.order_id, Decimal("43250"), Decimal("0.01"))


def test_live_fill_records_requested_price_and_spares_paper_balance(db, order_engine, live_adapter, user, btc):
    user.is_live_mode = True
    user.live_balance = Decimal("500")
    db.commit()

    result = order_engine.place_order(db, _buy(user, btc, "0.01"))

    assert result.executed
    assert live_adapter.orders[0].inst_id == "BTC-USDT-SWAP"
    trade = db.get(Trade, result.trade_id)
    assert trade.price == Decimal("43250")
    db.refresh(user)
    assert user.live_balance == Decimal("67.5")
    assert user.paper_balance == Decimal("1000")


def test_live_adapter_failure_marks_order_failed(db, ledger, user, btc):
    adapter = FakeLiveAdapter(fail_with="51008: Order failed, insufficient margin")
    engine = OrderExecutionEngine(ledger, live_adapter_factory=lambda u: adapter)
    user.is_live_mode = True
    user.live_balance = Decimal("500")
    db.commit()

    result = engine.place_order(db, _buy(user, btc, "0.01"))

    assert not result.success
    assert result.error_type == "AdapterError"
    order = db.get(Order, result.order_id)
    assert order.status == "failed"
    assert "insufficient margin" in order.error
    db.refresh(user)
    assert user.live_balance == Decimal("500")
    assert ledger.get_position(db, user.id, btc.id) is None


def test_live_mode_without_credentials_fails_order(db, ledger, user, btc):
    engine = OrderExecutionEngine(ledger, live_adapter_factory=lambda u: None)
    user.is_live_mode = True
    user.live_balance = Decimal("500")
    db.commit()

    result = engine.place_order(db, _buy(user, btc, "0.01"))

    assert not result.success
    assert db.get(Order, result.order_id).status == "failed"


def test_order_and_trade_listings(db, order_engine, user, btc):
    order_engine.place_order(db, _buy(user, btc, "0.01"))
    order_engine.place_order(db, _buy(user, btc, "0.001"))

    assert len(order_engine.get_user_orders(db, user.id)) == 2
    assert len(order_engine.get_user_trades(db, user.id)) == 2
    assert order_engine.get_user_orders(db, user.id + 1) == []


class InterleavingAdapter(FakeLiveAdapter):
    """Fills every order, letting ``before_first_fill`` run inside the first call."""

    def __init__(self):
        super().__init__()
        self.before_first_fill = None

    def place_order(self, request):
        if self.before_first_fill:
            run, self.before_first_fill = self.before_first_fill, None
            run()
        return super().place_order(request)


def test_buy_that_no_longer_fits_at_fill_fails(db, ledger, user, btc, session_factory):
    adapter = InterleavingAdapter()
    engine = OrderExecutionEngine(ledger, paper_adapter=adapter)
    adapter.before_first_fill = lambda: engine.place_order(session_factory(), _buy(user, btc, "0.02"))

    with pytest.raises(InsufficientBalance):
        engine.place_order(db, _buy(user, btc, "0.02"))

    db.refresh(user)
    assert user.paper_balance == Decimal("135")
    assert sorted(o.status for o in db.query(Order).all()) == ["failed", "filled"]
    assert db.query(Trade).count() == 1
    assert ledger.get_position(db, user.id, btc.id).quantity == Decimal("0.02")


def test_sell_of_quantity_sold_meanwhile_fails(db, ledger, user, btc, session_factory):
    adapter = InterleavingAdapter()
    engine = OrderExecutionEngine(ledger, paper_adapter=adapter)
    engine.place_order(db, _buy(user, btc, "0.01"))
    adapter.before_first_fill = lambda: engine.place_order(session_factory(), _sell(user, btc, "0.01"))

    with pytest.raises(InvalidInput):
        engine.place_order(db, _sell(user, btc, "0.01"))

    failed = db.query(Order).filter(Order.status == "failed").one()
    assert failed.side == "sell"
    assert "Insufficient position" in failed.error
    assert ledger.get_position(db, user.id, btc.id) is None
    db.refresh(user)
    assert user.paper_balance == Decimal("1000")
