"""Ledger & position store: balances, weighted-average positions, live mode."""

from decimal import Decimal

import pytest

from backend.services.errors import AdapterError, NotFound
from tests.conftest import FakeLiveAdapter


def test_get_balance_returns_active_balance(db, ledger, user):
    assert ledger.get_balance(db, user.id) == Decimal("1000")

    user.live_balance = Decimal("42")
    user.is_live_mode = True
    db.commit()
    assert ledger.get_balance(db, user.id) == Decimal("42")


def test_apply_balance_delta_leaves_inactive_balance_untouched(db, ledger, user):
    user.live_balance = Decimal("250")
    db.commit()

    with ledger.locked(user.id):
        new_balance = ledger.apply_balance_delta(db, user.id, Decimal("-100.5"))
        db.commit()

    db.refresh(user)
    assert new_balance == Decimal("899.5")
    assert user.paper_balance == Decimal("899.5")
    assert user.live_balance == Decimal("250")


def test_apply_balance_delta_unknown_user(db, ledger, user):
    with pytest.raises(NotFound):
        ledger.apply_balance_delta(db, 9999, Decimal("1"))


def test_buys_use_weighted_average(db, ledger, user, btc):
    ledger.upsert_position(db, user.id, btc.id, Decimal("1"), Decimal("100"), "buy")
    pos = ledger.upsert_position(db, user.id, btc.id, Decimal("3"), Decimal("200"), "buy")
    db.commit()

    assert pos.quantity == Decimal("4")
    assert pos.total_invested == Decimal("700")
    assert pos.average_price == Decimal("175")
    assert abs(pos.average_price * pos.quantity - pos.total_invested) < Decimal("0.0001")


def test_partial_sell_reduces_invested_proportionally(db, ledger, user, btc):
    ledger.upsert_position(db, user.id, btc.id, Decimal("4"), Decimal("175"), "buy")
    pos = ledger.upsert_position(db, user.id, btc.id, Decimal("1"), Decimal("500"), "sell")
    db.commit()

    assert pos.quantity == Decimal("3")
    assert pos.total_invested == Decimal("525")
    assert pos.average_price == Decimal("175")


def test_full_sell_deletes_position(db, ledger, user, btc):
    ledger.upsert_position(db, user.id, btc.id, Decimal("2"), Decimal("10"), "buy")
    assert ledger.upsert_position(db, user.id, btc.id, Decimal("2"), Decimal("12"), "sell") is None
    db.commit()
    assert ledger.get_position(db, user.id, btc.id) is None


def test_sell_without_position_is_not_found(db, ledger, user, btc):
    with pytest.raises(NotFound):
        ledger.upsert_position(db, user.id, btc.id, Decimal("1"), Decimal("10"), "sell")


def test_enable_live_mode_syncs_balance_first(db, ledger, user):
    adapter = FakeLiveAdapter(balance="321.5")
    ledger.set_live_mode(db, user.id, True, adapter)

    db.refresh(user)
    assert user.is_live_mode is True
    assert user.live_balance == Decimal("321.5")
    assert user.paper_balance == Decimal("1000")


def test_failed_live_toggle_stays_in_demo(db, ledger, user):
    adapter = FakeLiveAdapter(fail_with="Invalid OK-ACCESS-KEY")

    with pytest.raises(AdapterError) as exc:
        ledger.set_live_mode(db, user.id, True, adapter)

    db.refresh(user)
    assert "Invalid OK-ACCESS-KEY" in exc.value.message
    assert user.is_live_mode is False


def test_enable_live_mode_without_adapter(db, ledger, user):
    with pytest.raises(AdapterError):
        ledger.set_live_mode(db, user.id, True, None)


def test_disable_live_mode_needs_no_adapter(db, ledger, user):
    user.is_live_mode = True
    db.commit()
    ledger.set_live_mode(db, user.id, False)
    db.refresh(user)
    assert user.is_live_mode is False


def test_set_exchange_credentials(db, ledger, user):
    ledger.set_exchange_credentials(db, user.id, "okx", "key", "secret", "pass")
    db.refresh(user)
    assert user.exchange == "okx"
    assert user.has_credentials


def test_portfolio_summary_marks_to_current_price(db, ledger, user, btc):
    ledger.upsert_position(db, user.id, btc.id, Decimal("0.01"), Decimal("43250"), "buy")
    btc.current_price = Decimal("44000")
    db.commit()

    summary = ledger.portfolio_summary(db, user.id)

    assert summary["balance"] == Decimal("1000")
    assert len(summary["positions"]) == 1
    row = summary["positions"][0]
    assert row["symbol"] == "BTC"
    assert row["current_value"] == Decimal("440")
    assert row["pnl"] == Decimal("7.5")
    assert summary["total_portfolio_value"] == Decimal("1440")
