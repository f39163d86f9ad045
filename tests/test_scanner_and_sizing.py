"""Cluster detection thresholds, sample source, sizing caps and exit levels."""

import random
from decimal import Decimal

from backend.services.viper.config import ViperConfig
from backend.services.viper.models import MarketSample
from backend.services.viper.scanner import OpportunityScanner, RandomMarketSampleSource
from backend.services.viper.sizing import exit_levels, optimal_leverage, size_position, unrealized_pnl
from tests.conftest import FakeSource

INST = "BTC-USDT-SWAP"
CHOPPY = [100.0, 101.0] * 15


def _sample(price, size, side):
    return MarketSample(inst_id=INST, price=price, size=size, side=side)


def _scanner(samples, history=None):
    source = FakeSource({INST: 100.0}, history={INST: history or CHOPPY})
    source.samples[INST] = samples
    return OpportunityScanner(source)


def test_window_with_three_samples_becomes_cluster():
    scanner = _scanner([
        _sample(100.0, 10, "sell"),
        _sample(100.1, 10, "sell"),
        _sample(100.2, 10, "buy"),
    ])

    clusters = scanner.detect_clusters(INST, 1000.0, ViperConfig())

    assert len(clusters) == 1
    cluster = clusters[0]
    assert cluster.side == "long"        # sell-dominated → longs liquidated
    assert cluster.sample_count == 3
    assert cluster.size == 30
    assert abs(cluster.volume - 3003.0) < 1e-6


def test_buy_dominated_window_is_short_liquidation():
    scanner = _scanner([_sample(100.0, 10, "buy"), _sample(100.1, 10, "buy"), _sample(100.2, 5, "sell")])
    assert scanner.detect_clusters(INST, 1000.0, ViperConfig())[0].side == "short"


def test_two_samples_are_not_a_cluster():
    scanner = _scanner([_sample(100.0, 1000, "sell"), _sample(100.1, 1000, "sell")])
    assert scanner.detect_clusters(INST, 1000.0, ViperConfig()) == []


def test_notional_below_balance_threshold_is_ignored():
    scanner = _scanner([_sample(100.0, 10, "sell")] * 3)
    # 3000 notional against 100k balance is 0.03 < 0.5
    assert scanner.detect_clusters(INST, 100000.0, ViperConfig()) == []


def test_calm_instrument_is_skipped():
    scanner = _scanner([_sample(100.0, 10, "sell")] * 3, history=[100.0] * 30)
    assert scanner.detect_clusters(INST, 1000.0, ViperConfig()) == []


def test_samples_split_into_price_windows():
    # width = 0.5% of 100 = 0.5 → two windows
    samples = [_sample(100.0, 10, "sell")] * 3 + [_sample(101.0, 20, "buy")] * 3
    clusters = _scanner(samples).detect_clusters(INST, 1000.0, ViperConfig())

    assert len(clusters) == 2
    assert clusters[0].price == 101.0     # larger volume first
    assert clusters[1].price == 100.0


def test_scan_sorts_across_instruments():
    source = FakeSource({"A": 100.0, "B": 10.0}, history={"A": CHOPPY, "B": [10.0, 10.1] * 15})
    source.samples["A"] = [MarketSample("A", 100.0, 10, "sell")] * 3
    source.samples["B"] = [MarketSample("B", 10.0, 500, "buy")] * 3

    clusters = OpportunityScanner(source).scan(["A", "B"], 1000.0, ViperConfig())

    assert [c.inst_id for c in clusters] == ["B", "A"]


def test_random_source_is_reproducible():
    a = RandomMarketSampleSource(rng=random.Random(7), sample_count=5)
    b = RandomMarketSampleSource(rng=random.Random(7), sample_count=5)

    assert a.get_price(INST) == b.get_price(INST)
    assert [s.price for s in a.get_samples(INST)] == [s.price for s in b.get_samples(INST)]
    assert len(a.get_price_history(INST)) == 100
    assert "AVAX-USDT-SWAP" in a.instruments


def test_random_source_moves_only_on_advance():
    source = RandomMarketSampleSource(rng=random.Random(3), sample_count=5)
    before = {inst: source.get_price(inst) for inst in source.instruments}

    source.get_samples(INST)
    assert source.get_price(INST) == before[INST]

    source.advance([INST])
    assert source.get_price(INST) != before[INST]
    assert source.get_price_history(INST)[-1] == source.get_price(INST)
    assert source.get_price("ETH-USDT-SWAP") == before["ETH-USDT-SWAP"]


# ── Sizing ──────────────────────────────────────────────────────────────────

def test_optimal_leverage():
    assert optimal_leverage(Decimal("1000"), 10) == 10
    assert optimal_leverage(Decimal("150"), 10) == 2
    assert optimal_leverage(Decimal("550"), 10) == 5
    assert optimal_leverage(Decimal("100000"), 3) == 3


def test_size_position_margin_is_notional_over_leverage():
    sized = size_position(Decimal("1000"), Decimal("100"), ViperConfig(), risk_score=0.0, opportunity_rating=1.0)

    # 2% of 1000 = 20 margin at 10x → 200 notional → 2 units
    assert sized.leverage == 10
    assert sized.quantity == Decimal("2")
    assert sized.notional == Decimal("200")
    assert sized.margin == Decimal("20")


def test_size_position_respects_notional_cap():
    config = ViperConfig(position_scaling=1000.0)
    sized = size_position(Decimal("1000"), Decimal("100"), config, risk_score=0.0, opportunity_rating=1.0)

    # cap = 1000 * 1 * 10 / 100 = 100 units
    assert sized.quantity == Decimal("100")
    assert sized.notional == Decimal("10000")
    assert sized.margin == Decimal("1000")


def test_size_position_scales_down_with_risk():
    safe = size_position(Decimal("1000"), Decimal("100"), ViperConfig(), 0.0, 1.0)
    risky = size_position(Decimal("1000"), Decimal("100"), ViperConfig(), 0.5, 1.0)
    assert risky.quantity == safe.quantity / 2


def test_size_position_zero_when_nothing_to_trade():
    assert size_position(Decimal("0"), Decimal("100"), ViperConfig(), 0.0, 1.0) is None
    assert size_position(Decimal("1000"), Decimal("100"), ViperConfig(), 1.0, 1.0) is None


def test_exit_levels_are_directional():
    assert exit_levels(Decimal("100"), "buy", ViperConfig()) == (Decimal("102"), Decimal("99"))
    assert exit_levels(Decimal("100"), "sell", ViperConfig()) == (Decimal("98"), Decimal("101"))


def test_unrealized_pnl_inverts_for_sells():
    assert unrealized_pnl("buy", 100, 102.5, 2) == Decimal("5")
    assert unrealized_pnl("sell", 100, 102.5, 2) == Decimal("-5")
