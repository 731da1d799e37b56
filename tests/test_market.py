import random
from decimal import Decimal

import pytest

import objects as G  # type: ignore
from errors import InsufficientSupply, UnknownGoodReference, ValidationError  # type: ignore
from market import MarketEngine, apply_trade, classify_trend  # type: ignore
from settings import MarketConfig  # type: ignore


def electronics_state(supply=1000, demand=1200, price="100") -> G.MarketState:
    return G.MarketState(good_id="electronics", region="asia", current_price=Decimal(price),
                         previous_price=Decimal(price), supply=supply, demand=demand)


def storm(regions, severity=3, start=0.0, duration=48.0, chokepoint=None, kind=G.DisasterType.STORM):
    return G.DisasterEvent(id=f"d-{severity}-{sorted(regions)}", type=kind, affected_regions=set(regions),
                           severity=severity, start_time=start, duration_hours=duration, chokepoint=chokepoint)


def test_electronics_price_band_and_rising_trend(catalog):
    for seed in range(50):
        engine = MarketEngine(catalog.goods, MarketConfig(), random.Random(seed))
        result = engine.tick({"electronics": electronics_state()}, [], {}, sim_time=24.0)
        state = result.states["electronics"]
        assert Decimal("117.60") <= state.current_price <= Decimal("122.40")
        assert state.trend == "rising"
        assert state.previous_price == Decimal("100")


def test_prices_stay_positive_and_quantities_non_negative(catalog):
    engine = MarketEngine(catalog.goods, MarketConfig(), random.Random(3))
    states = {
        "electronics": electronics_state(supply=0, demand=0),
        "coffee": G.MarketState(good_id="coffee", region="south-america", current_price=Decimal("0.01"),
                                previous_price=Decimal("0.01"), supply=5, demand=0),
    }
    for t in range(1, 200):
        states = engine.tick(states, [], {}, sim_time=t * 24.0).states
        for s in states.values():
            assert s.current_price > 0
            assert s.supply >= 0 and s.demand >= 0


def test_apply_trade_is_pure():
    state = electronics_state()
    bought = apply_trade(state, "buy", 100)
    assert (bought.supply, bought.demand) == (900, 1300)
    assert (state.supply, state.demand) == (1000, 1200)


def test_buy_more_than_supply_rejected():
    with pytest.raises(InsufficientSupply):
        apply_trade(electronics_state(supply=10), "buy", 11)


def test_non_positive_quantity_rejected():
    with pytest.raises(ValidationError):
        apply_trade(electronics_state(), "sell", 0)


def test_sell_then_buy_restores_quantities():
    state = electronics_state()
    after = apply_trade(apply_trade(state, "sell", 250), "buy", 250)
    assert (after.supply, after.demand) == (state.supply, state.demand)


def test_sell_clamps_demand_at_zero():
    assert apply_trade(electronics_state(demand=10), "sell", 50).demand == 0


def test_disaster_multiplier_counts_active_price_disasters(catalog):
    engine = MarketEngine(catalog.goods, MarketConfig(), random.Random(0))
    assert engine.disaster_multiplier("asia", [storm({"asia"})], 10.0) == Decimal("1.2")
    # expired, elsewhere and canal blockages do not count
    ignored = [
        storm({"asia"}, start=0.0, duration=5.0),
        storm({"europe"}),
        storm({"asia"}, chokepoint="suez", kind=G.DisasterType.CANAL_BLOCKAGE),
    ]
    assert engine.disaster_multiplier("asia", ignored, 10.0) == Decimal("1")


def test_disaster_multiplier_is_capped(catalog):
    engine = MarketEngine(catalog.goods, MarketConfig(), random.Random(0))
    many = [storm({"asia"}, severity=s % 5 + 1, start=float(s)) for s in range(15)]
    assert engine.disaster_multiplier("asia", many, 20.0) == Decimal("3.0")


def test_seasonal_modifier_only_moves_seasonal_categories(catalog):
    engine = MarketEngine(catalog.goods, MarketConfig(), random.Random(0))
    for day in range(0, 365, 15):
        t = day * 24.0
        assert engine.seasonal_modifier(catalog.good("electronics"), t) == Decimal("1")
        fruit = engine.seasonal_modifier(catalog.good("fresh-fruit"), t)
        watches = engine.seasonal_modifier(catalog.good("luxury-watches"), t)
        assert Decimal("0.95") <= fruit <= Decimal("1.05")
        assert Decimal("0.97") <= watches <= Decimal("1.03")


def test_unknown_good_is_skipped_and_kept(catalog):
    engine = MarketEngine(catalog.goods, MarketConfig(), random.Random(0))
    ghost = G.MarketState(good_id="ghost", region="asia", current_price=Decimal("5"),
                          previous_price=Decimal("5"), supply=10, demand=10)
    result = engine.tick({"ghost": ghost, "electronics": electronics_state()}, [], {}, sim_time=24.0)
    assert result.skipped == ["ghost"]
    assert result.states["ghost"] == ghost
    assert result.states["electronics"].last_updated == 24.0


def test_production_cost_modifier_unknown_good(catalog):
    engine = MarketEngine(catalog.goods, MarketConfig(), random.Random(0))
    with pytest.raises(UnknownGoodReference):
        engine.production_cost_modifier("ghost")


def test_drift_applies_to_pre_trade_base(catalog):
    config = MarketConfig(drift_range=(0.5, 0.5))
    engine = MarketEngine(catalog.goods, config, random.Random(0))
    # 100 units were bought since the last tick: base supply 1000, demand 1100
    state = electronics_state(supply=900, demand=1200)
    pending = {"electronics": G.TradeDelta(supply=-100, demand=100)}
    result = engine.tick({"electronics": state}, [], pending, sim_time=24.0)
    assert result.states["electronics"].supply == 400
    assert result.states["electronics"].demand == 650


def test_trend_classification():
    config = MarketConfig()
    p = Decimal("100")
    assert classify_trend(1200, 1000, p, p, config) == "rising"
    assert classify_trend(800, 1000, p, p, config) == "falling"
    assert classify_trend(1000, 1000, p, p, config) == "stable"
    assert classify_trend(1000, 1000, p, Decimal("120"), config) == "volatile"


def test_seed_states_start_at_cost(catalog):
    engine = MarketEngine(catalog.goods, MarketConfig(), random.Random(0))
    states = engine.seed_states()
    assert states["electronics"].current_price == Decimal("100.00")
    assert states["electronics"].region == "asia"
    assert states["electronics"].trend == "rising"
