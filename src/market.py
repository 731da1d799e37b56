import math
import random
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

import objects as G
from errors import InsufficientSupply, SkippedTick, UnknownGoodReference, ValidationError
from logger import logs
from settings import MarketConfig

MIN_PRICE = G.CENT


class MarketTickResult(BaseModel):
    states: Dict[str, G.MarketState]
    # goods that kept their previous state because repricing failed
    skipped: List[str] = Field(default_factory=list)


def classify_trend(
    demand: int,
    supply: int,
    previous_price: Decimal,
    new_price: Decimal,
    config: MarketConfig,
) -> G.Trend:
    ratio = demand / max(supply, 1)
    if ratio >= config.rising_ratio:
        return "rising"
    if ratio <= config.falling_ratio:
        return "falling"
    if previous_price > 0:
        moved = abs(new_price - previous_price) / previous_price
        if moved > Decimal(str(config.volatile_threshold)):
            return "volatile"
    return "stable"


def apply_trade(state: G.MarketState, side: Literal["buy", "sell"], quantity: int) -> G.MarketState:
    """
    Return the state after a player trade of ``quantity`` units.
    A buy takes units out of supply and adds to demand; a sell does the reverse.
    The input state is left untouched.
    """
    if quantity <= 0:
        raise ValidationError("quantity must be positive", quantity=quantity)
    if side == "buy":
        if state.supply < quantity:
            raise InsufficientSupply(
                f"only {state.supply} units of {state.good_id} available",
                good_id=state.good_id, supply=state.supply, quantity=quantity,
            )
        return state.model_copy(update={
            "supply": state.supply - quantity,
            "demand": state.demand + quantity,
        })
    if side == "sell":
        return state.model_copy(update={
            "supply": state.supply + quantity,
            "demand": max(0, state.demand - quantity),
        })
    raise ValidationError(f"unknown trade side {side!r}", side=side)


def trade_delta(side: Literal["buy", "sell"], quantity: int) -> G.TradeDelta:
    if side == "buy":
        return G.TradeDelta(supply=-quantity, demand=quantity)
    return G.TradeDelta(supply=quantity, demand=-quantity)


class MarketEngine:
    """Reprices every good once per tick from supply, demand, volatility, disasters and season."""

    def __init__(self, goods: Dict[str, G.Good], config: MarketConfig, rng: random.Random):
        self.goods = goods
        self.config = config
        self.rng = rng

    # ------------------------------------------------------------------
    # Pure pieces of the price formula
    # ------------------------------------------------------------------
    def production_cost_modifier(self, good_id: str) -> Decimal:
        good = self.goods.get(good_id)
        if good is None:
            raise UnknownGoodReference(f"unknown good {good_id!r}", good_id=good_id)
        return good.production_cost_modifier

    def seasonal_modifier(self, good: G.Good, sim_time: float) -> Decimal:
        amplitude = self.config.seasonal_amplitude.get(good.category.value, 0.0)
        if not amplitude:
            return Decimal("1")
        angle = 2 * math.pi * G.day_of_year(sim_time) / 365
        return Decimal(str(1 + amplitude * math.sin(angle)))

    def disaster_multiplier(self, region: str, disasters: Iterable[G.DisasterEvent], sim_time: float) -> Decimal:
        hits = sum(
            1 for d in disasters
            if d.affects_prices and d.is_active(sim_time) and region in d.affected_regions
        )
        return min(self.config.disaster_multiplier_cap, 1 + self.config.disaster_step * hits)

    def price_for(
        self,
        good: G.Good,
        supply: int,
        demand: int,
        volatility_modifier: float,
        disaster_multiplier: Decimal,
        seasonal_modifier: Decimal,
    ) -> Decimal:
        cost = good.base_cost + self.production_cost_modifier(good.id)
        ratio = Decimal(demand) / Decimal(max(supply, 1))
        price = (
            cost
            * ratio
            * (1 + Decimal(str(volatility_modifier)))
            * disaster_multiplier
            * seasonal_modifier
        )
        return max(MIN_PRICE, G.to_money(price))

    def _drift(self, value: int) -> int:
        lo, hi = self.config.drift_range
        return int(round(value * self.rng.uniform(lo, hi)))

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def seed_states(self, sim_time: float = 0.0) -> Dict[str, G.MarketState]:
        states = {}
        for good in sorted(self.goods.values(), key=lambda g: g.id):
            price = max(MIN_PRICE, G.to_money(good.base_cost + good.production_cost_modifier))
            states[good.id] = G.MarketState(
                good_id=good.id,
                region=good.home_region,
                current_price=price,
                previous_price=price,
                supply=good.initial_supply,
                demand=good.initial_demand,
                trend=classify_trend(good.initial_demand, good.initial_supply, price, price, self.config),
                last_updated=sim_time,
            )
        return states

    def reprice(
        self,
        state: G.MarketState,
        disasters: List[G.DisasterEvent],
        pending: G.TradeDelta,
        sim_time: float,
    ) -> G.MarketState:
        good = self.goods.get(state.good_id)
        if good is None:
            raise UnknownGoodReference(f"unknown good {state.good_id!r}", good_id=state.good_id)
        spread = self.config.volatility_ranges[good.volatility_class.value]
        volatility = self.rng.uniform(-spread, spread)
        price = self.price_for(
            good,
            state.supply,
            state.demand,
            volatility,
            self.disaster_multiplier(state.region, disasters, sim_time),
            self.seasonal_modifier(good, sim_time),
        )
        trend = classify_trend(state.demand, state.supply, state.current_price, price, self.config)

        # drift the pre-trade base, then put this tick's trades back on top
        supply = max(0, self._drift(max(0, state.supply - pending.supply)) + pending.supply)
        demand = max(0, self._drift(max(0, state.demand - pending.demand)) + pending.demand)

        return state.model_copy(update={
            "current_price": price,
            "previous_price": state.current_price,
            "supply": supply,
            "demand": demand,
            "trend": trend,
            "last_updated": sim_time,
        })

    def tick(
        self,
        states: Dict[str, G.MarketState],
        disasters: List[G.DisasterEvent],
        pending: Optional[Dict[str, G.TradeDelta]] = None,
        sim_time: float = 0.0,
        check_deadline: Optional[Callable[[], None]] = None,
    ) -> MarketTickResult:
        pending = pending or {}
        result = MarketTickResult(states={})
        for good_id in sorted(states):
            if check_deadline:
                check_deadline()
            state = states[good_id]
            try:
                result.states[good_id] = self.reprice(
                    state, disasters, pending.get(good_id, G.TradeDelta()), sim_time
                )
            except SkippedTick:
                raise
            except Exception:
                logs.exception(f"Repricing {good_id} failed, keeping previous state")
                result.states[good_id] = state
                result.skipped.append(good_id)
        return result
