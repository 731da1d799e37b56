import math
import random
from decimal import Decimal
from statistics import mean
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel

import objects as G
from logger import logs
from settings import CompanionConfig

# suggestion types each level may emit
UNLOCKED_TYPES: Dict[G.CompanionLevel, set] = {
    G.CompanionLevel.NOVICE: {"warning"},
    G.CompanionLevel.APPRENTICE: {"warning", "route"},
    G.CompanionLevel.JOURNEYMAN: {"warning", "route", "trade"},
    G.CompanionLevel.EXPERT: {"warning", "route", "trade", "upgrade"},
    G.CompanionLevel.MASTER: {"warning", "route", "trade", "upgrade"},
    G.CompanionLevel.LEGENDARY: {"warning", "route", "trade", "upgrade"},
}


def level_index(level: G.CompanionLevel) -> int:
    return G.COMPANION_LEVELS.index(level)


def level_for_experience(experience: int, config: CompanionConfig) -> G.CompanionLevel:
    idx = 0
    for i, threshold in enumerate(config.experience_thresholds):
        if experience >= threshold:
            idx = i
    return G.COMPANION_LEVELS[idx]


def experience_for(record: G.RoutePerformanceRecord) -> int:
    profit = float(record.profit)
    return max(0, math.floor(profit / 1000)) + (10 if profit > 0 else 2)


def profit_bonus(companion: G.CompanionState, config: CompanionConfig) -> float:
    """Passive revenue bonus: level bonus plus leaked rival intel, capped."""
    base = config.profit_bonuses[level_index(companion.level)]
    return min(config.max_profit_bonus, base + companion.rival_intel_bonus)


def confidence_threshold(companion: G.CompanionState, config: CompanionConfig) -> float:
    """
    Minimum confidence a suggestion needs at this level. A track record above
    50 % accuracy lowers the bar, a poor one raises it.
    """
    base = config.confidence_thresholds[level_index(companion.level)]
    if companion.total_suggestions:
        base += config.accuracy_weight * (0.5 - companion.accuracy)
    return min(0.95, max(0.05, base))


def max_risk(companion: G.CompanionState, config: CompanionConfig) -> float:
    return min(config.max_risk[level_index(companion.level)], companion.risk_tolerance)


def demand_pattern(prices: Sequence[float]) -> str:
    if len(prices) >= 20:
        recent = mean(prices[-10:])
        older = mean(prices[-20:-10])
        if recent > older * 1.1:
            return "rising"
        if recent < older * 0.9:
            return "falling"
    if len(prices) >= 2 and min(prices) > 0 and max(prices) / min(prices) > 1.3:
        return "volatile"
    return "stable"


class CompanionLearner:
    """Learns route patterns and market insights from tick outcomes and turns them into suggestions."""

    def __init__(self, config: CompanionConfig, hours_per_tick: float = 24.0):
        self.config = config
        self.hours_per_tick = hours_per_tick

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------
    def ingest(
        self,
        companion: G.CompanionState,
        records: Iterable[G.RoutePerformanceRecord],
        markets: Dict[str, G.MarketState],
        traded_goods: Iterable[str],
        sim_time: float,
    ) -> G.CompanionState:
        state = companion.model_copy(deep=True)
        records = list(records)

        state.experience += sum(experience_for(r) for r in records)
        reached = level_for_experience(state.experience, self.config)
        if level_index(reached) > level_index(state.level):
            logs.info(f"Companion of {state.owner_id} reached {reached.value}")
            state.level = reached

        for record in records:
            self._learn_route(state, record)
        for good_id in sorted(set(traded_goods)):
            market = markets.get(good_id)
            if market is not None:
                self._learn_market(state, market, sim_time)
        return state

    def _learn_route(self, state: G.CompanionState, record: G.RoutePerformanceRecord) -> None:
        pattern = state.route_patterns.setdefault(
            record.route_id, G.RoutePattern(route_id=record.route_id, lane=record.lane)
        )
        profit = float(record.profit)
        revenue = float(record.revenue)
        if revenue:
            margin = profit / revenue
        else:
            margin = -1.0 if profit < 0 else 0.0

        limit = self.config.history_limit
        pattern.margin_history = (pattern.margin_history + [margin])[-limit:]
        pattern.profit_history = (pattern.profit_history + [profit])[-limit:]
        pattern.times_used += 1
        pattern.avg_revenue += (revenue - pattern.avg_revenue) / pattern.times_used
        if record.cargo_good_ids:
            share = profit / len(record.cargo_good_ids)
            for good_id in record.cargo_good_ids:
                pattern.good_contributions[good_id] = pattern.good_contributions.get(good_id, 0.0) + share

        if len(pattern.margin_history) >= self.config.min_pattern_cycles:
            pattern.avg_profit_margin = mean(pattern.margin_history)
            pattern.success_rate = sum(1 for p in pattern.profit_history if p > 0) / len(pattern.profit_history)
            ranked = sorted(pattern.good_contributions.items(), key=lambda kv: kv[1], reverse=True)
            pattern.optimal_goods = [g for g, v in ranked if v > 0][:3]

    def _learn_market(self, state: G.CompanionState, market: G.MarketState, sim_time: float) -> None:
        fresh = G.MarketInsight(good_id=market.good_id, region=market.region)
        insight = state.market_insights.setdefault(fresh.key, fresh)
        insight.price_history.append(G.PricePoint(price=market.current_price, sim_time=sim_time))
        insight.price_history = insight.price_history[-self.config.price_history_limit:]

        prices = [float(p.price) for p in insight.price_history]
        insight.demand_pattern = demand_pattern(prices)

        buckets: Dict[int, List[float]] = {}
        for point in insight.price_history:
            buckets.setdefault(G.day_of_week(point.sim_time), []).append(float(point.price))
        insight.window_averages = {day: mean(v) for day, v in buckets.items()}
        if len(insight.window_averages) >= 2:
            lo = min(insight.window_averages.values())
            hi = max(insight.window_averages.values())
            insight.best_buy_windows = sorted(d for d, v in insight.window_averages.items() if v == lo)
            insight.best_sell_windows = sorted(d for d, v in insight.window_averages.items() if v == hi)
            insight.profit_potential = (hi - lo) / lo if lo > 0 else 0.0

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------
    def due(self, companion: G.CompanionState, tick: int) -> bool:
        last = companion.last_suggestion_tick
        return last is None or tick - last >= self.config.suggestion_interval_ticks

    def generate_suggestions(
        self,
        player: G.PlayerState,
        companion: G.CompanionState,
        markets: Dict[str, G.MarketState],
        disasters: List[G.DisasterEvent],
        tick: int,
        sim_time: float,
    ) -> List[G.Suggestion]:
        """
        Build candidates, keep the ones this companion may emit, rank them by
        risk-adjusted profit. Updates ``companion.last_suggestion_tick`` when it runs.
        """
        if not self.due(companion, tick):
            return []
        companion.last_suggestion_tick = tick

        idx = level_index(companion.level)
        expires_at = sim_time + self.config.horizon_ticks[idx] * self.hours_per_tick
        candidates = (
            self._warnings(player, companion, disasters, sim_time)
            + self._route_ideas(player, companion)
            + self._trade_ideas(companion, markets)
            + self._upgrade_ideas(player, companion)
        )

        unlocked = UNLOCKED_TYPES[companion.level]
        risk_cap = max_risk(companion, self.config)
        threshold = confidence_threshold(companion, self.config)
        kept = [
            c for c in candidates
            if c["type"] in unlocked and c["risk_level"] <= risk_cap and c["confidence"] >= threshold
        ]
        kept.sort(key=lambda c: c["expected_profit"] * (1 - Decimal(str(c["risk_level"]))), reverse=True)

        suggestions = []
        for rank, c in enumerate(kept[: self.config.max_suggestions]):
            priority = c.pop("priority", None) or ("high" if rank == 0 else "medium")
            suggestions.append(G.Suggestion(
                owner_id=player.owner_id,
                priority=priority,
                created_at=sim_time,
                expires_at=expires_at,
                **c,
            ))
        return suggestions

    def _warnings(self, player: G.PlayerState, companion: G.CompanionState, disasters: List[G.DisasterEvent], now: float) -> List[dict]:
        out = []
        for route in player.active_routes():
            hits = [d for d in disasters if d.is_active(now) and route.regions & d.affected_regions]
            if not hits:
                continue
            worst = max(hits, key=lambda d: d.severity)
            pattern = companion.route_patterns.get(route.id)
            at_stake = Decimal(str(max(pattern.avg_revenue, 0.0))) if pattern else Decimal("0")
            out.append({
                "type": "warning",
                "priority": "critical" if worst.severity >= 4 else "high",
                "title": f"{worst.type.value.replace('_', ' ').title()} on {route.lane}",
                "description": f"Severity {worst.severity} event affecting {', '.join(sorted(worst.affected_regions))}.",
                "target": route.id,
                "expected_profit": G.to_money(at_stake),
                "risk_level": 0.1,
                "confidence": 0.9,
            })
        return out

    def _route_ideas(self, player: G.PlayerState, companion: G.CompanionState) -> List[dict]:
        out = []
        horizon = self.config.horizon_ticks[level_index(companion.level)]
        for pattern in companion.route_patterns.values():
            route = player.routes.get(pattern.route_id)
            if route is None or route.status != "active" or not pattern.established:
                continue
            if pattern.success_rate < 0.5:
                continue
            avg_profit = mean(pattern.profit_history) if pattern.profit_history else 0.0
            out.append({
                "type": "route",
                "title": f"Add capacity on {pattern.lane}",
                "description": f"Average margin {pattern.avg_profit_margin:.0%} over {pattern.times_used} cycles.",
                "target": pattern.route_id,
                "expected_profit": G.to_money(max(avg_profit, 0.0) * horizon),
                "risk_level": round(1 - pattern.success_rate, 4),
                "confidence": round(pattern.success_rate * min(1.0, pattern.times_used / 10), 4),
            })
        return out

    def _trade_ideas(self, companion: G.CompanionState, markets: Dict[str, G.MarketState]) -> List[dict]:
        out = []
        for insight in companion.market_insights.values():
            market = markets.get(insight.good_id)
            if market is None or len(insight.price_history) < 7 or insight.profit_potential <= 0.05:
                continue
            direction = "down" if insight.demand_pattern == "falling" else "up"
            out.append({
                "type": "trade",
                "title": f"{'Buy' if direction == 'up' else 'Sell'} {insight.good_id}",
                "description": f"Buy on day {insight.best_buy_windows}, sell on day {insight.best_sell_windows}.",
                "target": insight.good_id,
                "expected_profit": G.to_money(market.current_price * 100 * Decimal(str(insight.profit_potential))),
                "risk_level": 0.6 if insight.demand_pattern == "volatile" else 0.3,
                "confidence": round(min(0.9, 0.3 + len(insight.price_history) / self.config.price_history_limit), 4),
                "baseline": market.current_price,
                "direction": direction,
            })
        return out

    def _upgrade_ideas(self, player: G.PlayerState, companion: G.CompanionState) -> List[dict]:
        out = []
        horizon = self.config.horizon_ticks[level_index(companion.level)]
        for asset in player.finances.assets.values():
            if asset.status == "sold" or asset.level >= 10 or asset.assigned_route_id is None:
                continue
            pattern = companion.route_patterns.get(asset.assigned_route_id)
            if pattern is None or not pattern.established or pattern.avg_profit_margin <= 0.2:
                continue
            out.append({
                "type": "upgrade",
                "title": f"Upgrade {asset.id} to level {asset.level + 1}",
                "target": asset.id,
                "expected_profit": G.to_money(pattern.avg_revenue * 0.1 * horizon),
                "risk_level": 0.2,
                "confidence": round(min(0.9, 0.6 + 0.05 * min(pattern.times_used, 6)), 4),
            })
        return out

    def expire_suggestions(self, suggestions: Dict[str, G.Suggestion], now: float) -> int:
        expired = 0
        for s in suggestions.values():
            if s.status == "pending" and now >= s.expires_at:
                s.status = "expired"
                expired += 1
        return expired

    # ------------------------------------------------------------------
    # Accuracy loop
    # ------------------------------------------------------------------
    def resolve_suggestions(
        self,
        companion: G.CompanionState,
        player: G.PlayerState,
        markets: Dict[str, G.MarketState],
        tick: int,
    ) -> List[G.Suggestion]:
        resolved = []
        for s in player.suggestions.values():
            if s.status != "accepted" or s.resolved or s.accepted_tick is None:
                continue
            if tick - s.accepted_tick < self.config.resolve_after_ticks:
                continue
            s.outcome_success = self._succeeded(s, player, markets)
            s.resolved = True
            companion.total_suggestions += 1
            if s.outcome_success:
                companion.successful_suggestions += 1
            resolved.append(s)
        if resolved:
            companion.accuracy = companion.successful_suggestions / companion.total_suggestions
        return resolved

    def _succeeded(self, s: G.Suggestion, player: G.PlayerState, markets: Dict[str, G.MarketState]) -> bool:
        since = s.accepted_at if s.accepted_at is not None else s.created_at
        recent = [r for r in player.route_records if r.cycle_timestamp >= since]
        if s.type == "route":
            route = player.routes.get(s.target)
            lane = route.lane if route else None
            return sum((r.profit for r in recent if r.lane == lane), Decimal("0")) > 0
        if s.type == "warning":
            return all(r.profit >= 0 for r in recent if r.route_id == s.target)
        if s.type == "upgrade":
            asset = player.finances.assets.get(s.target)
            route_id = asset.assigned_route_id if asset else None
            return sum((r.profit for r in recent if r.route_id == route_id), Decimal("0")) > 0
        market = markets.get(s.target)
        if market is None or s.baseline is None:
            return False
        if s.direction == "down":
            return market.current_price < s.baseline
        return market.current_price > s.baseline


class EspionageEvent(BaseModel):
    leaker_id: str
    beneficiary_id: str
    leaked_bonus: float


class EspionageRoller:
    """Rare event: a reckless companion leaks part of its edge to a rival."""

    def __init__(self, config: CompanionConfig):
        self.config = config

    def advantage(self, companion: G.CompanionState) -> float:
        established = sum(1 for p in companion.route_patterns.values() if p.established)
        base = self.config.profit_bonuses[level_index(companion.level)]
        return min(self.config.max_profit_bonus, base + 0.01 * established)

    def roll(
        self,
        companion: G.CompanionState,
        rivals: Sequence[G.CompanionState],
        rng: random.Random,
    ) -> Optional[EspionageEvent]:
        if not rivals or companion.risk_tolerance <= self.config.espionage_risk_threshold:
            return None
        if rng.random() >= self.config.espionage_probability:
            return None
        rival = rng.choice(sorted(rivals, key=lambda c: c.owner_id))
        leaked = self.advantage(companion) * self.config.espionage_leak_fraction
        rival.rival_intel_bonus = min(self.config.max_profit_bonus, rival.rival_intel_bonus + leaked)
        logs.info(f"Intel from {companion.owner_id}'s companion leaked to {rival.owner_id}")
        return EspionageEvent(leaker_id=companion.owner_id, beneficiary_id=rival.owner_id, leaked_bonus=leaked)
