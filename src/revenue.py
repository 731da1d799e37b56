import math
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

import objects as G
from errors import CreditDenied, SkippedTick, UnknownGoodReference, ValidationError
from logger import logs
from settings import RevenueConfig

ZERO = Decimal("0")
ONE = Decimal("1")


def calculate_route_profit(
    distance: Decimal,
    cargo_value: Decimal,
    efficiency: Decimal,
    market_modifier: Decimal,
    rate: Decimal = Decimal("0.0001"),
) -> Decimal:
    """Gross profit of one route cycle. Same inputs, same output."""
    return G.to_money(distance * cargo_value * efficiency * market_modifier * rate)


def loan_term(term_days) -> float:
    if isinstance(term_days, bool) or not isinstance(term_days, (int, float, Decimal)):
        raise ValidationError("term must be a number of days", term_days=term_days)
    days = float(term_days)
    if not math.isfinite(days) or days <= 0:
        raise ValidationError("term must be a positive number of days", term_days=term_days)
    return days


def compound_growth(current: Decimal, rate: Decimal, elapsed_days: float) -> Decimal:
    return G.to_money(current * (ONE + rate / Decimal(365)) ** Decimal(str(elapsed_days)))


def downgrade(rating: str) -> str:
    idx = G.RATING_ORDER.index(rating)
    return G.RATING_ORDER[min(idx + 1, len(G.RATING_ORDER) - 1)]


class CycleResult(BaseModel):
    per_player_profit: Dict[str, Decimal] = Field(default_factory=dict)
    per_player_expenses: Dict[str, Decimal] = Field(default_factory=dict)
    route_records: Dict[str, List[G.RoutePerformanceRecord]] = Field(default_factory=dict)
    transactions: Dict[str, List[G.Transaction]] = Field(default_factory=dict)
    skipped_routes: List[str] = Field(default_factory=list)


class RouteSummary(BaseModel):
    route_id: str
    lane: str
    revenue: Decimal
    profit: Decimal
    cycles: int


class FinancialReport(BaseModel):
    owner_id: str
    period_days: float
    generated_at: float
    total_revenue: Decimal
    total_expenses: Decimal
    net_profit: Decimal
    profit_margin: float
    growth_rate: Optional[float] = None
    expense_breakdown: Dict[str, Decimal] = Field(default_factory=dict)
    top_routes: List[RouteSummary] = Field(default_factory=list)
    cash: Decimal
    outstanding_debt: Decimal
    credit_rating: str
    recommendations: List[str] = Field(default_factory=list)


class RevenueEngine:
    """
    Route economics, compounding growth, credit and bankruptcy.

    ``evaluate_cycle`` only reads its inputs and returns what the cycle produced;
    the loan and bankruptcy helpers work on the player copy the tick hands them.
    """

    def __init__(self, config: RevenueConfig, assets: Dict[str, G.AssetDefinition], hours_per_tick: float = 24.0):
        self.config = config
        self.assets = assets
        self.cycle_days = hours_per_tick / 24

    # ------------------------------------------------------------------
    # Route economics
    # ------------------------------------------------------------------
    def definition(self, asset: G.Asset) -> G.AssetDefinition:
        try:
            return self.assets[asset.definition_id]
        except KeyError:
            raise ValidationError(f"unknown asset definition {asset.definition_id!r}",
                                  definition_id=asset.definition_id) from None

    def efficiency(self, asset: G.Asset) -> Decimal:
        return (
            ONE
            + self.config.level_efficiency * asset.level
            + self.config.specialist_efficiency * len(asset.specialists)
        )

    def cargo_value(self, route: G.Route, markets: Dict[str, G.MarketState]) -> Decimal:
        market = markets.get(route.cargo.good_id)
        if market is None:
            raise UnknownGoodReference(f"route {route.id} carries unknown good {route.cargo.good_id!r}",
                                       route_id=route.id, good_id=route.cargo.good_id)
        return market.current_price * route.cargo.quantity

    def market_modifier(self, route: G.Route, markets: Dict[str, G.MarketState]) -> Decimal:
        trend = markets[route.cargo.good_id].trend
        return self.config.trend_modifiers.get(trend, ONE)

    def risk_modifier(self, disasters: Iterable[G.DisasterEvent], specialists: List[G.Specialist]) -> Decimal:
        """Total share of profit lost to the given disasters, capped at ``max_risk``."""
        risk = ZERO
        for d in disasters:
            mitigating = sum(1 for s in specialists if d.type in s.mitigates)
            damping = max(self.config.mitigation_floor, ONE - self.config.mitigation_per_specialist * mitigating)
            risk += d.severity * self.config.risk_per_severity * damping
        return min(risk, self.config.max_risk)

    def route_disasters(self, route: G.Route, disasters: Iterable[G.DisasterEvent], now: float) -> List[G.DisasterEvent]:
        regions = route.regions
        return [
            d for d in disasters
            if d.affects_prices and d.is_active(now) and regions & d.affected_regions
        ]

    def is_blocked(self, route: G.Route, disasters: Iterable[G.DisasterEvent], now: float) -> bool:
        return any(
            d.chokepoint in route.chokepoints
            for d in disasters
            if not d.affects_prices and d.is_active(now)
        )

    def holding_costs(self, definition: G.AssetDefinition) -> Dict[str, Decimal]:
        days = Decimal(str(self.cycle_days))
        return {
            "maintenance": G.to_money(definition.maintenance_per_day * days),
            "insurance": G.to_money(definition.cost * self.config.insurance_rate_per_day * days),
        }

    def route_expenses(self, route: G.Route, asset: G.Asset, blocked: bool = False) -> Dict[str, Decimal]:
        definition = self.definition(asset)
        days = Decimal(str(self.cycle_days))
        expenses = self.holding_costs(definition)
        if blocked:
            return expenses
        if asset.status == "in_transit":
            expenses["fuel"] = G.to_money(
                route.base_distance * self.config.fuel_cost_per_distance / definition.fuel_efficiency
            )
        expenses["port_fees"] = G.to_money(self.config.port_fee * self.config.port_stops)
        expenses["crew"] = G.to_money(definition.crew_required * self.config.crew_wage_per_day * days)
        return expenses

    def evaluate_route(
        self,
        player: G.PlayerState,
        route: G.Route,
        markets: Dict[str, G.MarketState],
        disasters: List[G.DisasterEvent],
        bonus: float,
        now: float,
    ) -> G.RoutePerformanceRecord:
        asset = player.finances.assets.get(route.assigned_asset_id)
        if asset is None or asset.status == "sold":
            raise ValidationError(f"route {route.id} has no usable asset", route_id=route.id)

        blocked = self.is_blocked(route, disasters, now)
        encountered = self.route_disasters(route, disasters, now)
        revenue = ZERO
        if not blocked:
            gross = calculate_route_profit(
                route.base_distance,
                self.cargo_value(route, markets),
                self.efficiency(asset),
                self.market_modifier(route, markets),
                self.config.profit_rate_per_distance,
            )
            gross *= ONE - self.risk_modifier(encountered, asset.specialists)
            revenue = G.to_money(gross * (ONE + Decimal(str(bonus))))

        breakdown = self.route_expenses(route, asset, blocked)
        expenses = sum(breakdown.values(), ZERO)
        return G.RoutePerformanceRecord(
            route_id=route.id,
            owner_id=player.owner_id,
            lane=route.lane,
            cycle_timestamp=now,
            revenue=revenue,
            expenses=expenses,
            profit=revenue - expenses,
            expense_breakdown=breakdown,
            disasters_encountered=[d.id for d in encountered],
            cargo_good_ids=[route.cargo.good_id],
            blocked=blocked,
        )

    def growth_rate(self, player: G.PlayerState, disasters: List[G.DisasterEvent], bonus: float, now: float) -> Decimal:
        specialists = sum(
            len(a.specialists) for a in player.finances.assets.values() if a.status != "sold"
        )
        hits = sum(len(self.route_disasters(r, disasters, now)) for r in player.active_routes())
        loan_rates = sum((l.rate for l in player.credit.active_loans()), ZERO)
        rate = (
            self.config.base_growth_rate
            + self.config.labor_bonus_per_specialist * specialists
            + Decimal(str(bonus))
            - self.config.disaster_growth_penalty * hits
            - loan_rates
        )
        return min(self.config.max_growth_rate, max(self.config.min_growth_rate, rate))

    def evaluate_cycle(
        self,
        players: Dict[str, G.PlayerState],
        markets: Dict[str, G.MarketState],
        disasters: List[G.DisasterEvent],
        companion_bonuses: Dict[str, float],
        sim_time: float,
        check_deadline: Optional[Callable[[], None]] = None,
    ) -> CycleResult:
        result = CycleResult()
        for owner_id in sorted(players):
            player = players[owner_id]
            if player.liquidated:
                continue
            bonus = companion_bonuses.get(owner_id, 0.0)
            records: List[G.RoutePerformanceRecord] = []
            txs: List[G.Transaction] = []

            for route in sorted(player.active_routes(), key=lambda r: r.id):
                if check_deadline:
                    check_deadline()
                try:
                    record = self.evaluate_route(player, route, markets, disasters, bonus, sim_time)
                except SkippedTick:
                    raise
                except Exception:
                    logs.exception(f"Route {route.id} of {owner_id} failed to evaluate, skipping")
                    result.skipped_routes.append(route.id)
                    continue
                records.append(record)
                if record.revenue > 0:
                    txs.append(G.Transaction(
                        owner_id=owner_id, kind="income", category="route_revenue",
                        amount=record.revenue, timestamp=sim_time,
                        description=f"Route {route.lane}",
                    ))
                txs.append(G.Transaction(
                    owner_id=owner_id, kind="expense", category="route_operations",
                    amount=-record.expenses, timestamp=sim_time,
                    description=f"Route {route.lane}",
                ))

            # idle fleet still costs upkeep
            idle_costs = ZERO
            for asset in player.finances.assets.values():
                if asset.status == "idle":
                    idle_costs += sum(self.holding_costs(self.definition(asset)).values(), ZERO)
            if idle_costs:
                txs.append(G.Transaction(
                    owner_id=owner_id, kind="expense", category="idle_fleet",
                    amount=-idle_costs, timestamp=sim_time, description="Idle asset upkeep",
                ))

            net = sum((r.profit for r in records), ZERO) - idle_costs
            if net > 0:
                grown = compound_growth(net, self.growth_rate(player, disasters, bonus, sim_time), self.cycle_days)
                if grown != net:
                    txs.append(G.Transaction(
                        owner_id=owner_id, kind="income" if grown > net else "expense",
                        category="growth", amount=grown - net, timestamp=sim_time,
                        description="Compounded cycle growth",
                    ))
                net = grown

            result.route_records[owner_id] = records
            result.transactions[owner_id] = txs
            result.per_player_profit[owner_id] = net
            result.per_player_expenses[owner_id] = sum((r.expenses for r in records), ZERO) + idle_costs
        return result

    # ------------------------------------------------------------------
    # Credit
    # ------------------------------------------------------------------
    def asset_value(self, finances: G.PlayerFinances) -> Decimal:
        fleet = sum(
            (self.assets[a.definition_id].cost for a in finances.assets.values()
             if a.status != "sold" and a.definition_id in self.assets),
            ZERO,
        )
        return fleet + max(finances.cash, ZERO)

    def recalculate_rating(self, player: G.PlayerState) -> str:
        credit = player.credit
        debt = credit.outstanding()
        ratio = float(debt / max(self.asset_value(player.finances), ONE))
        history = credit.payments_on_time + credit.payments_missed
        on_time = credit.payments_on_time / history if history else 1.0
        for rating in G.RATING_ORDER:
            max_ratio, min_on_time = self.config.rating_thresholds[rating]
            if ratio <= max_ratio and on_time >= min_on_time:
                return rating
        return "D"

    def loan_ceiling(self, rating: str) -> Decimal:
        return self.config.loan_ceilings.get(rating, ZERO)

    def apply_for_loan(self, player: G.PlayerState, principal: Decimal, term_days: float) -> G.Loan:
        """Underwrite a loan against the player's current rating. Does not disburse it."""
        if not isinstance(principal, Decimal) or not principal.is_finite() or principal <= 0:
            raise ValidationError("principal must be a positive amount", principal=principal)
        term_days = loan_term(term_days)
        if player.liquidated:
            raise CreditDenied("liquidated players cannot borrow", owner_id=player.owner_id)
        rating = player.credit.rating
        if rating == "D":
            raise CreditDenied("rating D is not eligible for credit", owner_id=player.owner_id)
        ceiling = self.loan_ceiling(rating)
        outstanding = player.credit.outstanding(include_bailout=False)
        if principal + outstanding > ceiling:
            raise CreditDenied(
                f"{principal} exceeds the {rating} ceiling of {ceiling} (outstanding {outstanding})",
                owner_id=player.owner_id, rating=rating, ceiling=ceiling,
            )
        return self._amortize(principal, self.config.interest_rates[rating], term_days)

    def _amortize(self, principal: Decimal, rate: Decimal, term_days: float, is_bailout: bool = False) -> G.Loan:
        principal = G.to_money(principal)
        total = G.to_money(principal * (ONE + rate * Decimal(str(term_days)) / Decimal(365)))
        cycles = max(1, math.ceil(term_days / self.cycle_days))
        return G.Loan(
            principal=principal,
            rate=rate,
            term_days=term_days,
            term_remaining_days=term_days,
            remaining_balance=total,
            payment_per_cycle=G.to_money(total / cycles),
            is_bailout=is_bailout,
        )

    def collect_loan_payments(self, player: G.PlayerState, now: float) -> Tuple[List[G.Transaction], bool]:
        """Take this cycle's installments out of cash. Returns the payments and whether any was missed."""
        txs: List[G.Transaction] = []
        missed = False
        for loan in player.credit.active_loans():
            due = min(loan.payment_per_cycle, loan.remaining_balance)
            if player.finances.cash < due:
                missed = True
                loan.missed_payments += 1
                player.credit.payments_missed += 1
                logs.warning(f"{player.owner_id} missed a {due} payment on loan {loan.id}")
                if loan.is_bailout and loan.missed_payments >= self.config.max_missed_bailout_payments:
                    loan.status = "defaulted"
                continue
            tx = G.Transaction(
                owner_id=player.owner_id, kind="loan_payment", category="debt_service",
                amount=-due, timestamp=now, description=f"Loan {loan.id} installment",
            )
            player.finances.post(tx)
            txs.append(tx)
            loan.remaining_balance -= due
            loan.term_remaining_days = max(0.0, loan.term_remaining_days - self.cycle_days)
            player.credit.payments_on_time += 1
            if loan.remaining_balance <= 0:
                loan.remaining_balance = ZERO
                loan.status = "paid"
        return txs, missed

    def update_credit(self, player: G.PlayerState, now: float) -> List[G.Transaction]:
        txs, missed = self.collect_loan_payments(player, now)
        if missed:
            player.credit.rating = downgrade(player.credit.rating)
        else:
            player.credit.rating = self.recalculate_rating(player)
        return txs

    # ------------------------------------------------------------------
    # Bankruptcy
    # ------------------------------------------------------------------
    def check_bankruptcy(self, player: G.PlayerState, tick: int, now: float) -> Optional[str]:
        """Advance the bankruptcy state machine one tick. Returns the event that happened, if any."""
        state = player.bankruptcy
        cash = player.finances.cash
        below = cash < self.config.bankruptcy_threshold

        if state.status == "solvent" and below:
            state.status = "bailout_offered"
            state.offered_at_tick = tick
            state.bailout_principal = G.to_money(-cash + self.config.bailout_buffer)
            logs.warning(f"{player.owner_id} fell below {self.config.bankruptcy_threshold}, bailout offered")
            return "bailout_offered"
        if state.status == "bailout_offered" and tick - (state.offered_at_tick or tick) >= self.config.bailout_window_ticks:
            self.liquidate(player, now)
            return "liquidated"
        if state.status == "in_bailout":
            defaulted = any(l.is_bailout and l.status == "defaulted" for l in player.credit.loans)
            if below or defaulted:
                self.liquidate(player, now)
                return "liquidated"
        return None

    def accept_bailout(self, player: G.PlayerState, tick: int, now: float) -> G.Loan:
        state = player.bankruptcy
        if state.status != "bailout_offered" or state.bailout_principal is None:
            raise ValidationError("no bailout on offer", owner_id=player.owner_id, status=state.status)
        if tick - (state.offered_at_tick or tick) >= self.config.bailout_window_ticks:
            raise ValidationError("bailout offer has lapsed", owner_id=player.owner_id)
        loan = self._amortize(state.bailout_principal, self.config.bailout_rate,
                              self.config.bailout_term_days, is_bailout=True)
        player.credit.loans.append(loan)
        player.finances.post(G.Transaction(
            owner_id=player.owner_id, kind="loan", category="bailout",
            amount=loan.principal, timestamp=now, description="Emergency bailout",
        ))
        state.status = "in_bailout"
        return loan

    def liquidate(self, player: G.PlayerState, now: float) -> Decimal:
        proceeds = ZERO
        for asset in player.finances.assets.values():
            if asset.status == "sold":
                continue
            definition = self.assets.get(asset.definition_id)
            if definition is not None:
                proceeds += G.to_money(definition.cost * self.config.liquidation_depreciation)
            asset.status = "sold"
            asset.assigned_route_id = None
        for route in player.routes.values():
            route.status = "cancelled"
        for loan in player.credit.active_loans():
            loan.status = "defaulted"
        if proceeds:
            player.finances.post(G.Transaction(
                owner_id=player.owner_id, kind="liquidation", category="liquidation",
                amount=proceeds, timestamp=now, description="Fleet liquidated",
            ))
        player.bankruptcy.status = "liquidated"
        player.credit.rating = "D"
        logs.warning(f"{player.owner_id} liquidated, fleet sold for {proceeds}")
        return proceeds

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def generate_financial_report(self, player: G.PlayerState, period_days: float, now: float) -> FinancialReport:
        if period_days <= 0:
            raise ValidationError("period must be positive", period_days=period_days)
        span = period_days * 24
        current = [r for r in player.route_records if now - span < r.cycle_timestamp <= now]
        previous = [r for r in player.route_records if now - 2 * span < r.cycle_timestamp <= now - span]

        revenue = sum((r.revenue for r in current), ZERO)
        expenses = sum((r.expenses for r in current), ZERO)
        profit = revenue - expenses
        margin = float(profit / revenue) if revenue else 0.0
        prev_profit = sum((r.profit for r in previous), ZERO)
        growth = float((profit - prev_profit) / abs(prev_profit)) if prev_profit else None

        breakdown: Dict[str, Decimal] = {}
        by_route: Dict[str, RouteSummary] = {}
        for r in current:
            for k, v in r.expense_breakdown.items():
                breakdown[k] = breakdown.get(k, ZERO) + v
            summary = by_route.setdefault(
                r.route_id, RouteSummary(route_id=r.route_id, lane=r.lane, revenue=ZERO, profit=ZERO, cycles=0)
            )
            summary.revenue += r.revenue
            summary.profit += r.profit
            summary.cycles += 1
        top = sorted(by_route.values(), key=lambda s: s.profit, reverse=True)[:3]

        recommendations = []
        if revenue and margin < 0.1:
            recommendations.append("Margins are thin; cut idle assets or move to richer cargo.")
        for s in by_route.values():
            if s.profit < 0:
                recommendations.append(f"Route {s.lane} lost {-s.profit} this period; consider reassigning it.")
        if not player.active_routes() and not player.liquidated:
            recommendations.append("No active routes; create one to start earning.")
        if player.finances.cash < 0:
            recommendations.append("Cash is negative; avoid new spending until loans are serviced.")

        return FinancialReport(
            owner_id=player.owner_id,
            period_days=period_days,
            generated_at=now,
            total_revenue=revenue,
            total_expenses=expenses,
            net_profit=profit,
            profit_margin=margin,
            growth_rate=growth,
            expense_breakdown=breakdown,
            top_routes=top,
            cash=player.finances.cash,
            outstanding_debt=player.credit.outstanding(),
            credit_rating=player.credit.rating,
            recommendations=recommendations,
        )
