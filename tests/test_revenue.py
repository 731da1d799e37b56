import random
from decimal import Decimal

import pytest

import objects as G  # type: ignore
from errors import CreditDenied, ValidationError  # type: ignore
from market import MarketEngine  # type: ignore
from revenue import RevenueEngine, calculate_route_profit, compound_growth, downgrade  # type: ignore
from settings import MarketConfig, RevenueConfig  # type: ignore


@pytest.fixture
def engine(catalog) -> RevenueEngine:
    return RevenueEngine(RevenueConfig(), catalog.assets, hours_per_tick=24.0)


@pytest.fixture
def markets(catalog):
    return MarketEngine(catalog.goods, MarketConfig(), random.Random(0)).seed_states()


def storm(regions, severity=3, kind=G.DisasterType.STORM, chokepoint=None):
    return G.DisasterEvent(id=f"{kind.value}-{severity}", type=kind, affected_regions=set(regions),
                           severity=severity, start_time=0.0, duration_hours=48.0, chokepoint=chokepoint)


def only_route(player):
    return next(iter(player.routes.values()))


def only_asset(player):
    return next(iter(player.finances.assets.values()))


def test_route_profit_is_deterministic():
    args = (Decimal("5000"), Decimal("12000"), Decimal("1"), Decimal("1"))
    assert calculate_route_profit(*args) == Decimal("6000.00")
    assert calculate_route_profit(*args) == calculate_route_profit(*args)


def test_efficiency_from_level_and_specialists(engine):
    asset = G.Asset(definition_id="cargo-ship", level=2,
                    specialists=[G.Specialist(role="navigator"), G.Specialist(role="engineer")])
    assert engine.efficiency(asset) == Decimal("1.3")


def test_severity_three_disaster_cuts_revenue_by_risk(engine, markets, route_player):
    player = route_player()
    route = only_route(player)
    calm = engine.evaluate_route(player, route, markets, [], 0.0, 24.0)
    hit = engine.evaluate_route(player, route, markets, [storm({"asia"})], 0.0, 24.0)
    # 100 units * 100.00, rising trend, 5000nm
    assert calm.revenue == Decimal("5500.00")
    assert hit.revenue == G.to_money(calm.revenue * Decimal("0.82"))
    assert hit.disasters_encountered == ["storm-3"]
    assert hit.expenses == calm.expenses


def test_specialists_mitigate_matching_disasters(engine, route_player):
    sailor = G.Specialist(role="storm pilot", mitigates=[G.DisasterType.STORM])
    risk = engine.risk_modifier([storm({"asia"})], [sailor])
    assert risk == Decimal("3") * Decimal("0.06") * Decimal("0.75")
    # mitigation never goes below the floor
    crew = [sailor] * 5
    assert engine.risk_modifier([storm({"asia"})], crew) == Decimal("3") * Decimal("0.06") * Decimal("0.25")


def test_total_risk_is_capped(engine):
    disasters = [storm({"asia"}, severity=5, kind=k) for k in
                 (G.DisasterType.STORM, G.DisasterType.PIRACY, G.DisasterType.TARIFF, G.DisasterType.PORT_STRIKE)]
    assert engine.risk_modifier(disasters, []) == Decimal("0.9")


def test_canal_blockage_blocks_route(engine, markets, route_player):
    player = route_player(regions=("europe", "asia"), chokepoints=["suez"])
    blockage = storm({"europe", "asia", "africa"}, kind=G.DisasterType.CANAL_BLOCKAGE, chokepoint="suez")
    record = engine.evaluate_route(player, only_route(player), markets, [blockage], 0.0, 24.0)
    assert record.blocked
    assert record.revenue == 0
    assert set(record.expense_breakdown) == {"maintenance", "insurance"}


def test_route_expenses_breakdown(engine, route_player):
    player = route_player()
    breakdown = engine.route_expenses(only_route(player), only_asset(player))
    assert breakdown == {
        "maintenance": Decimal("1000.00"),
        "insurance": Decimal("25.00"),
        "fuel": Decimal("625.00"),
        "port_fees": Decimal("500.00"),
        "crew": Decimal("400.00"),
    }


def test_companion_bonus_scales_revenue(engine, markets, route_player):
    player = route_player()
    record = engine.evaluate_route(player, only_route(player), markets, [], 0.05, 24.0)
    assert record.revenue == Decimal("5775.00")


def test_cycle_transactions_add_up_to_profit(engine, markets, route_player):
    player = route_player()
    idle = G.Asset(definition_id="tanker")
    player.finances.assets[idle.id] = idle
    result = engine.evaluate_cycle({"p1": player}, markets, [], {"p1": 0.0}, 24.0)
    assert len(result.route_records["p1"]) == 1
    total = sum((tx.amount for tx in result.transactions["p1"]), Decimal("0"))
    assert total == result.per_player_profit["p1"]
    assert any(tx.category == "idle_fleet" for tx in result.transactions["p1"])


def test_broken_route_is_skipped(engine, markets, route_player):
    player = route_player(good_id="ghost")
    result = engine.evaluate_cycle({"p1": player}, markets, [], {}, 24.0)
    assert result.skipped_routes == [only_route(player).id]
    assert result.route_records["p1"] == []


def test_compound_growth():
    assert compound_growth(Decimal("1000"), Decimal("0.05"), 1) == Decimal("1000.14")
    assert compound_growth(Decimal("1000"), Decimal("0.05"), 0) == Decimal("1000.00")


def test_growth_rate_is_clamped(engine, route_player):
    player = route_player()
    for _ in range(20):
        player.credit.loans.append(G.Loan(principal=1, rate=Decimal("0.2"), term_days=1, term_remaining_days=1,
                                          remaining_balance=1, payment_per_cycle=1))
    rate = engine.growth_rate(player, [], 0.0, 24.0)
    assert rate == Decimal("-0.95")
    assert compound_growth(Decimal("1000"), rate, 1) > 0


def test_bbb_loan_at_ceiling_is_granted_at_five_percent(engine):
    player = G.PlayerState.new("p1")
    loan = engine.apply_for_loan(player, Decimal("250000"), 365)
    assert loan.rate == Decimal("0.05")
    assert loan.principal == Decimal("250000.00")
    assert loan.remaining_balance == Decimal("262500.00")


def test_bbb_loan_above_ceiling_is_denied(engine):
    player = G.PlayerState.new("p1")
    with pytest.raises(CreditDenied):
        engine.apply_for_loan(player, Decimal("250000.01"), 365)


def test_outstanding_debt_counts_against_ceiling(engine):
    player = G.PlayerState.new("p1")
    player.credit.loans.append(engine.apply_for_loan(player, Decimal("200000"), 365))
    with pytest.raises(CreditDenied):
        engine.apply_for_loan(player, Decimal("60000"), 365)


def test_rating_d_and_liquidated_cannot_borrow(engine):
    poor = G.PlayerState.new("p1", rating="D")
    with pytest.raises(CreditDenied):
        engine.apply_for_loan(poor, Decimal("10"), 30)
    gone = G.PlayerState.new("p2")
    gone.bankruptcy.status = "liquidated"
    with pytest.raises(CreditDenied):
        engine.apply_for_loan(gone, Decimal("10"), 30)


@pytest.mark.parametrize("principal, term", [
    (Decimal("1000"), 0),
    (Decimal("1000"), -30),
    (Decimal("1000"), "30"),
    (Decimal("1000"), True),
    (Decimal("1000"), float("nan")),
    (Decimal("1000"), float("inf")),
    (Decimal("NaN"), 30),
    (Decimal("-5"), 30),
])
def test_invalid_loan_terms(engine, principal, term):
    with pytest.raises(ValidationError):
        engine.apply_for_loan(G.PlayerState.new("p1"), principal, term)


def test_missed_payment_downgrades_one_tier(engine):
    player = G.PlayerState.new("p1", cash=Decimal("100000"))
    player.credit.loans.append(engine.apply_for_loan(player, Decimal("50000"), 30))
    player.finances.cash = Decimal("0")
    engine.update_credit(player, 24.0)
    assert player.credit.rating == "BB"
    assert player.credit.payments_missed == 1
    assert downgrade("D") == "D"


def test_payments_reduce_balance(engine):
    player = G.PlayerState.new("p1", cash=Decimal("100000"))
    loan = engine.apply_for_loan(player, Decimal("36500"), 10)
    player.credit.loans.append(loan)
    txs = engine.update_credit(player, 24.0)
    assert len(txs) == 1
    assert loan.remaining_balance == Decimal("36550.00") - loan.payment_per_cycle
    assert player.finances.cash == Decimal("100000") - loan.payment_per_cycle
    assert player.credit.payments_on_time == 1


def test_bailout_offer_and_acceptance(engine):
    player = G.PlayerState.new("p1", cash=Decimal("-60000"))
    assert engine.check_bankruptcy(player, 1, 24.0) == "bailout_offered"
    assert player.bankruptcy.bailout_principal == Decimal("85000.00")
    loan = engine.accept_bailout(player, 2, 48.0)
    assert loan.is_bailout and loan.rate == Decimal("0.35")
    assert player.finances.cash == Decimal("25000.00")
    assert player.bankruptcy.status == "in_bailout"


def test_unanswered_bailout_leads_to_liquidation(engine, route_player):
    player = route_player(cash=Decimal("-60000"))
    engine.check_bankruptcy(player, 1, 24.0)
    assert engine.check_bankruptcy(player, 3, 72.0) is None
    assert engine.check_bankruptcy(player, 4, 96.0) == "liquidated"
    assert player.liquidated
    assert only_asset(player).status == "sold"
    assert only_route(player).status == "cancelled"
    # cargo ship sold at half its cost
    assert player.finances.cash == Decimal("-60000") + Decimal("12500.00")
    with pytest.raises(ValidationError):
        engine.accept_bailout(player, 5, 120.0)


def test_falling_again_in_bailout_liquidates(engine):
    player = G.PlayerState.new("p1", cash=Decimal("-60000"))
    engine.check_bankruptcy(player, 1, 24.0)
    engine.accept_bailout(player, 1, 24.0)
    player.finances.cash = Decimal("-50001")
    assert engine.check_bankruptcy(player, 2, 48.0) == "liquidated"


def test_financial_report(engine, markets, route_player):
    player = route_player()
    for t in range(1, 5):
        player.route_records.append(engine.evaluate_route(player, only_route(player), markets, [], 0.0, t * 24.0))
    report = engine.generate_financial_report(player, period_days=2, now=96.0)
    assert report.total_revenue == Decimal("11000.00")
    assert report.net_profit == report.total_revenue - report.total_expenses
    assert report.growth_rate == 0.0
    assert report.top_routes[0].cycles == 2
    assert report.credit_rating == "BBB"
