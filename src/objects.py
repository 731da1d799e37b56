from __future__ import annotations
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Literal, Optional, Set
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator

CENT = Decimal("0.01")

# ids must stay unique across restarts of a saved world
def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"

def to_money(value) -> Decimal:
    """Quantize anything numeric to the currency minimum unit."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)

def _decimize(v):
    return v if isinstance(v, Decimal) else Decimal(str(v))

# sim_time is hours since world start; day 1 is January 1st
def day_of_year(sim_time: float) -> int:
    return int(sim_time // 24) % 365 + 1

def day_of_week(sim_time: float) -> int:
    return int(sim_time // 24) % 7

# ────────────────────────────────────────────────────────────────────────────
# Goods
# ────────────────────────────────────────────────────────────────────────────

class GoodCategory(str, Enum):
    RAW_MATERIAL = "RAW_MATERIAL"
    MANUFACTURED = "MANUFACTURED"
    LUXURY = "LUXURY"
    PERISHABLE = "PERISHABLE"


class VolatilityClass(str, Enum):
    LOW = "low"        # ±2 %
    MEDIUM = "medium"  # ±5 %
    HIGH = "high"      # ±10 %


class Good(BaseModel):
    """Static commodity definition. Seeded once, never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    category: GoodCategory
    base_cost: Decimal = Field(..., description="Cost per 1 unit before market effects")
    volatility_class: VolatilityClass = VolatilityClass.LOW
    production_cost_modifier: Decimal = Decimal("0")
    home_region: str
    initial_supply: int = Field(1000, ge=0)
    initial_demand: int = Field(1000, ge=0)

    # allow int/float literals in JSON seed files
    @field_validator("base_cost", "production_cost_modifier", mode="before")
    @classmethod
    def _decimize(cls, v):
        return _decimize(v)


Trend = Literal["rising", "falling", "stable", "volatile"]

class MarketState(BaseModel):
    good_id: str
    region: str
    current_price: Decimal
    # price at the previous tick, used for the volatility check
    previous_price: Decimal
    supply: int = Field(..., ge=0)
    demand: int = Field(..., ge=0)
    trend: Trend = "stable"
    last_updated: float = 0.0

    @field_validator("current_price", "previous_price", mode="before")
    @classmethod
    def _decimize(cls, v):
        return _decimize(v)


class TradeDelta(BaseModel):
    """Net supply/demand change from player trades since the last tick."""
    supply: int = 0
    demand: int = 0

    def plus(self, other: TradeDelta) -> TradeDelta:
        return TradeDelta(supply=self.supply + other.supply, demand=self.demand + other.demand)

    def minus(self, other: TradeDelta) -> TradeDelta:
        return TradeDelta(supply=self.supply - other.supply, demand=self.demand - other.demand)


class MarketHistoryPoint(BaseModel):
    price: Decimal
    supply: int
    demand: int
    sim_time: float

    @classmethod
    def of(cls, state: MarketState) -> MarketHistoryPoint:
        return cls(price=state.current_price, supply=state.supply, demand=state.demand, sim_time=state.last_updated)


class MarketView(BaseModel):
    """A market as players see it: the live state plus its recent ticks, oldest first."""
    state: MarketState
    history: List[MarketHistoryPoint] = Field(default_factory=list)

# ────────────────────────────────────────────────────────────────────────────
# Disasters
# ────────────────────────────────────────────────────────────────────────────

class DisasterType(str, Enum):
    STORM = "storm"
    PIRACY = "piracy"
    PORT_STRIKE = "port_strike"
    SUPPLY_SHORTAGE = "supply_shortage"
    TARIFF = "tariff"
    HURRICANE = "hurricane"
    CANAL_BLOCKAGE = "canal_blockage"


class DisasterEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: DisasterType
    affected_regions: Set[str]
    severity: int = Field(..., ge=1, le=5)
    start_time: float
    duration_hours: float = Field(..., gt=0)
    # only canal blockages carry a chokepoint; they block routes instead of moving prices
    chokepoint: Optional[str] = None

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration_hours

    def is_active(self, now: float) -> bool:
        return now < self.end_time

    @property
    def affects_prices(self) -> bool:
        return self.chokepoint is None

# ────────────────────────────────────────────────────────────────────────────
# Ports, assets & routes
# ────────────────────────────────────────────────────────────────────────────

class Port(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    region: str
    x: float
    y: float


class AssetDefinition(BaseModel):
    """Blueprint for a transport asset (ship, plane...)."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    cost: Decimal
    maintenance_per_day: Decimal
    fuel_efficiency: Decimal = Field(Decimal("1"), gt=0)
    crew_required: int = Field(1, ge=0)
    capacity: int = Field(1000, gt=0)
    speed: Decimal = Decimal("20")

    @field_validator("cost", "maintenance_per_day", "fuel_efficiency", "speed", mode="before")
    @classmethod
    def _decimize(cls, v):
        return _decimize(v)


class Specialist(BaseModel):
    id: str = Field(default_factory=lambda: new_id("specialist"))
    role: str
    # disaster types this specialist softens
    mitigates: List[DisasterType] = Field(default_factory=list)


class Asset(BaseModel):
    id: str = Field(default_factory=lambda: new_id("asset"))
    definition_id: str
    level: int = Field(0, ge=0, le=10)
    status: Literal["idle", "in_transit", "sold"] = "idle"
    specialists: List[Specialist] = Field(default_factory=list)
    assigned_route_id: Optional[str] = None


class Cargo(BaseModel):
    good_id: str
    quantity: int = Field(..., gt=0)


class Route(BaseModel):
    id: str = Field(default_factory=lambda: new_id("route"))
    owner_id: str
    origin: str
    destination: str
    origin_region: str
    destination_region: str
    chokepoints: List[str] = Field(default_factory=list)
    assigned_asset_id: str
    cargo: Cargo
    base_distance: Decimal
    risk_level: float = Field(0.0, ge=0.0, le=1.0)
    status: Literal["active", "cancelled"] = "active"
    created_at: float = 0.0

    @field_validator("base_distance", mode="before")
    @classmethod
    def _decimize(cls, v):
        return _decimize(v)

    @property
    def lane(self) -> str:
        return f"{self.origin}->{self.destination}"

    @property
    def regions(self) -> Set[str]:
        return {self.origin_region, self.destination_region}


class RoutePerformanceRecord(BaseModel):
    """One row per active route per tick. Never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("perf"))
    route_id: str
    owner_id: str
    lane: str
    cycle_timestamp: float
    revenue: Decimal
    expenses: Decimal
    profit: Decimal
    expense_breakdown: Dict[str, Decimal] = Field(default_factory=dict)
    disasters_encountered: List[str] = Field(default_factory=list)
    cargo_good_ids: List[str] = Field(default_factory=list)
    blocked: bool = False

# ────────────────────────────────────────────────────────────────────────────
# Player finances
# ────────────────────────────────────────────────────────────────────────────

TransactionKind = Literal[
    "buy", "sell", "income", "expense", "loan", "loan_payment", "asset_purchase", "liquidation"
]

class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("tx"))
    owner_id: str
    kind: TransactionKind
    category: str = ""
    good_id: Optional[str] = None
    quantity: int = 0
    unit_price: Optional[Decimal] = None
    # signed from the player's point of view: income positive, spend negative
    amount: Decimal
    timestamp: float = 0.0
    description: str = ""


class PlayerFinances(BaseModel):
    cash: Decimal = Decimal("100000")
    inventory: Dict[str, int] = Field(default_factory=dict)
    assets: Dict[str, Asset] = Field(default_factory=dict)
    total_revenue: Decimal = Decimal("0")
    total_expenses: Decimal = Decimal("0")
    transactions: List[Transaction] = Field(default_factory=list)

    def post(self, tx: Transaction) -> None:
        self.cash += tx.amount
        if tx.kind in ("income", "sell", "liquidation"):
            self.total_revenue += tx.amount
        elif tx.kind in ("expense", "loan_payment"):
            self.total_expenses += -tx.amount
        self.transactions.append(tx)


CreditRating = Literal["AAA", "AA", "A", "BBB", "BB", "B", "CCC", "CC", "C", "D"]
RATING_ORDER: List[str] = ["AAA", "AA", "A", "BBB", "BB", "B", "CCC", "CC", "C", "D"]

class Loan(BaseModel):
    id: str = Field(default_factory=lambda: new_id("loan"))
    principal: Decimal
    rate: Decimal
    term_days: float
    term_remaining_days: float
    remaining_balance: Decimal
    payment_per_cycle: Decimal
    status: Literal["active", "paid", "defaulted"] = "active"
    is_bailout: bool = False
    missed_payments: int = 0


class CreditProfile(BaseModel):
    owner_id: str
    rating: CreditRating = "BBB"
    loans: List[Loan] = Field(default_factory=list)
    payments_on_time: int = 0
    payments_missed: int = 0

    def active_loans(self) -> List[Loan]:
        return [l for l in self.loans if l.status == "active"]

    def outstanding(self, include_bailout: bool = True) -> Decimal:
        return sum(
            (l.remaining_balance for l in self.active_loans() if include_bailout or not l.is_bailout),
            Decimal("0"),
        )


class BankruptcyState(BaseModel):
    status: Literal["solvent", "bailout_offered", "in_bailout", "liquidated"] = "solvent"
    offered_at_tick: Optional[int] = None
    bailout_principal: Optional[Decimal] = None

# ────────────────────────────────────────────────────────────────────────────
# Companion
# ────────────────────────────────────────────────────────────────────────────

class CompanionLevel(str, Enum):
    NOVICE = "novice"
    APPRENTICE = "apprentice"
    JOURNEYMAN = "journeyman"
    EXPERT = "expert"
    MASTER = "master"
    LEGENDARY = "legendary"

COMPANION_LEVELS: List[CompanionLevel] = list(CompanionLevel)

class RoutePattern(BaseModel):
    route_id: str
    lane: str
    avg_profit_margin: float = 0.0
    success_rate: float = 0.0
    optimal_goods: List[str] = Field(default_factory=list)
    margin_history: List[float] = Field(default_factory=list)
    profit_history: List[float] = Field(default_factory=list)
    good_contributions: Dict[str, float] = Field(default_factory=dict)
    avg_revenue: float = 0.0
    times_used: int = 0

    @property
    def established(self) -> bool:
        return self.times_used > 0 and bool(self.optimal_goods)


class PricePoint(BaseModel):
    price: Decimal
    sim_time: float


class MarketInsight(BaseModel):
    good_id: str
    region: str
    price_history: List[PricePoint] = Field(default_factory=list)
    demand_pattern: Literal["stable", "rising", "falling", "volatile"] = "stable"
    # day-of-week windows (0-6)
    best_buy_windows: List[int] = Field(default_factory=list)
    best_sell_windows: List[int] = Field(default_factory=list)
    window_averages: Dict[int, float] = Field(default_factory=dict)
    profit_potential: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.region}:{self.good_id}"


class CompanionState(BaseModel):
    owner_id: str
    level: CompanionLevel = CompanionLevel.NOVICE
    experience: int = Field(0, ge=0)
    total_suggestions: int = 0
    successful_suggestions: int = 0
    accuracy: float = 0.0
    risk_tolerance: float = Field(0.5, ge=0.0, le=1.0)
    # profit bonus received from a rival companion's leaked intel
    rival_intel_bonus: float = 0.0
    route_patterns: Dict[str, RoutePattern] = Field(default_factory=dict)
    market_insights: Dict[str, MarketInsight] = Field(default_factory=dict)
    last_suggestion_tick: Optional[int] = None


SuggestionType = Literal["route", "trade", "upgrade", "warning"]
SuggestionStatus = Literal["pending", "accepted", "dismissed", "expired"]

class Suggestion(BaseModel):
    id: str = Field(default_factory=lambda: new_id("sugg"))
    owner_id: str
    type: SuggestionType
    priority: Literal["low", "medium", "high", "critical"] = "medium"
    title: str
    description: str = ""
    # route id, good id or asset id depending on type
    target: str
    expected_profit: Decimal
    risk_level: float = Field(..., ge=0.0, le=1.0)
    confidence: float = 0.0
    status: SuggestionStatus = "pending"
    created_at: float
    expires_at: float
    accepted_at: Optional[float] = None
    accepted_tick: Optional[int] = None
    # reference value captured at creation (e.g. price for trade suggestions)
    baseline: Optional[Decimal] = None
    # predicted price move for trade suggestions
    direction: Optional[Literal["up", "down"]] = None
    resolved: bool = False
    outcome_success: Optional[bool] = None


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: new_id("note"))
    kind: str
    message: str
    sim_time: float = 0.0
    data: Dict[str, str] = Field(default_factory=dict)

# ────────────────────────────────────────────────────────────────────────────
# Player partition & world snapshot
# ────────────────────────────────────────────────────────────────────────────

class PlayerState(BaseModel):
    owner_id: str
    # bumped on every committed change to this partition
    revision: int = 0
    finances: PlayerFinances = Field(default_factory=PlayerFinances)
    routes: Dict[str, Route] = Field(default_factory=dict)
    route_records: List[RoutePerformanceRecord] = Field(default_factory=list)
    companion: CompanionState
    suggestions: Dict[str, Suggestion] = Field(default_factory=dict)
    credit: CreditProfile
    bankruptcy: BankruptcyState = Field(default_factory=BankruptcyState)
    notifications: List[Notification] = Field(default_factory=list)

    @classmethod
    def new(cls, owner_id: str, cash: Decimal = Decimal("100000"), rating: str = "BBB") -> PlayerState:
        return cls(
            owner_id=owner_id,
            finances=PlayerFinances(cash=cash),
            companion=CompanionState(owner_id=owner_id),
            credit=CreditProfile(owner_id=owner_id, rating=rating),
        )

    def active_routes(self) -> List[Route]:
        return [r for r in self.routes.values() if r.status == "active"]

    @property
    def liquidated(self) -> bool:
        return self.bankruptcy.status == "liquidated"


class WorldSnapshot(BaseModel):
    """Immutable view of the shared world handed to readers and subscribers."""

    model_config = ConfigDict(frozen=True)

    version: int
    tick: int
    sim_time: float
    markets: Dict[str, MarketState]
    disasters: List[DisasterEvent]
