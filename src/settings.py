import os
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field


def project_root() -> str:
    """
    src/settings.py → src → project_root
    """
    return os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))


class LogConfig(BaseModel):
    dir: Optional[str] = None  # no file sink unless set
    rotation: str = "1 day"
    retention: str = "30 days"
    level: str = "INFO"


class MarketConfig(BaseModel):
    volatility_ranges: Dict[str, float] = Field(
        default_factory=lambda: {"low": 0.02, "medium": 0.05, "high": 0.10}
    )
    drift_range: Tuple[float, float] = (0.9, 1.1)
    disaster_step: Decimal = Decimal("0.2")
    disaster_multiplier_cap: Decimal = Decimal("3.0")
    rising_ratio: float = 1.2
    falling_ratio: float = 0.8
    volatile_threshold: float = 0.15
    # seasonal amplitude per good category
    seasonal_amplitude: Dict[str, float] = Field(
        default_factory=lambda: {"PERISHABLE": 0.05, "LUXURY": 0.03}
    )


class DisasterConfig(BaseModel):
    regions: List[str] = Field(
        default_factory=lambda: ["north-america", "europe", "asia", "africa", "south-america", "oceania"]
    )
    spawn_probability: float = 0.05
    generic_types: List[str] = Field(
        default_factory=lambda: ["storm", "piracy", "port_strike", "supply_shortage", "tariff"]
    )
    severity_range: Tuple[int, int] = (1, 5)
    duration_range: Tuple[int, int] = (12, 60)
    max_regions: int = 3
    hurricane_probability: float = 0.02
    # day-of-year window, inclusive
    hurricane_season: Tuple[int, int] = (152, 334)
    hurricane_regions: List[str] = Field(
        default_factory=lambda: ["north-america", "asia", "oceania"]
    )
    hurricane_severity_range: Tuple[int, int] = (2, 5)
    canal_severity_range: Tuple[int, int] = (3, 5)
    canal_blockage_probability: float = 0.005
    # chokepoint id -> regions whose lanes cross it
    chokepoints: Dict[str, List[str]] = Field(
        default_factory=lambda: {"suez": ["europe", "asia", "africa"]}
    )


class RevenueConfig(BaseModel):
    profit_rate_per_distance: Decimal = Decimal("0.0001")
    level_efficiency: Decimal = Decimal("0.1")
    specialist_efficiency: Decimal = Decimal("0.05")
    risk_per_severity: Decimal = Decimal("0.06")
    mitigation_per_specialist: Decimal = Decimal("0.25")
    mitigation_floor: Decimal = Decimal("0.25")
    max_risk: Decimal = Decimal("0.9")
    fuel_cost_per_distance: Decimal = Decimal("0.1")
    port_fee: Decimal = Decimal("250")
    crew_wage_per_day: Decimal = Decimal("200")
    insurance_rate_per_day: Decimal = Decimal("0.001")
    port_stops: int = 2
    # map units to nautical miles
    distance_per_map_unit: Decimal = Decimal("10")
    trend_modifiers: Dict[str, Decimal] = Field(default_factory=lambda: {
        "rising": Decimal("1.1"), "falling": Decimal("0.9"),
        "stable": Decimal("1.0"), "volatile": Decimal("1.0"),
    })
    base_growth_rate: Decimal = Decimal("0.05")
    labor_bonus_per_specialist: Decimal = Decimal("0.005")
    disaster_growth_penalty: Decimal = Decimal("0.01")
    min_growth_rate: Decimal = Decimal("-0.95")
    max_growth_rate: Decimal = Decimal("2.0")
    interest_rates: Dict[str, Decimal] = Field(default_factory=lambda: {
        "AAA": Decimal("0.03"), "AA": Decimal("0.035"), "A": Decimal("0.04"),
        "BBB": Decimal("0.05"), "BB": Decimal("0.065"), "B": Decimal("0.08"),
        "CCC": Decimal("0.10"), "CC": Decimal("0.125"), "C": Decimal("0.15"), "D": Decimal("0.20"),
    })
    loan_ceilings: Dict[str, Decimal] = Field(default_factory=lambda: {
        "AAA": Decimal("1000000"), "AA": Decimal("750000"), "A": Decimal("500000"),
        "BBB": Decimal("250000"), "BB": Decimal("150000"), "B": Decimal("100000"),
        "CCC": Decimal("50000"), "CC": Decimal("25000"), "C": Decimal("10000"), "D": Decimal("0"),
    })
    # rating -> (max debt-to-asset ratio, min on-time payment share)
    rating_thresholds: Dict[str, Tuple[float, float]] = Field(default_factory=lambda: {
        "AAA": (0.1, 1.0), "AA": (0.2, 0.95), "A": (0.3, 0.9), "BBB": (0.4, 0.85),
        "BB": (0.5, 0.8), "B": (0.6, 0.75), "CCC": (0.7, 0.7), "CC": (0.8, 0.65),
        "C": (0.9, 0.6), "D": (1.0, 0.0),
    })
    bankruptcy_threshold: Decimal = Decimal("-50000")
    bailout_rate: Decimal = Decimal("0.35")
    bailout_buffer: Decimal = Decimal("25000")
    bailout_term_days: float = 180
    bailout_window_ticks: int = 3
    max_missed_bailout_payments: int = 3
    liquidation_depreciation: Decimal = Decimal("0.5")


class CompanionConfig(BaseModel):
    experience_thresholds: List[int] = Field(default_factory=lambda: [0, 100, 500, 1500, 5000, 12000])
    profit_bonuses: List[float] = Field(default_factory=lambda: [0.0, 0.01, 0.02, 0.03, 0.04, 0.05])
    confidence_thresholds: List[float] = Field(default_factory=lambda: [0.8, 0.7, 0.6, 0.5, 0.4, 0.3])
    max_risk: List[float] = Field(default_factory=lambda: [0.2, 0.3, 0.45, 0.6, 0.75, 0.9])
    # suggestion lifetime in ticks per level
    horizon_ticks: List[int] = Field(default_factory=lambda: [5, 7, 10, 14, 20, 30])
    max_profit_bonus: float = 0.05
    min_pattern_cycles: int = 3
    history_limit: int = 50
    price_history_limit: int = 100
    suggestion_interval_ticks: int = 30
    resolve_after_ticks: int = 5
    accuracy_weight: float = 0.2
    max_suggestions: int = 5
    espionage_risk_threshold: float = 0.7
    espionage_probability: float = 0.01
    espionage_leak_fraction: float = 0.1


class TickConfig(BaseModel):
    hours_per_tick: float = 24.0
    tick_budget_seconds: float = 5.0
    interval_seconds: float = 60.0
    max_action_retries: int = 5
    retry_delay: float = 0.001
    retry_backoff: float = 2.0
    # per-good market points kept for overviews
    market_history_limit: int = 90
    seed: int = 0


class SimConfig(BaseModel):
    market: MarketConfig = Field(default_factory=MarketConfig)
    disasters: DisasterConfig = Field(default_factory=DisasterConfig)
    revenue: RevenueConfig = Field(default_factory=RevenueConfig)
    companion: CompanionConfig = Field(default_factory=CompanionConfig)
    tick: TickConfig = Field(default_factory=TickConfig)
    log: LogConfig = Field(default_factory=LogConfig)

    @classmethod
    def load(cls, path: str | None = None) -> "SimConfig":
        """
        Load YAML config.
        - explicit path, else $SIM_CONFIG, else <project_root>/config/sim.yml
        - the default file is optional; an explicit one must exist
        """
        explicit = path or os.getenv("SIM_CONFIG")
        if explicit is None:
            path = os.path.join(project_root(), "config", "sim.yml")
            if not os.path.exists(path):
                return cls()
        else:
            path = explicit
            if not os.path.exists(path):
                raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        return cls(**raw)
