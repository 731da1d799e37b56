import sys
from decimal import Decimal
from pathlib import Path

import pytest
from loguru import logger

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import objects as G  # type: ignore
from register import Catalog  # type: ignore
from settings import SimConfig  # type: ignore


@pytest.fixture(autouse=True)
def quiet_logs():
    logger.remove()
    yield


def make_catalog() -> Catalog:
    goods = [
        G.Good(id="electronics", display_name="Electronics", category=G.GoodCategory.MANUFACTURED,
               base_cost=Decimal("100"), volatility_class=G.VolatilityClass.LOW, home_region="asia",
               initial_supply=1000, initial_demand=1200),
        G.Good(id="coffee", display_name="Coffee", category=G.GoodCategory.RAW_MATERIAL,
               base_cost=Decimal("30"), volatility_class=G.VolatilityClass.LOW, home_region="south-america",
               initial_supply=2000, initial_demand=2000),
        G.Good(id="fresh-fruit", display_name="Fresh Fruit", category=G.GoodCategory.PERISHABLE,
               base_cost=Decimal("15"), volatility_class=G.VolatilityClass.MEDIUM, home_region="africa",
               initial_supply=3000, initial_demand=2800),
        G.Good(id="luxury-watches", display_name="Luxury Watches", category=G.GoodCategory.LUXURY,
               base_cost=Decimal("500"), volatility_class=G.VolatilityClass.HIGH, home_region="europe",
               initial_supply=250, initial_demand=300),
    ]
    assets = [
        G.AssetDefinition(id="cargo-ship", display_name="Cargo Ship", cost=25000, maintenance_per_day=1000,
                          fuel_efficiency=0.8, crew_required=2, capacity=1000, speed=20),
        G.AssetDefinition(id="tanker", display_name="Oil Tanker", cost=40000, maintenance_per_day=1500,
                          fuel_efficiency=0.6, crew_required=3, capacity=2000, speed=15),
    ]
    ports = [
        G.Port(id="shanghai", name="Shanghai", region="asia", x=800, y=150),
        G.Port(id="los-angeles", name="Los Angeles", region="north-america", x=200, y=200),
        G.Port(id="rotterdam", name="Rotterdam", region="europe", x=300, y=100),
        G.Port(id="mumbai", name="Mumbai", region="asia", x=400, y=350),
    ]
    return Catalog(
        goods={g.id: g for g in goods},
        assets={a.id: a for a in assets},
        ports={p.id: p for p in ports},
    )


@pytest.fixture
def catalog() -> Catalog:
    return make_catalog()


@pytest.fixture
def config() -> SimConfig:
    cfg = SimConfig()
    cfg.tick.retry_delay = 0.0
    return cfg


@pytest.fixture
def route_player():
    """Factory: a player owning one cargo ship that sails one active route."""

    def build(
        owner_id: str = "p1",
        cash: Decimal = Decimal("100000"),
        good_id: str = "electronics",
        quantity: int = 100,
        distance: Decimal = Decimal("5000"),
        level: int = 0,
        specialists=(),
        regions=("asia", "north-america"),
        chokepoints=(),
    ) -> G.PlayerState:
        player = G.PlayerState.new(owner_id, cash=cash)
        asset = G.Asset(definition_id="cargo-ship", level=level, status="in_transit",
                        specialists=list(specialists))
        route = G.Route(
            owner_id=owner_id, origin="shanghai", destination="los-angeles",
            origin_region=regions[0], destination_region=regions[1], chokepoints=list(chokepoints),
            assigned_asset_id=asset.id, cargo=G.Cargo(good_id=good_id, quantity=quantity),
            base_distance=distance,
        )
        asset.assigned_route_id = route.id
        player.finances.assets[asset.id] = asset
        player.routes[route.id] = route
        return player

    return build
