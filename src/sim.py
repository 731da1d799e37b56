import random
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

import objects as G
from actions import PlayerActions
from companion import CompanionLearner, EspionageRoller, profit_bonus
from disasters import DisasterEngine
from errors import ErrorInfo, SimulationError, SkippedTick
from logger import init_logging, logs
from market import MarketEngine
from notifications import EventType, NotificationBus
from register import Catalog, load_catalog
from revenue import RevenueEngine
from settings import SimConfig
from world import Notice, WorldDocument, WorldStateStore

# Constants
WORLD_STATE_PATH = Path("world_state.json")
RECENT_TRADES = 20


class TickResult(BaseModel):
    success: bool
    tick: Optional[int] = None
    version: Optional[int] = None
    market_updated: bool = False
    disaster_count: int = 0
    skipped_goods: List[str] = Field(default_factory=list)
    skipped_routes: List[str] = Field(default_factory=list)
    new_suggestions: int = 0
    # overlap | timeout | error
    reason: Optional[str] = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def skipped(cls, err: SimulationError) -> "TickResult":
        return cls(success=False, reason=err.context.get("reason", "error"), error=err.to_info())


class Deadline:
    """Wall-clock budget for one tick, checked between phases and per item."""

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.expires = clock() + budget_seconds

    def check(self, phase: str = "") -> None:
        if self.clock() > self.expires:
            raise SkippedTick("tick exceeded its time budget", reason="timeout", phase=phase)


# -----------------------------------
# Persistence
# -----------------------------------

def new_store(catalog: Catalog, config: SimConfig, bus: Optional[NotificationBus] = None) -> WorldStateStore:
    markets = MarketEngine(catalog.goods, config.market, random.Random(config.tick.seed)).seed_states()
    return WorldStateStore(markets, bus=bus, config=config.tick)


def load_world(
    catalog: Catalog,
    config: SimConfig,
    path: Path = WORLD_STATE_PATH,
    bus: Optional[NotificationBus] = None,
) -> WorldStateStore:
    if not path.exists():
        return new_store(catalog, config, bus)
    doc = WorldDocument.model_validate_json(path.read_text(encoding="utf-8"))
    # goods added to the catalog since the save start from their seed state
    missing = {k: v for k, v in new_store(catalog, config).snapshot().markets.items() if k not in doc.markets}
    doc.markets.update(missing)
    logs.info(f"Loaded world v{doc.version} (tick {doc.tick}, {len(doc.players)} players) from {path}")
    return WorldStateStore.from_document(doc, bus=bus, config=config.tick)


def save_world(store: WorldStateStore, path: Path = WORLD_STATE_PATH) -> None:
    path.write_text(store.to_document().model_dump_json(indent=2), encoding="utf-8")


# -----------------------------------
# Simulation
# -----------------------------------

class Simulation:
    """
    Owns the engines and runs the world tick:
    disasters -> market -> revenue -> companion -> commit.

    One tick at a time. The tick works on a copy read from the store and
    writes only at commit, so an abandoned tick leaves no trace.
    """

    def __init__(
        self,
        store: WorldStateStore,
        catalog: Catalog,
        config: SimConfig,
        seed: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.catalog = catalog
        self.config = config
        self.clock = clock
        self.random = random.Random(config.tick.seed if seed is None else seed)
        hours = config.tick.hours_per_tick

        self.market = MarketEngine(catalog.goods, config.market, self.random)
        self.disasters = DisasterEngine(config.disasters, self.random)
        self.revenue = RevenueEngine(config.revenue, catalog.assets, hours)
        self.companion = CompanionLearner(config.companion, hours)
        self.espionage = EspionageRoller(config.companion)
        self.actions = PlayerActions(store, catalog, self.revenue, config)
        self._tick_lock = threading.Lock()

    @classmethod
    def create(cls, config: Optional[SimConfig] = None, catalog: Optional[Catalog] = None,
               seed: Optional[int] = None, **kwargs) -> "Simulation":
        config = config or SimConfig()
        catalog = catalog or load_catalog()
        return cls(new_store(catalog, config), catalog, config, seed=seed, **kwargs)

    @property
    def bus(self) -> NotificationBus:
        return self.store.bus

    def run_tick(self) -> TickResult:
        if not self._tick_lock.acquire(blocking=False):
            return self._skip(SkippedTick("a tick is already running", reason="overlap"))
        try:
            return self._run_tick()
        except SkippedTick as e:
            return self._skip(e)
        except Exception as e:
            logs.exception("Tick failed, nothing committed")
            return TickResult(success=False, reason="error", error=SimulationError(str(e)).to_info())
        finally:
            self._tick_lock.release()

    def _skip(self, err: SkippedTick) -> TickResult:
        logs.warning(f"Tick skipped ({err.context.get('reason')}): {err.detail}")
        self.bus.emit(EventType.TICK_SKIPPED, {k: str(v) for k, v in err.context.items()})
        return TickResult.skipped(err)

    @logs.timed("tick")
    def _run_tick(self) -> TickResult:
        deadline = Deadline(self.config.tick.tick_budget_seconds, self.clock)
        read = self.store.read_for_tick()
        snap = read.snapshot
        tick = snap.tick + 1
        now = snap.sim_time + self.config.tick.hours_per_tick

        disasters = self.disasters.process(snap.disasters, now)
        spawned = self.disasters.maybe_spawn(None, now)
        if spawned is not None:
            disasters.append(spawned)
        deadline.check("disasters")

        market = self.market.tick(snap.markets, disasters, read.pending, now, deadline.check)
        deadline.check("market")

        bonuses = {oid: profit_bonus(p.companion, self.config.companion) for oid, p in read.players.items()}
        cycle = self.revenue.evaluate_cycle(read.players, market.states, disasters, bonuses, now, deadline.check)
        deadline.check("revenue")

        learned: Dict[str, G.CompanionState] = {}
        for oid in sorted(read.players):
            deadline.check("companion")
            player = read.players[oid]
            if player.liquidated:
                continue
            learned[oid] = self.companion.ingest(
                player.companion, cycle.route_records.get(oid, []), market.states, traded_goods(player), now
            )
        deadline.check("companion")

        new_suggestions = 0

        def apply_players(players: Dict[str, G.PlayerState]) -> List[Notice]:
            nonlocal new_suggestions
            notices: List[Notice] = []
            for oid in sorted(players):
                player = players[oid]
                if player.liquidated:
                    continue
                for tx in cycle.transactions.get(oid, []):
                    player.finances.post(tx)
                player.route_records.extend(cycle.route_records.get(oid, []))

                companion = learned.get(oid)
                if companion is not None:
                    if companion.level != player.companion.level:
                        notify(player, notices, "companion_level", f"Companion reached {companion.level.value}", now)
                    # the player's own setting may have changed mid-tick
                    companion.risk_tolerance = player.companion.risk_tolerance
                    player.companion = companion

                self.companion.expire_suggestions(player.suggestions, now)
                self.companion.resolve_suggestions(player.companion, player, market.states, tick)
                for s in self.companion.generate_suggestions(
                    player, player.companion, market.states, disasters, tick, now
                ):
                    player.suggestions[s.id] = s
                    new_suggestions += 1
                    notify(player, notices, "suggestion", s.title, now, suggestion_id=s.id)

                self.revenue.update_credit(player, now)
                event = self.revenue.check_bankruptcy(player, tick, now)
                if event == "bailout_offered":
                    notify(player, notices, event,
                           f"Bailout of {player.bankruptcy.bailout_principal} offered", now)
                elif event == "liquidated":
                    notify(player, notices, event, "Company liquidated", now)

            self._roll_espionage(players, notices, now)
            return notices

        committed = self.store.commit_tick(read, market.states, disasters, tick, now, apply_players)
        logs.info(
            f"Tick {tick} committed as v{committed.version}: "
            f"{len(disasters)} active disaster(s), {len(cycle.skipped_routes)} route(s) skipped"
        )
        return TickResult(
            success=True,
            tick=tick,
            version=committed.version,
            market_updated=bool(market.states),
            disaster_count=len(disasters),
            skipped_goods=market.skipped,
            skipped_routes=cycle.skipped_routes,
            new_suggestions=new_suggestions,
        )

    def _roll_espionage(self, players: Dict[str, G.PlayerState], notices: List[Notice], now: float) -> None:
        active = [players[oid] for oid in sorted(players) if not players[oid].liquidated]
        for player in active:
            rivals = [p.companion for p in active if p.owner_id != player.owner_id]
            event = self.espionage.roll(player.companion, rivals, self.random)
            if event is not None:
                notify(player, notices, "espionage",
                       f"Your companion's intel leaked to {event.beneficiary_id}", now,
                       beneficiary=event.beneficiary_id)

    def handle_tick_request(self) -> Tuple[int, dict]:
        """HTTP-style trigger: (status, body)."""
        result = self.run_tick()
        if result.success:
            return 200, {
                "success": True,
                "marketUpdated": result.market_updated,
                "disasterCount": result.disaster_count,
            }
        status = 409 if result.reason in ("overlap", "timeout") else 500
        return status, {"error": result.error.detail if result.error else "tick failed"}


def traded_goods(player: G.PlayerState) -> set:
    goods = {r.cargo.good_id for r in player.active_routes()}
    goods.update(player.finances.inventory)
    goods.update(tx.good_id for tx in player.finances.transactions[-RECENT_TRADES:] if tx.good_id)
    return goods


def notify(player: G.PlayerState, notices: List[Notice], kind: str, message: str, now: float, **data) -> None:
    note = G.Notification(kind=kind, message=message, sim_time=now, data={k: str(v) for k, v in data.items()})
    player.notifications.append(note)
    notices.append((player.owner_id, {"kind": kind, "message": message, **note.data}))


class TickScheduler:
    """Runs ticks on a background thread every ``interval`` seconds. A late tick is skipped, never queued."""

    def __init__(self, simulation: Simulation, interval: Optional[float] = None, keep_results: int = 100):
        self.simulation = simulation
        self.interval = interval if interval is not None else simulation.config.tick.interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        # oldest first, bounded
        self.results: Deque[TickResult] = deque(maxlen=keep_results)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="tick-scheduler", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.results.append(self.simulation.run_tick())

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


# -----------------------------------
# Main Simulation Loop
# -----------------------------------

def main(ticks: int = 1, seed: int = 0, config_path: Optional[str] = None,
         state_path: Path = WORLD_STATE_PATH) -> None:
    """Run the simulation for a number of ticks using the given RNG seed."""

    config = SimConfig.load(config_path)
    init_logging(config.log)
    catalog = load_catalog()
    store = load_world(catalog, config, state_path)
    simulation = Simulation(store, catalog, config, seed=seed)

    for _ in range(ticks):
        simulation.run_tick()
    save_world(store, state_path)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Run the trade-lane economy simulation")
    parser.add_argument("--ticks", type=int, default=10, help="Number of ticks to run")
    parser.add_argument("--seed", type=int, default=0, help="RNG seed for deterministic runs")
    parser.add_argument("--config", default=None, help="Path to a sim.yml config file")
    parser.add_argument("--state", type=Path, default=WORLD_STATE_PATH, help="World state JSON file")
    args = parser.parse_args()

    main(ticks=args.ticks, seed=args.seed, config_path=args.config, state_path=args.state)
