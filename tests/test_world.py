import threading
from decimal import Decimal

import pytest
from pydantic import ValidationError as ModelValidationError

import objects as G  # type: ignore
from errors import ConcurrentUpdateConflict  # type: ignore
from notifications import EventType  # type: ignore
from sim import Simulation  # type: ignore
from world import WorldStateStore  # type: ignore


@pytest.fixture
def sim(catalog, config) -> Simulation:
    config.tick.max_action_retries = 1000
    return Simulation.create(config=config, catalog=catalog, seed=1)


def register(sim, *owners, cash="100000"):
    for owner in owners:
        assert sim.actions.register_player(owner, cash=cash).success


def run_threads(target, args_list):
    results = [None] * len(args_list)

    def run(i, args):
        results[i] = target(*args)

    threads = [threading.Thread(target=run, args=(i, a)) for i, a in enumerate(args_list)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def test_snapshot_is_frozen(sim):
    snapshot = sim.store.snapshot()
    with pytest.raises(ModelValidationError):
        snapshot.tick = 5


def test_snapshot_is_a_copy(sim):
    snapshot = sim.store.snapshot()
    snapshot.markets["electronics"].supply = 0
    assert sim.store.market("electronics").supply == 1000


def test_concurrent_buys_never_oversell(sim):
    owners = [f"p{i}" for i in range(50)]
    register(sim, *owners)
    results = run_threads(sim.actions.buy_item, [("electronics", 30, o) for o in owners])

    ok = [r for r in results if r.success]
    failed = [r for r in results if not r.success]
    assert len(ok) == 33
    assert {r.error.code for r in failed} == {"insufficient_supply"}
    assert sim.store.market("electronics").supply == 10
    assert sim.store.market("electronics").demand == 1200 + 33 * 30
    assert sim.store.pending_delta("electronics").supply == -990


def test_concurrent_sells_all_land(sim):
    owners = [f"s{i}" for i in range(20)]
    register(sim, *owners)
    for o in owners:
        assert sim.actions.buy_item("coffee", 10, o).success
    results = run_threads(sim.actions.sell_item, [("coffee", 10, o) for o in owners])
    assert all(r.success for r in results)
    assert sim.store.market("coffee").supply == 2000
    assert all(sim.store.player_snapshot(o).finances.inventory == {} for o in owners)


def test_stale_write_gives_up_after_retries(catalog, config):
    config.tick.max_action_retries = 0
    sim = Simulation.create(config=config, catalog=catalog)
    register(sim, "p1")
    store = sim.store
    nested = []

    def touch(player, _market):
        player.companion.risk_tolerance = 0.3

    def outer(player, _market):
        if not nested:
            nested.append(True)
            store.transact_player("p1", touch)
        player.companion.risk_tolerance = 0.9

    with pytest.raises(ConcurrentUpdateConflict) as exc:
        store.transact_player("p1", outer)
    assert exc.value.retryable
    assert store.player_snapshot("p1").companion.risk_tolerance == 0.3


def test_commit_tick_rebases_trades_made_during_the_tick(sim):
    register(sim, "p1")
    store = sim.store
    read = store.read_for_tick()
    assert sim.actions.buy_item("electronics", 100, "p1").success

    store.commit_tick(read, dict(read.snapshot.markets), [], 1, 24.0, lambda players: [])
    market = store.market("electronics")
    assert (market.supply, market.demand) == (900, 1300)
    assert store.pending_delta("electronics") == G.TradeDelta()
    assert store.player_snapshot("p1").finances.inventory == {"electronics": 100}
    assert (store.tick, store.sim_time) == (1, 24.0)


def test_failed_commit_writes_nothing(sim):
    register(sim, "p1")
    store = sim.store
    before = store.to_document()
    read = store.read_for_tick()
    moved = {k: v.model_copy(update={"supply": 1}) for k, v in read.snapshot.markets.items()}

    def explode(players):
        players["p1"].finances.cash = Decimal("0")
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.commit_tick(read, moved, [], 1, 24.0, explode)
    assert store.to_document() == before


def test_commit_publishes_world_and_player_events(sim):
    register(sim, "p1")
    store = sim.store
    seen = []
    store.bus.on(EventType.WORLD_COMMITTED, seen.append)

    read = store.read_for_tick()
    snapshot = store.commit_tick(read, dict(read.snapshot.markets), [], 1, 24.0,
                                 lambda players: [("p1", {"kind": "hello"})])
    assert seen[-1].data == {"version": snapshot.version, "cause": "tick", "tick": 1, "disasters": 0}
    events, pos = store.bus.drain("p1")
    assert [e.event_type for e in events] == [EventType.PLAYER_NOTICE]
    assert events[0].data["kind"] == "hello"
    assert store.bus.drain("p1", pos) == ([], pos)


def test_document_round_trip(sim):
    register(sim, "p1")
    assert sim.actions.buy_item("electronics", 5, "p1").success
    doc = sim.store.to_document()
    restored = WorldStateStore.from_document(doc)
    assert restored.to_document() == doc
    assert restored.pending_delta("electronics").supply == -5


def test_commit_records_market_history(sim):
    register(sim, "p1")
    store = sim.store
    read = store.read_for_tick()
    assert sim.actions.buy_item("electronics", 100, "p1").success
    moved = {k: v.model_copy(update={"last_updated": 24.0}) for k, v in read.snapshot.markets.items()}
    store.commit_tick(read, moved, [], 1, 24.0, lambda players: [])

    history = store.market_history("electronics")
    assert [(p.supply, p.demand, p.sim_time) for p in history] == [(900, 1300, 24.0)]
    assert history[0].price == store.market("electronics").current_price

    restored = WorldStateStore.from_document(store.to_document())
    assert restored.market_history("electronics") == history
