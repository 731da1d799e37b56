from pathlib import Path
import sys
import random

# Make src modules discoverable
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from register import load_catalog  # type: ignore
from settings import SimConfig  # type: ignore
import sim  # type: ignore

import matplotlib.pyplot as plt


def setup_simulation(seed: int):
    """A fresh world with two trading players, each running one route."""
    config = SimConfig.load()
    catalog = load_catalog()
    simulation = sim.Simulation.create(config=config, catalog=catalog, seed=seed)
    actions = simulation.actions

    lanes = [
        ("alpha", "shanghai", "los-angeles", "electronics"),
        ("beta", "rotterdam", "mumbai", "machinery"),
    ]
    for player_id, origin, destination, good_id in lanes:
        actions.register_player(player_id)
        asset = actions.purchase_asset(player_id, "cargo-ship").record
        actions.create_route(player_id, origin, destination, asset.id, {"good_id": good_id, "quantity": 400})
    return simulation


def random_trades(simulation: "sim.Simulation", rng: random.Random) -> None:
    """Players poke the market between ticks so prices have something to react to."""
    actions = simulation.actions
    goods = sorted(simulation.catalog.goods)
    for player_id in simulation.store.player_ids():
        good_id = rng.choice(goods)
        if rng.random() < 0.6:
            actions.buy_item(good_id, rng.randint(10, 80), player_id)
        else:
            held = simulation.store.player_snapshot(player_id).finances.inventory.get(good_id, 0)
            if held:
                actions.sell_item(good_id, rng.randint(1, held), player_id)


def run_simulation(ticks: int = 200, seed: int = 42) -> None:
    """Run ticks with live charts of every good's price and each player's cash."""

    simulation = setup_simulation(seed)
    rng = random.Random(seed)
    goods = sorted(simulation.catalog.goods)
    players = simulation.store.player_ids()

    # ---------------------------------------------------------------------
    # Price plot setup (figure 1)
    # ---------------------------------------------------------------------
    plt.ion()  # Enable interactive mode so the GUI updates continuously

    fig_prices, ax_prices = plt.subplots()
    price_lines = {}
    for gid in goods:
        (line,) = ax_prices.plot([], [], label=gid)
        price_lines[gid] = line
    ax_prices.set_xlabel("Day")
    ax_prices.set_ylabel("Price")
    ax_prices.set_title("Live Market Prices")
    ax_prices.legend()

    # ---------------------------------------------------------------------
    # Player cash plot (figure 2)
    # ---------------------------------------------------------------------
    fig_cash, ax_cash = plt.subplots()
    cash_history = {pid: [] for pid in players}
    cash_lines = {}
    for pid in players:
        (line,) = ax_cash.plot([], [], label=pid)
        cash_lines[pid] = line
    ax_cash.set_xlabel("Tick")
    ax_cash.set_ylabel("Cash")
    ax_cash.set_title("Player Cash")
    ax_cash.legend()

    # ---------------------------------------------------------------------
    # Main simulation loop
    # ---------------------------------------------------------------------
    for t in range(1, ticks + 1):
        random_trades(simulation, rng)
        result = simulation.run_tick()

        # the store keeps a bounded window of recent ticks per good
        overview = simulation.actions.market_overview().record
        for gid in goods:
            points = overview[gid].history
            price_lines[gid].set_data([p.sim_time / 24 for p in points], [float(p.price) for p in points])

        for pid in players:
            cash_history[pid].append(float(simulation.store.player_snapshot(pid).finances.cash))
            cash_lines[pid].set_data(range(1, len(cash_history[pid]) + 1), cash_history[pid])

        price_snapshot = ", ".join(f"{gid}: {overview[gid].state.current_price}" for gid in goods)
        print(f"Tick {t:>3}: {price_snapshot} | disasters: {result.disaster_count}")

        ax_prices.relim()
        ax_prices.autoscale_view()
        ax_cash.relim()
        ax_cash.autoscale_view()

        plt.pause(0.001)  # Allow the GUI event loop to process events

    plt.ioff()
    plt.show()


if __name__ == "__main__":
    run_simulation()
