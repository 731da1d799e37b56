import json

import pytest

from agent_tools import Toolset  # type: ignore
from sim import Simulation  # type: ignore


@pytest.fixture
def tools(catalog, config):
    sim = Simulation.create(config=config, catalog=catalog)
    sim.actions.register_player("p1")
    return {t.name: t for t in Toolset(sim.actions, "p1").as_tools()}


def test_tool_names(tools):
    assert set(tools) == {
        "market_query", "player_query", "financial_report", "trade", "purchase_asset", "create_route",
        "route_action", "apply_for_loan", "accept_bailout", "decide_suggestion", "set_risk_tolerance",
    }
    assert all(t.description for t in tools.values())


def test_trade_tool_buys(tools):
    result = json.loads(tools["trade"].invoke({"side": "buy", "good_id": "coffee", "quantity": 5}))
    assert result["success"]
    assert result["record"]["quantity"] == 5
    player = json.loads(tools["player_query"].invoke({}))
    assert player["record"]["inventory"] == {"coffee": 5}


def test_failures_come_back_as_json(tools):
    result = json.loads(tools["trade"].invoke({"side": "sell", "good_id": "coffee", "quantity": 5}))
    assert not result["success"]
    assert result["error"]["code"] == "insufficient_supply"


def test_route_tools(tools):
    asset = json.loads(tools["purchase_asset"].invoke({"definition_id": "cargo-ship"}))["record"]
    route = json.loads(tools["create_route"].invoke({
        "origin": "shanghai", "destination": "los-angeles", "asset_id": asset["id"],
        "good_id": "electronics", "quantity": 100,
    }))
    assert route["success"]
    cancelled = json.loads(tools["route_action"].invoke({"route_id": route["record"]["id"], "action": "cancel"}))
    assert cancelled["record"]["status"] == "cancelled"


def test_market_query(tools):
    result = json.loads(tools["market_query"].invoke({"good_id": "electronics"}))
    assert set(result["record"]) == {"electronics"}
