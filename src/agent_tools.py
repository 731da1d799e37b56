from __future__ import annotations
from typing import List, Optional
from enum import Enum

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from actions import PlayerActions
from errors import ActionResult, SimulationError


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class RouteAction(str, Enum):
    REASSIGN = "reassign"
    CANCEL = "cancel"


class SuggestionDecision(str, Enum):
    ACCEPT = "accept"
    DISMISS = "dismiss"


class MarketQueryInput(BaseModel):
    good_id: Optional[str] = Field(None, description="Single good to inspect; all goods when omitted")


class TradeInput(BaseModel):
    side: TradeSide
    good_id: str
    quantity: int = Field(..., gt=0)


class PurchaseAssetInput(BaseModel):
    definition_id: str = Field(..., description="Asset blueprint id, e.g. cargo-ship")


class CreateRouteInput(BaseModel):
    origin: str = Field(..., description="Origin port id")
    destination: str = Field(..., description="Destination port id")
    asset_id: str = Field(..., description="Idle asset that will sail the route")
    good_id: str
    quantity: int = Field(..., gt=0)


class RouteActionInput(BaseModel):
    route_id: str
    action: RouteAction
    asset_id: Optional[str] = Field(None, description="Replacement asset, for reassign")


class LoanInput(BaseModel):
    principal: float = Field(..., gt=0)
    term_days: float = Field(..., gt=0)


class SuggestionInput(BaseModel):
    suggestion_id: str
    decision: SuggestionDecision


class RiskToleranceInput(BaseModel):
    tolerance: float = Field(..., ge=0.0, le=1.0)


class ReportInput(BaseModel):
    period_days: float = Field(30, gt=0)


class Toolset:
    """The player actions of one player, shaped as LLM tools. Every tool answers with ActionResult JSON."""

    def __init__(self, actions: PlayerActions, player_id: str):
        self.actions = actions
        self.player_id = player_id

    @staticmethod
    def _dump(result: ActionResult) -> str:
        return result.model_dump_json()

    # ---- Query Tools ----
    def market_query(self, good_id: Optional[str] = None) -> str:
        """Return current market state (price, supply, demand, trend) and recent ticks as JSON."""
        return self._dump(self.actions.market_overview(good_id))

    def player_query(self) -> str:
        """Return this player's cash, inventory, fleet, routes and pending suggestions as JSON."""
        try:
            player = self.actions.store.player_snapshot(self.player_id)
        except SimulationError as e:
            return self._dump(ActionResult.fail(e))
        pending = {k: s for k, s in player.suggestions.items() if s.status == "pending"}
        return ActionResult.ok({
            "cash": player.finances.cash,
            "inventory": player.finances.inventory,
            "assets": player.finances.assets,
            "routes": {k: r for k, r in player.routes.items() if r.status == "active"},
            "credit_rating": player.credit.rating,
            "bankruptcy": player.bankruptcy.status,
            "suggestions": pending,
        }).model_dump_json()

    def financial_report(self, period_days: float = 30) -> str:
        """Summarise revenue, expenses, margin and top routes over the last period."""
        return self._dump(self.actions.financial_report(self.player_id, period_days))

    # ---- Action Tools ----
    def trade(self, side: TradeSide, good_id: str, quantity: int) -> str:
        """Buy or sell a good at the current market price."""
        if TradeSide(side) == TradeSide.BUY:
            return self._dump(self.actions.buy_item(good_id, quantity, self.player_id))
        return self._dump(self.actions.sell_item(good_id, quantity, self.player_id))

    def purchase_asset(self, definition_id: str) -> str:
        """Buy a new transport asset."""
        return self._dump(self.actions.purchase_asset(self.player_id, definition_id))

    def create_route(self, origin: str, destination: str, asset_id: str, good_id: str, quantity: int) -> str:
        """Open a trade route between two ports, served by an idle asset."""
        cargo = {"good_id": good_id, "quantity": quantity}
        return self._dump(self.actions.create_route(self.player_id, origin, destination, asset_id, cargo))

    def route_action(self, route_id: str, action: RouteAction, asset_id: Optional[str] = None) -> str:
        """Reassign a route to another asset or cancel it."""
        if RouteAction(action) == RouteAction.CANCEL:
            return self._dump(self.actions.cancel_route(self.player_id, route_id))
        return self._dump(self.actions.reassign_route(self.player_id, route_id, asset_id or ""))

    def apply_for_loan(self, principal: float, term_days: float) -> str:
        """Borrow against the current credit rating."""
        return self._dump(self.actions.apply_for_loan(self.player_id, principal, term_days))

    def accept_bailout(self) -> str:
        """Take the emergency bailout currently on offer."""
        return self._dump(self.actions.accept_bailout(self.player_id))

    def decide_suggestion(self, suggestion_id: str, decision: SuggestionDecision) -> str:
        """Accept or dismiss a companion suggestion."""
        if SuggestionDecision(decision) == SuggestionDecision.ACCEPT:
            return self._dump(self.actions.accept_suggestion(self.player_id, suggestion_id))
        return self._dump(self.actions.dismiss_suggestion(self.player_id, suggestion_id))

    def set_risk_tolerance(self, tolerance: float) -> str:
        """Set how much risk the companion may recommend (0-1)."""
        return self._dump(self.actions.set_risk_tolerance(self.player_id, tolerance))

    def as_tools(self) -> List[StructuredTool]:
        spec = [
            (self.market_query, MarketQueryInput),
            (self.player_query, None),
            (self.financial_report, ReportInput),
            (self.trade, TradeInput),
            (self.purchase_asset, PurchaseAssetInput),
            (self.create_route, CreateRouteInput),
            (self.route_action, RouteActionInput),
            (self.apply_for_loan, LoanInput),
            (self.accept_bailout, None),
            (self.decide_suggestion, SuggestionInput),
            (self.set_risk_tolerance, RiskToleranceInput),
        ]
        tools = []
        for func, schema in spec:
            kwargs = {"args_schema": schema} if schema is not None else {}
            tools.append(StructuredTool.from_function(
                func=func, name=func.__name__, description=func.__doc__, **kwargs
            ))
        return tools
