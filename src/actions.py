import math
from decimal import Decimal, InvalidOperation
from functools import wraps
from typing import Dict, Optional, Union

from pydantic import ValidationError as ModelValidationError

import objects as G
from errors import (
    ActionResult,
    InsufficientFunds,
    InsufficientSupply,
    SimulationError,
    ValidationError,
)
from logger import logs
from register import Catalog
from revenue import FinancialReport, RevenueEngine, loan_term
from settings import SimConfig
from world import MarketTrade, WorldStateStore


def action(func):
    """Turn domain errors raised by a player action into a failed ``ActionResult``."""

    @wraps(func)
    def wrapper(self, *args, **kwargs) -> ActionResult:
        try:
            return ActionResult.ok(func(self, *args, **kwargs))
        except SimulationError as e:
            logs.info(f"{func.__name__} rejected ({e.code}): {e.detail}")
            return ActionResult.fail(e)

    return wrapper


def _positive_int(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer", **{name: value})
    return value


def _money(name: str, value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} is not a number", **{name: value}) from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{name} must be positive", **{name: value})
    return G.to_money(amount)


def _require_active(player: G.PlayerState) -> None:
    if player.liquidated:
        raise ValidationError(f"{player.owner_id} has been liquidated", owner_id=player.owner_id)


class PlayerActions:
    """
    Player-facing operations. Every method returns an ``ActionResult``; the
    ``record`` is the entity the action created or changed.
    """

    def __init__(self, store: WorldStateStore, catalog: Catalog, revenue: RevenueEngine, config: SimConfig):
        self.store = store
        self.catalog = catalog
        self.revenue = revenue
        self.config = config

    # ------------------------------------------------------------------
    # Players
    # ------------------------------------------------------------------
    @action
    def register_player(self, player_id: str, cash: Union[str, int, float, Decimal, None] = None,
                        rating: str = "BBB") -> G.PlayerState:
        if not player_id:
            raise ValidationError("player id is required")
        if rating not in G.RATING_ORDER:
            raise ValidationError(f"unknown rating {rating!r}", rating=rating)
        start = _money("cash", cash) if cash is not None else G.PlayerFinances().cash
        return self.store.add_player(G.PlayerState.new(player_id, cash=start, rating=rating))

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------
    def _check_good(self, good_id: str) -> G.Good:
        return self.catalog.good(good_id)

    @action
    def buy_item(self, good_id: str, quantity: int, player_id: str) -> G.Transaction:
        self._check_good(good_id)
        _positive_int("quantity", quantity)

        def compute(player: G.PlayerState, market: G.MarketState) -> G.Transaction:
            _require_active(player)
            if market.supply < quantity:
                raise InsufficientSupply(
                    f"only {market.supply} units of {good_id} available",
                    good_id=good_id, supply=market.supply, quantity=quantity,
                )
            cost = G.to_money(market.current_price * quantity)
            if player.finances.cash < cost:
                raise InsufficientFunds(
                    f"{cost} needed, {player.finances.cash} available",
                    owner_id=player_id, cost=cost,
                )
            tx = G.Transaction(
                owner_id=player_id, kind="buy", category="market", good_id=good_id,
                quantity=quantity, unit_price=market.current_price, amount=-cost,
                timestamp=self.store.sim_time, description=f"Bought {quantity} {good_id}",
            )
            player.finances.post(tx)
            player.finances.inventory[good_id] = player.finances.inventory.get(good_id, 0) + quantity
            return tx

        return self.store.transact_player(player_id, compute, MarketTrade(good_id=good_id, side="buy", quantity=quantity))

    @action
    def sell_item(self, good_id: str, quantity: int, player_id: str) -> G.Transaction:
        self._check_good(good_id)
        _positive_int("quantity", quantity)

        def compute(player: G.PlayerState, market: G.MarketState) -> G.Transaction:
            _require_active(player)
            held = player.finances.inventory.get(good_id, 0)
            if held < quantity:
                raise InsufficientSupply(
                    f"{player_id} holds {held} {good_id}, cannot sell {quantity}",
                    owner_id=player_id, good_id=good_id, held=held, quantity=quantity,
                )
            proceeds = G.to_money(market.current_price * quantity)
            tx = G.Transaction(
                owner_id=player_id, kind="sell", category="market", good_id=good_id,
                quantity=quantity, unit_price=market.current_price, amount=proceeds,
                timestamp=self.store.sim_time, description=f"Sold {quantity} {good_id}",
            )
            player.finances.post(tx)
            remaining = held - quantity
            if remaining:
                player.finances.inventory[good_id] = remaining
            else:
                player.finances.inventory.pop(good_id, None)
            return tx

        return self.store.transact_player(player_id, compute, MarketTrade(good_id=good_id, side="sell", quantity=quantity))

    # ------------------------------------------------------------------
    # Fleet & routes
    # ------------------------------------------------------------------
    @action
    def purchase_asset(self, player_id: str, definition_id: str) -> G.Asset:
        definition = self.catalog.assets.get(definition_id)
        if definition is None:
            raise ValidationError(f"unknown asset definition {definition_id!r}", definition_id=definition_id)

        def compute(player: G.PlayerState, _market) -> G.Asset:
            _require_active(player)
            if player.finances.cash < definition.cost:
                raise InsufficientFunds(
                    f"{definition.display_name} costs {definition.cost}",
                    owner_id=player_id, cost=definition.cost,
                )
            asset = G.Asset(definition_id=definition_id)
            player.finances.assets[asset.id] = asset
            player.finances.post(G.Transaction(
                owner_id=player_id, kind="asset_purchase", category="fleet",
                amount=-definition.cost, timestamp=self.store.sim_time,
                description=f"Purchased {definition.display_name}",
            ))
            return asset

        return self.store.transact_player(player_id, compute)

    def _port(self, port_id: str) -> G.Port:
        port = self.catalog.ports.get(port_id)
        if port is None:
            raise ValidationError(f"unknown port {port_id!r}", port_id=port_id)
        return port

    def _chokepoints(self, origin: G.Port, destination: G.Port) -> list:
        if origin.region == destination.region:
            return []
        return sorted(
            cp for cp, regions in self.config.disasters.chokepoints.items()
            if origin.region in regions and destination.region in regions
        )

    def _free_asset(self, player: G.PlayerState, asset_id: str) -> G.Asset:
        asset = player.finances.assets.get(asset_id)
        if asset is None or asset.status == "sold":
            raise ValidationError(f"{player.owner_id} has no asset {asset_id!r}", asset_id=asset_id)
        if asset.assigned_route_id is not None:
            raise ValidationError(f"asset {asset_id} already serves route {asset.assigned_route_id}",
                                  asset_id=asset_id)
        return asset

    @action
    def create_route(self, player_id: str, origin: str, destination: str, asset_id: str,
                     cargo: Union[G.Cargo, Dict[str, object]]) -> G.Route:
        if origin == destination:
            raise ValidationError("origin and destination must differ", origin=origin)
        start, end = self._port(origin), self._port(destination)
        try:
            cargo = cargo if isinstance(cargo, G.Cargo) else G.Cargo.model_validate(cargo)
        except ModelValidationError as e:
            raise ValidationError(f"invalid cargo: {e.errors()[0]['msg']}") from None
        self._check_good(cargo.good_id)

        distance = G.to_money(
            Decimal(str(math.hypot(end.x - start.x, end.y - start.y))) * self.config.revenue.distance_per_map_unit
        )
        snapshot = self.store.snapshot()

        def compute(player: G.PlayerState, _market) -> G.Route:
            _require_active(player)
            asset = self._free_asset(player, asset_id)
            definition = self.revenue.definition(asset)
            if cargo.quantity > definition.capacity:
                raise ValidationError(
                    f"{cargo.quantity} units exceed {definition.display_name} capacity {definition.capacity}",
                    capacity=definition.capacity,
                )
            route = G.Route(
                owner_id=player_id,
                origin=origin,
                destination=destination,
                origin_region=start.region,
                destination_region=end.region,
                chokepoints=self._chokepoints(start, end),
                assigned_asset_id=asset_id,
                cargo=cargo,
                base_distance=distance,
                created_at=snapshot.sim_time,
            )
            exposure = self.revenue.route_disasters(route, snapshot.disasters, snapshot.sim_time)
            route.risk_level = float(min(Decimal("1"), self.revenue.risk_modifier(exposure, [])))
            asset.status = "in_transit"
            asset.assigned_route_id = route.id
            player.routes[route.id] = route
            return route

        return self.store.transact_player(player_id, compute)

    def _active_route(self, player: G.PlayerState, route_id: str) -> G.Route:
        route = player.routes.get(route_id)
        if route is None or route.status != "active":
            raise ValidationError(f"{player.owner_id} has no active route {route_id!r}", route_id=route_id)
        return route

    def _release(self, player: G.PlayerState, asset_id: str) -> None:
        asset = player.finances.assets.get(asset_id)
        if asset is not None and asset.status != "sold":
            asset.status = "idle"
            asset.assigned_route_id = None

    @action
    def reassign_route(self, player_id: str, route_id: str, asset_id: str) -> G.Route:
        def compute(player: G.PlayerState, _market) -> G.Route:
            _require_active(player)
            route = self._active_route(player, route_id)
            asset = self._free_asset(player, asset_id)
            if route.cargo.quantity > self.revenue.definition(asset).capacity:
                raise ValidationError(f"asset {asset_id} cannot carry {route.cargo.quantity} units")
            self._release(player, route.assigned_asset_id)
            asset.status = "in_transit"
            asset.assigned_route_id = route.id
            route.assigned_asset_id = asset.id
            return route

        return self.store.transact_player(player_id, compute)

    @action
    def cancel_route(self, player_id: str, route_id: str) -> G.Route:
        def compute(player: G.PlayerState, _market) -> G.Route:
            route = self._active_route(player, route_id)
            route.status = "cancelled"
            self._release(player, route.assigned_asset_id)
            return route

        return self.store.transact_player(player_id, compute)

    # ------------------------------------------------------------------
    # Credit
    # ------------------------------------------------------------------
    @action
    def apply_for_loan(self, player_id: str, principal, term_days: float) -> G.Loan:
        amount = _money("principal", principal)
        days = loan_term(term_days)

        def compute(player: G.PlayerState, _market) -> G.Loan:
            loan = self.revenue.apply_for_loan(player, amount, days)
            player.credit.loans.append(loan)
            player.finances.post(G.Transaction(
                owner_id=player_id, kind="loan", category="credit", amount=loan.principal,
                timestamp=self.store.sim_time, description=f"Loan at {loan.rate:.1%}",
            ))
            return loan

        return self.store.transact_player(player_id, compute)

    @action
    def accept_bailout(self, player_id: str) -> G.Loan:
        def compute(player: G.PlayerState, _market) -> G.Loan:
            return self.revenue.accept_bailout(player, self.store.tick, self.store.sim_time)

        return self.store.transact_player(player_id, compute)

    # ------------------------------------------------------------------
    # Companion
    # ------------------------------------------------------------------
    def _pending_suggestion(self, player: G.PlayerState, suggestion_id: str) -> G.Suggestion:
        suggestion = player.suggestions.get(suggestion_id)
        if suggestion is None:
            raise ValidationError(f"unknown suggestion {suggestion_id!r}", suggestion_id=suggestion_id)
        if suggestion.status != "pending" or self.store.sim_time >= suggestion.expires_at:
            raise ValidationError(f"suggestion {suggestion_id} is no longer pending",
                                  suggestion_id=suggestion_id, status=suggestion.status)
        return suggestion

    @action
    def accept_suggestion(self, player_id: str, suggestion_id: str) -> G.Suggestion:
        def compute(player: G.PlayerState, _market) -> G.Suggestion:
            suggestion = self._pending_suggestion(player, suggestion_id)
            suggestion.status = "accepted"
            suggestion.accepted_at = self.store.sim_time
            suggestion.accepted_tick = self.store.tick
            return suggestion

        return self.store.transact_player(player_id, compute)

    @action
    def dismiss_suggestion(self, player_id: str, suggestion_id: str) -> G.Suggestion:
        def compute(player: G.PlayerState, _market) -> G.Suggestion:
            suggestion = self._pending_suggestion(player, suggestion_id)
            suggestion.status = "dismissed"
            return suggestion

        return self.store.transact_player(player_id, compute)

    @action
    def set_risk_tolerance(self, player_id: str, tolerance: float) -> G.CompanionState:
        if isinstance(tolerance, bool) or not isinstance(tolerance, (int, float)) or not 0.0 <= tolerance <= 1.0:
            raise ValidationError("risk tolerance must be between 0 and 1", tolerance=tolerance)

        def compute(player: G.PlayerState, _market) -> G.CompanionState:
            player.companion.risk_tolerance = float(tolerance)
            return player.companion

        return self.store.transact_player(player_id, compute)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @action
    def financial_report(self, player_id: str, period_days: float = 30) -> FinancialReport:
        player = self.store.player_snapshot(player_id)
        return self.revenue.generate_financial_report(player, period_days, self.store.sim_time)

    @action
    def market_overview(self, good_id: Optional[str] = None) -> Dict[str, G.MarketView]:
        snapshot = self.store.snapshot()
        if good_id is not None:
            self._check_good(good_id)
        goods = sorted(snapshot.markets) if good_id is None else [good_id]
        return {
            g: G.MarketView(state=snapshot.markets[g], history=self.store.market_history(g))
            for g in goods
        }
