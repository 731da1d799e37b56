import random
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, Field

import objects as G
from errors import ConcurrentUpdateConflict, InsufficientSupply, ValidationError
from logger import logs
from market import apply_trade, trade_delta
from notifications import BROADCAST, EventType, NotificationBus
from settings import TickConfig

T = TypeVar("T")

# (recipient, payload) pairs queued for the bus until the store lock is released
Notice = Tuple[str, Dict[str, str]]


class TickRead(BaseModel):
    """Everything a tick needs, copied out of the store in one consistent read."""

    snapshot: G.WorldSnapshot
    pending: Dict[str, G.TradeDelta] = Field(default_factory=dict)
    players: Dict[str, G.PlayerState] = Field(default_factory=dict)


class MarketTrade(BaseModel):
    good_id: str
    side: str
    quantity: int


class WorldDocument(BaseModel):
    """On-disk form: shared collections keyed by id, everything else partitioned by owner."""

    version: int = 0
    tick: int = 0
    sim_time: float = 0.0
    markets: Dict[str, G.MarketState] = Field(default_factory=dict)
    disasters: Dict[str, G.DisasterEvent] = Field(default_factory=dict)
    pending: Dict[str, G.TradeDelta] = Field(default_factory=dict)
    players: Dict[str, G.PlayerState] = Field(default_factory=dict)
    # oldest first, bounded per good
    history: Dict[str, List[G.MarketHistoryPoint]] = Field(default_factory=dict)


class WorldStateStore:
    """
    Single owner of the shared world: market states, active disasters and the
    player partitions.

    Readers get deep copies. The tick writes once, at commit. Player actions
    commit optimistically: they compute against a copy and only land if the
    good's market revision and the player's revision are unchanged, otherwise
    they retry with backoff.
    """

    def __init__(
        self,
        markets: Dict[str, G.MarketState],
        disasters: Optional[List[G.DisasterEvent]] = None,
        players: Optional[Dict[str, G.PlayerState]] = None,
        bus: Optional[NotificationBus] = None,
        config: Optional[TickConfig] = None,
    ):
        self._lock = threading.RLock()
        self._version = 0
        self._tick = 0
        self._sim_time = 0.0
        self._markets: Dict[str, G.MarketState] = dict(markets)
        self._market_revs: Dict[str, int] = {good_id: 0 for good_id in markets}
        self._disasters: List[G.DisasterEvent] = list(disasters or [])
        self._players: Dict[str, G.PlayerState] = dict(players or {})
        self._pending: Dict[str, G.TradeDelta] = {}
        self.bus = bus or NotificationBus()
        self.config = config or TickConfig()
        self._history: Dict[str, Deque[G.MarketHistoryPoint]] = {}
        self._jitter = random.Random()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @property
    def version(self) -> int:
        return self._version

    @property
    def tick(self) -> int:
        return self._tick

    @property
    def sim_time(self) -> float:
        return self._sim_time

    def _snapshot_locked(self) -> G.WorldSnapshot:
        return G.WorldSnapshot(
            version=self._version,
            tick=self._tick,
            sim_time=self._sim_time,
            markets={k: v.model_copy() for k, v in self._markets.items()},
            disasters=list(self._disasters),
        )

    def snapshot(self) -> G.WorldSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def read_for_tick(self) -> TickRead:
        with self._lock:
            return TickRead(
                snapshot=self._snapshot_locked(),
                pending={k: v.model_copy() for k, v in self._pending.items()},
                players={k: v.model_copy(deep=True) for k, v in self._players.items()},
            )

    def player_snapshot(self, owner_id: str) -> G.PlayerState:
        with self._lock:
            player = self._players.get(owner_id)
            if player is None:
                raise ValidationError(f"unknown player {owner_id!r}", owner_id=owner_id)
            return player.model_copy(deep=True)

    def player_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._players)

    def market(self, good_id: str) -> G.MarketState:
        with self._lock:
            state = self._markets.get(good_id)
            if state is None:
                raise ValidationError(f"unknown good {good_id!r}", good_id=good_id)
            return state.model_copy()

    def pending_delta(self, good_id: str) -> G.TradeDelta:
        with self._lock:
            return self._pending.get(good_id, G.TradeDelta()).model_copy()

    def market_history(self, good_id: str) -> List[G.MarketHistoryPoint]:
        with self._lock:
            if good_id not in self._markets:
                raise ValidationError(f"unknown good {good_id!r}", good_id=good_id)
            return [p.model_copy() for p in self._history.get(good_id, ())]

    def _record_history(self, markets: Dict[str, G.MarketState]) -> None:
        for good_id, state in markets.items():
            points = self._history.get(good_id)
            if points is None:
                points = self._history[good_id] = deque(maxlen=self.config.market_history_limit)
            points.append(G.MarketHistoryPoint.of(state))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def add_player(self, player: G.PlayerState) -> G.PlayerState:
        with self._lock:
            if player.owner_id in self._players:
                raise ValidationError(f"player {player.owner_id!r} already exists", owner_id=player.owner_id)
            self._players[player.owner_id] = player.model_copy(deep=True)
            self._version += 1
            return player.model_copy(deep=True)

    def _backoff(self, attempt: int) -> None:
        delay = self.config.retry_delay * (self.config.retry_backoff ** attempt)
        time.sleep(delay * (1 + self._jitter.random()))

    def transact_player(
        self,
        owner_id: str,
        compute: Callable[[G.PlayerState, Optional[G.MarketState]], T],
        trade: Optional[MarketTrade] = None,
    ) -> T:
        """
        Run ``compute`` against copies of the player (and the traded market),
        then commit the mutated player copy if nothing moved underneath.

        ``compute`` mutates the player copy it receives and returns the record
        handed back to the caller. Domain errors it raises propagate untouched.
        With ``trade`` set, the market move is re-applied to the live state at
        commit, which rejects it if supply would go negative.
        """
        for attempt in range(self.config.max_action_retries + 1):
            with self._lock:
                live = self._players.get(owner_id)
                if live is None:
                    raise ValidationError(f"unknown player {owner_id!r}", owner_id=owner_id)
                revision = live.revision
                player = live.model_copy(deep=True)
                market = None
                market_rev = None
                if trade is not None:
                    if trade.good_id not in self._markets:
                        raise ValidationError(f"unknown good {trade.good_id!r}", good_id=trade.good_id)
                    market = self._markets[trade.good_id].model_copy()
                    market_rev = self._market_revs[trade.good_id]

            record = compute(player, market)

            with self._lock:
                stale = self._players[owner_id].revision != revision or (
                    trade is not None and self._market_revs[trade.good_id] != market_rev
                )
                if not stale:
                    if trade is not None:
                        self._commit_trade(player, trade)
                    player.revision = revision + 1
                    self._players[owner_id] = player
                    self._version += 1
                    version = self._version
                    break
            logs.debug(f"Stale write for {owner_id} (attempt {attempt + 1}), retrying")
            self._backoff(attempt)
        else:
            raise ConcurrentUpdateConflict(
                f"gave up after {self.config.max_action_retries} retries",
                owner_id=owner_id,
            )

        self.bus.emit(EventType.WORLD_COMMITTED, {"version": version, "cause": "player_action", "owner_id": owner_id})
        return record

    def _commit_trade(self, player: G.PlayerState, trade: MarketTrade) -> None:
        # hard gate against the live state, whatever compute saw
        if player.finances.inventory.get(trade.good_id, 0) < 0:
            raise InsufficientSupply(
                f"{player.owner_id} does not hold enough {trade.good_id}",
                owner_id=player.owner_id, good_id=trade.good_id,
            )
        self._markets[trade.good_id] = apply_trade(self._markets[trade.good_id], trade.side, trade.quantity)
        self._market_revs[trade.good_id] += 1
        delta = trade_delta(trade.side, trade.quantity)
        self._pending[trade.good_id] = self._pending.get(trade.good_id, G.TradeDelta()).plus(delta)

    def commit_tick(
        self,
        read: TickRead,
        markets: Dict[str, G.MarketState],
        disasters: List[G.DisasterEvent],
        tick: int,
        sim_time: float,
        apply_players: Callable[[Dict[str, G.PlayerState]], List[Notice]],
    ) -> G.WorldSnapshot:
        """
        Publish a tick's result. Trades that landed after ``read`` are put back
        on top of the computed markets, and ``apply_players`` runs against
        copies of the live partitions so actions taken mid-tick are kept. If
        it raises, nothing is written.
        """
        with self._lock:
            rebased: Dict[str, G.MarketState] = {}
            for good_id, state in markets.items():
                since = self._pending.get(good_id, G.TradeDelta()).minus(read.pending.get(good_id, G.TradeDelta()))
                if since.supply or since.demand:
                    state = state.model_copy(update={
                        "supply": max(0, state.supply + since.supply),
                        "demand": max(0, state.demand + since.demand),
                    })
                rebased[good_id] = state

            players = {k: v.model_copy(deep=True) for k, v in self._players.items()}
            notices = apply_players(players)
            for player in players.values():
                player.revision += 1

            self._markets = rebased
            self._record_history(rebased)
            for good_id in rebased:
                self._market_revs[good_id] = self._market_revs.get(good_id, 0) + 1
            self._disasters = list(disasters)
            self._pending = {}
            self._players = players
            self._tick = tick
            self._sim_time = sim_time
            self._version += 1
            snapshot = self._snapshot_locked()

        self.bus.emit(EventType.WORLD_COMMITTED, {
            "version": snapshot.version,
            "cause": "tick",
            "tick": tick,
            "disasters": len(snapshot.disasters),
        })
        for recipient, data in notices:
            self.bus.emit(EventType.PLAYER_NOTICE, data, recipient=recipient or BROADCAST)
        return snapshot

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def to_document(self) -> WorldDocument:
        with self._lock:
            return WorldDocument(
                version=self._version,
                tick=self._tick,
                sim_time=self._sim_time,
                markets={k: v.model_copy() for k, v in self._markets.items()},
                disasters={d.id: d for d in self._disasters},
                pending={k: v.model_copy() for k, v in self._pending.items()},
                players={k: v.model_copy(deep=True) for k, v in self._players.items()},
                history={k: [p.model_copy() for p in v] for k, v in self._history.items()},
            )

    @classmethod
    def from_document(
        cls,
        doc: WorldDocument,
        bus: Optional[NotificationBus] = None,
        config: Optional[TickConfig] = None,
    ) -> "WorldStateStore":
        store = cls(doc.markets, list(doc.disasters.values()), doc.players, bus=bus, config=config)
        store._version = doc.version
        store._tick = doc.tick
        store._sim_time = doc.sim_time
        store._pending = dict(doc.pending)
        for good_id, points in doc.history.items():
            store._history[good_id] = deque(points, maxlen=store.config.market_history_limit)
        return store
