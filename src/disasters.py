import random
import uuid
from typing import List, Optional, Sequence

import objects as G
from logger import logs
from settings import DisasterConfig


def in_hurricane_season(sim_time: float, config: DisasterConfig) -> bool:
    start, end = config.hurricane_season
    return start <= G.day_of_year(sim_time) <= end


class DisasterEngine:
    """
    Expires finished disasters and rolls at most one new one per tick.

    Contextual events (canal blockage, seasonal hurricane) are rolled before the
    generic roll; the first one that fires is the tick's spawn. Every draw comes
    from the injected RNG so a seed reproduces the same sequence of events.
    """

    def __init__(self, config: DisasterConfig, rng: random.Random):
        self.config = config
        self.rng = rng

    def _new_id(self) -> str:
        return str(uuid.UUID(int=self.rng.getrandbits(128), version=4))

    def _duration(self) -> float:
        return float(self.rng.randint(*self.config.duration_range))

    def process(self, active: Sequence[G.DisasterEvent], now: float) -> List[G.DisasterEvent]:
        still_active = [d for d in active if d.is_active(now)]
        expired = len(active) - len(still_active)
        if expired:
            logs.debug(f"{expired} disaster(s) expired at t={now}")
        return still_active

    def maybe_spawn(self, candidate_regions: Optional[Sequence[str]], now: float) -> Optional[G.DisasterEvent]:
        regions = sorted(candidate_regions or self.config.regions)
        event = (
            self._roll_canal_blockage(now)
            or self._roll_hurricane(regions, now)
            or self._roll_generic(regions, now)
        )
        if event is not None:
            logs.info(
                f"Disaster {event.type.value} (severity {event.severity}) hit "
                f"{', '.join(sorted(event.affected_regions))} for {event.duration_hours:.0f}h"
            )
        return event

    # ------------------------------------------------------------------
    def _roll_canal_blockage(self, now: float) -> Optional[G.DisasterEvent]:
        if not self.config.chokepoints:
            return None
        if self.rng.random() >= self.config.canal_blockage_probability:
            return None
        chokepoint = self.rng.choice(sorted(self.config.chokepoints))
        return G.DisasterEvent(
            id=self._new_id(),
            type=G.DisasterType.CANAL_BLOCKAGE,
            affected_regions=set(self.config.chokepoints[chokepoint]),
            severity=self.rng.randint(*self.config.canal_severity_range),
            start_time=now,
            duration_hours=self._duration(),
            chokepoint=chokepoint,
        )

    def _roll_hurricane(self, regions: List[str], now: float) -> Optional[G.DisasterEvent]:
        if not in_hurricane_season(now, self.config):
            return None
        exposed = [r for r in regions if r in self.config.hurricane_regions]
        if not exposed:
            return None
        if self.rng.random() >= self.config.hurricane_probability:
            return None
        return G.DisasterEvent(
            id=self._new_id(),
            type=G.DisasterType.HURRICANE,
            affected_regions={self.rng.choice(exposed)},
            severity=self.rng.randint(*self.config.hurricane_severity_range),
            start_time=now,
            duration_hours=self._duration(),
        )

    def _roll_generic(self, regions: List[str], now: float) -> Optional[G.DisasterEvent]:
        if not regions or self.rng.random() >= self.config.spawn_probability:
            return None
        kind = G.DisasterType(self.rng.choice(self.config.generic_types))
        count = self.rng.randint(1, min(self.config.max_regions, len(regions)))
        return G.DisasterEvent(
            id=self._new_id(),
            type=kind,
            affected_regions=set(self.rng.sample(regions, count)),
            severity=self.rng.randint(*self.config.severity_range),
            start_time=now,
            duration_hours=self._duration(),
        )
