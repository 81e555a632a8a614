"""
Privacy layer for search.

Per-(actor, region) query budgets stop repeated probing of one area, returned
positions are perturbed so claims cannot be triangulated, and paid searches
pay a dividend to the claims they return.
"""

import random
import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Tuple, Union

from . import dao, geo
from .config import (
    DEFAULT_PING_RADIUS_M,
    PERTURBATION_RADIUS_M,
    PRIVACY_BUDGET_GRID,
    PRIVACY_BUDGET_MAX_ENTRIES,
    PRIVACY_BUDGET_RADIUS,
    PRIVACY_BUDGET_WINDOW_SEC,
    SEARCH_GEOHASH_PRECISION,
    SEARCH_RESULT_LIMIT,
    EconomyConfig,
)
from .errors import InvalidInput, PrivacyBudgetExceeded
from .schema import Claim, PublicClaim
from ..util.logging import logger

GRID = "grid"
RADIUS = "radius"

SearchTarget = Union[str, Tuple[float, float]]


class PrivacyBudget:
    """
    Bounded LRU of query counters keyed by (actor, query kind, region).

    Counters live in this process only and reset after window_sec; the map is
    an approximate throttle, not shared state.
    """

    def __init__(self, grid_ceiling: int = PRIVACY_BUDGET_GRID, radius_ceiling: int = PRIVACY_BUDGET_RADIUS,
                 window_sec: float = PRIVACY_BUDGET_WINDOW_SEC, max_entries: int = PRIVACY_BUDGET_MAX_ENTRIES,
                 clock: Callable[[], float] = time.time):
        self.ceilings = {GRID: grid_ceiling, RADIUS: radius_ceiling}
        self.window_sec = window_sec
        self.max_entries = max_entries
        self.clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[Tuple[str, str, str], List[float]]" = OrderedDict()

    def consume(self, actor_id: str, region_key: str, kind: str) -> int:
        """
        Count one query against the budget.

        Returns:
            Queries used in the current window, including this one

        Raises:
            PrivacyBudgetExceeded: the ceiling for this kind of query is used up
        """
        ceiling = self.ceilings[kind]
        key = (actor_id, kind, region_key)
        now = self.clock()

        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now - entry[0] >= self.window_sec:
                entry = [now, 0]
            self._entries[key] = entry
            self._entries.move_to_end(key)

            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

            if entry[1] >= ceiling:
                raise PrivacyBudgetExceeded(region_key, entry[1], ceiling)
            entry[1] += 1
            return entry[1]

    def usage(self, actor_id: str, region_key: str, kind: str) -> int:
        with self._lock:
            entry = self._entries.get((actor_id, kind, region_key))
            if entry is None or self.clock() - entry[0] >= self.window_sec:
                return 0
            return entry[1]

    def __len__(self):
        return len(self._entries)


class PrivacyLayer:
    """Budgeted, perturbed search over active claims."""

    def __init__(self, budget: Optional[PrivacyBudget] = None, rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.time, perturbation_radius_m: float = PERTURBATION_RADIUS_M,
                 result_limit: int = SEARCH_RESULT_LIMIT):
        self.clock = clock
        self.budget = budget if budget is not None else PrivacyBudget(clock=clock)
        self.rng = rng if rng is not None else random.Random()
        self.perturbation_radius_m = perturbation_radius_m
        self.result_limit = result_limit

    def search(self, actor_id: str, target: SearchTarget, config: EconomyConfig,
               radius_m: float = DEFAULT_PING_RADIUS_M, charged_cost: int = 0) -> List[PublicClaim]:
        """
        Find active claims in a grid cell or within radius_m of a point.

        A string target is an h3 cell id, anything else a (lat, lon) pair. Once
        the budget for the region is spent the result is empty, exactly as if
        nothing were there. A non-zero charged_cost pays a dividend to the
        returned claims.
        """
        kind, region_key, finder = self._resolve(target, radius_m)

        try:
            self.budget.consume(actor_id, region_key, kind)
        except PrivacyBudgetExceeded as e:
            logger.log_privacy_budget(actor_id, e.region_key, e.usage, e.ceiling)
            return []

        claims = finder()[:self.result_limit]

        if charged_cost > 0 and claims:
            self.pay_dividends(claims, charged_cost, config)

        return [self.obfuscate(claim) for claim in claims]

    def _resolve(self, target: SearchTarget, radius_m: float):
        now = self.clock()

        if isinstance(target, str):
            if not geo.is_valid_cell(target):
                raise InvalidInput(f"Invalid grid cell: {target}")
            return GRID, target, lambda: dao.list_active_claims_in_cell(target, now, self.result_limit)

        try:
            lat, lon = target
        except (TypeError, ValueError):
            raise InvalidInput("Search target must be a grid cell or a (lat, lon) pair")
        lat, lon = geo.validate_coordinates(lat, lon)
        if radius_m <= 0:
            raise InvalidInput("Search radius must be positive")

        def within_radius() -> List[Claim]:
            prefixes = geo.search_prefixes(lat, lon, SEARCH_GEOHASH_PRECISION)
            candidates = dao.list_active_claims_by_geohash(prefixes, now)
            return [c for c in candidates if geo.haversine_m(lat, lon, c.lat, c.lon) <= radius_m]

        return RADIUS, geo.encode_geohash(lat, lon, SEARCH_GEOHASH_PRECISION), within_radius

    def obfuscate(self, claim: Claim) -> PublicClaim:
        """Public copy of a claim at a perturbed position. The stored claim is untouched."""
        lat, lon = geo.perturb_location(claim.lat, claim.lon, self.perturbation_radius_m, self.rng)
        return PublicClaim.from_claim(claim, lat, lon)

    def pay_dividends(self, claims: List[Claim], charged_cost: int, config: EconomyConfig):
        """
        Split dividend_ratio of a paid search's cost across the returned claims.

        Each claim's share goes partly to its reward pool (verifier_retention)
        and the rest to its author. Failures are logged, never raised.
        """
        if config.dividend_ratio <= 0:
            return
        total = int(charged_cost * config.dividend_ratio)
        per_claim = int(total / len(claims)) if claims else 0
        if per_claim <= 0:
            return

        verifier_share = int(per_claim * config.verifier_retention)
        creator_share = per_claim - verifier_share

        pools: Dict[str, int] = {}
        authors: Dict[str, int] = {}
        for claim in claims:
            if verifier_share > 0:
                pools[claim.id] = pools.get(claim.id, 0) + verifier_share
            if creator_share > 0 and claim.author_id:
                authors[claim.author_id] = authors.get(claim.author_id, 0) + creator_share

        try:
            dao.credit_reward_pools(pools)
        except Exception as e:
            logger.error(f"Dividend pool update failed: {e}")
        try:
            dao.credit_energy(authors)
        except Exception as e:
            logger.error(f"Dividend author update failed: {e}")

        logger.log_operation("privacy.dividend", "success", {
            "claims": len(claims), "per_claim": per_claim,
            "verifier_share": verifier_share, "creator_share": creator_share
        })
