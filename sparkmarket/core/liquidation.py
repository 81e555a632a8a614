"""
Liquidation of withered claims and harvesting of reward pools.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from . import dao
from .config import EconomyConfig
from .errors import InvalidTarget
from .schema import Claim, Vote, VoteAction
from ..util.logging import logger


@dataclass
class LiquidationResult:
    claim_id: str
    liquidation_value: int
    payouts: Dict[str, int] = field(default_factory=dict)
    burned: int = 0
    settled: bool = True

    @property
    def distributed(self) -> int:
        return sum(self.payouts.values())


@dataclass
class HarvestResult:
    claimed: int
    remaining_pool: int


def proportional_shares(value: int, votes: List[Vote]) -> Dict[str, int]:
    """Split value across voters by weight, truncating each share."""
    total_weight = sum(v.weight for v in votes)
    if value <= 0 or total_weight <= 0:
        return {}
    shares: Dict[str, int] = {}
    for v in votes:
        shares[v.voter_id] = shares.get(v.voter_id, 0) + int(value * v.weight / total_weight)
    return shares


class LiquidationEngine:
    """Settles withered claims: pays correct challengers and adjusts reputations."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    def liquidate(self, claim: Claim, config: EconomyConfig) -> Optional[LiquidationResult]:
        """
        Best-effort liquidation. Failures are logged and never reach the voter
        whose vote triggered it; reputation changes already applied stay applied.
        """
        try:
            return self._liquidate(claim, config)
        except Exception as e:
            logger.error(f"Liquidation failed for spark {claim.id}: {e}")
            logger.log_liquidation(claim.id, claim.verifier_reward_pool + claim.deposit, 0, 0, status="failed")
            return None

    def _liquidate(self, claim: Claim, config: EconomyConfig) -> LiquidationResult:
        pool = claim.verifier_reward_pool
        deposit = claim.deposit
        value = pool + deposit

        votes = dao.list_votes_for_claim(claim.id)
        challengers = [v for v in votes if v.action == VoteAction.CHALLENGE]
        supporters = [v for v in votes if v.action == VoteAction.CONFIRM]

        if claim.author_id:
            self._adjust(claim.author_id, -config.reputation_loss_publisher, config)
        for v in supporters:
            self._adjust(v.voter_id, -config.reputation_loss_believer, config)
        for v in challengers:
            self._adjust(v.voter_id, config.reputation_gain_challenger, config)

        # Without challengers the whole value is burned
        payouts = proportional_shares(value, challengers)

        settled = dao.settle_liquidation(claim.id, pool, deposit, payouts)
        if not settled:
            logger.warning(f"Spark {claim.id} changed during liquidation; payouts skipped")
            logger.log_liquidation(claim.id, value, 0, 0, status="skipped")
            return LiquidationResult(claim_id=claim.id, liquidation_value=value, settled=False)

        if claim.author_id and claim.staked_energy:
            dao.add_staked_energy(claim.author_id, -claim.staked_energy)

        result = LiquidationResult(claim_id=claim.id, liquidation_value=value, payouts=payouts)
        result.burned = value - result.distributed
        logger.log_liquidation(claim.id, value, result.distributed, len(payouts))
        return result

    def _adjust(self, user_id: str, delta: float, config: EconomyConfig):
        change = dao.adjust_reputation(user_id, delta, config.reputation_min, config.reputation_max)
        if change is not None:
            before, after = change
            logger.log_reputation_change(user_id, before, after, delta)

    def harvest(self, voter_id: str, claim_id: str) -> HarvestResult:
        """
        Withdraw the caller's weight share of a claim's current reward pool.

        The share is taken over all votes on the claim, truncated, and moved
        from the pool to the caller's balance in one transaction.
        """
        claim = dao.get_claim(claim_id, self.clock())
        if claim is None:
            raise InvalidTarget("Spark not found")
        if claim.verifier_reward_pool <= 0:
            return HarvestResult(claimed=0, remaining_pool=0)

        votes = dao.list_votes_for_claim(claim_id)
        total_weight = sum(v.weight for v in votes)
        my_weight = sum(v.weight for v in votes if v.voter_id == voter_id)
        if my_weight <= 0 or total_weight <= 0:
            return HarvestResult(claimed=0, remaining_pool=claim.verifier_reward_pool)

        share = int(claim.verifier_reward_pool * my_weight / total_weight)
        if share <= 0:
            return HarvestResult(claimed=0, remaining_pool=claim.verifier_reward_pool)

        remaining = dao.withdraw_from_pool(claim_id, voter_id, share)
        if remaining is None:
            # Pool drained concurrently below our share
            current = dao.get_claim(claim_id, self.clock())
            return HarvestResult(claimed=0, remaining_pool=current.verifier_reward_pool if current else 0)

        logger.log_operation("harvest", "success", {
            "claim_id": claim_id, "voter_id": voter_id, "claimed": share, "remaining_pool": remaining
        })
        return HarvestResult(claimed=share, remaining_pool=remaining)
