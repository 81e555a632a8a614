"""
Weighted consensus over claims.

A vote's weight is the voter's reputation, decayed by grid distance to the
claim and damped by how often the voter has already voted on the same author.
Confidence is Laplace-smoothed over the accumulated weights.
"""

import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from . import dao, geo
from .config import EconomyConfig
from .economy import EconomicPolicyEngine
from .errors import AccountNotFound, InvalidTarget
from .liquidation import LiquidationEngine, LiquidationResult
from .schema import ActionKind, ClaimStatus, Vote, VoteAction, VoteMeta
from ..util.logging import logger


@dataclass
class VoteOutcome:
    confidence: float
    reward_pool: int
    status: ClaimStatus
    weight: float
    energy: int
    charged_cost: int
    liquidation: Optional[LiquidationResult] = None


def laplace_confidence(upvote_weight: float, downvote_weight: float) -> float:
    return (upvote_weight + 1) / (upvote_weight + downvote_weight + 2)


def affinity_damping(prior_votes_on_author: int) -> float:
    return 1.0 / (1 + prior_votes_on_author)


def distance_fraction(grid_distance: int, config: EconomyConfig) -> float:
    """1.0 inside a covered cell, the neighbor fraction one ring out, nothing beyond."""
    if grid_distance == 0:
        return 1.0
    if grid_distance == 1:
        return config.validation_weight_neighbor
    return 0.0


def vote_weight(reputation: float, fraction: float, damping: float) -> float:
    return reputation * fraction * damping


def score(upvote_weight: float, downvote_weight: float, config: EconomyConfig) -> Tuple[float, ClaimStatus]:
    """Confidence from the accumulated weights and the status it implies."""
    confidence = laplace_confidence(upvote_weight, downvote_weight)
    status = ClaimStatus.WITHERED if confidence < config.wither_threshold else ClaimStatus.ACTIVE
    return confidence, status


class ConsensusEngine:
    """Records votes and keeps each claim's confidence snapshot current."""

    def __init__(self, economy: EconomicPolicyEngine, liquidator: LiquidationEngine,
                 clock: Callable[[], float] = time.time):
        self.economy = economy
        self.liquidator = liquidator
        self.clock = clock

    def vote(self, voter_id: str, claim_id: str, action: VoteAction, lat: float, lon: float,
             config: EconomyConfig, meta: Optional[VoteMeta] = None) -> VoteOutcome:
        """
        Cast one vote on a claim.

        The verification cost is charged first and is kept even when the vote is
        then rejected (missing claim, duplicate, weight below the minimum).

        Raises:
            InvalidInput: bad coordinates (nothing charged)
            RateLimited, InsufficientFunds: from the charge
            InvalidTarget: claim not active, duplicate vote, weight too low
        """
        lat, lon = geo.validate_coordinates(lat, lon)
        action = VoteAction(action)
        meta = meta or VoteMeta()

        charge = self.economy.authorize(voter_id, ActionKind.VERIFY, config)
        now = self.clock()

        claim = dao.get_claim(claim_id, now)
        if claim is None or claim.status != ClaimStatus.ACTIVE:
            raise InvalidTarget("Spark not found or not active")

        if dao.vote_exists(claim_id, voter_id):
            raise InvalidTarget("Already voted on this spark")

        prior = dao.count_votes_on_author(voter_id, claim.author_id) if claim.author_id else 0
        damping = affinity_damping(prior)

        voter_cell = geo.cell_for(lat, lon)
        distance = geo.min_grid_distance(voter_cell, claim.cells)
        fraction = distance_fraction(distance, config)

        voter = dao.get_account(voter_id)
        if voter is None:
            raise AccountNotFound(voter_id)

        weight = vote_weight(voter.reputation, fraction, damping)
        if weight < config.min_vote_weight:
            logger.log_vote(claim_id, voter_id, action.value, weight, claim.confidence, status="rejected")
            raise InvalidTarget("Vote weight too low (too far or too frequent)")

        meta.claim_author_id = claim.author_id
        vote = Vote(
            id=0,
            claim_id=claim_id,
            voter_id=voter_id,
            action=action,
            voter_lat=lat,
            voter_lon=lon,
            distance_m=geo.haversine_m(lat, lon, claim.lat, claim.lon),
            grid_distance=distance,
            weight=weight,
            meta=meta,
            created_at=now,
        )

        try:
            updated = dao.record_vote(vote, now, lambda up, down: score(up, down, config))
        except sqlite3.IntegrityError:
            raise InvalidTarget("Already voted on this spark")
        except LookupError:
            raise InvalidTarget("Spark not found or not active")

        logger.log_vote(claim_id, voter_id, action.value, weight, updated.confidence)

        liquidation = None
        if updated.status == ClaimStatus.WITHERED:
            liquidation = self.liquidator.liquidate(updated, config)

        dao.credit_reward_pools({claim_id: charge.charged_cost})
        final = dao.get_claim(claim_id, now) or updated

        return VoteOutcome(
            confidence=final.confidence,
            reward_pool=final.verifier_reward_pool,
            status=final.status,
            weight=weight,
            energy=charge.new_balance,
            charged_cost=charge.charged_cost,
            liquidation=liquidation,
        )
