"""
Market facade: one method per user-facing operation.

Reads the economy record once per operation and hands it to the engines.
Callers pass an identity already resolved by the transport layer.
"""

import random
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import dao, geo
from .config import (
    CLAIM_GEOHASH_PRECISION,
    CLAIM_TTL_DAYS,
    DEFAULT_CLAIM_RADIUS,
    DEFAULT_PING_RADIUS_M,
    MAX_CLAIM_RADIUS,
    MAX_CONTENT_LENGTH,
    MAX_FIELD_CELLS,
    MIN_CLAIM_RADIUS,
    EconomyConfig,
    get_economy_config,
)
from .consensus import ConsensusEngine, VoteOutcome
from .economy import SECONDS_PER_DAY, EconomicPolicyEngine, utc_day
from .errors import AccountNotFound, InvalidInput, InvalidTarget, NotAuthorized
from .liquidation import HarvestResult, LiquidationEngine
from .privacy import PrivacyLayer, SearchTarget
from .schema import (
    Account,
    ActionKind,
    Claim,
    ClaimStatus,
    ClaimType,
    Modification,
    PublicClaim,
    VoteAction,
    VoteMeta,
)
from ..util.logging import audit_event

GDPR_SCRUBBED_CONTENT = "Content removed via GDPR Request"
MY_CLAIMS_LIMIT = 100
PORTFOLIO_LIMIT = 50


@dataclass
class PingResult:
    claims: List[PublicClaim]
    energy: int
    cost: int


@dataclass
class CreateResult:
    claim: Claim
    energy: int
    cost: int


class MarketEngine:
    """Entry point for every market operation."""

    def __init__(self, clock: Callable[[], float] = time.time, rng: Optional[random.Random] = None,
                 config_provider: Callable[[], EconomyConfig] = get_economy_config,
                 privacy: Optional[PrivacyLayer] = None):
        self.clock = clock
        self.config_provider = config_provider
        self.economy = EconomicPolicyEngine(clock=clock)
        self.liquidator = LiquidationEngine(clock=clock)
        self.consensus = ConsensusEngine(self.economy, self.liquidator, clock=clock)
        self.privacy = privacy or PrivacyLayer(rng=rng, clock=clock)

    # --- Accounts ---------------------------------------------------------------

    def ensure_account(self, actor_id: str) -> Account:
        """Return the caller's account, opening it with the initial energy on first sight."""
        account = dao.get_account(actor_id)
        if account is not None:
            return account
        config = self.config_provider()
        account = dao.create_account(actor_id, config.initial_energy, self.clock())
        audit_event("account.created", {"user_id": actor_id}, {"energy": account.energy})
        return account

    def balance(self, actor_id: str) -> Dict[str, Any]:
        account = self._account(actor_id)
        config = self.config_provider()
        today = utc_day(self.clock())
        pings_today = account.pings_today if account.quota_reset_date == today else 0
        return {
            "user_id": account.user_id,
            "energy": account.energy,
            "reputation": account.reputation,
            "staked_energy": account.staked_energy,
            "pings_today": pings_today,
            "free_pings_remaining": max(config.daily_free_pings - pings_today, 0),
            "quota_reset_date": today,
        }

    def public_config(self) -> Dict[str, Any]:
        return self.config_provider().public_view()

    # --- Search -----------------------------------------------------------------

    def ping(self, actor_id: str, target: SearchTarget, is_remote: bool = False,
             radius_m: float = DEFAULT_PING_RADIUS_M) -> PingResult:
        """
        Search around a grid cell or a point.

        Pings inside the daily free quota cost nothing; later ones are charged
        (remote pings at the remote price) and pay dividends to what they find.
        """
        self._validate_target(target, radius_m)
        config = self.config_provider()
        charge = self.economy.gate_ping(actor_id, is_remote, config)
        claims = self.privacy.search(actor_id, target, config, radius_m=radius_m,
                                     charged_cost=charge.charged_cost)
        return PingResult(claims=claims, energy=charge.new_balance, cost=charge.charged_cost)

    def _validate_target(self, target: SearchTarget, radius_m: float):
        if isinstance(target, str):
            if not geo.is_valid_cell(target):
                raise InvalidInput(f"Invalid grid cell: {target}")
            return
        try:
            lat, lon = target
        except (TypeError, ValueError):
            raise InvalidInput("Search target must be a grid cell or a (lat, lon) pair")
        geo.validate_coordinates(lat, lon)
        if radius_m <= 0:
            raise InvalidInput("Search radius must be positive")

    # --- Claims -----------------------------------------------------------------

    def create_claim(self, actor_id: str, lat: float, lon: float, content: str,
                     claim_type: ClaimType = ClaimType.HARD_FACT, radius: int = DEFAULT_CLAIM_RADIUS,
                     cells: Optional[Sequence[str]] = None) -> CreateResult:
        """
        Plant a claim at a point, covering either the point's cell or an explicit field of cells.

        Cost is the base create cost, plus progressive rent for each covered
        cell the author already occupies, plus the risk deposit.
        """
        lat, lon = geo.validate_coordinates(lat, lon)
        content = self._validate_content(content)
        try:
            claim_type = ClaimType(claim_type)
        except ValueError:
            raise InvalidInput(f"Unknown claim type: {claim_type}")
        if not isinstance(radius, int) or not MIN_CLAIM_RADIUS <= radius <= MAX_CLAIM_RADIUS:
            raise InvalidInput(f"Radius must be between {MIN_CLAIM_RADIUS} and {MAX_CLAIM_RADIUS}")

        if cells:
            covered = geo.validate_cells(cells)
            if len(covered) > MAX_FIELD_CELLS:
                raise InvalidInput(f"A spark may cover at most {MAX_FIELD_CELLS} cells")
        else:
            covered = [geo.cell_for(lat, lon)]

        config = self.config_provider()
        cost = self.economy.creation_cost(actor_id, covered, config)
        charge = self.economy.authorize(actor_id, ActionKind.CREATE, config, explicit_cost=cost.total)

        now = self.clock()
        ttl = CLAIM_TTL_DAYS * SECONDS_PER_DAY
        claim = Claim(
            id=uuid.uuid4().hex,
            author_id=actor_id,
            lat=lat,
            lon=lon,
            cells=covered,
            geohash=geo.encode_geohash(lat, lon, CLAIM_GEOHASH_PRECISION),
            content=content,
            claim_type=claim_type,
            radius=radius,
            spatial_rent=cost.rent,
            deposit=cost.deposit,
            staked_energy=cost.total,
            created_at=now,
            expires_at=now + ttl,
            valid_until=now + ttl,
        )
        dao.insert_claim(claim)
        # Stake is the listed total; any frequency surcharge is spent, not staked
        dao.add_staked_energy(actor_id, cost.total)

        audit_event("spark.created", {"claim_id": claim.id, "author_id": actor_id}, {
            "content": content, "cells": len(covered), "rent": cost.rent, "cost": charge.charged_cost
        })
        return CreateResult(claim=claim, energy=charge.new_balance, cost=charge.charged_cost)

    def _validate_content(self, content: str) -> str:
        if not isinstance(content, str) or not content.strip():
            raise InvalidInput("Content is required")
        content = content.strip()
        if len(content) > MAX_CONTENT_LENGTH:
            raise InvalidInput(f"Content longer than {MAX_CONTENT_LENGTH} characters")
        return content

    def verify(self, actor_id: str, claim_id: str, action: VoteAction, lat: float, lon: float,
               meta: Optional[VoteMeta] = None) -> VoteOutcome:
        try:
            action = VoteAction(action)
        except ValueError:
            raise InvalidInput(f"Unknown vote action: {action}")
        return self.consensus.vote(actor_id, claim_id, action, lat, lon, self.config_provider(), meta)

    def harvest(self, actor_id: str, claim_id: str) -> HarvestResult:
        self._account(actor_id)
        return self.liquidator.harvest(actor_id, claim_id)

    def delete_claim(self, actor_id: str, claim_id: str):
        """Author withdraws a claim. The stake is not refunded."""
        self._retire(actor_id, claim_id, "User Deleted")
        audit_event("spark.deleted", {"claim_id": claim_id, "author_id": actor_id})

    def forget_claim(self, actor_id: str, claim_id: str):
        """Erasure request: scrub the content and unlink the author."""
        self._retire(actor_id, claim_id, "GDPR Scrub", scrub_content=GDPR_SCRUBBED_CONTENT)
        audit_event("spark.forgotten", {"claim_id": claim_id})

    def _retire(self, actor_id: str, claim_id: str, reason: str, scrub_content: Optional[str] = None):
        now = self.clock()
        claim = dao.get_claim(claim_id, now)
        if claim is None:
            raise InvalidTarget("Spark not found")
        if claim.author_id != actor_id:
            raise NotAuthorized("Only the author may remove this spark")
        if not dao.retire_claim(claim_id, actor_id, Modification(content=reason, timestamp=now), scrub_content):
            raise NotAuthorized("Only the author may remove this spark")

    def my_claims(self, actor_id: str) -> List[Claim]:
        """The caller's active and withdrawn claims, newest first."""
        return dao.list_claims_by_author(
            actor_id, self.clock(), MY_CLAIMS_LIMIT, statuses=[ClaimStatus.ACTIVE, ClaimStatus.EXPIRED]
        )

    def portfolio(self, actor_id: str) -> Dict[str, List]:
        """Claims the caller created and votes the caller cast, newest first."""
        now = self.clock()
        created = dao.list_claims_by_author(actor_id, now, PORTFOLIO_LIMIT)
        votes = dao.list_votes_by_voter(actor_id, PORTFOLIO_LIMIT)
        claims = dao.get_claims((v.claim_id for v in votes), now)

        invested = []
        for v in votes:
            claim = claims.get(v.claim_id)
            invested.append({
                "vote_id": v.id,
                "claim": None if claim is None else {
                    "id": claim.id,
                    "content": claim.content,
                    "status": claim.status.value,
                    "confidence": claim.confidence,
                    "verifier_reward_pool": claim.verifier_reward_pool,
                },
                "action": v.action.value,
                "weight": v.weight,
                "timestamp": v.created_at,
            })
        return {"created": created, "invested": invested}

    def _account(self, actor_id: str) -> Account:
        account = dao.get_account(actor_id)
        if account is None:
            raise AccountNotFound(actor_id)
        return account
