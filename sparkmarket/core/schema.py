"""
Typed records for accounts, claims ("sparks") and votes ("interactions").
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class ClaimStatus(str, Enum):
    ACTIVE = "ACTIVE"
    WITHERED = "WITHERED"
    EXPIRED = "EXPIRED"
    BANNED = "BANNED"
    SHADOW_BANNED = "SHADOW_BANNED"


class ClaimType(str, Enum):
    HARD_FACT = "HARD_FACT"
    SOFT_VIBE = "SOFT_VIBE"


class VoteAction(str, Enum):
    CONFIRM = "CONFIRM"
    CHALLENGE = "CHALLENGE"


class ActionKind(str, Enum):
    PING = "ping"
    PING_REMOTE = "ping_remote"
    VERIFY = "verify"
    CREATE = "create"


@dataclass
class Account:
    user_id: str
    energy: int
    reputation: float = 1.0
    last_action_at: Optional[float] = None
    last_ubi_at: Optional[float] = None
    last_active_at: Optional[float] = None
    pings_today: int = 0
    quota_reset_date: Optional[str] = None  # YYYY-MM-DD (UTC)
    staked_energy: int = 0
    created_at: Optional[float] = None


@dataclass
class Modification:
    content: str
    timestamp: float
    verified_by: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {"content": self.content, "timestamp": self.timestamp, "verified_by": list(self.verified_by)}


@dataclass
class Claim:
    id: str
    author_id: Optional[str]
    lat: float
    lon: float
    cells: List[str]
    geohash: str
    content: str
    claim_type: ClaimType
    radius: int
    spatial_rent: int
    deposit: int
    staked_energy: int
    verifier_reward_pool: int = 0
    upvote_weight: float = 0.0
    downvote_weight: float = 0.0
    confidence: float = 0.5
    verifier_entropy: float = 0.0
    status: ClaimStatus = ClaimStatus.ACTIVE
    created_at: float = 0.0
    expires_at: float = 0.0
    valid_until: float = 0.0
    revision: int = 1
    modifications: List[Modification] = field(default_factory=list)

    @property
    def location(self) -> Tuple[float, float]:
        return (self.lat, self.lon)


@dataclass
class VoteMeta:
    """Anti-fraud signals attached to a vote. claim_author_id is filled in by the engine."""
    device_id_hash: Optional[str] = None
    ip_subnet: Optional[str] = None
    bluetooth_peers: Optional[int] = None
    reported_distance_m: Optional[float] = None
    claim_author_id: Optional[str] = None


@dataclass
class Vote:
    id: int
    claim_id: str
    voter_id: str
    action: VoteAction
    voter_lat: float
    voter_lon: float
    distance_m: float
    grid_distance: int
    weight: float
    meta: VoteMeta
    created_at: float


@dataclass
class PublicClaim:
    """What search results expose: no weights, no author, perturbed position."""
    id: str
    content: str
    claim_type: ClaimType
    confidence: float
    lat: float
    lon: float
    radius: int
    verifier_reward_pool: int
    status: ClaimStatus
    created_at: float
    expires_at: float

    @classmethod
    def from_claim(cls, claim: Claim, lat: float, lon: float) -> "PublicClaim":
        return cls(
            id=claim.id,
            content=claim.content,
            claim_type=claim.claim_type,
            confidence=claim.confidence,
            lat=lat,
            lon=lon,
            radius=claim.radius,
            verifier_reward_pool=claim.verifier_reward_pool,
            status=claim.status,
            created_at=claim.created_at,
            expires_at=claim.expires_at,
        )
