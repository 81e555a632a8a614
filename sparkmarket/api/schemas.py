"""
Request and response models for the market HTTP API.
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List

from ..core.config import DEFAULT_CLAIM_RADIUS, DEFAULT_PING_RADIUS_M, MAX_CONTENT_LENGTH
from ..core.schema import ClaimStatus, ClaimType, VoteAction


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool


class SuccessResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None


# --- Requests -----------------------------------------------------------------

class PingRequest(BaseModel):
    cell: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    radius: float = Field(default=DEFAULT_PING_RADIUS_M, gt=0)
    is_remote: bool = False

    @model_validator(mode="after")
    def target_must_be_given(self):
        if self.cell is None and (self.lat is None or self.lon is None):
            raise ValueError('either cell or both lat and lon are required')
        return self


class CreateSparkRequest(BaseModel):
    lat: float
    lon: float
    content: str
    type: ClaimType = ClaimType.HARD_FACT
    radius: int = DEFAULT_CLAIM_RADIUS
    cells: Optional[List[str]] = None

    @field_validator('content')
    @classmethod
    def content_must_be_valid(cls, v):
        if not v.strip():
            raise ValueError('content cannot be empty')
        if len(v.strip()) > MAX_CONTENT_LENGTH:
            raise ValueError(f'content cannot exceed {MAX_CONTENT_LENGTH} characters')
        return v


class VerifyRequest(BaseModel):
    spark_id: str
    action: VoteAction
    lat: float
    lon: float
    device_id_hash: Optional[str] = None
    ip_subnet: Optional[str] = None
    bluetooth_peers: Optional[int] = Field(default=None, ge=0)
    reported_distance_m: Optional[float] = Field(default=None, ge=0)


class SparkIdRequest(BaseModel):
    spark_id: str

    @field_validator('spark_id')
    @classmethod
    def spark_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('spark_id cannot be empty')
        return v


class EconomyConfigPatch(BaseModel):
    """Partial update of the economy record; unset fields are left alone."""
    daily_free_pings: Optional[int] = Field(default=None, ge=0)
    cost_ping: Optional[int] = Field(default=None, ge=0)
    cost_ping_remote: Optional[int] = Field(default=None, ge=0)
    cost_verify: Optional[int] = Field(default=None, ge=0)
    cost_create: Optional[int] = Field(default=None, ge=0)
    spatial_rent: Optional[int] = Field(default=None, ge=0)
    risk_deposit: Optional[int] = Field(default=None, ge=0)
    energy_cap: Optional[int] = Field(default=None, ge=0)
    initial_energy: Optional[int] = Field(default=None, ge=0)
    validation_weight_neighbor: Optional[float] = Field(default=None, ge=0, le=1)
    min_vote_weight: Optional[float] = Field(default=None, ge=0)
    rate_limit_floor_sec: Optional[float] = Field(default=None, ge=0)
    frequency_penalty_window_sec: Optional[float] = Field(default=None, ge=0)
    frequency_penalty_mult: Optional[float] = Field(default=None, ge=1)
    ubi_daily_amount: Optional[int] = Field(default=None, ge=0)
    ubi_stake_threshold: Optional[int] = Field(default=None, ge=0)
    wither_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    dividend_ratio: Optional[float] = Field(default=None, ge=0, le=1)
    verifier_retention: Optional[float] = Field(default=None, ge=0, le=1)
    reputation_loss_publisher: Optional[float] = Field(default=None, ge=0)
    reputation_loss_believer: Optional[float] = Field(default=None, ge=0)
    reputation_gain_challenger: Optional[float] = Field(default=None, ge=0)
    reputation_min: Optional[float] = Field(default=None, gt=0)
    reputation_max: Optional[float] = Field(default=None, gt=0)
    issuance_base_supply: Optional[int] = Field(default=None, ge=0)
    issuance_rate: Optional[float] = Field(default=None, ge=0)
    citizen_stake_threshold: Optional[int] = Field(default=None, ge=0)
    citizen_active_days: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def window_must_cover_floor(self):
        floor, window = self.rate_limit_floor_sec, self.frequency_penalty_window_sec
        if floor is not None and window is not None and window < floor:
            raise ValueError('frequency_penalty_window_sec must be >= rate_limit_floor_sec')
        low, high = self.reputation_min, self.reputation_max
        if low is not None and high is not None and low > high:
            raise ValueError('reputation_min must be <= reputation_max')
        return self


# --- Responses ----------------------------------------------------------------

class PublicSparkResponse(BaseModel):
    id: str
    content: str
    type: ClaimType
    confidence: float
    lat: float
    lon: float
    radius: int
    verifier_reward_pool: int
    status: ClaimStatus
    created_at: float
    expires_at: float


class PingResponse(BaseModel):
    sparks: List[PublicSparkResponse]
    energy: int
    cost: int


class SparkResponse(BaseModel):
    """Author's view of their own spark."""
    id: str
    content: str
    type: ClaimType
    lat: float
    lon: float
    cells: List[str]
    radius: int
    confidence: float
    status: ClaimStatus
    verifier_reward_pool: int
    spatial_rent: int
    deposit: int
    staked_energy: int
    revision: int
    created_at: float
    expires_at: float


class CreateSparkResponse(BaseModel):
    spark: SparkResponse
    energy: int
    cost: int


class SparkListResponse(BaseModel):
    sparks: List[SparkResponse]


class VerifyResponse(BaseModel):
    confidence: float
    reward_pool: int
    status: ClaimStatus
    weight: float
    energy: int
    cost: int


class HarvestResponse(BaseModel):
    success: bool = True
    claimed: int
    remaining_pool: int


class BalanceResponse(BaseModel):
    user_id: str
    energy: int
    reputation: float
    staked_energy: int
    pings_today: int
    free_pings_remaining: int
    quota_reset_date: str


class InvestedSpark(BaseModel):
    id: str
    content: str
    status: ClaimStatus
    confidence: float
    verifier_reward_pool: int


class InvestmentResponse(BaseModel):
    vote_id: int
    spark: Optional[InvestedSpark] = None
    action: VoteAction
    weight: float
    timestamp: float


class PortfolioResponse(BaseModel):
    created: List[SparkResponse]
    invested: List[InvestmentResponse]
