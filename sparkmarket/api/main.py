"""
HTTP transport for the spark market.

Caller identity arrives in the X-User-Id header, set by the upstream auth
layer; this service performs no credential checks of its own.
"""

import math
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .schemas import (
    BalanceResponse,
    CreateSparkRequest,
    CreateSparkResponse,
    EconomyConfigPatch,
    HarvestResponse,
    HealthResponse,
    InvestedSpark,
    InvestmentResponse,
    PingRequest,
    PingResponse,
    PortfolioResponse,
    PublicSparkResponse,
    SparkIdRequest,
    SparkListResponse,
    SparkResponse,
    SuccessResponse,
    VerifyRequest,
    VerifyResponse,
)
from ..core.config import VERSION, debug_enabled, get_admin_token, update_economy_config
from ..core.db import health_check, init_db
from ..core.errors import (
    InsufficientFunds,
    MarketError,
    NotAuthorized,
    RateLimited,
)
from ..core.market import MarketEngine
from ..core.schema import Claim, PublicClaim, VoteMeta
from ..util.logging import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Spark Market API",
    version=VERSION,
    description="Geofenced truth-verification market",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_engine = MarketEngine()


def get_engine() -> MarketEngine:
    return _engine


def get_actor(x_user_id: Optional[str] = Header(default=None),
              engine: MarketEngine = Depends(get_engine)) -> str:
    """Resolve the caller and open their account on first sight."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    actor_id = x_user_id.strip()
    engine.ensure_account(actor_id)
    return actor_id


def _status_for(error: MarketError) -> int:
    if isinstance(error, RateLimited):
        return 429
    if isinstance(error, InsufficientFunds):
        return 402
    if isinstance(error, NotAuthorized):
        return 403
    return 400


@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError):
    status_code = _status_for(exc)
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(max(math.ceil(exc.retry_after), 1))
    logger.log_operation("api.error", exc.code, {"path": request.url.path, "status": status_code})
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()}, headers=headers)


def _spark(claim: Claim) -> SparkResponse:
    return SparkResponse(
        id=claim.id,
        content=claim.content,
        type=claim.claim_type,
        lat=claim.lat,
        lon=claim.lon,
        cells=claim.cells,
        radius=claim.radius,
        confidence=claim.confidence,
        status=claim.status,
        verifier_reward_pool=claim.verifier_reward_pool,
        spatial_rent=claim.spatial_rent,
        deposit=claim.deposit,
        staked_energy=claim.staked_energy,
        revision=claim.revision,
        created_at=claim.created_at,
        expires_at=claim.expires_at,
    )


def _public_spark(claim: PublicClaim) -> PublicSparkResponse:
    return PublicSparkResponse(
        id=claim.id,
        content=claim.content,
        type=claim.claim_type,
        confidence=claim.confidence,
        lat=claim.lat,
        lon=claim.lon,
        radius=claim.radius,
        verifier_reward_pool=claim.verifier_reward_pool,
        status=claim.status,
        created_at=claim.created_at,
        expires_at=claim.expires_at,
    )


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint():
    """Check system health."""
    db_health = health_check()
    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health
    )


@app.get("/market/config")
def get_config(engine: MarketEngine = Depends(get_engine)):
    return engine.public_config()


@app.patch("/market/config")
def patch_config(patch: EconomyConfigPatch, x_admin_token: Optional[str] = Header(default=None)):
    """Change economy tunables. Requires the admin token."""
    admin_token = get_admin_token()
    if admin_token is None or x_admin_token != admin_token:
        raise NotAuthorized("Admin token required")
    try:
        updated = update_economy_config(patch, updated_by="admin")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return updated.to_dict()


@app.get("/market/balance", response_model=BalanceResponse)
def get_balance(actor_id: str = Depends(get_actor), engine: MarketEngine = Depends(get_engine)):
    return BalanceResponse(**engine.balance(actor_id))


@app.get("/market/sparks", response_model=SparkListResponse)
def list_my_sparks(actor_id: str = Depends(get_actor), engine: MarketEngine = Depends(get_engine)):
    return SparkListResponse(sparks=[_spark(c) for c in engine.my_claims(actor_id)])


@app.get("/market/portfolio", response_model=PortfolioResponse)
def get_portfolio(actor_id: str = Depends(get_actor), engine: MarketEngine = Depends(get_engine)):
    portfolio = engine.portfolio(actor_id)
    return PortfolioResponse(
        created=[_spark(c) for c in portfolio["created"]],
        invested=[
            InvestmentResponse(
                vote_id=item["vote_id"],
                spark=InvestedSpark(**item["claim"]) if item["claim"] else None,
                action=item["action"],
                weight=item["weight"],
                timestamp=item["timestamp"],
            )
            for item in portfolio["invested"]
        ]
    )


@app.post("/market/ping", response_model=PingResponse)
def ping(req: PingRequest, actor_id: str = Depends(get_actor), engine: MarketEngine = Depends(get_engine)):
    target = req.cell if req.cell is not None else (req.lat, req.lon)
    result = engine.ping(actor_id, target, is_remote=req.is_remote, radius_m=req.radius)
    return PingResponse(
        sparks=[_public_spark(c) for c in result.claims],
        energy=result.energy,
        cost=result.cost
    )


@app.post("/market/sparks", response_model=CreateSparkResponse)
def create_spark(req: CreateSparkRequest, actor_id: str = Depends(get_actor),
                 engine: MarketEngine = Depends(get_engine)):
    result = engine.create_claim(
        actor_id, req.lat, req.lon, req.content,
        claim_type=req.type, radius=req.radius, cells=req.cells
    )
    return CreateSparkResponse(spark=_spark(result.claim), energy=result.energy, cost=result.cost)


@app.post("/market/verify", response_model=VerifyResponse)
def verify(req: VerifyRequest, actor_id: str = Depends(get_actor), engine: MarketEngine = Depends(get_engine)):
    meta = VoteMeta(
        device_id_hash=req.device_id_hash,
        ip_subnet=req.ip_subnet,
        bluetooth_peers=req.bluetooth_peers,
        reported_distance_m=req.reported_distance_m,
    )
    outcome = engine.verify(actor_id, req.spark_id, req.action, req.lat, req.lon, meta)
    return VerifyResponse(
        confidence=outcome.confidence,
        reward_pool=outcome.reward_pool,
        status=outcome.status,
        weight=outcome.weight,
        energy=outcome.energy,
        cost=outcome.charged_cost
    )


@app.post("/market/harvest", response_model=HarvestResponse)
def harvest(req: SparkIdRequest, actor_id: str = Depends(get_actor), engine: MarketEngine = Depends(get_engine)):
    result = engine.harvest(actor_id, req.spark_id)
    return HarvestResponse(claimed=result.claimed, remaining_pool=result.remaining_pool)


@app.post("/market/gdpr_forget", response_model=SuccessResponse)
def gdpr_forget(req: SparkIdRequest, actor_id: str = Depends(get_actor),
                engine: MarketEngine = Depends(get_engine)):
    engine.forget_claim(actor_id, req.spark_id)
    return SuccessResponse()


@app.delete("/market/sparks/{claim_id}", response_model=SuccessResponse)
def delete_spark(claim_id: str, actor_id: str = Depends(get_actor), engine: MarketEngine = Depends(get_engine)):
    engine.delete_claim(actor_id, claim_id)
    return SuccessResponse(message="Spark removed")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
