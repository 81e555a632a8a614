"""
Process settings and the economic configuration record.

Process settings come from the environment (a local .env file is honoured).
Economic tunables live in a single stored record and are handed to the engines
explicitly; nothing in the engines reads configuration on its own.
"""

import os
import threading
import time
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

# Debug flag
DEBUG = os.getenv("DEBUG", "true").lower() == "true"

# Spatial indexing
TRUTH_RESOLUTION = int(os.getenv("TRUTH_RESOLUTION", "12"))  # ~300m² per h3 cell
CLAIM_GEOHASH_PRECISION = int(os.getenv("CLAIM_GEOHASH_PRECISION", "9"))
SEARCH_GEOHASH_PRECISION = int(os.getenv("SEARCH_GEOHASH_PRECISION", "6"))

# Search and privacy
SEARCH_RESULT_LIMIT = int(os.getenv("SEARCH_RESULT_LIMIT", "50"))
DEFAULT_PING_RADIUS_M = float(os.getenv("DEFAULT_PING_RADIUS_M", "500"))
PERTURBATION_RADIUS_M = float(os.getenv("PERTURBATION_RADIUS_M", "50"))
PRIVACY_BUDGET_GRID = int(os.getenv("PRIVACY_BUDGET_GRID", "20"))
PRIVACY_BUDGET_RADIUS = int(os.getenv("PRIVACY_BUDGET_RADIUS", "5"))
PRIVACY_BUDGET_WINDOW_SEC = int(os.getenv("PRIVACY_BUDGET_WINDOW_SEC", "86400"))
PRIVACY_BUDGET_MAX_ENTRIES = int(os.getenv("PRIVACY_BUDGET_MAX_ENTRIES", "100000"))

# Claim lifecycle
CLAIM_TTL_DAYS = int(os.getenv("CLAIM_TTL_DAYS", "7"))
VOTE_RETENTION_DAYS = int(os.getenv("VOTE_RETENTION_DAYS", "30"))
MAX_FIELD_CELLS = int(os.getenv("MAX_FIELD_CELLS", "50"))
MAX_CONTENT_LENGTH = 280
MIN_CLAIM_RADIUS = 20
MAX_CLAIM_RADIUS = 200
DEFAULT_CLAIM_RADIUS = 50

# Economic config cache (bounded staleness)
CONFIG_CACHE_TTL_SEC = float(os.getenv("CONFIG_CACHE_TTL_SEC", "5"))

# Maintenance and scheduling (default disabled)
HEARTBEAT_ENABLED = os.getenv("HEARTBEAT_ENABLED", "false").lower() == "true"
MAINTENANCE_SCHEDULE_SEC = int(os.getenv("MAINTENANCE_SCHEDULE_SEC", "86400"))  # Daily maintenance (24 hours)

# Version string
VERSION = "0.4.0"


def get_db_path() -> str:
    """Database path, re-read on every connection so tests can redirect it."""
    return os.getenv("DB_PATH", "./data/market.db")


def ensure_db_directory():
    """Ensure the database directory exists."""
    Path(get_db_path()).parent.mkdir(parents=True, exist_ok=True)


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "true").lower() == "true"


def maintenance_enabled():
    """Check if the maintenance system is enabled."""
    return os.getenv("MAINTENANCE_ENABLED", "false").lower() == "true"


def is_heartbeat_enabled():
    """Check if the maintenance scheduler is enabled."""
    return os.getenv("HEARTBEAT_ENABLED", "false").lower() == "true"


def get_admin_token() -> Optional[str]:
    """Token guarding economy config changes over HTTP. None disables them."""
    return os.getenv("ADMIN_TOKEN") or None


def validate_heartbeat_config():
    """Validate scheduler configuration and return any issues."""
    issues = []

    if is_heartbeat_enabled() and not maintenance_enabled():
        issues.append("HEARTBEAT_ENABLED requires MAINTENANCE_ENABLED=true")

    if MAINTENANCE_SCHEDULE_SEC < 1:
        issues.append("MAINTENANCE_SCHEDULE_SEC must be >= 1")

    return issues


@dataclass(frozen=True)
class EconomyConfig:
    """Every tunable of the market economy. Defaults match a fresh deployment."""

    # Action costs
    daily_free_pings: int = 5
    cost_ping: int = 5
    cost_ping_remote: int = 15
    cost_verify: int = 2
    cost_create: int = 50
    spatial_rent: int = 10
    risk_deposit: int = 100

    # Balances
    energy_cap: int = 100
    initial_energy: int = 100

    # Vote weighting
    validation_weight_neighbor: float = 0.5
    min_vote_weight: float = 0.01

    # Rate limiting
    rate_limit_floor_sec: float = 3.0
    frequency_penalty_window_sec: float = 10.0
    frequency_penalty_mult: float = 2.0

    # Universal basic income
    ubi_daily_amount: int = 5
    ubi_stake_threshold: int = 50

    # Consensus and dividends
    wither_threshold: float = 0.1
    dividend_ratio: float = 0.3
    verifier_retention: float = 0.5

    # Reputation
    reputation_loss_publisher: float = 0.5
    reputation_loss_believer: float = 0.1
    reputation_gain_challenger: float = 0.2
    reputation_min: float = 0.1
    reputation_max: float = 10.0

    # Daily issuance
    issuance_base_supply: int = 1000000
    issuance_rate: float = 0.0001
    citizen_stake_threshold: int = 50
    citizen_active_days: int = 7

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EconomyConfig":
        """Build from a stored payload, ignoring unknown keys and defaulting missing ones."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def public_view(self) -> Dict[str, Any]:
        """The subset clients may see."""
        return {
            "cost_create": self.cost_create,
            "cost_verify": self.cost_verify,
            "cost_ping": self.cost_ping,
            "cost_ping_remote": self.cost_ping_remote,
            "risk_deposit": self.risk_deposit,
            "energy_cap": self.energy_cap,
            "spatial_rent": self.spatial_rent,
            "daily_free_pings": self.daily_free_pings,
        }

    def validate(self) -> List[str]:
        """Cross-field checks on a complete record; returns any issues."""
        issues = []

        if self.frequency_penalty_window_sec < self.rate_limit_floor_sec:
            issues.append("frequency_penalty_window_sec must be >= rate_limit_floor_sec")

        if self.reputation_min > self.reputation_max:
            issues.append("reputation_min must be <= reputation_max")

        return issues


class _ConfigCache:
    """Read-mostly cache for the economy record; staleness bounded by CONFIG_CACHE_TTL_SEC."""

    def __init__(self, ttl_sec: float):
        self._ttl_sec = ttl_sec
        self._lock = threading.Lock()
        self._value: Optional[EconomyConfig] = None
        self._loaded_at = 0.0

    def get(self) -> EconomyConfig:
        with self._lock:
            if self._value is not None and time.monotonic() - self._loaded_at < self._ttl_sec:
                return self._value

        from .dao import load_economy_config
        value = load_economy_config()

        with self._lock:
            self._value = value
            self._loaded_at = time.monotonic()
        return value

    def invalidate(self):
        with self._lock:
            self._value = None


_cache = _ConfigCache(CONFIG_CACHE_TTL_SEC)


def get_economy_config() -> EconomyConfig:
    """Current economic configuration (cached briefly)."""
    return _cache.get()


def invalidate_economy_config():
    """Drop the cached record so the next read hits the store."""
    _cache.invalidate()


def update_economy_config(patch, updated_by: str = "system") -> EconomyConfig:
    """
    Apply a partial update to the stored economic configuration.

    Args:
        patch: EconomyConfigPatch with only the tunables to change set
        updated_by: Identity recorded alongside the change

    Returns:
        EconomyConfig: The record after the update

    Raises:
        ValueError: If the merged record is inconsistent; nothing is stored
    """
    from .dao import load_economy_config, save_economy_config
    from ..util.logging import audit_event

    changes = patch.model_dump(exclude_unset=True, exclude_none=True)
    current = load_economy_config()
    updated = replace(current, **changes)
    issues = updated.validate()
    if issues:
        raise ValueError(f"Economy configuration invalid: {issues}")

    save_economy_config(updated, updated_by)
    invalidate_economy_config()

    audit_event(
        event_type="economy_config_updated",
        identifiers={"updated_by": updated_by},
        payload={"changed_fields": sorted(changes.keys())}
    )
    return updated
