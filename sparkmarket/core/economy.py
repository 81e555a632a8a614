"""
Economic policy: action pricing, rate limiting, the daily free-ping quota,
progressive spatial rent, lazy UBI top-ups and the daily issuance.

All debits go through a compare-and-set on the account row, so a failed
authorization never leaves a partial deduction behind.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from . import dao
from .config import EconomyConfig
from .errors import AccountNotFound, InsufficientFunds, RateLimited
from .schema import Account, ActionKind
from ..util.logging import logger

SECONDS_PER_DAY = 86400


@dataclass
class ChargeResult:
    new_balance: int
    charged_cost: int
    free: bool = False


@dataclass
class CreationCost:
    base: int
    rent: int
    deposit: int

    @property
    def total(self) -> int:
        return self.base + self.rent + self.deposit


@dataclass
class IssuanceResult:
    issuance: float
    total_accounts: int
    citizens: int
    ubi_per_citizen: int
    credited: int


def base_cost(action: ActionKind, config: EconomyConfig) -> int:
    """List price of an action before any penalty."""
    return {
        ActionKind.PING: config.cost_ping,
        ActionKind.PING_REMOTE: config.cost_ping_remote,
        ActionKind.VERIFY: config.cost_verify,
        ActionKind.CREATE: config.cost_create,
    }[action]


def ubi_top_up(account: Account, config: EconomyConfig, now: float) -> int:
    """
    Energy owed to the account by the daily basic income, capped at the energy ceiling.

    Paid only once a day, only to accounts below the cap, and only to accounts
    whose balance is at least the stake threshold.
    """
    if account.last_ubi_at is not None and now - account.last_ubi_at < SECONDS_PER_DAY:
        return 0
    if account.energy >= config.energy_cap or account.energy < config.ubi_stake_threshold:
        return 0
    return min(account.energy + config.ubi_daily_amount, config.energy_cap) - account.energy


def utc_day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


class EconomicPolicyEngine:
    """Prices and charges actions against the persisted account balance."""

    def __init__(self, clock: Callable[[], float] = time.time, max_attempts: int = 3):
        self.clock = clock
        self.max_attempts = max_attempts

    def authorize(self, account_id: str, action: ActionKind, config: EconomyConfig,
                  explicit_cost: Optional[int] = None) -> ChargeResult:
        """
        Charge an action to an account.

        Args:
            account_id: Caller identity
            action: What is being charged for
            config: Economy record for this operation
            explicit_cost: Overrides the list price (claim creation passes its total)

        Returns:
            ChargeResult with the new balance and the cost actually applied

        Raises:
            AccountNotFound, RateLimited, InsufficientFunds
        """
        for _ in range(self.max_attempts):
            account = dao.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)

            now = self.clock()
            elapsed = None if account.last_action_at is None else now - account.last_action_at

            if elapsed is not None and elapsed < config.rate_limit_floor_sec:
                logger.log_charge(account_id, action.value, 0, account.energy, status="rate_limited")
                raise RateLimited(retry_after=config.rate_limit_floor_sec - elapsed)

            cost = explicit_cost if explicit_cost is not None else base_cost(action, config)
            if elapsed is not None and elapsed < config.frequency_penalty_window_sec:
                cost = math.ceil(cost * config.frequency_penalty_mult)

            ubi = ubi_top_up(account, config, now)
            available = account.energy + ubi
            if available < cost:
                logger.log_charge(account_id, action.value, cost, account.energy, status="insufficient_funds")
                raise InsufficientFunds(required=cost, available=available)

            balance = dao.try_debit(
                account_id,
                cost=cost,
                ubi_credit=ubi,
                seen_last_action_at=account.last_action_at,
                seen_last_ubi_at=account.last_ubi_at,
                new_last_ubi_at=now if ubi > 0 else account.last_ubi_at,
                now=now,
            )
            if balance is not None:
                if ubi > 0:
                    logger.log_operation("economy.ubi", "success", {"actor_id": account_id, "amount": ubi})
                logger.log_charge(account_id, action.value, cost, balance)
                return ChargeResult(new_balance=balance, charged_cost=cost)

            logger.debug(f"Charge for {account_id} lost a concurrent update, retrying")

        # Another action kept landing first; by now it counts against the floor
        raise RateLimited(retry_after=config.rate_limit_floor_sec)

    def gate_ping(self, account_id: str, is_remote: bool, config: EconomyConfig) -> ChargeResult:
        """
        Daily quota gate for pings.

        The first daily_free_pings of a UTC day are free but still respect the
        rate-limit floor; later ones are charged. The usage counter counts both.
        """
        account = dao.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)

        now = self.clock()
        today = utc_day(now)
        used = account.pings_today if account.quota_reset_date == today else 0

        if used < config.daily_free_pings:
            if dao.claim_free_ping(account_id, now, config.rate_limit_floor_sec, today, config.daily_free_pings):
                return ChargeResult(new_balance=account.energy, charged_cost=0, free=True)

            # Refused: either the floor or a concurrent ping took the last free slot
            account = dao.get_account(account_id)
            used = account.pings_today if account.quota_reset_date == today else 0
            if used < config.daily_free_pings:
                last = account.last_action_at if account.last_action_at is not None else now
                retry_after = max(config.rate_limit_floor_sec - (now - last), 0.0)
                logger.log_charge(account_id, ActionKind.PING.value, 0, account.energy, status="rate_limited")
                raise RateLimited(retry_after=retry_after)

        action = ActionKind.PING_REMOTE if is_remote else ActionKind.PING
        result = self.authorize(account_id, action, config)
        dao.record_ping_usage(account_id, today)
        return result

    def creation_cost(self, author_id: str, cells: Iterable[str], config: EconomyConfig) -> CreationCost:
        """Base cost plus progressive rent over every covered cell plus the risk deposit."""
        now = self.clock()
        rent = 0
        for cell in cells:
            occupancy = dao.count_active_author_claims_in_cell(author_id, cell, now)
            rent += occupancy * config.spatial_rent
        return CreationCost(base=config.cost_create, rent=rent, deposit=config.risk_deposit)


def daily_issuance(config: EconomyConfig, now: Optional[float] = None) -> IssuanceResult:
    """
    Mint the day's issuance and pay its UBI half to citizens.

    Citizens are accounts active within citizen_active_days that keep at least
    citizen_stake_threshold staked. The merit half is not distributed.
    """
    now = time.time() if now is None else now
    active_since = now - config.citizen_active_days * SECONDS_PER_DAY

    total = dao.count_accounts()
    citizens = dao.count_citizens(active_since, config.citizen_stake_threshold)
    ratio = citizens / total if total else 0
    issuance = config.issuance_base_supply * config.issuance_rate * (ratio or 1)

    per_citizen = int((issuance / 2) / citizens) if citizens else 0
    credited = 0
    if per_citizen > 0:
        credited = dao.credit_citizens(per_citizen, active_since, config.citizen_stake_threshold)

    return IssuanceResult(
        issuance=issuance,
        total_accounts=total,
        citizens=citizens,
        ubi_per_citizen=per_citizen,
        credited=credited,
    )
