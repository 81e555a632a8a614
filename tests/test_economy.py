"""
Tests for action pricing, rate limiting, the ping quota, UBI and daily issuance.
"""

import pytest

from sparkmarket.core import dao
from sparkmarket.core.config import EconomyConfig
from sparkmarket.core.db import get_db
from sparkmarket.core.economy import (
    EconomicPolicyEngine,
    base_cost,
    daily_issuance,
    ubi_top_up,
    utc_day,
)
from sparkmarket.core.errors import AccountNotFound, InsufficientFunds, RateLimited
from sparkmarket.core.schema import Account, ActionKind


def set_energy(user_id, energy):
    with get_db() as conn:
        conn.execute("UPDATE accounts SET energy = ? WHERE user_id = ?", (energy, user_id))
        conn.commit()


@pytest.fixture
def engine(test_db, clock):
    return EconomicPolicyEngine(clock=clock)


class TestPricing:

    def test_base_costs(self):
        config = EconomyConfig()
        assert base_cost(ActionKind.PING, config) == 5
        assert base_cost(ActionKind.PING_REMOTE, config) == 15
        assert base_cost(ActionKind.VERIFY, config) == 2
        assert base_cost(ActionKind.CREATE, config) == 50


class TestAuthorize:

    def test_debit_and_stamp(self, engine, fund, economy, clock):
        fund("alice")
        result = engine.authorize("alice", ActionKind.VERIFY, economy)
        assert result.charged_cost == 2
        assert result.new_balance == 98

        account = dao.get_account("alice")
        assert account.energy == 98
        assert account.last_action_at == clock()

    def test_unknown_account(self, engine, economy):
        with pytest.raises(AccountNotFound):
            engine.authorize("ghost", ActionKind.VERIFY, economy)

    def test_second_charge_within_floor_fails_without_change(self, engine, fund, economy, clock):
        fund("alice")
        engine.authorize("alice", ActionKind.VERIFY, economy)
        clock.advance(1)

        with pytest.raises(RateLimited) as exc_info:
            engine.authorize("alice", ActionKind.VERIFY, economy)

        assert exc_info.value.retry_after == pytest.approx(2.0)
        assert exc_info.value.retryable
        assert dao.get_account("alice").energy == 98

    def test_penalty_inside_window(self, engine, fund, economy, clock):
        fund("alice")
        engine.authorize("alice", ActionKind.VERIFY, economy)
        clock.advance(5)

        result = engine.authorize("alice", ActionKind.VERIFY, economy)
        assert result.charged_cost == 2 * 2
        assert result.new_balance == 94

    def test_no_penalty_after_window(self, engine, fund, economy, clock):
        fund("alice")
        engine.authorize("alice", ActionKind.VERIFY, economy)
        clock.advance(11)

        assert engine.authorize("alice", ActionKind.VERIFY, economy).charged_cost == 2

    def test_fractional_penalty_rounds_up(self, engine, fund, clock):
        config = EconomyConfig(ubi_daily_amount=0, frequency_penalty_mult=1.5, cost_verify=3)
        fund("alice")
        engine.authorize("alice", ActionKind.VERIFY, config)
        clock.advance(5)
        assert engine.authorize("alice", ActionKind.VERIFY, config).charged_cost == 5

    def test_insufficient_funds_changes_nothing(self, engine, fund, economy, clock):
        before = fund("alice")
        with pytest.raises(InsufficientFunds) as exc_info:
            engine.authorize("alice", ActionKind.CREATE, economy, explicit_cost=150)

        assert exc_info.value.required == 150
        assert exc_info.value.available == 100
        after = dao.get_account("alice")
        assert after.energy == 100
        assert after.last_action_at == before.last_action_at

        # The failed attempt did not start the rate-limit clock
        assert engine.authorize("alice", ActionKind.VERIFY, economy).new_balance == 98

    def test_explicit_cost_overrides_list_price(self, engine, fund, economy):
        fund("alice", 100)
        assert engine.authorize("alice", ActionKind.CREATE, economy, explicit_cost=160).new_balance == 40

    def test_lost_race_retries_against_fresh_row(self, engine, fund, economy, clock, monkeypatch):
        fund("alice")
        calls = []
        real_try_debit = dao.try_debit

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                return None
            return real_try_debit(*args, **kwargs)

        monkeypatch.setattr(dao, "try_debit", flaky)
        assert engine.authorize("alice", ActionKind.VERIFY, economy).new_balance == 98
        assert len(calls) == 2

    def test_exhausted_retries_report_rate_limit(self, engine, fund, economy, monkeypatch):
        fund("alice")
        monkeypatch.setattr(dao, "try_debit", lambda *a, **k: None)
        with pytest.raises(RateLimited):
            engine.authorize("alice", ActionKind.VERIFY, economy)
        assert dao.get_account("alice").energy == 100


class TestUBI:

    def test_top_up_rules(self):
        config = EconomyConfig()
        now = 1_000_000.0
        assert ubi_top_up(Account("a", energy=60), config, now) == 5
        assert ubi_top_up(Account("a", energy=98), config, now) == 2
        assert ubi_top_up(Account("a", energy=100), config, now) == 0
        assert ubi_top_up(Account("a", energy=40), config, now) == 0
        assert ubi_top_up(Account("a", energy=60, last_ubi_at=now - 3600), config, now) == 0
        assert ubi_top_up(Account("a", energy=60, last_ubi_at=now - 86400), config, now) == 5

    def test_applied_with_charge_once_a_day(self, engine, fund, clock):
        config = EconomyConfig()
        fund("alice")
        set_energy("alice", 60)

        assert engine.authorize("alice", ActionKind.VERIFY, config).new_balance == 63
        assert dao.get_account("alice").last_ubi_at == clock()

        clock.advance(20)
        assert engine.authorize("alice", ActionKind.VERIFY, config).new_balance == 61

        clock.advance(86400)
        assert engine.authorize("alice", ActionKind.VERIFY, config).new_balance == 64

    def test_not_applied_when_charge_is_rate_limited(self, engine, fund, clock):
        config = EconomyConfig()
        fund("alice")
        engine.authorize("alice", ActionKind.VERIFY, EconomyConfig(ubi_daily_amount=0))
        set_energy("alice", 60)
        clock.advance(1)

        with pytest.raises(RateLimited):
            engine.authorize("alice", ActionKind.VERIFY, config)
        account = dao.get_account("alice")
        assert account.energy == 60
        assert account.last_ubi_at is None

    def test_top_up_can_cover_the_charge(self, engine, fund):
        config = EconomyConfig(cost_verify=63)
        fund("alice")
        set_energy("alice", 60)
        assert engine.authorize("alice", ActionKind.VERIFY, config).new_balance == 2


class TestPingQuota:

    def test_free_pings_then_paid(self, engine, fund, economy, clock):
        fund("alice")
        for i in range(economy.daily_free_pings):
            result = engine.gate_ping("alice", False, economy)
            assert result.free
            assert result.charged_cost == 0
            assert dao.get_account("alice").pings_today == i + 1
            clock.advance(11)

        paid = engine.gate_ping("alice", False, economy)
        assert not paid.free
        assert paid.charged_cost == 5
        assert paid.new_balance == 95
        assert dao.get_account("alice").pings_today == 6

    def test_remote_ping_price(self, test_db, fund, clock):
        config = EconomyConfig(ubi_daily_amount=0, daily_free_pings=0)
        engine = EconomicPolicyEngine(clock=clock)
        fund("alice")
        assert engine.gate_ping("alice", True, config).charged_cost == 15

    def test_free_ping_respects_floor(self, engine, fund, economy, clock):
        fund("alice")
        engine.gate_ping("alice", False, economy)
        clock.advance(1)

        with pytest.raises(RateLimited):
            engine.gate_ping("alice", False, economy)
        assert dao.get_account("alice").pings_today == 1

    def test_quota_resets_on_new_utc_day(self, engine, fund, economy, clock):
        fund("alice")
        for _ in range(economy.daily_free_pings):
            engine.gate_ping("alice", False, economy)
            clock.advance(11)

        clock.advance(86400)
        result = engine.gate_ping("alice", False, economy)
        assert result.free
        assert dao.get_account("alice").pings_today == 1

    def test_store_refuses_free_ping_past_quota(self, test_db, fund, clock):
        fund("alice")
        today = utc_day(clock())
        for _ in range(2):
            assert dao.claim_free_ping("alice", clock(), 3.0, today, quota=2)
            clock.advance(11)

        assert not dao.claim_free_ping("alice", clock(), 3.0, today, quota=2)
        account = dao.get_account("alice")
        assert account.pings_today == 2
        assert account.energy == 100

        tomorrow = utc_day(clock() + 86400)
        assert dao.claim_free_ping("alice", clock() + 86400, 3.0, tomorrow, quota=2)
        assert dao.get_account("alice").pings_today == 1

    def test_stale_quota_read_is_charged(self, engine, fund, economy, clock, monkeypatch):
        fund("alice")
        stale = dao.get_account("alice")
        for _ in range(economy.daily_free_pings):
            engine.gate_ping("alice", False, economy)
            clock.advance(11)

        # First read sees the morning snapshot with every free ping still unused
        reads = [stale]
        real_get_account = dao.get_account
        monkeypatch.setattr(dao, "get_account", lambda user_id: reads.pop() if reads else real_get_account(user_id))

        result = engine.gate_ping("alice", False, economy)

        assert not result.free
        assert result.charged_cost == 5
        assert real_get_account("alice").pings_today == economy.daily_free_pings + 1
        assert real_get_account("alice").energy == 95


class TestCreationCost:

    def test_fresh_cell_costs_base_plus_deposit(self, engine, fund, economy):
        fund("alice")
        cost = engine.creation_cost("alice", ["8c283082a1a3bff"], economy)
        assert (cost.base, cost.rent, cost.deposit, cost.total) == (50, 0, 100, 150)


class TestDailyIssuance:

    def test_ubi_half_split_among_citizens(self, test_db, fund, clock):
        config = EconomyConfig()
        for user_id in ("a", "b", "c"):
            fund(user_id)
        dao.add_staked_energy("a", 50)
        dao.add_staked_energy("b", 200)

        result = daily_issuance(config, now=clock())

        assert result.total_accounts == 3
        assert result.citizens == 2
        assert result.issuance == pytest.approx(1000000 * 0.0001 * 2 / 3)
        assert result.ubi_per_citizen == 16
        assert result.credited == 2
        assert dao.get_account("a").energy == 116
        assert dao.get_account("b").energy == 116
        assert dao.get_account("c").energy == 100

    def test_inactive_accounts_are_not_citizens(self, test_db, fund, clock):
        fund("a")
        dao.add_staked_energy("a", 100)
        clock.advance(8 * 86400)

        result = daily_issuance(EconomyConfig(), now=clock())
        assert result.citizens == 0
        assert result.issuance == pytest.approx(100)
        assert result.credited == 0
        assert dao.get_account("a").energy == 100
