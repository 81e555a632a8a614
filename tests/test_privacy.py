"""
Tests for privacy budgets, perturbed search results and search dividends.
"""

import random

import pytest

from sparkmarket.core import dao, geo
from sparkmarket.core.config import EconomyConfig
from sparkmarket.core.errors import InvalidInput, PrivacyBudgetExceeded
from sparkmarket.core.privacy import GRID, RADIUS, PrivacyBudget, PrivacyLayer

from conftest import HOME


@pytest.fixture
def layer(clock):
    return PrivacyLayer(rng=random.Random(5), clock=clock)


@pytest.fixture
def claim(market, fund, clock):
    fund("author", 500)
    created = market.create_claim("author", HOME[0], HOME[1], "Farmers market until 2pm").claim
    clock.advance(11)
    return created


class TestPrivacyBudget:

    def test_grid_ceiling(self, clock):
        budget = PrivacyBudget(clock=clock)
        for i in range(20):
            assert budget.consume("alice", "cell-a", GRID) == i + 1

        with pytest.raises(PrivacyBudgetExceeded) as exc_info:
            budget.consume("alice", "cell-a", GRID)
        assert exc_info.value.ceiling == 20
        assert budget.usage("alice", "cell-a", GRID) == 20

    def test_radius_ceiling_is_tighter(self, clock):
        budget = PrivacyBudget(clock=clock)
        for _ in range(5):
            budget.consume("alice", "9q8yyk", RADIUS)
        with pytest.raises(PrivacyBudgetExceeded):
            budget.consume("alice", "9q8yyk", RADIUS)

    def test_regions_and_actors_are_independent(self, clock):
        budget = PrivacyBudget(grid_ceiling=1, clock=clock)
        budget.consume("alice", "cell-a", GRID)
        assert budget.consume("alice", "cell-b", GRID) == 1
        assert budget.consume("bob", "cell-a", GRID) == 1

    def test_window_resets(self, clock):
        budget = PrivacyBudget(grid_ceiling=1, window_sec=60, clock=clock)
        budget.consume("alice", "cell-a", GRID)
        clock.advance(60)
        assert budget.usage("alice", "cell-a", GRID) == 0
        assert budget.consume("alice", "cell-a", GRID) == 1

    def test_least_recent_entry_evicted(self, clock):
        budget = PrivacyBudget(max_entries=2, clock=clock)
        budget.consume("alice", "a", GRID)
        budget.consume("alice", "b", GRID)
        budget.consume("alice", "a", GRID)
        budget.consume("alice", "c", GRID)

        assert len(budget) == 2
        assert budget.usage("alice", "b", GRID) == 0
        assert budget.usage("alice", "a", GRID) == 2

    def test_empty_budget_is_kept_by_the_layer(self, clock):
        budget = PrivacyBudget(grid_ceiling=2, clock=clock)
        rng = random.Random(9)
        assert len(budget) == 0

        layer = PrivacyLayer(budget=budget, rng=rng, clock=clock)

        assert layer.budget is budget
        assert layer.budget.ceilings[GRID] == 2
        assert layer.rng is rng


class TestGridSearch:

    def test_results_are_perturbed_copies(self, layer, claim, economy):
        results = layer.search("seeker", geo.cell_for(*HOME), economy)

        assert [r.id for r in results] == [claim.id]
        found = results[0]
        assert (found.lat, found.lon) != (claim.lat, claim.lon)
        assert geo.haversine_m(claim.lat, claim.lon, found.lat, found.lon) <= 50.5
        assert not hasattr(found, "author_id")
        assert not hasattr(found, "upvote_weight")

        stored = dao.get_claim(claim.id)
        assert (stored.lat, stored.lon) == (claim.lat, claim.lon)

    def test_budget_exhaustion_looks_empty(self, clock, claim, economy):
        layer = PrivacyLayer(budget=PrivacyBudget(grid_ceiling=2, clock=clock), clock=clock)
        cell = geo.cell_for(*HOME)

        assert len(layer.search("seeker", cell, economy)) == 1
        assert len(layer.search("seeker", cell, economy)) == 1
        assert layer.search("seeker", cell, economy) == []
        # Someone else still sees the claim
        assert len(layer.search("other", cell, economy)) == 1

    def test_invalid_cell(self, layer, test_db, economy):
        with pytest.raises(InvalidInput):
            layer.search("seeker", "zzz", economy)

    def test_result_limit_keeps_newest(self, market, claim, clock, economy):
        newer = market.create_claim("author", HOME[0], HOME[1], "Moved to the plaza").claim
        layer = PrivacyLayer(rng=random.Random(1), clock=clock, result_limit=1)

        results = layer.search("seeker", geo.cell_for(*HOME), economy)
        assert [r.id for r in results] == [newer.id]


class TestRadiusSearch:

    def test_filters_by_distance(self, market, claim, clock, layer, economy):
        # About 2km north
        far = market.create_claim("author", HOME[0] + 0.018, HOME[1], "Parade on 5th").claim

        results = layer.search("seeker", HOME, economy, radius_m=500)
        ids = [r.id for r in results]
        assert claim.id in ids
        assert far.id not in ids

    def test_rejects_bad_radius(self, layer, test_db, economy):
        with pytest.raises(InvalidInput):
            layer.search("seeker", HOME, economy, radius_m=0)

    def test_rejects_bad_target(self, layer, test_db, economy):
        with pytest.raises(InvalidInput):
            layer.search("seeker", 42, economy)


class TestDividends:

    def test_split_between_pool_and_author(self, layer, claim, economy):
        author_before = dao.get_account("author").energy

        layer.pay_dividends([dao.get_claim(claim.id)], 10, economy)

        assert dao.get_claim(claim.id).verifier_reward_pool == 1
        assert dao.get_account("author").energy == author_before + 2

    def test_paid_search_pays_dividend(self, layer, claim, economy):
        author_before = dao.get_account("author").energy
        layer.search("seeker", geo.cell_for(*HOME), economy, charged_cost=10)
        assert dao.get_claim(claim.id).verifier_reward_pool == 1
        assert dao.get_account("author").energy == author_before + 2

    def test_free_search_pays_nothing(self, layer, claim, economy):
        author_before = dao.get_account("author").energy
        layer.search("seeker", geo.cell_for(*HOME), economy, charged_cost=0)
        assert dao.get_claim(claim.id).verifier_reward_pool == 0
        assert dao.get_account("author").energy == author_before

    def test_share_too_small_to_split(self, layer, claim):
        config = EconomyConfig(dividend_ratio=0.1)
        layer.pay_dividends([dao.get_claim(claim.id)], 5, config)
        assert dao.get_claim(claim.id).verifier_reward_pool == 0

    def test_forgotten_author_share_is_burned(self, market, layer, claim, economy):
        market.forget_claim("author", claim.id)
        # Retired claims no longer show in search, so pay directly
        stored = dao.get_claim(claim.id)
        assert stored.author_id is None
        before = dao.get_account("author").energy

        layer.pay_dividends([stored], 10, economy)
        assert dao.get_account("author").energy == before
        assert dao.get_claim(claim.id).verifier_reward_pool == 1

    def test_store_failure_is_logged(self, layer, claim, economy, monkeypatch):
        def boom(*args):
            raise RuntimeError("disk full")

        monkeypatch.setattr(dao, "credit_reward_pools", boom)
        layer.pay_dividends([dao.get_claim(claim.id)], 10, economy)
        assert dao.get_claim(claim.id).verifier_reward_pool == 0
