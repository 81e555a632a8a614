"""
Tests for process settings and the stored economy record.
"""

from dataclasses import FrozenInstanceError

import pytest
from pydantic import ValidationError

from sparkmarket.api.schemas import EconomyConfigPatch
from sparkmarket.core import dao
from sparkmarket.core.config import (
    EconomyConfig,
    get_admin_token,
    get_economy_config,
    update_economy_config,
    validate_heartbeat_config,
)


class TestEconomyConfig:

    def test_defaults(self):
        config = EconomyConfig()
        assert config.cost_create == 50
        assert config.risk_deposit == 100
        assert config.wither_threshold == 0.1
        assert config.reputation_max == 10.0

    def test_from_dict_ignores_unknown_and_fills_missing(self):
        config = EconomyConfig.from_dict({"cost_verify": 4, "retired_knob": True})
        assert config.cost_verify == 4
        assert config.cost_ping == 5

    def test_from_dict_of_nothing(self):
        assert EconomyConfig.from_dict(None) == EconomyConfig()

    def test_frozen(self):
        with pytest.raises(FrozenInstanceError):
            EconomyConfig().cost_verify = 9

    def test_public_view(self):
        view = EconomyConfig().public_view()
        assert set(view) == {
            "cost_create", "cost_verify", "cost_ping", "cost_ping_remote",
            "risk_deposit", "energy_cap", "spatial_rent", "daily_free_pings",
        }


class TestStoredRecord:

    def test_defaults_before_anything_is_saved(self, test_db):
        assert get_economy_config() == EconomyConfig()

    def test_partial_update_keeps_other_fields(self, test_db):
        dao.save_economy_config(EconomyConfig(cost_ping=7))

        updated = update_economy_config(EconomyConfigPatch(cost_verify=4), updated_by="ops")

        assert updated.cost_verify == 4
        assert updated.cost_ping == 7
        assert dao.load_economy_config() == updated

    def test_update_is_visible_immediately(self, test_db):
        assert get_economy_config().cost_create == 50
        update_economy_config(EconomyConfigPatch(cost_create=75))
        assert get_economy_config().cost_create == 75

    @pytest.mark.parametrize("patch", [
        EconomyConfigPatch(frequency_penalty_window_sec=1.0),
        EconomyConfigPatch(rate_limit_floor_sec=30.0),
        EconomyConfigPatch(reputation_min=20.0),
        EconomyConfigPatch(reputation_max=0.05),
    ])
    def test_single_field_update_checked_against_stored_record(self, test_db, patch):
        before = dao.load_economy_config()

        with pytest.raises(ValueError, match="Economy configuration invalid"):
            update_economy_config(patch, updated_by="ops")

        assert dao.load_economy_config() == before
        assert get_economy_config() == before

    def test_merged_record_validation(self):
        assert EconomyConfig().validate() == []
        issues = EconomyConfig(rate_limit_floor_sec=3.0, frequency_penalty_window_sec=1.0).validate()
        assert issues == ["frequency_penalty_window_sec must be >= rate_limit_floor_sec"]


class TestPatchValidation:

    def test_negative_cost(self):
        with pytest.raises(ValidationError):
            EconomyConfigPatch(cost_verify=-1)

    def test_ratio_out_of_range(self):
        with pytest.raises(ValidationError):
            EconomyConfigPatch(dividend_ratio=1.5)

    def test_reputation_bounds_ordered(self):
        with pytest.raises(ValidationError):
            EconomyConfigPatch(reputation_min=5, reputation_max=2)

    def test_only_set_fields_are_dumped(self):
        patch = EconomyConfigPatch(cost_verify=3)
        assert patch.model_dump(exclude_unset=True, exclude_none=True) == {"cost_verify": 3}


class TestProcessSettings:

    def test_admin_token(self, monkeypatch):
        monkeypatch.setenv("ADMIN_TOKEN", "")
        assert get_admin_token() is None
        monkeypatch.setenv("ADMIN_TOKEN", "tok")
        assert get_admin_token() == "tok"

    def test_heartbeat_requires_maintenance(self, monkeypatch):
        monkeypatch.setenv("HEARTBEAT_ENABLED", "true")
        monkeypatch.delenv("MAINTENANCE_ENABLED", raising=False)
        assert validate_heartbeat_config() == ["HEARTBEAT_ENABLED requires MAINTENANCE_ENABLED=true"]

        monkeypatch.setenv("MAINTENANCE_ENABLED", "true")
        assert validate_heartbeat_config() == []
