"""Risk settings and VIPER configuration defaults / persistence."""

from decimal import Decimal

import pytest

from backend.models.database import ViperSettings
from backend.services.errors import InvalidInput, NotFound
from backend.services.risk_settings import RiskLimits, RiskSettingsService, resolve_risk_defaults
from backend.services.viper.config import (
    ViperConfig,
    load_viper_config,
    resolve_viper_defaults,
    save_viper_config,
)


# ── Risk settings ───────────────────────────────────────────────────────────

def test_risk_defaults():
    limits = resolve_risk_defaults({})
    assert limits == RiskLimits()
    assert limits.max_position_size == Decimal("15")
    assert limits.stop_loss_percentage == Decimal("5")
    assert limits.take_profit_percentage == Decimal("25")
    assert limits.max_daily_loss == Decimal("1000")


def test_risk_partial_ignores_none_and_unknown_keys():
    limits = resolve_risk_defaults({"stop_loss_percentage": "7.5", "max_daily_loss": None, "bogus": 1})
    assert limits.stop_loss_percentage == Decimal("7.5")
    assert limits.max_daily_loss == Decimal("1000")


def test_risk_rejects_bad_values():
    with pytest.raises(InvalidInput):
        resolve_risk_defaults({"max_position_size": "lots"})
    with pytest.raises(InvalidInput):
        resolve_risk_defaults({"max_position_size": "-1"})


def test_risk_get_without_row_returns_defaults(db):
    assert RiskSettingsService().get(db, 12345) == RiskLimits()


def test_risk_upsert_merges_with_existing(db, user):
    service = RiskSettingsService()
    service.upsert(db, user.id, {"max_position_size": Decimal("20")})
    limits = service.upsert(db, user.id, {"max_daily_loss": Decimal("250")})

    assert limits.max_position_size == Decimal("20")
    assert limits.max_daily_loss == Decimal("250")
    assert service.get(db, user.id) == limits


def test_risk_upsert_unknown_user(db):
    with pytest.raises(NotFound):
        RiskSettingsService().upsert(db, 999, {"max_daily_loss": 1})


# ── VIPER config ────────────────────────────────────────────────────────────

def test_viper_defaults():
    config = resolve_viper_defaults(None)
    assert config == ViperConfig()
    assert config.max_leverage == 10
    assert config.max_concurrent_trades == 3
    assert config.is_enabled is True


def test_viper_coerces_strings():
    config = resolve_viper_defaults({"max_leverage": "5", "stop_loss": "1.5", "is_enabled": "false"})
    assert config.max_leverage == 5
    assert config.stop_loss == 1.5
    assert config.is_enabled is False


def test_viper_rejects_zero_concurrency():
    with pytest.raises(InvalidInput):
        resolve_viper_defaults({"max_concurrent_trades": 0})


def test_load_viper_config_creates_default_row(db, user):
    assert db.query(ViperSettings).count() == 0
    assert load_viper_config(db, user.id) == ViperConfig()
    assert db.query(ViperSettings).count() == 1


def test_load_viper_config_unknown_user(db):
    with pytest.raises(NotFound):
        load_viper_config(db, 999)


def test_save_viper_config_partial_update(db, user):
    save_viper_config(db, user.id, {"max_leverage": 20, "profit_target": None})
    config = load_viper_config(db, user.id)
    assert config.max_leverage == 20
    assert config.profit_target == 2.0
