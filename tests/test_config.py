"""
Test suite for PerpVault configuration loading

Covers:
  - Section defaults and TOML parsing
  - Environment variable overrides
  - Validation errors
  - Building a venue from configuration
"""

import logging
from pathlib import Path

import pytest

from perpvault.config import (
    ProductConfig,
    VenueConfig,
    load_config,
)
from perpvault.constants import (
    DEFAULT_MIN_PROFIT_TIME,
    DEFAULT_REWARD_DURATION,
    DEFAULT_STAKE_COOLDOWN,
    DEPOSITOR_INCENTIVE_POOL,
    MAX_SHIFT,
    PRICE_SCALE,
)
from perpvault.exchange import InMemoryLedger, StaticPriceFeed, Venue
from perpvault.logger import set_level

E8 = PRICE_SCALE
OWNER = "pv_owner_00000000000000000000000000000001"
EXAMPLE_CONFIG = Path(__file__).parent.parent / "perpvault.example.toml"

MINIMAL_TOML = """
[vault]
cap = 500000000000

[[products]]
product_id = 7
oracle = "SOL/USD"
max_leverage = 2000000000
max_exposure = 100000000000000
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "PERPVAULT_CONFIG", "PERPVAULT_LOG_LEVEL", "PERPVAULT_COLLATERAL_ASSET",
        "PERPVAULT_VAULT_CAP", "PERPVAULT_STAKE_COOLDOWN", "PERPVAULT_CAN_USER_STAKE",
        "PERPVAULT_MIN_MARGIN", "PERPVAULT_MIN_PROFIT_TIME", "PERPVAULT_REWARD_DURATION",
        "PERPVAULT_ALLOW_PUBLIC_LIQUIDATION", "PERPVAULT_MAX_SHIFT",
    ):
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path, text):
    path = tmp_path / "perpvault.toml"
    path.write_text(text)
    return path


# ============================================================================
# 1. Parsing
# ============================================================================

class TestConfigParsing:
    """TOML sections and defaults."""

    def test_defaults(self):
        cfg = VenueConfig()
        assert cfg.vault.stake_cooldown == DEFAULT_STAKE_COOLDOWN
        assert cfg.margin.min_profit_time == DEFAULT_MIN_PROFIT_TIME
        assert cfg.rewards.duration == DEFAULT_REWARD_DURATION
        assert cfg.pricing.max_shift == MAX_SHIFT
        assert cfg.products == []
        assert cfg.validate()

    def test_minimal_file(self, tmp_path):
        cfg = VenueConfig.from_file(str(_write(tmp_path, MINIMAL_TOML)))
        assert cfg.vault.cap == 5_000 * E8
        assert len(cfg.products) == 1
        product = cfg.products[0]
        assert product.product_id == 7
        assert product.fee_bps == 10
        assert product.liquidation_threshold_bps == 200
        assert product.reserve == 0

    def test_example_file(self):
        cfg = VenueConfig.from_file(str(EXAMPLE_CONFIG))
        assert cfg.validate()
        assert [p.oracle for p in cfg.products] == ["ETH/USD", "BTC/USD"]
        assert cfg.fees.protocol_bps + cfg.fees.staker_bps + cfg.fees.depositor_bps == 10_000

    def test_missing_file_uses_defaults(self, tmp_path):
        cfg = VenueConfig.from_file(str(tmp_path / "absent.toml"))
        assert cfg.vault.cap == 0
        assert cfg.products == []

    def test_product_requires_fields(self):
        with pytest.raises(ValueError, match="missing max_exposure"):
            ProductConfig.from_dict({"product_id": 1, "oracle": "ETH/USD", "max_leverage": E8})

    def test_to_dict_round_trip(self, tmp_path):
        cfg = VenueConfig.from_file(str(_write(tmp_path, MINIMAL_TOML)))
        again = VenueConfig.from_dict(cfg.to_dict())
        assert again == cfg


# ============================================================================
# 2. Environment overrides
# ============================================================================

class TestEnvOverrides:
    """PERPVAULT_* variables win over the file."""

    def test_numeric_and_bool_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PERPVAULT_VAULT_CAP", "42")
        monkeypatch.setenv("PERPVAULT_CAN_USER_STAKE", "false")
        monkeypatch.setenv("PERPVAULT_ALLOW_PUBLIC_LIQUIDATION", "True")
        monkeypatch.setenv("PERPVAULT_MAX_SHIFT", "0")
        monkeypatch.setenv("PERPVAULT_LOG_LEVEL", "debug")

        cfg = VenueConfig.from_file(str(_write(tmp_path, MINIMAL_TOML)))
        assert cfg.vault.cap == 42
        assert cfg.vault.can_user_stake is False
        assert cfg.liquidation.allow_public_liquidation is True
        assert cfg.pricing.max_shift == 0
        assert cfg.venue.log_level == "DEBUG"

    def test_bad_bool_rejected(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PERPVAULT_CAN_USER_STAKE", "sometimes")
        with pytest.raises(ValueError, match="true/false"):
            VenueConfig.from_file(str(_write(tmp_path, MINIMAL_TOML)))

    def test_load_config_from_env_path(self, tmp_path, monkeypatch):
        path = _write(tmp_path, MINIMAL_TOML)
        monkeypatch.setenv("PERPVAULT_CONFIG", str(path))
        assert load_config().products[0].oracle == "SOL/USD"

    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PERPVAULT_CONFIG", str(tmp_path / "absent.toml"))
        path = _write(tmp_path, MINIMAL_TOML)
        assert load_config(str(path)).vault.cap == 5_000 * E8


# ============================================================================
# 3. Validation
# ============================================================================

class TestConfigValidation:
    """validate() rejects inconsistent settings."""

    def test_fee_split_sum(self):
        cfg = VenueConfig()
        cfg.fees.vault_bps = 1
        with pytest.raises(ValueError, match="fee split"):
            cfg.validate()

    def test_log_level(self):
        cfg = VenueConfig()
        cfg.venue.log_level = "LOUD"
        with pytest.raises(ValueError, match="log_level"):
            cfg.validate()

    def test_position_size_order(self):
        cfg = VenueConfig()
        cfg.margin.min_position_size = 100
        cfg.margin.max_position_size = 50
        with pytest.raises(ValueError, match="max_position_size"):
            cfg.validate()

    def test_duplicate_product(self):
        cfg = VenueConfig.from_dict({"products": [
            {"product_id": 1, "oracle": "ETH/USD", "max_leverage": E8, "max_exposure": E8},
            {"product_id": 1, "oracle": "BTC/USD", "max_leverage": E8, "max_exposure": E8},
        ]})
        with pytest.raises(ValueError, match="Duplicate product_id"):
            cfg.validate()

    def test_zero_reward_duration(self):
        cfg = VenueConfig()
        cfg.rewards.duration = 0
        with pytest.raises(ValueError, match="reward duration"):
            cfg.validate()


# ============================================================================
# 4. Venue.from_config
# ============================================================================

class TestVenueFromConfig:
    """A configured venue reflects every section."""

    def test_build_from_example(self):
        cfg = VenueConfig.from_file(str(EXAMPLE_CONFIG))
        venue = Venue.from_config(cfg, OWNER, InMemoryLedger(), StaticPriceFeed())

        assert venue.get_vault().cap == cfg.vault.cap
        assert venue.get_product(1).reserve == 5_000 * E8
        assert venue.get_product(2).interest_bps == 100
        assert venue.settings.min_margin == 10 * E8
        assert venue.settings.fee_split.depositor_bps == 5000
        assert venue.get_reward_pool(DEPOSITOR_INCENTIVE_POOL).reward_asset == "REWARD"
        assert venue.access.owner == OWNER

    def test_invalid_config_rejected(self):
        cfg = VenueConfig()
        cfg.pricing.max_shift = -1
        with pytest.raises(ValueError):
            Venue.from_config(cfg, OWNER, InMemoryLedger(), StaticPriceFeed())

    def test_log_level_scoped_to_package(self):
        cfg = VenueConfig()
        cfg.venue.log_level = "DEBUG"
        package_logger = logging.getLogger("perpvault")
        previous = package_logger.level
        root_level = logging.getLogger().level
        try:
            Venue.from_config(cfg, OWNER, InMemoryLedger(), StaticPriceFeed())
            assert package_logger.level == logging.DEBUG
            assert logging.getLogger().level == root_level
        finally:
            package_logger.setLevel(previous)

    def test_unknown_log_level_rejected(self):
        with pytest.raises(ValueError, match="Unknown log level"):
            set_level("LOUD")
