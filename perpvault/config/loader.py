"""
PerpVault TOML Configuration Loader

Loads every section of perpvault.toml with environment variable overrides
(dataclass + from_dict + from_file per section).

Environment variable mapping:
    [venue] log_level                   -> PERPVAULT_LOG_LEVEL
    [vault] cap                         -> PERPVAULT_VAULT_CAP
    [liquidation] allow_public_liquidation -> PERPVAULT_ALLOW_PUBLIC_LIQUIDATION
    ...

All amounts are raw fixed-point integers: prices, margins, leverage and
balances at 1e8, rates in basis points, durations in seconds.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    try:
        import tomli  # type: ignore[no-redef]
    except ImportError:
        tomli = None  # type: ignore[assignment]

from ..constants import (
    BPS_SCALE,
    DEFAULT_COLLATERAL_ASSET,
    DEFAULT_DEPOSITOR_FEE_BPS,
    DEFAULT_INCENTIVE_ASSET,
    DEFAULT_MIN_PROFIT_TIME,
    DEFAULT_PROTOCOL_FEE_BPS,
    DEFAULT_REWARD_DURATION,
    DEFAULT_STAKE_COOLDOWN,
    DEFAULT_STAKER_FEE_BPS,
    DEFAULT_TOKEN_ASSET,
    DEFAULT_VAULT_FEE_BPS,
    MAX_SHIFT,
    MIN_LEVERAGE,
    parse_bool,
)
from ..exchange.state import Product

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_bool(value: str) -> bool:
    parsed = parse_bool(value)
    if not isinstance(parsed, bool):
        raise ValueError(f"Expected true/false, got {value!r}")
    return parsed


# ---------------------------------------------------------------------------
# Section dataclasses, one per [section] of perpvault.toml
# ---------------------------------------------------------------------------


@dataclass
class VenueSectionConfig:
    """[venue] section."""
    collateral_asset: str = DEFAULT_COLLATERAL_ASSET
    token_asset: str = DEFAULT_TOKEN_ASSET
    incentive_asset: str = DEFAULT_INCENTIVE_ASSET
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VenueSectionConfig":
        return cls(
            collateral_asset=data.get("collateral_asset", DEFAULT_COLLATERAL_ASSET),
            token_asset=data.get("token_asset", DEFAULT_TOKEN_ASSET),
            incentive_asset=data.get("incentive_asset", DEFAULT_INCENTIVE_ASSET),
            log_level=data.get("log_level", "INFO"),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("PERPVAULT_COLLATERAL_ASSET"):
            self.collateral_asset = v
        if v := os.environ.get("PERPVAULT_LOG_LEVEL"):
            self.log_level = v.upper()


@dataclass
class VaultConfig:
    """[vault] section."""
    cap: int = 0
    stake_cooldown: int = DEFAULT_STAKE_COOLDOWN
    can_user_stake: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VaultConfig":
        return cls(
            cap=data.get("cap", 0),
            stake_cooldown=data.get("stake_cooldown", DEFAULT_STAKE_COOLDOWN),
            can_user_stake=data.get("can_user_stake", True),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("PERPVAULT_VAULT_CAP"):
            self.cap = int(v)
        if v := os.environ.get("PERPVAULT_STAKE_COOLDOWN"):
            self.stake_cooldown = int(v)
        if v := os.environ.get("PERPVAULT_CAN_USER_STAKE"):
            self.can_user_stake = _env_bool(v)


@dataclass
class MarginConfig:
    """[margin] section."""
    min_margin: int = 0
    min_position_size: int = 0
    max_position_size: int = 0
    min_profit_time: int = DEFAULT_MIN_PROFIT_TIME
    check_price_change: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarginConfig":
        return cls(
            min_margin=data.get("min_margin", 0),
            min_position_size=data.get("min_position_size", 0),
            max_position_size=data.get("max_position_size", 0),
            min_profit_time=data.get("min_profit_time", DEFAULT_MIN_PROFIT_TIME),
            check_price_change=data.get("check_price_change", False),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("PERPVAULT_MIN_MARGIN"):
            self.min_margin = int(v)
        if v := os.environ.get("PERPVAULT_MIN_PROFIT_TIME"):
            self.min_profit_time = int(v)


@dataclass
class FeesConfig:
    """[fees] section.  Basis points; must sum to 10000."""
    protocol_bps: int = DEFAULT_PROTOCOL_FEE_BPS
    staker_bps: int = DEFAULT_STAKER_FEE_BPS
    depositor_bps: int = DEFAULT_DEPOSITOR_FEE_BPS
    vault_bps: int = DEFAULT_VAULT_FEE_BPS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeesConfig":
        return cls(
            protocol_bps=data.get("protocol_bps", DEFAULT_PROTOCOL_FEE_BPS),
            staker_bps=data.get("staker_bps", DEFAULT_STAKER_FEE_BPS),
            depositor_bps=data.get("depositor_bps", DEFAULT_DEPOSITOR_FEE_BPS),
            vault_bps=data.get("vault_bps", DEFAULT_VAULT_FEE_BPS),
        )


@dataclass
class RewardsConfig:
    """[rewards] section."""
    duration: int = DEFAULT_REWARD_DURATION

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RewardsConfig":
        return cls(duration=data.get("duration", DEFAULT_REWARD_DURATION))

    def apply_env(self) -> None:
        if v := os.environ.get("PERPVAULT_REWARD_DURATION"):
            self.duration = int(v)


@dataclass
class LiquidationConfig:
    """[liquidation] section."""
    allow_public_liquidation: bool = False
    bounty_fixed: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LiquidationConfig":
        return cls(
            allow_public_liquidation=data.get("allow_public_liquidation", False),
            bounty_fixed=data.get("bounty_fixed", 0),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("PERPVAULT_ALLOW_PUBLIC_LIQUIDATION"):
            self.allow_public_liquidation = _env_bool(v)


@dataclass
class PricingConfig:
    """[pricing] section."""
    max_shift: int = MAX_SHIFT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingConfig":
        return cls(max_shift=data.get("max_shift", MAX_SHIFT))

    def apply_env(self) -> None:
        if v := os.environ.get("PERPVAULT_MAX_SHIFT"):
            self.max_shift = int(v)


@dataclass
class ProductConfig:
    """One [[products]] entry."""
    product_id: int
    oracle: str
    max_leverage: int
    fee_bps: int = 10
    interest_bps: int = 0
    liquidation_threshold_bps: int = 200
    liquidation_bounty_bps: int = 1000
    min_price_change_bps: int = 0
    max_exposure: int = 0
    reserve: int = 0
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductConfig":
        for key in ("product_id", "oracle", "max_leverage", "max_exposure"):
            if key not in data:
                raise ValueError(f"[[products]] entry missing {key}")
        return cls(
            product_id=data["product_id"],
            oracle=data["oracle"],
            max_leverage=data["max_leverage"],
            fee_bps=data.get("fee_bps", 10),
            interest_bps=data.get("interest_bps", 0),
            liquidation_threshold_bps=data.get("liquidation_threshold_bps", 200),
            liquidation_bounty_bps=data.get("liquidation_bounty_bps", 1000),
            min_price_change_bps=data.get("min_price_change_bps", 0),
            max_exposure=data["max_exposure"],
            reserve=data.get("reserve", 0),
            is_active=data.get("is_active", True),
        )

    def to_product(self) -> Product:
        return Product(
            product_id=self.product_id,
            oracle=self.oracle,
            max_leverage=self.max_leverage,
            fee_bps=self.fee_bps,
            interest_bps=self.interest_bps,
            liquidation_threshold_bps=self.liquidation_threshold_bps,
            liquidation_bounty_bps=self.liquidation_bounty_bps,
            min_price_change_bps=self.min_price_change_bps,
            max_exposure=self.max_exposure,
            reserve=self.reserve,
            is_active=self.is_active,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "oracle": self.oracle,
            "max_leverage": self.max_leverage,
            "fee_bps": self.fee_bps,
            "interest_bps": self.interest_bps,
            "liquidation_threshold_bps": self.liquidation_threshold_bps,
            "liquidation_bounty_bps": self.liquidation_bounty_bps,
            "min_price_change_bps": self.min_price_change_bps,
            "max_exposure": self.max_exposure,
            "reserve": self.reserve,
            "is_active": self.is_active,
        }


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


@dataclass
class VenueConfig:
    """Complete venue configuration, one attribute per TOML section."""
    venue: VenueSectionConfig = field(default_factory=VenueSectionConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    margin: MarginConfig = field(default_factory=MarginConfig)
    fees: FeesConfig = field(default_factory=FeesConfig)
    rewards: RewardsConfig = field(default_factory=RewardsConfig)
    liquidation: LiquidationConfig = field(default_factory=LiquidationConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    products: List[ProductConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VenueConfig":
        return cls(
            venue=VenueSectionConfig.from_dict(data.get("venue", {})),
            vault=VaultConfig.from_dict(data.get("vault", {})),
            margin=MarginConfig.from_dict(data.get("margin", {})),
            fees=FeesConfig.from_dict(data.get("fees", {})),
            rewards=RewardsConfig.from_dict(data.get("rewards", {})),
            liquidation=LiquidationConfig.from_dict(data.get("liquidation", {})),
            pricing=PricingConfig.from_dict(data.get("pricing", {})),
            products=[ProductConfig.from_dict(p) for p in data.get("products", [])],
        )

    @classmethod
    def from_file(cls, config_path: str) -> "VenueConfig":
        """
        Load configuration from a TOML file.

        Args:
            config_path: Path to perpvault.toml

        Returns:
            VenueConfig instance (defaults when the file does not exist)
        """
        if tomli is None:
            raise ImportError(
                "tomli is required for TOML config loading. "
                "Install it: pip install tomli"
            )

        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        with open(path, "rb") as f:
            raw = tomli.load(f)

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.venue.apply_env()
        self.vault.apply_env()
        self.margin.apply_env()
        self.rewards.apply_env()
        self.liquidation.apply_env()
        self.pricing.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Raises:
            ValueError: on invalid config
        """
        if self.venue.log_level not in LOG_LEVELS:
            raise ValueError(f"Invalid log_level: {self.venue.log_level}")
        if not self.venue.collateral_asset or not self.venue.token_asset:
            raise ValueError("collateral_asset and token_asset are required")
        if self.vault.cap < 0:
            raise ValueError("vault cap must be >= 0")
        if self.vault.stake_cooldown < 0:
            raise ValueError("stake_cooldown must be >= 0")
        if min(self.margin.min_margin, self.margin.min_position_size, self.margin.max_position_size) < 0:
            raise ValueError("margin bounds must be >= 0")
        if self.margin.max_position_size and self.margin.max_position_size < self.margin.min_position_size:
            raise ValueError("max_position_size must be >= min_position_size")
        if self.margin.min_profit_time < 0:
            raise ValueError("min_profit_time must be >= 0")

        split = (self.fees.protocol_bps, self.fees.staker_bps, self.fees.depositor_bps, self.fees.vault_bps)
        if any(part < 0 for part in split) or sum(split) != BPS_SCALE:
            raise ValueError(f"fee split must be non-negative and sum to {BPS_SCALE}")
        if self.rewards.duration <= 0:
            raise ValueError("reward duration must be > 0")
        if self.liquidation.bounty_fixed < 0:
            raise ValueError("bounty_fixed must be >= 0")
        if self.pricing.max_shift < 0:
            raise ValueError("max_shift must be >= 0")

        seen = set()
        for product in self.products:
            if product.product_id in seen:
                raise ValueError(f"Duplicate product_id: {product.product_id}")
            seen.add(product.product_id)
            if product.max_leverage < MIN_LEVERAGE:
                raise ValueError(f"Product {product.product_id}: max_leverage below 1x")
            if product.max_exposure <= 0:
                raise ValueError(f"Product {product.product_id}: max_exposure must be > 0")
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics)."""
        return {
            "venue": {
                "collateral_asset": self.venue.collateral_asset,
                "token_asset": self.venue.token_asset,
                "incentive_asset": self.venue.incentive_asset,
                "log_level": self.venue.log_level,
            },
            "vault": {
                "cap": self.vault.cap,
                "stake_cooldown": self.vault.stake_cooldown,
                "can_user_stake": self.vault.can_user_stake,
            },
            "margin": {
                "min_margin": self.margin.min_margin,
                "min_position_size": self.margin.min_position_size,
                "max_position_size": self.margin.max_position_size,
                "min_profit_time": self.margin.min_profit_time,
                "check_price_change": self.margin.check_price_change,
            },
            "fees": {
                "protocol_bps": self.fees.protocol_bps,
                "staker_bps": self.fees.staker_bps,
                "depositor_bps": self.fees.depositor_bps,
                "vault_bps": self.fees.vault_bps,
            },
            "rewards": {"duration": self.rewards.duration},
            "liquidation": {
                "allow_public_liquidation": self.liquidation.allow_public_liquidation,
                "bounty_fixed": self.liquidation.bounty_fixed,
            },
            "pricing": {"max_shift": self.pricing.max_shift},
            "products": [p.to_dict() for p in self.products],
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> VenueConfig:
    """
    Load venue configuration.

    Resolution order:
        1. Explicit *path* argument
        2. PERPVAULT_CONFIG env var
        3. ./perpvault.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("PERPVAULT_CONFIG", "perpvault.toml")

    return VenueConfig.from_file(path)
