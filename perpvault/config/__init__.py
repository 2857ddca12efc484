"""
PerpVault Configuration

Loads all sections of perpvault.toml.
Environment variables override TOML values.
"""

from .loader import (
    VenueConfig,
    VenueSectionConfig,
    VaultConfig,
    MarginConfig,
    FeesConfig,
    RewardsConfig,
    LiquidationConfig,
    PricingConfig,
    ProductConfig,
    load_config,
)

__all__ = [
    "VenueConfig",
    "VenueSectionConfig",
    "VaultConfig",
    "MarginConfig",
    "FeesConfig",
    "RewardsConfig",
    "LiquidationConfig",
    "PricingConfig",
    "ProductConfig",
    "load_config",
]
