"""
Test suite for PerpVault governance

Covers:
  - Role hierarchy and capability checks
  - Role grants, revocation and ownership transfer
  - Product listing and updates
  - Vault, margin and flag settings
"""

import pytest

from perpvault.constants import DEFAULT_PROTOCOL_FEE_BPS, PRICE_SCALE
from perpvault.exceptions import AuthorizationError, ConfigurationError
from perpvault.exchange import Settings
from perpvault.exchange.events import ConfigChangedEvent
from perpvault.governance import AccessControl, Role

E8 = PRICE_SCALE
OWNER = "pv_owner_00000000000000000000000000000001"
GOVERNOR = "pv_governor_00000000000000000000000000008"
MANAGER = "pv_manager_000000000000000000000000000009"
STRANGER = "pv_stranger_00000000000000000000000000007"


# ============================================================================
# 1. AccessControl
# ============================================================================

class TestAccessControl:
    """Capability nesting."""

    def _access(self):
        access = AccessControl(owner=OWNER)
        access.grant(Role.GOVERNOR, GOVERNOR)
        access.grant(Role.MANAGER, MANAGER)
        return access

    def test_role_of(self):
        access = self._access()
        assert access.role_of(OWNER) == Role.OWNER
        assert access.role_of(GOVERNOR) == Role.GOVERNOR
        assert access.role_of(MANAGER) == Role.MANAGER
        assert access.role_of(STRANGER) == Role.PUBLIC_WHEN_FLAGGED

    def test_higher_roles_inherit(self):
        access = self._access()
        assert access.allows(OWNER, Role.MANAGER)
        assert access.allows(GOVERNOR, Role.MANAGER)
        assert not access.allows(MANAGER, Role.GOVERNOR)
        assert not access.allows(GOVERNOR, Role.OWNER)

    def test_public_needs_flag(self):
        access = self._access()
        assert not access.allows(STRANGER, Role.PUBLIC_WHEN_FLAGGED)
        assert access.allows(STRANGER, Role.PUBLIC_WHEN_FLAGGED, flag=True)
        assert access.allows(MANAGER, Role.PUBLIC_WHEN_FLAGGED)

    def test_require_message(self):
        with pytest.raises(AuthorizationError, match="requires GOVERNOR"):
            self._access().require(STRANGER, Role.GOVERNOR, action="add product")

    def test_owner_role_cannot_be_granted(self):
        with pytest.raises(AuthorizationError):
            self._access().grant(Role.OWNER, STRANGER)


# ============================================================================
# 2. Roles on the venue
# ============================================================================

class TestVenueRoles:
    """Grants, revocation and ownership."""

    def test_granted_governor_can_configure(self, venue):
        venue.grant_role(OWNER, Role.GOVERNOR, GOVERNOR)
        venue.set_min_profit_time(GOVERNOR, 60)
        assert venue.settings.min_profit_time == 60

    def test_governor_cannot_grant(self, venue):
        venue.grant_role(OWNER, Role.GOVERNOR, GOVERNOR)
        with pytest.raises(AuthorizationError):
            venue.grant_role(GOVERNOR, Role.MANAGER, MANAGER)

    def test_revoke(self, venue):
        venue.grant_role(OWNER, Role.GOVERNOR, GOVERNOR)
        venue.revoke_role(OWNER, Role.GOVERNOR, GOVERNOR)
        with pytest.raises(AuthorizationError):
            venue.set_min_profit_time(GOVERNOR, 60)

    def test_set_owner(self, venue):
        venue.set_owner(OWNER, STRANGER)
        assert venue.access.owner == STRANGER
        with pytest.raises(AuthorizationError):
            venue.set_owner(OWNER, OWNER)
        venue.set_owner(STRANGER, OWNER)
        assert venue.access.owner == OWNER

    def test_empty_owner_rejected(self, venue):
        with pytest.raises(AuthorizationError):
            venue.set_owner(OWNER, "")
        assert venue.access.owner == OWNER


# ============================================================================
# 3. Products
# ============================================================================

class TestProducts:
    """Listing and updating products."""

    def test_add_product(self, venue, make_product):
        product = venue.add_product(OWNER, make_product(2, oracle="BTC/USD"))
        assert product.product_id == 2
        assert venue.get_product(2).oracle == "BTC/USD"
        event = venue.events[-1]
        assert isinstance(event, ConfigChangedEvent)
        assert event.setting == "product:2"

    def test_duplicate_rejected(self, venue, make_product):
        with pytest.raises(ConfigurationError, match="already exists"):
            venue.add_product(OWNER, make_product(1))

    def test_open_interest_reset_on_add(self, venue, make_product):
        product = make_product(3)
        product.open_interest_long = 123
        venue.add_product(OWNER, product)
        assert venue.get_product(3).open_interest_long == 0

    def test_invalid_product_rejected(self, venue, make_product):
        with pytest.raises(ConfigurationError):
            venue.add_product(OWNER, make_product(4, max_leverage=E8 - 1))
        with pytest.raises(ConfigurationError):
            venue.add_product(OWNER, make_product(5, fee_bps=10_001))
        assert venue.get_product(4) is None

    def test_add_requires_governor(self, venue, make_product):
        with pytest.raises(AuthorizationError):
            venue.add_product(STRANGER, make_product(6))

    def test_update_product(self, venue):
        product = venue.update_product(OWNER, 1, fee_bps=25, max_leverage=20 * E8)
        assert product.fee_bps == 25
        assert venue.get_product(1).max_leverage == 20 * E8

    def test_update_rejects_unknown_field(self, venue):
        with pytest.raises(ConfigurationError, match="cannot be updated"):
            venue.update_product(OWNER, 1, open_interest_long=5)

    def test_update_validates(self, venue):
        with pytest.raises(ConfigurationError):
            venue.update_product(OWNER, 1, max_exposure=0)
        assert venue.get_product(1).max_exposure == 10**16


# ============================================================================
# 4. Settings
# ============================================================================

class TestSettings:
    """Vault, margin and flag settings."""

    def test_update_vault(self, venue):
        vault = venue.update_vault(OWNER, 5_000 * E8, 3600)
        assert vault.cap == 5_000 * E8
        assert vault.stake_cooldown == 3600

    def test_update_vault_rejects_negative(self, venue):
        with pytest.raises(ConfigurationError):
            venue.update_vault(OWNER, -1, 3600)

    def test_margin_bounds(self, venue):
        venue.set_margin_bounds(OWNER, 10 * E8, 100 * E8, 0)
        settings = venue.settings
        assert (settings.min_margin, settings.min_position_size, settings.max_position_size) == (
            10 * E8, 100 * E8, 0,
        )
        with pytest.raises(ConfigurationError):
            venue.set_margin_bounds(OWNER, 0, 100 * E8, 50 * E8)

    def test_flags(self, venue):
        venue.set_allow_public_liquidation(OWNER, True)
        venue.set_can_user_stake(OWNER, False)
        venue.set_check_price_change(OWNER, True)
        venue.set_max_shift(OWNER, 0)
        settings = venue.settings
        assert settings.allow_public_liquidation is True
        assert settings.can_user_stake is False
        assert settings.check_price_change is True
        assert settings.max_shift == 0

    def test_negative_settings_rejected(self, venue):
        with pytest.raises(ConfigurationError):
            venue.set_min_profit_time(OWNER, -1)
        with pytest.raises(ConfigurationError):
            venue.set_max_shift(OWNER, -1)
        with pytest.raises(ConfigurationError):
            venue.set_liquidation_bounty_fixed(OWNER, -1)

    def test_settings_require_governor(self, venue):
        with pytest.raises(AuthorizationError):
            venue.set_can_user_stake(STRANGER, False)
        assert venue.settings.can_user_stake is True

    def test_settings_copy_is_detached(self, venue):
        settings = venue.settings
        settings.min_margin = 999
        assert venue.settings.min_margin == 0

    def test_constructor_settings_are_copied(self, make_venue):
        settings = Settings(min_margin=5 * E8)
        venue = make_venue(settings=settings)
        settings.min_margin = 999
        settings.fee_split.protocol_bps = 0
        assert venue.settings.min_margin == 5 * E8
        assert venue.settings.fee_split.protocol_bps == DEFAULT_PROTOCOL_FEE_BPS
