"""
Test suite for the PerpVault state manager and transaction envelope

Covers:
  - Transaction hashing, serialization and structural validation
  - Nonce replay protection and gas metering
  - Dispatch of every operation family
  - Rejected operations: error kind, gas charge, untouched state
  - State root determinism and block revert
"""

import pytest

from perpvault.constants import (
    DEFAULT_COLLATERAL_ASSET,
    DEFAULT_STAKE_COOLDOWN,
    PRICE_SCALE,
)
from perpvault.exceptions import ConfigurationError
from perpvault.exchange import (
    VENUE_GAS_COSTS,
    InMemoryLedger,
    Product,
    Settings,
    StaticPriceFeed,
    Venue,
    VenueOpType,
    VenueStateManager,
    VenueTransaction,
)
from perpvault.governance import Role

E8 = PRICE_SCALE
T0 = 1_700_000_000
USDC = DEFAULT_COLLATERAL_ASSET
OWNER = "pv_owner_00000000000000000000000000000001"
LP = "pv_lp_a_000000000000000000000000000000001"
TRADER = "pv_trader_0000000000000000000000000000004"
KEEPER = "pv_keeper_0000000000000000000000000000006"


def make_tx(op_type, sender, nonce=0, gas_limit=500_000, **params):
    return VenueTransaction(
        op_type=op_type, sender=sender, nonce=nonce, params=params, gas_limit=gas_limit,
    )


def _stake_tx(nonce=0, amount=1_000 * E8):
    return make_tx(VenueOpType.STAKE, LP, nonce, amount=amount)


@pytest.fixture
def mgr(venue, ledger):
    ledger.mint(USDC, LP, 10_000 * E8)
    ledger.mint(USDC, TRADER, 10_000 * E8)
    manager = VenueStateManager.get_instance(venue)
    manager.begin_block(2, T0 + 1)
    return manager


def _standalone_manager():
    """Fresh venue and manager outside the singleton, same genesis every call."""
    ledger = InMemoryLedger()
    ledger.mint(USDC, LP, 10_000 * E8)
    feed = StaticPriceFeed({"ETH/USD": 1000 * E8})
    venue = Venue(OWNER, ledger, feed, vault_cap=10**9 * E8, settings=Settings(max_shift=0))
    venue.begin_block(1, T0)
    venue.add_product(OWNER, Product(
        product_id=1, oracle="ETH/USD", max_leverage=50 * E8, fee_bps=10, interest_bps=0,
        liquidation_threshold_bps=200, liquidation_bounty_bps=1000, min_price_change_bps=0,
        max_exposure=10**16, reserve=10**20,
    ))
    manager = VenueStateManager(venue)
    manager.begin_block(2, T0 + 1)
    return manager


# ============================================================================
# 1. Transaction envelope
# ============================================================================

class TestVenueTransaction:
    """Hashing, serialization and validate_basic."""

    def test_hash_is_deterministic(self):
        a = _stake_tx()
        b = _stake_tx()
        assert a.tx_hash() == b.tx_hash()
        assert len(a.tx_hash()) == 64
        assert _stake_tx(nonce=1).tx_hash() != a.tx_hash()

    def test_timestamp_not_hashed(self):
        tx = _stake_tx()
        before = tx.tx_hash()
        tx.timestamp = 12345
        assert tx.tx_hash() == before

    def test_json_round_trip(self):
        tx = make_tx(VenueOpType.OPEN_POSITION, TRADER, 3,
                     product_id=1, margin=E8, is_long=True, leverage=10 * E8)
        again = VenueTransaction.from_json(tx.to_json())
        assert again.op_type == VenueOpType.OPEN_POSITION
        assert again.tx_hash() == tx.tx_hash()

    def test_missing_param(self):
        with pytest.raises(ValueError, match="missing param: leverage"):
            make_tx(VenueOpType.OPEN_POSITION, TRADER,
                    product_id=1, margin=E8, is_long=True).validate_basic()

    def test_structural_checks(self):
        with pytest.raises(ValueError, match="non-empty position_keys"):
            make_tx(VenueOpType.LIQUIDATE, KEEPER, position_keys=[]).validate_basic()
        with pytest.raises(ValueError, match="non-empty changes"):
            make_tx(VenueOpType.UPDATE_PRODUCT, OWNER, product_id=1, changes={}).validate_basic()
        with pytest.raises(ValueError, match="unknown setting"):
            make_tx(VenueOpType.SET_SETTING, OWNER, name="owner", value=LP).validate_basic()
        with pytest.raises(ValueError, match="Missing sender"):
            make_tx(VenueOpType.EXIT, "").validate_basic()

    def test_unknown_op_type(self):
        tx = make_tx(VenueOpType.EXIT, LP)
        tx.op_type = 99
        with pytest.raises(ValueError, match="Unknown operation type"):
            tx.validate_basic()

    def test_liquidation_gas_scales_with_batch(self):
        tx = make_tx(VenueOpType.LIQUIDATE, KEEPER, position_keys=["a", "b"])
        assert tx.base_gas() == VENUE_GAS_COSTS[VenueOpType.LIQUIDATE] + 2 * 40_000


# ============================================================================
# 2. Processing
# ============================================================================

class TestProcessTransaction:
    """Nonce, gas and dispatch."""

    def test_get_instance_needs_venue(self):
        with pytest.raises(ConfigurationError):
            VenueStateManager.get_instance()

    def test_singleton(self, mgr):
        assert VenueStateManager.get_instance() is mgr

    def test_stake(self, mgr):
        result = mgr.process_transaction(_stake_tx())
        assert result.success, result.error
        assert result.gas_used == VENUE_GAS_COSTS[VenueOpType.STAKE]
        assert result.data["shares"] == 1_000 * E8
        assert any("shares" in log for log in result.logs)
        assert mgr.get_nonce(LP) == 1
        assert mgr.block_gas == result.gas_used

    def test_bad_nonce_not_consumed(self, mgr):
        result = mgr.process_transaction(_stake_tx(nonce=5))
        assert not result.success
        assert result.error_kind == "NonceError"
        assert result.gas_used == 0
        assert mgr.get_nonce(LP) == 0

    def test_gas_limit_too_low(self, mgr):
        tx = make_tx(VenueOpType.STAKE, LP, gas_limit=1_000, amount=E8)
        result = mgr.process_transaction(tx)
        assert result.error_kind == "GasError"
        assert mgr.get_nonce(LP) == 0

    def test_structural_error_reported(self, mgr):
        result = mgr.process_transaction(make_tx(VenueOpType.STAKE, LP))
        assert result.error_kind == "ValueError"
        assert mgr.get_nonce(LP) == 0

    def test_rejected_op_charges_gas_and_advances_nonce(self, mgr, venue):
        mgr.process_transaction(_stake_tx())
        root = mgr.compute_state_root()

        result = mgr.process_transaction(make_tx(VenueOpType.REDEEM, LP, 1, shares=E8))
        assert not result.success
        assert result.error_kind == "CooldownNotElapsedError"
        assert result.gas_used == VENUE_GAS_COSTS[VenueOpType.REDEEM]
        assert mgr.get_nonce(LP) == 2
        assert venue.get_stake(LP).shares == 1_000 * E8
        assert mgr.compute_state_root() != root  # nonce moved
        assert mgr.get_stats()["failed_txs"] == 1

    def test_trade_round_trip(self, mgr, venue):
        mgr.process_transaction(_stake_tx())
        opened = mgr.process_transaction(make_tx(
            VenueOpType.OPEN_POSITION, TRADER, 0,
            product_id=1, margin=100 * E8, is_long=True, leverage=10 * E8,
        ))
        assert opened.success, opened.error
        key = Venue.position_key(TRADER, 1, True)
        assert opened.data["positionKey"] == key

        closed = mgr.process_transaction(make_tx(
            VenueOpType.CLOSE_POSITION, TRADER, 1, product_id=1, margin=100 * E8, is_long=True,
        ))
        assert closed.success, closed.error
        assert closed.data["isFullClose"] is True
        assert venue.get_position(key) is None

    def test_liquidate_without_victims(self, mgr):
        result = mgr.process_transaction(make_tx(
            VenueOpType.LIQUIDATE, OWNER, position_keys=["0" * 64],
        ))
        assert result.error_kind == "PositionNotLiquidatableError"
        assert result.gas_used == VENUE_GAS_COSTS[VenueOpType.LIQUIDATE] + 40_000

    def test_governance_ops(self, mgr, venue):
        results = [
            mgr.process_transaction(make_tx(
                VenueOpType.SET_SETTING, OWNER, 0, name="min_profit_time", value=60)),
            mgr.process_transaction(make_tx(
                VenueOpType.GRANT_ROLE, OWNER, 1, role=int(Role.MANAGER), account=KEEPER)),
            mgr.process_transaction(make_tx(
                VenueOpType.UPDATE_PRODUCT, OWNER, 2, product_id=1, changes={"fee_bps": 20})),
            mgr.process_transaction(make_tx(
                VenueOpType.ADD_PRODUCT, OWNER, 3, product_id=2, oracle="BTC/USD",
                max_leverage=20 * E8, fee_bps=10, interest_bps=0,
                liquidation_threshold_bps=200, liquidation_bounty_bps=1000,
                min_price_change_bps=0, max_exposure=10**15)),
            mgr.process_transaction(make_tx(
                VenueOpType.SET_FEE_SPLIT, OWNER, 4,
                protocol_bps=1000, staker_bps=3000, depositor_bps=6000)),
        ]
        assert all(r.success for r in results), [r.error for r in results]
        assert venue.settings.min_profit_time == 60
        assert venue.access.managers == {KEEPER}
        assert venue.get_product(1).fee_bps == 20
        assert venue.get_product(2).oracle == "BTC/USD"
        assert venue.settings.fee_split.protocol_bps == 1000

    def test_governance_op_from_stranger(self, mgr):
        result = mgr.process_transaction(make_tx(
            VenueOpType.SET_SETTING, TRADER, name="can_user_stake", value=False))
        assert result.error_kind == "AuthorizationError"


# ============================================================================
# 3. State root and blocks
# ============================================================================

class TestStateRoot:
    """Determinism and revert."""

    def test_same_transactions_same_root(self):
        roots = []
        for _ in range(2):
            manager = _standalone_manager()
            manager.process_transaction(_stake_tx())
            roots.append(manager.finalize_block())
        assert roots[0] == roots[1]

    def test_root_changes_with_state(self):
        manager = _standalone_manager()
        before = manager.compute_state_root()
        manager.process_transaction(_stake_tx())
        assert manager.compute_state_root() != before

    def test_revert_block(self, mgr, venue):
        root = mgr.compute_state_root()
        mgr.process_transaction(_stake_tx())
        assert venue.get_vault().balance == 1_000 * E8

        mgr.revert_block()
        assert venue.get_vault().balance == 0
        assert mgr.get_nonce(LP) == 0
        assert mgr.block_gas == 0
        assert mgr.compute_state_root() == root

    def test_finalize_clears_snapshot(self, mgr, venue):
        mgr.process_transaction(_stake_tx())
        mgr.finalize_block()
        mgr.revert_block()
        assert venue.get_vault().balance == 1_000 * E8

    def test_block_lifecycle_resets_tracking(self, mgr):
        mgr.process_transaction(_stake_tx())
        assert len(mgr.block_results) == 1
        mgr.finalize_block()
        mgr.begin_block(3, T0 + DEFAULT_STAKE_COOLDOWN + 1)
        assert mgr.block_results == []
        assert mgr.block_gas == 0
        result = mgr.process_transaction(make_tx(VenueOpType.REDEEM, LP, 1, shares=500 * E8))
        assert result.success, result.error
        assert mgr.get_stats()["block_height"] == 3
