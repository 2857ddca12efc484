"""
PerpVault State Manager

Bridge between a block producer and the venue.  Every node maintains an
identical venue by processing the same sequence of VenueTransactions in
block order.

Responsibilities:
  - Owns the Venue instance
  - Processes VenueTransactions deterministically (nonce, gas, dispatch)
  - Computes a venue state root for block commitment
  - Block-boundary lifecycle (begin_block, finalize_block, revert_block)
  - Read-only query interface

Security:
  - All mutations go through process_transaction()
  - State root is blake2b of sorted product/position/vault/pool hashes
  - Revert restores the snapshot taken at begin_block
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from ..exceptions import ConfigurationError, PerpVaultException
from ..governance.access import Role
from .state import Product, VenueState
from .transactions import VenueOpType, VenueTransaction
from .venue import Venue

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transaction execution result
# ---------------------------------------------------------------------------

class VenueExecResult:
    """Result of executing a single venue transaction."""

    __slots__ = ("success", "gas_used", "data", "error", "error_kind", "logs")

    def __init__(
        self,
        success: bool = True,
        gas_used: int = 0,
        data: Optional[Dict[str, Any]] = None,
        error: str = "",
        error_kind: str = "",
        logs: Optional[List[Dict[str, Any]]] = None,
    ):
        self.success = success
        self.gas_used = gas_used
        self.data = data or {}
        self.error = error
        self.error_kind = error_kind
        self.logs = logs or []


def _canonical(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, default=sorted).encode("utf-8")


# ---------------------------------------------------------------------------
# Venue State Manager
# ---------------------------------------------------------------------------

class VenueStateManager:
    """
    Singleton bridge between block processing and the venue.

    Usage:

        mgr = VenueStateManager.get_instance(venue)
        mgr.begin_block(block_height, block_timestamp)
        for tx in venue_txs:
            result = mgr.process_transaction(tx)
        state_root = mgr.finalize_block()
    """

    instance: Optional[VenueStateManager] = None

    def __init__(self, venue: Venue) -> None:
        self.venue = venue

        # Per-sender nonces for replay protection
        self._nonces: Dict[str, int] = {}

        # --- Block-level tracking ---
        self._current_block_height: int = 0
        self._current_block_timestamp: int = 0
        self._block_txs: List[VenueTransaction] = []
        self._block_results: List[VenueExecResult] = []
        self._block_gas: int = 0

        # --- State snapshot for revert ---
        self._snapshot: Optional[Dict[str, Any]] = None

        # --- Counters ---
        self._total_txs: int = 0
        self._total_failed: int = 0

    @classmethod
    def get_instance(cls, venue: Optional[Venue] = None) -> VenueStateManager:
        """Get the singleton, creating it around *venue* on first use."""
        if cls.instance is None:
            if venue is None:
                raise ConfigurationError("VenueStateManager needs a venue on first use")
            cls.instance = cls(venue)
            logger.info("Venue state manager initialized")
        return cls.instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton (for testing)."""
        cls.instance = None

    # =====================================================================
    #  Block lifecycle
    # =====================================================================

    def begin_block(self, block_height: int, block_timestamp: int) -> None:
        """Advance the venue clock and snapshot state for a possible revert."""
        self.venue.begin_block(block_height, block_timestamp)
        self._current_block_height = block_height
        self._current_block_timestamp = block_timestamp
        self._block_txs = []
        self._block_results = []
        self._block_gas = 0
        self.take_snapshot()

    def finalize_block(self) -> str:
        """
        Called after all transactions in a block are processed.

        Returns:
            The venue state root for this block.
        """
        state_root = self.compute_state_root()
        logger.debug(
            "Block %d finalized: %d venue txs, gas=%d, state_root=%s",
            self._current_block_height,
            len(self._block_txs),
            self._block_gas,
            state_root[:16],
        )
        self._snapshot = None
        return state_root

    def revert_block(self) -> None:
        """Restore the state captured at begin_block (chain reorganization)."""
        if self._snapshot is not None:
            self._restore_snapshot(self._snapshot)
            self._snapshot = None
            logger.warning("Block %d reverted, venue state restored", self._current_block_height)

    # =====================================================================
    #  Transaction processing
    # =====================================================================

    def process_transaction(self, tx: VenueTransaction) -> VenueExecResult:
        """
        Execute a single venue transaction deterministically.

        Returns:
            VenueExecResult with success/failure and gas used
        """
        # 1. Basic structural validation
        try:
            tx.validate_basic()
        except ValueError as e:
            return VenueExecResult(success=False, gas_used=0, error=str(e), error_kind="ValueError")

        # 2. Nonce check (replay protection)
        expected_nonce = self._nonces.get(tx.sender, 0)
        if tx.nonce != expected_nonce:
            return VenueExecResult(
                success=False, gas_used=0,
                error=f"Invalid nonce: expected {expected_nonce}, got {tx.nonce}",
                error_kind="NonceError",
            )

        # 3. Gas limit check
        base_gas = tx.base_gas()
        if tx.gas_limit < base_gas:
            return VenueExecResult(
                success=False, gas_used=0,
                error=f"Gas limit too low: need {base_gas}, got {tx.gas_limit}",
                error_kind="GasError",
            )

        # 4. Execute the operation
        try:
            result = self._execute_op(tx)
        except PerpVaultException as e:
            logger.info("Venue op %s rejected: %s", VenueOpType(tx.op_type).name, e)
            result = VenueExecResult(
                success=False, gas_used=base_gas, error=str(e), error_kind=type(e).__name__,
            )
        except Exception as e:
            logger.error("Venue op %s failed: %s", VenueOpType(tx.op_type).name, e)
            result = VenueExecResult(
                success=False, gas_used=base_gas, error=str(e), error_kind=type(e).__name__,
            )

        # 5. Nonce advances on every executed tx, rejected or not
        self._nonces[tx.sender] = tx.nonce + 1

        # 6. Charge gas
        if result.gas_used == 0:
            result.gas_used = base_gas
        self._block_gas += result.gas_used

        # 7. Record for block tracking
        tx.gas_used = result.gas_used
        tx.success = result.success
        tx.result = result.data
        tx.error = result.error
        self._block_txs.append(tx)
        self._block_results.append(result)
        self._total_txs += 1
        if not result.success:
            self._total_failed += 1

        return result

    def _execute_op(self, tx: VenueTransaction) -> VenueExecResult:
        """Dispatch to the appropriate handler."""
        handlers = {
            VenueOpType.OPEN_POSITION: self._op_open_position,
            VenueOpType.CLOSE_POSITION: self._op_close_position,
            VenueOpType.LIQUIDATE: self._op_liquidate,
            VenueOpType.STAKE: self._op_stake,
            VenueOpType.REDEEM: self._op_redeem,
            VenueOpType.STAKE_TOKEN: self._op_stake_token,
            VenueOpType.WITHDRAW_TOKEN: self._op_withdraw_token,
            VenueOpType.EXIT: self._op_exit,
            VenueOpType.FUND_REWARD: self._op_fund_reward,
            VenueOpType.NOTIFY_REWARD: self._op_notify_reward,
            VenueOpType.CLAIM_REWARD: self._op_claim_reward,
            VenueOpType.CLAIM_ALL_REWARDS: self._op_claim_all_rewards,
            VenueOpType.ADD_PRODUCT: self._op_add_product,
            VenueOpType.UPDATE_PRODUCT: self._op_update_product,
            VenueOpType.UPDATE_VAULT: self._op_update_vault,
            VenueOpType.SET_MARGIN_BOUNDS: self._op_set_margin_bounds,
            VenueOpType.SET_FEE_SPLIT: self._op_set_fee_split,
            VenueOpType.SET_SETTING: self._op_set_setting,
            VenueOpType.SET_REWARD_DURATION: self._op_set_reward_duration,
            VenueOpType.GRANT_ROLE: self._op_grant_role,
            VenueOpType.REVOKE_ROLE: self._op_revoke_role,
            VenueOpType.SET_OWNER: self._op_set_owner,
            VenueOpType.WITHDRAW_RESERVE: self._op_withdraw_reserve,
        }
        handler = handlers.get(VenueOpType(tx.op_type))
        if handler is None:
            return VenueExecResult(success=False, error=f"Unknown op type: {tx.op_type}")
        events_before = len(self.venue.events)
        result = handler(tx)
        result.logs = [e.to_dict() for e in self.venue.events[events_before:]]
        return result

    # =====================================================================
    #  Operation handlers
    # =====================================================================

    def _op_open_position(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        event = self.venue.open_position(
            tx.sender, int(p["product_id"]), int(p["margin"]), bool(p["is_long"]), int(p["leverage"]),
        )
        return VenueExecResult(data=event.to_dict())

    def _op_close_position(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        event = self.venue.close_position(
            tx.sender, int(p["product_id"]), int(p["margin"]), bool(p["is_long"]),
        )
        return VenueExecResult(data=event.to_dict())

    def _op_liquidate(self, tx: VenueTransaction) -> VenueExecResult:
        events = self.venue.liquidate_positions(tx.sender, list(tx.params["position_keys"]))
        return VenueExecResult(data={"liquidated": [e.position_key for e in events]})

    def _op_stake(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        event = self.venue.stake(tx.sender, int(p["amount"]), p.get("recipient") or tx.sender)
        return VenueExecResult(data=event.to_dict())

    def _op_redeem(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        event = self.venue.redeem(tx.sender, int(p["shares"]), p.get("recipient") or tx.sender)
        return VenueExecResult(data=event.to_dict())

    def _op_stake_token(self, tx: VenueTransaction) -> VenueExecResult:
        balance = self.venue.stake_token(tx.sender, int(tx.params["amount"]))
        return VenueExecResult(data={"balance": balance})

    def _op_withdraw_token(self, tx: VenueTransaction) -> VenueExecResult:
        balance = self.venue.withdraw_token(tx.sender, int(tx.params["amount"]))
        return VenueExecResult(data={"balance": balance})

    def _op_exit(self, tx: VenueTransaction) -> VenueExecResult:
        withdrawn, claimed = self.venue.exit(tx.sender)
        return VenueExecResult(data={"withdrawn": withdrawn, "claimed": claimed})

    def _op_fund_reward(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        funded = self.venue.fund_reward(tx.sender, p["pool_id"], int(p["amount"]))
        return VenueExecResult(data={"pool_id": p["pool_id"], "funded": funded})

    def _op_notify_reward(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        event = self.venue.notify_reward_amount(tx.sender, p["pool_id"], int(p["amount"]))
        return VenueExecResult(data=event.to_dict())

    def _op_claim_reward(self, tx: VenueTransaction) -> VenueExecResult:
        pool_id = tx.params["pool_id"]
        amount = self.venue.claim_reward(tx.sender, pool_id)
        return VenueExecResult(data={"pool_id": pool_id, "amount": amount})

    def _op_claim_all_rewards(self, tx: VenueTransaction) -> VenueExecResult:
        return VenueExecResult(data={"claimed": self.venue.get_all_rewards(tx.sender)})

    def _op_add_product(self, tx: VenueTransaction) -> VenueExecResult:
        p = dict(tx.params)
        product = Product(
            product_id=int(p["product_id"]),
            oracle=str(p["oracle"]),
            max_leverage=int(p["max_leverage"]),
            fee_bps=int(p["fee_bps"]),
            interest_bps=int(p["interest_bps"]),
            liquidation_threshold_bps=int(p["liquidation_threshold_bps"]),
            liquidation_bounty_bps=int(p["liquidation_bounty_bps"]),
            min_price_change_bps=int(p["min_price_change_bps"]),
            max_exposure=int(p["max_exposure"]),
            reserve=int(p.get("reserve", 0)),
            is_active=bool(p.get("is_active", True)),
        )
        added = self.venue.add_product(tx.sender, product)
        return VenueExecResult(data={"product_id": added.product_id})

    def _op_update_product(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        product = self.venue.update_product(tx.sender, int(p["product_id"]), **p["changes"])
        return VenueExecResult(data={"product_id": product.product_id})

    def _op_update_vault(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        vault = self.venue.update_vault(tx.sender, int(p["cap"]), int(p["stake_cooldown"]))
        return VenueExecResult(data=vault.to_dict())

    def _op_set_margin_bounds(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        self.venue.set_margin_bounds(
            tx.sender, int(p["min_margin"]), int(p["min_position_size"]), int(p["max_position_size"]),
        )
        return VenueExecResult()

    def _op_set_fee_split(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        self.venue.set_fee_split(
            tx.sender, int(p["protocol_bps"]), int(p["staker_bps"]),
            int(p["depositor_bps"]), int(p.get("vault_bps", 0)),
        )
        return VenueExecResult()

    def _op_set_setting(self, tx: VenueTransaction) -> VenueExecResult:
        name, value = tx.params["name"], tx.params["value"]
        setter = getattr(self.venue, f"set_{name}")
        setter(tx.sender, value)
        return VenueExecResult(data={"name": name, "value": value})

    def _op_set_reward_duration(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        self.venue.set_reward_duration(tx.sender, p["pool_id"], int(p["duration"]))
        return VenueExecResult()

    def _op_grant_role(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        self.venue.grant_role(tx.sender, Role(int(p["role"])), p["account"])
        return VenueExecResult()

    def _op_revoke_role(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        self.venue.revoke_role(tx.sender, Role(int(p["role"])), p["account"])
        return VenueExecResult()

    def _op_set_owner(self, tx: VenueTransaction) -> VenueExecResult:
        self.venue.set_owner(tx.sender, tx.params["owner"])
        return VenueExecResult()

    def _op_withdraw_reserve(self, tx: VenueTransaction) -> VenueExecResult:
        p = tx.params
        remaining = self.venue.withdraw_protocol_reserve(tx.sender, p["recipient"], int(p["amount"]))
        return VenueExecResult(data={"protocol_reserve": remaining})

    # =====================================================================
    #  State root computation
    # =====================================================================

    def compute_state_root(self) -> str:
        """
        Deterministic hash of the entire venue state.

        Returns:
            64-char hex string (blake2b-256)
        """
        state: VenueState = self.venue.export_state()
        hasher = hashlib.blake2b(digest_size=32)

        # 1. Products (sorted by id)
        for product_id in sorted(state.products):
            hasher.update(hashlib.blake2b(
                _canonical(asdict(state.products[product_id])), digest_size=16,
            ).digest())

        # 2. Positions (sorted by key)
        for key in sorted(state.positions):
            hasher.update(hashlib.blake2b(
                key.encode() + _canonical(state.positions[key].to_dict()), digest_size=16,
            ).digest())

        # 3. Vault and depositor stakes
        hasher.update(_canonical(state.vault.to_dict()))
        for account in sorted(state.stakes):
            hasher.update(_canonical(asdict(state.stakes[account])))

        # 4. Token stakes
        for account in sorted(state.token_stakes):
            hasher.update(f"{account}:{state.token_stakes[account]}".encode())
        hasher.update(state.total_token_staked.to_bytes(32, "big"))

        # 5. Reward pools, including per-account checkpoints
        for pool_id in sorted(state.reward_pools):
            hasher.update(hashlib.blake2b(
                _canonical(asdict(state.reward_pools[pool_id])), digest_size=16,
            ).digest())

        # 6. Settings, access and reserve
        hasher.update(_canonical(asdict(state.settings)))
        hasher.update(_canonical(state.access.to_dict()))
        hasher.update(state.protocol_reserve.to_bytes(32, "big"))

        # 7. Nonce state
        for addr in sorted(self._nonces):
            hasher.update(f"{addr}:{self._nonces[addr]}".encode())

        # 8. Block metadata
        hasher.update(self._current_block_height.to_bytes(8, "big"))

        return hasher.hexdigest()

    # =====================================================================
    #  Snapshot / restore (for revert)
    # =====================================================================

    def take_snapshot(self) -> Dict[str, Any]:
        """Capture current state for potential revert."""
        snapshot = {
            "state": self.venue.export_state(),
            "nonces": dict(self._nonces),
            "block_height": self._current_block_height,
            "total_txs": self._total_txs,
            "total_failed": self._total_failed,
        }
        self._snapshot = snapshot
        return snapshot

    def _restore_snapshot(self, snapshot: Dict[str, Any]) -> None:
        self.venue.import_state(snapshot["state"])
        self._nonces = copy.copy(snapshot["nonces"])
        self._total_txs = snapshot["total_txs"]
        self._total_failed = snapshot["total_failed"]
        self._block_txs = []
        self._block_results = []
        self._block_gas = 0

    # =====================================================================
    #  Query interface (read-only)
    # =====================================================================

    def get_nonce(self, address: str) -> int:
        return self._nonces.get(address, 0)

    @property
    def block_gas(self) -> int:
        return self._block_gas

    @property
    def block_results(self) -> List[VenueExecResult]:
        return list(self._block_results)

    def get_stats(self) -> Dict[str, Any]:
        """Venue-wide statistics."""
        vault = self.venue.get_vault()
        return {
            "block_height": self._current_block_height,
            "total_txs": self._total_txs,
            "failed_txs": self._total_failed,
            "vault_balance": vault.balance,
            "vault_shares": vault.shares,
            "protocol_reserve": self.venue.protocol_reserve,
        }
