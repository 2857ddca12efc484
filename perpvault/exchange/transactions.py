"""
PerpVault Transaction Types

Envelope for venue operations that are included in blocks and replayed
deterministically by ``VenueStateManager``.  The envelope carries the
sender, a per-sender nonce and operation parameters; the venue itself
decides authorization from the sender.

Transaction Types:
  - OPEN_POSITION / CLOSE_POSITION:     trade against the vault
  - LIQUIDATE:                          liquidate a batch of position keys
  - STAKE / REDEEM:                     vault deposits and withdrawals
  - STAKE_TOKEN / WITHDRAW_TOKEN / EXIT governance-token staking
  - FUND_REWARD / NOTIFY_REWARD:        reward pool funding and periods
  - CLAIM_REWARD / CLAIM_ALL_REWARDS:   reward claims
  - ADD_PRODUCT ... WITHDRAW_RESERVE:   role-gated configuration

Security:
  - Nonce prevents replay
  - Gas metering bounds per-operation cost (LIQUIDATE scales with batch)
  - Parameters are checked structurally before any state is touched
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Tuple


# ---------------------------------------------------------------------------
# Operation types
# ---------------------------------------------------------------------------

class VenueOpType(IntEnum):
    """All venue operation types.  Values are consensus-critical."""
    OPEN_POSITION = 1
    CLOSE_POSITION = 2
    LIQUIDATE = 3
    STAKE = 4
    REDEEM = 5
    STAKE_TOKEN = 6
    WITHDRAW_TOKEN = 7
    EXIT = 8
    FUND_REWARD = 9
    NOTIFY_REWARD = 10
    CLAIM_REWARD = 11
    CLAIM_ALL_REWARDS = 12
    ADD_PRODUCT = 13
    UPDATE_PRODUCT = 14
    UPDATE_VAULT = 15
    SET_MARGIN_BOUNDS = 16
    SET_FEE_SPLIT = 17
    SET_SETTING = 18
    SET_REWARD_DURATION = 19
    GRANT_ROLE = 20
    REVOKE_ROLE = 21
    SET_OWNER = 22
    WITHDRAW_RESERVE = 23


REQUIRED_PARAMS: Dict[VenueOpType, Tuple[str, ...]] = {
    VenueOpType.OPEN_POSITION: ("product_id", "margin", "is_long", "leverage"),
    VenueOpType.CLOSE_POSITION: ("product_id", "margin", "is_long"),
    VenueOpType.LIQUIDATE: ("position_keys",),
    VenueOpType.STAKE: ("amount",),
    VenueOpType.REDEEM: ("shares",),
    VenueOpType.STAKE_TOKEN: ("amount",),
    VenueOpType.WITHDRAW_TOKEN: ("amount",),
    VenueOpType.EXIT: (),
    VenueOpType.FUND_REWARD: ("pool_id", "amount"),
    VenueOpType.NOTIFY_REWARD: ("pool_id", "amount"),
    VenueOpType.CLAIM_REWARD: ("pool_id",),
    VenueOpType.CLAIM_ALL_REWARDS: (),
    VenueOpType.ADD_PRODUCT: (
        "product_id", "oracle", "max_leverage", "fee_bps", "interest_bps",
        "liquidation_threshold_bps", "liquidation_bounty_bps",
        "min_price_change_bps", "max_exposure",
    ),
    VenueOpType.UPDATE_PRODUCT: ("product_id", "changes"),
    VenueOpType.UPDATE_VAULT: ("cap", "stake_cooldown"),
    VenueOpType.SET_MARGIN_BOUNDS: ("min_margin", "min_position_size", "max_position_size"),
    VenueOpType.SET_FEE_SPLIT: ("protocol_bps", "staker_bps", "depositor_bps"),
    VenueOpType.SET_SETTING: ("name", "value"),
    VenueOpType.SET_REWARD_DURATION: ("pool_id", "duration"),
    VenueOpType.GRANT_ROLE: ("role", "account"),
    VenueOpType.REVOKE_ROLE: ("role", "account"),
    VenueOpType.SET_OWNER: ("owner",),
    VenueOpType.WITHDRAW_RESERVE: ("recipient", "amount"),
}

# Settings reachable through SET_SETTING
SETTABLE_SETTINGS = (
    "allow_public_liquidation",
    "can_user_stake",
    "check_price_change",
    "min_profit_time",
    "max_shift",
    "liquidation_bounty_fixed",
)


# ---------------------------------------------------------------------------
# Venue transaction
# ---------------------------------------------------------------------------

@dataclass
class VenueTransaction:
    """
    Blockchain-level envelope for a single venue operation.

    Fields are consensus-critical; changing any field changes the tx hash.
    """
    op_type: VenueOpType
    sender: str
    nonce: int
    params: Dict[str, Any] = field(default_factory=dict)
    gas_limit: int = 200_000
    timestamp: int = 0                 # submission time, informational only

    # --- Computed after execution ---
    gas_used: int = 0
    success: bool = False
    result: Dict[str, Any] = field(default_factory=dict)
    error: str = ""

    # -- Hashing ------------------------------------------------------------

    def tx_hash(self) -> str:
        """Deterministic transaction hash (consensus-critical)."""
        return hashlib.blake2b(self._canonical_bytes(), digest_size=32).hexdigest()

    def _canonical_bytes(self) -> bytes:
        params_json = json.dumps(self.params, sort_keys=True, default=str).encode("utf-8")
        parts = [
            int(self.op_type).to_bytes(1, "big"),
            self.sender.encode("utf-8"),
            self.nonce.to_bytes(8, "big"),
            params_json,
            self.gas_limit.to_bytes(8, "big"),
        ]
        return b"".join(parts)

    # -- Serialization ------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op_type": int(self.op_type),
            "sender": self.sender,
            "nonce": self.nonce,
            "params": self.params,
            "gas_limit": self.gas_limit,
            "timestamp": self.timestamp,
            "tx_hash": self.tx_hash(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> VenueTransaction:
        return cls(
            op_type=VenueOpType(data["op_type"]),
            sender=data["sender"],
            nonce=data["nonce"],
            params=data.get("params", {}),
            gas_limit=data.get("gas_limit", 200_000),
            timestamp=data.get("timestamp", 0),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    @classmethod
    def from_json(cls, raw: str) -> VenueTransaction:
        return cls.from_dict(json.loads(raw))

    # -- Gas ----------------------------------------------------------------

    def base_gas(self) -> int:
        gas = VENUE_GAS_COSTS.get(self.op_type, 100_000)
        if self.op_type == VenueOpType.LIQUIDATE:
            gas += LIQUIDATION_GAS_PER_KEY * len(self.params.get("position_keys", ()))
        return gas

    # -- Validation ---------------------------------------------------------

    def validate_basic(self) -> bool:
        """
        Structural validation (no state access needed).

        Raises:
            ValueError: with specific reason
        """
        if not self.sender:
            raise ValueError("Missing sender address")
        if self.nonce < 0:
            raise ValueError("Nonce must be non-negative")
        if self.gas_limit <= 0:
            raise ValueError("Gas limit must be positive")
        try:
            VenueOpType(self.op_type)
        except ValueError:
            raise ValueError(f"Unknown operation type: {self.op_type}") from None
        self._validate_params()
        return True

    def _validate_params(self) -> None:
        p = self.params
        op = VenueOpType(self.op_type)
        for key in REQUIRED_PARAMS[op]:
            if key not in p:
                raise ValueError(f"{op.name} missing param: {key}")

        if op == VenueOpType.LIQUIDATE:
            keys = p["position_keys"]
            if not isinstance(keys, (list, tuple)) or not keys:
                raise ValueError("LIQUIDATE needs a non-empty position_keys list")
        elif op == VenueOpType.UPDATE_PRODUCT:
            if not isinstance(p["changes"], dict) or not p["changes"]:
                raise ValueError("UPDATE_PRODUCT needs a non-empty changes mapping")
        elif op == VenueOpType.SET_SETTING:
            if p["name"] not in SETTABLE_SETTINGS:
                raise ValueError(f"SET_SETTING unknown setting: {p['name']}")

    def __repr__(self) -> str:
        return (f"VenueTransaction(op={VenueOpType(self.op_type).name}, sender={self.sender[:16]}, "
                f"nonce={self.nonce}, hash={self.tx_hash()[:12]}...)")


# ---------------------------------------------------------------------------
# Gas cost table (consensus-critical constants)
# ---------------------------------------------------------------------------

VENUE_GAS_COSTS: Dict[VenueOpType, int] = {
    VenueOpType.OPEN_POSITION: 80_000,
    VenueOpType.CLOSE_POSITION: 70_000,
    VenueOpType.LIQUIDATE: 30_000,
    VenueOpType.STAKE: 50_000,
    VenueOpType.REDEEM: 50_000,
    VenueOpType.STAKE_TOKEN: 40_000,
    VenueOpType.WITHDRAW_TOKEN: 40_000,
    VenueOpType.EXIT: 60_000,
    VenueOpType.FUND_REWARD: 30_000,
    VenueOpType.NOTIFY_REWARD: 30_000,
    VenueOpType.CLAIM_REWARD: 35_000,
    VenueOpType.CLAIM_ALL_REWARDS: 60_000,
    VenueOpType.ADD_PRODUCT: 40_000,
    VenueOpType.UPDATE_PRODUCT: 30_000,
    VenueOpType.UPDATE_VAULT: 20_000,
    VenueOpType.SET_MARGIN_BOUNDS: 20_000,
    VenueOpType.SET_FEE_SPLIT: 20_000,
    VenueOpType.SET_SETTING: 20_000,
    VenueOpType.SET_REWARD_DURATION: 20_000,
    VenueOpType.GRANT_ROLE: 20_000,
    VenueOpType.REVOKE_ROLE: 20_000,
    VenueOpType.SET_OWNER: 20_000,
    VenueOpType.WITHDRAW_RESERVE: 30_000,
}

LIQUIDATION_GAS_PER_KEY = 40_000
