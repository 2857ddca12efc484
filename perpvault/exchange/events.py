"""
PerpVault events

Immutable records emitted by venue operations.  ``to_dict`` uses the
camelCase field names downstream indexers consume.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class NewPositionEvent:
    """Emitted on every open or increase."""
    position_key: str
    account: str
    product_id: int
    is_long: bool
    price: int
    oracle_price: int
    margin: int
    leverage: int
    fee: int
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "NewPosition",
            "positionKey": self.position_key,
            "account": self.account,
            "productId": self.product_id,
            "isLong": self.is_long,
            "price": self.price,
            "oraclePrice": self.oracle_price,
            "margin": self.margin,
            "leverage": self.leverage,
            "fee": self.fee,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ClosePositionEvent:
    """Emitted on every close, partial close and liquidation."""
    position_key: str
    account: str
    product_id: int
    price: int
    entry_price: int
    margin: int                          # remaining margin after the close
    leverage: int
    fee: int                             # trading fee + interest actually collected
    pnl: int
    is_full_close: bool
    is_liquidation: bool
    timestamp: int
    liquidator: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "ClosePosition",
            "positionKey": self.position_key,
            "account": self.account,
            "productId": self.product_id,
            "price": self.price,
            "entryPrice": self.entry_price,
            "margin": self.margin,
            "leverage": self.leverage,
            "fee": self.fee,
            "pnl": self.pnl,
            "isFullClose": self.is_full_close,
            "isLiquidation": self.is_liquidation,
            "liquidator": self.liquidator,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class StakeEvent:
    account: str
    recipient: str
    amount: int
    shares: int
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "Stake",
            "account": self.account,
            "recipient": self.recipient,
            "amount": self.amount,
            "shares": self.shares,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class RedeemEvent:
    account: str
    recipient: str
    amount: int
    shares: int
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "Redeem",
            "account": self.account,
            "recipient": self.recipient,
            "amount": self.amount,
            "shares": self.shares,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class TokenStakeEvent:
    """Emitted when the staking token balance changes (stake or withdraw)."""
    account: str
    amount: int                          # signed: negative on withdraw
    balance: int
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "Staked" if self.amount >= 0 else "Withdrawn",
            "account": self.account,
            "amount": abs(self.amount),
            "balance": self.balance,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class RewardAddedEvent:
    pool_id: str
    amount: int
    reward_rate: int
    period_finish: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "RewardAdded",
            "poolId": self.pool_id,
            "amount": self.amount,
            "rewardRate": self.reward_rate,
            "periodFinish": self.period_finish,
        }


@dataclass(frozen=True)
class RewardPaidEvent:
    pool_id: str
    account: str
    reward_asset: str
    amount: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "RewardPaid",
            "poolId": self.pool_id,
            "account": self.account,
            "rewardAsset": self.reward_asset,
            "amount": self.amount,
        }


@dataclass(frozen=True)
class FeeDistributedEvent:
    """Split of a single fee event."""
    total: int
    protocol: int
    stakers: int
    depositors: int
    vault: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "FeeDistributed",
            "total": self.total,
            "protocol": self.protocol,
            "stakers": self.stakers,
            "depositors": self.depositors,
            "vault": self.vault,
        }


@dataclass(frozen=True)
class ConfigChangedEvent:
    """Emitted by every governance setter."""
    caller: str
    setting: str
    value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "ConfigChanged",
            "caller": self.caller,
            "setting": self.setting,
            "value": self.value,
        }
