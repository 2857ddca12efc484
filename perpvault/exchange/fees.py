"""
PerpVault Fee Distributor

Every fee event (trading fee plus interest, summed) is split by basis points:

    protocol   -> protocol reserve (withdrawable by the owner)
    stakers    -> staker fee reward pool       (token stake shares)
    depositors -> depositor fee reward pool    (vault shares)
    vault      -> vault balance directly

Parts are floored; the rounding remainder goes to the protocol reserve so
the parts always sum to the fee.  A reward pool whose share source has no
holders cannot stream, so its part goes to the protocol reserve as well.
"""

from __future__ import annotations

import logging

from ..constants import DEPOSITOR_FEE_POOL, STAKER_FEE_POOL
from ..exceptions import InvalidAmountError
from .events import FeeDistributedEvent
from .fixed_point import bps_of
from .rewards import RewardAccrual
from .state import OperationContext, VenueState

logger = logging.getLogger(__name__)


class FeeDistributor:

    def __init__(
        self,
        rewards: RewardAccrual,
        staker_pool: str = STAKER_FEE_POOL,
        depositor_pool: str = DEPOSITOR_FEE_POOL,
    ) -> None:
        self.rewards = rewards
        self.staker_pool = staker_pool
        self.depositor_pool = depositor_pool

    def _has_holders(self, state: VenueState, pool_id: str) -> bool:
        pool = state.reward_pools.get(pool_id)
        if pool is None:
            return False
        return self.rewards.source_for(pool).total_shares(state) > 0

    def distribute(self, ctx: OperationContext, state: VenueState, amount: int) -> FeeDistributedEvent:
        """Split *amount* already held by the venue and credit every target."""
        if amount < 0:
            raise InvalidAmountError("Fee must be non-negative")

        split = state.settings.fee_split
        stakers = bps_of(amount, split.staker_bps)
        depositors = bps_of(amount, split.depositor_bps)
        vault = bps_of(amount, split.vault_bps)
        protocol = amount - stakers - depositors - vault

        if stakers and not self._has_holders(state, self.staker_pool):
            protocol, stakers = protocol + stakers, 0
        if depositors and not self._has_holders(state, self.depositor_pool):
            protocol, depositors = protocol + depositors, 0

        state.protocol_reserve += protocol
        state.vault.balance += vault
        self.rewards.stream_fee(ctx, state, self.staker_pool, stakers)
        self.rewards.stream_fee(ctx, state, self.depositor_pool, depositors)

        event = FeeDistributedEvent(amount, protocol, stakers, depositors, vault)
        if amount:
            ctx.emit(event)
            logger.debug(
                "Fee distributed: total=%d protocol=%d stakers=%d depositors=%d vault=%d",
                amount, protocol, stakers, depositors, vault,
            )
        return event

    @staticmethod
    def withdraw_reserve(ctx: OperationContext, state: VenueState, recipient: str, amount: int) -> int:
        """Pay *amount* of the protocol reserve to *recipient*."""
        if amount <= 0 or amount > state.protocol_reserve:
            raise InvalidAmountError(
                f"Reserve withdrawal {amount} outside (0, {state.protocol_reserve}]"
            )
        state.protocol_reserve -= amount
        ctx.transfers.push(state.collateral_asset, recipient, amount)
        logger.info("Protocol reserve withdrawn: amount=%d to %s", amount, recipient)
        return state.protocol_reserve
