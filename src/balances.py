"""
Balance snapshot derived from the node engine on every poll.

``claimable`` counts lightning balances of channels the node no longer
tracks, i.e. the force-closed channels this tool is recovering.
Every balance variant carries its channel and amount the same way; the
variant set is checked once, where ldk_node values are converted.
"""

import logging
from dataclasses import dataclass
from typing import Iterable

from node_engine import BalanceDetails, NodeEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceSnapshot:
    spendable: int
    total: int
    reserved: int
    claimable: int
    pending_sweep: int

    @property
    def pending(self) -> int:
        return self.claimable + self.pending_sweep

    @property
    def is_recovery_complete(self) -> bool:
        return self.pending == 0

    @classmethod
    def from_details(cls, details: BalanceDetails, open_channel_ids: Iterable[str]) -> "BalanceSnapshot":
        open_ids = set(open_channel_ids)
        claimable = 0
        for b in details.lightning_balances:
            if b.channel_id not in open_ids:
                claimable += b.amount_satoshis
        pending_sweep = sum(b.amount_satoshis for b in details.pending_balances_from_channel_closures)
        reserved = details.total_anchor_channels_reserve_sats
        return cls(
            spendable=details.spendable_onchain_balance_sats,
            total=max(0, details.total_onchain_balance_sats - reserved),
            reserved=reserved,
            claimable=claimable,
            pending_sweep=pending_sweep,
        )

    def report(self) -> str:
        return (
            "Balances (sats):\n"
            f"  Spendable: {self.spendable}; total: {self.total}; reserved: {self.reserved}\n"
            f"  Pending from channel closures: {self.pending}\n"
        )


def take_snapshot(node: NodeEngine) -> BalanceSnapshot:
    channels = node.list_channels()
    details = node.list_balances()
    snapshot = BalanceSnapshot.from_details(details, (c.channel_id for c in channels))
    logger.info(
        "balances: spendable: %d, reserved: %d, claimable: %d, pending sweep: %d",
        snapshot.spendable, snapshot.reserved, snapshot.claimable, snapshot.pending_sweep,
    )
    return snapshot
