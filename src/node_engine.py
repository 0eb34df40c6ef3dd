"""
Lightning node engine boundary.

The recovery monitor only talks to ``NodeEngine``. ``LdkNodeEngine`` adapts
the ldk_node Python bindings (optional ``ldk`` extra) to it, converting the
bindings' balance variants into the value types below.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol, Sequence, Tuple

from errors import NodeEngineError, PeerConnectionError, SyncError

logger = logging.getLogger(__name__)

# Olympus LSP, used as liquidity source on mainnet.
LSPS2_MAINNET = ("52.88.33.119:9735", "031b301307574bbe9b9ac7b79cbe1700e31e544513eae0b5d7497483083f99e581")

_PUBKEY_RE = re.compile(r"^0[23][0-9a-fA-F]{64}$")


class LightningBalanceKind(Enum):
    CLAIMABLE_ON_CHANNEL_CLOSE = "claimable_on_channel_close"
    CLAIMABLE_AWAITING_CONFIRMATIONS = "claimable_awaiting_confirmations"
    CONTENTIOUS_CLAIMABLE = "contentious_claimable"
    MAYBE_TIMEOUT_CLAIMABLE_HTLC = "maybe_timeout_claimable_htlc"
    MAYBE_PREIMAGE_CLAIMABLE_HTLC = "maybe_preimage_claimable_htlc"
    COUNTERPARTY_REVOKED_OUTPUT_CLAIMABLE = "counterparty_revoked_output_claimable"


class PendingSweepKind(Enum):
    PENDING_BROADCAST = "pending_broadcast"
    BROADCAST_AWAITING_CONFIRMATION = "broadcast_awaiting_confirmation"
    AWAITING_THRESHOLD_CONFIRMATIONS = "awaiting_threshold_confirmations"


@dataclass(frozen=True)
class LightningBalance:
    kind: LightningBalanceKind
    channel_id: str
    amount_satoshis: int


@dataclass(frozen=True)
class PendingSweepBalance:
    kind: PendingSweepKind
    amount_satoshis: int
    channel_id: Optional[str] = None


@dataclass(frozen=True)
class ChannelDetails:
    channel_id: str
    counterparty_node_id: str = ""


@dataclass(frozen=True)
class BalanceDetails:
    total_onchain_balance_sats: int
    spendable_onchain_balance_sats: int
    total_anchor_channels_reserve_sats: int
    lightning_balances: Tuple[LightningBalance, ...] = ()
    pending_balances_from_channel_closures: Tuple[PendingSweepBalance, ...] = ()


class NodeEngine(Protocol):
    """Operations the recovery monitor needs from a Lightning node."""

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def sync_wallets(self) -> None: ...

    def connect(self, peer_id: str, address: str, persist: bool) -> None: ...

    def list_channels(self) -> List[ChannelDetails]: ...

    def list_balances(self) -> BalanceDetails: ...

    def force_close_all_channels_without_broadcasting_txn(self) -> None: ...

    def next_event(self) -> Optional[object]: ...

    def event_handled(self) -> None: ...

    def restore_encoded_channel_monitors(self, monitors: Sequence) -> None: ...


def validate_peer(peer_id: str, address: str) -> None:
    """Raise PeerConnectionError for a malformed node id or socket address."""
    if not _PUBKEY_RE.match(peer_id):
        raise PeerConnectionError(peer_id, address, "invalid peer ID")
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
        raise PeerConnectionError(peer_id, address, "invalid peer address")


# ============================================================
# ldk_node adapter
# ============================================================
class LdkNodeEngine:
    """NodeEngine backed by the ldk_node bindings. The node is built on start()."""

    def __init__(self, seed_phrase: str, network: str, storage_dir: str, esplora_server: str,
                 log_level: str = "INFO"):
        try:
            import ldk_node
        except ImportError as e:
            raise NodeEngineError(
                "ldk_node bindings are not installed. Install with: pip install 'hub-recovery[ldk]'"
            ) from e
        self._ldk = ldk_node
        self._seed_phrase = seed_phrase
        self._network = network
        self._storage_dir = storage_dir
        self._esplora_server = esplora_server
        self._log_level = log_level
        self._monitors = []
        self._node = None

    def restore_encoded_channel_monitors(self, monitors: Sequence) -> None:
        if self._node is not None:
            raise NodeEngineError("channel monitors must be restored before the node starts")
        self._monitors = [self._ldk.KeyValue(key=m.key, value=list(m.value)) for m in monitors]

    def _build(self):
        ldk = self._ldk
        config = ldk.default_config()
        config.log_level = getattr(ldk.LogLevel, self._log_level.upper())
        builder = ldk.Builder.from_config(config)
        builder.set_entropy_bip39_mnemonic(self._seed_phrase, None)
        builder.set_network(getattr(ldk.Network, self._network.upper()))
        builder.set_storage_dir_path(self._storage_dir)
        builder.set_esplora_server(self._esplora_server)
        if self._network == "bitcoin":
            address, node_id = LSPS2_MAINNET
            builder.set_liquidity_source_lsps2(address, node_id, None)
        if self._monitors:
            builder.restore_encoded_channel_monitors(self._monitors)
        return builder.build()

    def _require_node(self):
        if self._node is None:
            raise NodeEngineError("node is not started")
        return self._node

    def start(self) -> None:
        try:
            self._node = self._build()
            self._node.start()
        except (self._ldk.BuildError, self._ldk.NodeError) as e:
            raise NodeEngineError(f"failed to start LDK node: {e}") from e
        logger.info("LDK node started, node id %s", self._node.node_id())

    def stop(self) -> None:
        try:
            self._require_node().stop()
        except self._ldk.NodeError as e:
            raise NodeEngineError(f"failed to stop LDK node: {e}") from e

    def sync_wallets(self) -> None:
        try:
            self._require_node().sync_wallets()
        except self._ldk.NodeError as e:
            raise SyncError(f"wallet sync failed: {e}") from e

    def connect(self, peer_id: str, address: str, persist: bool) -> None:
        try:
            self._require_node().connect(peer_id, address, persist)
        except self._ldk.NodeError as e:
            raise PeerConnectionError(peer_id, address, str(e)) from e

    def list_channels(self) -> List[ChannelDetails]:
        try:
            channels = self._require_node().list_channels()
        except self._ldk.NodeError as e:
            raise NodeEngineError(f"failed to list channels: {e}") from e
        return [ChannelDetails(str(ch.channel_id), str(ch.counterparty_node_id)) for ch in channels]

    def list_balances(self) -> BalanceDetails:
        try:
            raw = self._require_node().list_balances()
        except self._ldk.NodeError as e:
            raise NodeEngineError(f"failed to list balances: {e}") from e
        return BalanceDetails(
            total_onchain_balance_sats=raw.total_onchain_balance_sats,
            spendable_onchain_balance_sats=raw.spendable_onchain_balance_sats,
            total_anchor_channels_reserve_sats=raw.total_anchor_channels_reserve_sats,
            lightning_balances=tuple(_convert_lightning_balance(b) for b in raw.lightning_balances),
            pending_balances_from_channel_closures=tuple(
                _convert_pending_sweep(b) for b in raw.pending_balances_from_channel_closures
            ),
        )

    def force_close_all_channels_without_broadcasting_txn(self) -> None:
        try:
            self._require_node().force_close_all_channels_without_broadcasting_txn()
        except self._ldk.NodeError as e:
            raise NodeEngineError(f"failed to force-close channels: {e}") from e

    def next_event(self):
        try:
            return self._require_node().next_event()
        except self._ldk.NodeError as e:
            raise NodeEngineError(f"failed to read node event: {e}") from e

    def event_handled(self) -> None:
        try:
            self._require_node().event_handled()
        except self._ldk.NodeError as e:
            raise NodeEngineError(f"failed to acknowledge node event: {e}") from e


def _variant_name(raw) -> str:
    # uniffi renders enum variants as nested classes named like CLAIMABLE_ON_CHANNEL_CLOSE
    return type(raw).__name__


def _convert_lightning_balance(raw) -> LightningBalance:
    try:
        kind = LightningBalanceKind[_variant_name(raw)]
    except KeyError:
        raise NodeEngineError(f"unknown lightning balance variant: {_variant_name(raw)}") from None
    return LightningBalance(kind, str(raw.channel_id), int(raw.amount_satoshis))


def _convert_pending_sweep(raw) -> PendingSweepBalance:
    try:
        kind = PendingSweepKind[_variant_name(raw)]
    except KeyError:
        raise NodeEngineError(f"unknown pending sweep variant: {_variant_name(raw)}") from None
    channel_id = getattr(raw, "channel_id", None)
    return PendingSweepBalance(kind, int(raw.amount_satoshis), str(channel_id) if channel_id else None)
