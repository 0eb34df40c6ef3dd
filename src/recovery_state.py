"""
Persisted per-channel recovery progress.

State file (version 3):

    {"version": 3, "monitors_restored": true,
     "peers": {"<peer_id>": {"<channel_id>": "pending"}}}

``monitors_restored`` is set only once the node has started with the
backup's channel monitors, so a run that dies before that restores them again.

Version 2 files lack the flag. Version 1 files written by the first tool
generation only listed channels whose force-close had been requested:
``{"force_closed": ["<id>", ...]}``. Both generations built their node with
the monitors before writing any channel, so both migrate with the flag set.
Version 1 channels sit under ``UNKNOWN_PEER`` until ``attach_peers`` maps
them back to peers from the backup.
"""

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Optional, Set, Tuple, Union

from errors import PersistenceError

logger = logging.getLogger(__name__)

STATE_VERSION = 3
UNKNOWN_PEER = ""


class ChannelState(str, Enum):
    PENDING = "pending"
    FORCE_CLOSE_INITIATED = "force_close_initiated"


# Allowed transitions; anything else is a bug in the caller.
_TRANSITIONS = {
    (ChannelState.PENDING, ChannelState.PENDING),
    (ChannelState.PENDING, ChannelState.FORCE_CLOSE_INITIATED),
    (ChannelState.FORCE_CLOSE_INITIATED, ChannelState.FORCE_CLOSE_INITIATED),
}


class RecoveryState:
    """Map of (peer_id, channel_id) -> ChannelState."""

    def __init__(
        self,
        peers: Optional[Dict[str, Dict[str, ChannelState]]] = None,
        monitors_restored: bool = False,
    ):
        self._peers: Dict[str, Dict[str, ChannelState]] = {}
        self.monitors_restored = monitors_restored
        for peer, channels in (peers or {}).items():
            for channel, state in channels.items():
                self.set_channel_state(peer, channel, state)

    def __eq__(self, other):
        if not isinstance(other, RecoveryState):
            return NotImplemented
        return self._peers == other._peers and self.monitors_restored == other.monitors_restored

    def __repr__(self):
        return f"RecoveryState({self._peers!r}, monitors_restored={self.monitors_restored})"

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------
    def get_channel_state(self, peer_id: str, channel_id: str) -> Optional[ChannelState]:
        return self._peers.get(peer_id, {}).get(channel_id)

    def is_empty(self) -> bool:
        return not any(self._peers.values())

    def has_pending_channels(self) -> bool:
        return any(state is ChannelState.PENDING for _, _, state in self.items())

    def all_channel_ids(self) -> Set[str]:
        return {channel for _, channel, _ in self.items()}

    def items(self) -> Iterable[Tuple[str, str, ChannelState]]:
        for peer, channels in self._peers.items():
            for channel, state in channels.items():
                yield peer, channel, state

    # ------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------
    def set_channel_state(self, peer_id: str, channel_id: str, state: ChannelState) -> None:
        state = ChannelState(state)
        current = self.get_channel_state(peer_id, channel_id)
        if current is not None and (current, state) not in _TRANSITIONS:
            raise ValueError(
                f"illegal transition for channel {channel_id}: {current.value} -> {state.value}"
            )
        self._peers.setdefault(peer_id, {})[channel_id] = state

    def attach_peers(self, channel_peers: Dict[str, str]) -> int:
        """Move channels stored under UNKNOWN_PEER to their real peer. Returns moved count."""
        orphans = self._peers.pop(UNKNOWN_PEER, {})
        moved = 0
        for channel, state in orphans.items():
            peer = channel_peers.get(channel)
            if peer is None:
                self._peers.setdefault(UNKNOWN_PEER, {})[channel] = state
                continue
            self._peers.setdefault(peer, {})[channel] = state
            moved += 1
        return moved

    # ------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------
    def to_dict(self) -> dict:
        return {
            "version": STATE_VERSION,
            "monitors_restored": self.monitors_restored,
            "peers": {
                peer: {channel: state.value for channel, state in channels.items()}
                for peer, channels in self._peers.items()
                if channels
            },
        }

    @classmethod
    def from_dict(cls, doc) -> "RecoveryState":
        if not isinstance(doc, dict):
            raise PersistenceError("recovery state must be a JSON object")
        doc = migrate(doc)
        peers = doc.get("peers")
        if not isinstance(peers, dict):
            raise PersistenceError("recovery state is missing the 'peers' map")

        restored = doc.get("monitors_restored")
        if not isinstance(restored, bool):
            raise PersistenceError("recovery state 'monitors_restored' must be a boolean")

        state = cls(monitors_restored=restored)
        for peer, channels in peers.items():
            if not isinstance(channels, dict):
                raise PersistenceError(f"recovery state entry for peer {peer!r} must be an object")
            for channel, value in channels.items():
                try:
                    state.set_channel_state(peer, channel, ChannelState(value))
                except ValueError as e:
                    raise PersistenceError(
                        f"invalid state {value!r} for channel {channel!r}"
                    ) from e
        return state

    @classmethod
    def load(cls, path: Union[str, Path]) -> Optional["RecoveryState"]:
        """Read the state file. A missing file is not an error and returns None."""
        path = Path(path)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"cannot read state file {path}: {e}") from e

        try:
            doc = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"state file {path} is corrupted: {e}") from e
        state = cls.from_dict(doc)
        logger.debug("loaded recovery state from %s: %r", path, state)
        return state

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        tmp = path.with_name(path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2, sort_keys=True)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            raise PersistenceError(f"failed to save state file {path}: {e}") from e
        logger.debug("saved recovery state to %s", path)


def migrate(doc: dict) -> dict:
    """Bring a raw state document up to STATE_VERSION."""
    version = doc.get("version")
    if version is None and "force_closed" in doc:
        force_closed = doc["force_closed"]
        if not isinstance(force_closed, list) or not all(isinstance(c, str) for c in force_closed):
            raise PersistenceError("legacy state 'force_closed' must be a list of channel ids")
        logger.info("migrating legacy recovery state (%d channel(s))", len(force_closed))
        return {
            "version": STATE_VERSION,
            "monitors_restored": True,
            "peers": {
                UNKNOWN_PEER: {c: ChannelState.FORCE_CLOSE_INITIATED.value for c in force_closed}
            }
            if force_closed
            else {},
        }
    if version == 2:
        doc = dict(doc, version=STATE_VERSION, monitors_restored=True)
    if doc.get("version") != STATE_VERSION:
        raise PersistenceError(f"unsupported recovery state version: {version!r}")
    return doc
