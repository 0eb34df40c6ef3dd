"""Shared pytest fixtures for recovery tests."""

import threading

import pytest

from errors import PeerConnectionError, SyncError
from node_engine import BalanceDetails
from scb import ChannelBackupEntry, EncodedMonitor, StaticChannelBackup

SEED = "limit reward expect search tissue call visa fit thank cream brave jump"
OTHER_SEED = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"

PEER_A = "02" + "aa" * 32
PEER_B = "03" + "bb" * 32


class FakeNode:
    """In-memory NodeEngine that records every call."""

    def __init__(self, unreachable=(), balances=None, channels=(), events=()):
        self.calls = []
        self.unreachable = set(unreachable)
        self.balances = balances or BalanceDetails(0, 0, 0)
        self.channels = list(channels)
        self.events = list(events)
        self.restored = []
        self.connected = []
        self.handled = 0
        self.sync_error = None
        self.sync_delay = 0.0
        self.sync_in_flight = 0
        self._lock = threading.Lock()

    def _record(self, name):
        with self._lock:
            self.calls.append(name)

    def count(self, name):
        return self.calls.count(name)

    def start(self):
        self._record("start")

    def stop(self):
        self._record("stop")

    def sync_wallets(self):
        self._record("sync_wallets")
        with self._lock:
            self.sync_in_flight += 1
        try:
            if self.sync_delay:
                threading.Event().wait(self.sync_delay)
            if self.sync_error:
                raise SyncError(self.sync_error)
        finally:
            with self._lock:
                self.sync_in_flight -= 1

    def connect(self, peer_id, address, persist):
        self._record("connect")
        if peer_id in self.unreachable:
            raise PeerConnectionError(peer_id, address, "connection refused")
        self.connected.append(peer_id)

    def list_channels(self):
        self._record("list_channels")
        return list(self.channels)

    def list_balances(self):
        self._record("list_balances")
        return self.balances

    def force_close_all_channels_without_broadcasting_txn(self):
        self._record("force_close")

    def next_event(self):
        with self._lock:
            return self.events.pop(0) if self.events else None

    def event_handled(self):
        with self._lock:
            self.handled += 1

    def restore_encoded_channel_monitors(self, monitors):
        self._record("restore")
        self.restored.extend(monitors)


class DeferredRestoreNode(FakeNode):
    """Holds restored monitors until start(), like a node built on start."""

    def __init__(self, start_error=None, **kwargs):
        super().__init__(**kwargs)
        self.start_error = start_error
        self.queued = []

    def restore_encoded_channel_monitors(self, monitors):
        self._record("restore")
        self.queued = list(monitors)

    def start(self):
        self._record("start")
        if self.start_error is not None:
            raise self.start_error
        self.restored.extend(self.queued)
        self.queued = []


@pytest.fixture
def fake_node():
    return FakeNode()


@pytest.fixture
def two_channel_backup():
    """Two channels on two different peers."""
    return StaticChannelBackup(
        channels=(
            ChannelBackupEntry("chan-a", PEER_A, "10.0.0.1:9735"),
            ChannelBackupEntry("chan-b", PEER_B, "10.0.0.2:9735"),
        ),
        monitors=(
            EncodedMonitor("monitor-a", b"\x01\x02"),
            EncodedMonitor("monitor-b", b"\x03\x04"),
        ),
    )


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "hub-recovery.state"
