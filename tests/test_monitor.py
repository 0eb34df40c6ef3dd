"""Tests for the recovery monitor: initialisation, resume and the monitoring phase."""

import json

import pytest

from conftest import PEER_A, PEER_B, DeferredRestoreNode, FakeNode
from errors import NodeEngineError, StateMismatchError
from node_engine import BalanceDetails, LightningBalance, LightningBalanceKind
from periodic import StopToken
from recover import ForceClosePolicy, RecoveryMonitor
from recovery_state import ChannelState, RecoveryState
from scb import ChannelBackupEntry, StaticChannelBackup

PENDING = ChannelState.PENDING
CLOSING = ChannelState.FORCE_CLOSE_INITIATED


def make_monitor(node, backup, state_path, **kwargs):
    kwargs.setdefault("balance_interval", 0.01)
    kwargs.setdefault("sync_interval", 0.01)
    kwargs.setdefault("event_interval", 0.005)
    return RecoveryMonitor(node, backup, state_path, **kwargs)


class TestFirstRun:
    def test_state_is_persisted_before_node_starts(self, fake_node, two_channel_backup, state_path):
        monitor = make_monitor(fake_node, two_channel_backup, state_path)

        assert monitor.prepare_state() is True

        saved = RecoveryState.load(state_path)
        assert saved.get_channel_state(PEER_A, "chan-a") is PENDING
        assert saved.get_channel_state(PEER_B, "chan-b") is PENDING
        assert fake_node.calls == ["restore"]
        assert fake_node.restored == list(two_channel_backup.monitors)
        assert saved.monitors_restored is False

    def test_restore_is_recorded_once_node_started(self, two_channel_backup, state_path):
        node = DeferredRestoreNode()
        make_monitor(node, two_channel_backup, state_path).initialize()

        assert node.restored == list(two_channel_backup.monitors)
        assert RecoveryState.load(state_path).monitors_restored is True

    def test_empty_backup_does_not_claim_resume(self, fake_node, state_path, capsys):
        backup = StaticChannelBackup(channels=(), monitors=())
        monitor = make_monitor(fake_node, backup, state_path)

        monitor.initialize()

        assert monitor.first_run
        assert fake_node.count("force_close") == 0
        assert "Resuming recovery" not in capsys.readouterr().out

    def test_end_to_end_one_peer_unreachable(self, two_channel_backup, state_path, capsys):
        node = FakeNode(unreachable={PEER_B})
        monitor = make_monitor(node, two_channel_backup, state_path)

        report = monitor.initialize()

        saved = RecoveryState.load(state_path)
        assert saved.get_channel_state(PEER_A, "chan-a") is CLOSING
        assert saved.get_channel_state(PEER_B, "chan-b") is PENDING
        assert report.connected == [PEER_A]
        assert list(report.failures) == [PEER_B]
        assert node.count("force_close") == 1
        assert "connection refused" in capsys.readouterr().out

    def test_peer_with_many_channels_is_contacted_once(self, fake_node, state_path):
        backup = StaticChannelBackup(
            channels=(
                ChannelBackupEntry("c1", PEER_A, "10.0.0.1:9735"),
                ChannelBackupEntry("c2", PEER_A, "10.0.0.1:9735"),
                ChannelBackupEntry("c3", PEER_B, "10.0.0.2:9735"),
            ),
            monitors=(),
        )
        make_monitor(fake_node, backup, state_path).initialize()
        assert fake_node.connected == [PEER_A, PEER_B]

    def test_invalid_peer_is_a_connection_failure(self, fake_node, state_path):
        backup = StaticChannelBackup(
            channels=(
                ChannelBackupEntry("c1", "not-a-key", "10.0.0.1:9735"),
                ChannelBackupEntry("c2", PEER_B, "no-port"),
                ChannelBackupEntry("c3", PEER_A, "10.0.0.1:9735"),
            ),
            monitors=(),
        )
        report = make_monitor(fake_node, backup, state_path).initialize()
        assert report.connected == [PEER_A]
        assert set(report.failures) == {"not-a-key", PEER_B}
        assert fake_node.count("connect") == 1

    def test_initial_sync_failure_is_not_fatal(self, two_channel_backup, state_path):
        node = FakeNode()
        node.sync_error = "esplora down"
        make_monitor(node, two_channel_backup, state_path).initialize()
        assert node.count("force_close") == 1


class TestResume:
    def test_mismatch_is_fatal_and_leaves_state_untouched(self, fake_node, state_path):
        state = RecoveryState()
        state.set_channel_state(PEER_A, "A", CLOSING)
        state.set_channel_state(PEER_B, "B", PENDING)
        state.save(state_path)
        before = state_path.read_bytes()

        backup = StaticChannelBackup(
            channels=(
                ChannelBackupEntry("A", PEER_A, "10.0.0.1:9735"),
                ChannelBackupEntry("C", PEER_B, "10.0.0.2:9735"),
            ),
            monitors=(),
        )
        with pytest.raises(StateMismatchError) as exc_info:
            make_monitor(fake_node, backup, state_path).initialize()

        assert exc_info.value.state_channels == {"A", "B"}
        assert exc_info.value.backup_channels == {"A", "C"}
        assert state_path.read_bytes() == before
        assert fake_node.calls == []

    def test_second_run_is_idempotent(self, two_channel_backup, state_path):
        make_monitor(FakeNode(), two_channel_backup, state_path).initialize()
        after_first = state_path.read_bytes()

        node = FakeNode()
        monitor = make_monitor(node, two_channel_backup, state_path)
        assert monitor.prepare_state() is False
        monitor.start()

        assert node.count("restore") == 0
        assert node.count("force_close") == 0
        assert state_path.read_bytes() == after_first

    def test_resume_retries_pending_channels(self, two_channel_backup, state_path):
        make_monitor(FakeNode(unreachable={PEER_B}), two_channel_backup, state_path).initialize()

        node = FakeNode()
        make_monitor(node, two_channel_backup, state_path).initialize()

        saved = RecoveryState.load(state_path)
        assert node.count("restore") == 0
        assert node.count("force_close") == 1
        assert saved.get_channel_state(PEER_A, "chan-a") is CLOSING
        assert saved.get_channel_state(PEER_B, "chan-b") is CLOSING

    def test_every_run_policy_force_closes_on_resume(self, two_channel_backup, state_path):
        make_monitor(FakeNode(), two_channel_backup, state_path).initialize()

        node = FakeNode()
        make_monitor(node, two_channel_backup, state_path, policy=ForceClosePolicy.EVERY_RUN).initialize()
        assert node.count("force_close") == 1

    def test_restore_repeats_when_node_never_started(self, two_channel_backup, state_path):
        crashed = DeferredRestoreNode(start_error=NodeEngineError("killed during start"))
        with pytest.raises(NodeEngineError):
            make_monitor(crashed, two_channel_backup, state_path).initialize()
        assert crashed.restored == []
        assert RecoveryState.load(state_path).monitors_restored is False

        node = DeferredRestoreNode()
        monitor = make_monitor(node, two_channel_backup, state_path)
        assert monitor.prepare_state() is False
        monitor.start()

        saved = RecoveryState.load(state_path)
        assert node.restored == list(two_channel_backup.monitors)
        assert saved.monitors_restored is True
        assert saved.get_channel_state(PEER_A, "chan-a") is CLOSING

    def test_resume_without_pending_channels_says_so(self, two_channel_backup, state_path, capsys):
        make_monitor(FakeNode(), two_channel_backup, state_path).initialize()
        capsys.readouterr()

        make_monitor(FakeNode(), two_channel_backup, state_path).initialize()
        assert "Resuming recovery" in capsys.readouterr().out

    def test_legacy_state_is_reattached_to_peers(self, fake_node, two_channel_backup, state_path):
        state_path.write_text(json.dumps({"force_closed": ["chan-a", "chan-b"]}))

        make_monitor(fake_node, two_channel_backup, state_path).initialize()

        saved = RecoveryState.load(state_path)
        assert saved.get_channel_state(PEER_A, "chan-a") is CLOSING
        assert saved.get_channel_state(PEER_B, "chan-b") is CLOSING
        assert fake_node.count("restore") == 0
        assert fake_node.count("force_close") == 0


class TestMonitoringPhase:
    def test_zero_pending_stops_exactly_once(self, fake_node, two_channel_backup, state_path, capsys):
        monitor = make_monitor(fake_node, two_channel_backup, state_path)

        monitor.check_balances()
        monitor.check_balances()

        assert monitor.stop.is_stopped()
        assert capsys.readouterr().out.count("Recovery completed successfully") == 1

    def test_pending_funds_keep_running(self, two_channel_backup, state_path):
        node = FakeNode(
            balances=BalanceDetails(
                0, 0, 0,
                lightning_balances=(
                    LightningBalance(LightningBalanceKind.CLAIMABLE_ON_CHANNEL_CLOSE, "chan-a", 1),
                ),
            )
        )
        monitor = make_monitor(node, two_channel_backup, state_path)
        snapshot = monitor.check_balances()
        assert snapshot.claimable == 1
        assert not monitor.stop.is_stopped()

    def test_drain_events_empties_queue(self, two_channel_backup, state_path):
        node = FakeNode(events=["e1", "e2", "e3"])
        monitor = make_monitor(node, two_channel_backup, state_path)
        assert monitor.drain_events() == 3
        assert node.handled == 3
        assert monitor.drain_events() == 0

    def test_sync_failure_is_absorbed(self, two_channel_backup, state_path):
        node = FakeNode()
        node.sync_error = "timeout"
        make_monitor(node, two_channel_backup, state_path).sync_wallets()
        assert node.count("sync_wallets") == 1

    def test_monitor_returns_after_all_tasks_finish(self, two_channel_backup, state_path):
        node = FakeNode(events=["e1"])
        node.sync_delay = 0.1
        monitor = make_monitor(node, two_channel_backup, state_path)

        monitor.start_node()
        monitor.monitor()
        monitor.shutdown()

        assert monitor.stop.is_stopped()
        assert node.sync_in_flight == 0
        assert node.handled == 1
        assert node.calls[-1] == "stop"

    def test_external_stop_ends_monitoring(self, two_channel_backup, state_path):
        node = FakeNode(
            balances=BalanceDetails(
                0, 0, 0,
                lightning_balances=(
                    LightningBalance(LightningBalanceKind.CONTENTIOUS_CLAIMABLE, "chan-a", 5),
                ),
            )
        )
        stop = StopToken()
        monitor = make_monitor(node, two_channel_backup, state_path, stop=stop)
        stop.stop()
        monitor.monitor()
        assert monitor.last_snapshot.claimable == 5
