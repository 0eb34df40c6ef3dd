#!/usr/bin/env python3
"""
Hub Lightning Channel Recovery Tool
===================================
Recovers on-chain funds from the Lightning channels of a hub whose channel
state was lost, using its static channel backup (SCB) and seed phrase.

Architecture:
  Phase 1 — Load: decode the SCB (plain or encrypted), load/validate the
            resumable recovery state. No network I/O.
  Phase 2 — Initiate: start the node, reconnect to every peer once and
            request force-close of all channels without broadcasting.
  Phase 3 — Monitor: poll balances, sync wallets and drain node events
            concurrently until no funds are pending or the user interrupts.

Usage:
    hub-recovery -b channel-backup.json          (prompts for the seed)
    Every flag can also be set via environment variables, see --help.
"""

import argparse
import logging
import os
import shutil
import sys
import time
from difflib import get_close_matches
from enum import Enum
from getpass import getpass
from pathlib import Path
from typing import Dict, List, Optional, Union

from mnemonic import Mnemonic

from balances import BalanceSnapshot, take_snapshot
from chain_source import check_chain_source
from errors import (
    ChainSourceError,
    InvalidSeedError,
    NodeEngineError,
    PeerConnectionError,
    PersistenceError,
    RecoveryError,
    StateMismatchError,
)
from hd_key import get_engine
from node_engine import LdkNodeEngine, NodeEngine, validate_peer
from periodic import PeriodicTask, StopToken
from recovery_state import ChannelState, RecoveryState
from scb import StaticChannelBackup, load_scb_guess_type

logger = logging.getLogger("recover")

# ============================================================
# Configuration (all overridable via environment variables)
# ============================================================
LDK_DIR = "ldk_data"
LOG_FILE = "hub-recovery.log"
STATE_FILE = "hub-recovery.state"

SEED_PHRASE = os.getenv("SEED_PHRASE", "")
BACKUP_FILE = os.getenv("BACKUP_FILE", "channel-backup.json")
LDK_NETWORK = os.getenv("LDK_NETWORK", "bitcoin")
ESPLORA_SERVER = os.getenv("ESPLORA_SERVER", "")  # empty = network default
RECOVERY_DIR = os.getenv("RECOVERY_DIR", ".")
FORCE_CLOSE_POLICY = os.getenv("FORCE_CLOSE_POLICY", "pending-only")
PROXY_URL = os.getenv("PROXY_URL", "")  # used for the Esplora preflight only

BALANCE_INTERVAL = float(os.getenv("BALANCE_INTERVAL", "3"))
WALLET_SYNC_INTERVAL = float(os.getenv("WALLET_SYNC_INTERVAL", "4"))
EVENT_INTERVAL = float(os.getenv("EVENT_INTERVAL", "0.1"))

# ============================================================
# Network definitions
# ============================================================
NETWORKS = {
    "bitcoin": {
        "name": "Bitcoin Mainnet",
        "esplora_url": "https://electrs.getalbypro.com",
    },
    "testnet": {
        "name": "Bitcoin Testnet",
        "esplora_url": "https://blockstream.info/testnet/api",
    },
    "signet": {
        "name": "Bitcoin Signet",
        "esplora_url": "https://mempool.space/signet/api",
    },
    "regtest": {
        "name": "Regtest",
        "esplora_url": "http://localhost:3002",
    },
}

TRACE = 5
logging.addLevelName(TRACE, "TRACE")


class ForceClosePolicy(str, Enum):
    # Request force-close only while some channel is still pending.
    PENDING_ONLY = "pending-only"
    # Request force-close on every run, resumes included.
    EVERY_RUN = "every-run"


# ============================================================
# Seed phrase
# ============================================================
def validate_seed_phrase(phrase: str) -> str:
    """Normalise a BIP39 phrase and reject unknown words or a bad checksum."""
    words = phrase.lower().split()
    if len(words) not in (12, 15, 18, 21, 24):
        raise InvalidSeedError(f"expected 12, 15, 18, 21 or 24 words, got {len(words)}")

    m = Mnemonic("english")
    for w in words:
        if w not in m.wordlist:
            msg = f"'{w}' is not a valid BIP39 word"
            matches = get_close_matches(w, m.wordlist, n=5, cutoff=0.6)
            if matches:
                msg += f" (did you mean: {', '.join(matches)}?)"
            raise InvalidSeedError(msg)

    normalised = " ".join(words)
    if not m.check(normalised):
        raise InvalidSeedError("seed phrase checksum is invalid")
    return normalised


def prompt_seed_phrase() -> str:
    while True:
        phrase = getpass("Enter seed phrase: ")
        try:
            return validate_seed_phrase(phrase)
        except InvalidSeedError as e:
            logger.error("failed to parse seed phrase: %s", e)
            print(f"  ⚠ {e}, try again", flush=True)


# ============================================================
# Logging
# ============================================================
def verbosity_level(verbosity: int) -> int:
    if verbosity <= 0:
        return logging.INFO
    if verbosity == 1:
        return logging.DEBUG
    return TRACE


def setup_logging(verbosity: int, log_path: Union[str, Path]) -> None:
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("[%(asctime)s %(levelname)s %(name)s] %(message)s"))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(verbosity_level(verbosity))


# ============================================================
# Recovery monitor
# ============================================================
class ConnectionReport:
    """Outcome of one round of peer connections."""

    def __init__(self):
        self.connected: List[str] = []
        self.failures: Dict[str, PeerConnectionError] = {}

    def __repr__(self):
        return f"ConnectionReport(connected={self.connected!r}, failed={list(self.failures)!r})"


class RecoveryMonitor:
    """
    Drives one recovery run against a node engine.

    The monitor is the only writer of the state file, and writes it only from
    the calling thread (prepare_state / force_close), never from the periodic
    tasks.
    """

    def __init__(
        self,
        node: NodeEngine,
        backup: StaticChannelBackup,
        state_path: Union[str, Path],
        policy: ForceClosePolicy = ForceClosePolicy.PENDING_ONLY,
        stop: Optional[StopToken] = None,
        balance_interval: float = BALANCE_INTERVAL,
        sync_interval: float = WALLET_SYNC_INTERVAL,
        event_interval: float = EVENT_INTERVAL,
    ):
        self.node = node
        self.backup = backup
        self.state_path = Path(state_path)
        self.policy = ForceClosePolicy(policy)
        self.stop = stop or StopToken()
        self.balance_interval = balance_interval
        self.sync_interval = sync_interval
        self.event_interval = event_interval
        self.state: Optional[RecoveryState] = None
        self.first_run = False
        self._restore_queued = False
        self._started = False
        self.last_snapshot: Optional[BalanceSnapshot] = None

    # ---- Phase 1 -------------------------------------------------
    def prepare_state(self) -> bool:
        """Load or create the recovery state. Returns True on a first run."""
        state = RecoveryState.load(self.state_path) or RecoveryState()

        if state.is_empty():
            state = RecoveryState()
            for ch in self.backup.channels:
                state.set_channel_state(ch.peer_id, ch.channel_id, ChannelState.PENDING)
            state.save(self.state_path)
            self.state = state
            self.first_run = True
            logger.info("new recovery: %d channel(s)", len(self.backup.channels))
            self._queue_restore()
            return True

        # A different backup after a restart would force-close the wrong channel set.
        if state.all_channel_ids() != self.backup.channel_ids():
            logger.error("static channel backup file has changed; cannot proceed with the recovery")
            raise StateMismatchError(state.all_channel_ids(), self.backup.channel_ids())

        if state.attach_peers({ch.channel_id: ch.peer_id for ch in self.backup.channels}):
            state.save(self.state_path)
        self.state = state
        self.first_run = False
        logger.info("resuming recovery of %d channel(s)", len(self.backup.channels))
        if not state.monitors_restored:
            logger.warning("previous run stopped before the node started, restoring channel monitors again")
            self._queue_restore()
        return False

    def _queue_restore(self) -> None:
        logger.info("restoring %d channel monitor(s)", len(self.backup.monitors))
        self.node.restore_encoded_channel_monitors(list(self.backup.monitors))
        self._restore_queued = True

    # ---- Phase 2 -------------------------------------------------
    def start_node(self) -> None:
        self.node.start()
        self._started = True
        # Monitors only reach the node's store once it has started with them.
        if self._restore_queued:
            self.state.monitors_restored = True
            self.state.save(self.state_path)
            self._restore_queued = False
        print("Synchronizing wallets...", flush=True)
        try:
            self.node.sync_wallets()
        except NodeEngineError as e:
            logger.warning("initial wallet sync failed, will retry: %s", e)

    def connect_peers(self) -> ConnectionReport:
        print("Connecting to peers...", flush=True)
        report = ConnectionReport()
        for peer_id, address in self.backup.peers():
            try:
                validate_peer(peer_id, address)
                self.node.connect(peer_id, address, True)
            except PeerConnectionError as e:
                report.failures[peer_id] = e
            except NodeEngineError as e:
                report.failures[peer_id] = PeerConnectionError(peer_id, address, str(e))
            else:
                logger.info("connected to peer %s %s", address, peer_id)
                report.connected.append(peer_id)
                continue
            logger.error("%s", report.failures[peer_id])
            print(f"  ⚠ {report.failures[peer_id]}", flush=True)
        return report

    def force_close(self, report: ConnectionReport) -> bool:
        """Request force-close per policy. Returns True if it was requested."""
        if self.policy is ForceClosePolicy.PENDING_ONLY and not self.state.has_pending_channels():
            if not self.first_run:
                print("Resuming recovery", flush=True)
            return False

        print("Forcing close all channels...", flush=True)
        self.node.force_close_all_channels_without_broadcasting_txn()

        reachable = set(report.connected)
        for ch in self.backup.channels:
            if ch.peer_id not in reachable:
                continue
            if self.state.get_channel_state(ch.peer_id, ch.channel_id) is ChannelState.PENDING:
                self.state.set_channel_state(ch.peer_id, ch.channel_id, ChannelState.FORCE_CLOSE_INITIATED)
        self.state.save(self.state_path)
        return True

    def start(self) -> ConnectionReport:
        self.start_node()
        report = self.connect_peers()
        self.force_close(report)
        return report

    def initialize(self) -> ConnectionReport:
        self.prepare_state()
        return self.start()

    # ---- Phase 3 -------------------------------------------------
    def check_balances(self) -> BalanceSnapshot:
        snapshot = take_snapshot(self.node)
        self.last_snapshot = snapshot
        print(snapshot.report(), flush=True)
        if snapshot.is_recovery_complete and self.stop.stop():
            logger.info("no more pending funds, stopping the node")
            print("Recovery completed successfully", flush=True)
        return snapshot

    def sync_wallets(self) -> None:
        logger.info("syncing wallets")
        try:
            self.node.sync_wallets()
        except NodeEngineError as e:
            logger.warning("wallet sync failed, retrying in %.0fs: %s", self.sync_interval, e)
            return
        logger.info("wallets synced")

    def drain_events(self) -> int:
        handled = 0
        while True:
            event = self.node.next_event()
            if event is None:
                return handled
            logger.info("event: %r", event)
            self.node.event_handled()
            handled += 1

    def monitor(self) -> None:
        """Run the periodic tasks until the stop token is raised, then join them."""
        tasks = [
            PeriodicTask("events", self.event_interval, self.stop, self.drain_events).start(),
            PeriodicTask("balance", self.balance_interval, self.stop, self.check_balances).start(),
            PeriodicTask("wallet-sync", self.sync_interval, self.stop, self.sync_wallets).start(),
        ]
        try:
            self.stop.wait()
        except KeyboardInterrupt:
            self.stop.stop()
        finally:
            print("Stopping...", flush=True)
            for task in tasks:
                logger.info("waiting for %s task to finish", task.name)
                task.join()

    def shutdown(self) -> None:
        if not self._started:
            logger.info("node was never started, nothing to stop")
            return
        logger.info("stopping node")
        self.node.stop()
        logger.info("done")


# ============================================================
# Reset
# ============================================================
def reset_recovery(data_dir: Union[str, Path]) -> None:
    data_dir = Path(data_dir)
    try:
        (data_dir / STATE_FILE).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        raise PersistenceError(f"failed to delete recovery state file: {e}") from e
    try:
        shutil.rmtree(data_dir / LDK_DIR)
    except FileNotFoundError:
        pass
    except OSError as e:
        raise PersistenceError(f"failed to delete LDK data directory: {e}") from e
    logger.warning("recovery state reset in %s", data_dir)


# ============================================================
# CLI
# ============================================================
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="hub-recovery",
        description="Recover funds from Lightning channels using a static channel backup.",
    )
    parser.add_argument(
        "-s", "--seed", default=SEED_PHRASE,
        help="Seed phrase [SEED_PHRASE]. If omitted, you will be prompted to enter it.",
    )
    parser.add_argument(
        "-b", "--backup-file", default=BACKUP_FILE,
        help="Path to the static channel backup file, relative to the data dir [BACKUP_FILE]",
    )
    parser.add_argument(
        "-n", "--network", default=LDK_NETWORK, choices=sorted(NETWORKS),
        help="LDK network [LDK_NETWORK]",
    )
    parser.add_argument(
        "--esplora-server", default=ESPLORA_SERVER,
        help="Esplora server URL [ESPLORA_SERVER], defaults to the network's server",
    )
    parser.add_argument(
        "-d", "--data-dir", default=RECOVERY_DIR,
        help="Directory holding the state file, log and node data [RECOVERY_DIR]",
    )
    parser.add_argument(
        "--force-close-policy", default=FORCE_CLOSE_POLICY,
        choices=[p.value for p in ForceClosePolicy],
        help="When to request force-close of channels [FORCE_CLOSE_POLICY]",
    )
    parser.add_argument(
        "--reset-recovery", action="store_true",
        help="Reset local recovery state. WARNING: the recovery process will start "
             "from scratch and all existing recovery state will be lost.",
    )
    parser.add_argument(
        "-v", dest="verbosity", action="count", default=0,
        help="Verbose output. Once for debug level, twice for trace level.",
    )
    return parser.parse_args(argv)


def print_banner(args, backup: StaticChannelBackup, esplora_url: str):
    print("=" * 65)
    print("  HUB LIGHTNING CHANNEL RECOVERY")
    print("=" * 65)
    print(f"  Network:            {NETWORKS[args.network]['name']}")
    print(f"  Esplora server:     {esplora_url}")
    print(f"  Backup file:        {args.backup_file}")
    print(f"  Channels:           {len(backup.channels)} ({len(backup.peers())} peers)")
    print(f"  Force-close policy: {args.force_close_policy}")
    print(f"  Crypto engine:      {get_engine()}")
    print("=" * 65, flush=True)


def run(args: argparse.Namespace, data_dir: Path) -> None:
    seed = validate_seed_phrase(args.seed) if args.seed else prompt_seed_phrase()

    backup = load_scb_guess_type(data_dir / args.backup_file, seed)
    esplora_url = args.esplora_server or NETWORKS[args.network]["esplora_url"]
    print_banner(args, backup, esplora_url)

    node = LdkNodeEngine(
        seed, args.network, str(data_dir / LDK_DIR), esplora_url,
        log_level=logging.getLevelName(verbosity_level(args.verbosity)),
    )
    monitor = RecoveryMonitor(node, backup, data_dir / STATE_FILE, policy=args.force_close_policy)
    monitor.prepare_state()

    try:
        height = check_chain_source(esplora_url, proxy_url=PROXY_URL)
        print(f"  ✓ Esplora server is ready (tip height: {height})", flush=True)
    except ChainSourceError as e:
        logger.warning("%s", e)
        print(f"  ⚠ {e} — proceeding anyway", flush=True)

    t0 = time.time()
    try:
        monitor.start()
        print("Waiting for channel recovery to complete. This may take a while...")
        print("It is safe to interrupt this program by pressing Ctrl-C. "
              "You can resume it later to check recovery status.", flush=True)
        monitor.monitor()
    finally:
        monitor.shutdown()
    logger.info("recovery run finished after %.0fs", time.time() - t0)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    data_dir = Path(args.data_dir)
    log_path = (data_dir / LOG_FILE).resolve()
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        setup_logging(args.verbosity, log_path)
    except OSError as e:
        print(f"Cannot use data directory {data_dir}: {e}", file=sys.stderr)
        return 1

    if args.reset_recovery:
        try:
            reset_recovery(data_dir)
        except PersistenceError as e:
            logger.exception("failed to reset recovery state")
            print(f"Failed to reset recovery state: {e}", file=sys.stderr)
            print("To reset the recovery state manually, delete the following:", file=sys.stderr)
            print(f"  {data_dir / STATE_FILE}", file=sys.stderr)
            print(f"  {data_dir / LDK_DIR}", file=sys.stderr)
            return 1

    try:
        run(args, data_dir)
    except StateMismatchError as e:
        logger.exception("recovery failed")
        print("The recovery process has already been initiated with a different static channel backup file.")
        print("Please specify the same backup file to resume recovery.")
        print("To recover channels from a different backup file, restart the app with the --reset-recovery flag.")
        print("WARNING: this will reset the recovery state and start the recovery process from scratch.")
        print(f"Recovery failed; error: {e} (see {log_path} for details)", file=sys.stderr)
        return 1
    except RecoveryError as e:
        logger.exception("recovery failed")
        print(f"Recovery failed; error: {e} (see {log_path} for details)", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("interrupted")
        print("\nInterrupted", flush=True)
    except Exception as e:
        logger.exception("unexpected error")
        print(f"Recovery failed; unexpected error: {e} (see {log_path} for details)", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
