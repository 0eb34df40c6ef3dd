"""
Error classes for hub recovery.
"""

from typing import Optional


class RecoveryError(Exception):
    """Base error for recovery operations."""
    pass


class InvalidSeedError(RecoveryError):
    """Seed phrase is not a valid BIP39 mnemonic."""
    pass


class DecodeError(RecoveryError):
    """Static channel backup could not be decoded."""

    def __init__(self, message: str, plaintext_error: Optional[Exception] = None):
        super().__init__(message)
        self.plaintext_error = plaintext_error


class MalformedEncodingError(DecodeError):
    """Encrypted backup is not `<nonce_hex>-<ciphertext_hex>`."""
    pass


class AuthenticationFailedError(DecodeError):
    """AEAD tag check failed: wrong seed phrase or tampered backup."""
    pass


class SchemaError(DecodeError):
    """Decoded document does not have the static channel backup shape."""
    pass


class StateMismatchError(RecoveryError):
    """Stored recovery state was created from a different backup."""

    def __init__(self, state_channels, backup_channels):
        self.state_channels = frozenset(state_channels)
        self.backup_channels = frozenset(backup_channels)
        super().__init__(
            "static channel backup file does not match the stored state "
            f"({len(self.state_channels - self.backup_channels)} channel(s) missing from backup, "
            f"{len(self.backup_channels - self.state_channels)} unknown to state)"
        )


class PersistenceError(RecoveryError):
    """Recovery state file could not be read, parsed or written."""
    pass


class NodeEngineError(RecoveryError):
    """A call into the Lightning node engine failed."""
    pass


class PeerConnectionError(NodeEngineError):
    """Connecting to a single peer failed. Never fatal."""

    def __init__(self, peer_id: str, address: str, reason: str):
        super().__init__(f"failed to connect to peer {peer_id}@{address}: {reason}")
        self.peer_id = peer_id
        self.address = address
        self.reason = reason


class SyncError(NodeEngineError):
    """Wallet synchronisation failed. Retried on the next tick."""
    pass


class ChainSourceError(RecoveryError):
    """Esplora server did not answer the preflight probe."""
    pass
