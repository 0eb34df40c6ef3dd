"""
Static Channel Backup (SCB) codec.

An SCB file is either the plain JSON document exported by the hub:

    {"channels": [{"channel_id", "peer_id", "peer_socket_address"}, ...],
     "monitors": [{"key", "value": "<hex>"}, ...]}

or the same document sealed with AES-256-GCM and written as
``<nonce_hex>-<ciphertext_hex>`` (ciphertext carries the 16-byte tag).
The key comes from the wallet seed phrase, see ``hd_key.derive_scb_key``.
"""

import binascii
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Set, Tuple, Union

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes

from errors import AuthenticationFailedError, DecodeError, MalformedEncodingError, SchemaError
from hd_key import derive_scb_key

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16


@dataclass(frozen=True)
class ChannelBackupEntry:
    channel_id: str
    peer_id: str
    peer_socket_address: str


@dataclass(frozen=True)
class EncodedMonitor:
    """Opaque channel monitor blob, handed to the node engine untouched."""

    key: str
    value: bytes


@dataclass(frozen=True)
class StaticChannelBackup:
    channels: Tuple[ChannelBackupEntry, ...]
    monitors: Tuple[EncodedMonitor, ...]

    def channel_ids(self) -> Set[str]:
        return {ch.channel_id for ch in self.channels}

    def peers(self) -> List[Tuple[str, str]]:
        """Distinct (peer_id, address) pairs in backup order, first address wins."""
        seen = set()
        peers = []
        for ch in self.channels:
            if ch.peer_id in seen:
                continue
            seen.add(ch.peer_id)
            peers.append((ch.peer_id, ch.peer_socket_address))
        return peers

    @classmethod
    def from_dict(cls, data: Any) -> "StaticChannelBackup":
        if not isinstance(data, dict):
            raise SchemaError("backup document must be a JSON object")
        channels = data.get("channels")
        monitors = data.get("monitors")
        if not isinstance(channels, list) or not isinstance(monitors, list):
            raise SchemaError("backup document must contain 'channels' and 'monitors' lists")

        entries = []
        for i, ch in enumerate(channels):
            fields = _string_fields(ch, ("channel_id", "peer_id", "peer_socket_address"), f"channels[{i}]")
            entries.append(ChannelBackupEntry(*fields))

        encoded = []
        for i, mon in enumerate(monitors):
            key, value_hex = _string_fields(mon, ("key", "value"), f"monitors[{i}]")
            try:
                value = binascii.unhexlify(value_hex)
            except (binascii.Error, ValueError) as e:
                raise SchemaError(f"monitors[{i}].value is not valid hex: {e}") from e
            encoded.append(EncodedMonitor(key, value))

        return cls(tuple(entries), tuple(encoded))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channels": [
                {
                    "channel_id": ch.channel_id,
                    "peer_id": ch.peer_id,
                    "peer_socket_address": ch.peer_socket_address,
                }
                for ch in self.channels
            ],
            "monitors": [{"key": m.key, "value": m.value.hex()} for m in self.monitors],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def _string_fields(obj: Any, names: Tuple[str, ...], where: str) -> List[str]:
    if not isinstance(obj, dict):
        raise SchemaError(f"{where} must be a JSON object")
    values = []
    for name in names:
        value = obj.get(name)
        if not isinstance(value, str):
            raise SchemaError(f"{where}.{name} must be a string")
        values.append(value)
    return values


def _read(source: Union[bytes, str, Path]) -> bytes:
    if isinstance(source, bytes):
        return source
    try:
        return Path(source).read_bytes()
    except OSError as e:
        raise DecodeError(f"failed to read SCB file {source}: {e}") from e


# ============================================================
# Plaintext form
# ============================================================
def parse_scb(data: bytes) -> StaticChannelBackup:
    try:
        doc = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SchemaError(f"failed to parse SCB JSON: {e}") from e
    return StaticChannelBackup.from_dict(doc)


def load_scb(source: Union[bytes, str, Path]) -> StaticChannelBackup:
    return parse_scb(_read(source))


# ============================================================
# Encrypted form
# ============================================================
def _split_encrypted(text: str) -> Tuple[bytes, bytes]:
    parts = text.strip().split("-")
    if len(parts) != 2:
        raise MalformedEncodingError(
            f"invalid SCB format: expected 2 dash-separated parts, got {len(parts)}"
        )
    try:
        nonce = binascii.unhexlify(parts[0])
    except (binascii.Error, ValueError) as e:
        raise MalformedEncodingError(f"failed to decode nonce: {e}") from e
    try:
        ciphertext = binascii.unhexlify(parts[1])
    except (binascii.Error, ValueError) as e:
        raise MalformedEncodingError(f"failed to decode encrypted data: {e}") from e

    if len(nonce) != NONCE_SIZE:
        raise MalformedEncodingError(f"nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
    if len(ciphertext) < TAG_SIZE:
        raise MalformedEncodingError("encrypted data is shorter than the authentication tag")
    return nonce, ciphertext


def decrypt(nonce: bytes, ciphertext: bytes, key: bytes) -> bytes:
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    try:
        return cipher.decrypt_and_verify(ciphertext[:-TAG_SIZE], ciphertext[-TAG_SIZE:])
    except ValueError as e:
        raise AuthenticationFailedError(
            "failed to decrypt SCB: authentication failed (wrong seed phrase or corrupted file)"
        ) from e


def decrypt_scb_str(text: str, seed_phrase: str) -> str:
    nonce, ciphertext = _split_encrypted(text)
    plaintext = decrypt(nonce, ciphertext, derive_scb_key(seed_phrase))
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SchemaError(f"decrypted SCB is not valid UTF-8: {e}") from e


def load_scb_encrypted(source: Union[bytes, str, Path], seed_phrase: str) -> StaticChannelBackup:
    data = _read(source)
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedEncodingError(f"encrypted SCB is not UTF-8 text: {e}") from e
    return parse_scb(decrypt_scb_str(text, seed_phrase).encode("utf-8"))


def encrypt_scb_str(backup: StaticChannelBackup, seed_phrase: str, nonce: bytes = None) -> str:
    if nonce is None:
        nonce = get_random_bytes(NONCE_SIZE)
    cipher = AES.new(derive_scb_key(seed_phrase), AES.MODE_GCM, nonce=nonce)
    ciphertext, tag = cipher.encrypt_and_digest(backup.to_json().encode("utf-8"))
    return f"{nonce.hex()}-{(ciphertext + tag).hex()}"


def load_scb_guess_type(source: Union[bytes, str, Path], seed_phrase: str) -> StaticChannelBackup:
    """
    Load an SCB, trying plain JSON first and the encrypted form second.

    When both fail the encrypted-path error is raised (it is the likely real
    cause), with the plaintext failure attached as ``plaintext_error``.
    """
    data = _read(source)
    try:
        backup = parse_scb(data)
        logger.info("loaded plaintext SCB with %d channel(s)", len(backup.channels))
        return backup
    except DecodeError as plain_err:
        logger.debug("SCB is not plaintext JSON (%s), trying encrypted form", plain_err)
        try:
            backup = load_scb_encrypted(data, seed_phrase)
        except DecodeError as err:
            raise type(err)(
                f"failed to load SCB: {err} (plaintext parse also failed: {plain_err})",
                plaintext_error=plain_err,
            ) from err
    logger.info("loaded encrypted SCB with %d channel(s)", len(backup.channels))
    return backup
