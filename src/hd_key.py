"""
BIP32 HD key derivation for the static channel backup encryption key.

Uses coincurve (libsecp256k1) for public keys when available, falls back to
ecdsa otherwise. Hardened derivation (all the SCB key needs) never touches
the curve library.
"""

import hashlib
import hmac
import struct

from mnemonic import Mnemonic

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
HARDENED_OFFSET = 0x80000000

# Application index used by the hub when it encrypts channel backups.
# Changing this path makes every previously exported backup undecryptable.
SCB_KEY_PATH = "m/128029'/0'"

# Try fast C library first, fall back to pure Python
try:
    from coincurve import PublicKey as _CPublicKey

    def _get_pubkey(privkey_bytes: bytes) -> bytes:
        pk = _CPublicKey.from_valid_secret(privkey_bytes)
        return pk.format(compressed=True)

    _ENGINE = "coincurve"
except ImportError:
    from ecdsa import SECP256k1, SigningKey

    def _get_pubkey(privkey_bytes: bytes) -> bytes:
        sk = SigningKey.from_string(privkey_bytes, curve=SECP256k1)
        vk = sk.get_verifying_key()
        x = vk.pubkey.point.x()
        y = vk.pubkey.point.y()
        prefix = b"\x02" if y % 2 == 0 else b"\x03"
        return prefix + x.to_bytes(32, "big")

    _ENGINE = "ecdsa"


def get_engine():
    return _ENGINE


def _hmac_sha512(key: bytes, data: bytes) -> bytes:
    return hmac.new(key, data, hashlib.sha512).digest()


def _check_secret(secret: int) -> None:
    # Probability ~2^-127 for real seeds; anything else is broken input.
    if not 0 < secret < SECP256K1_ORDER:
        raise ValueError("derived key is outside the secp256k1 range")


class HDKey:
    """BIP32 Hierarchical Deterministic Key."""

    __slots__ = ("privkey", "chaincode", "_pubkey")

    def __init__(self, privkey: bytes, chaincode: bytes):
        if len(privkey) != 32 or len(chaincode) != 32:
            raise ValueError("private key and chain code must be 32 bytes")
        self.privkey = privkey
        self.chaincode = chaincode
        self._pubkey = None

    @classmethod
    def from_seed(cls, seed: bytes) -> "HDKey":
        I = _hmac_sha512(b"Bitcoin seed", seed)
        _check_secret(int.from_bytes(I[:32], "big"))
        return cls(I[:32], I[32:])

    @classmethod
    def from_mnemonic(cls, phrase: str, passphrase: str = "") -> "HDKey":
        """Master key for a BIP39 phrase (PBKDF2-HMAC-SHA512, 2048 rounds)."""
        return cls.from_seed(Mnemonic.to_seed(phrase, passphrase))

    @property
    def pubkey(self) -> bytes:
        if self._pubkey is None:
            self._pubkey = _get_pubkey(self.privkey)
        return self._pubkey

    def derive_child(self, index: int) -> "HDKey":
        if index >= HARDENED_OFFSET:
            data = b"\x00" + self.privkey + struct.pack(">I", index)
        else:
            data = self.pubkey + struct.pack(">I", index)
        I = _hmac_sha512(self.chaincode, data)
        tweak = int.from_bytes(I[:32], "big")
        _check_secret(tweak)
        child_int = (tweak + int.from_bytes(self.privkey, "big")) % SECP256K1_ORDER
        _check_secret(child_int)
        return HDKey(child_int.to_bytes(32, "big"), I[32:])

    def derive_path(self, path: str) -> "HDKey":
        """Derive from path like m/128029'/0'"""
        parts = path.strip().split("/")
        if parts[0] == "m":
            parts = parts[1:]
        key = self
        for part in parts:
            hardened = part.endswith(("'", "h", "H"))
            idx = int(part.rstrip("'hH"))
            if hardened:
                idx += HARDENED_OFFSET
            key = key.derive_child(idx)
        return key


def derive_scb_key(seed_phrase: str) -> bytes:
    """
    Derive the 32-byte AES-256 key protecting encrypted channel backups.

    The BIP39 passphrase is always empty: the hub never used one when
    encrypting backups, regardless of the wallet's own settings.
    """
    root = HDKey.from_mnemonic(seed_phrase, "")
    return root.derive_path(SCB_KEY_PATH).privkey
