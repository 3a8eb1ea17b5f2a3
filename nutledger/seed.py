"""Deterministic secrets from a BIP-39 mnemonic (NUT-13)."""

from __future__ import annotations

from bip32 import BIP32
from mnemonic import Mnemonic

# m/129372'/0' is the NUT-13 purpose and coin type
DERIVATION_PREFIX = "m/129372'/0'"

_wordlist = Mnemonic("english")


def generate_mnemonic(strength: int = 128) -> str:
    """New English BIP-39 phrase; 128 bits of entropy gives 12 words."""
    return _wordlist.generate(strength=strength)


def validate_mnemonic(mnemonic: str) -> bool:
    return _wordlist.check(mnemonic)


def mnemonic_to_entropy(mnemonic: str) -> bytes:
    """Raises ValueError for a phrase with unknown words or a bad checksum."""
    if not validate_mnemonic(mnemonic):
        raise ValueError("Invalid mnemonic")
    return bytes(_wordlist.to_entropy(mnemonic))


def keyset_id_int(keyset_id: str) -> int:
    """Keyset id as a hardened BIP-32 index."""
    return int.from_bytes(bytes.fromhex(keyset_id), "big") % (2**31 - 1)


class DeterministicSecrets:
    """Derives proof secrets and blinding factors per keyset and counter.

    The path for counter ``n`` of a keyset is
    ``m/129372'/0'/{keyset_id_int}'/{n}'`` with ``/0`` for the secret and
    ``/1`` for the blinding factor.
    """

    def __init__(self, mnemonic: str, passphrase: str = ""):
        if not validate_mnemonic(mnemonic):
            raise ValueError("Invalid mnemonic")
        self.mnemonic = mnemonic
        self.bip32 = BIP32.from_seed(Mnemonic.to_seed(mnemonic, passphrase))

    def derive(self, keyset_id: str, counter: int) -> tuple[str, bytes]:
        if counter < 0:
            raise ValueError(f"Counter must not be negative: {counter}")
        path = f"{DERIVATION_PREFIX}/{keyset_id_int(keyset_id)}'/{counter}'"
        secret = self.bip32.get_privkey_from_path(f"{path}/0")
        r = self.bip32.get_privkey_from_path(f"{path}/1")
        return secret.hex(), r

    def derive_range(
        self, keyset_id: str, start: int, count: int
    ) -> list[tuple[str, bytes]]:
        return [self.derive(keyset_id, n) for n in range(start, start + count)]
