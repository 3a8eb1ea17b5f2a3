"""Cashu cryptographic primitives for BDHKE (Blind Diffie-Hellmann Key Exchange).

Wallet side only: blinding, unblinding, DLEQ verification (NUT-12), keyset id
derivation (NUT-02) and Schnorr signatures for P2PK witnesses (NUT-11).
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

from coincurve import PrivateKey, PublicKey, PublicKeyXOnly

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"

# secp256k1 field prime and group order
_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


@dataclass
class BlindingData:
    """A blinded message with its blinding factor."""

    B_: str  # Blinded point (hex)
    r: str  # Blinding factor (hex)


def hash_to_curve(message: bytes) -> PublicKey:
    """Map a message to a secp256k1 point.

    Y = PublicKey(0x02 || sha256(sha256(DST || message) || counter)) for the
    first little-endian uint32 counter that yields a valid point.
    """
    msg_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    counter = 0
    while counter < 2**16:
        candidate = hashlib.sha256(msg_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + candidate)
        except ValueError:
            counter += 1
    raise ValueError("No valid point found")


def _negate(point: PublicKey) -> PublicKey:
    # The negation of a point (x, y) is (x, p - y)
    raw = point.format(compressed=False)
    y = int.from_bytes(raw[33:65], "big")
    return PublicKey(b"\x04" + raw[1:33] + ((_P - y) % _P).to_bytes(32, "big"))


def _scalar(value: int) -> bytes:
    return (value % _N).to_bytes(32, "big")


def random_secret() -> str:
    """Random 32-byte hex secret as used for plain proofs."""
    return secrets.token_hex(32)


def blind_message(secret: str, r: bytes | None = None) -> tuple[PublicKey, bytes]:
    """Blind a secret for the mint.

    Args:
        secret: The proof secret (hashed to the curve as utf-8 bytes)
        r: Optional blinding factor (will be generated if not provided)

    Returns:
        Tuple of (blinded_point, blinding_factor)
    """
    Y = hash_to_curve(secret.encode("utf-8"))

    if r is None:
        r = secrets.token_bytes(32)

    r_key = PrivateKey(r)

    # B' = Y + r*G
    B_ = PublicKey.combine_keys([Y, r_key.public_key])

    return B_, r


def unblind_signature(C_: PublicKey, r: bytes, K: PublicKey) -> PublicKey:
    """Unblind a signature from the mint: C = C' - r*K."""
    rK = K.multiply(PrivateKey(r).secret)
    return PublicKey.combine_keys([C_, _negate(rK)])


def hash_e(*points: PublicKey) -> bytes:
    """NUT-12 challenge: sha256 over the uncompressed hex of each point."""
    joined = "".join(p.format(compressed=False).hex() for p in points)
    return hashlib.sha256(joined.encode("utf-8")).digest()


def verify_dleq(
    B_: PublicKey, C_: PublicKey, e: bytes, s: bytes, A: PublicKey
) -> bool:
    """Verify a blind signature DLEQ proof.

    R1 = s*G - e*A
    R2 = s*B' - e*C'
    e == hash(R1, R2, A, C')
    """
    try:
        e_int = int.from_bytes(e, "big")
        R1 = PublicKey.combine_keys(
            [PrivateKey(s).public_key, _negate(A.multiply(_scalar(e_int)))]
        )
        R2 = PublicKey.combine_keys(
            [B_.multiply(s), _negate(C_.multiply(_scalar(e_int)))]
        )
    except ValueError:
        return False
    return hash_e(R1, R2, A, C_) == e


def verify_proof_dleq(
    secret: str, C: PublicKey, r: bytes, e: bytes, s: bytes, A: PublicKey
) -> bool:
    """Verify the DLEQ carried by an unblinded proof (reblinds with r)."""
    try:
        Y = hash_to_curve(secret.encode("utf-8"))
        r_key = PrivateKey(r)
        B_ = PublicKey.combine_keys([Y, r_key.public_key])
        C_ = PublicKey.combine_keys([C, A.multiply(r_key.secret)])
    except ValueError:
        return False
    return verify_dleq(B_, C_, e, s, A)


def derive_keyset_id(keys: dict[int, str]) -> str:
    """Derive a version 0 keyset id from the keyset's public keys."""
    joined = b"".join(
        bytes.fromhex(keys[amount]) for amount in sorted(keys, key=int)
    )
    return "00" + hashlib.sha256(joined).hexdigest()[:14]


def secret_hash(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


def schnorr_sign(private_key: str, message: bytes) -> str:
    """BIP-340 signature over sha256(message), hex encoded."""
    key = PrivateKey(bytes.fromhex(private_key))
    return key.sign_schnorr(hashlib.sha256(message).digest()).hex()


def schnorr_verify(public_key: str, message: bytes, signature: str) -> bool:
    try:
        xonly = PublicKeyXOnly(bytes.fromhex(public_key)[-32:])
        return xonly.verify(bytes.fromhex(signature), hashlib.sha256(message).digest())
    except ValueError:
        return False


def public_key_of(private_key: str) -> str:
    """Compressed hex public key for a hex private key."""
    return PrivateKey(bytes.fromhex(private_key)).public_key.format(compressed=True).hex()
