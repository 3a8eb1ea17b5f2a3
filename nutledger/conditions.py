"""Spending conditions: NUT-10 well-known secrets, P2PK (NUT-11) and HTLC (NUT-14)."""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from .crypto import public_key_of, schnorr_sign, schnorr_verify
from .types import InvalidSpendingConditions, Proof, validate_pubkey

logger = logging.getLogger(__name__)


class SigFlag(str, Enum):
    SIG_INPUTS = "SIG_INPUTS"
    SIG_ALL = "SIG_ALL"


@dataclass(frozen=True)
class Conditions:
    """Optional tags shared by P2PK and HTLC secrets."""

    locktime: int | None = None
    pubkeys: tuple[str, ...] = ()
    refund_keys: tuple[str, ...] = ()
    num_sigs: int | None = None
    sig_flag: SigFlag = SigFlag.SIG_INPUTS
    num_sigs_refund: int | None = None

    def __post_init__(self):
        for key in (*self.pubkeys, *self.refund_keys):
            if not validate_pubkey(key):
                raise InvalidSpendingConditions(f"Invalid public key: {key}")
        if self.num_sigs is not None and self.num_sigs < 1:
            raise InvalidSpendingConditions("n_sigs must be at least 1")
        if self.num_sigs_refund is not None and self.num_sigs_refund < 1:
            raise InvalidSpendingConditions("n_sigs_refund must be at least 1")

    def to_tags(self) -> list[list[str]]:
        tags = [["sigflag", self.sig_flag.value]]
        if self.num_sigs is not None:
            tags.append(["n_sigs", str(self.num_sigs)])
        if self.pubkeys:
            tags.append(["pubkeys", *self.pubkeys])
        if self.locktime is not None:
            tags.append(["locktime", str(self.locktime)])
        if self.refund_keys:
            tags.append(["refund", *self.refund_keys])
        if self.num_sigs_refund is not None:
            tags.append(["n_sigs_refund", str(self.num_sigs_refund)])
        return tags

    @classmethod
    def from_tags(cls, tags: list[list[str]]) -> "Conditions":
        values: dict[str, list[str]] = {}
        for tag in tags:
            if not isinstance(tag, list) or not tag or not all(
                isinstance(t, str) for t in tag
            ):
                raise InvalidSpendingConditions(f"Malformed tag: {tag!r}")
            values[tag[0]] = tag[1:]

        def _int(name: str) -> int | None:
            if name not in values or not values[name]:
                return None
            try:
                return int(values[name][0])
            except ValueError as e:
                raise InvalidSpendingConditions(f"Tag {name} is not an integer") from e

        try:
            sig_flag = SigFlag(values.get("sigflag", [SigFlag.SIG_INPUTS.value])[0])
        except ValueError as e:
            raise InvalidSpendingConditions(f"Unknown sigflag: {values['sigflag']}") from e

        return cls(
            locktime=_int("locktime"),
            pubkeys=tuple(values.get("pubkeys", [])),
            refund_keys=tuple(values.get("refund", [])),
            num_sigs=_int("n_sigs"),
            sig_flag=sig_flag,
            num_sigs_refund=_int("n_sigs_refund"),
        )


@dataclass(frozen=True)
class P2PKConditions:
    pubkey: str
    conditions: Conditions = field(default_factory=Conditions)

    kind = "P2PK"

    def __post_init__(self):
        if not validate_pubkey(self.pubkey):
            raise InvalidSpendingConditions(f"Invalid public key: {self.pubkey}")

    @property
    def data(self) -> str:
        return self.pubkey


@dataclass(frozen=True)
class HTLCConditions:
    hash: str
    conditions: Conditions = field(default_factory=Conditions)

    kind = "HTLC"

    def __post_init__(self):
        try:
            valid = len(bytes.fromhex(self.hash)) == 32
        except ValueError:
            valid = False
        if not valid:
            raise InvalidSpendingConditions(f"Invalid HTLC hash: {self.hash}")

    @property
    def data(self) -> str:
        return self.hash

    @classmethod
    def from_preimage(
        cls, preimage: str, conditions: Conditions | None = None
    ) -> "HTLCConditions":
        return cls(
            hash=hashlib.sha256(bytes.fromhex(preimage)).hexdigest(),
            conditions=conditions or Conditions(),
        )


SpendingConditions = Union[P2PKConditions, HTLCConditions]


def new_secret(spending_conditions: SpendingConditions) -> str:
    """Serialize a well-known secret with a fresh nonce."""
    if not isinstance(spending_conditions, (P2PKConditions, HTLCConditions)):
        raise TypeError(f"Unknown spending conditions: {spending_conditions!r}")
    return json.dumps(
        [
            spending_conditions.kind,
            {
                "nonce": secrets.token_hex(32),
                "data": spending_conditions.data,
                "tags": spending_conditions.conditions.to_tags(),
            },
        ],
        separators=(",", ":"),
    )


def parse_secret(secret: str) -> SpendingConditions | None:
    """Parse a well-known secret; plain random secrets return None."""
    if not secret.startswith("["):
        return None
    try:
        raw = json.loads(secret)
    except json.JSONDecodeError:
        return None
    if not isinstance(raw, list) or len(raw) != 2 or not isinstance(raw[1], dict):
        raise InvalidSpendingConditions("Malformed well-known secret")

    kind, body = raw
    data = body.get("data")
    if not isinstance(data, str):
        raise InvalidSpendingConditions("Well-known secret without data")
    conditions = Conditions.from_tags(body.get("tags") or [])

    if kind == "P2PK":
        return P2PKConditions(pubkey=data, conditions=conditions)
    if kind == "HTLC":
        return HTLCConditions(hash=data, conditions=conditions)
    raise InvalidSpendingConditions(f"Unsupported secret kind: {kind}")


def _xonly(pubkey: str) -> str:
    return pubkey[-64:].lower()


def _signatures(
    secret: str, allowed: list[str], signing_keys: list[str], required: int
) -> list[str] | None:
    allowed_xonly = {_xonly(k) for k in allowed}
    signatures = []
    for key in signing_keys:
        if _xonly(public_key_of(key)) in allowed_xonly:
            signatures.append(schnorr_sign(key, secret.encode("utf-8")))
    if len(signatures) < required:
        return None
    return signatures


def _locktime_passed(conditions: Conditions, now: int | None) -> bool:
    if conditions.locktime is None:
        return False
    return (now if now is not None else int(time.time())) >= conditions.locktime


def sign_proof(
    proof: Proof,
    signing_keys: list[str] | None = None,
    preimages: list[str] | None = None,
    *,
    now: int | None = None,
) -> Proof:
    """Attach the witness a locked proof needs to be swapped.

    Plain proofs are returned unchanged. Raises InvalidSpendingConditions when
    the given keys and preimages cannot satisfy the lock.
    """
    spending_conditions = parse_secret(proof.secret)
    if spending_conditions is None:
        return proof

    signing_keys = signing_keys or []
    conditions = spending_conditions.conditions
    witness: dict[str, Any] = {}

    if isinstance(spending_conditions, P2PKConditions):
        allowed = [spending_conditions.pubkey, *conditions.pubkeys]
        needs_signatures = True
    elif isinstance(spending_conditions, HTLCConditions):
        allowed = list(conditions.pubkeys)
        needs_signatures = bool(allowed)
        for preimage in preimages or []:
            try:
                digest = hashlib.sha256(bytes.fromhex(preimage)).hexdigest()
            except ValueError:
                continue
            if digest == spending_conditions.hash:
                witness["preimage"] = preimage
                break
    else:
        raise TypeError(f"Unknown spending conditions: {spending_conditions!r}")

    main_path_open = (
        isinstance(spending_conditions, P2PKConditions) or "preimage" in witness
    )
    if main_path_open:
        if needs_signatures:
            signatures = _signatures(
                proof.secret, allowed, signing_keys, conditions.num_sigs or 1
            )
            if signatures is not None:
                witness["signatures"] = signatures
                return proof.with_witness(json.dumps(witness))
        else:
            return proof.with_witness(json.dumps(witness))

    if _locktime_passed(conditions, now):
        if not conditions.refund_keys:
            # Expired lock without refund keys is spendable by anyone
            return proof
        signatures = _signatures(
            proof.secret,
            list(conditions.refund_keys),
            signing_keys,
            conditions.num_sigs_refund or 1,
        )
        if signatures is not None:
            return proof.with_witness(json.dumps({"signatures": signatures}))

    logger.debug("Cannot satisfy %s lock on proof %s", spending_conditions.kind, proof.id)
    raise InvalidSpendingConditions(
        f"Missing keys or preimage for {spending_conditions.kind} locked proof",
        operation="receive",
    )


def verify_witness(proof: Proof) -> bool:
    """Check a P2PK witness signs the proof secret with an allowed key."""
    spending_conditions = parse_secret(proof.secret)
    if not isinstance(spending_conditions, P2PKConditions) or not proof.witness:
        return False
    signatures = json.loads(proof.witness).get("signatures") or []
    allowed = [spending_conditions.pubkey, *spending_conditions.conditions.pubkeys]
    valid = sum(
        1
        for key in allowed
        if any(
            schnorr_verify(key, proof.secret.encode("utf-8"), sig) for sig in signatures
        )
    )
    return valid >= (spending_conditions.conditions.num_sigs or 1)
