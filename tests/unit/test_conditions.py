"""Test NUT-10 secrets, P2PK (NUT-11) and HTLC (NUT-14) witnesses."""

import hashlib
import json

import pytest

from nutledger.conditions import (
    Conditions,
    HTLCConditions,
    P2PKConditions,
    SigFlag,
    new_secret,
    parse_secret,
    sign_proof,
    verify_witness,
)
from nutledger.crypto import public_key_of
from nutledger.types import InvalidSpendingConditions, Proof

ALICE = "aa" * 32
BOB = "bb" * 32
CAROL = "cc" * 32


def locked_proof(conditions) -> Proof:
    return Proof(
        amount=8,
        id="009a1f293253e41e",
        secret=new_secret(conditions),
        C=public_key_of("01" * 32),
    )


class TestSecrets:
    """Test well-known secret serialization."""

    def test_p2pk_secret_round_trip(self) -> None:
        lock = P2PKConditions(
            pubkey=public_key_of(ALICE),
            conditions=Conditions(
                locktime=1_700_000_000,
                pubkeys=(public_key_of(BOB),),
                refund_keys=(public_key_of(CAROL),),
                num_sigs=2,
                sig_flag=SigFlag.SIG_INPUTS,
            ),
        )
        secret = new_secret(lock)

        kind, body = json.loads(secret)
        assert kind == "P2PK"
        assert body["data"] == public_key_of(ALICE)
        assert len(body["nonce"]) == 64
        assert ["n_sigs", "2"] in body["tags"]
        assert parse_secret(secret) == lock

    def test_nonce_makes_secrets_unique(self) -> None:
        lock = P2PKConditions(pubkey=public_key_of(ALICE))
        assert new_secret(lock) != new_secret(lock)

    def test_plain_secret(self) -> None:
        assert parse_secret("ab" * 32) is None
        assert parse_secret("[not json") is None

    def test_unknown_kind(self) -> None:
        secret = json.dumps(["XYZ", {"nonce": "00", "data": "00", "tags": []}])
        with pytest.raises(InvalidSpendingConditions):
            parse_secret(secret)

    def test_invalid_pubkey(self) -> None:
        with pytest.raises(InvalidSpendingConditions):
            P2PKConditions(pubkey="04" + "00" * 32)

    def test_invalid_htlc_hash(self) -> None:
        with pytest.raises(InvalidSpendingConditions):
            HTLCConditions(hash="abcd")

    def test_malformed_tags(self) -> None:
        secret = json.dumps(
            ["P2PK", {"nonce": "00", "data": public_key_of(ALICE), "tags": [["n_sigs", "x"]]}]
        )
        with pytest.raises(InvalidSpendingConditions):
            parse_secret(secret)


class TestP2PK:
    """Test signing P2PK locked proofs."""

    def test_plain_proof_unchanged(self) -> None:
        proof = Proof(amount=1, id="009a1f293253e41e", secret="ab" * 32, C=public_key_of(ALICE))
        assert sign_proof(proof, [ALICE]) is proof

    def test_sign_with_locking_key(self) -> None:
        proof = locked_proof(P2PKConditions(pubkey=public_key_of(ALICE)))

        signed = sign_proof(proof, [BOB, ALICE])

        assert len(json.loads(signed.witness)["signatures"]) == 1
        assert verify_witness(signed)

    def test_missing_key(self) -> None:
        proof = locked_proof(P2PKConditions(pubkey=public_key_of(ALICE)))
        with pytest.raises(InvalidSpendingConditions):
            sign_proof(proof, [BOB])

    def test_multisig_needs_enough_keys(self) -> None:
        lock = P2PKConditions(
            pubkey=public_key_of(ALICE),
            conditions=Conditions(pubkeys=(public_key_of(BOB),), num_sigs=2),
        )
        proof = locked_proof(lock)

        with pytest.raises(InvalidSpendingConditions):
            sign_proof(proof, [ALICE])

        signed = sign_proof(proof, [ALICE, BOB])
        assert len(json.loads(signed.witness)["signatures"]) == 2
        assert verify_witness(signed)

    def test_refund_after_locktime(self) -> None:
        lock = P2PKConditions(
            pubkey=public_key_of(ALICE),
            conditions=Conditions(locktime=1000, refund_keys=(public_key_of(CAROL),)),
        )
        proof = locked_proof(lock)

        with pytest.raises(InvalidSpendingConditions):
            sign_proof(proof, [CAROL], now=999)

        signed = sign_proof(proof, [CAROL], now=1000)
        assert json.loads(signed.witness)["signatures"]

    def test_expired_lock_without_refund_keys(self) -> None:
        proof = locked_proof(
            P2PKConditions(pubkey=public_key_of(ALICE), conditions=Conditions(locktime=10))
        )
        assert sign_proof(proof, [], now=11).witness is None

    def test_verify_witness_rejects_foreign_signature(self) -> None:
        proof = locked_proof(P2PKConditions(pubkey=public_key_of(ALICE)))
        other = locked_proof(P2PKConditions(pubkey=public_key_of(ALICE)))
        signed_other = sign_proof(other, [ALICE])

        assert not verify_witness(proof.with_witness(signed_other.witness))
        assert not verify_witness(proof)


class TestHTLC:
    """Test HTLC witnesses."""

    PREIMAGE = "42" * 32

    def test_preimage_unlocks(self) -> None:
        proof = locked_proof(HTLCConditions.from_preimage(self.PREIMAGE))

        signed = sign_proof(proof, preimages=["00" * 32, self.PREIMAGE])

        assert json.loads(signed.witness) == {"preimage": self.PREIMAGE}

    def test_hash_matches_preimage(self) -> None:
        lock = HTLCConditions.from_preimage(self.PREIMAGE)
        assert lock.hash == hashlib.sha256(bytes.fromhex(self.PREIMAGE)).hexdigest()

    def test_missing_preimage(self) -> None:
        proof = locked_proof(HTLCConditions.from_preimage(self.PREIMAGE))
        with pytest.raises(InvalidSpendingConditions):
            sign_proof(proof, preimages=["zz"])

    def test_preimage_and_signature(self) -> None:
        lock = HTLCConditions.from_preimage(
            self.PREIMAGE, Conditions(pubkeys=(public_key_of(BOB),))
        )
        proof = locked_proof(lock)

        with pytest.raises(InvalidSpendingConditions):
            sign_proof(proof, preimages=[self.PREIMAGE])

        witness = json.loads(sign_proof(proof, [BOB], [self.PREIMAGE]).witness)
        assert witness["preimage"] == self.PREIMAGE
        assert len(witness["signatures"]) == 1
