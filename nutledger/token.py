"""Cashu token text format: V3 (cashuA, JSON) and V4 (cashuB, CBOR)."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from itertools import groupby
from typing import Any

import cbor2

from .types import (
    DLEQ,
    AmountOverflow,
    CurrencyUnit,
    MalformedToken,
    Proof,
    check_amount,
    sum_proofs,
)

V3_PREFIX = "cashuA"
V4_PREFIX = "cashuB"


@dataclass
class Token:
    mint_url: str
    unit: CurrencyUnit
    proofs: list[Proof] = field(default_factory=list)
    memo: str | None = None

    @property
    def amount(self) -> int:
        return sum_proofs(self.proofs)

    @property
    def keyset_ids(self) -> set[str]:
        return {proof.id for proof in self.proofs}

    def encode(self, version: int = 4, *, include_dleq: bool = True) -> str:
        if version == 3:
            return _serialize_v3(self, include_dleq)
        if version == 4:
            return _serialize_v4(self, include_dleq)
        raise ValueError(f"Unsupported token version: {version}")

    def __str__(self) -> str:
        return self.encode()

    @classmethod
    def decode(cls, text: str) -> "Token":
        return decode_token(text)


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64decode(encoded: str) -> bytes:
    # Add correct padding – (-len) % 4 equals 0,1,2,3
    encoded += "=" * ((-len(encoded)) % 4)
    return base64.urlsafe_b64decode(encoded)


def _serialize_v3(token: Token, include_dleq: bool) -> str:
    """Serialize proofs into CashuA (V3) token format."""
    token_data: dict[str, Any] = {
        "token": [
            {
                "mint": token.mint_url,
                "proofs": [p.to_dict(include_dleq=include_dleq) for p in token.proofs],
            }
        ],
        "unit": token.unit.value,
    }
    if token.memo is not None:
        token_data["memo"] = token.memo
    json_str = json.dumps(token_data, separators=(",", ":"))
    return f"{V3_PREFIX}{_b64encode(json_str.encode())}"


def _serialize_v4(token: Token, include_dleq: bool) -> str:
    """Serialize proofs into CashuB (V4) token format using CBOR."""
    # One entry per run of same-keyset proofs keeps the proof order
    tokens = []
    for keyset_id, keyset_proofs in groupby(token.proofs, key=lambda p: p.id):
        v4_proofs = []
        for proof in keyset_proofs:
            entry: dict[str, Any] = {
                "a": proof.amount,
                "s": proof.secret,
                "c": bytes.fromhex(proof.C),
            }
            if include_dleq and proof.dleq is not None:
                dleq: dict[str, bytes] = {
                    "e": bytes.fromhex(proof.dleq.e),
                    "s": bytes.fromhex(proof.dleq.s),
                }
                if proof.dleq.r is not None:
                    dleq["r"] = bytes.fromhex(proof.dleq.r)
                entry["d"] = dleq
            if proof.witness is not None:
                entry["w"] = proof.witness
            v4_proofs.append(entry)
        tokens.append({"i": bytes.fromhex(keyset_id), "p": v4_proofs})

    token_data: dict[str, Any] = {
        "m": token.mint_url,
        "u": token.unit.value,
        "t": tokens,
    }
    if token.memo is not None:
        token_data["d"] = token.memo
    return f"{V4_PREFIX}{_b64encode(cbor2.dumps(token_data))}"


def _checked_proof(proof: Proof) -> Proof:
    check_amount(proof.amount)
    if not isinstance(proof.secret, str) or not proof.secret:
        raise ValueError("Proof secret must be a non-empty string")
    bytes.fromhex(proof.C)
    bytes.fromhex(proof.id)
    return proof


def _parse_v3(encoded: str) -> Token:
    token_data = json.loads(_b64decode(encoded).decode())
    entries = token_data["token"]
    if not entries:
        raise ValueError("Token has no entries")
    mint_urls = {entry["mint"] for entry in entries}
    if len(mint_urls) != 1:
        raise ValueError("Tokens spanning several mints are not supported")

    proofs = [
        _checked_proof(Proof.from_dict(proof))
        for entry in entries
        for proof in entry["proofs"]
    ]
    # Unit defaults to "sat" as per Cashu V3 common practice
    return Token(
        mint_url=mint_urls.pop(),
        unit=CurrencyUnit.parse(token_data.get("unit") or "sat"),
        proofs=proofs,
        memo=token_data.get("memo"),
    )


def _parse_v4(encoded: str) -> Token:
    token_data = cbor2.loads(_b64decode(encoded))

    proofs = []
    # Each token in 't' has 'i' (keyset id) and 'p' (proofs)
    for token_entry in token_data["t"]:
        keyset_id = token_entry["i"].hex()
        for proof in token_entry["p"]:
            dleq = None
            if proof.get("d"):
                raw = proof["d"]
                dleq = DLEQ(
                    e=raw["e"].hex(),
                    s=raw["s"].hex(),
                    r=raw["r"].hex() if raw.get("r") else None,
                )
            proofs.append(
                _checked_proof(
                    Proof(
                        amount=proof["a"],
                        id=keyset_id,
                        secret=proof["s"],
                        C=proof["c"].hex(),
                        witness=proof.get("w"),
                        dleq=dleq,
                    )
                )
            )

    return Token(
        mint_url=token_data["m"],
        unit=CurrencyUnit.parse(token_data["u"]),
        proofs=proofs,
        memo=token_data.get("d"),
    )


def decode_token(text: str) -> Token:
    """Parse a cashuA/cashuB token string. Raises MalformedToken."""
    if not isinstance(text, str):
        raise MalformedToken("Token must be a string", operation="decode")
    text = text.strip()
    if text.startswith("cashu:"):
        text = text[len("cashu:") :]

    if text.startswith(V3_PREFIX):
        parser = _parse_v3
    elif text.startswith(V4_PREFIX):
        parser = _parse_v4
    else:
        raise MalformedToken(f"Unknown token version: {text[:7]!r}", operation="decode")

    try:
        token = parser(text[len(V3_PREFIX) :])
    except (
        binascii.Error,
        UnicodeDecodeError,
        json.JSONDecodeError,
        cbor2.CBORDecodeError,
        KeyError,
        IndexError,
        TypeError,
        AttributeError,
        ValueError,
        AmountOverflow,
    ) as e:
        raise MalformedToken(f"Invalid token: {e}", operation="decode") from e

    if not token.proofs:
        raise MalformedToken("Token contains no proofs", operation="decode")
    return token
