"""Blinded outputs, unblinding and the NUT-03 swap."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Mapping, Sequence

from coincurve import PublicKey

from .conditions import SpendingConditions, new_secret
from .crypto import (
    blind_message,
    random_secret,
    unblind_signature,
    verify_dleq,
)
from .database import WalletDatabase
from .keysets import KeysetCache
from .mint import BlindedSignatureDict, MintConnector
from .seed import DeterministicSecrets
from .types import (
    DLEQ,
    AmountMismatch,
    BlindedMessage,
    BlindedSignature,
    InvalidSignature,
    Proof,
    WalletError,
    add_amounts,
    check_amount,
    sum_proofs,
)

logger = logging.getLogger(__name__)


@dataclass
class PreparedOutputs:
    """Secrets, blinding factors and blinded messages for one set of outputs."""

    keyset_id: str
    amounts: list[int] = field(default_factory=list)
    secrets: list[str] = field(default_factory=list)
    blinding_factors: list[bytes] = field(default_factory=list)
    messages: list[BlindedMessage] = field(default_factory=list)
    blank: bool = False

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def amount(self) -> int:
        return add_amounts(*self.amounts)

    def to_request(self) -> list[dict]:
        return [m.to_dict() for m in self.messages]


def blank_output_count(fee_reserve: int) -> int:
    """NUT-08: outputs needed to receive any overpaid Lightning fee."""
    if fee_reserve <= 0:
        return 0
    return max(math.ceil(math.log2(fee_reserve)), 1)


class SwapEngine:
    """Builds outputs, swaps them at the mint and turns signatures into proofs."""

    def __init__(
        self,
        mints: Mapping[str, MintConnector],
        keysets: KeysetCache,
        *,
        require_dleq: bool = False,
        seed: DeterministicSecrets | None = None,
        db: WalletDatabase | None = None,
    ) -> None:
        if seed is not None and db is None:
            raise ValueError("Deterministic secrets need a database for their counters")
        self.mints = mints
        self.keysets = keysets
        self.require_dleq = require_dleq
        self.seed = seed
        self.db = db

    # ───────────────────────── Outputs ─────────────────────────────────

    async def prepare_outputs(
        self,
        amounts: Sequence[int],
        keyset_id: str,
        conditions: SpendingConditions | None = None,
    ) -> PreparedOutputs:
        """Create secrets and blinded messages for ``amounts``.

        With a seed, plain secrets are derived from the keyset counter, which
        is advanced before anything is sent. Locked secrets are always random.
        """
        counter = None
        if self.seed is not None and self.db is not None and conditions is None and amounts:
            counter = await self.db.increment_keyset_counter(keyset_id, len(amounts))
        return self.build_outputs(amounts, keyset_id, conditions, counter=counter)

    def build_outputs(
        self,
        amounts: Sequence[int],
        keyset_id: str,
        conditions: SpendingConditions | None = None,
        *,
        counter: int | None = None,
    ) -> PreparedOutputs:
        prepared = PreparedOutputs(keyset_id=keyset_id)
        for i, amount in enumerate(amounts):
            check_amount(amount)
            r = None
            if counter is not None and self.seed is not None:
                secret, r = self.seed.derive(keyset_id, counter + i)
            elif conditions is not None:
                secret = new_secret(conditions)
            else:
                secret = random_secret()
            B_, r = blind_message(secret, r)
            prepared.amounts.append(amount)
            prepared.secrets.append(secret)
            prepared.blinding_factors.append(r)
            prepared.messages.append(
                BlindedMessage(
                    amount=amount, id=keyset_id, B_=B_.format(compressed=True).hex()
                )
            )
        return prepared

    async def blank_outputs(self, fee_reserve: int, keyset_id: str) -> PreparedOutputs:
        """Outputs the mint fills with the unused fee reserve (NUT-08)."""
        prepared = await self.prepare_outputs([1] * blank_output_count(fee_reserve), keyset_id)
        prepared.blank = True
        return prepared

    # ───────────────────────── Unblinding ─────────────────────────────────

    def unblind(
        self,
        prepared: PreparedOutputs,
        signatures: Sequence[BlindedSignature | BlindedSignatureDict],
        keys: Mapping[int, str],
    ) -> list[Proof]:
        """Unblind and verify signatures for ``prepared``.

        For blank outputs the mint may return fewer signatures than outputs
        and chooses the amounts. Any failed check raises InvalidSignature and
        no proof is returned.
        """
        parsed = [
            s if isinstance(s, BlindedSignature) else BlindedSignature.from_dict(dict(s))
            for s in signatures
        ]
        if prepared.blank:
            if len(parsed) > len(prepared):
                raise InvalidSignature(
                    f"Mint returned {len(parsed)} change signatures for "
                    f"{len(prepared)} blank outputs"
                )
        elif len(parsed) != len(prepared):
            raise InvalidSignature(
                f"Mint returned {len(parsed)} signatures for {len(prepared)} outputs"
            )

        proofs: list[Proof] = []
        for i, sig in enumerate(parsed):
            if sig.id.lower() != prepared.keyset_id.lower():
                raise InvalidSignature(
                    f"Signature keyset {sig.id} does not match {prepared.keyset_id}"
                )
            if not prepared.blank and sig.amount != prepared.amounts[i]:
                raise InvalidSignature(
                    f"Signature amount {sig.amount} does not match output "
                    f"{prepared.amounts[i]}"
                )
            pubkey = keys.get(sig.amount)
            if pubkey is None:
                raise InvalidSignature(
                    f"No mint key for amount {sig.amount} in keyset {sig.id}"
                )

            r = prepared.blinding_factors[i]
            try:
                K = PublicKey(bytes.fromhex(pubkey))
                C_ = PublicKey(bytes.fromhex(sig.C_))
                C = unblind_signature(C_, r, K)
            except ValueError as e:
                raise InvalidSignature(f"Cannot unblind signature {i}: {e}") from e

            dleq = None
            if sig.dleq is not None:
                B_ = PublicKey(bytes.fromhex(prepared.messages[i].B_))
                if not verify_dleq(
                    B_, C_, bytes.fromhex(sig.dleq.e), bytes.fromhex(sig.dleq.s), K
                ):
                    raise InvalidSignature(f"DLEQ proof of signature {i} is invalid")
                dleq = DLEQ(e=sig.dleq.e, s=sig.dleq.s, r=r.hex())
            elif self.require_dleq:
                raise InvalidSignature(f"Signature {i} carries no DLEQ proof")

            proofs.append(
                Proof(
                    amount=sig.amount,
                    id=sig.id,
                    secret=prepared.secrets[i],
                    C=C.format(compressed=True).hex(),
                    dleq=dleq,
                )
            )
        return proofs

    # ───────────────────────── Swap ─────────────────────────────────

    async def swap_outputs(
        self,
        mint_url: str,
        inputs: list[Proof],
        groups: list[PreparedOutputs],
    ) -> list[list[Proof]]:
        """Swap ``inputs`` for several output groups in one request.

        Outputs are sent sorted by amount; proofs come back per group in the
        order each group was prepared.
        """
        fee = self.keysets.fee_for(mint_url, inputs)
        total_in = sum_proofs(inputs)
        total_out = add_amounts(*(g.amount for g in groups))
        if total_in - fee != total_out:
            raise AmountMismatch(
                f"Swap inputs ({total_in}) minus fees ({fee}) != outputs ({total_out})",
                operation="swap",
            )

        flat = [
            (group_index, output_index)
            for group_index, group in enumerate(groups)
            for output_index in range(len(group))
        ]
        order = sorted(
            range(len(flat)),
            key=lambda i: groups[flat[i][0]].amounts[flat[i][1]],
        )
        outputs = [
            groups[flat[i][0]].messages[flat[i][1]].to_dict() for i in order
        ]

        # Keys are loaded before the inputs are spent
        group_keys = [await self.keysets.keys(mint_url, g.keyset_id) for g in groups]

        logger.debug(
            "Swapping %d inputs (%d, fee %d) into %d outputs at %s",
            len(inputs),
            total_in,
            fee,
            len(outputs),
            mint_url,
        )
        response = await self.mints[mint_url].swap(
            inputs=[p.to_dict(include_dleq=False) for p in inputs], outputs=outputs
        )
        signatures = response["signatures"]
        if len(signatures) != len(outputs):
            raise InvalidSignature(
                f"Mint returned {len(signatures)} signatures for {len(outputs)} outputs",
                operation="swap",
            )

        # Restore the original order of the signatures
        per_group: list[list[BlindedSignatureDict | None]] = [
            [None] * len(group) for group in groups
        ]
        for position, i in enumerate(order):
            group_index, output_index = flat[i]
            per_group[group_index][output_index] = signatures[position]

        results = []
        for group, group_signatures, keys in zip(groups, per_group, group_keys):
            results.append(
                self.unblind(group, [s for s in group_signatures if s is not None], keys)
            )
        return results

    async def swap(
        self,
        mint_url: str,
        inputs: list[Proof],
        amounts: Sequence[int],
        *,
        keyset_id: str,
        conditions: SpendingConditions | None = None,
    ) -> list[Proof]:
        """Swap ``inputs`` for fresh proofs of ``amounts``."""
        if mint_url not in self.mints:
            raise WalletError(f"Unknown mint: {mint_url}")
        prepared = await self.prepare_outputs(amounts, keyset_id, conditions)
        (proofs,) = await self.swap_outputs(mint_url, inputs, [prepared])
        return proofs

    # ───────────────────────── Restore ─────────────────────────────────

    async def restore(
        self, mint_url: str, keyset_id: str, start: int, count: int
    ) -> tuple[list[Proof], int | None]:
        """Ask the mint for signatures on derived outputs ``start..start+count`` (NUT-09).

        Returns the unblinded proofs and the highest counter the mint knew,
        or None when it knew none of them.
        """
        if self.seed is None:
            raise WalletError("Restoring needs a wallet seed", operation="restore")
        requested = self.build_outputs([1] * count, keyset_id, counter=start)
        response = await self.mints[mint_url].restore(outputs=requested.to_request())
        outputs = response.get("outputs") or []
        signatures = response.get("signatures") or response.get("promises") or []
        if len(outputs) != len(signatures):
            raise InvalidSignature(
                f"Mint restored {len(outputs)} outputs with {len(signatures)} signatures",
                operation="restore",
            )

        index_of = {m.B_: i for i, m in enumerate(requested.messages)}
        found = PreparedOutputs(keyset_id=keyset_id)
        highest = None
        for output, signature in zip(outputs, signatures):
            i = index_of.get(output["B_"])
            if i is None:
                raise InvalidSignature(
                    "Mint restored an output that was not requested", operation="restore"
                )
            # The placeholder amount is replaced by the one the mint signed
            found.amounts.append(signature["amount"])
            found.secrets.append(requested.secrets[i])
            found.blinding_factors.append(requested.blinding_factors[i])
            found.messages.append(replace(requested.messages[i], amount=signature["amount"]))
            highest = start + i if highest is None else max(highest, start + i)

        if highest is None:
            return [], None
        keys = await self.keysets.keys(mint_url, keyset_id)
        proofs = self.unblind(found, signatures, keys)
        logger.debug(
            "Restored %d proofs of keyset %s from counters %d-%d",
            len(proofs),
            keyset_id,
            start,
            start + count - 1,
        )
        return proofs, highest
