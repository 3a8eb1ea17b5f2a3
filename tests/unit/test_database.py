"""Test wallet storage backends."""

import json

import pytest

from nutledger.crypto import public_key_of
from nutledger.database import JsonFileDatabase, MemoryDatabase
from nutledger.types import (
    DLEQ,
    CurrencyUnit,
    KeysetInfo,
    MeltQuote,
    MeltQuoteState,
    MintQuote,
    MintQuoteState,
    Proof,
    ProofInfo,
    ProofState,
    Transaction,
    TransactionDirection,
)

MINT = "https://mint.example.com"


def proof_info(n: int, state: ProofState = ProofState.UNSPENT) -> ProofInfo:
    proof = Proof(
        amount=2**n,
        id="009a1f293253e41e",
        secret=f"{n:064x}",
        C=public_key_of(f"{n + 1:064x}"),
        dleq=DLEQ(e="aa" * 32, s="bb" * 32, r="cc" * 32),
    )
    return ProofInfo.new(proof, MINT, CurrencyUnit.SAT, state)


async def populate(db) -> None:
    await db.add_proofs([proof_info(0), proof_info(1, ProofState.SPENT)])
    await db.add_mint_quote(
        MintQuote(
            id="q1",
            mint_url=MINT,
            amount=4,
            unit=CurrencyUnit.SAT,
            request="lnbc",
            state=MintQuoteState.PAID,
        )
    )
    await db.add_melt_quote(
        MeltQuote(
            id="m1",
            mint_url=MINT,
            amount=1,
            fee_reserve=1,
            unit=CurrencyUnit.SAT,
            request="lnbc",
            state=MeltQuoteState.PENDING,
        )
    )
    await db.add_transaction(
        Transaction.new(
            mint_url=MINT,
            direction=TransactionDirection.INCOMING,
            amount=3,
            fee=0,
            unit=CurrencyUnit.SAT,
            ys=["02aa"],
        )
    )
    await db.add_keysets(
        [
            KeysetInfo(
                id="009a1f293253e41e",
                mint_url=MINT,
                unit=CurrencyUnit.SAT,
                active=False,
                input_fee_ppk=100,
                keys={1: public_key_of("01" * 32)},
            )
        ]
    )
    await db.increment_keyset_counter("009a1f293253e41e", 5)


class TestMemoryDatabase:
    @pytest.mark.asyncio
    async def test_filters(self) -> None:
        db = MemoryDatabase()
        await populate(db)

        unspent = await db.get_proofs(states=[ProofState.UNSPENT])
        assert [p.amount for p in unspent] == [1]
        assert await db.get_proofs(mint_url="https://other") == []
        assert len(await db.list_transactions(TransactionDirection.INCOMING)) == 1
        assert await db.list_transactions(TransactionDirection.OUTGOING) == []
        assert await db.get_mint_quote("missing") is None

    @pytest.mark.asyncio
    async def test_keyset_counter(self) -> None:
        db = MemoryDatabase()
        assert await db.get_keyset_counter("009a1f293253e41e") == 0
        assert await db.increment_keyset_counter("009a1f293253e41e", 3) == 0
        assert await db.increment_keyset_counter("009a1f293253e41e", 2) == 3
        assert await db.get_keyset_counter("009a1f293253e41e") == 5
        with pytest.raises(ValueError):
            await db.increment_keyset_counter("009a1f293253e41e", -1)


class TestJsonFileDatabase:
    """Test the file-backed store."""

    @pytest.mark.asyncio
    async def test_reload(self, tmp_path) -> None:
        path = tmp_path / "wallet.json"
        await populate(JsonFileDatabase(path))

        db = JsonFileDatabase(path)

        proofs = await db.get_proofs()
        assert sorted(p.amount for p in proofs) == [1, 2]
        assert {p.state for p in proofs} == {ProofState.UNSPENT, ProofState.SPENT}
        assert proofs[0].proof.dleq is not None
        assert (await db.get_mint_quote("q1")).state == MintQuoteState.PAID
        assert (await db.get_melt_quote("m1")).state == MeltQuoteState.PENDING
        assert (await db.list_transactions())[0].amount == 3
        [keyset] = await db.get_keysets(MINT)
        assert not keyset.active and keyset.input_fee_ppk == 100
        assert keyset.keys == {1: public_key_of("01" * 32)}
        assert await db.get_keyset_counter("009a1f293253e41e") == 5

    @pytest.mark.asyncio
    async def test_update_rewrites_file(self, tmp_path) -> None:
        path = tmp_path / "nested" / "wallet.json"
        db = JsonFileDatabase(path)
        info = proof_info(3)
        await db.add_proofs([info])

        info.state = ProofState.PENDING
        info.operation_id = "op"
        await db.update_proofs([info])

        data = json.loads(path.read_text())
        assert data["proofs"][0]["state"] == "PENDING"
        assert list(tmp_path.joinpath("nested").glob("*.tmp")) == []
