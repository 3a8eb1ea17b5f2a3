"""Receiving tokens: plain, locked and broken ones."""

import hashlib
from dataclasses import replace

import pytest

from nutledger.conditions import HTLCConditions, P2PKConditions
from nutledger.crypto import public_key_of
from nutledger.token import Token
from nutledger.types import (
    DLEQ,
    CurrencyUnit,
    InvalidSignature,
    InvalidSpendingConditions,
    MalformedToken,
    OfflineExact,
    Proof,
    ProofState,
    ProtocolError,
    ReceiveOptions,
    SendOptions,
    SplitTarget,
    TransactionDirection,
    UnknownKeyset,
    WalletError,
)

BOB_KEY = hashlib.sha256(b"bob").hexdigest()


@pytest.fixture
async def alice(fake_mint, wallet_factory, fund):
    wallet = await wallet_factory(fake_mint)
    await fund(wallet, 100)
    return wallet


@pytest.fixture
async def bob(fake_mint, wallet_factory):
    return await wallet_factory(fake_mint)


class TestReceive:
    """Test redeeming tokens into a wallet."""

    @pytest.mark.asyncio
    async def test_receive_token(self, alice, bob):
        """Bob swaps Alice's token; Alice learns her proofs were claimed."""
        token = await alice.send(21)

        proofs = await bob.receive(token.encode())

        assert sum(p.amount for p in proofs) == 21
        assert await bob.total_balance() == 21
        incoming = await bob.list_transactions(TransactionDirection.INCOMING)
        assert [t.amount for t in incoming] == [21]

        changed = await alice.check_proofs_spent()
        assert {info.y for info in changed} == {p.y for p in token.proofs}
        assert all(info.state == ProofState.SPENT for info in changed)
        assert await alice.get_proofs_by_states([ProofState.PENDING_SPENT]) == []

    @pytest.mark.asyncio
    async def test_receive_v3_token(self, alice, bob):
        token = await alice.send(5)
        await bob.receive(token.encode(3))
        assert await bob.total_balance() == 5

    @pytest.mark.asyncio
    async def test_receive_with_split_target(self, alice, bob):
        token = await alice.send(16)
        proofs = await bob.receive(token, ReceiveOptions(split_target=SplitTarget.value(4)))
        assert [p.amount for p in proofs] == [4, 4, 4, 4]

    @pytest.mark.asyncio
    async def test_malformed_token(self, bob):
        with pytest.raises(MalformedToken):
            await bob.receive("notatoken")
        with pytest.raises(MalformedToken):
            # "not json" in base64
            await bob.receive("cashuAbm90IGpzb24")

    @pytest.mark.asyncio
    async def test_unknown_keyset(self, bob):
        """A keyset the mint does not list is rejected before any swap."""
        proof = Proof(
            amount=1,
            id="00ffffffffffffff",
            secret="a" * 64,
            C=public_key_of("01" * 32),
        )
        token = Token(mint_url=bob.primary_mint_url, unit=CurrencyUnit.SAT, proofs=[proof])

        with pytest.raises(UnknownKeyset):
            await bob.receive(token)

        assert await bob.get_proofs_by_states(list(ProofState)) == []
        assert "swap" not in bob.mints[bob.primary_mint_url].calls

    @pytest.mark.asyncio
    async def test_unknown_mint(self, alice, bob):
        token = await alice.send(5)
        with pytest.raises(WalletError):
            await bob.receive(replace(token, mint_url="https://other.mint"))

    @pytest.mark.asyncio
    async def test_receive_twice(self, alice, bob):
        """The mint rejects a token that was already claimed."""
        token = await alice.send(8)
        await bob.receive(token)

        with pytest.raises(ProtocolError) as exc_info:
            await bob.receive(token)

        assert exc_info.value.code == 11001
        assert await bob.total_balance() == 8

    @pytest.mark.asyncio
    async def test_receive_own_token(self, alice):
        """Receiving your own token takes the proofs back."""
        token = await alice.send(30)
        assert await alice.total_balance() == 70

        await alice.receive(token)

        assert await alice.total_balance() == 100
        stored = await alice.get_proofs_by_states([ProofState.SPENT])
        assert {p.y for p in token.proofs} <= {info.y for info in stored}
        assert await alice.get_proofs_by_states([ProofState.PENDING_SPENT]) == []

    @pytest.mark.asyncio
    async def test_tampered_dleq(self, alice, bob):
        token = await alice.send(8)
        other = await alice.send(8)
        # DLEQ of another signature does not prove this one
        forged = [
            replace(p, dleq=DLEQ(e=o.dleq.e, s=o.dleq.s, r=p.dleq.r))
            for p, o in zip(token.proofs, other.proofs)
        ]

        with pytest.raises(InvalidSignature):
            await bob.receive(replace(token, proofs=forged))
        assert await bob.total_balance() == 0

    @pytest.mark.asyncio
    async def test_require_dleq(self, alice, fake_mint, wallet_factory):
        strict = await wallet_factory(fake_mint, require_dleq=True)
        token = await alice.send(4)

        with pytest.raises(InvalidSignature):
            await strict.receive(token.encode(include_dleq=False))


class TestLockedTokens:
    """Test P2PK and HTLC locked tokens."""

    @pytest.mark.asyncio
    async def test_p2pk_needs_key(self, alice, bob):
        lock = P2PKConditions(pubkey=public_key_of(BOB_KEY))
        token = await alice.send(10, SendOptions(conditions=lock))
        assert all(p.spending_conditions == lock for p in token.proofs)

        with pytest.raises(InvalidSpendingConditions):
            await bob.receive(token)
        assert await bob.total_balance() == 0

        await bob.receive(token, ReceiveOptions(p2pk_signing_keys=[BOB_KEY]))
        assert await bob.total_balance() == 10

    @pytest.mark.asyncio
    async def test_p2pk_wrong_key(self, alice, bob):
        lock = P2PKConditions(pubkey=public_key_of(BOB_KEY))
        token = await alice.send(10, SendOptions(conditions=lock))

        with pytest.raises(InvalidSpendingConditions):
            await bob.receive(
                token, ReceiveOptions(p2pk_signing_keys=[hashlib.sha256(b"eve").hexdigest()])
            )

    @pytest.mark.asyncio
    async def test_htlc_preimage(self, alice, bob):
        preimage = "ab" * 32
        token = await alice.send(
            12, SendOptions(conditions=HTLCConditions.from_preimage(preimage))
        )

        with pytest.raises(InvalidSpendingConditions):
            await bob.receive(token)

        await bob.receive(token, ReceiveOptions(preimages=[preimage]))
        assert await bob.total_balance() == 12

    @pytest.mark.asyncio
    async def test_offline_send_cannot_lock(self, alice):
        lock = P2PKConditions(pubkey=public_key_of(BOB_KEY))
        with pytest.raises(WalletError):
            await alice.send(10, SendOptions(conditions=lock, send_kind=OfflineExact()))
        assert await alice.total_balance() == 100
