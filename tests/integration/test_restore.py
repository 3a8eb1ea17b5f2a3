"""Seeded wallets: deterministic secrets and restoring from a mnemonic."""

import pytest

from nutledger.conditions import P2PKConditions
from nutledger.crypto import public_key_of
from nutledger.seed import generate_mnemonic
from nutledger.types import ProofState, SendOptions, SplitTarget, WalletError


@pytest.fixture
def mnemonic():
    return generate_mnemonic()


class TestSeededWallet:
    """Test wallets created from a mnemonic."""

    @pytest.mark.asyncio
    async def test_outputs_advance_the_keyset_counter(
        self, fake_mint, wallet_factory, fund, mnemonic
    ):
        wallet = await wallet_factory(fake_mint, mnemonic=mnemonic)
        first = await fund(wallet, 100, SplitTarget.values([64, 32, 4]))
        second = await fund(wallet, 8, SplitTarget.values([8]))

        assert await wallet.db.get_keyset_counter(fake_mint.keyset.id) == 4
        expected = [s for s, _ in wallet.seed.derive_range(fake_mint.keyset.id, 0, 4)]
        assert sorted(p.secret for p in first + second) == sorted(expected)

    @pytest.mark.asyncio
    async def test_locked_outputs_use_random_secrets(
        self, fake_mint, wallet_factory, fund, mnemonic
    ):
        wallet = await wallet_factory(fake_mint, mnemonic=mnemonic)
        await fund(wallet, 64, SplitTarget.values([64]))
        lock = P2PKConditions(pubkey=public_key_of("02" * 32))

        token = await wallet.send(10, SendOptions(conditions=lock))

        assert all(p.spending_conditions == lock for p in token.proofs)
        change = await wallet.get_proofs_by_states([ProofState.UNSPENT])
        # Only the minted proof and the change were derived
        assert await wallet.db.get_keyset_counter(fake_mint.keyset.id) == 1 + len(change)


class TestRestore:
    """Test recovering proofs from the mint."""

    @pytest.mark.asyncio
    async def test_restore_into_new_wallet(self, fake_mint, wallet_factory, fund, mnemonic):
        wallet = await wallet_factory(fake_mint, mnemonic=mnemonic)
        proofs = await fund(wallet, 100, SplitTarget.values([64, 32, 4]))

        restored_wallet = await wallet_factory(fake_mint, mnemonic=mnemonic)
        restored = await restored_wallet.restore(batch=5)

        assert sorted(p.secret for p in restored) == sorted(p.secret for p in proofs)
        assert await restored_wallet.total_balance() == 100
        # New outputs continue after the restored ones
        assert await restored_wallet.db.get_keyset_counter(fake_mint.keyset.id) == 3

    @pytest.mark.asyncio
    async def test_spent_proofs_are_skipped(self, fake_mint, wallet_factory, fund, mnemonic):
        wallet = await wallet_factory(fake_mint, mnemonic=mnemonic)
        await fund(wallet, 100, SplitTarget.values([64, 32, 4]))
        token = await wallet.send(32)
        bob = await wallet_factory(fake_mint)
        await bob.receive(token)

        restored_wallet = await wallet_factory(fake_mint, mnemonic=mnemonic)
        await restored_wallet.restore()

        assert await restored_wallet.total_balance() == 68

    @pytest.mark.asyncio
    async def test_restore_keeps_held_proofs(self, fake_mint, wallet_factory, fund, mnemonic):
        wallet = await wallet_factory(fake_mint, mnemonic=mnemonic)
        await fund(wallet, 12, SplitTarget.values([8, 4]))

        assert await wallet.restore() == []
        assert await wallet.total_balance() == 12
        assert await wallet.db.get_keyset_counter(fake_mint.keyset.id) == 2

    @pytest.mark.asyncio
    async def test_restore_finds_outputs_past_an_empty_batch(
        self, fake_mint, wallet_factory, fund, mnemonic
    ):
        wallet = await wallet_factory(fake_mint, mnemonic=mnemonic)
        await wallet.db.increment_keyset_counter(fake_mint.keyset.id, 7)
        await fund(wallet, 16, SplitTarget.values([16]))

        restored_wallet = await wallet_factory(fake_mint, mnemonic=mnemonic)
        restored = await restored_wallet.restore(batch=5, empty_batches=2)

        assert [p.amount for p in restored] == [16]
        assert await restored_wallet.db.get_keyset_counter(fake_mint.keyset.id) == 8

    @pytest.mark.asyncio
    async def test_restore_needs_mnemonic(self, wallet):
        with pytest.raises(WalletError):
            await wallet.restore()
