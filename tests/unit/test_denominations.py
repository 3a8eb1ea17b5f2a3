"""Test output amount splitting."""

import pytest

from nutledger.denominations import (
    KeysetStrategy,
    PowerOfTwoStrategy,
    WalletStateStrategy,
    split,
)
from nutledger.types import AmountMismatch, AmountOverflow, CurrencyUnit, KeysetInfo, SplitTarget


class TestPowerOfTwo:
    def test_binary_decomposition(self) -> None:
        assert PowerOfTwoStrategy().split(13) == [1, 4, 8]
        assert PowerOfTwoStrategy().split(64) == [64]

    def test_zero(self) -> None:
        assert PowerOfTwoStrategy().split(0) == []

    def test_negative(self) -> None:
        with pytest.raises(ValueError):
            PowerOfTwoStrategy().split(-1)

    def test_overflow(self) -> None:
        with pytest.raises(AmountOverflow):
            PowerOfTwoStrategy().split(2**64)


class TestKeysetStrategy:
    def test_greedy_over_custom_denominations(self) -> None:
        strategy = KeysetStrategy([1, 5, 10, 50])
        assert strategy.split(67) == [1, 1, 5, 10, 50]

    def test_inexpressible_amount(self) -> None:
        with pytest.raises(AmountMismatch):
            KeysetStrategy([2, 4]).split(3)

    def test_from_keyset(self) -> None:
        keyset = KeysetInfo(
            id="009a1f293253e41e",
            mint_url="https://mint",
            unit=CurrencyUnit.SAT,
            active=True,
            keys={1: "02" + "00" * 32, 2: "02" + "11" * 32},
        )
        assert KeysetStrategy.from_keyset(keyset).split(5) == [1, 2, 2]

    def test_no_denominations(self) -> None:
        with pytest.raises(ValueError):
            KeysetStrategy([])


class TestWalletStateStrategy:
    """Test topping up denominations the wallet is short of."""

    def test_empty_wallet_fills_small_denominations(self) -> None:
        amounts = WalletStateStrategy([], target_proof_count=2).split(10)
        assert amounts == [1, 1, 2, 2, 4]
        assert sum(amounts) == 10

    def test_held_denominations_are_not_refilled(self) -> None:
        held = [1, 1, 2, 2]
        amounts = WalletStateStrategy(held, target_proof_count=2).split(12)
        assert 1 not in amounts and 2 not in amounts
        assert amounts == [4, 4, 4]

    def test_remainder_in_powers_of_two(self) -> None:
        amounts = WalletStateStrategy([], target_proof_count=1).split(100)
        # 1..32 fill 63, the remaining 37 is 1 + 4 + 32
        assert amounts == [1, 1, 2, 4, 4, 8, 16, 32, 32]

    def test_restricted_denominations(self) -> None:
        amounts = WalletStateStrategy([], 3, denominations=[1, 8]).split(30)
        # 1, 1, 1, 8, 8, 8 fill 27, the remaining 3 is 1 + 1 + 1
        assert amounts == [1, 1, 1, 1, 1, 1, 8, 8, 8]

    def test_remainder_uses_keyset_denominations(self) -> None:
        amounts = WalletStateStrategy([], 1, denominations=[1, 10, 100]).split(345)
        assert sum(amounts) == 345
        assert set(amounts) <= {1, 10, 100}
        assert amounts.count(100) == 3


class TestSplit:
    """Test split targets."""

    def test_none_uses_power_of_two(self) -> None:
        assert split(7) == [1, 2, 4]

    def test_none_uses_given_strategy(self) -> None:
        assert split(10, None, KeysetStrategy([5])) == [5, 5]

    def test_value(self) -> None:
        assert split(35, SplitTarget.value(10)) == [10, 10, 10, 1, 4]

    def test_value_larger_than_total(self) -> None:
        assert split(3, SplitTarget.value(10)) == [1, 2]

    def test_values(self) -> None:
        assert split(10, SplitTarget.values([5, 3, 2])) == [5, 3, 2]

    def test_values_must_sum(self) -> None:
        with pytest.raises(AmountMismatch):
            split(10, SplitTarget.values([5, 3]))

    def test_value_without_amount(self) -> None:
        with pytest.raises(ValueError):
            split(10, SplitTarget(kind="value"))

    def test_zero_split_value_rejected(self) -> None:
        with pytest.raises(ValueError):
            SplitTarget.value(0)
        with pytest.raises(ValueError):
            SplitTarget.values([1, 0])
