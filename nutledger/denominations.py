"""Output amount splitting for Cashu mints."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable, Protocol

from .types import AmountMismatch, KeysetInfo, SplitTarget, check_amount

logger = logging.getLogger(__name__)

# Powers of two up to the largest 64-bit denomination
MAX_ORDER = 64


class DenominationStrategy(Protocol):
    """Turns a total into a list of output amounts summing to it."""

    def split(self, total: int) -> list[int]: ...


class PowerOfTwoStrategy:
    """Binary decomposition, one output per set bit."""

    def split(self, total: int) -> list[int]:
        check_amount(total)
        return [1 << bit for bit in range(total.bit_length()) if total >> bit & 1]


class KeysetStrategy:
    """Greedy split over the denominations a keyset advertises."""

    def __init__(self, denominations: Iterable[int]):
        self.denominations = sorted({int(d) for d in denominations}, reverse=True)
        if not self.denominations:
            raise ValueError("Keyset advertises no denominations")

    @classmethod
    def from_keyset(cls, keyset_info: KeysetInfo) -> "KeysetStrategy":
        return cls(keyset_info.denominations or keyset_info.keys)

    def split(self, total: int) -> list[int]:
        check_amount(total)
        amounts: list[int] = []
        remaining = total

        # Sort in descending order for greedy algorithm
        for denom in self.denominations:
            if remaining >= denom:
                count = remaining // denom
                amounts.extend([denom] * count)
                remaining -= denom * count

        if remaining:
            raise AmountMismatch(
                f"Amount {total} cannot be expressed in denominations {self.denominations}",
                operation="split",
            )
        return sorted(amounts)


class WalletStateStrategy:
    """Fill under-represented denominations up to a target count.

    Amounts the wallet holds fewer than ``target_proof_count`` of are emitted
    smallest first while they fit. The rest of the total is split greedily
    over the given denominations, or in powers of two when none are given.
    """

    def __init__(
        self,
        amounts_held: Iterable[int],
        target_proof_count: int = 3,
        denominations: Iterable[int] | None = None,
    ):
        self.held = Counter(amounts_held)
        self.target_proof_count = target_proof_count
        self.denominations = sorted(
            denominations if denominations is not None else (2**i for i in range(MAX_ORDER))
        )
        self.remainder: DenominationStrategy = (
            KeysetStrategy(self.denominations)
            if denominations is not None
            else PowerOfTwoStrategy()
        )

    def split(self, total: int) -> list[int]:
        check_amount(total)
        wanted = sorted(
            amount
            for denom in self.denominations
            for amount in [denom] * max(0, self.target_proof_count - self.held[denom])
        )

        amounts: list[int] = []
        filled = 0
        for amount in wanted:
            if filled + amount > total:
                break
            amounts.append(amount)
            filled += amount

        amounts += self.remainder.split(total - filled)
        amounts.sort()
        logger.debug("Wallet state split of %d: %s", total, amounts)
        return amounts


def split(
    total: int,
    target: SplitTarget | None = None,
    strategy: DenominationStrategy | None = None,
) -> list[int]:
    """Split ``total`` into output amounts according to ``target``.

    Raises AmountMismatch when explicit values do not sum to the total.
    """
    check_amount(total)
    target = target or SplitTarget.none()
    strategy = strategy or PowerOfTwoStrategy()

    if target.kind == "none":
        amounts = strategy.split(total)
    elif target.kind == "value":
        if not target.amount:
            raise ValueError("Value split target needs a positive amount")
        count = total // target.amount
        amounts = [target.amount] * count + strategy.split(total - count * target.amount)
    elif target.kind == "values":
        amounts = list(target.amounts)
        if sum(amounts) != total:
            raise AmountMismatch(
                f"Split values sum to {sum(amounts)}, expected {total}",
                operation="split",
            )
    else:
        raise ValueError(f"Unknown split target: {target.kind}")

    if sum(amounts) != total:
        raise AmountMismatch(f"Amounts do not sum to {total}", operation="split")
    return amounts
