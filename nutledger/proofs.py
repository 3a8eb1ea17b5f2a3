"""Proof store: selection, reservation and state tracking of ecash proofs."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator, Callable, Iterable
from uuid import uuid4

from .database import WalletDatabase
from .types import (
    CurrencyUnit,
    InsufficientFunds,
    InvalidStateTransition,
    Proof,
    ProofInfo,
    ProofNotFound,
    ProofState,
    ProofStateUpdate,
    add_amounts,
    can_transition_proof,
    check_amount,
    sum_proofs,
)

if TYPE_CHECKING:
    from .subscriptions import SubscriptionHub

logger = logging.getLogger(__name__)

FeeFunction = Callable[[list[Proof]], int]

# Outcomes kept for idempotent commit() of recently settled operations
SETTLED_HISTORY = 256


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Selection:
    """Proofs reserved (PENDING) for one operation."""

    operation_id: str
    mint_url: str
    unit: CurrencyUnit
    proofs: list[Proof]
    fee: int = 0

    @property
    def amount(self) -> int:
        return sum_proofs(self.proofs)

    @property
    def ys(self) -> list[str]:
        return [p.y for p in self.proofs]


# ──────────────────────────────────────────────────────────────────────────────
# Selection algorithm
# ──────────────────────────────────────────────────────────────────────────────


def _exact(proofs: list[Proof], amount: int) -> list[Proof] | None:
    chosen: list[Proof] = []
    remaining = amount
    for proof in proofs:
        if proof.amount <= remaining:
            chosen.append(proof)
            remaining -= proof.amount
            if remaining == 0:
                return chosen
    return None


def _covering(
    proofs: list[Proof], amount: int, max_proofs: int | None
) -> list[Proof] | None:
    # (a) the smallest single proof that covers the amount
    single = next((p for p in reversed(proofs) if p.amount >= amount), None)

    # (b) largest-first accumulation until the amount is reached
    accumulated: list[Proof] | None = []
    total = 0
    for proof in proofs:
        if total >= amount:
            break
        accumulated.append(proof)
        total += proof.amount
    if total < amount or (max_proofs is not None and len(accumulated) > max_proofs):
        accumulated = None

    if single is None:
        return accumulated
    if accumulated is None:
        return [single]
    # Ties go to the accumulated set
    if single.amount - amount < total - amount:
        return [single]
    return accumulated


def _choose(proofs: list[Proof], amount: int, max_proofs: int | None) -> list[Proof] | None:
    if amount == 0:
        return []
    exact = _exact(proofs, amount)
    if exact is not None and (max_proofs is None or len(exact) <= max_proofs):
        return exact
    return _covering(proofs, amount, max_proofs)


def select_proofs(
    proofs: Iterable[Proof],
    amount: int,
    *,
    fee_for: FeeFunction | None = None,
    max_proofs: int | None = None,
) -> list[Proof] | None:
    """Pick proofs summing to at least ``amount``, or None if impossible.

    An exact subset (greedy, largest first) is preferred. Otherwise the
    smaller overshoot of the smallest single covering proof and the
    largest-first accumulation wins, ties going to the accumulation. With
    ``fee_for`` the selection must also cover its own input fee.
    """
    check_amount(amount)
    candidates = sorted(proofs, key=lambda p: p.amount, reverse=True)

    target = amount
    while True:
        chosen = _choose(candidates, target, max_proofs)
        if chosen is None:
            return None
        needed = amount + (fee_for(chosen) if fee_for and chosen else 0)
        if sum_proofs(chosen) >= needed:
            return chosen
        # The fee of the chosen inputs moved the target, select again
        target = needed


# ──────────────────────────────────────────────────────────────────────────────
# Proof store
# ──────────────────────────────────────────────────────────────────────────────


class ProofStore:
    """Proof rows and their state machine.

    Selection and every state change happen under one lock, so no proof is
    ever held PENDING by two operations. Each change is written to the
    database as a single batch and published to the subscription hub.
    """

    def __init__(
        self,
        db: WalletDatabase,
        hub: "SubscriptionHub | None" = None,
        *,
        fee_for: Callable[[str, list[Proof]], int] | None = None,
    ) -> None:
        self.db = db
        self.hub = hub
        self.fee_for = fee_for
        self._lock = asyncio.Lock()
        self._operations: dict[str, list[str]] = {}
        self._settled: OrderedDict[str, Outcome] = OrderedDict()
        self._held: set[str] = set()

    def _publish(self, rows: list[ProofInfo]) -> None:
        if self.hub is None:
            return
        for info in rows:
            self.hub.publish(ProofStateUpdate(y=info.y, state=info.state))

    async def _write(self, rows: list[ProofInfo]) -> None:
        if rows:
            await self.db.update_proofs(rows)
            self._publish(rows)

    # ───────────────────────── Queries ─────────────────────────────────

    async def insert(
        self,
        proofs: list[Proof],
        mint_url: str,
        unit: CurrencyUnit,
        state: ProofState = ProofState.UNSPENT,
    ) -> list[ProofInfo]:
        rows = [ProofInfo.new(p, mint_url, unit, state) for p in proofs]
        async with self._lock:
            await self.db.add_proofs(rows)
        self._publish(rows)
        logger.debug("Stored %d proofs (%s) for %s", len(rows), state, mint_url)
        return rows

    async def get(self, ys: Iterable[str]) -> list[ProofInfo]:
        ys = list(ys)
        rows = await self.db.get_proofs(ys=ys)
        if len(rows) != len(set(ys)):
            found = {r.y for r in rows}
            raise ProofNotFound(f"Unknown proofs: {[y for y in ys if y not in found]}")
        return rows

    async def by_states(
        self,
        states: Iterable[ProofState],
        mint_url: str | None = None,
        unit: CurrencyUnit | None = None,
    ) -> list[ProofInfo]:
        return await self.db.get_proofs(mint_url=mint_url, unit=unit, states=states)

    async def balance(
        self, mint_url: str | None = None, unit: CurrencyUnit | None = None
    ) -> int:
        rows = await self.by_states([ProofState.UNSPENT], mint_url, unit)
        return add_amounts(*(r.amount for r in rows))

    async def pending_operations(self) -> dict[str, list[str]]:
        """Operation id -> ys of proofs still PENDING, including ones from earlier runs."""
        operations: dict[str, list[str]] = {}
        for info in await self.by_states([ProofState.PENDING]):
            operations.setdefault(info.operation_id or "", []).append(info.y)
        return operations

    # ───────────────────────── Reservation ─────────────────────────────────

    async def select(
        self,
        amount: int,
        mint_url: str,
        unit: CurrencyUnit,
        *,
        operation_id: str | None = None,
        include_fees: bool = False,
        max_proofs: int | None = None,
    ) -> Selection:
        """Move proofs covering ``amount`` to PENDING for one operation.

        Raises InsufficientFunds when the UNSPENT proofs cannot cover it.
        """
        operation_id = operation_id or str(uuid4())
        fee_function: FeeFunction | None = None
        if include_fees and self.fee_for is not None:
            fee_for = self.fee_for

            def fee_function(proofs: list[Proof]) -> int:
                return fee_for(mint_url, proofs)

        async with self._lock:
            if operation_id in self._operations:
                raise InvalidStateTransition(
                    f"Operation {operation_id} already exists", entity_id=operation_id
                )
            rows = await self.db.get_proofs(
                mint_url=mint_url, unit=unit, states=[ProofState.UNSPENT]
            )
            chosen = select_proofs(
                [r.proof for r in rows],
                amount,
                fee_for=fee_function,
                max_proofs=max_proofs,
            )
            if chosen is None:
                available = add_amounts(*(r.amount for r in rows))
                raise InsufficientFunds(
                    f"Insufficient balance. Need at least {amount} {unit}, "
                    f"but have {available} {unit}",
                    operation="select",
                    entity_id=operation_id,
                )
            by_y = {r.y: r for r in rows}
            chosen_ys = [p.y for p in chosen]
            await self._write(
                [
                    replace(by_y[y], state=ProofState.PENDING, operation_id=operation_id)
                    for y in chosen_ys
                ]
            )
            self._operations[operation_id] = chosen_ys
            self._settled.pop(operation_id, None)

        fee = fee_function(chosen) if fee_function and chosen else 0
        logger.debug(
            "Operation %s reserved %d proofs (%d) for %d",
            operation_id,
            len(chosen),
            sum_proofs(chosen),
            amount,
        )
        return Selection(operation_id, mint_url, unit, chosen, fee)

    async def claim(
        self, ys: list[str], *, operation_id: str | None = None
    ) -> Selection:
        """Move the given UNSPENT proofs to PENDING for one operation."""
        operation_id = operation_id or str(uuid4())
        async with self._lock:
            rows = await self.get(ys)
            for info in rows:
                if info.state != ProofState.UNSPENT:
                    raise InvalidStateTransition(
                        f"Proof {info.y} is {info.state}, not UNSPENT",
                        entity_id=info.y,
                    )
            keys = {(r.mint_url, r.unit) for r in rows}
            if len(keys) != 1:
                raise InvalidStateTransition(
                    "Claimed proofs must belong to one mint and unit"
                )
            await self._write(
                [
                    replace(r, state=ProofState.PENDING, operation_id=operation_id)
                    for r in rows
                ]
            )
            self._operations[operation_id] = [r.y for r in rows]
            self._settled.pop(operation_id, None)
        mint_url, unit = keys.pop()
        return Selection(operation_id, mint_url, unit, [r.proof for r in rows])

    @asynccontextmanager
    async def _guard(self, selection: Selection) -> AsyncIterator[Selection]:
        try:
            yield selection
        finally:
            op = selection.operation_id
            if op in self._operations and op not in self._held:
                logger.warning("Rolling back unfinished operation %s", op)
                await self.commit(op, Outcome.FAILURE)

    @asynccontextmanager
    async def reserve(
        self,
        amount: int,
        mint_url: str,
        unit: CurrencyUnit,
        *,
        operation_id: str | None = None,
        include_fees: bool = False,
        max_proofs: int | None = None,
    ) -> AsyncIterator[Selection]:
        """select() whose proofs are released on any exit that did not commit.

        This covers exceptions, cancellation and timeouts.
        """
        selection = await self.select(
            amount,
            mint_url,
            unit,
            operation_id=operation_id,
            include_fees=include_fees,
            max_proofs=max_proofs,
        )
        async with self._guard(selection) as guarded:
            yield guarded

    @asynccontextmanager
    async def reserve_ys(
        self, ys: list[str], *, operation_id: str | None = None
    ) -> AsyncIterator[Selection]:
        """claim() with the same rollback guarantees as reserve()."""
        selection = await self.claim(ys, operation_id=operation_id)
        async with self._guard(selection) as guarded:
            yield guarded

    def _remember(self, operation_id: str, outcome: Outcome) -> None:
        self._settled[operation_id] = outcome
        while len(self._settled) > SETTLED_HISTORY:
            self._settled.popitem(last=False)

    def keep_pending(self, operation_id: str) -> None:
        """Leave an operation PENDING past its reservation (in-flight melt)."""
        self._held.add(operation_id)

    # ───────────────────────── Settlement ─────────────────────────────────

    async def _operation_rows(self, operation_id: str) -> list[ProofInfo]:
        ys = self._operations.get(operation_id)
        if ys is not None:
            return await self.db.get_proofs(ys=ys)
        # Operations started by an earlier run are only known from the rows
        return [
            info
            for info in await self.by_states([ProofState.PENDING])
            if info.operation_id == operation_id
        ]

    async def commit(
        self,
        operation_id: str,
        outcome: Outcome,
        *,
        spent_state: ProofState = ProofState.SPENT,
    ) -> list[ProofInfo]:
        """Settle an operation: SUCCESS -> ``spent_state``, FAILURE -> UNSPENT.

        Committing the same outcome twice is a no-op; a different outcome
        after settlement raises InvalidStateTransition.
        """
        if spent_state not in (ProofState.SPENT, ProofState.PENDING_SPENT):
            raise ValueError(f"Invalid final state {spent_state}")

        async with self._lock:
            settled = self._settled.get(operation_id)
            if settled is not None:
                if settled != outcome:
                    raise InvalidStateTransition(
                        f"Operation {operation_id} already settled as {settled.value}",
                        entity_id=operation_id,
                    )
                return []

            rows = await self._operation_rows(operation_id)
            if not rows and operation_id not in self._operations:
                raise ProofNotFound(
                    f"No pending proofs for operation {operation_id}",
                    entity_id=operation_id,
                )

            new_state = spent_state if outcome == Outcome.SUCCESS else ProofState.UNSPENT
            updated = []
            for info in rows:
                if not can_transition_proof(info.state, new_state):
                    raise InvalidStateTransition(
                        f"Proof {info.y} cannot move from {info.state} to {new_state}",
                        entity_id=info.y,
                    )
                updated.append(replace(info, state=new_state, operation_id=None))

            await self._write(updated)
            self._operations.pop(operation_id, None)
            self._held.discard(operation_id)
            self._remember(operation_id, outcome)

        logger.debug("Operation %s settled: %s", operation_id, outcome.value)
        return updated

    async def mark(self, ys: Iterable[str], state: ProofState) -> list[ProofInfo]:
        """Set proof states directly, e.g. when reconciling with the mint."""
        async with self._lock:
            rows = await self.get(ys)
            updated = []
            for info in rows:
                if info.state == state:
                    continue
                if not can_transition_proof(info.state, state):
                    raise InvalidStateTransition(
                        f"Proof {info.y} cannot move from {info.state} to {state}",
                        entity_id=info.y,
                    )
                updated.append(replace(info, state=state))
            await self._write(updated)
        return updated
