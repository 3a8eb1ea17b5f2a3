"""Mint and melt quote lifecycle tracking."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, Mapping

from .database import WalletDatabase
from .mint import MintConnector, PostMeltQuoteResponse, PostMintQuoteResponse
from .types import (
    CurrencyUnit,
    InvalidStateTransition,
    MeltOptions,
    MeltQuote,
    MeltQuoteState,
    MeltQuoteUpdate,
    MintQuote,
    MintQuoteState,
    MintQuoteUpdate,
    QuoteNotFound,
    SubscribeParams,
    SubscriptionKind,
    WalletError,
    check_amount,
)

if TYPE_CHECKING:
    from .subscriptions import RemoteSource, SubscriptionHub

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuoteTransition:
    """Record of one quote state change."""

    quote_id: str
    old_state: str
    new_state: str
    changed: bool
    timestamp: float = 0.0


# ──────────────────────────────────────────────────────────────────────────────
# Transition functions
# ──────────────────────────────────────────────────────────────────────────────

_MINT_ORDER = {
    MintQuoteState.UNPAID: 0,
    MintQuoteState.PAID: 1,
    MintQuoteState.ISSUED: 2,
}

_MELT_TRANSITIONS: dict[MeltQuoteState, frozenset[MeltQuoteState]] = {
    MeltQuoteState.UNPAID: frozenset({MeltQuoteState.PENDING, MeltQuoteState.PAID}),
    MeltQuoteState.PENDING: frozenset({MeltQuoteState.PAID, MeltQuoteState.UNPAID}),
    MeltQuoteState.PAID: frozenset(),
}


def transition_mint_quote(
    quote: MintQuote, new_state: MintQuoteState
) -> tuple[MintQuote, QuoteTransition]:
    """Move a mint quote forward. UNPAID -> PAID -> ISSUED, never back."""
    if _MINT_ORDER[new_state] < _MINT_ORDER[quote.state]:
        raise InvalidStateTransition(
            f"Mint quote cannot move from {quote.state} to {new_state}",
            operation="mint_quote",
            entity_id=quote.id,
        )
    changed = new_state != quote.state
    record = QuoteTransition(
        quote.id, quote.state.value, new_state.value, changed, time.time()
    )
    return (replace(quote, state=new_state) if changed else quote), record


def transition_melt_quote(
    quote: MeltQuote, new_state: MeltQuoteState
) -> tuple[MeltQuote, QuoteTransition]:
    """Move a melt quote. UNPAID -> PENDING -> PAID, or PENDING -> UNPAID."""
    changed = new_state != quote.state
    if changed and new_state not in _MELT_TRANSITIONS[quote.state]:
        raise InvalidStateTransition(
            f"Melt quote cannot move from {quote.state} to {new_state}",
            operation="melt_quote",
            entity_id=quote.id,
        )
    record = QuoteTransition(
        quote.id, quote.state.value, new_state.value, changed, time.time()
    )
    return (replace(quote, state=new_state) if changed else quote), record


# ──────────────────────────────────────────────────────────────────────────────
# Mint responses
# ──────────────────────────────────────────────────────────────────────────────


def _mint_quote_state(response: Mapping[str, Any]) -> MintQuoteState:
    state = response.get("state")
    if state:
        return MintQuoteState(state)
    # Older mints only report the paid flag
    return MintQuoteState.PAID if response.get("paid") else MintQuoteState.UNPAID


def _melt_quote_state(response: Mapping[str, Any]) -> MeltQuoteState:
    state = response.get("state")
    if state:
        return MeltQuoteState(state)
    return MeltQuoteState.PAID if response.get("paid") else MeltQuoteState.UNPAID


def mint_quote_from_response(
    mint_url: str,
    response: PostMintQuoteResponse | Mapping[str, Any],
    *,
    unit: CurrencyUnit | None = None,
    request: str | None = None,
    amount: int | None = None,
) -> MintQuote:
    amount = response.get("amount", amount)
    return MintQuote(
        id=response["quote"],
        mint_url=mint_url,
        amount=check_amount(amount) if amount is not None else None,
        unit=CurrencyUnit.parse(response.get("unit") or unit or CurrencyUnit.SAT),
        request=response.get("request") or request or "",
        state=_mint_quote_state(response),
        expiry=response.get("expiry"),
        amount_paid=response.get("amount_paid", 0),
        amount_issued=response.get("amount_issued", 0),
    )


def melt_quote_from_response(
    mint_url: str,
    response: PostMeltQuoteResponse | Mapping[str, Any],
    *,
    unit: CurrencyUnit | None = None,
    request: str | None = None,
) -> MeltQuote:
    return MeltQuote(
        id=response["quote"],
        mint_url=mint_url,
        amount=check_amount(response["amount"]),
        fee_reserve=check_amount(response.get("fee_reserve", 0)),
        unit=CurrencyUnit.parse(response.get("unit") or unit or CurrencyUnit.SAT),
        request=response.get("request") or request or "",
        state=_melt_quote_state(response),
        expiry=response.get("expiry"),
        payment_preimage=response.get("payment_preimage"),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Quote manager
# ──────────────────────────────────────────────────────────────────────────────


class QuoteManager:
    """Creates quotes at the mint and tracks their state locally.

    Local state only moves forward. Remote state reported by the mint is
    applied through the same transition functions; remote reports that lag
    behind the local state are ignored.
    """

    def __init__(
        self,
        db: WalletDatabase,
        mints: Mapping[str, MintConnector],
        hub: "SubscriptionHub",
        *,
        source_for: "Callable[[str], RemoteSource | None] | None" = None,
    ) -> None:
        self.db = db
        self.mints = mints
        self.hub = hub
        self.source_for = source_for
        self._lock = asyncio.Lock()

    def _mint(self, mint_url: str) -> MintConnector:
        try:
            return self.mints[mint_url]
        except KeyError:
            raise WalletError(f"Unknown mint: {mint_url}") from None

    # ───────────────────────── Creation ─────────────────────────────────

    async def create_mint_quote(
        self,
        mint_url: str,
        amount: int | None,
        unit: CurrencyUnit,
        description: str | None = None,
    ) -> MintQuote:
        if amount is not None:
            check_amount(amount)
        response = await self._mint(mint_url).create_mint_quote(
            amount=amount, unit=unit.value, description=description
        )
        quote = mint_quote_from_response(mint_url, response, unit=unit, amount=amount)
        # A fresh quote is tracked as UNPAID whatever the mint reports
        quote = replace(quote, state=MintQuoteState.UNPAID)
        async with self._lock:
            await self.db.add_mint_quote(quote)
        logger.info("Created mint quote %s for %s %s", quote.id, amount, unit)
        return quote

    async def create_melt_quote(
        self,
        mint_url: str,
        request: str,
        unit: CurrencyUnit,
        options: MeltOptions | None = None,
    ) -> MeltQuote:
        response = await self._mint(mint_url).create_melt_quote(
            request,
            unit=unit.value,
            options=options.to_request() if options is not None else None,
        )
        quote = melt_quote_from_response(mint_url, response, unit=unit, request=request)
        quote = replace(quote, state=MeltQuoteState.UNPAID)
        async with self._lock:
            await self.db.add_melt_quote(quote)
        logger.info(
            "Created melt quote %s: amount=%d fee_reserve=%d",
            quote.id,
            quote.amount,
            quote.fee_reserve,
        )
        return quote

    # ───────────────────────── Lookup ─────────────────────────────────

    async def get_mint_quote(self, quote_id: str) -> MintQuote:
        quote = await self.db.get_mint_quote(quote_id)
        if quote is None:
            raise QuoteNotFound(f"Unknown mint quote {quote_id}", entity_id=quote_id)
        return quote

    async def get_melt_quote(self, quote_id: str) -> MeltQuote:
        quote = await self.db.get_melt_quote(quote_id)
        if quote is None:
            raise QuoteNotFound(f"Unknown melt quote {quote_id}", entity_id=quote_id)
        return quote

    async def list_melt_quotes(
        self, state: MeltQuoteState | None = None
    ) -> list[MeltQuote]:
        quotes = await self.db.list_melt_quotes()
        return [q for q in quotes if state is None or q.state == state]

    async def list_mint_quotes(
        self, state: MintQuoteState | None = None
    ) -> list[MintQuote]:
        quotes = await self.db.list_mint_quotes()
        return [q for q in quotes if state is None or q.state == state]

    # ───────────────────────── Transitions ─────────────────────────────────

    async def _transition_mint(
        self, quote_id: str, new_state: MintQuoteState, *, lenient: bool = False
    ) -> MintQuote:
        async with self._lock:
            quote = await self.get_mint_quote(quote_id)
            if lenient and _MINT_ORDER[new_state] < _MINT_ORDER[quote.state]:
                return quote
            new_quote, record = transition_mint_quote(quote, new_state)
            if record.changed:
                await self.db.add_mint_quote(new_quote)
        if record.changed:
            logger.debug(
                "Mint quote %s: %s -> %s", quote_id, record.old_state, record.new_state
            )
            self.hub.publish(MintQuoteUpdate(new_quote))
        return new_quote

    async def _transition_melt(
        self,
        quote_id: str,
        new_state: MeltQuoteState,
        *,
        preimage: str | None = None,
        lenient: bool = False,
    ) -> MeltQuote:
        async with self._lock:
            quote = await self.get_melt_quote(quote_id)
            if lenient and (
                quote.state == MeltQuoteState.PAID
                or new_state not in _MELT_TRANSITIONS[quote.state] | {quote.state}
            ):
                return quote
            new_quote, record = transition_melt_quote(quote, new_state)
            if preimage and new_quote.payment_preimage != preimage:
                new_quote = replace(new_quote, payment_preimage=preimage)
                record = replace(record, changed=True)
            if record.changed:
                await self.db.add_melt_quote(new_quote)
        if record.changed:
            logger.debug(
                "Melt quote %s: %s -> %s", quote_id, record.old_state, record.new_state
            )
            self.hub.publish(MeltQuoteUpdate(new_quote))
        return new_quote

    async def mark_paid(self, quote_id: str) -> MintQuote:
        return await self._transition_mint(quote_id, MintQuoteState.PAID)

    async def mark_issued(self, quote_id: str) -> MintQuote:
        return await self._transition_mint(quote_id, MintQuoteState.ISSUED)

    async def begin_melt(self, quote_id: str) -> MeltQuote:
        """UNPAID -> PENDING. Only one caller can win this for a quote."""
        async with self._lock:
            quote = await self.get_melt_quote(quote_id)
            if quote.state != MeltQuoteState.UNPAID:
                raise InvalidStateTransition(
                    f"Melt quote {quote_id} is already {quote.state}",
                    operation="melt",
                    entity_id=quote_id,
                )
            new_quote, _ = transition_melt_quote(quote, MeltQuoteState.PENDING)
            await self.db.add_melt_quote(new_quote)
        self.hub.publish(MeltQuoteUpdate(new_quote))
        return new_quote

    async def finish_melt(
        self, quote_id: str, paid: bool, preimage: str | None = None
    ) -> MeltQuote:
        new_state = MeltQuoteState.PAID if paid else MeltQuoteState.UNPAID
        return await self._transition_melt(quote_id, new_state, preimage=preimage)

    # ───────────────────────── Remote state ─────────────────────────────────

    async def apply_mint_update(self, remote: MintQuote) -> MintQuote:
        return await self._transition_mint(remote.id, remote.state, lenient=True)

    async def apply_melt_update(self, remote: MeltQuote) -> MeltQuote:
        return await self._transition_melt(
            remote.id, remote.state, preimage=remote.payment_preimage, lenient=True
        )

    async def refresh_mint_quote(self, quote_id: str) -> MintQuote:
        quote = await self.get_mint_quote(quote_id)
        response = await self._mint(quote.mint_url).get_mint_quote(quote_id)
        remote = mint_quote_from_response(
            quote.mint_url, response, unit=quote.unit, request=quote.request
        )
        return await self.apply_mint_update(remote)

    async def refresh_melt_quote(self, quote_id: str) -> MeltQuote:
        quote = await self.get_melt_quote(quote_id)
        response = await self._mint(quote.mint_url).get_melt_quote(quote_id)
        remote = melt_quote_from_response(
            quote.mint_url, response, unit=quote.unit, request=quote.request
        )
        return await self.apply_melt_update(remote)

    async def poll_or_await(
        self, quote_id: str, *, timeout: float | None = None
    ) -> MintQuote | MeltQuote:
        """Wait until a quote reaches a settled state.

        Mint quotes are settled once PAID (or ISSUED); melt quotes once they
        leave PENDING. Returns the cached quote immediately when already
        settled. Raises TimeoutError when ``timeout`` elapses first.
        """
        if await self.db.get_mint_quote(quote_id) is not None:
            kind = SubscriptionKind.BOLT11_MINT_QUOTE
            mint_url = (await self.get_mint_quote(quote_id)).mint_url
        else:
            kind = SubscriptionKind.BOLT11_MELT_QUOTE
            mint_url = (await self.get_melt_quote(quote_id)).mint_url

        async def _current() -> MintQuote | MeltQuote | None:
            if kind == SubscriptionKind.BOLT11_MINT_QUOTE:
                mint_quote = await self.get_mint_quote(quote_id)
                return mint_quote if mint_quote.state != MintQuoteState.UNPAID else None
            melt_quote = await self.get_melt_quote(quote_id)
            return melt_quote if melt_quote.state != MeltQuoteState.PENDING else None

        settled = await _current()
        if settled is not None:
            return settled

        source = self.source_for(mint_url) if self.source_for else None
        async with self.hub.subscribe(
            SubscribeParams(kind=kind, filters=[quote_id]), source=source
        ) as subscription:
            async with asyncio.timeout(timeout):
                # State may have moved between the first check and subscribing
                while (settled := await _current()) is None:
                    update = await subscription.recv()
                    if isinstance(update, MintQuoteUpdate):
                        await self.apply_mint_update(update.quote)
                    elif isinstance(update, MeltQuoteUpdate):
                        await self.apply_melt_update(update.quote)
                    else:
                        raise TypeError(f"Unexpected notification: {update!r}")
        return settled
