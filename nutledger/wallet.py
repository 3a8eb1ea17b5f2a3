from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Mapping
from uuid import uuid4

from coincurve import PublicKey

from .conditions import SpendingConditions, sign_proof
from .config import WalletConfig, get_mints_from_env
from .crypto import verify_proof_dleq
from .database import MemoryDatabase, WalletDatabase
from .denominations import WalletStateStrategy, split
from .keysets import KeysetCache
from .mint import HttpMint, MintConnector, MintInfo, PostMeltQuoteResponse, supports_websocket
from .proofs import Outcome, ProofStore, Selection
from .quotes import QuoteManager, melt_quote_from_response
from .seed import DeterministicSecrets
from .subscriptions import (
    PollingSource,
    RemoteSource,
    Subscription,
    SubscriptionHub,
    WebSocketSource,
)
from .swap import PreparedOutputs, SwapEngine
from .token import Token, decode_token
from .types import (
    CurrencyUnit,
    InsufficientFunds,
    InvalidSignature,
    KeysetInfo,
    MeltOptions,
    MeltQuote,
    MeltQuoteState,
    MeltReceipt,
    MintQuote,
    MintQuoteState,
    OfflineExact,
    OfflineTolerance,
    OnlineExact,
    OnlineTolerance,
    Proof,
    ProofInfo,
    ProofState,
    QuoteNotPaid,
    ReceiveOptions,
    SendOptions,
    SplitTarget,
    SubscribeParams,
    Transaction,
    TransactionDirection,
    TransportFailure,
    WalletError,
    sum_proofs,
)

logger = logging.getLogger(__name__)

# Proofs per NUT-07 check_state request
CHECK_STATE_BATCH = 100

# Derived outputs per NUT-09 restore request, and empty batches before a keyset is done
RESTORE_BATCH = 25
RESTORE_EMPTY_BATCHES = 2


# ──────────────────────────────────────────────────────────────────────────────
# Wallet implementation
# ──────────────────────────────────────────────────────────────────────────────


class Wallet:
    """Cashu wallet: mints, sends, receives and melts ecash across mints.

    The wallet only holds its components. Proof bookkeeping lives in the
    ProofStore, keysets in the KeysetCache, quotes in the QuoteManager and
    notifications in the SubscriptionHub.
    """

    def __init__(
        self,
        *,
        mint_urls: list[str] | None = None,
        mints: Mapping[str, MintConnector] | None = None,
        db: WalletDatabase | None = None,
        unit: CurrencyUnit = CurrencyUnit.SAT,
        config: WalletConfig | None = None,
        mnemonic: str | None = None,
    ) -> None:
        self.config = config or WalletConfig()
        self.unit = unit
        self.db: WalletDatabase = db or MemoryDatabase()

        connectors = {url.rstrip("/"): mint for url, mint in (mints or {}).items()}
        urls = mint_urls or list(connectors) or get_mints_from_env()
        self.mint_urls: list[str] = list(dict.fromkeys(u.rstrip("/") for u in urls))
        if not self.mint_urls:
            raise WalletError("No mint URLs configured (pass mint_urls or set CASHU_MINTS)")

        self.mints: dict[str, MintConnector] = {}
        for url in self.mint_urls:
            self.mints[url] = connectors.get(url) or HttpMint(
                url,
                timeout=self.config.request_timeout,
                max_retries=self.config.max_retries,
                retry_backoff=self.config.retry_backoff,
            )

        self.hub = SubscriptionHub(max_queue_size=self.config.subscription_queue_size)
        self.keysets = KeysetCache(self.db, self.mints, ttl=self.config.keyset_ttl)
        self.proofs = ProofStore(self.db, self.hub, fee_for=self.keysets.fee_for)
        self.quotes = QuoteManager(
            self.db, self.mints, self.hub, source_for=self._source_for
        )
        # With a mnemonic, plain secrets are derived (NUT-13) and can be restored
        self.seed = DeterministicSecrets(mnemonic) if mnemonic is not None else None
        self.engine = SwapEngine(
            self.mints,
            self.keysets,
            require_dleq=self.config.require_dleq,
            seed=self.seed,
            db=self.db,
        )

        self._mint_info: dict[str, MintInfo] = {}
        # Blank outputs of melts still pending, to unblind change on settlement
        self._melt_outputs: dict[str, PreparedOutputs] = {}

    @classmethod
    async def create(
        cls,
        *,
        mint_urls: list[str] | None = None,
        mints: Mapping[str, MintConnector] | None = None,
        db: WalletDatabase | None = None,
        unit: CurrencyUnit = CurrencyUnit.SAT,
        config: WalletConfig | None = None,
        mnemonic: str | None = None,
    ) -> "Wallet":
        """Create a wallet and load its cached keysets from the database."""
        wallet = cls(
            mint_urls=mint_urls,
            mints=mints,
            db=db,
            unit=unit,
            config=config,
            mnemonic=mnemonic,
        )
        await wallet.load()
        return wallet

    async def load(self) -> None:
        await self.keysets.load()

    @property
    def primary_mint_url(self) -> str:
        return self.mint_urls[0]

    def _mint_url(self, mint_url: str | None) -> str:
        url = (mint_url or self.primary_mint_url).rstrip("/")
        if url not in self.mints:
            raise WalletError(f"Unknown mint: {url}", entity_id=url)
        return url

    def _timeout(self, timeout: float | None) -> float:
        return self.config.operation_timeout if timeout is None else timeout

    # ───────────────────────── Mint Info & Subscriptions ─────────────────────────────────

    async def get_mint_info(self, mint_url: str | None = None) -> MintInfo:
        """Mint information (NUT-06), cached per mint."""
        url = self._mint_url(mint_url)
        if url not in self._mint_info:
            self._mint_info[url] = await self.mints[url].get_info()
        return self._mint_info[url]

    def _source_for(self, mint_url: str) -> RemoteSource:
        poller = PollingSource(
            self.mints[mint_url],
            interval=self.config.poll_interval,
            max_interval=self.config.max_poll_interval,
        )
        info = self._mint_info.get(mint_url)
        if (
            self.config.use_websocket
            and isinstance(self.mints[mint_url], HttpMint)
            and info is not None
            and supports_websocket(info)
        ):
            return WebSocketSource(
                mint_url, poller, request_timeout=self.config.request_timeout
            )
        return poller

    async def _prepare_source(self, mint_url: str) -> None:
        if not self.config.use_websocket or mint_url in self._mint_info:
            return
        try:
            await self.get_mint_info(mint_url)
        except TransportFailure as e:
            logger.warning("Could not fetch info of %s, polling instead: %s", mint_url, e)

    async def subscribe(
        self, params: SubscribeParams, *, mint_url: str | None = None
    ) -> Subscription:
        """Subscribe to quote or proof state changes.

        Local changes are always delivered. Remote changes are watched over
        the mint's websocket when it supports NUT-17, otherwise by polling.
        """
        url = self._mint_url(mint_url)
        await self._prepare_source(url)
        return self.hub.subscribe(params, source=self._source_for(url))

    # ───────────────────────── Balance & History ─────────────────────────────────

    async def total_balance(self, unit: CurrencyUnit | None = None) -> int:
        """Sum of UNSPENT proofs across all mints for ``unit``."""
        return await self.proofs.balance(unit=unit or self.unit)

    async def balance_by_mint(self, unit: CurrencyUnit | None = None) -> dict[str, int]:
        unit = unit or self.unit
        return {url: await self.proofs.balance(url, unit) for url in self.mint_urls}

    async def get_proofs_by_states(
        self,
        states: Iterable[ProofState],
        *,
        mint_url: str | None = None,
        unit: CurrencyUnit | None = None,
    ) -> list[ProofInfo]:
        return await self.proofs.by_states(states, mint_url, unit)

    async def list_transactions(
        self, direction: TransactionDirection | None = None
    ) -> list[Transaction]:
        return await self.db.list_transactions(direction)

    async def _record(
        self,
        direction: TransactionDirection,
        mint_url: str,
        unit: CurrencyUnit,
        amount: int,
        fee: int,
        ys: list[str],
        *,
        memo: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Transaction:
        transaction = Transaction.new(
            mint_url=mint_url,
            direction=direction,
            amount=amount,
            fee=fee,
            unit=unit,
            ys=ys,
            memo=memo,
            metadata=metadata,
        )
        await self.db.add_transaction(transaction)
        return transaction

    async def _wallet_strategy(
        self, mint_url: str, unit: CurrencyUnit, keyset: KeysetInfo
    ) -> WalletStateStrategy:
        held = await self.proofs.by_states([ProofState.UNSPENT], mint_url, unit)
        return WalletStateStrategy(
            [info.amount for info in held],
            self.config.target_proof_count,
            keyset.denominations or None,
        )

    # ───────────────────────── Minting ─────────────────────────────────

    async def mint_quote(
        self,
        amount: int | None = None,
        description: str | None = None,
        *,
        mint_url: str | None = None,
        unit: CurrencyUnit | None = None,
    ) -> MintQuote:
        """Request a Lightning invoice that mints ``amount`` once paid."""
        url = self._mint_url(mint_url)
        async with asyncio.timeout(self._timeout(None)):
            return await self.quotes.create_mint_quote(
                url, amount, unit or self.unit, description
            )

    async def wait_for_mint_quote(
        self, quote_id: str, timeout: float | None = None
    ) -> MintQuote:
        """Wait until a mint quote is paid. Raises TimeoutError on timeout."""
        quote = await self.quotes.get_mint_quote(quote_id)
        await self._prepare_source(quote.mint_url)
        settled = await self.quotes.poll_or_await(quote_id, timeout=self._timeout(timeout))
        if not isinstance(settled, MintQuote):
            raise TypeError(f"Quote {quote_id} is not a mint quote")
        return settled

    async def mint(
        self,
        quote_id: str,
        split_target: SplitTarget | None = None,
        spending_conditions: SpendingConditions | None = None,
        *,
        timeout: float | None = None,
    ) -> list[Proof]:
        """Mint proofs for a paid quote.

        Args:
            quote_id: Id returned by mint_quote()
            split_target: Output denominations, wallet-state split by default
            spending_conditions: Optional P2PK/HTLC lock on the new proofs

        Returns:
            The newly stored proofs

        Raises:
            QuoteNotPaid: If the quote is not PAID at the mint
            InvalidSignature: If a returned signature fails verification
        """
        async with asyncio.timeout(self._timeout(timeout)):
            quote = await self.quotes.refresh_mint_quote(quote_id)
            if quote.state != MintQuoteState.PAID:
                raise QuoteNotPaid(
                    f"Mint quote {quote_id} is {quote.state}, not PAID",
                    operation="mint",
                    entity_id=quote_id,
                )

            amount = quote.amount
            if amount is None:
                amount = quote.amount_paid - quote.amount_issued
            keyset = await self.keysets.active_keyset(quote.mint_url, quote.unit)
            amounts = split(
                amount,
                split_target,
                await self._wallet_strategy(quote.mint_url, quote.unit, keyset),
            )
            outputs = await self.engine.prepare_outputs(
                amounts, keyset.id, spending_conditions
            )

            response = await self.mints[quote.mint_url].mint(
                quote=quote_id, outputs=outputs.to_request()
            )
            proofs = self.engine.unblind(outputs, response["signatures"], keyset.keys)

            await self.proofs.insert(proofs, quote.mint_url, quote.unit)
            await self.quotes.mark_issued(quote_id)
            await self._record(
                TransactionDirection.INCOMING,
                quote.mint_url,
                quote.unit,
                sum_proofs(proofs),
                0,
                [p.y for p in proofs],
                metadata={"quote": quote_id},
            )
        logger.info("Minted %d %s from quote %s", sum_proofs(proofs), quote.unit, quote_id)
        return proofs

    # ───────────────────────── Melting ─────────────────────────────────

    async def melt_quote(
        self,
        request: str,
        options: MeltOptions | None = None,
        *,
        mint_url: str | None = None,
        unit: CurrencyUnit | None = None,
    ) -> MeltQuote:
        """Ask the mint what paying a Lightning ``request`` costs."""
        url = self._mint_url(mint_url)
        async with asyncio.timeout(self._timeout(None)):
            return await self.quotes.create_melt_quote(
                url, request, unit or self.unit, options
            )

    async def melt(self, quote_id: str, *, timeout: float | None = None) -> MeltReceipt:
        """Pay the Lightning invoice of a melt quote with ecash.

        Proofs covering the amount, the fee reserve and the input fees are
        reserved and sent together with NUT-08 blank outputs for change.

        Args:
            quote_id: Id returned by melt_quote()
            timeout: Seconds to wait, including a payment the mint reports
                as pending

        Returns:
            A receipt. Its state is PENDING when the payment had not settled
            within the timeout; check_pending_melts() resolves it later.

        Raises:
            InvalidStateTransition: If the quote is not UNPAID (e.g. another
                melt of the same quote is running)
            InsufficientFunds: If the proofs cannot cover amount plus fees
            ProtocolError: If the mint rejects the melt

        Example:
            >>> quote = await wallet.melt_quote("lnbc...")
            >>> receipt = await wallet.melt(quote.id)
        """
        deadline = asyncio.get_running_loop().time() + self._timeout(timeout)
        quote = await self.quotes.begin_melt(quote_id)

        try:
            async with asyncio.timeout_at(deadline):
                keyset = await self.keysets.active_keyset(quote.mint_url, quote.unit)
                async with self.proofs.reserve(
                    quote.amount + quote.fee_reserve,
                    quote.mint_url,
                    quote.unit,
                    operation_id=_melt_operation(quote_id),
                    include_fees=True,
                ) as selection:
                    # Blank outputs cover everything the inputs overpay, fee reserve included
                    blank = await self.engine.blank_outputs(
                        selection.amount - selection.fee - quote.amount, keyset.id
                    )
                    logger.debug(
                        "Melting %d proofs (%d) for quote %s",
                        len(selection.proofs),
                        selection.amount,
                        quote_id,
                    )
                    try:
                        response = await self.mints[quote.mint_url].melt(
                            quote=quote_id,
                            inputs=[p.to_dict(include_dleq=False) for p in selection.proofs],
                            outputs=blank.to_request() or None,
                        )
                    except TransportFailure as e:
                        # The mint may have processed the melt; ask it
                        logger.warning("Melt %s interrupted (%s), checking quote", quote_id, e)
                        response = await self.mints[quote.mint_url].get_melt_quote(quote_id)

                    state = melt_quote_from_response(quote.mint_url, response).state
                    if state == MeltQuoteState.PAID:
                        return await self._settle_paid_melt(
                            quote, selection.operation_id, selection.proofs, response, blank
                        )
                    if state != MeltQuoteState.PENDING:
                        raise WalletError(
                            f"Mint did not pay melt quote {quote_id}",
                            operation="melt",
                            entity_id=quote_id,
                        )
                    self.proofs.keep_pending(selection.operation_id)
                    self._melt_outputs[quote_id] = blank
        except BaseException:
            current = await self.quotes.get_melt_quote(quote_id)
            if current.state == MeltQuoteState.PENDING and quote_id not in self._melt_outputs:
                await self.quotes.finish_melt(quote_id, False)
            raise

        logger.info("Melt %s is pending at the mint, waiting", quote_id)
        remaining = max(0.0, deadline - asyncio.get_running_loop().time())
        await self._prepare_source(quote.mint_url)
        try:
            await self.quotes.poll_or_await(quote_id, timeout=remaining)
        except TimeoutError:
            logger.warning("Melt %s still pending; resolve with check_pending_melts()", quote_id)
            return MeltReceipt(
                quote_id=quote_id,
                state=MeltQuoteState.PENDING,
                amount=quote.amount,
                fee_paid=0,
            )
        response = await self.mints[quote.mint_url].get_melt_quote(quote_id)
        return await self._resolve_melt(
            quote, selection.operation_id, selection.proofs, response
        )

    async def _resolve_melt(
        self,
        quote: MeltQuote,
        operation_id: str,
        inputs: list[Proof],
        response: PostMeltQuoteResponse,
    ) -> MeltReceipt:
        state = melt_quote_from_response(quote.mint_url, response).state
        if state == MeltQuoteState.PAID:
            blank = self._melt_outputs.pop(quote.id, None)
            return await self._settle_paid_melt(quote, operation_id, inputs, response, blank)
        if state == MeltQuoteState.UNPAID:
            self._melt_outputs.pop(quote.id, None)
            await self.proofs.commit(operation_id, Outcome.FAILURE)
            await self.quotes.finish_melt(quote.id, False)
            logger.info("Melt %s failed at the mint, proofs released", quote.id)
        return MeltReceipt(quote_id=quote.id, state=state, amount=quote.amount, fee_paid=0)

    async def _settle_paid_melt(
        self,
        quote: MeltQuote,
        operation_id: str,
        inputs: list[Proof],
        response: PostMeltQuoteResponse,
        blank: PreparedOutputs | None,
    ) -> MeltReceipt:
        await self.proofs.commit(operation_id, Outcome.SUCCESS)
        preimage = response.get("payment_preimage")
        await self.quotes.finish_melt(quote.id, True, preimage)

        change: list[Proof] = []
        signatures = response.get("change") or []
        if blank is not None and signatures:
            keys = await self.keysets.keys(quote.mint_url, blank.keyset_id)
            try:
                change = self.engine.unblind(blank, signatures, keys)
            except InvalidSignature:
                # The payment happened; record it without the bad change
                await self._record_melt(quote, inputs, sum_proofs(inputs) - quote.amount)
                raise
            await self.proofs.insert(change, quote.mint_url, quote.unit)

        fee_paid = sum_proofs(inputs) - quote.amount - sum_proofs(change)
        await self._record_melt(quote, inputs, fee_paid)
        logger.info(
            "Melted %d %s for quote %s (fee %d)", quote.amount, quote.unit, quote.id, fee_paid
        )
        return MeltReceipt(
            quote_id=quote.id,
            state=MeltQuoteState.PAID,
            amount=quote.amount,
            fee_paid=fee_paid,
            preimage=preimage,
            change=change,
        )

    async def _record_melt(self, quote: MeltQuote, inputs: list[Proof], fee: int) -> None:
        await self._record(
            TransactionDirection.OUTGOING,
            quote.mint_url,
            quote.unit,
            quote.amount,
            fee,
            [p.y for p in inputs],
            metadata={"quote": quote.id},
        )

    async def check_pending_melts(self) -> list[MeltReceipt]:
        """Resolve melts the mint last reported as pending."""
        receipts = []
        operations = await self.proofs.pending_operations()
        for quote in await self.quotes.list_melt_quotes(MeltQuoteState.PENDING):
            operation_id = next(
                (op for op in operations if _is_melt_operation(op, quote.id)), None
            )
            if operation_id is None:
                # No proofs left in flight, only the quote needs updating
                await self.quotes.refresh_melt_quote(quote.id)
                continue
            inputs = [info.proof for info in await self.proofs.get(operations[operation_id])]
            response = await self.mints[quote.mint_url].get_melt_quote(quote.id)
            receipts.append(await self._resolve_melt(quote, operation_id, inputs, response))
        return receipts

    # ───────────────────────── Send ─────────────────────────────────

    async def send(
        self,
        amount: int,
        options: SendOptions | None = None,
        *,
        mint_url: str | None = None,
        unit: CurrencyUnit | None = None,
        timeout: float | None = None,
    ) -> Token:
        """Create a token worth ``amount``.

        Offline kinds only use proofs already held; online kinds swap at the
        mint when no acceptable selection exists or when the token must be
        locked. Sent proofs stay in the store as PENDING_SPENT until the
        recipient claims them (see check_proofs_spent and reclaim_unspent).

        Args:
            amount: Amount to send
            options: Memo, spending conditions, split target, send kind,
                whether to include the recipient's redeem fee, proof limit

        Returns:
            The token to hand to the recipient

        Raises:
            InsufficientFunds: If the balance cannot cover the amount, or an
                offline send finds no acceptable selection
            AmountMismatch: If split values do not sum to the amount
        """
        options = options or SendOptions()
        url = self._mint_url(mint_url)
        unit = unit or self.unit
        kind = options.send_kind
        if isinstance(kind, (OnlineExact, OfflineExact)):
            tolerance = 0
        elif isinstance(kind, (OnlineTolerance, OfflineTolerance)):
            tolerance = kind.tolerance
        else:
            raise TypeError(f"Unknown send kind: {kind!r}")
        offline = isinstance(kind, (OfflineExact, OfflineTolerance))

        # Explicit split amounts are checked before anything is reserved
        split(amount, options.split_target)
        from_held = options.conditions is None and options.split_target.kind == "none"
        if offline and not from_held:
            raise WalletError(
                "Locked tokens and split targets need a swap, use an online send kind"
            )

        async with asyncio.timeout(self._timeout(timeout)):
            if from_held:
                token = await self._send_from_held(amount, url, unit, options, tolerance)
                if token is not None:
                    return token
                if offline:
                    raise InsufficientFunds(
                        f"No selection of held proofs matches {amount} {unit}",
                        operation="send",
                    )
            return await self._send_with_swap(amount, url, unit, options)

    async def _send_from_held(
        self,
        amount: int,
        mint_url: str,
        unit: CurrencyUnit,
        options: SendOptions,
        tolerance: int,
    ) -> Token | None:
        async with self.proofs.reserve(
            amount,
            mint_url,
            unit,
            include_fees=options.include_fee,
            max_proofs=options.max_proofs,
        ) as selection:
            excess = selection.amount - amount - selection.fee
            if excess > tolerance:
                await self.proofs.commit(selection.operation_id, Outcome.FAILURE)
                return None
            token = self._token(selection.proofs, mint_url, unit, options)
            await self.proofs.commit(
                selection.operation_id, Outcome.SUCCESS, spent_state=ProofState.PENDING_SPENT
            )
        await self._record_send(selection, amount, selection.fee, options)
        return token

    async def _send_with_swap(
        self, amount: int, mint_url: str, unit: CurrencyUnit, options: SendOptions
    ) -> Token:
        keyset = await self.keysets.active_keyset(mint_url, unit)
        send_amounts = split(amount, options.split_target)
        if options.include_fee:
            # The proofs covering the redeem fee carry a fee of their own
            extra: list[int] = []
            while True:
                redeem_fee = self.keysets.fee_for_keyset(
                    mint_url, keyset.id, len(send_amounts) + len(extra)
                )
                if redeem_fee <= sum(extra):
                    break
                extra = split(redeem_fee)
            send_amounts = sorted(send_amounts + extra)
        send_total = sum(send_amounts)

        async with self.proofs.reserve(
            send_total,
            mint_url,
            unit,
            include_fees=True,
            max_proofs=options.max_proofs,
        ) as selection:
            keep_total = selection.amount - send_total - selection.fee
            keep_amounts = (
                split(keep_total, None, await self._wallet_strategy(mint_url, unit, keyset))
                if keep_total
                else []
            )
            keep_outputs = await self.engine.prepare_outputs(keep_amounts, keyset.id)
            send_outputs = await self.engine.prepare_outputs(
                send_amounts, keyset.id, options.conditions
            )
            keep, send = await self.engine.swap_outputs(
                mint_url, selection.proofs, [keep_outputs, send_outputs]
            )
            token = self._token(send, mint_url, unit, options)

            await self.proofs.commit(selection.operation_id, Outcome.SUCCESS)
            await self.proofs.insert(keep, mint_url, unit)
            await self.proofs.insert(send, mint_url, unit, ProofState.PENDING_SPENT)

        await self._record_send(
            selection, amount, selection.fee + send_total - amount, options, ys=[p.y for p in send]
        )
        return token

    def _token(
        self, proofs: list[Proof], mint_url: str, unit: CurrencyUnit, options: SendOptions
    ) -> Token:
        for keyset_id in {p.id for p in proofs}:
            self.keysets.get_cached(mint_url, keyset_id)
        memo = options.memo.memo if options.memo and options.memo.include_memo else None
        return Token(mint_url=mint_url, unit=unit, proofs=list(proofs), memo=memo)

    async def _record_send(
        self,
        selection: Selection,
        amount: int,
        fee: int,
        options: SendOptions,
        *,
        ys: list[str] | None = None,
    ) -> None:
        await self._record(
            TransactionDirection.OUTGOING,
            selection.mint_url,
            selection.unit,
            amount,
            fee,
            ys if ys is not None else selection.ys,
            memo=options.memo.memo if options.memo else None,
            metadata=options.metadata,
        )
        logger.info("Sent %d %s from %s", amount, selection.unit, selection.mint_url)

    # ───────────────────────── Receive ─────────────────────────────────

    async def receive(
        self,
        token: Token | str,
        options: ReceiveOptions | None = None,
        *,
        timeout: float | None = None,
    ) -> list[Proof]:
        """Redeem a token by swapping its proofs for fresh ones.

        Nothing is stored unless the swap succeeds.

        Raises:
            MalformedToken: If the token text cannot be parsed
            UnknownKeyset: If a proof's keyset is unknown to the mint
            InvalidSpendingConditions: If locked proofs cannot be unlocked
                with the given keys and preimages
            InvalidSignature: If a carried DLEQ proof does not verify
        """
        options = options or ReceiveOptions()
        if isinstance(token, str):
            token = decode_token(token)
        url = self._mint_url(token.mint_url)

        async with asyncio.timeout(self._timeout(timeout)):
            for keyset_id in sorted(token.keyset_ids):
                keyset = await self.keysets.lookup(url, keyset_id)
                if keyset.unit != token.unit:
                    raise WalletError(
                        f"Keyset {keyset_id} is {keyset.unit}, token is {token.unit}",
                        operation="receive",
                        entity_id=keyset_id,
                    )
            await self._verify_token_dleq(url, token.proofs)

            inputs = [
                sign_proof(p, options.p2pk_signing_keys, options.preimages)
                for p in token.proofs
            ]
            fee = self.keysets.fee_for(url, inputs)
            total = token.amount - fee
            if total <= 0:
                raise InsufficientFunds(
                    f"Token amount {token.amount} does not cover the fee {fee}",
                    operation="receive",
                )

            keyset = await self.keysets.active_keyset(url, token.unit)
            amounts = split(
                total,
                options.split_target,
                await self._wallet_strategy(url, token.unit, keyset),
            )
            proofs = await self.engine.swap(url, inputs, amounts, keyset_id=keyset.id)

            await self.proofs.insert(proofs, url, token.unit)
            # Our own token coming back: its proofs are spent now
            own = await self.db.get_proofs(ys=[p.y for p in token.proofs])
            if own:
                await self.proofs.mark([info.y for info in own], ProofState.SPENT)
            await self._record(
                TransactionDirection.INCOMING,
                url,
                token.unit,
                total,
                fee,
                [p.y for p in proofs],
                memo=token.memo,
                metadata=options.metadata,
            )
        logger.info("Received %d %s from %s", total, token.unit, url)
        return proofs

    async def _verify_token_dleq(self, mint_url: str, proofs: list[Proof]) -> None:
        for proof in proofs:
            if proof.dleq is None or proof.dleq.r is None:
                if self.config.require_dleq:
                    raise InvalidSignature(
                        f"Proof {proof.y} carries no DLEQ proof", operation="receive"
                    )
                continue
            keys = await self.keysets.keys(mint_url, proof.id)
            pubkey = keys.get(proof.amount)
            if pubkey is None:
                raise InvalidSignature(
                    f"No mint key for amount {proof.amount} in keyset {proof.id}",
                    operation="receive",
                )
            try:
                valid = verify_proof_dleq(
                    proof.secret,
                    PublicKey(bytes.fromhex(proof.C)),
                    bytes.fromhex(proof.dleq.r),
                    bytes.fromhex(proof.dleq.e),
                    bytes.fromhex(proof.dleq.s),
                    PublicKey(bytes.fromhex(pubkey)),
                )
            except ValueError:
                valid = False
            if not valid:
                raise InvalidSignature(
                    f"DLEQ proof of {proof.y} is invalid", operation="receive"
                )

    # ───────────────────────── Proof Management ─────────────────────────────────

    async def swap(
        self,
        split_target: SplitTarget | None = None,
        *,
        mint_url: str | None = None,
        unit: CurrencyUnit | None = None,
        timeout: float | None = None,
    ) -> list[Proof]:
        """Re-denominate all UNSPENT proofs of one mint and unit."""
        url = self._mint_url(mint_url)
        unit = unit or self.unit
        held = await self.proofs.by_states([ProofState.UNSPENT], url, unit)
        if not held:
            return []

        async with asyncio.timeout(self._timeout(timeout)):
            keyset = await self.keysets.active_keyset(url, unit)
            async with self.proofs.reserve_ys([info.y for info in held]) as selection:
                fee = self.keysets.fee_for(url, selection.proofs)
                strategy = WalletStateStrategy(
                    [], self.config.target_proof_count, keyset.denominations or None
                )
                amounts = split(selection.amount - fee, split_target, strategy)
                proofs = await self.engine.swap(
                    url, selection.proofs, amounts, keyset_id=keyset.id
                )
                await self.proofs.commit(selection.operation_id, Outcome.SUCCESS)
                await self.proofs.insert(proofs, url, unit)
        logger.info("Swapped %d proofs into %d at %s", len(held), len(proofs), url)
        return proofs

    async def _remote_states(self, mint_url: str, ys: list[str]) -> dict[str, str]:
        states: dict[str, str] = {}
        for start in range(0, len(ys), CHECK_STATE_BATCH):
            response = await self.mints[mint_url].check_state(
                Ys=ys[start : start + CHECK_STATE_BATCH]
            )
            for entry in response["states"]:
                states[entry["Y"]] = entry["state"]
        return states

    async def check_proofs_spent(self) -> list[ProofInfo]:
        """Mark proofs the mint reports as spent (NUT-07).

        Returns the rows that changed.
        """
        updated: list[ProofInfo] = []
        for url in self.mint_urls:
            rows = await self.proofs.by_states(
                [ProofState.UNSPENT, ProofState.PENDING_SPENT], url
            )
            if not rows:
                continue
            states = await self._remote_states(url, [info.y for info in rows])
            spent = [y for y, state in states.items() if state == ProofState.SPENT.value]
            if spent:
                updated += await self.proofs.mark(spent, ProofState.SPENT)
                logger.info("%d proofs at %s were spent", len(spent), url)
        return updated

    async def reclaim_unspent(self, *, timeout: float | None = None) -> list[Proof]:
        """Take back sent proofs the recipient never claimed."""
        reclaimed: list[Proof] = []
        for url in self.mint_urls:
            rows = await self.proofs.by_states([ProofState.PENDING_SPENT], url)
            if not rows:
                continue
            states = await self._remote_states(url, [info.y for info in rows])
            spent = [y for y, s in states.items() if s == ProofState.SPENT.value]
            if spent:
                await self.proofs.mark(spent, ProofState.SPENT)
            unclaimed = [info for info in rows if states.get(info.y) == ProofState.UNSPENT.value]
            if not unclaimed:
                continue

            await self.proofs.mark([info.y for info in unclaimed], ProofState.UNSPENT)
            by_unit: dict[CurrencyUnit, list[ProofInfo]] = {}
            for info in unclaimed:
                by_unit.setdefault(info.unit, []).append(info)
            for unit, infos in by_unit.items():
                # Swapping invalidates the token the recipient holds
                async with asyncio.timeout(self._timeout(timeout)):
                    keyset = await self.keysets.active_keyset(url, unit)
                    async with self.proofs.reserve_ys([i.y for i in infos]) as selection:
                        total = selection.amount - self.keysets.fee_for(url, selection.proofs)
                        proofs = await self.engine.swap(
                            url,
                            selection.proofs,
                            split(total, None, await self._wallet_strategy(url, unit, keyset)),
                            keyset_id=keyset.id,
                        )
                        await self.proofs.commit(selection.operation_id, Outcome.SUCCESS)
                        await self.proofs.insert(proofs, url, unit)
                reclaimed += proofs
            logger.info("Reclaimed %d unclaimed proofs at %s", len(unclaimed), url)
        return reclaimed

    # ───────────────────────── Restore ─────────────────────────────────

    async def restore(
        self,
        *,
        mint_url: str | None = None,
        batch: int = RESTORE_BATCH,
        empty_batches: int = RESTORE_EMPTY_BATCHES,
        timeout: float | None = None,
    ) -> list[Proof]:
        """Recover proofs minted from this wallet's mnemonic (NUT-09, NUT-13).

        Each keyset of the mint is scanned in batches of derived outputs until
        ``empty_batches`` batches in a row come back empty. Unspent proofs the
        wallet does not hold yet are stored, and every keyset counter is moved
        past the last output the mint knew so new secrets are never reused.

        Returns:
            The proofs added to the wallet

        Raises:
            WalletError: If the wallet was created without a mnemonic
        """
        if self.seed is None:
            raise WalletError(
                "Restoring needs a wallet created with a mnemonic", operation="restore"
            )
        if batch < 1 or empty_batches < 1:
            raise ValueError("batch and empty_batches must be at least 1")
        url = self._mint_url(mint_url)

        restored: list[Proof] = []
        async with asyncio.timeout(self._timeout(timeout)):
            for keyset in await self.keysets.refresh(url):
                found: list[Proof] = []
                next_counter = 0
                start = 0
                empty = 0
                while empty < empty_batches:
                    proofs, highest = await self.engine.restore(
                        url, keyset.id, start, batch
                    )
                    if highest is None:
                        empty += 1
                    else:
                        empty = 0
                        found += proofs
                        next_counter = highest + 1
                    start += batch

                current = await self.db.get_keyset_counter(keyset.id)
                if next_counter > current:
                    await self.db.increment_keyset_counter(
                        keyset.id, next_counter - current
                    )
                if not found:
                    continue

                states = await self._remote_states(url, [p.y for p in found])
                stored = await self.db.get_proofs(ys=[p.y for p in found])
                known = {info.y for info in stored}
                fresh = [
                    p
                    for p in found
                    if states.get(p.y) == ProofState.UNSPENT.value and p.y not in known
                ]
                if fresh:
                    await self.proofs.insert(fresh, url, keyset.unit)
                    restored += fresh
                logger.info(
                    "Keyset %s: %d proofs found, %d restored, counter at %d",
                    keyset.id,
                    len(found),
                    len(fresh),
                    max(next_counter, current),
                )
        return restored

    # ───────────────────────── Cleanup ─────────────────────────────────

    async def aclose(self) -> None:
        """Close subscriptions and mint connections."""
        await self.hub.aclose()
        for mint in self.mints.values():
            await mint.aclose()

    # ───────────────────────── Async context manager ─────────────────────────────────

    async def __aenter__(self) -> "Wallet":
        await self.load()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def _melt_operation(quote_id: str) -> str:
    return f"melt-{quote_id}-{uuid4().hex[:16]}"


def _is_melt_operation(operation_id: str, quote_id: str) -> bool:
    return operation_id.startswith(f"melt-{quote_id}-")
