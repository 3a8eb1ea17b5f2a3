"""Wallet persistence: the WalletDatabase protocol and two simple backends."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable, Protocol, runtime_checkable

from .types import (
    CurrencyUnit,
    KeysetInfo,
    MeltQuote,
    MintQuote,
    Proof,
    ProofInfo,
    ProofState,
    Transaction,
    TransactionDirection,
    WalletError,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class WalletDatabase(Protocol):
    """Storage used by the wallet components.

    ``update_proofs`` replaces the stored rows for every given proof as one
    atomic batch: either all rows change or none do.
    """

    async def add_proofs(self, proofs: list[ProofInfo]) -> None: ...

    async def update_proofs(self, proofs: list[ProofInfo]) -> None: ...

    async def get_proofs(
        self,
        *,
        mint_url: str | None = None,
        unit: CurrencyUnit | None = None,
        states: Iterable[ProofState] | None = None,
        ys: Iterable[str] | None = None,
    ) -> list[ProofInfo]: ...

    async def add_mint_quote(self, quote: MintQuote) -> None: ...

    async def get_mint_quote(self, quote_id: str) -> MintQuote | None: ...

    async def list_mint_quotes(self) -> list[MintQuote]: ...

    async def add_melt_quote(self, quote: MeltQuote) -> None: ...

    async def get_melt_quote(self, quote_id: str) -> MeltQuote | None: ...

    async def list_melt_quotes(self) -> list[MeltQuote]: ...

    async def add_transaction(self, transaction: Transaction) -> None: ...

    async def list_transactions(
        self, direction: TransactionDirection | None = None
    ) -> list[Transaction]: ...

    async def add_keysets(self, keysets: list[KeysetInfo]) -> None: ...

    async def get_keysets(self, mint_url: str | None = None) -> list[KeysetInfo]: ...

    async def increment_keyset_counter(self, keyset_id: str, count: int) -> int: ...

    async def get_keyset_counter(self, keyset_id: str) -> int: ...


class MemoryDatabase:
    """In-process storage. Nothing survives the process."""

    def __init__(self) -> None:
        self._proofs: dict[str, ProofInfo] = {}
        self._mint_quotes: dict[str, MintQuote] = {}
        self._melt_quotes: dict[str, MeltQuote] = {}
        self._transactions: dict[str, Transaction] = {}
        self._keysets: dict[tuple[str, str], KeysetInfo] = {}
        self._counters: dict[str, int] = {}

    def _changed(self) -> None:
        """Hook for persistent subclasses."""

    # ───────────────────────── Proofs ─────────────────────────────────

    async def add_proofs(self, proofs: list[ProofInfo]) -> None:
        duplicates = [p.y for p in proofs if p.y in self._proofs]
        if duplicates:
            raise WalletError(
                f"Proofs already stored: {duplicates}", operation="add_proofs"
            )
        for info in proofs:
            self._proofs[info.y] = info
        self._changed()

    async def update_proofs(self, proofs: list[ProofInfo]) -> None:
        missing = [p.y for p in proofs if p.y not in self._proofs]
        if missing:
            raise WalletError(
                f"Cannot update unknown proofs: {missing}", operation="update_proofs"
            )
        for info in proofs:
            self._proofs[info.y] = info
        self._changed()

    async def get_proofs(
        self,
        *,
        mint_url: str | None = None,
        unit: CurrencyUnit | None = None,
        states: Iterable[ProofState] | None = None,
        ys: Iterable[str] | None = None,
    ) -> list[ProofInfo]:
        if ys is not None:
            candidates = [self._proofs[y] for y in ys if y in self._proofs]
        else:
            candidates = list(self._proofs.values())
        state_set = set(states) if states is not None else None
        return [
            info
            for info in candidates
            if (mint_url is None or info.mint_url == mint_url)
            and (unit is None or info.unit == unit)
            and (state_set is None or info.state in state_set)
        ]

    # ───────────────────────── Quotes ─────────────────────────────────

    async def add_mint_quote(self, quote: MintQuote) -> None:
        self._mint_quotes[quote.id] = quote
        self._changed()

    async def get_mint_quote(self, quote_id: str) -> MintQuote | None:
        return self._mint_quotes.get(quote_id)

    async def list_mint_quotes(self) -> list[MintQuote]:
        return list(self._mint_quotes.values())

    async def add_melt_quote(self, quote: MeltQuote) -> None:
        self._melt_quotes[quote.id] = quote
        self._changed()

    async def get_melt_quote(self, quote_id: str) -> MeltQuote | None:
        return self._melt_quotes.get(quote_id)

    async def list_melt_quotes(self) -> list[MeltQuote]:
        return list(self._melt_quotes.values())

    # ───────────────────────── Transactions ─────────────────────────────────

    async def add_transaction(self, transaction: Transaction) -> None:
        self._transactions[transaction.id] = transaction
        self._changed()

    async def list_transactions(
        self, direction: TransactionDirection | None = None
    ) -> list[Transaction]:
        transactions = sorted(self._transactions.values(), key=lambda t: t.timestamp)
        if direction is None:
            return transactions
        return [t for t in transactions if t.direction == direction]

    # ───────────────────────── Keysets ─────────────────────────────────

    async def add_keysets(self, keysets: list[KeysetInfo]) -> None:
        for keyset in keysets:
            self._keysets[(keyset.mint_url, keyset.id)] = keyset
        self._changed()

    async def get_keysets(self, mint_url: str | None = None) -> list[KeysetInfo]:
        return [
            k for k in self._keysets.values() if mint_url is None or k.mint_url == mint_url
        ]

    # ───────────────────────── Secret counters ─────────────────────────────────

    async def increment_keyset_counter(self, keyset_id: str, count: int) -> int:
        """Advance the derivation counter of a keyset, returning its old value."""
        if count < 0:
            raise ValueError(f"Counter increment must not be negative: {count}")
        current = self._counters.get(keyset_id, 0)
        self._counters[keyset_id] = current + count
        self._changed()
        return current

    async def get_keyset_counter(self, keyset_id: str) -> int:
        return self._counters.get(keyset_id, 0)


# ──────────────────────────────────────────────────────────────────────────────
# JSON file backend
# ──────────────────────────────────────────────────────────────────────────────


def _proof_info_to_dict(info: ProofInfo) -> dict[str, Any]:
    return {
        "proof": info.proof.to_dict(),
        "y": info.y,
        "mint_url": info.mint_url,
        "unit": info.unit.value,
        "state": info.state.value,
        "operation_id": info.operation_id,
    }


def _proof_info_from_dict(data: dict[str, Any]) -> ProofInfo:
    return ProofInfo(
        proof=Proof.from_dict(data["proof"]),
        y=data["y"],
        mint_url=data["mint_url"],
        unit=CurrencyUnit.parse(data["unit"]),
        state=ProofState(data["state"]),
        operation_id=data.get("operation_id"),
    )


def _keyset_to_dict(keyset: KeysetInfo) -> dict[str, Any]:
    return {
        "id": keyset.id,
        "mint_url": keyset.mint_url,
        "unit": keyset.unit.value,
        "active": keyset.active,
        "input_fee_ppk": keyset.input_fee_ppk,
        "keys": {str(amount): pubkey for amount, pubkey in keyset.keys.items()},
        "final_expiry": keyset.final_expiry,
    }


def _keyset_from_dict(data: dict[str, Any]) -> KeysetInfo:
    return KeysetInfo(
        id=data["id"],
        mint_url=data["mint_url"],
        unit=CurrencyUnit.parse(data["unit"]),
        active=data["active"],
        input_fee_ppk=data.get("input_fee_ppk", 0),
        keys={int(amount): pubkey for amount, pubkey in data.get("keys", {}).items()},
        final_expiry=data.get("final_expiry"),
    )


class JsonFileDatabase(MemoryDatabase):
    """MemoryDatabase that rewrites a JSON file after every change.

    The file is replaced atomically so a crash never leaves half a batch on
    disk.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        data = json.loads(self.path.read_text())
        for row in data.get("proofs", []):
            info = _proof_info_from_dict(row)
            self._proofs[info.y] = info
        for row in data.get("mint_quotes", []):
            quote = MintQuote.from_dict(row)
            self._mint_quotes[quote.id] = quote
        for row in data.get("melt_quotes", []):
            melt_quote = MeltQuote.from_dict(row)
            self._melt_quotes[melt_quote.id] = melt_quote
        for row in data.get("transactions", []):
            transaction = Transaction.from_dict(row)
            self._transactions[transaction.id] = transaction
        for row in data.get("keysets", []):
            keyset = _keyset_from_dict(row)
            self._keysets[(keyset.mint_url, keyset.id)] = keyset
        self._counters.update(data.get("counters", {}))
        logger.debug("Loaded %d proofs from %s", len(self._proofs), self.path)

    def _changed(self) -> None:
        data = {
            "proofs": [_proof_info_to_dict(p) for p in self._proofs.values()],
            "mint_quotes": [q.to_dict() for q in self._mint_quotes.values()],
            "melt_quotes": [q.to_dict() for q in self._melt_quotes.values()],
            "transactions": [t.to_dict() for t in self._transactions.values()],
            "keysets": [_keyset_to_dict(k) for k in self._keysets.values()],
            "counters": self._counters,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            os.unlink(tmp_path)
            raise
