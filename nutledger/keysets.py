"""Keyset cache: mint keysets, their public keys and input fees (NUT-01/02)."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Iterable, Mapping

from .crypto import derive_keyset_id
from .database import WalletDatabase
from .mint import InvalidKeysetError, MintConnector
from .types import (
    CurrencyUnit,
    KeysetInfo,
    Proof,
    UnknownKeyset,
    WalletError,
    validate_keyset_id_format,
)

logger = logging.getLogger(__name__)


def calculate_input_fee(fees_ppk: Iterable[int]) -> int:
    """NUT-02 input fee: ceil(sum(input_fee_ppk) / 1000)."""
    return (sum(fees_ppk) + 999) // 1000


class KeysetCache:
    """Per-mint view of keysets, refreshed from the mint when stale.

    Inactive keysets are kept so proofs issued under them stay redeemable.
    """

    def __init__(
        self,
        db: WalletDatabase,
        mints: Mapping[str, MintConnector],
        *,
        ttl: float = 3600.0,
    ) -> None:
        self.db = db
        self.mints = mints
        self.ttl = ttl
        self._keysets: dict[str, dict[str, KeysetInfo]] = {}
        self._refreshed_at: dict[str, float] = {}
        self._refreshing: dict[str, asyncio.Task[list[KeysetInfo]]] = {}

    async def load(self) -> None:
        """Populate the cache from the database."""
        for keyset in await self.db.get_keysets():
            self._keysets.setdefault(keyset.mint_url, {})[keyset.id] = keyset

    def _mint(self, mint_url: str) -> MintConnector:
        try:
            return self.mints[mint_url]
        except KeyError:
            raise WalletError(f"Unknown mint: {mint_url}") from None

    def cached(self, mint_url: str) -> list[KeysetInfo]:
        return list(self._keysets.get(mint_url, {}).values())

    def is_stale(self, mint_url: str) -> bool:
        refreshed = self._refreshed_at.get(mint_url)
        return refreshed is None or time.monotonic() - refreshed > self.ttl

    # ───────────────────────── Refresh ─────────────────────────────────

    async def refresh(self, mint_url: str) -> list[KeysetInfo]:
        """Fetch the keyset list from the mint. Concurrent callers share one fetch."""
        task = self._refreshing.get(mint_url)
        if task is None:
            task = asyncio.create_task(self._refresh(mint_url))
            self._refreshing[mint_url] = task
            task.add_done_callback(lambda _: self._refreshing.pop(mint_url, None))
        return await asyncio.shield(task)

    async def _refresh(self, mint_url: str) -> list[KeysetInfo]:
        entries = await self._mint(mint_url).get_keysets()
        known = self._keysets.setdefault(mint_url, {})
        updated: list[KeysetInfo] = []
        for entry in entries:
            keyset_id = entry["id"].lower()
            if not validate_keyset_id_format(keyset_id):
                logger.debug("Skipping keyset with unsupported id %s", entry["id"])
                continue
            previous = known.get(keyset_id)
            keyset = KeysetInfo(
                id=keyset_id,
                mint_url=mint_url,
                unit=CurrencyUnit.parse(entry["unit"]),
                active=bool(entry.get("active", True)),
                input_fee_ppk=int(entry.get("input_fee_ppk", 0) or 0),
                keys=previous.keys if previous else {},
                final_expiry=entry.get("final_expiry"),
            )
            known[keyset_id] = keyset
            updated.append(keyset)
        # Keysets the mint no longer lists are retained but marked inactive
        listed = {k.id for k in updated}
        for keyset_id, keyset in known.items():
            if keyset_id not in listed and keyset.active:
                keyset.active = False
                updated.append(keyset)

        await self.db.add_keysets(updated)
        self._refreshed_at[mint_url] = time.monotonic()
        logger.debug("Refreshed %d keysets for %s", len(updated), mint_url)
        return self.cached(mint_url)

    # ───────────────────────── Lookup ─────────────────────────────────

    async def lookup(self, mint_url: str, keyset_id: str) -> KeysetInfo:
        """Find a keyset, refreshing once if it is not known yet."""
        keyset_id = keyset_id.lower()
        keyset = self._keysets.get(mint_url, {}).get(keyset_id)
        if keyset is None:
            await self.refresh(mint_url)
            keyset = self._keysets.get(mint_url, {}).get(keyset_id)
        if keyset is None:
            raise UnknownKeyset(
                f"Keyset {keyset_id} is not known to {mint_url}",
                operation="lookup",
                entity_id=keyset_id,
            )
        return keyset

    def get_cached(self, mint_url: str, keyset_id: str) -> KeysetInfo:
        keyset = self._keysets.get(mint_url, {}).get(keyset_id.lower())
        if keyset is None:
            raise UnknownKeyset(
                f"Keyset {keyset_id} is not cached for {mint_url}", entity_id=keyset_id
            )
        return keyset

    async def keys(self, mint_url: str, keyset_id: str) -> dict[int, str]:
        """Public keys of a keyset, fetched on first use."""
        keyset = await self.lookup(mint_url, keyset_id)
        if keyset.keys:
            return keyset.keys

        fetched = await self._mint(mint_url).get_keys(keyset.id)
        matching = [k for k in fetched if k["id"].lower() == keyset.id]
        if not matching:
            raise UnknownKeyset(
                f"Mint {mint_url} returned no keys for keyset {keyset.id}",
                entity_id=keyset.id,
            )
        keys = {int(amount): pubkey for amount, pubkey in matching[0]["keys"].items()}
        if keyset.id.startswith("00") and derive_keyset_id(keys) != keyset.id:
            raise InvalidKeysetError(
                f"Keys of keyset {keyset.id} do not match its id", entity_id=keyset.id
            )
        keyset.keys = keys
        keyset.denominations = sorted(keys)
        await self.db.add_keysets([keyset])
        return keys

    async def active_keyset(self, mint_url: str, unit: CurrencyUnit) -> KeysetInfo:
        """The active keyset for ``unit`` with the lowest input fee, keys loaded."""
        if self.is_stale(mint_url) or not self._active(mint_url, unit):
            await self.refresh(mint_url)
        candidates = self._active(mint_url, unit)
        if not candidates:
            raise WalletError(
                f"Mint {mint_url} has no active keyset for unit {unit}",
                operation="active_keyset",
            )
        keyset = min(candidates, key=lambda k: k.input_fee_ppk)
        await self.keys(mint_url, keyset.id)
        return keyset

    def _active(self, mint_url: str, unit: CurrencyUnit) -> list[KeysetInfo]:
        return [k for k in self.cached(mint_url) if k.active and k.unit == unit]

    # ───────────────────────── Fees ─────────────────────────────────

    def fee_for(self, mint_url: str, proofs: Iterable[Proof]) -> int:
        """Input fee for spending ``proofs`` at ``mint_url``."""
        return calculate_input_fee(
            self.get_cached(mint_url, proof.id).input_fee_ppk for proof in proofs
        )

    def fee_for_keyset(self, mint_url: str, keyset_id: str, count: int) -> int:
        return calculate_input_fee(
            [self.get_cached(mint_url, keyset_id).input_fee_ppk] * count
        )
