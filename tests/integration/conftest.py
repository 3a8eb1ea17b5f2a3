"""In-process Cashu mint for wallet flow tests.

FakeMint implements the MintConnector protocol and really signs blinded
messages with coincurve (BDHKE with NUT-12 DLEQ proofs), so the wallet's
unblinding and verification run against genuine signatures.
"""

import asyncio
import hashlib
import json
import secrets
from dataclasses import replace
from typing import Any

import pytest
from coincurve import PrivateKey, PublicKey

from nutledger.conditions import HTLCConditions, P2PKConditions, parse_secret, verify_witness
from nutledger.crypto import derive_keyset_id, hash_e, hash_to_curve
from nutledger.database import MemoryDatabase
from nutledger.types import Proof, ProtocolError, TransportFailure
from nutledger.config import WalletConfig
from nutledger.wallet import Wallet

MINT_URL = "https://fake.mint"
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class FakeKeyset:
    def __init__(
        self,
        seed: str,
        unit: str = "sat",
        input_fee_ppk: int = 0,
        active: bool = True,
        amounts: list[int] | None = None,
    ):
        self.unit = unit
        self.input_fee_ppk = input_fee_ppk
        self.active = active
        self.private_keys = {
            amount: PrivateKey(hashlib.sha256(f"{seed}/{unit}/{amount}".encode()).digest())
            for amount in (amounts or [2**i for i in range(21)])
        }
        self.public_keys = {
            amount: key.public_key.format(compressed=True).hex()
            for amount, key in self.private_keys.items()
        }
        self.id = derive_keyset_id(self.public_keys)

    def sign(self, amount: int, B_hex: str) -> dict[str, Any]:
        key = self.private_keys[amount]
        B_ = PublicKey(bytes.fromhex(B_hex))
        C_ = B_.multiply(key.secret)
        # NUT-12: e = hash(R1, R2, A, C_), s = p + e*a
        nonce = PrivateKey()
        R1 = nonce.public_key
        R2 = B_.multiply(nonce.secret)
        e = hash_e(R1, R2, key.public_key, C_)
        s = (
            int.from_bytes(nonce.secret, "big") + int.from_bytes(e, "big") * int.from_bytes(key.secret, "big")
        ) % _N
        return {
            "amount": amount,
            "id": self.id,
            "C_": C_.format(compressed=True).hex(),
            "dleq": {"e": e.hex(), "s": s.to_bytes(32, "big").hex()},
        }

    def verify(self, proof: dict[str, Any]) -> bool:
        key = self.private_keys.get(proof["amount"])
        if key is None:
            return False
        Y = hash_to_curve(proof["secret"].encode("utf-8"))
        expected = Y.multiply(key.secret).format(compressed=True).hex()
        return expected == proof["C"]


class FakeMint:
    """A mint that keeps its whole ledger in memory."""

    def __init__(
        self,
        url: str = MINT_URL,
        *,
        input_fee_ppk: int = 0,
        amounts: list[int] | None = None,
    ) -> None:
        self.url = url
        self.keysets: dict[str, FakeKeyset] = {}
        self.add_keyset(FakeKeyset("main", input_fee_ppk=input_fee_ppk, amounts=amounts))
        self.spent: set[str] = set()
        self.pending: set[str] = set()
        self.mint_quotes: dict[str, dict[str, Any]] = {}
        self.melt_quotes: dict[str, dict[str, Any]] = {}
        # What the next melt does: "paid", "unpaid", "pending" or "error"
        self.melt_outcome = "paid"
        self.lightning_fee = 0
        self.fail_transport: set[str] = set()
        # Every signature issued, by blinded message, for NUT-09 restore
        self.issued: dict[str, tuple[dict[str, Any], dict[str, Any]]] = {}
        self.calls: list[str] = []
        self.closed = False

    def add_keyset(self, keyset: FakeKeyset) -> FakeKeyset:
        self.keysets[keyset.id] = keyset
        return keyset

    @property
    def keyset(self) -> FakeKeyset:
        return next(iter(self.keysets.values()))

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_transport:
            raise TransportFailure(f"{name} unreachable", operation=name)

    # ───────────────────────── Ledger helpers ─────────────────────────────────

    def _sign_outputs(self, outputs: list[dict[str, Any]]) -> list[dict[str, Any]]:
        signatures = []
        for output in outputs:
            keyset = self.keysets.get(output["id"])
            if keyset is None or not keyset.active:
                raise ProtocolError("keyset inactive or unknown", code=12002)
            if output["amount"] not in keyset.private_keys:
                raise ProtocolError("amount not supported by keyset", code=11005)
            signature = keyset.sign(output["amount"], output["B_"])
            self.issued[output["B_"]] = (output, signature)
            signatures.append(signature)
        return signatures

    def _check_inputs(self, inputs: list[dict[str, Any]]) -> int:
        ys = []
        fee_ppk = 0
        for proof in inputs:
            keyset = self.keysets.get(proof["id"])
            if keyset is None or not keyset.verify(proof):
                raise ProtocolError("invalid proof", code=10003)
            self._check_witness(proof)
            y = hash_to_curve(proof["secret"].encode("utf-8")).format(compressed=True).hex()
            if y in self.spent:
                raise ProtocolError("Token already spent.", code=11001)
            if y in self.pending:
                raise ProtocolError("Token is pending.", code=11002)
            ys.append(y)
            fee_ppk += keyset.input_fee_ppk
        if len(set(ys)) != len(ys):
            raise ProtocolError("duplicate inputs", code=11004)
        return (fee_ppk + 999) // 1000

    def _check_witness(self, proof: dict[str, Any]) -> None:
        parsed = Proof.from_dict(proof)
        conditions = parse_secret(parsed.secret)
        if isinstance(conditions, P2PKConditions):
            if not verify_witness(parsed):
                raise ProtocolError("Witness is missing for p2pk signature", code=20008)
        elif isinstance(conditions, HTLCConditions):
            witness = json.loads(parsed.witness or "{}")
            preimage = witness.get("preimage", "")
            if hashlib.sha256(bytes.fromhex(preimage)).hexdigest() != conditions.hash:
                raise ProtocolError("HTLC preimage does not match", code=30001)

    def _spend(self, inputs: list[dict[str, Any]]) -> list[str]:
        ys = [hash_to_curve(p["secret"].encode("utf-8")).format(compressed=True).hex() for p in inputs]
        self.spent.update(ys)
        return ys

    def pay_mint_quote(self, quote_id: str) -> None:
        self.mint_quotes[quote_id]["state"] = "PAID"

    # ───────────────────────── MintConnector ─────────────────────────────────

    async def get_info(self):
        self._call("get_info")
        return {"name": "fake mint", "version": "fake/0.1", "nuts": {}}

    async def get_keysets(self):
        self._call("get_keysets")
        return [
            {"id": k.id, "unit": k.unit, "active": k.active, "input_fee_ppk": k.input_fee_ppk}
            for k in self.keysets.values()
        ]

    async def get_keys(self, keyset_id=None):
        self._call("get_keys")
        return [
            {"id": k.id, "unit": k.unit, "keys": {str(a): pk for a, pk in k.public_keys.items()}}
            for k in self.keysets.values()
            if keyset_id is None or k.id == keyset_id
        ]

    async def create_mint_quote(self, *, amount, unit, description=None):
        self._call("create_mint_quote")
        quote_id = secrets.token_hex(8)
        self.mint_quotes[quote_id] = {
            "quote": quote_id,
            "request": f"lnbc{amount}fake{quote_id}",
            "amount": amount,
            "unit": unit,
            "state": "UNPAID",
            "expiry": None,
        }
        return dict(self.mint_quotes[quote_id])

    async def get_mint_quote(self, quote_id):
        self._call("get_mint_quote")
        if quote_id not in self.mint_quotes:
            raise ProtocolError("quote not found", code=20007)
        return dict(self.mint_quotes[quote_id])

    async def mint(self, *, quote, outputs):
        self._call("mint")
        data = self.mint_quotes.get(quote)
        if data is None or data["state"] == "UNPAID":
            raise ProtocolError("quote not paid", code=20001)
        if data["state"] == "ISSUED":
            raise ProtocolError("quote already issued", code=20002)
        if sum(o["amount"] for o in outputs) != data["amount"]:
            raise ProtocolError("amount mismatch", code=11005)
        signatures = self._sign_outputs(outputs)
        data["state"] = "ISSUED"
        return {"signatures": signatures}

    async def create_melt_quote(self, request, *, unit, options=None):
        self._call("create_melt_quote")
        quote_id = secrets.token_hex(8)
        amount = int(request.split(":")[1]) if request.startswith("fake:") else 100
        self.melt_quotes[quote_id] = {
            "quote": quote_id,
            "request": request,
            "amount": amount,
            "fee_reserve": 4,
            "unit": unit,
            "state": "UNPAID",
            "expiry": None,
        }
        return dict(self.melt_quotes[quote_id])

    async def get_melt_quote(self, quote_id):
        self._call("get_melt_quote")
        if quote_id not in self.melt_quotes:
            raise ProtocolError("quote not found", code=20007)
        return dict(self.melt_quotes[quote_id])

    async def melt(self, *, quote, inputs, outputs=None):
        self._call("melt")
        # Lets other wallet tasks run while the payment is in flight
        await asyncio.sleep(0)
        data = self.melt_quotes[quote]
        fee = self._check_inputs(inputs)
        total = sum(p["amount"] for p in inputs)
        if total - fee < data["amount"] + data["fee_reserve"]:
            raise ProtocolError("not enough inputs", code=11006)
        if self.melt_outcome == "error":
            raise ProtocolError("Lightning payment failed", code=20003)
        if self.melt_outcome == "unpaid":
            return {**data, "state": "UNPAID"}
        if self.melt_outcome == "pending":
            for p in inputs:
                self.pending.add(hash_to_curve(p["secret"].encode("utf-8")).format(compressed=True).hex())
            data["state"] = "PENDING"
            data["_inputs"] = inputs
            data["_outputs"] = outputs or []
            data["_overpaid"] = total - fee - data["amount"] - self.lightning_fee
            return {k: v for k, v in data.items() if not k.startswith("_")}

        self._spend(inputs)
        data["state"] = "PAID"
        data["payment_preimage"] = "00" * 32
        change = self._change(outputs or [], total - fee - data["amount"] - self.lightning_fee)
        return {**{k: v for k, v in data.items() if not k.startswith("_")}, "change": change}

    def settle_pending_melt(self, quote_id: str, paid: bool) -> None:
        data = self.melt_quotes[quote_id]
        ys = [hash_to_curve(p["secret"].encode("utf-8")).format(compressed=True).hex() for p in data["_inputs"]]
        self.pending.difference_update(ys)
        if paid:
            self.spent.update(ys)
            data["state"] = "PAID"
            data["payment_preimage"] = "11" * 32
            data["change"] = self._change(data["_outputs"], data["_overpaid"])
        else:
            data["state"] = "UNPAID"

    def _change(self, outputs: list[dict[str, Any]], overpaid: int) -> list[dict[str, Any]]:
        # NUT-08: fill blank outputs with the overpaid amount in powers of two
        amounts = [1 << bit for bit in range(overpaid.bit_length()) if overpaid >> bit & 1]
        change = []
        for output, amount in zip(outputs, amounts):
            change.append({**output, "amount": amount})
        return self._sign_outputs(change)

    async def swap(self, *, inputs, outputs):
        self._call("swap")
        fee = self._check_inputs(inputs)
        total_in = sum(p["amount"] for p in inputs)
        total_out = sum(o["amount"] for o in outputs)
        if total_in - fee != total_out:
            raise ProtocolError("inputs and outputs not balanced", code=11005)
        signatures = self._sign_outputs(outputs)
        self._spend(inputs)
        return {"signatures": signatures}

    async def check_state(self, *, Ys):
        self._call("check_state")
        states = []
        for y in Ys:
            if y in self.spent:
                state = "SPENT"
            elif y in self.pending:
                state = "PENDING"
            else:
                state = "UNSPENT"
            states.append({"Y": y, "state": state})
        return {"states": states}

    async def restore(self, *, outputs):
        self._call("restore")
        known = [self.issued[o["B_"]] for o in outputs if o["B_"] in self.issued]
        return {
            "outputs": [output for output, _ in known],
            "signatures": [signature for _, signature in known],
        }

    async def aclose(self):
        self.closed = True


# ──────────────────────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def fake_mint():
    return FakeMint()


@pytest.fixture
def config():
    return WalletConfig(operation_timeout=5.0, poll_interval=0.01, max_poll_interval=0.05)


@pytest.fixture
def decimal_mint():
    """A mint whose keyset also signs 1000 sat proofs."""
    return FakeMint(amounts=[2**i for i in range(21)] + [1000])


@pytest.fixture
async def wallet_factory(config):
    wallets = []

    async def _make(mint, *, db=None, mnemonic=None, **overrides):
        cfg = replace(config, **overrides) if overrides else config
        wallet = await Wallet.create(
            mints={mint.url: mint},
            db=db or MemoryDatabase(),
            config=cfg,
            mnemonic=mnemonic,
        )
        wallets.append(wallet)
        return wallet

    yield _make
    for wallet in wallets:
        await wallet.aclose()


@pytest.fixture
async def wallet(fake_mint, wallet_factory):
    return await wallet_factory(fake_mint)


@pytest.fixture
def fund():
    """Mint ``amount`` into a wallet through a quote the fake mint marks paid."""

    async def _fund(wallet, amount, split_target=None, *, mint_url=None):
        quote = await wallet.mint_quote(amount, mint_url=mint_url)
        wallet.mints[quote.mint_url].pay_mint_quote(quote.id)
        return await wallet.mint(quote.id, split_target)

    return _fund


@pytest.fixture
def mint_factory():
    return FakeMint
