"""Type definitions for the nutledger package following NUT-00 specifications."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, TYPE_CHECKING, Union

if TYPE_CHECKING:
    from .conditions import SpendingConditions


MAX_AMOUNT = 2**64 - 1


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────


class WalletError(Exception):
    """Base class for wallet errors.

    Carries the operation and entity id (quote id, keyset id, proof Y ...) the
    error relates to so callers can decide whether to retry, abandon or
    reconcile.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        entity_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.entity_id = entity_id


class InsufficientFunds(WalletError):
    """Raised when no proof selection covers the requested amount."""


class InvalidStateTransition(WalletError):
    """Raised when a proof or quote would move backwards in its lifecycle."""


class UnknownKeyset(WalletError):
    """Raised when a keyset id is not known to the mint, even after refresh."""


class QuoteNotPaid(WalletError):
    """Raised when minting against a quote that is not PAID."""


class QuoteNotFound(WalletError):
    """Raised when a quote id is not tracked by the wallet."""


class AmountMismatch(WalletError):
    """Raised when explicit split amounts do not sum to the requested total."""


class AmountOverflow(WalletError):
    """Raised when amount arithmetic leaves the unsigned 64-bit range."""


class ProofNotFound(WalletError):
    """Raised when committing or looking up proofs the store does not hold."""


class SubscriptionClosed(WalletError):
    """Raised by recv() on a closed subscription."""


class MalformedToken(WalletError):
    """Raised when a token string cannot be decoded."""


class InvalidSpendingConditions(WalletError):
    """Raised when a spending condition is structurally invalid or unsatisfiable."""


class InvalidSignature(WalletError):
    """Raised when a blind signature fails unblinding or verification."""


class MintError(WalletError):
    """Base exception for mint errors."""


class TransportFailure(MintError):
    """The mint could not be reached or answered garbage. Safe to retry reads."""


class ProtocolError(MintError):
    """The mint rejected the request. Never retried blindly."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        detail: str | None = None,
        operation: str | None = None,
        entity_id: str | None = None,
    ) -> None:
        super().__init__(message, operation=operation, entity_id=entity_id)
        self.code = code
        self.detail = detail


# ──────────────────────────────────────────────────────────────────────────────
# Amounts and units
# ──────────────────────────────────────────────────────────────────────────────


def check_amount(value: int) -> int:
    """Validate an amount is a non-negative 64-bit integer."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"Amount must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"Amount must be non-negative, got {value}")
    if value > MAX_AMOUNT:
        raise AmountOverflow(f"Amount {value} exceeds 64-bit range")
    return value


def add_amounts(*values: int) -> int:
    """Sum amounts, raising AmountOverflow instead of silently growing."""
    total = 0
    for value in values:
        total += check_amount(value)
        if total > MAX_AMOUNT:
            raise AmountOverflow(f"Amount sum {total} exceeds 64-bit range")
    return total


def sum_proofs(proofs: list["Proof"]) -> int:
    return add_amounts(*(p.amount for p in proofs))


# Standard currency units as per NUT-00 specification
STANDARD_UNITS = frozenset(
    {
        "btc",
        "sat",
        "msat",
        "usd",
        "eur",
        "gbp",
        "jpy",
        "cny",
        "cad",
        "chf",
        "aud",
        "inr",
        "auth",
        "usdt",
        "usdc",
        "dai",
    }
)


@dataclass(frozen=True)
class CurrencyUnit:
    """Currency unit: one of the standard units or a custom one."""

    value: str

    SAT: ClassVar["CurrencyUnit"]
    MSAT: ClassVar["CurrencyUnit"]
    USD: ClassVar["CurrencyUnit"]
    EUR: ClassVar["CurrencyUnit"]
    AUTH: ClassVar["CurrencyUnit"]

    @classmethod
    def parse(cls, raw: "str | CurrencyUnit") -> "CurrencyUnit":
        if isinstance(raw, CurrencyUnit):
            return raw
        if not isinstance(raw, str) or not raw:
            raise ValueError(f"Invalid currency unit: {raw!r}")
        lowered = raw.lower()
        if lowered in STANDARD_UNITS:
            return cls(lowered)
        return cls(raw)

    @classmethod
    def custom(cls, name: str) -> "CurrencyUnit":
        if not name:
            raise ValueError("Custom unit name must not be empty")
        return cls(name)

    @property
    def is_custom(self) -> bool:
        return self.value not in STANDARD_UNITS

    def __str__(self) -> str:
        return self.value


CurrencyUnit.SAT = CurrencyUnit("sat")
CurrencyUnit.MSAT = CurrencyUnit("msat")
CurrencyUnit.USD = CurrencyUnit("usd")
CurrencyUnit.EUR = CurrencyUnit("eur")
CurrencyUnit.AUTH = CurrencyUnit("auth")


# ──────────────────────────────────────────────────────────────────────────────
# Hex identifiers
# ──────────────────────────────────────────────────────────────────────────────


def _decoded_length(value: str) -> int | None:
    if not isinstance(value, str):
        return None
    try:
        return len(bytes.fromhex(value))
    except ValueError:
        return None


def validate_keyset_id_format(keyset_id: str) -> bool:
    """Keyset ids are 8 bytes (v0, "00" prefix) or 33 bytes (v1, "01" prefix)."""
    return _decoded_length(keyset_id) in (8, 33)


def validate_pubkey(pubkey: str) -> bool:
    """Compressed secp256k1 public key: 33 bytes starting with 02 or 03."""
    return _decoded_length(pubkey) == 33 and pubkey[:2] in ("02", "03")


def validate_secret_key(secret_key: str) -> bool:
    return _decoded_length(secret_key) == 32


# ──────────────────────────────────────────────────────────────────────────────
# Keysets
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class KeysetInfo:
    """Complete keyset information."""

    id: str
    mint_url: str
    unit: CurrencyUnit
    active: bool
    input_fee_ppk: int = 0
    keys: dict[int, str] = field(default_factory=dict)  # amount -> pubkey
    denominations: list[int] = field(default_factory=list)
    final_expiry: int | None = None

    def __post_init__(self):
        """Extract denominations from keys if not provided."""
        self.id = self.id.lower()
        if not self.denominations and self.keys:
            self.denominations = sorted(int(amount) for amount in self.keys)


# ──────────────────────────────────────────────────────────────────────────────
# Proofs
# ──────────────────────────────────────────────────────────────────────────────


class ProofState(str, Enum):
    UNSPENT = "UNSPENT"
    PENDING = "PENDING"
    SPENT = "SPENT"
    PENDING_SPENT = "PENDING_SPENT"

    def __str__(self) -> str:
        return self.value


_PROOF_TRANSITIONS: dict[ProofState, frozenset[ProofState]] = {
    ProofState.UNSPENT: frozenset({ProofState.PENDING, ProofState.SPENT}),
    ProofState.PENDING: frozenset(
        {ProofState.UNSPENT, ProofState.SPENT, ProofState.PENDING_SPENT}
    ),
    ProofState.PENDING_SPENT: frozenset({ProofState.SPENT, ProofState.UNSPENT}),
    ProofState.SPENT: frozenset(),
}


def can_transition_proof(current: ProofState, new: ProofState) -> bool:
    return current == new or new in _PROOF_TRANSITIONS[current]


@dataclass(frozen=True)
class DLEQ:
    """NUT-12 DLEQ proof (r is only present once the proof is unblinded)."""

    e: str
    s: str
    r: str | None = None

    def to_dict(self) -> dict[str, str]:
        data = {"e": self.e, "s": self.s}
        if self.r is not None:
            data["r"] = self.r
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DLEQ":
        return cls(e=data["e"], s=data["s"], r=data.get("r"))


@dataclass(frozen=True)
class Proof:
    """Unblinded ecash proof (NUT-00)."""

    amount: int
    id: str
    secret: str
    C: str
    witness: str | None = None
    dleq: DLEQ | None = None

    @property
    def y(self) -> str:
        """Hash-to-curve point of the secret, the proof's identity (NUT-07)."""
        from .crypto import hash_to_curve

        return hash_to_curve(self.secret.encode("utf-8")).format(compressed=True).hex()

    @property
    def spending_conditions(self) -> "SpendingConditions | None":
        from .conditions import parse_secret

        return parse_secret(self.secret)

    def with_witness(self, witness: str | None) -> "Proof":
        return Proof(
            amount=self.amount,
            id=self.id,
            secret=self.secret,
            C=self.C,
            witness=witness,
            dleq=self.dleq,
        )

    def to_dict(self, *, include_dleq: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "amount": self.amount,
            "secret": self.secret,
            "C": self.C,
        }
        if self.witness is not None:
            data["witness"] = self.witness
        if include_dleq and self.dleq is not None:
            data["dleq"] = self.dleq.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Proof":
        dleq = data.get("dleq")
        return cls(
            amount=data["amount"],
            id=data["id"],
            secret=data["secret"],
            C=data["C"],
            witness=data.get("witness"),
            dleq=DLEQ.from_dict(dleq) if dleq else None,
        )


@dataclass
class ProofInfo:
    """A proof as stored by the wallet, with its state and ownership."""

    proof: Proof
    y: str
    mint_url: str
    unit: CurrencyUnit
    state: ProofState = ProofState.UNSPENT
    operation_id: str | None = None

    @classmethod
    def new(
        cls,
        proof: Proof,
        mint_url: str,
        unit: CurrencyUnit,
        state: ProofState = ProofState.UNSPENT,
    ) -> "ProofInfo":
        return cls(proof=proof, y=proof.y, mint_url=mint_url, unit=unit, state=state)

    @property
    def amount(self) -> int:
        return self.proof.amount


# ──────────────────────────────────────────────────────────────────────────────
# Blind signatures
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BlindedMessage:
    """Blinded message for mint operations."""

    amount: int
    id: str  # keyset ID
    B_: str  # hex encoded blinded message

    def to_dict(self) -> dict[str, Any]:
        return {"amount": self.amount, "id": self.id, "B_": self.B_}


@dataclass(frozen=True)
class BlindedSignature:
    """Blinded signature response from mint."""

    amount: int
    id: str
    C_: str
    dleq: DLEQ | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BlindedSignature":
        dleq = data.get("dleq")
        return cls(
            amount=data["amount"],
            id=data["id"],
            C_=data["C_"],
            dleq=DLEQ.from_dict(dleq) if dleq else None,
        )


# ──────────────────────────────────────────────────────────────────────────────
# Quotes
# ──────────────────────────────────────────────────────────────────────────────


class MintQuoteState(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    ISSUED = "ISSUED"

    def __str__(self) -> str:
        return self.value


class MeltQuoteState(str, Enum):
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class MintQuote:
    id: str
    mint_url: str
    amount: int | None
    unit: CurrencyUnit
    request: str
    state: MintQuoteState = MintQuoteState.UNPAID
    expiry: int | None = None
    amount_paid: int = 0
    amount_issued: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mint_url": self.mint_url,
            "amount": self.amount,
            "unit": self.unit.value,
            "request": self.request,
            "state": self.state.value,
            "expiry": self.expiry,
            "amount_paid": self.amount_paid,
            "amount_issued": self.amount_issued,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MintQuote":
        return cls(
            id=data["id"],
            mint_url=data["mint_url"],
            amount=data.get("amount"),
            unit=CurrencyUnit.parse(data["unit"]),
            request=data["request"],
            state=MintQuoteState(data["state"]),
            expiry=data.get("expiry"),
            amount_paid=data.get("amount_paid", 0),
            amount_issued=data.get("amount_issued", 0),
        )


@dataclass(frozen=True)
class MeltQuote:
    id: str
    mint_url: str
    amount: int
    fee_reserve: int
    unit: CurrencyUnit
    request: str
    state: MeltQuoteState = MeltQuoteState.UNPAID
    expiry: int | None = None
    payment_preimage: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mint_url": self.mint_url,
            "amount": self.amount,
            "fee_reserve": self.fee_reserve,
            "unit": self.unit.value,
            "request": self.request,
            "state": self.state.value,
            "expiry": self.expiry,
            "payment_preimage": self.payment_preimage,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MeltQuote":
        return cls(
            id=data["id"],
            mint_url=data["mint_url"],
            amount=data["amount"],
            fee_reserve=data["fee_reserve"],
            unit=CurrencyUnit.parse(data["unit"]),
            request=data["request"],
            state=MeltQuoteState(data["state"]),
            expiry=data.get("expiry"),
            payment_preimage=data.get("payment_preimage"),
        )


@dataclass(frozen=True)
class MeltReceipt:
    quote_id: str
    state: MeltQuoteState
    amount: int
    fee_paid: int
    preimage: str | None = None
    change: list[Proof] = field(default_factory=list)


# ──────────────────────────────────────────────────────────────────────────────
# Operation options (closed variants)
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SplitTarget:
    """How outputs are denominated.

    kind is one of "none" (strategy default), "value" (repeat one
    denomination) or "values" (explicit list).
    """

    kind: str = "none"
    amount: int | None = None
    amounts: tuple[int, ...] = ()

    @classmethod
    def none(cls) -> "SplitTarget":
        return cls()

    @classmethod
    def value(cls, amount: int) -> "SplitTarget":
        if check_amount(amount) == 0:
            raise ValueError("Split value must be positive")
        return cls(kind="value", amount=amount)

    @classmethod
    def values(cls, amounts: list[int]) -> "SplitTarget":
        for amount in amounts:
            if check_amount(amount) == 0:
                raise ValueError("Split values must be positive")
        return cls(kind="values", amounts=tuple(amounts))


@dataclass(frozen=True)
class OnlineExact:
    """Swap with the mint if no exact selection exists."""


@dataclass(frozen=True)
class OfflineExact:
    """Only send an exact selection, never contact the mint."""


@dataclass(frozen=True)
class OnlineTolerance:
    """Accept overpaying by up to tolerance, else swap."""

    tolerance: int


@dataclass(frozen=True)
class OfflineTolerance:
    """Accept overpaying by up to tolerance, never contact the mint."""

    tolerance: int


SendKind = Union[OnlineExact, OfflineExact, OnlineTolerance, OfflineTolerance]


@dataclass(frozen=True)
class SendMemo:
    memo: str
    include_memo: bool = True


@dataclass
class SendOptions:
    memo: SendMemo | None = None
    conditions: "SpendingConditions | None" = None
    split_target: SplitTarget = field(default_factory=SplitTarget.none)
    send_kind: SendKind = field(default_factory=OnlineExact)
    include_fee: bool = False
    max_proofs: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ReceiveOptions:
    split_target: SplitTarget = field(default_factory=SplitTarget.none)
    p2pk_signing_keys: list[str] = field(default_factory=list)
    preimages: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class MeltOptions:
    """NUT-15 multi-path payment or amountless invoice options."""

    kind: str
    amount_msat: int

    @classmethod
    def mpp(cls, amount_msat: int) -> "MeltOptions":
        return cls(kind="mpp", amount_msat=check_amount(amount_msat))

    @classmethod
    def amountless(cls, amount_msat: int) -> "MeltOptions":
        return cls(kind="amountless", amount_msat=check_amount(amount_msat))

    def to_request(self) -> dict[str, Any]:
        if self.kind == "mpp":
            return {"mpp": {"amount": self.amount_msat}}
        if self.kind == "amountless":
            return {"amountless": {"amount_msat": self.amount_msat}}
        raise ValueError(f"Unknown melt option: {self.kind}")


# ──────────────────────────────────────────────────────────────────────────────
# Subscriptions
# ──────────────────────────────────────────────────────────────────────────────


class SubscriptionKind(str, Enum):
    BOLT11_MINT_QUOTE = "bolt11_mint_quote"
    BOLT11_MELT_QUOTE = "bolt11_melt_quote"
    PROOF_STATE = "proof_state"


@dataclass(frozen=True)
class SubscribeParams:
    kind: SubscriptionKind
    filters: list[str]
    id: str | None = None


@dataclass(frozen=True)
class MintQuoteUpdate:
    quote: MintQuote

    @property
    def entity_id(self) -> str:
        return self.quote.id

    @property
    def state_key(self) -> str:
        return self.quote.state.value


@dataclass(frozen=True)
class MeltQuoteUpdate:
    quote: MeltQuote

    @property
    def entity_id(self) -> str:
        return self.quote.id

    @property
    def state_key(self) -> str:
        return self.quote.state.value


@dataclass(frozen=True)
class ProofStateUpdate:
    y: str
    state: ProofState
    witness: str | None = None

    @property
    def entity_id(self) -> str:
        return self.y

    @property
    def state_key(self) -> str:
        return self.state.value


NotificationPayload = Union[MintQuoteUpdate, MeltQuoteUpdate, ProofStateUpdate]


def payload_kind(payload: NotificationPayload) -> SubscriptionKind:
    if isinstance(payload, MintQuoteUpdate):
        return SubscriptionKind.BOLT11_MINT_QUOTE
    if isinstance(payload, MeltQuoteUpdate):
        return SubscriptionKind.BOLT11_MELT_QUOTE
    if isinstance(payload, ProofStateUpdate):
        return SubscriptionKind.PROOF_STATE
    raise TypeError(f"Unknown notification payload: {payload!r}")


# ──────────────────────────────────────────────────────────────────────────────
# Transactions
# ──────────────────────────────────────────────────────────────────────────────


class TransactionDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


def transaction_id(ys: list[str]) -> str:
    return hashlib.sha256("".join(sorted(ys)).encode()).hexdigest()


@dataclass(frozen=True)
class Transaction:
    id: str
    mint_url: str
    direction: TransactionDirection
    amount: int
    fee: int
    unit: CurrencyUnit
    ys: list[str]
    timestamp: int = field(default_factory=lambda: int(time.time()))
    memo: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        *,
        mint_url: str,
        direction: TransactionDirection,
        amount: int,
        fee: int,
        unit: CurrencyUnit,
        ys: list[str],
        memo: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> "Transaction":
        return cls(
            id=transaction_id(ys),
            mint_url=mint_url,
            direction=direction,
            amount=amount,
            fee=fee,
            unit=unit,
            ys=list(ys),
            memo=memo,
            metadata=dict(metadata or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mint_url": self.mint_url,
            "direction": self.direction.value,
            "amount": self.amount,
            "fee": self.fee,
            "unit": self.unit.value,
            "ys": self.ys,
            "timestamp": self.timestamp,
            "memo": self.memo,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transaction":
        return cls(
            id=data["id"],
            mint_url=data["mint_url"],
            direction=TransactionDirection(data["direction"]),
            amount=data["amount"],
            fee=data["fee"],
            unit=CurrencyUnit.parse(data["unit"]),
            ys=list(data["ys"]),
            timestamp=data["timestamp"],
            memo=data.get("memo"),
            metadata=dict(data.get("metadata") or {}),
        )
