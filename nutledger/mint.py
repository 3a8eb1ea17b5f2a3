"""
Cashu Mint API client wrapper."""

from __future__ import annotations

import asyncio
import json as jsonlib
import logging
import os
from typing import Any, Protocol, TypedDict, cast, runtime_checkable

import httpx

from .types import ProtocolError, TransportFailure, validate_pubkey

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Type definitions based on NUT-01 and OpenAPI spec
# ──────────────────────────────────────────────────────────────────────────────


class MintInfo(TypedDict, total=False):
    """Mint information response."""

    name: str
    pubkey: str
    version: str
    description: str
    description_long: str
    contact: list[dict[str, str]]
    icon_url: str
    motd: str
    nuts: dict[str, dict[str, Any]]


# NUT-01 compliant keyset definitions
class Keyset(TypedDict):
    """Individual keyset per NUT-01 specification."""

    id: str  # keyset identifier
    unit: str  # currency unit
    keys: dict[str, str]  # amount -> compressed secp256k1 pubkey mapping


class KeysetEntryRequired(TypedDict):
    id: str
    unit: str
    active: bool


class KeysetEntry(KeysetEntryRequired, total=False):
    """Keyset information from the /v1/keysets endpoint."""

    input_fee_ppk: int  # input fee in parts per thousand
    final_expiry: int


class BlindedSignatureDict(TypedDict, total=False):
    amount: int
    id: str
    C_: str
    dleq: dict[str, str]


class PostMintQuoteResponse(TypedDict, total=False):
    """Mint quote response."""

    quote: str  # quote id
    request: str  # bolt11 invoice
    amount: int
    unit: str
    state: str  # "UNPAID", "PAID", "ISSUED"
    expiry: int
    pubkey: str
    paid: bool


class PostMintResponse(TypedDict):
    """Mint response with signatures."""

    signatures: list[BlindedSignatureDict]


class PostMeltQuoteResponse(TypedDict, total=False):
    """Melt quote response."""

    quote: str
    amount: int
    fee_reserve: int
    unit: str
    request: str
    paid: bool
    state: str  # "UNPAID", "PENDING", "PAID"
    expiry: int
    payment_preimage: str
    change: list[BlindedSignatureDict]


class PostSwapResponse(TypedDict):
    """Swap response."""

    signatures: list[BlindedSignatureDict]


class PostRestoreResponse(TypedDict, total=False):
    """Restore response (NUT-09). Older mints name the signatures ``promises``."""

    outputs: list[dict[str, Any]]
    signatures: list[BlindedSignatureDict]
    promises: list[BlindedSignatureDict]


class ProofStateDict(TypedDict, total=False):
    Y: str
    state: str
    witness: str


class PostCheckStateResponse(TypedDict):
    """Check state response."""

    states: list[ProofStateDict]


# ──────────────────────────────────────────────────────────────────────────────
# Mint capability
# ──────────────────────────────────────────────────────────────────────────────


@runtime_checkable
class MintConnector(Protocol):
    """The operations the wallet needs from a mint.

    Implementations raise TransportFailure when the mint cannot be reached
    and ProtocolError when it rejects a request.
    """

    url: str

    async def get_info(self) -> MintInfo: ...

    async def get_keysets(self) -> list[KeysetEntry]: ...

    async def get_keys(self, keyset_id: str | None = None) -> list[Keyset]: ...

    async def create_mint_quote(
        self, *, amount: int | None, unit: str, description: str | None = None
    ) -> PostMintQuoteResponse: ...

    async def get_mint_quote(self, quote_id: str) -> PostMintQuoteResponse: ...

    async def mint(
        self, *, quote: str, outputs: list[dict[str, Any]]
    ) -> PostMintResponse: ...

    async def create_melt_quote(
        self, request: str, *, unit: str, options: dict[str, Any] | None = None
    ) -> PostMeltQuoteResponse: ...

    async def get_melt_quote(self, quote_id: str) -> PostMeltQuoteResponse: ...

    async def melt(
        self,
        *,
        quote: str,
        inputs: list[dict[str, Any]],
        outputs: list[dict[str, Any]] | None = None,
    ) -> PostMeltQuoteResponse: ...

    async def swap(
        self, *, inputs: list[dict[str, Any]], outputs: list[dict[str, Any]]
    ) -> PostSwapResponse: ...

    async def check_state(self, *, Ys: list[str]) -> PostCheckStateResponse: ...

    async def restore(self, *, outputs: list[dict[str, Any]]) -> PostRestoreResponse: ...

    async def aclose(self) -> None: ...


class InvalidKeysetError(ProtocolError):
    """Raised when keyset structure is invalid per NUT-01."""


class HttpMint:
    """MintConnector over the mint's HTTP API."""

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
    ) -> None:
        # Normalize URL by removing trailing slashes
        self.url = url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.debug = os.environ.get("MINT_DEBUG", "false").lower() == "true"

    async def aclose(self) -> None:
        """Close the HTTP client if we created it."""
        if self._owns_client:
            await self.client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> Any:
        if self.debug:
            logger.info("MINT_DEBUG %s request to %s%s", method, self.url, path)
        try:
            response = await self.client.request(method, f"{self.url}{path}", json=json)
        except httpx.TransportError as e:
            raise TransportFailure(
                f"Could not reach mint {self.url}: {e}", operation=path
            ) from e

        try:
            body = response.json()
        except (jsonlib.JSONDecodeError, UnicodeDecodeError):
            body = None

        if response.status_code >= 400 or (
            isinstance(body, dict) and "detail" in body and "code" in body
        ):
            detail = body.get("detail") if isinstance(body, dict) else None
            code = body.get("code") if isinstance(body, dict) else None
            if response.status_code >= 500 and code is None:
                raise TransportFailure(
                    f"Mint returned {response.status_code}: {response.text}",
                    operation=path,
                )
            raise ProtocolError(
                f"Mint returned {response.status_code}: {detail or response.text}",
                code=code,
                detail=detail,
                operation=path,
            )

        if body is None:
            raise TransportFailure(
                f"Mint returned invalid JSON for {path}", operation=path
            )
        return body

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        idempotent: bool = False,
    ) -> Any:
        """Make HTTP request to mint, retrying read-only calls on transport failure."""
        attempts = self.max_retries + 1 if idempotent else 1
        for attempt in range(attempts):
            try:
                return await self._send(method, path, json=json)
            except TransportFailure:
                if attempt + 1 >= attempts:
                    raise
                delay = self.retry_backoff * 2**attempt
                logger.warning(
                    "Transport failure on %s %s, retrying in %.2fs", method, path, delay
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    def _validate_keys_response(self, response: dict[str, Any]) -> list[Keyset]:
        """Validate and cast response to NUT-01 compliant keysets.

        Raises:
            InvalidKeysetError: If response doesn't match NUT-01 specification
        """
        keysets = response.get("keysets") if isinstance(response, dict) else None
        if not isinstance(keysets, list):
            raise InvalidKeysetError("Response missing 'keysets' list")

        for i, keyset in enumerate(keysets):
            if not isinstance(keyset, dict) or not all(
                field in keyset for field in ("id", "unit", "keys")
            ):
                raise InvalidKeysetError(f"Invalid keyset at index {i}")
            keys = keyset["keys"]
            if not isinstance(keys, dict):
                raise InvalidKeysetError(f"Invalid keys for keyset {keyset['id']}")
            for amount_str, pubkey in keys.items():
                if not str(amount_str).isdigit() or not validate_pubkey(pubkey):
                    raise InvalidKeysetError(
                        f"Invalid key for amount {amount_str} in keyset {keyset['id']}"
                    )

        return cast(list[Keyset], keysets)

    # ───────────────────────── Info & Keys ─────────────────────────────────

    async def get_info(self) -> MintInfo:
        """Get mint information."""
        return cast(MintInfo, await self._request("GET", "/v1/info", idempotent=True))

    async def get_keysets(self) -> list[KeysetEntry]:
        """Get all keysets, active and inactive (NUT-02)."""
        response = await self._request("GET", "/v1/keysets", idempotent=True)
        return cast(list[KeysetEntry], response["keysets"])

    async def get_keys(self, keyset_id: str | None = None) -> list[Keyset]:
        """Get public keys of the active keysets, or of one keyset (NUT-01)."""
        path = f"/v1/keys/{keyset_id}" if keyset_id else "/v1/keys"
        response = await self._request("GET", path, idempotent=True)
        return self._validate_keys_response(response)

    # ───────────────────────── Minting (receive) ─────────────────────────────────

    async def create_mint_quote(
        self,
        *,
        amount: int | None,
        unit: str,
        description: str | None = None,
    ) -> PostMintQuoteResponse:
        """Request a Lightning invoice to mint tokens."""
        body: dict[str, Any] = {"unit": unit}
        if amount is not None:
            body["amount"] = amount
        if description is not None:
            body["description"] = description

        return cast(
            PostMintQuoteResponse,
            await self._request("POST", "/v1/mint/quote/bolt11", json=body),
        )

    async def get_mint_quote(self, quote_id: str) -> PostMintQuoteResponse:
        """Check status of a mint quote."""
        return cast(
            PostMintQuoteResponse,
            await self._request(
                "GET", f"/v1/mint/quote/bolt11/{quote_id}", idempotent=True
            ),
        )

    async def mint(
        self, *, quote: str, outputs: list[dict[str, Any]]
    ) -> PostMintResponse:
        """Mint tokens after paying the Lightning invoice."""
        body = {"quote": quote, "outputs": outputs}
        return cast(
            PostMintResponse, await self._request("POST", "/v1/mint/bolt11", json=body)
        )

    # ───────────────────────── Melting (send) ─────────────────────────────────

    async def create_melt_quote(
        self,
        request: str,
        *,
        unit: str,
        options: dict[str, Any] | None = None,
    ) -> PostMeltQuoteResponse:
        """Get a quote for paying a Lightning invoice."""
        body: dict[str, Any] = {"unit": unit, "request": request}
        if options is not None:
            body["options"] = options

        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/quote/bolt11", json=body),
        )

    async def get_melt_quote(self, quote_id: str) -> PostMeltQuoteResponse:
        """Check status of a melt quote."""
        return cast(
            PostMeltQuoteResponse,
            await self._request(
                "GET", f"/v1/melt/quote/bolt11/{quote_id}", idempotent=True
            ),
        )

    async def melt(
        self,
        *,
        quote: str,
        inputs: list[dict[str, Any]],
        outputs: list[dict[str, Any]] | None = None,
    ) -> PostMeltQuoteResponse:
        """Melt tokens to pay a Lightning invoice."""
        body: dict[str, Any] = {"quote": quote, "inputs": inputs}
        if outputs is not None:
            body["outputs"] = outputs

        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/bolt11", json=body),
        )

    # ───────────────────────── Token Management ─────────────────────────────────

    async def swap(
        self,
        *,
        inputs: list[dict[str, Any]],
        outputs: list[dict[str, Any]],
    ) -> PostSwapResponse:
        """Swap proofs for new blinded signatures."""
        body = {"inputs": inputs, "outputs": outputs}
        return cast(
            PostSwapResponse, await self._request("POST", "/v1/swap", json=body)
        )

    async def check_state(self, *, Ys: list[str]) -> PostCheckStateResponse:
        """Check if proofs are spent or pending."""
        return cast(
            PostCheckStateResponse,
            await self._request(
                "POST", "/v1/checkstate", json={"Ys": Ys}, idempotent=True
            ),
        )

    async def restore(self, *, outputs: list[dict[str, Any]]) -> PostRestoreResponse:
        """Signatures the mint issued earlier for any of ``outputs``."""
        return cast(
            PostRestoreResponse,
            await self._request(
                "POST", "/v1/restore", json={"outputs": outputs}, idempotent=True
            ),
        )


def supports_websocket(info: MintInfo, kind: str | None = None) -> bool:
    """Whether the mint advertises NUT-17 subscriptions (for ``kind`` if given)."""
    nut17 = (info.get("nuts") or {}).get("17") or {}
    for method in nut17.get("supported", []):
        commands = method.get("commands", [])
        if (kind is None and commands) or kind in commands:
            return True
    return False
