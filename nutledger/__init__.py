"""nutledger - Cashu wallet protocol engine.

Mints, sends, receives and melts Cashu ecash against one or more mints.
"""

__version__ = "0.1.0"

from .config import WalletConfig
from .database import JsonFileDatabase, MemoryDatabase, WalletDatabase
from .mint import HttpMint, MintConnector
from .seed import generate_mnemonic, mnemonic_to_entropy
from .token import Token, decode_token
from .types import (
    CurrencyUnit,
    MeltOptions,
    OfflineExact,
    OfflineTolerance,
    OnlineExact,
    OnlineTolerance,
    Proof,
    ProofState,
    ReceiveOptions,
    SendMemo,
    SendOptions,
    SplitTarget,
    WalletError,
)
from .wallet import Wallet

__all__ = [
    # Main wallet class
    "Wallet",
    "WalletConfig",
    # Storage
    "WalletDatabase",
    "MemoryDatabase",
    "JsonFileDatabase",
    # Mint connectors
    "MintConnector",
    "HttpMint",
    # Seed
    "generate_mnemonic",
    "mnemonic_to_entropy",
    # Tokens and proofs
    "Token",
    "decode_token",
    "Proof",
    "ProofState",
    "CurrencyUnit",
    # Operation options
    "SendOptions",
    "SendMemo",
    "ReceiveOptions",
    "MeltOptions",
    "SplitTarget",
    "OnlineExact",
    "OfflineExact",
    "OnlineTolerance",
    "OfflineTolerance",
    "WalletError",
]
