"""Wallet configuration from code or environment (NUTLEDGER_* variables)."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields

from dotenv import find_dotenv, load_dotenv

ENV_PREFIX = "NUTLEDGER_"


@dataclass
class WalletConfig:
    target_proof_count: int = 3  # proofs kept per denomination
    keyset_ttl: float = 3600.0  # seconds before keysets are refetched
    request_timeout: float = 30.0
    operation_timeout: float = 60.0
    max_retries: int = 3  # read-only mint calls only
    retry_backoff: float = 0.5
    poll_interval: float = 1.0
    max_poll_interval: float = 30.0
    subscription_queue_size: int | None = None  # None means unbounded
    use_websocket: bool = True
    require_dleq: bool = False

    def __post_init__(self):
        if self.target_proof_count < 1:
            raise ValueError("target_proof_count must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.subscription_queue_size is not None and self.subscription_queue_size < 1:
            raise ValueError("subscription_queue_size must be positive")

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "WalletConfig":
        """Build a config from NUTLEDGER_* variables (and a .env file)."""
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))

        values: dict[str, object] = {}
        for f in fields(cls):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _parse(f.name, raw, f.default)
        return cls(**values)  # type: ignore[arg-type]


def _parse(name: str, raw: str, default: object) -> object:
    try:
        if isinstance(default, bool):
            if raw.lower() in ("1", "true", "yes", "on"):
                return True
            if raw.lower() in ("0", "false", "no", "off"):
                return False
            raise ValueError(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        if default is None:
            # Only subscription_queue_size defaults to None
            return None if raw.lower() == "none" else int(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e
    return raw


def get_mints_from_env(*, dotenv: bool = True) -> list[str]:
    """Get mint URLs from environment variable or .env file.

    Expected format: comma-separated URLs
    Example: CASHU_MINTS="https://mint1.com,https://mint2.com"

    Returns:
        List of mint URLs, empty list if not set
    """
    if dotenv:
        load_dotenv(find_dotenv(usecwd=True))
    env_mints = os.getenv("CASHU_MINTS")
    if not env_mints:
        return []
    mints = [mint.strip().rstrip("/") for mint in env_mints.split(",")]
    # Filter out empty strings and remove duplicates while preserving order
    return list(dict.fromkeys(mint for mint in mints if mint))


def validate_mint_url(url: str) -> bool:
    """Validate that a mint URL has the correct format."""
    if not url:
        return False

    # Basic URL validation - should start with http:// or https://
    if not (url.startswith("http://") or url.startswith("https://")):
        return False

    # Should not end with slash for consistency
    return not url.endswith("/")
