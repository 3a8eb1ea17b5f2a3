"""nutledger CLI - development front end for the Cashu wallet engine."""

import asyncio
import logging
import os
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import WalletConfig
from .database import JsonFileDatabase
from .denominations import split as split_amount
from .seed import generate_mnemonic
from .token import decode_token
from .types import (
    CurrencyUnit,
    OfflineExact,
    OnlineExact,
    ReceiveOptions,
    SendMemo,
    SendOptions,
    SplitTarget,
    TransactionDirection,
    WalletError,
)
from .wallet import Wallet

WALLET_ENV_VAR = "NUTLEDGER_WALLET"
MNEMONIC_ENV_VAR = "NUTLEDGER_MNEMONIC"

app = typer.Typer(
    name="nutledger",
    help="nutledger - Cashu wallet engine CLI",
    rich_markup_mode="markdown",
)
console = Console()

WalletOption = Annotated[
    str,
    typer.Option(
        "--wallet",
        "-w",
        envvar=WALLET_ENV_VAR,
        help="Wallet file (JSON)",
    ),
]
MintOption = Annotated[
    Optional[list[str]], typer.Option("--mint", "-m", help="Mint URLs")
]
UnitOption = Annotated[
    str, typer.Option("--unit", "-u", help="Currency unit (sat, msat, usd, eur, ...)")
]


def handle_wallet_error(e: Exception) -> None:
    """Print wallet errors with a short, user-facing message."""
    if isinstance(e, WalletError):
        console.print(f"[red]❌ {type(e).__name__}: {e}[/red]")
    elif isinstance(e, TimeoutError):
        console.print("[red]❌ Timed out waiting for the mint[/red]")
    else:
        console.print(f"[red]❌ Error: {e}[/red]")


async def open_wallet(path: str, mint_urls: list[str] | None, unit: str) -> Wallet:
    config = WalletConfig.from_env()
    # Read after from_env() so a .env file can provide it
    mnemonic = os.getenv(MNEMONIC_ENV_VAR)
    return await Wallet.create(
        mint_urls=mint_urls or None,
        db=JsonFileDatabase(path),
        unit=CurrencyUnit.parse(unit),
        config=config,
        mnemonic=mnemonic or None,
    )


def run(coro) -> None:
    try:
        asyncio.run(coro)
    except (WalletError, TimeoutError) as e:
        handle_wallet_error(e)
        raise typer.Exit(1)


# ───────────────────────── Offline commands ─────────────────────────────────


@app.command()
def decode(
    token: Annotated[str, typer.Argument(help="Cashu token (cashuA... or cashuB...)")],
) -> None:
    """Show the contents of a token."""
    try:
        parsed = decode_token(token)
    except WalletError as e:
        handle_wallet_error(e)
        raise typer.Exit(1)

    console.print(
        Panel(
            f"Mint: {parsed.mint_url}\nUnit: {parsed.unit}\n"
            f"Amount: {parsed.amount}\nMemo: {parsed.memo or '-'}",
            title="Token",
        )
    )
    table = Table(title="Proofs")
    table.add_column("Amount", justify="right")
    table.add_column("Keyset")
    table.add_column("Locked")
    table.add_column("DLEQ")
    for proof in parsed.proofs:
        conditions = proof.spending_conditions
        table.add_row(
            str(proof.amount),
            proof.id,
            conditions.kind if conditions else "-",
            "yes" if proof.dleq else "no",
        )
    console.print(table)


@app.command()
def split(
    amount: Annotated[int, typer.Argument(help="Amount to split")],
    value: Annotated[
        Optional[int], typer.Option("--value", help="Repeat this denomination")
    ] = None,
    values: Annotated[
        Optional[str], typer.Option("--values", help="Explicit amounts, e.g. 1,2,4")
    ] = None,
) -> None:
    """Show how an amount would be split into outputs."""
    if value is not None and values is not None:
        console.print("[red]Use either --value or --values[/red]")
        raise typer.Exit(1)
    try:
        if value is not None:
            target = SplitTarget.value(value)
        elif values is not None:
            target = SplitTarget.values([int(v) for v in values.split(",") if v.strip()])
        else:
            target = SplitTarget.none()
        amounts = split_amount(amount, target)
    except (WalletError, ValueError) as e:
        handle_wallet_error(e)
        raise typer.Exit(1)
    console.print(" + ".join(str(a) for a in amounts) + f" = {amount}")


# ───────────────────────── Wallet commands ─────────────────────────────────


@app.command()
def balance(
    wallet_path: WalletOption = "wallet.json",
    mint_urls: MintOption = None,
    unit: UnitOption = "sat",
    check: Annotated[
        bool, typer.Option("--check/--no-check", help="Reconcile with the mint first")
    ] = False,
) -> None:
    """Show the wallet balance per mint."""

    async def _balance() -> None:
        async with await open_wallet(wallet_path, mint_urls, unit) as wallet:
            if check:
                changed = await wallet.check_proofs_spent()
                if changed:
                    console.print(f"[yellow]{len(changed)} proofs were spent[/yellow]")
            table = Table(title=f"Balance ({wallet.unit})")
            table.add_column("Mint")
            table.add_column("Balance", justify="right")
            for url, amount in (await wallet.balance_by_mint()).items():
                table.add_row(url, str(amount))
            console.print(table)
            console.print(f"[green]Total: {await wallet.total_balance()} {wallet.unit}[/green]")

    run(_balance())


@app.command("mint-quote")
def mint_quote(
    amount: Annotated[int, typer.Argument(help="Amount to mint")],
    wallet_path: WalletOption = "wallet.json",
    mint_urls: MintOption = None,
    unit: UnitOption = "sat",
) -> None:
    """Request a Lightning invoice to mint ecash."""

    async def _mint_quote() -> None:
        async with await open_wallet(wallet_path, mint_urls, unit) as wallet:
            quote = await wallet.mint_quote(amount)
            console.print(Panel(quote.request, title=f"Pay to mint {amount} {quote.unit}"))
            console.print(f"Quote id: [bold]{quote.id}[/bold]")
            console.print(f"[dim]Then run: nutledger mint {quote.id}[/dim]")

    run(_mint_quote())


@app.command()
def mint(
    quote_id: Annotated[str, typer.Argument(help="Mint quote id")],
    wallet_path: WalletOption = "wallet.json",
    mint_urls: MintOption = None,
    unit: UnitOption = "sat",
    wait: Annotated[
        Optional[float],
        typer.Option("--wait", help="Seconds to wait for the invoice to be paid"),
    ] = None,
) -> None:
    """Mint proofs for a paid quote."""

    async def _mint() -> None:
        async with await open_wallet(wallet_path, mint_urls, unit) as wallet:
            if wait:
                console.print("[blue]Waiting for payment...[/blue]")
                await wallet.wait_for_mint_quote(quote_id, timeout=wait)
            proofs = await wallet.mint(quote_id)
            console.print(
                f"[green]✅ Minted {sum(p.amount for p in proofs)} "
                f"in {len(proofs)} proofs[/green]"
            )

    run(_mint())


@app.command()
def send(
    amount: Annotated[int, typer.Argument(help="Amount to send")],
    wallet_path: WalletOption = "wallet.json",
    mint_urls: MintOption = None,
    unit: UnitOption = "sat",
    memo: Annotated[Optional[str], typer.Option("--memo", help="Token memo")] = None,
    offline: Annotated[
        bool, typer.Option("--offline", help="Only use held proofs, never swap")
    ] = False,
    include_fee: Annotated[
        bool, typer.Option("--include-fee", help="Pay the recipient's redeem fee")
    ] = False,
    v3: Annotated[bool, typer.Option("--v3", help="Encode as cashuA (V3)")] = False,
) -> None:
    """Create a token to hand to someone else."""

    async def _send() -> None:
        async with await open_wallet(wallet_path, mint_urls, unit) as wallet:
            options = SendOptions(
                memo=SendMemo(memo) if memo else None,
                send_kind=OfflineExact() if offline else OnlineExact(),
                include_fee=include_fee,
            )
            token = await wallet.send(amount, options)
            console.print(Panel(token.encode(3 if v3 else 4), title=f"{token.amount} {token.unit}"))
            console.print(f"[dim]Remaining balance: {await wallet.total_balance()}[/dim]")

    run(_send())


@app.command()
def receive(
    token: Annotated[str, typer.Argument(help="Cashu token to receive")],
    wallet_path: WalletOption = "wallet.json",
    mint_urls: MintOption = None,
    unit: UnitOption = "sat",
    key: Annotated[
        Optional[list[str]],
        typer.Option("--key", help="Private key (hex) for P2PK locked proofs"),
    ] = None,
) -> None:
    """Receive a token into the wallet."""

    async def _receive() -> None:
        parsed = decode_token(token)
        urls = mint_urls or [parsed.mint_url]
        async with await open_wallet(wallet_path, urls, unit) as wallet:
            proofs = await wallet.receive(
                parsed, ReceiveOptions(p2pk_signing_keys=list(key or []))
            )
            console.print(
                f"[green]✅ Received {sum(p.amount for p in proofs)} {parsed.unit}[/green]"
            )

    run(_receive())


@app.command()
def seed(
    words: Annotated[int, typer.Option("--words", help="12 or 24 words")] = 12,
) -> None:
    """Generate a mnemonic for a seeded wallet."""
    if words not in (12, 24):
        console.print("[red]❌ --words must be 12 or 24[/red]")
        raise typer.Exit(1)
    mnemonic = generate_mnemonic(128 if words == 12 else 256)
    console.print(Panel(mnemonic, title="Mnemonic"))
    console.print(f"[dim]Keep it safe and set {MNEMONIC_ENV_VAR} to use it[/dim]")


@app.command()
def restore(
    wallet_path: WalletOption = "wallet.json",
    mint_urls: MintOption = None,
    unit: UnitOption = "sat",
) -> None:
    """Recover proofs minted from the mnemonic in NUTLEDGER_MNEMONIC."""

    async def _restore() -> None:
        async with await open_wallet(wallet_path, mint_urls, unit) as wallet:
            for url in wallet.mint_urls:
                proofs = await wallet.restore(mint_url=url)
                console.print(
                    f"[green]✅ Restored {sum(p.amount for p in proofs)} "
                    f"in {len(proofs)} proofs from {url}[/green]"
                )

    run(_restore())


@app.command()
def history(
    wallet_path: WalletOption = "wallet.json",
    mint_urls: MintOption = None,
    direction: Annotated[
        Optional[TransactionDirection],
        typer.Option("--direction", help="incoming or outgoing"),
    ] = None,
) -> None:
    """List recorded transactions."""
    if not os.path.exists(wallet_path):
        console.print(f"[yellow]No wallet file at {wallet_path}[/yellow]")
        raise typer.Exit(1)

    async def _history() -> None:
        db = JsonFileDatabase(wallet_path)
        transactions = await db.list_transactions(direction)
        if mint_urls:
            transactions = [t for t in transactions if t.mint_url in mint_urls]
        table = Table(title="Transactions")
        for column in ("Time", "Direction", "Amount", "Fee", "Mint", "Memo"):
            table.add_column(column)
        for tx in sorted(transactions, key=lambda t: t.timestamp):
            table.add_row(
                str(tx.timestamp),
                tx.direction.value,
                f"{tx.amount} {tx.unit}",
                str(tx.fee),
                tx.mint_url,
                tx.memo or "",
            )
        console.print(table)

    run(_history())


def version_callback(value: bool) -> None:
    """Handle version flag."""
    if value:
        console.print(f"nutledger v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, help="Show version"),
    ] = None,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Debug logging")
    ] = False,
) -> None:
    """nutledger - Cashu wallet engine CLI.

    Mints are read from `--mint` or the CASHU_MINTS environment variable
    (comma separated, also read from a .env file). Wallet settings come from
    NUTLEDGER_* variables.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":
    app()
