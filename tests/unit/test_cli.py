"""Test the offline CLI commands."""

import asyncio

import pytest
from typer.testing import CliRunner

from nutledger import __version__
from nutledger.cli import app
from nutledger.crypto import public_key_of
from nutledger.database import JsonFileDatabase
from nutledger.token import Token
from nutledger.types import (
    CurrencyUnit,
    Proof,
    Transaction,
    TransactionDirection,
)

runner = CliRunner()


@pytest.fixture
def token() -> str:
    proofs = [
        Proof(amount=a, id="009a1f293253e41e", secret=f"{a:064x}", C=public_key_of(f"{a:064x}"))
        for a in (1, 4)
    ]
    return Token(
        mint_url="https://mint.example.com", unit=CurrencyUnit.SAT, proofs=proofs, memo="hi"
    ).encode()


class TestDecode:
    def test_shows_token(self, token: str) -> None:
        result = runner.invoke(app, ["decode", token])

        assert result.exit_code == 0
        assert "https://mint.example.com" in result.output
        assert "Amount: 5" in result.output
        assert "009a1f293253e41e" in result.output

    def test_malformed(self) -> None:
        result = runner.invoke(app, ["decode", "cashuBgarbage"])
        assert result.exit_code == 1
        assert "MalformedToken" in result.output


class TestSplit:
    @pytest.mark.parametrize(
        "args,expected",
        [
            (["13"], "1 + 4 + 8 = 13"),
            (["20", "--value", "8"], "8 + 8 + 4 = 20"),
            (["6", "--values", "3,3"], "3 + 3 = 6"),
        ],
    )
    def test_split(self, args, expected) -> None:
        result = runner.invoke(app, ["split", *args])
        assert result.exit_code == 0
        assert expected in result.output

    def test_values_must_sum(self) -> None:
        result = runner.invoke(app, ["split", "6", "--values", "1,2"])
        assert result.exit_code == 1

    def test_value_and_values_exclusive(self) -> None:
        result = runner.invoke(app, ["split", "6", "--value", "2", "--values", "2,4"])
        assert result.exit_code == 1


class TestHistory:
    def test_missing_wallet(self, tmp_path) -> None:
        result = runner.invoke(app, ["history", "--wallet", str(tmp_path / "none.json")])
        assert result.exit_code == 1

    def test_lists_transactions(self, tmp_path) -> None:
        path = tmp_path / "wallet.json"
        db = JsonFileDatabase(path)
        for direction, amount in ((TransactionDirection.INCOMING, 21), (TransactionDirection.OUTGOING, 8)):
            asyncio.run(
                db.add_transaction(
                    Transaction.new(
                        mint_url="https://mint.example.com",
                        direction=direction,
                        amount=amount,
                        fee=0,
                        unit=CurrencyUnit.SAT,
                        ys=[f"02{amount:064x}"],
                        memo="coffee" if amount == 8 else None,
                    )
                )
            )

        result = runner.invoke(
            app, ["history", "--wallet", str(path), "--direction", "outgoing"]
        )

        assert result.exit_code == 0
        assert "8 sat" in result.output
        assert "21 sat" not in result.output


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output



class TestSeed:
    def test_generates_mnemonic(self) -> None:
        result = runner.invoke(app, ["seed", "--words", "24"])
        assert result.exit_code == 0
        assert "Mnemonic" in result.output

    def test_word_count(self) -> None:
        result = runner.invoke(app, ["seed", "--words", "13"])
        assert result.exit_code == 1

    def test_restore_needs_mnemonic(self, tmp_path, monkeypatch) -> None:
        monkeypatch.delenv("NUTLEDGER_MNEMONIC", raising=False)
        monkeypatch.chdir(tmp_path)

        result = runner.invoke(
            app,
            ["restore", "--wallet", str(tmp_path / "w.json"), "--mint", "https://mint.example.com"],
        )

        assert result.exit_code == 1
        assert "mnemonic" in result.output
