"""
Tests for the operator CLI, run against a SQLite file and the mock backends.
"""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from conftest import CONTRACT_ADDRESS, RECIPIENT, TEST_PRIVATE_KEY
from truth_relayer import __version__
from truth_relayer.cli import app

runner = CliRunner()


@pytest.fixture
def env_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in ("DATABASE_URL", "CHAIN_BACKEND", "PUBLISHER_BACKEND", "SECRET_BACKEND"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / ".env"
    path.write_text(
        "\n".join(
            [
                f"DATABASE_URL=sqlite:///{tmp_path / 'cli.db'}",
                f"RELAYER_PRIVATE_KEY={TEST_PRIVATE_KEY}",
                f"SBT_CONTRACT_ADDRESS={CONTRACT_ADDRESS}",
                "CHAIN_BACKEND=mock",
                "PUBLISHER_BACKEND=mock",
                "SECRET_BACKEND=env",
                "RETRY_BACKOFF_SECONDS=0",
            ]
        )
    )
    return path


def _invoke(env_file: Path, *args: str):
    return runner.invoke(app, ["--config", str(env_file), *args])


def _credential_id(output: str) -> str:
    for line in output.splitlines():
        if line.startswith("Queued credential "):
            return line.split()[-1]
    raise AssertionError(f"no credential id in output:\n{output}")


class TestCli:
    """End-to-end operator flows."""

    def test_version(self) -> None:
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert f"truth-relayer v{__version__}" in result.output

    def test_issue_and_relay(self, env_file: Path) -> None:
        assert _invoke(env_file, "init-db").exit_code == 0

        opened = _invoke(env_file, "account", "open", "acme")
        assert opened.exit_code == 0
        assert "Account acme balance=0.00" in opened.output

        bought = _invoke(env_file, "purchase", "acme", "5", "--ref", "pay-1")
        assert bought.exit_code == 0
        assert "balance=5.00" in bought.output

        issued = _invoke(
            env_file, "issue", "acme", RECIPIENT, "--metadata", '{"name": "Diploma"}', "--ref", "STU-1"
        )
        assert issued.exit_code == 0, issued.output
        credential_id = _credential_id(issued.output)

        relayed = _invoke(env_file, "relayer", "--once")
        assert relayed.exit_code == 0, relayed.output
        assert f"✓ {credential_id}" in relayed.output
        assert "Processed 1 credentials" in relayed.output

        shown = _invoke(env_file, "show", credential_id)
        assert "Status: PENDING" in shown.output
        assert "Metadata: ar://ar-hash-TRUTH-" in shown.output
        assert "Issuer ref: STU-1" in shown.output

        balance = _invoke(env_file, "balance", "acme")
        assert "Balance: 4.00" in balance.output
        assert "Ledger consistent: yes" in balance.output

        history = _invoke(env_file, "history", "acme", "--type", "deduct")
        assert history.exit_code == 0
        assert "DEDUCT" in history.output
        assert "PURCHASE" not in history.output

        listed = _invoke(env_file, "list", "--issuer", "acme")
        assert credential_id in listed.output

    def test_issue_metadata_from_file(self, env_file: Path, tmp_path: Path) -> None:
        metadata = tmp_path / "diploma.json"
        metadata.write_text('{"title": "Certificate of Completion"}')
        _invoke(env_file, "purchase", "acme", "1", "--ref", "pay-1")

        issued = _invoke(env_file, "issue", "acme", RECIPIENT, "--metadata", f"@{metadata}")

        assert issued.exit_code == 0, issued.output
        assert "Balance: 0.00" in issued.output

    def test_errors_exit_non_zero(self, env_file: Path) -> None:
        _invoke(env_file, "purchase", "acme", "1", "--ref", "pay-1")

        duplicate = _invoke(env_file, "purchase", "acme", "1", "--ref", "pay-1")
        assert duplicate.exit_code == 1
        assert "Duplicate payment reference" in duplicate.output

        bad_address = _invoke(env_file, "issue", "acme", "0x123", "--metadata", '{"name": "x"}')
        assert bad_address.exit_code == 1
        assert "Invalid EVM address" in bad_address.output

        _invoke(env_file, "issue", "acme", RECIPIENT, "--metadata", '{"name": "x"}')
        broke = _invoke(env_file, "issue", "acme", RECIPIENT, "--metadata", '{"name": "y"}')
        assert broke.exit_code == 1
        assert "Insufficient credits" in broke.output

        unknown = _invoke(env_file, "verify", "99")
        assert unknown.exit_code == 1
        assert "not a known credential" in unknown.output

    def test_revoke_requires_confirmed(self, env_file: Path) -> None:
        _invoke(env_file, "purchase", "acme", "1", "--ref", "pay-1")
        issued = _invoke(env_file, "issue", "acme", RECIPIENT, "--metadata", '{"name": "x"}')

        revoked = _invoke(env_file, "revoke", _credential_id(issued.output))

        assert revoked.exit_code == 1
        assert "Illegal transition" in revoked.output
