"""
Tests for settings and backend selection.
"""

from pathlib import Path

import pytest

from conftest import CONTRACT_ADDRESS, TEST_PRIVATE_KEY
from truth_relayer.chain import MockChainClient, Web3ChainClient
from truth_relayer.config import Settings
from truth_relayer.db import Database, parse_database_url
from truth_relayer.publisher import ArweavePublisher, MockPublisher
from truth_relayer.runtime import build_secret_source, build_services
from truth_relayer.signer import EnvSecretSource, VaultSecretSource


class TestSettings:
    """Environment-driven configuration."""

    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)

        assert settings.min_confirmations == 12
        assert settings.relayer_poll_interval_seconds == 5
        assert settings.watcher_poll_interval_seconds == 60
        assert settings.mint_gas_limit == 200_000
        assert settings.escalation_policy == "flag"

    def test_postgres_scheme_normalised(self) -> None:
        settings = Settings(_env_file=None, database_url="postgres://u:p@db:5432/truth")

        assert settings.database_url == "postgresql://u:p@db:5432/truth"

    def test_env_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("MIN_CONFIRMATIONS", raising=False)
        monkeypatch.delenv("ESCALATION_POLICY", raising=False)
        env = tmp_path / ".env"
        env.write_text("MIN_CONFIRMATIONS=3\nESCALATION_POLICY=resubmit\n")

        settings = Settings(_env_file=env)

        assert settings.min_confirmations == 3
        assert settings.escalation_policy == "resubmit"

    def test_parse_database_url(self) -> None:
        assert parse_database_url("./local.db") == "sqlite:///./local.db"
        assert parse_database_url("postgres://h/db") == "postgresql://h/db"
        assert parse_database_url("sqlite:///x.db") == "sqlite:///x.db"

    def test_password_masked(self, tmp_path: Path) -> None:
        db = Database(f"sqlite:///{tmp_path / 'm.db'}")

        assert db._mask_url("postgresql://user:hunter2@db/truth") == "postgresql://user:***@db/truth"
        db.close()


class TestBuildServices:
    """Backends are chosen once from settings."""

    def test_mock_backends(self, settings: Settings) -> None:
        services = build_services(settings)

        assert isinstance(services.chain, MockChainClient)
        assert isinstance(services.publisher, MockPublisher)
        assert isinstance(services.signer.cache.source, EnvSecretSource)
        assert services.contract.address == services.chain.contract.address
        assert services.signer.get_signer(settings.relayer_key_name).address
        assert services.relayer().task.interval_seconds == settings.relayer_poll_interval_seconds
        services.close()

    def test_real_backends(self, settings: Settings) -> None:
        real = settings.model_copy(
            update={
                "chain_backend": "web3",
                "publisher_backend": "arweave",
                "secret_backend": "vault",
                "vault_token": "s.token",
            }
        )

        services = build_services(real)

        assert isinstance(services.chain, Web3ChainClient)
        assert isinstance(services.publisher, ArweavePublisher)
        assert isinstance(services.signer.cache.source, VaultSecretSource)
        services.close()

    def test_vault_requires_token(self) -> None:
        settings = Settings(_env_file=None, secret_backend="vault", vault_token=None)

        with pytest.raises(ValueError):
            build_secret_source(settings)

    def test_env_source_uses_key_name(self) -> None:
        settings = Settings(
            _env_file=None,
            relayer_key_name="minter",
            relayer_private_key=TEST_PRIVATE_KEY,
            sbt_contract_address=CONTRACT_ADDRESS,
        )

        source = build_secret_source(settings)

        assert source.fetch("minter") == TEST_PRIVATE_KEY
