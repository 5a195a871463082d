"""
Service wiring.

Backends (chain, publisher, secret source) are chosen once from settings here;
nothing downstream branches on environment flags.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from .chain import ChainClient, MintContract, MockChainClient, Web3ChainClient, load_abi
from .config import Settings
from .credentials import CredentialRepository
from .db import Database
from .issuance import IssuanceService
from .ledger import CreditLedger
from .publisher import ArweavePublisher, MetadataPublisher, MockPublisher
from .relayer import RelayerWorker
from .signer import EnvSecretSource, KeySigner, SecretCache, SecretSource, VaultSecretSource
from .watcher import ConfirmationWatcher

logger = structlog.get_logger()


@dataclass
class Services:
    """Everything a process needs, built from one Settings instance."""

    settings: Settings
    database: Database
    ledger: CreditLedger
    repository: CredentialRepository
    issuance: IssuanceService
    contract: MintContract
    chain: ChainClient
    publisher: MetadataPublisher
    signer: KeySigner

    def relayer(self, worker_id: Optional[str] = None) -> RelayerWorker:
        return RelayerWorker(
            self.settings,
            self.repository,
            self.ledger,
            self.publisher,
            self.signer,
            self.chain,
            self.contract,
            worker_id=worker_id,
        )

    def watcher(self, worker_id: Optional[str] = None) -> ConfirmationWatcher:
        return ConfirmationWatcher(
            self.settings,
            self.repository,
            self.ledger,
            self.chain,
            self.contract,
            signer=self.signer,
            worker_id=worker_id,
        )

    def close(self) -> None:
        for resource in (self.publisher, self.signer.cache.source):
            close = getattr(resource, "close", None)
            if close is not None:
                close()
        self.database.close()


def build_contract(settings: Settings) -> MintContract:
    return MintContract(
        settings.sbt_contract_address,
        abi=load_abi(settings.sbt_abi_path),
        function_name=settings.mint_function,
        event_name=settings.mint_event,
    )


def build_chain(settings: Settings, contract: MintContract) -> ChainClient:
    if settings.chain_backend == "web3":
        return Web3ChainClient(settings.rpc_url, timeout=settings.rpc_timeout_seconds)
    return MockChainClient(contract, block_time_seconds=2.0)


def build_publisher(settings: Settings) -> MetadataPublisher:
    if settings.publisher_backend == "arweave":
        return ArweavePublisher(
            settings.arweave_gateway_url,
            api_key=settings.arweave_api_key,
            timeout=settings.publisher_timeout_seconds,
        )
    return MockPublisher()


def build_secret_source(settings: Settings) -> SecretSource:
    if settings.secret_backend == "vault":
        if not settings.vault_token:
            raise ValueError("VAULT_TOKEN is required when SECRET_BACKEND=vault")
        return VaultSecretSource(
            settings.vault_url,
            settings.vault_token,
            mount=settings.vault_mount,
        )
    return EnvSecretSource({settings.relayer_key_name: settings.relayer_private_key})


def build_services(settings: Settings) -> Services:
    """Construct the full object graph for `settings`."""
    database = Database(settings.database_url)
    ledger = CreditLedger(database)
    repository = CredentialRepository(database)
    contract = build_contract(settings)
    signer = KeySigner(
        SecretCache(build_secret_source(settings), ttl_seconds=settings.secret_cache_ttl_seconds)
    )

    services = Services(
        settings=settings,
        database=database,
        ledger=ledger,
        repository=repository,
        issuance=IssuanceService(settings, ledger, repository),
        contract=contract,
        chain=build_chain(settings, contract),
        publisher=build_publisher(settings),
        signer=signer,
    )
    logger.info(
        "services_built",
        chain_backend=settings.chain_backend,
        publisher_backend=settings.publisher_backend,
        secret_backend=settings.secret_backend,
        contract=contract.address,
        chain_id=settings.chain_id,
    )
    return services
