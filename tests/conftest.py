from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

import pytest
from eth_account import Account

from truth_relayer.chain import MintContract, MockChainClient, Receipt
from truth_relayer.config import Settings
from truth_relayer.credentials import CredentialRepository
from truth_relayer.db import Database, utcnow
from truth_relayer.errors import PublisherError, TransientChainError
from truth_relayer.issuance import IssuanceService
from truth_relayer.ledger import CreditLedger
from truth_relayer.publisher import MockPublisher
from truth_relayer.relayer import RelayerWorker
from truth_relayer.signer import EnvSecretSource, KeySigner, SecretCache
from truth_relayer.watcher import ConfirmationWatcher

# Well-known throwaway key (never funded on any real network).
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
RELAYER_ADDRESS = Account.from_key(TEST_PRIVATE_KEY).address

CONTRACT_ADDRESS = "0x00000000000000000000000000000000000005b7"
RECIPIENT = "0x1111111111111111111111111111111111111111"
OTHER_RECIPIENT = "0x2222222222222222222222222222222222222222"
ISSUER = "issuer-1"

METADATA = {"name": "Bachelor of Science", "issuer": "Example University", "year": 2024}


class FakeClock:
    """Naive-UTC clock that can be moved forward."""

    def __init__(self) -> None:
        self.offset = timedelta()

    def __call__(self) -> datetime:
        return utcnow() + self.offset

    def advance(self, **kwargs: float) -> None:
        self.offset += timedelta(**kwargs)


class CountingPublisher(MockPublisher):
    """MockPublisher that counts calls and can be told to fail."""

    def __init__(self, failures: int = 0) -> None:
        super().__init__()
        self.calls = 0
        self.failures = failures

    def publish(self, payload: dict[str, Any]) -> str:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise PublisherError("gateway unavailable")
        return super().publish(payload)


class ScriptedChain:
    """
    Wraps MockChainClient and injects errors into `submit_signed`.

    `errors` is consumed one item per call before the transaction reaches the
    pool; None means pass through. `reply_errors` is consumed only after the
    pool accepted the transaction, so the node has it but the caller sees a
    failure. With `mine_on_submit` every accepted transaction is mined at once.
    """

    def __init__(self, inner: MockChainClient, errors: Optional[list[Optional[Exception]]] = None):
        self.inner = inner
        self.errors = list(errors or [])
        self.reply_errors: list[Optional[Exception]] = []
        self.submitted: list[bytes] = []
        self.strip_logs = False
        self.mine_on_submit = False

    def pending_nonce(self, address: str) -> int:
        return self.inner.pending_nonce(address)

    def confirmed_nonce(self, address: str) -> int:
        return self.inner.confirmed_nonce(address)

    def gas_price(self) -> int:
        return self.inner.gas_price()

    def submit_signed(self, raw_transaction: bytes) -> str:
        self.submitted.append(raw_transaction)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        tx_hash = self.inner.submit_signed(raw_transaction)
        if self.mine_on_submit:
            self.inner.mine()
        if self.reply_errors:
            error = self.reply_errors.pop(0)
            if error is not None:
                raise error
        return tx_hash

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        receipt = self.inner.get_receipt(tx_hash)
        if receipt is not None and self.strip_logs:
            receipt.logs = []
        return receipt

    def block_height(self) -> int:
        return self.inner.block_height()


def always_transient(count: int) -> list[Optional[Exception]]:
    return [TransientChainError("request timed out") for _ in range(count)]


@pytest.fixture
def settings(tmp_path: Any) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'truth.db'}",
        sbt_contract_address=CONTRACT_ADDRESS,
        relayer_private_key=TEST_PRIVATE_KEY,
        chain_backend="mock",
        publisher_backend="mock",
        secret_backend="env",
        retry_backoff_seconds=0,
        max_attempts=3,
        gas_bump_percent=10,
        min_confirmations=12,
        pending_timeout_minutes=30,
        mint_credit_cost=Decimal("1.00"),
    )


@pytest.fixture
def database(settings: Settings):
    db = Database(settings.database_url)
    yield db
    db.close()


@pytest.fixture
def ledger(database: Database) -> CreditLedger:
    return CreditLedger(database)


@pytest.fixture
def repository(database: Database) -> CredentialRepository:
    return CredentialRepository(database)


@pytest.fixture
def issuance(settings: Settings, ledger: CreditLedger, repository: CredentialRepository) -> IssuanceService:
    return IssuanceService(settings, ledger, repository)


@pytest.fixture
def funded_issuer(ledger: CreditLedger) -> str:
    """An issuer holding 10.00 credits."""
    ledger.open_account(ISSUER)
    ledger.purchase(ISSUER, "10.00", "pay-initial")
    return ISSUER


@pytest.fixture
def contract() -> MintContract:
    return MintContract(CONTRACT_ADDRESS)


@pytest.fixture
def mock_chain(contract: MintContract) -> MockChainClient:
    return MockChainClient(contract)


@pytest.fixture
def chain(mock_chain: MockChainClient) -> ScriptedChain:
    return ScriptedChain(mock_chain)


@pytest.fixture
def publisher() -> CountingPublisher:
    return CountingPublisher()


@pytest.fixture
def signer() -> KeySigner:
    return KeySigner(SecretCache(EnvSecretSource({"relayer_private_key": TEST_PRIVATE_KEY})))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_relayer(
    settings: Settings,
    repository: CredentialRepository,
    ledger: CreditLedger,
    publisher: CountingPublisher,
    signer: KeySigner,
    chain: ScriptedChain,
    contract: MintContract,
) -> Callable[..., RelayerWorker]:
    def _make(**overrides: Any) -> RelayerWorker:
        kwargs: dict[str, Any] = dict(
            settings=settings,
            repository=repository,
            ledger=ledger,
            publisher=publisher,
            signer=signer,
            chain=chain,
            contract=contract,
            worker_id="relayer-test",
            sleep=lambda seconds: None,
        )
        kwargs.update(overrides)
        return RelayerWorker(**kwargs)

    return _make


@pytest.fixture
def relayer(make_relayer: Callable[..., RelayerWorker]) -> RelayerWorker:
    return make_relayer()


@pytest.fixture
def make_watcher(
    settings: Settings,
    repository: CredentialRepository,
    ledger: CreditLedger,
    signer: KeySigner,
    chain: ScriptedChain,
    contract: MintContract,
    clock: FakeClock,
) -> Callable[..., ConfirmationWatcher]:
    def _make(**overrides: Any) -> ConfirmationWatcher:
        watcher_settings = settings.model_copy(update=overrides.pop("settings_update", {}))
        kwargs: dict[str, Any] = dict(
            settings=watcher_settings,
            repository=repository,
            ledger=ledger,
            chain=chain,
            contract=contract,
            signer=signer,
            worker_id="watcher-test",
            clock=clock,
        )
        kwargs.update(overrides)
        return ConfirmationWatcher(**kwargs)

    return _make


@pytest.fixture
def watcher(make_watcher: Callable[..., ConfirmationWatcher]) -> ConfirmationWatcher:
    return make_watcher()
