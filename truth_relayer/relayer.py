"""
Relayer worker - publishes metadata and submits mint transactions.

Drains QUEUED credentials and advances each to PENDING exactly once.
"""

import os
import socket
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import structlog
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .chain import ChainClient, MintContract
from .config import Settings
from .credentials import CredentialRepository
from .errors import (
    ChainError,
    LeaseLost,
    PermanentChainError,
    PublisherError,
    SignerUnavailable,
    TransientChainError,
)
from .ledger import CreditLedger
from .models import Credential, CredentialStatus
from .publisher import MetadataPublisher
from .scheduler import PeriodicTask
from .signer import KeySigner

logger = structlog.get_logger()

# Node answers meaning this exact transaction is already in its pool.
ALREADY_KNOWN_MARKERS = ("already known", "known transaction")

# Node answers meaning the transaction was refused and never entered the pool.
REJECTION_MARKERS = (
    "nonce too high",
    "underpriced",
    "max fee per gas less than block base fee",
)


def default_worker_id(prefix: str) -> str:
    """Lease owner name: host, pid and a short random suffix."""
    return f"{prefix}-{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"[:64]


def bump_gas_price(gas_price: int, percent: int) -> int:
    """Raise `gas_price` by `percent`, always by at least 1 wei."""
    return max(gas_price * (100 + percent) // 100, gas_price + 1)


def sent_tx_hashes(credential: Credential) -> list[str]:
    """Every mint transaction hash recorded for `credential`, oldest first."""
    hashes = list(credential.superseded_tx_hashes)
    if credential.tx_hash and credential.tx_hash not in hashes:
        hashes.append(credential.tx_hash)
    return hashes


def _is_already_known(message: str) -> bool:
    return any(marker in message for marker in ALREADY_KNOWN_MARKERS)


def _is_rejection(message: str) -> bool:
    return any(marker in message for marker in REJECTION_MARKERS)


def build_mint_transaction(
    contract: MintContract,
    chain_id: int,
    gas_limit: int,
    nonce: int,
    gas_price: int,
    recipient: str,
    metadata_uri: str,
) -> dict[str, Any]:
    """Unsigned legacy transaction calling the contract's mint function."""
    return {
        "chainId": chain_id,
        "nonce": nonce,
        "to": contract.address,
        "value": 0,
        "gas": gas_limit,
        "gasPrice": gas_price,
        "data": contract.encode_mint(recipient, metadata_uri),
    }


@dataclass
class RelayResult:
    """Outcome of one relayer pass over a credential."""

    credential_id: str
    status: CredentialStatus
    tx_hash: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is CredentialStatus.PENDING


def _deferred(credential: Credential, error: str) -> RelayResult:
    """Left QUEUED for a later pass."""
    return RelayResult(
        credential_id=credential.id,
        status=CredentialStatus.QUEUED,
        error=error,
    )


@dataclass
class RelayerState:
    """Current relayer state."""

    last_poll_time: Optional[datetime] = None
    submitted: int = 0
    failed: int = 0
    deferred: int = 0


class RelayerWorker:
    """
    Relayer that, per claimed credential:
    1. Publishes metadata (once; the content address is checkpointed)
    2. Builds and signs the mint transaction with the relayer key
    3. Submits it, escalating gas on transient errors
    4. Moves the credential to PENDING, or to FAILED with a refund
    """

    def __init__(
        self,
        settings: Settings,
        repository: CredentialRepository,
        ledger: CreditLedger,
        publisher: MetadataPublisher,
        signer: KeySigner,
        chain: ChainClient,
        contract: MintContract,
        worker_id: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.repository = repository
        self.ledger = ledger
        self.publisher = publisher
        self.signer = signer
        self.chain = chain
        self.contract = contract
        self.worker_id = worker_id or default_worker_id("relayer")
        self.state = RelayerState()
        self._sleep = sleep
        self.task = PeriodicTask(
            "relayer", settings.relayer_poll_interval_seconds, self._poll
        )

        logger.info(
            "relayer_initialized",
            worker_id=self.worker_id,
            contract=contract.address,
            poll_interval=settings.relayer_poll_interval_seconds,
            max_attempts=settings.max_attempts,
            gas_bump_percent=settings.gas_bump_percent,
        )

    def run_once(self) -> list[RelayResult]:
        """
        Run one cycle of the relayer.

        Credentials are claimed one at a time, so each lease starts right
        before its row is worked on. Returns one result per credential
        handled; a failure on one credential never stops the rest.
        """
        settings = self.settings
        results = []
        handled: list[str] = []

        while len(handled) < settings.batch_size:
            claimed = self.repository.claim(
                CredentialStatus.QUEUED,
                owner=self.worker_id,
                limit=1,
                lease_seconds=settings.lease_seconds,
                exclude=handled,
            )
            if not claimed:
                break
            credential = claimed[0]
            handled.append(credential.id)

            try:
                result = self.process_credential(credential)
            except Exception as e:
                logger.error(
                    "credential_processing_error",
                    credential_id=credential.id,
                    error=str(e),
                )
                result = RelayResult(
                    credential_id=credential.id,
                    status=credential.status,
                    error=str(e),
                )
            finally:
                self.repository.release(credential.id, self.worker_id)
            results.append(result)

        if results:
            logger.info("relayer_batch_processed", count=len(results))
        self.state.last_poll_time = datetime.now()
        return results

    def _poll(self) -> None:
        results = self.run_once()
        for result in results:
            if result.success:
                self.state.submitted += 1
            elif result.status is CredentialStatus.FAILED:
                self.state.failed += 1
            else:
                self.state.deferred += 1

        if results:
            logger.info(
                "poll_cycle_complete",
                task="relayer",
                submitted=self.state.submitted,
                failed=self.state.failed,
                deferred=self.state.deferred,
            )

    def run(self) -> None:
        """Run the relayer continuously in the calling thread."""
        self.task.run()

    def stop(self) -> None:
        """Stop the relayer."""
        logger.info("relayer_stopping")
        self.task.stop()

    def process_credential(self, credential: Credential) -> RelayResult:
        """Advance one QUEUED credential as far as it can go this pass."""
        log = logger.bind(credential_id=credential.id)

        try:
            # Publish once; the address is committed before any chain call
            if credential.content_address is None:
                try:
                    content_address = self.publisher.publish(credential.metadata)
                except PublisherError as e:
                    log.warning("metadata_publish_deferred", error=str(e))
                    return _deferred(credential, str(e))
                credential = self.repository.record_content_address(
                    credential.id, content_address, owner=self.worker_id
                )
                log.info("content_address_recorded", content_address=content_address)

            # Relayer key
            try:
                account = self.signer.get_signer(self.settings.relayer_key_name)
            except SignerUnavailable as e:
                log.warning("signer_unavailable", error=str(e))
                return _deferred(credential, str(e))

            # Build, sign, submit
            return self._submit(credential, account)

        except LeaseLost as e:
            # Another worker owns the row now; it resumes from the saved nonce.
            log.warning("relayer_lease_lost", worker_id=self.worker_id)
            return _deferred(credential, str(e))

    def _submit(self, credential: Credential, account: LocalAccount) -> RelayResult:
        settings = self.settings
        log = logger.bind(credential_id=credential.id, relayer=account.address)
        metadata_uri = credential.metadata_uri or ""

        # A nonce saved by an earlier pass is kept: one of its transactions
        # may already be in the pool or mined.
        nonce = credential.nonce
        gas_price = credential.gas_price
        maybe_sent = sent_tx_hashes(credential)
        resuming = nonce is not None and bool(maybe_sent)
        last_error = ""

        if resuming:
            # Nonce read before receipts: a consumed nonce with none of our
            # hashes mined means ours can no longer land.
            confirmed_nonce = self.chain.confirmed_nonce(account.address)
            landed = self._find_mined(maybe_sent)
            if landed is not None:
                log.info("mint_tx_found_mined", tx_hash=landed, nonce=nonce)
                return self._accept(credential, landed, nonce, gas_price, 0)
            if confirmed_nonce > nonce:
                log.info(
                    "saved_nonce_consumed", nonce=nonce, confirmed_nonce=confirmed_nonce
                )
                nonce, gas_price, maybe_sent, resuming = None, None, [], False

        for attempt in range(1, settings.max_attempts + 1):
            tx_hash: Optional[str] = None
            try:
                if nonce is None:
                    nonce = self.chain.pending_nonce(account.address)
                if gas_price is None:
                    gas_price = self.chain.gas_price()

                tx = build_mint_transaction(
                    self.contract,
                    chain_id=settings.chain_id,
                    gas_limit=settings.mint_gas_limit,
                    nonce=nonce,
                    gas_price=gas_price,
                    recipient=credential.recipient_wallet_address,
                    metadata_uri=metadata_uri,
                )
                signed = account.sign_transaction(tx)
                tx_hash = Web3.to_hex(signed.hash)

                # Saved before broadcast, and only while the lease is held.
                credential = self.repository.record_attempt(
                    credential.id,
                    self.worker_id,
                    nonce=nonce,
                    gas_price=gas_price,
                    tx_hash=tx_hash,
                    lease_seconds=settings.lease_seconds,
                )
                tx_hash = self.chain.submit_signed(signed.raw_transaction)

            except TransientChainError as e:
                last_error = str(e)
                if tx_hash is not None and _is_already_known(last_error):
                    # The node already holds this exact transaction.
                    return self._accept(credential, tx_hash, nonce, gas_price, attempt)

                if resuming and attempt == 1 and "underpriced" in last_error:
                    # The resend carries our highest gas price, so the pool
                    # entry at this nonce belongs to another transaction.
                    log.info("saved_nonce_taken", nonce=nonce)
                    nonce, gas_price, maybe_sent = None, None, []
                    continue

                if "nonce too low" in last_error:
                    if maybe_sent:
                        # One of ours used the nonce, or will be shown to have
                        # by the watcher. Never move to a fresh nonce here.
                        landed = self._find_mined(maybe_sent)
                        log.warning(
                            "mint_nonce_consumed",
                            nonce=nonce,
                            landed_tx_hash=landed,
                            attempt=attempt,
                        )
                        return self._accept(
                            credential, landed or maybe_sent[-1], nonce, gas_price, attempt
                        )
                    # Nothing of ours was ever broadcast with this nonce.
                    nonce = None
                elif (
                    tx_hash is not None
                    and tx_hash not in maybe_sent
                    and not _is_rejection(last_error)
                ):
                    maybe_sent.append(tx_hash)

                if gas_price is not None:
                    gas_price = bump_gas_price(gas_price, settings.gas_bump_percent)
                log.warning(
                    "mint_submit_retry",
                    attempt=attempt,
                    max_attempts=settings.max_attempts,
                    next_gas_price=gas_price,
                    error=last_error,
                )
                if attempt < settings.max_attempts:
                    self._sleep(settings.retry_backoff_seconds * attempt)
                continue

            except PermanentChainError as e:
                log.error("mint_submit_rejected", attempt=attempt, error=str(e))
                return self._settle_or_fail(
                    credential, maybe_sent, nonce, gas_price,
                    f"Transaction rejected: {e}", attempt,
                )

            return self._accept(credential, tx_hash, nonce, gas_price, attempt)

        return self._settle_or_fail(
            credential, maybe_sent, nonce, gas_price,
            f"Gave up after {settings.max_attempts} attempts: {last_error}",
            settings.max_attempts,
        )

    def _accept(
        self,
        credential: Credential,
        tx_hash: str,
        nonce: Optional[int],
        gas_price: Optional[int],
        attempts: int,
    ) -> RelayResult:
        credential = self.repository.mark_submitted(
            credential.id,
            tx_hash=tx_hash,
            nonce=nonce,
            gas_price=gas_price,
            owner=self.worker_id,
        )
        logger.info(
            "mint_tx_sent",
            credential_id=credential.id,
            tx_hash=tx_hash,
            nonce=nonce,
            gas_price=gas_price,
            attempt=attempts,
            recipient=credential.recipient_wallet_address,
        )
        return RelayResult(
            credential_id=credential.id,
            status=CredentialStatus.PENDING,
            tx_hash=tx_hash,
            attempts=attempts,
        )

    def _find_mined(self, tx_hashes: list[str]) -> Optional[str]:
        """Newest hash among `tx_hashes` that has a receipt, if any."""
        for tx_hash in reversed(tx_hashes):
            try:
                if self.chain.get_receipt(tx_hash) is not None:
                    return tx_hash
            except ChainError as e:
                logger.warning("receipt_lookup_failed", tx_hash=tx_hash, error=str(e))
        return None

    def _settle_or_fail(
        self,
        credential: Credential,
        maybe_sent: list[str],
        nonce: Optional[int],
        gas_price: Optional[int],
        reason: str,
        attempts: int,
    ) -> RelayResult:
        landed = self._find_mined(maybe_sent) if maybe_sent else None
        if landed is not None:
            return self._accept(credential, landed, nonce, gas_price, attempts)
        return self._fail(credential, reason, attempts)

    def _fail(self, credential: Credential, reason: str, attempts: int) -> RelayResult:
        credential, refund = self.repository.mark_failed(
            credential.id,
            CredentialStatus.QUEUED,
            reason,
            self.ledger,
            owner=self.worker_id,
        )
        logger.error(
            "credential_failed",
            credential_id=credential.id,
            reason=reason,
            refunded=str(refund.amount) if refund else None,
        )
        return RelayResult(
            credential_id=credential.id,
            status=CredentialStatus.FAILED,
            attempts=attempts,
            error=reason,
        )
