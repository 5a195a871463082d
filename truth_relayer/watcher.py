"""
Confirmation watcher for submitted mint transactions.

Polls receipts for PENDING credentials, applies the confirmation-depth policy,
extracts the minted token id and reconciles the ledger on failure.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from eth_account.signers.local import LocalAccount

from .chain import ChainClient, MintContract, Receipt
from .config import Settings
from .credentials import CredentialRepository
from .db import utcnow
from .errors import ChainError, SignerUnavailable, TransientChainError
from .ledger import CreditLedger
from .models import Credential, CredentialStatus
from .relayer import build_mint_transaction, bump_gas_price, default_worker_id
from .scheduler import PeriodicTask
from .signer import KeySigner

logger = structlog.get_logger()


@dataclass
class WatchResult:
    """Outcome of checking one PENDING credential."""

    credential_id: str
    status: CredentialStatus
    confirmations: Optional[int] = None
    token_id: Optional[int] = None
    escalated: bool = False
    error: Optional[str] = None


@dataclass
class WatcherState:
    """Current watcher state."""

    last_poll_time: Optional[datetime] = None
    confirmed: int = 0
    failed: int = 0
    still_pending: int = 0


class ConfirmationWatcher:
    """
    Watcher that moves PENDING credentials to CONFIRMED or FAILED.

    Credentials with no receipt after `pending_timeout_minutes` are handled by
    the configured escalation policy:

    - flag: mark `escalated_at` for manual follow-up
    - resubmit: send a replacement with the same nonce and a higher gas price
    - fail: fail and refund, but only once the relayer's confirmed nonce has
      passed the credential's nonce with none of its hashes mined; otherwise
      fall back to flag
    """

    def __init__(
        self,
        settings: Settings,
        repository: CredentialRepository,
        ledger: CreditLedger,
        chain: ChainClient,
        contract: MintContract,
        signer: Optional[KeySigner] = None,
        worker_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.repository = repository
        self.ledger = ledger
        self.chain = chain
        self.contract = contract
        self.signer = signer
        self.worker_id = worker_id or default_worker_id("watcher")
        self.state = WatcherState()
        self._clock = clock
        self.task = PeriodicTask(
            "watcher", settings.watcher_poll_interval_seconds, self._poll
        )

        logger.info(
            "watcher_initialized",
            worker_id=self.worker_id,
            min_confirmations=settings.min_confirmations,
            poll_interval=settings.watcher_poll_interval_seconds,
            escalation_policy=settings.escalation_policy,
        )

    def run_once(self) -> list[WatchResult]:
        """Check every claimable PENDING credential once."""
        settings = self.settings
        results = []

        claimed = self.repository.claim(
            CredentialStatus.PENDING,
            owner=self.worker_id,
            limit=settings.batch_size,
            lease_seconds=settings.lease_seconds,
            require_tx_hash=True,
        )

        for credential in claimed:
            try:
                result = self.check_credential(credential)
            except Exception as e:
                logger.error(
                    "confirmation_check_error",
                    credential_id=credential.id,
                    tx_hash=credential.tx_hash,
                    error=str(e),
                )
                result = WatchResult(
                    credential_id=credential.id,
                    status=credential.status,
                    error=str(e),
                )
            finally:
                self.repository.release(credential.id, self.worker_id)
            results.append(result)

        self.state.last_poll_time = datetime.now()
        return results

    def _poll(self) -> None:
        results = self.run_once()
        for result in results:
            if result.status is CredentialStatus.CONFIRMED:
                self.state.confirmed += 1
            elif result.status is CredentialStatus.FAILED:
                self.state.failed += 1
            else:
                self.state.still_pending += 1

        if results:
            logger.info(
                "poll_cycle_complete",
                task="watcher",
                confirmed=self.state.confirmed,
                failed=self.state.failed,
                still_pending=self.state.still_pending,
            )

    def run(self) -> None:
        """Run the watcher continuously in the calling thread."""
        self.task.run()

    def stop(self) -> None:
        logger.info("watcher_stopping")
        self.task.stop()

    def check_credential(self, credential: Credential) -> WatchResult:
        """Decide finality for one PENDING credential."""
        log = logger.bind(credential_id=credential.id, tx_hash=credential.tx_hash)

        # Step 1: receipt (the current hash, then any replaced ones)
        receipt = self._find_receipt(credential)
        if receipt is None:
            return self._handle_unmined(credential)

        if receipt.tx_hash != credential.tx_hash:
            log.info("superseded_tx_mined", mined_tx_hash=receipt.tx_hash)
            credential = self.repository.adopt_tx_hash(credential.id, receipt.tx_hash)

        # Step 2: revert
        if not receipt.succeeded:
            credential, refund = self.repository.mark_failed(
                credential.id,
                CredentialStatus.PENDING,
                "Transaction reverted by contract",
                self.ledger,
                owner=self.worker_id,
            )
            log.error(
                "mint_tx_reverted",
                block_number=receipt.block_number,
                refunded=str(refund.amount) if refund else None,
            )
            return WatchResult(
                credential_id=credential.id,
                status=CredentialStatus.FAILED,
                error="reverted",
            )

        # Step 3: depth
        confirmations = self.chain.block_height() - receipt.block_number
        if confirmations < self.settings.min_confirmations:
            log.debug(
                "mint_tx_awaiting_confirmations",
                confirmations=confirmations,
                required=self.settings.min_confirmations,
            )
            return WatchResult(
                credential_id=credential.id,
                status=CredentialStatus.PENDING,
                confirmations=confirmations,
            )

        # Step 4: token id
        token_id = self.contract.decode_token_id(receipt.logs)
        if token_id is None:
            log.error(
                "mint_event_missing",
                contract=self.contract.address,
                event=self.contract.event_signature,
                log_count=len(receipt.logs),
            )
            return WatchResult(
                credential_id=credential.id,
                status=CredentialStatus.PENDING,
                confirmations=confirmations,
                error="mint event not found in receipt",
            )

        credential = self.repository.mark_confirmed(
            credential.id, token_id, confirmed_at=self._clock()
        )
        log.info(
            "credential_confirmed",
            token_id=str(token_id),
            block_number=receipt.block_number,
            confirmations=confirmations,
        )
        return WatchResult(
            credential_id=credential.id,
            status=CredentialStatus.CONFIRMED,
            confirmations=confirmations,
            token_id=token_id,
        )

    def _find_receipt(self, credential: Credential) -> Optional[Receipt]:
        hashes = [credential.tx_hash] + list(reversed(credential.superseded_tx_hashes))
        for tx_hash in hashes:
            if not tx_hash:
                continue
            receipt = self.chain.get_receipt(tx_hash)
            if receipt is not None:
                return receipt
        return None

    # ------------------------------------------------------------------
    # Stuck transactions
    # ------------------------------------------------------------------

    def _is_stuck(self, credential: Credential) -> bool:
        submitted_at = credential.submitted_at or credential.updated_at
        timeout = timedelta(minutes=self.settings.pending_timeout_minutes)
        return self._clock() - submitted_at >= timeout

    def _handle_unmined(self, credential: Credential) -> WatchResult:
        if not self._is_stuck(credential):
            return WatchResult(credential_id=credential.id, status=CredentialStatus.PENDING)

        policy = self.settings.escalation_policy
        if policy == "resubmit":
            return self._resubmit(credential)
        if policy == "fail":
            return self._fail_if_dropped(credential)
        return self._flag(credential, reason="no receipt")

    def _flag(self, credential: Credential, reason: str) -> WatchResult:
        if credential.escalated_at is None:
            self.repository.flag_escalation(credential.id)
            logger.warning(
                "credential_stuck",
                credential_id=credential.id,
                tx_hash=credential.tx_hash,
                nonce=credential.nonce,
                submitted_at=str(credential.submitted_at),
                reason=reason,
            )
        return WatchResult(
            credential_id=credential.id,
            status=CredentialStatus.PENDING,
            escalated=True,
            error=reason,
        )

    def _relayer_account(self) -> LocalAccount:
        if self.signer is None:
            raise SignerUnavailable("watcher has no signer configured")
        return self.signer.get_signer(self.settings.relayer_key_name)

    def _resubmit(self, credential: Credential) -> WatchResult:
        if credential.nonce is None or credential.gas_price is None:
            return self._flag(credential, reason="no nonce recorded")
        try:
            account = self._relayer_account()
            gas_price = max(
                bump_gas_price(credential.gas_price, self.settings.gas_bump_percent),
                self.chain.gas_price(),
            )
            tx = build_mint_transaction(
                self.contract,
                chain_id=self.settings.chain_id,
                gas_limit=self.settings.mint_gas_limit,
                nonce=credential.nonce,
                gas_price=gas_price,
                recipient=credential.recipient_wallet_address,
                metadata_uri=credential.metadata_uri or "",
            )
            signed = account.sign_transaction(tx)
            tx_hash = self.chain.submit_signed(signed.raw_transaction)
        except TransientChainError as e:
            if "nonce too low" in str(e):
                # Something with this nonce was mined; the receipt lookup will
                # find it on a later pass.
                logger.info(
                    "resubmit_skipped_nonce_used",
                    credential_id=credential.id,
                    nonce=credential.nonce,
                )
                return WatchResult(credential_id=credential.id, status=CredentialStatus.PENDING)
            return self._flag(credential, reason=f"resubmit failed: {e}")
        except (ChainError, SignerUnavailable) as e:
            return self._flag(credential, reason=f"resubmit failed: {e}")

        self.repository.record_resubmission(credential.id, tx_hash, gas_price)
        logger.warning(
            "mint_tx_resubmitted",
            credential_id=credential.id,
            previous_tx_hash=credential.tx_hash,
            tx_hash=tx_hash,
            nonce=credential.nonce,
            gas_price=gas_price,
        )
        return WatchResult(
            credential_id=credential.id,
            status=CredentialStatus.PENDING,
            escalated=True,
        )

    def _fail_if_dropped(self, credential: Credential) -> WatchResult:
        if credential.nonce is None:
            return self._flag(credential, reason="no nonce recorded")
        try:
            account = self._relayer_account()
            confirmed_nonce = self.chain.confirmed_nonce(account.address)
        except (ChainError, SignerUnavailable) as e:
            return self._flag(credential, reason=f"cannot verify drop: {e}")

        if confirmed_nonce <= credential.nonce:
            # The nonce is still open, so the transaction may yet be mined.
            return self._flag(credential, reason="nonce not yet consumed")

        # Re-check after reading the nonce: a receipt may have appeared since.
        if self._find_receipt(credential) is not None:
            return WatchResult(credential_id=credential.id, status=CredentialStatus.PENDING)

        credential, refund = self.repository.mark_failed(
            credential.id,
            CredentialStatus.PENDING,
            "Transaction dropped: nonce consumed without a receipt",
            self.ledger,
            owner=self.worker_id,
        )
        logger.error(
            "mint_tx_dropped",
            credential_id=credential.id,
            nonce=credential.nonce,
            confirmed_nonce=confirmed_nonce,
            refunded=str(refund.amount) if refund else None,
        )
        return WatchResult(
            credential_id=credential.id,
            status=CredentialStatus.FAILED,
            escalated=True,
            error="dropped",
        )
