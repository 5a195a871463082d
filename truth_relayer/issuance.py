"""
Issuer-facing operations: credit purchases and credential issuance.
"""

import uuid
from decimal import Decimal
from typing import Any, Optional

import structlog

from .config import Settings
from .credentials import CredentialRepository
from .ledger import CreditLedger
from .models import (
    Credential,
    CredentialStatus,
    IssueCredentialRequest,
    LedgerEntry,
    TransactionType,
)

logger = structlog.get_logger()


class IssuanceService:
    """
    Front door for issuers.

    `issue_credential` is the only way a credential row comes into existence:
    the credit reservation and the QUEUED row are written in one commit, so
    every credential has exactly one DEDUCT entry and a rejected reservation
    leaves nothing behind.
    """

    def __init__(
        self,
        settings: Settings,
        ledger: CreditLedger,
        repository: CredentialRepository,
    ):
        self.settings = settings
        self.ledger = ledger
        self.repository = repository

    def issue_credential(
        self,
        issuer_id: str,
        recipient_address: str,
        metadata: dict[str, Any],
        issuer_ref_id: Optional[str] = None,
    ) -> Credential:
        """
        Reserve one mint's worth of credit and queue the credential.

        Raises:
            pydantic.ValidationError: on a malformed address or metadata.
            AccountNotFound: if the issuer has no account.
            InsufficientCredits: if the balance cannot cover the mint.
        """
        request = IssueCredentialRequest(
            recipient_wallet_address=recipient_address,
            metadata=metadata,
            issuer_ref_id=issuer_ref_id,
        )
        credential_id = str(uuid.uuid4())
        cost = self.settings.mint_credit_cost

        with self.ledger.db.transaction() as conn:
            self.ledger.reserve_in(conn, issuer_id, cost, credential_id=credential_id)
            credential = self.repository.create_in(
                conn,
                issuer_id=issuer_id,
                recipient_wallet_address=request.recipient_wallet_address,
                metadata=request.metadata,
                issuer_ref_id=request.issuer_ref_id,
                credential_id=credential_id,
            )

        logger.info(
            "credential_queued",
            credential_id=credential.id,
            issuer_id=issuer_id,
            recipient=credential.recipient_wallet_address,
            issuer_ref_id=issuer_ref_id,
            cost=str(cost),
        )
        return credential

    def get_credential(self, credential_id: str) -> Credential:
        return self.repository.get(credential_id)

    def get_balance(self, issuer_id: str) -> Decimal:
        return self.ledger.balance(issuer_id)

    def get_history(
        self,
        issuer_id: str,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[LedgerEntry]:
        return self.ledger.history(issuer_id, transaction_type)

    def purchase_credits(
        self,
        issuer_id: str,
        amount: Any,
        payment_reference: str,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        """Credit a confirmed payment. The account is opened on first purchase."""
        self.ledger.open_account(issuer_id)
        return self.ledger.purchase(issuer_id, amount, payment_reference, description)

    def list_issued(self, issuer_id: str) -> list[Credential]:
        return self.repository.list_by_issuer(issuer_id)

    def list_held(self, wallet_address: str) -> list[Credential]:
        return self.repository.list_by_recipient(wallet_address)

    def verify_token(self, token_id: int) -> Optional[Credential]:
        """
        Look up a minted token.

        Returns the credential only once it is final on chain (CONFIRMED, or
        REVOKED afterwards); anything else is reported as unknown.
        """
        credential = self.repository.get_by_token_id(token_id)
        if credential is None:
            return None
        if credential.status not in (CredentialStatus.CONFIRMED, CredentialStatus.REVOKED):
            return None
        return credential

    def revoke(self, credential_id: str) -> Credential:
        credential = self.repository.revoke(credential_id)
        logger.info(
            "credential_revoked",
            credential_id=credential_id,
            token_id=str(credential.token_id),
        )
        return credential
