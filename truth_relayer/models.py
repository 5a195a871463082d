"""
Records, enums and request models shared across the pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from web3 import Web3


class TransactionType(str, Enum):
    PURCHASE = "PURCHASE"
    DEDUCT = "DEDUCT"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"


class CredentialStatus(str, Enum):
    QUEUED = "QUEUED"
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    REVOKED = "REVOKED"


# Legal lifecycle edges. QUEUED -> FAILED is taken by the relayer when a
# submission fails permanently or runs out of attempts.
TRANSITIONS: dict[CredentialStatus, frozenset[CredentialStatus]] = {
    CredentialStatus.QUEUED: frozenset(
        {CredentialStatus.PENDING, CredentialStatus.FAILED}
    ),
    CredentialStatus.PENDING: frozenset(
        {CredentialStatus.CONFIRMED, CredentialStatus.FAILED}
    ),
    CredentialStatus.CONFIRMED: frozenset({CredentialStatus.REVOKED}),
    CredentialStatus.FAILED: frozenset(),
    CredentialStatus.REVOKED: frozenset(),
}


def can_transition(current: CredentialStatus, target: CredentialStatus) -> bool:
    """Check whether `current -> target` is a legal lifecycle edge."""
    return target in TRANSITIONS[current]


@dataclass
class Account:
    """Issuer credit account."""

    id: str
    credits: Decimal
    version: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable ledger record. `amount` is signed; `balance_after` is a snapshot."""

    id: int
    account_id: str
    transaction_type: TransactionType
    amount: Decimal
    balance_after: Decimal
    credential_id: Optional[str]
    payment_reference: Optional[str]
    description: Optional[str]
    created_at: datetime


@dataclass
class Credential:
    """A single mint request and its progress towards on-chain finality."""

    id: str
    issuer_id: str
    recipient_wallet_address: str
    metadata: dict[str, Any]
    status: CredentialStatus
    created_at: datetime
    updated_at: datetime
    issuer_ref_id: Optional[str] = None
    content_address: Optional[str] = None
    tx_hash: Optional[str] = None
    token_id: Optional[int] = None
    nonce: Optional[int] = None
    gas_price: Optional[int] = None
    superseded_tx_hashes: list[str] = field(default_factory=list)
    failure_reason: Optional[str] = None
    submitted_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None

    @property
    def metadata_uri(self) -> Optional[str]:
        """Permanent URI used as the token's metadata pointer."""
        if self.content_address is None:
            return None
        return f"ar://{self.content_address}"

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self.status]


class IssueCredentialRequest(BaseModel):
    """Validated input for issuing a credential."""

    recipient_wallet_address: str = Field(
        ..., description="Recipient EVM address (0x + 40 hex chars)"
    )
    metadata: dict[str, Any] = Field(..., description="Credential metadata payload")
    issuer_ref_id: Optional[str] = Field(
        None, max_length=100, description="Issuer's own reference for reconciliation"
    )

    @field_validator("recipient_wallet_address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        if not Web3.is_address(value):
            raise ValueError(f"Invalid EVM address: {value}")
        return Web3.to_checksum_address(value)

    @field_validator("metadata")
    @classmethod
    def _check_metadata(cls, value: dict[str, Any]) -> dict[str, Any]:
        if not value.get("name") and not value.get("title"):
            raise ValueError("Metadata must include a 'name' or 'title'")
        return value
