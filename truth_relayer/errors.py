"""
Exception taxonomy for the issuance pipeline.
"""

from decimal import Decimal
from typing import Optional


class TruthRelayerError(Exception):
    """Base class for all relayer errors."""


class AccountNotFound(TruthRelayerError):
    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class CredentialNotFound(TruthRelayerError):
    def __init__(self, credential_id: str):
        super().__init__(f"Credential not found: {credential_id}")
        self.credential_id = credential_id


class InsufficientCredits(TruthRelayerError):
    """Raised synchronously when a reservation exceeds the balance. Not retried."""

    def __init__(self, account_id: str, balance: Decimal, required: Decimal):
        super().__init__(
            f"Insufficient credits. Current: {balance}, Required: {required}"
        )
        self.account_id = account_id
        self.balance = balance
        self.required = required


class DuplicatePayment(TruthRelayerError):
    """Raised when a payment reference has already been credited."""

    def __init__(self, payment_reference: str):
        super().__init__(f"Duplicate payment reference: {payment_reference}")
        self.payment_reference = payment_reference


class InvalidTransition(TruthRelayerError):
    """Raised on any credential status change outside the lifecycle table."""

    def __init__(self, credential_id: str, current: str, target: str):
        super().__init__(
            f"Illegal transition for credential {credential_id}: {current} -> {target}"
        )
        self.credential_id = credential_id
        self.current = current
        self.target = target


class LeaseLost(TruthRelayerError):
    """The worker no longer holds the lease on a credential row."""

    def __init__(self, credential_id: str, owner: str):
        super().__init__(f"Lease on credential {credential_id} is no longer held by {owner}")
        self.credential_id = credential_id
        self.owner = owner


class ChainError(TruthRelayerError):
    """Error talking to the chain node."""


class TransientChainError(ChainError):
    """RPC timeout, nonce conflict, underpriced gas. Retried with gas escalation."""


class PermanentChainError(ChainError):
    """Revert or malformed transaction. The credential fails and is refunded."""


class PublisherError(TruthRelayerError):
    """Metadata upload failed; retried on the next worker pass."""


class SignerUnavailable(TruthRelayerError):
    """Key material could not be obtained; the credential is skipped this pass."""


# Substrings seen in node error messages (geth, erigon, bor) that mean the
# same transaction can succeed if resent, possibly with a higher gas price.
TRANSIENT_MARKERS = (
    "nonce too low",
    "nonce too high",
    "replacement transaction underpriced",
    "transaction underpriced",
    "max fee per gas less than block base fee",
    "already known",
    "known transaction",
    "timeout",
    "timed out",
    "too many requests",
    "429",
    "502",
    "503",
    "504",
    "connection",
)


def classify_chain_error(exc: BaseException, message: Optional[str] = None) -> ChainError:
    """
    Map a raw web3/HTTP exception onto TransientChainError or PermanentChainError.

    Network-level failures (OSError, which covers requests/httpx connection
    errors, and TimeoutError) are transient. Anything else is decided by the
    node's error message; unknown messages are treated as permanent.
    """
    if isinstance(exc, ChainError):
        return exc

    text = (message or str(exc)).lower()

    if isinstance(exc, (OSError, TimeoutError)):
        return TransientChainError(text or exc.__class__.__name__)

    if any(marker in text for marker in TRANSIENT_MARKERS):
        return TransientChainError(text)

    return PermanentChainError(text or exc.__class__.__name__)
