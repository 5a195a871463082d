"""
TRUTH Relayer

Issues verifiable credentials as soulbound tokens on an EVM chain. Issuers
prepay credits; each issuance reserves one mint's worth, the relayer publishes
the metadata and submits the mint, and the watcher waits for confirmation depth
before marking the credential CONFIRMED (or FAILED, with a refund).

Usage:
    # Onboard an issuer and buy credits
    truth-relayer account open acme
    truth-relayer purchase acme 10 --ref pi_123

    # Queue a credential
    truth-relayer issue acme 0x... -m '{"name": "Diploma"}'

    # Run both periodic tasks
    truth-relayer run
"""

__version__ = "0.1.0"

from .config import Settings, get_settings
from .credentials import CredentialRepository
from .db import Database
from .issuance import IssuanceService
from .ledger import CreditLedger
from .models import Credential, CredentialStatus, LedgerEntry, TransactionType
from .relayer import RelayerWorker
from .runtime import Services, build_services
from .watcher import ConfirmationWatcher

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "Database",
    "CreditLedger",
    "CredentialRepository",
    "IssuanceService",
    "Credential",
    "CredentialStatus",
    "LedgerEntry",
    "TransactionType",
    "RelayerWorker",
    "ConfirmationWatcher",
    "Services",
    "build_services",
]
