"""
Credit ledger: per-issuer balance plus an append-only audit log.

Every balance change goes through `_apply`, which updates the account row and
inserts the matching ledger entry in the same transaction. Nothing else in the
package writes `accounts.credits`.
"""

import uuid
from decimal import Decimal
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.engine import Connection, Row
from sqlalchemy.exc import IntegrityError

from .db import Database, accounts, ledger_entries, quantize_credits, utcnow
from .errors import AccountNotFound, DuplicatePayment, InsufficientCredits
from .models import Account, LedgerEntry, TransactionType

logger = structlog.get_logger()


def _row_to_account(row: Row) -> Account:
    return Account(
        id=row.id,
        credits=row.credits,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_entry(row: Row) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        account_id=row.account_id,
        transaction_type=TransactionType(row.transaction_type),
        amount=row.amount,
        balance_after=row.balance_after,
        credential_id=row.credential_id,
        payment_reference=row.payment_reference,
        description=row.description,
        created_at=row.created_at,
    )


def _positive(amount: Any) -> Decimal:
    value = quantize_credits(amount)
    if value <= 0:
        raise ValueError(f"Amount must be positive: {amount}")
    return value


class CreditLedger:
    """
    Credit ledger backed by the `accounts` and `ledger_entries` tables.

    Public methods each run in their own unit of work. The `*_in` variants take
    an open connection so callers can combine a ledger change with other
    writes (e.g. a credential status change) in one commit.
    """

    def __init__(self, database: Database):
        self.db = database

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def open_account(self, account_id: Optional[str] = None) -> Account:
        """Create an issuer account with a zero balance. Idempotent per id."""
        account_id = account_id or str(uuid.uuid4())
        with self.db.transaction() as conn:
            row = conn.execute(
                select(accounts).where(accounts.c.id == account_id)
            ).fetchone()
            if row is None:
                now = utcnow()
                conn.execute(
                    accounts.insert().values(
                        id=account_id,
                        credits=Decimal("0.00"),
                        version=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                row = conn.execute(
                    select(accounts).where(accounts.c.id == account_id)
                ).one()
                logger.info("account_opened", account_id=account_id)
            return _row_to_account(row)

    def get_account(self, account_id: str) -> Account:
        with self.db.transaction() as conn:
            row = conn.execute(
                select(accounts).where(accounts.c.id == account_id)
            ).fetchone()
        if row is None:
            raise AccountNotFound(account_id)
        return _row_to_account(row)

    def _lock_account(self, conn: Connection, account_id: str) -> Row:
        """
        Lock the account row for the rest of the transaction.

        FOR UPDATE on PostgreSQL; on SQLite the transaction already holds the
        database write lock (BEGIN IMMEDIATE) and the clause is omitted.
        """
        row = conn.execute(
            select(accounts).where(accounts.c.id == account_id).with_for_update()
        ).fetchone()
        if row is None:
            raise AccountNotFound(account_id)
        return row

    def _apply(
        self,
        conn: Connection,
        account: Row,
        transaction_type: TransactionType,
        amount: Decimal,
        credential_id: Optional[str] = None,
        payment_reference: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        """Change the locked account's balance by `amount` and record the entry."""
        new_balance = quantize_credits(account.credits + amount)
        if new_balance < 0:
            raise InsufficientCredits(account.id, account.credits, -amount)

        now = utcnow()
        conn.execute(
            accounts.update()
            .where(accounts.c.id == account.id)
            .values(
                credits=new_balance,
                version=account.version + 1,
                updated_at=now,
            )
        )
        result = conn.execute(
            ledger_entries.insert().values(
                account_id=account.id,
                transaction_type=transaction_type.value,
                amount=amount,
                balance_after=new_balance,
                credential_id=credential_id,
                payment_reference=payment_reference,
                description=description,
                created_at=now,
            )
        )
        entry_id = result.inserted_primary_key[0]
        row = conn.execute(
            select(ledger_entries).where(ledger_entries.c.id == entry_id)
        ).one()
        return _row_to_entry(row)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def reserve(
        self,
        account_id: str,
        amount: Any,
        credential_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Deduct `amount` under the account lock.

        Raises:
            InsufficientCredits: if the balance is below `amount`.
        """
        with self.db.transaction() as conn:
            return self.reserve_in(conn, account_id, amount, credential_id, description)

    def reserve_in(
        self,
        conn: Connection,
        account_id: str,
        amount: Any,
        credential_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        value = _positive(amount)
        account = self._lock_account(conn, account_id)
        if account.credits < value:
            logger.info(
                "reserve_rejected",
                account_id=account_id,
                balance=str(account.credits),
                required=str(value),
            )
            raise InsufficientCredits(account_id, account.credits, value)

        entry = self._apply(
            conn,
            account,
            TransactionType.DEDUCT,
            -value,
            credential_id=credential_id,
            description=description or f"Deducted {value} credits for minting credential",
        )
        logger.info(
            "credits_reserved",
            account_id=account_id,
            amount=str(value),
            balance_after=str(entry.balance_after),
            credential_id=credential_id,
        )
        return entry

    def refund(
        self,
        account_id: str,
        amount: Any,
        credential_id: str,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Credit `amount` back for a failed credential.

        Idempotent per credential: a second call returns the existing REFUND
        entry and leaves the balance untouched.
        """
        with self.db.transaction() as conn:
            return self.refund_in(conn, account_id, amount, credential_id, description)

    def refund_in(
        self,
        conn: Connection,
        account_id: str,
        amount: Any,
        credential_id: str,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        value = _positive(amount)
        account = self._lock_account(conn, account_id)

        # Checked after taking the lock so concurrent refunds see each other.
        existing = self.find_entry_in(conn, credential_id, TransactionType.REFUND)
        if existing is not None:
            logger.info(
                "refund_already_applied",
                account_id=account_id,
                credential_id=credential_id,
                entry_id=existing.id,
            )
            return existing

        entry = self._apply(
            conn,
            account,
            TransactionType.REFUND,
            value,
            credential_id=credential_id,
            description=description or f"Refunded {value} credits due to minting failure",
        )
        logger.info(
            "credits_refunded",
            account_id=account_id,
            amount=str(value),
            balance_after=str(entry.balance_after),
            credential_id=credential_id,
        )
        return entry

    def purchase(
        self,
        account_id: str,
        amount: Any,
        payment_reference: str,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Add purchased credits.

        Raises:
            DuplicatePayment: if `payment_reference` was already credited.
        """
        value = _positive(amount)
        if not payment_reference:
            raise ValueError("payment_reference is required")

        try:
            with self.db.transaction() as conn:
                account = self._lock_account(conn, account_id)
                if self._payment_recorded(conn, payment_reference):
                    logger.warning(
                        "duplicate_payment",
                        account_id=account_id,
                        payment_reference=payment_reference,
                    )
                    raise DuplicatePayment(payment_reference)

                entry = self._apply(
                    conn,
                    account,
                    TransactionType.PURCHASE,
                    value,
                    payment_reference=payment_reference,
                    description=description or f"Purchased {value} credits",
                )
        except IntegrityError as e:
            # Same reference credited concurrently to another account; the
            # unique constraint decides the winner.
            if "payment_reference" not in str(e.orig):
                raise
            logger.warning(
                "duplicate_payment_race",
                account_id=account_id,
                payment_reference=payment_reference,
            )
            raise DuplicatePayment(payment_reference) from e

        logger.info(
            "credits_purchased",
            account_id=account_id,
            amount=str(value),
            balance_after=str(entry.balance_after),
            payment_reference=payment_reference,
        )
        return entry

    def _payment_recorded(self, conn: Connection, payment_reference: str) -> bool:
        row = conn.execute(
            select(ledger_entries.c.id).where(
                ledger_entries.c.payment_reference == payment_reference
            )
        ).fetchone()
        return row is not None

    def adjust(self, account_id: str, amount: Any, description: str) -> LedgerEntry:
        """Apply a signed administrative correction."""
        value = quantize_credits(amount)
        if value == 0:
            raise ValueError("Adjustment amount must be non-zero")

        with self.db.transaction() as conn:
            account = self._lock_account(conn, account_id)
            entry = self._apply(
                conn,
                account,
                TransactionType.ADJUSTMENT,
                value,
                description=description,
            )

        logger.info(
            "credits_adjusted",
            account_id=account_id,
            amount=str(value),
            balance_after=str(entry.balance_after),
        )
        return entry

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def balance(self, account_id: str) -> Decimal:
        return self.get_account(account_id).credits

    def history(
        self,
        account_id: str,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[LedgerEntry]:
        """All entries for an account, newest first."""
        stmt = select(ledger_entries).where(ledger_entries.c.account_id == account_id)
        if transaction_type is not None:
            stmt = stmt.where(ledger_entries.c.transaction_type == transaction_type.value)
        stmt = stmt.order_by(ledger_entries.c.id.desc())

        with self.db.transaction() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_entry(row) for row in rows]

    def entry_for_credential(
        self, credential_id: str, transaction_type: TransactionType
    ) -> Optional[LedgerEntry]:
        with self.db.transaction() as conn:
            return self.find_entry_in(conn, credential_id, transaction_type)

    def find_entry_in(
        self, conn: Connection, credential_id: str, transaction_type: TransactionType
    ) -> Optional[LedgerEntry]:
        row = conn.execute(
            select(ledger_entries).where(
                ledger_entries.c.credential_id == credential_id,
                ledger_entries.c.transaction_type == transaction_type.value,
            )
        ).fetchone()
        return _row_to_entry(row) if row is not None else None

    def verify(self, account_id: str) -> bool:
        """Check that the stored balance equals the sum of the account's entries."""
        with self.db.transaction() as conn:
            account = conn.execute(
                select(accounts.c.credits).where(accounts.c.id == account_id)
            ).fetchone()
            if account is None:
                raise AccountNotFound(account_id)
            amounts = conn.execute(
                select(ledger_entries.c.amount).where(
                    ledger_entries.c.account_id == account_id
                )
            ).scalars().all()

        # Summed in Python: on SQLite the amounts are stored as text.
        total = quantize_credits(sum(amounts, Decimal("0.00")))
        consistent = total == account.credits
        if not consistent:
            logger.error(
                "ledger_inconsistent",
                account_id=account_id,
                balance=str(account.credits),
                entries_total=str(total),
            )
        return consistent
