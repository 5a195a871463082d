"""
Credential repository and lifecycle state machine.

Status changes are conditional updates (`WHERE status = :expected`), so a
transition only lands if the row is still in the state the caller observed.
Anything outside `models.TRANSITIONS` raises InvalidTransition.
"""

import uuid
from collections.abc import Collection
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, NoReturn, Optional

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.engine import Connection, Row

from .db import Database, credentials, utcnow
from .errors import CredentialNotFound, InvalidTransition, LeaseLost
from .models import (
    Credential,
    CredentialStatus,
    LedgerEntry,
    TransactionType,
    can_transition,
)

if TYPE_CHECKING:
    from .ledger import CreditLedger

logger = structlog.get_logger()


def _row_to_credential(row: Row) -> Credential:
    return Credential(
        id=row.id,
        issuer_id=row.issuer_id,
        recipient_wallet_address=row.recipient_wallet_address,
        metadata=row.metadata_cache,
        status=CredentialStatus(row.status),
        created_at=row.created_at,
        updated_at=row.updated_at,
        issuer_ref_id=row.issuer_ref_id,
        content_address=row.content_address,
        tx_hash=row.tx_hash,
        token_id=row.token_id,
        nonce=row.nonce,
        gas_price=row.gas_price,
        superseded_tx_hashes=list(row.superseded_tx_hashes or []),
        failure_reason=row.failure_reason,
        submitted_at=row.submitted_at,
        confirmed_at=row.confirmed_at,
        revoked_at=row.revoked_at,
        escalated_at=row.escalated_at,
    )


def _without(credential: Credential, tx_hash: str) -> list[str]:
    """Hashes other than `tx_hash` that were sent for `credential`, oldest first."""
    hashes = [h for h in credential.superseded_tx_hashes if h != tx_hash]
    if credential.tx_hash and credential.tx_hash != tx_hash:
        hashes.append(credential.tx_hash)
    return hashes


class CredentialRepository:
    """Owns the `credentials` table."""

    def __init__(self, database: Database):
        self.db = database

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create_in(
        self,
        conn: Connection,
        issuer_id: str,
        recipient_wallet_address: str,
        metadata: dict[str, Any],
        issuer_ref_id: Optional[str] = None,
        credential_id: Optional[str] = None,
    ) -> Credential:
        """Insert a QUEUED credential. Callers must have reserved credit first."""
        now = utcnow()
        credential_id = credential_id or str(uuid.uuid4())
        conn.execute(
            credentials.insert().values(
                id=credential_id,
                issuer_id=issuer_id,
                recipient_wallet_address=recipient_wallet_address,
                issuer_ref_id=issuer_ref_id,
                metadata_cache=metadata,
                superseded_tx_hashes=[],
                status=CredentialStatus.QUEUED.value,
                created_at=now,
                updated_at=now,
            )
        )
        return self._get_in(conn, credential_id)

    def get(self, credential_id: str) -> Credential:
        with self.db.transaction() as conn:
            return self._get_in(conn, credential_id)

    def _get_in(self, conn: Connection, credential_id: str) -> Credential:
        row = conn.execute(
            select(credentials).where(credentials.c.id == credential_id)
        ).fetchone()
        if row is None:
            raise CredentialNotFound(credential_id)
        return _row_to_credential(row)

    def get_by_token_id(self, token_id: int) -> Optional[Credential]:
        with self.db.transaction() as conn:
            row = conn.execute(
                select(credentials).where(credentials.c.token_id == token_id)
            ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def list_by_issuer(self, issuer_id: str) -> list[Credential]:
        return self._list(credentials.c.issuer_id == issuer_id)

    def list_by_recipient(self, wallet_address: str) -> list[Credential]:
        # Addresses are stored checksummed; compare case-insensitively.
        return self._list(
            credentials.c.recipient_wallet_address.ilike(wallet_address)
        )

    def list_by_status(self, status: CredentialStatus) -> list[Credential]:
        return self._list(credentials.c.status == status.value)

    def _list(self, condition: Any) -> list[Credential]:
        stmt = select(credentials).where(condition).order_by(
            credentials.c.created_at.desc()
        )
        with self.db.transaction() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_credential(row) for row in rows]

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def claim(
        self,
        status: CredentialStatus,
        owner: str,
        limit: int,
        lease_seconds: int,
        require_tx_hash: bool = False,
        exclude: Collection[str] = (),
    ) -> list[Credential]:
        """
        Lease up to `limit` credentials in `status` for `owner`.

        Rows whose id is in `exclude` are skipped (already handled this pass).

        A row is claimable when it has no lease or its lease has expired. The
        lease is taken with a conditional UPDATE, so two workers racing for
        the same row cannot both win. On PostgreSQL candidates are picked with
        FOR UPDATE SKIP LOCKED so concurrent claimers do not block each other.
        """
        now = utcnow()
        expires = now + timedelta(seconds=lease_seconds)
        claimable = or_(
            credentials.c.lease_expires_at.is_(None),
            credentials.c.lease_expires_at < now,
        )
        conditions = [credentials.c.status == status.value, claimable]
        if require_tx_hash:
            conditions.append(credentials.c.tx_hash.is_not(None))
        if exclude:
            conditions.append(credentials.c.id.not_in(list(exclude)))

        candidates = (
            select(credentials.c.id)
            .where(and_(*conditions))
            .order_by(credentials.c.created_at)
            .limit(limit)
        )
        if self.db.is_postgres:
            candidates = candidates.with_for_update(skip_locked=True)

        claimed: list[Credential] = []
        with self.db.transaction() as conn:
            ids = conn.execute(candidates).scalars().all()
            for credential_id in ids:
                result = conn.execute(
                    credentials.update()
                    .where(
                        credentials.c.id == credential_id,
                        credentials.c.status == status.value,
                        claimable,
                    )
                    .values(lease_owner=owner, lease_expires_at=expires)
                )
                if result.rowcount == 1:
                    claimed.append(self._get_in(conn, credential_id))

        if claimed:
            logger.debug(
                "credentials_claimed",
                owner=owner,
                status=status.value,
                count=len(claimed),
            )
        return claimed

    def release(self, credential_id: str, owner: str) -> None:
        """Drop `owner`'s lease on the row (no-op if the lease has moved on)."""
        with self.db.transaction() as conn:
            conn.execute(
                credentials.update()
                .where(
                    credentials.c.id == credential_id,
                    credentials.c.lease_owner == owner,
                )
                .values(lease_owner=None, lease_expires_at=None)
            )

    # ------------------------------------------------------------------
    # Progress checkpoints (no status change)
    # ------------------------------------------------------------------

    def record_content_address(
        self,
        credential_id: str,
        content_address: str,
        owner: Optional[str] = None,
    ) -> Credential:
        """Persist the published metadata address before any chain call."""
        return self._update_fields(
            credential_id,
            CredentialStatus.QUEUED,
            owner=owner,
            content_address=content_address,
        )

    def record_attempt(
        self,
        credential_id: str,
        owner: str,
        nonce: int,
        gas_price: int,
        tx_hash: str,
        lease_seconds: int,
    ) -> Credential:
        """
        Persist a signed mint transaction before it is broadcast.

        Saves the nonce, gas price and hash on the QUEUED row and renews
        `owner`'s lease. Earlier hashes move to `superseded_tx_hashes`, so
        every transaction that may have reached the node stays on record.

        Raises:
            LeaseLost: if another worker has claimed the row since.
            InvalidTransition: if the row has left QUEUED.
        """
        with self.db.transaction() as conn:
            current = self._get_in(conn, credential_id)
            now = utcnow()
            result = conn.execute(
                credentials.update()
                .where(
                    credentials.c.id == credential_id,
                    credentials.c.status == CredentialStatus.QUEUED.value,
                    credentials.c.lease_owner == owner,
                )
                .values(
                    nonce=nonce,
                    gas_price=gas_price,
                    tx_hash=tx_hash,
                    superseded_tx_hashes=_without(current, tx_hash),
                    lease_expires_at=now + timedelta(seconds=lease_seconds),
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                self._raise_guard_failure(
                    conn, credential_id, CredentialStatus.QUEUED, owner
                )
            return self._get_in(conn, credential_id)

    def record_resubmission(
        self,
        credential_id: str,
        tx_hash: str,
        gas_price: int,
    ) -> Credential:
        """Swap in a replacement transaction hash, keeping the old one on record."""
        with self.db.transaction() as conn:
            current = self._get_in(conn, credential_id)
            if current.status is not CredentialStatus.PENDING:
                raise InvalidTransition(
                    credential_id, current.status.value, CredentialStatus.PENDING.value
                )
            superseded = list(current.superseded_tx_hashes)
            if current.tx_hash and current.tx_hash not in superseded:
                superseded.append(current.tx_hash)
            conn.execute(
                credentials.update()
                .where(
                    credentials.c.id == credential_id,
                    credentials.c.status == CredentialStatus.PENDING.value,
                )
                .values(
                    tx_hash=tx_hash,
                    gas_price=gas_price,
                    superseded_tx_hashes=superseded,
                    submitted_at=utcnow(),
                    escalated_at=None,
                    updated_at=utcnow(),
                )
            )
            return self._get_in(conn, credential_id)

    def adopt_tx_hash(self, credential_id: str, tx_hash: str) -> Credential:
        """Make a superseded hash current again (it was the one that got mined)."""
        with self.db.transaction() as conn:
            current = self._get_in(conn, credential_id)
            conn.execute(
                credentials.update()
                .where(
                    credentials.c.id == credential_id,
                    credentials.c.status == CredentialStatus.PENDING.value,
                )
                .values(
                    tx_hash=tx_hash,
                    superseded_tx_hashes=_without(current, tx_hash),
                    updated_at=utcnow(),
                )
            )
            return self._get_in(conn, credential_id)

    def flag_escalation(self, credential_id: str) -> Credential:
        return self._update_fields(
            credential_id, CredentialStatus.PENDING, escalated_at=utcnow()
        )

    def _update_fields(
        self,
        credential_id: str,
        expected: CredentialStatus,
        owner: Optional[str] = None,
        **values: Any,
    ) -> Credential:
        conditions = [
            credentials.c.id == credential_id,
            credentials.c.status == expected.value,
        ]
        if owner is not None:
            conditions.append(credentials.c.lease_owner == owner)

        with self.db.transaction() as conn:
            result = conn.execute(
                credentials.update()
                .where(*conditions)
                .values(updated_at=utcnow(), **values)
            )
            if result.rowcount != 1:
                self._raise_guard_failure(conn, credential_id, expected, owner)
            return self._get_in(conn, credential_id)

    def _raise_guard_failure(
        self,
        conn: Connection,
        credential_id: str,
        target: CredentialStatus,
        owner: Optional[str],
    ) -> NoReturn:
        """Explain why a guarded update matched no row."""
        current = self._get_in(conn, credential_id)
        if owner is not None:
            lease_owner = conn.execute(
                select(credentials.c.lease_owner).where(credentials.c.id == credential_id)
            ).scalar_one()
            if lease_owner != owner:
                logger.warning(
                    "credential_lease_lost",
                    credential_id=credential_id,
                    owner=owner,
                    lease_owner=lease_owner,
                    status=current.status.value,
                )
                raise LeaseLost(credential_id, owner)
        raise InvalidTransition(credential_id, current.status.value, target.value)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition_in(
        self,
        conn: Connection,
        credential_id: str,
        expected: CredentialStatus,
        target: CredentialStatus,
        owner: Optional[str] = None,
        **values: Any,
    ) -> Credential:
        """
        Move a credential from `expected` to `target` inside `conn`.

        With `owner` set the row must also still be leased to that worker.

        Raises:
            InvalidTransition: if the edge is not in the lifecycle table or the
                row is no longer in `expected`.
            LeaseLost: if `owner` no longer holds the row's lease.
        """
        if not can_transition(expected, target):
            raise InvalidTransition(credential_id, expected.value, target.value)

        conditions = [
            credentials.c.id == credential_id,
            credentials.c.status == expected.value,
        ]
        if owner is not None:
            conditions.append(credentials.c.lease_owner == owner)

        now = utcnow()
        result = conn.execute(
            credentials.update()
            .where(*conditions)
            .values(status=target.value, updated_at=now, **values)
        )
        if result.rowcount != 1:
            self._raise_guard_failure(conn, credential_id, target, owner)

        logger.info(
            "credential_transition",
            credential_id=credential_id,
            from_status=expected.value,
            to_status=target.value,
        )
        return self._get_in(conn, credential_id)

    def transition(
        self,
        credential_id: str,
        expected: CredentialStatus,
        target: CredentialStatus,
        owner: Optional[str] = None,
        **values: Any,
    ) -> Credential:
        with self.db.transaction() as conn:
            return self.transition_in(
                conn, credential_id, expected, target, owner=owner, **values
            )

    def mark_submitted(
        self,
        credential_id: str,
        tx_hash: str,
        nonce: int,
        gas_price: int,
        owner: Optional[str] = None,
    ) -> Credential:
        """QUEUED -> PENDING once the mint transaction is accepted by the node."""
        with self.db.transaction() as conn:
            current = self._get_in(conn, credential_id)
            return self.transition_in(
                conn,
                credential_id,
                CredentialStatus.QUEUED,
                CredentialStatus.PENDING,
                owner=owner,
                tx_hash=tx_hash,
                nonce=nonce,
                gas_price=gas_price,
                superseded_tx_hashes=_without(current, tx_hash),
                submitted_at=utcnow(),
            )

    def mark_confirmed(
        self,
        credential_id: str,
        token_id: int,
        confirmed_at: Optional[datetime] = None,
    ) -> Credential:
        """PENDING -> CONFIRMED with the minted token id."""
        return self.transition(
            credential_id,
            CredentialStatus.PENDING,
            CredentialStatus.CONFIRMED,
            token_id=token_id,
            confirmed_at=confirmed_at or utcnow(),
            escalated_at=None,
        )

    def mark_failed(
        self,
        credential_id: str,
        expected: CredentialStatus,
        reason: str,
        ledger: "CreditLedger",
        owner: Optional[str] = None,
    ) -> tuple[Credential, Optional[LedgerEntry]]:
        """
        Fail the credential and refund its reservation in one commit.

        The refund amount is whatever the credential's DEDUCT entry took.
        """
        with self.db.transaction() as conn:
            credential = self.transition_in(
                conn,
                credential_id,
                expected,
                CredentialStatus.FAILED,
                owner=owner,
                failure_reason=reason[:500],
            )
            deduct = ledger.find_entry_in(conn, credential_id, TransactionType.DEDUCT)
            if deduct is None:
                logger.error(
                    "credential_without_reservation",
                    credential_id=credential_id,
                    issuer_id=credential.issuer_id,
                )
                return credential, None
            refund = ledger.refund_in(
                conn, credential.issuer_id, -deduct.amount, credential_id
            )
        return credential, refund

    def revoke(self, credential_id: str) -> Credential:
        """CONFIRMED -> REVOKED. Admin action; no ledger effect."""
        return self.transition(
            credential_id,
            CredentialStatus.CONFIRMED,
            CredentialStatus.REVOKED,
            revoked_at=utcnow(),
        )
