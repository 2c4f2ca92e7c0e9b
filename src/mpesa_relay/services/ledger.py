"""
Ledger store for correlation records and balances.

Wraps every read and write behind a small async API over SQLAlchemy. All
database failures surface as PersistenceError; none are swallowed. The
exactly-once credit lives here: the pending → completed transition is a
conditional UPDATE executed in the same transaction as the balance credit,
so two concurrent deliveries of one callback cannot both credit, even
across service instances.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import AlreadyTerminal, PersistenceError
from ..models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    CorrelationRecord,
    LedgerAccount,
    LedgerCredit,
    utcnow,
)
from ..utils.ids import generate_record_id, provisional_request_ids
from ..utils.logging import get_logger

logger = get_logger(__name__)

# Dialects with INSERT ... ON CONFLICT DO UPDATE
_UPSERT_INSERTS = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}


class LedgerStore:
    """
    Persistence for correlation records, ledger accounts and credits.

    Args:
        session_factory: Factory producing AsyncSession objects bound to the
                         ledger database
        provisional_id_prefix: Prefix for placeholder gateway ids
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provisional_id_prefix: str = "pending",
    ) -> None:
        self._session_factory = session_factory
        self._provisional_id_prefix = provisional_id_prefix

    async def create_pending(
        self, owner_id: str, phone_number: str, amount_cents: int
    ) -> CorrelationRecord:
        """
        Insert a new pending correlation record with provisional gateway ids.

        Args:
            owner_id: Account owner initiating the deposit
            phone_number: Canonical MSISDN
            amount_cents: Deposit amount in minor units

        Returns:
            The persisted CorrelationRecord

        Raises:
            PersistenceError: If the insert fails
        """
        record_id = generate_record_id()
        merchant_request_id, checkout_request_id = provisional_request_ids(
            record_id, self._provisional_id_prefix
        )
        record = CorrelationRecord(
            id=record_id,
            owner_id=owner_id,
            merchant_request_id=merchant_request_id,
            checkout_request_id=checkout_request_id,
            phone_number=phone_number,
            amount_cents=amount_cents,
            status=STATUS_PENDING,
        )

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(record)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to create pending transaction",
                extra={"owner_id": owner_id, "error": str(e)},
                exc_info=True,
            )
            raise PersistenceError("create_pending") from e

        logger.info(
            "Pending transaction created",
            extra={"record_id": record.id, "owner_id": owner_id},
        )
        return record

    async def attach_gateway_ids(
        self, record_id: str, merchant_request_id: str, checkout_request_id: str
    ) -> None:
        """
        Replace the provisional ids with the ones issued by the gateway.

        Raises:
            PersistenceError: If the update fails or the record is gone
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(CorrelationRecord)
                        .where(CorrelationRecord.id == record_id)
                        .values(
                            merchant_request_id=merchant_request_id,
                            checkout_request_id=checkout_request_id,
                            updated_at=utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    updated = result.rowcount
        except SQLAlchemyError as e:
            logger.error(
                "Failed to attach gateway ids",
                extra={"record_id": record_id, "error": str(e)},
                exc_info=True,
            )
            raise PersistenceError("attach_gateway_ids") from e

        if updated == 0:
            raise PersistenceError(
                "attach_gateway_ids", message=f"Transaction {record_id} not found"
            )

    async def discard_orphan(self, record_id: str) -> bool:
        """
        Delete a pending record whose push was rejected.

        Only pending rows are removed; a record that somehow already reached
        a terminal state is left alone.

        Returns:
            True if a row was deleted

        Raises:
            PersistenceError: If the delete fails
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(CorrelationRecord)
                        .where(
                            CorrelationRecord.id == record_id,
                            CorrelationRecord.status == STATUS_PENDING,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    deleted = result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error(
                "Failed to discard orphaned transaction",
                extra={"record_id": record_id, "error": str(e)},
                exc_info=True,
            )
            raise PersistenceError("discard_orphan") from e

        logger.info(
            "Orphaned pending transaction discarded",
            extra={"record_id": record_id, "deleted": deleted},
        )
        return deleted

    async def get_record(self, record_id: str) -> Optional[CorrelationRecord]:
        """Fetch a correlation record by its id."""
        try:
            async with self._session_factory() as session:
                return await session.get(CorrelationRecord, record_id)
        except SQLAlchemyError as e:
            raise PersistenceError("get_record") from e

    async def find_by_checkout_id(
        self, checkout_request_id: str
    ) -> Optional[CorrelationRecord]:
        """
        Look up the correlation record for a CheckoutRequestID.

        Returns:
            The record, or None if no record carries this id

        Raises:
            PersistenceError: If the query fails
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(CorrelationRecord).where(
                        CorrelationRecord.checkout_request_id == checkout_request_id
                    )
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to look up transaction",
                extra={"checkout_request_id": checkout_request_id, "error": str(e)},
                exc_info=True,
            )
            raise PersistenceError("find_by_checkout_id") from e

    def is_provisional(self, record: CorrelationRecord) -> bool:
        """True while the record still carries its placeholder checkout id."""
        _, provisional_checkout_id = provisional_request_ids(
            record.id, self._provisional_id_prefix
        )
        return record.checkout_request_id == provisional_checkout_id

    async def complete_and_credit(
        self,
        record: CorrelationRecord,
        result_code: int,
        result_desc: Optional[str],
        receipt_reference: Optional[str],
        completed_at: datetime,
        raw_callback: Optional[Dict[str, Any]] = None,
        gateway_ids: Optional[Dict[str, str]] = None,
    ) -> None:
        """
        Mark a record completed and credit its owner, atomically.

        The status UPDATE is guarded by status = 'pending'. If another
        delivery got there first the UPDATE matches no row, nothing else is
        written and AlreadyTerminal is raised. Otherwise the ledger credit
        row and the balance increment are written in the same transaction,
        so a failure in either rolls the status change back too.

        `gateway_ids` ({"merchant_request_id", "checkout_request_id"}) are
        written by the same UPDATE, for a callback that arrived before the
        initiator stored them.

        Raises:
            AlreadyTerminal: If the record is no longer pending
            PersistenceError: If any write fails (the transaction is rolled back)
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    transition = await session.execute(
                        update(CorrelationRecord)
                        .where(
                            CorrelationRecord.id == record.id,
                            CorrelationRecord.status == STATUS_PENDING,
                        )
                        .values(
                            status=STATUS_COMPLETED,
                            result_code=result_code,
                            result_desc=result_desc,
                            receipt_reference=receipt_reference,
                            completed_at=completed_at,
                            raw_callback=raw_callback,
                            updated_at=utcnow(),
                            **(gateway_ids or {}),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if transition.rowcount == 0:
                        raise AlreadyTerminal(record.id, STATUS_COMPLETED)

                    session.add(
                        LedgerCredit(
                            record_id=record.id,
                            owner_id=record.owner_id,
                            amount_cents=record.amount_cents,
                        )
                    )
                    await self._credit_balance(
                        session, record.owner_id, record.amount_cents
                    )
        except SQLAlchemyError as e:
            logger.error(
                "Failed to complete transaction and credit ledger",
                extra={"record_id": record.id, "error": str(e)},
                exc_info=True,
            )
            raise PersistenceError("complete_and_credit") from e

        logger.info(
            "Transaction completed and ledger credited",
            extra={
                "record_id": record.id,
                "owner_id": record.owner_id,
                "amount_cents": record.amount_cents,
                "receipt_reference": receipt_reference,
            },
        )

    async def _credit_balance(
        self, session: AsyncSession, owner_id: str, amount_cents: int
    ) -> None:
        """
        Add `amount_cents` to the owner's balance, creating the account on
        first credit.

        PostgreSQL and SQLite use a single INSERT ... ON CONFLICT DO UPDATE
        so concurrent first credits for one owner cannot collide on the
        primary key.
        """
        upsert = _UPSERT_INSERTS.get(session.bind.dialect.name)
        if upsert is not None:
            now = utcnow()
            stmt = upsert(LedgerAccount).values(
                owner_id=owner_id, balance_cents=amount_cents, updated_at=now
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[LedgerAccount.owner_id],
                set_={
                    "balance_cents": LedgerAccount.balance_cents
                    + stmt.excluded.balance_cents,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)
            return

        result = await session.execute(
            update(LedgerAccount)
            .where(LedgerAccount.owner_id == owner_id)
            .values(
                balance_cents=LedgerAccount.balance_cents + amount_cents,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # First deposit for this owner
            session.add(LedgerAccount(owner_id=owner_id, balance_cents=amount_cents))
            await session.flush()

    async def mark_failed(
        self,
        record: CorrelationRecord,
        result_code: int,
        result_desc: Optional[str],
        raw_callback: Optional[Dict[str, Any]] = None,
        gateway_ids: Optional[Dict[str, str]] = None,
    ) -> None:
        """
        Mark a pending record failed. No ledger mutation.

        `gateway_ids` are written by the same UPDATE, as in complete_and_credit.

        Raises:
            AlreadyTerminal: If the record is no longer pending
            PersistenceError: If the update fails
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    transition = await session.execute(
                        update(CorrelationRecord)
                        .where(
                            CorrelationRecord.id == record.id,
                            CorrelationRecord.status == STATUS_PENDING,
                        )
                        .values(
                            status=STATUS_FAILED,
                            result_code=result_code,
                            result_desc=result_desc,
                            raw_callback=raw_callback,
                            updated_at=utcnow(),
                            **(gateway_ids or {}),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if transition.rowcount == 0:
                        raise AlreadyTerminal(record.id, STATUS_FAILED)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to mark transaction failed",
                extra={"record_id": record.id, "error": str(e)},
                exc_info=True,
            )
            raise PersistenceError("mark_failed") from e

        logger.info(
            "Transaction marked failed",
            extra={
                "record_id": record.id,
                "result_code": result_code,
                "result_desc": result_desc,
            },
        )

    async def get_balance_cents(self, owner_id: str) -> int:
        """
        Return an owner's balance in minor units (0 if no account exists).

        Raises:
            PersistenceError: If the query fails
        """
        try:
            async with self._session_factory() as session:
                account = await session.get(LedgerAccount, owner_id)
        except SQLAlchemyError as e:
            raise PersistenceError("get_balance_cents") from e
        return account.balance_cents if account else 0

    async def count_credits(self, record_id: str) -> int:
        """Return how many ledger credits exist for a correlation record."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(LedgerCredit).where(LedgerCredit.record_id == record_id)
                )
                return len(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError("count_credits") from e
