"""Transaction data access: gateway payments and refunds."""

from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..core.timezone_utils import ensure_utc
from ..models.payment import (
    OPEN_TRANSACTION_STATUSES,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from .base_repository import BaseRepository


class TransactionRepository(BaseRepository[Transaction]):
    def __init__(self, db: Session):
        super().__init__(db, Transaction)

    def get_payment_by_gateway_ref(self, gateway: str, gateway_order_ref: str) -> Optional[Transaction]:
        return self.find_one_by(
            gateway=gateway,
            gateway_order_ref=gateway_order_ref,
            kind=TransactionKind.BOOKING_PAYMENT.value,
        )

    def get_completed_payment(self, booking_id: str) -> Optional[Transaction]:
        return self.find_one_by(
            booking_id=booking_id,
            kind=TransactionKind.BOOKING_PAYMENT.value,
            status=TransactionStatus.COMPLETED.value,
        )

    def get_latest_payment(self, booking_id: str) -> Optional[Transaction]:
        query = (
            self._build_query()
            .filter(Transaction.booking_id == booking_id)
            .filter(Transaction.kind == TransactionKind.BOOKING_PAYMENT.value)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(1)
        )
        rows = self._execute_query(query)
        return rows[0] if rows else None

    def get_refund_for(self, parent_transaction_id: str) -> Optional[Transaction]:
        return self.find_one_by(
            parent_transaction_id=parent_transaction_id,
            kind=TransactionKind.REFUND.value,
        )

    def set_status_if(
        self,
        transaction_id: str,
        from_statuses: Iterable[str],
        to_status: TransactionStatus,
        **fields: Any,
    ) -> bool:
        """Conditional status update; True when this call moved the row."""
        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .where(Transaction.status.in_(list(from_statuses)))
            .values(status=to_status.value, **fields)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as exc:
            self.logger.error(
                "Transaction status update failed",
                extra={"transaction_id": transaction_id, "error": str(exc)},
            )
            raise RepositoryException(f"Failed to update transaction status: {exc}") from exc
        return result.rowcount == 1

    def find_open_payments(
        self,
        created_before: datetime,
        created_after: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Transaction]:
        """Payments still waiting on the gateway, for the reconciliation poller."""
        query = (
            self._build_query()
            .filter(Transaction.kind == TransactionKind.BOOKING_PAYMENT.value)
            .filter(Transaction.status.in_(OPEN_TRANSACTION_STATUSES))
            .filter(Transaction.created_at < ensure_utc(created_before))
        )
        if created_after is not None:
            query = query.filter(Transaction.created_at >= ensure_utc(created_after))
        query = query.order_by(Transaction.created_at.asc()).limit(limit)
        return self._execute_query(query)
