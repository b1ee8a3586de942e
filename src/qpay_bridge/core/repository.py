"""
Payment record persistence.

The store is the source of truth for idempotence: the partial unique index
on ``order_id`` rejects a second open invoice for an order, and status
transitions are compare-and-swap updates guarded by ``status = 'pending'``,
so concurrent duplicate notifications cannot both win.
"""

import datetime
import logging
from abc import ABC, abstractmethod
from datetime import UTC
from typing import Any

from sqlalchemy import case, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from qpay_bridge.core.models import (
    DeepLink,
    OrderPayment,
    PaymentRecord,
    PaymentState,
    WebhookEvent,
)

# Setup module-level logger
logger = logging.getLogger("repository")


class DuplicatePaymentError(Exception):
    """Raised when a record would violate the order or invoice unique keys."""


class PaymentStore(ABC):
    """Persistence operations the workflows rely on."""

    @abstractmethod
    def get_by_order_id(self, order_id: str) -> PaymentRecord | None: ...

    @abstractmethod
    def get_by_invoice_id(self, invoice_id: str) -> PaymentRecord | None: ...

    @abstractmethod
    def create_pending(
        self,
        order_id: str,
        invoice_id: str,
        amount: int,
        currency: str,
        qr_text: str,
        qr_image: str | None = None,
        short_url: str | None = None,
        deeplinks: list[DeepLink] | None = None,
        order_number: str | None = None,
        customer_email: str | None = None,
        customer_phone: str | None = None,
    ) -> PaymentRecord: ...

    @abstractmethod
    def transition_status(
        self,
        invoice_id: str,
        status: PaymentState,
        transaction_id: str | None = None,
        paid_amount: int | None = None,
        paid_at: datetime.datetime | None = None,
    ) -> PaymentRecord | None: ...

    @abstractmethod
    def record_event(
        self,
        source: str,
        event_type: str,
        payload: str,
        reference: str | None = None,
        processed: bool = False,
        error: str | None = None,
    ) -> None: ...

    @abstractmethod
    def ping(self) -> bool: ...


class SqlPaymentStore(PaymentStore):
    """``PaymentStore`` backed by SQLAlchemy."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _session(self) -> Session:
        return self._session_factory()

    def get_by_order_id(self, order_id: str) -> PaymentRecord | None:
        """Return the open or paid record for the order, else the latest failed one."""
        failed_last = case((OrderPayment.status == PaymentState.FAILED.value, 1), else_=0)
        with self._session() as db:
            row = db.scalars(
                select(OrderPayment)
                .where(OrderPayment.order_id == order_id)
                .order_by(failed_last, OrderPayment.id.desc())
                .limit(1)
            ).first()
            return PaymentRecord.model_validate(row) if row else None

    def get_by_invoice_id(self, invoice_id: str) -> PaymentRecord | None:
        with self._session() as db:
            row = db.scalars(
                select(OrderPayment).where(OrderPayment.invoice_id == invoice_id)
            ).first()
            return PaymentRecord.model_validate(row) if row else None

    def create_pending(
        self,
        order_id: str,
        invoice_id: str,
        amount: int,
        currency: str,
        qr_text: str,
        qr_image: str | None = None,
        short_url: str | None = None,
        deeplinks: list[DeepLink] | None = None,
        order_number: str | None = None,
        customer_email: str | None = None,
        customer_phone: str | None = None,
    ) -> PaymentRecord:
        row = OrderPayment(
            order_id=order_id,
            order_number=order_number,
            invoice_id=invoice_id,
            amount=amount,
            currency=currency,
            status=PaymentState.PENDING.value,
            qr_text=qr_text,
            qr_image=qr_image,
            short_url=short_url,
            deeplinks=[link.model_dump() for link in deeplinks or []],
            customer_email=customer_email,
            customer_phone=customer_phone,
            updated_at=datetime.datetime.now(UTC),
        )
        with self._session() as db:
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                logger.warning(
                    "Payment record already exists: order_id=%s invoice_id=%s", order_id, invoice_id
                )
                raise DuplicatePaymentError(
                    f"Open payment already exists for order {order_id}"
                ) from e
            db.refresh(row)
            logger.info("Created pending payment: order_id=%s invoice_id=%s", order_id, invoice_id)
            return PaymentRecord.model_validate(row)

    def transition_status(
        self,
        invoice_id: str,
        status: PaymentState,
        transaction_id: str | None = None,
        paid_amount: int | None = None,
        paid_at: datetime.datetime | None = None,
    ) -> PaymentRecord | None:
        """
        Move a pending record to a terminal state.

        Args:
            invoice_id (str): Invoice of the record to update.
            status (PaymentState): ``paid`` or ``failed``.
            transaction_id (str | None): Gateway payment id.
            paid_amount (int | None): Amount reported by the gateway.
            paid_at (datetime | None): Payment time; defaults to now for ``paid``.

        Returns:
            PaymentRecord | None: The updated record, or None if the record was
            missing or no longer pending.
        """
        if not status.is_terminal:
            raise ValueError(f"Cannot transition to non-terminal status {status.value}")

        now = datetime.datetime.now(UTC)
        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if transaction_id is not None:
            values["transaction_id"] = transaction_id
        if status is PaymentState.PAID:
            values["paid_at"] = paid_at or now
            values["paid_amount"] = paid_amount

        with self._session() as db:
            result = db.execute(
                update(OrderPayment)
                .where(
                    OrderPayment.invoice_id == invoice_id,
                    OrderPayment.status == PaymentState.PENDING.value,
                )
                .values(**values)
            )
            db.commit()
            if result.rowcount != 1:
                logger.info(
                    "Transition skipped, record not pending: invoice_id=%s target=%s",
                    invoice_id,
                    status.value,
                )
                return None
        logger.info("Payment %s: invoice_id=%s", status.value, invoice_id)
        return self.get_by_invoice_id(invoice_id)

    def record_event(
        self,
        source: str,
        event_type: str,
        payload: str,
        reference: str | None = None,
        processed: bool = False,
        error: str | None = None,
    ) -> None:
        with self._session() as db:
            db.add(
                WebhookEvent(
                    source=source,
                    event_type=event_type,
                    reference=reference,
                    payload=payload,
                    processed=processed,
                    error=error,
                )
            )
            db.commit()

    def ping(self) -> bool:
        with self._session() as db:
            return db.execute(text("SELECT 1")).scalar() == 1
