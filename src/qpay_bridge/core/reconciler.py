"""
Payment reconciliation.

Applies gateway payment outcomes to stored payment records and propagates
them to the order system. Both the webhook path and the status-poll path go
through ``apply_outcome`` so a record is transitioned, and the order updated,
at most once.
"""

import base64
import binascii
import datetime
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Literal, Optional, Protocol

from pydantic import BaseModel, ValidationError

from qpay_bridge.core.models import PaymentRecord, PaymentState
from qpay_bridge.core.repository import PaymentStore
from qpay_bridge.core.results import ReconcileError, ReconcileErrorKind, Result
from qpay_bridge.plugins.qpay import QPayClient

# Setup module-level logger
logger = logging.getLogger("reconciler")

GATEWAY_STATUS_MAP = {
    "PAID": PaymentState.PAID,
    "PENDING": PaymentState.PENDING,
    "NEW": PaymentState.PENDING,
    "CANCELLED": PaymentState.FAILED,
    "FAILED": PaymentState.FAILED,
    "EXPIRED": PaymentState.FAILED,
}


class OrderUpdater(Protocol):
    """Remote order system notified of terminal payment transitions."""

    def mark_order_paid(
        self, order_id: str, amount: int, currency: str, transaction_id: str | None
    ) -> None: ...

    def annotate_payment_failure(self, order_id: str, invoice_id: str, reason: str) -> None: ...


@dataclass(frozen=True)
class PaymentOutcome:
    """Payment state observed at the gateway for one invoice."""

    status: PaymentState
    gateway_status: str
    transaction_id: str | None = None
    amount: int | None = None
    currency: str | None = None
    paid_at: datetime.datetime | None = None


def map_gateway_status(status: str | None) -> PaymentState:
    """Map a QPay payment status onto the local lifecycle; unknown values stay pending."""
    return GATEWAY_STATUS_MAP.get((status or "").upper(), PaymentState.PENDING)


def apply_outcome(
    store: PaymentStore,
    orders: OrderUpdater,
    record: PaymentRecord,
    outcome: PaymentOutcome,
) -> PaymentRecord:
    """
    Transition ``record`` according to ``outcome`` and notify the order system.

    Terminal records and pending outcomes leave the record untouched. The
    order system is called only by the writer whose compare-and-swap moved the
    record; its failures are logged and recorded but never undo the transition.

    Args:
        store (PaymentStore): Payment persistence.
        orders (OrderUpdater): Order system to notify.
        record (PaymentRecord): Current record.
        outcome (PaymentOutcome): Gateway observation.

    Returns:
        PaymentRecord: The record after the transition (or unchanged).
    """
    if record.is_terminal or outcome.status is PaymentState.PENDING:
        return record

    if outcome.status is PaymentState.PAID and outcome.amount is not None:
        if outcome.amount != record.amount:
            logger.warning(
                "Paid amount differs from invoice amount: invoice_id=%s expected=%s paid=%s",
                record.invoice_id,
                record.amount,
                outcome.amount,
            )

    updated = store.transition_status(
        record.invoice_id,
        outcome.status,
        transaction_id=outcome.transaction_id,
        paid_amount=outcome.amount,
        paid_at=outcome.paid_at,
    )
    if updated is None:
        # Another request moved the record first.
        current = store.get_by_invoice_id(record.invoice_id)
        return current or record

    try:
        if updated.status is PaymentState.PAID:
            orders.mark_order_paid(
                updated.order_id,
                updated.amount,
                updated.currency,
                updated.transaction_id,
            )
        else:
            orders.annotate_payment_failure(
                updated.order_id, updated.invoice_id, outcome.gateway_status
            )
    except Exception as e:
        logger.exception(
            "Order update failed after payment %s: order_id=%s invoice_id=%s",
            updated.status.value,
            updated.order_id,
            updated.invoice_id,
        )
        store.record_event(
            source="bridge",
            event_type="order_update_failed",
            reference=updated.order_id,
            payload=json.dumps(
                {
                    "order_id": updated.order_id,
                    "invoice_id": updated.invoice_id,
                    "status": updated.status.value,
                    "transaction_id": updated.transaction_id,
                }
            ),
            processed=False,
            error=f"{type(e).__name__}: {e}",
        )
    return updated


class WebhookNotification(BaseModel):
    """Payment notification pushed by QPay to the callback URL."""

    invoice_id: str
    payment_status: Literal["PAID", "PENDING", "NEW", "CANCELLED", "FAILED", "EXPIRED"]
    payment_amount: Optional[float] = None
    payment_currency: Optional[str] = None
    payment_id: Optional[str] = None
    paid_date: Optional[datetime.datetime] = None

    def to_outcome(self) -> PaymentOutcome:
        amount = int(self.payment_amount) if self.payment_amount is not None else None
        return PaymentOutcome(
            status=map_gateway_status(self.payment_status),
            gateway_status=self.payment_status,
            transaction_id=self.payment_id,
            amount=amount,
            currency=self.payment_currency,
            paid_at=self.paid_date,
        )


def _decode_signature(signature: str) -> bytes | None:
    value = signature.strip()
    if value.lower().startswith("sha256="):
        value = value[len("sha256=") :]
    if len(value) == 64:
        try:
            return bytes.fromhex(value)
        except ValueError:
            pass
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """
    Check an HMAC-SHA256 signature of ``raw_body``.

    The signature may be hex or base64 encoded and may carry a ``sha256=``
    prefix. Comparison is constant-time.
    """
    if not signature:
        return False
    provided = _decode_signature(signature)
    if provided is None:
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
    return hmac.compare_digest(provided, expected)


@dataclass(frozen=True)
class Ack:
    """Acknowledgement returned to the gateway."""

    invoice_id: str
    status: PaymentState
    changed: bool
    message: str = "Webhook processed successfully"


class WebhookReconciler:
    """Verifies and applies QPay payment notifications."""

    def __init__(
        self,
        store: PaymentStore,
        orders: OrderUpdater,
        webhook_secret: str = "",
        gateway: QPayClient | None = None,
    ) -> None:
        self.store = store
        self.orders = orders
        self.gateway = gateway
        self.webhook_secret = webhook_secret
        if not webhook_secret:
            logger.warning("No QPay webhook secret configured, signatures will not be verified")

    def handle_notification(
        self, raw_body: bytes, signature_header: str | None
    ) -> Result[Ack, ReconcileError]:
        """
        Process one notification.

        Args:
            raw_body (bytes): Request body exactly as received.
            signature_header (str | None): Value of the signature header.

        Returns:
            Result[Ack, ReconcileError]: The acknowledgement, or the reason the
            notification was rejected. ``RECORD_NOT_FOUND`` is still acknowledged
            by the HTTP layer.
        """
        payload = raw_body.decode("utf-8", errors="replace")
        if self.webhook_secret and not verify_signature(
            raw_body, signature_header, self.webhook_secret
        ):
            logger.error("Invalid QPay webhook signature")
            self.store.record_event(
                source="qpay",
                event_type="payment_notification",
                payload=payload,
                processed=False,
                error="invalid signature",
            )
            return Result.fail(
                ReconcileError(ReconcileErrorKind.INVALID_SIGNATURE, "Invalid webhook signature")
            )

        try:
            notification = WebhookNotification.model_validate_json(raw_body)
        except ValidationError as e:
            logger.error("Malformed QPay notification: %s", e)
            self.store.record_event(
                source="qpay",
                event_type="payment_notification",
                payload=payload,
                processed=False,
                error="malformed payload",
            )
            return Result.fail(
                ReconcileError(ReconcileErrorKind.MALFORMED_PAYLOAD, "Invalid payload format")
            )

        invoice_id = notification.invoice_id
        logger.info(
            "Processing QPay notification: invoice_id=%s status=%s payment_id=%s",
            invoice_id,
            notification.payment_status,
            notification.payment_id,
        )

        record = self.store.get_by_invoice_id(invoice_id)
        if record is None:
            logger.warning("No payment record for invoice %s, acknowledging", invoice_id)
            self.store.record_event(
                source="qpay",
                event_type="payment_notification",
                reference=invoice_id,
                payload=payload,
                processed=False,
                error="record not found",
            )
            return Result.fail(
                ReconcileError(
                    ReconcileErrorKind.RECORD_NOT_FOUND,
                    "No payment record for invoice",
                    invoice_id=invoice_id,
                )
            )

        if record.is_terminal:
            logger.info(
                "Duplicate notification for %s invoice %s, nothing to do",
                record.status.value,
                invoice_id,
            )
            self.store.record_event(
                source="qpay",
                event_type="payment_notification",
                reference=invoice_id,
                payload=payload,
                processed=True,
            )
            return Result.ok(Ack(invoice_id, record.status, changed=False))

        outcome = notification.to_outcome()
        if outcome.status is PaymentState.PAID and outcome.amount is None:
            outcome = self._enrich(outcome)

        updated = apply_outcome(self.store, self.orders, record, outcome)
        self.store.record_event(
            source="qpay",
            event_type="payment_notification",
            reference=invoice_id,
            payload=payload,
            processed=True,
        )
        return Result.ok(Ack(invoice_id, updated.status, changed=updated.status != record.status))

    def _enrich(self, outcome: PaymentOutcome) -> PaymentOutcome:
        """Fill in the paid amount from ``GET /payment/{id}`` when the notification omits it."""
        if self.gateway is None or not outcome.transaction_id:
            return outcome
        result = self.gateway.get_payment(outcome.transaction_id)
        if not result.is_success():
            logger.warning(
                "Could not fetch payment %s: %s", outcome.transaction_id, result.error
            )
            return outcome
        data = result.unwrap().data
        if not isinstance(data, dict):
            return outcome
        amount = data.get("payment_amount")
        try:
            paid_amount = int(float(amount)) if amount is not None else None
        except (TypeError, ValueError):
            paid_amount = None
        return PaymentOutcome(
            status=outcome.status,
            gateway_status=outcome.gateway_status,
            transaction_id=outcome.transaction_id,
            amount=paid_amount,
            currency=data.get("payment_currency") or outcome.currency,
            paid_at=outcome.paid_at,
        )
