"""Invoice creation, status polling and cancellation for Shopify orders."""

import datetime
import logging
from typing import Any, Mapping, Sequence

from pydantic import ValidationError

from qpay_bridge.core.models import (
    DeepLink,
    InvoiceRequest,
    InvoiceResult,
    LineItem,
    PaymentRecord,
    PaymentState,
    PaymentStatus,
    ReceiverInfo,
)
from qpay_bridge.core.reconciler import (
    OrderUpdater,
    PaymentOutcome,
    apply_outcome,
    map_gateway_status,
)
from qpay_bridge.core.repository import DuplicatePaymentError, PaymentStore
from qpay_bridge.core.results import Result, WorkflowError, WorkflowErrorKind
from qpay_bridge.core.settings import QPaySettings
from qpay_bridge.plugins.qpay import QPayClient

# Setup module-level logger
logger = logging.getLogger("invoices")


def _validation_error(message: str) -> Result[Any, WorkflowError]:
    return Result.fail(WorkflowError(WorkflowErrorKind.VALIDATION_ERROR, message))


def _parse_deeplinks(data: Mapping[str, Any]) -> list[DeepLink]:
    """Bank links from an invoice response; entries that do not parse are skipped."""
    raw = data.get("urls") or data.get("qPay_deeplink") or data.get("deeplinks") or []
    if not isinstance(raw, list):
        return []
    links = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        try:
            links.append(DeepLink.model_validate(dict(item)))
        except ValidationError as e:
            logger.warning("Skipping invalid QPay deeplink %r: %s", item, e)
    return links


def _to_int(value: Any) -> int | None:
    try:
        return int(float(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def _parse_datetime(value: Any) -> datetime.datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_payment_check(data: Any) -> PaymentOutcome:
    """
    Interpret a ``POST /payment/check`` response.

    A PAID row wins over anything else; otherwise the first row's status (or
    the top-level ``payment_status``) decides. An empty result stays pending.
    """
    rows = data.get("rows") if isinstance(data, Mapping) else None
    rows = [row for row in rows or [] if isinstance(row, Mapping)]
    paid = [row for row in rows if str(row.get("payment_status", "")).upper() == "PAID"]
    if paid:
        row = paid[0]
    elif rows:
        row = rows[0]
    elif isinstance(data, Mapping) and data.get("payment_status"):
        row = data
    else:
        return PaymentOutcome(status=PaymentState.PENDING, gateway_status="NONE")

    gateway_status = str(row.get("payment_status", "")).upper()
    return PaymentOutcome(
        status=map_gateway_status(gateway_status),
        gateway_status=gateway_status,
        transaction_id=str(row["payment_id"]) if row.get("payment_id") else None,
        amount=_to_int(row.get("payment_amount")),
        currency=row.get("payment_currency"),
        paid_at=_parse_datetime(row.get("payment_date") or row.get("paid_date")),
    )


class InvoiceWorkflow:
    """
    Issues QPay invoices for orders and tracks their payment.

    At most one open invoice exists per order: repeated calls for an order
    whose invoice is pending or paid return that invoice. The store's unique
    index is the actual guarantee; the lookup here only saves a gateway call.
    """

    def __init__(
        self,
        gateway: QPayClient,
        store: PaymentStore,
        orders: OrderUpdater,
        settings: QPaySettings,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.orders = orders
        self.settings = settings

    def build_request(
        self,
        order_id: str,
        amount: int,
        currency: str,
        line_items: Sequence[LineItem | Mapping[str, Any]] | None = None,
        receiver: ReceiverInfo | Mapping[str, Any] | None = None,
        description: str | None = None,
    ) -> Result[InvoiceRequest, WorkflowError]:
        """Validate the invoice parameters without any I/O."""
        if not order_id:
            return _validation_error("order_id is required")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            return _validation_error("amount must be a positive integer")
        if not currency:
            return _validation_error("currency is required")

        try:
            lines = [
                item if isinstance(item, LineItem) else LineItem.model_validate(dict(item))
                for item in line_items or []
            ]
            if receiver is None:
                receiver_info = ReceiverInfo()
            elif isinstance(receiver, ReceiverInfo):
                receiver_info = receiver
            else:
                receiver_info = ReceiverInfo.model_validate(dict(receiver))
        except ValidationError as e:
            return _validation_error(f"Invalid invoice data: {e.errors()[0]['msg']}")

        if lines:
            total = sum(line.total for line in lines)
            if total != amount:
                return _validation_error(
                    f"Line items total {total} does not match amount {amount}"
                )
        else:
            lines = [LineItem(description=f"Order {order_id}", quantity=1, unit_price=amount)]

        return Result.ok(
            InvoiceRequest(
                order_id=order_id,
                amount=amount,
                currency=currency.upper(),
                description=description or f"Order {order_id}",
                callback_url=self.settings.callback_url,
                receiver=receiver_info,
                lines=lines,
            )
        )

    def create_invoice(
        self,
        order_id: str,
        amount: int,
        currency: str | None = None,
        line_items: Sequence[LineItem | Mapping[str, Any]] | None = None,
        receiver: ReceiverInfo | Mapping[str, Any] | None = None,
        description: str | None = None,
        order_number: str | None = None,
    ) -> Result[InvoiceResult, WorkflowError]:
        """
        Create a QPay invoice for an order, or return the one already open.

        Args:
            order_id (str): Shopify order identifier.
            amount (int): Amount in whole currency units.
            currency (str | None): Currency code, defaults to the configured one.
            line_items (Sequence | None): Invoice lines; their total must equal ``amount``.
            receiver (ReceiverInfo | Mapping | None): Customer details.
            description (str | None): Invoice description.
            order_number (str | None): Human-facing order number.

        Returns:
            Result[InvoiceResult, WorkflowError]: The invoice; ``created`` is False
            when an existing invoice was returned.
        """
        request_result = self.build_request(
            order_id,
            amount,
            currency or self.settings.default_currency,
            line_items,
            receiver,
            description or (f"Shopify Order #{order_number}" if order_number else None),
        )
        if not request_result.is_success():
            logger.warning("Rejected invoice for order %s: %s", order_id, request_result.error)
            return Result.fail(request_result.error)
        invoice_request = request_result.unwrap()

        existing = self.store.get_by_order_id(order_id)
        if existing is not None and existing.status is not PaymentState.FAILED:
            logger.info(
                "Invoice already exists for order %s: %s (%s)",
                order_id,
                existing.invoice_id,
                existing.status.value,
            )
            return Result.ok(InvoiceResult.from_record(existing, created=False))

        logger.info("Creating QPay invoice: order_id=%s amount=%s", order_id, amount)
        response = self.gateway.create_invoice(
            invoice_request.to_gateway_payload(self.settings.sender_branch_code)
        )
        if not response.is_success():
            logger.error("QPay invoice creation failed for order %s: %s", order_id, response.error)
            return Result.fail(WorkflowError.from_request_error(response.error))

        data = response.unwrap().data
        invoice_id = data.get("invoice_id") if isinstance(data, Mapping) else None
        if not invoice_id:
            logger.error("QPay invoice response without invoice_id for order %s", order_id)
            return Result.fail(
                WorkflowError(
                    WorkflowErrorKind.UNEXPECTED_RESPONSE, "Gateway response has no invoice_id"
                )
            )

        try:
            record = self.store.create_pending(
                order_id=order_id,
                invoice_id=str(invoice_id),
                amount=invoice_request.amount,
                currency=invoice_request.currency,
                qr_text=str(data.get("qr_text") or ""),
                qr_image=data.get("qr_image"),
                short_url=data.get("qPay_shortUrl"),
                deeplinks=_parse_deeplinks(data),
                order_number=order_number,
                customer_email=invoice_request.receiver.email or None,
                customer_phone=invoice_request.receiver.phone or None,
            )
        except DuplicatePaymentError:
            return self._resolve_duplicate(order_id, str(invoice_id))

        return Result.ok(InvoiceResult.from_record(record, created=True))

    def _resolve_duplicate(
        self, order_id: str, orphan_invoice_id: str
    ) -> Result[InvoiceResult, WorkflowError]:
        """A concurrent request stored an invoice first; keep theirs, cancel ours."""
        cancelled = self.gateway.cancel_invoice(orphan_invoice_id)
        if not cancelled.is_success():
            logger.error(
                "Could not cancel duplicate invoice %s for order %s: %s",
                orphan_invoice_id,
                order_id,
                cancelled.error,
            )
        existing = self.store.get_by_order_id(order_id)
        if existing is None or existing.status is PaymentState.FAILED:
            return Result.fail(
                WorkflowError(
                    WorkflowErrorKind.DUPLICATE_INVOICE,
                    f"Invoice {orphan_invoice_id} conflicts with an existing record",
                )
            )
        return Result.ok(InvoiceResult.from_record(existing, created=False))

    def _lookup(
        self, order_id: str | None, invoice_id: str | None
    ) -> Result[PaymentRecord, WorkflowError]:
        if invoice_id:
            record = self.store.get_by_invoice_id(invoice_id)
        elif order_id:
            record = self.store.get_by_order_id(order_id)
        else:
            return _validation_error("Either order_id or invoice_id is required")
        if record is None:
            return Result.fail(
                WorkflowError(WorkflowErrorKind.NOT_FOUND, "Payment record not found")
            )
        return Result.ok(record)

    def check_status(
        self, order_id: str | None = None, invoice_id: str | None = None
    ) -> Result[PaymentStatus, WorkflowError]:
        """
        Return the payment status of an order or invoice.

        Terminal records are answered from the store. Pending ones are checked
        against the gateway; a terminal gateway status is applied exactly as a
        webhook would. If the gateway cannot be reached the stored status is
        returned with a warning.
        """
        lookup = self._lookup(order_id, invoice_id)
        if not lookup.is_success():
            return Result.fail(lookup.error)
        record = lookup.unwrap()

        if record.is_terminal:
            return Result.ok(PaymentStatus.from_record(record))

        response = self.gateway.check_payment(record.invoice_id)
        if not response.is_success():
            logger.warning(
                "QPay status check failed for invoice %s: %s", record.invoice_id, response.error
            )
            return Result.ok(
                PaymentStatus.from_record(record, warning="Could not verify with QPay API")
            )

        outcome = parse_payment_check(response.unwrap().data)
        updated = apply_outcome(self.store, self.orders, record, outcome)
        return Result.ok(PaymentStatus.from_record(updated, gateway_status=outcome.gateway_status))

    def cancel_invoice(
        self, order_id: str | None = None, invoice_id: str | None = None
    ) -> Result[PaymentStatus, WorkflowError]:
        """Cancel a pending invoice at the gateway and mark its record failed."""
        lookup = self._lookup(order_id, invoice_id)
        if not lookup.is_success():
            return Result.fail(lookup.error)
        record = lookup.unwrap()

        if record.is_terminal:
            return Result.ok(PaymentStatus.from_record(record))

        response = self.gateway.cancel_invoice(record.invoice_id)
        if not response.is_success():
            logger.error("QPay invoice cancel failed for %s: %s", record.invoice_id, response.error)
            return Result.fail(WorkflowError.from_request_error(response.error))

        updated = apply_outcome(
            self.store,
            self.orders,
            record,
            PaymentOutcome(status=PaymentState.FAILED, gateway_status="CANCELLED"),
        )
        return Result.ok(PaymentStatus.from_record(updated, gateway_status="CANCELLED"))
