"""
Tests for the invoice workflow against an in-memory store and a fake gateway.
"""

from unittest.mock import MagicMock

import pytest

from qpay_bridge.core.invoices import InvoiceWorkflow, parse_payment_check
from qpay_bridge.core.models import LineItem, PaymentState, ReceiverInfo
from qpay_bridge.core.repository import DuplicatePaymentError, SqlPaymentStore
from qpay_bridge.core.results import (
    RequestError,
    RequestErrorKind,
    Result,
    WorkflowErrorKind,
)
from qpay_bridge.core.settings import QPaySettings
from qpay_bridge.plugins.qpay import GatewayResponse, QPayClient


def invoice_response(invoice_id: str = "inv-1") -> Result:
    return Result.ok(
        GatewayResponse(
            200,
            {
                "invoice_id": invoice_id,
                "qr_text": "0002010102121531279404962794049600000000KKTQPAY52046010",
                "qr_image": "iVBORw0KGgo=",
                "qPay_shortUrl": f"https://s.qpay.mn/{invoice_id}",
                "urls": [
                    {
                        "name": "Khan bank",
                        "description": "Хаан банк",
                        "logo": "https://qpay.mn/q/logo/khanbank.png",
                        "link": "khanbank://q?qPay_QRcode=0002010102",
                    }
                ],
            },
        )
    )


@pytest.fixture
def gateway() -> MagicMock:
    gateway = MagicMock(spec=QPayClient)
    gateway.create_invoice.return_value = invoice_response()
    gateway.cancel_invoice.return_value = Result.ok(GatewayResponse(200, {}))
    return gateway


@pytest.fixture
def workflow(
    gateway: MagicMock, store: SqlPaymentStore, orders: MagicMock, qpay_settings: QPaySettings
) -> InvoiceWorkflow:
    return InvoiceWorkflow(gateway, store, orders, qpay_settings)


def test_create_invoice_with_synthetic_line(
    workflow: InvoiceWorkflow, gateway: MagicMock, store: SqlPaymentStore
) -> None:
    result = workflow.create_invoice("order-1", 1000, "MNT")

    assert result.is_success()
    invoice = result.unwrap()
    assert invoice.invoice_id == "inv-1"
    assert invoice.created
    assert invoice.status is PaymentState.PENDING
    assert invoice.short_url == "https://s.qpay.mn/inv-1"
    assert invoice.deeplinks[0].name == "Khan bank"

    payload = gateway.create_invoice.call_args.args[0]
    assert payload["amount"] == 1000
    assert payload["sender_invoice_no"] == "order-1"
    assert payload["callback_url"] == "https://bridge.test/api/v1/qpay/webhook"
    assert payload["lines"] == [
        {"line_description": "Order order-1", "line_quantity": "1", "line_unit_price": "1000"}
    ]

    record = store.get_by_order_id("order-1")
    assert record.status is PaymentState.PENDING
    assert record.amount == 1000
    assert record.paid_at is None


def test_create_invoice_is_idempotent(
    workflow: InvoiceWorkflow, gateway: MagicMock, store: SqlPaymentStore
) -> None:
    first = workflow.create_invoice("order-1", 1000, "MNT").unwrap()
    gateway.create_invoice.return_value = invoice_response("inv-2")
    second = workflow.create_invoice("order-1", 1000, "MNT").unwrap()

    assert second.invoice_id == first.invoice_id
    assert not second.created
    assert gateway.create_invoice.call_count == 1
    assert store.get_by_invoice_id("inv-2") is None


def test_line_items_must_match_amount(workflow: InvoiceWorkflow, gateway: MagicMock) -> None:
    result = workflow.create_invoice(
        "order-2",
        500,
        "MNT",
        line_items=[{"description": "item", "quantity": 1, "unit_price": 400}],
    )

    assert not result.is_success()
    assert result.error.kind is WorkflowErrorKind.VALIDATION_ERROR
    assert result.error.http_status == 422
    gateway.create_invoice.assert_not_called()


def test_line_items_are_sent(workflow: InvoiceWorkflow, gateway: MagicMock) -> None:
    result = workflow.create_invoice(
        "order-3",
        1000,
        line_items=[LineItem(description="Tea", quantity=2, unit_price=500)],
        receiver=ReceiverInfo(name="Bat", email="bat@example.mn", phone="99112233"),
        order_number="1001",
    )

    assert result.is_success()
    payload = gateway.create_invoice.call_args.args[0]
    assert payload["lines"] == [
        {"line_description": "Tea", "line_quantity": "2", "line_unit_price": "500"}
    ]
    assert payload["invoice_receiver_code"] == "99112233"
    assert payload["invoice_description"] == "Shopify Order #1001"


@pytest.mark.parametrize("amount", [0, -5, True])
def test_invalid_amount_rejected(workflow: InvoiceWorkflow, gateway: MagicMock, amount: int) -> None:
    result = workflow.create_invoice("order-4", amount, "MNT")
    assert result.error.kind is WorkflowErrorKind.VALIDATION_ERROR
    gateway.create_invoice.assert_not_called()


def test_invalid_line_item_rejected(workflow: InvoiceWorkflow) -> None:
    result = workflow.create_invoice(
        "order-5", 100, line_items=[{"description": "", "quantity": 1, "unit_price": 100}]
    )
    assert result.error.kind is WorkflowErrorKind.VALIDATION_ERROR


def test_gateway_rejection_creates_no_record(
    workflow: InvoiceWorkflow, gateway: MagicMock, store: SqlPaymentStore
) -> None:
    gateway.create_invoice.return_value = Result.fail(
        RequestError(RequestErrorKind.GATEWAY_ERROR, "QPay returned 400", status_code=400)
    )

    result = workflow.create_invoice("order-6", 1000)

    assert result.error.kind is WorkflowErrorKind.GATEWAY_REJECTED
    assert store.get_by_order_id("order-6") is None


def test_gateway_timeout_maps_to_network_error(
    workflow: InvoiceWorkflow, gateway: MagicMock
) -> None:
    gateway.create_invoice.return_value = Result.fail(
        RequestError(RequestErrorKind.TIMEOUT, "Timeout")
    )
    result = workflow.create_invoice("order-7", 1000)
    assert result.error.kind is WorkflowErrorKind.NETWORK_ERROR
    assert result.error.http_status == 504


def test_response_without_invoice_id(workflow: InvoiceWorkflow, gateway: MagicMock) -> None:
    gateway.create_invoice.return_value = Result.ok(GatewayResponse(200, {"qr_text": "x"}))
    result = workflow.create_invoice("order-8", 1000)
    assert result.error.kind is WorkflowErrorKind.UNEXPECTED_RESPONSE


def test_concurrent_duplicate_cancels_orphan_invoice(
    workflow: InvoiceWorkflow, gateway: MagicMock, store: SqlPaymentStore
) -> None:
    # Another request stores its invoice between our lookup and our insert
    real_create_pending = store.create_pending

    def racing_create_pending(**kwargs: object) -> object:
        real_create_pending(
            order_id="order-9", invoice_id="inv-winner", amount=1000, currency="MNT", qr_text="w"
        )
        return real_create_pending(**kwargs)

    store.create_pending = racing_create_pending  # type: ignore[method-assign]
    gateway.create_invoice.return_value = invoice_response("inv-loser")

    result = workflow.create_invoice("order-9", 1000)

    assert result.unwrap().invoice_id == "inv-winner"
    assert not result.unwrap().created
    gateway.cancel_invoice.assert_called_once_with("inv-loser")


def test_failed_record_allows_new_invoice(
    workflow: InvoiceWorkflow, gateway: MagicMock, store: SqlPaymentStore
) -> None:
    workflow.create_invoice("order-10", 1000)
    store.transition_status("inv-1", PaymentState.FAILED)
    gateway.create_invoice.return_value = invoice_response("inv-2")

    result = workflow.create_invoice("order-10", 1000)

    assert result.unwrap().invoice_id == "inv-2"
    assert result.unwrap().created
    assert store.get_by_order_id("order-10").invoice_id == "inv-2"


def test_store_rejects_second_open_record(store: SqlPaymentStore) -> None:
    store.create_pending(
        order_id="order-11", invoice_id="inv-a", amount=100, currency="MNT", qr_text=""
    )
    with pytest.raises(DuplicatePaymentError):
        store.create_pending(
            order_id="order-11", invoice_id="inv-b", amount=100, currency="MNT", qr_text=""
        )


def test_check_status_polls_gateway_and_marks_paid(
    workflow: InvoiceWorkflow, gateway: MagicMock, orders: MagicMock, store: SqlPaymentStore
) -> None:
    workflow.create_invoice("order-12", 1000)
    gateway.check_payment.return_value = Result.ok(
        GatewayResponse(
            200,
            {
                "count": 1,
                "paid_amount": 1000,
                "rows": [
                    {
                        "payment_id": "pay-1",
                        "payment_status": "PAID",
                        "payment_amount": "1000.00",
                        "payment_currency": "MNT",
                        "payment_date": "2024-05-01T12:30:00+08:00",
                    }
                ],
            },
        )
    )

    status = workflow.check_status(order_id="order-12").unwrap()

    assert status.status is PaymentState.PAID
    assert status.gateway_status == "PAID"
    assert status.transaction_id == "pay-1"
    assert status.paid_at is not None
    orders.mark_order_paid.assert_called_once_with("order-12", 1000, "MNT", "pay-1")

    # Terminal records are answered from the store
    gateway.check_payment.reset_mock()
    again = workflow.check_status(invoice_id="inv-1").unwrap()
    assert again.status is PaymentState.PAID
    gateway.check_payment.assert_not_called()
    assert orders.mark_order_paid.call_count == 1


def test_check_status_pending_when_no_rows(
    workflow: InvoiceWorkflow, gateway: MagicMock, orders: MagicMock
) -> None:
    workflow.create_invoice("order-13", 1000)
    gateway.check_payment.return_value = Result.ok(GatewayResponse(200, {"count": 0, "rows": []}))

    status = workflow.check_status(order_id="order-13").unwrap()

    assert status.status is PaymentState.PENDING
    assert status.gateway_status == "NONE"
    orders.mark_order_paid.assert_not_called()


def test_check_status_returns_stored_status_when_gateway_down(
    workflow: InvoiceWorkflow, gateway: MagicMock
) -> None:
    workflow.create_invoice("order-14", 1000)
    gateway.check_payment.return_value = Result.fail(
        RequestError(RequestErrorKind.NETWORK_ERROR, "connection refused")
    )

    status = workflow.check_status(order_id="order-14").unwrap()

    assert status.status is PaymentState.PENDING
    assert status.warning == "Could not verify with QPay API"


def test_check_status_unknown_order(workflow: InvoiceWorkflow) -> None:
    result = workflow.check_status(order_id="missing")
    assert result.error.kind is WorkflowErrorKind.NOT_FOUND
    assert result.error.http_status == 404


def test_check_status_requires_an_identifier(workflow: InvoiceWorkflow) -> None:
    result = workflow.check_status()
    assert result.error.kind is WorkflowErrorKind.VALIDATION_ERROR


def test_cancel_invoice(
    workflow: InvoiceWorkflow, gateway: MagicMock, orders: MagicMock, store: SqlPaymentStore
) -> None:
    workflow.create_invoice("order-15", 1000)

    status = workflow.cancel_invoice(order_id="order-15").unwrap()

    assert status.status is PaymentState.FAILED
    gateway.cancel_invoice.assert_called_once_with("inv-1")
    orders.annotate_payment_failure.assert_called_once_with("order-15", "inv-1", "CANCELLED")
    assert store.get_by_invoice_id("inv-1").status is PaymentState.FAILED

    # Cancelling again is a no-op
    gateway.cancel_invoice.reset_mock()
    workflow.cancel_invoice(order_id="order-15")
    gateway.cancel_invoice.assert_not_called()


def test_cancel_failure_leaves_record_pending(
    workflow: InvoiceWorkflow, gateway: MagicMock, store: SqlPaymentStore
) -> None:
    workflow.create_invoice("order-16", 1000)
    gateway.cancel_invoice.return_value = Result.fail(
        RequestError(RequestErrorKind.GATEWAY_ERROR, "QPay returned 404", status_code=404)
    )

    result = workflow.cancel_invoice(order_id="order-16")

    assert result.error.kind is WorkflowErrorKind.GATEWAY_REJECTED
    assert store.get_by_invoice_id("inv-1").status is PaymentState.PENDING


def test_parse_payment_check_prefers_paid_row() -> None:
    outcome = parse_payment_check(
        {
            "rows": [
                {"payment_id": "p1", "payment_status": "FAILED"},
                {"payment_id": "p2", "payment_status": "PAID", "payment_amount": 500},
            ]
        }
    )
    assert outcome.status is PaymentState.PAID
    assert outcome.transaction_id == "p2"
    assert outcome.amount == 500


def test_parse_payment_check_unknown_status_stays_pending() -> None:
    outcome = parse_payment_check({"rows": [{"payment_status": "REFUNDED"}]})
    assert outcome.status is PaymentState.PENDING
    assert outcome.gateway_status == "REFUNDED"


def test_malformed_deeplinks_do_not_abort_invoice(
    workflow: InvoiceWorkflow, gateway: MagicMock, store: SqlPaymentStore
) -> None:
    gateway.create_invoice.return_value = Result.ok(
        GatewayResponse(
            200,
            {
                "invoice_id": "inv-1",
                "qr_text": "qr",
                "urls": [
                    {"name": "Khan bank", "description": None, "logo": None, "link": "khanbank://q"},
                    {"name": ["not", "a", "string"], "link": "golomt://q"},
                    "garbage",
                ],
            },
        )
    )

    result = workflow.create_invoice("order-17", 1000, "MNT")

    invoice = result.unwrap()
    assert invoice.created
    assert [link.name for link in invoice.deeplinks] == ["Khan bank"]
    assert invoice.deeplinks[0].description is None
    assert store.get_by_order_id("order-17").invoice_id == "inv-1"
